"""
Shared pytest fixtures.

Every test gets its own SQLite file under tmp_path so sessions opened from
worker threads see the same database as the test's own session.
"""
import pytest
from sqlalchemy.orm import sessionmaker

from app.core.config import get_settings
from app.core.db import Base, build_engine
from app.models import episode, strategy_config, strategy_evolution_log, topic  # noqa: F401 - register tables


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'strategy_evolution.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings(monkeypatch):
    """Live settings object; tweak attributes with monkeypatch.setattr."""
    s = get_settings()
    monkeypatch.setattr(s, "EVOLUTION_LOCK_BACKEND", "local")
    monkeypatch.setattr(s, "EVOLUTION_RETRY_BASE_SECONDS", 0.001)
    monkeypatch.setattr(s, "EVOLUTION_RETRY_MAX_SECONDS", 0.01)
    return s


@pytest.fixture(autouse=True)
def no_broker(monkeypatch):
    """Keep episode lifecycle calls from reaching a real Celery broker."""
    from app.services import telemetry

    sent = []
    monkeypatch.setattr(
        telemetry.celery_app,
        "send_task",
        lambda name, args=None, **kwargs: sent.append((name, args, kwargs)),
    )
    return sent
