from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import get_settings
from .errors import ConflictError, TransientStorageError

settings = get_settings()


def build_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions are handed across worker threads
        connect_args["check_same_thread"] = False
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


@contextmanager
def translate_storage_errors(**context):
    """
    Map driver-level failures onto the engine's error taxonomy.

    - unique / constraint violations -> ConflictError
    - dropped connections, pool timeouts, lock timeouts -> TransientStorageError
    """
    try:
        yield
    except IntegrityError as exc:
        raise ConflictError(
            "Concurrent write rejected by a uniqueness constraint",
            details={**context, "error": str(exc.orig)},
        ) from exc
    except (OperationalError, DisconnectionError, PoolTimeoutError) as exc:
        raise TransientStorageError(
            "Backing store temporarily unavailable",
            details={**context, "error": str(exc)},
        ) from exc
