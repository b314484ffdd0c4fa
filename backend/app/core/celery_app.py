from celery import Celery

from .config import get_settings
from .logging import configure_logging

settings = get_settings()
configure_logging()

celery_app = Celery(
    "strategy_evolution",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_routes={"app.services.evolution.run_evolution_cycle": {"queue": "evolution"}},
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    imports=("app.services.evolution",),
    # Redelivered on worker crash; the episode cursor turns a rerun into a skip
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
