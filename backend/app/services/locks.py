from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Iterator
from uuid import UUID

import redis

from ..core.config import get_settings
from ..core.errors import ConflictError, TransientStorageError

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "strategy-evolution:topic:"


class _TopicLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self) -> None:
        self.lock = threading.Lock()


# Entries live only while a holder or waiter references them
_local_locks: weakref.WeakValueDictionary[str, _TopicLock] = weakref.WeakValueDictionary()
_local_locks_guard = threading.Lock()


def _get_local_lock(topic_id: str) -> _TopicLock:
    with _local_locks_guard:
        entry = _local_locks.get(topic_id)
        if entry is None:
            entry = _TopicLock()
            _local_locks[topic_id] = entry
        return entry


def _get_sync_redis() -> redis.Redis:
    """
    Create a fresh sync Redis client per lease so Celery workers
    don't hold onto closed connections.
    """
    return redis.from_url(
        str(get_settings().REDIS_URL),
        socket_timeout=5,
        socket_connect_timeout=5,
    )


@contextmanager
def _local_lease(topic_id: str, timeout: float) -> Iterator[None]:
    entry = _get_local_lock(topic_id)
    if not entry.lock.acquire(timeout=timeout):
        raise ConflictError(
            "Timed out waiting for topic lease",
            details={"topic_id": topic_id, "backend": "local"},
        )
    try:
        yield
    finally:
        entry.lock.release()


@contextmanager
def _redis_lease(topic_id: str, timeout: float) -> Iterator[None]:
    client = _get_sync_redis()
    lock = client.lock(
        f"{LOCK_KEY_PREFIX}{topic_id}",
        timeout=timeout,
        blocking_timeout=timeout,
    )
    try:
        try:
            acquired = lock.acquire()
        except redis.RedisError as exc:
            raise TransientStorageError(
                "Could not reach Redis for topic lease",
                details={"topic_id": topic_id, "error": str(exc)},
            ) from exc
        if not acquired:
            raise ConflictError(
                "Timed out waiting for topic lease",
                details={"topic_id": topic_id, "backend": "redis"},
            )
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # Lease expired while we held it; the next holder owns it now
                logger.warning(
                    "Topic lease expired before release",
                    extra={"topic_id": topic_id, "step": "lease_release"},
                )
    finally:
        client.close()


@contextmanager
def topic_lease(topic_id: UUID | str, timeout: float | None = None) -> Iterator[None]:
    """
    Serialize the read-evaluate-write cycle for one topic.

    Usage:

        with topic_lease(topic_id):
            ...  # read metrics, create/promote versions, append ledger

    Different topics never contend. The backend is chosen by
    EVOLUTION_LOCK_BACKEND: "local" guards threads of one process, "redis"
    guards every worker sharing the Redis instance.
    """
    settings = get_settings()
    key = str(topic_id)
    wait = settings.EVOLUTION_LOCK_TIMEOUT_SECONDS if timeout is None else timeout

    backend = settings.EVOLUTION_LOCK_BACKEND.lower()
    if backend == "redis":
        lease = _redis_lease(key, wait)
    elif backend == "local":
        lease = _local_lease(key, wait)
    else:
        raise ValueError(f"Unknown EVOLUTION_LOCK_BACKEND: {settings.EVOLUTION_LOCK_BACKEND}")

    with lease:
        yield
