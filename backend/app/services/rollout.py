from __future__ import annotations

import hashlib
import logging
from uuid import UUID

from sqlalchemy.orm import Session

from ..models.strategy_config import StrategyConfig
from .strategy_store import get_active, get_candidate

logger = logging.getLogger(__name__)

BUCKET_COUNT = 100


def assign_bucket(resource_id: str, topic_id: UUID | str) -> int:
    """
    Stable bucket in [0, 100) for a (resource, topic) pair.

    Derived from SHA-256 of "topic:resource", so the value is the same in
    every process regardless of PYTHONHASHSEED.
    """
    input_str = f"{topic_id}:{resource_id}"
    hash_bytes = hashlib.sha256(input_str.encode("utf-8")).digest()
    hash_int = int.from_bytes(hash_bytes[:8], byteorder="big")
    return hash_int % BUCKET_COUNT


def select_version(db: Session, topic_id: UUID, resource_id: str) -> StrategyConfig:
    """
    Pick the configuration that governs a run for ``resource_id``.

    Active unless a candidate is staged and the resource falls inside the
    candidate's rollout share.
    """
    active = get_active(db, topic_id)
    candidate = get_candidate(db, topic_id)
    if candidate is None:
        return active

    bucket = assign_bucket(resource_id, topic_id)
    chosen = candidate if bucket < candidate.rollout_percentage else active
    logger.debug(
        "Selected strategy version",
        extra={
            "topic_id": str(topic_id),
            "version": chosen.version,
            "step": "select_version",
        },
    )
    return chosen
