"""
Version Store

Holds the lineage of StrategyConfig versions per topic and owns the
single-active invariant:

- ``create_version`` allocates ``max(version) + 1`` (0 for a topic's first
  version). Two racing writers collide on the (topic_id, version) unique
  constraint and the loser gets ConflictError.
- ``promote`` archives the previous active row, activates the target and
  moves ``Topic.active_version`` inside one transaction.
- At most one candidate is staged per active version.

All mutating functions take ``commit``. The decision engine passes
``commit=False`` so a whole cycle lands in a single transaction.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import get_settings
from ..core.db import translate_storage_errors
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models.strategy_config import StrategyConfig, StrategyStatus
from ..models.topic import Topic
from ..schemas.strategy import ModelTier, StrategyConfigOut, StrategyPayload

logger = logging.getLogger(__name__)
settings = get_settings()


def default_payload() -> StrategyPayload:
    """Payload used to bootstrap a topic when the caller supplies none."""
    return StrategyPayload()


def parse_payload(raw: StrategyPayload | Mapping[str, Any]) -> StrategyPayload:
    if isinstance(raw, StrategyPayload):
        return raw
    try:
        return StrategyPayload.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Malformed strategy payload",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


def payload_of(config: StrategyConfig) -> StrategyPayload:
    return parse_payload(config.payload)


def model_for_tier(payload: StrategyPayload) -> str:
    """Concrete model name the execution collaborator should run."""
    if payload.model_tier == ModelTier.PREMIUM:
        return settings.MODEL_PREMIUM
    return settings.MODEL_STANDARD


def validate_rollout(rollout_percentage: int) -> None:
    if isinstance(rollout_percentage, bool) or not isinstance(rollout_percentage, int):
        raise ValidationError(
            "rollout_percentage must be an integer",
            details={"rollout_percentage": rollout_percentage},
        )
    if not 0 <= rollout_percentage <= 100:
        raise ValidationError(
            "rollout_percentage must be between 0 and 100",
            details={"rollout_percentage": rollout_percentage},
        )


def load_topic(db: Session, topic_id: UUID, *, for_update: bool = False) -> Topic:
    query = db.query(Topic).filter(Topic.id == topic_id)
    if for_update:
        query = query.with_for_update()
    topic = query.first()
    if not topic:
        raise NotFoundError("Topic not found", details={"topic_id": str(topic_id)})
    return topic


def _commit(db: Session, commit: bool, **context) -> None:
    with translate_storage_errors(**context):
        if commit:
            db.commit()
        else:
            db.flush()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_version(db: Session, topic_id: UUID, version: int) -> StrategyConfig:
    config = (
        db.query(StrategyConfig)
        .filter(StrategyConfig.topic_id == topic_id, StrategyConfig.version == version)
        .first()
    )
    if not config:
        raise NotFoundError(
            "Strategy version not found",
            details={"topic_id": str(topic_id), "version": version},
        )
    return config


def list_versions(db: Session, topic_id: UUID) -> List[StrategyConfig]:
    """Full lineage for a topic, newest first."""
    load_topic(db, topic_id)
    return (
        db.query(StrategyConfig)
        .filter(StrategyConfig.topic_id == topic_id)
        .order_by(StrategyConfig.version.desc())
        .all()
    )


def lineage(db: Session, topic_id: UUID) -> List[Dict[str, Any]]:
    """Serialized version history for reporting, newest first."""
    return [
        StrategyConfigOut.model_validate(config).model_dump(mode="json")
        for config in list_versions(db, topic_id)
    ]


def get_active(db: Session, topic_id: UUID) -> StrategyConfig:
    topic = load_topic(db, topic_id)
    if topic.active_version is None:
        raise NotFoundError(
            "Topic has no strategy yet; bootstrap required",
            details={"topic_id": str(topic_id)},
        )
    return get_version(db, topic_id, topic.active_version)


def get_candidate(db: Session, topic_id: UUID) -> StrategyConfig | None:
    """The staged candidate branching off the current active version, if any."""
    topic = load_topic(db, topic_id)
    if topic.active_version is None:
        return None
    return (
        db.query(StrategyConfig)
        .filter(
            StrategyConfig.topic_id == topic_id,
            StrategyConfig.status == StrategyStatus.CANDIDATE,
            StrategyConfig.parent_version == topic.active_version,
        )
        .order_by(StrategyConfig.version.desc())
        .first()
    )


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def create_version(
    db: Session,
    topic_id: UUID,
    payload: StrategyPayload | Mapping[str, Any],
    parent_version: int | None = None,
    status: str = StrategyStatus.CANDIDATE,
    rollout_percentage: int = 100,
    *,
    commit: bool = True,
) -> StrategyConfig:
    """
    Append a new version to the topic's lineage.

    The first version of a topic is always created active, at 100% rollout,
    with no parent, whatever the caller asked for. Later versions may be
    created as candidates (staged) or directly active (promoted in the same
    transaction).
    """
    parsed = parse_payload(payload)
    validate_rollout(rollout_percentage)
    if status not in (StrategyStatus.CANDIDATE, StrategyStatus.ACTIVE):
        raise ValidationError(
            "New versions must be created as candidate or active",
            details={"status": status},
        )

    topic = load_topic(db, topic_id, for_update=True)
    current_max = (
        db.query(func.max(StrategyConfig.version))
        .filter(StrategyConfig.topic_id == topic_id)
        .scalar()
    )

    if current_max is None:
        config = StrategyConfig(
            topic_id=topic_id,
            version=0,
            parent_version=None,
            status=StrategyStatus.ACTIVE,
            rollout_percentage=100,
            payload=parsed.to_json(),
        )
        db.add(config)
        topic.active_version = 0
        _commit(db, commit, topic_id=str(topic_id), version=0, step="bootstrap")
        logger.info(
            "Bootstrapped strategy lineage",
            extra={"topic_id": str(topic_id), "version": 0, "step": "bootstrap"},
        )
        return config

    if parent_version is None:
        parent_version = topic.active_version
    else:
        get_version(db, topic_id, parent_version)

    if status == StrategyStatus.CANDIDATE:
        staged = get_candidate(db, topic_id)
        if staged is not None:
            raise ConflictError(
                "A candidate is already staged for the active version",
                details={"topic_id": str(topic_id), "candidate_version": staged.version},
            )

    next_version = current_max + 1
    config = StrategyConfig(
        topic_id=topic_id,
        version=next_version,
        parent_version=parent_version,
        status=StrategyStatus.CANDIDATE,
        rollout_percentage=rollout_percentage,
        payload=parsed.to_json(),
    )
    db.add(config)
    _commit(db, False, topic_id=str(topic_id), version=next_version, step="create_version")

    if status == StrategyStatus.ACTIVE:
        promote(db, topic_id, next_version, commit=False)

    _commit(db, commit, topic_id=str(topic_id), version=next_version, step="create_version")
    logger.info(
        "Created strategy version",
        extra={
            "topic_id": str(topic_id),
            "version": next_version,
            "step": "create_version",
            "outcome": config.status,
        },
    )
    return config


def promote(
    db: Session,
    topic_id: UUID,
    target_version: int,
    *,
    commit: bool = True,
) -> StrategyConfig:
    """
    Make ``target_version`` the active version.

    Archive-then-activate ordering keeps the one-active partial index
    satisfied at every flush; the topic pointer moves in the same
    transaction, so readers never see zero or two active versions.
    """
    topic = load_topic(db, topic_id, for_update=True)
    target = get_version(db, topic_id, target_version)

    if target.status == StrategyStatus.ACTIVE:
        if topic.active_version != target.version:
            raise ConflictError(
                "Active row and topic pointer disagree",
                details={
                    "topic_id": str(topic_id),
                    "active_version": topic.active_version,
                    "target_version": target_version,
                },
            )
        return target
    if target.status != StrategyStatus.CANDIDATE:
        raise ConflictError(
            "Only candidate versions can be promoted",
            details={"topic_id": str(topic_id), "version": target_version, "status": target.status},
        )

    previous = (
        db.query(StrategyConfig)
        .filter(
            StrategyConfig.topic_id == topic_id,
            StrategyConfig.status == StrategyStatus.ACTIVE,
        )
        .with_for_update()
        .all()
    )
    if len(previous) > 1 or (previous and previous[0].version != topic.active_version):
        raise ConflictError(
            "Active lineage changed underneath promotion",
            details={
                "topic_id": str(topic_id),
                "active_rows": [p.version for p in previous],
                "topic_active_version": topic.active_version,
            },
        )

    with translate_storage_errors(topic_id=str(topic_id), version=target_version, step="promote"):
        for prev in previous:
            prev.status = StrategyStatus.ARCHIVED
        db.flush()

        target.status = StrategyStatus.ACTIVE
        target.rollout_percentage = 100
        topic.active_version = target.version
        db.flush()

        # Candidates staged against the old active version lose their parent
        stale = (
            db.query(StrategyConfig)
            .filter(
                StrategyConfig.topic_id == topic_id,
                StrategyConfig.status == StrategyStatus.CANDIDATE,
                StrategyConfig.parent_version != target.version,
            )
            .all()
        )
        for candidate in stale:
            candidate.status = StrategyStatus.ARCHIVED

    _commit(db, commit, topic_id=str(topic_id), version=target_version, step="promote")
    logger.info(
        "Promoted strategy version",
        extra={
            "topic_id": str(topic_id),
            "version": target_version,
            "step": "promote",
            "outcome": "promoted",
        },
    )
    return target


def _rollback_before_retry(retry_state) -> None:
    db = retry_state.args[0] if retry_state.args else retry_state.kwargs.get("db")
    if db is not None:
        db.rollback()
    logger.warning(
        "Promotion conflicted; re-reading and retrying",
        extra={"attempt": retry_state.attempt_number, "step": "promote_retry"},
    )


@retry(
    wait=wait_exponential(
        multiplier=settings.EVOLUTION_RETRY_BASE_SECONDS,
        max=settings.EVOLUTION_RETRY_MAX_SECONDS,
    ),
    stop=stop_after_attempt(settings.EVOLUTION_PROMOTE_MAX_ATTEMPTS),
    retry=retry_if_exception_type(ConflictError),
    before_sleep=_rollback_before_retry,
    reraise=True,
)
def promote_with_retry(db: Session, topic_id: UUID, target_version: int) -> StrategyConfig:
    """
    Standalone promotion (e.g. external approval of a staged candidate).

    ConflictError rolls the session back, re-reads, and retries with
    exponential backoff; after the last attempt the conflict surfaces.
    """
    return promote(db, topic_id, target_version, commit=True)


def archive(
    db: Session,
    topic_id: UUID,
    version: int,
    *,
    commit: bool = True,
) -> StrategyConfig:
    """Reject a staged candidate without promoting it."""
    load_topic(db, topic_id, for_update=True)
    config = get_version(db, topic_id, version)
    if config.status == StrategyStatus.ACTIVE:
        raise ConflictError(
            "Cannot archive the active version; promote a replacement instead",
            details={"topic_id": str(topic_id), "version": version},
        )
    if config.status == StrategyStatus.ARCHIVED:
        return config

    config.status = StrategyStatus.ARCHIVED
    _commit(db, commit, topic_id=str(topic_id), version=version, step="archive")
    logger.info(
        "Archived strategy candidate",
        extra={"topic_id": str(topic_id), "version": version, "step": "archive", "outcome": "archived"},
    )
    return config


def update_rollout(
    db: Session,
    topic_id: UUID,
    version: int,
    rollout_percentage: int,
    *,
    commit: bool = True,
) -> StrategyConfig:
    """Widen or narrow the traffic share of a staged candidate."""
    validate_rollout(rollout_percentage)
    config = get_version(db, topic_id, version)
    if config.status != StrategyStatus.CANDIDATE:
        raise ConflictError(
            "Only a staged candidate has an adjustable rollout",
            details={"topic_id": str(topic_id), "version": version, "status": config.status},
        )
    config.rollout_percentage = rollout_percentage
    _commit(db, commit, topic_id=str(topic_id), version=version, step="update_rollout")
    return config
