"""
Telemetry Aggregator

Episode lifecycle (pending -> running -> completed | failed) as reported by
the agent runner, plus the metrics the decision engine consumes.

Recording needs no cross-episode locking: every insert is independent and
idempotent by episode id, so callers may retry on TransientStorageError.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.celery_app import celery_app
from ..core.config import get_settings
from ..core.db import translate_storage_errors
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models.episode import Episode, EpisodeStatus
from ..models.strategy_config import StrategyConfig
from ..models.topic import Topic
from ..schemas.strategy import (
    MAX_ERROR_MESSAGE_LEN,
    EpisodeAnalysis,
    EpisodeCreate,
    EpisodeOut,
    MetricsSnapshot,
)

logger = logging.getLogger(__name__)
settings = get_settings()

# Per-episode analysis thresholds
ANALYSIS_LOW_SAVE_RATE = 0.3
ANALYSIS_HIGH_SAVE_RATE = 0.7
ANALYSIS_MAX_FOLLOWUPS = 10

_ALLOWED_TRANSITIONS = {
    EpisodeStatus.PENDING: {EpisodeStatus.RUNNING, EpisodeStatus.FAILED},
    EpisodeStatus.RUNNING: {EpisodeStatus.COMPLETED, EpisodeStatus.FAILED},
    EpisodeStatus.COMPLETED: set(),
    EpisodeStatus.FAILED: set(),
}


def episode_save_rate(sources_returned: Sequence[Any], sources_saved: Sequence[Any]) -> float:
    """|saved| / |returned|; an episode that returned nothing scores 0."""
    if not sources_returned:
        return 0.0
    return len(sources_saved) / len(sources_returned)


def _ensure_strategy_exists(db: Session, topic_id: UUID, version: int) -> None:
    topic = db.query(Topic.id).filter(Topic.id == topic_id).first()
    if not topic:
        raise NotFoundError("Topic not found", details={"topic_id": str(topic_id)})
    exists = (
        db.query(StrategyConfig.id)
        .filter(StrategyConfig.topic_id == topic_id, StrategyConfig.version == version)
        .first()
    )
    if not exists:
        raise NotFoundError(
            "Strategy version not found",
            details={"topic_id": str(topic_id), "version": version},
        )


def _validate_sources(sources_returned: Sequence[Any], sources_saved: Sequence[Any]) -> None:
    if isinstance(sources_returned, (str, bytes)) or isinstance(sources_saved, (str, bytes)):
        raise ValidationError("sources must be lists of source references")
    unknown = [s for s in sources_saved if s not in sources_returned]
    if unknown:
        raise ValidationError(
            "sources_saved must be a subset of sources_returned",
            details={"unknown_saved": unknown[:5]},
        )


def _validate_error_message(error_message: str) -> None:
    if not error_message or not error_message.strip():
        raise ValidationError("failed episodes must carry an error_message")
    if len(error_message) > MAX_ERROR_MESSAGE_LEN:
        raise ValidationError(
            f"error_message must be at most {MAX_ERROR_MESSAGE_LEN} characters",
            details={"length": len(error_message)},
        )


def get_episode(db: Session, episode_id: UUID) -> Episode:
    episode = db.query(Episode).filter(Episode.id == episode_id).first()
    if not episode:
        raise NotFoundError("Episode not found", details={"episode_id": str(episode_id)})
    return episode


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def create_episode(db: Session, data: EpisodeCreate) -> Episode:
    """Open a pending episode for a run that is about to start."""
    _ensure_strategy_exists(db, data.topic_id, data.strategy_version)

    if data.id is not None:
        existing = db.query(Episode).filter(Episode.id == data.id).first()
        if existing:
            return existing

    episode = Episode(
        topic_id=data.topic_id,
        strategy_version=data.strategy_version,
        resource_id=data.resource_id,
        query=data.query,
        status=EpisodeStatus.PENDING,
        sources_returned=[],
        sources_saved=[],
        followup_count=0,
    )
    if data.id is not None:
        episode.id = data.id
    db.add(episode)
    with translate_storage_errors(topic_id=str(data.topic_id), step="create_episode"):
        db.commit()
    db.refresh(episode)
    return episode


def record_episode(
    db: Session,
    *,
    topic_id: UUID,
    strategy_version: int,
    query: str,
    status: str,
    sources_returned: Sequence[Any] = (),
    sources_saved: Sequence[Any] = (),
    followup_count: int = 0,
    tool_usage: Dict[str, Any] | None = None,
    error_message: str | None = None,
    episode_id: UUID | None = None,
    resource_id: str | None = None,
    created_at: datetime | None = None,
) -> Episode:
    """
    Append a finished (or in-flight) episode in one call.

    Idempotent by ``episode_id``: a retry after a transient failure returns
    the row that already landed instead of inserting a duplicate.
    """
    if episode_id is not None:
        existing = db.query(Episode).filter(Episode.id == episode_id).first()
        if existing:
            return existing

    if status not in _ALLOWED_TRANSITIONS:
        raise ValidationError("Unknown episode status", details={"status": status})
    if followup_count < 0:
        raise ValidationError("followup_count must be non-negative")
    if status == EpisodeStatus.FAILED:
        _validate_error_message(error_message)
    elif error_message:
        raise ValidationError("only failed episodes carry an error_message")
    _validate_sources(sources_returned, sources_saved)
    _ensure_strategy_exists(db, topic_id, strategy_version)

    now = datetime.utcnow()
    episode = Episode(
        topic_id=topic_id,
        strategy_version=strategy_version,
        resource_id=resource_id,
        query=query,
        status=status,
        sources_returned=list(sources_returned),
        sources_saved=list(sources_saved),
        followup_count=followup_count,
        tool_usage=tool_usage,
        error_message=error_message,
        created_at=created_at or now,
        completed_at=now if status in EpisodeStatus.TERMINAL else None,
    )
    if episode_id is not None:
        episode.id = episode_id
    db.add(episode)
    with translate_storage_errors(topic_id=str(topic_id), step="record_episode"):
        db.commit()
    db.refresh(episode)
    return episode


def _transition(db: Session, episode_id: UUID, new_status: str) -> Episode:
    episode = get_episode(db, episode_id)
    if new_status not in _ALLOWED_TRANSITIONS[episode.status]:
        raise ConflictError(
            "Invalid episode transition",
            details={
                "episode_id": str(episode_id),
                "from_status": episode.status,
                "to_status": new_status,
            },
        )
    episode.status = new_status
    return episode


def start_episode(db: Session, episode_id: UUID) -> Episode:
    episode = _transition(db, episode_id, EpisodeStatus.RUNNING)
    episode.started_at = datetime.utcnow()
    with translate_storage_errors(episode_id=str(episode_id), step="start_episode"):
        db.commit()
    return episode


def complete_episode(
    db: Session,
    episode_id: UUID,
    *,
    sources_returned: Sequence[Any],
    sources_saved: Sequence[Any],
    followup_count: int = 0,
    tool_usage: Dict[str, Any] | None = None,
    trigger_evolution: bool = True,
) -> Episode:
    if followup_count < 0:
        raise ValidationError("followup_count must be non-negative")
    _validate_sources(sources_returned, sources_saved)

    episode = _transition(db, episode_id, EpisodeStatus.COMPLETED)
    episode.sources_returned = list(sources_returned)
    episode.sources_saved = list(sources_saved)
    episode.followup_count = followup_count
    episode.tool_usage = tool_usage
    episode.completed_at = datetime.utcnow()
    with translate_storage_errors(episode_id=str(episode_id), step="complete_episode"):
        db.commit()

    logger.info(
        "Episode completed",
        extra={
            "episode_id": str(episode.id),
            "topic_id": str(episode.topic_id),
            "version": episode.strategy_version,
            "step": "episode_completed",
        },
    )
    if trigger_evolution:
        schedule_evolution(episode.topic_id)
    return episode


def fail_episode(
    db: Session,
    episode_id: UUID,
    error_message: str,
    *,
    sources_returned: Sequence[Any] = (),
    sources_saved: Sequence[Any] = (),
    followup_count: int = 0,
    tool_usage: Dict[str, Any] | None = None,
    trigger_evolution: bool = True,
) -> Episode:
    _validate_error_message(error_message)
    _validate_sources(sources_returned, sources_saved)

    episode = _transition(db, episode_id, EpisodeStatus.FAILED)
    episode.error_message = error_message
    episode.sources_returned = list(sources_returned)
    episode.sources_saved = list(sources_saved)
    episode.followup_count = followup_count
    episode.tool_usage = tool_usage
    episode.completed_at = datetime.utcnow()
    with translate_storage_errors(episode_id=str(episode_id), step="fail_episode"):
        db.commit()

    logger.info(
        "Episode failed",
        extra={
            "episode_id": str(episode.id),
            "topic_id": str(episode.topic_id),
            "version": episode.strategy_version,
            "step": "episode_failed",
        },
    )
    if trigger_evolution:
        schedule_evolution(episode.topic_id)
    return episode


def schedule_evolution(topic_id: UUID) -> None:
    """Enqueue a decision cycle for the topic on the evolution worker."""
    celery_app.send_task(
        "app.services.evolution.run_evolution_cycle",
        args=[str(topic_id)],
        queue="evolution",
    )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def recent_terminal_episodes(
    db: Session,
    topic_id: UUID,
    version: int | None = None,
    window_size: int | None = None,
) -> List[Episode]:
    window = settings.EVOLUTION_METRICS_WINDOW if window_size is None else window_size
    query = db.query(Episode).filter(
        Episode.topic_id == topic_id,
        Episode.status.in_(EpisodeStatus.TERMINAL),
    )
    if version is not None:
        query = query.filter(Episode.strategy_version == version)
    return (
        query.order_by(Episode.created_at.desc(), Episode.id.desc())
        .limit(window)
        .all()
    )


def summarize_episodes(
    topic_id: UUID,
    episodes: Iterable[Episode],
    *,
    version: int | None = None,
    window_size: int,
) -> MetricsSnapshot:
    """Pure reduction of a set of terminal episodes into a metrics snapshot."""
    episodes = list(episodes)
    if not episodes:
        return MetricsSnapshot(topic_id=topic_id, version=version, window_size=window_size)

    count = len(episodes)
    save_rates = [
        episode_save_rate(e.sources_returned or [], e.sources_saved or []) for e in episodes
    ]
    failed = sum(1 for e in episodes if e.status == EpisodeStatus.FAILED)

    return MetricsSnapshot(
        topic_id=topic_id,
        version=version,
        window_size=window_size,
        episode_count=count,
        avg_save_rate=sum(save_rates) / count,
        avg_followup_count=sum(e.followup_count or 0 for e in episodes) / count,
        failure_rate=failed / count,
        total_sources_returned=sum(len(e.sources_returned or []) for e in episodes),
        total_sources_saved=sum(len(e.sources_saved or []) for e in episodes),
        newest_episode_id=episodes[0].id,
    )


def calculate_metrics(
    db: Session,
    topic_id: UUID,
    version: int | None = None,
    window_size: int | None = None,
) -> MetricsSnapshot:
    """
    Metrics over the most recent ``window_size`` completed/failed episodes of
    a topic, optionally restricted to one strategy version.
    """
    window = settings.EVOLUTION_METRICS_WINDOW if window_size is None else window_size
    if window <= 0:
        raise ValidationError("window_size must be positive", details={"window_size": window})
    episodes = recent_terminal_episodes(db, topic_id, version=version, window_size=window)
    return summarize_episodes(topic_id, episodes, version=version, window_size=window)


def count_terminal_episodes(db: Session, topic_id: UUID) -> int:
    return (
        db.query(func.count(Episode.id))
        .filter(Episode.topic_id == topic_id, Episode.status.in_(EpisodeStatus.TERMINAL))
        .scalar()
        or 0
    )


def latest_terminal_episode(db: Session, topic_id: UUID) -> Episode | None:
    return (
        db.query(Episode)
        .filter(Episode.topic_id == topic_id, Episode.status.in_(EpisodeStatus.TERMINAL))
        .order_by(Episode.completed_at.desc(), Episode.created_at.desc())
        .first()
    )


def episode_counts_by_version(db: Session, topic_id: UUID) -> List[Dict[str, int]]:
    rows = (
        db.query(Episode.strategy_version, func.count(Episode.id))
        .filter(Episode.topic_id == topic_id)
        .group_by(Episode.strategy_version)
        .order_by(Episode.strategy_version.asc())
        .all()
    )
    return [{"version": version, "count": count} for version, count in rows]


def episode_history(
    db: Session,
    topic_id: UUID,
    version: int | None = None,
    limit: int | None = None,
) -> List[Dict[str, Any]]:
    """Serialized episodes of every status for reporting, newest first."""
    query = db.query(Episode).filter(Episode.topic_id == topic_id)
    if version is not None:
        query = query.filter(Episode.strategy_version == version)
    query = query.order_by(Episode.created_at.desc(), Episode.id.desc())
    if limit is not None:
        query = query.limit(limit)
    return [EpisodeOut.model_validate(e).model_dump(mode="json") for e in query.all()]


def analyze_episode(db: Session, episode_id: UUID) -> EpisodeAnalysis:
    """
    Single-episode performance summary for reporting.

    The recommendation is advisory only; the decision engine works from
    windowed metrics, never from one episode.
    """
    episode = get_episode(db, episode_id)
    returned = episode.sources_returned or []
    saved = episode.sources_saved or []
    save_rate = episode_save_rate(returned, saved)
    tool_usage = episode.tool_usage or {}
    had_error = episode.status == EpisodeStatus.FAILED

    recommendation = "keep"
    reason = "Performance is satisfactory"
    if had_error:
        recommendation = "rollback"
        reason = "Episode failed with errors"
    elif returned and save_rate < ANALYSIS_LOW_SAVE_RATE:
        recommendation = "evolve"
        reason = f"Low save rate ({round(save_rate * 100)}%) - strategy needs improvement"
    elif episode.followup_count > ANALYSIS_MAX_FOLLOWUPS:
        recommendation = "evolve"
        reason = f"Too many follow-ups ({episode.followup_count}) - strategy may be inefficient"
    elif save_rate > ANALYSIS_HIGH_SAVE_RATE:
        reason = f"High save rate ({round(save_rate * 100)}%) - strategy is performing well"

    return EpisodeAnalysis(
        episode_id=episode.id,
        topic_id=episode.topic_id,
        strategy_version=episode.strategy_version,
        sources_returned=len(returned),
        sources_saved=len(saved),
        save_rate=save_rate,
        followup_count=episode.followup_count,
        tool_usage_count=len(tool_usage),
        had_error=had_error,
        recommendation=recommendation,
        reason=reason,
    )
