"""
Decision Engine

Closed loop: terminal episode -> fresh metrics for the active version ->
ordered rules (see evolution_rules.py) -> new StrategyConfig version ->
optional promotion -> ledger entry.

Per-topic guarantees:
- cycles for one topic are serialized by ``topic_lease`` plus a row lock on
  the topic; cycles for different topics run in parallel;
- a cycle is one transaction: on any failure nothing it wrote survives and
  the prior active version stays in place;
- a cycle with no new terminal episodes since the last one is skipped, so
  repeated invocations never bump the version.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Tuple
from uuid import UUID

from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.celery_app import celery_app
from ..core.config import get_settings
from ..core.db import SessionLocal, translate_storage_errors
from ..core.errors import ConflictError, StrategyEvolutionError, TransientStorageError
from ..models.strategy_config import StrategyConfig
from ..models.topic import Topic
from ..schemas.strategy import ConfigChange, MetricsSnapshot
from .evolution_rules import RuleContext, diff_payloads, evaluate_rules
from .ledger import append_entry
from .locks import topic_lease
from .strategy_store import (
    archive,
    create_version,
    get_active,
    get_candidate,
    load_topic,
    payload_of,
    promote,
    validate_rollout,
)
from .telemetry import calculate_metrics, count_terminal_episodes, latest_terminal_episode

logger = logging.getLogger(__name__)
settings = get_settings()

RULE_CANDIDATE_PROMOTION = "candidate_promotion"


class EvolutionOutcome:
    """Outcome values for EvolutionResult."""
    SKIPPED = "skipped"                        # no new terminal episodes
    NO_CHANGE = "no_change"                    # evaluated, no rule fired
    PROMOTED = "promoted"                      # new version created and made active
    STAGED = "staged"                          # new candidate waiting on rollout
    CANDIDATE_PENDING = "candidate_pending"    # staged candidate still collecting samples
    CANDIDATE_PROMOTED = "candidate_promoted"
    CANDIDATE_ARCHIVED = "candidate_archived"
    FAILED = "failed"


@dataclass
class EvolutionResult:
    topic_id: UUID
    outcome: str
    from_version: int | None = None
    to_version: int | None = None
    rules: Tuple[str, ...] = ()
    reason: str | None = None
    changes: Tuple[ConfigChange, ...] = ()
    metrics: MetricsSnapshot | None = None
    error: str | None = None

    @property
    def created_version(self) -> bool:
        return self.outcome in (EvolutionOutcome.PROMOTED, EvolutionOutcome.STAGED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic_id": str(self.topic_id),
            "outcome": self.outcome,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "rules": list(self.rules),
            "reason": self.reason,
            "changes": [c.model_dump(mode="json") for c in self.changes],
            "metrics": self.metrics.model_dump(mode="json") if self.metrics else None,
            "error": self.error,
        }


def _rollout_for(outcome_corrective: bool, requested: int | None) -> int:
    if requested is not None:
        return requested
    if outcome_corrective:
        return settings.EVOLUTION_DEFAULT_ROLLOUT
    return settings.EVOLUTION_EXPLORATORY_ROLLOUT


def _evolve_active(
    db: Session,
    topic_id: UUID,
    active: StrategyConfig,
    rollout_percentage: int | None,
) -> EvolutionResult:
    metrics = calculate_metrics(
        db,
        topic_id,
        version=active.version,
        window_size=settings.EVOLUTION_METRICS_WINDOW,
    )
    ctx = RuleContext(
        metrics=metrics,
        payload=payload_of(active),
        min_episodes=settings.EVOLUTION_MIN_EPISODES,
    )
    outcome = evaluate_rules(ctx)
    if not outcome.changed:
        return EvolutionResult(
            topic_id=topic_id,
            outcome=EvolutionOutcome.NO_CHANGE,
            from_version=active.version,
            metrics=metrics,
        )

    rollout = _rollout_for(outcome.corrective, rollout_percentage)
    new_config = create_version(
        db,
        topic_id,
        outcome.payload,
        parent_version=active.version,
        rollout_percentage=rollout,
        commit=False,
    )
    if rollout == 100:
        promote(db, topic_id, new_config.version, commit=False)

    append_entry(
        db,
        topic_id,
        active.version,
        new_config.version,
        outcome.reason,
        outcome.changes,
        metrics,
        commit=False,
    )
    return EvolutionResult(
        topic_id=topic_id,
        outcome=EvolutionOutcome.PROMOTED if rollout == 100 else EvolutionOutcome.STAGED,
        from_version=active.version,
        to_version=new_config.version,
        rules=outcome.fired,
        reason=outcome.reason,
        changes=outcome.changes,
        metrics=metrics,
    )


def _resolve_candidate(
    db: Session,
    topic_id: UUID,
    active: StrategyConfig,
    candidate: StrategyConfig,
) -> EvolutionResult:
    """
    Promote or archive a staged candidate once it has enough samples.

    The candidate wins when its save rate is at least the active version's
    and its failure rate is no worse.
    """
    candidate_metrics = calculate_metrics(db, topic_id, version=candidate.version)
    pending = EvolutionResult(
        topic_id=topic_id,
        outcome=EvolutionOutcome.CANDIDATE_PENDING,
        from_version=active.version,
        to_version=candidate.version,
        metrics=candidate_metrics,
    )
    if not settings.EVOLUTION_AUTO_RESOLVE_CANDIDATES:
        return pending
    if candidate_metrics.episode_count < settings.EVOLUTION_CANDIDATE_MIN_EPISODES:
        return pending

    active_metrics = calculate_metrics(db, topic_id, version=active.version)
    reason = (
        f"{RULE_CANDIDATE_PROMOTION}: candidate v{candidate.version} save rate "
        f"{round(candidate_metrics.avg_save_rate * 100)}% vs active v{active.version} "
        f"{round(active_metrics.avg_save_rate * 100)}%, failure rate "
        f"{round(candidate_metrics.failure_rate * 100)}% vs "
        f"{round(active_metrics.failure_rate * 100)}%"
    )

    wins = (
        candidate_metrics.avg_save_rate >= active_metrics.avg_save_rate
        and candidate_metrics.failure_rate <= active_metrics.failure_rate
    )
    if not wins:
        archive(db, topic_id, candidate.version, commit=False)
        return EvolutionResult(
            topic_id=topic_id,
            outcome=EvolutionOutcome.CANDIDATE_ARCHIVED,
            from_version=active.version,
            to_version=candidate.version,
            rules=(RULE_CANDIDATE_PROMOTION,),
            reason=f"{reason} - candidate underperformed",
            metrics=candidate_metrics,
        )

    changes = tuple(diff_payloads(payload_of(active), payload_of(candidate)))
    promote(db, topic_id, candidate.version, commit=False)
    append_entry(
        db,
        topic_id,
        active.version,
        candidate.version,
        f"{reason} - promoting staged candidate",
        changes,
        candidate_metrics,
        commit=False,
    )
    return EvolutionResult(
        topic_id=topic_id,
        outcome=EvolutionOutcome.CANDIDATE_PROMOTED,
        from_version=active.version,
        to_version=candidate.version,
        rules=(RULE_CANDIDATE_PROMOTION,),
        reason=reason,
        changes=changes,
        metrics=candidate_metrics,
    )


def _advance_cursor(db: Session, topic: Topic, terminal_count: int) -> None:
    latest = latest_terminal_episode(db, topic.id)
    topic.evaluated_episode_count = terminal_count
    topic.last_evaluated_episode_id = latest.id if latest else None
    topic.last_evaluated_at = datetime.utcnow()


def _run_cycle(
    db: Session,
    topic_id: UUID,
    rollout_percentage: int | None,
    force: bool,
) -> EvolutionResult:
    db.expire_all()
    topic = load_topic(db, topic_id, for_update=True)

    terminal_count = count_terminal_episodes(db, topic_id)
    if not force and terminal_count <= (topic.evaluated_episode_count or 0):
        logger.info(
            "No new episodes since last evaluation; skipping",
            extra={"topic_id": str(topic_id), "step": "evaluate", "outcome": EvolutionOutcome.SKIPPED},
        )
        db.rollback()
        return EvolutionResult(topic_id=topic_id, outcome=EvolutionOutcome.SKIPPED)

    active = get_active(db, topic_id)
    candidate = get_candidate(db, topic_id)
    if candidate is not None:
        result = _resolve_candidate(db, topic_id, active, candidate)
    else:
        result = _evolve_active(db, topic_id, active, rollout_percentage)

    _advance_cursor(db, topic, terminal_count)
    with translate_storage_errors(topic_id=str(topic_id), step="evaluate"):
        db.commit()
    return result


def _retry_logger(topic_id: UUID):
    def _log(retry_state) -> None:
        logger.warning(
            "Evolution cycle conflicted; re-reading and retrying",
            extra={
                "topic_id": str(topic_id),
                "attempt": retry_state.attempt_number,
                "step": "evaluate",
            },
        )

    return _log


def evaluate_topic(
    db: Session,
    topic_id: UUID,
    rollout_percentage: int | None = None,
    *,
    force: bool = False,
) -> EvolutionResult:
    """
    Run one decision cycle for ``topic_id``.

    ``rollout_percentage`` overrides the configured default for a version
    created in this cycle; 100 promotes it immediately, anything lower leaves
    it staged. ``force`` re-evaluates even without new episodes.

    ConflictError (e.g. a promotion racing another writer) rolls back,
    re-reads and retries with exponential backoff; after the last attempt it
    surfaces to the caller. Other errors roll back and propagate.
    """
    if rollout_percentage is not None:
        validate_rollout(rollout_percentage)

    logger.info("Starting evolution cycle", extra={"topic_id": str(topic_id), "step": "evaluate"})
    with topic_lease(topic_id):
        retrying = Retrying(
            wait=wait_exponential(
                multiplier=settings.EVOLUTION_RETRY_BASE_SECONDS,
                max=settings.EVOLUTION_RETRY_MAX_SECONDS,
            ),
            stop=stop_after_attempt(settings.EVOLUTION_PROMOTE_MAX_ATTEMPTS),
            retry=retry_if_exception_type(ConflictError),
            before_sleep=_retry_logger(topic_id),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                try:
                    result = _run_cycle(db, topic_id, rollout_percentage, force)
                except Exception:
                    db.rollback()
                    raise

    logger.info(
        "Evolution cycle finished",
        extra={
            "topic_id": str(topic_id),
            "version": result.to_version,
            "step": "evaluate",
            "outcome": result.outcome,
            "rules": list(result.rules),
        },
    )
    return result


@celery_app.task(
    name="app.services.evolution.run_evolution_cycle",
    bind=True,
    queue="evolution",
    autoretry_for=(TransientStorageError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 5},
)
def run_evolution_cycle(self, topic_id: str) -> Dict[str, Any]:
    """
    Worker entry point, enqueued whenever an episode reaches a terminal status.

    Transient storage failures are retried by Celery with backoff. Any other
    engine error is logged and the cycle skipped: the active strategy is left
    as it was and episode recording is unaffected.
    """
    db: Session = SessionLocal()
    try:
        return evaluate_topic(db, UUID(topic_id)).to_dict()
    except TransientStorageError:
        db.rollback()
        logger.warning(
            "Evolution cycle hit a transient storage error; will retry",
            extra={"topic_id": topic_id, "step": "evaluate"},
        )
        raise
    except StrategyEvolutionError as exc:
        db.rollback()
        logger.exception(
            "Evolution cycle failed; active strategy unchanged",
            extra={
                "topic_id": topic_id,
                "step": "evaluate",
                "outcome": EvolutionOutcome.FAILED,
                "details": exc.details,
            },
        )
        return EvolutionResult(
            topic_id=UUID(topic_id),
            outcome=EvolutionOutcome.FAILED,
            error=str(exc),
        ).to_dict()
    finally:
        db.close()
