"""
Evolution Ledger

Append-only record of every strategy version transition. Entries are
inserted and read, never updated or deleted.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from ..core.db import translate_storage_errors
from ..core.errors import ValidationError
from ..models.strategy_evolution_log import StrategyEvolutionLog
from ..schemas.strategy import ConfigChange, EvolutionLogOut, MetricsSnapshot

logger = logging.getLogger(__name__)


def append_entry(
    db: Session,
    topic_id: UUID,
    from_version: int,
    to_version: int,
    reason: str,
    changes: Sequence[ConfigChange],
    metrics: MetricsSnapshot | None = None,
    *,
    commit: bool = True,
) -> StrategyEvolutionLog:
    if from_version == to_version:
        raise ValidationError(
            "Ledger entries must describe a transition between two versions",
            details={"from_version": from_version, "to_version": to_version},
        )
    if not reason or not reason.strip():
        raise ValidationError("Ledger entries need a human-readable reason")

    entry = StrategyEvolutionLog(
        topic_id=topic_id,
        from_version=from_version,
        to_version=to_version,
        reason=reason,
        changes=[c.model_dump(mode="json") for c in changes],
        metrics=metrics.model_dump(mode="json") if metrics is not None else None,
    )
    db.add(entry)
    with translate_storage_errors(topic_id=str(topic_id), version=to_version, step="ledger"):
        if commit:
            db.commit()
        else:
            db.flush()

    logger.info(
        "Recorded strategy transition",
        extra={
            "topic_id": str(topic_id),
            "version": to_version,
            "step": "ledger",
        },
    )
    return entry


def list_entries(
    db: Session,
    topic_id: UUID,
    limit: int | None = None,
    newest_first: bool = False,
) -> List[StrategyEvolutionLog]:
    """Ledger entries in creation order (oldest first unless ``newest_first``)."""
    query = db.query(StrategyEvolutionLog).filter(StrategyEvolutionLog.topic_id == topic_id)
    if newest_first:
        query = query.order_by(StrategyEvolutionLog.created_at.desc(), StrategyEvolutionLog.id.desc())
    else:
        query = query.order_by(StrategyEvolutionLog.created_at.asc(), StrategyEvolutionLog.id.asc())
    if limit is not None:
        query = query.limit(max(1, limit))
    return query.all()


def latest_entry(db: Session, topic_id: UUID) -> StrategyEvolutionLog | None:
    entries = list_entries(db, topic_id, limit=1, newest_first=True)
    return entries[0] if entries else None


def entry_for_transition(
    db: Session,
    topic_id: UUID,
    from_version: int,
    to_version: int,
) -> StrategyEvolutionLog | None:
    return (
        db.query(StrategyEvolutionLog)
        .filter(
            StrategyEvolutionLog.topic_id == topic_id,
            StrategyEvolutionLog.from_version == from_version,
            StrategyEvolutionLog.to_version == to_version,
        )
        .order_by(StrategyEvolutionLog.id.asc())
        .first()
    )


def timeline(db: Session, topic_id: UUID) -> List[Dict[str, Any]]:
    """Serialized ledger for UI/reporting collaborators, oldest first."""
    return [
        EvolutionLogOut.model_validate(entry).model_dump(mode="json")
        for entry in list_entries(db, topic_id)
    ]
