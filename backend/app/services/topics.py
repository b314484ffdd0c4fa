from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..core.db import translate_storage_errors
from ..core.errors import ValidationError
from ..models.topic import Topic
from ..schemas.strategy import MAX_TITLE_LEN, StrategyPayload, TopicOut
from .strategy_store import create_version, default_payload, load_topic, parse_payload

logger = logging.getLogger(__name__)


def create_topic(
    db: Session,
    title: str,
    description: str | None = None,
    owner_id: str | None = None,
    payload: StrategyPayload | Mapping[str, Any] | None = None,
) -> Topic:
    """
    Create a research topic and bootstrap its strategy lineage (version 0,
    active, 100% rollout) in the same transaction.
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("title must not be empty")
    if len(title) > MAX_TITLE_LEN:
        raise ValidationError(f"title must be at most {MAX_TITLE_LEN} characters")

    initial = parse_payload(payload) if payload is not None else default_payload()

    topic = Topic(title=title, description=description, owner_id=owner_id)
    db.add(topic)
    try:
        with translate_storage_errors(step="create_topic"):
            db.flush()
        create_version(db, topic.id, initial, commit=False)
        with translate_storage_errors(topic_id=str(topic.id), step="create_topic"):
            db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(topic)
    logger.info(
        "Topic created",
        extra={"topic_id": str(topic.id), "version": topic.active_version, "step": "create_topic"},
    )
    return topic


def get_topic(db: Session, topic_id: UUID) -> Topic:
    return load_topic(db, topic_id)


def topic_summary(db: Session, topic_id: UUID) -> Dict[str, Any]:
    return TopicOut.model_validate(get_topic(db, topic_id)).model_dump(mode="json")


def list_topics(db: Session, owner_id: str | None = None) -> List[Topic]:
    query = db.query(Topic)
    if owner_id is not None:
        query = query.filter(Topic.owner_id == owner_id)
    return query.order_by(Topic.created_at.desc()).all()


def search_topics(db: Session, query: str, owner_id: str | None = None) -> List[Topic]:
    term = (query or "").strip()
    if not term:
        return list_topics(db, owner_id=owner_id)

    pattern = f"%{term}%"
    q = db.query(Topic).filter(
        or_(Topic.title.ilike(pattern), Topic.description.ilike(pattern))
    )
    if owner_id is not None:
        q = q.filter(Topic.owner_id == owner_id)
    return q.order_by(Topic.created_at.desc()).all()
