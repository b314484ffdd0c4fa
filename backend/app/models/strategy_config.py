"""
StrategyConfig model: one immutable, versioned configuration snapshot.

Rows form a lineage forest per topic through ``parent_version``. A row's
payload, version and parent never change after insert; only ``status``
(candidate -> active -> archived, or candidate -> archived) and the
``rollout_percentage`` of a staged candidate move.
"""
from datetime import datetime
import uuid

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
    Uuid,
    text,
)

from ..core.db import Base


class StrategyStatus:
    """Status values for StrategyConfig."""
    CANDIDATE = "candidate"
    ACTIVE = "active"
    ARCHIVED = "archived"

    ALL = (CANDIDATE, ACTIVE, ARCHIVED)


class StrategyConfig(Base):
    __tablename__ = "strategy_configs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    topic_id = Column(Uuid(as_uuid=True), ForeignKey("topics.id"), nullable=False)
    version = Column(Integer, nullable=False)
    parent_version = Column(Integer, nullable=True)
    status = Column(String(16), nullable=False)
    rollout_percentage = Column(Integer, nullable=False, default=100)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        # Version allocation is a compare-and-set on this constraint
        UniqueConstraint("topic_id", "version", name="uq_strategy_configs_topic_version"),
        # At most one active row per topic
        Index(
            "uq_strategy_configs_one_active",
            "topic_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_strategy_configs_topic_status", "topic_id", "status"),
    )
