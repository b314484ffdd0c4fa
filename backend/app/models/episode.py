from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, Index, Uuid
from datetime import datetime
import uuid

from ..core.db import Base


class EpisodeStatus:
    """Status values for Episode."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class Episode(Base):
    __tablename__ = "episodes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    topic_id = Column(Uuid(as_uuid=True), ForeignKey("topics.id"), nullable=False)
    strategy_version = Column(Integer, nullable=False)
    resource_id = Column(String(255), nullable=True)  # caller/resource the run was bucketed on
    query = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=EpisodeStatus.PENDING)

    sources_returned = Column(JSON, nullable=False, default=list)  # ordered source refs
    sources_saved = Column(JSON, nullable=False, default=list)     # subset of sources_returned
    followup_count = Column(Integer, nullable=False, default=0)
    tool_usage = Column(JSON, nullable=True)                       # opaque, owned by the agent runner

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_episodes_topic_version", "topic_id", "strategy_version"),
        Index("ix_episodes_topic_created", "topic_id", "created_at"),
    )
