from sqlalchemy import Column, Integer, String, Text, DateTime, Uuid
from datetime import datetime
import uuid

from ..core.db import Base


class Topic(Base):
    __tablename__ = "topics"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(String(128), index=True, nullable=True)

    # Pointer into the strategy lineage; only promotion moves it
    active_version = Column(Integer, nullable=True)

    # Decision-engine cursor over terminal episodes
    evaluated_episode_count = Column(Integer, nullable=False, default=0)
    last_evaluated_episode_id = Column(Uuid(as_uuid=True), nullable=True)
    last_evaluated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
