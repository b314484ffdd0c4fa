from sqlalchemy import Column, Integer, Text, DateTime, JSON, ForeignKey, Uuid
from datetime import datetime

from ..core.db import Base


class StrategyEvolutionLog(Base):
    """
    Append-only ledger entry for one version transition.

    Rows are only ever inserted (see services/ledger.py); nothing updates
    or deletes them.
    """
    __tablename__ = "strategy_evolution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic_id = Column(Uuid(as_uuid=True), ForeignKey("topics.id"), index=True, nullable=False)
    from_version = Column(Integer, nullable=False)
    to_version = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)      # rule names + triggering metric values
    changes = Column(JSON, nullable=False)     # [{field, old_value, new_value}, ...]
    metrics = Column(JSON, nullable=True)      # snapshot that triggered the transition
    created_at = Column(DateTime, default=datetime.utcnow, index=True, nullable=False)
