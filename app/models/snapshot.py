"""
State Snapshot Model

Each in-memory aggregate (ledger, withdrawal security) is written through as
one JSON document keyed by name.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String

from app.db import Base


class StateSnapshot(Base):
    __tablename__ = "state_snapshots"

    name = Column(String(64), primary_key=True)
    payload = Column(JSON, nullable=False)
    version = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc).replace(tzinfo=None), nullable=False)
