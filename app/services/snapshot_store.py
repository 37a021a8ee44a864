"""
Snapshot Store - durable write-through storage for in-memory aggregates
"""
import copy
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.snapshot import StateSnapshot

logger = logging.getLogger(__name__)


class SqlSnapshotStore:
    """Stores each named snapshot as one row in ``state_snapshots``."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def load(self, name: str) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as session:
            row = await session.get(StateSnapshot, name)
            if row is None:
                return None
            logger.info(f"Loaded snapshot {name} (version {row.version}, updated {row.updated_at})")
            return copy.deepcopy(row.payload)

    async def save_snapshot(self, name: str, payload: Dict[str, Any]) -> None:
        async with self._session_factory() as session:
            row = await session.get(StateSnapshot, name, with_for_update=True)
            now = datetime.now(timezone.utc).replace(tzinfo=None)
            if row is None:
                session.add(StateSnapshot(name=name, payload=payload, version=1, updated_at=now))
            else:
                row.payload = payload
                row.version = (row.version or 0) + 1
                row.updated_at = now
            await session.commit()


class MemorySnapshotStore:
    """Process-local store. State does not survive a restart."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self.save_count = 0

    async def load(self, name: str) -> Optional[Dict[str, Any]]:
        raw = self._data.get(name)
        return json.loads(raw) if raw is not None else None

    async def save_snapshot(self, name: str, payload: Dict[str, Any]) -> None:
        # Serialize eagerly so unserializable state fails here, as it would in SQL
        self._data[name] = json.dumps(payload)
        self.save_count += 1
