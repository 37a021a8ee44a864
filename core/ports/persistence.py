from typing import Any, Dict, Optional, Protocol


class SnapshotStore(Protocol):
    async def load(self, name: str) -> Optional[Dict[str, Any]]: ...

    async def save_snapshot(self, name: str, payload: Dict[str, Any]) -> None: ...
