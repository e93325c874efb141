from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from fieldday.app_storage import load_json, save_json
from fieldday.core.store.base import StoreWriteError
from fieldday.core.store.providers.memory import MemoryPathStore


class LocalPathStore(MemoryPathStore):
    """MemoryPathStore persisted to a single JSON file."""

    name = "local"

    def __init__(self, path: Path, *, latency: float = 0.0) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(load_json(self.path, default={}) if self.path.exists() else None, latency=latency)

    def _persist(self, tree: Optional[Dict[str, Any]]) -> None:
        if not save_json(self.path, tree or {}):
            raise StoreWriteError(f"Failed to write local store {self.path}")
