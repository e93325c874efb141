from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fieldday.constants import APP_NAME
from fieldday.core.store.base import (
    ErrorCallback,
    PathStore,
    PushIdGenerator,
    StoreOfflineError,
    StoreWriteError,
    Unsubscribe,
    ValueCallback,
    is_related,
    join_path,
    split_path,
)

LOGGER = logging.getLogger(APP_NAME)


@dataclass
class _Listener:
    path: str
    on_value: ValueCallback
    on_error: Optional[ErrorCallback]
    active: bool = True


def _prune(value: Any) -> Any:
    """Drop None children and collapse empty dicts to None."""
    if isinstance(value, dict):
        out = {}
        for key, child in value.items():
            child = _prune(child)
            if child is not None:
                out[str(key)] = child
        return out or None
    return value


def read_path(tree: Any, path: str) -> Any:
    node = tree
    for part in split_path(path):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def write_path(tree: Optional[Dict[str, Any]], path: str, value: Any) -> Optional[Dict[str, Any]]:
    """Return ``tree`` with ``value`` placed at ``path`` (None deletes)."""
    parts = split_path(path)
    value = _prune(copy.deepcopy(value))
    if not parts:
        if value is not None and not isinstance(value, dict):
            raise StoreWriteError("the store root only holds objects")
        return value
    root: Dict[str, Any] = tree if isinstance(tree, dict) else {}
    node = root
    trail = []
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        trail.append((node, part))
        node = child
    if value is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = value
    # collapse parents emptied by a delete
    for parent, key in reversed(trail):
        if parent[key]:
            break
        parent.pop(key, None)
    return root or None


class MemoryPathStore(PathStore):
    """In-process tree store with synchronous change notification."""

    name = "memory"

    def __init__(self, initial: Optional[Dict[str, Any]] = None, *, latency: float = 0.0) -> None:
        self._tree: Optional[Dict[str, Any]] = _prune(copy.deepcopy(initial)) if initial else None
        self._listeners: List[_Listener] = []
        self._push_id = PushIdGenerator()
        self.latency = latency
        self.online = True

    # ---- reads ----

    def snapshot(self, path: str = "") -> Any:
        return copy.deepcopy(read_path(self._tree, path))

    async def get(self, path: str) -> Any:
        await self._round_trip()
        return self.snapshot(path)

    def subscribe(
        self,
        path: str,
        on_value: ValueCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        listener = _Listener(join_path(path), on_value, on_error)
        self._listeners.append(listener)
        self._deliver(listener, self.snapshot(listener.path))

        def unsubscribe() -> None:
            listener.active = False
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---- writes ----

    async def set(self, path: str, value: Any) -> None:
        await self._round_trip(write=True)
        tree = write_path(copy.deepcopy(self._tree), path, value)
        self._commit(tree, [join_path(path)])

    async def update(self, path: str, updates: Dict[str, Any]) -> None:
        await self._round_trip(write=True)
        tree = copy.deepcopy(self._tree)
        changed: List[str] = []
        for rel, value in updates.items():
            full = join_path(path, rel)
            tree = write_path(tree, full, value)
            changed.append(full)
        self._commit(tree, changed or [join_path(path)])

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    def push_key(self, path: str) -> str:
        return self._push_id()

    # ---- internals ----

    async def _round_trip(self, write: bool = False) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)
        if write and not self.online:
            raise StoreOfflineError(f"{self.name} store is offline")

    def _persist(self, tree: Optional[Dict[str, Any]]) -> None:
        """Hook for providers that keep a durable copy."""

    def _commit(self, tree: Optional[Dict[str, Any]], changed: List[str]) -> None:
        watched = [ln for ln in self._listeners if any(is_related(ln.path, c) for c in changed)]
        before = [read_path(self._tree, ln.path) for ln in watched]
        self._persist(tree)
        self._tree = tree
        LOGGER.debug("store_write provider=%s paths=%s", self.name, ",".join(changed))
        for listener, old in zip(watched, before):
            new = read_path(self._tree, listener.path)
            if new != old:
                self._deliver(listener, copy.deepcopy(new))

    def _deliver(self, listener: _Listener, value: Any) -> None:
        if not listener.active:
            return
        try:
            listener.on_value(value)
        except Exception as exc:
            LOGGER.exception("subscriber for %s failed: %s", listener.path or "/", exc)
