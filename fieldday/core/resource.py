from __future__ import annotations

import asyncio
import copy
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Tuple

from PySide6 import QtCore

from fieldday.constants import APP_NAME, VERSION_KEY
from fieldday.core.store.base import PathStore, ResourceClosedError, StoreError, Unsubscribe, join_path

LOGGER = logging.getLogger(APP_NAME)


class WriteKind(enum.Enum):
    REPLACE = "replace"
    MERGE = "merge"
    APPEND = "append"
    REMOVE = "remove"


class UpdateMode(enum.Enum):
    """What an ``apply`` updater returns."""

    WHOLE_ENTITY = "whole_entity"
    FIELD_ONLY = "field_only"


@dataclass
class WriteRequest:
    kind: WriteKind
    path: str
    payload: Any
    future: "asyncio.Future[bool]"
    bumps_version: bool = False
    silent: bool = True


class SyncedResource(QtCore.QObject):
    """Live, write-serialized binding to one store path.

    Writes go through a FIFO queue drained by a single task, so at most one
    remote write per resource is in flight and they land in submission order.
    Every request carries its own future; a failed write rejects only that
    future and the queue keeps draining.
    """

    valueChanged = QtCore.Signal(object)
    loadingChanged = QtCore.Signal(bool)
    errorOccurred = QtCore.Signal(object)
    versionChanged = QtCore.Signal(int)

    def __init__(self, store: PathStore, path: str, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.store = store
        self._path = join_path(path)
        self._value: Any = None
        self._error: Optional[Exception] = None
        self._version = 0
        self._seeded = False
        self._awaiting_first = False
        self._loading = True
        self._busy = 0
        self._queue: Deque[WriteRequest] = deque()
        self._processing = False
        self._drain_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._closed = False
        self._watchers: List["asyncio.Queue[Any]"] = []

    # ---- state ----

    @property
    def path(self) -> str:
        return self._path

    @property
    def value(self) -> Any:
        return self._value

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    @property
    def version(self) -> int:
        return self._version

    @property
    def loaded(self) -> bool:
        return self._seeded

    @property
    def pending_writes(self) -> int:
        return len(self._queue) + (1 if self._processing else 0)

    @property
    def closed(self) -> bool:
        return self._closed

    # ---- lifecycle ----

    def open(self) -> "SyncedResource":
        if self._unsubscribe is not None:
            return self
        self._closed = False
        self._awaiting_first = True
        self._refresh_loading()
        self._unsubscribe = self.store.subscribe(self._path, self._on_snapshot, self._on_error)
        return self

    def close(self) -> None:
        """Cancel the subscription. Writes already queued still run to completion."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._closed = True
        self._awaiting_first = False
        LOGGER.debug("resource_closed path=/%s pending=%d", self._path, self.pending_writes)

    async def drain(self) -> None:
        """Wait until every write submitted so far has been processed."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def watch(self) -> AsyncIterator[Any]:
        """Yield the current value (once loaded) and every later value."""
        queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._watchers.append(queue)
        try:
            if self._seeded:
                yield self._value
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(queue)

    # ---- writes ----

    async def replace(self, value: Any) -> bool:
        self._check_writable()
        self._apply_local(copy.deepcopy(value))
        return await self._submit(WriteKind.REPLACE, self._path, value, bumps_version=True)

    async def merge_update(self, updates: Dict[str, Any]) -> bool:
        """Patch top-level children; each given key overwrites that whole child."""
        self._check_writable()
        merged = dict(self._value) if isinstance(self._value, dict) else {}
        for key, child in updates.items():
            if child is None:
                merged.pop(key, None)
            else:
                merged[key] = copy.deepcopy(child)
        self._apply_local(merged)
        return await self._submit(WriteKind.MERGE, self._path, dict(updates), bumps_version=True)

    async def partial_update(self, fields: Dict[str, Any], *, silent: bool = False) -> bool:
        """Write ``{**value, **fields}``; ``silent`` leaves the loading flag alone."""
        self._check_writable()
        merged = dict(self._value) if isinstance(self._value, dict) else {}
        merged.update(copy.deepcopy(fields))
        self._apply_local(merged)
        return await self._submit(WriteKind.REPLACE, self._path, merged, bumps_version=True, silent=silent)

    async def apply(
        self,
        updater: Callable[[Any], Any],
        mode: UpdateMode = UpdateMode.WHOLE_ENTITY,
        *,
        silent: bool = False,
    ) -> bool:
        result = updater(copy.deepcopy(self._value))
        if mode is UpdateMode.WHOLE_ENTITY:
            return await self.replace(result)
        if not isinstance(result, dict):
            raise TypeError("a FIELD_ONLY updater must return a dict of fields")
        return await self.partial_update(result, silent=silent)

    async def append_child(self, value: Dict[str, Any]) -> Optional[str]:
        """Store ``value`` under a fresh child key; returns the key or None."""
        try:
            self._check_writable()
            key = self.store.push_key(self._path)
            record = dict(value)
            record["id"] = key
            await self._submit(WriteKind.APPEND, join_path(self._path, key), record)
        except StoreError as exc:
            LOGGER.warning("resource_append_failed path=/%s error=%s", self._path, exc)
            return None
        return key

    async def remove(self, sub_path: str = "") -> bool:
        self._check_writable()
        return await self._submit(WriteKind.REMOVE, join_path(self._path, sub_path), None)

    # ---- queue ----

    def _check_writable(self) -> None:
        if self._closed:
            exc = ResourceClosedError(f"resource /{self._path} is closed")
            self._set_error(exc)
            raise exc

    async def _submit(
        self,
        kind: WriteKind,
        path: str,
        payload: Any,
        *,
        bumps_version: bool = False,
        silent: bool = True,
    ) -> bool:
        self._check_writable()
        loop = asyncio.get_running_loop()
        request = WriteRequest(kind, path, payload, loop.create_future(), bumps_version, silent)
        if not silent:
            self._busy += 1
            self._refresh_loading()
        self._queue.append(request)
        if not self._processing:
            self._processing = True
            self._drain_task = loop.create_task(self._drain())
        return await request.future

    async def _drain(self) -> None:
        try:
            while self._queue:
                request = self._queue.popleft()
                try:
                    await self._perform(request)
                except Exception as exc:
                    self._reject(request, exc)
                else:
                    if not request.future.done():
                        request.future.set_result(True)
                finally:
                    if not request.silent:
                        self._busy -= 1
                        self._refresh_loading()
        finally:
            self._processing = False

    async def _perform(self, request: WriteRequest) -> None:
        stamp = self._version + 1
        if request.kind is WriteKind.REPLACE:
            await self.store.set(request.path, self._stamped(request.payload, stamp))
        elif request.kind is WriteKind.MERGE:
            updates = dict(request.payload)
            updates[VERSION_KEY] = stamp
            await self.store.update(request.path, updates)
        elif request.kind is WriteKind.APPEND:
            await self.store.set(request.path, request.payload)
        else:
            await self.store.remove(request.path)
        LOGGER.debug("resource_write path=/%s kind=%s", request.path, request.kind.value)
        if request.bumps_version and stamp > self._version:
            self._version = stamp
            self.versionChanged.emit(self._version)

    def _reject(self, request: WriteRequest, exc: Exception) -> None:
        LOGGER.warning(
            "resource_write_failed path=/%s kind=%s error=%s",
            request.path,
            request.kind.value,
            exc,
        )
        self._set_error(exc)
        if not request.future.done():
            request.future.set_exception(exc)

    @staticmethod
    def _stamped(payload: Any, stamp: int) -> Any:
        if not isinstance(payload, dict):
            return payload
        out = dict(payload)
        out[VERSION_KEY] = stamp
        return out

    # ---- subscription ----

    def _on_snapshot(self, value: Any) -> None:
        remote = value.get(VERSION_KEY) if isinstance(value, dict) else None
        remote_version = remote if isinstance(remote, int) and not isinstance(remote, bool) else 0
        if not self._seeded:
            self._seeded = True
            self._version = remote_version
            self.versionChanged.emit(self._version)
        elif remote_version > self._version:
            self._version = remote_version
            self.versionChanged.emit(self._version)
        self._awaiting_first = False
        self._apply_local(value)
        self._refresh_loading()

    def _on_error(self, exc: Exception) -> None:
        self._awaiting_first = False
        self._set_error(exc)
        self._refresh_loading()

    def _apply_local(self, value: Any) -> None:
        self._value = value
        self.valueChanged.emit(value)
        for queue in list(self._watchers):
            queue.put_nowait(value)

    def _set_error(self, exc: Exception) -> None:
        self._error = exc
        self.errorOccurred.emit(exc)

    def _refresh_loading(self) -> None:
        loading = self._awaiting_first or self._busy > 0
        if loading != self._loading:
            self._loading = loading
            self.loadingChanged.emit(loading)


class ResourcePool:
    """Shares one live resource per path between any number of holders."""

    def __init__(self, store: PathStore) -> None:
        self.store = store
        self._entries: Dict[str, Tuple[SyncedResource, int]] = {}

    def acquire(self, path: str) -> SyncedResource:
        key = join_path(path)
        resource, count = self._entries.get(key, (None, 0))
        if resource is None:
            resource = SyncedResource(self.store, key).open()
        self._entries[key] = (resource, count + 1)
        return resource

    def release(self, resource: SyncedResource) -> None:
        entry = self._entries.get(resource.path)
        if entry is None or entry[0] is not resource:
            return
        count = entry[1] - 1
        if count > 0:
            self._entries[resource.path] = (resource, count)
            return
        del self._entries[resource.path]
        resource.close()

    def holders(self, path: str) -> int:
        entry = self._entries.get(join_path(path))
        return entry[1] if entry else 0

    def close_all(self) -> None:
        for resource, _ in list(self._entries.values()):
            resource.close()
        self._entries.clear()
