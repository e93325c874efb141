from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, Optional

from PySide6 import QtCore

from fieldday.constants import APP_NAME, AUTOSAVE_DELAY_SECONDS, VERSION_KEY
from fieldday.core.debounce import Debouncer
from fieldday.core.resource import SyncedResource
from fieldday.core.store.base import StoreError

LOGGER = logging.getLogger(APP_NAME)


def _same(a: Any, b: Any) -> bool:
    return json.dumps(a, sort_keys=True, default=str) == json.dumps(b, sort_keys=True, default=str)


class DraftSession(QtCore.QObject):
    """Local working copy of one entity with debounced background saves.

    Edits land in the draft immediately and are saved ``delay`` seconds after
    the last edit as a silent ``partial_update`` of the touched fields. A failed
    save keeps the draft and its pending fields so it can be retried.
    """

    statusChanged = QtCore.Signal(str)
    dirtyChanged = QtCore.Signal(bool)

    def __init__(
        self,
        resource: SyncedResource,
        delay: float = AUTOSAVE_DELAY_SECONDS,
        parent: Optional[QtCore.QObject] = None,
    ) -> None:
        super().__init__(parent)
        self.resource = resource
        self._draft: Optional[Dict[str, Any]] = self._copy_remote()
        self._pending: Dict[str, Any] = {}
        self._status = "idle"
        self._debouncer = Debouncer(delay, self.save)
        self.resource.valueChanged.connect(self._on_remote)

    @property
    def draft(self) -> Optional[Dict[str, Any]]:
        return self._draft

    @property
    def dirty(self) -> bool:
        return bool(self._pending)

    @property
    def status(self) -> str:
        return self._status

    @property
    def save_pending(self) -> bool:
        return self._debouncer.pending

    def edit(self, fields: Dict[str, Any]) -> None:
        if VERSION_KEY in fields:
            raise ValueError(f"{VERSION_KEY} is managed by the resource")
        was_dirty = self.dirty
        draft = self._draft if self._draft is not None else {}
        for key, value in fields.items():
            draft[key] = copy.deepcopy(value)
            self._pending[key] = copy.deepcopy(value)
        self._draft = draft
        if not was_dirty:
            self.dirtyChanged.emit(True)
        self._debouncer.trigger()

    async def save(self) -> bool:
        self._debouncer.cancel()
        if not self._pending:
            return True
        sent = copy.deepcopy(self._pending)
        self._set_status("saving")
        try:
            await self.resource.partial_update(sent, silent=True)
        except StoreError as exc:
            LOGGER.warning("autosave_failed path=/%s error=%s", self.resource.path, exc)
            self._set_status("error")
            return False
        for key, value in sent.items():
            if key in self._pending and _same(self._pending[key], value):
                del self._pending[key]
        if not self._pending:
            self.dirtyChanged.emit(False)
        self._set_status("saved")
        return True

    async def flush(self) -> bool:
        if self._debouncer.pending:
            await self._debouncer.flush()
        else:
            await self._debouncer.wait()
        return not self.dirty

    def discard(self) -> None:
        self._debouncer.cancel()
        was_dirty = self.dirty
        self._pending.clear()
        self._draft = self._copy_remote()
        if was_dirty:
            self.dirtyChanged.emit(False)
        self._set_status("idle")

    def close(self) -> None:
        self._debouncer.cancel()
        self.resource.valueChanged.disconnect(self._on_remote)

    def _copy_remote(self) -> Optional[Dict[str, Any]]:
        value = self.resource.value
        return copy.deepcopy(value) if isinstance(value, dict) else None

    def _on_remote(self, value: Any) -> None:
        # remote changes only refresh fields the user is not editing
        if not isinstance(value, dict):
            if not self._pending:
                self._draft = None
            return
        draft = copy.deepcopy(value)
        for key, pending in self._pending.items():
            draft[key] = copy.deepcopy(pending)
        self._draft = draft

    def _set_status(self, status: str) -> None:
        if status != self._status:
            self._status = status
            self.statusChanged.emit(status)
