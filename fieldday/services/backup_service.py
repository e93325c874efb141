from __future__ import annotations

import asyncio
import copy
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from PySide6 import QtCore

from fieldday.app_storage import export_backup_to_file, import_backup_from_file
from fieldday.constants import (
    APP_NAME,
    AUTO_BACKUP_COUNT,
    AUTO_BACKUP_INTERVAL_MS,
    BACKUP_PATH,
    EVENTS_PATH,
    MANUAL_BACKUP_COUNT,
    SPORTS_PATH,
)
from fieldday.core.diff import DiffMap, compare_collections, diff_to_dict
from fieldday.core.resource import ResourcePool, SyncedResource
from fieldday.core.store.base import PathStore, StoreError, Unsubscribe, join_path
from fieldday.utils import iter_entities, now_ms

LOGGER = logging.getLogger(APP_NAME)


class BackupKind(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"


class BackupNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class BackupEntry:
    id: str
    timestamp: int
    kind: BackupKind
    description: Optional[str] = None


@dataclass
class BackupSnapshot:
    events: Optional[Dict[str, Any]]
    sports: Optional[Dict[str, Any]]
    timestamp: int
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "events": self.events,
            "sports": self.sports,
            "timestamp": self.timestamp,
        }
        if self.description:
            out["description"] = self.description
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["BackupSnapshot"]:
        if not isinstance(raw, dict):
            return None
        events = raw.get("events")
        sports = raw.get("sports")
        return cls(
            events=events if isinstance(events, dict) else None,
            sports=sports if isinstance(sports, dict) else None,
            timestamp=int(raw.get("timestamp", 0) or 0),
            description=raw.get("description") or None,
        )


@dataclass
class BackupConfig:
    auto_backup_count: int = AUTO_BACKUP_COUNT
    manual_backup_count: int = MANUAL_BACKUP_COUNT
    auto_backup_interval_ms: int = AUTO_BACKUP_INTERVAL_MS
    backup_before_restore: bool = True

    def cap(self, kind: BackupKind) -> int:
        return self.auto_backup_count if kind is BackupKind.AUTO else self.manual_backup_count

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "BackupConfig":
        section = settings.get("backup", {}) if isinstance(settings, dict) else {}
        if not isinstance(section, dict):
            section = {}
        return cls(
            auto_backup_count=int(section.get("auto_backup_count", AUTO_BACKUP_COUNT)),
            manual_backup_count=int(section.get("manual_backup_count", MANUAL_BACKUP_COUNT)),
            auto_backup_interval_ms=int(section.get("auto_backup_interval_ms", AUTO_BACKUP_INTERVAL_MS)),
            backup_before_restore=bool(section.get("backup_before_restore", True)),
        )


@dataclass
class BackupDiff:
    events: DiffMap = field(default_factory=dict)
    sports: DiffMap = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.events and not self.sports

    def to_dict(self) -> Dict[str, Any]:
        return {"events": diff_to_dict(self.events), "sports": diff_to_dict(self.sports)}


CompareTarget = Union[str, Tuple[Union[BackupKind, str], str]]


class BackupManager(QtCore.QObject):
    """Snapshots of the events and sports collections under /backup/{kind}/{id}.

    Backups are write-once. After each new backup the oldest ones of the same
    kind beyond the retention cap are deleted. Every operation reports failure
    through its return value (None/False) and the ``error`` slot.
    """

    backupsChanged = QtCore.Signal()
    busyChanged = QtCore.Signal(bool)
    errorOccurred = QtCore.Signal(object)

    def __init__(
        self,
        store: PathStore,
        pool: Optional[ResourcePool] = None,
        config: Optional[BackupConfig] = None,
        *,
        clock: Callable[[], int] = now_ms,
        parent: Optional[QtCore.QObject] = None,
    ) -> None:
        super().__init__(parent)
        self.store = store
        self.pool = pool or ResourcePool(store)
        self._owns_pool = pool is None
        self.config = config or BackupConfig()
        self._clock = clock
        self.events: Optional[SyncedResource] = None
        self.sports: Optional[SyncedResource] = None
        self._index: Dict[BackupKind, List[BackupEntry]] = {kind: [] for kind in BackupKind}
        self._index_loaded = False
        self._unsubscribe: Optional[Unsubscribe] = None
        self._busy = 0
        self._error: Optional[Exception] = None
        self._auto_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Event] = None
        self._write_lock: Optional[asyncio.Lock] = None

    # ---- state ----

    @property
    def auto_backups(self) -> List[BackupEntry]:
        return list(self._index[BackupKind.AUTO])

    @property
    def manual_backups(self) -> List[BackupEntry]:
        return list(self._index[BackupKind.MANUAL])

    def backups(self, kind: Union[BackupKind, str]) -> List[BackupEntry]:
        return list(self._index[BackupKind(kind)])

    @property
    def loading(self) -> bool:
        return not self._index_loaded

    @property
    def busy(self) -> bool:
        return self._busy > 0

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    # ---- lifecycle ----

    def open(self) -> "BackupManager":
        if self.events is None:
            self.events = self.pool.acquire(EVENTS_PATH)
            self.sports = self.pool.acquire(SPORTS_PATH)
            self.events.valueChanged.connect(self._on_collection_changed)
            self.sports.valueChanged.connect(self._on_collection_changed)
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(BACKUP_PATH, self._on_index, self._on_index_error)
        return self

    def close(self) -> None:
        self.stop_auto_backup()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for resource in (self.events, self.sports):
            if resource is None:
                continue
            resource.valueChanged.disconnect(self._on_collection_changed)
            self.pool.release(resource)
        self.events = None
        self.sports = None
        if self._owns_pool:
            self.pool.close_all()

    def start_auto_backup(self) -> None:
        if self._auto_task is not None and not self._auto_task.done():
            return
        self._auto_task = asyncio.get_running_loop().create_task(self._auto_backup_loop())

    def stop_auto_backup(self) -> None:
        if self._auto_task is not None:
            self._auto_task.cancel()
            self._auto_task = None

    # ---- operations ----

    async def create_backup(
        self,
        kind: Union[BackupKind, str] = BackupKind.AUTO,
        description: Optional[str] = None,
    ) -> Optional[str]:
        """Snapshot the live collections; None until both are loaded."""
        kind = BackupKind(kind)
        events, sports = self._live_values()
        if events is None or sports is None:
            return None
        self._set_busy(1)
        try:
            return await self._write_backup(kind, events, sports, description)
        except StoreError as exc:
            self._fail("create backup", exc)
            return None
        finally:
            self._set_busy(-1)

    async def restore_backup(self, kind: Union[BackupKind, str], backup_id: str) -> bool:
        """Overwrite live events and sports from a backup in one atomic update."""
        kind = BackupKind(kind)
        self._set_busy(1)
        try:
            snapshot = await self._load(kind, backup_id)
            if self.config.backup_before_restore:
                events, sports = await self._current_collections()
                await self._write_backup(
                    BackupKind.AUTO,
                    events,
                    sports,
                    f"before restore of {backup_id}",
                    keep=backup_id if kind is BackupKind.AUTO else None,
                )
            await self.store.update(
                "",
                {
                    EVENTS_PATH: copy.deepcopy(snapshot.events),
                    SPORTS_PATH: copy.deepcopy(snapshot.sports),
                },
            )
        except BackupNotFoundError as exc:
            self._fail("restore backup", exc)
            return False
        except StoreError as exc:
            LOGGER.warning("backup_restore_failed kind=%s id=%s error=%s", kind.value, backup_id, exc)
            self._fail("restore backup", exc)
            return False
        finally:
            self._set_busy(-1)
        LOGGER.info("backup_restored kind=%s id=%s", kind.value, backup_id)
        return True

    async def get_backup_details(self, kind: Union[BackupKind, str], backup_id: str) -> Optional[BackupSnapshot]:
        try:
            raw = await self.store.get(self._backup_path(BackupKind(kind), backup_id))
        except StoreError as exc:
            self._fail("get backup details", exc)
            return None
        return BackupSnapshot.from_dict(raw)

    async def get_backup_diff(
        self,
        kind: Union[BackupKind, str],
        backup_id: str,
        compare_to: CompareTarget = "current",
    ) -> Optional[BackupDiff]:
        """Diff a backup (the baseline) against live data or another backup."""
        target = await self.get_backup_details(kind, backup_id)
        if target is None:
            return None
        if compare_to == "current":
            events, sports = self._live_values()
            other = BackupSnapshot(events=events or {}, sports=sports or {}, timestamp=self._clock())
        else:
            other_kind, other_id = compare_to
            other = await self.get_backup_details(other_kind, other_id)
            if other is None:
                return None
        return BackupDiff(
            events=compare_collections(target.events, other.events),
            sports=compare_collections(target.sports, other.sports),
        )

    async def export_backup(self, kind: Union[BackupKind, str], backup_id: str, path: Path) -> bool:
        snapshot = await self.get_backup_details(kind, backup_id)
        if snapshot is None:
            return False
        try:
            export_backup_to_file(path, snapshot.to_dict())
        except OSError as exc:
            self._fail("export backup", exc)
            return False
        LOGGER.info("backup_exported kind=%s id=%s path=%s", BackupKind(kind).value, backup_id, path)
        return True

    async def import_backup(self, path: Path, description: Optional[str] = None) -> Optional[str]:
        """Store a backup file as a new manual backup."""
        try:
            snapshot = BackupSnapshot.from_dict(import_backup_from_file(path))
        except (OSError, ValueError) as exc:
            self._fail("import backup", exc)
            return None
        label = description or snapshot.description or f"imported from {path.name}"
        self._set_busy(1)
        try:
            return await self._write_backup(BackupKind.MANUAL, snapshot.events or {}, snapshot.sports or {}, label)
        except StoreError as exc:
            self._fail("import backup", exc)
            return None
        finally:
            self._set_busy(-1)

    # ---- internals ----

    @staticmethod
    def _backup_path(kind: BackupKind, backup_id: str = "") -> str:
        return join_path(BACKUP_PATH, kind.value, backup_id)

    def _live_values(self) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        events = self.events.value if self.events is not None else None
        sports = self.sports.value if self.sports is not None else None
        return events, sports

    def _collections_loaded(self) -> bool:
        events, sports = self._live_values()
        return events is not None and sports is not None

    async def _current_collections(self) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        events, sports = self._live_values()
        if self.events is None or not self.events.loaded:
            events = await self.store.get(EVENTS_PATH)
        if self.sports is None or not self.sports.loaded:
            sports = await self.store.get(SPORTS_PATH)
        return events or {}, sports or {}

    async def _load(self, kind: BackupKind, backup_id: str) -> BackupSnapshot:
        snapshot = BackupSnapshot.from_dict(await self.store.get(self._backup_path(kind, backup_id)))
        if snapshot is None or (snapshot.events is None and snapshot.sports is None):
            raise BackupNotFoundError(f"backup {kind.value}/{backup_id} is missing or has no data")
        return snapshot

    def _next_id(self, kind: BackupKind) -> Tuple[str, int]:
        timestamp = int(self._clock())
        taken = {entry.id for entry in self._index[kind]}
        while f"backup_{timestamp}" in taken:
            timestamp += 1
        return f"backup_{timestamp}", timestamp

    async def _write_backup(
        self,
        kind: BackupKind,
        events: Dict[str, Any],
        sports: Dict[str, Any],
        description: Optional[str],
        *,
        keep: Optional[str] = None,
    ) -> str:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        # id choice and rotation both read the index, so writes go one at a time
        async with self._write_lock:
            return await self._write_backup_locked(kind, events, sports, description, keep)

    async def _write_backup_locked(
        self,
        kind: BackupKind,
        events: Dict[str, Any],
        sports: Dict[str, Any],
        description: Optional[str],
        keep: Optional[str],
    ) -> str:
        backup_id, timestamp = self._next_id(kind)
        existing = [entry for entry in self._index[kind] if entry.id != backup_id]
        snapshot = BackupSnapshot(
            events=copy.deepcopy(events),
            sports=copy.deepcopy(sports),
            timestamp=timestamp,
            description=description,
        )
        await self.store.set(self._backup_path(kind, backup_id), snapshot.to_dict())
        self._remember(BackupEntry(backup_id, timestamp, kind, description))
        LOGGER.info("backup_created kind=%s id=%s", kind.value, backup_id)
        try:
            await self._rotate(kind, existing, keep)
        except StoreError as exc:
            # the new backup is stored; only the pruning failed
            self._fail("rotate backups", exc)
        return backup_id

    async def _rotate(self, kind: BackupKind, existing: List[BackupEntry], keep: Optional[str] = None) -> None:
        cap = self.config.cap(kind)
        if len(existing) < cap:
            return
        ordered = sorted(existing, key=lambda entry: entry.timestamp, reverse=True)
        slots = cap - 1
        if keep is not None and any(entry.id == keep for entry in ordered):
            # the pinned backup takes one of the remaining slots
            ordered = [entry for entry in ordered if entry.id != keep]
            slots -= 1
        stale = ordered[max(slots, 0):]
        if not stale:
            return
        await self.store.update(self._backup_path(kind), {entry.id: None for entry in stale})
        stale_ids = {entry.id for entry in stale}
        self._index[kind] = [entry for entry in self._index[kind] if entry.id not in stale_ids]
        self.backupsChanged.emit()
        LOGGER.info("backup_rotated kind=%s removed=%s", kind.value, ",".join(sorted(stale_ids)))

    def _remember(self, entry: BackupEntry) -> None:
        entries = [e for e in self._index[entry.kind] if e.id != entry.id]
        entries.append(entry)
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        self._index[entry.kind] = entries
        self.backupsChanged.emit()

    def _on_index(self, value: Any) -> None:
        for kind in BackupKind:
            node = value.get(kind.value) if isinstance(value, dict) else None
            entries: List[BackupEntry] = []
            for backup_id, raw in iter_entities(node):
                if not isinstance(raw, dict) or not raw.get("timestamp"):
                    continue
                entries.append(
                    BackupEntry(
                        id=backup_id,
                        timestamp=int(raw["timestamp"]),
                        kind=kind,
                        description=raw.get("description") or None,
                    )
                )
            entries.sort(key=lambda e: e.timestamp, reverse=True)
            self._index[kind] = entries
        self._index_loaded = True
        self.backupsChanged.emit()
        self._check_ready()

    def _on_index_error(self, exc: Exception) -> None:
        self._fail("load backups", exc)

    def _on_collection_changed(self, _value: Any) -> None:
        self._check_ready()

    def _check_ready(self) -> None:
        if self._ready is not None and self._index_loaded and self._collections_loaded():
            self._ready.set()

    async def _auto_backup_loop(self) -> None:
        interval = max(int(self.config.auto_backup_interval_ms), 1) / 1000
        self._ready = asyncio.Event()
        self._check_ready()
        await self._ready.wait()
        if not self._index[BackupKind.AUTO]:
            await self._auto_backup_once()
        while True:
            await asyncio.sleep(interval)
            if self._collections_loaded():
                await self._auto_backup_once()

    async def _auto_backup_once(self) -> None:
        try:
            await self.create_backup(BackupKind.AUTO)
        except Exception as exc:
            LOGGER.exception("auto backup failed: %s", exc)
            self._error = exc
            self.errorOccurred.emit(exc)

    def _set_busy(self, delta: int) -> None:
        was_busy = self.busy
        self._busy += delta
        if self.busy != was_busy:
            self.busyChanged.emit(self.busy)

    def _fail(self, context: str, exc: Exception) -> None:
        LOGGER.warning("%s failed: %s", context, exc)
        self._error = exc
        self.errorOccurred.emit(exc)


def describe_diff(diff: BackupDiff) -> List[str]:
    """One summary line per entry, e.g. ``changed  sports/S1 (Finals)``."""
    lines: List[str] = []
    for label, entries in (("events", diff.events), ("sports", diff.sports)):
        for key, entry in entries.items():
            value = entry.old_value if entry.removed else entry.new_value
            name = value.get("name") if isinstance(value, dict) else None
            line = f"{entry.status.value:<8} {label}/{key}"
            if name:
                line += f" ({name})"
            lines.append(line)
    return lines
