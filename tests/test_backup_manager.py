from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from fieldday.core.resource import ResourcePool
from fieldday.core.store import StoreWriteError
from fieldday.core.store.base import join_path
from fieldday.core.store.providers import MemoryPathStore
from fieldday.services.backup_service import (
    BackupConfig,
    BackupKind,
    BackupManager,
    BackupNotFoundError,
    describe_diff,
)

RELAY = {"name": "Relay", "eventId": "E1", "type": "tournament"}


class Clock:
    def __init__(self, start: int = 1_767_225_600_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1000) -> None:
        self.now += ms


class RejectingRootUpdates(MemoryPathStore):
    async def update(self, path, updates):
        if not join_path(path):
            raise StoreWriteError("permission denied")
        await super().update(path, updates)


def _seeded(store_cls=MemoryPathStore) -> MemoryPathStore:
    return store_cls(
        {
            "events": {"E1": {"name": "Sports Day", "isActive": True, "sports": ["S1"]}},
            "sports": {"S1": dict(RELAY)},
        }
    )


def test_create_backup_snapshots_live_collections() -> None:
    async def scenario():
        store = _seeded()
        manager = BackupManager(store, clock=Clock()).open()
        backup_id = await manager.create_backup(BackupKind.MANUAL, "before finals")
        return store, manager, backup_id

    store, manager, backup_id = asyncio.run(scenario())
    assert backup_id == "backup_1767225600000"
    saved = store.snapshot(f"backup/manual/{backup_id}")
    assert saved["events"]["E1"]["name"] == "Sports Day"
    assert saved["sports"] == {"S1": RELAY}
    assert saved["timestamp"] == 1_767_225_600_000
    assert saved["description"] == "before finals"
    assert [entry.id for entry in manager.manual_backups] == [backup_id]
    assert manager.manual_backups[0].description == "before finals"


def test_create_backup_returns_none_until_both_collections_exist() -> None:
    async def scenario():
        store = MemoryPathStore({"events": {"E1": {"name": "Sports Day"}}})
        manager = BackupManager(store).open()
        return await manager.create_backup("auto"), store.snapshot("backup")

    assert asyncio.run(scenario()) == (None, None)


def test_retention_keeps_newest_backups_per_kind() -> None:
    async def scenario():
        store = _seeded()
        clock = Clock()
        manager = BackupManager(store, clock=clock).open()
        created = []
        for _ in range(6):
            created.append(await manager.create_backup("manual"))
            clock.advance()
        auto_id = await manager.create_backup("auto")
        return store, manager, created, auto_id

    store, manager, created, auto_id = asyncio.run(scenario())
    assert [entry.id for entry in manager.manual_backups] == list(reversed(created[-3:]))
    assert sorted(store.snapshot("backup/manual")) == sorted(created[-3:])
    assert [entry.id for entry in manager.auto_backups] == [auto_id]


def test_backup_ids_stay_unique_within_one_millisecond() -> None:
    async def scenario():
        manager = BackupManager(_seeded(), clock=Clock(5000)).open()
        return [await manager.create_backup("manual") for _ in range(2)]

    assert asyncio.run(scenario()) == ["backup_5000", "backup_5001"]


def test_restore_overwrites_live_data_and_keeps_the_backup() -> None:
    async def scenario():
        store = _seeded()
        clock = Clock()
        manager = BackupManager(store, clock=clock).open()
        backup_id = await manager.create_backup("manual")
        clock.advance()
        await store.set("sports/S2", {"name": "Tug of war", "eventId": "E1"})
        await store.remove("events/E1")
        ok = await manager.restore_backup("manual", backup_id)
        return store, manager, backup_id, ok

    store, manager, backup_id, ok = asyncio.run(scenario())
    assert ok is True
    assert store.snapshot("sports") == {"S1": RELAY}
    assert store.snapshot("events/E1")["name"] == "Sports Day"
    assert store.snapshot(f"backup/manual/{backup_id}") is not None
    safety = manager.auto_backups[0]
    assert safety.description == f"before restore of {backup_id}"
    assert "S2" in store.snapshot(f"backup/auto/{safety.id}/sports")


def test_failed_restore_leaves_live_data_untouched() -> None:
    async def scenario():
        store = _seeded(RejectingRootUpdates)
        manager = BackupManager(store, config=BackupConfig(backup_before_restore=False), clock=Clock()).open()
        backup_id = await manager.create_backup("manual")
        await store.set("sports/S1/name", "Finals")
        ok = await manager.restore_backup("manual", backup_id)
        return store, manager, ok

    store, manager, ok = asyncio.run(scenario())
    assert ok is False
    assert store.snapshot("sports/S1/name") == "Finals"
    assert isinstance(manager.error, StoreWriteError)
    assert manager.busy is False


def test_restore_of_missing_or_empty_backup_fails() -> None:
    async def scenario():
        store = _seeded()
        await store.set("backup/manual/backup_5", {"timestamp": 5, "description": "empty"})
        manager = BackupManager(store).open()
        missing = await manager.restore_backup("manual", "backup_1")
        empty = await manager.restore_backup("manual", "backup_5")
        return store, manager, missing, empty

    store, manager, missing, empty = asyncio.run(scenario())
    assert missing is False
    assert empty is False
    assert isinstance(manager.error, BackupNotFoundError)
    assert store.snapshot("sports") == {"S1": RELAY}
    assert manager.auto_backups == []


def test_restore_clears_a_collection_missing_from_the_backup() -> None:
    async def scenario():
        store = _seeded()
        await store.set("backup/manual/backup_5", {"timestamp": 5, "events": {"E9": {"name": "Old"}}})
        manager = BackupManager(store, config=BackupConfig(backup_before_restore=False)).open()
        ok = await manager.restore_backup("manual", "backup_5")
        return store, ok

    store, ok = asyncio.run(scenario())
    assert ok is True
    assert store.snapshot("events") == {"E9": {"name": "Old"}}
    assert store.snapshot("sports") is None


def test_safety_snapshot_never_rotates_out_the_backup_being_restored() -> None:
    async def scenario():
        store = _seeded()
        clock = Clock()
        manager = BackupManager(store, clock=clock).open()
        autos = []
        for _ in range(3):
            autos.append(await manager.create_backup("auto"))
            clock.advance()
        ok = await manager.restore_backup("auto", autos[0])
        return manager, autos, ok

    manager, autos, ok = asyncio.run(scenario())
    assert ok is True
    ids = [entry.id for entry in manager.auto_backups]
    assert len(ids) == 3
    assert autos[0] in ids
    assert autos[1] not in ids


def test_diff_against_current_reports_changed_sport() -> None:
    async def scenario():
        store = _seeded()
        manager = BackupManager(store, clock=Clock()).open()
        backup_id = await manager.create_backup("manual", "before finals")
        await manager.sports.merge_update({"S1": {**RELAY, "name": "Finals"}})
        return await manager.get_backup_diff("manual", backup_id, "current")

    diff = asyncio.run(scenario())
    assert diff.events == {}
    assert diff.to_dict()["sports"] == {
        "S1": {"changed": True, "oldValue": RELAY, "newValue": {**RELAY, "name": "Finals"}}
    }
    assert describe_diff(diff) == ["changed  sports/S1 (Finals)"]


def test_diff_between_backups_is_directional_and_idempotent() -> None:
    async def scenario():
        store = _seeded()
        clock = Clock()
        manager = BackupManager(store, clock=clock).open()
        first = await manager.create_backup("manual")
        clock.advance()
        await manager.sports.merge_update({"S2": {"name": "Tug of war", "eventId": "E1"}})
        second = await manager.create_backup("manual")
        forward = await manager.get_backup_diff("manual", first, ("manual", second))
        backward = await manager.get_backup_diff("manual", second, ("manual", first))
        same = await manager.get_backup_diff("manual", first, ("manual", first))
        return forward, backward, same

    forward, backward, same = asyncio.run(scenario())
    assert list(forward.sports) == ["S2"]
    assert forward.sports["S2"].added
    assert backward.sports["S2"].removed
    assert forward.events == {} and backward.events == {}
    assert same.is_empty


def test_auto_backup_loop_creates_and_rotates() -> None:
    async def scenario():
        store = _seeded()
        manager = BackupManager(store, config=BackupConfig(auto_backup_interval_ms=5)).open()
        seen = set()
        manager.backupsChanged.connect(lambda: seen.update(entry.id for entry in manager.auto_backups))
        manager.start_auto_backup()
        for _ in range(400):
            await asyncio.sleep(0.005)
            # stop only while the loop is idle between backups
            if len(seen) >= 4 and not manager.busy:
                break
        manager.close()
        return store, manager, seen

    store, manager, seen = asyncio.run(scenario())
    assert len(seen) >= 4
    assert len(store.snapshot("backup/auto")) == 3
    assert len(manager.auto_backups) == 3
    assert manager.manual_backups == []


def test_export_and_import_round_trip_through_a_file(tmp_path: Path) -> None:
    out = tmp_path / "exports" / "finals.json"

    async def scenario():
        store = _seeded()
        clock = Clock()
        manager = BackupManager(store, clock=clock).open()
        backup_id = await manager.create_backup("manual", "before finals")
        exported = await manager.export_backup("manual", backup_id, out)
        clock.advance()
        imported = await manager.import_backup(out)
        details = await manager.get_backup_details("manual", imported)
        return exported, imported, details

    exported, imported, details = asyncio.run(scenario())
    assert exported is True
    assert json.loads(out.read_text(encoding="utf-8"))["app"] == "fieldday"
    assert imported == "backup_1767225601000"
    assert details.sports == {"S1": RELAY}
    assert details.description == "before finals"


def test_import_rejects_files_without_collections(tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"backup": {"timestamp": 1}}), encoding="utf-8")

    async def scenario():
        manager = BackupManager(_seeded()).open()
        return await manager.import_backup(bad), manager

    imported, manager = asyncio.run(scenario())
    assert imported is None
    assert isinstance(manager.error, ValueError)


def test_busy_signal_and_pool_release() -> None:
    async def scenario():
        store = _seeded()
        pool = ResourcePool(store)
        manager = BackupManager(store, pool).open()
        states = []
        manager.busyChanged.connect(states.append)
        await manager.create_backup("manual")
        held = pool.holders("events"), pool.holders("sports")
        manager.close()
        return states, held, (pool.holders("events"), pool.holders("sports"))

    states, held, after = asyncio.run(scenario())
    assert states == [True, False]
    assert held == (1, 1)
    assert after == (0, 0)


def test_overlapping_creates_get_distinct_ids_and_respect_the_cap() -> None:
    async def scenario():
        store = _seeded()
        manager = BackupManager(store, clock=Clock(5000)).open()
        pair = await asyncio.gather(manager.create_backup("manual", "a"), manager.create_backup("manual", "b"))
        paired = sorted(store.snapshot("backup/manual"))
        for _ in range(3):
            await manager.create_backup("manual")
        await asyncio.gather(manager.create_backup("manual"), manager.create_backup("manual"))
        return pair, paired, store.snapshot("backup/manual"), manager

    pair, paired, stored, manager = asyncio.run(scenario())
    assert sorted(pair) == ["backup_5000", "backup_5001"]
    assert paired == ["backup_5000", "backup_5001"]
    assert len(stored) == 3
    assert len(manager.manual_backups) == 3


class FailingFirstBackupStore(MemoryPathStore):
    def __init__(self, initial=None) -> None:
        super().__init__(initial)
        self.failed = False

    async def set(self, path, value):
        if path.startswith("backup/") and not self.failed:
            self.failed = True
            raise RuntimeError("disk on fire")
        await super().set(path, value)


def test_auto_backup_loop_survives_unexpected_errors(caplog) -> None:
    async def scenario():
        store = _seeded(FailingFirstBackupStore)
        manager = BackupManager(store, config=BackupConfig(auto_backup_interval_ms=5)).open()
        manager.start_auto_backup()
        for _ in range(200):
            await asyncio.sleep(0.005)
            if manager.auto_backups and not manager.busy:
                break
        manager.close()
        return store, manager

    with caplog.at_level(logging.ERROR, logger="fieldday"):
        store, manager = asyncio.run(scenario())
    assert store.failed is True
    assert len(manager.auto_backups) >= 1
    assert isinstance(manager.error, RuntimeError)
    assert "disk on fire" in caplog.text
