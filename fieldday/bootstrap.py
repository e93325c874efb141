from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fieldday.app_storage import app_dir
from fieldday.constants import APP_NAME
from fieldday.core.store.base import PathStore
from fieldday.core.store.providers import LocalPathStore, MemoryPathStore, RestPathStore
from fieldday.services.backup_service import BackupConfig, BackupManager

LOGGER = logging.getLogger(APP_NAME)


def build_store(settings: Dict[str, Any]) -> PathStore:
    """Create the PathStore named by the ``store`` settings section."""
    section = settings.get("store", {}) if isinstance(settings, dict) else {}
    if not isinstance(section, dict):
        section = {}
    provider = str(section.get("provider", "local")).lower()
    if provider == "memory":
        return MemoryPathStore()
    if provider == "local":
        return LocalPathStore(Path(section.get("local_path") or app_dir() / "store.json"))
    if provider == "rest":
        return RestPathStore(
            str(section.get("base_url", "")),
            auth_token=str(section.get("auth_token", "")),
            poll_seconds=float(section.get("poll_seconds", 5.0)),
            timeout=float(section.get("timeout_seconds", 10.0)),
        )
    raise ValueError(f"unknown store provider {provider!r}")


async def run_backups(settings: Dict[str, Any], stop: Optional[asyncio.Event] = None) -> None:
    """Keep the automatic backup loop running until ``stop`` is set or the task is cancelled."""
    store = build_store(settings)
    manager = BackupManager(store, config=BackupConfig.from_settings(settings)).open()
    LOGGER.info("backup runner started store=%s", getattr(store, "name", type(store).__name__))
    manager.start_auto_backup()
    try:
        await (stop or asyncio.Event()).wait()
    finally:
        manager.close()
        LOGGER.info("backup runner stopped")
