from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from fieldday.constants import (
    APP_NAME,
    AUTO_BACKUP_COUNT,
    AUTO_BACKUP_INTERVAL_MS,
    AUTOSAVE_DELAY_SECONDS,
    MANUAL_BACKUP_COUNT,
)

LOGGER = logging.getLogger(APP_NAME)

BACKUP_FILE_VERSION = 1


def app_dir() -> Path:
    """Return %APPDATA%\\fieldday."""
    appdata = os.environ.get("APPDATA")
    if not appdata:
        appdata = str(Path.home() / "AppData" / "Roaming")
    return Path(appdata) / APP_NAME


def now_iso() -> str:
    return datetime.now().strftime("%Y-%m-%dT%H:%M:%S")


def _default_settings() -> Dict[str, Any]:
    return {
        "schema_version": 1,
        "store": {
            "provider": "local",
            "local_path": str(app_dir() / "store.json"),
            "base_url": "",
            "auth_token": "",
            "poll_seconds": 5.0,
            "timeout_seconds": 10.0,
        },
        "backup": {
            "auto_backup_count": AUTO_BACKUP_COUNT,
            "manual_backup_count": MANUAL_BACKUP_COUNT,
            "auto_backup_interval_ms": AUTO_BACKUP_INTERVAL_MS,
            "backup_before_restore": True,
        },
        "autosave": {"delay_seconds": AUTOSAVE_DELAY_SECONDS},
        "logging": {"level": "INFO"},
    }


def settings_path() -> Path:
    return app_dir() / "settings.json"


def ensure_storage() -> Path:
    base = app_dir()
    base.mkdir(parents=True, exist_ok=True)
    path = settings_path()
    if not path.exists():
        path.write_text(json.dumps(_default_settings(), ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def load_json(p: Path, default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Load JSON file with error handling."""
    if default is None:
        default = {}
    try:
        if not p.exists():
            LOGGER.warning("JSON file not found: %s, using default", p)
            return default.copy()
        data = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            LOGGER.warning("JSON file %s is not a dict, using default", p)
            return default.copy()
        return data
    except json.JSONDecodeError as e:
        LOGGER.exception("JSON decode error in %s: %s", p, e)
        corrupted_path = p.with_name(f"{p.name}.corrupted.{datetime.now().strftime('%Y%m%d-%H%M%S-%f')}.json")
        try:
            p.rename(corrupted_path)
            LOGGER.info("Corrupted file backed up to %s", corrupted_path)
        except OSError as exc:
            LOGGER.warning("Could not move corrupted file %s aside: %s", p, exc)
        return default.copy()
    except OSError as e:
        LOGGER.exception("Failed to load JSON from %s: %s", p, e)
        return default.copy()


def save_json(p: Path, data: Dict[str, Any]) -> bool:
    """Save JSON file atomically using temp file + rename pattern."""
    try:
        content = json.dumps(data, ensure_ascii=False, indent=2)
        p.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(suffix=".tmp", prefix=p.stem + "_", dir=str(p.parent))
        fd_closed = False
        try:
            os.write(fd, content.encode("utf-8"))
            os.close(fd)
            fd_closed = True
            os.replace(tmp_path, str(p))
            return True
        except OSError as e:
            if not fd_closed:
                try:
                    os.close(fd)
                except OSError:
                    pass
            LOGGER.exception("Failed to write temp file %s: %s", tmp_path, e)
            Path(tmp_path).unlink(missing_ok=True)
            return False
    except (OSError, TypeError, ValueError) as e:
        LOGGER.exception("Failed to save JSON to %s: %s", p, e)
        return False


def _section(settings: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = settings.setdefault(name, {})
    if not isinstance(section, dict):
        section = {}
        settings[name] = section
    return section


def _migrate_store(settings: Dict[str, Any]) -> None:
    store = _section(settings, "store")
    store.setdefault("provider", "local")
    store.setdefault("local_path", str(app_dir() / "store.json"))
    store.setdefault("base_url", "")
    store.setdefault("auth_token", "")
    store.setdefault("poll_seconds", 5.0)
    store.setdefault("timeout_seconds", 10.0)


def _migrate_backup(settings: Dict[str, Any]) -> None:
    backup = _section(settings, "backup")
    backup.setdefault("auto_backup_count", AUTO_BACKUP_COUNT)
    backup.setdefault("manual_backup_count", MANUAL_BACKUP_COUNT)
    backup.setdefault("auto_backup_interval_ms", AUTO_BACKUP_INTERVAL_MS)
    backup.setdefault("backup_before_restore", True)


def migrate_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Backfill missing keys for older settings.json."""
    settings["schema_version"] = max(1, int(settings.get("schema_version", 1) or 1))
    _migrate_store(settings)
    _migrate_backup(settings)
    _section(settings, "autosave").setdefault("delay_seconds", AUTOSAVE_DELAY_SECONDS)
    _section(settings, "logging").setdefault("level", "INFO")
    return settings


def load_settings() -> Dict[str, Any]:
    path = ensure_storage()
    return migrate_settings(load_json(path, default=_default_settings()))


# -------- Backup snapshot files --------


def export_backup_to_file(path: Path, backup: Dict[str, Any]) -> None:
    """Write one backup snapshot as a standalone JSON file."""
    payload = {
        "app": APP_NAME,
        "version": BACKUP_FILE_VERSION,
        "exported_at": now_iso(),
        "backup": backup,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def import_backup_from_file(path: Path) -> Dict[str, Any]:
    """Read a file written by export_backup_to_file, or a bare snapshot dict."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("Invalid backup format")
    backup = raw.get("backup") if isinstance(raw.get("backup"), dict) else raw
    if not isinstance(backup.get("events"), dict) and not isinstance(backup.get("sports"), dict):
        raise ValueError("Backup file has neither events nor sports")
    return backup
