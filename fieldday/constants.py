from __future__ import annotations

APP_NAME = "fieldday"

# Sibling key stamped into collections by SyncedResource writes.
VERSION_KEY = "_version"

EVENTS_PATH = "events"
SPORTS_PATH = "sports"
BACKUP_PATH = "backup"

AUTO_BACKUP_COUNT = 3
MANUAL_BACKUP_COUNT = 3
AUTO_BACKUP_INTERVAL_MS = 3_600_000

AUTOSAVE_DELAY_SECONDS = 3.0

SPORT_TYPES = ("tournament", "roundRobin", "league", "ranking", "custom")
GRADES = ("grade1", "grade2", "grade3")
