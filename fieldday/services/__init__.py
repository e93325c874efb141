from .backup_service import BackupConfig, BackupKind, BackupManager
from .catalog_service import CatalogService
from .draft_service import DraftSession

__all__ = [
    "BackupConfig",
    "BackupKind",
    "BackupManager",
    "CatalogService",
    "DraftSession",
]
