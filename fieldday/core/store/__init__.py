from .base import (
    PathStore,
    PushIdGenerator,
    ResourceClosedError,
    StoreError,
    StoreOfflineError,
    StoreWriteError,
    join_path,
    split_path,
)

__all__ = [
    "PathStore",
    "PushIdGenerator",
    "ResourceClosedError",
    "StoreError",
    "StoreOfflineError",
    "StoreWriteError",
    "join_path",
    "split_path",
]
