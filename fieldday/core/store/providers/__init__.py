from .local import LocalPathStore
from .memory import MemoryPathStore
from .rest import RestPathStore

__all__ = ["LocalPathStore", "MemoryPathStore", "RestPathStore"]
