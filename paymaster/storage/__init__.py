from .gateway import StorageGateway, build_cache
from .helpers import now_epoch_ms
from .memory import MemoryCache
from .settings import StorageSettings

__all__ = [
    "MemoryCache",
    "StorageGateway",
    "StorageSettings",
    "build_cache",
    "now_epoch_ms",
]
