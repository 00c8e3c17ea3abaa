# Core module
from .cache import CacheStore
from .queue import ConcurrencyGate, QueueTask
from .resolver import PreviewResolver
from .preloader import BatchPreloader, EnrichedQuery, PreloadProgress

__all__ = [
    "CacheStore",
    "ConcurrencyGate",
    "QueueTask",
    "PreviewResolver",
    "BatchPreloader",
    "EnrichedQuery",
    "PreloadProgress",
]
