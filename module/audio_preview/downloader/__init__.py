# Downloader module
from .yt_dlp import YTDLPClient
from .search import SearchResolver, keep_platform_order
from .extractor import (
    StreamExtractor,
    ExtractionStrategy,
    StandardStrategy,
    ForcedFormatStrategy,
    MinimalStrategy,
    default_strategies,
)

__all__ = [
    "YTDLPClient",
    "SearchResolver",
    "keep_platform_order",
    "StreamExtractor",
    "ExtractionStrategy",
    "StandardStrategy",
    "ForcedFormatStrategy",
    "MinimalStrategy",
    "default_strategies",
]
