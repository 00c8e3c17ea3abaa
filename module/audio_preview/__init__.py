"""
音訊預覽解析模組

替「歌手 / 歌曲」查詢找出一段可播放的短預覽（含縮圖與標題），提供:
- 多策略搜尋與串流擷取（yt-dlp）
- 記憶體 + 檔案的 TTL 快取
- 併發閘門（FIFO，限制同時解析數）
- 代理池（健康檢查、輪詢、封禁）
- 批次預載與進度回報
"""

# Models
from .models import (
    QueryKind,
    PreviewSource,
    PreviewQuery,
    Candidate,
    AudioStream,
    EmbedDescriptor,
    Preview,
    CacheEntry,
    make_cache_key,
)

# Config
from .config import PreviewConfig

# Core
from .core.cache import CacheStore
from .core.queue import ConcurrencyGate
from .core.resolver import PreviewResolver
from .core.preloader import BatchPreloader, EnrichedQuery, PreloadProgress

# Downloader
from .downloader.yt_dlp import YTDLPClient
from .downloader.search import SearchResolver, keep_platform_order
from .downloader.extractor import (
    StreamExtractor,
    ExtractionStrategy,
    StandardStrategy,
    ForcedFormatStrategy,
    MinimalStrategy,
)

# Proxy
from .proxy.pool import ProxyPool, ProxyHandle, ProxyState
from .proxy.tunnel import ProxyTunnel

# Utils
from .utils.errors import (
    PreviewError,
    NotFoundError,
    ExtractionError,
    NetworkError,
    ProxyError,
    CacheIOError,
    OperationTimeoutError,
    InvalidQueryError,
    ConfigurationError,
)

__all__ = [
    # Models
    "QueryKind",
    "PreviewSource",
    "PreviewQuery",
    "Candidate",
    "AudioStream",
    "EmbedDescriptor",
    "Preview",
    "CacheEntry",
    "make_cache_key",
    # Config
    "PreviewConfig",
    # Core
    "CacheStore",
    "ConcurrencyGate",
    "PreviewResolver",
    "BatchPreloader",
    "EnrichedQuery",
    "PreloadProgress",
    # Downloader
    "YTDLPClient",
    "SearchResolver",
    "keep_platform_order",
    "StreamExtractor",
    "ExtractionStrategy",
    "StandardStrategy",
    "ForcedFormatStrategy",
    "MinimalStrategy",
    # Proxy
    "ProxyPool",
    "ProxyHandle",
    "ProxyState",
    "ProxyTunnel",
    # Utils
    "PreviewError",
    "NotFoundError",
    "ExtractionError",
    "NetworkError",
    "ProxyError",
    "CacheIOError",
    "OperationTimeoutError",
    "InvalidQueryError",
    "ConfigurationError",
]
