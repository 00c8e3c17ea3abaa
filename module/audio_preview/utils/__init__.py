# Utils module
from .errors import (
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
from .decorators import best_effort, handle_errors, log_operation
from .text import normalize_text, mask_proxy_url

__all__ = [
    # Errors
    "PreviewError",
    "NotFoundError",
    "ExtractionError",
    "NetworkError",
    "ProxyError",
    "CacheIOError",
    "OperationTimeoutError",
    "InvalidQueryError",
    "ConfigurationError",
    # Decorators
    "best_effort",
    "handle_errors",
    "log_operation",
    # Text
    "normalize_text",
    "mask_proxy_url",
]
