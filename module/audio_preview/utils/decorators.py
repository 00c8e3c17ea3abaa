"""
預覽解析裝飾器

提供自動化功能：
- best_effort: 失敗時回傳預設值而不是拋出（呼叫端永遠拿得到結果）
- handle_errors: 統一錯誤記錄
- log_operation: 記錄操作的開始和結束
"""

from functools import wraps
from typing import Any, Callable, TypeVar, ParamSpec
from loguru import logger

from .errors import PreviewError, InvalidQueryError, ConfigurationError

P = ParamSpec('P')
T = TypeVar('T')


def best_effort(default: Any = None):
    """
    裝飾器：把解析過程中的錯誤轉成預設值

    InvalidQueryError / ConfigurationError 屬於呼叫端錯誤，照常拋出。

    使用方式：
        @best_effort(default=None)
        async def fetch(self, query):
            ...
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except (InvalidQueryError, ConfigurationError):
                raise
            except PreviewError as e:
                logger.warning(f"[{func.__name__}] 預覽失敗: {e.message}")
                return default
            except Exception as e:
                logger.exception(f"[{func.__name__}] 未預期錯誤: {e}")
                return default

        return wrapper
    return decorator


def handle_errors(func: Callable[P, T]) -> Callable[P, T]:
    """
    裝飾器：統一處理錯誤並記錄

    使用方式：
        @handle_errors
        async def some_operation(self):
            # 任何 PreviewError 會被記錄後再拋出
            ...
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PreviewError as e:
            logger.error(f"[{func.__name__}] 預覽錯誤: {e.message}")
            raise
        except Exception as e:
            logger.exception(f"[{func.__name__}] 未預期錯誤: {e}")
            raise

    return wrapper


def log_operation(operation_name: str = None):
    """
    裝飾器：記錄操作的開始和結束

    使用方式：
        @log_operation("批次預載")
        async def preload(self, queries):
            ...
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger.debug(f"開始: {name}")
            try:
                result = await func(*args, **kwargs)
                logger.debug(f"完成: {name}")
                return result
            except Exception as e:
                logger.error(f"失敗: {name} - {e}")
                raise

        return wrapper
    return decorator
