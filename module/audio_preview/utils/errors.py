"""
預覽解析統一錯誤系統

所有錯誤都繼承自 PreviewError，包含：
- message: 技術性錯誤訊息（給開發者 / log）
- user_message: 使用者友善的訊息（給前端顯示）

除了 InvalidQueryError 與 ConfigurationError 之外，這些錯誤都會在
發生的那一層被攔截並轉換成 None / 空列表，不會傳到呼叫端。
"""

from typing import Optional


class PreviewError(Exception):
    """預覽解析錯誤基類"""

    def __init__(self, message: str, user_message: Optional[str] = None):
        self.message = message
        self.user_message = user_message or message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class NotFoundError(PreviewError):
    """搜尋沒有任何結果"""

    def __init__(self, query: str):
        self.query = query
        super().__init__(
            message=f"No candidates found for: {query}",
            user_message="找不到可用的預覽"
        )


class ExtractionError(PreviewError):
    """
    無法取得音訊串流

    reason 可為：
    - no_audio: 沒有純音訊格式
    - age_restricted: 年齡限制
    - copyright: 版權問題
    - private: 私人影片
    - unavailable: 已不可用
    - region_blocked: 地區限制
    - unknown: 未知原因
    """

    REASON_MESSAGES = {
        "no_audio": "此影片沒有可用的音訊",
        "age_restricted": "此影片有年齡限制，無法播放",
        "copyright": "此影片因版權問題被阻擋",
        "private": "此影片為私人或不公開",
        "unavailable": "此影片已不可用",
        "region_blocked": "此影片在您的地區無法觀看",
        "unknown": "預覽暫時無法使用",
    }

    def __init__(self, message: str, reason: str = "unknown", media_id: Optional[str] = None):
        self.reason = reason
        self.media_id = media_id
        user_message = self.REASON_MESSAGES.get(reason, self.REASON_MESSAGES["unknown"])
        super().__init__(message=message, user_message=user_message)


class NetworkError(PreviewError):
    """連線失敗或逾時（平台端）"""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            user_message="連線失敗，請稍後再試"
        )


class ProxyError(NetworkError):
    """代理失效或被封鎖，會觸發封禁與重試"""

    def __init__(self, message: str, proxy_url: Optional[str] = None):
        self.proxy_url = proxy_url
        super().__init__(message)


class CacheIOError(PreviewError):
    """快取檔案讀寫失敗（不影響記憶體快取）"""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message=message, user_message="快取暫時無法使用")


class OperationTimeoutError(PreviewError):
    """操作超時"""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            message=f"{operation} timed out after {timeout}s",
            user_message="操作超時，請稍後再試"
        )


class InvalidQueryError(PreviewError, ValueError):
    """查詢缺少必要欄位（呼叫端的程式錯誤，會直接拋出）"""

    def __init__(self, message: str):
        super().__init__(message=message, user_message="查詢格式錯誤")


class ConfigurationError(PreviewError):
    """設定值無效"""
    pass
