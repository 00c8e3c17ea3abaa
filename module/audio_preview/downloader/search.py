"""
搜尋解析器

把查詢轉成平台上的候選影片：
- 在查詢文字後加上關鍵字（偏向錄音室版本，而不是現場 / 混音）
- 使用平台的公開搜尋（不需要 API 金鑰）
- 預設直接採用第一筆結果，可以換上自訂的排序函式
"""

from typing import Callable, List, Optional
from loguru import logger

from .yt_dlp import YTDLPClient
from ..constants import SEARCH_LIMIT, SEARCH_KEYWORDS
from ..models import Candidate, PreviewQuery
from ..utils.errors import NotFoundError, PreviewError, ProxyError

Ranker = Callable[[PreviewQuery, List[Candidate]], List[Candidate]]


def keep_platform_order(query: PreviewQuery, candidates: List[Candidate]) -> List[Candidate]:
    """預設排序：保留平台回傳的順序"""
    return list(candidates)


class SearchResolver:
    """
    搜尋解析器

    使用方式：
        searcher = SearchResolver(YTDLPClient())
        candidates = await searcher.search(PreviewQuery("Queen", "Bohemian Rhapsody"))
        best = candidates[0] if candidates else None

        # 自訂排序（例如過濾太長的影片）
        searcher = SearchResolver(client, ranker=lambda q, c: [x for x in c if x.duration < 600])
    """

    def __init__(
        self,
        client: YTDLPClient,
        limit: int = SEARCH_LIMIT,
        keywords: str = SEARCH_KEYWORDS,
        ranker: Optional[Ranker] = None,
    ):
        self.client = client
        self.limit = limit
        self.keywords = keywords
        self.ranker = ranker or keep_platform_order

    def build_search_string(self, query: PreviewQuery) -> str:
        if not self.keywords:
            return query.search_text
        return f"{query.search_text} {self.keywords}"

    async def search(self, query: PreviewQuery, proxy: Optional[str] = None) -> List[Candidate]:
        """
        搜尋候選影片

        Returns:
            候選列表，找不到或連線失敗時返回空列表

        Raises:
            ProxyError: 代理失效（交給上層封禁後重試）
        """
        text = self.build_search_string(query)
        logger.debug(f"[搜尋] {text}")

        try:
            candidates = await self.client.search(text, limit=self.limit, proxy=proxy)
        except ProxyError:
            raise
        except NotFoundError:
            logger.warning(f"[搜尋] 找不到結果: {text}")
            return []
        except PreviewError as e:
            logger.warning(f"[搜尋] 搜尋失敗: {e}")
            return []

        ranked = self.ranker(query, candidates)[:self.limit]
        if ranked:
            logger.debug(f"[搜尋] 最佳結果: \"{ranked[0].title}\" ({ranked[0].media_id})")
        return ranked
