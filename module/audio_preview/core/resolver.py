"""
預覽解析器（協調者）

流程：
    查詢 → 快取 → 併發閘門 → [取代理 → 搜尋 → 擷取 → 嵌入備援] → 寫入快取

特性：
- 任何失敗都回傳 None，不會拋出（查詢格式錯誤除外）
- 同一個查詢同時只會有一個解析任務，其他請求共用結果
- 代理失效時封禁並換下一個，最多重試 max_proxy_retries 次
"""

import asyncio
from typing import Any, Dict, Optional, Union
from loguru import logger

from .cache import CacheStore
from .queue import ConcurrencyGate
from ..config import PreviewConfig
from ..constants import PROXY_MAX_RETRIES, EMBED_FALLBACK
from ..downloader import YTDLPClient, SearchResolver, StreamExtractor
from ..models import Preview, PreviewQuery, QueryKind
from ..proxy import ProxyPool
from ..utils.decorators import best_effort
from ..utils.errors import InvalidQueryError, ProxyError

QueryInput = Union[PreviewQuery, Dict[str, Any]]


class PreviewResolver:
    """
    預覽解析器

    使用方式：
        async with PreviewResolver.from_config(PreviewConfig.from_env()) as resolver:
            preview = await resolver.resolve_song("Queen", "Bohemian Rhapsody")
            if preview:
                print(preview.playable_url)

        # 也可以直接傳入 dict
        preview = await resolver.resolve({"artistName": "Björk", "kind": "artist"})
    """

    def __init__(
        self,
        cache: CacheStore,
        gate: ConcurrencyGate,
        searcher: SearchResolver,
        extractor: StreamExtractor,
        proxy_pool: Optional[ProxyPool] = None,
        max_proxy_retries: int = PROXY_MAX_RETRIES,
        embed_fallback: bool = EMBED_FALLBACK,
        task_timeout: Optional[float] = None,
    ):
        """
        初始化解析器

        Args:
            cache: 預覽快取
            gate: 併發閘門
            searcher: 搜尋解析器
            extractor: 串流擷取器
            proxy_pool: 代理池（None 表示直連）
            max_proxy_retries: 代理失效時最多重試幾次
            embed_fallback: 擷取失敗時是否改用嵌入式播放器
            task_timeout: 單一解析任務的時限（秒）
        """
        self.cache = cache
        self.gate = gate
        self.searcher = searcher
        self.extractor = extractor
        self.proxy_pool = proxy_pool
        self.max_proxy_retries = max_proxy_retries
        self.embed_fallback = embed_fallback
        self.task_timeout = task_timeout

        self._inflight: Dict[str, asyncio.Task] = {}
        self._started = False

        logger.debug(
            f"PreviewResolver 初始化: proxy={'on' if proxy_pool else 'off'}, "
            f"embed_fallback={embed_fallback}, task_timeout={task_timeout}"
        )

    @classmethod
    def from_config(cls, config: Optional[PreviewConfig] = None) -> "PreviewResolver":
        """依設定組裝所有元件"""
        config = config or PreviewConfig()

        client = YTDLPClient(
            executable=config.ytdlp_path,
            search_timeout=config.ytdlp_search_timeout,
            extract_timeout=config.ytdlp_extract_timeout,
        )
        proxy_pool = None
        if config.proxy_enabled:
            proxy_pool = ProxyPool(
                sources=config.proxy_sources,
                reliable_proxies=config.proxy_reliable,
                cache_path=config.proxy_cache_path,
                test_url=config.proxy_test_url,
                test_timeout=config.proxy_test_timeout,
            )

        return cls(
            cache=CacheStore(config.cache_dir, ttl=config.cache_ttl),
            gate=ConcurrencyGate(config.max_parallel),
            searcher=SearchResolver(client, limit=config.search_limit, keywords=config.search_keywords),
            extractor=StreamExtractor(client),
            proxy_pool=proxy_pool,
            max_proxy_retries=config.proxy_max_retries,
            embed_fallback=config.embed_fallback,
            task_timeout=config.task_timeout,
        )

    # === 生命週期 ===

    async def start(self) -> "PreviewResolver":
        """載入代理池（沒有代理池時不做任何事）"""
        if not self._started and self.proxy_pool is not None:
            await self.proxy_pool.init()
        self._started = True
        return self

    async def close(self) -> None:
        """取消進行中的解析（含閘門內執行中的子進程）並關閉代理通道"""
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()

        # 取消呼叫端不會停止閘門內的任務，要另外取消
        await self.gate.cancel_all()

        if self.proxy_pool is not None:
            await self.proxy_pool.cleanup()
        logger.info("PreviewResolver 已關閉")

    async def __aenter__(self) -> "PreviewResolver":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # === 公開方法 ===

    async def resolve(self, query: QueryInput, *, skip_cache: bool = False) -> Optional[Preview]:
        """
        解析預覽

        Args:
            query: PreviewQuery 或 {artistName, trackName?, kind} 格式的 dict
            skip_cache: 略過快取讀取（結果仍會寫入快取）

        Returns:
            Preview，找不到或失敗時返回 None

        Raises:
            InvalidQueryError: 查詢缺少歌手名稱
        """
        query = self._coerce(query)
        key = query.cache_key

        if not skip_cache:
            cached = self.cache.get(query)
            if cached is not None:
                logger.debug(f"[解析] 快取命中: {query}")
                return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._resolve_uncached(query), name=f"resolve_{key}")
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug(f"[解析] 共用進行中的任務: {query}")

        # shield：單一呼叫端被取消時不影響其他等待者
        return await asyncio.shield(task)

    async def resolve_song(self, artist_name: str, track_name: str, **kwargs) -> Optional[Preview]:
        return await self.resolve(PreviewQuery(artist_name, track_name, QueryKind.SONG), **kwargs)

    async def resolve_artist(self, artist_name: str, **kwargs) -> Optional[Preview]:
        return await self.resolve(PreviewQuery(artist_name, kind=QueryKind.ARTIST), **kwargs)

    # === 內部方法 ===

    @staticmethod
    def _coerce(query: QueryInput) -> PreviewQuery:
        if isinstance(query, PreviewQuery):
            return query
        if isinstance(query, dict):
            return PreviewQuery.from_dict(query)
        raise InvalidQueryError(f"unsupported query type: {type(query).__name__}")

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    @best_effort(default=None)
    async def _resolve_uncached(self, query: PreviewQuery) -> Optional[Preview]:
        preview = await self.gate.run(
            lambda: self._fetch(query),
            timeout=self.task_timeout,
            name=query.cache_key,
        )
        if preview is None:
            logger.info(f"[解析] 沒有可用的預覽: {query}")
            return None

        self.cache.set(query, preview)
        logger.info(f"[解析] {query} → {preview.media_id} ({preview.source.value})")
        return preview

    async def _fetch(self, query: PreviewQuery) -> Optional[Preview]:
        """取代理 → 搜尋 → 擷取；代理失效時封禁並換下一個"""
        retries = 0
        while True:
            handle = await self.proxy_pool.get_agent() if self.proxy_pool else None
            proxy = handle.endpoint if handle else None

            try:
                return await self._search_and_extract(query, proxy)
            except ProxyError as e:
                if handle is None:
                    logger.warning(f"[解析] 直連時出現代理錯誤，放棄: {e}")
                    return None

                await self.proxy_pool.ban_proxy(handle.url)
                retries += 1
                if retries > self.max_proxy_retries:
                    logger.warning(f"[解析] 代理重試次數已用完 ({self.max_proxy_retries}): {query}")
                    return None
                logger.info(f"[解析] 代理失效，換下一個重試 ({retries}/{self.max_proxy_retries}): {query}")

    async def _search_and_extract(self, query: PreviewQuery, proxy: Optional[str]) -> Optional[Preview]:
        candidates = await self.searcher.search(query, proxy=proxy)
        if not candidates:
            return None

        best = candidates[0]
        preview = await self.extractor.extract(best, proxy=proxy)
        if preview is None and self.embed_fallback:
            logger.debug(f"[解析] 改用嵌入式播放器: {best.media_id}")
            preview = self.extractor.embed_only(best)
        return preview
