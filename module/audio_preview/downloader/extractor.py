"""
串流擷取器

依序嘗試多種擷取策略，第一個成功的就採用：
1. StandardStrategy      取得串流清單 → 篩選純音訊 → 選最高位元率
2. ForcedFormatStrategy  同一份清單，附上明確的 User-Agent，直接取第一個純音訊格式
3. MinimalStrategy       不看清單，直接要最低畫質的音訊 URL（容錯度最高）

每個策略失敗都只在本地記錄，全部失敗時回傳 None。
另外會產生嵌入式播放器的備援資訊（隨機起點 + 30 秒）。
"""

import random
from typing import List, Optional, Sequence
from loguru import logger

from .yt_dlp import YTDLPClient
from ..constants import (
    EMBED_PLATFORM,
    FALLBACK_USER_AGENT,
    PREVIEW_LENGTH,
    PREVIEW_START_MIN,
    PREVIEW_START_MAX,
)
from ..models import AudioStream, Candidate, EmbedDescriptor, Preview, PreviewSource
from ..utils.errors import ExtractionError, ProxyError


class ExtractionStrategy:
    """
    擷取策略基類

    子類別實作 fetch()，成功回傳 AudioStream，失敗拋出例外
    """

    name: str = "base"

    async def fetch(self, client: YTDLPClient, media_id: str, proxy: Optional[str] = None) -> AudioStream:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


class StandardStrategy(ExtractionStrategy):
    """串流清單中位元率最高的純音訊格式"""

    name = "standard"

    async def fetch(self, client: YTDLPClient, media_id: str, proxy: Optional[str] = None) -> AudioStream:
        info = await client.dump_info(media_id, proxy=proxy)
        formats = client.audio_only_formats(info)
        if not formats:
            raise ExtractionError(f"沒有純音訊格式: {media_id}", reason="no_audio", media_id=media_id)

        best = max(formats, key=lambda f: client.format_bitrate(f) or 0)
        return AudioStream(
            url=best["url"],
            mime_type=client.format_mime_type(best),
            bitrate=client.format_bitrate(best),
            format_id=best.get("format_id"),
        )


class ForcedFormatStrategy(ExtractionStrategy):
    """附上明確的客戶端標頭，直接取第一個純音訊格式"""

    name = "forced-format"

    def __init__(self, user_agent: str = FALLBACK_USER_AGENT):
        self.user_agent = user_agent

    async def fetch(self, client: YTDLPClient, media_id: str, proxy: Optional[str] = None) -> AudioStream:
        info = await client.dump_info(media_id, headers={"User-Agent": self.user_agent}, proxy=proxy)
        formats = client.audio_only_formats(info)
        if not formats:
            raise ExtractionError(f"沒有純音訊格式: {media_id}", reason="no_audio", media_id=media_id)

        first = formats[0]
        return AudioStream(
            url=first["url"],
            mime_type=client.format_mime_type(first),
            bitrate=client.format_bitrate(first),
            format_id=first.get("format_id"),
        )


class MinimalStrategy(ExtractionStrategy):
    """最後手段：最低畫質的音訊，不檢查串流清單"""

    name = "minimal"

    def __init__(self, format_selector: str = "worstaudio"):
        self.format_selector = format_selector

    async def fetch(self, client: YTDLPClient, media_id: str, proxy: Optional[str] = None) -> AudioStream:
        url = await client.get_stream_url(media_id, format_selector=self.format_selector, proxy=proxy)
        return AudioStream(url=url)


def default_strategies() -> List[ExtractionStrategy]:
    return [StandardStrategy(), ForcedFormatStrategy(), MinimalStrategy()]


class StreamExtractor:
    """
    串流擷取器

    使用方式：
        extractor = StreamExtractor(YTDLPClient())

        preview = await extractor.extract(candidate)     # 全部策略失敗時返回 None
        preview = extractor.embed_only(candidate)        # 只用嵌入式播放器
    """

    def __init__(
        self,
        client: YTDLPClient,
        strategies: Optional[Sequence[ExtractionStrategy]] = None,
        rng: Optional[random.Random] = None,
        preview_length: int = PREVIEW_LENGTH,
        start_range: tuple = (PREVIEW_START_MIN, PREVIEW_START_MAX),
    ):
        """
        初始化擷取器

        Args:
            client: yt-dlp 客戶端
            strategies: 擷取策略（依序嘗試），預設為 standard → forced-format → minimal
            rng: 亂數產生器（測試用）
            preview_length: 預覽長度（秒）
            start_range: 預覽起點的範圍（秒，含兩端）
        """
        self.client = client
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self._rng = rng or random.Random()
        self.preview_length = preview_length
        self.start_range = start_range

    async def extract(self, candidate: Candidate, proxy: Optional[str] = None) -> Optional[Preview]:
        """
        依序嘗試所有策略

        Returns:
            直連預覽（附帶嵌入資訊），全部失敗時返回 None

        Raises:
            ProxyError: 代理失效（不算策略失敗，交給上層處理）
        """
        media_id = candidate.media_id

        for strategy in self.strategies:
            try:
                stream = await strategy.fetch(self.client, media_id, proxy=proxy)
            except ProxyError:
                raise
            except Exception as e:
                logger.warning(f"[擷取] 策略 {strategy.name} 失敗 ({media_id}): {e}")
                continue

            logger.debug(f"[擷取] 策略 {strategy.name} 成功: {media_id}")
            return Preview(
                media_id=media_id,
                title=candidate.title,
                channel_label=candidate.channel_label,
                thumbnail_url=candidate.thumbnail_url,
                direct_audio_url=stream.url,
                embed=self.make_embed(media_id),
                bitrate=stream.bitrate,
                mime_type=stream.mime_type,
                source=PreviewSource.DIRECT,
            )

        logger.warning(f"[擷取] 所有策略都失敗: {media_id}")
        return None

    def embed_only(self, candidate: Candidate) -> Preview:
        """沒有直連串流時，只用嵌入式播放器"""
        return Preview(
            media_id=candidate.media_id,
            title=candidate.title,
            channel_label=candidate.channel_label,
            thumbnail_url=candidate.thumbnail_url,
            embed=self.make_embed(candidate.media_id),
            source=PreviewSource.EMBED,
        )

    def make_embed(self, media_id: str) -> EmbedDescriptor:
        """隨機起點，避免每次都從前奏開始"""
        start = self._rng.randint(*self.start_range)
        return EmbedDescriptor(
            platform=EMBED_PLATFORM,
            media_id=media_id,
            start_offset=start,
            end_offset=start + self.preview_length,
        )
