"""
批次預載

在遊戲開始前替整份題目清單補上預覽：
- 分批處理，每批大小 min(10, 2 × max_parallel)
- 同一批同時解析，整批結束並短暫停頓後才開始下一批
- 每處理完一題就回報進度
- 不修改傳入的原始資料
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union
from loguru import logger

from .resolver import PreviewResolver
from ..constants import PRELOAD_BATCH_PAUSE, PRELOAD_MAX_BATCH_SIZE
from ..models import Preview, PreviewQuery, PreviewSource, QueryKind
from ..utils.decorators import log_operation
from ..utils.errors import InvalidQueryError

_KNOWN_KEYS = ("type", "artistName", "answer", "previewUrl", "previewSource", "previewMetadata")


@dataclass
class EnrichedQuery:
    """題目（解析後帶有預覽資訊）"""
    type: str
    artist_name: Optional[str] = None
    answer: Optional[str] = None
    preview_url: Optional[str] = None
    preview_source: Optional[str] = None
    preview_metadata: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)   # 其他欄位原樣保留

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnrichedQuery":
        return cls(
            type=data.get("type") or "",
            artist_name=data.get("artistName"),
            answer=data.get("answer"),
            preview_url=data.get("previewUrl"),
            preview_source=data.get("previewSource"),
            preview_metadata=dict(data["previewMetadata"]) if data.get("previewMetadata") else None,
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.extra)
        result.update({"type": self.type, "artistName": self.artist_name, "answer": self.answer})
        if self.preview_url:
            result["previewUrl"] = self.preview_url
            result["previewSource"] = self.preview_source
            result["previewMetadata"] = self.preview_metadata
        return result

    def to_query(self) -> Optional[PreviewQuery]:
        """題型不是 song / artist 或缺少歌手時返回 None"""
        if self.type not in (QueryKind.SONG.value, QueryKind.ARTIST.value):
            return None
        try:
            if self.type == QueryKind.SONG.value:
                return PreviewQuery(self.artist_name, self.answer or None, QueryKind.SONG)
            return PreviewQuery(self.artist_name, kind=QueryKind.ARTIST)
        except InvalidQueryError:
            return None

    def apply(self, preview: Preview) -> None:
        if preview.direct_audio_url:
            self.preview_url = preview.direct_audio_url
            self.preview_source = PreviewSource.DIRECT.value
        else:
            self.preview_url = preview.embed.url
            self.preview_source = PreviewSource.EMBED.value
        self.preview_metadata = {
            "videoId": preview.media_id,
            "title": preview.title,
            "channelName": preview.channel_label,
            "thumbnailUrl": preview.thumbnail_url,
        }


@dataclass(frozen=True)
class PreloadProgress:
    processed: int
    total: int
    with_preview: int

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "total": self.total, "withPreview": self.with_preview}


ProgressCallback = Callable[[PreloadProgress], Union[None, Awaitable[None]]]
QueryItem = Union[EnrichedQuery, Dict[str, Any]]


class BatchPreloader:
    """
    批次預載器

    使用方式：
        preloader = BatchPreloader(resolver)
        questions = await preloader.preload(questions, on_progress=lambda p: print(p.processed, p.total))
    """

    def __init__(
        self,
        resolver: PreviewResolver,
        max_batch_size: int = PRELOAD_MAX_BATCH_SIZE,
        batch_pause: float = PRELOAD_BATCH_PAUSE,
    ):
        self.resolver = resolver
        self.batch_size = max(1, min(max_batch_size, 2 * resolver.gate.max_parallel))
        self.batch_pause = batch_pause

    @log_operation("批次預載")
    async def preload(
        self,
        queries: Iterable[QueryItem],
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[EnrichedQuery]:
        """
        替所有題目補上預覽

        Returns:
            新的 EnrichedQuery 列表（順序與輸入相同）
        """
        items = [self._copy(q) for q in queries]
        total = len(items)
        counters = {"processed": 0, "with_preview": 0}

        async def report(has_preview: bool) -> None:
            counters["processed"] += 1
            if has_preview:
                counters["with_preview"] += 1
            if on_progress is not None:
                await self._notify(on_progress, PreloadProgress(
                    processed=counters["processed"],
                    total=total,
                    with_preview=counters["with_preview"],
                ))

        logger.info(f"[預載] 開始: {total} 題，每批 {self.batch_size} 題")

        for start in range(0, total, self.batch_size):
            batch = items[start:start + self.batch_size]
            await asyncio.gather(*(self._enrich(item, report) for item in batch))

            if start + self.batch_size < total and self.batch_pause > 0:
                await asyncio.sleep(self.batch_pause)

        logger.info(f"[預載] 完成: {counters['with_preview']}/{total} 題有預覽")
        return items

    async def _enrich(self, item: EnrichedQuery, report: Callable[[bool], Awaitable[None]]) -> None:
        if item.preview_url:
            await report(True)
            return

        query = item.to_query()
        if query is None:
            await report(False)
            return

        preview = await self.resolver.resolve(query)
        if preview is not None:
            item.apply(preview)
        await report(preview is not None)

    @staticmethod
    def _copy(item: QueryItem) -> EnrichedQuery:
        if isinstance(item, EnrichedQuery):
            return EnrichedQuery.from_dict(item.to_dict())
        return EnrichedQuery.from_dict(item)

    @staticmethod
    async def _notify(callback: ProgressCallback, progress: PreloadProgress) -> None:
        try:
            result = callback(progress)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"[預載] 進度回調失敗: {e}")
