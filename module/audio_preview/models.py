"""
預覽資料結構

- PreviewQuery: 使用者要找的歌手 / 歌曲
- Candidate: 搜尋結果中的一支影片
- AudioStream: 擷取策略取得的音訊串流
- EmbedDescriptor: 嵌入式播放器的備援資訊
- Preview: 最終結果（不可變）
- CacheEntry: 快取中的一筆資料
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Any, Dict
from urllib.parse import urlencode

from .constants import ARTIST_SEARCH_SUFFIX, EMBED_PLATFORM
from .utils.errors import InvalidQueryError
from .utils.text import normalize_text


class QueryKind(str, Enum):
    SONG = "song"
    ARTIST = "artist"


class PreviewSource(str, Enum):
    CACHE = "cache"
    DIRECT = "platform-direct"
    EMBED = "platform-embed"


@dataclass(frozen=True)
class PreviewQuery:
    """
    預覽查詢

    使用方式：
        query = PreviewQuery("Queen", "Bohemian Rhapsody")
        query = PreviewQuery.from_dict({"artistName": "Björk", "kind": "artist"})

        query.cache_key    # "queen::bohemian rhapsody"
        query.search_text  # "Queen Bohemian Rhapsody"
    """
    artist_name: str
    track_name: Optional[str] = None
    kind: QueryKind = QueryKind.SONG

    def __post_init__(self):
        if not isinstance(self.artist_name, str) or not self.artist_name.strip():
            raise InvalidQueryError("artist_name is required")
        try:
            object.__setattr__(self, "kind", QueryKind(self.kind))
        except ValueError:
            raise InvalidQueryError(f"unknown query kind: {self.kind!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreviewQuery":
        """接受 camelCase 或 snake_case 欄位"""
        if not isinstance(data, dict):
            raise InvalidQueryError(f"query must be a dict, got {type(data).__name__}")
        artist = data.get("artistName", data.get("artist_name"))
        track = data.get("trackName", data.get("track_name"))
        kind = data.get("kind") or (QueryKind.SONG if track else QueryKind.ARTIST)
        return cls(artist_name=artist, track_name=track or None, kind=kind)

    @property
    def cache_key(self) -> str:
        track = self.track_name if self.kind == QueryKind.SONG else None
        return make_cache_key(self.artist_name, track)

    @property
    def search_text(self) -> str:
        if self.kind == QueryKind.SONG and self.track_name:
            return f"{self.artist_name.strip()} {self.track_name.strip()}"
        return f"{self.artist_name.strip()} {ARTIST_SEARCH_SUFFIX}"

    def __str__(self) -> str:
        if self.kind == QueryKind.SONG and self.track_name:
            return f"{self.artist_name} - {self.track_name}"
        return self.artist_name


def make_cache_key(artist_name: Any, track_name: Any = None) -> str:
    """產生快取鍵（大小寫與變音符號不敏感，永不拋出）"""
    return f"{normalize_text(artist_name)}::{normalize_text(track_name)}"


@dataclass(frozen=True)
class Candidate:
    """搜尋結果中的一支影片"""
    media_id: str
    title: str
    channel_label: str = ""
    thumbnail_url: str = ""
    duration: int = 0                # 時長（秒）
    url: str = ""


@dataclass(frozen=True)
class AudioStream:
    """單一擷取策略的結果"""
    url: str
    mime_type: Optional[str] = None
    bitrate: Optional[int] = None    # kbps
    format_id: Optional[str] = None


@dataclass(frozen=True)
class EmbedDescriptor:
    """嵌入式播放器 + 播放區間"""
    platform: str
    media_id: str
    start_offset: int
    end_offset: int

    @property
    def url(self) -> str:
        params = urlencode({
            "autoplay": 1,
            "start": self.start_offset,
            "end": self.end_offset,
            "controls": 0,
            "enablejsapi": 1,
        })
        return f"https://www.youtube.com/embed/{self.media_id}?{params}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "mediaId": self.media_id,
            "startOffset": self.start_offset,
            "endOffset": self.end_offset,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbedDescriptor":
        return cls(
            platform=data.get("platform") or EMBED_PLATFORM,
            media_id=data["mediaId"],
            start_offset=int(data["startOffset"]),
            end_offset=int(data["endOffset"]),
        )


@dataclass(frozen=True)
class Preview:
    """
    解析結果

    direct_audio_url 與 embed 至少要有一個
    """
    media_id: str
    title: str
    channel_label: str
    thumbnail_url: str
    direct_audio_url: Optional[str] = None
    embed: Optional[EmbedDescriptor] = None
    bitrate: Optional[int] = None
    mime_type: Optional[str] = None
    source: PreviewSource = PreviewSource.DIRECT

    def __post_init__(self):
        if not self.direct_audio_url and self.embed is None:
            raise ValueError("Preview needs a direct_audio_url or an embed descriptor")
        object.__setattr__(self, "source", PreviewSource(self.source))

    @property
    def playable_url(self) -> str:
        """前端實際要播放的 URL（優先直連）"""
        return self.direct_audio_url or self.embed.url

    def with_source(self, source: PreviewSource) -> "Preview":
        return replace(self, source=source)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mediaId": self.media_id,
            "title": self.title,
            "channelLabel": self.channel_label,
            "thumbnailUrl": self.thumbnail_url,
            "directAudioUrl": self.direct_audio_url,
            "embed": self.embed.to_dict() if self.embed else None,
            "bitrate": self.bitrate,
            "mimeType": self.mime_type,
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Preview":
        embed = data.get("embed")
        return cls(
            media_id=data["mediaId"],
            title=data.get("title") or "",
            channel_label=data.get("channelLabel") or "",
            thumbnail_url=data.get("thumbnailUrl") or "",
            direct_audio_url=data.get("directAudioUrl"),
            embed=EmbedDescriptor.from_dict(embed) if embed else None,
            bitrate=data.get("bitrate"),
            mime_type=data.get("mimeType"),
            source=data.get("source") or PreviewSource.DIRECT,
        )


@dataclass
class CacheEntry:
    """快取中的一筆資料（created_at 為 epoch 秒）"""
    key: str
    payload: Preview
    created_at: float = field(default_factory=time.time)
    ttl: float = 0

    def is_fresh(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at < self.ttl
