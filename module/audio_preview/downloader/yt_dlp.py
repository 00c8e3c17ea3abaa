"""
yt-dlp 非同步客戶端

使用 asyncio.create_subprocess_exec 呼叫 yt-dlp：
- 完全不阻塞事件循環
- 不佔用 ThreadPoolExecutor 線程
- 每次呼叫都可以指定不同的代理

支援功能：
- 文字搜尋（ytsearchN:，不需要官方 API）
- 取得串流清單（--dump-json）
- 直接取得串流 URL（--get-url）
"""

import asyncio
import json
from typing import Dict, List, Optional
from loguru import logger

from ..constants import (
    YTDLP_PATH,
    YTDLP_SEARCH_TIMEOUT,
    YTDLP_EXTRACT_TIMEOUT,
    YTDLP_PROCESS_START_TIMEOUT,
)
from ..models import Candidate
from ..utils.errors import ExtractionError, NetworkError, NotFoundError, ProxyError
from ..utils.text import mask_proxy_url


class YTDLPClient:
    """
    yt-dlp 非同步客戶端

    使用方式：
        client = YTDLPClient()

        # 搜尋
        candidates = await client.search("Queen Bohemian Rhapsody audio official", limit=3)

        # 取得串流清單（含 formats）
        info = await client.dump_info("fJ9rUzIMcZQ", proxy="http://1.2.3.4:8080")

        # 直接取得串流 URL
        url = await client.get_stream_url("fJ9rUzIMcZQ", format_selector="worstaudio")
    """

    # 錯誤模式對應表（順序即優先順序）
    ERROR_PATTERNS = {
        "proxy": [
            "unable to connect to proxy",
            "proxyerror",
            "proxy error",
            "tunnel connection failed",
            "407 proxy authentication",
            "cannot connect to proxy",
        ],
        "rate_limited": [
            "http error 429",
            "too many requests",
            "sign in to confirm you're not a bot",
            "sign in to confirm you’re not a bot",
        ],
        "age_restricted": [
            "sign in to confirm your age",
            "age-restricted",
            "inappropriate for some users"
        ],
        "copyright": [
            "copyright grounds",
            "blocked it",
            "content owner",
            "has blocked"
        ],
        "region_blocked": [
            "not available in your country"
        ],
        "private": [
            "private video",
            "sign in if you've been granted access"
        ],
        "unavailable": [
            "video unavailable",
            "this video is unavailable",
            "no longer available",
            "has been removed",
            "account has been terminated"
        ],
        "no_audio": [
            "requested format is not available",
            "no video formats found",
        ],
        "network": [
            "timed out",
            "connection reset",
            "connection refused",
            "temporary failure in name resolution",
            "name or service not known",
            "network is unreachable",
            "unable to download webpage",
            "remote end closed connection",
        ],
    }

    # 走代理時，這些錯誤視為代理的問題
    PROXY_ATTRIBUTABLE = {"proxy", "network", "rate_limited"}

    # 無效標題模式
    INVALID_TITLE_PATTERNS = [
        "deleted video", "private video", "video unavailable",
        "track not found", "removed track", "track unavailable",
        "content not available", "no longer exists"
    ]

    def __init__(
        self,
        executable: str = YTDLP_PATH,
        search_timeout: float = YTDLP_SEARCH_TIMEOUT,
        extract_timeout: float = YTDLP_EXTRACT_TIMEOUT,
    ):
        """
        初始化客戶端

        Args:
            executable: yt-dlp 執行檔路徑
            search_timeout: 搜尋超時時間（秒）
            extract_timeout: 擷取超時時間（秒）
        """
        self.executable = executable
        self.search_timeout = search_timeout
        self.extract_timeout = extract_timeout

        logger.debug(f"YTDLPClient 初始化: executable={executable}")

    # === 公開方法 ===

    async def search(self, text: str, limit: int = 3, proxy: Optional[str] = None) -> List[Candidate]:
        """
        文字搜尋

        Args:
            text: 搜尋字串
            limit: 最多幾筆
            proxy: 代理 URL（None 表示直連）

        Returns:
            候選影片列表（依平台排序）

        Raises:
            NotFoundError: 沒有任何有效結果
        """
        args = [
            f"ytsearch{limit}:{text}",
            "--flat-playlist",
            "--dump-json",
            "--quiet",
            "--no-warnings",
        ]
        stdout = await self._run(args, timeout=self.search_timeout, proxy=proxy, target=text)

        candidates = []
        for line in stdout.splitlines():
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            candidate = self._parse_video_data(data)
            if candidate:
                candidates.append(candidate)

        if not candidates:
            raise NotFoundError(text)

        logger.debug(f"[yt-dlp] 搜尋完成: {text} → {len(candidates)} 筆")
        return candidates[:limit]

    async def dump_info(
        self,
        media_id: str,
        headers: Optional[Dict[str, str]] = None,
        proxy: Optional[str] = None,
    ) -> dict:
        """
        取得影片完整資訊（含 formats 串流清單）

        Args:
            media_id: 影片 ID
            headers: 額外的 HTTP 標頭
            proxy: 代理 URL
        """
        args = [
            "--dump-json",
            "--skip-download",
            "--no-playlist",
            "--quiet",
            "--no-warnings",
        ]
        for name, value in (headers or {}).items():
            args += ["--add-header", f"{name}:{value}"]
        args.append(self.watch_url(media_id))

        stdout = await self._run(args, timeout=self.extract_timeout, proxy=proxy, target=media_id)
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"JSON 解析失敗: {e}", media_id=media_id)

    async def get_stream_url(
        self,
        media_id: str,
        format_selector: str = "worstaudio",
        proxy: Optional[str] = None,
    ) -> str:
        """
        直接取得串流 URL（不檢查串流清單）
        """
        args = [
            "--format", format_selector,
            "--get-url",
            "--no-playlist",
            "--quiet",
            "--no-warnings",
            self.watch_url(media_id),
        ]
        stdout = await self._run(args, timeout=self.extract_timeout, proxy=proxy, target=media_id)

        for line in stdout.splitlines():
            if line.startswith("http"):
                return line.strip()
        raise ExtractionError(f"yt-dlp 沒有回傳串流 URL: {media_id}", reason="no_audio", media_id=media_id)

    @staticmethod
    def watch_url(media_id: str) -> str:
        return f"https://www.youtube.com/watch?v={media_id}"

    @staticmethod
    def audio_only_formats(info: dict) -> List[dict]:
        """篩選純音訊格式（有音訊編碼、沒有影像編碼、有 URL）"""
        formats = info.get("formats") or []
        return [
            f for f in formats
            if f.get("url")
            and f.get("vcodec") == "none"
            and f.get("acodec") not in (None, "none")
        ]

    @staticmethod
    def format_mime_type(fmt: dict) -> Optional[str]:
        """依副檔名與編碼組出 MIME，例如 audio/webm; codecs="opus" """
        ext = fmt.get("audio_ext") if fmt.get("audio_ext") not in (None, "none") else fmt.get("ext")
        if not ext:
            return None
        if ext == "m4a":
            ext = "mp4"
        codec = fmt.get("acodec")
        if codec and codec != "none":
            return f'audio/{ext}; codecs="{codec}"'
        return f"audio/{ext}"

    @staticmethod
    def format_bitrate(fmt: dict) -> Optional[int]:
        bitrate = fmt.get("abr") or fmt.get("tbr")
        try:
            return int(round(float(bitrate))) if bitrate else None
        except (ValueError, TypeError, OverflowError):
            return None

    # === 私有方法 ===

    async def _run(self, args: List[str], timeout: float, proxy: Optional[str], target: str) -> str:
        """
        執行 yt-dlp 並回傳 stdout

        失敗時依 stderr 內容拋出對應的錯誤
        """
        full_args = [self.executable, *args]
        if proxy:
            full_args += ["--proxy", proxy]

        logger.debug(f"[yt-dlp] 執行指令: {mask_proxy_url(' '.join(full_args))}")

        try:
            proc = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *full_args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE
                ),
                timeout=YTDLP_PROCESS_START_TIMEOUT  # 建立進程的超時
            )
        except FileNotFoundError:
            logger.error(f"找不到 yt-dlp 執行檔: {self.executable}")
            raise ExtractionError(f"yt-dlp executable not found: {self.executable}")
        except asyncio.TimeoutError:
            raise ExtractionError(f"yt-dlp 進程啟動超時: {target}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._terminate(proc)
            message = f"yt-dlp 超時 ({timeout}s): {target}"
            logger.warning(f"[yt-dlp] {message}")
            if proxy:
                raise ProxyError(message, proxy_url=proxy)
            raise NetworkError(message)
        except asyncio.CancelledError:
            # 上層取消（例如閘門時限）時子進程也要一起結束
            await self._terminate(proc)
            logger.debug(f"[yt-dlp] 已取消並結束子進程: {target}")
            raise

        stdout_str = stdout.decode(errors="replace").strip()
        stderr_str = stderr.decode(errors="replace").strip()

        logger.debug(f"[yt-dlp] returncode={proc.returncode}")
        if stderr_str:
            logger.debug(f"[yt-dlp] stderr: {stderr_str[:500]}")

        if proc.returncode != 0:
            error_msg = stderr_str or stdout_str or f"未知錯誤 (returncode={proc.returncode})"
            raise self._classify_error(error_msg, target, proxy)

        return stdout_str

    @staticmethod
    async def _terminate(proc) -> None:
        """強制結束子進程並等待回收"""
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()

    def _classify_error(self, error_msg: str, target: str, proxy: Optional[str]) -> Exception:
        """
        根據錯誤訊息建立對應的例外
        """
        error_type = self._detect_error_type(error_msg)
        short = error_msg.splitlines()[-1][:300] if error_msg else ""

        if proxy and error_type in self.PROXY_ATTRIBUTABLE:
            return ProxyError(f"代理失敗 ({error_type}) {mask_proxy_url(proxy)}: {short}", proxy_url=proxy)
        if error_type in ("network", "rate_limited", "proxy"):
            return NetworkError(f"連線失敗 ({error_type}) {target}: {short}")
        return ExtractionError(f"yt-dlp 失敗 ({error_type}) {target}: {short}", reason=error_type, media_id=target)

    def _detect_error_type(self, error_msg: str) -> str:
        """
        根據錯誤訊息檢測錯誤類型
        """
        error_lower = error_msg.lower()

        for error_type, patterns in self.ERROR_PATTERNS.items():
            for pattern in patterns:
                if pattern in error_lower:
                    return error_type

        return "unknown"

    def _parse_video_data(self, data: dict) -> Optional[Candidate]:
        """
        解析 yt-dlp 輸出的資料為 Candidate
        """
        if not data.get("id") or not self._is_valid_video(data):
            logger.debug(f"跳過無效影片: {data.get('title', 'Unknown')}")
            return None

        page_url = data.get("webpage_url") or data.get("url") or ""
        if not page_url.startswith("http"):
            page_url = self.watch_url(data["id"])

        # 處理 duration（某些情況會是 float 或 None）
        duration = data.get("duration") or 0
        try:
            duration = int(float(duration)) if duration else 0
        except (ValueError, TypeError, OverflowError):
            duration = 0

        return Candidate(
            media_id=data["id"],
            title=data.get("title") or "",
            channel_label=data.get("channel") or data.get("uploader") or data.get("artist") or "Unknown",
            thumbnail_url=self._pick_best_thumbnail(data),
            duration=duration,
            url=page_url,
        )

    def _is_valid_video(self, data: dict) -> bool:
        """
        檢查影片是否有效
        """
        title = (data.get("title") or "").lower()

        for pattern in self.INVALID_TITLE_PATTERNS:
            if pattern in title:
                return False

        if not title or title in ["[deleted video]", "[private video]", "untitled"]:
            return False

        # 直播沒有固定時長，無法做預覽
        if data.get("live_status") == "is_live":
            return False

        duration = data.get("duration")
        if duration is not None:
            try:
                if int(float(duration)) <= 0:
                    return False
            except (ValueError, TypeError, OverflowError):
                return False

        return True

    def _pick_best_thumbnail(self, data: dict) -> str:
        """
        選取最佳縮圖
        """
        thumb = data.get("thumbnail")
        if not thumb and data.get("thumbnails"):
            thumbnails = data["thumbnails"]
            # 選最大尺寸
            thumb = max(
                thumbnails,
                key=lambda t: (t.get("width") or 0) * (t.get("height") or 0)
            ).get("url", "")
        return thumb or ""
