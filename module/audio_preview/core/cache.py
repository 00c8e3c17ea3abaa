"""
預覽快取管理器

策略：
- 記憶體快取（最快）+ JSON 檔案（重啟後仍可使用）
- 讀取時才檢查過期（不做背景清理）
- 失敗 / 空結果一律不寫入
- 檔案寫入失敗只記錄警告，記憶體快取照常運作

檔案格式：
    music-cache.json  { "<key>": {"timestamp": <epoch ms>, "data": {...Preview}} }
    music-cache.csv   artist,track,url（只追加，給人看的）
"""

import csv
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Union
from loguru import logger

from ..models import CacheEntry, Preview, PreviewQuery, PreviewSource
from ..constants import CACHE_TTL, CACHE_JSON_FILE, CACHE_CSV_FILE
from ..utils.errors import CacheIOError

QueryLike = Union[PreviewQuery, str]


class CacheStore:
    """
    預覽快取

    使用方式：
        cache = CacheStore(cache_dir="./cache/audio", ttl=7 * 24 * 3600)

        preview = cache.get(query)       # 命中返回 Preview（source="cache"），否則 None
        cache.set(query, preview)        # 寫入記憶體與檔案
        cache.clear(query)               # 清除單筆；cache.clear() 清除全部
    """

    CSV_HEADER = ["artist", "track", "url"]

    def __init__(
        self,
        cache_dir: str,
        ttl: float = CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        """
        初始化快取

        Args:
            cache_dir: 快取目錄路徑
            ttl: 有效期限（秒）
            clock: 取得目前時間的函式（測試用）
        """
        self.cache_dir = Path(cache_dir)
        self.ttl = ttl
        self._clock = clock

        self.json_path = self.cache_dir / CACHE_JSON_FILE
        self.csv_path = self.cache_dir / CACHE_CSV_FILE

        self._memory: Dict[str, CacheEntry] = {}

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"[快取] 無法建立快取目錄，僅使用記憶體快取: {e}")

        logger.debug(f"CacheStore 初始化: cache_dir={cache_dir}, ttl={ttl}s")

    # === 公開方法 ===

    def get(self, query: QueryLike) -> Optional[Preview]:
        """
        取得快取

        先查記憶體，未命中才讀檔案；過期資料視為不存在
        """
        key = self._key(query)
        now = self._clock()

        entry = self._memory.get(key)
        if entry is not None:
            if entry.is_fresh(now):
                logger.debug(f"[快取] 記憶體命中: {key}")
                return entry.payload.with_source(PreviewSource.CACHE)
            # 延遲淘汰
            del self._memory[key]
            logger.debug(f"[快取] 記憶體資料已過期: {key}")

        entry = self._load_entry(key)
        if entry is not None and entry.is_fresh(now):
            self._memory[key] = entry
            logger.debug(f"[快取] 檔案命中: {key}")
            return entry.payload.with_source(PreviewSource.CACHE)

        logger.debug(f"[快取] 未命中: {key}")
        return None

    def set(self, query: QueryLike, preview: Optional[Preview]) -> bool:
        """
        寫入快取

        Returns:
            是否寫入（空結果返回 False）
        """
        key = self._key(query)
        if not preview:
            logger.debug(f"[快取] 空結果，不寫入: {key}")
            return False

        entry = CacheEntry(key=key, payload=preview, created_at=self._clock(), ttl=self.ttl)
        self._memory[key] = entry

        try:
            self._persist(entry)
            self._append_csv(query, preview)
        except CacheIOError as e:
            logger.warning(f"[快取] 寫入檔案失敗（僅保留記憶體快取）: {e}")

        return True

    def clear(self, query: Optional[QueryLike] = None) -> int:
        """
        清除快取

        Args:
            query: 要清除的查詢，None 表示全部

        Returns:
            被清除的筆數（記憶體與檔案合計去重）
        """
        try:
            data = self._read_file()
        except CacheIOError as e:
            logger.warning(f"[快取] 讀取檔案失敗: {e}")
            data = {}

        if query is None:
            removed = len(set(self._memory) | set(data))
            self._memory.clear()
            data = {}
        else:
            key = self._key(query)
            removed = int(key in self._memory or key in data)
            self._memory.pop(key, None)
            data.pop(key, None)

        try:
            self._write_file(data)
        except CacheIOError as e:
            logger.warning(f"[快取] 清除檔案失敗: {e}")

        logger.debug(f"[快取] 已清除 {removed} 筆")
        return removed

    def get_cache_count(self) -> int:
        """取得目前記憶體快取筆數（含尚未淘汰的過期資料）"""
        return len(self._memory)

    # === 私有方法 ===

    @staticmethod
    def _key(query: QueryLike) -> str:
        return query if isinstance(query, str) else query.cache_key

    def _load_entry(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = self._read_file().get(key)
        except CacheIOError as e:
            logger.warning(f"[快取] 讀取檔案失敗: {e}")
            return None

        if not raw:
            return None

        try:
            return CacheEntry(
                key=key,
                payload=Preview.from_dict(raw["data"]),
                created_at=float(raw["timestamp"]) / 1000,
                ttl=self.ttl,
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[快取] 略過損壞的快取資料 {key}: {e}")
            return None

    def _persist(self, entry: CacheEntry) -> None:
        data = self._read_file()
        data[entry.key] = {
            "timestamp": int(entry.created_at * 1000),
            "data": entry.payload.to_dict(),
        }
        self._write_file(data)

    def _read_file(self) -> dict:
        if not self.json_path.exists():
            return {}
        try:
            with open(self.json_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CacheIOError(f"讀取 {self.json_path} 失敗: {e}", path=str(self.json_path))
        return data if isinstance(data, dict) else {}

    def _write_file(self, data: dict) -> None:
        """寫入暫存檔後以 os.replace 原子替換，避免寫到一半的檔案"""
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, prefix=".music-cache-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.json_path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                self._safe_delete(Path(tmp_path))
            raise CacheIOError(f"寫入 {self.json_path} 失敗: {e}", path=str(self.json_path))

    def _append_csv(self, query: QueryLike, preview: Preview) -> None:
        if isinstance(query, PreviewQuery):
            artist, track = query.artist_name, query.track_name or ""
        else:
            artist, _, track = query.partition("::")
        try:
            is_new = not self.csv_path.exists()
            with open(self.csv_path, "a", encoding="utf-8", newline="") as f:
                writer = csv.writer(f, quoting=csv.QUOTE_ALL)
                if is_new:
                    writer.writerow(self.CSV_HEADER)
                writer.writerow([artist, track, preview.playable_url])
        except OSError as e:
            raise CacheIOError(f"寫入 {self.csv_path} 失敗: {e}", path=str(self.csv_path))

    def _safe_delete(self, file: Path) -> bool:
        """安全刪除檔案，失敗時僅記錄警告"""
        try:
            if file.exists():
                file.unlink()
                return True
        except OSError as e:
            logger.warning(f"刪除檔案失敗: {file} - {e}")
        return False
