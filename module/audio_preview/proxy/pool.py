"""
代理池管理器

策略：
- 從多個公開代理清單 + 固定的可靠代理合併出主清單（去重、排除已封禁）
- 測試前 N 個代理，通過的放進「可用」清單
- 取用時優先可用清單，其次未驗證清單，都沒有就直連（回傳 None）
- 輪詢（round-robin）選擇
- 封禁是單向的：同一個進程內不會再被取出
- 需要帳密的代理會透過本地匿名通道（ProxyTunnel）使用

快取檔案：
    proxy-cache.json { proxies, bannedProxies, workingProxies, lastRefresh(epoch ms) }
"""

import asyncio
import json
import os
import re
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

import aiohttp
from loguru import logger

from .tunnel import ProxyTunnel
from ..constants import (
    PROXY_CACHE_PATH,
    PROXY_SOURCES,
    PROXY_SOURCE_TIMEOUT,
    PROXY_REFRESH_INTERVAL,
    PROXY_MIN_POOL_SIZE,
    PROXY_TEST_URL,
    PROXY_TEST_TIMEOUT,
    PROXY_TEST_MAX_COUNT,
    PROXY_TEST_BATCH_SIZE,
)
from ..utils.decorators import handle_errors
from ..utils.text import mask_proxy_url

PROXY_PATTERN = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}:\d{2,5}\b")


class ProxyState(str, Enum):
    UNTESTED = "untested"
    WORKING = "working"
    BANNED = "banned"


@dataclass(frozen=True)
class ProxyHandle:
    """
    取出的代理

    url: 原始代理 URL（封禁時使用）
    endpoint: 實際要連線的位址（需要帳密的代理為本地通道 URL）
    """
    url: str
    endpoint: str

    def __str__(self) -> str:
        return mask_proxy_url(self.url)


class ProxyPool:
    """
    代理池

    使用方式：
        pool = ProxyPool(cache_path="./data/proxy-cache.json")
        await pool.init()

        handle = await pool.get_agent()      # None 表示直連
        if handle:
            await fetch(url, proxy=handle.endpoint)

        await pool.ban_proxy(handle.url)     # 代理失效時
        await pool.cleanup()                 # 程式結束時
    """

    def __init__(
        self,
        sources: Sequence[str] = PROXY_SOURCES,
        reliable_proxies: Iterable[str] = (),
        cache_path: str = PROXY_CACHE_PATH,
        refresh_interval: float = PROXY_REFRESH_INTERVAL,
        test_url: str = PROXY_TEST_URL,
        test_timeout: float = PROXY_TEST_TIMEOUT,
        max_test_count: int = PROXY_TEST_MAX_COUNT,
        test_batch_size: int = PROXY_TEST_BATCH_SIZE,
    ):
        """
        初始化代理池

        Args:
            sources: 公開代理清單的 URL
            reliable_proxies: 固定會加入的代理（格式 http://user:pass@ip:port）
            cache_path: 快取檔案路徑
            refresh_interval: 自動重新整理的間隔（秒）
            test_url: 健康檢查目標
            test_timeout: 單一代理的測試超時（秒）
            max_test_count: 每次最多測試幾個代理
            test_batch_size: 每批同時測試幾個
        """
        self.sources = list(sources)
        self.reliable_proxies: List[str] = list(reliable_proxies)
        self.cache_path = Path(cache_path)
        self.refresh_interval = refresh_interval
        self.test_url = test_url
        self.test_timeout = test_timeout
        self.max_test_count = max_test_count
        self.test_batch_size = test_batch_size

        self.proxies: List[str] = []
        self.working_proxies: List[str] = []
        self.banned_proxies: Set[str] = set()
        self.last_refresh: float = 0         # epoch 秒

        self._tunnels: Dict[str, ProxyTunnel] = {}
        self._current_index = 0
        self._refresh_lock = asyncio.Lock()

    # === 屬性 ===

    @property
    def is_stale(self) -> bool:
        return time.time() - self.last_refresh > self.refresh_interval

    def state_of(self, proxy_url: str) -> Optional[ProxyState]:
        """查詢代理目前的狀態（不在池中返回 None）"""
        if proxy_url in self.banned_proxies:
            return ProxyState.BANNED
        if proxy_url in self.working_proxies:
            return ProxyState.WORKING
        if proxy_url in self.proxies:
            return ProxyState.UNTESTED
        return None

    def __len__(self) -> int:
        return len(self.proxies)

    # === 初始化 / 快取 ===

    async def init(self) -> "ProxyPool":
        """
        載入快取；代理太少或快取過期時重新整理
        """
        logger.info("[代理] 初始化代理池...")
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"[代理] 無法建立資料目錄: {e}")

        self.load_cache()

        if len(self.proxies) < PROXY_MIN_POOL_SIZE or self.is_stale:
            await self.refresh()

        logger.info(f"[代理] 代理池初始化完成: {len(self.proxies)} 個代理，{len(self.working_proxies)} 個可用")
        return self

    def load_cache(self) -> None:
        try:
            with open(self.cache_path, "r", encoding="utf-8") as f:
                cache = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"[代理] 沒有代理快取或讀取失敗: {e}")
            return

        self.banned_proxies |= set(cache.get("bannedProxies") or [])
        self.proxies = [p for p in cache.get("proxies") or [] if p not in self.banned_proxies]
        self.working_proxies = [p for p in cache.get("workingProxies") or [] if p not in self.banned_proxies]
        self.last_refresh = (cache.get("lastRefresh") or 0) / 1000
        logger.debug(f"[代理] 已載入快取: {len(self.proxies)} 個代理，{len(self.working_proxies)} 個可用")

    def save_cache(self) -> None:
        """整份寫入暫存檔後原子替換；失敗只記錄警告"""
        data = {
            "proxies": self.proxies,
            "bannedProxies": sorted(self.banned_proxies),
            "workingProxies": self.working_proxies,
            "lastRefresh": int(self.last_refresh * 1000),
        }
        tmp_path = None
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.cache_path.parent, prefix=".proxy-cache-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.cache_path)
            logger.debug("[代理] 代理快取已儲存")
        except OSError as e:
            logger.warning(f"[代理] 儲存代理快取失敗: {e}")
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.unlink(tmp_path)
                except OSError as unlink_error:
                    logger.debug(f"[代理] 無法刪除暫存檔 {tmp_path}: {unlink_error}")

    # === 重新整理 / 測試 ===

    @handle_errors
    async def refresh(self) -> int:
        """
        重新抓取所有來源、合併、測試並儲存

        Returns:
            代理總數
        """
        async with self._refresh_lock:
            logger.info("[代理] 重新整理代理清單...")

            timeout = aiohttp.ClientTimeout(total=PROXY_SOURCE_TIMEOUT)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                results = await asyncio.gather(
                    *(self._fetch_from_source(session, source) for source in self.sources)
                )

            merged = list(self.reliable_proxies)
            for proxies in results:
                merged.extend(proxies)

            # 去重（保留順序）並排除已封禁
            self.proxies = [
                p for p in dict.fromkeys(merged)
                if p not in self.banned_proxies
            ]
            self.last_refresh = time.time()
            self._current_index = 0
            logger.info(f"[代理] 取得 {len(self.proxies)} 個不重複的代理")

            await self.test_all()
            self.save_cache()
            return len(self.proxies)

    async def _fetch_from_source(self, session: aiohttp.ClientSession, url: str) -> List[str]:
        """從單一來源抓取代理（格式 IP:PORT），失敗返回空列表"""
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    logger.warning(f"[代理] 來源回應 HTTP {response.status}: {url}")
                    return []
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[代理] 無法從來源取得代理 {url}: {e}")
            return []

        matches = PROXY_PATTERN.findall(text)
        logger.debug(f"[代理] {url} → {len(matches)} 個代理")
        return [f"http://{m}" for m in matches]

    async def test_all(self, max_count: Optional[int] = None) -> List[str]:
        """
        測試前 max_count 個代理（每批 test_batch_size 個同時進行）

        Returns:
            可用的代理列表
        """
        subset = self.proxies[:max_count or self.max_test_count]
        working: List[str] = []

        for i in range(0, len(subset), self.test_batch_size):
            batch = subset[i:i + self.test_batch_size]
            results = await asyncio.gather(
                *(self.test_proxy(proxy) for proxy in batch),
                return_exceptions=True
            )
            working.extend(proxy for proxy, ok in zip(batch, results) if ok is True)
            logger.debug(f"[代理] 測試進度 {i + len(batch)}/{len(subset)}，可用 {len(working)}")

        # 測試期間被封禁的不算
        self.working_proxies = [p for p in working if p not in self.banned_proxies]
        logger.info(f"[代理] 測試完成: {len(self.working_proxies)}/{len(subset)} 可用")
        return self.working_proxies

    async def test_proxy(self, proxy_url: str, timeout: Optional[float] = None) -> bool:
        """透過代理連線健康檢查目標，2xx 視為可用"""
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.test_timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(self.test_url, proxy=proxy_url) as response:
                    return 200 <= response.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, OSError):
            return False

    # === 取用 / 封禁 ===

    async def get_agent(self) -> Optional[ProxyHandle]:
        """
        輪詢取出下一個代理

        Returns:
            ProxyHandle，沒有任何代理時返回 None（直連）
        """
        if not self.proxies or self.is_stale:
            if self._refresh_lock.locked():
                # 其他任務正在重新整理，等它完成即可
                async with self._refresh_lock:
                    pass
            else:
                try:
                    await self.refresh()
                except Exception as e:
                    logger.warning(f"[代理] 重新整理失敗，沿用現有清單: {e}")

        while True:
            proxy_list = self.working_proxies or self.proxies
            if not proxy_list:
                logger.debug("[代理] 沒有可用代理，使用直連")
                return None

            index = self._current_index % len(proxy_list)
            proxy_url = proxy_list[index]
            self._current_index = index + 1

            try:
                endpoint = await self._endpoint_for(proxy_url)
            except (OSError, ValueError) as e:
                logger.warning(f"[代理] 無法使用代理 {mask_proxy_url(proxy_url)}: {e}")
                await self.ban_proxy(proxy_url)
                continue

            logger.debug(f"[代理] 使用代理: {mask_proxy_url(proxy_url)}")
            return ProxyHandle(url=proxy_url, endpoint=endpoint)

    async def _endpoint_for(self, proxy_url: str) -> str:
        """需要帳密的代理改走本地匿名通道（每個 URL 只開一次）"""
        if "@" not in proxy_url:
            return proxy_url

        tunnel = self._tunnels.get(proxy_url)
        if tunnel is None:
            tunnel = ProxyTunnel(proxy_url)
            await tunnel.start()
            self._tunnels[proxy_url] = tunnel
            logger.debug(f"[代理] 代理已匿名化: {mask_proxy_url(proxy_url)}")
        return tunnel.url

    async def ban_proxy(self, proxy_url: Optional[str]) -> None:
        """
        封禁代理：從所有清單移除、關閉通道並儲存
        """
        if not proxy_url:
            return

        logger.info(f"[代理] 封禁代理: {mask_proxy_url(proxy_url)}")
        self.banned_proxies.add(proxy_url)
        self.proxies = [p for p in self.proxies if p != proxy_url]
        self.working_proxies = [p for p in self.working_proxies if p != proxy_url]

        tunnel = self._tunnels.pop(proxy_url, None)
        if tunnel is not None:
            await tunnel.close()

        self.save_cache()

    async def add_reliable_proxy(self, proxy_url: str) -> bool:
        """
        加入可靠代理並立即測試

        Returns:
            代理是否可用
        """
        if proxy_url in self.banned_proxies:
            logger.warning(f"[代理] 代理已被封禁，略過: {mask_proxy_url(proxy_url)}")
            return False

        if proxy_url not in self.reliable_proxies:
            self.reliable_proxies.append(proxy_url)

        is_working = await self.test_proxy(proxy_url)
        if is_working:
            logger.info(f"[代理] 新增可靠代理（可用）: {mask_proxy_url(proxy_url)}")
            if proxy_url not in self.working_proxies:
                self.working_proxies.append(proxy_url)
        else:
            logger.info(f"[代理] 新增可靠代理（無法使用）: {mask_proxy_url(proxy_url)}")

        if proxy_url not in self.proxies:
            self.proxies.append(proxy_url)

        self.save_cache()
        return is_working

    async def cleanup(self) -> None:
        """
        關閉所有本地匿名通道（程式結束時呼叫）
        """
        for proxy_url, tunnel in list(self._tunnels.items()):
            try:
                await tunnel.close()
            except OSError as e:
                logger.warning(f"[代理] 關閉通道失敗 {mask_proxy_url(proxy_url)}: {e}")
        self._tunnels.clear()
