"""
併發閘門（請求佇列）

特性：
- 先進先出（FIFO）的准入順序
- 同時執行中的任務不超過 max_parallel
- 任務完成（成功或失敗）後自動放行下一個
- 可選的單一任務時限，逾時會取消任務並釋放名額
"""

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Optional, Set
from loguru import logger

from ..constants import MAX_PARALLEL
from ..utils.errors import OperationTimeoutError

Operation = Callable[[], Awaitable[Any]]


@dataclass
class QueueTask:
    """
    佇列中的任務

    只存在於閘門內部，完成後即丟棄
    """
    operation: Operation
    future: asyncio.Future = field(repr=False)
    name: str = ""
    timeout: Optional[float] = None
    enqueued_at: float = field(default_factory=time.monotonic)
    admitted_at: Optional[float] = None


class ConcurrencyGate:
    """
    併發閘門

    使用方式：
        gate = ConcurrencyGate(max_parallel=5)

        # 名額滿時會排隊，輪到時才執行
        result = await gate.run(lambda: fetch(url))

        # 加上時限
        result = await gate.run(lambda: fetch(url), timeout=30)
    """

    def __init__(self, max_parallel: int = MAX_PARALLEL):
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self._max_parallel = max_parallel
        self._queue: Deque[QueueTask] = deque()
        self._active: int = 0
        self._running: Set[asyncio.Task] = set()
        self._counter = itertools.count(1)

        logger.debug(f"ConcurrencyGate 初始化: max_parallel={max_parallel}")

    # === 屬性 ===

    @property
    def max_parallel(self) -> int:
        return self._max_parallel

    @property
    def active_count(self) -> int:
        """執行中的任務數量"""
        return self._active

    @property
    def pending_count(self) -> int:
        """排隊中的任務數量"""
        return len(self._queue)

    # === 公開方法 ===

    async def run(
        self,
        operation: Operation,
        *,
        timeout: Optional[float] = None,
        name: Optional[str] = None,
    ) -> Any:
        """
        排入任務並等待結果

        Args:
            operation: 無參數、回傳 awaitable 的函式
            timeout: 任務開始執行後的時限（秒），None 表示不限制
            name: 任務名稱（log 用）

        Returns:
            operation 的結果；operation 拋出的例外會原樣傳回
        """
        loop = asyncio.get_running_loop()
        task = QueueTask(
            operation=operation,
            future=loop.create_future(),
            name=name or f"task-{next(self._counter)}",
            timeout=timeout,
        )
        self._queue.append(task)
        logger.debug(
            f"[佇列] 排入 {task.name}（執行中 {self._active}/{self._max_parallel}，排隊 {len(self._queue)}）"
        )
        self._process_queue()
        return await task.future

    async def cancel_all(self) -> int:
        """
        取消所有排隊中與執行中的任務（關閉時使用）

        Returns:
            被取消的執行中任務數量
        """
        while self._queue:
            task = self._queue.popleft()
            if not task.future.done():
                task.future.cancel()

        runners = list(self._running)
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
            logger.debug(f"[佇列] 已取消 {len(runners)} 個執行中的任務")
        return len(runners)

    # === 內部方法 ===

    def _process_queue(self) -> None:
        """名額未滿時依序放行"""
        while self._queue and self._active < self._max_parallel:
            task = self._queue.popleft()

            # 呼叫端已放棄等待（例如被取消），直接跳過
            if task.future.done():
                logger.debug(f"[佇列] 略過已取消的任務: {task.name}")
                continue

            self._active += 1
            task.admitted_at = time.monotonic()
            runner = asyncio.create_task(self._execute(task), name=f"gate_{task.name}")
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)

    async def _execute(self, task: QueueTask) -> None:
        waited = task.admitted_at - task.enqueued_at
        logger.debug(f"[佇列] 開始 {task.name}（等待 {waited:.2f}s）")
        try:
            if task.timeout:
                try:
                    result = await asyncio.wait_for(task.operation(), timeout=task.timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"[佇列] {task.name} 超時 ({task.timeout}s)，釋放名額")
                    raise OperationTimeoutError(task.name, task.timeout) from None
            else:
                result = await task.operation()
        except asyncio.CancelledError:
            if not task.future.done():
                task.future.cancel()
            raise
        except Exception as e:
            if not task.future.done():
                task.future.set_exception(e)
        else:
            if not task.future.done():
                task.future.set_result(result)
        finally:
            self._active -= 1
            logger.debug(f"[佇列] 完成 {task.name}（執行中 {self._active}/{self._max_parallel}）")
            self._process_queue()

