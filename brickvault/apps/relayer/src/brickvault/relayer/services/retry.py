"""重试策略与调度

RetryPolicy：delay = retry_delay × backoff_multiplier^retry_count，不超过 max_delay；
retry_count >= max_retries 时放弃（转 FAILED_PERMANENT 并发出运维告警）。
RetryScheduler：周期性取出到期的 FAILED_RETRYABLE 记录重新派发，
不同 message id 并发，同一 id 由 Dispatcher 的锁串行化。
"""

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from brickvault.core.config import MonitoringConfig
from brickvault.core.store import SqliteDispatchStore

from .scheduler import Clock

if TYPE_CHECKING:
    from .dispatcher import Dispatcher, DispatchResult

log = structlog.get_logger()


class RetryPolicy:
    """指数退避策略"""

    def __init__(
        self,
        retry_delay_s: float,
        backoff_multiplier: float,
        max_delay_s: float,
        max_retries: int,
    ) -> None:
        self.retry_delay_s = retry_delay_s
        self.backoff_multiplier = backoff_multiplier
        self.max_delay_s = max_delay_s
        self.max_retries = max_retries

    @classmethod
    def from_config(cls, monitoring: MonitoringConfig) -> "RetryPolicy":
        return cls(
            retry_delay_s=monitoring.retry_delay_s,
            backoff_multiplier=monitoring.backoff_multiplier,
            max_delay_s=monitoring.max_retry_delay_s,
            max_retries=monitoring.max_retries,
        )

    def delay_for(self, retry_count: int) -> float:
        """第 retry_count 次失败后的等待秒数"""
        delay = self.retry_delay_s * (self.backoff_multiplier ** retry_count)
        return min(delay, self.max_delay_s)

    def exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries

    def next_attempt_at(self, now: datetime, retry_count: int) -> datetime:
        return now + timedelta(seconds=self.delay_for(retry_count))


class RetryScheduler:
    """到期重试调度"""

    def __init__(
        self,
        dispatch_store: SqliteDispatchStore,
        dispatcher: "Dispatcher",
        clock: Clock,
        max_concurrency: int = 8,
        batch_limit: int = 100,
    ) -> None:
        self._store = dispatch_store
        self._dispatcher = dispatcher
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._batch_limit = batch_limit

    async def _retry_one(self, record) -> "DispatchResult | None":
        async with self._semaphore:
            if record.event is None:
                # 无事件快照的记录无法重建调用
                await self._store.fail(
                    record.message_id, "missing event payload for retry", permanent=True
                )
                await log.aerror(
                    "operator_alert",
                    message_id=record.message_id,
                    reason="missing event payload for retry",
                )
                return None
            return await self._dispatcher.dispatch(record.event)

    async def run_due(self) -> int:
        """重新派发所有到期记录

        Returns:
            本轮处理的记录数
        """
        due = await self._store.list_due_retries(self._clock.now(), limit=self._batch_limit)
        if not due:
            return 0

        await log.ainfo("retry_batch_started", count=len(due))
        await asyncio.gather(*(self._retry_one(record) for record in due))
        return len(due)
