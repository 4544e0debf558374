"""调度抽象 -- Clock + Ticker

轮询循环不直接使用 asyncio.sleep，而是通过 Clock 等待，
停机信号（stop_event）可以立即打断等待；测试中替换为手动时钟推进时间。
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Protocol

import structlog

log = structlog.get_logger()


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float, stop_event: asyncio.Event) -> bool:
        """等待 seconds 秒；stop_event 被设置时提前返回 True"""
        ...


class SystemClock:
    """真实时钟"""

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float, stop_event: asyncio.Event) -> bool:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True


class Ticker:
    """按固定间隔执行回调，直到 stop_event 被设置

    回调抛出的异常记录日志后吞掉，不终止循环。
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        callback: Callable[[], Awaitable[object]],
        clock: Clock,
        stop_event: asyncio.Event,
    ) -> None:
        self.name = name
        self.interval_s = interval_s
        self._callback = callback
        self._clock = clock
        self._stop_event = stop_event
        self.ticks = 0

    async def tick(self) -> bool:
        """执行一次回调

        Returns:
            True 如果回调成功完成
        """
        self.ticks += 1
        try:
            await self._callback()
        except Exception as e:
            await log.aerror(
                "ticker_callback_failed",
                ticker=self.name,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        return True

    async def run(self) -> None:
        await log.adebug("ticker_started", ticker=self.name, interval_s=self.interval_s)
        while not self._stop_event.is_set():
            await self.tick()
            if await self._clock.sleep(self.interval_s, self._stop_event):
                break
        await log.adebug("ticker_stopped", ticker=self.name, ticks=self.ticks)
