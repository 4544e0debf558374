"""ChainObserver -- 带确认深度过滤的可重启轮询

poll(cursor) 只扫描 tip - height + 1 >= min_confirmations 的区块，
每次最多 batch_size 个区块。任何链错误或超时返回空结果并保持游标不变，
保证不会因部分响应而跳过事件。
"""

import asyncio

import httpx
import structlog
from brickvault.core.models import ChainCursor, ChainId, PollResult

from .exceptions import ChainError
from .protocols import ChainReader

log = structlog.get_logger()


class ChainObserver:
    """单条链的事件观察器，游标由调用方持久化"""

    def __init__(
        self,
        client: ChainReader,
        min_confirmations: int,
        batch_size: int,
        timeout_s: float,
    ) -> None:
        self._client = client
        self._min_confirmations = min_confirmations
        self._batch_size = batch_size
        self._timeout_s = timeout_s

    @property
    def chain(self) -> ChainId:
        return self._client.chain

    def confirmed_height(self, tip: int) -> int:
        """满足确认深度的最高区块（min_confirmations 为 0 时等于 tip）"""
        return tip - max(self._min_confirmations - 1, 0)

    async def initial_cursor(
        self, start_block: int | None = None, lookback_blocks: int = 0
    ) -> ChainCursor:
        """无持久化游标时的起点

        start_block 指定时从该区块开始扫描（游标为其前一块），
        否则从 tip - min_confirmations - lookback_blocks 开始。
        """
        if start_block is not None:
            return ChainCursor(chain=self.chain, block_height=max(start_block - 1, 0))
        tip = await asyncio.wait_for(self._client.get_block_height(), self._timeout_s)
        height = tip - self._min_confirmations - lookback_blocks
        return ChainCursor(chain=self.chain, block_height=max(height, 0))

    async def _poll(self, cursor: ChainCursor) -> PollResult:
        tip = await asyncio.wait_for(self._client.get_block_height(), self._timeout_s)
        upper = min(self.confirmed_height(tip), cursor.block_height + self._batch_size)
        if upper <= cursor.block_height:
            return PollResult(events=[], cursor=cursor)

        events = await asyncio.wait_for(
            self._client.get_events(cursor.block_height + 1, upper), self._timeout_s
        )
        events.sort(key=lambda e: (e.block_height, e.index))
        return PollResult(
            events=events,
            cursor=ChainCursor(chain=cursor.chain, block_height=upper),
        )

    async def poll(self, cursor: ChainCursor) -> PollResult:
        """扫描 cursor 之后已确认的区块

        Returns:
            PollResult；失败时 events 为空、cursor 不变
        """
        try:
            return await self._poll(cursor)
        except (ChainError, httpx.HTTPError, TimeoutError) as e:
            await log.awarning(
                "observer_poll_failed",
                chain=str(cursor.chain),
                cursor=cursor.block_height,
                error_type=type(e).__name__,
                error=str(e),
            )
            return PollResult(events=[], cursor=cursor)
