"""RelayerService -- 跨链 relayer 编排

组合 ChainObserver×2、Normalizer、Dispatcher、RetryScheduler、StageSynchronizer：
- start()/stop()/restart() 管理轮询循环（Ticker + 停机信号）
- process_source_event()/process_destination_event() 是轮询与测试/HTTP 共用的入口
- process_batch() 按 (区块高度, 序号) 排序，同一资产串行、不同资产并发
- get_status()/lockbox_report()/audit() 供运维查询
"""

import asyncio
import time
from datetime import datetime
from functools import partial
from typing import Any

import httpx
import structlog
from brickvault.chains import (
    BalanceReader,
    ChainClient,
    ChainError,
    ChainObserver,
    CustodianDirectory,
    FixedRateProvider,
    LiquiditySource,
    RateProvider,
)
from brickvault.core.config import RelayerConfig
from brickvault.core.lockbox import build_view_from_ledger, check_lockbox_invariant
from brickvault.core.models import (
    CanonicalEvent,
    ChainId,
    DispatchStatus,
    DropSignal,
    EventKind,
    LockboxReport,
    LockboxStatus,
    PropertyStageState,
    RawChainEvent,
)
from brickvault.core.normalizer import normalize
from brickvault.core.store import StoreGroup
from pydantic import BaseModel

from .dispatcher import Dispatcher, DispatchResult
from .retry import RetryPolicy, RetryScheduler
from .scheduler import Clock, SystemClock, Ticker
from .stage_sync import StageSynchronizer

log = structlog.get_logger()


class ProcessResult(BaseModel):
    """事件处理结果（对外接口）"""

    success: bool
    message: str
    message_id: str | None = None


def _capable(client: object, method: str) -> Any:
    """client 提供 method 时返回 client，否则 None"""
    return client if callable(getattr(client, method, None)) else None


class RelayerService:
    """跨链 relayer 服务"""

    def __init__(
        self,
        config: RelayerConfig,
        store_group: StoreGroup,
        stacks_client: ChainClient,
        evm_client: ChainClient,
        rate_provider: RateProvider | None = None,
        clock: Clock | None = None,
        custodians: CustodianDirectory | None = None,
        liquidity: LiquiditySource | None = None,
        balances: BalanceReader | None = None,
    ) -> None:
        """初始化 relayer

        Args:
            config: 冻结的 relayer 配置
            store_group: 账本 / 游标 / 阶段状态存储
            stacks_client: Stacks（来源链）客户端
            evm_client: EVM（目标链）客户端
            rate_provider: 换算汇率来源，默认取配置中的固定汇率
            clock: 时钟，默认 SystemClock
            custodians: custodian 注册表，默认使用 evm_client
            liquidity: 流动性来源，默认使用 evm_client
            balances: 目标链铸造总额读数，默认使用 evm_client；缺失时 lockbox 审计退回账本金额
        """
        self._config = config
        self._stores = store_group
        self._clock = clock or SystemClock()
        self._clients: dict[ChainId, ChainClient] = {
            ChainId.STACKS: stacks_client,
            ChainId.EVM: evm_client,
        }

        monitoring = config.monitoring
        chain_configs = {ChainId.STACKS: config.stacks, ChainId.EVM: config.evm}
        self._chain_configs = chain_configs
        self._observers = {
            chain: ChainObserver(
                client,
                min_confirmations=chain_configs[chain].min_confirmations,
                batch_size=monitoring.batch_size,
                timeout_s=monitoring.timeout_s,
            )
            for chain, client in self._clients.items()
        }

        if rate_provider is None and config.conversion.fixed_rate is not None:
            rate_provider = FixedRateProvider(config.conversion.fixed_rate)

        self._balances = balances or _capable(evm_client, "get_minted_balance")
        self.policy = RetryPolicy.from_config(monitoring)
        self.dispatcher = Dispatcher(
            config,
            store_group.dispatch_store,
            self._clients,
            clock=self._clock,
            policy=self.policy,
            custodians=custodians or _capable(evm_client, "get_evm_custodian"),
            liquidity=liquidity or _capable(evm_client, "get_available_liquidity"),
            rate_provider=rate_provider,
        )
        self.stage_sync = StageSynchronizer(
            store_group.stage_store,
            store_group.dispatch_store,
            self.dispatcher,
            clock=self._clock,
            ack_timeout_s=monitoring.ack_timeout_s,
            policy=self.policy,
        )
        self.retry_scheduler = RetryScheduler(
            store_group.dispatch_store,
            self.dispatcher,
            clock=self._clock,
            max_concurrency=monitoring.max_concurrency,
        )

        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._started_at: datetime | None = None
        self._started_monotonic: float | None = None
        self._lifecycle_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    # ---- 生命周期 ----

    def _build_tickers(self) -> list[Ticker]:
        monitoring = self._config.monitoring
        tickers = [
            Ticker(
                f"observer:{chain}",
                monitoring.interval_s,
                partial(self.observer_tick, chain),
                self._clock,
                self._stop_event,
            )
            for chain in self._observers
        ]
        tickers.append(
            Ticker(
                "retry",
                monitoring.interval_s,
                self.retry_scheduler.run_due,
                self._clock,
                self._stop_event,
            )
        )
        tickers.append(
            Ticker("audit", monitoring.audit_interval_s, self.audit, self._clock, self._stop_event)
        )
        return tickers

    async def start(self) -> ProcessResult:
        """启动轮询循环（已运行时为无操作）"""
        async with self._lifecycle_lock:
            if self._running:
                return ProcessResult(success=True, message="relayer already running")

            recovered = await self._stores.dispatch_store.recover_in_flight(
                "recovered after restart"
            )
            self._stop_event = asyncio.Event()
            self._tasks = [
                asyncio.create_task(ticker.run(), name=ticker.name)
                for ticker in self._build_tickers()
            ]
            self._running = True
            self._started_at = self._clock.now()
            self._started_monotonic = time.monotonic()

            await log.ainfo(
                "relayer_started",
                environment=self._config.environment,
                recovered=recovered,
                interval_s=self._config.monitoring.interval_s,
            )
            return ProcessResult(success=True, message="relayer started")

    async def stop(self) -> ProcessResult:
        """停止轮询循环

        先发出停机信号，在 shutdown_grace_s 内等待循环自然结束，之后取消剩余任务，
        最后把仍处于 PENDING / SUBMITTED 的记录转为 FAILED_RETRYABLE。
        """
        async with self._lifecycle_lock:
            if not self._running:
                return ProcessResult(success=True, message="relayer not running")

            self._stop_event.set()
            if self._tasks:
                _, pending = await asyncio.wait(
                    self._tasks, timeout=self._config.monitoring.shutdown_grace_s
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            self._tasks = []

            swept = await self._stores.dispatch_store.recover_in_flight("abandoned at shutdown")
            self._running = False
            await log.ainfo("relayer_stopped", swept=swept)
            return ProcessResult(success=True, message="relayer stopped")

    async def restart(self) -> ProcessResult:
        await self.stop()
        result = await self.start()
        return ProcessResult(success=result.success, message="relayer restarted")

    # ---- 事件入口 ----

    async def process_source_event(self, raw: RawChainEvent) -> ProcessResult:
        """处理来源链（Stacks）原始事件"""
        return await self._process_from(ChainId.STACKS, raw)

    async def process_destination_event(self, raw: RawChainEvent) -> ProcessResult:
        """处理目标链（EVM）原始事件"""
        return await self._process_from(ChainId.EVM, raw)

    async def _process_from(self, expected: ChainId, raw: RawChainEvent) -> ProcessResult:
        if raw.chain != expected:
            return ProcessResult(
                success=False,
                message=f"expected a {expected} event, got {raw.chain}",
            )
        normalized = await self._normalize(raw)
        if isinstance(normalized, DropSignal):
            return ProcessResult(success=False, message=f"event dropped: {normalized.reason}")
        return await self._handle(normalized)

    async def _normalize(self, raw: RawChainEvent) -> CanonicalEvent | DropSignal:
        normalized = normalize(raw, raw.chain)
        if isinstance(normalized, DropSignal):
            await log.ainfo(
                "event_dropped",
                chain=str(normalized.chain),
                tx_hash=normalized.tx_hash,
                index=normalized.index,
                reason=normalized.reason,
            )
        return normalized

    async def _handle(self, event: CanonicalEvent) -> ProcessResult:
        result: DispatchResult
        match event.kind:
            case EventKind.STAGE_CHANGE:
                result = await self.stage_sync.on_stage_change(event)
            case EventKind.STAGE_ACKNOWLEDGMENT:
                result = await self.stage_sync.on_stage_acknowledgment(event)
            case _:
                result = await self.dispatcher.dispatch(event)
        return ProcessResult(success=result.success, message=result.message, message_id=event.id)

    async def process_batch(self, events: list[RawChainEvent]) -> list[ProcessResult]:
        """批量处理原始事件

        按 (区块高度, 序号) 排序后规范化；同一资产的事件按该顺序串行处理，
        不同资产之间并发（最多 max_concurrency 个资产同时处理）。

        Returns:
            与排序后事件一一对应的处理结果
        """
        ordered = sorted(events, key=lambda e: (e.block_height, e.index, e.chain))
        results: list[ProcessResult | None] = [None] * len(ordered)
        groups: dict[int, list[tuple[int, CanonicalEvent]]] = {}

        for position, raw in enumerate(ordered):
            normalized = await self._normalize(raw)
            if isinstance(normalized, DropSignal):
                results[position] = ProcessResult(
                    success=False, message=f"event dropped: {normalized.reason}"
                )
                continue
            groups.setdefault(normalized.property_id, []).append((position, normalized))

        semaphore = asyncio.Semaphore(self._config.monitoring.max_concurrency)

        async def run_group(items: list[tuple[int, CanonicalEvent]]) -> None:
            async with semaphore:
                for position, event in items:
                    results[position] = await self._handle(event)

        await asyncio.gather(*(run_group(items) for items in groups.values()))
        return [result for result in results if result is not None]

    # ---- 周期任务 ----

    async def observer_tick(self, chain: ChainId) -> int:
        """轮询一次指定链，处理事件后持久化游标

        Returns:
            本次处理的事件数
        """
        observer = self._observers[chain]
        cursor_store = self._stores.cursor_store
        cursor = await cursor_store.get_cursor(chain)
        if cursor is None:
            try:
                cursor = await observer.initial_cursor(
                    self._chain_configs[chain].start_block,
                    self._config.monitoring.lookback_blocks,
                )
            except (ChainError, httpx.HTTPError, TimeoutError) as e:
                await log.awarning(
                    "observer_poll_failed",
                    chain=str(chain),
                    cursor=None,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return 0
            await cursor_store.save_cursor(cursor)

        result = await observer.poll(cursor)
        if result.events:
            await self.process_batch(result.events)
        # 事件处理完成后才推进游标；崩溃后重放由幂等账本去重
        if result.cursor.block_height != cursor.block_height:
            await cursor_store.save_cursor(result.cursor)
        return len(result.events)

    async def audit(self) -> list[LockboxReport]:
        """阶段确认超时检查 + lockbox 审计"""
        await self.stage_sync.check_timeouts()

        reports = []
        for property_id in await self._stores.dispatch_store.property_ids():
            report = await self.lockbox_report(property_id)
            if report.status in (LockboxStatus.STUCK, LockboxStatus.VIOLATED):
                await log.aerror(
                    "lockbox_invariant_violated",
                    property_id=property_id,
                    status=str(report.status),
                    discrepancy=report.discrepancy,
                    detail=report.detail,
                )
            reports.append(report)
        return reports

    # ---- 查询 ----

    async def lockbox_report(self, property_id: int) -> LockboxReport:
        if self._config.conversion.enabled:
            return LockboxReport(
                property_id=property_id,
                status=LockboxStatus.NOT_APPLICABLE,
                detail="conversion enabled; destination amounts are priced, not scaled",
            )
        totals = await self._stores.dispatch_store.ledger_totals(property_id)
        minted = None
        if self._balances is not None:
            try:
                minted = await self._balances.get_minted_balance(property_id)
            except (ChainError, httpx.HTTPError, TimeoutError) as e:
                await log.awarning(
                    "lockbox_balance_unavailable",
                    property_id=property_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return LockboxReport(
                    property_id=property_id,
                    status=LockboxStatus.UNAVAILABLE,
                    detail=f"destination balance unavailable: {e}",
                )
        view = build_view_from_ledger(totals, self._config.scale_factor, minted)
        return check_lockbox_invariant(view)

    async def get_stage_state(self, property_id: int) -> PropertyStageState:
        return await self.stage_sync.get_state(property_id)

    async def reset_message(self, message_id: str) -> bool:
        """运维重置 FAILED_PERMANENT 记录，下一轮重试调度时重新派发"""
        reset = await self._stores.dispatch_store.reset(message_id)
        await log.ainfo("message_reset", message_id=message_id, reset=reset)
        return reset

    async def check_chains(self) -> dict[str, bool]:
        checks = await asyncio.gather(
            *(client.health_check() for client in self._clients.values())
        )
        return {str(chain): ok for chain, ok in zip(self._clients, checks, strict=True)}

    async def get_status(self) -> dict[str, Any]:
        counts = await self._stores.dispatch_store.count_by_status()
        cursors = {
            str(cursor.chain): cursor.block_height
            for cursor in await self._stores.cursor_store.list_cursors()
        }
        monitoring = self._config.monitoring
        uptime = (
            time.monotonic() - self._started_monotonic
            if self._running and self._started_monotonic is not None
            else 0.0
        )
        return {
            "running": self._running,
            "environment": self._config.environment,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "uptime_s": round(uptime, 3),
            "messages": {
                "pending": (
                    counts[DispatchStatus.PENDING]
                    + counts[DispatchStatus.SUBMITTED]
                    + counts[DispatchStatus.FAILED_RETRYABLE]
                ),
                "confirmed": counts[DispatchStatus.CONFIRMED],
                "failed": counts[DispatchStatus.FAILED_PERMANENT],
                "by_status": {str(status): count for status, count in counts.items()},
            },
            "last_processed_block": {
                str(chain): cursors.get(str(chain)) for chain in self._clients
            },
            "monitoring": {
                "interval_s": monitoring.interval_s,
                "max_retries": monitoring.max_retries,
                "retry_delay_s": monitoring.retry_delay_s,
                "batch_size": monitoring.batch_size,
                "timeout_s": monitoring.timeout_s,
            },
        }
