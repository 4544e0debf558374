"""Dispatcher -- CanonicalEvent -> 目标链调用

派发流程：
1. 获取 message 级锁（同一 id 的尝试严格串行）
2. 幂等账本 try_begin；已 Confirmed / FailedPermanent / 处理中则跳过
3. 准备：custodian 解析、最小金额、精度缩放、可选换算 + 流动性检查
4. 提交目标链调用（附 proof）-> SUBMITTED -> 等待回执
5. 成功先写 CONFIRMED 再返回；失败按可重试性写 FAILED_RETRYABLE / FAILED_PERMANENT

所有 RPC 都受 monitoring.timeout_s 约束；单条消息的任何异常都以账本记录结束，不向外抛出。
"""

import asyncio
import hashlib
from collections.abc import Awaitable, Mapping
from decimal import ROUND_DOWN, Decimal
from typing import TypeVar

import structlog
from brickvault.chains import (
    AlreadyAppliedError,
    ChainClient,
    ChainError,
    CustodianDirectory,
    DispatchRejectedError,
    LiquiditySource,
    RateProvider,
)
from brickvault.core.config import RelayerConfig
from brickvault.core.models import (
    CanonicalEvent,
    ChainId,
    DispatchStatus,
    EventKind,
    counter_chain,
)
from brickvault.core.store import LedgerConflictError, SqliteDispatchStore
from pydantic import BaseModel

from .retry import RetryPolicy
from .scheduler import Clock

log = structlog.get_logger()

T = TypeVar("T")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class DispatchResult(BaseModel):
    """单次派发结果"""

    success: bool
    message: str
    message_id: str
    status: DispatchStatus | None = None
    destination_tx_hash: str | None = None
    permanent: bool = False


class _Plan(BaseModel):
    """派发前准备好的目标调用参数"""

    custodian: str = ZERO_ADDRESS
    destination_amount: int | None = None


class _LockSlot:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


def transfer_proof(event: CanonicalEvent) -> bytes:
    """存取消息的 proof"""
    return hashlib.sha256(f"proof-{event.id}-{event.source_tx_hash}".encode()).digest()


def stage_proof(event: CanonicalEvent) -> bytes:
    """阶段消息的 proof"""
    stage = int(event.stage) if event.stage is not None else 0
    return hashlib.sha256(
        f"proof-{event.property_id}-{stage}-{event.source_tx_hash}".encode()
    ).digest()


class Dispatcher:
    """跨链消息派发器"""

    def __init__(
        self,
        config: RelayerConfig,
        dispatch_store: SqliteDispatchStore,
        clients: Mapping[ChainId, ChainClient],
        clock: Clock,
        policy: RetryPolicy,
        custodians: CustodianDirectory | None = None,
        liquidity: LiquiditySource | None = None,
        rate_provider: RateProvider | None = None,
    ) -> None:
        self._config = config
        self._store = dispatch_store
        self._clients = clients
        self._clock = clock
        self._policy = policy
        self._custodians = custodians
        self._liquidity = liquidity
        self._rate_provider = rate_provider
        self._timeout_s = config.monitoring.timeout_s
        self._locks: dict[str, _LockSlot] = {}
        self._locks_guard = asyncio.Lock()

    async def _acquire_slot(self, message_id: str) -> _LockSlot:
        async with self._locks_guard:
            slot = self._locks.get(message_id)
            if slot is None:
                slot = _LockSlot()
                self._locks[message_id] = slot
            slot.users += 1
            return slot

    async def _release_slot(self, message_id: str) -> None:
        async with self._locks_guard:
            slot = self._locks.get(message_id)
            if slot is None:
                return
            slot.users -= 1
            if slot.users <= 0:
                self._locks.pop(message_id, None)

    async def _bounded(self, awaitable: Awaitable[T], action: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, self._timeout_s)
        except TimeoutError as e:
            raise ChainError(f"{action} timed out after {self._timeout_s}s") from e

    async def dispatch(self, event: CanonicalEvent) -> DispatchResult:
        """派发一条规范事件（同一 message id 串行）"""
        slot = await self._acquire_slot(event.id)
        try:
            async with slot.lock:
                return await self._dispatch_locked(event)
        finally:
            await self._release_slot(event.id)

    async def _skip(self, event: CanonicalEvent) -> DispatchResult:
        record = await self._store.get(event.id)
        status = record.status if record else None
        await log.ainfo(
            "dispatch_skipped",
            message_id=event.id,
            kind=str(event.kind),
            status=str(status) if status else None,
        )
        if status == DispatchStatus.CONFIRMED:
            return DispatchResult(
                success=True,
                message="already processed",
                message_id=event.id,
                status=status,
                destination_tx_hash=record.destination_tx_hash,
            )
        if status == DispatchStatus.FAILED_PERMANENT:
            return DispatchResult(
                success=False,
                message=f"failed permanently: {record.last_error}",
                message_id=event.id,
                status=status,
                permanent=True,
            )
        return DispatchResult(
            success=False,
            message="dispatch in progress",
            message_id=event.id,
            status=status,
        )

    async def _dispatch_locked(self, event: CanonicalEvent) -> DispatchResult:
        if not await self._store.try_begin(event.id, event):
            return await self._skip(event)

        await log.ainfo(
            "dispatch_started",
            message_id=event.id,
            kind=str(event.kind),
            property_id=event.property_id,
            source_chain=str(event.source_chain),
            source_tx_hash=event.source_tx_hash,
        )

        plan: _Plan | None = None
        try:
            plan = await self._prepare(event)
            tx_hash = await self._submit(event, plan)
        except asyncio.CancelledError:
            # 停机打断：记录为可重试，保证不会停留在 PENDING
            await asyncio.shield(self._abandon(event.id))
            raise
        except AlreadyAppliedError as e:
            return await self._confirm(
                event,
                e.tx_hash,
                plan.destination_amount if plan else None,
                message="already processed on destination",
            )
        except ChainError as e:
            return await self._record_failure(event, str(e), permanent=not e.recoverable)
        except Exception as e:
            return await self._record_failure(
                event, f"{type(e).__name__}: {e}", permanent=False, error_type=type(e).__name__
            )

        return await self._confirm(event, tx_hash, plan.destination_amount, message="dispatched")

    async def _confirm(
        self,
        event: CanonicalEvent,
        tx_hash: str | None,
        destination_amount: int | None,
        message: str,
    ) -> DispatchResult:
        """写入 CONFIRMED 后才报告成功"""
        try:
            await self._store.complete(event.id, tx_hash, destination_amount)
        except LedgerConflictError as e:
            # 记录已被停机清理转为 FAILED_RETRYABLE，重试时目标链报告 already processed
            await log.awarning("dispatch_ledger_conflict", message_id=event.id, error=str(e))
            return DispatchResult(
                success=False,
                message="ledger changed during dispatch; will be retried",
                message_id=event.id,
                status=e.current,
                destination_tx_hash=tx_hash,
            )

        await log.ainfo(
            "dispatch_confirmed",
            message_id=event.id,
            kind=str(event.kind),
            destination_tx_hash=tx_hash,
            destination_amount=destination_amount,
            detail=message,
        )
        return DispatchResult(
            success=True,
            message=message,
            message_id=event.id,
            status=DispatchStatus.CONFIRMED,
            destination_tx_hash=tx_hash,
        )

    async def _abandon(self, message_id: str) -> None:
        try:
            await self._store.fail(
                message_id,
                "cancelled during dispatch",
                permanent=False,
                next_attempt_at=self._clock.now(),
            )
        except LedgerConflictError as e:
            log.warning("dispatch_ledger_conflict", message_id=message_id, error=str(e))
            return
        log.warning("dispatch_abandoned", message_id=message_id)

    async def _record_failure(
        self,
        event: CanonicalEvent,
        reason: str,
        permanent: bool,
        error_type: str | None = None,
    ) -> DispatchResult:
        record = await self._store.get(event.id)
        retry_count = record.retry_count if record else 0

        if not permanent and self._policy.exhausted(retry_count):
            permanent = True
            reason = f"max retries exceeded: {reason}"
            await log.aerror("retry_exhausted", message_id=event.id, retry_count=retry_count)

        next_attempt_at = None if permanent else self._policy.next_attempt_at(
            self._clock.now(), retry_count
        )
        try:
            await self._store.fail(event.id, reason, permanent, next_attempt_at)
        except LedgerConflictError as e:
            # 记录已被停机清理改写
            await log.awarning("dispatch_ledger_conflict", message_id=event.id, error=str(e))
            return DispatchResult(success=False, message=reason, message_id=event.id)

        await log.awarning(
            "dispatch_failed",
            message_id=event.id,
            kind=str(event.kind),
            property_id=event.property_id,
            permanent=permanent,
            retry_count=retry_count,
            error_type=error_type,
            reason=reason,
        )
        if permanent:
            await log.aerror(
                "operator_alert",
                message_id=event.id,
                property_id=event.property_id,
                reason=reason,
            )
        else:
            await log.ainfo(
                "retry_scheduled",
                message_id=event.id,
                retry_count=retry_count,
                next_attempt_at=next_attempt_at.isoformat() if next_attempt_at else None,
            )

        return DispatchResult(
            success=False,
            message=reason,
            message_id=event.id,
            status=(
                DispatchStatus.FAILED_PERMANENT if permanent else DispatchStatus.FAILED_RETRYABLE
            ),
            permanent=permanent,
        )

    async def _resolve_custodian(self, event: CanonicalEvent) -> str:
        custodian = event.counterparty_address
        if not custodian and self._custodians is not None:
            custodian = await self._bounded(
                self._custodians.get_evm_custodian(event.principal), "custodian lookup"
            )
        if not custodian:
            raise DispatchRejectedError(f"address not registered: {event.principal}")
        try:
            is_zero = int(custodian, 16) == 0
        except ValueError:
            raise DispatchRejectedError(f"invalid custodian address: {custodian}") from None
        if is_zero:
            raise DispatchRejectedError(f"address not registered: {event.principal}")
        return custodian

    async def _convert(self, scaled: int, event: CanonicalEvent) -> int:
        """按外部汇率换算，存入受目标链流动性约束"""
        if self._rate_provider is None:
            raise ChainError("conversion enabled but no rate provider configured")
        rate = await self._bounded(self._rate_provider.get_rate(), "rate lookup")
        converted = int((Decimal(scaled) * rate).to_integral_value(rounding=ROUND_DOWN))

        if event.kind == EventKind.DEPOSIT and self._liquidity is not None:
            available = await self._bounded(
                self._liquidity.get_available_liquidity(), "liquidity lookup"
            )
            if converted > available:
                raise ChainError(
                    f"insufficient liquidity: requested {converted}, available {available}",
                    recoverable=True,
                )
        return converted

    async def _prepare(self, event: CanonicalEvent) -> _Plan:
        match event.kind:
            case EventKind.DEPOSIT | EventKind.WITHDRAWAL:
                if (
                    event.kind == EventKind.DEPOSIT
                    and event.amount < self._config.stacks.min_deposit_amount
                ):
                    raise DispatchRejectedError(
                        f"amount below minimum: {event.amount} < "
                        f"{self._config.stacks.min_deposit_amount}"
                    )
                custodian = await self._resolve_custodian(event)
                amount = event.amount * self._config.scale_factor
                if self._config.conversion.enabled:
                    amount = await self._convert(amount, event)
                return _Plan(custodian=custodian, destination_amount=amount)
            case EventKind.STAGE_CHANGE | EventKind.STAGE_ACKNOWLEDGMENT:
                if event.stage is None:
                    raise DispatchRejectedError("invalid stage: missing stage value")
                return _Plan()
        raise DispatchRejectedError(f"unsupported event kind {event.kind}")

    async def _submit(self, event: CanonicalEvent, plan: _Plan) -> str:
        client = self._clients[counter_chain(event.source_chain)]

        match event.kind:
            case EventKind.DEPOSIT:
                submission = client.submit_credit(
                    event.id, event.property_id, plan.custodian, event.principal,
                    plan.destination_amount or 0, event.source_tx_hash, transfer_proof(event),
                )
            case EventKind.WITHDRAWAL:
                submission = client.submit_debit(
                    event.id, event.property_id, plan.custodian, event.principal,
                    plan.destination_amount or 0, event.source_tx_hash, transfer_proof(event),
                )
            case EventKind.STAGE_CHANGE:
                submission = client.submit_stage_update(
                    event.id, event.property_id, event.stage, event.source_tx_hash,
                    stage_proof(event),
                )
            case _:
                submission = client.submit_stage_acknowledgment(
                    event.id, event.property_id, event.stage, event.source_tx_hash,
                    stage_proof(event),
                )

        tx_hash = await self._bounded(submission, f"submit to {client.chain}")
        await self._store.mark_submitted(event.id, tx_hash)
        await self._bounded(
            client.wait_for_receipt(tx_hash, self._timeout_s), f"receipt for {tx_hash}"
        )
        return tx_hash
