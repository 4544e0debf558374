"""StageSynchronizer -- 资产阶段跨链同步状态机

状态：
- SETTLED(stage)：两条链一致
- AWAITING_DESTINATION_ACK(stage, pending_target)：已向对侧链提交更新，等待确认

规则：
- 非管理员的阶段变更必须恰好是 settled_stage + 1，且只能在 SETTLED 时发起；
  不前进或跳级的提议一律拒绝并告警，从不自动纠正
- 与 pending_target 相同的重复提议视为无操作
- 管理员 override 可以后退或跳级，替换当前 pending_target
- 对侧链对 pending_target 的确认使状态回到 SETTLED(pending_target)，
  并把确认转发回发起链闭环
- 超过 ack_timeout_s 未确认时以派生 message id 重新提交阶段更新，
  超过 max_retries 次后放弃并等待运维重置
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta

import structlog
from brickvault.core.models import (
    CanonicalEvent,
    ChainId,
    DispatchStatus,
    PropertyStage,
    PropertyStageState,
    StageSyncState,
    counter_chain,
    derive_message_id,
)
from brickvault.core.store import SqliteDispatchStore, SqliteStageStore

from .dispatcher import Dispatcher, DispatchResult
from .retry import RetryPolicy
from .scheduler import Clock

log = structlog.get_logger()


class StageSynchronizer:
    """阶段同步器（同一资产的事件串行处理）"""

    def __init__(
        self,
        stage_store: SqliteStageStore,
        dispatch_store: SqliteDispatchStore,
        dispatcher: Dispatcher,
        clock: Clock,
        ack_timeout_s: float,
        policy: RetryPolicy,
    ) -> None:
        self._stages = stage_store
        self._ledger = dispatch_store
        self._dispatcher = dispatcher
        self._clock = clock
        self._ack_timeout = timedelta(seconds=ack_timeout_s)
        self._policy = policy
        self._property_locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_state(self, property_id: int) -> PropertyStageState:
        return await self._stages.get_state(property_id)

    async def _reject(
        self, event: CanonicalEvent, state: PropertyStageState, reason: str
    ) -> DispatchResult:
        await log.awarning(
            "stage_change_rejected",
            message_id=event.id,
            property_id=event.property_id,
            source_chain=str(event.source_chain),
            proposed=int(event.stage) if event.stage is not None else None,
            settled=int(state.settled_stage),
            pending=int(state.pending_target) if state.pending_target is not None else None,
            reason=reason,
        )
        return DispatchResult(
            success=False,
            message=f"stage change rejected: {reason}",
            message_id=event.id,
        )

    def _check_proposal(self, state: PropertyStageState, target: PropertyStage) -> str | None:
        """普通（非 override）阶段提议的校验，返回拒绝原因"""
        if target <= state.settled_stage:
            return f"non-advancing ({target.name} <= settled {state.settled_stage.name})"
        if state.state == StageSyncState.AWAITING_DESTINATION_ACK:
            return (
                f"awaiting acknowledgment of {state.pending_target.name}, "
                f"cannot accept {target.name}"
            )
        if target != state.settled_stage + 1:
            return f"skips stage ({state.settled_stage.name} -> {target.name})"
        return None

    async def on_stage_change(self, event: CanonicalEvent) -> DispatchResult:
        """处理阶段变更提议"""
        target = event.stage
        if target is None:
            return DispatchResult(
                success=False, message="stage change without stage", message_id=event.id
            )

        async with self._property_locks[event.property_id]:
            # 游标回退后重放的已生效提议：静默跳过，不重新校验
            record = await self._ledger.get(event.id)
            if record is not None and record.status == DispatchStatus.CONFIRMED:
                await log.adebug("dispatch_skipped", message_id=event.id, status=str(record.status))
                return DispatchResult(
                    success=True,
                    message="already processed",
                    message_id=event.id,
                    status=record.status,
                    destination_tx_hash=record.destination_tx_hash,
                )

            state = await self._stages.get_state(event.property_id)

            awaiting = state.state == StageSyncState.AWAITING_DESTINATION_ACK
            if awaiting and state.pending_target == target and not event.admin_override:
                await log.ainfo(
                    "stage_change_duplicate",
                    message_id=event.id,
                    property_id=event.property_id,
                    stage=int(target),
                )
                return DispatchResult(
                    success=True,
                    message=f"stage {target.name} already pending",
                    message_id=event.id,
                )

            if event.admin_override:
                if not awaiting and target == state.settled_stage:
                    return DispatchResult(
                        success=True,
                        message=f"already settled at {target.name}",
                        message_id=event.id,
                    )
                await log.awarning(
                    "stage_override_applied",
                    message_id=event.id,
                    property_id=event.property_id,
                    settled=int(state.settled_stage),
                    target=int(target),
                )
            elif reason := self._check_proposal(state, target):
                return await self._reject(event, state, reason)

            now = self._clock.now()
            await self._stages.save_state(
                state.model_copy(
                    update={
                        "state": StageSyncState.AWAITING_DESTINATION_ACK,
                        "pending_target": target,
                        "pending_message_id": event.id,
                        "pending_since": now,
                        "resubmit_count": 0,
                    }
                )
            )
            await log.ainfo(
                "stage_change_accepted",
                message_id=event.id,
                property_id=event.property_id,
                source_chain=str(event.source_chain),
                target=int(target),
            )

            result = await self._dispatcher.dispatch(event)
            if not result.success and result.permanent:
                # 对侧链拒绝：回到原状态，等待新的提议
                await self._stages.save_state(state)
                await log.awarning(
                    "stage_change_failed",
                    message_id=event.id,
                    property_id=event.property_id,
                    reason=result.message,
                )
            return result

    async def _pending_origin(self, state: PropertyStageState) -> ChainId | None:
        if state.pending_message_id is None:
            return None
        record = await self._ledger.get(state.pending_message_id)
        return record.source_chain if record else None

    async def on_stage_acknowledgment(self, event: CanonicalEvent) -> DispatchResult:
        """处理对侧链的阶段确认"""
        async with self._property_locks[event.property_id]:
            state = await self._stages.get_state(event.property_id)

            if state.state == StageSyncState.SETTLED and state.settled_stage == event.stage:
                return DispatchResult(
                    success=True,
                    message=f"already settled at {state.settled_stage.name}",
                    message_id=event.id,
                )

            origin = await self._pending_origin(state)
            matches = (
                state.state == StageSyncState.AWAITING_DESTINATION_ACK
                and state.pending_target == event.stage
                and (origin is None or event.source_chain == counter_chain(origin))
            )
            if not matches:
                await log.awarning(
                    "stage_ack_mismatch",
                    message_id=event.id,
                    property_id=event.property_id,
                    source_chain=str(event.source_chain),
                    acknowledged=int(event.stage) if event.stage is not None else None,
                    settled=int(state.settled_stage),
                    pending=int(state.pending_target) if state.pending_target is not None else None,
                )
                return DispatchResult(
                    success=False,
                    message="unexpected stage acknowledgment",
                    message_id=event.id,
                )

            settled = state.pending_target
            await self._stages.save_state(
                PropertyStageState(property_id=event.property_id, settled_stage=settled)
            )
            await log.ainfo(
                "stage_settled",
                message_id=event.id,
                property_id=event.property_id,
                stage=int(settled),
                resubmits=state.resubmit_count,
            )

            # 闭环：把确认转发回发起链
            forwarded = await self._dispatcher.dispatch(event)
            return DispatchResult(
                success=True,
                message=f"stage settled at {settled.name}",
                message_id=event.id,
                status=forwarded.status,
                destination_tx_hash=forwarded.destination_tx_hash,
            )

    async def check_timeouts(self) -> int:
        """重新提交超时未确认的阶段更新

        超过 max_retries 次重新提交仍未确认时放弃：以下一个派生 id 记一条
        FAILED_PERMANENT 账本记录并停止计时。运维重置该记录后由重试调度重新提交，
        提交确认后恢复计时。

        Returns:
            重新提交的资产数
        """
        now = self._clock.now()
        resubmitted = 0
        for pending in await self._stages.list_awaiting():
            if pending.pending_since is None:
                await self._resume_after_reset(pending.property_id, now)
                continue
            if now - pending.pending_since < self._ack_timeout:
                continue

            async with self._property_locks[pending.property_id]:
                state = await self._stages.get_state(pending.property_id)
                if (
                    state.state != StageSyncState.AWAITING_DESTINATION_ACK
                    or state.pending_since != pending.pending_since
                ):
                    continue

                record = (
                    await self._ledger.get(state.pending_message_id)
                    if state.pending_message_id
                    else None
                )
                if record is None or record.event is None:
                    await log.aerror(
                        "operator_alert",
                        property_id=state.property_id,
                        reason="pending stage change has no ledger record",
                    )
                    continue

                attempt = state.resubmit_count + 1
                resubmit = record.event.model_copy(
                    update={"id": derive_message_id(record.message_id, f"resubmit:{attempt}")}
                )
                await log.awarning(
                    "stage_ack_timeout",
                    property_id=state.property_id,
                    pending=int(state.pending_target),
                    waited_s=(now - state.pending_since).total_seconds(),
                    resubmit=attempt,
                )
                if attempt > self._policy.max_retries:
                    await self._give_up(state, resubmit)
                    continue

                await self._stages.save_state(
                    state.model_copy(update={"pending_since": now, "resubmit_count": attempt})
                )
                await self._dispatcher.dispatch(resubmit)
                resubmitted += 1
        return resubmitted

    async def _give_up(self, state: PropertyStageState, parked: CanonicalEvent) -> None:
        """记录放弃的重新提交，停止确认计时"""
        reason = (
            f"max retries exceeded: stage {state.pending_target.name} unacknowledged "
            f"after {state.resubmit_count} resubmits"
        )
        if await self._ledger.try_begin(parked.id, parked):
            await self._ledger.fail(parked.id, reason, permanent=True)
        await self._stages.save_state(state.model_copy(update={"pending_since": None}))
        await log.aerror(
            "operator_alert",
            property_id=state.property_id,
            message_id=parked.id,
            reason=reason,
        )

    async def _resume_after_reset(self, property_id: int, now: datetime) -> None:
        """放弃的重新提交经运维重置并确认后恢复确认计时"""
        async with self._property_locks[property_id]:
            state = await self._stages.get_state(property_id)
            if (
                state.state != StageSyncState.AWAITING_DESTINATION_ACK
                or state.pending_since is not None
                or state.pending_message_id is None
            ):
                return
            attempt = state.resubmit_count + 1
            parked = await self._ledger.get(
                derive_message_id(state.pending_message_id, f"resubmit:{attempt}")
            )
            if parked is None or parked.status != DispatchStatus.CONFIRMED:
                return

            await self._stages.save_state(
                state.model_copy(update={"pending_since": now, "resubmit_count": attempt})
            )
            await log.ainfo(
                "stage_ack_timer_resumed",
                property_id=property_id,
                message_id=parked.message_id,
                resubmit=attempt,
            )
