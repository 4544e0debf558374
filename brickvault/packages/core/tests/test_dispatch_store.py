"""幂等账本测试

测试内容：
1. try_begin 仅在记录不存在或 FAILED_RETRYABLE 时成功
2. complete 只写一次（重复 complete -> LedgerConflictError）
3. fail / reset / recover_in_flight 状态流转
4. 到期重试查询、状态计数、资产汇总
"""

from datetime import UTC, datetime, timedelta

import pytest
from brickvault.core.models import DispatchStatus, EventKind, validate_dispatch_transition
from brickvault.core.store import LedgerConflictError, SqliteDispatchStore


class TestTryBegin:
    """try_begin 幂等语义"""

    async def test_new_message_inserts_pending(self, ledger: SqliteDispatchStore, make_event):
        event = make_event(block=7)
        assert await ledger.try_begin(event.id, event) is True

        record = await ledger.get(event.id)
        assert record.status == DispatchStatus.PENDING
        assert record.retry_count == 0
        assert record.kind == EventKind.DEPOSIT
        assert record.amount == 1_000_000
        assert record.source_block_height == 7
        assert record.event == event

    async def test_second_begin_rejected(self, ledger, make_event):
        event = make_event()
        assert await ledger.try_begin(event.id, event) is True
        assert await ledger.try_begin(event.id, event) is False

    async def test_begin_after_confirm_rejected(self, ledger, make_event):
        event = make_event()
        await ledger.try_begin(event.id, event)
        await ledger.complete(event.id, "0xdest")
        assert await ledger.try_begin(event.id, event) is False

    async def test_begin_resumes_retryable(self, ledger, make_event):
        """FAILED_RETRYABLE -> PENDING，retry_count + 1"""
        event = make_event()
        await ledger.try_begin(event.id, event)
        await ledger.fail(event.id, "rpc down", permanent=False)

        assert await ledger.try_begin(event.id) is True
        record = await ledger.get(event.id)
        assert record.status == DispatchStatus.PENDING
        assert record.retry_count == 1
        assert record.next_attempt_at is None

    async def test_begin_permanent_rejected(self, ledger, make_event):
        event = make_event()
        await ledger.try_begin(event.id, event)
        await ledger.fail(event.id, "address not registered", permanent=True)
        assert await ledger.try_begin(event.id, event) is False

    async def test_unknown_id_without_event(self, ledger):
        with pytest.raises(ValueError):
            await ledger.try_begin("0x" + "0" * 64)

    async def test_big_amount_survives(self, ledger, make_event):
        """超出 SQLite INTEGER 范围的金额以 TEXT 保存"""
        event = make_event(amount=10**30)
        await ledger.try_begin(event.id, event)
        await ledger.complete(event.id, "0xdest", destination_amount=10**42)
        record = await ledger.get(event.id)
        assert record.amount == 10**30
        assert record.destination_amount == 10**42


class TestTransitions:
    """状态流转"""

    async def test_submit_then_complete(self, ledger, make_event):
        event = make_event()
        await ledger.try_begin(event.id, event)
        await ledger.mark_submitted(event.id, "0xtx")
        record = await ledger.get(event.id)
        assert record.status == DispatchStatus.SUBMITTED
        assert record.destination_tx_hash == "0xtx"

        await ledger.complete(event.id, None, destination_amount=5)
        record = await ledger.get(event.id)
        assert record.status == DispatchStatus.CONFIRMED
        # 未提供新哈希时保留提交时的哈希
        assert record.destination_tx_hash == "0xtx"
        assert record.destination_amount == 5

    async def test_complete_is_write_once(self, ledger, make_event):
        event = make_event()
        await ledger.try_begin(event.id, event)
        await ledger.complete(event.id, "0xtx")

        with pytest.raises(LedgerConflictError) as exc_info:
            await ledger.complete(event.id, "0xother")
        assert exc_info.value.current == DispatchStatus.CONFIRMED
        assert exc_info.value.attempted == DispatchStatus.CONFIRMED
        assert (await ledger.get(event.id)).destination_tx_hash == "0xtx"

    async def test_complete_missing_record(self, ledger):
        with pytest.raises(LedgerConflictError) as exc_info:
            await ledger.complete("0x" + "1" * 64, "0xtx")
        assert exc_info.value.current is None

    async def test_fail_after_confirm_rejected(self, ledger, make_event):
        event = make_event()
        await ledger.try_begin(event.id, event)
        await ledger.complete(event.id, "0xtx")
        with pytest.raises(LedgerConflictError):
            await ledger.fail(event.id, "late failure", permanent=False)

    async def test_fail_retryable_records_next_attempt(self, ledger, make_event):
        event = make_event()
        await ledger.try_begin(event.id, event)
        due = datetime(2026, 1, 1, 12, tzinfo=UTC)
        await ledger.fail(event.id, "timeout", permanent=False, next_attempt_at=due)
        record = await ledger.get(event.id)
        assert record.status == DispatchStatus.FAILED_RETRYABLE
        assert record.last_error == "timeout"
        assert record.next_attempt_at == due

    async def test_retryable_can_become_permanent(self, ledger, make_event):
        """重试调度发现缺少事件快照时直接转 FAILED_PERMANENT"""
        event = make_event()
        await ledger.try_begin(event.id, event)
        await ledger.fail(event.id, "timeout", permanent=False)
        await ledger.fail(event.id, "missing event payload for retry", permanent=True)
        assert (await ledger.get(event.id)).status == DispatchStatus.FAILED_PERMANENT

    async def test_reset_only_permanent(self, ledger, make_event):
        event = make_event()
        await ledger.try_begin(event.id, event)
        assert await ledger.reset(event.id) is False

        await ledger.try_begin(event.id)  # no-op: PENDING
        await ledger.fail(event.id, "address not registered", permanent=True)
        assert await ledger.reset(event.id) is True

        record = await ledger.get(event.id)
        assert record.status == DispatchStatus.FAILED_RETRYABLE
        assert record.retry_count == 0
        assert record.last_error.startswith("manual reset: ")
        assert record.next_attempt_at is not None

    async def test_recover_in_flight(self, ledger, make_event):
        pending, submitted, confirmed = make_event(), make_event(), make_event()
        for event in (pending, submitted, confirmed):
            await ledger.try_begin(event.id, event)
        await ledger.mark_submitted(submitted.id, "0xtx")
        await ledger.complete(confirmed.id, "0xtx2")

        recovered = await ledger.recover_in_flight("recovered after restart")
        assert recovered == 2
        for event in (pending, submitted):
            record = await ledger.get(event.id)
            assert record.status == DispatchStatus.FAILED_RETRYABLE
            assert record.last_error == "recovered after restart"
        assert (await ledger.get(confirmed.id)).status == DispatchStatus.CONFIRMED

    async def test_retryable_failure_never_revives_permanent(self, ledger, make_event):
        """FAILED_PERMANENT 只能人工重置，普通可重试失败不能覆盖"""
        event = make_event()
        await ledger.try_begin(event.id, event)
        await ledger.fail(event.id, "address not registered", permanent=True)

        with pytest.raises(LedgerConflictError) as exc_info:
            await ledger.fail(event.id, "rpc down", permanent=False)
        assert exc_info.value.current == DispatchStatus.FAILED_PERMANENT
        assert (await ledger.get(event.id)).last_error == "address not registered"


async def _drive_to(ledger: SqliteDispatchStore, event, status: DispatchStatus) -> None:
    await ledger.try_begin(event.id, event)
    match status:
        case DispatchStatus.SUBMITTED:
            await ledger.mark_submitted(event.id, "0xtx")
        case DispatchStatus.CONFIRMED:
            await ledger.complete(event.id, "0xtx")
        case DispatchStatus.FAILED_RETRYABLE:
            await ledger.fail(event.id, "timeout", permanent=False)
        case DispatchStatus.FAILED_PERMANENT:
            await ledger.fail(event.id, "invalid stage", permanent=True)


class TestTransitionTable:
    """账本的条件更新与 VALID_DISPATCH_TRANSITIONS 一致"""

    @pytest.mark.parametrize("source", list(DispatchStatus))
    async def test_store_follows_transition_table(self, ledger, make_event, source):
        operations = {
            DispatchStatus.SUBMITTED: lambda e: ledger.mark_submitted(e.id, "0xnext"),
            DispatchStatus.CONFIRMED: lambda e: ledger.complete(e.id, "0xnext"),
            DispatchStatus.FAILED_PERMANENT: lambda e: ledger.fail(e.id, "x", permanent=True),
        }
        for target, operation in operations.items():
            event = make_event()
            await _drive_to(ledger, event, source)

            if validate_dispatch_transition(source, target):
                await operation(event)
                assert (await ledger.get(event.id)).status == target
            else:
                with pytest.raises(LedgerConflictError):
                    await operation(event)
                assert (await ledger.get(event.id)).status == source


class TestQueries:
    """查询接口"""

    async def test_due_retries(self, ledger, make_event):
        now = datetime(2026, 1, 1, tzinfo=UTC)
        due, later = make_event(block=5), make_event(block=3)
        for event in (due, later):
            await ledger.try_begin(event.id, event)
        await ledger.fail(due.id, "x", permanent=False, next_attempt_at=now - timedelta(seconds=1))
        await ledger.fail(later.id, "x", permanent=False, next_attempt_at=now + timedelta(hours=1))

        records = await ledger.list_due_retries(now)
        assert [r.message_id for r in records] == [due.id]

        records = await ledger.list_due_retries(now + timedelta(hours=2))
        # 按来源区块高度排序
        assert [r.message_id for r in records] == [later.id, due.id]

    async def test_count_by_status(self, ledger, make_event):
        first, second = make_event(), make_event()
        await ledger.try_begin(first.id, first)
        await ledger.try_begin(second.id, second)
        await ledger.complete(first.id, "0xtx")

        counts = await ledger.count_by_status()
        assert counts[DispatchStatus.CONFIRMED] == 1
        assert counts[DispatchStatus.PENDING] == 1
        assert counts[DispatchStatus.FAILED_PERMANENT] == 0

    async def test_list_records_filter(self, ledger, make_event):
        first, second = make_event(), make_event()
        await ledger.try_begin(first.id, first)
        await ledger.try_begin(second.id, second)
        await ledger.fail(second.id, "nope", permanent=True)

        failed = await ledger.list_records(DispatchStatus.FAILED_PERMANENT)
        assert [r.message_id for r in failed] == [second.id]
        assert len(await ledger.list_records()) == 2

    async def test_ledger_totals(self, ledger, make_event):
        deposit = make_event(amount=3_000_000)
        withdrawal = make_event(kind=EventKind.WITHDRAWAL, amount=1_000_000)
        in_flight = make_event(amount=2_000_000)
        stuck = make_event(amount=4_000_000)
        other_property = make_event(property_id=2, amount=9_000_000)
        stage = make_event(kind=EventKind.STAGE_CHANGE, amount=0)
        for event in (deposit, withdrawal, in_flight, stuck, other_property, stage):
            await ledger.try_begin(event.id, event)

        await ledger.complete(deposit.id, "0x1", destination_amount=3_000_000 * 10**12)
        await ledger.complete(withdrawal.id, "0x2", destination_amount=1_000_000 * 10**12)
        await ledger.fail(stuck.id, "address not registered", permanent=True)

        totals = await ledger.ledger_totals(1)
        assert totals.observed_source == 3_000_000 - 1_000_000 + 2_000_000 + 4_000_000
        assert totals.confirmed_source == 2_000_000
        assert totals.confirmed_destination == 2_000_000 * 10**12
        assert totals.in_flight_source == 2_000_000
        assert totals.stuck_source == 4_000_000

        assert await ledger.property_ids() == [1, 2]

    async def test_ledger_totals_split_in_flight(self, ledger, make_event):
        """在途金额另记取出部分，供 lockbox 区分两个方向"""
        deposit = make_event(amount=2_000_000)
        withdrawal = make_event(kind=EventKind.WITHDRAWAL, amount=500_000)
        for event in (deposit, withdrawal):
            await ledger.try_begin(event.id, event)
        await ledger.mark_submitted(withdrawal.id, "0xtx")

        totals = await ledger.ledger_totals(1)
        assert totals.in_flight_source == 1_500_000
        assert totals.in_flight_withdrawal_source == -500_000
