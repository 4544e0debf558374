"""Domain Model 单元测试

测试内容：
1. 派发状态机合法 / 非法流转
2. message id 确定性派生
3. CanonicalEvent 不可变
4. 阶段枚举顺序
"""

import pytest
from brickvault.core.models import (
    TERMINAL_DISPATCH_STATES,
    VALID_DISPATCH_TRANSITIONS,
    CanonicalEvent,
    ChainId,
    DispatchStatus,
    EventKind,
    PropertyStage,
    compute_message_id,
    counter_chain,
    derive_message_id,
    validate_dispatch_transition,
)
from pydantic import ValidationError


class TestDispatchStateMachine:
    """派发状态机"""

    def test_every_status_has_transition_entry(self):
        assert set(VALID_DISPATCH_TRANSITIONS) == set(DispatchStatus)

    def test_confirmed_is_write_once(self):
        """CONFIRMED 不能流转到任何状态"""
        for target in DispatchStatus:
            assert not validate_dispatch_transition(DispatchStatus.CONFIRMED, target)

    def test_permanent_only_resets_to_retryable(self):
        assert validate_dispatch_transition(
            DispatchStatus.FAILED_PERMANENT, DispatchStatus.FAILED_RETRYABLE
        )
        assert not validate_dispatch_transition(
            DispatchStatus.FAILED_PERMANENT, DispatchStatus.PENDING
        )

    def test_retryable_goes_back_to_pending(self):
        assert validate_dispatch_transition(
            DispatchStatus.FAILED_RETRYABLE, DispatchStatus.PENDING
        )
        assert not validate_dispatch_transition(
            DispatchStatus.FAILED_RETRYABLE, DispatchStatus.CONFIRMED
        )

    def test_terminal_states(self):
        assert TERMINAL_DISPATCH_STATES == {
            DispatchStatus.CONFIRMED,
            DispatchStatus.FAILED_PERMANENT,
        }


class TestMessageId:
    """确定性 message id"""

    def test_same_source_same_id(self):
        a = compute_message_id(ChainId.STACKS, "0xABC", 2)
        b = compute_message_id("stacks", "0xabc", 2)
        assert a == b

    def test_index_and_chain_change_id(self):
        base = compute_message_id(ChainId.STACKS, "0xabc", 0)
        assert compute_message_id(ChainId.STACKS, "0xabc", 1) != base
        assert compute_message_id(ChainId.EVM, "0xabc", 0) != base

    def test_id_is_bytes32_hex(self):
        message_id = compute_message_id(ChainId.EVM, "0xdef", 7)
        assert message_id.startswith("0x")
        assert len(message_id) == 66
        int(message_id, 16)

    def test_derived_ids_are_distinct(self):
        parent = compute_message_id(ChainId.EVM, "0xdef", 0)
        first = derive_message_id(parent, "resubmit:1")
        second = derive_message_id(parent, "resubmit:2")
        assert len({parent, first, second}) == 3
        assert first == derive_message_id(parent, "resubmit:1")


class TestCanonicalEvent:
    def _event(self) -> CanonicalEvent:
        return CanonicalEvent(
            id=compute_message_id(ChainId.STACKS, "0x01", 0),
            kind=EventKind.DEPOSIT,
            source_chain=ChainId.STACKS,
            property_id=1,
            principal="SP000000000000000000002Q6VF78",
            amount=1_000_000,
            source_tx_hash="0x01",
            source_block_height=10,
            log_index=3,
        )

    def test_frozen(self):
        event = self._event()
        with pytest.raises(ValidationError):
            event.amount = 5

    def test_ordering_key(self):
        assert self._event().ordering_key == (10, 3)

    def test_json_roundtrip_keeps_big_amounts(self):
        """18 位精度金额经 JSON 序列化不丢精度"""
        event = self._event().model_copy(update={"amount": 10**30})
        restored = CanonicalEvent.model_validate_json(event.model_dump_json())
        assert restored.amount == 10**30


class TestEnums:
    def test_stage_order(self):
        stages = list(PropertyStage)
        assert stages == sorted(stages)
        assert PropertyStage.OPEN_TO_FUND + 1 == PropertyStage.FUNDED
        assert PropertyStage.LIQUIDATED == 4

    def test_counter_chain(self):
        assert counter_chain(ChainId.STACKS) == ChainId.EVM
        assert counter_chain(ChainId.EVM) == ChainId.STACKS
