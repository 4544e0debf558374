"""BrickVault Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .chain_events import (
    BODY_ADAPTERS,
    EvmStageAckLog,
    EvmStageChangeLog,
    EvmStageOverrideLog,
    RawChainEvent,
    StacksDepositPrint,
    StacksStageAckPrint,
    StacksStageTransitionPrint,
    StacksWithdrawalPrint,
)
from .dispatch import DispatchRecord, LedgerTotals
from .enums import (
    IN_FLIGHT_STATES,
    TERMINAL_DISPATCH_STATES,
    VALID_DISPATCH_TRANSITIONS,
    ChainId,
    DispatchStatus,
    EventKind,
    LockboxStatus,
    PropertyStage,
    StageSyncState,
    counter_chain,
    validate_dispatch_transition,
)
from .event import CanonicalEvent, DropSignal, compute_message_id, derive_message_id
from .sync import (
    ChainCursor,
    CustodialBalanceView,
    LockboxReport,
    PollResult,
    PropertyStageState,
)

__all__ = [
    # 枚举
    "ChainId",
    "EventKind",
    "DispatchStatus",
    "PropertyStage",
    "StageSyncState",
    "LockboxStatus",
    "counter_chain",
    # 状态机
    "VALID_DISPATCH_TRANSITIONS",
    "TERMINAL_DISPATCH_STATES",
    "IN_FLIGHT_STATES",
    "validate_dispatch_transition",
    # 原始事件
    "RawChainEvent",
    "StacksDepositPrint",
    "StacksWithdrawalPrint",
    "StacksStageTransitionPrint",
    "StacksStageAckPrint",
    "EvmStageChangeLog",
    "EvmStageOverrideLog",
    "EvmStageAckLog",
    "BODY_ADAPTERS",
    # 规范事件
    "CanonicalEvent",
    "DropSignal",
    "compute_message_id",
    "derive_message_id",
    # 账本
    "DispatchRecord",
    "LedgerTotals",
    # 同步状态
    "ChainCursor",
    "PollResult",
    "PropertyStageState",
    "CustodialBalanceView",
    "LockboxReport",
]
