"""枚举定义 -- 链标识、事件种类、派发状态机、资产阶段

包含 DispatchStatus 状态机、PropertyStage 阶段序列，
以及 VALID_DISPATCH_TRANSITIONS 合法流转映射和 TERMINAL_DISPATCH_STATES 终态集合。
"""

from enum import IntEnum, StrEnum


class ChainId(StrEnum):
    """链标识"""

    STACKS = "stacks"
    EVM = "evm"


def counter_chain(chain: ChainId) -> ChainId:
    """返回对侧链"""
    return ChainId.EVM if chain == ChainId.STACKS else ChainId.STACKS


class EventKind(StrEnum):
    """跨链事件种类"""

    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    STAGE_CHANGE = "STAGE_CHANGE"
    STAGE_ACKNOWLEDGMENT = "STAGE_ACKNOWLEDGMENT"


class DispatchStatus(StrEnum):
    """派发记录状态机"""

    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED_RETRYABLE = "FAILED_RETRYABLE"
    FAILED_PERMANENT = "FAILED_PERMANENT"


# 合法状态流转
VALID_DISPATCH_TRANSITIONS: dict[DispatchStatus, set[DispatchStatus]] = {
    DispatchStatus.PENDING: {
        DispatchStatus.SUBMITTED,
        DispatchStatus.CONFIRMED,
        DispatchStatus.FAILED_RETRYABLE,
        DispatchStatus.FAILED_PERMANENT,
    },
    DispatchStatus.SUBMITTED: {
        DispatchStatus.CONFIRMED,
        DispatchStatus.FAILED_RETRYABLE,
        DispatchStatus.FAILED_PERMANENT,
    },
    DispatchStatus.FAILED_RETRYABLE: {
        DispatchStatus.PENDING,
        DispatchStatus.FAILED_PERMANENT,
    },
    # 仅运维人工重置
    DispatchStatus.FAILED_PERMANENT: {DispatchStatus.FAILED_RETRYABLE},
    # Confirmed 只写一次
    DispatchStatus.CONFIRMED: set(),
}

TERMINAL_DISPATCH_STATES: set[DispatchStatus] = {
    DispatchStatus.CONFIRMED,
    DispatchStatus.FAILED_PERMANENT,
}

# 仍在途中的状态（计入 lockbox 允许偏差）
IN_FLIGHT_STATES: set[DispatchStatus] = {
    DispatchStatus.PENDING,
    DispatchStatus.SUBMITTED,
    DispatchStatus.FAILED_RETRYABLE,
}


class PropertyStage(IntEnum):
    """资产生命周期阶段，两条链镜像同一序列"""

    OPEN_TO_FUND = 0
    FUNDED = 1
    UNDER_MANAGEMENT = 2
    LIQUIDATING = 3
    LIQUIDATED = 4


class StageSyncState(StrEnum):
    """Stage 同步器状态"""

    SETTLED = "SETTLED"
    AWAITING_DESTINATION_ACK = "AWAITING_DESTINATION_ACK"


class LockboxStatus(StrEnum):
    """Lockbox 不变量检查结果"""

    SETTLED = "SETTLED"
    IN_FLIGHT = "IN_FLIGHT"
    STUCK = "STUCK"
    VIOLATED = "VIOLATED"
    NOT_APPLICABLE = "NOT_APPLICABLE"
    UNAVAILABLE = "UNAVAILABLE"


def validate_dispatch_transition(
    from_status: DispatchStatus, to_status: DispatchStatus
) -> bool:
    """验证派发状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_DISPATCH_TRANSITIONS.get(from_status, set())
    return to_status in allowed
