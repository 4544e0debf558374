"""同步状态模型 -- 观察游标 + 资产阶段同步状态 + lockbox 视图"""

from datetime import datetime

from pydantic import BaseModel, Field

from .chain_events import RawChainEvent
from .enums import ChainId, LockboxStatus, PropertyStage, StageSyncState


class ChainCursor(BaseModel):
    """观察游标：最后一个已完整扫描的区块"""

    chain: ChainId
    block_height: int = Field(ge=0)


class PollResult(BaseModel):
    """ChainObserver.poll() 结果"""

    events: list[RawChainEvent] = Field(default_factory=list)
    cursor: ChainCursor


class PropertyStageState(BaseModel):
    """单个资产的阶段同步状态

    SETTLED: settled_stage 为两条链一致的阶段
    AWAITING_DESTINATION_ACK: 已向对侧链提交 pending_target，等待确认
    """

    property_id: int = Field(ge=0)
    state: StageSyncState = StageSyncState.SETTLED
    settled_stage: PropertyStage = PropertyStage.OPEN_TO_FUND
    pending_target: PropertyStage | None = None
    pending_message_id: str | None = None
    pending_since: datetime | None = None
    resubmit_count: int = 0
    updated_at: datetime | None = None


class CustodialBalanceView(BaseModel):
    """Lockbox 视图（来源链原生精度，目标链金额为目标精度）"""

    property_id: int
    locked_source: int = Field(description="来源链锁定总额")
    minted_destination: int = Field(description="目标链已铸造总额")
    in_flight_source: int = Field(default=0, description="在途金额（取出为负）")
    in_flight_withdrawal_source: int | None = Field(
        default=None, description="在途金额中的取出部分（≤0），缺省取 min(in_flight_source, 0)"
    )
    stuck_source: int = Field(default=0, description="FailedPermanent 金额")
    scale_factor: int = Field(default=1, ge=1, description="精度缩放倍数")

    @property
    def in_flight_withdrawals(self) -> int:
        if self.in_flight_withdrawal_source is None:
            return min(self.in_flight_source, 0)
        return self.in_flight_withdrawal_source

    @property
    def in_flight_deposits(self) -> int:
        return self.in_flight_source - self.in_flight_withdrawals


class LockboxReport(BaseModel):
    """Lockbox 不变量检查报告"""

    property_id: int
    status: LockboxStatus
    expected_destination: int = 0
    minted_destination: int = 0
    discrepancy: int = 0
    detail: str = ""
