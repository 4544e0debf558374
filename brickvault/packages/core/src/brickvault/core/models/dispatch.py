"""DispatchRecord Domain Model -- 幂等账本记录

每条 CanonicalEvent 对应一条记录，主键为 message id。
Confirmed 只写一次；FailedPermanent 需人工重置。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import ChainId, DispatchStatus, EventKind
from .event import CanonicalEvent


class DispatchRecord(BaseModel):
    """派发记录"""

    message_id: str = Field(description="确定性 message id")
    kind: EventKind = Field(description="事件种类")
    source_chain: ChainId = Field(description="来源链")
    property_id: int = Field(description="资产 ID")
    amount: int = Field(default=0, description="来源链原生精度金额")
    destination_amount: int | None = Field(
        default=None, description="实际写入目标链的金额（缩放/换算后）"
    )
    status: DispatchStatus = Field(default=DispatchStatus.PENDING, description="当前状态")
    retry_count: int = Field(default=0, ge=0, description="已重试次数")
    last_error: str = Field(default="", description="最近一次失败原因")
    destination_tx_hash: str | None = Field(default=None, description="目标链交易哈希")
    source_block_height: int = Field(default=0, description="来源区块高度")
    next_attempt_at: datetime | None = Field(default=None, description="下次重试时间")
    event: CanonicalEvent | None = Field(default=None, description="原始规范事件（用于重试）")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")


class LedgerTotals(BaseModel):
    """单个资产的账本汇总（来源链原生精度，取出为负）"""

    property_id: int
    observed_source: int = 0
    confirmed_source: int = 0
    confirmed_destination: int = 0
    in_flight_source: int = 0
    in_flight_withdrawal_source: int = 0
    stuck_source: int = 0
