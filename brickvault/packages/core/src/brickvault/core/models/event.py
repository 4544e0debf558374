"""CanonicalEvent Domain Model -- 链无关的跨链事件

message id 由 (source_chain, source_tx_hash, index) 确定性派生，
同一来源事件无论被观察多少次都得到同一个 id，这是幂等账本的键。
金额保持来源链原生精度，缩放由 Dispatcher 在构造目标调用时完成。
"""

import hashlib

from pydantic import BaseModel, ConfigDict, Field

from .enums import ChainId, EventKind, PropertyStage


def compute_message_id(chain: ChainId | str, tx_hash: str, index: int) -> str:
    """计算确定性 message id

    Returns:
        "0x" + 64 位十六进制（32 字节，可直接作为 EVM bytes32 messageId）
    """
    material = f"{ChainId(chain).value}:{tx_hash.lower()}:{index}"
    return "0x" + hashlib.sha256(material.encode("utf-8")).hexdigest()


def derive_message_id(parent_id: str, label: str) -> str:
    """从已有 message id 派生子 id（如超时重新提交）"""
    return "0x" + hashlib.sha256(f"{parent_id}:{label}".encode()).hexdigest()


class CanonicalEvent(BaseModel):
    """规范化跨链事件 -- 不可变"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="确定性 message id")
    kind: EventKind = Field(description="事件种类")
    source_chain: ChainId = Field(description="来源链")
    property_id: int = Field(ge=0, description="资产 ID")
    principal: str = Field(default="", description="来源链账户（Stacks principal）")
    counterparty_address: str | None = Field(
        default=None, description="目标链地址（EVM custodian），为空时由 Dispatcher 查询"
    )
    amount: int = Field(default=0, ge=0, description="来源链原生精度金额")
    stage: PropertyStage | None = Field(default=None, description="阶段事件的目标阶段")
    admin_override: bool = Field(default=False, description="管理员强制阶段")
    source_tx_hash: str = Field(description="来源交易哈希")
    source_block_height: int = Field(ge=0, description="来源区块高度")
    log_index: int = Field(ge=0, description="来源事件序号")

    @property
    def ordering_key(self) -> tuple[int, int]:
        """同一资产内的处理顺序（来源区块高度优先）"""
        return (self.source_block_height, self.log_index)


class DropSignal(BaseModel):
    """无法识别或格式错误的事件 -- 记录审计日志，不重试"""

    model_config = ConfigDict(frozen=True)

    reason: str
    chain: ChainId
    tx_hash: str = ""
    index: int = 0
