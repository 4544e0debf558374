"""链原始事件 -- RawChainEvent 信封 + 按链的 tagged union

RawChainEvent.body 是链适配器解码后的数据（Stacks print tuple / EVM log args），
以 "event" 字段作为判别标签。Normalizer 通过下面的 TypeAdapter 收窄为具体类型，
不匹配任何已知标签形状的 body 一律拒绝。
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .enums import ChainId, PropertyStage


class RawChainEvent(BaseModel):
    """链上原始事件信封"""

    chain: ChainId = Field(description="来源链")
    tx_hash: str = Field(min_length=1, description="来源交易哈希")
    block_height: int = Field(ge=0, description="所在区块高度")
    index: int = Field(ge=0, description="交易内 print 序号 / 区块内 log 序号")
    body: dict[str, Any] = Field(default_factory=dict, description="解码后的事件数据")


class _PrintBody(BaseModel):
    """Stacks print tuple 公共配置（键名使用 Clarity kebab-case）"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StacksDepositPrint(_PrintBody):
    """gateway deposit-sbtc 打印的存入事件"""

    event: Literal["deposit"]
    property_id: int = Field(alias="property-id", ge=0)
    user: str = Field(min_length=1)
    amount: int = Field(gt=0)
    evm_custodian: str | None = Field(default=None, alias="evm-custodian")


class StacksWithdrawalPrint(_PrintBody):
    """gateway withdraw-sbtc 打印的取出事件"""

    event: Literal["withdrawal"]
    property_id: int = Field(alias="property-id", ge=0)
    user: str = Field(min_length=1)
    amount: int = Field(gt=0)
    evm_custodian: str | None = Field(default=None, alias="evm-custodian")


class StacksStageTransitionPrint(_PrintBody):
    """owner 在 Stacks 侧推进阶段"""

    event: Literal["stage-transition"]
    property_id: int = Field(alias="property-id", ge=0)
    stage: PropertyStage
    override: bool = False


class StacksStageAckPrint(_PrintBody):
    """relayer-update-stage 生效后打印的确认事件"""

    event: Literal["stage-acknowledgment"]
    property_id: int = Field(alias="property-id", ge=0)
    stage: PropertyStage


class _LogBody(BaseModel):
    """EVM log args 公共配置（键名与 ABI 一致，camelCase）"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EvmStageChangeLog(_LogBody):
    """StacksStageChange(uint256 propertyId, uint8 newStage)"""

    event: Literal["StacksStageChange"]
    property_id: int = Field(alias="propertyId", ge=0)
    new_stage: PropertyStage = Field(alias="newStage")


class EvmStageOverrideLog(_LogBody):
    """StacksStageOverride(uint256 propertyId, uint8 newStage) -- 管理员强制阶段"""

    event: Literal["StacksStageOverride"]
    property_id: int = Field(alias="propertyId", ge=0)
    new_stage: PropertyStage = Field(alias="newStage")


class EvmStageAckLog(_LogBody):
    """StacksStageAcknowledged(uint256 propertyId, uint8 stage)"""

    event: Literal["StacksStageAcknowledged"]
    property_id: int = Field(alias="propertyId", ge=0)
    stage: PropertyStage


StacksPrintBody = Annotated[
    StacksDepositPrint
    | StacksWithdrawalPrint
    | StacksStageTransitionPrint
    | StacksStageAckPrint,
    Field(discriminator="event"),
]

EvmLogBody = Annotated[
    EvmStageChangeLog | EvmStageOverrideLog | EvmStageAckLog,
    Field(discriminator="event"),
]

STACKS_PRINT_ADAPTER: TypeAdapter[Any] = TypeAdapter(StacksPrintBody)
EVM_LOG_ADAPTER: TypeAdapter[Any] = TypeAdapter(EvmLogBody)

BODY_ADAPTERS: dict[ChainId, TypeAdapter[Any]] = {
    ChainId.STACKS: STACKS_PRINT_ADAPTER,
    ChainId.EVM: EVM_LOG_ADAPTER,
}
