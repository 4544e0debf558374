"""链客户端接口定义 -- typing.Protocol

Stacks / EVM 客户端以及测试用的内存假链都满足这些接口。
"""

from decimal import Decimal
from typing import Protocol

from brickvault.core.models import ChainId, PropertyStage, RawChainEvent


class ChainReader(Protocol):
    """ChainObserver 依赖的只读接口"""

    chain: ChainId

    async def get_block_height(self) -> int: ...

    async def get_events(self, from_height: int, to_height: int) -> list[RawChainEvent]: ...

    async def health_check(self) -> bool: ...


class ChainClient(ChainReader, Protocol):
    """Dispatcher 依赖的写接口

    submit_* 返回目标链交易哈希；wait_for_receipt 在回滚时抛出 ChainRevertError。
    """

    async def submit_credit(
        self,
        message_id: str,
        property_id: int,
        custodian: str,
        principal: str,
        amount: int,
        source_tx_hash: str,
        proof: bytes,
    ) -> str: ...

    async def submit_debit(
        self,
        message_id: str,
        property_id: int,
        custodian: str,
        principal: str,
        amount: int,
        source_tx_hash: str,
        proof: bytes,
    ) -> str: ...

    async def submit_stage_update(
        self,
        message_id: str,
        property_id: int,
        stage: PropertyStage,
        source_tx_hash: str,
        proof: bytes,
    ) -> str: ...

    async def submit_stage_acknowledgment(
        self,
        message_id: str,
        property_id: int,
        stage: PropertyStage,
        source_tx_hash: str,
        proof: bytes,
    ) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, timeout_s: float) -> None: ...


class CustodianDirectory(Protocol):
    """Stacks principal -> EVM custodian 注册表"""

    async def get_evm_custodian(self, stacks_address: str) -> str | None: ...


class LiquiditySource(Protocol):
    async def get_available_liquidity(self) -> int: ...


class BalanceReader(Protocol):
    """目标链铸造总额（只读，目标精度）

    lockbox 审计以此为铸造侧读数，不信任账本自报的 Confirmed 金额。
    """

    async def get_minted_balance(self, property_id: int) -> int: ...


class RateProvider(Protocol):
    """外部汇率来源（目标单位 / 来源单位）"""

    async def get_rate(self) -> Decimal: ...


class FixedRateProvider:
    """固定汇率，来自配置"""

    def __init__(self, rate: Decimal) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self._rate = rate

    async def get_rate(self) -> Decimal:
        return self._rate
