"""全局 pytest 配置 -- 临时 SQLite 数据库、内存假链、手动时钟 fixture"""

import asyncio
import itertools
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio
from brickvault.chains import AlreadyAppliedError
from brickvault.core.config import (
    EvmConfig,
    MonitoringConfig,
    RelayerConfig,
    StacksConfig,
    StorageConfig,
)
from brickvault.core.models import ChainId, PropertyStage, RawChainEvent
from brickvault.core.store import StoreGroup, create_store_group

USER = "SP2J6ZY48GV1EZ5V2V5RB9MP66SW86PYKKNRV9EJ7"
CUSTODIAN = "0x1111111111111111111111111111111111111111"


class FakeChainClient:
    """内存假链 -- 满足 ChainClient 协议，记录所有写调用

    - events: 链上已有事件，get_events 按区块范围返回
    - failures: 下一次 submit_* 依次抛出的异常
    - receipt_failures: 下一次 wait_for_receipt 依次抛出的异常
    - processed: 已在链上生效的 message id，重复提交报告 already processed
    - balances: 按资产累计的 credit - debit（目标链铸造量）
    """

    def __init__(self, chain: ChainId, height: int = 0) -> None:
        self.chain = chain
        self.height = height
        self.events: list[RawChainEvent] = []
        self.calls: list[tuple[str, dict]] = []
        self.custodians: dict[str, str] = {}
        self.liquidity = 10**40
        self.failures: list[Exception] = []
        self.receipt_failures: list[Exception] = []
        self.processed: set[str] = set()
        self.balances: dict[int, int] = {}
        self.stages: dict[int, PropertyStage] = {}
        self.healthy = True
        self.submit_delay_s = 0.0
        self._tx_seq = itertools.count(1)

    async def get_block_height(self) -> int:
        return self.height

    async def get_events(self, from_height: int, to_height: int) -> list[RawChainEvent]:
        return [e for e in self.events if from_height <= e.block_height <= to_height]

    async def health_check(self) -> bool:
        return self.healthy

    async def get_evm_custodian(self, stacks_address: str) -> str | None:
        return self.custodians.get(stacks_address)

    async def get_available_liquidity(self) -> int:
        return self.liquidity

    async def get_minted_balance(self, property_id: int) -> int:
        return self.balances.get(property_id, 0)

    async def _apply(self, method: str, message_id: str, **fields) -> str:
        self.calls.append((method, {"message_id": message_id, **fields}))
        if self.submit_delay_s:
            await asyncio.sleep(self.submit_delay_s)
        if self.failures:
            raise self.failures.pop(0)
        if message_id in self.processed:
            raise AlreadyAppliedError("message already processed")
        self.processed.add(message_id)
        return f"0x{self.chain}{next(self._tx_seq):060x}"

    async def submit_credit(
        self, message_id, property_id, custodian, principal, amount, source_tx_hash, proof
    ) -> str:
        tx = await self._apply(
            "credit", message_id, property_id=property_id, custodian=custodian,
            principal=principal, amount=amount,
        )
        self.balances[property_id] = self.balances.get(property_id, 0) + amount
        return tx

    async def submit_debit(
        self, message_id, property_id, custodian, principal, amount, source_tx_hash, proof
    ) -> str:
        tx = await self._apply(
            "debit", message_id, property_id=property_id, custodian=custodian,
            principal=principal, amount=amount,
        )
        self.balances[property_id] = self.balances.get(property_id, 0) - amount
        return tx

    async def submit_stage_update(
        self, message_id, property_id, stage, source_tx_hash, proof
    ) -> str:
        tx = await self._apply("stage_update", message_id, property_id=property_id, stage=stage)
        self.stages[property_id] = stage
        return tx

    async def submit_stage_acknowledgment(
        self, message_id, property_id, stage, source_tx_hash, proof
    ) -> str:
        return await self._apply("stage_ack", message_id, property_id=property_id, stage=stage)

    async def wait_for_receipt(self, tx_hash: str, timeout_s: float) -> None:
        if self.receipt_failures:
            raise self.receipt_failures.pop(0)

    def calls_of(self, method: str) -> list[dict]:
        return [fields for name, fields in self.calls if name == method]


class ManualClock:
    """手动时钟 -- sleep 立即返回并推进时间

    起点取当前时间，与账本写入的 updated_at / 重置时间可比较。
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime.now(UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float, stop_event: asyncio.Event) -> bool:
        self.advance(seconds)
        await asyncio.sleep(0)
        return stop_event.is_set()


class EventFactory:
    """构造 RawChainEvent（tx_hash 自动递增，保证 message id 唯一）"""

    def __init__(self) -> None:
        self._seq = itertools.count(1)

    def _tx(self, tx_hash: str | None) -> str:
        return tx_hash or f"0x{next(self._seq):064x}"

    def stacks(self, body: dict, block: int = 1, index: int = 0, tx_hash: str | None = None):
        return RawChainEvent(
            chain=ChainId.STACKS, tx_hash=self._tx(tx_hash), block_height=block,
            index=index, body=body,
        )

    def evm(self, body: dict, block: int = 1, index: int = 0, tx_hash: str | None = None):
        return RawChainEvent(
            chain=ChainId.EVM, tx_hash=self._tx(tx_hash), block_height=block,
            index=index, body=body,
        )

    def deposit(self, property_id=1, amount=1_000_000, user=USER, **kwargs):
        body = {"event": "deposit", "property-id": property_id, "user": user, "amount": amount}
        return self.stacks(body, **kwargs)

    def withdrawal(self, property_id=1, amount=1_000_000, user=USER, **kwargs):
        body = {"event": "withdrawal", "property-id": property_id, "user": user, "amount": amount}
        return self.stacks(body, **kwargs)

    def stacks_stage(self, property_id=1, stage=1, override=False, **kwargs):
        body = {
            "event": "stage-transition", "property-id": property_id,
            "stage": stage, "override": override,
        }
        return self.stacks(body, **kwargs)

    def stacks_ack(self, property_id=1, stage=1, **kwargs):
        body = {"event": "stage-acknowledgment", "property-id": property_id, "stage": stage}
        return self.stacks(body, **kwargs)

    def evm_stage(self, property_id=1, stage=1, **kwargs):
        body = {"event": "StacksStageChange", "propertyId": property_id, "newStage": stage}
        return self.evm(body, **kwargs)

    def evm_override(self, property_id=1, stage=1, **kwargs):
        body = {"event": "StacksStageOverride", "propertyId": property_id, "newStage": stage}
        return self.evm(body, **kwargs)

    def evm_ack(self, property_id=1, stage=1, **kwargs):
        body = {"event": "StacksStageAcknowledged", "propertyId": property_id, "stage": stage}
        return self.evm(body, **kwargs)


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "test.db"


@pytest_asyncio.fixture
async def db_conn(tmp_db_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """提供已初始化的临时 SQLite 数据库连接"""
    from brickvault.core.store.sqlite_init import init_db

    conn = await aiosqlite.connect(str(tmp_db_path))
    conn.row_factory = aiosqlite.Row
    await init_db(conn)
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def store_group(tmp_db_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """提供共享临时数据库的 StoreGroup"""
    group = await create_store_group(str(tmp_db_path))
    yield group
    await group.conn.close()


@pytest.fixture
def relayer_config(tmp_db_path: Path) -> RelayerConfig:
    """测试用 relayer 配置（无确认深度、快速重试）"""
    return RelayerConfig(
        environment="test",
        stacks=StacksConfig(
            contract_address="SP000000000000000000002Q6VF78.brick-vault-gateway",
            min_confirmations=0,
        ),
        evm=EvmConfig(min_confirmations=0),
        monitoring=MonitoringConfig(
            interval_s=1.0,
            max_retries=3,
            retry_delay_s=0.1,
            batch_size=5,
            timeout_s=5.0,
            ack_timeout_s=30.0,
            lookback_blocks=0,
            shutdown_grace_s=1.0,
        ),
        storage=StorageConfig(db_path=str(tmp_db_path)),
    )


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def stacks_chain() -> FakeChainClient:
    return FakeChainClient(ChainId.STACKS)


@pytest.fixture
def evm_chain() -> FakeChainClient:
    chain = FakeChainClient(ChainId.EVM)
    chain.custodians[USER] = CUSTODIAN
    return chain


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()
