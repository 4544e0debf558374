"""packages/core 测试配置 -- 账本 fixture + CanonicalEvent 构造"""

import itertools

import pytest
import pytest_asyncio
from brickvault.core.models import CanonicalEvent, ChainId, EventKind, compute_message_id
from brickvault.core.store import SqliteDispatchStore


@pytest_asyncio.fixture
async def ledger(db_conn) -> SqliteDispatchStore:
    """核心层幂等账本"""
    return SqliteDispatchStore(db_conn)


@pytest.fixture
def make_event():
    """CanonicalEvent 工厂（默认 1 sBTC 存入 property 1）"""
    seq = itertools.count(1)

    def _make(
        kind: EventKind = EventKind.DEPOSIT,
        property_id: int = 1,
        amount: int = 1_000_000,
        block: int = 1,
        **kwargs,
    ) -> CanonicalEvent:
        tx_hash = kwargs.pop("source_tx_hash", f"0x{next(seq):064x}")
        return CanonicalEvent(
            id=compute_message_id(ChainId.STACKS, tx_hash, 0),
            kind=kind,
            source_chain=kwargs.pop("source_chain", ChainId.STACKS),
            property_id=property_id,
            principal=kwargs.pop("principal", "SP2J6ZY48GV1EZ5V2V5RB9MP66SW86PYKKNRV9EJ7"),
            amount=amount,
            source_tx_hash=tx_hash,
            source_block_height=block,
            log_index=0,
            **kwargs,
        )

    return _make
