"""集成测试共享 fixture"""

from collections.abc import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient


@pytest_asyncio.fixture
async def integration_app(relayer_config, store_group, stacks_chain, evm_chain, manual_clock):
    """集成测试用 FastAPI app（假链 + 手动时钟，relayer 已启动）"""
    from brickvault.relayer.main import create_app
    from brickvault.relayer.services.relayer_service import RelayerService

    app = create_app(relayer_config)
    relayer = RelayerService(
        relayer_config, store_group, stacks_chain, evm_chain, clock=manual_clock
    )
    app.state.store_group = store_group
    app.state.relayer_service = relayer
    await relayer.start()

    yield app

    await relayer.stop()


@pytest_asyncio.fixture
async def client(integration_app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=integration_app),
        base_url="http://test",
    ) as ac:
        yield ac
