"""apps/relayer 测试配置 -- RelayerService + FastAPI AsyncClient fixture"""

from collections.abc import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient


@pytest_asyncio.fixture
async def relayer(relayer_config, store_group, stacks_chain, evm_chain, manual_clock):
    """接入假链与手动时钟的 RelayerService（未启动轮询）"""
    from brickvault.relayer.services.relayer_service import RelayerService

    service = RelayerService(
        relayer_config, store_group, stacks_chain, evm_chain, clock=manual_clock
    )
    yield service
    await service.stop()


@pytest_asyncio.fixture
async def test_app(relayer_config, store_group, relayer):
    """创建测试用 FastAPI app（绕过 lifespan，手动注入组件）"""
    from brickvault.relayer.main import create_app

    app = create_app(relayer_config)
    app.state.store_group = store_group
    app.state.relayer_service = relayer
    return app


@pytest_asyncio.fixture
async def client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """提供 httpx AsyncClient 用于测试"""
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac
