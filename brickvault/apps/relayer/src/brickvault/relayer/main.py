"""FastAPI 应用主文件

app 创建 + lifespan 管理：配置校验、Store 初始化/关闭、链客户端与 RelayerService 构造、路由注册。
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from brickvault.chains import EvmClient, StacksApiClient
from brickvault.core.config import (
    RelayerConfig,
    config_summary,
    ensure_valid_config,
    load_relayer_config,
)
from brickvault.core.store import create_store_group
from fastapi import FastAPI

from .middleware.logging_config import setup_logging
from .middleware.logging_mw import LoggingMiddleware
from .middleware.trace_mw import TraceMiddleware
from .routes import control, events, health, logs, messages, status
from .services.log_buffer import LogBuffer
from .services.relayer_service import RelayerService

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理：启动时构造 relayer，关闭时停止轮询并清理连接"""
    config: RelayerConfig = ensure_valid_config(app.state.config)

    store_group = await create_store_group(config.storage.db_path)
    app.state.store_group = store_group

    timeout_s = config.monitoring.timeout_s
    stacks_client = StacksApiClient(
        api_url=config.stacks.api_url,
        contract_address=config.stacks.contract_address,
        signer_url=config.stacks.signer_url,
        signer_api_key=config.stacks.signer_api_key.get_secret_value(),
        timeout_s=timeout_s,
    )
    evm_client = EvmClient(
        rpc_url=config.evm.rpc_url,
        manager_address=config.evm.manager_address,
        private_key=config.evm.private_key.get_secret_value(),
        gas_limit=config.evm.gas_limit,
        timeout_s=timeout_s,
    )
    relayer_service = RelayerService(config, store_group, stacks_client, evm_client)
    app.state.relayer_service = relayer_service

    log.info("relayer_initialized", **config_summary(config))

    if config.autostart:
        await relayer_service.start()

    yield

    # 关闭：停止轮询，清理连接
    await relayer_service.stop()
    await stacks_client.aclose()
    await evm_client.aclose()
    await store_group.conn.close()


def create_app(config: RelayerConfig | None = None) -> FastAPI:
    """创建 FastAPI 应用实例

    Args:
        config: relayer 配置，默认从环境变量加载
    """
    config = config or load_relayer_config()

    app = FastAPI(
        title="BrickVault Relayer",
        version="0.1.0",
        description="Stacks <-> EVM 跨链 relayer 运维 API",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.log_buffer = LogBuffer(max_entries=config.logging.buffer_size)

    # 注册中间件（顺序：先 Trace 后 Logging）
    app.add_middleware(TraceMiddleware)
    app.add_middleware(LoggingMiddleware)

    # 初始化日志
    setup_logging(config.logging, app.state.log_buffer)

    # 注册路由
    app.include_router(health.router, tags=["health"])
    app.include_router(status.router, tags=["status"])
    app.include_router(control.router, tags=["control"])
    app.include_router(events.router, tags=["events"])
    app.include_router(messages.router, tags=["messages"])
    app.include_router(logs.router, tags=["logs"])

    return app


# 默认 app 实例（uvicorn 入口）
app = create_app()
