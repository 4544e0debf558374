"""依赖注入模块 -- 通过 FastAPI Depends 注入 relayer 组件

组件实例通过 app.state 管理，在 lifespan 中初始化/清理。
"""

from brickvault.core.config import RelayerConfig
from brickvault.core.store import StoreGroup
from fastapi import Request

from .services.log_buffer import LogBuffer
from .services.relayer_service import RelayerService


def get_store_group(request: Request) -> StoreGroup:
    """从 app.state 获取 StoreGroup 实例"""
    return request.app.state.store_group


def get_relayer_service(request: Request) -> RelayerService:
    """从 app.state 获取 RelayerService 实例"""
    return request.app.state.relayer_service


def get_config(request: Request) -> RelayerConfig:
    return request.app.state.config


def get_log_buffer(request: Request) -> LogBuffer:
    return request.app.state.log_buffer
