"""状态查询路由

GET /api/status: relayer 运行状态、消息计数、各链最后处理区块。
GET /api/config: 配置摘要（密钥脱敏）。
GET /api/stages/{property_id}: 资产阶段同步状态。
GET /api/lockbox/{property_id}: lockbox 不变量检查报告。
"""

from brickvault.core.config import config_summary
from fastapi import APIRouter, Depends, Path

from ..deps import get_config, get_relayer_service

router = APIRouter()


@router.get("/api/status")
async def get_status(relayer_service=Depends(get_relayer_service)):
    return await relayer_service.get_status()


@router.get("/api/config")
async def get_config_summary(config=Depends(get_config)):
    return config_summary(config)


@router.get("/api/stages/{property_id}")
async def get_stage(
    property_id: int = Path(ge=0),
    relayer_service=Depends(get_relayer_service),
):
    state = await relayer_service.get_stage_state(property_id)
    return state.model_dump(mode="json")


@router.get("/api/lockbox/{property_id}")
async def get_lockbox(
    property_id: int = Path(ge=0),
    relayer_service=Depends(get_relayer_service),
):
    report = await relayer_service.lockbox_report(property_id)
    return report.model_dump(mode="json")
