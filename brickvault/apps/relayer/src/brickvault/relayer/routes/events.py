"""事件注入路由

POST /api/events/source: 注入 Stacks 原始事件
POST /api/events/destination: 注入 EVM 原始事件

请求体 {"event": RawChainEvent}。
- 400: 缺少 event 或格式错误
- 503: relayer 未运行
- 200: ProcessResult（success=false 表示业务失败，已记入账本）
"""

from brickvault.core.models import RawChainEvent
from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from starlette.responses import JSONResponse

from ..deps import get_relayer_service

router = APIRouter()


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


async def _parse_event(request: Request) -> RawChainEvent | JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "INVALID_JSON", "Request body must be JSON")

    if not isinstance(body, dict) or body.get("event") is None:
        return _error(400, "MISSING_EVENT", "Event data is required")

    try:
        return RawChainEvent.model_validate(body["event"])
    except ValidationError as e:
        return _error(400, "INVALID_EVENT", str(e.errors()[0].get("msg", "invalid event")))


async def _process(request: Request, relayer_service, destination: bool):
    parsed = await _parse_event(request)
    if isinstance(parsed, JSONResponse):
        return parsed

    if not relayer_service.is_running:
        return _error(503, "RELAYER_NOT_RUNNING", "Relayer service is not running")

    if destination:
        result = await relayer_service.process_destination_event(parsed)
    else:
        result = await relayer_service.process_source_event(parsed)
    return result.model_dump()


@router.post("/api/events/source")
async def process_source_event(
    request: Request,
    relayer_service=Depends(get_relayer_service),
):
    """处理 Stacks 链事件"""
    return await _process(request, relayer_service, destination=False)


@router.post("/api/events/destination")
async def process_destination_event(
    request: Request,
    relayer_service=Depends(get_relayer_service),
):
    """处理 EVM 链事件"""
    return await _process(request, relayer_service, destination=True)
