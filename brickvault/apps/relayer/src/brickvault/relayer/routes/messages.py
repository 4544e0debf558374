"""幂等账本查询路由

GET /api/messages: 记录列表，支持 status 筛选。
GET /api/messages/{message_id}: 记录详情。
POST /api/messages/{message_id}/reset: 人工重置 FAILED_PERMANENT 记录。
- 404: 记录不存在
- 409: 记录不处于 FAILED_PERMANENT
"""

from brickvault.core.models import DispatchRecord, DispatchStatus
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from starlette.responses import JSONResponse

from ..deps import get_relayer_service, get_store_group

router = APIRouter()


class MessageSummary(BaseModel):
    """账本记录摘要（列表项）"""

    message_id: str
    kind: str
    source_chain: str
    property_id: int
    amount: str
    status: str
    retry_count: int
    last_error: str
    destination_tx_hash: str | None
    updated_at: str


class MessageListResponse(BaseModel):
    messages: list[MessageSummary]


def _summary(record: DispatchRecord) -> MessageSummary:
    return MessageSummary(
        message_id=record.message_id,
        kind=record.kind.value,
        source_chain=record.source_chain.value,
        property_id=record.property_id,
        # 18 位精度金额超出 JSON 安全整数范围，统一按字符串返回
        amount=str(record.amount),
        status=record.status.value,
        retry_count=record.retry_count,
        last_error=record.last_error,
        destination_tx_hash=record.destination_tx_hash,
        updated_at=record.updated_at.isoformat(),
    )


def _not_found(message_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "error": {
                "code": "MESSAGE_NOT_FOUND",
                "message": f"Message with id {message_id} does not exist",
            }
        },
    )


@router.get("/api/messages", response_model=MessageListResponse)
async def list_messages(
    status: DispatchStatus | None = Query(default=None, description="按状态筛选"),
    limit: int = Query(default=100, ge=1, le=1000),
    store_group=Depends(get_store_group),
):
    """查询账本记录，按 updated_at 倒序"""
    records = await store_group.dispatch_store.list_records(status, limit)
    return MessageListResponse(messages=[_summary(r) for r in records])


@router.get("/api/messages/{message_id}")
async def get_message(
    message_id: str,
    store_group=Depends(get_store_group),
):
    record = await store_group.dispatch_store.get(message_id.lower())
    if record is None:
        return _not_found(message_id)

    data = record.model_dump(mode="json")
    data["amount"] = str(record.amount)
    if record.destination_amount is not None:
        data["destination_amount"] = str(record.destination_amount)
    return {"message": data}


@router.post("/api/messages/{message_id}/reset")
async def reset_message(
    message_id: str,
    store_group=Depends(get_store_group),
    relayer_service=Depends(get_relayer_service),
):
    """人工重置：FAILED_PERMANENT -> FAILED_RETRYABLE（retry_count 清零）"""
    message_id = message_id.lower()
    record = await store_group.dispatch_store.get(message_id)
    if record is None:
        return _not_found(message_id)

    if not await relayer_service.reset_message(message_id):
        return JSONResponse(
            status_code=409,
            content={
                "error": {
                    "code": "NOT_RESETTABLE",
                    "message": f"Message is {record.status.value}, only FAILED_PERMANENT can be reset",
                }
            },
        )

    return {"message_id": message_id, "status": DispatchStatus.FAILED_RETRYABLE.value}
