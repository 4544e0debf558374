"""日志查询路由

GET /api/logs: 查询内存日志缓冲，支持 level / category 筛选与分页；
              stats=true 时返回统计信息。
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ..deps import get_log_buffer

router = APIRouter()


@router.get("/api/logs")
async def get_logs(
    level: str | None = Query(default=None, description="日志级别（debug/info/warning/error）"),
    category: str | None = Query(default=None, description="logger 名"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    since: datetime | None = Query(default=None, description="仅返回该时间之后的日志"),
    stats: bool = Query(default=False, description="返回统计信息而非日志列表"),
    log_buffer=Depends(get_log_buffer),
):
    if stats:
        return {"stats": log_buffer.stats(), "categories": log_buffer.categories()}

    entries = log_buffer.query(
        level=level, category=category, limit=limit, offset=offset, since=since
    )
    return {
        "logs": [entry.model_dump(mode="json") for entry in entries],
        "count": len(entries),
        "limit": limit,
        "offset": offset,
    }
