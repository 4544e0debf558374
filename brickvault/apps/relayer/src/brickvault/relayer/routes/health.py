"""健康检查路由

GET /health: Liveness 检查，永远返回 200。
GET /ready: Readiness 检查，包含 SQLite 连通性、relayer 运行状态；
         profile=full 时额外探测两条链的可达性。
"""

import structlog
from fastapi import APIRouter, Query, Request
from starlette.responses import JSONResponse

log = structlog.get_logger()

router = APIRouter()


@router.get("/health")
async def health():
    """Liveness 检查 -- 永远返回 200"""
    return {"status": "ok"}


@router.get("/ready")
async def ready(
    request: Request,
    profile: str | None = Query(
        default=None,
        description="检查配置：core（默认）仅本地检查；full 额外探测链 RPC",
    ),
):
    """Readiness 检查 -- 验证核心依赖可用性

    检查项：
    1. sqlite: 数据库连通性
    2. relayer: 轮询循环是否在运行
    3. chains: profile=full 时探测 Stacks / EVM 可达性，否则 skipped
    """
    effective_profile = profile or "core"

    checks: dict[str, object] = {}
    all_ok = True

    # 1. SQLite 连通性检查
    try:
        store_group = request.app.state.store_group
        cursor = await store_group.conn.execute("SELECT 1")
        await cursor.fetchone()
        checks["sqlite"] = "ok"
    except Exception as e:
        checks["sqlite"] = f"error: {str(e)}"
        all_ok = False

    # 2. relayer 运行状态
    relayer_service = getattr(request.app.state, "relayer_service", None)
    if relayer_service is not None and relayer_service.is_running:
        checks["relayer"] = "running"
    else:
        checks["relayer"] = "stopped"
        all_ok = False

    # 3. 链可达性
    if effective_profile == "full" and relayer_service is not None:
        try:
            chain_status = await relayer_service.check_chains()
        except Exception as e:
            log.warning("health_check_error", error=str(e))
            chain_status = {}
            all_ok = False
        checks["chains"] = {
            chain: "ok" if reachable else "unreachable"
            for chain, reachable in chain_status.items()
        }
        if not all(chain_status.values()):
            all_ok = False
    else:
        checks["chains"] = "skipped"

    status_code = 200 if all_ok else 503
    status_text = "ready" if all_ok else "not_ready"

    return JSONResponse(
        status_code=status_code,
        content={
            "status": status_text,
            "profile": effective_profile,
            "checks": checks,
        },
    )
