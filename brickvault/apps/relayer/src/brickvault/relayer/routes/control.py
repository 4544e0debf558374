"""生命周期控制路由

POST /api/start | /api/stop | /api/restart -> {success, message}
"""

from fastapi import APIRouter, Depends

from ..deps import get_relayer_service
from ..services.relayer_service import ProcessResult

router = APIRouter()


@router.post("/api/start", response_model=ProcessResult)
async def start_relayer(relayer_service=Depends(get_relayer_service)):
    return await relayer_service.start()


@router.post("/api/stop", response_model=ProcessResult)
async def stop_relayer(relayer_service=Depends(get_relayer_service)):
    return await relayer_service.stop()


@router.post("/api/restart", response_model=ProcessResult)
async def restart_relayer(relayer_service=Depends(get_relayer_service)):
    return await relayer_service.restart()
