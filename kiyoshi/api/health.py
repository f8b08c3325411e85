"""
健康检查接口
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from kiyoshi.api.dependencies import get_scheduler
from kiyoshi.core.scheduler import TaskScheduler

router = APIRouter()


class HealthResponse(BaseModel):
    """健康检查响应"""
    status: str
    scheduler_running: bool
    tasks: int
    running_tasks: int
    database: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
def health_check(scheduler: TaskScheduler = Depends(get_scheduler)):
    """健康检查，调度器停止或数据库长时间不可用时返回 503"""
    health = scheduler.health()
    body = HealthResponse(
        status="healthy" if health["healthy"] else "unhealthy",
        scheduler_running=health["scheduler_running"],
        tasks=health["tasks"],
        running_tasks=health["running_tasks"],
        database=health["database"],
    )
    status_code = status.HTTP_200_OK if health["healthy"] else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.get("/ping")
async def ping():
    """简单的 ping 检查"""
    return {"pong": True}
