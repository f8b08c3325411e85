"""
任务管理接口
任务定义只来自配置文件，接口只提供查看、手动触发和重新加载
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.concurrency import run_in_threadpool

from config.loader import load_cleaner_config
from kiyoshi.api.dependencies import get_scheduler
from kiyoshi.core.scheduler import TaskScheduler
from kiyoshi.models import CommonResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/tasks", response_model=CommonResponse)
def list_tasks(scheduler: TaskScheduler = Depends(get_scheduler)):
    """获取所有已调度的任务"""
    return CommonResponse(data=scheduler.list_jobs())


@router.get("/tasks/{task_name}", response_model=CommonResponse)
def get_task(task_name: str, scheduler: TaskScheduler = Depends(get_scheduler)):
    """获取任务详情"""
    return CommonResponse(data=scheduler.describe(task_name))


@router.post("/tasks/{task_name}/run", response_model=CommonResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_task(task_name: str, wait: bool = False, scheduler: TaskScheduler = Depends(get_scheduler)):
    """
    立即执行一次任务

    wait=true 时等待运行结束并返回运行记录
    """
    future = scheduler.trigger_now(task_name)
    logger.info(f"Task {task_name} triggered manually")
    if not wait:
        return CommonResponse(message="任务已提交", data={"task_name": task_name})

    record = await run_in_threadpool(future.result)
    return CommonResponse(message="任务执行完成", data=record.to_dict())


@router.post("/reload", response_model=CommonResponse)
def reload_config(request: Request, scheduler: TaskScheduler = Depends(get_scheduler)):
    """重新加载配置文件中的任务和安全模式策略"""
    config_path = request.app.state.config_path
    config = load_cleaner_config(config_path)
    summary = scheduler.reload(config.tasks, policy=config.policy)
    summary["invalid"] = config.errors
    logger.info(f"Configuration reloaded from {config_path}")
    return CommonResponse(message="配置已重新加载", data=summary)
