"""
FastAPI 应用主入口
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from config import get_settings
from kiyoshi.api import health, tasks
from kiyoshi.core.scheduler import TaskScheduler
from kiyoshi.middleware import register_exception_handlers

logger = logging.getLogger(__name__)


def create_app(scheduler: TaskScheduler, config_path: str, manage_scheduler: bool = True) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        scheduler: 已加载任务的调度器
        config_path: 清理配置文件路径，/reload 时重新读取
        manage_scheduler: 是否由应用生命周期启动和关闭调度器
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        if manage_scheduler:
            logger.info("任务调度器开始启动...")
            scheduler.start()
        logger.info(f"{settings.app_name} 启动完成")

        yield

        if manage_scheduler:
            logger.info("任务调度器关闭中...")
            scheduler.shutdown()
        logger.info(f"{settings.app_name} 已停止")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=settings.app_description,
        lifespan=lifespan
    )
    app.state.scheduler = scheduler
    app.state.config_path = config_path

    # 注册异常处理器
    register_exception_handlers(app)

    # 注册路由
    app.include_router(health.router, tags=["Health"])
    app.include_router(tasks.router, prefix=settings.api_prefix, tags=["Tasks"])

    return app
