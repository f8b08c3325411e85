"""
接口依赖
"""

from fastapi import Request

from kiyoshi.core.scheduler import TaskScheduler


def get_scheduler(request: Request) -> TaskScheduler:
    """获取应用持有的调度器"""
    return request.app.state.scheduler
