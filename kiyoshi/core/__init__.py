"""
核心模块
"""

from .scheduler import TaskScheduler, create_trigger
from .task_executor import BatchExecutor


__all__ = ['TaskScheduler', 'create_trigger', 'BatchExecutor']
