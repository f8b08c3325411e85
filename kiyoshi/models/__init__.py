"""
数据模型
"""

from .task import (
    CleanupTask,
    DataInterval,
    EventKind,
    RunEvent,
    RunRecord,
    RunStatus,
    SafeModePolicy,
)
from .response import CommonResponse


__all__ = [
    'CleanupTask',
    'DataInterval',
    'EventKind',
    'RunEvent',
    'RunRecord',
    'RunStatus',
    'SafeModePolicy',
    'CommonResponse',
]
