"""
通知服务
"""

from .notifier import (
    CompositeNotifier,
    LoggingNotifier,
    Notifier,
    SlackNotifier,
    build_notifier,
    safe_notify,
)

__all__ = [
    'CompositeNotifier',
    'LoggingNotifier',
    'Notifier',
    'SlackNotifier',
    'build_notifier',
    'safe_notify',
]
