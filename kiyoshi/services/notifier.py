"""
运行结果通知
通知失败只记录日志，不影响运行结果和调度
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional

import requests

from kiyoshi.constants import SlackConfig
from kiyoshi.models.task import EventKind, RunEvent, RunStatus

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """通知器接口"""

    @abstractmethod
    def notify(self, event: RunEvent):
        """投递事件（fire-and-forget）"""

    def close(self):
        """释放资源"""


def safe_notify(notifier: Optional[Notifier], event: RunEvent):
    """调用通知器，吞掉并记录任何异常"""
    if notifier is None:
        return
    try:
        notifier.notify(event)
    except Exception as e:
        logger.error(f"Notifier {type(notifier).__name__} failed for task {event.task_name}: {e}")


class LoggingNotifier(Notifier):
    """把事件写入日志"""

    def notify(self, event: RunEvent):
        if event.kind == EventKind.SKIPPED_OVERLAP:
            logger.warning(f"[notify] Task {event.task_name} skipped: {event.error}")
            return

        summary = (
            f"[notify] Task {event.task_name} {event.status.value}: "
            f"batches={event.batches_executed}, rows={event.rows_affected_total}, "
            f"retries={event.retries}, duration={event.duration or 0:.2f}s"
        )
        if event.status == RunStatus.SUCCEEDED:
            logger.info(summary)
        else:
            logger.warning(f"{summary}, error={event.error}")


class CompositeNotifier(Notifier):
    """把事件分发给多个通知器，单个通知器失败不影响其他通知器"""

    def __init__(self, notifiers: Iterable[Notifier]):
        self.notifiers: List[Notifier] = list(notifiers)

    def notify(self, event: RunEvent):
        for notifier in self.notifiers:
            safe_notify(notifier, event)

    def close(self):
        for notifier in self.notifiers:
            notifier.close()


class SlackNotifier(Notifier):
    """通过 Slack chat.postMessage 发送通知，在后台线程中投递"""

    STATUS_ICONS = {
        RunStatus.SUCCEEDED: ":white_check_mark:",
        RunStatus.FAILED: ":x:",
        RunStatus.TIMED_OUT: ":hourglass:",
        RunStatus.SKIPPED: ":fast_forward:",
    }

    def __init__(self, bot_token: str, channel_id: str, on_success: bool = True, on_failure: bool = True,
                 session: Optional[requests.Session] = None, timeout: int = SlackConfig.REQUEST_TIMEOUT):
        self.bot_token = bot_token
        self.channel_id = channel_id
        self.on_success = on_success
        self.on_failure = on_failure
        self.timeout = timeout
        self.session = session or requests.Session()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kiyoshi-slack")

    def notify(self, event: RunEvent):
        if not self.should_send(event):
            return
        self._pool.submit(self._send, event)

    def should_send(self, event: RunEvent) -> bool:
        if event.status == RunStatus.SUCCEEDED:
            return self.on_success
        return self.on_failure

    def close(self):
        self._pool.shutdown(wait=True)
        self.session.close()

    @classmethod
    def format_message(cls, event: RunEvent) -> str:
        icon = cls.STATUS_ICONS.get(event.status, ":grey_question:")
        if event.kind == EventKind.SKIPPED_OVERLAP:
            return f"{icon} Cleanup task *{event.task_name}* skipped: {event.error}"

        lines = [
            f"{icon} Cleanup task *{event.task_name}* {event.status.value.replace('_', ' ')}",
            f"Started: {event.started_at:%Y-%m-%d %H:%M:%S}",
            f"Duration: {event.duration or 0:.2f}s",
            f"Batches: {event.batches_executed} | Rows deleted: {event.rows_affected_total} | "
            f"Retries: {event.retries}",
        ]
        if event.error:
            lines.append(f"Error ({event.error_kind or 'error'}): ```{event.error}```")
        return "\n".join(lines)

    def _send(self, event: RunEvent):
        try:
            response = self.session.post(
                SlackConfig.POST_MESSAGE_URL,
                headers={"Authorization": f"Bearer {self.bot_token}"},
                json={"channel": self.channel_id, "text": self.format_message(event)},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
            if not body.get("ok", False):
                logger.error(f"Slack API error for task {event.task_name}: {body.get('error')}")
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to send Slack notification for task {event.task_name}: {e}")


def build_notifier(slack_config=None) -> Notifier:
    """根据配置构建通知器，日志通知器始终启用"""
    notifiers: List[Notifier] = [LoggingNotifier()]
    if slack_config is not None and slack_config.enabled:
        if slack_config.bot_token and slack_config.channel_id:
            notifiers.append(SlackNotifier(
                bot_token=slack_config.bot_token,
                channel_id=slack_config.channel_id,
                on_success=slack_config.on_success,
                on_failure=slack_config.on_failure,
            ))
            logger.info(f"Slack notifications enabled for channel {slack_config.channel_id}")
        else:
            logger.warning("Slack notifications enabled but bot_token or channel_id is missing")
    return CompositeNotifier(notifiers)
