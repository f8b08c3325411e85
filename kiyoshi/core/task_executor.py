"""
任务执行器模块
按批次执行已通过安全校验的清理语句，处理重试、批次间隔和运行超时
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from kiyoshi.constants import SchedulerConfig
from kiyoshi.core.deadline import Deadline
from kiyoshi.exceptions import CleanerException, ExecutionException, RunTimeoutException
from kiyoshi.models.task import CleanupTask, DataInterval, RunRecord, RunStatus
from kiyoshi.repository.gateway import DatabaseGateway
from kiyoshi.services.notifier import Notifier, safe_notify

logger = logging.getLogger(__name__)


class DatabaseHealth:
    """记录数据库调用的连续失败情况，供健康检查使用"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self.consecutive_failures = 0
        self.last_success_at: Optional[datetime] = None
        self._failing_since: Optional[float] = None

    def record_success(self):
        with self._lock:
            self.consecutive_failures = 0
            self.last_success_at = datetime.now()
            self._failing_since = None

    def record_failure(self):
        with self._lock:
            self.consecutive_failures += 1
            if self._failing_since is None:
                self._failing_since = self._clock()

    def failing_for(self) -> float:
        """当前连续失败持续的秒数，没有失败时为 0"""
        with self._lock:
            if self._failing_since is None:
                return 0.0
            return self._clock() - self._failing_since

    def snapshot(self) -> Dict[str, Any]:
        return {
            "consecutive_failures": self.consecutive_failures,
            "failing_for_seconds": round(self.failing_for(), 2),
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


class BatchExecutor:
    """批量执行器 - 每次运行使用一个 Deadline 约束所有挂起点"""

    def __init__(self, gateway: DatabaseGateway, notifier: Optional[Notifier] = None,
                 max_workers: int = SchedulerConfig.DEFAULT_MAX_WORKERS,
                 clock: Callable[[], float] = time.monotonic):
        self.gateway = gateway
        self.notifier = notifier
        self.health = DatabaseHealth(clock)
        self._clock = clock
        # 数据库调用放在独立线程中执行，运行线程才能在截止时间到达时返回
        self._calls = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="kiyoshi-db")

    def run(self, task: CleanupTask, sql: str, interval: Optional[DataInterval] = None) -> RunRecord:
        """
        执行一次运行直到批次耗尽、失败或超时

        Args:
            task: 任务定义
            sql: 已渲染并通过安全校验的语句
            interval: 本次运行的时间窗口

        Returns:
            RunRecord: 终止状态的运行记录
        """
        record = RunRecord(task_name=task.name, started_at=datetime.now(), interval=interval)
        record.status = RunStatus.RUNNING
        logger.info(f"Starting run for task {task.name} (batch_size={task.batch_size}, "
                    f"timeout={task.task_timeout_seconds}s)")

        with Deadline(task.task_timeout_seconds, clock=self._clock) as deadline:
            try:
                self._run_batches(task, sql, record, deadline)
                record.finish(RunStatus.SUCCEEDED)
            except RunTimeoutException as e:
                logger.error(f"Task {task.name} timed out after {task.task_timeout_seconds}s")
                record.finish(RunStatus.TIMED_OUT, error=e.message, error_kind=e.code)
            except ExecutionException as e:
                logger.error(f"Task {task.name} failed: {e.message}")
                record.finish(RunStatus.FAILED, error=e.message, error_kind=e.code)
            except Exception as e:
                logger.exception(f"Unexpected error while running task {task.name}")
                record.finish(RunStatus.FAILED, error=f"{type(e).__name__}: {e}", error_kind="internal_error")

        self._finalize(record)
        return record

    def fail(self, task: CleanupTask, error: Exception, interval: Optional[DataInterval] = None) -> RunRecord:
        """运行在执行语句之前就失败（模板错误、安全模式拒绝）"""
        record = RunRecord(task_name=task.name, started_at=datetime.now(), interval=interval)
        if isinstance(error, CleanerException):
            record.finish(RunStatus.FAILED, error=error.message, error_kind=error.code)
        else:
            record.finish(RunStatus.FAILED, error=f"{type(error).__name__}: {error}", error_kind="internal_error")
        self._finalize(record)
        return record

    def shutdown(self, wait: bool = False):
        self._calls.shutdown(wait=wait)

    def _run_batches(self, task: CleanupTask, sql: str, record: RunRecord, deadline: Deadline):
        while True:
            rows = self._execute_batch(task, sql, record, deadline)
            record.record_batch(rows)
            logger.info(f"Task {task.name} batch {record.batches_executed}: {rows} rows affected "
                        f"(total {record.rows_affected_total})")

            # 影响行数小于 batch_size 说明已经没有可删除的数据
            if rows < task.batch_size:
                return

            if not deadline.sleep(task.query_interval_seconds):
                raise RunTimeoutException(task.name, task.task_timeout_seconds)

    def _execute_batch(self, task: CleanupTask, sql: str, record: RunRecord, deadline: Deadline) -> int:
        """执行单个批次，瞬时错误最多重试 retry_attempts 次"""
        attempt = 0
        while True:
            if deadline.expired:
                raise RunTimeoutException(task.name, task.task_timeout_seconds)

            try:
                rows = self._call_gateway(task, sql, deadline)
                self.health.record_success()
                return rows
            except ExecutionException as e:
                if e.retryable:
                    self.health.record_failure()
                # 查询被截止时间中断时按超时处理
                if deadline.expired:
                    raise RunTimeoutException(task.name, task.task_timeout_seconds) from e
                if not e.retryable:
                    raise

                attempt += 1
                if attempt > task.retry_attempts:
                    logger.error(f"Task {task.name} exhausted {task.retry_attempts} retries")
                    raise
                record.retries += 1
                logger.warning(f"Task {task.name} transient error (retry {attempt}/{task.retry_attempts} "
                               f"in {task.retry_delay_seconds}s): {e.message}")

            if not deadline.sleep(task.retry_delay_seconds):
                raise RunTimeoutException(task.name, task.task_timeout_seconds)

    def _call_gateway(self, task: CleanupTask, sql: str, deadline: Deadline) -> int:
        future = self._calls.submit(self.gateway.execute, sql, deadline)
        try:
            return future.result(timeout=deadline.remaining())
        except FutureTimeoutError:
            deadline.cancel()
            raise RunTimeoutException(task.name, task.task_timeout_seconds)

    def _finalize(self, record: RunRecord):
        """每条运行记录只通知一次，通知失败不影响运行结果"""
        logger.info(f"Task {record.task_name} finished: status={record.status.value}, "
                    f"batches={record.batches_executed}, rows={record.rows_affected_total}, "
                    f"retries={record.retries}, duration={record.duration or 0:.2f}s")
        safe_notify(self.notifier, record.to_event())
