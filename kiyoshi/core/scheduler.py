"""
任务调度器核心模块
基于 APScheduler 实现定时清理任务调度

每个启用的任务对应一个独立的 cron 定时器，触发时在工作线程池中完成
渲染 -> 安全校验 -> 批量执行；同一任务的运行通过注册表中的状态互斥
"""

import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from kiyoshi.constants import SchedulerConfig
from kiyoshi.core.task_executor import BatchExecutor
from kiyoshi.core.template import TemplateRenderer, compute_data_interval, next_fire_after, previous_fire_time
from kiyoshi.core.validator import SafeModeValidator
from kiyoshi.exceptions import (
    ConfigurationException, CronExpressionException, DuplicateTaskException, PolicyRejectionException,
    TaskAlreadyRunningException, TaskNotFoundException, TemplateException,
)
from kiyoshi.models.task import CleanupTask, EventKind, RunEvent, RunRecord, RunStatus, SafeModePolicy
from kiyoshi.repository.gateway import DatabaseGateway
from kiyoshi.services.notifier import LoggingNotifier, Notifier, safe_notify

logger = logging.getLogger(__name__)


_CRON_WEEKDAY_ITEM = re.compile(r'^(?:(\*)|(\d+)(?:-(\d+))?)(?:/(\d+))?$')


def translate_day_of_week(field: str) -> str:
    """
    将标准 cron 的周字段 (0 和 7 为周日, 1 为周一) 转换为 APScheduler 的写法 (0 为周一)

    数字项展开为 APScheduler 编号的列表，星期名称 (mon, sun-sat 等) 原样保留
    """
    items = []
    for item in field.split(","):
        match = _CRON_WEEKDAY_ITEM.match(item)
        if match is None:
            items.append(item)
            continue
        star, first, last, step = match.groups()
        if star and step is None:
            items.append(item)
            continue
        if star:
            first, last = 0, 6
        else:
            first = int(first)
            last = int(last) if last is not None else (6 if step else first)
        step = int(step) if step else 1
        if step == 0 or first > last or last > 7:
            raise ValueError(f"invalid day of week: {item!r}")
        days = sorted({(day - 1) % 7 for day in range(first, last + 1, step)})
        items.append(",".join(str(day) for day in days))
    return ",".join(items)


def create_trigger(cron_expression: str, timezone, task_name: Optional[str] = None) -> CronTrigger:
    """
    根据 cron 表达式创建触发器

    5 字段: 分 时 日 月 周 (标准 Unix cron，秒固定为 0)
    6 字段: 秒 分 时 日 月 周
    周字段按标准 cron 编号: 0 和 7 为周日
    """
    cron_expr = (cron_expression or "").strip()
    fields = cron_expr.split()
    if len(fields) not in (5, 6):
        raise CronExpressionException(
            cron_expr, f"expected 5 or 6 fields, got {len(fields)}", task_name=task_name
        )
    if len(fields) == 5:
        fields.insert(0, "0")
    try:
        trigger = CronTrigger(
            second=fields[0],
            minute=fields[1],
            hour=fields[2],
            day=fields[3],
            month=fields[4],
            day_of_week=translate_day_of_week(fields[5]),
            timezone=timezone
        )
    except (ValueError, TypeError) as e:
        raise CronExpressionException(cron_expr, str(e), task_name=task_name) from e

    if trigger.get_next_fire_time(None, datetime.now(trigger.timezone)) is None:
        raise CronExpressionException(cron_expr, "expression never fires", task_name=task_name)
    return trigger


class RunHandle:
    """Running 状态: 记录本次运行的触发时刻和 future"""

    def __init__(self, fire_time: datetime):
        self.fire_time = fire_time
        self.future: Optional[Future] = None


# 任务状态: IDLE 或 RunHandle
IDLE = None
TaskState = Optional[RunHandle]


@dataclass
class TaskEntry:
    """注册表条目"""
    task: CleanupTask
    trigger: CronTrigger
    loaded_at: datetime = field(default_factory=datetime.now)


class TaskRegistry:
    """
    任务注册表

    条目只由 load / unload / reload 修改；运行状态单独保存，
    任务被卸载后其未结束的运行仍然占用状态，重新加载同名任务也不会与之重叠
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, TaskEntry] = {}
        self._states: Dict[str, RunHandle] = {}

    def add(self, entry: TaskEntry, replace: bool = False):
        with self._lock:
            if entry.task.name in self._entries and not replace:
                raise DuplicateTaskException(entry.task.name)
            self._entries[entry.task.name] = entry

    def remove(self, name: str) -> Optional[TaskEntry]:
        with self._lock:
            return self._entries.pop(name, None)

    def get(self, name: str) -> Optional[TaskEntry]:
        with self._lock:
            return self._entries.get(name)

    def entries(self) -> List[TaskEntry]:
        with self._lock:
            return list(self._entries.values())

    def state(self, name: str) -> TaskState:
        with self._lock:
            return self._states.get(name, IDLE)

    def try_acquire(self, name: str, fire_time: datetime) -> Optional[RunHandle]:
        """Idle -> Running，任务正在运行时返回 None"""
        with self._lock:
            if name not in self._entries:
                raise TaskNotFoundException(name)
            if self._states.get(name, IDLE) is not IDLE:
                return None
            handle = RunHandle(fire_time)
            self._states[name] = handle
            return handle

    def release(self, name: str, handle: RunHandle):
        with self._lock:
            if self._states.get(name) is handle:
                del self._states[name]

    def running_count(self) -> int:
        with self._lock:
            return len(self._states)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class TaskScheduler:
    """清理任务调度器"""

    def __init__(self, gateway: DatabaseGateway, policy: Optional[SafeModePolicy] = None,
                 notifier: Optional[Notifier] = None, settings=None,
                 executor: Optional[BatchExecutor] = None,
                 renderer: Optional[TemplateRenderer] = None,
                 validator: Optional[SafeModeValidator] = None):
        settings = settings or get_settings()
        self.settings = settings
        self.gateway = gateway
        self.policy = policy or SafeModePolicy()
        self.notifier = notifier or LoggingNotifier()
        self.misfire_grace_time = settings.misfire_grace_time

        # 创建调度器实例（任务来自配置文件，使用内存 JobStore）
        self.scheduler = BackgroundScheduler(
            timezone=settings.timezone,
            job_defaults={
                "coalesce": True,
                "max_instances": SchedulerConfig.MAX_INSTANCES,
                "misfire_grace_time": self.misfire_grace_time,
            }
        )
        self.executor = executor or BatchExecutor(gateway, self.notifier, max_workers=settings.max_workers)
        self.renderer = renderer or TemplateRenderer()
        self.validator = validator or SafeModeValidator(clock=self.now)
        self.registry = TaskRegistry()
        self._pool = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="kiyoshi-run")

        # 注册事件监听器
        self.scheduler.add_listener(
            self._on_job_event,
            EVENT_JOB_ERROR | EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES
        )

    @property
    def timezone(self):
        return self.scheduler.timezone

    def now(self) -> datetime:
        return datetime.now(self.scheduler.timezone)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """启动调度器"""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info(f"任务调度器启动完成, {len(self.registry)} tasks scheduled")

    def shutdown(self, wait: bool = True):
        """关闭调度器，wait=True 时等待正在进行的运行结束"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        self._pool.shutdown(wait=wait)
        self.executor.shutdown(wait=False)
        self.notifier.close()
        logger.info("任务调度器关闭完成")

    # ============ 任务加载 ============

    def load_tasks(self, tasks: Iterable[CleanupTask]) -> List[str]:
        """
        批量加载任务，单个任务的配置错误只跳过该任务

        Returns:
            成功加载的任务名称列表
        """
        loaded = []
        for task in tasks:
            try:
                if self.load_task(task):
                    loaded.append(task.name)
            except ConfigurationException as e:
                logger.error(f"Failed to load task {task.name}: {e.message}")
        logger.info(f"Loaded {len(loaded)} cleanup tasks: {', '.join(loaded) or '-'}")
        return loaded

    def load_task(self, task: CleanupTask, replace: bool = False) -> bool:
        """
        加载单个任务

        Returns:
            bool: 是否加入调度（禁用的任务返回 False）

        Raises:
            CronExpressionException: cron 表达式无法解析
            DuplicateTaskException: 同名任务已加载且 replace=False
        """
        if not task.enabled:
            logger.info(f"Task disabled, not scheduled: {task.name}")
            return False

        trigger = create_trigger(task.cron_schedule, self.timezone, task_name=task.name)
        self.registry.add(TaskEntry(task=task, trigger=trigger), replace=replace)
        self.scheduler.add_job(
            func=self._fire,
            trigger=trigger,
            id=task.name,
            name=task.name,
            args=[task.name],
            max_instances=SchedulerConfig.MAX_INSTANCES,
            replace_existing=True,
            misfire_grace_time=self.misfire_grace_time
        )
        logger.info(f"Task added to scheduler: {task.name} ({task.cron_schedule})")
        return True

    def unload_task(self, name: str) -> bool:
        """移除任务定时器，正在进行的运行继续执行到结束"""
        entry = self.registry.remove(name)
        try:
            self.scheduler.remove_job(name)
        except JobLookupError:
            pass
        if entry is None:
            return False
        logger.info(f"Task removed: {name}")
        return True

    def reload(self, tasks: Iterable[CleanupTask], policy: Optional[SafeModePolicy] = None) -> Dict[str, List[str]]:
        """
        用新的任务列表替换当前调度

        未变化的任务保留原定时器；变化的任务替换定时器；不存在或已禁用的任务移除
        """
        if policy is not None:
            self.policy = policy

        incoming: Dict[str, CleanupTask] = {}
        for task in tasks:
            if task.name in incoming:
                logger.error(f"Failed to load task {task.name}: {DuplicateTaskException(task.name).message}")
                continue
            incoming[task.name] = task

        summary: Dict[str, List[str]] = {"added": [], "updated": [], "removed": [], "unchanged": [], "failed": []}
        for entry in self.registry.entries():
            task = incoming.get(entry.task.name)
            if task is None or not task.enabled:
                self.unload_task(entry.task.name)
                summary["removed"].append(entry.task.name)

        for task in incoming.values():
            if not task.enabled:
                continue
            existing = self.registry.get(task.name)
            if existing is not None and existing.task == task:
                summary["unchanged"].append(task.name)
                continue
            try:
                self.load_task(task, replace=True)
                summary["updated" if existing else "added"].append(task.name)
            except ConfigurationException as e:
                logger.error(f"Failed to reload task {task.name}: {e.message}")
                if existing is not None:
                    self.unload_task(task.name)
                summary["failed"].append(task.name)

        logger.info(f"Reload finished: {summary}")
        return summary

    # ============ 触发与执行 ============

    def trigger_now(self, name: str) -> Future:
        """
        立即触发一次运行

        Raises:
            TaskNotFoundException: 任务未加载
            TaskAlreadyRunningException: 上一次运行尚未结束
        """
        if name not in self.registry:
            raise TaskNotFoundException(name)
        future = self.dispatch(name, self.now())
        if future is None:
            raise TaskAlreadyRunningException(name)
        return future

    def dispatch(self, name: str, fire_time: datetime) -> Optional[Future]:
        """提交一次运行，任务仍在运行时跳过并发送 skipped_overlap 事件"""
        handle = self.registry.try_acquire(name, fire_time)
        if handle is None:
            logger.warning(f"Task {name} is still running, skipping firing at {fire_time:%Y-%m-%d %H:%M:%S}")
            now = datetime.now()
            safe_notify(self.notifier, RunEvent(
                kind=EventKind.SKIPPED_OVERLAP,
                task_name=name,
                status=RunStatus.SKIPPED,
                started_at=now,
                finished_at=now,
                error=f"previous run still in progress, firing at {fire_time:%Y-%m-%d %H:%M:%S} skipped",
                error_kind="overlap",
            ))
            return None

        entry = self.registry.get(name)
        if entry is None:
            self.registry.release(name, handle)
            raise TaskNotFoundException(name)

        try:
            future = self._pool.submit(self._run, entry, fire_time)
        except RuntimeError:
            self.registry.release(name, handle)
            raise
        handle.future = future
        future.add_done_callback(lambda _: self.registry.release(name, handle))
        return future

    def _fire(self, name: str):
        """APScheduler 回调，只负责提交，立即返回"""
        entry = self.registry.get(name)
        if entry is None:
            return
        now = self.now()
        fire_time = previous_fire_time(entry.trigger, now, timedelta(seconds=self.misfire_grace_time)) or now
        try:
            self.dispatch(name, fire_time)
        except TaskNotFoundException:
            logger.info(f"Task {name} was unloaded before dispatch")

    def _run(self, entry: TaskEntry, fire_time: datetime) -> RunRecord:
        task = entry.task
        interval = compute_data_interval(entry.trigger, fire_time)
        logger.info(f"Task {task.name} fired at {fire_time:%Y-%m-%d %H:%M:%S}, "
                    f"interval [{interval.start:%Y-%m-%d %H:%M:%S}, {interval.end:%Y-%m-%d %H:%M:%S})")
        try:
            sql = self.renderer.render_task(task, interval)
            self.validator.ensure_approved(sql, self.policy, task_name=task.name, now=self.now())
        except (TemplateException, PolicyRejectionException) as e:
            logger.error(f"Task {task.name} not executed: {e.message}")
            return self.executor.fail(task, e, interval)
        except Exception as e:
            logger.exception(f"Unexpected error while preparing task {task.name}")
            return self.executor.fail(task, e, interval)

        logger.info(f"Executing cleanup statement for task {task.name}: {sql}")
        return self.executor.run(task, sql, interval)

    # ============ 查询 ============

    def get_task(self, name: str) -> CleanupTask:
        entry = self.registry.get(name)
        if entry is None:
            raise TaskNotFoundException(name)
        return entry.task

    def is_running(self, name: str) -> bool:
        return self.registry.state(name) is not IDLE

    def get_next_run_time(self, name: str) -> Optional[datetime]:
        """获取任务下次执行时间"""
        entry = self.registry.get(name)
        if entry is None:
            return None
        job = self.scheduler.get_job(name)
        if job is not None and getattr(job, "next_run_time", None) is not None:
            return job.next_run_time
        # 调度器未启动时根据触发器计算
        return next_fire_after(entry.trigger, self.now())

    def describe(self, name: str) -> Dict[str, Any]:
        task = self.get_task(name)
        next_run = self.get_next_run_time(name)
        data = task.to_dict()
        data.update({
            "running": self.is_running(name),
            "next_run_time": next_run.isoformat() if next_run else None,
        })
        return data

    def list_jobs(self) -> List[Dict[str, Any]]:
        """列出所有已调度的任务"""
        jobs = []
        for entry in sorted(self.registry.entries(), key=lambda e: e.task.name):
            next_run = self.get_next_run_time(entry.task.name)
            jobs.append({
                "name": entry.task.name,
                "description": entry.task.description,
                "cron_schedule": entry.task.cron_schedule,
                "next_run_time": next_run.isoformat() if next_run else None,
                "running": self.is_running(entry.task.name),
            })
        return jobs

    def health(self) -> Dict[str, Union[bool, int, Dict[str, Any]]]:
        """进程健康状况: 调度器是否运行、数据库是否长时间不可用"""
        database = self.executor.health.snapshot()
        reachable = self.gateway.ping()
        unhealthy_after = self.settings.db_unhealthy_after_seconds
        database["reachable"] = reachable
        database["healthy"] = reachable and self.executor.health.failing_for() < unhealthy_after
        return {
            "healthy": self.scheduler.running and database["healthy"],
            "scheduler_running": self.scheduler.running,
            "tasks": len(self.registry),
            "running_tasks": self.registry.running_count(),
            "database": database,
        }

    def _on_job_event(self, event):
        """APScheduler 事件回调"""
        if event.code == EVENT_JOB_MISSED:
            logger.warning(f"Job {event.job_id} missed its run time {event.scheduled_run_time}")
        elif event.code == EVENT_JOB_MAX_INSTANCES:
            logger.warning(f"Job {event.job_id} reached max instances, firing skipped")
        elif getattr(event, "exception", None):
            logger.error(f"Job {event.job_id} failed: {event.exception}")
