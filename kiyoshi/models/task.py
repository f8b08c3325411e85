"""
清理任务数据模型定义
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from kiyoshi.constants import SchedulerConfig, SafeModeConfig, TemplateConfig
from kiyoshi.exceptions import ConfigurationException, ReservedParameterException


class RunStatus(Enum):
    """运行状态"""
    PENDING = "pending"         # 等待执行
    RUNNING = "running"         # 运行中
    SUCCEEDED = "succeeded"     # 执行成功
    FAILED = "failed"           # 执行失败
    TIMED_OUT = "timed_out"     # 执行超时
    SKIPPED = "skipped"         # 上一次运行未结束，本次触发被跳过

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.TIMED_OUT, RunStatus.SKIPPED)


class EventKind(Enum):
    """通知事件类型"""
    RUN = "run"
    SKIPPED_OVERLAP = "skipped_overlap"


@dataclass(frozen=True)
class SafeModePolicy:
    """安全模式策略（全局，只读）"""
    enabled: bool = SafeModeConfig.ENABLED
    retention_days: int = SafeModeConfig.RETENTION_DAYS

    def __post_init__(self):
        if isinstance(self.retention_days, bool) or not isinstance(self.retention_days, int) \
                or self.retention_days < 0:
            raise ConfigurationException(
                f"retention_days 必须是非负整数, got: {self.retention_days!r}",
                field="retention_days"
            )


@dataclass(frozen=True)
class CleanupTask:
    """清理任务定义（加载后不可变）"""
    name: str
    cron_schedule: str                  # 5 字段（分钟级）或 6 字段（秒级）
    template_query: str                 # SQL 模板
    description: str = ""
    enabled: bool = True
    parameters: Dict[str, Any] = field(default_factory=dict)

    # 批量与重试参数
    batch_size: int = 1000
    retry_attempts: int = 3             # 每个批次的最大重试次数
    retry_delay_seconds: int = 5
    query_interval_seconds: int = 0     # 批次之间的等待时间
    task_timeout_seconds: int = SchedulerConfig.DEFAULT_TASK_TIMEOUT

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ConfigurationException("任务名称不能为空", field="name")
        if not self.template_query or not self.template_query.strip():
            raise ConfigurationException(
                f"SQL 模板不能为空: {self.name}", task_name=self.name, field="template_query"
            )
        if not self.cron_schedule or not self.cron_schedule.strip():
            raise ConfigurationException(
                f"cron_schedule 不能为空: {self.name}", task_name=self.name, field="cron_schedule"
            )

        self._check_int("batch_size", minimum=1)
        self._check_int("retry_attempts", minimum=0)
        self._check_int("retry_delay_seconds", minimum=0)
        self._check_int("query_interval_seconds", minimum=0)
        self._check_int("task_timeout_seconds", minimum=1)

        for key in self.parameters:
            if key in TemplateConfig.RESERVED_PARAMETERS:
                raise ReservedParameterException(self.name, key)

        # 复制一份参数，避免外部修改影响已加载的任务
        object.__setattr__(self, "parameters", dict(self.parameters))

    def _check_int(self, field_name: str, minimum: int):
        value = getattr(self, field_name)
        if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
            raise ConfigurationException(
                f"{field_name} 必须是 >= {minimum} 的整数: {self.name} (got {value!r})",
                task_name=self.name,
                field=field_name
            )

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "name": self.name,
            "description": self.description,
            "cron_schedule": self.cron_schedule,
            "enabled": self.enabled,
            "template_query": self.template_query,
            "parameters": dict(self.parameters),
            "batch_size": self.batch_size,
            "retry_attempts": self.retry_attempts,
            "retry_delay_seconds": self.retry_delay_seconds,
            "query_interval_seconds": self.query_interval_seconds,
            "task_timeout_seconds": self.task_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CleanupTask':
        """从字典创建任务"""
        return cls(
            name=data["name"],
            cron_schedule=data["cron_schedule"],
            template_query=data["template_query"],
            description=data.get("description") or "",
            enabled=data.get("enabled", True),
            parameters=data.get("parameters") or {},
            batch_size=data.get("batch_size", 1000),
            retry_attempts=data.get("retry_attempts", 3),
            retry_delay_seconds=data.get("retry_delay_seconds", 5),
            query_interval_seconds=data.get("query_interval_seconds", 0),
            task_timeout_seconds=data.get("task_timeout_seconds", SchedulerConfig.DEFAULT_TASK_TIMEOUT),
        )


@dataclass(frozen=True)
class DataInterval:
    """本次运行负责清理的时间窗口 [start, end)"""
    start: datetime
    end: datetime

    def to_dict(self) -> Dict[str, str]:
        return {
            TemplateConfig.DATA_INTERVAL_START: self.start.strftime(TemplateConfig.DATETIME_FORMAT),
            TemplateConfig.DATA_INTERVAL_END: self.end.strftime(TemplateConfig.DATETIME_FORMAT),
        }


@dataclass(frozen=True)
class RunEvent:
    """发送给通知器的运行结果事件"""
    kind: EventKind
    task_name: str
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    batches_executed: int = 0
    rows_affected_total: int = 0
    retries: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        """执行时长（秒）"""
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "task_name": self.task_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "batches_executed": self.batches_executed,
            "rows_affected_total": self.rows_affected_total,
            "retries": self.retries,
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass
class RunRecord:
    """单次运行记录，只由执行该次运行的 BatchExecutor 修改"""
    task_name: str
    started_at: datetime
    status: RunStatus = RunStatus.PENDING
    batches_executed: int = 0
    rows_affected_total: int = 0
    retries: int = 0
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    finished_at: Optional[datetime] = None
    interval: Optional[DataInterval] = None

    @property
    def duration(self) -> Optional[float]:
        """执行时长（秒）"""
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def record_batch(self, rows_affected: int):
        self.batches_executed += 1
        self.rows_affected_total += rows_affected

    def finish(self, status: RunStatus, error: Optional[str] = None, error_kind: Optional[str] = None):
        """进入终止状态"""
        if self.is_terminal:
            raise RuntimeError(f"Run record for {self.task_name} already finalized as {self.status.value}")
        self.status = status
        if error is not None:
            self.last_error = error
            self.error_kind = error_kind
        self.finished_at = datetime.now()

    def to_event(self) -> RunEvent:
        return RunEvent(
            kind=EventKind.RUN,
            task_name=self.task_name,
            status=self.status,
            started_at=self.started_at,
            finished_at=self.finished_at,
            batches_executed=self.batches_executed,
            rows_affected_total=self.rows_affected_total,
            retries=self.retries,
            error=self.last_error,
            error_kind=self.error_kind,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_event().to_dict()
        data.pop("kind")
        if self.interval:
            data.update(self.interval.to_dict())
        return data
