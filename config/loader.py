"""
清理配置文件加载模块
读取 YAML 配置，替换环境变量，使用 Pydantic 做结构校验后转换为领域模型
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from kiyoshi.exceptions import CleanerException, ConfigurationException
from kiyoshi.models.task import CleanupTask, SafeModePolicy

logger = logging.getLogger(__name__)

# ${VAR}、${VAR:-default}、${VAR:default}
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-?([^}]*))?\}")
_SECRET_MARKERS = ("PASSWORD", "TOKEN", "SECRET")

ScalarValue = Union[str, int, float, bool, datetime, date, None]


def substitute_env_vars(text: str, environ: Optional[Dict[str, str]] = None) -> str:
    """替换文本中的环境变量引用，未设置且没有默认值时替换为空字符串"""
    env = os.environ if environ is None else environ

    def replace(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        value = env.get(name)
        if value is None:
            value = default if default is not None else ""
        shown = "[REDACTED]" if any(marker in name.upper() for marker in _SECRET_MARKERS) else value
        logger.debug(f"Substituting environment variable: {name}={shown}")
        return value

    return _ENV_PATTERN.sub(replace, text)


class DatabaseConfig(BaseModel):
    """数据库连接配置，url 不为空时优先使用"""
    model_config = ConfigDict(extra="ignore")

    host: str = ""
    port: int = 3306
    username: str = ""
    password: str = ""
    database: str = ""
    url: Optional[str] = None

    @model_validator(mode="after")
    def check_required(self) -> 'DatabaseConfig':
        if self.url:
            return self
        if not self.host.strip():
            raise ValueError("Database host cannot be empty")
        if not self.username.strip():
            raise ValueError("Database username cannot be empty")
        if not self.database.strip():
            raise ValueError("Database name cannot be empty")
        return self


class SlackSettings(BaseModel):
    """Slack 通知配置"""
    model_config = ConfigDict(extra="ignore")

    bot_token: str = ""
    channel_id: str = ""
    enabled: bool = False
    on_success: bool = True
    on_failure: bool = True


class SafeModeSettings(BaseModel):
    """安全模式配置"""
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    retention_days: int = Field(default=30, ge=0)

    def to_policy(self) -> SafeModePolicy:
        return SafeModePolicy(enabled=self.enabled, retention_days=self.retention_days)


class TaskSettings(BaseModel):
    """单个清理任务的配置"""
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    description: Optional[str] = ""
    cron_schedule: str = Field(min_length=1)
    enabled: bool = True
    template_query: str = Field(min_length=1)
    parameters: Optional[Dict[str, ScalarValue]] = None
    batch_size: int = Field(default=1000, gt=0)
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay_seconds: int = Field(default=5, ge=0)
    query_interval_seconds: int = Field(default=0, ge=0)
    task_timeout_seconds: int = Field(default=3600, gt=0)

    @field_validator("name", "template_query", "cron_schedule")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("cannot be empty")
        return v

    def to_domain(self) -> CleanupTask:
        data = self.model_dump()
        data["parameters"] = data.get("parameters") or {}
        return CleanupTask.from_dict(data)


class GlobalSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    database_config: DatabaseConfig
    slack_config: SlackSettings = Field(default_factory=SlackSettings)
    safe_mode: SafeModeSettings = Field(default_factory=SafeModeSettings)


class ConfigFile(BaseModel):
    """配置文件整体结构"""
    model_config = ConfigDict(extra="ignore")

    config: GlobalSettings
    cleanup_tasks: List[Dict[str, Any]] = Field(min_length=1)


@dataclass
class CleanerConfig:
    """加载结果"""
    database: DatabaseConfig
    slack: SlackSettings
    policy: SafeModePolicy
    tasks: List[CleanupTask] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def parse_cleaner_config(text: str, source: str = "<string>") -> CleanerConfig:
    """
    解析配置文本

    文件整体结构错误抛出 ConfigurationException；单个任务校验失败只记录到 errors
    """
    try:
        raw = yaml.safe_load(substitute_env_vars(text))
    except yaml.YAMLError as e:
        raise ConfigurationException(f"Failed to parse YAML configuration {source}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationException(f"Configuration {source} must be a mapping")

    try:
        config_file = ConfigFile.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationException(
            f"Invalid configuration {source}: {_format_validation_error(e)}"
        ) from e

    result = CleanerConfig(
        database=config_file.config.database_config,
        slack=config_file.config.slack_config,
        policy=config_file.config.safe_mode.to_policy(),
    )
    for index, raw_task in enumerate(config_file.cleanup_tasks):
        label = str(raw_task.get("name") or f"cleanup_tasks[{index}]") if isinstance(raw_task, dict) \
            else f"cleanup_tasks[{index}]"
        try:
            result.tasks.append(TaskSettings.model_validate(raw_task).to_domain())
        except ValidationError as e:
            result.errors[label] = _format_validation_error(e)
        except CleanerException as e:
            result.errors[label] = e.message

    for label, message in result.errors.items():
        logger.error(f"Invalid cleanup task {label}: {message}")
    logger.debug(f"Configuration loaded from {source}: {len(result.tasks)} tasks, {len(result.errors)} errors")
    return result


def load_cleaner_config(path: Union[str, Path]) -> CleanerConfig:
    """从文件加载清理配置"""
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationException(f"Failed to read config file: {config_path} ({e})") from e
    return parse_cleaner_config(text, source=str(config_path))
