"""
配置管理模块 - 使用 Pydantic BaseSettings
支持从环境变量和环境变量文件加载进程级配置
"""

import json
import logging
import os
from functools import lru_cache
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def load_env_file(env_path: str):
    """
    从文件加载环境变量（支持 .env、JSON 和 YAML）

    JSON / YAML 文件必须是一个扁平的对象，键作为变量名

    Args:
        env_path: 环境变量文件路径
    """
    path = Path(env_path)
    if not path.is_file():
        raise FileNotFoundError(f"Env file not found: {env_path}")

    if path.suffix in ('.json', '.yml', '.yaml'):
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f) if path.suffix == '.json' else yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Env file must contain a mapping of variable names to values: {env_path}")
        for key, value in data.items():
            os.environ[str(key)] = "" if value is None else str(value)
        logger.info(f"Loaded {len(data)} environment variables from {env_path}")
    else:
        load_dotenv(path)
        logger.info(f"Loaded environment file {env_path}")


class Settings(BaseSettings):
    """应用配置 - 使用 Pydantic 自动验证和类型转换"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,  # 支持别名
    )

    # ========== 应用基础配置 ==========
    app_name: str = Field(default="kiyoshi", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    app_description: str = Field(default="定时数据库清理服务", alias="APP_DESCRIPTION")
    debug: bool = Field(default=False, alias="DEBUG")
    timezone: str = Field(default="UTC", alias="TIMEZONE")

    # ========== 清理配置文件 ==========
    config_file: str = Field(default="config.yaml", alias="CONFIG_FILE")
    env_file: str = Field(default="", alias="ENV_FILE")

    # ========== API 服务配置 ==========
    api_enabled: bool = Field(default=True, alias="API_ENABLED")
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8080, alias="API_PORT")
    api_prefix: str = Field(default="/api", alias="API_PREFIX")

    # ========== 调度配置 ==========
    max_workers: int = Field(default=10, alias="MAX_WORKERS")
    misfire_grace_time: int = Field(default=300, alias="MISFIRE_GRACE_TIME")

    # ========== 数据库连接池配置 ==========
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE")
    db_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT")
    db_unhealthy_after_seconds: int = Field(default=300, alias="DB_UNHEALTHY_AFTER_SECONDS")

    # ========== 日志配置 ==========
    logs_dir: str = Field(default="logs", alias="LOGS_DIR")
    logs_name: str = Field(default="kiyoshi.log", alias="LOGS_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_backup_count: int = Field(default=5, alias="LOG_BACKUP_COUNT")
    log_max_bytes: int = Field(default=10, alias="LOG_MAX_BYTES")

    @property
    def log_max_bytes_in_bytes(self) -> int:
        """日志文件最大字节数"""
        return self.log_max_bytes * 1024 * 1024

    @property
    def logs_path(self) -> Path:
        """获取日志目录绝对路径"""
        path = Path(self.logs_dir)
        if path.is_absolute():
            return path
        return Path.cwd() / path

    # ========== 验证器 ==========
    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别"""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f'日志级别必须是以下之一: {valid_levels}')
        return v

    @field_validator('api_port')
    @classmethod
    def validate_port(cls, v: int) -> int:
        """验证端口号"""
        if not 1 <= v <= 65535:
            raise ValueError('端口号必须在 1-65535 之间')
        return v

    @field_validator('max_workers', 'db_pool_size')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError('必须是正整数')
        return v


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
