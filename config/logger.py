"""
日志配置模块
控制台输出 + 按大小轮转的日志文件，第三方库只保留警告
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from config.settings import get_settings
from kiyoshi.constants import LogConfig

# 调度器每次触发、HTTP 客户端每次请求都会输出 INFO 日志
NOISY_LOGGERS = ('apscheduler', 'urllib3', 'sqlalchemy.engine', 'uvicorn.access')


def setup_logger(level: str = "INFO", log_dir: Optional[str] = None) -> logging.Logger:
    """
    配置根日志器

    Args:
        level: 日志级别，DEBUG 时控制台输出文件名和行号
        log_dir: 日志目录，为空时只输出到控制台
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    settings = get_settings()

    console_format = LogConfig.DETAIL_FORMAT if log_level <= logging.DEBUG else LogConfig.FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(console_format, datefmt=LogConfig.DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path / settings.logs_name,
            maxBytes=settings.log_max_bytes_in_bytes,
            backupCount=settings.log_backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(logging.Formatter(LogConfig.DETAIL_FORMAT, datefmt=LogConfig.DATE_FORMAT))
        root_logger.addHandler(file_handler)

    if log_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
