"""
命令行入口
提供 run（启动调度服务）和 check（离线校验配置）两个命令
"""

import logging
import signal
import sys
import threading
from datetime import datetime
from typing import Optional

import click

from config import get_settings, load_env_file, setup_logger
from config.database import create_db_engine
from config.loader import CleanerConfig, load_cleaner_config
from kiyoshi import __version__
from kiyoshi.core.scheduler import TaskScheduler, create_trigger
from kiyoshi.core.template import TemplateRenderer, compute_data_interval, next_fire_after
from kiyoshi.core.validator import SafeModeValidator
from kiyoshi.exceptions import CleanerException
from kiyoshi.repository.gateway import SqlAlchemyGateway
from kiyoshi.services.notifier import build_notifier

logger = logging.getLogger(__name__)


def _prepare(config_file: Optional[str], env_file: Optional[str], verbose: bool) -> CleanerConfig:
    """加载环境变量文件、初始化日志并读取清理配置"""
    if env_file:
        load_env_file(env_file)
    # 环境变量文件可能修改了进程配置
    get_settings.cache_clear()
    settings = get_settings()

    setup_logger("DEBUG" if verbose else settings.log_level, str(settings.logs_path))
    path = config_file or settings.config_file
    config = load_cleaner_config(path)
    logger.info(f"Configuration loaded successfully from {path}")
    return config


@click.group()
@click.version_option(version=__version__)
def cli():
    """kiyoshi - 定时数据库清理服务"""
    pass


@cli.command("run")
@click.option("--config-file", "-c", help="Path to the YAML configuration file")
@click.option("--env-file", "-e", help="File with environment variables (.env, .json or .yaml)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--no-api", is_flag=True, help="Run the scheduler without the HTTP API")
def run(config_file: Optional[str], env_file: Optional[str], verbose: bool, no_api: bool):
    """启动调度器，持续执行清理任务直到收到停止信号"""
    try:
        config = _prepare(config_file, env_file, verbose)
    except (CleanerException, OSError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    settings = get_settings()
    gateway = SqlAlchemyGateway(create_db_engine(config.database, settings))
    scheduler = TaskScheduler(
        gateway,
        policy=config.policy,
        notifier=build_notifier(config.slack),
        settings=settings,
    )
    loaded = scheduler.load_tasks(config.tasks)
    if not loaded:
        click.echo("Error: no cleanup tasks could be scheduled", err=True)
        scheduler.shutdown(wait=False)
        gateway.dispose()
        sys.exit(1)

    try:
        if settings.api_enabled and not no_api:
            import uvicorn
            from kiyoshi.app import create_app

            app = create_app(scheduler, config_file or settings.config_file)
            uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)
        else:
            _run_until_signal(scheduler)
    finally:
        gateway.dispose()
        logger.info("Shutdown complete")


def _run_until_signal(scheduler: TaskScheduler):
    """不启用 HTTP 接口时，阻塞直到 SIGINT / SIGTERM 后优雅停止"""
    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping gracefully...")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    scheduler.start()
    logger.info("Server running. Press Ctrl+C or send SIGTERM to stop")
    stop.wait()
    scheduler.shutdown(wait=True)


@cli.command("check")
@click.option("--config-file", "-c", help="Path to the YAML configuration file")
@click.option("--env-file", "-e", help="File with environment variables (.env, .json or .yaml)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def check(config_file: Optional[str], env_file: Optional[str], verbose: bool):
    """
    校验配置，不访问数据库

    每个启用的任务按下一次触发时刻渲染 SQL，并经过安全模式校验
    """
    try:
        config = _prepare(config_file, env_file, verbose)
    except (CleanerException, OSError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    settings = get_settings()
    renderer = TemplateRenderer()
    validator = SafeModeValidator()
    failures = len(config.errors)

    for label, message in config.errors.items():
        click.echo(f"  INVALID   {label}: {message}")

    seen = set()
    for task in config.tasks:
        if not task.enabled:
            click.echo(f"  DISABLED  {task.name}")
            continue
        if task.name in seen:
            click.echo(f"  INVALID   {task.name}: duplicate task name")
            failures += 1
            continue
        seen.add(task.name)

        try:
            trigger = create_trigger(task.cron_schedule, settings.timezone, task_name=task.name)
            fire_time = next_fire_after(trigger, datetime.now(trigger.timezone))
            interval = compute_data_interval(trigger, fire_time)
            sql = renderer.render_task(task, interval)
            validator.ensure_approved(sql, config.policy, task_name=task.name, now=fire_time)
        except CleanerException as e:
            click.echo(f"  REJECTED  {task.name}: {e.message}")
            failures += 1
            continue
        click.echo(f"  OK        {task.name} (next run {fire_time:%Y-%m-%d %H:%M:%S})")

    if failures:
        click.echo(f"\n{failures} problem(s) found.", err=True)
        sys.exit(1)
    click.echo("\nConfiguration OK.")


def main():
    cli()


if __name__ == "__main__":
    main()
