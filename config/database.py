"""
数据库引擎配置
所有清理任务共享同一个 SQLAlchemy 连接池
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine, make_url

from config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def build_database_url(db_config) -> URL:
    """根据数据库配置构建连接 URL"""
    if db_config.url:
        return make_url(db_config.url)
    return URL.create(
        "mysql+pymysql",
        username=db_config.username,
        password=db_config.password or None,
        host=db_config.host,
        port=db_config.port,
        database=db_config.database,
        query={"charset": "utf8mb4"},
    )


def create_db_engine(db_config, settings: Settings = None) -> Engine:
    """
    创建数据库引擎

    Args:
        db_config: 清理配置中的 database_config
        settings: 进程配置，提供连接池参数
    """
    settings = settings or get_settings()
    url = build_database_url(db_config)

    options = {"pool_pre_ping": True, "echo": False}
    if url.get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.max_workers,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=3600,
        )

    engine = create_engine(url, **options)
    logger.info(f"Database engine created: {url.render_as_string(hide_password=True)}")
    return engine
