"""
数据库网关
执行清理语句并返回影响行数，区分可重试与不可重试的数据库错误
"""

import logging
import re
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    DBAPIError, DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)

from kiyoshi.constants import DatabaseErrorCodes
from kiyoshi.exceptions import ExecutionException, TransientExecutionException

if TYPE_CHECKING:
    from kiyoshi.core.deadline import Deadline

logger = logging.getLogger(__name__)

# 没有数字错误码的驱动（如 SQLite）按错误信息判断
_TRANSIENT_MESSAGE = re.compile(r"locked|busy|timeout|timed out|lost connection|gone away|connection refused",
                                re.IGNORECASE)


def _db_error_code(error: DBAPIError) -> Optional[int]:
    args = getattr(error.orig, "args", ())
    if args and isinstance(args[0], int):
        return args[0]
    return None


def classify_error(error: SQLAlchemyError) -> ExecutionException:
    """把 SQLAlchemy 异常转换为可重试 / 不可重试的执行异常"""
    if isinstance(error, PoolTimeoutError):
        return TransientExecutionException(f"connection pool exhausted: {error}")
    if isinstance(error, DisconnectionError):
        return TransientExecutionException(f"connection lost: {error}")

    if isinstance(error, DBAPIError):
        code = _db_error_code(error)
        message = str(error.orig) if error.orig is not None else str(error)
        if error.connection_invalidated:
            return TransientExecutionException(message, db_code=code)
        if code is not None:
            if code in DatabaseErrorCodes.TRANSIENT:
                return TransientExecutionException(message, db_code=code)
            return ExecutionException(message, db_code=code)
        if isinstance(error, (OperationalError, InterfaceError)) and _TRANSIENT_MESSAGE.search(message):
            return TransientExecutionException(message)
        return ExecutionException(message)

    return ExecutionException(str(error))


class DatabaseGateway(ABC):
    """数据库网关接口"""

    @abstractmethod
    def execute(self, sql: str, deadline: Optional["Deadline"] = None) -> int:
        """
        执行一条语句并提交

        Returns:
            影响行数

        Raises:
            TransientExecutionException: 可重试的错误
            ExecutionException: 不可重试的错误
        """

    def ping(self) -> bool:
        """数据库是否可达"""
        return True

    def dispose(self):
        """释放连接池"""


class SqlAlchemyGateway(DatabaseGateway):
    """基于 SQLAlchemy 连接池的数据库网关，所有任务共享同一个连接池"""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._supports_kill = engine.dialect.name == "mysql"

    def execute(self, sql: str, deadline: Optional["Deadline"] = None) -> int:
        start = time.monotonic()
        try:
            with self.engine.connect() as conn:
                unregister = self._register_cancel(conn, deadline)
                try:
                    result = conn.exec_driver_sql(sql)
                    rows = result.rowcount
                    conn.commit()
                finally:
                    unregister()
        except SQLAlchemyError as e:
            raise classify_error(e) from e

        elapsed = time.monotonic() - start
        logger.debug(f"Statement affected {rows} rows in {elapsed:.2f}s")
        return max(rows or 0, 0)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    def dispose(self):
        self.engine.dispose()

    def _register_cancel(self, conn, deadline: Optional["Deadline"]):
        """截止时间到达时对当前连接执行 KILL QUERY（仅 MySQL）"""
        if deadline is None or not self._supports_kill:
            return lambda: None
        connection_id = conn.exec_driver_sql("SELECT CONNECTION_ID()").scalar()
        return deadline.add_cancel_callback(lambda: self._kill_query(connection_id))

    def _kill_query(self, connection_id: int):
        logger.warning(f"Deadline reached, killing query on connection {connection_id}")
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql(f"KILL QUERY {int(connection_id)}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to kill query on connection {connection_id}: {e}")
