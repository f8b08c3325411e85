"""
统一异常定义
提供结构化的错误处理机制

按错误影响范围划分:
- 配置错误: 只影响单个任务的加载，记录日志后跳过
- 模板错误 / 安全模式拒绝 / 不可重试的数据库错误: 本次运行直接失败，不重试
- 瞬时数据库错误: 按任务的 retry_attempts 重试
- 超时: 无论剩余重试次数多少，本次运行直接以 TimedOut 结束
"""

from typing import Optional, Any, Dict


class CleanerException(Exception):
    """基础异常类"""

    def __init__(self, message: str, code: str = 'error', status_code: int = 400, details: Optional[Dict] = None):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式，用于API响应"""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


class TaskNotFoundException(CleanerException):
    """任务不存在异常"""

    def __init__(self, task_name: str = ''):
        message = f"任务不存在: {task_name}" if task_name else "任务不存在"
        super().__init__(
            message,
            code='task_not_found',
            status_code=404,
            details={"task_name": task_name} if task_name else {}
        )


class TaskAlreadyRunningException(CleanerException):
    """任务正在运行异常（重叠保护）"""

    def __init__(self, task_name: str):
        super().__init__(
            f"任务正在运行中: {task_name}",
            code='task_already_running',
            status_code=409,
            details={"task_name": task_name}
        )


class ConfigurationException(CleanerException):
    """配置异常，只对单个任务致命"""

    def __init__(self, message: str, task_name: Optional[str] = None, field: Optional[str] = None,
                 code: str = 'configuration_error'):
        details = {}
        if task_name:
            details["task_name"] = task_name
        if field:
            details["field"] = field
        super().__init__(
            message,
            code=code,
            status_code=400,
            details=details
        )


class CronExpressionException(ConfigurationException):
    """Cron表达式异常"""

    def __init__(self, cron_expression: str, reason: str, task_name: Optional[str] = None):
        super().__init__(
            f"无效的cron表达式 '{cron_expression}': {reason}",
            task_name=task_name,
            field="cron_schedule",
            code='cron_expression_error'
        )
        self.details["cron_expression"] = cron_expression


class DuplicateTaskException(ConfigurationException):
    """任务名称重复异常"""

    def __init__(self, task_name: str):
        super().__init__(
            f"任务名称重复: {task_name}",
            task_name=task_name,
            field="name",
            code='duplicate_task'
        )
        self.status_code = 409


class ReservedParameterException(ConfigurationException):
    """参数名与保留的计算变量冲突"""

    def __init__(self, task_name: str, parameter: str):
        super().__init__(
            f"参数名 '{parameter}' 是保留变量，不能在 parameters 中覆盖",
            task_name=task_name,
            field="parameters",
            code='reserved_parameter'
        )
        self.details["parameter"] = parameter


class TemplateException(CleanerException):
    """SQL 模板渲染异常"""

    def __init__(self, message: str, task_name: Optional[str] = None):
        super().__init__(
            f"模板渲染失败: {message}",
            code='template_error',
            status_code=400,
            details={"task_name": task_name} if task_name else {}
        )
        self.reason = message


class PolicyRejectionException(CleanerException):
    """安全模式拒绝执行异常"""

    def __init__(self, rule: str, reason: str, task_name: Optional[str] = None):
        details = {"rule": rule, "reason": reason}
        if task_name:
            details["task_name"] = task_name
        super().__init__(
            f"安全模式拒绝执行 [{rule}]: {reason}",
            code='policy_rejected',
            status_code=422,
            details=details
        )
        self.rule = rule
        self.reason = reason


class ExecutionException(CleanerException):
    """数据库执行异常（不可重试）"""

    retryable = False

    def __init__(self, message: str, db_code: Optional[int] = None, code: str = 'execution_error'):
        details = {"db_code": db_code} if db_code is not None else {}
        super().__init__(
            f"数据库执行失败: {message}",
            code=code,
            status_code=500,
            details=details
        )
        self.db_code = db_code


class TransientExecutionException(ExecutionException):
    """瞬时数据库异常（连接断开、锁等待超时、连接池耗尽等，可重试）"""

    retryable = True

    def __init__(self, message: str, db_code: Optional[int] = None):
        super().__init__(message, db_code=db_code, code='transient_execution_error')
        self.status_code = 503


class RunTimeoutException(CleanerException):
    """任务运行超时异常"""

    def __init__(self, task_name: str, timeout: int):
        super().__init__(
            f"任务执行超时: {task_name} (超时时间: {timeout}秒)",
            code='task_timeout',
            status_code=408,
            details={"task_name": task_name, "timeout": timeout}
        )
