"""
全局常量定义
集中管理系统中使用的各种常量，避免魔法数字和字符串散布在代码中
"""


class SchedulerConfig:
    """调度器配置常量"""
    # 任务最大并发实例数（APScheduler 层面，真正的重叠保护在任务注册表中）
    MAX_INSTANCES = 1
    # 默认任务超时时间（秒）
    DEFAULT_TASK_TIMEOUT = 3600
    # 运行线程池默认大小
    DEFAULT_MAX_WORKERS = 10


class TemplateConfig:
    """模板配置常量"""
    # 保留的计算变量，不允许在任务参数中覆盖
    DATA_INTERVAL_START = "data_interval_start"
    DATA_INTERVAL_END = "data_interval_end"
    RESERVED_PARAMETERS = frozenset({DATA_INTERVAL_START, DATA_INTERVAL_END})
    # 可被任务参数覆盖的默认变量
    BATCH_SIZE = "batch_size"
    # 时间戳渲染格式
    DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class SafeModeConfig:
    """安全模式默认值"""
    ENABLED = True
    RETENTION_DAYS = 30

    # 拒绝规则编码
    RULE_PARSE = "parse"
    RULE_SINGLE_STATEMENT = "single_statement"
    RULE_DELETE_ONLY = "delete_only"
    RULE_WHERE_REQUIRED = "where_required"
    RULE_RETENTION = "retention"


class DatabaseErrorCodes:
    """MySQL 错误码分类"""
    # 可重试: 锁等待超时、死锁、连接丢失、服务器已断开、连接过多、查询被中断
    TRANSIENT = frozenset({1040, 1053, 1205, 1213, 1317, 2002, 2003, 2006, 2013, 2055})


class LogConfig:
    """日志配置常量"""
    # 日志格式
    FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    # 详细日志格式
    DETAIL_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
    # 日期格式
    DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class SlackConfig:
    """Slack 通知常量"""
    POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
    REQUEST_TIMEOUT = 10
