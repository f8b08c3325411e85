"""
SQL 模板渲染模块
基于 Jinja2 沙箱环境，只做变量替换与字面量级别的条件/循环
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from kiyoshi.constants import TemplateConfig
from kiyoshi.exceptions import TemplateException
from kiyoshi.models.task import CleanupTask, DataInterval

logger = logging.getLogger(__name__)

_ONE_MICROSECOND = timedelta(microseconds=1)


def format_value(value: Any) -> str:
    """按语义类型把值格式化为 SQL 字面量文本（字符串原样输出，由模板自己加引号）"""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, datetime):
        return value.strftime(TemplateConfig.DATETIME_FORMAT)
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    return str(value)


def sql_literal(value: Any) -> str:
    """完整的 SQL 字面量，字符串与时间加单引号并转义"""
    if value is None or isinstance(value, (bool, int, float, Decimal)):
        return format_value(value)
    text = format_value(value).replace("\\", "\\\\").replace("'", "''")
    return f"'{text}'"


def check_well_formed(sql: str):
    """
    廉价的词法检查，不做完整解析

    检查: 非空、引号闭合、括号配对、没有残留的模板标记
    """
    if not sql or not sql.strip().strip(";").strip():
        raise TemplateException("rendered SQL is empty")

    for marker in ("{{", "}}", "{%", "%}", "{#", "#}"):
        if marker in sql:
            raise TemplateException(f"unresolved template marker '{marker}' in rendered SQL")

    depth = 0
    quote = None
    i = 0
    length = len(sql)
    while i < length:
        ch = sql[i]
        if quote:
            if ch == "\\" and quote != "`":
                i += 2
                continue
            if ch == quote:
                # 连续两个引号是转义
                if i + 1 < length and sql[i + 1] == quote:
                    i += 2
                    continue
                quote = None
        elif ch == "#" or (sql.startswith("--", i) and (i + 2 >= length or sql[i + 2].isspace())):
            newline = sql.find("\n", i)
            i = length if newline < 0 else newline + 1
            continue
        elif sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            if end < 0:
                raise TemplateException("unterminated block comment in rendered SQL")
            i = end + 2
            continue
        elif ch in ("'", '"', "`"):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise TemplateException("unbalanced parentheses in rendered SQL")
        i += 1

    if quote:
        raise TemplateException(f"unterminated {quote} quote in rendered SQL")
    if depth != 0:
        raise TemplateException("unbalanced parentheses in rendered SQL")


def next_fire_after(trigger, moment: datetime) -> Optional[datetime]:
    """严格晚于 moment 的下一次触发时间"""
    return trigger.get_next_fire_time(None, moment + _ONE_MICROSECOND)


def previous_fire_time(trigger, now: datetime, lookback: timedelta) -> Optional[datetime]:
    """在 [now - lookback, now] 内最近的一次触发时间，没有则返回 None"""
    candidate = trigger.get_next_fire_time(None, now - lookback)
    last = None
    while candidate is not None and candidate <= now:
        last = candidate
        candidate = next_fire_after(trigger, candidate)
    return last


def compute_data_interval(trigger, fire_time: datetime) -> DataInterval:
    """
    计算本次运行负责的时间窗口

    end 为触发时刻，start = end - (下一次触发 - end)，即相邻两次触发的间隔
    """
    upcoming = next_fire_after(trigger, fire_time)
    if upcoming is None:
        return DataInterval(start=fire_time, end=fire_time)
    return DataInterval(start=fire_time - (upcoming - fire_time), end=fire_time)


class TemplateRenderer:
    """SQL 模板渲染器，纯函数，无副作用"""

    def __init__(self):
        self.env = SandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            finalize=format_value,
            keep_trailing_newline=False,
        )
        self.env.filters["sql_literal"] = sql_literal

    def render(self, template: str, parameters: Mapping[str, Any], task_name: Optional[str] = None) -> str:
        """
        渲染模板

        Args:
            template: SQL 模板
            parameters: 已合并计算变量的参数

        Returns:
            渲染后的 SQL

        Raises:
            TemplateException: 占位符未绑定、模板语法错误或结果不是合法的 SQL 文本
        """
        try:
            rendered = self.env.from_string(template).render(dict(parameters))
        except TemplateError as e:
            raise TemplateException(str(e), task_name=task_name) from e

        try:
            check_well_formed(rendered)
        except TemplateException as e:
            raise TemplateException(e.reason, task_name=task_name) from None
        return rendered.strip()

    def render_task(self, task: CleanupTask, interval: DataInterval) -> str:
        """合并任务参数与计算变量后渲染任务模板"""
        return self.render(task.template_query, self.build_context(task, interval), task_name=task.name)

    @staticmethod
    def build_context(task: CleanupTask, interval: DataInterval) -> Dict[str, Any]:
        context: Dict[str, Any] = {TemplateConfig.BATCH_SIZE: task.batch_size}
        context.update(task.parameters)
        context[TemplateConfig.DATA_INTERVAL_START] = interval.start
        context[TemplateConfig.DATA_INTERVAL_END] = interval.end
        return context
