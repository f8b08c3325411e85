"""
安全模式校验模块
在 SQL 被破坏性执行之前做静态检查，无法证明安全的语句一律拒绝
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from kiyoshi.constants import SafeModeConfig
from kiyoshi.core.sql_parser import (
    Between, BinaryOp, Column, DeleteStatement, DerivedTable, Expr, FunctionCall, InSubquery,
    Interval, Literal, Parser, Select, SqlParseError, TableRef, UnaryOp, split_statements, tokenize,
)
from kiyoshi.exceptions import PolicyRejectionException
from kiyoshi.models.task import SafeModePolicy

logger = logging.getLogger(__name__)

_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)

_NOW_FUNCTIONS = frozenset({
    "NOW", "CURRENT_TIMESTAMP", "LOCALTIME", "LOCALTIMESTAMP", "SYSDATE", "UTC_TIMESTAMP",
})
_TODAY_FUNCTIONS = frozenset({"CURDATE", "CURRENT_DATE", "UTC_DATE"})
_SUBTRACT_FUNCTIONS = frozenset({"DATE_SUB", "SUBDATE"})
_ADD_FUNCTIONS = frozenset({"DATE_ADD", "ADDDATE"})

_FIXED_UNITS = {
    "MICROSECOND": timedelta(microseconds=1),
    "SECOND": timedelta(seconds=1),
    "MINUTE": timedelta(minutes=1),
    "HOUR": timedelta(hours=1),
    "DAY": timedelta(days=1),
    "WEEK": timedelta(weeks=1),
}
_MONTH_UNITS = {"MONTH": 1, "QUARTER": 3, "YEAR": 12}
_ORDER_PRESERVING_WRAPPERS = frozenset({"DATE", "TIMESTAMP", "DATETIME"})


@dataclass(frozen=True)
class Verdict:
    """校验结果"""
    approved: bool
    rule: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def approve(cls) -> 'Verdict':
        return cls(approved=True)

    @classmethod
    def reject(cls, rule: str, reason: str) -> 'Verdict':
        return cls(approved=False, rule=rule, reason=reason)


# ============ 静态求值 ============

def parse_datetime(text: str) -> Optional[datetime]:
    value = text.strip()
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def shift_months(moment: datetime, months: int) -> datetime:
    """按日历月平移，日期超出目标月份时取月末（与 MySQL 一致）"""
    month_index = moment.year * 12 + (moment.month - 1) + months
    year, month = divmod(month_index, 12)
    day = min(moment.day, calendar.monthrange(year, month + 1)[1])
    return moment.replace(year=year, month=month + 1, day=day)


def _interval_amount(expr: Expr) -> Optional[int]:
    """间隔数量只接受非负整数字面量"""
    if isinstance(expr, Literal) and expr.kind in ("number", "string"):
        text = expr.value.strip()
        if text.isdigit():
            return int(text)
    return None


def apply_interval(moment: datetime, interval: Interval, sign: int) -> Optional[datetime]:
    amount = _interval_amount(interval.amount)
    if amount is None:
        return None
    try:
        if interval.unit in _FIXED_UNITS:
            return moment + sign * amount * _FIXED_UNITS[interval.unit]
        if interval.unit in _MONTH_UNITS:
            return shift_months(moment, sign * amount * _MONTH_UNITS[interval.unit])
    except (OverflowError, ValueError):
        return None
    return None


def evaluate_timestamp(expr: Expr, now: datetime) -> Optional[datetime]:
    """
    对时间表达式做静态求值

    支持: 时间字符串字面量、NOW() 一类函数、DATE_SUB/DATE_ADD、base ± INTERVAL n unit
    无法确定的表达式返回 None
    """
    if isinstance(expr, Literal):
        if expr.kind in ("string", "datetime", "date"):
            return parse_datetime(expr.value)
        return None

    if isinstance(expr, FunctionCall):
        name = expr.name
        if name in _NOW_FUNCTIONS and len(expr.args) <= 1:
            return now
        if name in _TODAY_FUNCTIONS and not expr.args:
            return now.replace(hour=0, minute=0, second=0, microsecond=0)
        if name in ("DATE", "TIMESTAMP", "DATETIME") and len(expr.args) == 1:
            base = evaluate_timestamp(expr.args[0], now)
            if base is not None and name == "DATE":
                return base.replace(hour=0, minute=0, second=0, microsecond=0)
            return base
        if (name in _SUBTRACT_FUNCTIONS or name in _ADD_FUNCTIONS) and len(expr.args) == 2:
            base = evaluate_timestamp(expr.args[0], now)
            if base is None:
                return None
            sign = -1 if name in _SUBTRACT_FUNCTIONS else 1
            offset = expr.args[1]
            if not isinstance(offset, Interval):
                # SUBDATE(expr, days) 形式
                offset = Interval(offset, "DAY")
            return apply_interval(base, offset, sign)
        return None

    if isinstance(expr, BinaryOp) and expr.op in ("+", "-"):
        if isinstance(expr.right, Interval):
            base = evaluate_timestamp(expr.left, now)
            if base is None:
                return None
            return apply_interval(base, expr.right, -1 if expr.op == "-" else 1)
        if expr.op == "+" and isinstance(expr.left, Interval):
            base = evaluate_timestamp(expr.right, now)
            return apply_interval(base, expr.left, 1) if base is not None else None
    return None


def references_row(expr: Expr) -> bool:
    """表达式是否依赖行数据（包含列引用）"""
    if isinstance(expr, Column):
        return True
    if isinstance(expr, FunctionCall):
        return any(references_row(arg) for arg in expr.args)
    if isinstance(expr, BinaryOp):
        return references_row(expr.left) or references_row(expr.right)
    if isinstance(expr, UnaryOp):
        return references_row(expr.operand)
    return False


def row_wrapper(expr: Expr) -> Optional[str]:
    """
    比较中行数据一侧的形式

    只接受裸列（返回空字符串）或 DATE / TIMESTAMP / DATETIME 直接包裹的裸列（返回函数名），
    任何算术或其他函数都可能平移截止时间，返回 None
    """
    if isinstance(expr, Column):
        return ""
    if isinstance(expr, FunctionCall) and expr.name in _ORDER_PRESERVING_WRAPPERS \
            and len(expr.args) == 1 and isinstance(expr.args[0], Column):
        return expr.name
    return None


def same_table(ref: TableRef, target: TableRef) -> bool:
    if ref.name[-1].lower() != target.name[-1].lower():
        return False
    if len(ref.name) > 1 and len(target.name) > 1:
        return ref.name[-2].lower() == target.name[-2].lower()
    return True


def target_column(expr: Expr, target: TableRef) -> Optional[str]:
    """IN 左侧必须是 DELETE 目标表的裸列，返回列名"""
    if not isinstance(expr, Column):
        return None
    if len(expr.parts) == 1:
        return expr.parts[0]
    qualifier = expr.parts[-2].lower()
    names = {target.name[-1].lower()}
    if target.alias:
        names.add(target.alias.lower())
    return expr.parts[-1] if qualifier in names else None


# ============ 校验器 ============

class SafeModeValidator:
    """安全模式校验器"""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now

    def validate(self, sql: str, policy: SafeModePolicy, now: Optional[datetime] = None) -> Verdict:
        """
        校验渲染后的 SQL

        按顺序检查: 单条语句 -> DELETE -> 有 WHERE -> WHERE 中的时间条件满足保留天数
        同一 SQL、同一策略、同一时刻总是得到相同结果
        """
        if not policy.enabled:
            logger.info("Safe mode is disabled, statement approved without inspection")
            return Verdict.approve()

        try:
            statements = split_statements(tokenize(sql))
        except SqlParseError as e:
            return Verdict.reject(SafeModeConfig.RULE_PARSE, f"Failed to parse SQL: {e}")

        if len(statements) != 1:
            return Verdict.reject(
                SafeModeConfig.RULE_SINGLE_STATEMENT,
                f"Only a single SQL statement is allowed, got {len(statements)}"
            )

        parser = Parser(statements[0])
        try:
            statement = parser.parse_statement()
        except SqlParseError as e:
            return Verdict.reject(SafeModeConfig.RULE_PARSE, f"Failed to parse SQL: {e}")

        if not isinstance(statement, DeleteStatement):
            return Verdict.reject(
                SafeModeConfig.RULE_DELETE_ONLY,
                f"Only DELETE statements are allowed, got {statement.kind}"
            )

        if statement.where is None:
            return Verdict.reject(
                SafeModeConfig.RULE_WHERE_REQUIRED,
                "DELETE statement must have a WHERE clause"
            )

        now = self._naive(now or self._clock())
        limit = now - timedelta(days=policy.retention_days)
        if not self._proves_retention(statement.where, statement.table, limit, now):
            return Verdict.reject(
                SafeModeConfig.RULE_RETENTION,
                f"WHERE clause does not provably restrict rows to those older than "
                f"{policy.retention_days} days (cutoff must be <= {limit:%Y-%m-%d %H:%M:%S})"
            )
        return Verdict.approve()

    def ensure_approved(self, sql: str, policy: SafeModePolicy, task_name: Optional[str] = None,
                        now: Optional[datetime] = None) -> Verdict:
        """校验并在拒绝时抛出 PolicyRejectionException"""
        verdict = self.validate(sql, policy, now=now)
        if not verdict.approved:
            raise PolicyRejectionException(verdict.rule, verdict.reason, task_name=task_name)
        return verdict

    @staticmethod
    def _naive(moment: datetime) -> datetime:
        return moment.replace(tzinfo=None)

    def _proves_retention(self, expr: Expr, target: TableRef, limit: datetime, now: datetime) -> bool:
        if isinstance(expr, BinaryOp):
            if expr.op == "AND":
                return self._proves_retention(expr.left, target, limit, now) or \
                    self._proves_retention(expr.right, target, limit, now)
            if expr.op == "OR":
                return self._proves_retention(expr.left, target, limit, now) and \
                    self._proves_retention(expr.right, target, limit, now)
            if expr.op in ("<", "<="):
                return self._bounded(expr.left, expr.right, expr.op == "<", limit, now)
            if expr.op in (">", ">="):
                return self._bounded(expr.right, expr.left, expr.op == ">", limit, now)
            return False

        if isinstance(expr, Between):
            return not expr.negated and self._bounded(expr.expr, expr.high, False, limit, now)

        if isinstance(expr, InSubquery):
            if expr.negated:
                return False
            column = target_column(expr.expr, target)
            return column is not None and self._trace_projection(expr.query, column, target, limit, now) is True

        return False

    @staticmethod
    def _bounded(row_side: Expr, cutoff_side: Expr, strict: bool, limit: datetime, now: datetime) -> bool:
        """row_side < cutoff_side 且 cutoff 不晚于 now - retention_days"""
        wrapper = row_wrapper(row_side)
        if wrapper is None or references_row(cutoff_side):
            return False
        cutoff = evaluate_timestamp(cutoff_side, now)
        if cutoff is None:
            return False
        if wrapper == "DATE":
            # DATE(col) 只保证 col 早于 cutoff 所在日的次日零点
            day = cutoff.replace(hour=0, minute=0, second=0, microsecond=0)
            if not (strict and cutoff == day):
                cutoff = day + timedelta(days=1)
        return cutoff <= limit

    def _trace_projection(self, select: Select, column: str, target: TableRef,
                          limit: datetime, now: datetime) -> Optional[bool]:
        """
        追踪 IN 子查询投影的列

        每一层只能投影与 IN 左侧同名的裸列，并且逐层（经派生表）来自 DELETE 目标表本身；
        不满足时返回 None，否则返回是否有某一层的 WHERE 证明了保留期限
        """
        if len(select.columns) != 1 or len(select.from_items) != 1:
            return None
        projected = select.columns[0]
        if not isinstance(projected, Column) or projected.parts[-1].lower() != column.lower():
            return None

        source = select.from_items[0]
        if isinstance(source, TableRef):
            if not same_table(source, target):
                return None
            return select.where is not None and self._proves_retention(select.where, source, limit, now)
        if isinstance(source, DerivedTable):
            inner = self._trace_projection(source.query, column, target, limit, now)
            if inner is None:
                return None
            return inner or (select.where is not None and self._proves_retention(select.where, target, limit, now))
        return None
