"""
SQL 语句解析模块
安全模式校验使用的小型解析器: 词法分析 + 递归下降，产出带类型的语句与谓词结构

只覆盖清理任务会用到的 MySQL 子集（单表 DELETE、子查询中的 SELECT、常见表达式），
无法识别的语法一律抛出 SqlParseError，由校验器按拒绝处理
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple


class SqlParseError(ValueError):
    """SQL 解析失败"""

    def __init__(self, message: str, position: Optional[int] = None):
        if position is not None:
            message = f"{message} (at offset {position})"
        super().__init__(message)


# ============ 词法 ============

IDENT = "ident"
QUOTED_IDENT = "quoted_ident"
STRING = "string"
NUMBER = "number"
OP = "op"
LPAREN = "("
RPAREN = ")"
COMMA = ","
SEMI = ";"
DOT = "."
EOF = "eof"

_OPERATORS = ("<=>", "<=", ">=", "<>", "!=", "||", "&&", "<", ">", "=", "+", "-", "*", "/", "%", "!")
_SINGLE = {"(": LPAREN, ")": RPAREN, ",": COMMA, ";": SEMI, ".": DOT}


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    position: int

    @property
    def upper(self) -> str:
        return self.value.upper() if self.kind == IDENT else ""


def tokenize(sql: str) -> List[Token]:
    """把 SQL 文本切分为 token，注释视为空白"""
    tokens: List[Token] = []
    i = 0
    length = len(sql)
    while i < length:
        ch = sql[i]
        if ch.isspace():
            i += 1
            continue

        if ch == "#" or (sql.startswith("--", i) and (i + 2 >= length or sql[i + 2].isspace())):
            newline = sql.find("\n", i)
            i = length if newline < 0 else newline + 1
            continue

        if sql.startswith("/*", i):
            # MySQL 会执行 /*! ... */ 中的内容，优化器提示 /*+ ... */ 同样不允许
            if sql.startswith(("/*!", "/*+"), i):
                raise SqlParseError("executable comments are not allowed", i)
            end = sql.find("*/", i + 2)
            if end < 0:
                raise SqlParseError("unterminated block comment", i)
            i = end + 2
            continue

        if ch in ("'", '"', "`"):
            start = i
            value, i = _read_quoted(sql, i)
            tokens.append(Token(QUOTED_IDENT if ch == "`" else STRING, value, start))
            continue

        if ch.isdigit() or (ch == "." and i + 1 < length and sql[i + 1].isdigit()):
            start = i
            while i < length and (sql[i].isdigit() or sql[i] == "."):
                i += 1
            if i < length and sql[i] in "eE" and i + 1 < length and (sql[i + 1].isdigit() or sql[i + 1] in "+-"):
                i += 2
                while i < length and sql[i].isdigit():
                    i += 1
            if i < length and (sql[i].isalpha() or sql[i] == "_"):
                raise SqlParseError("malformed number", start)
            tokens.append(Token(NUMBER, sql[start:i], start))
            continue

        if ch.isalpha() or ch in "_$":
            start = i
            while i < length and (sql[i].isalnum() or sql[i] in "_$"):
                i += 1
            tokens.append(Token(IDENT, sql[start:i], start))
            continue

        if ch in _SINGLE:
            tokens.append(Token(_SINGLE[ch], ch, i))
            i += 1
            continue

        for op in _OPERATORS:
            if sql.startswith(op, i):
                tokens.append(Token(OP, op, i))
                i += len(op)
                break
        else:
            raise SqlParseError(f"unexpected character {ch!r}", i)

    tokens.append(Token(EOF, "", length))
    return tokens


def _read_quoted(sql: str, start: int) -> Tuple[str, int]:
    quote = sql[start]
    chars = []
    i = start + 1
    length = len(sql)
    while i < length:
        ch = sql[i]
        if ch == "\\" and quote != "`" and i + 1 < length:
            chars.append(sql[i + 1])
            i += 2
            continue
        if ch == quote:
            if i + 1 < length and sql[i + 1] == quote:
                chars.append(quote)
                i += 2
                continue
            return "".join(chars), i + 1
        chars.append(ch)
        i += 1
    raise SqlParseError(f"unterminated {quote} quote", start)


def split_statements(tokens: List[Token]) -> List[List[Token]]:
    """按顶层分号拆分语句，忽略空语句"""
    statements: List[List[Token]] = []
    current: List[Token] = []
    for token in tokens:
        if token.kind == EOF:
            break
        if token.kind == SEMI:
            if current:
                statements.append(current)
            current = []
            continue
        current.append(token)
    if current:
        statements.append(current)
    return statements


# ============ 语法树 ============

class Expr:
    """表达式基类"""


@dataclass
class Literal(Expr):
    value: str
    kind: str           # string / number / null / bool / datetime / date


@dataclass
class Column(Expr):
    parts: Tuple[str, ...]


@dataclass
class Star(Expr):
    table: Optional[str] = None


@dataclass
class FunctionCall(Expr):
    name: str
    args: List[Expr] = field(default_factory=list)


@dataclass
class Interval(Expr):
    amount: Expr
    unit: str


@dataclass
class UnaryOp(Expr):
    op: str
    operand: Expr


@dataclass
class BinaryOp(Expr):
    op: str
    left: Expr
    right: Expr


@dataclass
class Between(Expr):
    expr: Expr
    low: Expr
    high: Expr
    negated: bool = False


@dataclass
class InList(Expr):
    expr: Expr
    items: List[Expr]
    negated: bool = False


@dataclass
class InSubquery(Expr):
    expr: Expr
    query: 'Select'
    negated: bool = False


@dataclass
class Exists(Expr):
    query: 'Select'
    negated: bool = False


@dataclass
class IsCheck(Expr):
    expr: Expr
    value: str          # NULL / TRUE / FALSE
    negated: bool = False


@dataclass
class SubqueryExpr(Expr):
    query: 'Select'


@dataclass
class RowExpr(Expr):
    items: List[Expr]


@dataclass
class TableRef:
    name: Tuple[str, ...]
    alias: Optional[str] = None


@dataclass
class DerivedTable:
    query: 'Select'
    alias: Optional[str] = None


@dataclass
class Join:
    left: object
    right: object
    kind: str
    condition: Optional[Expr] = None


@dataclass
class OrderItem:
    expr: Expr
    descending: bool = False


@dataclass
class Select:
    columns: List[Expr]
    from_items: List[object] = field(default_factory=list)
    where: Optional[Expr] = None
    group_by: List[Expr] = field(default_factory=list)
    having: Optional[Expr] = None
    order_by: List[OrderItem] = field(default_factory=list)
    limit: Optional[Expr] = None
    distinct: bool = False


class Statement:
    """语句基类"""
    kind = "UNKNOWN"


@dataclass
class DeleteStatement(Statement):
    table: TableRef
    where: Optional[Expr] = None
    order_by: List[OrderItem] = field(default_factory=list)
    limit: Optional[Expr] = None
    modifiers: Tuple[str, ...] = ()
    kind = "DELETE"


@dataclass
class OtherStatement(Statement):
    """非 DELETE 语句，只识别类型不解析内容"""
    kind: str


INTERVAL_UNITS = frozenset({
    "MICROSECOND", "SECOND", "MINUTE", "HOUR", "DAY", "WEEK", "MONTH", "QUARTER", "YEAR",
})

_NILADIC_FUNCTIONS = frozenset({
    "CURRENT_TIMESTAMP", "CURRENT_DATE", "CURRENT_TIME", "LOCALTIME", "LOCALTIMESTAMP",
    "UTC_TIMESTAMP", "UTC_DATE", "UTC_TIME",
})

RESERVED = frozenset({
    "SELECT", "FROM", "WHERE", "AND", "OR", "XOR", "NOT", "IN", "IS", "NULL", "BETWEEN", "LIKE",
    "REGEXP", "RLIKE", "ESCAPE", "GROUP", "ORDER", "BY", "HAVING", "LIMIT", "OFFSET", "JOIN",
    "INNER", "LEFT", "RIGHT", "CROSS", "OUTER", "NATURAL", "STRAIGHT_JOIN", "ON", "USING", "AS",
    "UNION", "EXCEPT", "INTERSECT", "DELETE", "INSERT", "UPDATE", "REPLACE", "EXISTS", "INTERVAL",
    "CASE", "WHEN", "THEN", "ELSE", "END", "DIV", "MOD", "DISTINCT", "ALL", "ASC", "DESC", "TRUE",
    "FALSE", "SET", "VALUES", "INTO", "PARTITION", "FOR", "WINDOW", "WITH",
})

_COMPARISONS = frozenset({"=", "<", "<=", ">", ">=", "<>", "!=", "<=>"})


# ============ 语法分析 ============

class Parser:
    """单条语句的递归下降解析器"""

    def __init__(self, tokens: List[Token]):
        self.tokens = list(tokens)
        if not self.tokens or self.tokens[-1].kind != EOF:
            end = self.tokens[-1].position + len(self.tokens[-1].value) if self.tokens else 0
            self.tokens.append(Token(EOF, "", end))
        self.pos = 0

    # ---- 基础操作 ----

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def peek(self, offset: int = 1) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        token = self.current
        if token.kind != EOF:
            self.pos += 1
        return token

    def at_keyword(self, *words: str) -> bool:
        return self.current.kind == IDENT and self.current.upper in words

    def accept_keyword(self, *words: str) -> Optional[str]:
        if self.at_keyword(*words):
            return self.advance().upper
        return None

    def expect_keyword(self, word: str):
        if not self.accept_keyword(word):
            self.error(f"expected {word}")

    def accept(self, kind: str, value: Optional[str] = None) -> Optional[Token]:
        token = self.current
        if token.kind == kind and (value is None or token.value == value):
            return self.advance()
        return None

    def expect(self, kind: str, value: Optional[str] = None) -> Token:
        token = self.accept(kind, value)
        if token is None:
            self.error(f"expected {value or kind}")
        return token

    def error(self, message: str):
        token = self.current
        found = token.value if token.kind != EOF else "end of statement"
        raise SqlParseError(f"{message}, found {found!r}", token.position)

    def expect_end(self):
        if self.current.kind != EOF:
            self.error("unexpected trailing tokens")

    # ---- 语句 ----

    def parse_statement(self) -> Statement:
        token = self.current
        if token.kind != IDENT:
            self.error("expected a statement keyword")
        if token.upper != "DELETE":
            return OtherStatement(kind=token.upper)
        return self.parse_delete()

    def parse_delete(self) -> DeleteStatement:
        self.expect_keyword("DELETE")
        modifiers = []
        while self.at_keyword("LOW_PRIORITY", "QUICK", "IGNORE"):
            modifiers.append(self.advance().upper)
        if not self.accept_keyword("FROM"):
            raise SqlParseError("multi-table DELETE is not supported", self.current.position)

        table = self.parse_table_name()
        if self.at_keyword("USING") or self.current.kind == COMMA:
            raise SqlParseError("multi-table DELETE is not supported", self.current.position)

        where = self.parse_expr() if self.accept_keyword("WHERE") else None
        order_by = self.parse_order_by()
        limit = None
        if self.accept_keyword("LIMIT"):
            limit = self.parse_primary()
        self.expect_end()
        return DeleteStatement(table=table, where=where, order_by=order_by, limit=limit,
                               modifiers=tuple(modifiers))

    def parse_select(self) -> Select:
        self.expect_keyword("SELECT")
        distinct = bool(self.accept_keyword("DISTINCT"))
        if not distinct:
            self.accept_keyword("ALL")

        columns = [self.parse_select_item()]
        while self.accept(COMMA):
            columns.append(self.parse_select_item())

        select = Select(columns=columns, distinct=distinct)
        if self.accept_keyword("FROM"):
            select.from_items = self.parse_from_items()
        if self.accept_keyword("WHERE"):
            select.where = self.parse_expr()
        if self.accept_keyword("GROUP"):
            self.expect_keyword("BY")
            select.group_by = [self.parse_expr()]
            while self.accept(COMMA):
                select.group_by.append(self.parse_expr())
        if self.accept_keyword("HAVING"):
            select.having = self.parse_expr()
        select.order_by = self.parse_order_by()
        if self.accept_keyword("LIMIT"):
            select.limit = self.parse_primary()
            if self.accept(COMMA) or self.accept_keyword("OFFSET"):
                self.parse_primary()
        if self.at_keyword("UNION", "EXCEPT", "INTERSECT", "FOR", "INTO"):
            self.error("unsupported query clause")
        return select

    def parse_select_item(self) -> Expr:
        if self.accept(OP, "*"):
            return Star()
        expr = self.parse_expr()
        self.parse_alias()
        return expr

    def parse_alias(self) -> Optional[str]:
        if self.accept_keyword("AS"):
            return self.parse_identifier()
        token = self.current
        if token.kind == QUOTED_IDENT or (token.kind == IDENT and token.upper not in RESERVED):
            return self.parse_identifier()
        return None

    def parse_identifier(self) -> str:
        token = self.current
        if token.kind == QUOTED_IDENT or (token.kind == IDENT and token.upper not in RESERVED):
            return self.advance().value
        self.error("expected an identifier")

    def parse_table_name(self) -> TableRef:
        parts = [self.parse_identifier()]
        while self.accept(DOT):
            parts.append(self.parse_identifier())
        alias = self.parse_alias()
        return TableRef(name=tuple(parts), alias=alias)

    def parse_from_items(self) -> List[object]:
        items = [self.parse_joined_table()]
        while self.accept(COMMA):
            items.append(self.parse_joined_table())
        return items

    def parse_joined_table(self) -> object:
        left = self.parse_table_factor()
        while True:
            kind = None
            if self.accept_keyword("JOIN", "STRAIGHT_JOIN"):
                kind = "INNER"
            elif self.at_keyword("INNER", "CROSS"):
                kind = self.advance().upper
                self.expect_keyword("JOIN")
            elif self.at_keyword("LEFT", "RIGHT"):
                kind = self.advance().upper
                self.accept_keyword("OUTER")
                self.expect_keyword("JOIN")
            if kind is None:
                return left

            right = self.parse_table_factor()
            condition = None
            if self.accept_keyword("ON"):
                condition = self.parse_expr()
            elif self.accept_keyword("USING"):
                self.expect(LPAREN)
                self.parse_identifier()
                while self.accept(COMMA):
                    self.parse_identifier()
                self.expect(RPAREN)
            left = Join(left=left, right=right, kind=kind, condition=condition)

    def parse_table_factor(self) -> object:
        if self.accept(LPAREN):
            if not self.at_keyword("SELECT"):
                self.error("expected a derived table")
            query = self.parse_select()
            self.expect(RPAREN)
            alias = self.parse_alias()
            if alias is None:
                self.error("derived table requires an alias")
            return DerivedTable(query=query, alias=alias)
        return self.parse_table_name()

    def parse_order_by(self) -> List[OrderItem]:
        items: List[OrderItem] = []
        if not self.accept_keyword("ORDER"):
            return items
        self.expect_keyword("BY")
        while True:
            expr = self.parse_expr()
            descending = self.accept_keyword("ASC", "DESC") == "DESC"
            items.append(OrderItem(expr=expr, descending=descending))
            if not self.accept(COMMA):
                return items

    # ---- 表达式 ----

    def parse_expr(self) -> Expr:
        return self.parse_or()

    def parse_or(self) -> Expr:
        left = self.parse_xor()
        while self.accept_keyword("OR") or self.accept(OP, "||"):
            left = BinaryOp("OR", left, self.parse_xor())
        return left

    def parse_xor(self) -> Expr:
        left = self.parse_and()
        while self.accept_keyword("XOR"):
            left = BinaryOp("XOR", left, self.parse_and())
        return left

    def parse_and(self) -> Expr:
        left = self.parse_not()
        while self.accept_keyword("AND") or self.accept(OP, "&&"):
            left = BinaryOp("AND", left, self.parse_not())
        return left

    def parse_not(self) -> Expr:
        if self.accept_keyword("NOT"):
            return UnaryOp("NOT", self.parse_not())
        return self.parse_predicate()

    def parse_predicate(self) -> Expr:
        left = self.parse_additive()
        while True:
            token = self.current
            if token.kind == OP and token.value in _COMPARISONS:
                self.advance()
                if self.at_keyword("ANY", "SOME", "ALL") and self.peek().kind == LPAREN:
                    self.error("quantified comparisons are not supported")
                left = BinaryOp(token.value, left, self.parse_additive())
                continue

            if self.accept_keyword("IS"):
                negated = bool(self.accept_keyword("NOT"))
                value = self.accept_keyword("NULL", "TRUE", "FALSE", "UNKNOWN")
                if value is None:
                    self.error("expected NULL, TRUE or FALSE")
                left = IsCheck(left, value, negated)
                continue

            negated = False
            if self.at_keyword("NOT") and self.peek().kind == IDENT \
                    and self.peek().upper in ("IN", "BETWEEN", "LIKE", "REGEXP", "RLIKE"):
                self.advance()
                negated = True

            if self.accept_keyword("BETWEEN"):
                low = self.parse_additive()
                self.expect_keyword("AND")
                high = self.parse_additive()
                left = Between(left, low, high, negated)
            elif self.accept_keyword("IN"):
                left = self.parse_in(left, negated)
            elif self.accept_keyword("LIKE", "REGEXP", "RLIKE"):
                pattern = self.parse_additive()
                if self.accept_keyword("ESCAPE"):
                    self.parse_primary()
                left = BinaryOp("LIKE", left, pattern)
                if negated:
                    left = UnaryOp("NOT", left)
            elif negated:
                self.error("expected IN, BETWEEN or LIKE")
            else:
                return left

    def parse_in(self, left: Expr, negated: bool) -> Expr:
        self.expect(LPAREN)
        if self.at_keyword("SELECT"):
            query = self.parse_select()
            self.expect(RPAREN)
            return InSubquery(left, query, negated)
        items = [self.parse_expr()]
        while self.accept(COMMA):
            items.append(self.parse_expr())
        self.expect(RPAREN)
        return InList(left, items, negated)

    def parse_additive(self) -> Expr:
        left = self.parse_multiplicative()
        while self.current.kind == OP and self.current.value in ("+", "-"):
            op = self.advance().value
            left = BinaryOp(op, left, self.parse_multiplicative())
        return left

    def parse_multiplicative(self) -> Expr:
        left = self.parse_unary()
        while True:
            if self.current.kind == OP and self.current.value in ("*", "/", "%"):
                op = self.advance().value
            elif self.at_keyword("DIV", "MOD"):
                op = self.advance().upper
            else:
                return left
            left = BinaryOp(op, left, self.parse_unary())

    def parse_unary(self) -> Expr:
        if self.current.kind == OP and self.current.value in ("-", "+"):
            op = self.advance().value
            return UnaryOp(op, self.parse_unary())
        if self.accept(OP, "!"):
            return UnaryOp("NOT", self.parse_unary())
        return self.parse_primary()

    def parse_primary(self) -> Expr:
        token = self.current

        if token.kind == NUMBER:
            self.advance()
            return Literal(token.value, "number")
        if token.kind == STRING:
            self.advance()
            return Literal(token.value, "string")

        if token.kind == LPAREN:
            self.advance()
            if self.at_keyword("SELECT"):
                query = self.parse_select()
                self.expect(RPAREN)
                return SubqueryExpr(query)
            items = [self.parse_expr()]
            while self.accept(COMMA):
                items.append(self.parse_expr())
            self.expect(RPAREN)
            return items[0] if len(items) == 1 else RowExpr(items)

        if token.kind == QUOTED_IDENT:
            return self.parse_column()

        if token.kind != IDENT:
            self.error("expected an expression")

        word = token.upper
        if word == "NULL":
            self.advance()
            return Literal("NULL", "null")
        if word in ("TRUE", "FALSE"):
            self.advance()
            return Literal(word, "bool")
        if word == "INTERVAL":
            self.advance()
            amount = self.parse_additive()
            unit_token = self.current
            if unit_token.kind != IDENT or unit_token.upper not in INTERVAL_UNITS:
                self.error("expected an interval unit")
            self.advance()
            return Interval(amount, unit_token.upper)
        if word in ("DATE", "TIMESTAMP", "DATETIME") and self.peek().kind == STRING:
            self.advance()
            value = self.advance().value
            return Literal(value, "date" if word == "DATE" else "datetime")
        if word == "EXISTS" and self.peek().kind == LPAREN:
            self.advance()
            self.expect(LPAREN)
            query = self.parse_select()
            self.expect(RPAREN)
            return Exists(query)
        if word in _NILADIC_FUNCTIONS and self.peek().kind != LPAREN:
            self.advance()
            return FunctionCall(word, [])
        if word == "CASE":
            self.error("CASE expressions are not supported")
        if self.peek().kind == LPAREN and word not in RESERVED:
            return self.parse_function()
        if word in RESERVED:
            self.error("unexpected keyword")
        return self.parse_column()

    def parse_function(self) -> FunctionCall:
        name = self.advance().upper
        self.expect(LPAREN)
        args: List[Expr] = []
        if self.accept(RPAREN):
            return FunctionCall(name, args)
        self.accept_keyword("DISTINCT")
        if self.accept(OP, "*"):
            args.append(Star())
        else:
            args.append(self.parse_expr())
        while self.accept(COMMA):
            args.append(self.parse_expr())
        self.expect(RPAREN)
        return FunctionCall(name, args)

    def parse_column(self) -> Expr:
        parts = [self.parse_identifier()]
        while self.accept(DOT):
            if self.accept(OP, "*"):
                return Star(table=".".join(parts))
            parts.append(self.parse_identifier())
        return Column(tuple(parts))


def parse_statements(sql: str) -> List[Statement]:
    """
    解析 SQL 文本中的全部语句

    非 DELETE 语句只返回类型（OtherStatement），不做完整解析

    Raises:
        SqlParseError: 词法错误，或 DELETE 语句不能被完整解析
    """
    return [Parser(tokens).parse_statement() for tokens in split_statements(tokenize(sql))]
