"""Tests for the safe-mode validator."""

from datetime import datetime, timezone

import pytest

from kiyoshi.core.validator import SafeModeValidator, evaluate_timestamp, shift_months
from kiyoshi.core.sql_parser import Parser, tokenize
from kiyoshi.exceptions import PolicyRejectionException
from kiyoshi.models.task import SafeModePolicy

NOW = datetime(2024, 6, 30)


@pytest.fixture
def validator():
    return SafeModeValidator(clock=lambda: NOW)


@pytest.fixture
def policy():
    return SafeModePolicy(enabled=True, retention_days=30)


def expr(sql: str):
    return Parser(tokenize(sql)).parse_expr()


class TestRetentionBoundary:
    def test_cutoff_inside_retention_window_rejected(self, validator, policy):
        verdict = validator.validate("DELETE FROM t WHERE created_at < '2024-06-01'", policy)

        assert not verdict.approved
        assert verdict.rule == "retention"

    def test_cutoff_at_retention_limit_approved(self, validator, policy):
        verdict = validator.validate("DELETE FROM t WHERE created_at < '2024-05-31'", policy)
        assert verdict.approved

    @pytest.mark.parametrize("retention_days", [0, 30, 3650])
    def test_missing_where_always_rejected(self, validator, retention_days):
        verdict = validator.validate("DELETE FROM t", SafeModePolicy(retention_days=retention_days))

        assert not verdict.approved
        assert verdict.rule == "where_required"

    def test_validation_is_idempotent(self, validator, policy):
        sql = "DELETE FROM t WHERE created_at < NOW() - INTERVAL 10 DAY"
        assert validator.validate(sql, policy) == validator.validate(sql, policy)

    def test_aware_now_is_compared_as_wall_clock(self, policy):
        validator = SafeModeValidator(clock=lambda: datetime(2024, 6, 30, tzinfo=timezone.utc))
        assert validator.validate("DELETE FROM t WHERE created_at < '2024-05-31'", policy).approved


class TestStatementShape:
    def test_multiple_statements_rejected(self, validator, policy):
        verdict = validator.validate(
            "DELETE FROM t WHERE created_at < '2020-01-01'; DROP TABLE t", policy
        )
        assert verdict.rule == "single_statement"

    def test_trailing_semicolon_allowed(self, validator, policy):
        assert validator.validate("DELETE FROM t WHERE created_at < '2020-01-01';", policy).approved

    @pytest.mark.parametrize("sql", [
        "SELECT * FROM t WHERE created_at < '2020-01-01'",
        "UPDATE t SET a = 1 WHERE created_at < '2020-01-01'",
        "TRUNCATE TABLE t",
        "DROP TABLE t",
    ])
    def test_non_delete_rejected(self, validator, policy, sql):
        verdict = validator.validate(sql, policy)
        assert verdict.rule == "delete_only"

    @pytest.mark.parametrize("sql", [
        "DELETE t FROM t JOIN u ON t.id = u.id WHERE t.created_at < '2020-01-01'",
        "DELETE FROM t WHERE created_at < '2020-01-01' /*! OR 1=1 */",
        "DELETE FROM t WHERE created_at < '2020-01-01",
    ])
    def test_unparseable_rejected(self, validator, policy, sql):
        verdict = validator.validate(sql, policy)
        assert verdict.rule == "parse"

    def test_disabled_policy_approves_anything(self, validator):
        assert validator.validate("DROP TABLE t", SafeModePolicy(enabled=False)).approved

    def test_ensure_approved_raises_with_rule(self, validator, policy):
        with pytest.raises(PolicyRejectionException) as exc_info:
            validator.ensure_approved("DELETE FROM t", policy, task_name="x")

        assert exc_info.value.rule == "where_required"
        assert exc_info.value.details["task_name"] == "x"


class TestRetentionProof:
    @pytest.mark.parametrize("where", [
        "created_at < NOW() - INTERVAL 31 DAY",
        "created_at <= DATE_SUB(NOW(), INTERVAL 2 MONTH)",
        "created_at < DATE_SUB('2024-06-30 00:00:00', INTERVAL 30 DAY)",
        "created_at < SUBDATE(CURDATE(), 45)",
        "'2024-05-01' > created_at",
        "created_at BETWEEN '2020-01-01' AND '2024-05-01'",
        "status = 'done' AND created_at < '2024-05-01'",
        "(created_at < '2024-05-01' AND id > 10) OR created_at < '2023-01-01'",
        "DATE(created_at) < CURRENT_DATE - INTERVAL 1 YEAR",
        "created_at < TIMESTAMP '2024-05-30 12:00:00'",
    ])
    def test_approved(self, validator, policy, where):
        verdict = validator.validate(f"DELETE FROM t WHERE {where} LIMIT 1000", policy)
        assert verdict.approved, verdict.reason

    @pytest.mark.parametrize("where", [
        "created_at < NOW() - INTERVAL 29 DAY",
        "created_at > '2020-01-01'",
        "status = 'done'",
        "status = 'done' OR created_at < '2020-01-01'",
        "NOT created_at > '2020-01-01'",
        "created_at < updated_at",
        "created_at NOT BETWEEN '2020-01-01' AND '2020-02-01'",
        "created_at < NOW() - INTERVAL :days DAY",
        "created_at < DATE_SUB(NOW(), INTERVAL -30 DAY)",
        "1 = 1",
        "created_at - INTERVAL 10 YEAR < '2024-05-31'",
        "DATE_SUB(created_at, INTERVAL 10 YEAR) < '2024-05-31'",
        "id * 0 < '2024-05-31'",
        "COALESCE(created_at, NOW()) < '2020-01-01'",
        "DATE(created_at) <= '2024-05-31'",
    ])
    def test_rejected(self, validator, policy, where):
        verdict = validator.validate(f"DELETE FROM t WHERE {where}", policy)
        assert not verdict.approved

    def test_subquery_with_bounded_derived_table(self, validator, policy):
        sql = (
            "DELETE FROM validation_runs WHERE id IN ("
            "SELECT id FROM (SELECT id FROM validation_runs "
            "WHERE created_at < DATE_SUB('2024-05-01', INTERVAL 1 DAY) ORDER BY id LIMIT 1000) AS batch)"
        )
        assert validator.validate(sql, policy).approved

    def test_subquery_without_bound_rejected(self, validator, policy):
        sql = "DELETE FROM t WHERE id IN (SELECT id FROM u WHERE u.flag = 1)"
        assert not validator.validate(sql, policy).approved

    def test_negated_subquery_rejected(self, validator, policy):
        sql = "DELETE FROM t WHERE id NOT IN (SELECT id FROM t WHERE created_at < '2020-01-01')"
        assert not validator.validate(sql, policy).approved

    def test_qualified_target_column_in_subquery(self, validator, policy):
        sql = "DELETE FROM t WHERE t.id IN (SELECT id FROM t WHERE created_at < '2024-05-01')"
        assert validator.validate(sql, policy).approved

    @pytest.mark.parametrize("sql", [
        "DELETE FROM users WHERE 1 IN (SELECT 1 FROM audit WHERE created_at < '2024-05-31')",
        "DELETE FROM t WHERE id IN (SELECT user_id FROM t WHERE created_at < '2024-05-01')",
        "DELETE FROM t WHERE id IN (SELECT id FROM other_table WHERE created_at < '2024-05-01')",
        "DELETE FROM t WHERE u.id IN (SELECT id FROM t WHERE created_at < '2024-05-01')",
        "DELETE FROM t WHERE id IN (SELECT id FROM (SELECT id FROM u WHERE created_at < '2024-05-01') AS b)",
        "DELETE FROM t WHERE id IN (SELECT id + 0 FROM t WHERE created_at < '2024-05-01')",
    ])
    def test_subquery_not_tied_to_target_rows_rejected(self, validator, policy, sql):
        verdict = validator.validate(sql, policy)

        assert not verdict.approved
        assert verdict.rule == "retention"


class TestStaticEvaluation:
    def test_month_arithmetic_clamps_day(self):
        assert shift_months(datetime(2024, 3, 31), -1) == datetime(2024, 2, 29)
        assert shift_months(datetime(2024, 1, 31), 13) == datetime(2025, 2, 28)

    def test_evaluates_nested_functions(self):
        value = evaluate_timestamp(expr("DATE_ADD(DATE_SUB(NOW(), INTERVAL 2 DAY), INTERVAL 1 HOUR)"), NOW)
        assert value == datetime(2024, 6, 28, 1, 0)

    def test_unknown_function_is_unresolved(self):
        assert evaluate_timestamp(expr("FROM_UNIXTIME(0)"), NOW) is None

    def test_column_is_unresolved(self):
        assert evaluate_timestamp(expr("created_at"), NOW) is None
