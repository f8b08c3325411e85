"""Tests for the scheduler core: registry, overlap guard and dispatch."""

from datetime import datetime, timezone

import pytest

from kiyoshi.core.scheduler import TaskScheduler, create_trigger
from kiyoshi.exceptions import (
    CronExpressionException, DuplicateTaskException, TaskAlreadyRunningException, TaskNotFoundException,
)
from kiyoshi.models.task import EventKind, RunStatus, SafeModePolicy

from tests.conftest import FakeGateway, make_task, wait_until


@pytest.fixture
def scheduler_factory(settings, policy, notifier):
    schedulers = []

    def factory(gateway):
        scheduler = TaskScheduler(gateway, policy=policy, notifier=notifier, settings=settings)
        schedulers.append(scheduler)
        return scheduler

    yield factory
    for scheduler in schedulers:
        scheduler.shutdown(wait=False)


class TestCreateTrigger:
    def test_five_field_expression_fires_on_the_minute(self):
        trigger = create_trigger("*/15 * * * *", "UTC")
        start = datetime(2024, 1, 1, 10, 7, 30, tzinfo=timezone.utc)

        assert trigger.get_next_fire_time(None, start) == datetime(2024, 1, 1, 10, 15, tzinfo=timezone.utc)

    def test_six_field_expression_has_seconds(self):
        trigger = create_trigger("*/10 * * * * *", "UTC")
        start = datetime(2024, 1, 1, 10, 0, 1, tzinfo=timezone.utc)

        assert trigger.get_next_fire_time(None, start) == datetime(2024, 1, 1, 10, 0, 10, tzinfo=timezone.utc)

    @pytest.mark.parametrize("expression", ["0 0 * * 0", "0 0 * * 7", "0 0 * * sun", "0 0 0 * * 0"])
    def test_day_of_week_zero_and_seven_are_sunday(self, expression):
        trigger = create_trigger(expression, "UTC")
        start = datetime(2024, 6, 26, tzinfo=timezone.utc)

        fire_time = trigger.get_next_fire_time(None, start)

        assert fire_time == datetime(2024, 6, 30, tzinfo=timezone.utc)
        assert fire_time.weekday() == 6

    def test_day_of_week_range_uses_cron_numbering(self):
        weekdays = create_trigger("0 0 * * 1-5", "UTC")
        weekend = create_trigger("0 0 * * 5-7", "UTC")
        saturday = datetime(2024, 6, 29, 1, tzinfo=timezone.utc)
        monday = datetime(2024, 7, 1, 1, tzinfo=timezone.utc)

        assert weekdays.get_next_fire_time(None, saturday) == datetime(2024, 7, 1, tzinfo=timezone.utc)
        assert weekend.get_next_fire_time(None, saturday) == datetime(2024, 6, 30, tzinfo=timezone.utc)
        assert weekend.get_next_fire_time(None, monday) == datetime(2024, 7, 5, tzinfo=timezone.utc)

    @pytest.mark.parametrize("expression", ["", "* * *", "61 * * * *", "not a cron at all x", "0 0 * * 8"])
    def test_invalid_expression(self, expression):
        with pytest.raises(CronExpressionException):
            create_trigger(expression, "UTC", task_name="bad")


class TestLoading:
    def test_disabled_task_is_never_scheduled(self, scheduler_factory, gateway):
        scheduler = scheduler_factory(gateway)
        loaded = scheduler.load_tasks([make_task("off", enabled=False)])

        assert loaded == []
        assert scheduler.list_jobs() == []
        assert scheduler.scheduler.get_job("off") is None
        with pytest.raises(TaskNotFoundException):
            scheduler.trigger_now("off")

    def test_bad_cron_only_skips_that_task(self, scheduler_factory, gateway):
        scheduler = scheduler_factory(gateway)
        loaded = scheduler.load_tasks([
            make_task("broken", cron_schedule="99 * * * *"),
            make_task("good"),
        ])

        assert loaded == ["good"]
        assert [job["name"] for job in scheduler.list_jobs()] == ["good"]

    def test_duplicate_name_keeps_first(self, scheduler_factory, gateway):
        scheduler = scheduler_factory(gateway)
        first = make_task("dup", batch_size=10)
        loaded = scheduler.load_tasks([first, make_task("dup", batch_size=20)])

        assert loaded == ["dup"]
        assert scheduler.get_task("dup") == first

    def test_load_task_raises_on_duplicate(self, scheduler_factory, gateway):
        scheduler = scheduler_factory(gateway)
        scheduler.load_task(make_task("dup"))

        with pytest.raises(DuplicateTaskException):
            scheduler.load_task(make_task("dup"))

    def test_unload_removes_timer(self, scheduler_factory, gateway):
        scheduler = scheduler_factory(gateway)
        scheduler.load_task(make_task("a"))

        assert scheduler.unload_task("a") is True
        assert scheduler.scheduler.get_job("a") is None
        assert scheduler.unload_task("a") is False

    def test_next_run_time_before_start(self, scheduler_factory, gateway):
        scheduler = scheduler_factory(gateway)
        scheduler.load_task(make_task("a", cron_schedule="0 0 * * *"))

        next_run = scheduler.get_next_run_time("a")
        assert next_run is not None
        assert (next_run.hour, next_run.minute, next_run.second) == (0, 0, 0)
        assert scheduler.get_next_run_time("missing") is None


class TestReload:
    def test_reload_applies_changes(self, scheduler_factory, gateway):
        scheduler = scheduler_factory(gateway)
        scheduler.load_tasks([make_task("keep"), make_task("change"), make_task("drop")])

        summary = scheduler.reload(
            [
                make_task("keep"),
                make_task("change", batch_size=50),
                make_task("new"),
                make_task("drop", enabled=False),
            ],
            policy=SafeModePolicy(enabled=True, retention_days=60),
        )

        assert summary["unchanged"] == ["keep"]
        assert summary["updated"] == ["change"]
        assert summary["added"] == ["new"]
        assert summary["removed"] == ["drop"]
        assert scheduler.get_task("change").batch_size == 50
        assert scheduler.policy.retention_days == 60
        assert sorted(job["name"] for job in scheduler.list_jobs()) == ["change", "keep", "new"]

    def test_reload_with_broken_cron_unloads_old_definition(self, scheduler_factory, gateway):
        scheduler = scheduler_factory(gateway)
        scheduler.load_task(make_task("a"))

        summary = scheduler.reload([make_task("a", cron_schedule="bad cron")])

        assert summary["failed"] == ["a"]
        assert scheduler.list_jobs() == []


class TestDispatch:
    def test_trigger_now_runs_pipeline(self, scheduler_factory, notifier):
        gateway = FakeGateway([1000, 200])
        scheduler = scheduler_factory(gateway)
        scheduler.load_task(make_task("a", query_interval_seconds=0))

        record = scheduler.trigger_now("a").result(timeout=10)

        assert record.status == RunStatus.SUCCEEDED
        assert record.rows_affected_total == 1200
        assert gateway.calls[0].startswith("DELETE FROM validation_runs WHERE created_at < DATE_SUB('")
        assert "LIMIT 1000" in gateway.calls[0]
        assert record.interval is not None
        assert [event.status for event in notifier.events] == [RunStatus.SUCCEEDED]

    def test_policy_rejection_never_reaches_database(self, scheduler_factory, notifier, gateway):
        scheduler = scheduler_factory(gateway)
        scheduler.load_task(make_task("unsafe", template_query="DELETE FROM {{ table_name }}"))

        record = scheduler.trigger_now("unsafe").result(timeout=10)

        assert record.status == RunStatus.FAILED
        assert record.error_kind == "policy_rejected"
        assert gateway.calls == []
        assert len(notifier.events) == 1

    def test_template_error_fails_run(self, scheduler_factory, gateway):
        scheduler = scheduler_factory(gateway)
        scheduler.load_task(make_task("broken", template_query="DELETE FROM {{ missing_table }} WHERE x < 1"))

        record = scheduler.trigger_now("broken").result(timeout=10)

        assert record.status == RunStatus.FAILED
        assert record.error_kind == "template_error"
        assert gateway.calls == []

    def test_overlapping_firing_is_skipped(self, scheduler_factory, notifier, blocking_gateway):
        scheduler = scheduler_factory(blocking_gateway)
        scheduler.load_task(make_task("slow"))

        future = scheduler.trigger_now("slow")
        assert blocking_gateway.started.wait(5)
        assert scheduler.is_running("slow")

        assert scheduler.dispatch("slow", scheduler.now()) is None
        with pytest.raises(TaskAlreadyRunningException):
            scheduler.trigger_now("slow")

        blocking_gateway.release.set()
        assert future.result(timeout=10).status == RunStatus.SUCCEEDED
        assert wait_until(lambda: not scheduler.is_running("slow"))

        skipped = [event for event in notifier.events if event.kind == EventKind.SKIPPED_OVERLAP]
        assert len(skipped) == 2
        assert blocking_gateway.calls == 1

    def test_unloaded_task_keeps_overlap_guard(self, scheduler_factory, blocking_gateway):
        scheduler = scheduler_factory(blocking_gateway)
        scheduler.load_task(make_task("slow"))
        future = scheduler.trigger_now("slow")
        assert blocking_gateway.started.wait(5)

        scheduler.unload_task("slow")
        scheduler.load_task(make_task("slow"))
        assert scheduler.dispatch("slow", scheduler.now()) is None

        blocking_gateway.release.set()
        future.result(timeout=10)

    def test_distinct_tasks_run_in_parallel(self, scheduler_factory, blocking_gateway):
        scheduler = scheduler_factory(blocking_gateway)
        scheduler.load_tasks([make_task("a"), make_task("b")])

        first = scheduler.trigger_now("a")
        second = scheduler.trigger_now("b")
        assert wait_until(lambda: blocking_gateway.calls == 2)

        blocking_gateway.release.set()
        assert first.result(timeout=10).status == RunStatus.SUCCEEDED
        assert second.result(timeout=10).status == RunStatus.SUCCEEDED


class TestRunningScheduler:
    def test_only_enabled_tasks_fire(self, scheduler_factory):
        gateway = FakeGateway()
        scheduler = scheduler_factory(gateway)
        scheduler.load_tasks([
            make_task("on", cron_schedule="* * * * * *"),
            make_task("off", cron_schedule="* * * * * *", enabled=False,
                      template_query="DELETE FROM off_table WHERE created_at < '2000-01-01'"),
        ])
        scheduler.start()

        assert wait_until(lambda: len(gateway.calls) >= 1, timeout=5)
        scheduler.shutdown(wait=True)

        assert all("validation_runs" in sql for sql in gateway.calls)

    def test_health_reports_scheduler_and_database(self, scheduler_factory):
        gateway = FakeGateway()
        scheduler = scheduler_factory(gateway)

        assert scheduler.health()["healthy"] is False
        scheduler.start()
        health = scheduler.health()
        assert health["healthy"] is True
        assert health["database"]["reachable"] is True

        gateway.healthy = False
        assert scheduler.health()["healthy"] is False
