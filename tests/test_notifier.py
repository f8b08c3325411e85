"""Tests for run notifications."""

from datetime import datetime, timedelta

import pytest
import requests

from config.loader import SlackSettings
from kiyoshi.models.task import EventKind, RunEvent, RunStatus
from kiyoshi.services.notifier import (
    CompositeNotifier, LoggingNotifier, SlackNotifier, build_notifier, safe_notify,
)

from tests.conftest import RecordingNotifier

STARTED = datetime(2024, 6, 30, 3, 0, 0)


def make_event(status=RunStatus.SUCCEEDED, **overrides) -> RunEvent:
    data = {
        "kind": EventKind.RUN,
        "task_name": "purge_runs",
        "status": status,
        "started_at": STARTED,
        "finished_at": STARTED + timedelta(seconds=12.5),
        "batches_executed": 3,
        "rows_affected_total": 2500,
        "retries": 1,
    }
    data.update(overrides)
    return RunEvent(**data)


class FakeResponse:
    def __init__(self, body, status_code=200):
        self.body = body
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse({"ok": True})
        self.error = error
        self.posts = []
        self.closed = False

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response

    def close(self):
        self.closed = True


class TestSlackNotifier:
    def test_format_success_message(self):
        message = SlackNotifier.format_message(make_event())

        assert message.startswith(":white_check_mark: Cleanup task *purge_runs* succeeded")
        assert "Duration: 12.50s" in message
        assert "Batches: 3 | Rows deleted: 2500 | Retries: 1" in message
        assert "Error" not in message

    def test_format_failure_message_includes_error(self):
        event = make_event(RunStatus.TIMED_OUT, error="run exceeded 60s", error_kind="timeout")
        message = SlackNotifier.format_message(event)

        assert message.startswith(":hourglass: Cleanup task *purge_runs* timed out")
        assert "Error (timeout): ```run exceeded 60s```" in message

    def test_format_overlap_skip(self):
        event = make_event(RunStatus.SKIPPED, kind=EventKind.SKIPPED_OVERLAP, error="previous run still active")
        assert SlackNotifier.format_message(event) == (
            ":fast_forward: Cleanup task *purge_runs* skipped: previous run still active"
        )

    @pytest.mark.parametrize("on_success,on_failure,status,expected", [
        (True, True, RunStatus.SUCCEEDED, True),
        (False, True, RunStatus.SUCCEEDED, False),
        (False, True, RunStatus.FAILED, True),
        (True, False, RunStatus.TIMED_OUT, False),
        (True, False, RunStatus.SKIPPED, False),
    ])
    def test_should_send(self, on_success, on_failure, status, expected):
        notifier = SlackNotifier("xoxb", "C1", on_success=on_success, on_failure=on_failure,
                                 session=FakeSession())
        assert notifier.should_send(make_event(status)) is expected
        notifier.close()

    def test_posts_to_chat_api(self):
        session = FakeSession()
        notifier = SlackNotifier("xoxb-token", "C123", session=session)

        notifier.notify(make_event())
        notifier.close()

        assert len(session.posts) == 1
        url, kwargs = session.posts[0]
        assert url == "https://slack.com/api/chat.postMessage"
        assert kwargs["headers"] == {"Authorization": "Bearer xoxb-token"}
        assert kwargs["json"]["channel"] == "C123"
        assert session.closed

    def test_filtered_event_is_not_sent(self):
        session = FakeSession()
        notifier = SlackNotifier("xoxb", "C1", on_success=False, session=session)

        notifier.notify(make_event())
        notifier.close()

        assert session.posts == []

    @pytest.mark.parametrize("session", [
        FakeSession(error=requests.ConnectionError("unreachable")),
        FakeSession(response=FakeResponse({"ok": False, "error": "channel_not_found"})),
        FakeSession(response=FakeResponse({}, status_code=500)),
    ])
    def test_delivery_errors_are_logged_not_raised(self, session, caplog):
        notifier = SlackNotifier("xoxb", "C1", session=session)

        notifier.notify(make_event(RunStatus.FAILED, error="boom"))
        notifier.close()

        assert "purge_runs" in caplog.text


class TestComposition:
    def test_failing_notifier_does_not_block_others(self):
        broken = RecordingNotifier(fail=True)
        healthy = RecordingNotifier()
        composite = CompositeNotifier([broken, healthy])

        composite.notify(make_event())

        assert len(broken.events) == 1
        assert len(healthy.events) == 1

    def test_safe_notify_swallows_errors(self):
        safe_notify(RecordingNotifier(fail=True), make_event())
        safe_notify(None, make_event())

    def test_logging_notifier(self, caplog):
        with caplog.at_level("INFO", logger="kiyoshi.services.notifier"):
            LoggingNotifier().notify(make_event())
        assert "purge_runs succeeded" in caplog.text


class TestBuildNotifier:
    def test_logging_only_by_default(self):
        notifier = build_notifier(None)
        assert [type(n) for n in notifier.notifiers] == [LoggingNotifier]

    def test_slack_added_when_enabled(self):
        notifier = build_notifier(SlackSettings(bot_token="xoxb", channel_id="C1", enabled=True))
        try:
            assert [type(n) for n in notifier.notifiers] == [LoggingNotifier, SlackNotifier]
        finally:
            notifier.close()

    def test_slack_without_credentials_is_skipped(self):
        notifier = build_notifier(SlackSettings(enabled=True))
        assert [type(n) for n in notifier.notifiers] == [LoggingNotifier]
