"""
Tests for job and run notifications.
"""

import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from flowci.errors import NotificationError
from flowci.model import CACHED, CANCELLED, FAILURE, SKIPPED, SUCCESS, Notification
from flowci.notify import Notifier, NotifyEvent, default_message, outcome_of, should_send


def _event(status=FAILURE, job="test"):
    return NotifyEvent(workflow="ci", job=job, status=status, duration=1.23456, run_id="r1")


def _sent_body(urlopen):
    request = urlopen.call_args.args[0]
    return request, json.loads(request.data.decode("utf-8"))


@pytest.fixture
def urlopen():
    with patch("flowci.notify.urllib.request.urlopen") as mocked:
        mocked.return_value.__enter__.return_value = MagicMock()
        yield mocked


class TestOutcomes:
    """Tests for mapping statuses onto `on:` values."""

    @pytest.mark.parametrize("status,expected", [
        (SUCCESS, "success"),
        (CACHED, "success"),
        (FAILURE, "failure"),
        (CANCELLED, "failure"),
        (SKIPPED, None),
    ])
    def test_outcome_of(self, status, expected):
        assert outcome_of(status) == expected

    def test_should_send(self):
        assert should_send(Notification(type="console", on=["failure"]), FAILURE)
        assert not should_send(Notification(type="console", on=["failure"]), SUCCESS)
        assert should_send(Notification(type="console", on=["always"]), SKIPPED)
        assert not should_send(Notification(type="console", on=["success", "failure"]), SKIPPED)

    def test_default_message(self):
        assert default_message(_event()) == "[flowci] ci / test: FAILURE in 1.2s (run r1)"
        assert default_message(_event(job=None, status=SUCCESS)) == "[flowci] ci: SUCCESS in 1.2s (run r1)"


class TestNotifier:
    """Tests for Notifier delivery."""

    def test_webhook_payload(self, urlopen, console):
        n = Notification(type="webhook", url="https://hooks.example.com/${{ secrets.HOOK }}")
        Notifier(timeout=3, console=console).send(n, _event(), {"secrets": {"HOOK": "abc"}})

        request, body = _sent_body(urlopen)
        assert request.full_url == "https://hooks.example.com/abc"
        assert request.get_method() == "POST"
        assert request.get_header("Content-type") == "application/json"
        assert body == {"workflow": "ci", "job": "test", "status": FAILURE, "duration": 1.235, "run_id": "r1"}
        assert urlopen.call_args.kwargs["timeout"] == 3

    def test_slack_with_channel_and_template(self, urlopen, console):
        n = Notification(
            type="slack",
            url="https://hooks.slack.example/x",
            channel="#ci",
            template="${{ notification.job }} on ${{ matrix.python }}: ${{ notification.status }}",
        )
        Notifier(console=console).send(n, _event(), {"matrix": {"python": "3.12"}})

        _request, body = _sent_body(urlopen)
        assert body == {"text": "test on 3.12: failure", "channel": "#ci"}

    def test_console(self, urlopen, console, capsys):
        Notifier(console=console).send(Notification(type="console"), _event(), {})
        assert "NOTIFY: [flowci] ci / test: FAILURE" in capsys.readouterr().out
        urlopen.assert_not_called()

    def test_empty_url(self, urlopen, console):
        n = Notification(type="webhook", url="${{ secrets.MISSING }}")
        with pytest.raises(NotificationError, match="no url"):
            Notifier(console=console).send(n, _event(), {"secrets": {}})

    def test_http_error(self, urlopen, console):
        urlopen.side_effect = urllib.error.HTTPError("https://x", 500, "Server Error", {}, None)
        with pytest.raises(NotificationError, match="HTTP 500"):
            Notifier(console=console).send(Notification(type="webhook", url="https://x"), _event(), {})

    def test_dispatch_warns_and_continues(self, urlopen, console, capsys):
        urlopen.side_effect = urllib.error.URLError("connection refused")
        notifications = [
            Notification(type="webhook", url="https://down.example.com"),
            Notification(type="console", on=["always"]),
            Notification(type="console", on=["success"]),
        ]
        sent = Notifier(console=console).dispatch(_event(), notifications)

        assert sent == ["console"]
        captured = capsys.readouterr()
        assert "webhook notification for job 'test' failed: could not connect" in captured.err
        assert "NOTIFY:" in captured.out
