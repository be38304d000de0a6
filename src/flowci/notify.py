# notify.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional

from .errors import ExpressionError, NotificationError
from .expressions import interpolate
from .model import CANCELLED, FAILURE, PASSING, Notification
from .ui.console import Console, get_console

DEFAULT_TIMEOUT = 10.0


@dataclass
class NotifyEvent:
    """What a notification reports on: one job, or the whole run (job=None)."""
    workflow: str
    job: Optional[str]
    status: str
    duration: float
    run_id: str

    def payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["duration"] = round(self.duration, 3)
        return data


def outcome_of(status: str) -> Optional[str]:
    """Map a job/run status onto the `on:` vocabulary."""
    if status in PASSING:
        return "success"
    if status in (FAILURE, CANCELLED):
        return "failure"
    return None


def should_send(notification: Notification, status: str) -> bool:
    on = set(notification.on or [])
    if "always" in on:
        return True
    outcome = outcome_of(status)
    return outcome is not None and outcome in on


def default_message(event: NotifyEvent) -> str:
    target = f"{event.workflow} / {event.job}" if event.job else event.workflow
    return f"[flowci] {target}: {event.status.upper()} in {event.duration:.1f}s (run {event.run_id})"


class Notifier:
    """
    Sends job and run notifications.

    Delivery problems are reported as console warnings and never change
    a result.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, console: Optional[Console] = None):
        self.timeout = timeout
        self.console = console or get_console()

    def _post(self, url: str, data: dict) -> None:
        """
        POST `data` as JSON.

        Raises:
            NotificationError: on HTTP errors or when the host is unreachable
        """
        req = urllib.request.Request(
            url,
            data=json.dumps(data).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            raise NotificationError(f"HTTP {e.code} {e.reason}") from e
        except urllib.error.URLError as e:
            raise NotificationError(f"could not connect: {e.reason}") from e
        except OSError as e:
            # socket timeouts surface as plain OSError subclasses
            raise NotificationError(str(e)) from e

    def _message(self, notification: Notification, event: NotifyEvent, ctx: Mapping[str, Any]) -> str:
        if not notification.template:
            return default_message(event)
        scope = {**ctx, "notification": event.payload()}
        return interpolate(notification.template, scope)

    def send(self, notification: Notification, event: NotifyEvent, ctx: Mapping[str, Any]) -> None:
        """Deliver one notification. Raises NotificationError."""
        try:
            text = self._message(notification, event, ctx)
            url = interpolate(notification.url, ctx) if notification.url else ""
        except ExpressionError as e:
            raise NotificationError(f"bad expression: {e}") from e

        if notification.type == "console":
            self.console.print_info(f"NOTIFY: {text}")
            return

        if not url:
            raise NotificationError(f"{notification.type} notification has no url (empty after interpolation)")

        if notification.type == "webhook":
            self._post(url, event.payload())
        elif notification.type == "slack":
            body: Dict[str, Any] = {"text": text}
            if notification.channel:
                body["channel"] = notification.channel
            self._post(url, body)
        else:
            raise NotificationError(f"unknown notification type {notification.type!r}")

    def dispatch(
        self,
        event: NotifyEvent,
        notifications: List[Notification],
        ctx: Optional[Mapping[str, Any]] = None,
    ) -> List[str]:
        """
        Send every notification whose `on` list matches the event status.

        Returns the types that were delivered.
        """
        ctx = ctx or {}
        sent: List[str] = []
        for n in notifications:
            if not should_send(n, event.status):
                continue
            where = f"job '{event.job}'" if event.job else f"workflow '{event.workflow}'"
            try:
                self.send(n, event, ctx)
            except NotificationError as e:
                self.console.print_warning(f"{n.type} notification for {where} failed: {e}")
                continue
            self.console.print_debug(f"{n.type} notification sent for {where}")
            sent.append(n.type)
        return sent
