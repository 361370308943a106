"""
Alert Notifications
===================

Notification channels and the dispatcher that fans a new alert out to them.
The dispatcher's ``on_alert`` is the hook handed to AlertManager.

Usage:
    from lifecycle_observer.notifications import (
        ConsoleChannel, FileChannel, NotificationDispatcher,
    )

    dispatcher = NotificationDispatcher(
        [ConsoleChannel(), FileChannel(data_dir / "alerts.jsonl")],
        storage=storage,
    )
    manager = AlertManager(storage, on_alert=dispatcher.on_alert)
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console
from rich.panel import Panel

from lifecycle_observer import output
from lifecycle_observer.records import Alert, AlertNotification, utc_now
from lifecycle_observer.storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_ALERT_LOG = "alerts.jsonl"


@dataclass
class NotificationResult:
    """Result of sending a notification through one channel."""
    success: bool
    channel: str
    error: Optional[str] = None
    details: dict = field(default_factory=dict)

    def to_notification(self, sent_at: datetime) -> AlertNotification:
        return AlertNotification(
            channel=self.channel,
            sent_at=sent_at,
            success=self.success,
            error=self.error,
        )


# =============================================================================
# Formatting Helpers
# =============================================================================

_SEVERITY_LABELS = {
    "critical": ("siren", "CRITICAL"),
    "error": ("cross", "ERROR"),
    "warning": ("warning", "WARNING"),
    "info": ("info", "INFO"),
}


def format_severity(severity: str) -> str:
    """Severity label with an icon, e.g. ``"✗ ERROR"``."""
    label = _SEVERITY_LABELS.get(severity)
    if label is None:
        return severity.upper()
    return f"{output.icon(label[0])} {label[1]}"


def format_category(category: str) -> str:
    """``"security_breach"`` -> ``"Security Breach"``."""
    return " ".join(word.capitalize() for word in category.split("_"))


def format_alert_date(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


def build_alert_summary(alert: Alert) -> str:
    """Plain-text multi-line summary of an alert."""
    lines = [
        f"Alert: {alert.title}",
        f"Severity: {alert.severity}",
        f"Category: {format_category(alert.category)}",
        f"Message: {alert.message}",
    ]
    if alert.tool:
        lines.append(f"Tool: {alert.tool}")
    if alert.project:
        lines.append(f"Project: {alert.project}")
    lines.append(f"Triggered: {format_alert_date(alert.triggered_at)}")
    lines.append(f"ID: {alert.id}")
    return "\n".join(lines)


# =============================================================================
# Channels
# =============================================================================

class NotificationChannel:
    """Base class for notification channels."""

    name: str = "channel"

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def is_enabled(self) -> bool:
        return self.enabled

    async def send(self, alert: Alert) -> NotificationResult:
        raise NotImplementedError

    def _disabled(self) -> NotificationResult:
        return NotificationResult(success=False, channel=self.name, error="Channel is disabled")


class ConsoleChannel(NotificationChannel):
    """Prints alerts to the terminal as severity-coloured panels."""

    name = "console"

    def __init__(self, enabled: bool = True, console: Optional[Console] = None):
        super().__init__(enabled)
        self.console = console or output.console

    async def send(self, alert: Alert) -> NotificationResult:
        if not self.enabled:
            return self._disabled()

        style = output.severity_style(alert.severity)
        body = [f"[lo.text]{alert.message}[/]", ""]
        if alert.tool:
            body.append(f"[lo.key]Tool:[/] {alert.tool}")
        if alert.project:
            body.append(f"[lo.key]Project:[/] {alert.project}")
        body.append(f"[lo.key]Category:[/] {format_category(alert.category)}")
        body.append(f"[lo.timestamp]{format_alert_date(alert.triggered_at)}  {alert.id}[/]")

        self.console.print(Panel(
            "\n".join(body),
            title=f"[{style}]{format_severity(alert.severity)}[/] {alert.title}",
            border_style=style,
            padding=(1, 2),
        ))
        return NotificationResult(success=True, channel=self.name)


class FileChannel(NotificationChannel):
    """Appends one JSON object per alert to a log file."""

    name = "file"

    def __init__(self, path: Path = Path(DEFAULT_ALERT_LOG), enabled: bool = True):
        super().__init__(enabled)
        self.path = Path(path)

    async def send(self, alert: Alert) -> NotificationResult:
        if not self.enabled:
            return self._disabled()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(alert.to_dict()) + "\n")
        return NotificationResult(success=True, channel=self.name, details={"path": str(self.path)})

    def read_alerts(self) -> list[dict]:
        """Read back logged alerts (oldest first)."""
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


# =============================================================================
# Dispatcher
# =============================================================================

class NotificationDispatcher:
    """
    Sends alerts through every enabled channel.

    A channel that raises is recorded as an unsuccessful result; the other
    channels still run. When storage is given, each attempt is appended to
    the alert's notification log.
    """

    def __init__(
        self,
        channels: list[NotificationChannel],
        storage: Optional[Storage] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.channels = list(channels)
        self.storage = storage
        self._clock = clock or utc_now

    async def on_alert(self, alert: Alert) -> list[NotificationResult]:
        results = []
        for channel in self.channels:
            if not channel.is_enabled():
                continue
            try:
                result = await channel.send(alert)
            except Exception as e:
                logger.error("Notification channel %s failed for %s: %s", channel.name, alert.id, e)
                result = NotificationResult(success=False, channel=channel.name, error=str(e))
            results.append(result)

            if self.storage is not None:
                await self.storage.add_alert_notification(alert.id, result.to_notification(self._clock()))
        return results
