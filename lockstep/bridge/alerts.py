"""
Alert sinks.

An alert is ``(title, message, severity)``. Delivery failures are logged and
swallowed: an unreachable webhook must never stop the relay.
"""

from __future__ import annotations

import json
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Protocol, runtime_checkable

from lockstep.bridge.observability import BridgeLayer, get_logger


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Alert:
    title: str
    message: str
    severity: Severity = Severity.WARNING
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, str]:
        return {
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
        }


@runtime_checkable
class AlertSink(Protocol):
    def send(self, title: str, message: str, severity: Severity = Severity.WARNING) -> None: ...


_log = get_logger("alerts", BridgeLayer.ALERTS)

_LEVEL_FOR = {
    Severity.INFO: _log.info,
    Severity.WARNING: _log.warning,
    Severity.CRITICAL: _log.critical,
}


class LoggingAlertSink:
    """Writes alerts to the structured log."""

    def send(self, title: str, message: str, severity: Severity = Severity.WARNING) -> None:
        _LEVEL_FOR[severity](f"ALERT: {title}", alert_message=message, severity=severity.value)


class WebhookAlertSink:
    """POSTs alerts as JSON to a webhook, and logs them too."""

    def __init__(self, url: str, timeout_seconds: float = 10.0):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._fallback = LoggingAlertSink()

    def send(self, title: str, message: str, severity: Severity = Severity.WARNING) -> None:
        self._fallback.send(title, message, severity)
        body = json.dumps(Alert(title, message, severity).to_dict()).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                resp.read()
        except (urllib.error.URLError, OSError, ValueError) as exc:
            _log.error("alert delivery failed", error_code="ALERT_DELIVERY", url=self.url, error=str(exc))


class RecordingAlertSink:
    """Keeps alerts in memory."""

    def __init__(self):
        self.alerts: List[Alert] = []
        self._lock = threading.Lock()

    def send(self, title: str, message: str, severity: Severity = Severity.WARNING) -> None:
        with self._lock:
            self.alerts.append(Alert(title, message, severity))

    def titles(self) -> List[str]:
        with self._lock:
            return [a.title for a in self.alerts]


def make_alert_sink(webhook_url: Optional[str], timeout_seconds: float = 10.0) -> AlertSink:
    if webhook_url:
        return WebhookAlertSink(webhook_url, timeout_seconds)
    return LoggingAlertSink()
