"""
User-facing alert sinks.

The session only decides *when* to alert; how an alert reaches the rider
is up to the sink.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    def notify_connection_changed(self, is_connected: bool) -> None: ...

    def notify_battery_changed(self, level: int) -> None: ...

    def notify_assist_mode_changed(self, label: str) -> None: ...


class LoggingAlertSink:
    """Writes alerts to the log. Default sink for the CLI."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def notify_connection_changed(self, is_connected: bool) -> None:
        if is_connected:
            self._log.info("Bike connected")
        else:
            self._log.warning("Bike disconnected")

    def notify_battery_changed(self, level: int) -> None:
        self._log.info("Battery level changed: %d%%", level)

    def notify_assist_mode_changed(self, label: str) -> None:
        self._log.info("Assist mode changed: %s", label)


class CallbackAlertSink:
    """
    Forwards every alert to a single callable as ``(kind, value)``.

    ``kind`` is one of ``"connection"``, ``"battery"``, ``"assist_mode"``.
    """

    def __init__(self, callback: Callable[[str, Any], None]) -> None:
        self._callback = callback

    def notify_connection_changed(self, is_connected: bool) -> None:
        self._callback("connection", is_connected)

    def notify_battery_changed(self, level: int) -> None:
        self._callback("battery", level)

    def notify_assist_mode_changed(self, label: str) -> None:
        self._callback("assist_mode", label)
