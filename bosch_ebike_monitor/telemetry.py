"""
Change detection and the bounded raw data log.

Both consume decoded ``Reading`` objects. The change detector turns value
changes into alerts; the log keeps the last few frames for inspection,
whether or not anything was decoded from them.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterator

from .alerts import AlertSink
from .models import LogEntry
from .protocol import Reading, assist_mode_label

logger = logging.getLogger(__name__)

DEFAULT_LOG_CAPACITY = 50


class ChangeDetector:
    """
    Emits battery and assist mode alerts when a value changes.

    The first value seen after ``reset()`` only establishes the baseline.
    A reading that lacks a field leaves that field's baseline untouched;
    baselines go back to unknown only on ``reset()``.
    """

    def __init__(self, alerts: AlertSink | None = None) -> None:
        self._alerts = alerts
        self.previous_battery: int | None = None
        self.previous_assist_mode: int | None = None

    def reset(self) -> None:
        self.previous_battery = None
        self.previous_assist_mode = None

    def process(self, reading: Reading) -> list[tuple[str, int]]:
        """
        Compare *reading* against the baseline and fire alerts.

        Returns
        -------
        list[tuple[str, int]]
            ``("battery", level)`` / ``("assist_mode", code)`` for each alert.
        """
        changes: list[tuple[str, int]] = []

        battery = reading.battery_level
        if battery is not None:
            if self.previous_battery is not None and battery != self.previous_battery:
                changes.append(("battery", battery))
                self._emit_battery(battery)
            self.previous_battery = battery

        assist = reading.assist_mode
        if assist is not None:
            if (
                self.previous_assist_mode is not None
                and assist != self.previous_assist_mode
            ):
                changes.append(("assist_mode", assist))
                self._emit_assist(assist)
            self.previous_assist_mode = assist

        return changes

    def _emit_battery(self, level: int) -> None:
        logger.debug("Battery changed to %d%%", level)
        if self._alerts is None:
            return
        try:
            self._alerts.notify_battery_changed(level)
        except Exception:
            logger.warning("Battery alert sink raised", exc_info=True)

    def _emit_assist(self, code: int) -> None:
        label = assist_mode_label(code)
        logger.debug("Assist mode changed to %s", label)
        if self._alerts is None:
            return
        try:
            self._alerts.notify_assist_mode_changed(label)
        except Exception:
            logger.warning("Assist alert sink raised", exc_info=True)


class DataLog:
    """
    Fixed-capacity log of received frames, newest first.

    Once full, each append evicts the oldest entry.
    """

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen  # type: ignore[return-value]

    def append(self, reading: Reading) -> LogEntry:
        entry = LogEntry(
            timestamp=reading.timestamp,
            frame_length=reading.frame_length,
            raw_hex=reading.raw_hex,
            summary=reading.summary(),
        )
        # appendleft on a bounded deque drops from the right (oldest)
        self._entries.appendleft(entry)
        return entry

    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(list(self._entries))
