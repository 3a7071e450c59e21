"""
Data models shared by the scanner, the session and observers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum


@dataclass(frozen=True, slots=True)
class PeripheralRef:
    """A device seen during a scan."""

    address: str
    name: str | None = None
    rssi: int = 0
    last_seen: float = field(default_factory=time.monotonic, compare=False)

    @property
    def display_name(self) -> str:
        return self.name or "Unknown Device"

    def merged(self, newer: PeripheralRef) -> PeripheralRef:
        """Apply a repeat sighting: newest RSSI wins, a known name is kept."""
        return replace(
            self,
            name=newer.name or self.name,
            rssi=newer.rssi,
            last_seen=newer.last_seen,
        )


class SessionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING_SERVICES = "discovering_services"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# States in which a transport link is (or is being) held open.
LINK_STATES = frozenset(
    {
        SessionState.CONNECTING,
        SessionState.DISCOVERING_SERVICES,
        SessionState.SUBSCRIBING,
        SessionState.STREAMING,
    }
)

# States reached after the transport reported the link as up.
CONNECTED_STATES = frozenset(
    {
        SessionState.DISCOVERING_SERVICES,
        SessionState.SUBSCRIBING,
        SessionState.STREAMING,
    }
)


@dataclass(frozen=True, slots=True)
class SessionStatus:
    """The observable session state; ``ERROR`` carries its cause."""

    state: SessionState = SessionState.IDLE
    reason: str | None = None
    error: BaseException | None = field(default=None, compare=False)

    @property
    def is_connected(self) -> bool:
        return self.state in CONNECTED_STATES

    def __str__(self) -> str:
        if self.reason:
            return f"{self.state.value} ({self.reason})"
        return self.state.value


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One line of the raw data log."""

    timestamp: float
    frame_length: int
    raw_hex: str
    summary: str

    def format(self) -> str:
        clock = datetime.fromtimestamp(self.timestamp).strftime("%H:%M:%S")
        return f"{clock} [{self.frame_length}b]: {self.raw_hex}"
