"""
Exceptions raised by the monitor.

Decoding never raises: a field the decoder cannot locate is simply absent
from the resulting ``Reading``.
"""

from __future__ import annotations


class MonitorError(Exception):
    """Base error for bosch_ebike_monitor."""


class InvalidStateError(MonitorError):
    """Raised when a command or transition is not allowed in the current state."""


class AlreadyInProgressError(MonitorError):
    """Raised when ``connect`` is issued while another attempt is pending."""


class BluetoothPermissionError(MonitorError, PermissionError):
    """Raised when the host has not granted the Bluetooth capabilities we need."""

    def __init__(self, missing: list[str] | tuple[str, ...]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing Bluetooth permissions: {', '.join(self.missing)}")


class TransportError(MonitorError):
    """Raised when the BLE transport fails to scan, connect, discover or subscribe."""


class ConfigurationError(MonitorError):
    """Raised when addressing or pattern configuration is missing or invalid."""

    def __init__(self, reasons: list[str] | tuple[str, ...] | str) -> None:
        if isinstance(reasons, str):
            reasons = [reasons]
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons) or "invalid configuration")
