"""
bosch_ebike_monitor -- watch a Bosch e-bike drive unit over BLE.

Quick start::

    import asyncio
    from bosch_ebike_monitor import (
        BleakTransport, LoggingAlertSink, MonitorSession, SessionState, load_config,
    )

    async def main():
        session = MonitorSession(
            load_config("bike.json"), BleakTransport(), alerts=LoggingAlertSink()
        )
        session.add_reading_listener(lambda r: r and print(r.summary()))
        async with session:
            await session.connect()
            await session.wait_for_state(SessionState.DISCONNECTED, SessionState.ERROR)

    asyncio.run(main())
"""

from .protocol import (
    AssistMode as AssistMode,
    PatternConfig as PatternConfig,
    Reading as Reading,
    TelemetryFrame as TelemetryFrame,
    assist_mode_label as assist_mode_label,
    decode as decode,
    estimate_speed as estimate_speed,
    find_pattern as find_pattern,
    format_hex as format_hex,
)
from .models import (
    LogEntry as LogEntry,
    PeripheralRef as PeripheralRef,
    SessionState as SessionState,
    SessionStatus as SessionStatus,
)
from .errors import (
    AlreadyInProgressError as AlreadyInProgressError,
    BluetoothPermissionError as BluetoothPermissionError,
    ConfigurationError as ConfigurationError,
    InvalidStateError as InvalidStateError,
    MonitorError as MonitorError,
    TransportError as TransportError,
)
from .config import (
    MonitorConfig as MonitorConfig,
    load_config as load_config,
)
from .alerts import (
    AlertSink as AlertSink,
    CallbackAlertSink as CallbackAlertSink,
    LoggingAlertSink as LoggingAlertSink,
)
from .scanner import ScanRegistry as ScanRegistry
from .telemetry import (
    ChangeDetector as ChangeDetector,
    DataLog as DataLog,
)
from .transport import (
    BleakTransport as BleakTransport,
    Transport as Transport,
    TransportListener as TransportListener,
)
from .session import MonitorSession as MonitorSession

__all__ = [
    # Protocol
    "AssistMode",
    "PatternConfig",
    "Reading",
    "TelemetryFrame",
    "assist_mode_label",
    "decode",
    "estimate_speed",
    "find_pattern",
    "format_hex",
    # Models
    "LogEntry",
    "PeripheralRef",
    "SessionState",
    "SessionStatus",
    # Errors
    "AlreadyInProgressError",
    "BluetoothPermissionError",
    "ConfigurationError",
    "InvalidStateError",
    "MonitorError",
    "TransportError",
    # Config
    "MonitorConfig",
    "load_config",
    # Collaborators
    "AlertSink",
    "CallbackAlertSink",
    "LoggingAlertSink",
    "BleakTransport",
    "Transport",
    "TransportListener",
    # Core
    "ScanRegistry",
    "ChangeDetector",
    "DataLog",
    "MonitorSession",
]

__version__ = "0.1.0"
