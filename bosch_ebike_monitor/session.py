"""
Monitoring session: one BLE connection from scan to live data.

Lifecycle::

    IDLE -> SCANNING -> CONNECTING -> DISCOVERING_SERVICES -> SUBSCRIBING
         -> STREAMING -> DISCONNECTED

with ERROR reachable from every setup step. DISCONNECTED and ERROR are
retry points: a new scan or connect may start from either.

All state lives on the event loop that issued the first command. Transport
callbacks may arrive from any thread; they are handed to that loop and
applied one at a time, so exactly one piece of code reasons about a
transition at any moment. Transport I/O runs in tasks and never blocks a
transition.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable

from .alerts import AlertSink
from .config import DEFAULT_SCAN_TIMEOUT, MonitorConfig
from .errors import (
    AlreadyInProgressError,
    BluetoothPermissionError,
    ConfigurationError,
    InvalidStateError,
    TransportError,
)
from .models import LINK_STATES, LogEntry, PeripheralRef, SessionState, SessionStatus
from .protocol import PatternConfig, Reading, TelemetryFrame, decode, format_hex
from .scanner import ScanRegistry
from .telemetry import DEFAULT_LOG_CAPACITY, ChangeDetector, DataLog
from .transport import Transport

logger = logging.getLogger(__name__)

S = SessionState

TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    S.IDLE: frozenset({S.SCANNING, S.CONNECTING, S.ERROR}),
    S.SCANNING: frozenset({S.DISCONNECTED, S.CONNECTING, S.ERROR}),
    S.CONNECTING: frozenset({S.DISCOVERING_SERVICES, S.ERROR, S.DISCONNECTED}),
    S.DISCOVERING_SERVICES: frozenset({S.SUBSCRIBING, S.ERROR, S.DISCONNECTED}),
    S.SUBSCRIBING: frozenset({S.STREAMING, S.ERROR, S.DISCONNECTED}),
    S.STREAMING: frozenset({S.DISCONNECTED}),
    S.DISCONNECTED: frozenset({S.SCANNING, S.CONNECTING, S.ERROR}),
    S.ERROR: frozenset({S.SCANNING, S.CONNECTING, S.DISCONNECTED, S.ERROR}),
}

# A connection attempt is in flight in these states.
PENDING_STATES = frozenset({S.CONNECTING, S.DISCOVERING_SERVICES, S.SUBSCRIBING})

PermissionCheck = Callable[[], Iterable[str]]


class MonitorSession:
    """
    Drives one monitored bike connection.

    Usage::

        session = MonitorSession(load_config("bike.json"), BleakTransport())
        await session.connect()
        await session.wait_for_state(SessionState.STREAMING, timeout=30)
        session.add_reading_listener(lambda r: print(r.summary()))

    Parameters
    ----------
    config : MonitorConfig | None
        Addressing and pattern settings. Validated when a connection starts.
    transport : Transport
        BLE transport; the session registers itself as its listener.
    alerts : AlertSink | None
        Receives connection, battery and assist mode alerts.
    permission_check :
        Returns the names of missing host permissions. Empty means granted.
    """

    def __init__(
        self,
        config: MonitorConfig | None,
        transport: Transport,
        *,
        alerts: AlertSink | None = None,
        permission_check: PermissionCheck | None = None,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
    ) -> None:
        self._config = config
        self._transport = transport
        self._alerts = alerts
        self._permission_check = permission_check

        self._status = SessionStatus()
        self._registry = ScanRegistry()
        self._detector = ChangeDetector(alerts)
        self._log = DataLog(log_capacity)
        self._reading: Reading | None = None
        self._patterns: PatternConfig | None = None
        self._service_uuid: str | None = None
        self._characteristic_uuid: str | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._state_changed = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._attempt = 0
        self._target: str | None = None
        self._link_open = False  # transport handle held, must be released
        self._link_up = False  # transport reported the link as connected

        self._state_listeners: list[Callable[[SessionStatus], None]] = []
        self._reading_listeners: list[Callable[[Reading | None], None]] = []
        self._log_listeners: list[Callable[[list[LogEntry]], None]] = []

        transport.set_listener(self)

    # -- context manager --------------------------------------------------

    async def __aenter__(self) -> MonitorSession:
        self._bind_loop()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # -- read-only views --------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def state(self) -> SessionState:
        return self._status.state

    @property
    def reading(self) -> Reading | None:
        """Most recent reading of the current connection, if any."""
        return self._reading

    @property
    def scan_results(self) -> list[PeripheralRef]:
        return self._registry.results

    @property
    def log_entries(self) -> list[LogEntry]:
        return self._log.entries()

    @property
    def patterns(self) -> PatternConfig | None:
        """Patterns fixed for the current connection."""
        return self._patterns

    @property
    def target(self) -> str | None:
        return self._target

    @property
    def config(self) -> MonitorConfig | None:
        return self._config

    # -- observers --------------------------------------------------------

    def add_state_listener(
        self, callback: Callable[[SessionStatus], None]
    ) -> Callable[[], None]:
        return _add(self._state_listeners, callback)

    def add_reading_listener(
        self, callback: Callable[[Reading | None], None]
    ) -> Callable[[], None]:
        return _add(self._reading_listeners, callback)

    def add_log_listener(
        self, callback: Callable[[list[LogEntry]], None]
    ) -> Callable[[], None]:
        return _add(self._log_listeners, callback)

    def add_scan_listener(
        self, callback: Callable[[list[PeripheralRef]], None]
    ) -> Callable[[], None]:
        return self._registry.add_listener(callback)

    async def wait_for_state(
        self, *states: SessionState, timeout: float | None = None
    ) -> SessionStatus:
        """Wait until the session is in one of *states*."""

        async def _wait() -> SessionStatus:
            while self._status.state not in states:
                self._state_changed.clear()
                await self._state_changed.wait()
            return self._status

        return await asyncio.wait_for(_wait(), timeout)

    # -- commands ---------------------------------------------------------

    async def start_scan(self, timeout: float | None = None) -> None:
        """
        Start looking for peripherals.

        Rejected with ``InvalidStateError`` while a scan is running or a
        connection is pending or live. Missing permissions move the session
        to ERROR and raise ``BluetoothPermissionError``. A transport failure
        moves the session to ERROR.
        """
        self._bind_loop()
        state = self._status.state
        if state is S.SCANNING:
            raise InvalidStateError("A scan is already running")
        if state in LINK_STATES:
            raise InvalidStateError(f"Cannot scan while {state.value}; disconnect first")
        self._require_permissions()

        if timeout is None:
            timeout = self._config.scan_timeout if self._config else DEFAULT_SCAN_TIMEOUT
        self._transition(S.SCANNING)
        generation = self._registry.begin_scan(timeout, self._on_scan_timeout)
        try:
            await self._transport.start_discovery()
        except Exception as exc:
            logger.error("Failed to start scan: %s", exc)
            if self._status.state is S.SCANNING and self._registry.generation == generation:
                self._fail(_as_transport_error("Scan", exc))

    async def stop_scan(self) -> None:
        """End a running scan; the results stay available for selection."""
        if self._status.state is not S.SCANNING:
            return
        await self._gather(self._transition(S.DISCONNECTED, "scan stopped"))

    async def connect(self, address: str | None = None) -> None:
        """
        Start connecting to *address* (default: the configured bike).

        Returns once the attempt is launched; watch ``status`` or use
        ``wait_for_state`` for the outcome.

        Raises
        ------
        AlreadyInProgressError
            Another attempt is pending. It is left untouched.
        InvalidStateError
            Already streaming.
        BluetoothPermissionError, ConfigurationError
            The session cannot start; it moves to ERROR.
        """
        self._bind_loop()
        state = self._status.state
        if state in PENDING_STATES:
            raise AlreadyInProgressError(
                f"Connection to {self._target} already in progress"
            )
        if state is S.STREAMING:
            raise InvalidStateError("Already connected; disconnect first")
        self._require_permissions()
        config = self._require_config(address)

        target = address or config.address
        assert target is not None
        self._patterns = config.patterns
        self._service_uuid = config.service_uuid
        self._characteristic_uuid = config.characteristic_uuid
        self._attempt += 1
        attempt = self._attempt
        self._target = target
        self._link_open = True
        logger.info("Attempting to connect to: %s", target)
        await self._gather(self._transition(S.CONNECTING, target))

        if self._attempt != attempt or self._status.state is not S.CONNECTING:
            return
        self._spawn("Connect", S.CONNECTING, self._transport.connect, target)

    async def disconnect(self) -> None:
        """
        Drop the connection or stop the scan. Safe from any state.

        The transport handle is released at most once per connection, so
        repeated or concurrent calls do nothing after the first.
        """
        state = self._status.state
        if state in (S.IDLE, S.DISCONNECTED):
            logger.debug("disconnect() ignored in state %s", state.value)
            return
        await self._gather(self._transition(S.DISCONNECTED, "disconnect requested"))

    def clear_log(self) -> None:
        self._log.clear()
        self._emit(self._log_listeners, self._log.entries())

    async def aclose(self) -> None:
        """Disconnect and wait for outstanding transport work."""
        await self.disconnect()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- transport callbacks ----------------------------------------------

    def on_sighting(self, ref: PeripheralRef) -> None:
        self._call_on_loop(self._handle_sighting, ref)

    def on_connection_change(self, connected: bool) -> None:
        self._call_on_loop(self._handle_connection_change, connected)

    def on_services_resolved(
        self, success: bool, services: dict[str, set[str]] | None = None
    ) -> None:
        self._call_on_loop(self._handle_services_resolved, success, services)

    def on_subscribed(self, success: bool) -> None:
        self._call_on_loop(self._handle_subscribed, success)

    def on_notification(self, frame: TelemetryFrame) -> None:
        self._call_on_loop(self._handle_notification, frame)

    def _handle_sighting(self, ref: PeripheralRef) -> None:
        if self._status.state is not S.SCANNING:
            return
        self._registry.on_sighting(ref)

    def _handle_connection_change(self, connected: bool) -> None:
        state = self._status.state
        if connected:
            if state is S.CONNECTING:
                self._transition(S.DISCOVERING_SERVICES)
            else:
                logger.debug("Ignoring late connect report in state %s", state.value)
            return

        if state is S.CONNECTING:
            self._fail(TransportError(f"Failed to connect to {self._target}"))
        elif state in (S.DISCOVERING_SERVICES, S.SUBSCRIBING):
            self._fail(TransportError("Connection lost during setup"))
        elif state is S.STREAMING:
            self._transition(S.DISCONNECTED, "connection lost")
        else:
            logger.debug("Ignoring disconnect report in state %s", state.value)

    def _handle_services_resolved(
        self, success: bool, services: dict[str, set[str]] | None
    ) -> None:
        if self._status.state is not S.DISCOVERING_SERVICES:
            logger.debug("Ignoring late service discovery result")
            return
        if not success:
            self._fail(TransportError("Service discovery failed"))
            return
        service_uuid = self._service_uuid
        characteristic_uuid = self._characteristic_uuid
        assert service_uuid and characteristic_uuid
        if services is not None:
            chars = services.get(service_uuid.lower())
            if chars is None or characteristic_uuid.lower() not in chars:
                logger.error("Required service or characteristic not found")
                self._fail(TransportError("Required service or characteristic not found"))
                return
        self._transition(S.SUBSCRIBING)

    def _handle_subscribed(self, success: bool) -> None:
        if self._status.state is not S.SUBSCRIBING:
            logger.debug("Ignoring late subscription result")
            return
        if success:
            self._transition(S.STREAMING)
        else:
            self._fail(TransportError("Failed to enable notifications"))

    def _handle_notification(self, frame: TelemetryFrame) -> None:
        if self._status.state is not S.STREAMING:
            logger.debug("Dropping frame received while %s", self._status.state.value)
            return
        try:
            reading = decode(frame, self._patterns)
        except Exception:
            logger.warning(
                "Failed to decode notification: %s", frame.data.hex(), exc_info=True
            )
            reading = Reading(
                raw_hex=format_hex(frame.data),
                timestamp=frame.received_at,
                frame_length=frame.length,
            )

        self._detector.process(reading)
        self._log.append(reading)
        self._reading = reading
        logger.debug("Data received: %s", reading.summary())

        self._emit(self._reading_listeners, reading)
        self._emit(self._log_listeners, self._log.entries())

    # -- state machine ----------------------------------------------------

    def _transition(
        self,
        new: SessionState,
        reason: str | None = None,
        error: BaseException | None = None,
    ) -> list[asyncio.Task[Any]]:
        old = self._status.state
        if new not in TRANSITIONS[old]:
            raise InvalidStateError(f"Illegal transition {old.value} -> {new.value}")
        self._status = SessionStatus(new, reason, error)
        logger.info("Session state: %s -> %s", old.value, self._status)
        tasks = self._on_enter(old, new)
        self._state_changed.set()
        self._emit(self._state_listeners, self._status)
        return tasks

    def _on_enter(self, old: SessionState, new: SessionState) -> list[asyncio.Task[Any]]:
        tasks: list[asyncio.Task[Any]] = []

        if old is S.SCANNING:
            self._registry.end_scan()
            tasks.append(self._spawn("Stop scan", None, self._transport.stop_discovery))

        if new is S.CONNECTING:
            self._registry.clear()
        elif new is S.DISCOVERING_SERVICES:
            self._link_up = True
            self._alert("notify_connection_changed", True)
            self._spawn(
                "Service discovery",
                S.DISCOVERING_SERVICES,
                self._transport.discover_services,
            )
        elif new is S.SUBSCRIBING:
            self._spawn(
                "Subscribe",
                S.SUBSCRIBING,
                self._transport.subscribe,
                self._service_uuid,
                self._characteristic_uuid,
            )
        elif new is S.STREAMING:
            self._detector.reset()
        elif new in (S.DISCONNECTED, S.ERROR):
            teardown = self._release_link()
            if teardown is not None:
                tasks.append(teardown)
            if self._reading is not None:
                self._reading = None
                self._emit(self._reading_listeners, None)
            if self._link_up:
                self._link_up = False
                self._alert("notify_connection_changed", False)

        return tasks

    def _fail(self, error: Exception) -> None:
        self._transition(S.ERROR, str(error), error)

    def _release_link(self) -> asyncio.Task[Any] | None:
        if not self._link_open:
            return None
        self._link_open = False
        self._attempt += 1  # late results of the old attempt are now stale
        return self._spawn("Disconnect", None, self._transport.disconnect)

    def _on_scan_timeout(self, generation: int) -> None:
        if self._status.state is not S.SCANNING or generation != self._registry.generation:
            return
        logger.info("Scan timeout elapsed, %d device(s) found", len(self._registry))
        self._transition(S.DISCONNECTED, "scan finished")

    # -- preconditions ----------------------------------------------------

    def _require_permissions(self) -> None:
        if self._permission_check is None:
            return
        missing = list(self._permission_check())
        if not missing:
            return
        error = BluetoothPermissionError(missing)
        logger.error("%s", error)
        self._fail(error)
        raise error

    def _require_config(self, address: str | None) -> MonitorConfig:
        config = self._config
        if config is None:
            reasons = ["No configuration loaded"]
        else:
            reasons = config.validate()
            if address:
                reasons = [r for r in reasons if not r.startswith("bike.macAddress")]
        if reasons:
            error = ConfigurationError(reasons)
            logger.error("Invalid configuration: %s", error)
            self._fail(error)
            raise error
        assert config is not None
        return config

    # -- plumbing ---------------------------------------------------------

    def _bind_loop(self) -> None:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

    def _call_on_loop(self, handler: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None:
            logger.debug("Transport event before any command; ignoring")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            handler(*args)
        else:
            loop.call_soon_threadsafe(handler, *args)

    def _spawn(
        self,
        step: str,
        expected: SessionState | None,
        func: Callable[..., Any],
        *args: Any,
    ) -> asyncio.Task[Any]:
        """
        Run a transport command in a task.

        If it raises while the session is still in *expected* for the same
        attempt, the session moves to ERROR. With *expected* None the
        failure is only logged.
        """
        assert self._loop is not None
        attempt = self._attempt

        async def _run() -> None:
            try:
                await func(*args)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if expected is None:
                    logger.warning("%s failed: %s", step, exc)
                elif self._status.state is expected and self._attempt == attempt:
                    logger.error("%s failed: %s", step, exc)
                    self._fail(_as_transport_error(step, exc))
                else:
                    logger.debug("Ignoring stale %s failure: %s", step.lower(), exc)

        task = self._loop.create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _gather(tasks: list[asyncio.Task[Any]]) -> None:
        if tasks:
            await asyncio.gather(*tasks)

    def _alert(self, method: str, *args: Any) -> None:
        if self._alerts is None:
            return
        try:
            getattr(self._alerts, method)(*args)
        except Exception:
            logger.warning("Alert sink %s raised", method, exc_info=True)

    @staticmethod
    def _emit(listeners: list[Callable[[Any], None]], value: Any) -> None:
        for cb in list(listeners):
            try:
                cb(value)
            except Exception:
                logger.warning("Session listener raised", exc_info=True)


def _add(listeners: list[Callable[[Any], None]], callback: Callable[[Any], None]) -> Callable[[], None]:
    listeners.append(callback)

    def _remove() -> None:
        if callback in listeners:
            listeners.remove(callback)

    return _remove


def _as_transport_error(step: str, exc: Exception) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    return TransportError(f"{step} failed: {exc}")
