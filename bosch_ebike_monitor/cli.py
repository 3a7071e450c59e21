"""
Command-line interface for the Bosch e-bike monitor.

Provides subcommands for scanning, live monitoring, offline decoding of
captured frames, and GATT enumeration.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import re
import sys

from .alerts import LoggingAlertSink
from .config import MonitorConfig, load_config, parse_pattern_text
from .errors import BluetoothPermissionError, ConfigurationError
from .models import SessionState
from .protocol import PatternConfig, Reading, decode
from .session import MonitorSession
from .transport import BleakTransport


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _build_config(args: argparse.Namespace) -> MonitorConfig:
    """Config file (if any) with command-line overrides applied."""
    config = load_config(args.config) if args.config else MonitorConfig()
    if getattr(args, "address", None):
        config.address = args.address
    if getattr(args, "service_uuid", None):
        config.service_uuid = args.service_uuid
    if getattr(args, "characteristic_uuid", None):
        config.characteristic_uuid = args.characteristic_uuid
    if getattr(args, "assist_pattern", None):
        config.assist_pattern = parse_pattern_text(args.assist_pattern)
    if getattr(args, "battery_pattern", None):
        config.battery_pattern = parse_pattern_text(args.battery_pattern)
    return config


def _format_reading(reading: Reading) -> str:
    speed = f"{reading.speed_kmh:.1f}" if reading.speed_kmh is not None else "-"
    battery = f"{reading.battery_level}%" if reading.battery_level is not None else "-"
    assist = reading.assist_mode_label if reading.assist_mode is not None else "-"
    return (
        f"[{reading.frame_length:>2d}b] assist={assist:<8s} battery={battery:<5s} "
        f"speed={speed:<6s} raw={reading.raw_hex}"
    )


# ---------------------------------------------------------------------------
# scan
# ---------------------------------------------------------------------------


async def _cmd_scan(args: argparse.Namespace) -> None:
    """Scan for nearby BLE peripherals."""
    print(f"Scanning for BLE devices ({args.timeout}s) ...")
    session = MonitorSession(None, BleakTransport())
    async with session:
        await session.start_scan(timeout=args.timeout)
        status = await session.wait_for_state(
            SessionState.DISCONNECTED, SessionState.ERROR
        )
        results = session.scan_results

    if status.state is SessionState.ERROR:
        print(f"Scan failed: {status.reason}")
        sys.exit(1)

    if not results:
        print("No devices found.")
        print("Make sure the bike is powered on and Bluetooth is enabled.")
        return

    print(f"\nFound {len(results)} device(s):\n")
    for ref in results:
        print(f"  Name:    {ref.display_name}")
        print(f"  Address: {ref.address}")
        print(f"  RSSI:    {ref.rssi} dBm")
        print()


# ---------------------------------------------------------------------------
# monitor
# ---------------------------------------------------------------------------


async def _cmd_monitor(args: argparse.Namespace) -> None:
    """Connect and stream decoded readings."""
    try:
        config = _build_config(args)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}")
        sys.exit(1)
    session = MonitorSession(config, BleakTransport(), alerts=LoggingAlertSink())

    def _on_reading(reading: Reading | None) -> None:
        if reading is None:
            return
        if args.format == "json":
            print(json.dumps(reading.as_dict()))
        else:
            print(_format_reading(reading))

    session.add_reading_listener(_on_reading)

    async with session:
        try:
            await session.connect()
        except (ConfigurationError, BluetoothPermissionError) as exc:
            print(f"Cannot start session: {exc}")
            sys.exit(1)

        print(f"Connecting to {session.target} ({config.bike_name}) ...")
        try:
            status = await session.wait_for_state(
                SessionState.STREAMING,
                SessionState.ERROR,
                SessionState.DISCONNECTED,
                timeout=args.connect_timeout,
            )
        except asyncio.TimeoutError:
            print("Timed out waiting for the bike.")
            return
        if status.state is not SessionState.STREAMING:
            print(f"Connection failed: {status.reason}")
            return

        print("Streaming. Press Ctrl+C to stop.")
        try:
            status = await session.wait_for_state(
                SessionState.DISCONNECTED,
                SessionState.ERROR,
                timeout=args.duration if args.duration > 0 else None,
            )
            print(f"Session ended: {status}")
        except asyncio.TimeoutError:
            pass
        entries = session.log_entries

    print(f"\n--- Last {len(entries)} frame(s) ---")
    for entry in entries:
        print(f"  {entry.format()}  {entry.summary}")


# ---------------------------------------------------------------------------
# decode
# ---------------------------------------------------------------------------


def _parse_frame_hex(text: str) -> bytes:
    cleaned = re.sub(r"[\s:\-]", "", text)
    if cleaned.lower().startswith("0x"):
        cleaned = cleaned[2:]
    return bytes.fromhex(cleaned)


async def _cmd_decode(args: argparse.Namespace) -> None:
    """Decode captured frames offline."""
    try:
        config = _build_config(args)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}")
        sys.exit(1)

    patterns: PatternConfig | None = None
    if config.assist_pattern or config.battery_pattern:
        try:
            patterns = config.patterns
        except ValueError as exc:
            print(f"Invalid pattern: {exc}")
            sys.exit(1)

    for text in args.frames:
        try:
            data = _parse_frame_hex(text)
        except ValueError:
            print(f"Not a hex frame: {text}")
            sys.exit(1)
        reading = decode(data, patterns)
        if args.format == "json":
            print(json.dumps(reading.as_dict()))
        else:
            print(_format_reading(reading))


# ---------------------------------------------------------------------------
# services (debug helper)
# ---------------------------------------------------------------------------


async def _cmd_services(args: argparse.Namespace) -> None:
    """Connect and enumerate all GATT services/characteristics (debug)."""
    from bleak import BleakClient

    print(f"Connecting to {args.address} ...")
    async with BleakClient(args.address) as client:
        print("Connected. Enumerating services ...\n")
        for service in client.services:
            print(f"Service: {service.uuid}  [{service.description}]")
            for char in service.characteristics:
                props = ", ".join(char.properties)
                print(f"  Char: {char.uuid}  [{props}]  {char.description}")
            print()


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


def _add_pattern_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("-c", "--config", help="JSON configuration file")
    p.add_argument("--assist-pattern", help="Assist locator bytes, e.g. '30 04'")
    p.add_argument("--battery-pattern", help="Battery locator bytes, e.g. '18 01'")
    p.add_argument("-f", "--format", choices=["table", "json"], default="table")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="bosch-ebike-monitor",
        description="Monitor a Bosch e-bike drive unit over Bluetooth LE",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    # --- scan ---
    p_scan = sub.add_parser("scan", help="Scan for nearby BLE devices")
    p_scan.add_argument(
        "-t", "--timeout", type=float, default=15.0, help="Scan duration (seconds)"
    )

    # --- monitor ---
    p_mon = sub.add_parser("monitor", help="Stream live readings")
    p_mon.add_argument(
        "address", nargs="?", default=None, help="BLE address (default: from config)"
    )
    _add_pattern_args(p_mon)
    p_mon.add_argument("--service-uuid", help="Status service UUID")
    p_mon.add_argument("--characteristic-uuid", help="Status characteristic UUID")
    p_mon.add_argument(
        "-d",
        "--duration",
        type=float,
        default=0,
        help="Duration in seconds (0=until disconnected)",
    )
    p_mon.add_argument(
        "--connect-timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for streaming to start",
    )

    # --- decode ---
    p_dec = sub.add_parser("decode", help="Decode captured hex frames")
    p_dec.add_argument("frames", nargs="+", help="Frames, e.g. 01-2C-00-00-30-02")
    _add_pattern_args(p_dec)

    # --- services ---
    p_svc = sub.add_parser("services", help="Enumerate GATT services (debug)")
    p_svc.add_argument("address", help="BLE address")

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    coro = {
        "scan": _cmd_scan,
        "monitor": _cmd_monitor,
        "decode": _cmd_decode,
        "services": _cmd_services,
    }[args.command](args)

    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        print("\nInterrupted.")


if __name__ == "__main__":
    main()
