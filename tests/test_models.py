"""
Unit tests for models.py, scanner.py and telemetry.py -- peripheral
bookkeeping, the bounded data log and change detection.
"""

import pytest

from bosch_ebike_monitor.alerts import CallbackAlertSink
from bosch_ebike_monitor.models import (
    LogEntry,
    PeripheralRef,
    SessionState,
    SessionStatus,
)
from bosch_ebike_monitor.protocol import Reading
from bosch_ebike_monitor.scanner import ScanRegistry
from bosch_ebike_monitor.telemetry import ChangeDetector, DataLog


class TestPeripheralRef:
    def test_display_name_fallback(self):
        assert PeripheralRef("AA:AA").display_name == "Unknown Device"
        assert PeripheralRef("AA:AA", "Bosch").display_name == "Bosch"

    def test_merged_keeps_name_when_sighting_has_none(self):
        ref = PeripheralRef("AA:AA", "Bosch", -40)
        merged = ref.merged(PeripheralRef("AA:AA", None, -35))
        assert merged.name == "Bosch"
        assert merged.rssi == -35

    def test_merged_takes_new_name(self):
        ref = PeripheralRef("AA:AA", None, -40)
        assert ref.merged(PeripheralRef("AA:AA", "Bosch", -50)).name == "Bosch"


class TestSessionStatus:
    def test_default_idle(self):
        status = SessionStatus()
        assert status.state is SessionState.IDLE
        assert not status.is_connected

    def test_error_reason_in_str(self):
        status = SessionStatus(SessionState.ERROR, "boom")
        assert str(status) == "error (boom)"

    def test_is_connected(self):
        assert SessionStatus(SessionState.STREAMING).is_connected
        assert not SessionStatus(SessionState.CONNECTING).is_connected


# ======================================================================
# Scan registry
# ======================================================================


class TestScanRegistry:
    def test_dedup_and_update(self):
        registry = ScanRegistry()
        registry.begin_scan()
        assert registry.on_sighting(PeripheralRef("AA:AA", "Bike", -40)) is True
        assert registry.on_sighting(PeripheralRef("BB:BB", None, -70)) is True
        assert registry.on_sighting(PeripheralRef("AA:AA", None, -35)) is False

        assert len(registry) == 2
        assert registry.get("AA:AA").rssi == -35
        assert registry.get("AA:AA").name == "Bike"
        assert registry.get("BB:BB").rssi == -70

    def test_results_ranked_by_signal(self):
        registry = ScanRegistry()
        registry.begin_scan()
        registry.on_sighting(PeripheralRef("BB:BB", rssi=-70))
        registry.on_sighting(PeripheralRef("AA:AA", rssi=-40))
        registry.on_sighting(PeripheralRef("CC:CC", rssi=-55))
        assert [r.address for r in registry.results] == ["AA:AA", "CC:CC", "BB:BB"]

    def test_one_event_per_new_address(self):
        registry = ScanRegistry()
        registry.begin_scan()
        events = []
        registry.add_listener(events.append)
        registry.on_sighting(PeripheralRef("AA:AA", rssi=-40))
        registry.on_sighting(PeripheralRef("AA:AA", rssi=-38))
        registry.on_sighting(PeripheralRef("AA:AA", rssi=-36))
        registry.on_sighting(PeripheralRef("BB:BB", rssi=-70))
        assert len(events) == 2

    def test_end_scan_freezes_results(self):
        registry = ScanRegistry()
        registry.begin_scan()
        registry.on_sighting(PeripheralRef("AA:AA", rssi=-40))
        registry.end_scan()
        assert registry.on_sighting(PeripheralRef("BB:BB", rssi=-70)) is False
        assert registry.on_sighting(PeripheralRef("AA:AA", rssi=-20)) is False
        assert registry.get("AA:AA").rssi == -40
        assert not registry.is_scanning

    def test_begin_scan_clears_previous_results(self):
        registry = ScanRegistry()
        registry.begin_scan()
        registry.on_sighting(PeripheralRef("AA:AA", rssi=-40))
        registry.end_scan()
        generation = registry.generation
        registry.begin_scan()
        assert len(registry) == 0
        assert registry.generation == generation + 1

    def test_listener_removal(self):
        registry = ScanRegistry()
        registry.begin_scan()
        events = []
        remove = registry.add_listener(events.append)
        remove()
        registry.on_sighting(PeripheralRef("AA:AA", rssi=-40))
        assert events == []

    def test_listener_errors_do_not_break_registry(self):
        registry = ScanRegistry()
        registry.begin_scan()

        def _boom(_results):
            raise RuntimeError("observer bug")

        registry.add_listener(_boom)
        assert registry.on_sighting(PeripheralRef("AA:AA", rssi=-40)) is True
        assert "AA:AA" in registry


# ======================================================================
# Data log
# ======================================================================


def _reading(i: int) -> Reading:
    return Reading(raw_hex=f"{i:02X}", timestamp=float(i), frame_length=1)


class TestDataLog:
    def test_newest_first(self):
        log = DataLog()
        log.append(_reading(1))
        log.append(_reading(2))
        assert [e.raw_hex for e in log.entries()] == ["02", "01"]

    def test_capacity_and_fifo_eviction(self):
        log = DataLog()
        for i in range(1, 52):
            log.append(_reading(i))
        entries = log.entries()
        assert len(log) == 50
        assert log.capacity == 50
        assert entries[0].raw_hex == f"{51:02X}"
        assert entries[-1].raw_hex == f"{2:02X}"
        assert f"{1:02X}" not in [e.raw_hex for e in entries]

    def test_never_exceeds_capacity(self):
        log = DataLog(capacity=3)
        for i in range(100):
            log.append(_reading(i))
            assert len(log) <= 3

    def test_clear(self):
        log = DataLog()
        log.append(_reading(1))
        log.clear()
        assert len(log) == 0

    def test_entry_fields(self):
        log = DataLog()
        entry = log.append(Reading(raw_hex="01-02", timestamp=0.0, frame_length=2, battery_level=9))
        assert entry.frame_length == 2
        assert entry.summary == "battery=9%"

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            DataLog(capacity=0)


class TestLogEntry:
    def test_format(self):
        entry = LogEntry(timestamp=0.0, frame_length=6, raw_hex="01-2C", summary="")
        text = entry.format()
        assert text.endswith(" [6b]: 01-2C")
        assert len(text.split(" ")[0]) == len("HH:MM:SS")


# ======================================================================
# Change detection
# ======================================================================


class TestChangeDetector:
    def _detector(self):
        alerts = []
        sink = CallbackAlertSink(lambda kind, value: alerts.append((kind, value)))
        return ChangeDetector(sink), alerts

    def test_first_reading_never_alerts(self):
        detector, alerts = self._detector()
        detector.process(Reading(raw_hex="", battery_level=80, assist_mode=1))
        assert alerts == []

    def test_battery_change_alerts(self):
        detector, alerts = self._detector()
        detector.process(Reading(raw_hex="", battery_level=80))
        detector.process(Reading(raw_hex="", battery_level=80))
        detector.process(Reading(raw_hex="", battery_level=79))
        assert alerts == [("battery", 79)]

    def test_assist_change_alerts_with_label(self):
        detector, alerts = self._detector()
        detector.process(Reading(raw_hex="", assist_mode=1))
        changes = detector.process(Reading(raw_hex="", assist_mode=4))
        assert changes == [("assist_mode", 4)]
        assert alerts == [("assist_mode", "Turbo")]

    def test_absent_field_keeps_baseline(self):
        detector, alerts = self._detector()
        detector.process(Reading(raw_hex="", battery_level=80))
        detector.process(Reading(raw_hex=""))
        assert detector.previous_battery == 80
        detector.process(Reading(raw_hex="", battery_level=75))
        assert alerts == [("battery", 75)]

    def test_reset_clears_baseline(self):
        detector, alerts = self._detector()
        detector.process(Reading(raw_hex="", battery_level=80, assist_mode=2))
        detector.reset()
        assert detector.previous_battery is None
        assert detector.previous_assist_mode is None
        detector.process(Reading(raw_hex="", battery_level=50, assist_mode=3))
        assert alerts == []

    def test_sink_errors_are_contained(self):
        def _boom(kind, value):
            raise RuntimeError("sink down")

        detector = ChangeDetector(CallbackAlertSink(_boom))
        detector.process(Reading(raw_hex="", battery_level=80))
        assert detector.process(Reading(raw_hex="", battery_level=70)) == [("battery", 70)]
        assert detector.previous_battery == 70

    def test_without_sink(self):
        detector = ChangeDetector()
        detector.process(Reading(raw_hex="", battery_level=80))
        assert detector.process(Reading(raw_hex="", battery_level=70)) == [("battery", 70)]
