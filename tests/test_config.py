"""
Unit tests for config.py -- JSON loading and validation.
"""

import json

import pytest

from bosch_ebike_monitor.config import (
    DEFAULT_SCAN_TIMEOUT,
    MonitorConfig,
    load_config,
    parse_pattern_text,
)
from bosch_ebike_monitor.errors import ConfigurationError

SERVICE = "00000010-eaa2-11e9-81b4-2a2ae2dbcce4"
CHAR = "00000011-eaa2-11e9-81b4-2a2ae2dbcce4"

SAMPLE = {
    "bike": {"name": "Commuter", "macAddress": "00:11:22:33:44:55"},
    "bluetooth": {
        "scanTimeoutMs": 8000,
        "services": {
            "statusServiceUuid": SERVICE,
            "statusCharacteristicUuid": CHAR,
        },
    },
    "dataParsing": {
        "assistPattern": [16, 4],
        "batteryPattern": ["0x18", "01"],
    },
}


class TestFromDict:
    def test_full_document(self):
        config = MonitorConfig.from_dict(SAMPLE)
        assert config.bike_name == "Commuter"
        assert config.address == "00:11:22:33:44:55"
        assert config.scan_timeout == 8.0
        assert config.service_uuid == SERVICE
        assert config.characteristic_uuid == CHAR
        assert config.assist_pattern == [0x10, 0x04]
        assert config.battery_pattern == [0x18, 0x01]
        assert config.validate() == []

    def test_defaults(self):
        config = MonitorConfig.from_dict({})
        assert config.bike_name == "Unknown Bike"
        assert config.scan_timeout == DEFAULT_SCAN_TIMEOUT

    def test_non_byte_value_rejected(self):
        with pytest.raises(ConfigurationError):
            MonitorConfig.from_dict({"dataParsing": {"assistPattern": ["zz"]}})

    @pytest.mark.parametrize(
        "document",
        [
            {"bike": "x"},
            {"bluetooth": ["services"]},
            {"bluetooth": {"services": 5}},
            {"dataParsing": "10 04"},
        ],
    )
    def test_section_must_be_object(self, document):
        with pytest.raises(ConfigurationError):
            MonitorConfig.from_dict(document)

    @pytest.mark.parametrize("timeout", ["fast", True, [15000]])
    def test_non_numeric_timeout_rejected(self, timeout):
        with pytest.raises(ConfigurationError) as excinfo:
            MonitorConfig.from_dict({"bluetooth": {"scanTimeoutMs": timeout}})
        assert "scanTimeoutMs" in str(excinfo.value)

    def test_non_string_address_rejected(self):
        with pytest.raises(ConfigurationError):
            MonitorConfig.from_dict({"bike": {"macAddress": 1234}})

    def test_pattern_must_be_a_list(self):
        with pytest.raises(ConfigurationError):
            MonitorConfig.from_dict({"dataParsing": {"assistPattern": 16}})

    def test_round_trip_dict(self):
        assert MonitorConfig.from_dict(SAMPLE).as_dict()["dataParsing"] == {
            "assistPattern": [16, 4],
            "batteryPattern": [24, 1],
        }

    def test_patterns_property(self):
        patterns = MonitorConfig.from_dict(SAMPLE).patterns
        assert patterns.assist_pattern == (0x10, 0x04)


class TestValidate:
    def test_empty_config_lists_every_problem(self):
        errors = MonitorConfig().validate()
        assert "bike.macAddress is missing" in errors
        assert "bluetooth.services.statusServiceUuid is missing" in errors
        assert "bluetooth.services.statusCharacteristicUuid is missing" in errors
        assert "dataParsing.assistPattern is empty" in errors
        assert "dataParsing.batteryPattern is empty" in errors

    def test_bad_address(self):
        config = MonitorConfig.from_dict(SAMPLE)
        config.address = "not-a-mac"
        assert any("macAddress" in e for e in config.validate())

    def test_uuid_address_accepted(self):
        config = MonitorConfig.from_dict(SAMPLE)
        config.address = "A1B2C3D4-0000-1111-2222-333344445555"
        assert config.validate() == []

    def test_bad_uuid(self):
        config = MonitorConfig.from_dict(SAMPLE)
        config.service_uuid = "xyz"
        assert config.validate() == [
            "bluetooth.services.statusServiceUuid is not a UUID: 'xyz'"
        ]

    def test_byte_out_of_range(self):
        config = MonitorConfig.from_dict(SAMPLE)
        config.battery_pattern = [0x18, 0x100]
        assert config.validate() == ["dataParsing.batteryPattern contains values outside 0..255"]

    def test_ensure_valid_raises_with_reasons(self):
        with pytest.raises(ConfigurationError) as excinfo:
            MonitorConfig().ensure_valid()
        assert len(excinfo.value.reasons) == 5


class TestLoadConfig:
    def test_load(self, tmp_path):
        path = tmp_path / "bike.json"
        path.write_text(json.dumps(SAMPLE))
        assert load_config(path).address == "00:11:22:33:44:55"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bike.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_malformed_timeout_in_file(self, tmp_path):
        path = tmp_path / "bike.json"
        path.write_text(json.dumps({"bluetooth": {"scanTimeoutMs": "fast"}}))
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_malformed_section_in_file(self, tmp_path):
        path = tmp_path / "bike.json"
        path.write_text(json.dumps({"bike": "x"}))
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_top_level_must_be_object(self, tmp_path):
        path = tmp_path / "bike.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigurationError):
            load_config(path)


class TestParsePatternText:
    @pytest.mark.parametrize("text", ["10 04", "10-04", "0x10,0x04", "10:04"])
    def test_separators(self, text):
        assert parse_pattern_text(text) == [0x10, 0x04]
