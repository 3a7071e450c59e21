"""
Tests for cli.py -- offline decoding of captured frames.
"""

import json

import pytest

from bosch_ebike_monitor.cli import _parse_frame_hex, main


class TestParseFrameHex:
    @pytest.mark.parametrize(
        "text", ["01-2C-00", "01 2C 00", "01:2c:00", "012C00", "0x012C00"]
    )
    def test_accepted_forms(self, text):
        assert _parse_frame_hex(text) == bytes([0x01, 0x2C, 0x00])

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            _parse_frame_hex("zz")


class TestDecodeCommand:
    def test_table_output(self, capsys):
        main(
            [
                "decode",
                "01-2C-00-00-10-04-02",
                "--assist-pattern",
                "10 04",
                "--battery-pattern",
                "18 01",
            ]
        )
        out = capsys.readouterr().out
        assert "assist=Tour" in out
        assert "speed=30.0" in out
        assert "battery=-" in out
        assert "raw=01-2C-00-00-10-04-02" in out

    def test_json_output_with_config_file(self, capsys, tmp_path):
        path = tmp_path / "bike.json"
        path.write_text(
            json.dumps(
                {"dataParsing": {"assistPattern": [16, 4], "batteryPattern": [24, 1]}}
            )
        )
        frame = "01-2C-00-00-18-01-55" + "-00" * 13
        main(["decode", frame, "-c", str(path), "-f", "json"])
        result = json.loads(capsys.readouterr().out.strip())
        assert result["battery_level"] == 0x55
        assert result["frame_length"] == 20
        assert "speed_kmh" not in result

    def test_without_patterns_only_speed(self, capsys):
        main(["decode", "01-2C-00-00-10-04-02", "-f", "json"])
        result = json.loads(capsys.readouterr().out.strip())
        assert result["speed_kmh"] == 30.0
        assert "assist_mode" not in result

    def test_bad_frame_exits(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["decode", "not-hex"])
        assert excinfo.value.code == 1

    def test_out_of_range_pattern_byte_exits(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["decode", "01-02-03-04-05-06", "--assist-pattern", "100"])
        assert excinfo.value.code == 1
        assert "Invalid pattern" in capsys.readouterr().out

    def test_malformed_config_file_exits(self, capsys, tmp_path):
        path = tmp_path / "bike.json"
        path.write_text(json.dumps({"bluetooth": {"scanTimeoutMs": "fast"}}))
        with pytest.raises(SystemExit) as excinfo:
            main(["decode", "01-02-03", "-c", str(path)])
        assert excinfo.value.code == 1
        assert "Invalid configuration" in capsys.readouterr().out
