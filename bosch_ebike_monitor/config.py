"""
Monitor configuration.

The JSON layout is the one used by the Android monitor app::

    {
      "bike": {"name": "My Bike", "macAddress": "00:11:22:33:44:55"},
      "bluetooth": {
        "scanTimeoutMs": 15000,
        "services": {
          "statusServiceUuid": "...",
          "statusCharacteristicUuid": "..."
        }
      },
      "dataParsing": {
        "assistPattern": [48, 4],
        "batteryPattern": ["0x18", "0x01"]
      }
    }
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from .errors import ConfigurationError
from .protocol import PatternConfig

logger = logging.getLogger(__name__)

DEFAULT_SCAN_TIMEOUT = 15.0
DEFAULT_BIKE_NAME = "Unknown Bike"

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


@dataclass
class MonitorConfig:
    """Addressing, GATT and pattern settings for one monitoring session."""

    address: str | None = None
    service_uuid: str | None = None
    characteristic_uuid: str | None = None
    assist_pattern: list[int] = field(default_factory=list)
    battery_pattern: list[int] = field(default_factory=list)
    bike_name: str = DEFAULT_BIKE_NAME
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MonitorConfig:
        """
        Build a config from an already-parsed JSON document.

        Raises ``ConfigurationError`` if the document is malformed: a
        section that is not an object, a timeout that is not a number, or a
        pattern byte that cannot be read as an integer. Semantic problems
        are reported by ``validate()``.
        """
        bike = _section(data, "bike", "bike")
        bluetooth = _section(data, "bluetooth", "bluetooth")
        services = _section(bluetooth, "services", "bluetooth.services")
        parsing = _section(data, "dataParsing", "dataParsing")

        timeout_ms = bluetooth.get("scanTimeoutMs")
        scan_timeout = (
            DEFAULT_SCAN_TIMEOUT if timeout_ms is None else _parse_timeout(timeout_ms)
        )

        return cls(
            address=_text(bike, "macAddress", "bike.macAddress"),
            service_uuid=_text(
                services, "statusServiceUuid", "bluetooth.services.statusServiceUuid"
            ),
            characteristic_uuid=_text(
                services,
                "statusCharacteristicUuid",
                "bluetooth.services.statusCharacteristicUuid",
            ),
            assist_pattern=_parse_pattern(parsing.get("assistPattern"), "assistPattern"),
            battery_pattern=_parse_pattern(
                parsing.get("batteryPattern"), "batteryPattern"
            ),
            bike_name=_text(bike, "name", "bike.name") or DEFAULT_BIKE_NAME,
            scan_timeout=scan_timeout,
        )

    def validate(self) -> list[str]:
        """Return a list of problems; empty means the config is usable."""
        errors: list[str] = []
        if not self.address:
            errors.append("bike.macAddress is missing")
        elif not (_MAC_RE.match(self.address) or _is_uuid(self.address)):
            # CoreBluetooth hides MACs behind per-host UUIDs
            errors.append(f"bike.macAddress is not a MAC address: {self.address!r}")
        for label, value in (
            ("bluetooth.services.statusServiceUuid", self.service_uuid),
            ("bluetooth.services.statusCharacteristicUuid", self.characteristic_uuid),
        ):
            if not value:
                errors.append(f"{label} is missing")
            elif not _is_uuid(value):
                errors.append(f"{label} is not a UUID: {value!r}")
        for label, pattern in (
            ("dataParsing.assistPattern", self.assist_pattern),
            ("dataParsing.batteryPattern", self.battery_pattern),
        ):
            if not pattern:
                errors.append(f"{label} is empty")
            elif any(not 0 <= b <= 0xFF for b in pattern):
                errors.append(f"{label} contains values outside 0..255")
        if self.scan_timeout <= 0:
            errors.append("bluetooth.scanTimeoutMs must be positive")
        return errors

    def is_valid(self) -> bool:
        return not self.validate()

    def ensure_valid(self) -> None:
        """Raise ``ConfigurationError`` listing every problem found."""
        errors = self.validate()
        if errors:
            raise ConfigurationError(errors)

    @property
    def patterns(self) -> PatternConfig:
        return PatternConfig.from_lists(self.assist_pattern, self.battery_pattern)

    def as_dict(self) -> dict[str, Any]:
        """Inverse of ``from_dict``."""
        return {
            "bike": {"name": self.bike_name, "macAddress": self.address},
            "bluetooth": {
                "scanTimeoutMs": int(self.scan_timeout * 1000),
                "services": {
                    "statusServiceUuid": self.service_uuid,
                    "statusCharacteristicUuid": self.characteristic_uuid,
                },
            },
            "dataParsing": {
                "assistPattern": list(self.assist_pattern),
                "batteryPattern": list(self.battery_pattern),
            },
        }


def load_config(path: str | Path) -> MonitorConfig:
    """Read a JSON config file. Raises ``ConfigurationError`` on failure."""
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except OSError as exc:
        raise ConfigurationError(f"cannot read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be a JSON object")
    config = MonitorConfig.from_dict(data)
    logger.debug("Configuration loaded from %s", path)
    return config


def parse_pattern_text(text: str) -> list[int]:
    """``"30 04"``, ``"30-04"``, ``"0x30,0x04"`` -> ``[0x30, 0x04]``."""
    tokens = [t for t in re.split(r"[\s,:\-]+", text.strip()) if t]
    return _parse_pattern(tokens, "pattern")


def _section(data: Mapping[str, Any], key: str, label: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"{label} must be an object")
    return value


def _text(data: Mapping[str, Any], key: str, label: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ConfigurationError(f"{label} must be a string")
    return value


def _parse_timeout(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(
            f"bluetooth.scanTimeoutMs must be a number of milliseconds: {value!r}"
        )
    return float(value) / 1000.0


def _parse_pattern(values: Sequence[Any] | None, label: str) -> list[int]:
    if values is None:
        return []
    if isinstance(values, str) or not isinstance(values, Sequence):
        raise ConfigurationError(f"{label} must be a list of bytes")
    result: list[int] = []
    for v in values:
        if isinstance(v, bool):
            raise ConfigurationError(f"{label} contains a non-byte value: {v!r}")
        if isinstance(v, int):
            result.append(v)
            continue
        if isinstance(v, str):
            try:
                result.append(int(v, 16))
            except ValueError:
                raise ConfigurationError(
                    f"{label} contains a non-byte value: {v!r}"
                ) from None
            continue
        raise ConfigurationError(f"{label} contains a non-byte value: {v!r}")
    return result


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True
