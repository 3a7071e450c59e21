"""
Bosch drive unit status stream: heuristic frame decoder.

The drive unit pushes notifications of varying length with no type tag.
Fields are located by searching each frame for a configured byte pattern;
the byte right after the first match is the value. Frame length decides
which fields are worth looking for.

Everything in this module is pure: no I/O, no shared state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterable, Sequence

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frame classes and plausible ranges
# ---------------------------------------------------------------------------

SHORT_FRAME_LENGTHS = (6, 7)
LONG_FRAME_MIN = 20
LONG_FRAME_MAX = 35

BATTERY_MIN = 0
BATTERY_MAX = 100
MAX_ASSIST_MODE = 9
SPEED_MIN_KMH = 0.0
SPEED_MAX_KMH = 60.0

HEX_SEPARATOR = "-"


class FrameKind(IntEnum):
    GENERIC = 0
    SHORT = 1
    LONG = 2


class AssistMode(IntEnum):
    """Assist mode codes as reported by the drive unit."""

    OFF = 0
    ECO = 1
    TOUR = 2
    SPORT = 3
    TURBO = 4


def assist_mode_label(code: int | None) -> str:
    """Human-readable label for an assist mode code."""
    if code is None:
        return "Unknown"
    if code in AssistMode._value2member_map_:
        return AssistMode(code).name.title()
    return f"Mode {code}"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


def _as_byte_tuple(values: Iterable[int]) -> tuple[int, ...]:
    result = tuple(int(v) for v in values)
    for v in result:
        if not 0 <= v <= 0xFF:
            raise ValueError(f"Pattern byte out of range: {v}")
    return result


@dataclass(frozen=True, slots=True)
class TelemetryFrame:
    """One notification payload, exactly as received."""

    data: bytes
    received_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        # Callers hand us bytearrays from the transport; freeze a copy.
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))

    @property
    def length(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class PatternConfig:
    """Byte patterns used to locate the assist mode and battery level."""

    assist_pattern: tuple[int, ...] = ()
    battery_pattern: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "assist_pattern", _as_byte_tuple(self.assist_pattern))
        object.__setattr__(self, "battery_pattern", _as_byte_tuple(self.battery_pattern))

    @classmethod
    def from_lists(
        cls, assist: Sequence[int], battery: Sequence[int]
    ) -> PatternConfig:
        return cls(assist_pattern=tuple(assist), battery_pattern=tuple(battery))


@dataclass(frozen=True, slots=True)
class Reading:
    """
    Decoded snapshot of one frame.

    ``None`` in any numeric field means the field was not found in this
    frame, never zero.
    """

    raw_hex: str
    timestamp: float = field(default_factory=time.time)
    frame_length: int = 0
    battery_level: int | None = None
    assist_mode: int | None = None
    speed_kmh: float | None = None

    @property
    def assist_mode_label(self) -> str:
        return assist_mode_label(self.assist_mode)

    @property
    def has_fields(self) -> bool:
        return (
            self.battery_level is not None
            or self.assist_mode is not None
            or self.speed_kmh is not None
        )

    def summary(self) -> str:
        """Short one-line description used in the data log."""
        parts = []
        if self.assist_mode is not None:
            parts.append(f"assist={self.assist_mode_label}")
        if self.battery_level is not None:
            parts.append(f"battery={self.battery_level}%")
        if self.speed_kmh is not None:
            parts.append(f"speed={self.speed_kmh:.1f}km/h")
        return " ".join(parts) if parts else "no fields"

    def as_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable dictionary, omitting absent fields."""
        result: dict[str, Any] = {
            "timestamp": self.timestamp,
            "frame_length": self.frame_length,
            "raw": self.raw_hex,
        }
        if self.battery_level is not None:
            result["battery_level"] = self.battery_level
        if self.assist_mode is not None:
            result["assist_mode"] = self.assist_mode
            result["assist_mode_label"] = self.assist_mode_label
        if self.speed_kmh is not None:
            result["speed_kmh"] = self.speed_kmh
        return result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_hex(data: bytes | bytearray | Sequence[int]) -> str:
    """``b"\\x01\\xab"`` -> ``"01-AB"``."""
    return HEX_SEPARATOR.join(f"{b & 0xFF:02X}" for b in data)


def classify_frame(length: int) -> FrameKind:
    if length in SHORT_FRAME_LENGTHS:
        return FrameKind.SHORT
    if LONG_FRAME_MIN <= length <= LONG_FRAME_MAX:
        return FrameKind.LONG
    return FrameKind.GENERIC


def find_pattern(data: bytes | bytearray, pattern: Sequence[int]) -> int | None:
    """
    Return the index of the first occurrence of *pattern* in *data*.

    A match only counts if at least one byte follows it, since the value
    we are after is the byte right after the pattern. Returns None when the
    pattern is empty, longer than the frame, or not present.
    """
    size = len(pattern)
    if size == 0:
        return None
    needle = bytes(pattern)
    last_start = len(data) - size - 1
    for i in range(last_start + 1):
        if data[i : i + size] == needle:
            return i
    return None


def extract_after_pattern(
    data: bytes | bytearray, pattern: Sequence[int]
) -> int | None:
    """Return the byte following the first match of *pattern*, or None."""
    pos = find_pattern(data, pattern)
    if pos is None:
        return None
    return data[pos + len(pattern)]


def speed_candidates(data: bytes | bytearray) -> list[float]:
    """
    Candidate speeds, in priority order, from the first four bytes.

    1. big-endian (b0, b1)
    2. little-endian (b1, b0)
    3. big-endian (b2, b3)

    Each raw value is in tenths of km/h.
    """
    candidates: list[float] = []
    if len(data) >= 2:
        candidates.append(((data[0] << 8) | data[1]) / 10.0)
        candidates.append(((data[1] << 8) | data[0]) / 10.0)
    if len(data) >= 4:
        candidates.append(((data[2] << 8) | data[3]) / 10.0)
    return candidates


def estimate_speed(data: bytes | bytearray) -> float | None:
    """
    First candidate from ``speed_candidates`` inside 0.0..60.0 km/h.

    The candidate order and the inclusive bounds match the behaviour
    observed on real hardware and must stay as they are.
    """
    for candidate in speed_candidates(data):
        if SPEED_MIN_KMH <= candidate <= SPEED_MAX_KMH:
            return candidate
    return None


def _in_range(value: int | None, low: int, high: int, name: str) -> int | None:
    if value is None:
        return None
    if low <= value <= high:
        return value
    logger.debug("Discarding implausible %s value %d", name, value)
    return None


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode(
    frame: TelemetryFrame | bytes | bytearray,
    patterns: PatternConfig | None,
) -> Reading:
    """
    Decode one notification payload into a ``Reading``.

    Parameters
    ----------
    frame : TelemetryFrame | bytes | bytearray
        The raw notification. Plain bytes are stamped with the current time.
    patterns : PatternConfig | None
        Locator patterns. With None, only the speed heuristic and the raw
        capture are available.

    Returns
    -------
    Reading
        Always carries ``raw_hex``; structured fields only when located.
    """
    if not isinstance(frame, TelemetryFrame):
        frame = TelemetryFrame(bytes(frame))

    data = frame.data
    raw_hex = format_hex(data)
    kind = classify_frame(len(data))
    logger.debug("Parsing %s frame (%d bytes): %s", kind.name.lower(), len(data), raw_hex)

    battery: int | None = None
    assist: int | None = None
    speed: float | None = None

    if kind is FrameKind.SHORT:
        if patterns is not None:
            assist = _locate(data, patterns.assist_pattern, "assist")
        speed = estimate_speed(data)
    elif kind is FrameKind.LONG:
        if patterns is not None:
            battery = _locate(data, patterns.battery_pattern, "battery")
            assist = _locate(data, patterns.assist_pattern, "assist")

    return Reading(
        raw_hex=raw_hex,
        timestamp=frame.received_at,
        frame_length=len(data),
        battery_level=_in_range(battery, BATTERY_MIN, BATTERY_MAX, "battery"),
        assist_mode=_in_range(assist, 0, MAX_ASSIST_MODE, "assist"),
        speed_kmh=speed,
    )


def _locate(data: bytes, pattern: Sequence[int], name: str) -> int | None:
    pos = find_pattern(data, pattern)
    if pos is None:
        logger.debug("%s pattern not found", name.capitalize())
        return None
    value = data[pos + len(pattern)]
    logger.debug("Found %s pattern at position %d, value: %d", name, pos, value)
    return value
