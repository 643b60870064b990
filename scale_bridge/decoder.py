"""Frame decoding for weighing indicators.

Indicators from different vendors disagree on framing: some send
``ST,GS,+012345.0kg``, some a bare ``18460,5``, and a misconfigured line
(wrong baud rate or code page) yields filler characters with the weight
buried in digit runs. ``decode`` tries a fixed list of rules in priority
order and returns the first plausible reading.

Everything here is pure; the device session owns I/O and logging of
unparsed frames.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from . import constants
from .store import Reading
from .utils import round_weight, utc_now

NOISE_MARKER = "[00]"
NOISE_FILLER = "а"  # Cyrillic "а", what 0xE0 turns into under cp1251
NOISE_MIN_LENGTH = 20

_NUMERIC_CHARS = re.compile(r"[^\d.+-]")
_STATUS_FRAME = re.compile(r"^(?:ST|US|OL),(?:GS|NT|TR)\b", re.IGNORECASE)
_SHORT_FRAME = re.compile(r"^(?:GS|NT|TR),", re.IGNORECASE)
_SIGNED_VALUE = re.compile(
    r"^(?P<number>[-+]?\s*\d+(?:[.,]\d+)?)\s*(?P<unit>kg|кг|lb|t|g)?$", re.IGNORECASE
)
_BARE_NUMBER = re.compile(r"^\d+(?:[.,]\d+)?$")
_UNIT_SUFFIX = re.compile(r"(kg|кг|lb|t|g)\s*$", re.IGNORECASE)
_BRACKET_MARKER = re.compile(r"\[\d+\]")
_DIGIT_RUN = re.compile(r"\d+")
_MAX_RUN_DIGITS = len(str(constants.MAX_PLAUSIBLE_WEIGHT))

_UNIT_ALIASES = {"kg": "kg", "кг": "kg", "lb": "lb", "t": "t", "g": "g"}


@dataclass(frozen=True, slots=True)
class FrameMatch:
    """Outcome of a successful rule match."""

    value: float
    unit: str
    rule: str


def _infer_unit(text: str) -> str:
    match = _UNIT_SUFFIX.search(text)
    if match is None:
        return constants.DEFAULT_UNIT
    return _UNIT_ALIASES.get(match.group(1).lower(), constants.DEFAULT_UNIT)


def _parse_number(text: str) -> Optional[float]:
    cleaned = _NUMERIC_CHARS.sub("", text.replace(",", "."))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def _field_rule(index: int) -> Callable[[str], Optional[Tuple[float, str]]]:
    def _rule(text: str) -> Optional[Tuple[float, str]]:
        parts = text.split(",")
        if len(parts) <= index:
            return None
        field = parts[index].strip()
        value = _parse_number(field)
        if value is None:
            return None
        return value, _infer_unit(field)

    return _rule


def _plausible_runs(text: str) -> List[int]:
    stripped = _BRACKET_MARKER.sub(" ", text)
    runs = [
        int(digits or "0")
        for digits in (run.lstrip("0") for run in _DIGIT_RUN.findall(stripped))
        if len(digits) <= _MAX_RUN_DIGITS
    ]
    return [run for run in runs if 0 <= run <= constants.MAX_PLAUSIBLE_WEIGHT]


def rule_status_frame(text: str) -> Optional[Tuple[float, str]]:
    """``ST,GS,+012345.0kg``: status, weight type, signed value."""
    if not _STATUS_FRAME.match(text):
        return None
    return _field_rule(2)(text)


def rule_short_frame(text: str) -> Optional[Tuple[float, str]]:
    """``GS,+6200.0kg``: weight type and signed value only."""
    if not _SHORT_FRAME.match(text):
        return None
    return _field_rule(1)(text)


def rule_signed_value(text: str) -> Optional[Tuple[float, str]]:
    """``+012345.0 kg`` or ``12345.0kg``."""
    match = _SIGNED_VALUE.match(text)
    if match is None or (match.group("unit") is None and text[0] not in "+-"):
        return None
    value = _parse_number(match.group("number"))
    if value is None:
        return None
    unit = match.group("unit")
    if unit is None:
        return value, constants.DEFAULT_UNIT
    return value, _UNIT_ALIASES.get(unit.lower(), constants.DEFAULT_UNIT)


def rule_bare_number(text: str) -> Optional[Tuple[float, str]]:
    """``12345.5`` or ``12345,5``."""
    if not _BARE_NUMBER.match(text):
        return None
    value = _parse_number(text)
    if value is None:
        return None
    return value, constants.DEFAULT_UNIT


def rule_noise_last_run(text: str) -> Optional[Tuple[float, str]]:
    """Garbled frame with ``[00]`` markers: the last plausible digit run."""
    if NOISE_MARKER not in text or NOISE_FILLER not in text:
        return None
    runs = _plausible_runs(text)
    if not runs:
        return None
    return float(runs[-1]), constants.DEFAULT_UNIT


def rule_noise_max_run(text: str) -> Optional[Tuple[float, str]]:
    """Long garbled frame with filler characters: the largest plausible digit run."""
    if NOISE_FILLER not in text or len(text) <= NOISE_MIN_LENGTH:
        return None
    runs = _plausible_runs(text)
    if not runs:
        return None
    return float(max(runs)), constants.DEFAULT_UNIT


RULES: Tuple[Tuple[str, Callable[[str], Optional[Tuple[float, str]]]], ...] = (
    ("status_frame", rule_status_frame),
    ("short_frame", rule_short_frame),
    ("signed_value", rule_signed_value),
    ("bare_number", rule_bare_number),
    ("noise_last_run", rule_noise_last_run),
    ("noise_max_run", rule_noise_max_run),
)


def match_frame(raw: str) -> Optional[FrameMatch]:
    """Run the decoding rules over ``raw`` and return the first usable match."""

    text = raw.strip()
    if not text:
        return None

    for name, rule in RULES:
        result = rule(text)
        if result is None:
            continue
        value, unit = result
        if math.isnan(value) or math.isinf(value):
            return None
        return FrameMatch(value=round_weight(value), unit=unit, rule=name)

    return None


def decode(raw: str, *, received_at: Optional[datetime] = None) -> Optional[Reading]:
    """Decode one frame into a connected ``Reading`` or ``None``."""

    match = match_frame(raw)
    if match is None:
        return None
    return Reading(
        value=match.value,
        unit=match.unit,
        connected=True,
        timestamp=received_at or utc_now(),
    )


def decode_bytes(data: bytes) -> str:
    """Turn a raw chunk into text, falling back to cp1251 for non-UTF-8 bytes."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("cp1251", errors="replace")

