"""
Score effect and range expressions.

Effects adjust a running score:
- "+10"          add once
- "x0.5"         multiply once
- "+1 per 1h"    add once per elapsed hour
- "x2 per 1"     multiply once per counted item (approvals)

Ranges select size buckets:
- "<100", "<=100", ">500", ">=500"
- "100-500"      inclusive
- "0"            exact match
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum


MAX_UINT = 2**64 - 1

_DURATION_UNITS = {
    "s": 1,
    "sec": 1,
    "secs": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hrs": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
    "w": 604800,
    "week": 604800,
    "weeks": 604800,
}

_DURATION_PART = re.compile(r"\s*(\d+)\s*([a-z]*)\s*")
_UINT = re.compile(r"\d+", re.ASCII)


class ParseError(ValueError):
    """An effect, range or duration string could not be parsed."""


class EffectKind(str, Enum):
    ADD = "+"
    MULTIPLY = "x"


class UnitKind(str, Enum):
    """What the right-hand side of "per" measures."""
    DURATION = "duration"
    COUNT = "count"


class RangeKind(str, Enum):
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    EQ = "="
    BETWEEN = "-"


def parse_duration(text: str) -> timedelta:
    """
    Parse a human duration into a timedelta.

    Supports:
    - Single units: "90s", "30m", "1h", "2d", "1w"
    - Long unit names: "2 hours", "1day"
    - Compound values: "1h 30m", "1d12h"

    Raises:
        ParseError: on unknown units, missing units or a zero duration
    """
    cleaned = text.strip().lower()
    if not cleaned:
        raise ParseError("empty duration")

    total = 0
    pos = 0
    while pos < len(cleaned):
        match = _DURATION_PART.match(cleaned, pos)
        if not match:
            raise ParseError(f"invalid duration '{text.strip()}'")
        value, unit = match.groups()
        if not unit:
            raise ParseError(f"missing time unit in '{text.strip()}'")
        if unit not in _DURATION_UNITS:
            raise ParseError(f"unknown time unit '{unit}' in '{text.strip()}'")
        total += int(value) * _DURATION_UNITS[unit]
        pos = match.end()

    if total <= 0:
        raise ParseError(f"duration must be positive: '{text.strip()}'")
    return timedelta(seconds=total)


def _parse_number(raw: str, whole: str) -> float:
    raw = raw.strip()
    try:
        value = float(raw)
    except ValueError:
        raise ParseError(f"invalid number '{raw}' in '{whole}'") from None
    if not math.isfinite(value):
        raise ParseError(f"invalid number '{raw}' in '{whole}'")
    return value


def _parse_uint(raw: str, whole: str) -> int:
    raw = raw.strip()
    if not _UINT.fullmatch(raw):
        raise ParseError(f"expected a non-negative integer, got '{raw}' in '{whole}'")
    value = int(raw)
    if value > MAX_UINT:
        raise ParseError(f"number too large '{raw}' in '{whole}'")
    return value


def _parse_operator(part: str, whole: str) -> tuple[EffectKind, float]:
    if part.startswith("+"):
        return EffectKind.ADD, _parse_number(part[1:], whole)
    if part.startswith("x"):
        return EffectKind.MULTIPLY, _parse_number(part[1:], whole)
    raise ParseError(f"effect must start with '+' or 'x': '{whole}'")


def _parse_unit(per_part: str, unit_kind: UnitKind, whole: str) -> timedelta | int:
    if unit_kind is UnitKind.COUNT:
        if not _UINT.fullmatch(per_part):
            raise ParseError(
                f"expected a count after 'per', got '{per_part}' in '{whole}'"
            )
        count = int(per_part)
        if count == 0:
            raise ParseError(f"count after 'per' must be positive in '{whole}'")
        return count
    return parse_duration(per_part)


@dataclass(frozen=True)
class Effect:
    """A parsed score adjustment, optionally scaled per time or count unit."""
    kind: EffectKind
    value: float
    unit: timedelta | int | None = None
    text: str = field(default="", compare=False)

    @classmethod
    def parse(cls, text: str, unit_kind: UnitKind = UnitKind.DURATION) -> Effect:
        """
        Parse an effect string.

        Args:
            text: "+N", "xN", "+N per <unit>" or "xN per <unit>"
            unit_kind: whether "per" takes a duration ("1h") or a count ("2")

        Raises:
            ParseError: naming the offending substring
        """
        s = text.strip()
        if " per " in s:
            effect_part, per_part = s.split(" per ", 1)
            kind, value = _parse_operator(effect_part.strip(), s)
            unit = _parse_unit(per_part.strip(), unit_kind, s)
            return cls(kind=kind, value=value, unit=unit, text=s)

        kind, value = _parse_operator(s, s)
        return cls(kind=kind, value=value, text=s)

    @property
    def is_per_unit(self) -> bool:
        return self.unit is not None

    @property
    def unit_duration(self) -> timedelta | None:
        return self.unit if isinstance(self.unit, timedelta) else None

    def apply(self, score: float, units: float = 1) -> float:
        """Apply to a score. Effects without a unit ignore `units` and apply once."""
        if self.kind is EffectKind.ADD:
            if self.is_per_unit:
                return score + self.value * units
            return score + self.value

        if not self.is_per_unit:
            return score * self.value
        try:
            factor = math.pow(self.value, units)
        except OverflowError:
            factor = math.inf
        return score * factor

    def units_for_elapsed(self, elapsed: timedelta) -> int:
        """Whole duration units in `elapsed` (0 when the effect has no duration unit)."""
        duration = self.unit_duration
        if duration is None:
            return 0
        seconds = max(elapsed.total_seconds(), 0.0)
        return int(seconds // duration.total_seconds())

    def units_for_count(self, count: int) -> int:
        """Whole count units in `count`; effects without a count unit use `count` as-is."""
        if isinstance(self.unit, int):
            return count // self.unit
        return count

    def __str__(self) -> str:
        return self.text or f"{self.kind.value}{self.value:g}"


@dataclass(frozen=True)
class RangeOp:
    """An unsigned integer range used by size buckets."""
    kind: RangeKind
    low: int
    high: int | None = None
    text: str = field(default="", compare=False)

    @classmethod
    def parse(cls, text: str) -> RangeOp:
        s = text.strip()
        for prefix, kind in (
            (">=", RangeKind.GE),
            ("<=", RangeKind.LE),
            (">", RangeKind.GT),
            ("<", RangeKind.LT),
        ):
            if s.startswith(prefix):
                return cls(kind=kind, low=_parse_uint(s[len(prefix):], s), text=s)

        if "-" in s and not s.startswith("-"):
            parts = s.split("-")
            if len(parts) != 2:
                raise ParseError(f"invalid range '{s}'")
            return cls(
                kind=RangeKind.BETWEEN,
                low=_parse_uint(parts[0], s),
                high=_parse_uint(parts[1], s),
                text=s,
            )

        return cls(kind=RangeKind.EQ, low=_parse_uint(s, s), text=s)

    def matches(self, value: int) -> bool:
        if self.kind is RangeKind.LT:
            return value < self.low
        if self.kind is RangeKind.LE:
            return value <= self.low
        if self.kind is RangeKind.GT:
            return value > self.low
        if self.kind is RangeKind.GE:
            return value >= self.low
        if self.kind is RangeKind.EQ:
            return value == self.low
        return self.low <= value <= (self.high if self.high is not None else self.low)

    def bounds(self) -> tuple[int, int] | None:
        """Closed interval this range covers, or None if it can never match."""
        if self.kind is RangeKind.LT:
            return (0, self.low - 1) if self.low > 0 else None
        if self.kind is RangeKind.LE:
            return (0, self.low)
        if self.kind is RangeKind.GT:
            return (self.low + 1, MAX_UINT) if self.low < MAX_UINT else None
        if self.kind is RangeKind.GE:
            return (self.low, MAX_UINT)
        if self.kind is RangeKind.EQ:
            return (self.low, self.low)
        high = self.high if self.high is not None else self.low
        return (self.low, high) if self.low <= high else None

    def __str__(self) -> str:
        if self.text:
            return self.text
        if self.kind is RangeKind.BETWEEN:
            return f"{self.low}-{self.high}"
        if self.kind is RangeKind.EQ:
            return str(self.low)
        return f"{self.kind.value}{self.low}"
