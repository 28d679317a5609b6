from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

UNIT_MS: dict[str, int] = {
    "ms": 1,
    "millisecond": 1,
    "s": 1_000,
    "sec": 1_000,
    "second": 1_000,
    "m": 60_000,
    "min": 60_000,
    "minute": 60_000,
    "h": 3_600_000,
    "hr": 3_600_000,
    "hour": 3_600_000,
    "d": 86_400_000,
    "day": 86_400_000,
    "w": 604_800_000,
    "week": 604_800_000,
    "mo": 2_592_000_000,
    "month": 2_592_000_000,
    "y": 31_536_000_000,
    "yr": 31_536_000_000,
    "year": 31_536_000_000,
}

_FORMAT_UNITS = (
    ("y", 31_536_000_000),
    ("mo", 2_592_000_000),
    ("w", 604_800_000),
    ("d", 86_400_000),
    ("h", 3_600_000),
    ("m", 60_000),
    ("s", 1_000),
)

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([a-zA-Z]+)")
PERMANENT_KEYWORDS = frozenset({"perma", "permanent", "perm", "forever", "infinite", "indefinite"})


@dataclass(frozen=True)
class ParsedDuration:
    ms: Optional[int]
    human: str
    parts: list[tuple[float, str]] = field(default_factory=list)

    @property
    def permanent(self) -> bool:
        return self.ms is None


def _normalize_unit(raw: str) -> str:
    unit = raw.lower()
    if unit in UNIT_MS:
        return unit
    if unit.endswith("s") and unit[:-1] in UNIT_MS:
        return unit[:-1]
    raise ValueError(f"Unknown duration unit: {raw}")


def parse_duration(text: Optional[str], default_unit: str = "m") -> Optional[ParsedDuration]:
    """Parse ``"7d12h"``, ``"90 minutes"``, ``"15"`` or a permanent keyword.

    Returns ``None`` for empty input and a duration with ``ms=None`` for
    permanent keywords.
    """
    if not text or not text.strip():
        return None
    lower = text.strip().lower()
    if lower in PERMANENT_KEYWORDS:
        return ParsedDuration(ms=None, human="permanent")

    total = 0.0
    parts: list[tuple[float, str]] = []
    for value, raw_unit in _DURATION_RE.findall(lower):
        unit = _normalize_unit(raw_unit)
        total += float(value) * UNIT_MS[unit]
        parts.append((float(value), unit))

    if not parts:
        if not lower.isdigit():
            raise ValueError("Invalid duration format")
        unit = _normalize_unit(default_unit)
        total = float(lower) * UNIT_MS[unit]
        parts.append((float(lower), unit))

    if total <= 0:
        raise ValueError("Duration must be greater than zero")
    return ParsedDuration(ms=round(total), human=format_duration(total), parts=parts)


def format_duration(ms: float) -> str:
    if ms <= 0:
        return "0s"
    remaining = int(ms)
    segments = []
    for label, size in _FORMAT_UNITS:
        if remaining < size:
            continue
        qty, remaining = divmod(remaining, size)
        segments.append(f"{qty}{label}")
    return " ".join(segments) if segments else "<1s"
