# time_parse.py
from __future__ import annotations

import re
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

_DURATION_PAT = re.compile(r"^(?:(\d+):)?(\d+(?:\.\d*)?|\.\d+)$")
_HALF_LAP_PAT = re.compile(r"^(?:(\d+)\s+)?1/2$")

ZERO_LAPS = Decimal(0)
HALF_LAP = Decimal("0.5")


def parse_duration(text: Optional[str]) -> Optional[timedelta]:
    """'SS', 'SS.f' or 'M:SS.f' -> timedelta. None for blank, all-zero or bad input."""
    s = (text or "").strip()
    if not s:
        return None
    m = _DURATION_PAT.match(s)
    if not m:
        return None
    minutes = int(m.group(1)) if m.group(1) else 0
    try:
        seconds = Decimal(m.group(2))
    except InvalidOperation:
        return None
    if minutes == 0 and seconds == 0:
        return None
    return timedelta(minutes=minutes, seconds=float(seconds))


def parse_laps(text: Optional[str]) -> Decimal:
    """Laps remaining: '9', '9.0', '4 1/2', '1/2'. Blank or garbage -> 0 (no lap data)."""
    s = (text or "").strip()
    if not s:
        return ZERO_LAPS
    m = _HALF_LAP_PAT.match(s)
    if m:
        whole = Decimal(m.group(1)) if m.group(1) else ZERO_LAPS
        return whole + HALF_LAP
    try:
        laps = Decimal(s)
    except InvalidOperation:
        return ZERO_LAPS
    if not laps.is_finite():
        return ZERO_LAPS
    return laps


def format_duration(value: Optional[timedelta], places: int = 3) -> str:
    """Render like the scoreboard does: 'M:SS.fff' past a minute, else 'SS.fff'."""
    if value is None:
        return "--:--.-"
    sec = value.total_seconds()
    if sec >= 60:
        m = int(sec // 60)
        s = sec - 60 * m
        return f"{m}:{s:0{places + 3}.{places}f}"
    return f"{sec:.{places}f}"
