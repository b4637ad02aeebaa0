# fixed_width.py
from __future__ import annotations

from typing import Callable, Optional, TypeVar

T = TypeVar("T")


def extract(text: str, start: int, length: int, convert: Callable[[str], T],
            default: Optional[T] = None) -> Optional[T]:
    """Convert the column text[start:start+length], clamped to the line end.

    Wire columns are nominal: packets often stop short when trailing fields
    are blank. Anything wrong with the data (offset past the end, blank slice,
    convert raising) yields `default`. A bad length/offset is a caller bug.
    """
    if length <= 0:
        raise ValueError(f"length must be greater than zero, got {length}")
    if start < 0:
        raise ValueError(f"start cannot be negative, got {start}")

    text = text or ""
    if start >= len(text):
        return default
    chunk = text[start:start + length]
    if not chunk.strip():
        return default
    try:
        return convert(chunk)
    except Exception:
        return default


def extract_str(text: str, start: int, length: int, default: Optional[str] = "") -> Optional[str]:
    return extract(text, start, length, lambda s: s, default)


def trim_extract(text: str, start: int, length: int, convert: Callable[[str], T],
                 default: Optional[T] = None) -> Optional[T]:
    return extract(text, start, length, lambda s: convert(s.strip()), default)


def trim_extract_str(text: str, start: int, length: int, default: Optional[str] = "") -> Optional[str]:
    return trim_extract(text, start, length, lambda s: s, default)
