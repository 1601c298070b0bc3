"""Race-clock normalisation and duration helpers.

Source pages publish times as ``SS``, ``M:SS``, ``MM:SS``, ``H:MM:SS`` and
with tenths (``M:SS.D``). Everything is stored as a canonical ``HH:MM:SS``
string; sub-second precision is dropped rather than rounded.
"""

from __future__ import annotations

import re
from typing import Optional

ZERO_TIME = "00:00:00"

_NON_CLOCK = re.compile(r"[^0-9:]")
_NO_TIME_MARKERS = {"DNS", "DNF", "DQ", "DSQ"}


def _fmt(hours: int, minutes: int, seconds: int) -> str:
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def normalize_time(raw: Optional[str]) -> str:
    """Return ``raw`` as ``HH:MM:SS``; unparseable input gives ``00:00:00``.

    Minutes or seconds above 59 are clamped to 59 instead of rejected.
    """
    if raw is None:
        return ZERO_TIME
    text = str(raw).strip()
    if not text or text.upper() in _NO_TIME_MARKERS:
        return ZERO_TIME
    if "." in text:
        text = text.split(".", 1)[0]
    text = _NON_CLOCK.sub("", text)
    if not text:
        return ZERO_TIME
    parts = text.split(":")
    if any(p == "" for p in parts):
        return ZERO_TIME
    nums = [int(p) for p in parts]

    if len(nums) == 1:
        total = nums[0]
        return _fmt(total // 3600, min((total % 3600) // 60, 59), min(total % 60, 59))
    if len(nums) == 2:
        minutes, seconds = nums
        return _fmt(0, min(minutes, 59), min(seconds, 59))
    if len(nums) == 3:
        hours, minutes, seconds = nums
        return _fmt(hours, min(minutes, 59), min(seconds, 59))
    return ZERO_TIME


def time_to_seconds(value: Optional[str]) -> int:
    """Seconds in a ``HH:MM:SS`` (or ``MM:SS``) string; 0 when absent."""
    if not value:
        return 0
    try:
        parts = [int(p) for p in str(value).split(":")]
    except ValueError:
        return 0
    total = 0
    for p in parts:
        total = total * 60 + p
    return total


def seconds_to_interval(total: int) -> str:
    """Format a second count as ``HH:MM:SS``; hours are not capped at 24."""
    total = max(int(total or 0), 0)
    return _fmt(total // 3600, (total % 3600) // 60, total % 60)


# Registrations whose age was not published on the result page
UNKNOWN_AGE_GROUP = "unknown"

AGE_GROUPS = ["0-14"] + [f"{lo}-{lo + 4}" for lo in range(15, 80, 5)] + ["80-99"]


def age_group_for(age: int) -> str:
    """Five-year age bracket, with an open 0-14 floor and an 80-99 top."""
    if age < 15:
        return "0-14"
    if age >= 80:
        return "80-99"
    lo = 15 + ((age - 15) // 5) * 5
    return f"{lo}-{lo + 4}"


__all__ = [
    "ZERO_TIME",
    "AGE_GROUPS",
    "UNKNOWN_AGE_GROUP",
    "normalize_time",
    "time_to_seconds",
    "seconds_to_interval",
    "age_group_for",
]
