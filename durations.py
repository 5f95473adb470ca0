"""Retention duration parsing for TTL_<CADENCE>_BACKUP values."""
from __future__ import annotations

import re

from backup_errors import ValidationError


MINUTES_PER_UNIT = {
    "m": 1,
    "h": 60,
    "d": 24 * 60,
    "w": 7 * 24 * 60,
    "M": 31 * 24 * 60,
    "y": 365 * 24 * 60,
}

_TTL_PATTERN = re.compile(r"^([0-9]+)\s*([mhdwMy])$")
_DIGITS = re.compile(r"[0-9]+")


def parse_ttl(value: str) -> int:
    """Convert a retention string such as ``24h`` or ``5w`` into minutes.

    ``0`` on its own or with any unit means "keep forever" and returns 0.
    Units are case-sensitive: ``m`` is minutes and ``M`` is months (31 days).
    """
    if value is None:
        raise ValidationError("TTL value must not be empty.")

    normalized = value.strip()
    if not normalized:
        raise ValidationError("TTL value must not be empty.")

    if _DIGITS.fullmatch(normalized) and int(normalized) == 0:
        return 0

    match = _TTL_PATTERN.match(normalized)
    if match is None:
        raise ValidationError(
            f"Invalid TTL format '{value}'. Expected <number><unit> with unit one of "
            "m (minutes), h (hours), d (days), w (weeks), M (months), y (years)."
        )

    amount = int(match.group(1))
    return amount * MINUTES_PER_UNIT[match.group(2)]


def format_minutes(minutes: int) -> str:
    if minutes <= 0:
        return "unlimited"
    units = [
        (365 * 24 * 60, "year"),
        (7 * 24 * 60, "week"),
        (24 * 60, "day"),
        (60, "hour"),
        (1, "minute"),
    ]
    for unit_minutes, label in units:
        if minutes >= unit_minutes and minutes % unit_minutes == 0:
            value = minutes // unit_minutes
            name = label if value == 1 else f"{label}s"
            return f"{value} {name}"
    return f"{minutes} minutes"
