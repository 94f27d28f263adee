from __future__ import annotations

from datetime import datetime
from typing import Optional

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")
GIB = 1024 ** 3


def format_bytes(num: int) -> str:
    """Human readable byte count (1024 based, two decimals at most)."""
    try:
        n = float(num or 0)
    except (TypeError, ValueError):
        n = 0.0
    if n <= 0:
        return "0 B"
    i = 0
    while n >= 1024 and i < len(_SIZE_UNITS) - 1:
        n /= 1024.0
        i += 1
    text = f"{n:.2f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[i]}"


def format_limit(data_limit: int) -> str:
    return format_bytes(data_limit) if data_limit and data_limit > 0 else "Unlimited"


def gb_to_bytes(gb: float) -> int:
    return int(round(float(gb) * GIB))


def format_date(dt: Optional[datetime]) -> str:
    if dt is None:
        return "Never"
    return dt.strftime("%Y-%m-%d")
