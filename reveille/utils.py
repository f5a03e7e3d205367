"""
Shared utility functions for parsing and formatting

Provides common helpers for:
- String parsing: Environment variable conversion (parse_bool, parse_int, parse_float)
- Formatting: Byte sizes for catalog summaries

These utilities are used throughout Reveille for configuration parsing and data handling.
"""

from __future__ import annotations


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Interpret env-style booleans."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(value: str | None, default: int) -> int:
    """Best-effort int parser with fallback."""
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_float(value: str | None, default: float) -> float:
    """Best-effort float parser with fallback."""
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def format_byte_size(size: int) -> str:
    """Render a byte count the way file browsers do (KB/MB/GB, base 1000)."""
    size = max(0, int(size))
    if size < 1000:
        return f"{size} bytes"
    value = float(size)
    for unit in ("KB", "MB", "GB"):
        value /= 1000.0
        if value < 1000 or unit == "GB":
            return f"{value:.1f} {unit}"
    return f"{value:.1f} GB"
