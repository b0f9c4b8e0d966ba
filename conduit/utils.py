"""
Shared parsing helpers for configuration values

Provides common helpers for:
- String parsing: Environment variable conversion (parse_bool, parse_int, split_csv)
- Integer lists: Comma-separated offsets and protocol numbers (parse_int_list)
- Key building: Turning free-form names into environment variable fragments (env_key)
"""

from __future__ import annotations

import re

_ENV_KEY_RE = re.compile(r"[^A-Za-z0-9]+")


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


def split_csv(value: str | None, separator: str = ",") -> list[str]:
    """Split separated strings into trimmed tokens."""
    if not value:
        return []
    return [item.strip() for item in value.split(separator) if item.strip()]


def parse_int_list(value: str | None) -> list[int]:
    """Parse a CSV of integers, skipping tokens that are not numbers."""
    numbers: list[int] = []
    for token in split_csv(value):
        try:
            numbers.append(int(token))
        except ValueError:
            continue
    return numbers


def env_key(name: str) -> str:
    """Convert a configured name into an upper-case env var fragment.

    Example: 'back-porch' -> 'BACK_PORCH'
    """
    return _ENV_KEY_RE.sub("_", name.strip()).strip("_").upper()
