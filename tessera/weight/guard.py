"""
guard provides small validation helpers for weight containers.
"""
from __future__ import annotations

from tessera.config import ConfigurationError


def require_int(name: str, value: object, *, ge: int | None = None) -> int:
    """
    require_int validates that value is an int, optionally bounded below.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{name} must be an int, got {type(value)!r}")
    if ge is not None and value < ge:
        raise ConfigurationError(f"{name} must be >= {ge}, got {value}")
    return value
