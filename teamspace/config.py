"""Environment-driven settings for the ledger and notification engine."""

from __future__ import annotations

import os
from functools import lru_cache

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _read_flag(name: str) -> bool | None:
    """Return the parsed boolean value for ``name`` if explicitly set."""

    value = os.getenv(name)
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized.lower() in _TRUE_VALUES


def _read_number(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value.strip())


__all__ = [
    "completion_roster_size",
    "is_create_all_enabled",
    "ledger_backoff_base",
    "ledger_max_attempts",
    "optimistic_tolerance_seconds",
    "reconcile_interval_seconds",
]


@lru_cache(maxsize=1)
def completion_roster_size() -> int | None:
    """Return the fixed roster size used for completion thresholds.

    ``None`` (the default) means completion follows the actual project
    roster. A fixed six-member workspace sets
    ``COMPLETION_ROSTER_SIZE=6``, giving a threshold of five non-uploaders.
    """

    value = os.getenv("COMPLETION_ROSTER_SIZE")
    if value is None or not value.strip():
        return None
    size = int(value.strip())
    if size < 1:
        raise ValueError("COMPLETION_ROSTER_SIZE must be a positive integer")
    return size


@lru_cache(maxsize=1)
def is_create_all_enabled() -> bool:
    """Return ``True`` when tables should be created outside migrations."""

    flag = _read_flag("SQLMODEL_CREATE_ALL")
    if flag is None:
        return False
    return flag


def ledger_max_attempts() -> int:
    return max(1, int(_read_number("LEDGER_MAX_ATTEMPTS", 5)))


def ledger_backoff_base() -> float:
    return max(0.0, _read_number("LEDGER_BACKOFF_BASE", 0.05))


@lru_cache(maxsize=1)
def optimistic_tolerance_seconds() -> float:
    """Return how long an unconfirmed optimistic placeholder may live."""

    return max(0.0, _read_number("OPTIMISTIC_TOLERANCE_SECONDS", 5.0))


@lru_cache(maxsize=1)
def reconcile_interval_seconds() -> float:
    """Return the period between full reconciliation passes."""

    return max(0.0, _read_number("RECONCILE_INTERVAL_SECONDS", 30.0))
