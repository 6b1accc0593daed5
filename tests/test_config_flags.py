"""Tests for ledger and live view configuration helpers."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _env(monkeypatch):
    """Ensure setting caches are reset between tests."""

    monkeypatch.syspath_prepend(str(Path(__file__).resolve().parents[1]))
    for name in (
        "COMPLETION_ROSTER_SIZE",
        "SQLMODEL_CREATE_ALL",
        "LEDGER_MAX_ATTEMPTS",
        "LEDGER_BACKOFF_BASE",
        "OPTIMISTIC_TOLERANCE_SECONDS",
        "RECONCILE_INTERVAL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    from teamspace.config import (
        completion_roster_size,
        is_create_all_enabled,
        optimistic_tolerance_seconds,
        reconcile_interval_seconds,
    )

    cached = (
        completion_roster_size,
        is_create_all_enabled,
        optimistic_tolerance_seconds,
        reconcile_interval_seconds,
    )
    for helper in cached:
        helper.cache_clear()
    try:
        yield
    finally:
        for helper in cached:
            helper.cache_clear()


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, False),
        ("", False),
        ("0", False),
        ("off", False),
        ("1", True),
        ("true", True),
        ("yes", True),
        ("On", True),
        (" 1 ", True),
    ],
)
def test_is_create_all_enabled(value, expected, monkeypatch):
    """``is_create_all_enabled`` reflects the current environment value."""

    from teamspace.config import is_create_all_enabled

    if value is not None:
        monkeypatch.setenv("SQLMODEL_CREATE_ALL", value)

    is_create_all_enabled.cache_clear()
    assert is_create_all_enabled() is expected


@pytest.mark.parametrize(("value", "expected"), [(None, None), ("", None), ("6", 6), (" 3 ", 3)])
def test_completion_roster_size(value, expected, monkeypatch):
    from teamspace.config import completion_roster_size

    if value is not None:
        monkeypatch.setenv("COMPLETION_ROSTER_SIZE", value)

    completion_roster_size.cache_clear()
    assert completion_roster_size() == expected


def test_completion_roster_size_rejects_non_positive(monkeypatch):
    from teamspace.config import completion_roster_size

    monkeypatch.setenv("COMPLETION_ROSTER_SIZE", "0")
    completion_roster_size.cache_clear()
    with pytest.raises(ValueError):
        completion_roster_size()


def test_ledger_retry_settings(monkeypatch):
    """Retry budget is at least one attempt and backoff is never negative."""

    from teamspace.config import ledger_backoff_base, ledger_max_attempts

    assert ledger_max_attempts() == 5
    assert ledger_backoff_base() == pytest.approx(0.05)

    monkeypatch.setenv("LEDGER_MAX_ATTEMPTS", "0")
    monkeypatch.setenv("LEDGER_BACKOFF_BASE", "-1")
    assert ledger_max_attempts() == 1
    assert ledger_backoff_base() == 0.0


def test_live_view_timings(monkeypatch):
    from teamspace.config import optimistic_tolerance_seconds, reconcile_interval_seconds

    assert optimistic_tolerance_seconds() == 5.0
    assert reconcile_interval_seconds() == 30.0

    monkeypatch.setenv("OPTIMISTIC_TOLERANCE_SECONDS", "2.5")
    monkeypatch.setenv("RECONCILE_INTERVAL_SECONDS", "10")
    optimistic_tolerance_seconds.cache_clear()
    reconcile_interval_seconds.cache_clear()
    assert optimistic_tolerance_seconds() == 2.5
    assert reconcile_interval_seconds() == 10.0
