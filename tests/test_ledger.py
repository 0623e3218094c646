"""Tests for windowed usage accounting."""

import threading
from datetime import timedelta

import pytest

from relay.ledger import UsageLedger, utcnow


def test_total_window_sums_every_record() -> None:
    ledger = UsageLedger()
    costs = [0.1, 0.25, 0.0, 1.5]
    for cost in costs:
        ledger.record(cost)

    assert ledger.cost_in_window("total") == pytest.approx(sum(costs))


def test_daily_and_monthly_windows() -> None:
    """Rolling windows include only records inside [now - width, now].

    Tests that:
    - daily covers the last 24 hours
    - monthly covers a fixed 30 days
    - total covers everything
    """
    now = utcnow()
    ledger = UsageLedger()
    ledger.record(1.0, now=now - timedelta(hours=1))
    ledger.record(2.0, now=now - timedelta(hours=30))
    ledger.record(4.0, now=now - timedelta(days=31))

    assert ledger.cost_in_window("daily", now=now) == pytest.approx(1.0)
    assert ledger.cost_in_window("monthly", now=now) == pytest.approx(3.0)
    assert ledger.cost_in_window("total", now=now) == pytest.approx(7.0)


def test_rejects_negative_cost_and_unknown_window() -> None:
    ledger = UsageLedger()
    with pytest.raises(ValueError):
        ledger.record(-0.01)
    with pytest.raises(ValueError):
        ledger.cost_in_window("weekly")


def test_compaction_keeps_total_exact() -> None:
    """Compaction drops old records but the total window is unchanged."""
    now = utcnow()
    ledger = UsageLedger()
    ledger.record(4.0, now=now - timedelta(days=40))
    ledger.record(1.0, now=now - timedelta(days=1))

    removed = ledger.compact(now=now)

    assert removed == 1
    assert len(ledger.records) == 1
    assert ledger.compacted_total == pytest.approx(4.0)
    assert ledger.cost_in_window("total", now=now) == pytest.approx(5.0)
    assert ledger.cost_in_window("monthly", now=now) == pytest.approx(1.0)


def test_serialization_round_trip() -> None:
    now = utcnow()
    ledger = UsageLedger(compacted_total=0.5)
    ledger.record(0.123456789, now=now)

    restored = UsageLedger.from_dict(ledger.to_dict())

    assert restored.records == ledger.records
    assert restored.cost_in_window("total", now=now) == pytest.approx(0.623456789)


def test_concurrent_records_are_not_lost() -> None:
    """Parallel writers and readers never lose or double-count a record."""
    ledger = UsageLedger()

    def writer() -> None:
        for _ in range(500):
            ledger.record(0.001)
            ledger.cost_in_window("daily")

    threads = [threading.Thread(target=writer) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(ledger.records) == 2000
    assert ledger.cost_in_window("total") == pytest.approx(2.0)


def test_from_dict_rejects_invalid_snapshots() -> None:
    """Restoring never produces a ledger with impossible contents.

    Tests that:
    - negative record costs and compacted totals are refused
    - timestamps without a timezone are refused
    - records stored as something other than a list are refused
    """
    stamp = "2026-01-01T00:00:00+00:00"

    with pytest.raises(ValueError):
        UsageLedger.from_dict({"records": [{"timestamp": stamp, "cost": -0.5}]})
    with pytest.raises(ValueError):
        UsageLedger.from_dict({"records": [], "compacted_total": -1.0})
    with pytest.raises(ValueError):
        UsageLedger.from_dict({"records": [{"timestamp": "2026-01-01T00:00:00", "cost": 0.5}]})
    with pytest.raises(ValueError):
        UsageLedger.from_dict({"records": {"timestamp": stamp, "cost": 0.5}})
    with pytest.raises(ValueError):
        UsageLedger.from_dict([])
