"""Per-user usage accounting.

Every completed request that reports a cost leaves one record in the
ledger. Costs are aggregated over rolling windows when checking budgets
and rendering the ``/stats`` reply.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


# Fixed-width windows (a month is always 30 days, not calendar aware).
WINDOWS: Dict[str, Optional[timedelta]] = {
    "daily": timedelta(hours=24),
    "monthly": timedelta(days=30),
    "total": None,
}


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UsageRecord:
    """A single charged request.

    Attributes:
        timestamp: When the cost was recorded
        cost: Amount charged for the request (never negative)
    """

    timestamp: datetime
    cost: float


class UsageLedger:
    """Append-only cost records with windowed aggregation.

    Records are never modified after creation. ``compact`` drops records
    older than the longest rolling window but keeps their sum in
    ``compacted_total`` so the ``total`` window stays exact.
    """

    def __init__(
        self,
        records: Optional[List[UsageRecord]] = None,
        compacted_total: float = 0.0,
    ) -> None:
        self._lock = threading.Lock()
        self._records: List[UsageRecord] = list(records or [])
        self._compacted_total = compacted_total

    def record(self, cost: float, now: Optional[datetime] = None) -> UsageRecord:
        """Append a new record stamped with ``now``.

        Raises:
            ValueError: If cost is negative
        """
        if cost < 0:
            raise ValueError("cost must not be negative")
        entry = UsageRecord(timestamp=now or utcnow(), cost=float(cost))
        with self._lock:
            self._records.append(entry)
        return entry

    def cost_in_window(self, window: str, now: Optional[datetime] = None) -> float:
        """Sum the costs recorded inside ``window`` ending at ``now``.

        Args:
            window: One of ``daily``, ``monthly`` or ``total``
            now: Reference time for the window (defaults to the current time)

        Returns:
            float: Summed cost, unrounded

        Raises:
            ValueError: If the window name is unknown
        """
        if window not in WINDOWS:
            raise ValueError(f"Unknown usage window: {window}")
        duration = WINDOWS[window]
        with self._lock:
            records = list(self._records)
            carried = self._compacted_total
        if duration is None:
            return carried + sum(entry.cost for entry in records)
        current = now or utcnow()
        start = current - duration
        return sum(entry.cost for entry in records if start <= entry.timestamp <= current)

    def compact(self, now: Optional[datetime] = None) -> int:
        """Drop records that no rolling window can see anymore.

        Returns:
            int: Number of records removed
        """
        horizon = max(d for d in WINDOWS.values() if d is not None)
        cutoff = (now or utcnow()) - horizon
        with self._lock:
            kept = [entry for entry in self._records if entry.timestamp >= cutoff]
            dropped = len(self._records) - len(kept)
            if dropped:
                self._compacted_total += sum(
                    entry.cost for entry in self._records if entry.timestamp < cutoff
                )
                self._records = kept
        return dropped

    @property
    def records(self) -> List[UsageRecord]:
        with self._lock:
            return list(self._records)

    @property
    def compacted_total(self) -> float:
        return self._compacted_total

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the ledger for a session snapshot.

        Returns:
            Dict[str, Any]: ISO-8601 timestamped records and the compacted total
        """
        with self._lock:
            return {
                "records": [
                    {"timestamp": entry.timestamp.isoformat(), "cost": entry.cost}
                    for entry in self._records
                ],
                "compacted_total": self._compacted_total,
            }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "UsageLedger":
        """Rebuild a ledger from ``to_dict`` output.

        Args:
            payload: Snapshot data as loaded from JSON

        Returns:
            UsageLedger: Ledger holding the stored records

        Raises:
            ValueError: If the payload has the wrong shape, a timestamp lacks
                a timezone, or any amount is negative
        """
        if not isinstance(payload, dict):
            raise ValueError(f"ledger must be an object, got {type(payload).__name__}")
        items = payload.get("records", [])
        if not isinstance(items, list):
            raise ValueError("ledger records must be a list")

        records = []
        for item in items:
            if not isinstance(item, dict):
                raise ValueError("ledger record must be an object")
            timestamp = datetime.fromisoformat(item["timestamp"])
            if timestamp.tzinfo is None:
                raise ValueError(f"ledger timestamp {item['timestamp']!r} has no timezone")
            cost = float(item["cost"])
            if cost < 0:
                raise ValueError(f"ledger cost {cost} is negative")
            records.append(UsageRecord(timestamp=timestamp, cost=cost))

        compacted_total = float(payload.get("compacted_total", 0.0))
        if compacted_total < 0:
            raise ValueError(f"compacted total {compacted_total} is negative")
        return cls(records=records, compacted_total=compacted_total)
