"""Bounded conversation history.

History grows on every exchange and is only trimmed when it is about to
be used, so streaming replies never pay for the window math.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from relay.ledger import utcnow


USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"


@dataclass(frozen=True)
class Turn:
    """One role-tagged message in the conversation.

    Attributes:
        role: ``user`` or ``assistant``
        text: Message content
        timestamp: When the message was produced
    """

    role: str
    text: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, str]:
        """Serialize the turn with an ISO-8601 timestamp."""
        return {"role": self.role, "text": self.text, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Turn":
        """Rebuild a turn from ``to_dict`` output.

        Args:
            payload: Mapping with ``role``, ``text`` and ``timestamp``

        Returns:
            Turn: The restored turn

        Raises:
            KeyError: If a field is missing
            ValueError: If the role is unknown or the timestamp has no timezone
        """
        role = payload["role"]
        if role not in (USER_ROLE, ASSISTANT_ROLE):
            raise ValueError(f"unknown role {role!r}")
        timestamp = datetime.fromisoformat(payload["timestamp"])
        if timestamp.tzinfo is None:
            raise ValueError(f"turn timestamp {payload['timestamp']!r} has no timezone")
        return cls(role=role, text=str(payload["text"]), timestamp=timestamp)


class HistoryStore:
    """Ordered turns for a single user, oldest first."""

    def __init__(self, turns: Optional[List[Turn]] = None) -> None:
        self._lock = threading.Lock()
        self._turns: List[Turn] = []
        for turn in turns or []:
            self.append(turn)

    def append(self, turn: Turn) -> None:
        """Add a turn at the end of the history.

        Raises:
            ValueError: If the turn is older than the current last turn
        """
        with self._lock:
            if self._turns and turn.timestamp < self._turns[-1].timestamp:
                raise ValueError("history turns must be appended in timestamp order")
            self._turns.append(turn)

    def add(self, role: str, text: str, now: Optional[datetime] = None) -> Turn:
        """Build a turn stamped with ``now`` and append it."""
        turn = Turn(role=role, text=text, timestamp=now or utcnow())
        self.append(turn)
        return turn

    def prune(
        self,
        max_size: int = 0,
        max_age: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Drop the oldest turns until both limits hold.

        A ``max_size`` of zero or a missing/zero ``max_age`` disables that
        limit.

        Returns:
            int: Number of turns removed
        """
        current = now or utcnow()
        with self._lock:
            start = 0
            if max_size and max_size > 0:
                start = max(len(self._turns) - max_size, 0)
            if max_age:
                cutoff = current - max_age
                while start < len(self._turns) and self._turns[start].timestamp < cutoff:
                    start += 1
            if start:
                del self._turns[:start]
            return start

    def clear(self) -> None:
        """Remove every turn."""
        with self._lock:
            self._turns.clear()

    @property
    def turns(self) -> List[Turn]:
        with self._lock:
            return list(self._turns)

    def __len__(self) -> int:
        with self._lock:
            return len(self._turns)
