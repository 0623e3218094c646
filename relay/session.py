"""Per-user sessions and the process-wide registry that owns them."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from relay.history import HistoryStore, Turn
from relay.ledger import UsageLedger
from utils.config import BotConfig
from utils.storage import SessionLoadError, SessionStorage


logger = logging.getLogger(__name__)


class StreamAlreadyActiveError(RuntimeError):
    """Raised when a stream is opened while another one is still open."""


@dataclass
class StreamHandle:
    """Cancellation handle for one outbound completion stream.

    Closing only sets a flag; the streaming task notices it at the next
    chunk boundary.
    """

    _event: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    @property
    def closed(self) -> bool:
        return self._event.is_set()

    def close(self) -> None:
        """Request cancellation (idempotent)."""
        self._event.set()


@dataclass
class Session:
    """Conversation state for a single user.

    Attributes:
        user_id: Platform identity of the user
        display_name: Username at the time the session was created
        system_prompt: Prompt prepended to every request
        history: Conversation turns used as request context
        ledger: Costs charged to this user
        active_stream: Handle of the in-flight stream, if any
        lock: Serializes requests of this user; never held by ``/stop``
    """

    user_id: int
    display_name: str
    system_prompt: str
    history: HistoryStore = field(default_factory=HistoryStore)
    ledger: UsageLedger = field(default_factory=UsageLedger)
    active_stream: Optional[StreamHandle] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _stream_guard: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def open_stream(self) -> StreamHandle:
        """Register a fresh cancellation handle.

        Raises:
            StreamAlreadyActiveError: If the previous handle is still open
        """
        with self._stream_guard:
            if self.active_stream is not None and not self.active_stream.closed:
                raise StreamAlreadyActiveError(
                    f"User {self.user_id} already has an active stream"
                )
            handle = StreamHandle()
            self.active_stream = handle
            return handle

    def stop_stream(self) -> bool:
        """Close the active stream.

        Returns:
            bool: False when there was nothing to stop
        """
        with self._stream_guard:
            handle = self.active_stream
            if handle is None or handle.closed:
                return False
            handle.close()
            return True

    def release_stream(self, handle: StreamHandle) -> None:
        """Forget ``handle`` if it is still the registered one."""
        with self._stream_guard:
            if self.active_stream is handle:
                handle.close()
                self.active_stream = None

    def reset_history(self) -> None:
        """Drop all turns; the system prompt and ledger are kept."""
        self.history.clear()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the persistent part of the session.

        The lock and the active stream are runtime state and are not saved.

        Returns:
            Dict[str, Any]: JSON-compatible snapshot
        """
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "system_prompt": self.system_prompt,
            "history": [turn.to_dict() for turn in self.history.turns],
            "ledger": self.ledger.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Session":
        """Rebuild a session from ``to_dict`` output.

        Args:
            payload: Snapshot data as loaded from JSON

        Returns:
            Session: Session with restored history and ledger

        Raises:
            KeyError: If a required field is missing
            ValueError: If a field has the wrong shape or value
        """
        if not isinstance(payload, dict):
            raise ValueError(f"session must be an object, got {type(payload).__name__}")
        system_prompt = payload["system_prompt"]
        if not isinstance(system_prompt, str):
            raise ValueError("system_prompt must be a string")
        items = payload.get("history", [])
        if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
            raise ValueError("history must be a list of objects")
        return cls(
            user_id=int(payload["user_id"]),
            display_name=str(payload.get("display_name", "")),
            system_prompt=system_prompt,
            history=HistoryStore([Turn.from_dict(item) for item in items]),
            ledger=UsageLedger.from_dict(payload.get("ledger", {})),
        )


class UserRegistry:
    """Process-wide map from user id to Session.

    Sessions are created lazily, restored from the last snapshot when one
    exists, and written back by ``flush``. A crash between a mutation and
    the next flush loses that mutation.
    """

    def __init__(self, storage: Optional[SessionStorage] = None) -> None:
        self._storage = storage
        self._lock = threading.Lock()
        self._sessions: Dict[int, Session] = {}
        self._dirty: Set[int] = set()

    def get_or_create(self, user_id: int, display_name: str, config: BotConfig) -> Session:
        """Return the session for ``user_id``, creating it if needed.

        The same instance is returned on every call for the same user.
        A snapshot that fails to load is logged and replaced by a fresh
        session.
        """
        with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                return session
            session = self._restore(user_id)
            if session is None:
                session = Session(
                    user_id=user_id,
                    display_name=display_name,
                    system_prompt=config.system_prompt,
                )
            self._sessions[user_id] = session
            return session

    def _restore(self, user_id: int) -> Optional[Session]:
        if self._storage is None:
            return None
        try:
            payload = self._storage.load(user_id)
            if payload is None:
                return None
            return Session.from_dict(payload)
        except (SessionLoadError, AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Falling back to a fresh session for user %s: %s", user_id, exc)
            return None

    def mark_dirty(self, session: Session) -> None:
        """Schedule ``session`` for the next ``flush``.

        Args:
            session: Session whose state changed since the last snapshot
        """
        with self._lock:
            self._dirty.add(session.user_id)

    async def flush(self) -> int:
        """Write every modified session to storage.

        Disk writes run in a worker thread. Sessions that fail to save
        stay dirty and are retried on the next flush.

        Returns:
            int: Number of sessions written
        """
        if self._storage is None:
            return 0
        with self._lock:
            pending = [self._sessions[user_id] for user_id in self._dirty]
            self._dirty.clear()

        written = 0
        for session in pending:
            session.ledger.compact()
            try:
                await asyncio.to_thread(self._storage.save, session.user_id, session.to_dict())
                written += 1
            except OSError:
                logger.exception("Failed to snapshot session for user %s", session.user_id)
                self.mark_dirty(session)
        return written

    async def run_snapshots(self, interval: float) -> None:
        """Flush dirty sessions every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            written = await self.flush()
            if written:
                logger.debug("Snapshotted %d session(s)", written)
