"""Streaming reply coordination.

One ``StreamCoordinator.run`` call drives a single request through
``REQUESTING -> STREAMING -> COMPLETED | CANCELLED | FAILED`` while
relaying partial output to the chat and recording the outcome in the
user's session.
"""

from __future__ import annotations

import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from relay.completion import CompletionClient, build_messages
from relay.history import ASSISTANT_ROLE, USER_ROLE
from relay.session import Session, StreamHandle, UserRegistry
from relay.transport import ChatTransport, InboundMessage
from utils.budget import BudgetGate
from utils.config import BotConfig
from utils.i18n import Translations


logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class StreamResult:
    """Outcome of one coordinated request.

    Attributes:
        state: Terminal state reached
        text: Reply text the user actually saw
        response_id: Provider response id, when one was reported
        cost: Cost charged to the ledger, if any
    """

    state: StreamState
    text: str = ""
    response_id: Optional[str] = None
    cost: Optional[float] = None


def utf16_length(text: str) -> int:
    """Length of ``text`` in UTF-16 code units, the unit Telegram limits use.

    Args:
        text: Text to measure

    Returns:
        int: Number of UTF-16 code units (astral characters count twice)
    """
    return len(text.encode("utf-16-le")) // 2


def utf16_prefix(text: str, limit: int) -> int:
    """Number of characters of ``text`` that fit in ``limit`` UTF-16 units.

    Never splits a character, so a surrogate pair stays in one message.

    Args:
        text: Text to cut
        limit: Maximum size in UTF-16 code units

    Returns:
        int: Index to slice ``text`` at (at least 1 for non-empty text)
    """
    used = 0
    for index, char in enumerate(text):
        used += 2 if ord(char) > 0xFFFF else 1
        if used > limit:
            return max(index, 1)
    return len(text)


class ReplyWriter:
    """Mirrors a growing reply into one or more chat messages.

    The first write sends a message and later writes edit it. Text beyond
    ``max_length`` UTF-16 code units continues in a fresh message.
    """

    def __init__(self, transport: ChatTransport, chat_id: int, max_length: int) -> None:
        self._transport = transport
        self._chat_id = chat_id
        self._max_length = max_length
        self._message_id: Optional[int] = None
        self._offset = 0
        self._current = ""
        self.shown = ""

    async def flush(self, text: str) -> None:
        """Bring the chat up to date with ``text`` (the full reply so far).

        Args:
            text: Complete reply accumulated so far, not just the new part
        """
        while utf16_length(text[self._offset:]) > self._max_length:
            end = self._offset + utf16_prefix(text[self._offset:], self._max_length)
            await self._write(text[self._offset:end])
            self._offset = end
            self._message_id = None
            self._current = ""
        await self._write(text[self._offset:])
        self.shown = text

    async def _write(self, part: str) -> None:
        if not part or part == self._current:
            return
        if self._message_id is None:
            self._message_id = await self._transport.send_message(self._chat_id, part)
        else:
            await self._transport.edit_message(self._chat_id, self._message_id, part)
        self._current = part


class StreamCoordinator:
    """Runs requests for sessions and keeps their state consistent.

    Args:
        completion: Completion API client
        transport: Messaging platform used to relay output
        registry: Registry notified of session mutations
        config: Bot configuration
        translations: Bundle used for the generic error reply
        gate: Budget check applied once the session lock is held
        clock: Monotonic clock used to rate limit message edits
    """

    def __init__(
        self,
        completion: CompletionClient,
        transport: ChatTransport,
        registry: UserRegistry,
        config: BotConfig,
        translations: Translations,
        gate: Optional[BudgetGate] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._completion = completion
        self._transport = transport
        self._registry = registry
        self._config = config
        self._translations = translations
        self._gate = gate
        self._clock = clock

    async def run(self, session: Session, message: InboundMessage) -> StreamResult:
        """Execute one request for ``session``.

        Requests of the same session run one at a time and the budget is
        checked only once this request holds the session lock, so queued
        messages see the cost of the ones before them. The cancellation
        handle is registered before the API call so ``/stop`` works even
        before the first chunk arrives.

        Args:
            session: Session of the sender
            message: Inbound message whose text is the new prompt

        Returns:
            StreamResult: Terminal state, shown text and charged cost

        Raises:
            AccessDeniedError: If the budget is exhausted when the request
                reaches the front of the session queue
        """
        async with session.lock:
            if self._gate is not None:
                self._gate.ensure_access(session)
            session.history.prune(self._config.max_history_size, self._config.max_history_age)
            messages = build_messages(session.system_prompt, session.history.turns, message.text)
            writer = ReplyWriter(self._transport, message.chat_id, self._config.max_message_length)

            handle = session.open_stream()
            logger.info("Sending request to API for user %s", session.user_id)
            try:
                if self._config.stream:
                    result = await self._stream(handle, messages, writer)
                else:
                    result = await self._complete(handle, messages, writer)
            except Exception:
                logger.exception("Request failed for user %s", session.user_id)
                result = StreamResult(state=StreamState.FAILED)
            finally:
                session.release_stream(handle)

            if result.state is StreamState.FAILED:
                await self._notify_failure(message.chat_id)
                return result

            logger.info(
                "Request for user %s ended %s (response id %s)",
                session.user_id,
                result.state.value,
                result.response_id,
            )
            session.history.add(USER_ROLE, message.text)
            if result.text:
                session.history.add(ASSISTANT_ROLE, result.text)
            if result.state is StreamState.COMPLETED:
                result.cost = await self._charge(session, result.response_id)
            self._registry.mark_dirty(session)
            return result

    async def _stream(self, handle: StreamHandle, messages, writer: ReplyWriter) -> StreamResult:
        state = StreamState.REQUESTING
        text = ""
        response_id: Optional[str] = None
        last_flush: Optional[float] = None

        async with aclosing(self._completion.stream(messages)) as chunks:
            async for chunk in chunks:
                if handle.closed:
                    state = StreamState.CANCELLED
                    break
                state = StreamState.STREAMING
                text += chunk.text
                response_id = response_id or chunk.response_id
                now = self._clock()
                if last_flush is None or now - last_flush >= self._config.stream_flush_interval:
                    await writer.flush(text)
                    last_flush = now
            else:
                state = StreamState.COMPLETED

        if state is StreamState.CANCELLED:
            # Only what already reached the chat counts as the reply.
            return StreamResult(state=state, text=writer.shown, response_id=response_id)
        await writer.flush(text)
        return StreamResult(state=state, text=text, response_id=response_id)

    async def _complete(self, handle: StreamHandle, messages, writer: ReplyWriter) -> StreamResult:
        reply = await self._completion.complete(messages)
        if handle.closed:
            return StreamResult(state=StreamState.CANCELLED, response_id=reply.response_id)
        await writer.flush(reply.text)
        return StreamResult(state=StreamState.COMPLETED, text=reply.text, response_id=reply.response_id)

    async def _charge(self, session: Session, response_id: Optional[str]) -> Optional[float]:
        try:
            cost = await self._completion.fetch_cost(response_id)
        except Exception:
            logger.warning("Could not fetch cost of response %s", response_id, exc_info=True)
            return None
        if cost is not None:
            session.ledger.record(cost)
        return cost

    async def _notify_failure(self, chat_id: int) -> None:
        text = self._translations.translate("errors.generic", self._config.lang)
        try:
            await self._transport.send_message(chat_id, text)
        except Exception:
            logger.exception("Could not deliver error notice to chat %s", chat_id)
