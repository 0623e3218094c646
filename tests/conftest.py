"""Shared fixtures: configuration, fake transports and scripted completions."""

from __future__ import annotations

from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import pytest

from relay.completion import ChatChunk, CompletionError
from relay.handlers import BotContext
from relay.session import UserRegistry
from relay.streaming import StreamCoordinator
from utils.budget import BudgetGate
from utils.config import BotConfig
from utils.i18n import Translations, load_translations


LANG_DIR = Path(__file__).resolve().parent.parent / "lang"


def make_config(**overrides) -> BotConfig:
    """Build a valid configuration with test-friendly defaults."""
    values = {
        "telegram_bot_token": "123:test-token",
        "openai_api_key": "sk-test",
        "system_prompt": "Be brief.",
        "stream_flush_interval": 0.0,
        "max_history_size": 0,
        "max_history_time": 0,
    }
    values.update(overrides)
    return BotConfig(**values)


class RecordingTransport:
    """In-memory ``ChatTransport`` that remembers every call."""

    def __init__(self) -> None:
        self.events: List[Tuple] = []
        self.commands: List[Tuple[str, str]] = []
        self.messages: Dict[int, str] = {}
        self._next_id = 0

    async def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> int:
        self._next_id += 1
        self.messages[self._next_id] = text
        self.events.append(("send", chat_id, self._next_id, text, parse_mode))
        return self._next_id

    async def edit_message(
        self, chat_id: int, message_id: int, text: str, parse_mode: Optional[str] = None
    ) -> None:
        self.messages[message_id] = text
        self.events.append(("edit", chat_id, message_id, text, parse_mode))

    async def set_commands(self, commands) -> None:
        self.commands = list(commands)

    @property
    def last_text(self) -> str:
        return self.events[-1][3]


ChunkHook = Callable[[int, list], Awaitable[None]]


class ScriptedCompletion:
    """Completion client double that replays fixed chunks.

    Args:
        chunks: Texts yielded one by one
        response_id: Id attached to every chunk
        cost: Value returned by ``fetch_cost``
        fail_at: Raise ``CompletionError`` before yielding this chunk index
        before_chunk: Awaited before each chunk with (index, messages)
    """

    def __init__(
        self,
        chunks: List[str],
        response_id: str = "gen-1",
        cost: Optional[float] = None,
        fail_at: Optional[int] = None,
        before_chunk: Optional[ChunkHook] = None,
    ) -> None:
        self.chunks = chunks
        self.response_id = response_id
        self.cost = cost
        self.fail_at = fail_at
        self.before_chunk = before_chunk
        self.requests: List[list] = []
        self.cost_requests: List[Optional[str]] = []

    async def stream(self, messages):
        self.requests.append(list(messages))
        for index, text in enumerate(self.chunks):
            if self.before_chunk is not None:
                await self.before_chunk(index, messages)
            if index == self.fail_at:
                raise CompletionError("connection reset")
            yield ChatChunk(text=text, response_id=self.response_id)

    async def complete(self, messages) -> ChatChunk:
        self.requests.append(list(messages))
        if self.fail_at is not None:
            raise CompletionError("connection reset")
        return ChatChunk(text="".join(self.chunks), response_id=self.response_id)

    async def fetch_cost(self, response_id: Optional[str]) -> Optional[float]:
        self.cost_requests.append(response_id)
        return self.cost


@pytest.fixture
def translations() -> Translations:
    return load_translations(LANG_DIR)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def build_context(translations, transport):
    """Factory producing a fully wired ``BotContext`` around fakes."""

    def _build(completion: ScriptedCompletion, **overrides) -> BotContext:
        config = make_config(**overrides)
        registry = UserRegistry()
        gate = BudgetGate(config)
        coordinator = StreamCoordinator(
            completion=completion,
            transport=transport,
            registry=registry,
            config=config,
            translations=translations,
            gate=gate,
        )
        return BotContext(
            config=config,
            translations=translations,
            registry=registry,
            gate=gate,
            coordinator=coordinator,
            transport=transport,
        )

    return _build
