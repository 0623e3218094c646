"""Messaging platform boundary.

The core talks to the chat platform only through ``ChatTransport``;
``TelegramTransport`` is the production implementation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Tuple

from telegram import Bot, BotCommand


HTML = "HTML"


@dataclass(frozen=True)
class InboundMessage:
    """A text or command event received from the platform.

    Attributes:
        sender_id: Platform user id
        sender_name: Username (may be empty)
        chat_id: Conversation to reply into
        text: Raw message text
    """

    sender_id: int
    sender_name: str
    chat_id: int
    text: str


class ChatTransport(Protocol):
    """Operations the bot needs from the messaging platform."""

    async def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> int:
        """Send a new message and return its id."""

    async def edit_message(
        self, chat_id: int, message_id: int, text: str, parse_mode: Optional[str] = None
    ) -> None:
        """Replace the text of a previously sent message."""

    async def set_commands(self, commands: Sequence[Tuple[str, str]]) -> None:
        """Register the command menu as (command, description) pairs."""


class TelegramTransport:
    """``ChatTransport`` backed by python-telegram-bot."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> int:
        message = await self._bot.send_message(chat_id=chat_id, text=text, parse_mode=parse_mode)
        return message.message_id

    async def edit_message(
        self, chat_id: int, message_id: int, text: str, parse_mode: Optional[str] = None
    ) -> None:
        await self._bot.edit_message_text(
            text=text, chat_id=chat_id, message_id=message_id, parse_mode=parse_mode
        )

    async def set_commands(self, commands: Sequence[Tuple[str, str]]) -> None:
        await self._bot.set_my_commands([BotCommand(name, description) for name, description in commands])
