"""Command and message handlers.

Handlers receive platform-neutral ``InboundMessage`` objects so they can
be exercised without a live bot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from relay.session import Session, UserRegistry
from relay.streaming import StreamCoordinator, StreamResult
from relay.transport import HTML, ChatTransport, InboundMessage
from utils.budget import AccessDeniedError, BudgetGate
from utils.config import BotConfig
from utils.i18n import Translations


logger = logging.getLogger(__name__)


COMMANDS = ("start", "help", "reset", "stats", "stop", "q")


@dataclass
class BotContext:
    """Collaborators shared by every handler."""

    config: BotConfig
    translations: Translations
    registry: UserRegistry
    gate: BudgetGate
    coordinator: StreamCoordinator
    transport: ChatTransport

    def t(self, key: str) -> str:
        """Translate ``key`` into the configured language.

        Args:
            key: Dotted translation key, e.g. ``commands.help``

        Returns:
            str: Localized text, or the key itself when no bundle has it
        """
        return self.translations.translate(key, self.config.lang)

    def session_for(self, message: InboundMessage) -> Session:
        return self.registry.get_or_create(message.sender_id, message.sender_name, self.config)

    async def reply(self, message: InboundMessage, text: str, parse_mode: Optional[str] = None) -> None:
        """Send ``text`` to the chat ``message`` came from.

        Args:
            message: Message being answered
            text: Reply text
            parse_mode: Optional platform formatting mode such as ``HTML``
        """
        await self.transport.send_message(message.chat_id, text, parse_mode)


def command_menu(ctx: BotContext) -> List[Tuple[str, str]]:
    """Command menu entries with localized descriptions."""
    return [(name, ctx.t(f"description.{name}")) for name in COMMANDS]


def parse_command(text: str) -> Optional[Tuple[str, str]]:
    """Split ``/cmd@bot args`` into ``(cmd, args)``; None for plain text."""
    if not text.startswith("/"):
        return None
    parts = text.split(maxsplit=1)
    name = parts[0][1:].split("@", 1)[0].lower()
    args = parts[1].strip() if len(parts) > 1 else ""
    return name, args


def strip_quotes(text: str) -> str:
    """Remove one pair of matching surrounding quotes."""
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        return text[1:-1]
    return text


def format_cost(cost: float) -> str:
    """Render a dollar amount with six decimals, as shown in /stats.

    Args:
        cost: Amount in dollars

    Returns:
        str: Formatted amount without a currency sign
    """
    return f"{cost:.6f}"


async def handle_start(ctx: BotContext, message: InboundMessage, args: str = "") -> None:
    """Greet the user and list the available commands."""
    text = ctx.t("commands.start") + ctx.t("commands.help") + ctx.t("commands.start_end")
    await ctx.reply(message, text, HTML)


async def handle_help(ctx: BotContext, message: InboundMessage, args: str = "") -> None:
    """Send the command overview."""
    await ctx.reply(message, ctx.t("commands.help"), HTML)


async def handle_reset(ctx: BotContext, message: InboundMessage, args: str = "") -> None:
    """Clear history, restore the default prompt, or set a custom one."""
    session = ctx.session_for(message)
    if args == "system":
        session.system_prompt = ctx.config.system_prompt
        text = ctx.t("commands.reset_system")
    elif args:
        session.system_prompt = args
        text = ctx.t("commands.reset_prompt") + args + "."
    else:
        session.reset_history()
        text = ctx.t("commands.reset")
    ctx.registry.mark_dirty(session)
    await ctx.reply(message, text)


async def handle_stats(ctx: BotContext, message: InboundMessage, args: str = "") -> None:
    """Report usage, in detail only for users allowed to see costs."""
    session = ctx.session_for(message)
    session.history.prune(ctx.config.max_history_size, ctx.config.max_history_age)
    messages = str(len(session.history))

    if ctx.gate.can_view_detailed_stats(session):
        ledger = session.ledger
        text = ctx.t("commands.stats").format(
            counted=format_cost(ledger.cost_in_window(ctx.config.budget_period)),
            today=format_cost(ledger.cost_in_window("daily")),
            month=format_cost(ledger.cost_in_window("monthly")),
            total=format_cost(ledger.cost_in_window("total")),
            messages=messages,
        )
    else:
        text = ctx.t("commands.stats_min").format(messages=messages)
    await ctx.reply(message, text, HTML)


async def handle_stop(ctx: BotContext, message: InboundMessage, args: str = "") -> None:
    """Cancel the user's running stream without waiting for it to end."""
    session = ctx.session_for(message)
    if session.stop_stream():
        logger.info("Stream stopped by user %s", session.user_id)
        text = ctx.t("commands.stop")
    else:
        text = ctx.t("commands.stop_err")
    await ctx.reply(message, text)


async def handle_text(ctx: BotContext, message: InboundMessage) -> Optional[StreamResult]:
    """Run a chat request if the user still has budget."""
    logger.info(
        "Processing message from user %s (%s) in chat %s",
        message.sender_id,
        message.sender_name,
        message.chat_id,
    )
    session = ctx.session_for(message)
    try:
        return await ctx.coordinator.run(session, message)
    except AccessDeniedError as exc:
        logger.info("%s", exc)
        await ctx.reply(message, ctx.t("budget_out"))
        return None


async def handle_question(ctx: BotContext, message: InboundMessage, args: str = "") -> Optional[StreamResult]:
    """``/q <question>``: treat the argument as an ordinary message."""
    if not args:
        await ctx.reply(message, ctx.t("commands.q_empty"))
        return None
    question = strip_quotes(args)
    logger.info("Question command from user %s", message.sender_id)
    return await handle_text(
        ctx,
        InboundMessage(
            sender_id=message.sender_id,
            sender_name=message.sender_name,
            chat_id=message.chat_id,
            text=question,
        ),
    )


HANDLERS = {
    "start": handle_start,
    "help": handle_help,
    "reset": handle_reset,
    "stats": handle_stats,
    "stop": handle_stop,
    "q": handle_question,
}


async def dispatch(ctx: BotContext, message: InboundMessage) -> None:
    """Route one inbound event; failures are logged, never raised."""
    try:
        command = parse_command(message.text)
        if command is None:
            await handle_text(ctx, message)
            return
        name, args = command
        handler = HANDLERS.get(name)
        if handler is None:
            logger.debug("Ignoring unknown command /%s", name)
            return
        await handler(ctx, message, args)
    except Exception:
        logger.exception("Unhandled error while processing update from user %s", message.sender_id)
