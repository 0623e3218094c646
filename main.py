"""Telegram entry point for the LLM relay bot."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from telegram import Update
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from relay.completion import CompletionClient
from relay.handlers import BotContext, command_menu, dispatch
from relay.session import UserRegistry
from relay.streaming import StreamCoordinator
from relay.transport import InboundMessage, TelegramTransport
from utils.budget import BudgetGate
from utils.config import BotConfig, ConfigurationError, load_config
from utils.i18n import Translations, load_translations
from utils.storage import SessionStorage


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Route all log output through a single timestamped handler."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)
    # httpx logs every request at INFO, which includes message edits.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_context(application: Application, config: BotConfig, translations: Translations) -> BotContext:
    """Wire the registry, budget gate and coordinator together.

    Args:
        application: Telegram application providing the bot
        config: Validated bot configuration
        translations: Loaded translation bundles

    Returns:
        BotContext: Collaborators shared by every handler
    """
    transport = TelegramTransport(application.bot)
    registry = UserRegistry(SessionStorage(Path(config.data_dir)))
    gate = BudgetGate(config)
    coordinator = StreamCoordinator(
        completion=CompletionClient.from_config(config),
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


async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Translate a Telegram update into an ``InboundMessage`` and dispatch it."""
    message = update.effective_message
    user = update.effective_user
    if message is None or user is None or not message.text:
        return
    inbound = InboundMessage(
        sender_id=user.id,
        sender_name=user.username or "",
        chat_id=message.chat_id,
        text=message.text,
    )
    await dispatch(context.application.bot_data["ctx"], inbound)


async def on_startup(application: Application) -> None:
    """Register the command menu and start periodic snapshots."""
    ctx: BotContext = application.bot_data["ctx"]
    await ctx.transport.set_commands(command_menu(ctx))
    application.bot_data["snapshots"] = asyncio.create_task(
        ctx.registry.run_snapshots(ctx.config.snapshot_interval)
    )


async def on_shutdown(application: Application) -> None:
    """Stop the snapshot loop and write any pending session changes."""
    ctx: BotContext = application.bot_data["ctx"]
    task = application.bot_data.pop("snapshots", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    written = await ctx.registry.flush()
    logger.info("Flushed %d session(s) on shutdown", written)


def build_application(config: BotConfig, translations: Translations) -> Application:
    """Create the Telegram application with concurrent update handling."""
    application = (
        Application.builder()
        .token(config.telegram_bot_token)
        .concurrent_updates(True)
        .post_init(on_startup)
        .post_shutdown(on_shutdown)
        .build()
    )
    application.bot_data["ctx"] = build_context(application, config, translations)
    application.add_handler(MessageHandler(filters.TEXT, on_message))
    return application


def main() -> int:
    """Load configuration and run the bot until interrupted.

    Returns:
        int: Exit code (0 for a clean stop, 1 for bad configuration)
    """
    load_dotenv()
    configure_logging()

    try:
        config = load_config(Path(os.getenv("CONFIG_PATH", "config.yaml")))
        translations = load_translations(Path(os.getenv("LANG_PATH", "lang")))
    except ConfigurationError as exc:
        logger.error("Startup aborted: %s", exc)
        return 1

    configure_logging(config.log_level)
    application = build_application(config, translations)
    logger.info("Bot started with model %s (%s)", config.model_name, config.model_type)
    application.run_polling(allowed_updates=Update.ALL_TYPES)
    return 0


if __name__ == "__main__":
    sys.exit(main())
