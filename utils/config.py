"""Bot configuration loaded from YAML with environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import yaml
from dotenv import load_dotenv


BUDGET_PERIODS = ("daily", "monthly", "total")
MODEL_TYPES = ("openrouter", "openai", "ollama")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."

# Environment variables take precedence over the YAML file.
ENV_OVERRIDES = {
    "TELEGRAM_BOT_TOKEN": "telegram_bot_token",
    "OPENAI_API_KEY": "openai_api_key",
    "OPENAI_BASE_URL": "openai_base_url",
    "MODEL_NAME": "model_name",
    "MODEL_TYPE": "model_type",
    "BOT_LANG": "lang",
    "DATA_DIR": "data_dir",
    "LOG_LEVEL": "log_level",
}

_ID_LISTS = ("admin_ids", "allowed_user_ids", "stats_viewer_ids")


class ConfigurationError(RuntimeError):
    """Raised when startup configuration is missing or invalid.

    Always fatal: the process refuses to start.
    """


@dataclass(frozen=True)
class BotConfig:
    """Static, process-lifetime settings.

    Attributes:
        telegram_bot_token: Token for the messaging platform
        openai_api_key: Key for the completion API
        openai_base_url: API base URL (empty picks the default for model_type)
        model_name: Model identifier passed to the completion API
        model_type: ``openrouter``, ``openai`` or ``ollama``
        system_prompt: Default system prompt for new sessions
        budget_period: Window the budget is enforced over
        user_budget: Spending cap for allowed users
        guest_budget: Spending cap for everyone else (None reuses user_budget)
        max_history_size: Maximum turns kept as context (0 disables)
        max_history_time: Maximum turn age in minutes (0 disables)
    """

    telegram_bot_token: str = ""
    openai_api_key: str = ""
    openai_base_url: str = ""
    model_name: str = "openai/gpt-4o-mini"
    model_type: str = "openrouter"
    model_temperature: float = 0.7
    stream: bool = True
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    budget_period: str = "monthly"
    user_budget: float = 1.0
    guest_budget: Optional[float] = None
    admin_ids: FrozenSet[int] = field(default_factory=frozenset)
    allowed_user_ids: FrozenSet[int] = field(default_factory=frozenset)
    stats_viewer_ids: FrozenSet[int] = field(default_factory=frozenset)
    max_history_size: int = 10
    max_history_time: int = 60
    lang: str = "en"
    data_dir: str = "logs"
    stream_flush_interval: float = 1.5
    snapshot_interval: float = 60.0
    max_message_length: int = 4096
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate field values.

        Raises:
            ConfigurationError: If any value is out of range
        """
        if not self.telegram_bot_token:
            raise ConfigurationError("telegram_bot_token is required")
        if self.model_type not in MODEL_TYPES:
            raise ConfigurationError(f"model_type must be one of {MODEL_TYPES}")
        if self.model_type != "ollama" and not self.openai_api_key:
            raise ConfigurationError("openai_api_key is required for remote models")
        if self.budget_period not in BUDGET_PERIODS:
            raise ConfigurationError(f"budget_period must be one of {BUDGET_PERIODS}")
        if self.user_budget < 0 or (self.guest_budget is not None and self.guest_budget < 0):
            raise ConfigurationError("budgets must not be negative")
        if self.max_history_size < 0 or self.max_history_time < 0:
            raise ConfigurationError("history limits must not be negative")
        if self.max_message_length <= 0:
            raise ConfigurationError("max_message_length must be positive")
        if not isinstance(self.stream, bool):
            raise ConfigurationError("stream must be true or false")
        if str(self.log_level).upper() not in LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of {LOG_LEVELS}")
        object.__setattr__(self, "log_level", str(self.log_level).upper())

    @property
    def base_url(self) -> str:
        """API base URL, falling back to the default of the model type."""
        if self.openai_base_url:
            return self.openai_base_url
        return DEFAULT_OLLAMA_URL if self.model_type == "ollama" else DEFAULT_BASE_URL

    @property
    def max_history_age(self) -> Optional[timedelta]:
        """History age limit as a timedelta, or None when disabled."""
        if not self.max_history_time:
            return None
        return timedelta(minutes=self.max_history_time)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "on", "1"):
        return True
    if lowered in ("false", "no", "off", "0"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize raw YAML/env values into BotConfig field types."""
    known = {f.name for f in fields(BotConfig)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    coerced = dict(values)
    try:
        for name in _ID_LISTS:
            if name in coerced:
                coerced[name] = frozenset(int(item) for item in coerced[name] or [])
        for name in ("user_budget", "model_temperature", "stream_flush_interval", "snapshot_interval"):
            if name in coerced:
                coerced[name] = float(coerced[name])
        if coerced.get("guest_budget") is not None:
            coerced["guest_budget"] = float(coerced["guest_budget"])
        for name in ("max_history_size", "max_history_time", "max_message_length"):
            if name in coerced:
                coerced[name] = int(coerced[name])
        if isinstance(coerced.get("stream"), str):
            coerced["stream"] = _parse_bool(coerced["stream"])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration value: {exc}") from exc
    return coerced


def load_config(path: Path) -> BotConfig:
    """Load configuration from a YAML file and the environment.

    Loads ``.env`` first, parses the YAML file, then applies the
    variables listed in ``ENV_OVERRIDES``.

    Args:
        path: Path to the YAML configuration file

    Returns:
        BotConfig: Validated configuration

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    load_dotenv()

    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Could not parse {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping")

    for env_name, field_name in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            raw[field_name] = value

    return BotConfig(**_coerce(raw))
