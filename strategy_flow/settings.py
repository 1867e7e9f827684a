from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


DEFAULT_SQLITE_PATH = "data/strategies.db"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL_CHEAP = "gpt-4o-mini"
DEFAULT_MODEL_DEEP = "o1"
DEFAULT_TELEGRAM_API_BASE = "https://api.telegram.org"
DEFAULT_CRON = "*/5 * * * *"


@dataclass(slots=True)
class AppSettings:
    sqlite_path: Path = Path(DEFAULT_SQLITE_PATH)
    llm_provider: str = "openai"
    openai_api_key: str = ""
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    model_cheap: str = DEFAULT_MODEL_CHEAP
    model_deep: str = DEFAULT_MODEL_DEEP
    llm_temperature: float = 0.2
    llm_request_timeout_seconds: int = 90
    llm_retry_attempts: int = 3
    llm_retry_backoff_seconds: float = 1.5
    fetch_timeout_seconds: float = 30.0
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    telegram_api_base: str = DEFAULT_TELEGRAM_API_BASE
    enable_notifications: bool = True
    default_cron: str = DEFAULT_CRON


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def load_settings() -> AppSettings:
    load_dotenv()

    sqlite_path = Path(os.getenv("STRATEGY_SQLITE_PATH", DEFAULT_SQLITE_PATH)).expanduser()

    settings = AppSettings(
        sqlite_path=sqlite_path,
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_base_url=os.getenv("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL),
        ollama_base_url=os.getenv("OLLAMA_BASE_URL", DEFAULT_OLLAMA_BASE_URL),
        model_cheap=os.getenv("MODEL_CHEAP", DEFAULT_MODEL_CHEAP),
        model_deep=os.getenv("MODEL_DEEP", DEFAULT_MODEL_DEEP),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.2),
        llm_request_timeout_seconds=_get_int("LLM_REQUEST_TIMEOUT_SECONDS", 90),
        llm_retry_attempts=_get_int("LLM_RETRY_ATTEMPTS", 3),
        llm_retry_backoff_seconds=_get_float("LLM_RETRY_BACKOFF_SECONDS", 1.5),
        fetch_timeout_seconds=_get_float("FETCH_TIMEOUT_SECONDS", 30.0),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID", ""),
        telegram_api_base=os.getenv("TELEGRAM_API_BASE", DEFAULT_TELEGRAM_API_BASE),
        enable_notifications=_get_bool("ENABLE_NOTIFICATIONS", True),
        default_cron=os.getenv("DEFAULT_CRON", DEFAULT_CRON),
    )

    settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return settings
