"""Centralised runtime configuration.

Every value comes from the environment (a local ``.env`` file is loaded
first).  Import the shared instance::

    from settings import settings
"""
import os

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


_DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer clearly, and reply in the same "
    "language the user writes in."
)


class Settings:
    # ── Storage ───────────────────────────────────────────────
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = _int("POSTGRES_PORT", 5432)
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "chatapp")
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "root")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "password")
    DB_POOL_MIN: int = _int("DB_POOL_MIN", 1)
    DB_POOL_MAX: int = _int("DB_POOL_MAX", 20)
    # "postgres" or "memory"
    HISTORY_BACKEND: str = os.getenv("HISTORY_BACKEND", "postgres")

    # ── Completion service ────────────────────────────────────
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    LLM_TEMPERATURE: float = _float("LLM_TEMPERATURE", 0.7)
    LLM_MAX_TOKENS: int = _int("LLM_MAX_TOKENS", 1000)
    SYSTEM_PROMPT: str = os.getenv("SYSTEM_PROMPT", _DEFAULT_SYSTEM_PROMPT)

    # ── Context window ────────────────────────────────────────
    TOKENIZER_MODEL: str = os.getenv("TOKENIZER_MODEL", "gpt-4o-mini")
    TOKENIZER_FALLBACK_MODEL: str = os.getenv("TOKENIZER_FALLBACK_MODEL", "gpt-4")
    HISTORY_TOKEN_BUDGET: int = _int("HISTORY_TOKEN_BUDGET", 1500)
    TITLE_MAX_CHARS: int = _int("TITLE_MAX_CHARS", 50)

    # ── Turn lifecycle ────────────────────────────────────────
    TURN_TIMEOUT_SECONDS: float = _float("TURN_TIMEOUT_SECONDS", 30.0)
    SUMMARY_TIMEOUT_SECONDS: float = _float("SUMMARY_TIMEOUT_SECONDS", 20.0)
    PERSIST_USER_BEFORE_STREAM: bool = _bool("PERSIST_USER_BEFORE_STREAM", True)

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
