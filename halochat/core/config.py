"""Process configuration loaded from environment variables.

Read once at startup. A missing ANTHROPIC_API_KEY is fatal: the app refuses
to build rather than failing on the first request.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

DEFAULT_ORIGINS = ["http://localhost:3000", "http://localhost:5173"]

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant for HaloTasker. Be helpful, professional, "
    "and concise. Use markdown formatting when appropriate."
)

BALANCE_MODES = ("client", "server")

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigError(Exception):
    """Environment is missing a required value or holds a malformed one."""
    pass


def _env_int(env: dict, name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_decimal(env: dict, name: str, default: str) -> Decimal:
    raw = env.get(name, "").strip() or default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if not value.is_finite() or value < 0:
        raise ConfigError(f"{name} must be a non-negative number, got {raw!r}")
    return value


def _env_bool(env: dict, name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in _TRUE_VALUES


@dataclass(frozen=True)
class Settings:
    """Immutable runtime settings. Build with Settings.from_env()."""
    anthropic_api_key: str
    port: int = 3000
    is_dev: bool = True
    allowed_origins: list[str] = field(default_factory=lambda: list(DEFAULT_ORIGINS))
    default_model: str = "balanced"
    fallback_model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int | None = None
    deep_mode_enabled: bool = False
    thinking_budget_tokens: int = 4096
    max_body_bytes: int = 20 * 1024 * 1024
    max_attachment_bytes: int = 10 * 1024 * 1024
    max_document_chars: int = 12_000
    max_message_length: int = 32_000
    max_history_messages: int = 50
    rate_limit_window_s: float = 60.0
    rate_limit_max_requests: int = 20
    starting_balance: Decimal = Decimal("10.00")
    balance_mode: str = "client"
    strict_errors: bool = True
    llm_timeout: float = 60.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: dict | None = None) -> "Settings":
        """Build settings from os.environ (or an explicit mapping).

        Raises:
            ConfigError: If ANTHROPIC_API_KEY is missing or a value is malformed.
        """
        env = dict(os.environ if env is None else env)

        api_key = env.get("ANTHROPIC_API_KEY", "").strip()
        if not api_key:
            raise ConfigError("ANTHROPIC_API_KEY environment variable is required")

        origins_raw = env.get("ALLOWED_ORIGINS", "")
        origins = [o.strip() for o in origins_raw.split(",") if o.strip()] or list(DEFAULT_ORIGINS)

        balance_mode = env.get("BALANCE_MODE", "client").strip().lower() or "client"
        if balance_mode not in BALANCE_MODES:
            raise ConfigError(f"BALANCE_MODE must be one of {BALANCE_MODES}, got {balance_mode!r}")

        max_tokens_raw = env.get("MAX_TOKENS", "").strip()

        return cls(
            anthropic_api_key=api_key,
            port=_env_int(env, "PORT", 3000),
            is_dev=env.get("APP_ENV", "development").strip().lower() != "production",
            allowed_origins=origins,
            default_model=env.get("CLAUDE_MODEL", "").strip() or "balanced",
            fallback_model=env.get("FALLBACK_MODEL", "").strip() or "claude-3-5-sonnet-20241022",
            max_tokens=_env_int(env, "MAX_TOKENS", 0) if max_tokens_raw else None,
            deep_mode_enabled=_env_bool(env, "ENABLE_DEEP_MODE", False),
            thinking_budget_tokens=_env_int(env, "THINKING_BUDGET_TOKENS", 4096),
            max_body_bytes=_env_int(env, "MAX_BODY_BYTES", 20 * 1024 * 1024),
            max_attachment_bytes=_env_int(env, "MAX_ATTACHMENT_BYTES", 10 * 1024 * 1024),
            max_document_chars=_env_int(env, "MAX_DOCUMENT_CHARS", 12_000),
            max_message_length=_env_int(env, "MAX_MESSAGE_LENGTH", 32_000),
            max_history_messages=_env_int(env, "MAX_HISTORY_MESSAGES", 50),
            rate_limit_window_s=_env_int(env, "RATE_LIMIT_WINDOW_MS", 60_000) / 1000,
            rate_limit_max_requests=_env_int(env, "RATE_LIMIT_MAX_REQUESTS", 20),
            starting_balance=_env_decimal(env, "STARTING_BALANCE", "10.00"),
            balance_mode=balance_mode,
            strict_errors=_env_bool(env, "STRICT_ERRORS", True),
            llm_timeout=float(_env_int(env, "LLM_TIMEOUT", 60)),
            system_prompt=env.get("SYSTEM_PROMPT", "").strip() or DEFAULT_SYSTEM_PROMPT,
            log_level=env.get("LOG_LEVEL", "").strip().upper() or "INFO",
        )
