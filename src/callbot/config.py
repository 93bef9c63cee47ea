"""Bot configuration: reads env vars (with .env support) and keyword overrides.

Precedence per option: keyword override > environment variable > .env file
> built-in default. .env loading priority: local .env (cwd) >
$CALLBOT_DIR/.env (default ~/.callbot). CLI flags reach Config through the
environment (see cli.apply_args_to_env).

Key classes: Config, WebhookConfig, Mode.
"""

import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv

from .errors import ConfigurationError
from .registry import EncodingPolicy

logger = logging.getLogger(__name__)

CALLBOT_DIR_ENV = "CALLBOT_DIR"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}
_SECRET_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{1,256}$")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Mode(str, Enum):
    """How updates reach the bot."""

    LONG = "long"
    WEBHOOK = "webhook"
    CUSTOM = "custom"


def callbot_dir() -> Path:
    """Resolve config directory from CALLBOT_DIR env var or default ~/.callbot."""
    raw = os.environ.get(CALLBOT_DIR_ENV, "")
    return Path(raw) if raw else Path.home() / ".callbot"


def parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"expected a boolean, got {raw!r}")


def _parse_mode(raw: str) -> Mode:
    try:
        return Mode(raw.strip().lower())
    except ValueError as e:
        allowed = ", ".join(m.value for m in Mode)
        raise ConfigurationError(f"unknown mode {raw!r} (expected {allowed})") from e


def _parse_policy(raw: str) -> EncodingPolicy:
    try:
        return EncodingPolicy(raw.strip().lower())
    except ValueError as e:
        allowed = ", ".join(p.value for p in EncodingPolicy)
        raise ConfigurationError(
            f"unknown encoding policy {raw!r} (expected {allowed})"
        ) from e


def _parse_log_level(raw: str) -> str | None:
    level = raw.strip().upper()
    if not level:
        return None
    if level not in LOG_LEVELS:
        raise ConfigurationError(
            f"unknown log level {raw!r} (expected {', '.join(LOG_LEVELS)})"
        )
    return level


@dataclass
class WebhookConfig:
    """Settings for webhook ingestion.

    ``url`` is the public HTTPS endpoint Telegram posts to; ``listen`` and
    ``port`` are where the local listener binds. Certificate provisioning is
    left to the operator: pass existing files via ``cert_file``/``key_file``
    or terminate TLS in front of the bot.
    """

    url: str = ""
    listen: str = "0.0.0.0"
    port: int = 8443
    url_path: str = ""
    secret_token: str | None = None
    cert_file: Path | None = None
    key_file: Path | None = None
    max_connections: int = 40
    drop_pending_updates: bool = False

    def validate(self) -> None:
        if not self.url:
            raise ConfigurationError(
                "CALLBOT_WEBHOOK_URL is required in webhook mode"
            )
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"webhook port out of range: {self.port}")
        if self.secret_token is not None and not _SECRET_TOKEN_RE.match(
            self.secret_token
        ):
            raise ConfigurationError(
                "webhook secret token may only contain A-Z, a-z, 0-9, _ and -"
            )
        if (self.cert_file is None) != (self.key_file is None):
            raise ConfigurationError(
                "webhook cert_file and key_file must be given together"
            )
        if not 1 <= self.max_connections <= 100:
            raise ConfigurationError("webhook max_connections must be in 1..100")


class Config:
    """Bot configuration loaded from keyword overrides and environment variables."""

    def __init__(self, **overrides: Any) -> None:
        self.config_dir = callbot_dir()

        # load_dotenv default override=False means first-loaded wins
        local_env = Path(".env")
        global_env = self.config_dir / ".env"
        if local_env.is_file():
            load_dotenv(local_env)
            logger.debug("Loaded env from %s", local_env.resolve())
        if global_env.is_file():
            load_dotenv(global_env)
            logger.debug("Loaded env from %s", global_env)

        def pick(name: str, env_var: str, default: Any, convert: Callable) -> Any:
            if overrides.get(name) is not None:
                return overrides.pop(name)
            overrides.pop(name, None)
            raw = os.getenv(env_var)
            if raw is None:
                return default
            try:
                return convert(raw)
            except ValueError as e:
                raise ConfigurationError(f"{env_var}: {e}") from e

        self.telegram_bot_token: str = pick("token", "TELEGRAM_BOT_TOKEN", "", str)
        if not self.telegram_bot_token:
            raise ConfigurationError(
                "TELEGRAM_BOT_TOKEN environment variable is required"
            )

        self.mode: Mode = pick("mode", "CALLBOT_MODE", Mode.LONG, _parse_mode)
        if not isinstance(self.mode, Mode):
            self.mode = _parse_mode(str(self.mode))

        self.long_polling_timeout: float = pick(
            "long_polling_timeout", "CALLBOT_LP_TIMEOUT", 15.0, float
        )
        self.shutdown_timeout: float = pick(
            "shutdown_timeout", "CALLBOT_SHUTDOWN_TIMEOUT", 10.0, float
        )

        # Diagnostics
        # Level for the callbot logger tree; None leaves it to the application
        self.log_level: str | None = pick(
            "log_level", "CALLBOT_LOG_LEVEL", None, _parse_log_level
        )
        if self.log_level is not None:
            self.log_level = _parse_log_level(str(self.log_level))
        self.debug: bool = pick("debug", "CALLBOT_DEBUG", False, parse_bool)
        self.log_enable: bool = pick(
            "log_enable", "CALLBOT_LOG_ENABLE", True, parse_bool
        )
        self.log_updates: bool = pick(
            "log_updates", "CALLBOT_LOG_UPDATES", False, parse_bool
        )

        # Message behaviour
        self.delete_messages: bool = pick(
            "delete_messages", "CALLBOT_DELETE_MESSAGES", True, parse_bool
        )
        self.parse_mode: str | None = pick(
            "parse_mode", "CALLBOT_PARSE_MODE", "HTML", lambda raw: raw or None
        )
        self.no_preview: bool = pick(
            "no_preview", "CALLBOT_NO_PREVIEW", True, parse_bool
        )
        self.default_policy: EncodingPolicy = pick(
            "default_policy",
            "CALLBOT_ENCODING",
            EncodingPolicy.DENSE_INDEX,
            _parse_policy,
        )
        if not isinstance(self.default_policy, EncodingPolicy):
            self.default_policy = _parse_policy(str(self.default_policy))
        self.stale_callback_notice: str = pick(
            "stale_callback_notice",
            "CALLBOT_STALE_NOTICE",
            "This button is no longer available",
            str,
        )
        self.general_error_message: str = pick(
            "general_error_message",
            "CALLBOT_ERROR_MESSAGE",
            "Something went wrong",
            str,
        )

        self.offline: bool = pick("offline", "CALLBOT_OFFLINE", False, parse_bool)

        self.webhook: WebhookConfig = overrides.pop("webhook", None) or WebhookConfig(
            url=os.getenv("CALLBOT_WEBHOOK_URL", ""),
            listen=os.getenv("CALLBOT_WEBHOOK_LISTEN", "0.0.0.0"),
            port=_env_int("CALLBOT_WEBHOOK_PORT", 8443),
            url_path=os.getenv("CALLBOT_WEBHOOK_PATH", ""),
            secret_token=os.getenv("CALLBOT_WEBHOOK_SECRET") or None,
            cert_file=_optional_path(os.getenv("CALLBOT_WEBHOOK_CERT")),
            key_file=_optional_path(os.getenv("CALLBOT_WEBHOOK_KEY")),
            max_connections=_env_int("CALLBOT_WEBHOOK_MAX_CONNECTIONS", 40),
            drop_pending_updates=parse_bool(
                os.getenv("CALLBOT_WEBHOOK_DROP_PENDING", "false")
            ),
        )

        if overrides:
            raise ConfigurationError(
                f"unknown config options: {', '.join(sorted(overrides))}"
            )
        self.validate()

        logger.debug(
            "Config initialized: dir=%s, token=%s..., mode=%s, lp_timeout=%s, "
            "delete_messages=%s, offline=%s",
            self.config_dir,
            self.telegram_bot_token[:8],
            self.mode.value,
            self.long_polling_timeout,
            self.delete_messages,
            self.offline,
        )

    def validate(self) -> None:
        if self.long_polling_timeout <= 0:
            raise ConfigurationError("long polling timeout must be positive")
        if self.shutdown_timeout <= 0:
            raise ConfigurationError("shutdown timeout must be positive")
        if self.mode is Mode.WEBHOOK:
            self.webhook.validate()


def _env_int(env_var: str, default: int) -> int:
    raw = os.getenv(env_var)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{env_var}: expected an integer, got {raw!r}") from e


def _optional_path(raw: str | None) -> Path | None:
    return Path(raw).expanduser() if raw else None
