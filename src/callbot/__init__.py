"""callbot - Telegram bot framework with callback-routed inline keyboards.

Buttons carry handler coroutines instead of hand-parsed callback strings,
and every chat has one "main" message that handlers update in place.

Public API is re-exported here; see bot.BotServer for the entry point.
"""

from importlib.metadata import PackageNotFoundError, version

from .bot import BotServer
from .config import Config, Mode, WebhookConfig
from .context import Context
from .errors import (
    BuildError,
    CallbotError,
    ChatBlocked,
    ConfigurationError,
    HandlerError,
    NotEditable,
    RateLimited,
    StaleCallback,
    TransportError,
)
from .ingestion import LongPoller, Poller, ScriptedPoller, WebhookPoller
from .keyboard import ButtonSpec, Keyboard, KeyboardBuilder, RuneSize
from .registry import CallbackRegistry, EncodingPolicy
from .state import NEW_MESSAGE, NO_CHANGE

try:
    __version__ = version("callbot")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

__all__ = [
    "BotServer",
    "BuildError",
    "ButtonSpec",
    "CallbackRegistry",
    "CallbotError",
    "ChatBlocked",
    "Config",
    "ConfigurationError",
    "Context",
    "EncodingPolicy",
    "HandlerError",
    "Keyboard",
    "KeyboardBuilder",
    "LongPoller",
    "Mode",
    "NEW_MESSAGE",
    "NO_CHANGE",
    "NotEditable",
    "Poller",
    "RateLimited",
    "RuneSize",
    "ScriptedPoller",
    "StaleCallback",
    "TransportError",
    "WebhookConfig",
    "WebhookPoller",
]
