"""Exception taxonomy and translation of python-telegram-bot errors.

Every error the framework raises derives from CallbotError. Transport
failures coming out of ``telegram.error`` are mapped onto the narrower
TransportError family at the transport boundary by ``translate_error()``,
so the rest of the package never has to import telegram.error.

Key classes: CallbotError, ConfigurationError, TransportError (RateLimited,
ChatBlocked, NotEditable), StaleCallback, HandlerError, BuildError.
"""

from datetime import timedelta

from telegram.error import BadRequest, Forbidden, RetryAfter, TelegramError

# BadRequest messages (lowercased) that mean the target message is gone
# or may no longer be changed.
_NOT_EDITABLE_MARKERS = (
    "message to edit not found",
    "message can't be edited",
    "message to delete not found",
    "message can't be deleted",
    "message_id_invalid",
)


class CallbotError(Exception):
    """Base class for every error raised by callbot."""


class ConfigurationError(CallbotError, ValueError):
    """Missing or invalid configuration. Fatal at startup."""


class TransportError(CallbotError):
    """The chat transport failed to carry out a request."""


class RateLimited(TransportError):
    """Flood control kicked in; the request may be retried later."""

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ChatBlocked(TransportError):
    """The bot was blocked by the user or removed from the chat."""


class NotEditable(TransportError):
    """The target message was deleted or is too old to be edited."""


class StaleCallback(CallbotError):
    """A callback token no longer resolves to a live handler."""

    def __init__(self, chat_id: int | None, token: str) -> None:
        super().__init__(f"stale callback token {token!r} in chat {chat_id}")
        self.chat_id = chat_id
        self.token = token


class HandlerError(CallbotError):
    """An application handler raised. The raised exception is the ``__cause__``."""

    def __init__(self, handler_name: str, chat_id: int | None) -> None:
        super().__init__(f"handler {handler_name} failed in chat {chat_id}")
        self.handler_name = handler_name
        self.chat_id = chat_id


class BuildError(CallbotError, ValueError):
    """A keyboard could not be built within the transport limits."""


def _seconds(value: float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def translate_error(exc: TelegramError) -> TransportError:
    """Map a python-telegram-bot exception onto the callbot taxonomy."""
    if isinstance(exc, RetryAfter):
        return RateLimited(str(exc), _seconds(exc.retry_after))
    if isinstance(exc, Forbidden):
        return ChatBlocked(str(exc))
    if isinstance(exc, BadRequest):
        text = exc.message.lower()
        if any(marker in text for marker in _NOT_EDITABLE_MARKERS):
            return NotEditable(exc.message)
    return TransportError(str(exc))


def is_not_modified(exc: TelegramError) -> bool:
    """Whether an edit was rejected only because nothing changed."""
    return isinstance(exc, BadRequest) and "message is not modified" in (
        exc.message.lower()
    )
