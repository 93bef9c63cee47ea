"""Chat transport: the narrow I/O surface the framework calls.

Transport is the protocol the dispatcher and Context depend on;
TelegramTransport implements it on top of ``telegram.Bot``. All
``telegram.error`` exceptions are translated into the callbot taxonomy here
(see errors.translate_error), with two local recoveries:
  - an edit rejected with "message is not modified" counts as success;
  - text the server cannot parse in the configured parse mode is resent
    as plain text.

Functions:
  - rate_limit_send: optional per-chat spacing of outgoing messages
"""

import asyncio
import logging
import time
from typing import Any, Protocol

from telegram import Bot, LinkPreviewOptions
from telegram.error import BadRequest, TelegramError

from .errors import is_not_modified, translate_error
from .keyboard import Keyboard

logger = logging.getLogger(__name__)

# Disable link previews to reduce visual noise
NO_LINK_PREVIEW = LinkPreviewOptions(is_disabled=True)


class Transport(Protocol):
    async def send_message(
        self, chat_id: int, text: str, keyboard: Keyboard | None = None
    ) -> int: ...

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        keyboard: Keyboard | None = None,
    ) -> None: ...

    async def delete_message(self, chat_id: int, message_id: int) -> None: ...

    async def answer_callback(
        self, callback_id: str, notice: str | None = None
    ) -> None: ...


def _is_parse_error(exc: TelegramError) -> bool:
    return isinstance(exc, BadRequest) and "can't parse entities" in exc.message.lower()


class TelegramTransport:
    """Transport over python-telegram-bot's Bot."""

    def __init__(
        self,
        bot: Bot,
        *,
        parse_mode: str | None = "HTML",
        no_preview: bool = True,
        send_interval: float = 0.0,
    ) -> None:
        self.bot = bot
        self.parse_mode = parse_mode
        self.no_preview = no_preview
        self.send_interval = send_interval
        self._last_send_time: dict[int, float] = {}

    def _options(self, keyboard: Keyboard | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "reply_markup": keyboard.to_markup() if keyboard else None
        }
        if self.no_preview:
            kwargs["link_preview_options"] = NO_LINK_PREVIEW
        return kwargs

    async def rate_limit_send(self, chat_id: int) -> None:
        """Wait so messages to one chat are at least send_interval apart."""
        if self.send_interval <= 0:
            return
        now = time.monotonic()
        if chat_id in self._last_send_time:
            elapsed = now - self._last_send_time[chat_id]
            if elapsed < self.send_interval:
                await asyncio.sleep(self.send_interval - elapsed)
        self._last_send_time[chat_id] = time.monotonic()

    async def send_message(
        self, chat_id: int, text: str, keyboard: Keyboard | None = None
    ) -> int:
        await self.rate_limit_send(chat_id)
        kwargs = self._options(keyboard)
        try:
            try:
                message = await self.bot.send_message(
                    chat_id=chat_id, text=text, parse_mode=self.parse_mode, **kwargs
                )
            except BadRequest as e:
                if not (self.parse_mode and _is_parse_error(e)):
                    raise
                logger.debug("Resending as plain text to %s: %s", chat_id, e)
                message = await self.bot.send_message(
                    chat_id=chat_id, text=text, **kwargs
                )
        except TelegramError as e:
            raise translate_error(e) from e
        return message.message_id

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        keyboard: Keyboard | None = None,
    ) -> None:
        kwargs = self._options(keyboard)
        try:
            try:
                await self.bot.edit_message_text(
                    text=text,
                    chat_id=chat_id,
                    message_id=message_id,
                    parse_mode=self.parse_mode,
                    **kwargs,
                )
            except BadRequest as e:
                if not (self.parse_mode and _is_parse_error(e)):
                    raise
                logger.debug("Re-editing as plain text in %s: %s", chat_id, e)
                await self.bot.edit_message_text(
                    text=text, chat_id=chat_id, message_id=message_id, **kwargs
                )
        except TelegramError as e:
            if is_not_modified(e):
                logger.debug("Message %d in %s not modified", message_id, chat_id)
                return
            raise translate_error(e) from e

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramError as e:
            raise translate_error(e) from e

    async def answer_callback(
        self, callback_id: str, notice: str | None = None
    ) -> None:
        try:
            await self.bot.answer_callback_query(
                callback_query_id=callback_id, text=notice
            )
        except TelegramError as e:
            raise translate_error(e) from e
