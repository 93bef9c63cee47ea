"""Update ingestion: pollers that feed telegram.Update objects into a queue.

Every poller implements ``async poll(queue, stop)``: put updates into
*queue* until the *stop* event is set (return normally) or a fatal transport
error occurs (raise TransportError).

Implementations:
  - LongPoller: getUpdates long polling with a moving offset
  - WebhookPoller: python-telegram-bot's Updater webhook listener
  - ScriptedPoller: fixed list of updates, for tests and demos

A batch that was fully received before stop is set is always enqueued.
"""

import asyncio
import contextlib
import logging
from typing import Protocol, Sequence

from telegram import Bot, Update
from telegram.error import (
    BadRequest,
    Conflict,
    Forbidden,
    InvalidToken,
    NetworkError,
    RetryAfter,
    TelegramError,
)
from telegram.ext import Updater

from .config import WebhookConfig
from .errors import TransportError

logger = logging.getLogger(__name__)

ALLOWED_UPDATES = ["message", "callback_query"]
RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 30.0


class Poller(Protocol):
    async def poll(
        self, queue: "asyncio.Queue[Update]", stop: asyncio.Event
    ) -> None: ...


async def _wait_or_stop(awaitable, stop: asyncio.Event):
    """Await *awaitable* unless *stop* fires first.

    Returns ``(True, result)`` when the awaitable finished, ``(False, None)``
    when stop won and the awaitable was cancelled.
    """
    task = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
    if task.done():
        return True, task.result()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, TelegramError):
        await task
    return False, None


class LongPoller:
    """Long polling via Bot.get_updates."""

    def __init__(
        self,
        bot: Bot,
        timeout: float = 15.0,
        allowed_updates: Sequence[str] | None = None,
    ) -> None:
        self.bot = bot
        self.timeout = timeout
        self.allowed_updates = list(allowed_updates or ALLOWED_UPDATES)
        self.offset: int | None = None

    async def poll(self, queue: "asyncio.Queue[Update]", stop: asyncio.Event) -> None:
        delay = RETRY_DELAY
        logger.info("Long polling started (timeout %ss)", self.timeout)
        while not stop.is_set():
            try:
                finished, batch = await _wait_or_stop(
                    self.bot.get_updates(
                        offset=self.offset,
                        timeout=int(self.timeout),
                        allowed_updates=self.allowed_updates,
                    ),
                    stop,
                )
            except (InvalidToken, Forbidden, Conflict) as e:
                raise TransportError(f"polling stopped: {e}") from e
            except RetryAfter as e:
                logger.warning("Flood control while polling: %s", e)
                await self._sleep(stop, e.retry_after)
                continue
            except BadRequest as e:
                raise TransportError(f"polling stopped: {e}") from e
            except NetworkError as e:
                logger.warning("Polling error, retrying in %.0fs: %s", delay, e)
                await self._sleep(stop, delay)
                delay = min(delay * 2, MAX_RETRY_DELAY)
                continue
            if not finished:
                break
            delay = RETRY_DELAY
            for update in batch:
                self.offset = update.update_id + 1
                await queue.put(update)
            if batch:
                logger.debug("Received %d updates", len(batch))
        logger.info("Long polling stopped")

    @staticmethod
    async def _sleep(stop: asyncio.Event, seconds) -> None:
        if hasattr(seconds, "total_seconds"):
            seconds = seconds.total_seconds()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=float(seconds))


class WebhookPoller:
    """Receive updates through python-telegram-bot's webhook server.

    The Updater runs its own listener (tornado) and registers the webhook
    with Telegram; updates land on the Updater's queue, which is the same
    queue the bot server consumes.
    """

    def __init__(self, bot: Bot, config: WebhookConfig) -> None:
        self.bot = bot
        self.config = config

    async def poll(self, queue: "asyncio.Queue[Update]", stop: asyncio.Event) -> None:
        cfg = self.config
        # Not used as a context manager: Updater.shutdown() also shuts the
        # bot down, which BotServer must do itself after draining handlers.
        updater = Updater(bot=self.bot, update_queue=queue)
        try:
            await updater.initialize()
            await updater.start_webhook(
                listen=cfg.listen,
                port=cfg.port,
                url_path=cfg.url_path,
                cert=cfg.cert_file,
                key=cfg.key_file,
                webhook_url=cfg.url,
                allowed_updates=ALLOWED_UPDATES,
                drop_pending_updates=cfg.drop_pending_updates,
                max_connections=cfg.max_connections,
                secret_token=cfg.secret_token,
            )
            logger.info(
                "Webhook listening on %s:%d for %s", cfg.listen, cfg.port, cfg.url
            )
            await stop.wait()
        except TelegramError as e:
            raise TransportError(f"webhook failed: {e}") from e
        finally:
            if updater.running:
                await updater.stop()
            try:
                await self.bot.delete_webhook()
            except TelegramError as e:
                logger.warning("Failed to delete webhook: %s", e)
            logger.info("Webhook stopped")


class ScriptedPoller:
    """Deliver a fixed sequence of updates, then idle until stopped."""

    def __init__(self, updates: Sequence[Update], interval: float = 0.0) -> None:
        self.updates = list(updates)
        self.interval = interval
        self.delivered: list[Update] = []

    async def poll(self, queue: "asyncio.Queue[Update]", stop: asyncio.Event) -> None:
        for update in self.updates:
            if stop.is_set():
                return
            await queue.put(update)
            self.delivered.append(update)
            if self.interval:
                await asyncio.sleep(self.interval)
        await stop.wait()
