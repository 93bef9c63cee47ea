"""Routing of classified updates to handler coroutines.

Dispatcher.dispatch() handles one telegram.Update end to end:
  1. classify it (updates.classify); commands addressed to another bot
     (``/cmd@other_bot``) are unroutable once the bot username is known
  2. take the chat's lock and build a Context
  3. run the middleware chain; any middleware returning False vetoes the
     update (callbacks are still acknowledged)
  4. route by kind:
     - COMMAND: exact lookup in the command table, else the
       unknown-command hook, else dropped
     - CALLBACK: ``noop`` is only acknowledged; other tokens are resolved
       in the registry, a miss is a stale callback (acknowledged with a
       notice, no handler call)
     - PLAIN_TEXT: the text handler if set, else dropped
     - UNROUTABLE: logged and dropped (a data-less callback is acknowledged)
  5. report handler and middleware exceptions to the error hook (never
     retried)
  6. acknowledge every callback query exactly once

With ``delete_messages`` on, the user's own command and text messages are
removed after handling so the chat only shows the main message.
"""

import logging
from typing import Awaitable, Callable

from telegram import Update

from .config import Config
from .context import Context
from .errors import ChatBlocked, HandlerError, StaleCallback, TransportError
from .registry import NOOP_DATA, CallbackRegistry, Handler
from .state import ChatStateStore
from .transport import Transport
from .updates import Event, EventKind, classify, normalize_command

logger = logging.getLogger(__name__)
updates_logger = logging.getLogger("callbot.updates")

ErrorHandler = Callable[[Context, BaseException], Awaitable[None]]
# Returns False to stop the update before routing
Middleware = Callable[[Context], Awaitable[bool]]


def handler_name(handler: Callable) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class Dispatcher:
    def __init__(
        self,
        *,
        config: Config,
        transport: Transport,
        registry: CallbackRegistry | None = None,
        store: ChatStateStore | None = None,
    ) -> None:
        self.config = config
        self.transport = transport
        self.registry = registry or CallbackRegistry()
        self.store = store or ChatStateStore()
        self._commands: dict[str, Handler] = {}
        self._text_handler: Handler | None = None
        self._unknown_command_handler: Handler | None = None
        self._error_handler: ErrorHandler = self.default_error_handler
        self._middlewares: list[Middleware] = []
        # Set by BotServer after getMe; None accepts any @mention
        self.bot_username: str | None = None

    # --- registration -------------------------------------------------------

    def add_command(self, command: str, handler: Handler) -> None:
        name = normalize_command(command)
        if not name:
            raise ValueError(f"invalid command: {command!r}")
        if name in self._commands:
            logger.warning("Replacing handler for %s", name)
        self._commands[name] = handler

    def commands(self) -> list[str]:
        return sorted(self._commands)

    def set_text_handler(self, handler: Handler | None) -> None:
        self._text_handler = handler

    def set_unknown_command_handler(self, handler: Handler | None) -> None:
        self._unknown_command_handler = handler

    def set_error_handler(self, handler: ErrorHandler | None) -> None:
        self._error_handler = handler or self.default_error_handler

    def add_middleware(self, *middlewares: Middleware) -> None:
        """Append middlewares, run in registration order before routing."""
        self._middlewares.extend(middlewares)

    # --- dispatch -----------------------------------------------------------

    async def dispatch(self, update: Update) -> None:
        event = classify(update, self.bot_username)
        if self.config.log_updates:
            _log_event(event)

        if event.kind is EventKind.UNROUTABLE:
            logger.debug("Dropping unroutable update %s", update.update_id)
            await self._acknowledge(event, None)
            return
        if event.chat_id is None:
            # Inline-mode callbacks carry no chat and can't own keyboards
            await self._acknowledge(event, self.config.stale_callback_notice)
            return

        async with self.store.lock(event.chat_id) as state:
            ctx = Context(
                event,
                state,
                store=self.store,
                registry=self.registry,
                transport=self.transport,
                config=self.config,
            )
            try:
                if not await self._run_middlewares(ctx):
                    return
                await self._route(ctx)
            finally:
                if event.kind is EventKind.CALLBACK and not ctx.answered:
                    await self._acknowledge(event, None)
            if self.config.delete_messages and event.kind in (
                EventKind.COMMAND,
                EventKind.PLAIN_TEXT,
            ):
                await self._delete_user_message(event)

    async def _route(self, ctx: Context) -> None:
        event = ctx.event
        if event.kind is EventKind.COMMAND:
            handler = self._commands.get(event.command)
            if handler is None:
                handler = self._unknown_command_handler
                if handler is None:
                    logger.debug(
                        "Unknown command %s in chat %d", event.command, ctx.chat_id
                    )
                    return
        elif event.kind is EventKind.CALLBACK:
            if event.token == NOOP_DATA:
                return
            handler = self.registry.resolve(ctx.chat_id, event.token)
            if handler is None:
                stale = StaleCallback(ctx.chat_id, event.token)
                logger.info("%s", stale)
                ctx.answered = True
                await self._acknowledge(event, self.config.stale_callback_notice)
                return
        else:
            handler = self._text_handler
            if handler is None:
                logger.debug("No text handler for chat %d", ctx.chat_id)
                return
        await self._invoke(ctx, handler)

    async def _run_middlewares(self, ctx: Context) -> bool:
        for middleware in self._middlewares:
            try:
                proceed = await middleware(ctx)
            except Exception as exc:
                await self._report(ctx, middleware, exc)
                return False
            if not proceed:
                logger.debug(
                    "Update in chat %d stopped by %s",
                    ctx.chat_id,
                    handler_name(middleware),
                )
                return False
        return True

    async def _invoke(self, ctx: Context, handler: Handler) -> None:
        try:
            await handler(ctx)
        except Exception as exc:
            await self._report(ctx, handler, exc)

    async def _report(self, ctx: Context, func: Callable, exc: Exception) -> None:
        error = HandlerError(handler_name(func), ctx.chat_id)
        error.__cause__ = exc
        try:
            await self._error_handler(ctx, error)
        except Exception:
            logger.exception("Error handler failed for chat %d", ctx.chat_id)

    async def _acknowledge(self, event: Event, notice: str | None) -> None:
        if event.callback_id is None:
            return
        try:
            await self.transport.answer_callback(event.callback_id, notice)
        except TransportError as e:
            logger.debug("Failed to answer callback %s: %s", event.callback_id, e)

    async def _delete_user_message(self, event: Event) -> None:
        if event.chat_id is None or event.message_id is None:
            return
        try:
            await self.transport.delete_message(event.chat_id, event.message_id)
        except TransportError as e:
            logger.debug("Could not delete user message %d: %s", event.message_id, e)

    async def default_error_handler(self, ctx: Context, error: BaseException) -> None:
        """Log the failure and tell the user something went wrong."""
        cause = error.__cause__ or error
        if isinstance(cause, ChatBlocked):
            logger.info("Chat %d blocked the bot: %s", ctx.chat_id, cause)
            return
        logger.error("%s", error, exc_info=cause)
        if self.config.general_error_message:
            await ctx.send_error(self.config.general_error_message)


def _log_event(event: Event) -> None:
    if event.kind is EventKind.COMMAND:
        detail = event.command
    elif event.kind is EventKind.CALLBACK:
        detail = event.token
    else:
        detail = f"{len(event.text)} chars"
    updates_logger.info(
        "%s chat=%s user=%s %s",
        event.kind.value,
        event.chat_id,
        event.user_id,
        detail,
    )
