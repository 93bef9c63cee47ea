"""Bot server lifecycle: wires ingestion to the dispatcher and shuts down cleanly.

BotServer owns one telegram.Bot, a Transport, a Dispatcher and a Poller
chosen by Config.mode (long polling, webhook, or an injected custom
poller). ``start()`` registers the /start handler, spawns the run task and
returns an asyncio.Event that is set exactly once after the server has
fully stopped.

Run task:
  - poller task: fills the update queue
  - consumer loop: one dispatch task per update (same-chat tasks serialize
    on the chat lock, different chats run concurrently)

Shutdown, triggered by stop(), the external stop signal, cancellation or
the poller ending:
  1. set the internal stop event and wait for the poller (grace bounded)
  2. dispatch updates that were already queued
  3. wait for in-flight dispatch tasks, cancelling any still running after
     the grace period (their chat locks are released on unwind)
  4. shut the telegram.Bot down (skipped offline) and set the done event
"""

import asyncio
import contextlib
import logging

from telegram import Bot, Update
from telegram.error import TelegramError

from .config import Config, Mode
from .dispatcher import Dispatcher, ErrorHandler, Middleware
from .errors import ConfigurationError, TransportError
from .ingestion import LongPoller, Poller, WebhookPoller
from .keyboard import Keyboard
from .registry import CallbackRegistry, Handler
from .state import ChatStateStore
from .transport import TelegramTransport, Transport

logger = logging.getLogger(__name__)


class BotServer:
    def __init__(
        self,
        token: str = "",
        config: Config | None = None,
        *,
        transport: Transport | None = None,
        poller: Poller | None = None,
        bot: Bot | None = None,
    ) -> None:
        if config is None:
            config = Config(token=token or None)
        token = token or config.telegram_bot_token
        if not token:
            raise ConfigurationError("bot token is required")
        self.config = config
        configure_framework_logging(config)

        self.bot = bot or Bot(token)
        self.transport = transport or TelegramTransport(
            self.bot, parse_mode=config.parse_mode, no_preview=config.no_preview
        )
        self.registry = CallbackRegistry()
        self.store = ChatStateStore()
        self.dispatcher = Dispatcher(
            config=config,
            transport=self.transport,
            registry=self.registry,
            store=self.store,
        )
        self.poller = self._select_poller(poller)

        self._stop = asyncio.Event()
        self._done: asyncio.Event | None = None
        self._run_task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        # Fatal error that ended the run, if any
        self.error: BaseException | None = None

    def _select_poller(self, poller: Poller | None) -> Poller:
        mode = self.config.mode
        if mode is Mode.CUSTOM:
            if poller is None:
                raise ConfigurationError("custom mode requires a poller")
            return poller
        if poller is not None:
            logger.warning("Ignoring injected poller in %s mode", mode.value)
        if mode is Mode.WEBHOOK:
            return WebhookPoller(self.bot, self.config.webhook)
        return LongPoller(self.bot, self.config.long_polling_timeout)

    # --- registration -------------------------------------------------------

    def handle(self, command: str, handler: Handler) -> None:
        self.dispatcher.add_command(command, handler)

    def set_text_handler(self, handler: Handler | None) -> None:
        self.dispatcher.set_text_handler(handler)

    def set_unknown_command_handler(self, handler: Handler | None) -> None:
        self.dispatcher.set_unknown_command_handler(handler)

    def set_error_handler(self, handler: ErrorHandler | None) -> None:
        self.dispatcher.set_error_handler(handler)

    def add_middleware(self, *middlewares: Middleware) -> None:
        self.dispatcher.add_middleware(*middlewares)

    # --- proactive messages -------------------------------------------------

    async def send_in_chat(
        self, chat_id: int, text: str, keyboard: Keyboard | None = None
    ) -> int:
        """Send a message outside of any handler. Not recorded as main."""
        async with self.store.lock(chat_id):
            message_id = await self.transport.send_message(chat_id, text, keyboard)
            if keyboard is not None:
                self.registry.attach(chat_id, message_id, keyboard.generation)
            return message_id

    async def edit_in_chat(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        keyboard: Keyboard | None = None,
    ) -> None:
        async with self.store.lock(chat_id):
            await self.transport.edit_message(chat_id, message_id, text, keyboard)
            self.registry.attach(
                chat_id, message_id, keyboard.generation if keyboard else None
            )

    async def delete_in_chat(self, chat_id: int, message_id: int) -> None:
        async with self.store.lock(chat_id) as state:
            await self.transport.delete_message(chat_id, message_id)
            self.registry.attach(chat_id, message_id, None)
            state.forget(message_id)
            if state.main_message_id == message_id:
                self.store.set_main_message(chat_id, None)

    # --- lifecycle ----------------------------------------------------------

    def start(
        self, start_handler: Handler, stop_signal: asyncio.Event | None = None
    ) -> asyncio.Event:
        """Register *start_handler* for /start and run in the background.

        Must be called from a running event loop. Returns the event that is
        set once the server has fully stopped.
        """
        if self._run_task is not None:
            raise RuntimeError("bot server already started")
        self.handle("/start", start_handler)
        self._done = asyncio.Event()
        self._run_task = asyncio.create_task(self._run(stop_signal), name="callbot-run")
        return self._done

    def stop(self) -> None:
        """Request a graceful stop. Safe to call more than once."""
        self._stop.set()

    @property
    def task(self) -> asyncio.Task | None:
        return self._run_task

    async def wait(self) -> None:
        if self._done is not None:
            await self._done.wait()

    async def _run(self, stop_signal: asyncio.Event | None) -> None:
        queue: asyncio.Queue[Update] = asyncio.Queue()
        poller_task: asyncio.Task | None = None
        watcher: asyncio.Task | None = None
        try:
            if not self.config.offline:
                try:
                    await self.bot.initialize()
                except TelegramError as e:
                    raise TransportError(f"transport handshake failed: {e}") from e
                self.dispatcher.bot_username = self.bot.username
                logger.info("Authorized as @%s", self.bot.username)
            else:
                logger.info("Offline mode, skipping transport handshake")

            if stop_signal is not None:
                watcher = asyncio.create_task(self._watch(stop_signal))
            poller_task = asyncio.create_task(
                self.poller.poll(queue, self._stop), name="callbot-poller"
            )
            await self._consume(queue, poller_task)
        except asyncio.CancelledError:
            logger.info("Bot server cancelled, shutting down")
        except Exception as e:
            logger.exception("Bot server failed")
            self.error = e
        finally:
            self._stop.set()
            if watcher is not None:
                watcher.cancel()
            await self._shutdown(queue, poller_task)

    async def _watch(self, stop_signal: asyncio.Event) -> None:
        await stop_signal.wait()
        logger.info("Stop signal received")
        self._stop.set()

    async def _consume(
        self, queue: "asyncio.Queue[Update]", poller_task: asyncio.Task
    ) -> None:
        while True:
            getter = asyncio.ensure_future(queue.get())
            stopper = asyncio.ensure_future(self._stop.wait())
            try:
                await asyncio.wait(
                    {getter, poller_task, stopper}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                stopper.cancel()
                if not getter.done():
                    getter.cancel()
            if getter.done() and not getter.cancelled():
                self._spawn(getter.result())
                continue
            if poller_task.done():
                if not poller_task.cancelled() and poller_task.exception() is not None:
                    self.error = poller_task.exception()
                    logger.error(
                        "Ingestion stopped: %s", self.error, exc_info=self.error
                    )
                return
            if self._stop.is_set():
                return

    def _spawn(self, update: Update) -> None:
        task = asyncio.create_task(self._dispatch(update))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _dispatch(self, update: Update) -> None:
        try:
            await self.dispatcher.dispatch(update)
        except TransportError as e:
            logger.warning(
                "Transport error while handling update %s: %s", update.update_id, e
            )
        except Exception:
            logger.exception(
                "Unexpected error while handling update %s", update.update_id
            )

    async def _shutdown(
        self, queue: "asyncio.Queue[Update]", poller_task: asyncio.Task | None
    ) -> None:
        grace = self.config.shutdown_timeout
        try:
            if poller_task is not None:
                await self._finish_poller(poller_task, grace)

            while not queue.empty():
                self._spawn(queue.get_nowait())

            if self._inflight:
                logger.info("Waiting for %d in-flight handlers", len(self._inflight))
                _, pending = await asyncio.wait(set(self._inflight), timeout=grace)
                for task in pending:
                    task.cancel()
                if pending:
                    logger.warning(
                        "Cancelled %d handlers after %.1fs", len(pending), grace
                    )
                    await asyncio.wait(pending, timeout=grace)

            if not self.config.offline:
                with contextlib.suppress(Exception):
                    await asyncio.wait_for(self.bot.shutdown(), timeout=grace)
        finally:
            logger.info("Bot server stopped")
            if self._done is not None:
                self._done.set()

    @staticmethod
    async def _finish_poller(poller_task: asyncio.Task, grace: float) -> None:
        if not poller_task.done():
            done, _ = await asyncio.wait({poller_task}, timeout=grace)
            if not done:
                logger.warning("Poller did not stop within %.1fs, cancelling", grace)
                poller_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await poller_task
                return
        if not poller_task.cancelled() and poller_task.exception() is not None:
            logger.debug("Poller ended with %r", poller_task.exception())


def configure_framework_logging(config: Config) -> None:
    """Set the ``callbot`` logger level from the config.

    This is the only place that level is set: ``log_enable`` off silences
    the tree, ``debug`` forces DEBUG, otherwise ``log_level`` applies when
    given. Handlers and third-party loggers belong to main.setup_logging.
    """
    root = logging.getLogger("callbot")
    if not config.log_enable:
        root.setLevel(logging.CRITICAL + 1)
    elif config.debug:
        root.setLevel(logging.DEBUG)
    elif config.log_level:
        root.setLevel(config.log_level)

