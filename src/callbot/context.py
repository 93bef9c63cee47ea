"""Per-update handler context.

A Context is built by the dispatcher for each routed update, while the
chat's lock is held, and handed to the handler coroutine. It bundles the
classified event, the chat's ChatState, the registry (for keyboards) and
the transport (for I/O). Handlers must not keep it after returning.

The central operation is ``send_main()``, which decides between editing
the chat's main message in place and sending a new one:
  - NO_CHANGE: edit the stored main message, or send if there is none
  - NEW_MESSAGE: always send
  - an int message id: edit that message
An edit rejected with NotEditable (deleted or too old) falls back to a
send. Whenever a different message becomes main, the previous main
message's keyboard is retired and, with ``delete_messages`` on, the message
itself is deleted (best effort). A pending error message is removed too.

Side messages live beside the main message, at most one of each kind per
chat: ``send_notification()`` (kept until the next notification or
``delete_notification()``) and ``send_error()`` (kept until the next
``send_main()``).
"""

import logging
from typing import Any

from telegram import Update

from .config import Config
from .errors import NotEditable, TransportError
from .keyboard import (
    ButtonSpec,
    Keyboard,
    KeyboardBuilder,
    RuneSize,
    build_keyboard,
    join_data,
)
from .registry import CallbackRegistry, Encoder, EncodingPolicy, Handler
from .state import NEW_MESSAGE, NO_CHANGE, ChatState, ChatStateStore, MessageTarget
from .transport import Transport
from .updates import Event

logger = logging.getLogger(__name__)


class Context:
    def __init__(
        self,
        event: Event,
        state: ChatState,
        *,
        store: ChatStateStore,
        registry: CallbackRegistry,
        transport: Transport,
        config: Config,
    ) -> None:
        self.event = event
        self.state = state
        self.store = store
        self.registry = registry
        self.transport = transport
        self.config = config
        self.answered = False

    # --- event accessors ----------------------------------------------------

    @property
    def update(self) -> Update:
        return self.event.update

    @property
    def chat_id(self) -> int:
        return self.state.chat_id

    @property
    def user_id(self) -> int | None:
        return self.event.user_id

    @property
    def text(self) -> str:
        return self.event.text

    @property
    def command(self) -> str:
        return self.event.command

    @property
    def args(self) -> tuple[str, ...]:
        return self.event.args

    @property
    def data(self) -> str:
        """Payload attached to the pressed button (empty for other events)."""
        return self.event.data

    def data_items(self) -> list[str]:
        return self.event.data.split("|") if self.event.data else []

    @property
    def message_id(self) -> int | None:
        return self.event.message_id

    @property
    def callback_id(self) -> str | None:
        return self.event.callback_id

    # --- chat-scoped values -------------------------------------------------

    def set(self, key: str, value: Any) -> None:
        self.state.values[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self.state.values.get(key, default)

    # --- keyboards ----------------------------------------------------------

    @staticmethod
    def btn(label: str, handler: Handler | None = None, *data: str) -> ButtonSpec:
        """Describe a button. Extra *data* items are joined with ``|``."""
        return ButtonSpec(label, handler, join_data(*data))

    def keyboard(
        self,
        columns: int,
        policy: EncodingPolicy | Encoder | None,
        *buttons: ButtonSpec,
    ) -> Keyboard:
        """Build a keyboard for this chat. ``policy=None`` uses the config default."""
        return build_keyboard(
            self.registry,
            self.chat_id,
            columns,
            policy or self.config.default_policy,
            *buttons,
        )

    def builder(
        self,
        policy: EncodingPolicy | Encoder | None = None,
        *,
        columns: int = 8,
        rune_size: RuneSize | None = None,
    ) -> KeyboardBuilder:
        return KeyboardBuilder(
            self.registry,
            self.chat_id,
            policy or self.config.default_policy,
            columns=columns,
            rune_size=rune_size,
        )

    # --- messages -----------------------------------------------------------

    async def send_main(
        self,
        target: MessageTarget = NO_CHANGE,
        text: str = "",
        keyboard: Keyboard | None = None,
    ) -> int:
        """Show *text* and *keyboard* as the chat's main message.

        Returns the id of the message that is main afterwards.
        """
        if target is NEW_MESSAGE:
            edit_id = None
        elif target is NO_CHANGE:
            edit_id = self.state.main_message_id
        elif isinstance(target, int) and not isinstance(target, bool):
            edit_id = target
        else:
            raise TypeError(
                f"expected a message id, NO_CHANGE or NEW_MESSAGE, got {target!r}"
            )

        if edit_id is not None:
            try:
                await self.transport.edit_message(self.chat_id, edit_id, text, keyboard)
            except NotEditable as e:
                logger.info(
                    "Main message %d in chat %d not editable (%s), sending new",
                    edit_id,
                    self.chat_id,
                    e,
                )
            else:
                await self._become_main(edit_id, keyboard)
                return edit_id

        message_id = await self.transport.send_message(self.chat_id, text, keyboard)
        await self._become_main(message_id, keyboard)
        return message_id

    async def _become_main(self, message_id: int, keyboard: Keyboard | None) -> None:
        previous = self.state.main_message_id
        self.registry.attach(
            self.chat_id, message_id, keyboard.generation if keyboard else None
        )
        self.state.forget(message_id)
        self.store.set_main_message(self.chat_id, message_id, keyboard)
        if previous is not None and previous != message_id:
            await self._supersede(previous)
        if self.state.error_id is not None:
            await self._discard(self.state.error_id)
            self.state.error_id = None

    async def _supersede(self, message_id: int) -> None:
        if not self.config.delete_messages:
            self.registry.attach(self.chat_id, message_id, None)
            self.state.history_ids.append(message_id)
            return
        await self._discard(message_id)

    async def _discard(self, message_id: int) -> None:
        """Retire the message's keyboard and delete it, best effort."""
        self.registry.attach(self.chat_id, message_id, None)
        try:
            await self.transport.delete_message(self.chat_id, message_id)
        except TransportError as e:
            logger.debug("Could not delete message %d: %s", message_id, e)

    # --- side messages ------------------------------------------------------

    async def send_notification(
        self, text: str, keyboard: Keyboard | None = None
    ) -> int:
        """Send a notification beside the main message.

        The chat keeps at most one: the previous notification is deleted
        first. Notifications are not touched by send_main.
        """
        if self.state.notification_id is not None:
            await self._discard(self.state.notification_id)
            self.state.notification_id = None
        message_id = await self.send(text, keyboard)
        self.state.notification_id = message_id
        return message_id

    async def delete_notification(self) -> None:
        if self.state.notification_id is not None:
            await self._discard(self.state.notification_id)
            self.state.notification_id = None

    async def send_error(self, text: str) -> int:
        """Send an error message, replacing the previous one.

        It is removed by the next send_main, so it stays visible only until
        the user moves on.
        """
        if self.state.error_id is not None:
            await self._discard(self.state.error_id)
            self.state.error_id = None
        message_id = await self.transport.send_message(self.chat_id, text)
        self.state.error_id = message_id
        return message_id

    async def send(self, text: str, keyboard: Keyboard | None = None) -> int:
        """Send a message that does not replace the main message."""
        message_id = await self.transport.send_message(self.chat_id, text, keyboard)
        if keyboard is not None:
            self.registry.attach(self.chat_id, message_id, keyboard.generation)
        return message_id

    async def edit(
        self, message_id: int, text: str, keyboard: Keyboard | None = None
    ) -> None:
        await self.transport.edit_message(self.chat_id, message_id, text, keyboard)
        self.registry.attach(
            self.chat_id, message_id, keyboard.generation if keyboard else None
        )
        if message_id == self.state.main_message_id:
            self.store.set_main_message(self.chat_id, message_id, keyboard)

    async def delete(self, message_id: int) -> None:
        await self.transport.delete_message(self.chat_id, message_id)
        self.registry.attach(self.chat_id, message_id, None)
        self.state.forget(message_id)
        if message_id == self.state.main_message_id:
            self.store.set_main_message(self.chat_id, None)

    async def answer(self, notice: str | None = None) -> None:
        """Answer the callback query once. Later calls are ignored."""
        if self.callback_id is None or self.answered:
            return
        self.answered = True
        await self.transport.answer_callback(self.callback_id, notice)
