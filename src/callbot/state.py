"""Per-chat state: the main message and its keyboard, plus chat-scoped values.

One ChatState exists per chat, created on the first update from that chat
and kept until the process exits (no persistence). Every handler for a chat
runs under that chat's asyncio.Lock (ChatStateStore.lock), so reads and
writes of the main message id are never interleaved within a chat while
different chats proceed independently.

Also defines the NO_CHANGE / NEW_MESSAGE sentinels accepted by
Context.send_main in place of a message id.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Final

from .keyboard import Keyboard

logger = logging.getLogger(__name__)


class _Sentinel:
    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __bool__(self) -> bool:
        return False


# Reuse the chat's current main message (edit it if there is one)
NO_CHANGE: Final = _Sentinel("NO_CHANGE")
# Always send a fresh main message
NEW_MESSAGE: Final = _Sentinel("NEW_MESSAGE")

MessageTarget = int | _Sentinel


@dataclass
class ChatState:
    chat_id: int
    main_message_id: int | None = None
    last_keyboard: Keyboard | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    # Side messages: a new one replaces the old, see Context.send_notification
    notification_id: int | None = None
    error_id: int | None = None
    # Earlier main messages that were left in the chat (delete_messages off)
    history_ids: list[int] = field(default_factory=list)
    values: dict[str, Any] = field(default_factory=dict)

    def touch(self) -> None:
        self.updated_at = time.time()

    def forget(self, message_id: int) -> None:
        """Drop *message_id* from the side message slots it occupies."""
        if self.notification_id == message_id:
            self.notification_id = None
        if self.error_id == message_id:
            self.error_id = None


class ChatStateStore:
    """In-memory ChatState table with one asyncio.Lock per chat."""

    def __init__(self) -> None:
        self._states: dict[int, ChatState] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    def get_or_create(self, chat_id: int) -> ChatState:
        state = self._states.get(chat_id)
        if state is None:
            state = ChatState(chat_id=chat_id)
            self._states[chat_id] = state
            logger.debug("New chat state for %d", chat_id)
        return state

    def get(self, chat_id: int) -> ChatState | None:
        return self._states.get(chat_id)

    def set_main_message(
        self, chat_id: int, message_id: int | None, keyboard: Keyboard | None = None
    ) -> ChatState:
        state = self.get_or_create(chat_id)
        state.main_message_id = message_id
        state.last_keyboard = keyboard
        state.touch()
        return state

    def chats(self) -> list[int]:
        return list(self._states)

    def _get_lock(self, chat_id: int) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chat_id] = lock
        return lock

    @asynccontextmanager
    async def lock(self, chat_id: int) -> AsyncIterator[ChatState]:
        """Hold the chat's lock for the duration of the block."""
        async with self._get_lock(chat_id):
            yield self.get_or_create(chat_id)

    def is_locked(self, chat_id: int) -> bool:
        lock = self._locks.get(chat_id)
        return lock is not None and lock.locked()
