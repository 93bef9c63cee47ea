"""Shared fixtures for callbot unit tests.

Provides a recording fake transport, factories for real telegram.Update
objects (commands, text, callback presses) and ready-made Config /
Dispatcher / Context instances.
"""

import itertools
from datetime import datetime, timezone

import pytest
from telegram import CallbackQuery, Chat, Message, Update, User

from callbot.config import Config
from callbot.context import Context
from callbot.dispatcher import Dispatcher
from callbot.errors import NotEditable
from callbot.keyboard import Keyboard
from callbot.registry import CallbackRegistry
from callbot.state import ChatStateStore
from callbot.updates import classify

CHAT_ID = 100
USER = User(id=42, first_name="Tester", is_bot=False)

_update_ids = itertools.count(1)


class FakeTransport:
    """Transport double that records every call.

    Message ids start at 1001. Ids in ``not_editable`` make edit_message
    raise NotEditable (and are recorded in ``failed_edits``).
    """

    def __init__(self) -> None:
        self.sent: list[tuple[int, str, Keyboard | None]] = []
        self.edits: list[tuple[int, int, str, Keyboard | None]] = []
        self.failed_edits: list[tuple[int, int]] = []
        self.deleted: list[tuple[int, int]] = []
        self.answers: list[tuple[str, str | None]] = []
        self.not_editable: set[int] = set()
        self.send_error: Exception | None = None
        self._next_id = 1000

    async def send_message(
        self, chat_id: int, text: str, keyboard: Keyboard | None = None
    ) -> int:
        if self.send_error is not None:
            raise self.send_error
        self._next_id += 1
        self.sent.append((chat_id, text, keyboard))
        return self._next_id

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        keyboard: Keyboard | None = None,
    ) -> None:
        if message_id in self.not_editable:
            self.failed_edits.append((chat_id, message_id))
            raise NotEditable("Message to edit not found")
        self.edits.append((chat_id, message_id, text, keyboard))

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        self.deleted.append((chat_id, message_id))

    async def answer_callback(
        self, callback_id: str, notice: str | None = None
    ) -> None:
        self.answers.append((callback_id, notice))


def make_message(
    text: str | None, *, chat_id: int = CHAT_ID, message_id: int = 1
) -> Message:
    return Message(
        message_id=message_id,
        date=datetime.now(timezone.utc),
        chat=Chat(id=chat_id, type=Chat.PRIVATE),
        from_user=USER,
        text=text,
    )


def make_text_update(
    text: str | None, *, chat_id: int = CHAT_ID, message_id: int = 1
) -> Update:
    """A message update; text starting with "/" is a command."""
    return Update(
        update_id=next(_update_ids),
        message=make_message(text, chat_id=chat_id, message_id=message_id),
    )


def make_callback_update(
    data: str,
    *,
    chat_id: int = CHAT_ID,
    message_id: int = 1001,
    query_id: str | None = None,
) -> Update:
    update_id = next(_update_ids)
    query = CallbackQuery(
        id=query_id or f"q{update_id}",
        from_user=USER,
        chat_instance="test-instance",
        message=make_message("main", chat_id=chat_id, message_id=message_id),
        data=data,
    )
    return Update(update_id=update_id, callback_query=query)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_config(monkeypatch, tmp_path):
    """Factory: Config with no .env files in reach."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CALLBOT_DIR", str(tmp_path))

    def _make(**overrides) -> Config:
        overrides.setdefault("offline", True)
        return Config(**overrides)

    return _make


@pytest.fixture
def config(make_config) -> Config:
    return make_config()


@pytest.fixture
def registry() -> CallbackRegistry:
    return CallbackRegistry()


@pytest.fixture
def store() -> ChatStateStore:
    return ChatStateStore()


@pytest.fixture
def dispatcher(config, transport, registry, store) -> Dispatcher:
    return Dispatcher(
        config=config, transport=transport, registry=registry, store=store
    )


@pytest.fixture
def make_context(config, transport, registry, store):
    """Factory: Context for an update (default: /start in CHAT_ID)."""

    def _make(update: Update | None = None, **config_overrides) -> Context:
        event = classify(update or make_text_update("/start"))
        cfg = config
        if config_overrides:
            cfg = Config(offline=True, **config_overrides)
        return Context(
            event,
            store.get_or_create(event.chat_id),
            store=store,
            registry=registry,
            transport=transport,
            config=cfg,
        )

    return _make


async def noop_handler(ctx: Context) -> None:
    return None
