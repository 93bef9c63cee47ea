"""Classification of inbound telegram.Update objects.

classify() turns a raw update into an Event tagged with one of:
  - COMMAND: message text starting with "/" (``/cmd@botname args``)
  - CALLBACK: callback query carrying ``token|payload`` data
  - PLAIN_TEXT: any other text message
  - UNROUTABLE: everything else (no chat, no text, game callbacks, and
    ``/cmd@other_bot`` when *bot_username* is known)

The dispatcher routes on the kind with a table lookup.
"""

from dataclasses import dataclass
from enum import Enum

from telegram import Update

from .registry import split_callback_data


class EventKind(str, Enum):
    COMMAND = "command"
    CALLBACK = "callback"
    PLAIN_TEXT = "text"
    UNROUTABLE = "unroutable"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    update: Update
    chat_id: int | None = None
    user_id: int | None = None
    message_id: int | None = None
    text: str = ""
    command: str = ""
    args: tuple[str, ...] = ()
    token: str = ""
    data: str = ""
    callback_id: str | None = None


def normalize_command(command: str) -> str:
    """``start``, ``/start`` and ``/start@my_bot`` all become ``/start``."""
    name = command.strip().lstrip("/").split("@", 1)[0]
    return f"/{name}" if name else ""


def classify(update: Update, bot_username: str | None = None) -> Event:
    chat = update.effective_chat
    user = update.effective_user
    chat_id = chat.id if chat else None
    user_id = user.id if user else None

    query = update.callback_query
    if query is not None:
        if not query.data:
            return Event(
                EventKind.UNROUTABLE, update, chat_id, user_id, callback_id=query.id
            )
        token, data = split_callback_data(query.data)
        message = query.message
        return Event(
            EventKind.CALLBACK,
            update,
            chat_id=message.chat.id if message else chat_id,
            user_id=user_id,
            message_id=message.message_id if message else None,
            token=token,
            data=data,
            callback_id=query.id,
        )

    message = update.message
    if message is None or chat_id is None or not message.text:
        return Event(EventKind.UNROUTABLE, update, chat_id, user_id)

    text = message.text
    if text.startswith("/"):
        head, *rest = text.split()
        mention = head.partition("@")[2]
        if mention and bot_username and mention.lower() != bot_username.lower():
            return Event(
                EventKind.UNROUTABLE,
                update,
                chat_id,
                user_id,
                message_id=message.message_id,
                text=text,
            )
        command = normalize_command(head)
        if command:
            return Event(
                EventKind.COMMAND,
                update,
                chat_id,
                user_id,
                message_id=message.message_id,
                text=text,
                command=command,
                args=tuple(rest),
            )

    return Event(
        EventKind.PLAIN_TEXT,
        update,
        chat_id,
        user_id,
        message_id=message.message_id,
        text=text,
    )
