"""Tests for TelegramTransport and telegram.error translation."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram import InlineKeyboardMarkup
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TimedOut

import callbot.transport as transport_mod
from callbot.errors import (
    ChatBlocked,
    NotEditable,
    RateLimited,
    TransportError,
    is_not_modified,
    translate_error,
)
from callbot.keyboard import ButtonSpec, build_keyboard
from callbot.registry import EncodingPolicy
from callbot.transport import NO_LINK_PREVIEW, TelegramTransport

from conftest import noop_handler


@pytest.fixture
def bot() -> MagicMock:
    bot = MagicMock()
    bot.send_message = AsyncMock(return_value=MagicMock(message_id=77))
    bot.edit_message_text = AsyncMock()
    bot.delete_message = AsyncMock()
    bot.answer_callback_query = AsyncMock()
    return bot


@pytest.fixture
def tg(bot) -> TelegramTransport:
    return TelegramTransport(bot)


class TestTranslateError:
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            pytest.param(RetryAfter(5), RateLimited, id="flood"),
            pytest.param(
                Forbidden("Forbidden: bot was blocked by the user"),
                ChatBlocked,
                id="blocked",
            ),
            pytest.param(
                BadRequest("Message to edit not found"), NotEditable, id="edit-gone"
            ),
            pytest.param(
                BadRequest("Message can't be edited"), NotEditable, id="too-old"
            ),
            pytest.param(
                BadRequest("Message to delete not found"),
                NotEditable,
                id="delete-gone",
            ),
            pytest.param(
                BadRequest("Chat not found"), TransportError, id="bad-request"
            ),
            pytest.param(TimedOut(), TransportError, id="timeout"),
            pytest.param(NetworkError("reset"), TransportError, id="network"),
        ],
    )
    def test_mapping(self, error, expected) -> None:
        translated = translate_error(error)
        assert type(translated) is expected

    def test_retry_after_seconds(self) -> None:
        assert translate_error(RetryAfter(7)).retry_after == 7.0

    def test_not_modified(self) -> None:
        assert is_not_modified(
            BadRequest("Message is not modified: specified new message content")
        )
        assert not is_not_modified(BadRequest("Chat not found"))
        assert not is_not_modified(NetworkError("Message is not modified"))


class TestSend:
    async def test_returns_message_id(self, tg, bot, registry) -> None:
        kb = build_keyboard(
            registry, 1, 1, EncodingPolicy.DENSE_INDEX, ButtonSpec("a", noop_handler)
        )
        message_id = await tg.send_message(1, "<b>hi</b>", kb)

        assert message_id == 77
        kwargs = bot.send_message.await_args.kwargs
        assert kwargs["chat_id"] == 1
        assert kwargs["parse_mode"] == "HTML"
        assert kwargs["link_preview_options"] is NO_LINK_PREVIEW
        assert isinstance(kwargs["reply_markup"], InlineKeyboardMarkup)

    async def test_no_keyboard_no_markup(self, tg, bot) -> None:
        await tg.send_message(1, "plain")
        assert bot.send_message.await_args.kwargs["reply_markup"] is None

    async def test_preview_allowed(self, bot) -> None:
        await TelegramTransport(bot, no_preview=False).send_message(1, "x")
        assert "link_preview_options" not in bot.send_message.await_args.kwargs

    async def test_parse_error_resent_as_plain_text(self, tg, bot) -> None:
        bot.send_message.side_effect = [
            BadRequest("Can't parse entities: unsupported start tag"),
            MagicMock(message_id=78),
        ]
        assert await tg.send_message(1, "<oops>") == 78
        second = bot.send_message.await_args_list[1].kwargs
        assert "parse_mode" not in second

    async def test_blocked(self, tg, bot) -> None:
        bot.send_message.side_effect = Forbidden("bot was blocked by the user")
        with pytest.raises(ChatBlocked):
            await tg.send_message(1, "x")

    async def test_flood(self, tg, bot) -> None:
        bot.send_message.side_effect = RetryAfter(3)
        with pytest.raises(RateLimited) as exc_info:
            await tg.send_message(1, "x")
        assert exc_info.value.retry_after == 3.0
        assert isinstance(exc_info.value.__cause__, RetryAfter)


class TestEdit:
    async def test_edit_arguments(self, tg, bot) -> None:
        await tg.edit_message(1, 5, "new text")
        kwargs = bot.edit_message_text.await_args.kwargs
        assert kwargs["chat_id"] == 1
        assert kwargs["message_id"] == 5
        assert kwargs["text"] == "new text"

    async def test_not_modified_is_success(self, tg, bot) -> None:
        bot.edit_message_text.side_effect = BadRequest(
            "Message is not modified: specified new message content and reply "
            "markup are exactly the same"
        )
        await tg.edit_message(1, 5, "same")

    async def test_missing_message_not_editable(self, tg, bot) -> None:
        bot.edit_message_text.side_effect = BadRequest("Message to edit not found")
        with pytest.raises(NotEditable):
            await tg.edit_message(1, 5, "x")

    async def test_other_errors(self, tg, bot) -> None:
        bot.edit_message_text.side_effect = TimedOut()
        with pytest.raises(TransportError):
            await tg.edit_message(1, 5, "x")


class TestDeleteAndAnswer:
    async def test_delete(self, tg, bot) -> None:
        await tg.delete_message(1, 5)
        bot.delete_message.assert_awaited_once_with(chat_id=1, message_id=5)

    async def test_delete_gone(self, tg, bot) -> None:
        bot.delete_message.side_effect = BadRequest("Message to delete not found")
        with pytest.raises(NotEditable):
            await tg.delete_message(1, 5)

    async def test_answer_with_notice(self, tg, bot) -> None:
        await tg.answer_callback("q1", "gone")
        bot.answer_callback_query.assert_awaited_once_with(
            callback_query_id="q1", text="gone"
        )

    async def test_answer_silently(self, tg, bot) -> None:
        await tg.answer_callback("q1")
        bot.answer_callback_query.assert_awaited_once_with(
            callback_query_id="q1", text=None
        )


class TestRateLimit:
    async def test_disabled_by_default(self, tg, monkeypatch) -> None:
        sleep = AsyncMock()
        monkeypatch.setattr(transport_mod.asyncio, "sleep", sleep)
        await tg.rate_limit_send(1)
        await tg.rate_limit_send(1)
        sleep.assert_not_awaited()

    async def test_spaces_messages_per_chat(self, bot, monkeypatch) -> None:
        sleep = AsyncMock()
        monkeypatch.setattr(transport_mod.asyncio, "sleep", sleep)
        tg = TelegramTransport(bot, send_interval=1.0)
        await tg.rate_limit_send(1)
        await tg.rate_limit_send(2)
        sleep.assert_not_awaited()
        await tg.rate_limit_send(1)
        sleep.assert_awaited_once()
        assert 0 < sleep.await_args.args[0] <= 1.0
