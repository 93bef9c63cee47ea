"""End-to-end BotServer tests driven by scripted pollers and a fake transport."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import InvalidToken

from callbot import demo
from callbot.bot import BotServer
from callbot.errors import ConfigurationError, TransportError
from callbot.ingestion import LongPoller, ScriptedPoller
from callbot.keyboard import ButtonSpec, build_keyboard
from callbot.state import NO_CHANGE

from conftest import CHAT_ID, make_callback_update, make_text_update


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


class _BurstPoller:
    """Put every update at once, then return as if ingestion ended."""

    def __init__(self, updates) -> None:
        self.updates = updates

    async def poll(self, queue, stop) -> None:
        for update in self.updates:
            await queue.put(update)


class _FailingPoller:
    async def poll(self, queue, stop) -> None:
        raise TransportError("connection lost for good")


def _mock_bot() -> MagicMock:
    bot = MagicMock()
    bot.username = "test_bot"
    bot.initialize = AsyncMock()
    bot.shutdown = AsyncMock()
    return bot


@pytest.fixture
def make_server(make_config, transport):
    """Factory: BotServer in custom mode with the fake transport."""

    def _make(poller, bot=None, **overrides) -> BotServer:
        overrides.setdefault("mode", "custom")
        return BotServer(
            config=make_config(**overrides),
            transport=transport,
            poller=poller,
            bot=bot or _mock_bot(),
        )

    return _make


class TestScriptedSession:
    async def test_start_then_button_press(self, make_server, transport) -> None:
        calls: dict[str, int] = {"start": 0, "first": 0, "second": 0}
        keyboards = []

        async def first(ctx) -> None:
            calls["first"] += 1

        async def second(ctx) -> None:
            calls["second"] += 1
            await ctx.send_main(NO_CHANGE, "Second pressed", None)

        async def start(ctx) -> None:
            calls["start"] += 1
            kb = ctx.keyboard(
                3,
                None,
                ctx.btn("1", first),
                ctx.btn("2", second),
                ctx.btn("3", first),
                ctx.btn("11", first),
                ctx.btn("22", first),
                ctx.btn("33", first),
            )
            keyboards.append(kb)
            await ctx.send_main(NO_CHANGE, "Main message", kb)

        poller = ScriptedPoller(
            [
                make_text_update("/start"),
                make_callback_update("0.1", message_id=1001, query_id="press"),
            ]
        )
        server = make_server(poller)
        done = server.start(start)

        await _wait_until(lambda: transport.answers)
        server.stop()
        await asyncio.wait_for(done.wait(), timeout=1.0)

        assert calls == {"start": 1, "first": 0, "second": 1}
        assert keyboards[0].row_sizes == [3, 3]
        assert len(transport.sent) == 1
        assert transport.edits == [(CHAT_ID, 1001, "Second pressed", None)]
        assert transport.answers == [("press", None)]
        assert server.error is None

    async def test_demo_bot(self, make_server, transport) -> None:
        poller = ScriptedPoller(
            [make_text_update("/start"), make_callback_update("0.4", message_id=1001)]
        )
        server = make_server(poller)
        done = server.start(demo.start)

        await _wait_until(lambda: transport.edits)
        server.stop()
        await asyncio.wait_for(done.wait(), timeout=1.0)

        _, text, kb = transport.sent[0]
        assert text == "Main message"
        assert [b.label for b in kb.buttons()] == ["1", "2", "3", "11", "22", "33"]
        assert transport.edits == [(CHAT_ID, 1001, "Two numbers", None)]

    async def test_stale_press_after_new_keyboard(self, make_server, transport) -> None:
        pressed = []

        async def press(ctx) -> None:
            pressed.append(ctx.data)

        async def start(ctx) -> None:
            kb = ctx.keyboard(1, None, ctx.btn("go", press))
            await ctx.send_main(NO_CHANGE, "menu", kb)

        poller = ScriptedPoller(
            [
                make_text_update("/start"),
                make_text_update("/start"),
                make_callback_update("0.0", message_id=1001, query_id="old"),
            ]
        )
        server = make_server(poller)
        done = server.start(start)

        await _wait_until(lambda: transport.answers)
        server.stop()
        await asyncio.wait_for(done.wait(), timeout=1.0)

        assert pressed == []
        assert transport.answers == [("old", server.config.stale_callback_notice)]

    async def test_middleware_filters_chats(self, make_server, transport) -> None:
        started = []

        async def only_known(ctx) -> bool:
            return ctx.chat_id == CHAT_ID

        async def start(ctx) -> None:
            started.append(ctx.chat_id)
            await ctx.send_main(NO_CHANGE, "Welcome", None)

        poller = ScriptedPoller(
            [make_text_update("/start", chat_id=7), make_text_update("/start")]
        )
        server = make_server(poller)
        server.add_middleware(only_known)
        done = server.start(start)

        await _wait_until(lambda: transport.sent)
        server.stop()
        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert started == [CHAT_ID]


class TestStartup:
    async def test_offline_skips_handshake(self, make_server) -> None:
        bot = _mock_bot()
        server = make_server(ScriptedPoller([]), bot=bot)
        done = server.start(demo.start)
        server.stop()
        await asyncio.wait_for(done.wait(), timeout=1.0)
        bot.initialize.assert_not_awaited()
        bot.shutdown.assert_not_awaited()

    async def test_online_initializes_and_shuts_down(self, make_server) -> None:
        bot = _mock_bot()
        server = make_server(ScriptedPoller([]), bot=bot, offline=False)
        done = server.start(demo.start)
        await _wait_until(lambda: bot.initialize.await_count == 1)
        server.stop()
        await asyncio.wait_for(done.wait(), timeout=1.0)
        bot.shutdown.assert_awaited_once()
        assert server.dispatcher.bot_username == "test_bot"

    async def test_handshake_failure(self, make_server) -> None:
        bot = _mock_bot()
        bot.initialize.side_effect = InvalidToken()
        server = make_server(ScriptedPoller([]), bot=bot, offline=False)
        done = server.start(demo.start)
        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert isinstance(server.error, TransportError)
        assert "handshake" in str(server.error)

    async def test_start_twice(self, make_server) -> None:
        server = make_server(ScriptedPoller([]))
        done = server.start(demo.start)
        with pytest.raises(RuntimeError):
            server.start(demo.start)
        server.stop()
        await asyncio.wait_for(done.wait(), timeout=1.0)

    def test_custom_mode_requires_poller(self, make_config, transport) -> None:
        with pytest.raises(ConfigurationError, match="poller"):
            BotServer(
                config=make_config(mode="custom"), transport=transport, bot=_mock_bot()
            )

    def test_long_mode_uses_long_poller(self, make_config, transport) -> None:
        server = BotServer(config=make_config(), transport=transport, bot=_mock_bot())
        assert isinstance(server.poller, LongPoller)


class TestShutdown:
    async def test_external_stop_signal(self, make_server) -> None:
        signal = asyncio.Event()
        server = make_server(ScriptedPoller([]))
        done = server.start(demo.start, stop_signal=signal)
        signal.set()
        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert server.error is None

    async def test_stop_is_idempotent(self, make_server) -> None:
        server = make_server(ScriptedPoller([]))
        done = server.start(demo.start)
        server.stop()
        server.stop()
        await asyncio.wait_for(done.wait(), timeout=1.0)
        server.stop()
        assert done.is_set()

    async def test_in_flight_handler_finishes(self, make_server) -> None:
        entered = asyncio.Event()
        finished = []

        async def slow(ctx) -> None:
            entered.set()
            await asyncio.sleep(0.05)
            finished.append(ctx.chat_id)

        server = make_server(ScriptedPoller([make_text_update("/start")]))
        done = server.start(slow)
        await asyncio.wait_for(entered.wait(), timeout=1.0)
        server.stop()
        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert finished == [CHAT_ID]

    async def test_cancel_mid_dispatch_releases_chat(self, make_server) -> None:
        entered = asyncio.Event()

        async def stuck(ctx) -> None:
            entered.set()
            await asyncio.Event().wait()

        server = make_server(
            ScriptedPoller([make_text_update("/start")]), shutdown_timeout=0.1
        )
        done = server.start(stuck)
        await asyncio.wait_for(entered.wait(), timeout=1.0)
        assert server.store.is_locked(CHAT_ID)

        server.task.cancel()
        await asyncio.wait_for(done.wait(), timeout=1.0)

        assert not server.store.is_locked(CHAT_ID)

    async def test_queued_updates_are_drained(self, make_server) -> None:
        handled = []

        async def record(ctx) -> None:
            handled.append(ctx.chat_id)

        updates = [make_text_update("/start", chat_id=i) for i in (1, 2, 3)]
        server = make_server(_BurstPoller(updates))
        done = server.start(record)
        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert sorted(handled) == [1, 2, 3]

    async def test_poller_failure_reported(self, make_server) -> None:
        server = make_server(_FailingPoller())
        done = server.start(demo.start)
        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert isinstance(server.error, TransportError)

    async def test_handler_error_does_not_stop_server(
        self, make_server, transport
    ) -> None:
        async def broken(ctx) -> None:
            raise RuntimeError("boom")

        server = make_server(
            ScriptedPoller([make_text_update("/start"), make_text_update("/start")])
        )
        done = server.start(broken)
        await _wait_until(lambda: len(transport.sent) == 2)
        assert not done.is_set()
        server.stop()
        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert server.error is None


class TestProactiveMessages:
    async def test_send_in_chat_attaches_keyboard(self, make_server, transport) -> None:
        server = make_server(ScriptedPoller([]))
        kb = build_keyboard(
            server.registry,
            CHAT_ID,
            1,
            server.config.default_policy,
            ButtonSpec("x", demo.one_number),
        )
        message_id = await server.send_in_chat(CHAT_ID, "hi", kb)

        assert message_id == 1001
        assert transport.sent == [(CHAT_ID, "hi", kb)]
        assert server.store.get(CHAT_ID).main_message_id is None

    async def test_delete_in_chat_clears_main(self, make_server, transport) -> None:
        server = make_server(ScriptedPoller([]))
        server.store.set_main_message(CHAT_ID, 1001)
        await server.delete_in_chat(CHAT_ID, 1001)
        assert transport.deleted == [(CHAT_ID, 1001)]
        assert server.store.get(CHAT_ID).main_message_id is None
