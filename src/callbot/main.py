"""Application entry point: Click CLI dispatcher and demo bot bootstrap.

The ``main()`` function invokes the Click command group defined in cli.py.
``run_bot()`` contains the actual startup logic, called by the ``run``
command after CLI flags have been applied to the environment.
"""

import asyncio
import logging
import signal
import sys

import colorlog


class _ShortNameFilter(logging.Filter):
    """Strip the 'callbot.' prefix, cap at 20 chars."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name.startswith("callbot."):
            name = name[len("callbot.") :]
        record.short_name = name[:20]  # type: ignore[attr-defined]
        return True


def setup_logging() -> None:
    """Install colored, compact output for interactive CLI use.

    Only the handler and third-party levels are set here; the callbot level
    comes from Config via bot.configure_framework_logging.
    """
    handler = colorlog.StreamHandler()
    handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s %(levelname)-8s %(short_name)-20s %(message)s",
            datefmt="%H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "bold_red",
            },
        )
    )
    handler.addFilter(_ShortNameFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.WARNING)

    for name in ("httpx", "httpcore", "telegram.ext"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def serve(config) -> None:
    """Run the demo bot until SIGINT/SIGTERM."""
    from .bot import BotServer
    from .demo import start

    server = BotServer(config=config)
    stop_signal = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_signal.set)

    done = server.start(start, stop_signal)
    await done.wait()
    if server.error is not None:
        raise server.error


def run_bot() -> None:
    """Start the bot. Called by the ``run`` Click command after env is set."""
    setup_logging()

    from .bot import configure_framework_logging
    from .config import Config, callbot_dir
    from .errors import CallbotError, ConfigurationError

    try:
        config = Config()
    except ConfigurationError as e:
        env_path = callbot_dir() / ".env"
        print(f"Error: {e}\n")
        print(f"Create {env_path} with the following content:\n")
        print("  TELEGRAM_BOT_TOKEN=your_bot_token_here")
        print()
        print("Get your bot token from @BotFather on Telegram.")
        sys.exit(1)

    if config.log_level is None:
        config.log_level = "INFO"
    configure_framework_logging(config)

    logger = logging.getLogger(__name__)
    logger.info("Starting Telegram bot in %s mode...", config.mode.value)
    try:
        asyncio.run(serve(config))
    except CallbotError as e:
        logger.error("Bot stopped: %s", e)
        sys.exit(1)


def check_main(online: bool = False) -> None:
    """Print the resolved configuration, exiting 1 if it is invalid."""
    from .config import Config, Mode
    from .errors import ConfigurationError

    try:
        config = Config()
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Mode:            {config.mode.value}")
    print(f"Polling timeout: {config.long_polling_timeout}s")
    print(f"Shutdown grace:  {config.shutdown_timeout}s")
    print(f"Encoding:        {config.default_policy.value}")
    print(f"Delete messages: {config.delete_messages}")
    if config.mode is Mode.WEBHOOK:
        print(f"Webhook URL:     {config.webhook.url}")
        print(f"Listen:          {config.webhook.listen}:{config.webhook.port}")

    if online:
        from telegram.error import TelegramError

        try:
            me = asyncio.run(_get_me(config.telegram_bot_token))
        except TelegramError as e:
            print(f"Error: getMe failed: {e}")
            sys.exit(1)
        print(f"Bot:             @{me}")


async def _get_me(token: str) -> str:
    from telegram import Bot

    async with Bot(token) as bot:
        return bot.username


def main() -> None:
    """Main entry point: dispatches via Click CLI group."""
    from .cli import cli

    cli()


if __name__ == "__main__":
    main()
