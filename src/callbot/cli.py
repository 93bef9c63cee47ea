"""Click-based CLI for callbot.

Defines the top-level command group and the ``run`` subcommand, which starts
the demo bot. Precedence: CLI flag > env var > .env > default.
``apply_args_to_env()`` sets os.environ for explicitly provided flags so
Config reads the overridden values.
"""

import os
from pathlib import Path

import click

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_MODES = ("long", "webhook")
_ENCODINGS = ("dense", "label")


def _validate_positive_float(
    _ctx: click.Context, _param: click.Parameter, value: float | None
) -> float | None:
    if value is not None and value <= 0:
        raise click.BadParameter("must be positive")
    return value


def _validate_port(
    _ctx: click.Context, _param: click.Parameter, value: int | None
) -> int | None:
    if value is not None and not 0 < value < 65536:
        raise click.BadParameter("must be between 1 and 65535")
    return value


class _DefaultToRun(click.Group):
    """Click group that runs the ``run`` command when invoked without a subcommand."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        # If the first arg is not a known command and not --help/--version,
        # prepend "run" so flags like -v go to the run command.
        if args and args[0] not in self.commands and not args[0].startswith("--"):
            args = ["run", *args]
        return super().parse_args(ctx, args)


@click.group(
    cls=_DefaultToRun,
    invoke_without_command=True,
    help="Telegram bot framework with callback-routed inline keyboards.",
)
@click.version_option(package_name="callbot", prog_name="callbot")
@click.pass_context
def cli(ctx: click.Context) -> None:
    if ctx.invoked_subcommand is None:
        ctx.invoke(run_cmd)


# --- run command -----------------------------------------------------------

# Mapping: click option name → environment variable name
_FLAG_TO_ENV: list[tuple[str, str]] = [
    ("config_dir", "CALLBOT_DIR"),
    ("mode", "CALLBOT_MODE"),
    ("timeout", "CALLBOT_LP_TIMEOUT"),
    ("shutdown_timeout", "CALLBOT_SHUTDOWN_TIMEOUT"),
    ("encoding", "CALLBOT_ENCODING"),
    ("offline", "CALLBOT_OFFLINE"),
    ("log_updates", "CALLBOT_LOG_UPDATES"),
    ("keep_messages", "CALLBOT_DELETE_MESSAGES"),
    ("webhook_url", "CALLBOT_WEBHOOK_URL"),
    ("listen", "CALLBOT_WEBHOOK_LISTEN"),
    ("port", "CALLBOT_WEBHOOK_PORT"),
    ("secret_token", "CALLBOT_WEBHOOK_SECRET"),
]

# Flags whose presence sets the env var to "false" instead of "true"
_NEGATED_FLAGS = {"keep_messages"}


def apply_args_to_env(**kwargs: object) -> None:
    """Set environment variables from explicitly provided CLI flags.

    Call BEFORE Config instantiation to ensure CLI flags take precedence.
    Only sets env vars for flags that were explicitly provided (not None,
    and for on/off flags, switched on).
    """
    verbose = kwargs.get("verbose", False)
    log_level = kwargs.get("log_level")

    if verbose:
        os.environ["CALLBOT_LOG_LEVEL"] = "DEBUG"
        os.environ["CALLBOT_DEBUG"] = "true"
    elif log_level is not None:
        os.environ["CALLBOT_LOG_LEVEL"] = str(log_level).upper()

    for attr, env_var in _FLAG_TO_ENV:
        value = kwargs.get(attr)
        if value is None or value is False:
            continue
        if value is True:
            os.environ[env_var] = "false" if attr in _NEGATED_FLAGS else "true"
        elif isinstance(value, Path):
            os.environ[env_var] = str(value.expanduser().resolve())
        else:
            os.environ[env_var] = str(value)


@cli.command("run")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level.",
)
@click.option(
    "--config-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Config directory (default: ~/.callbot).",
)
@click.option(
    "--mode",
    type=click.Choice(_MODES, case_sensitive=False),
    default=None,
    help="How updates are received (default: long).",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    callback=_validate_positive_float,
    help="Long polling timeout in seconds (default: 15).",
)
@click.option(
    "--shutdown-timeout",
    type=float,
    default=None,
    callback=_validate_positive_float,
    help="Grace period for in-flight handlers on shutdown (default: 10).",
)
@click.option(
    "--encoding",
    type=click.Choice(_ENCODINGS, case_sensitive=False),
    default=None,
    help="Default callback token encoding (default: dense).",
)
@click.option("--offline", is_flag=True, help="Skip the getMe handshake.")
@click.option("--log-updates", is_flag=True, help="Log every incoming update.")
@click.option(
    "--keep-messages",
    is_flag=True,
    help="Leave superseded main messages and user messages in the chat.",
)
@click.option("--webhook-url", default=None, help="Public webhook URL.")
@click.option("--listen", default=None, help="Webhook listen address.")
@click.option(
    "--port",
    type=int,
    default=None,
    callback=_validate_port,
    help="Webhook listen port (default: 8443).",
)
@click.option("--secret-token", default=None, help="Webhook secret token.")
def run_cmd(**kwargs: object) -> None:
    """Start the demo bot."""
    apply_args_to_env(**kwargs)

    from .main import run_bot

    run_bot()


# --- check command ---------------------------------------------------------


@cli.command("check")
@click.option("--online", is_flag=True, help="Also verify the token with getMe.")
def check_cmd(online: bool) -> None:
    """Validate configuration and print the resolved settings."""
    from .main import check_main

    check_main(online=online)
