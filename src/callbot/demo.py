"""Demo bot: one main message with a 3-column keyboard of six buttons.

/start shows the keyboard; pressing a number button edits the main
message in place. Run it with ``callbot run``.
"""

from .context import Context
from .state import NO_CHANGE


async def one_number(ctx: Context) -> None:
    await ctx.send_main(NO_CHANGE, "One number", None)


async def two_numbers(ctx: Context) -> None:
    await ctx.send_main(NO_CHANGE, "Two numbers", None)


async def start(ctx: Context) -> None:
    kb = ctx.keyboard(
        3,
        None,
        ctx.btn("1", one_number),
        ctx.btn("2", one_number),
        ctx.btn("3", one_number),
        ctx.btn("11", two_numbers),
        ctx.btn("22", two_numbers),
        ctx.btn("33", two_numbers),
    )
    await ctx.send_main(NO_CHANGE, "Main message", kb)
