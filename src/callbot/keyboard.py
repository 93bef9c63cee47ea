"""Inline keyboard building on top of the callback registry.

Handlers describe buttons with ButtonSpec (label, handler, optional payload)
and get back an immutable Keyboard whose buttons carry ``token|payload``
callback data. Buttons without a handler carry the inert ``noop`` data.

Key functions: build_keyboard() (fixed column grid), single_row().
Key classes: ButtonSpec, Button, Keyboard, KeyboardBuilder (incremental,
optional wrapping by label width).
"""

import math
from dataclasses import dataclass
from enum import IntEnum

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from .errors import BuildError
from .registry import (
    DATA_SEPARATOR,
    NOOP_DATA,
    BuildScope,
    CallbackRegistry,
    Encoder,
    EncodingPolicy,
    Handler,
)

MAX_CALLBACK_DATA_BYTES = 64
MAX_BUTTONS_IN_ROW = 8


class RuneSize(IntEnum):
    """Characters that fit in one keyboard row, by the widest glyphs in labels.

    ONE_BYTE for Latin text, TWO_BYTES for Cyrillic and similar scripts,
    FOUR_BYTES for labels heavy with emoji.
    """

    ONE_BYTE = 36
    TWO_BYTES = 20
    FOUR_BYTES = 16


@dataclass(frozen=True)
class ButtonSpec:
    label: str
    handler: Handler | None = None
    data: str = ""


@dataclass(frozen=True)
class Button:
    label: str
    callback_data: str

    def to_telegram(self) -> InlineKeyboardButton:
        return InlineKeyboardButton(self.label, callback_data=self.callback_data)


@dataclass(frozen=True)
class Keyboard:
    """An immutable grid of buttons bound to one registry generation."""

    rows: tuple[tuple[Button, ...], ...]
    scope: int | None = None
    generation: int | None = None

    @property
    def row_sizes(self) -> list[int]:
        return [len(row) for row in self.rows]

    def buttons(self) -> list[Button]:
        return [button for row in self.rows for button in row]

    def to_markup(self) -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup(
            [[button.to_telegram() for button in row] for row in self.rows]
        )


def join_data(*parts: str) -> str:
    """Join payload items with ``|``, skipping empty items after the first."""
    if not parts:
        return ""
    return DATA_SEPARATOR.join([parts[0], *(p for p in parts[1:] if p)])


def _render(build: BuildScope, spec: ButtonSpec) -> Button:
    if not spec.label:
        raise BuildError("button label must not be empty")
    if spec.handler is None:
        return Button(spec.label, NOOP_DATA)
    token = build.register(spec.handler, spec.label)
    data = f"{token}{DATA_SEPARATOR}{spec.data}" if spec.data else token
    size = len(data.encode("utf-8"))
    if size > MAX_CALLBACK_DATA_BYTES:
        raise BuildError(
            f"callback data for button {spec.label!r} is {size} bytes "
            f"(limit {MAX_CALLBACK_DATA_BYTES})"
        )
    return Button(spec.label, data)


def _check_columns(columns: int) -> None:
    if isinstance(columns, bool) or not isinstance(columns, int):
        raise BuildError(f"columns must be an integer, got {columns!r}")
    if not 1 <= columns <= MAX_BUTTONS_IN_ROW:
        raise BuildError(f"columns must be between 1 and {MAX_BUTTONS_IN_ROW}")


def build_keyboard(
    registry: CallbackRegistry,
    scope: int | None,
    columns: int,
    policy: EncodingPolicy | Encoder,
    *buttons: ButtonSpec,
) -> Keyboard:
    """Pack *buttons* left to right into rows of *columns*.

    The last row may be partial. Any BuildError discards the whole
    generation so no token from a failed build stays resolvable.
    """
    _check_columns(columns)
    build = registry.open_build(scope, policy)
    try:
        rendered = [_render(build, spec) for spec in buttons]
    except BuildError:
        build.discard()
        raise
    rows = tuple(
        tuple(rendered[i * columns : (i + 1) * columns])
        for i in range(math.ceil(len(rendered) / columns))
    )
    return Keyboard(rows=rows, scope=scope, generation=build.generation)


def single_row(
    registry: CallbackRegistry,
    scope: int | None,
    policy: EncodingPolicy | Encoder,
    *buttons: ButtonSpec,
) -> Keyboard:
    """All buttons on one row (at most MAX_BUTTONS_IN_ROW)."""
    columns = max(1, min(len(buttons), MAX_BUTTONS_IN_ROW))
    return build_keyboard(registry, scope, columns, policy, *buttons)


class KeyboardBuilder:
    """Incremental keyboard builder.

    ``add()`` row-fills, starting a new row when the row holds *columns*
    buttons or, with a *rune_size*, when the labels would overflow the
    row's character budget. ``add_row()`` appends a complete row.
    """

    def __init__(
        self,
        registry: CallbackRegistry,
        scope: int | None,
        policy: EncodingPolicy | Encoder,
        *,
        columns: int = MAX_BUTTONS_IN_ROW,
        rune_size: RuneSize | None = None,
    ) -> None:
        _check_columns(columns)
        self._build = registry.open_build(scope, policy)
        self._scope = scope
        self._columns = columns
        self._max_runes = int(rune_size) if rune_size is not None else 0
        self._rows: list[list[Button]] = []
        self._current: list[Button] = []
        self._runes = 0
        self._done = False

    def _button(self, spec: ButtonSpec) -> Button:
        if self._done:
            raise BuildError("keyboard already built")
        try:
            return _render(self._build, spec)
        except BuildError:
            self._build.discard()
            self._done = True
            raise

    def add(self, *specs: ButtonSpec) -> "KeyboardBuilder":
        for spec in specs:
            button = self._button(spec)
            width = len(button.label)
            if len(self._current) == self._columns:
                self.start_new_row()
            elif (
                self._max_runes
                and self._current
                and self._runes + width >= self._max_runes
            ):
                self.start_new_row()
            self._current.append(button)
            self._runes += width
        return self

    def add_row(self, *specs: ButtonSpec) -> "KeyboardBuilder":
        if len(specs) > MAX_BUTTONS_IN_ROW:
            raise BuildError(f"a row holds at most {MAX_BUTTONS_IN_ROW} buttons")
        self.start_new_row()
        row = [self._button(spec) for spec in specs]
        if row:
            self._rows.append(row)
        return self

    def start_new_row(self) -> "KeyboardBuilder":
        if self._current:
            self._rows.append(self._current)
            self._current = []
            self._runes = 0
        return self

    def build(self) -> Keyboard:
        self.start_new_row()
        self._done = True
        return Keyboard(
            rows=tuple(tuple(row) for row in self._rows),
            scope=self._scope,
            generation=self._build.generation,
        )

