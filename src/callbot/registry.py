"""Callback registry: maps compact opaque tokens to handler coroutines.

Telegram only round-trips up to 64 bytes of ``callback_data`` per button,
so a button cannot carry a handler. Instead every keyboard build opens a
*generation* in the chat's registry and each handler on that keyboard gets
a token. A later callback query is routed by resolving its token in the
chat the query came from.

Lifetime rules:
  - A generation stays live until it is superseded: attaching a newer
    build to the message that displayed it, or falling out of the per-chat
    window of ``max_live_keyboards`` builds.
  - Retired tokens resolve to None. The dispatcher answers those presses
    with a "no longer available" notice instead of calling anything.
  - Nothing survives a restart.

Encoding policies (see EncodingPolicy):
  - DENSE_INDEX: ``<generation>.<index>`` in base 36. Smallest tokens,
    only meaningful together with the registry's reverse table.
  - LABEL_HASH: hex of the label (capped at 28 chars) plus 10 random
    characters. Globally unique across chats and keyboards.

The registry is shared by all chats and guarded by one threading.Lock; none
of its critical sections await.
"""

import logging
import secrets
import string
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol

from .errors import BuildError

if TYPE_CHECKING:
    from .context import Context

logger = logging.getLogger(__name__)

Handler = Callable[["Context"], Awaitable[None]]

# Inert buttons carry this data and are answered without dispatch
NOOP_DATA = "noop"
DATA_SEPARATOR = "|"

DEFAULT_MAX_LIVE_KEYBOARDS = 32
LABEL_HEX_LIMIT = 28
RANDOM_SUFFIX_LEN = 10
_MAX_TOKEN_ATTEMPTS = 8

_BASE36 = string.digits + string.ascii_lowercase
_SUFFIX_ALPHABET = string.ascii_letters + string.digits


class EncodingPolicy(str, Enum):
    """Built-in token encodings."""

    DENSE_INDEX = "dense"
    LABEL_HASH = "label"


class Encoder(Protocol):
    """Turns a (generation, index, label) triple into a token.

    Tokens must be ASCII and must not contain ``|``.
    """

    def encode(self, generation: int, index: int, label: str) -> str: ...


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("negative value")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


class DenseIndexEncoder:
    def encode(self, generation: int, index: int, label: str) -> str:
        return f"{to_base36(generation)}.{to_base36(index)}"


class LabelHashEncoder:
    def encode(self, generation: int, index: int, label: str) -> str:
        head = label.encode("utf-8").hex()[:LABEL_HEX_LIMIT]
        tail = "".join(
            secrets.choice(_SUFFIX_ALPHABET) for _ in range(RANDOM_SUFFIX_LEN)
        )
        return head + tail


_BUILTIN_ENCODERS: dict[EncodingPolicy, Encoder] = {
    EncodingPolicy.DENSE_INDEX: DenseIndexEncoder(),
    EncodingPolicy.LABEL_HASH: LabelHashEncoder(),
}


def encoder_for(policy: "EncodingPolicy | Encoder | str") -> Encoder:
    if isinstance(policy, str):
        try:
            return _BUILTIN_ENCODERS[EncodingPolicy(policy)]
        except ValueError:
            raise BuildError(f"unknown encoding policy: {policy!r}") from None
    if not callable(getattr(policy, "encode", None)):
        raise BuildError(f"not an encoding policy: {policy!r}")
    return policy


@dataclass
class _Build:
    generation: int
    tokens: list[str] = field(default_factory=list)
    message_id: int | None = None


@dataclass
class _ChatTable:
    next_generation: int = 0
    builds: "OrderedDict[int, _Build]" = field(default_factory=OrderedDict)
    handlers: dict[str, tuple[int, Handler]] = field(default_factory=dict)
    attached: dict[int, int] = field(default_factory=dict)


class BuildScope:
    """Token allocator for a single keyboard build."""

    def __init__(
        self,
        registry: "CallbackRegistry",
        scope: int | None,
        generation: int,
        encoder: Encoder,
    ) -> None:
        self.registry = registry
        self.scope = scope
        self.generation = generation
        self._encoder = encoder
        self._index = 0

    def register(self, handler: Handler, label: str = "") -> str:
        token = self.registry._add_token(
            self.scope, self.generation, self._index, label, handler, self._encoder
        )
        self._index += 1
        return token

    def discard(self) -> None:
        self.registry.retire(self.scope, self.generation)


class CallbackRegistry:
    """Process-wide table of live callback tokens, partitioned by chat."""

    def __init__(self, max_live_keyboards: int = DEFAULT_MAX_LIVE_KEYBOARDS) -> None:
        if max_live_keyboards < 1:
            raise ValueError("max_live_keyboards must be positive")
        self.max_live_keyboards = max_live_keyboards
        self._lock = threading.Lock()
        self._chats: dict[int | None, _ChatTable] = {}
        # Live LABEL_HASH style tokens across every chat
        self._global_tokens: set[str] = set()

    def open_build(
        self, scope: int | None, policy: "EncodingPolicy | Encoder"
    ) -> BuildScope:
        """Start a new keyboard generation for *scope* (a chat id)."""
        encoder = encoder_for(policy)
        with self._lock:
            table = self._chats.setdefault(scope, _ChatTable())
            generation = table.next_generation
            table.next_generation += 1
            table.builds[generation] = _Build(generation)
            while len(table.builds) > self.max_live_keyboards:
                oldest = next(iter(table.builds))
                self._retire_locked(scope, table, oldest)
        return BuildScope(self, scope, generation, encoder)

    def register(
        self,
        scope: int | None,
        handler: Handler,
        policy: "EncodingPolicy | Encoder" = EncodingPolicy.DENSE_INDEX,
        label: str = "",
    ) -> str:
        """Register a single handler in a fresh generation and return its token."""
        return self.open_build(scope, policy).register(handler, label)

    def _add_token(
        self,
        scope: int | None,
        generation: int,
        index: int,
        label: str,
        handler: Handler,
        encoder: Encoder,
    ) -> str:
        with self._lock:
            table = self._chats.get(scope)
            build = table.builds.get(generation) if table else None
            if table is None or build is None:
                raise BuildError(f"keyboard generation {generation} is no longer live")
            for _ in range(_MAX_TOKEN_ATTEMPTS):
                token = encoder.encode(generation, index, label)
                if DATA_SEPARATOR in token or token == NOOP_DATA:
                    raise BuildError(f"encoder produced a reserved token: {token!r}")
                if token not in table.handlers and token not in self._global_tokens:
                    break
            else:
                raise BuildError("could not allocate a unique callback token")
            table.handlers[token] = (generation, handler)
            build.tokens.append(token)
            if not isinstance(encoder, DenseIndexEncoder):
                self._global_tokens.add(token)
            return token

    def resolve(self, scope: int | None, token: str) -> Handler | None:
        """Return the live handler for *token*, or None if it expired."""
        with self._lock:
            table = self._chats.get(scope)
            if table is None:
                return None
            entry = table.handlers.get(token)
        return entry[1] if entry else None

    def attach(
        self, scope: int | None, message_id: int, generation: int | None
    ) -> None:
        """Record that *message_id* now shows *generation* (None: no keyboard).

        The build previously shown by the same message is retired.
        """
        with self._lock:
            table = self._chats.setdefault(scope, _ChatTable())
            previous = table.attached.pop(message_id, None)
            if previous is not None and previous != generation:
                self._retire_locked(scope, table, previous)
            if generation is not None and generation in table.builds:
                table.attached[message_id] = generation
                table.builds[generation].message_id = message_id

    def retire(self, scope: int | None, generation: int) -> None:
        with self._lock:
            table = self._chats.get(scope)
            if table is not None:
                self._retire_locked(scope, table, generation)

    def _retire_locked(
        self, scope: int | None, table: _ChatTable, generation: int
    ) -> None:
        build = table.builds.pop(generation, None)
        if build is None:
            return
        for token in build.tokens:
            table.handlers.pop(token, None)
            self._global_tokens.discard(token)
        if table.attached.get(build.message_id) == generation:
            del table.attached[build.message_id]
        logger.debug(
            "Retired keyboard generation %d in chat %s (%d tokens)",
            generation,
            scope,
            len(build.tokens),
        )

    def live_generations(self, scope: int | None) -> list[int]:
        with self._lock:
            table = self._chats.get(scope)
            return list(table.builds) if table else []


def split_callback_data(raw: str) -> tuple[str, str]:
    """Split ``token|payload`` into its parts. The payload may be empty."""
    token, _, payload = raw.partition(DATA_SEPARATOR)
    return token, payload
