"""Chat packet decoding.

A chat payload starts with a flag byte, followed by the sender, the message
and (in newer replays) channel and enemy bytes. How sender and message are
delimited depends on the replay version: add a new ChatFraming for each
variant discovered, and an entry in FRAMING_BY_VERSION to select it."""

from __future__ import annotations

import bisect
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .errors import MalformedChat
from .models import ChatMessage, RecordContext

logger = logging.getLogger(__name__)


class ChatFraming(str, Enum):
    LengthPrefixed = "length_prefixed"
    NulTerminated = "nul_terminated"


FRAMING_BY_VERSION: List[Tuple[int, ChatFraming]] = [
    (0, ChatFraming.LengthPrefixed),
]
"""(first replay version, framing) pairs, sorted by version."""


def framing_for_version(version: int) -> ChatFraming:
    i = bisect.bisect_right([v for v, _ in FRAMING_BY_VERSION], version) - 1
    return FRAMING_BY_VERSION[max(i, 0)][1]


class _Reader:
    def __init__(self, payload: bytes):
        self.payload = payload
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.payload) - self.pos

    def byte(self) -> int:
        if self.remaining < 1:
            raise MalformedChat(f"Payload ends at {self.pos} while reading a byte")
        self.pos += 1
        return self.payload[self.pos - 1]

    def take(self, n: int) -> bytes:
        if self.remaining < n:
            raise MalformedChat(
                f"Need {n} bytes at {self.pos}, only {self.remaining} left"
            )
        self.pos += n
        return self.payload[self.pos - n : self.pos]

    def until_nul(self) -> bytes:
        end = self.payload.find(b"\0", self.pos)
        if end == -1:
            raise MalformedChat(f"No NUL terminator after {self.pos}")
        value = self.payload[self.pos : end]
        self.pos = end + 1
        return value


def _length_prefixed(r: _Reader) -> Tuple[bytes, bytes]:
    sender = r.take(r.byte())
    message = r.take(r.byte())
    return sender, message


def _nul_terminated(r: _Reader) -> Tuple[bytes, bytes]:
    return r.until_nul(), r.until_nul()


_FRAMERS: Dict[ChatFraming, Callable[[_Reader], Tuple[bytes, bytes]]] = {
    ChatFraming.LengthPrefixed: _length_prefixed,
    ChatFraming.NulTerminated: _nul_terminated,
}


def _utf8(field: str, raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedChat(f"Chat {field} is not valid UTF-8: {e}") from e


def handle_chat(
    ctx: RecordContext, framing: Optional[ChatFraming] = None
) -> ChatMessage:
    """Record handler for chat packets. Raises MalformedChat if the payload
    cannot be framed."""
    if framing is None:
        framing = framing_for_version(ctx.version)
    r = _Reader(ctx.payload)
    r.byte()  # subtype/flags, meaning unknown
    if r.remaining == 0:
        raise MalformedChat("Payload holds only the flag byte")
    sender, message = _FRAMERS[framing](r)
    channel_type = r.byte() if r.remaining >= 1 else None
    is_enemy = r.byte() if r.remaining >= 1 else None
    chat = ChatMessage(
        offset=ctx.offset,
        length=ctx.length,
        tag=ctx.tag,
        timestamp_ms=ctx.timestamp_ms,
        sender=_utf8("sender", sender),
        message=_utf8("message", message),
        channel_type=channel_type,
        is_enemy=is_enemy,
    )
    logger.debug(
        f"[Chat] {chat.timestamp_ms} ms, {chat.sender!r}: {chat.message!r} "
        f"(channel {chat.channel_type}, enemy {chat.is_enemy})"
    )
    return chat
