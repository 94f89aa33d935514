"""Record-stream parsing for decompressed replay bodies.

The body is a sequence of packets. Each packet is a variable-length size
prefix followed by that many bytes: a tag byte, a 4-byte timestamp (omitted
when bit 0x10 of the tag byte says the timestamp hasn't changed) and a
payload whose layout depends on the tag.

Every byte of the body ends up in exactly one record. Anything we can't read
becomes an UnknownRecord rather than an error, so one bad packet never costs
us the rest of the stream."""

from __future__ import annotations

import logging
import struct
from functools import partial
from typing import Callable, Dict, Iterator, Mapping, NamedTuple, Optional, Tuple

from .chat import ChatFraming, handle_chat
from .errors import FramingError, RecordError
from .models import (
    KNOWN_TAGS,
    DecodedBody,
    PacketType,
    Record,
    RecordContext,
    SessionMarker,
    UnknownReason,
    UnknownRecord,
)

logger = logging.getLogger(__name__)


TIMESTAMP_UNCHANGED = 0x10
TIMESTAMP_HEADER_SIZE = 5
"""Tag byte plus a 4-byte timestamp."""
MIN_RECORD_SIZE = 2
"""A one-byte size prefix plus a tag byte."""

Handler = Callable[[RecordContext], Record]


def read_size_prefix(buf: bytes, pos: int) -> Tuple[int, int]:
    """Read the size prefix at `pos`, returning (payload size, prefix length).

    The leading bits of the first byte give the prefix width:
    10xxxxxx -> 1 byte, 01xxxxxx -> 2, 001xxxxx -> 3, 0001xxxx -> 4 (each
    big-endian with the marker bit XORed out), and 0000xxxx -> a
    little-endian u32 in the next 4 bytes. 11xxxxxx is invalid."""
    if pos >= len(buf):
        raise FramingError(f"No bytes left for a size prefix at {pos}")
    first = buf[pos]
    if first & 0x80:
        if first & 0x40:
            raise FramingError(f"Invalid size prefix byte {first:#04x} at {pos}")
        return first & 0x7F, 1
    if first & 0x40:
        width, marker = 2, 0x4000
    elif first & 0x20:
        width, marker = 3, 0x200000
    elif first & 0x10:
        width, marker = 4, 0x10000000
    else:
        width, marker = 5, None
    if pos + width > len(buf):
        raise FramingError(f"Size prefix at {pos} needs {width} bytes")
    if marker is None:
        (size,) = struct.unpack_from("<I", buf, pos + 1)
        return size, width
    return int.from_bytes(buf[pos : pos + width], "big") ^ marker, width


def read_packet_header(payload: bytes, last_timestamp_ms: int) -> Tuple[int, int, int]:
    """Read the tag and timestamp at the start of a packet.

    Returns (tag, timestamp_ms, header length)."""
    if not payload:
        raise FramingError("Empty packet")
    first = payload[0]
    if first & TIMESTAMP_UNCHANGED:
        return first ^ TIMESTAMP_UNCHANGED, last_timestamp_ms, 1
    if len(payload) < TIMESTAMP_HEADER_SIZE:
        raise FramingError(
            f"Packet of {len(payload)} bytes is too short for its timestamp"
        )
    (timestamp_ms,) = struct.unpack_from("<I", payload, 1)
    return first, timestamp_ms, TIMESTAMP_HEADER_SIZE


class Frame(NamedTuple):
    offset: int
    prefix_len: int
    size: int

    @property
    def length(self) -> int:
        return self.prefix_len + self.size

    @property
    def end(self) -> int:
        return self.offset + self.length


def frame_at(buf: bytes, pos: int) -> Optional[Frame]:
    """The size-prefixed frame at `pos`, or None if no complete frame starts there."""
    try:
        size, prefix_len = read_size_prefix(buf, pos)
    except FramingError:
        return None
    if pos + prefix_len + size > len(buf):
        return None
    return Frame(pos, prefix_len, size)


def packet_at(buf: bytes, pos: int) -> Optional[Frame]:
    """The frame at `pos` if it holds a packet header we can read: a known
    tag, and room for the timestamp unless the tag says it is reused."""
    frame = frame_at(buf, pos)
    if frame is None or frame.size == 0:
        return None
    tag_byte = buf[pos + frame.prefix_len]
    if tag_byte & ~TIMESTAMP_UNCHANGED not in KNOWN_TAGS:
        return None
    if not tag_byte & TIMESTAMP_UNCHANGED and frame.size < TIMESTAMP_HEADER_SIZE:
        return None
    return frame


def _plausible_at(buf: bytes, pos: int) -> bool:
    frame = packet_at(buf, pos)
    if frame is None:
        return False
    return frame.end == len(buf) or frame_at(buf, frame.end) is not None


def resync(buf: bytes, start: int) -> int:
    """The first offset at or after `start` that looks like a record boundary,
    or the end of the buffer if there is none."""
    for pos in range(start, len(buf)):
        if _plausible_at(buf, pos):
            return pos
    return len(buf)


def handle_session_marker(ctx: RecordContext) -> SessionMarker:
    return SessionMarker(
        offset=ctx.offset,
        length=ctx.length,
        tag=ctx.tag,
        marker=PacketType(ctx.tag),
        timestamp_ms=ctx.timestamp_ms,
        payload=ctx.payload,
    )


def default_handlers(chat_framing: Optional[ChatFraming] = None) -> Dict[int, Handler]:
    """Handlers for the packet types we understand. Everything else is Unknown
    until its layout has been worked out."""
    chat: Handler = (
        handle_chat if chat_framing is None else partial(handle_chat, framing=chat_framing)
    )
    return {
        PacketType.Chat: chat,
        PacketType.StartMarker: handle_session_marker,
        PacketType.EndMarker: handle_session_marker,
        PacketType.NextSegment: handle_session_marker,
    }


def iter_records(
    body: DecodedBody,
    version: int = 0,
    handlers: Optional[Mapping[int, Handler]] = None,
) -> Iterator[Record]:
    """Yield the records in a decompressed body, in order."""
    if handlers is None:
        handlers = default_handlers()
    buf = body.data
    end = len(buf)
    pos = 0
    last_timestamp_ms = 0
    count = 0

    while pos < end:
        count += 1
        if end - pos < MIN_RECORD_SIZE:
            logger.debug(f"{end - pos} trailing bytes at {pos} are too few for a record")
            yield UnknownRecord(
                offset=pos,
                length=end - pos,
                reason=UnknownReason.Unframed,
                data=buf[pos:],
                truncated=True,
            )
            break

        # A frame that fits but holds no readable packet header is as
        # unframeable as one that doesn't fit.
        frame = packet_at(buf, pos)
        if frame is None:
            skip_to = resync(buf, pos + 1)
            if skip_to == end:
                logger.warning(f"Could not frame the last {end - pos} bytes of the body")
            else:
                logger.debug(f"Skipped {skip_to - pos} unframeable bytes at {pos}")
            yield UnknownRecord(
                offset=pos,
                length=skip_to - pos,
                reason=UnknownReason.Unframed,
                data=buf[pos:skip_to],
                truncated=skip_to == end,
            )
            pos = skip_to
            continue

        raw = buf[frame.offset : frame.end]
        packet = raw[frame.prefix_len :]
        tag, timestamp_ms, header_len = read_packet_header(packet, last_timestamp_ms)
        last_timestamp_ms = timestamp_ms

        handler = handlers.get(tag)
        if handler is None:
            yield UnknownRecord(
                offset=pos,
                length=frame.length,
                tag=tag,
                timestamp_ms=timestamp_ms,
                reason=UnknownReason.Unhandled,
                data=raw,
            )
        else:
            ctx = RecordContext(
                offset=pos,
                length=frame.length,
                tag=tag,
                timestamp_ms=timestamp_ms,
                payload=packet[header_len:],
                version=version,
            )
            try:
                record = handler(ctx)
            except RecordError as e:
                logger.debug(
                    f"Packet {count} at {pos} (tag {tag}) is malformed: {e}; "
                    f"starts {raw[:30].hex()}"
                )
                record = UnknownRecord(
                    offset=pos,
                    length=frame.length,
                    tag=tag,
                    timestamp_ms=timestamp_ms,
                    reason=UnknownReason.Malformed,
                    data=raw,
                    error=str(e),
                )
            yield record
        pos = frame.end

    logger.debug(f"Read {count} records from {end} decompressed bytes")
