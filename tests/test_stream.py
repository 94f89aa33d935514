import random

import pytest

from wrpl.chat import ChatFraming
from wrpl.errors import FramingError
from wrpl.models import (
    ChatMessage,
    DecodedBody,
    PacketType,
    SessionMarker,
    UnknownReason,
    UnknownRecord,
)
from wrpl.stream import (
    default_handlers,
    iter_records,
    read_packet_header,
    read_size_prefix,
    resync,
)
from tests.conftest import chat_payload, encode_size, make_chat, make_packet


def records_of(data: bytes, **kw):
    return list(iter_records(DecodedBody(data=data), **kw))


def assert_tiles(records, data: bytes):
    pos = 0
    for record in records:
        assert record.offset == pos
        assert record.length > 0
        pos = record.end
    assert pos == len(data)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (b"\x80", (0, 1)),
        (b"\x85", (5, 1)),
        (b"\xbf", (0x3F, 1)),
        (b"\x40\x40", (0x40, 2)),
        (b"\x7f\xff", (0x3FFF, 2)),
        (b"\x20\x40\x00", (0x4000, 3)),
        (b"\x10\x20\x00\x00", (0x200000, 4)),
        (b"\x00\x00\x00\x00\x10", (0x10000000, 5)),
        (b"\x0f\x01\x00\x00\x00", (1, 5)),
    ],
)
def test_size_prefix(raw, expected):
    assert read_size_prefix(raw + b"trailing", 0) == expected


@pytest.mark.parametrize("size", [0, 1, 0x3F, 0x40, 0x3FFF, 0x4000, 0x1FFFFF, 0x200000, 0x10000000])
def test_size_prefix_matches_encoder(size):
    raw = encode_size(size)
    assert read_size_prefix(raw, 0) == (size, len(raw))


@pytest.mark.parametrize("raw", [b"", b"\xc0", b"\xff", b"\x40", b"\x20\x00", b"\x00\x01\x02"])
def test_bad_size_prefix(raw):
    with pytest.raises(FramingError):
        read_size_prefix(raw, 0)


def test_packet_header():
    assert read_packet_header(b"\x03\xe8\x03\x00\x00rest", 7) == (3, 1000, 5)
    assert read_packet_header(b"\x13rest", 1000) == (3, 1000, 1)
    with pytest.raises(FramingError):
        read_packet_header(b"\x03\x01\x02", 0)
    with pytest.raises(FramingError):
        read_packet_header(b"", 0)


def test_sample_body(sample_body):
    records = records_of(sample_body)
    assert_tiles(records, sample_body)
    assert [r.kind for r in records] == [
        "session_marker",
        "chat",
        "unknown",
        "chat",
        "unknown",
        "chat",
        "session_marker",
    ]
    start, chat1, aircraft, chat2, ecs, chat3, end = records

    assert start.marker == PacketType.StartMarker
    assert end.marker == PacketType.EndMarker
    assert end.timestamp_ms == 2500

    assert (chat1.sender, chat1.message, chat1.timestamp_ms) == ("kiTmalZ", "TEST", 1500)
    assert chat1.channel_type is None and chat1.is_enemy is None
    assert chat2.sender == "Gyaru-Destroyer"
    assert chat2.timestamp_ms == 1600  # inherited from the packet before it
    assert (chat2.channel_type, chat2.is_enemy) == (1, 0)
    assert chat3.message == "Attack the D point!"

    assert aircraft.reason == UnknownReason.Unhandled
    assert aircraft.tag == 2 and aircraft.timestamp_ms == 1600
    assert aircraft.data == sample_body[aircraft.offset : aircraft.end]
    assert ecs.tag == 6
    assert len(ecs.data) == ecs.length == 2 + 5 + 100


@pytest.mark.parametrize(
    "tail",
    [
        b"\x9f\x01\x02\x03\x04",
        b"\x84\xc7\x07\x94\xc8",  # fits as a frame, but the tag is unknown
        b"\x81\xd6\x74\x56\x8e",
        b"\x84\x03\x01\x02\x03",  # known tag, but no room for its timestamp
        b"\x80\x80\x80\x80\x80",  # empty frames
    ],
)
def test_chat_then_truncated_garbage(tail):
    data = make_chat("Pilot1", "gg") + tail
    records = records_of(data)
    assert_tiles(records, data)
    chat, garbage = records
    assert isinstance(chat, ChatMessage)
    assert (chat.sender, chat.message) == ("Pilot1", "gg")
    assert isinstance(garbage, UnknownRecord)
    assert garbage.reason == UnknownReason.Unframed
    assert garbage.length == 5
    assert garbage.truncated


# A packet short enough to fit in five bytes has no room for a timestamp, so
# its tag byte must have the reused-timestamp bit set. Leaving those tag bytes
# out guarantees that no packet starts in the tail.
TAIL_BYTES = [b for b in range(256) if not 0x10 <= b <= 0x18]


@pytest.mark.parametrize("seed", range(200))
def test_chat_then_random_tail(seed):
    rng = random.Random(seed)
    tail = bytes(rng.choice(TAIL_BYTES) for _ in range(5))
    data = make_chat("Pilot1", "gg") + tail
    records = records_of(data)
    assert [(r.kind, r.length, getattr(r, "truncated", None)) for r in records] == [
        ("chat", len(data) - 5, None),
        ("unknown", 5, True),
    ]
    assert records[1].data == tail


def test_garbage_between_packets_is_skipped():
    data = (
        make_chat("one", "first", 100)
        + b"\xff\xff\xff"
        + make_chat("two", "second", 200)
        + make_packet(0, b"", None)
    )
    records = records_of(data)
    assert_tiles(records, data)
    assert [r.kind for r in records] == ["chat", "unknown", "chat", "session_marker"]
    skipped = records[1]
    assert skipped.reason == UnknownReason.Unframed
    assert skipped.data == b"\xff\xff\xff"
    assert not skipped.truncated
    assert records[2].message == "second"


def test_bad_sender_length_only_loses_that_packet():
    good = make_chat("before", "a", 100)
    bad = bytearray(make_chat("broken", "b", 200))
    # size prefix, tag, timestamp, flag byte, then the sender length
    bad[1 + 5 + 1] = 0xFF
    after = make_chat("after", "c", 300)
    data = good + bytes(bad) + after
    records = records_of(data)
    assert_tiles(records, data)
    assert [r.kind for r in records] == ["chat", "unknown", "chat"]
    broken = records[1]
    assert broken.reason == UnknownReason.Malformed
    assert (broken.offset, broken.length) == (len(good), len(bad))
    assert broken.tag == PacketType.Chat
    assert broken.timestamp_ms == 200
    assert broken.error
    assert records[2].sender == "after"
    assert records[2].timestamp_ms == 300


@pytest.mark.parametrize("value", [0x00, 0x7F, 0xFF])
@pytest.mark.parametrize("index", range(6, 16))
def test_corrupt_payload_byte_only_affects_its_packet(index, value):
    good = make_chat("before", "a", 100)
    bad = bytearray(make_chat("broken", "b", 200))
    # Bytes 6..15 are the payload: after the size prefix, tag and timestamp
    assert len(bad) == 16
    bad[index] = value
    after = make_chat("after", "c", 300)
    data = good + bytes(bad) + after
    records = records_of(data)
    assert_tiles(records, data)
    assert len(records) == 3
    assert records[0].sender == "before"
    assert (records[1].offset, records[1].length) == (len(good), len(bad))
    assert records[1].kind in ("chat", "unknown")
    assert records[1].timestamp_ms == 200
    assert (records[2].sender, records[2].timestamp_ms) == ("after", 300)


def test_invalid_utf8_is_malformed():
    payload = b"\x00\x02\xff\xfe\x02hi"
    data = make_packet(3, payload, 10) + make_chat("ok", "fine", 20)
    records = records_of(data)
    assert [r.kind for r in records] == ["unknown", "chat"]
    assert records[0].reason == UnknownReason.Malformed
    assert "UTF-8" in records[0].error


def test_timestamp_is_carried_over():
    data = (
        make_packet(7, b"\x00", 5000)
        + make_packet(4, b"\x00\x00", None)
        + make_chat("x", "y", None)
    )
    records = records_of(data)
    assert [r.timestamp_ms for r in records] == [5000, 5000, 5000]


def test_short_timestamp_is_skipped():
    # The tag says a timestamp follows, but the packet is only 3 bytes
    data = encode_size(3) + b"\x03\x01\x02" + make_chat("x", "y", None)
    records = records_of(data)
    assert_tiles(records, data)
    assert [r.kind for r in records] == ["unknown", "chat"]
    assert records[0].reason == UnknownReason.Unframed
    assert records[0].length == 4
    assert not records[0].truncated
    # The broken packet's timestamp is not carried forward
    assert records[1].timestamp_ms == 0


def test_zero_size_packet():
    data = b"\x80" + make_chat("x", "y")
    records = records_of(data)
    assert_tiles(records, data)
    assert records[0].reason == UnknownReason.Unframed
    assert records[0].tag is None
    assert records[1].kind == "chat"


def test_unknown_tag_is_skipped():
    unknown = make_packet(0x2A, b"payload", 99)
    data = unknown + make_chat("x", "y", 100)
    records = records_of(data)
    assert_tiles(records, data)
    assert [r.kind for r in records] == ["unknown", "chat"]
    assert records[0].reason == UnknownReason.Unframed
    assert records[0].data == unknown
    assert records[1].timestamp_ms == 100


def test_known_tag_without_handler_is_unhandled():
    data = make_packet(PacketType.Snapshot, b"payload", 99)
    (record,) = records_of(data)
    assert record.reason == UnknownReason.Unhandled
    assert record.tag == PacketType.Snapshot
    assert record.timestamp_ms == 99
    assert record.data == data


@pytest.mark.parametrize("data", [b"\x80", b"\x13"])
def test_one_trailing_byte(data):
    (record,) = records_of(data)
    assert record.reason == UnknownReason.Unframed
    assert record.truncated
    assert record.data == data


def test_empty_body():
    assert records_of(b"") == []


def test_custom_handlers():
    def aircraft(ctx):
        return SessionMarker(
            offset=ctx.offset,
            length=ctx.length,
            tag=ctx.tag,
            marker=PacketType.AircraftSmall,
            timestamp_ms=ctx.timestamp_ms,
            payload=ctx.payload,
        )

    data = make_packet(2, b"\x01\x02", 10) + make_chat("x", "y", 20)
    records = records_of(data, handlers={2: aircraft})
    assert records[0].kind == "session_marker"
    assert records[0].payload == b"\x01\x02"
    # chat has no handler in this table
    assert records[1].reason == UnknownReason.Unhandled


def test_chat_framing_override():
    payload = b"\x00" + b"nul\x00framed\x00" + b"\x02\x01"
    data = make_packet(3, payload, 10)
    (default,) = records_of(data)
    assert default.kind == "unknown"
    (chat,) = records_of(data, handlers=default_handlers(ChatFraming.NulTerminated))
    assert (chat.sender, chat.message) == ("nul", "framed")
    assert (chat.channel_type, chat.is_enemy) == (2, 1)


def test_resync_finds_next_packet():
    packet = make_chat("x", "y", 10) + make_packet(0, b"", None)
    data = b"\xff\xc1" + packet
    assert resync(data, 0) == 2
    assert resync(b"\xff" * 10, 0) == 10


@pytest.mark.parametrize("seed", range(8))
def test_random_bodies_are_fully_covered(seed):
    rng = random.Random(seed)
    parts = []
    for _ in range(40):
        choice = rng.random()
        if choice < 0.4:
            parts.append(make_chat("p", "m" * rng.randrange(10), rng.randrange(1 << 20)))
        elif choice < 0.7:
            size = rng.randrange(1, 80)
            parts.append(bytes(rng.getrandbits(8) for _ in range(size)))
        else:
            parts.append(make_packet(rng.randrange(9), b"\x00" * rng.randrange(70), None))
    data = b"".join(parts)
    records = records_of(data)
    assert_tiles(records, data)
    for record in records:
        if isinstance(record, UnknownRecord):
            assert record.data == data[record.offset : record.end]
