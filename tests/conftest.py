import struct
import zlib
from typing import Optional

import pytest

from wrpl.header import WRPL_MAGIC, Difficulty, ReplayHeader


HEADER_DEFAULTS = dict(
    magic=WRPL_MAGIC,
    version=101286,
    level="levels/avg_egypt_sinai.bin",
    level_settings="gamedata/missions/cta/tanks/sinai_sands/sinai_02_conq1.blk",
    battle_type="sinai_02_Conq1",
    environment="noon",
    visibility="thin_clouds",
    rez_offset=0,
    difficulty=Difficulty(unknown_nibble=0, difficulty_value=0),
    session_type=0,
    session_id=335055458235795646,
    mset_size=8062,
    loc_name="missions/_Conq1;sinai_02/name",
    start_time=1746008224,
    time_limit=25,
    score_limit=16000,
    battle_class="air_ground_Conq",
    battle_kill_streak="",
)


def make_header(**fields) -> bytes:
    """A packed replay header, with realistic defaults for anything not given."""
    return ReplayHeader(**{**HEADER_DEFAULTS, **fields}).pack()


def encode_size(size: int) -> bytes:
    if size < 0x40:
        return bytes([0x80 | size])
    if size < 0x4000:
        return (size ^ 0x4000).to_bytes(2, "big")
    if size < 0x200000:
        return (size ^ 0x200000).to_bytes(3, "big")
    if size < 0x10000000:
        return (size ^ 0x10000000).to_bytes(4, "big")
    return b"\x00" + struct.pack("<I", size)


def make_packet(tag: int, payload: bytes, timestamp_ms: Optional[int] = None) -> bytes:
    """A size-prefixed packet. Without a timestamp the packet reuses the previous one."""
    if timestamp_ms is None:
        packet = bytes([tag | 0x10]) + payload
    else:
        packet = bytes([tag]) + struct.pack("<I", timestamp_ms) + payload
    return encode_size(len(packet)) + packet


def chat_payload(
    sender: str,
    message: str,
    channel: Optional[int] = None,
    enemy: Optional[int] = None,
    flag: int = 0,
) -> bytes:
    s, m = sender.encode(), message.encode()
    out = bytes([flag, len(s)]) + s + bytes([len(m)]) + m
    if channel is not None:
        out += bytes([channel])
        if enemy is not None:
            out += bytes([enemy])
    return out


def make_chat(sender: str, message: str, timestamp_ms: Optional[int] = 1000, **kw) -> bytes:
    return make_packet(3, chat_payload(sender, message, **kw), timestamp_ms)


def make_replay(body: bytes, gap: bytes = b"\0" * 64, trailer: bytes = b"", **header) -> bytes:
    """Header, some filler, the zlib-compressed body, then whatever follows it."""
    return make_header(**header) + gap + zlib.compress(body) + trailer


@pytest.fixture
def sample_body() -> bytes:
    return b"".join(
        [
            make_packet(1, b"", 0),
            make_chat("kiTmalZ", "TEST", 1500),
            make_packet(2, b"\x01\x02\x03\x04", 1600),
            make_chat("Gyaru-Destroyer", "yo enemy team", None, channel=1, enemy=0),
            make_packet(6, b"\xaa" * 100, 2000),
            make_chat("AceLavrinenko", "Attack the D point!", 2500, channel=0, enemy=0),
            make_packet(0, b"", None),
        ]
    )


@pytest.fixture
def sample_replay(sample_body) -> bytes:
    return make_replay(sample_body)
