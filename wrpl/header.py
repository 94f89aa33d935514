"""Fixed-layout .wrpl header parsing"""

from __future__ import annotations

import logging
import struct
from typing import List, Tuple, Union

from pydantic import BaseModel, ConfigDict

from .errors import BadMagic, HeaderTooShort
from .models import Diagnostic, DiagnosticKind

logger = logging.getLogger(__name__)


WRPL_MAGIC = 0x1000ACE5
"""Bytes E5 AC 00 10 read as a little-endian u32."""

# Offsets and widths are a compatibility contract; the x runs are padding.
HEADER_FORMAT = struct.Struct(
    "<"
    "I"  # magic
    "I"  # version
    "128s"  # level
    "260s"  # level_settings
    "128s"  # battle_type
    "128s"  # environment
    "32s"  # visibility
    "I"  # rez_offset
    "B"  # difficulty
    "35x"
    "I"  # session_type
    "4x"
    "Q"  # session_id
    "4x"
    "I"  # mset_size
    "32x"
    "128s"  # loc_name
    "I"  # start_time
    "I"  # time_limit
    "I"  # score_limit
    "48x"
    "128s"  # battle_class
    "128s"  # battle_kill_streak
)
HEADER_SIZE = HEADER_FORMAT.size

_FIELDS = (
    "magic",
    "version",
    "level",
    "level_settings",
    "battle_type",
    "environment",
    "visibility",
    "rez_offset",
    "difficulty",
    "session_type",
    "session_id",
    "mset_size",
    "loc_name",
    "start_time",
    "time_limit",
    "score_limit",
    "battle_class",
    "battle_kill_streak",
)

Text = Union[str, bytes]
"""ASCII header text, or the raw bytes when it isn't ASCII."""


class Difficulty(BaseModel):
    model_config = ConfigDict(frozen=True)

    unknown_nibble: int
    difficulty_value: int

    @classmethod
    def from_byte(cls, byte: int) -> Difficulty:
        return cls(unknown_nibble=(byte >> 4) & 0x0F, difficulty_value=byte & 0x0F)

    def to_byte(self) -> int:
        return (self.unknown_nibble << 4) | self.difficulty_value


class ReplayHeader(BaseModel):
    """The header of a replay file. Same layout for client and server replays."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    magic: int
    version: int
    """Replay format version; not necessarily the game version."""
    level: Text
    """The .bin file of the level."""
    level_settings: Text
    """The mission .blk file."""
    battle_type: Text
    environment: Text
    """Time of day."""
    visibility: Text
    """Cloud conditions."""
    rez_offset: int
    """Where the end-of-match results start. Only a hint; 0 in server replays."""
    difficulty: Difficulty
    session_type: int
    session_id: int
    mset_size: int
    loc_name: Text
    start_time: int
    """Seconds since the epoch."""
    time_limit: int
    """Minutes."""
    score_limit: int
    battle_class: Text
    battle_kill_streak: Text
    """Empty below the BR where kill streak rewards unlock."""

    @property
    def session_id_hex(self) -> str:
        return f"{self.session_id:x}"

    def pack(self) -> bytes:
        """Re-encode this header into its fixed binary layout."""
        values = []
        for name in _FIELDS:
            value = getattr(self, name)
            if isinstance(value, str):
                value = value.encode("ascii")
            elif isinstance(value, Difficulty):
                value = value.to_byte()
            values.append(value)
        return HEADER_FORMAT.pack(*values)


def _text(name: str, raw: bytes, diagnostics: List[Diagnostic]) -> Text:
    raw = raw.split(b"\0", 1)[0]
    try:
        return raw.decode("ascii")
    except UnicodeDecodeError:
        logger.debug(f"Header field {name} is not ASCII: {raw!r}")
        diagnostics.append(
            Diagnostic(
                kind=DiagnosticKind.HeaderText,
                message=f"Header field {name} contains non-ASCII bytes; kept raw",
            )
        )
        return raw


def parse_header(
    data: bytes, magic: int = WRPL_MAGIC
) -> Tuple[ReplayHeader, List[Diagnostic]]:
    """Parse the fixed-size header at the start of a replay.

    Only the magic number is validated: corrupt text fields are common, so
    they are passed through as raw bytes (with a diagnostic) rather than
    rejected."""
    if len(data) < HEADER_SIZE:
        raise HeaderTooShort(
            f"Need {HEADER_SIZE} bytes for a replay header, got {len(data)}"
        )
    values = dict(zip(_FIELDS, HEADER_FORMAT.unpack_from(data)))
    if values["magic"] != magic:
        raise BadMagic(
            f"Bad magic {values['magic']:#010x}, expected {magic:#010x}"
        )
    diagnostics: List[Diagnostic] = []
    for name, value in values.items():
        if isinstance(value, bytes):
            values[name] = _text(name, value, diagnostics)
    values["difficulty"] = Difficulty.from_byte(values["difficulty"])
    header = ReplayHeader(**values)
    logger.debug(
        f"Parsed header: version {header.version}, level {header.level!r}, "
        f"rez_offset {header.rez_offset:#x}"
    )
    return header, diagnostics
