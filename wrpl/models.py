"""Data types shared by the decoding stages."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import Annotated, Literal


class PacketType(IntEnum):
    """Packet tags seen in the decompressed event stream."""

    EndMarker = 0
    StartMarker = 1
    AircraftSmall = 2
    Chat = 3
    MPI = 4
    NextSegment = 5
    ECS = 6
    Snapshot = 7
    ReplayHeaderInfo = 8


KNOWN_TAGS = frozenset(int(t) for t in PacketType)


class DiagnosticKind(str, Enum):
    HeaderText = "header_text"
    OffsetFallback = "offset_fallback"
    CandidateRejected = "candidate_rejected"
    NoBody = "no_body"
    BodyTruncated = "body_truncated"
    UnknownRecords = "unknown_records"
    MalformedRecords = "malformed_records"
    UnframedBytes = "unframed_bytes"
    TrailingTruncated = "trailing_truncated"


class Diagnostic(BaseModel):
    """A recovered anomaly, attached to an otherwise successful decode."""

    model_config = ConfigDict(frozen=True)

    kind: DiagnosticKind
    message: str
    offset: Optional[int] = None
    tag: Optional[int] = None
    count: Optional[int] = None


@dataclass(frozen=True)
class BodyRange:
    """Where the compressed body starts in the file, and where it (probably) ends."""

    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass(frozen=True)
class DecodedBody:
    data: bytes
    truncated: bool = False
    source: Optional[BodyRange] = None
    consumed: int = 0
    """Number of compressed bytes consumed from `source`."""
    streams: int = 1
    error: Optional[str] = None
    error_offset: Optional[int] = None
    """Absolute file offset of the byte that failed to inflate."""


class UnknownReason(str, Enum):
    Unhandled = "unhandled"
    """Framed correctly, but nothing knows how to read this tag yet."""
    Malformed = "malformed"
    """Framed correctly, but the payload was rejected."""
    Unframed = "unframed"
    """Bytes skipped while looking for the next record boundary."""


class RecordBase(BaseModel):
    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    offset: int
    """Byte offset within the decompressed body."""
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length


class ChatMessage(RecordBase):
    kind: Literal["chat"] = "chat"
    tag: int = int(PacketType.Chat)
    timestamp_ms: int
    sender: str
    message: str
    channel_type: Optional[int] = None
    """Believed to select all/team/squad chat."""
    is_enemy: Optional[int] = None


class SessionMarker(RecordBase):
    kind: Literal["session_marker"] = "session_marker"
    tag: int
    marker: PacketType
    timestamp_ms: int
    payload: bytes = b""


class UnknownRecord(RecordBase):
    kind: Literal["unknown"] = "unknown"
    tag: Optional[int] = None
    timestamp_ms: Optional[int] = None
    reason: UnknownReason
    data: bytes
    """The full raw span, size prefix included, for later reprocessing."""
    truncated: bool = False
    error: Optional[str] = None


Record = Annotated[
    Union[ChatMessage, SessionMarker, UnknownRecord], Field(discriminator="kind")
]


@dataclass(frozen=True)
class RecordContext:
    """One framed packet, as seen by a record handler."""

    offset: int
    length: int
    """Span of the whole packet, size prefix included."""
    tag: int
    timestamp_ms: int
    payload: bytes
    """Packet bytes after the tag and timestamp."""
    version: int
    """Replay format version from the header."""
