"""Decoder for War Thunder .wrpl replay files."""

__version__ = "0.1.0"

from .config import DecoderConfig
from .decode import DecodeResult, decode_replay, read_replay
from .errors import (
    BadMagic,
    ChatError,
    DecompressError,
    HeaderError,
    HeaderTooShort,
    MalformedChat,
    NoCandidateFound,
    NotACompressedStream,
    NoValidBodyFound,
    OffsetError,
    RecordError,
    WrplError,
)
from .header import HEADER_SIZE, WRPL_MAGIC, ReplayHeader, parse_header
from .models import (
    ChatMessage,
    Diagnostic,
    DiagnosticKind,
    PacketType,
    SessionMarker,
    UnknownReason,
    UnknownRecord,
)
from .scan import CandidateOffsets, body_range_for
from .decompress import decompress_body, decompress_first_valid
from .stream import iter_records
from .chat import ChatFraming, handle_chat
