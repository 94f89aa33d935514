"""Decoding a whole replay: header, body location, decompression and records."""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from .config import DecoderConfig
from .decompress import decompress_body, decompress_first_valid
from .errors import DecompressError, OffsetError
from .header import HEADER_SIZE, ReplayHeader, parse_header
from .models import (
    BodyRange,
    ChatMessage,
    DecodedBody,
    Diagnostic,
    DiagnosticKind,
    Record,
    UnknownReason,
    UnknownRecord,
)
from .scan import CandidateOffsets, body_range_for
from .stream import default_handlers, iter_records

logger = logging.getLogger(__name__)


class DecodeResult(BaseModel):
    """Everything decoded from one replay file."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    header: ReplayHeader
    records: Tuple[Record, ...] = ()
    diagnostics: Tuple[Diagnostic, ...] = ()
    body_offset: Optional[int] = None
    """File offset the body was decoded from; None if no body was found."""
    body_size: int = 0
    """Size of the body after decompression."""
    body_truncated: bool = False

    @property
    def chat_messages(self) -> Tuple[ChatMessage, ...]:
        return tuple(r for r in self.records if isinstance(r, ChatMessage))

    @property
    def unknown_records(self) -> Tuple[UnknownRecord, ...]:
        return tuple(r for r in self.records if isinstance(r, UnknownRecord))

    def has_diagnostic(self, kind: DiagnosticKind) -> bool:
        return any(d.kind == kind for d in self.diagnostics)


def read_replay(replay: Union[Path, BinaryIO]) -> bytes:
    """Read an entire replay file into memory."""
    if isinstance(replay, Path):
        replay = replay.open("rb")
    with replay:
        return replay.read()


def summarize_records(records: Iterable[Record]) -> List[Diagnostic]:
    """Diagnostics describing the parts of the stream we couldn't decode."""
    by_tag: Counter = Counter()
    unframed_bytes = 0
    unframed_runs = 0
    diagnostics: List[Diagnostic] = []
    for record in records:
        if not isinstance(record, UnknownRecord):
            continue
        if record.reason == UnknownReason.Unframed:
            if record.truncated:
                diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.TrailingTruncated,
                        message=f"Last {record.length} bytes of the body don't form a record",
                        offset=record.offset,
                        count=record.length,
                    )
                )
            else:
                unframed_runs += 1
                unframed_bytes += record.length
        else:
            by_tag[record.reason, record.tag] += 1
    if unframed_runs:
        diagnostics.append(
            Diagnostic(
                kind=DiagnosticKind.UnframedBytes,
                message=f"Skipped {unframed_bytes} unframeable bytes in {unframed_runs} runs",
                count=unframed_bytes,
            )
        )
    for (reason, tag), count in sorted(
        by_tag.items(), key=lambda item: (item[0][0].value, item[0][1] or -1)
    ):
        if reason == UnknownReason.Unhandled:
            kind = DiagnosticKind.UnknownRecords
            message = f"{count} records with unhandled tag {tag}"
        else:
            kind = DiagnosticKind.MalformedRecords
            message = f"{count} malformed records with tag {tag}"
        diagnostics.append(Diagnostic(kind=kind, message=message, tag=tag, count=count))
    return diagnostics


def _locate_body(
    data: bytes,
    header: ReplayHeader,
    config: DecoderConfig,
    diagnostics: List[Diagnostic],
) -> DecodedBody:
    candidates = CandidateOffsets(data, header, max_scan_window=config.max_scan_window)
    first = candidates.first()
    if first != header.rez_offset:
        diagnostics.append(
            Diagnostic(
                kind=DiagnosticKind.OffsetFallback,
                message=(
                    f"Declared rez_offset {header.rez_offset:#x} is not a compressed "
                    f"stream; found one at {first:#x} instead"
                ),
                offset=first,
            )
        )
    body, rejected = decompress_first_valid(
        data,
        candidates,
        lambda offset: body_range_for(data, header, offset),
        max_candidates=config.max_candidates,
        chunk_size=config.chunk_size,
    )
    for offset in rejected:
        diagnostics.append(
            Diagnostic(
                kind=DiagnosticKind.CandidateRejected,
                message=f"Nothing inflates at candidate offset {offset:#x}",
                offset=offset,
            )
        )
    return body


def load_body(
    data: bytes,
    header: ReplayHeader,
    config: DecoderConfig,
    diagnostics: List[Diagnostic],
    offset: Optional[int] = None,
    raw: bool = False,
) -> DecodedBody:
    """Find and inflate the body, or take it as-is from `offset` when `raw`.

    Raises OffsetError or DecompressError if there is no usable body."""
    if raw:
        start = HEADER_SIZE if offset is None else offset
        logger.info(f"Reading raw packet data from offset {start:#x}")
        return DecodedBody(
            data=data[start:],
            source=BodyRange(offset=start, length=max(0, len(data) - start)),
        )
    if offset is not None:
        logger.info(f"Using provided offset {offset:#x} ({offset})")
        body = decompress_body(data, body_range_for(data, header, offset), config.chunk_size)
    else:
        body = _locate_body(data, header, config, diagnostics)
    if body.truncated:
        diagnostics.append(
            Diagnostic(
                kind=DiagnosticKind.BodyTruncated,
                message=body.error or "Compressed stream ended before its end marker",
                offset=body.error_offset,
            )
        )
    return body


def decode_replay(
    data: bytes,
    config: Optional[DecoderConfig] = None,
    *,
    offset: Optional[int] = None,
    raw: bool = False,
) -> DecodeResult:
    """Decode a replay file held in memory.

    Raises HeaderError when the input isn't a replay at all. Every other
    problem is recovered from and reported in the result's diagnostics."""
    if config is None:
        config = DecoderConfig()
    header, diagnostics = parse_header(data, magic=config.expected_magic)
    try:
        body = load_body(data, header, config, diagnostics, offset=offset, raw=raw)
    except (OffsetError, DecompressError) as e:
        logger.warning(f"No event stream decoded: {e}")
        diagnostics.append(Diagnostic(kind=DiagnosticKind.NoBody, message=str(e)))
        return DecodeResult(header=header, diagnostics=tuple(diagnostics))

    records = tuple(
        iter_records(
            body,
            version=header.version,
            handlers=default_handlers(config.chat_framing),
        )
    )
    diagnostics.extend(summarize_records(records))
    result = DecodeResult(
        header=header,
        records=records,
        diagnostics=tuple(diagnostics),
        body_offset=body.source.offset if body.source is not None else None,
        body_size=len(body.data),
        body_truncated=body.truncated,
    )
    logger.info(
        f"Decoded {len(records)} records ({len(result.chat_messages)} chat messages) "
        f"from {result.body_size} bytes"
    )
    return result
