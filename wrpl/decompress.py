"""Inflating the replay body, keeping whatever we can when it is damaged."""

from __future__ import annotations

import logging
import zlib
from typing import Callable, Iterable, List, NamedTuple, Optional, Tuple

from .errors import NoValidBodyFound, NotACompressedStream
from .models import BodyRange, DecodedBody
from .scan import has_zlib_signature

logger = logging.getLogger(__name__)


DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_CANDIDATES = 16


class _Inflated(NamedTuple):
    end: int
    """Position (relative to the body) just past the last byte consumed."""
    complete: bool
    error: Optional[str] = None


def _inflate_stream(
    view: memoryview, start: int, out: bytearray, chunk_size: int
) -> _Inflated:
    d = zlib.decompressobj()
    pos = start
    while pos < len(view) and not d.eof:
        chunk = view[pos : pos + chunk_size]
        checkpoint = d.copy()
        try:
            out += d.decompress(chunk)
        except zlib.error:
            # Replay this chunk a byte at a time to find exactly where it breaks
            d = checkpoint
            for i in range(len(chunk)):
                try:
                    out += d.decompress(chunk[i : i + 1])
                except zlib.error as e:
                    return _Inflated(end=pos + i, complete=False, error=str(e))
            # Accepted byte by byte after all; the chunk is consumed.
        pos += len(chunk)
    if d.eof:
        return _Inflated(end=pos - len(d.unused_data), complete=True)
    return _Inflated(end=pos, complete=False)


def decompress_body(
    data: bytes, body: BodyRange, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> DecodedBody:
    """Inflate the zlib stream(s) found at `body`.

    A stream that breaks part-way gives a truncated body holding everything
    decoded up to the failure. Streams that directly follow one another are
    concatenated. Raises NotACompressedStream if the first stream neither
    produces output nor reaches its end."""
    view = memoryview(data)[body.offset : body.end]
    out = bytearray()
    result = _inflate_stream(view, 0, out, chunk_size)
    if not out and not result.complete:
        raise NotACompressedStream(
            f"Nothing inflates at offset {body.offset:#x}"
            + (f": {result.error}" if result.error else "")
        )
    streams = 1
    while result.complete and has_zlib_signature(view, result.end):
        produced = len(out)
        following = _inflate_stream(view, result.end, out, chunk_size)
        if len(out) == produced and not following.complete:
            logger.debug(
                f"Bytes at {body.offset + result.end:#x} look like zlib but don't inflate"
            )
            break
        streams += 1
        result = following

    if result.complete:
        trailing = len(view) - result.end
        if trailing:
            logger.debug(f"{trailing} bytes follow the compressed body")
        error_offset = None
    else:
        error_offset = body.offset + result.end
        if result.error:
            logger.warning(
                f"Body stops inflating at offset {error_offset:#x} ({result.error}); "
                f"keeping {len(out)} bytes"
            )
        else:
            logger.warning(
                f"Compressed body ends early at {error_offset:#x}; keeping {len(out)} bytes"
            )
    return DecodedBody(
        data=bytes(out),
        truncated=not result.complete,
        source=body,
        consumed=result.end,
        streams=streams,
        error=result.error,
        error_offset=error_offset,
    )


def decompress_first_valid(
    data: bytes,
    candidates: Iterable[int],
    body_range: Callable[[int], BodyRange],
    max_candidates: int = DEFAULT_MAX_CANDIDATES,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Tuple[DecodedBody, List[int]]:
    """Try candidate offsets in order until one inflates.

    Returns the body and the offsets rejected on the way there."""
    rejected: List[int] = []
    for offset in candidates:
        if len(rejected) >= max_candidates:
            break
        try:
            return decompress_body(data, body_range(offset), chunk_size), rejected
        except NotACompressedStream as e:
            logger.debug(str(e))
            rejected.append(offset)
    raise NoValidBodyFound(
        f"None of the {len(rejected)} candidate offsets tried hold a compressed body"
    )
