"""Locating the compressed event stream inside a replay file.

The header's rez_offset is only a hint (it points at the end-of-match results
in client replays and is zero in server replays), so we fall back to
searching for a zlib stream header after the fixed header."""

from __future__ import annotations

import logging
from typing import Iterator

from .errors import NoCandidateFound
from .header import HEADER_SIZE, ReplayHeader
from .models import BodyRange

logger = logging.getLogger(__name__)


ZLIB_SIGNATURES = (
    b"\x78\x01",  # no compression
    b"\x78\x5e",  # best speed, used by client replays
    b"\x78\x9c",  # default
    b"\x78\xda",  # best compression
)
_SECOND_BYTES = frozenset(sig[1] for sig in ZLIB_SIGNATURES)

DEFAULT_SCAN_WINDOW = 1 << 20


def has_zlib_signature(data: bytes, offset: int) -> bool:
    return (
        0 <= offset
        and offset + 1 < len(data)
        and data[offset] == 0x78
        and data[offset + 1] in _SECOND_BYTES
    )


class CandidateOffsets:
    """Offsets at which the compressed body might start, best guess first.

    Iteration is lazy and each new iterator starts over from the beginning,
    so a consumer can stop at the first offset that actually inflates."""

    def __init__(
        self,
        data: bytes,
        header: ReplayHeader,
        max_scan_window: int = DEFAULT_SCAN_WINDOW,
        scan_start: int = HEADER_SIZE,
    ):
        self.data = data
        self.header = header
        self.max_scan_window = max_scan_window
        self.scan_start = scan_start

    @property
    def declared(self) -> int:
        return self.header.rez_offset

    def declared_is_valid(self) -> bool:
        return self.declared >= self.scan_start and has_zlib_signature(
            self.data, self.declared
        )

    def __iter__(self) -> Iterator[int]:
        declared_ok = self.declared_is_valid()
        if declared_ok:
            logger.debug(f"Declared rez_offset {self.declared:#x} has a zlib header")
            yield self.declared
        else:
            logger.debug(
                f"Declared rez_offset {self.declared:#x} has no zlib header, scanning"
            )
        data = self.data
        limit = min(len(data), self.scan_start + self.max_scan_window)
        pos = self.scan_start
        while (pos := data.find(b"\x78", pos, limit)) != -1:
            if has_zlib_signature(data, pos) and not (
                declared_ok and pos == self.declared
            ):
                logger.debug(
                    f"Found zlib header {data[pos:pos + 2].hex()} at offset {pos:#x}"
                )
                yield pos
            pos += 1

    def first(self) -> int:
        for offset in self:
            return offset
        raise NoCandidateFound(
            f"No zlib header between {self.scan_start:#x} and "
            f"{min(len(self.data), self.scan_start + self.max_scan_window):#x}; "
            "is this a complete client replay?"
        )


def body_range_for(data: bytes, header: ReplayHeader, offset: int) -> BodyRange:
    """The best-effort extent of a body starting at `offset`.

    In client replays the results blob at rez_offset follows the event
    stream, so that is where the body ends when it lies further on."""
    end = len(data)
    if offset < header.rez_offset <= len(data):
        end = header.rez_offset
    return BodyRange(offset=offset, length=max(0, end - offset))
