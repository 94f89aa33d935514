"""Exceptions raised while decoding replays."""


class WrplError(Exception):
    pass


class HeaderError(WrplError):
    """The fixed header could not be read; nothing else can be decoded."""


class HeaderTooShort(HeaderError):
    pass


class BadMagic(HeaderError):
    pass


class OffsetError(WrplError):
    pass


class NoCandidateFound(OffsetError):
    """No compressed-stream signature found where the body could start."""


class DecompressError(WrplError):
    pass


class NotACompressedStream(DecompressError):
    """Candidate offset does not start a stream we can inflate anything from."""


class NoValidBodyFound(DecompressError):
    pass


class RecordError(WrplError):
    """A single record could not be decoded. Never escapes the stream parser."""


class FramingError(RecordError):
    pass


class ChatError(RecordError):
    pass


class MalformedChat(ChatError):
    pass
