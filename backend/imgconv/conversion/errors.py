"""Conversion error taxonomy."""


class ConversionError(Exception):
    """Base class for all conversion failures."""

    kind = "conversion_failed"


class InvalidRequestError(ConversionError, ValueError):
    kind = "invalid_request"


class DecodeError(ConversionError):
    """Source bytes are unreadable or unsupported (including HEIC fallback exhaustion)."""

    kind = "decode_failed"


class EncodeError(ConversionError):
    """The codec rejected the requested format/quality/geometry combination."""

    kind = "encode_failed"


class BatchError(ConversionError):
    """Structural batch problem; aborts the whole call."""

    kind = "invalid_batch"


class EmptyBatchError(BatchError):
    pass


class BatchLimitError(BatchError):
    def __init__(self, count: int, limit: int):
        super().__init__(f"Max {limit} images per upload, got {count}")
        self.count = count
        self.limit = limit


class ConversionCancelled(Exception):
    """Raised when the caller's cancel event is set mid-conversion."""
