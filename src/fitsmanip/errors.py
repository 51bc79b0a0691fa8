"""
Exception hierarchy for fitsmanip.

Every error raised by the codec, the keyword store and the pixel pipeline
derives from FITSError. Codec errors carry the 1-based index of the HDU
that triggered them so callers can report where a file went wrong.
"""

from typing import Optional


class FITSError(Exception):
    """Base class for all fitsmanip errors."""

    def __init__(self, message: str, hdu_index: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.hdu_index = hdu_index

    def __str__(self):
        if self.hdu_index is not None:
            return f"HDU {self.hdu_index}: {self.message}"
        return self.message


class FitsIOError(FITSError, OSError):
    """File cannot be opened, read, written or replaced."""


class MalformedHeaderError(FITSError, ValueError):
    """Card syntax violation, truncated block or inconsistent NAXIS."""


class UnsupportedBitpixError(MalformedHeaderError):
    """BITPIX outside {8, 16, 32, 64, -32, -64}."""


class UnsupportedExtensionError(FITSError):
    """Extension type the reader cannot decode."""


class BufferAllocationError(FITSError, MemoryError):
    """Pixel or column buffer cannot be allocated."""


class DimensionMismatchError(FITSError, ValueError):
    """Image shape does not fit the requested operation."""


class RangeUnderflowError(FITSError, ValueError):
    """Data range too small for normalisation or a transform."""


class HistogramOutOfBoundsError(FITSError, ValueError):
    """Histogram size outside [2, 65535]."""


class InvalidFractionError(FITSError, ValueError):
    """Histogram cut-off fractions outside [0, 1) or summing to 1 or more."""


class KeyNotFoundError(FITSError, KeyError):
    """Requested keyword is not in the keyword list."""

    def __str__(self):
        # KeyError would repr() the message otherwise
        return FITSError.__str__(self)


class ValidationError(FITSError, ValueError):
    """Card template cannot be normalised."""


class UnsupportedOperationError(FITSError, NotImplementedError):
    """Operation not available (table writing, unknown palette or transform)."""


class PayloadTypeError(FITSError, TypeError):
    """HDU payload requested does not match the HDU type tag."""


class OperationCancelledError(FITSError):
    """A parallel loop observed the runtime cancellation flag."""
