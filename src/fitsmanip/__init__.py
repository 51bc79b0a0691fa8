"""
fitsmanip: FITS file manipulation with PyTorch working buffers

This module reads and writes FITS files, edits header keywords and runs
the image pipeline (statistics, normalisation, histogram operations,
intensity transforms, palettes and median filtering) on float64 tensors.
"""

from typing import Optional

from .core import FITSDataType, FITSDataTypeHandler
from .errors import (BufferAllocationError, DimensionMismatchError, FITSError, FitsIOError,
                     HistogramOutOfBoundsError, InvalidFractionError, KeyNotFoundError,
                     MalformedHeaderError, OperationCancelledError, PayloadTypeError,
                     RangeUnderflowError, UnsupportedBitpixError, UnsupportedExtensionError,
                     UnsupportedOperationError, ValidationError)
from .fileops import file_is_absent, make_filename
from .fits_reader import read, read_all
from .fits_writer import blocked_signals, rewrite, write
from .frame import to_tensor_frame
from .hdu import HDU, FitsFile, HDUType
from .header_parser import HeaderParser, KeyClass, format_card, get_keyclass, parse_template
from .histogram import Histogram, dbl2histogram, dbl_histcutoff, dbl_histeq
from .image import DoubleImage, FitsImage, image2double
from .keywords import KeywordList, Record
from .logging import log_errors, log_performance, logger, set_log_level
from .median import Mediator, calc_median, get_median, opt_median, quick_select
from .palette import Palette, convert2palette, to_ppm
from .runtime import Runtime, RuntimeConfig, configure_for_environment, get_runtime, set_runtime
from .table import ColumnType, FitsTable, TableColumn
from .transforms import ImgStat, IntensityTransform, get_imgstat, mktransform, normalize_dbl

# Auto-configure the runtime on import
configure_for_environment()

__version__ = "0.1.0"
__all__ = [
    # File I/O
    "open", "read", "read_all", "write", "rewrite", "blocked_signals",
    "file_is_absent", "make_filename",
    # Containers
    "FitsFile", "HDU", "HDUType", "KeywordList", "Record", "KeyClass",
    "HeaderParser", "format_card", "parse_template", "get_keyclass",
    # Images
    "FitsImage", "DoubleImage", "image2double", "FITSDataType", "FITSDataTypeHandler",
    # Pipeline
    "ImgStat", "get_imgstat", "normalize_dbl", "IntensityTransform", "mktransform",
    "Histogram", "dbl2histogram", "dbl_histeq", "dbl_histcutoff",
    "Palette", "convert2palette", "to_ppm",
    "Mediator", "calc_median", "get_median", "opt_median", "quick_select",
    # Tables
    "FitsTable", "TableColumn", "ColumnType", "to_tensor_frame",
    # Runtime
    "Runtime", "RuntimeConfig", "get_runtime", "set_runtime", "configure_for_environment",
    # Logging
    "logger", "set_log_level", "log_errors", "log_performance",
    # Errors
    "FITSError", "FitsIOError", "MalformedHeaderError", "UnsupportedBitpixError",
    "UnsupportedExtensionError", "BufferAllocationError", "DimensionMismatchError",
    "RangeUnderflowError", "HistogramOutOfBoundsError", "InvalidFractionError",
    "KeyNotFoundError", "ValidationError", "UnsupportedOperationError", "PayloadTypeError",
    "OperationCancelledError",
]


def open(path, read_data: bool = True, strict: bool = False) -> FitsFile:
    """
    Open a FITS file.

    Args:
        path: File path
        read_data: Read every HDU right away
        strict: Raise on the first malformed HDU instead of keeping it as UNKNOWN

    Returns:
        FitsFile; without read_data, call read_all() on it to load the HDUs
    """
    fits = FitsFile.open(path)
    if read_data:
        read_all(fits, strict=strict)
    return fits
