"""
Core FITS data type support.

Maps BITPIX codes to the element types used for in-memory images and to
the big-endian storage types used on disk, and holds the block and card
constants of the format.
"""

from enum import Enum
from typing import Optional

import numpy as np
import torch

from .errors import UnsupportedBitpixError

BLOCK_SIZE = 2880
CARD_SIZE = 80
KEY_SIZE = 8
CARDS_PER_BLOCK = BLOCK_SIZE // CARD_SIZE

DBL_EPSILON = float(np.finfo(np.float64).eps)
FLT_EPSILON = float(np.finfo(np.float32).eps)
FLT_MAX = float(np.finfo(np.float32).max)


class FITSDataType(Enum):
    """In-memory element types of image pixels."""
    UINT8 = (8, np.uint8, '>u1', torch.uint8)
    UINT16 = (16, np.uint16, '>i2', None)
    UINT32 = (32, np.uint32, '>i4', None)
    UINT64 = (64, np.uint64, '>i8', None)
    FLOAT32 = (-32, np.float32, '>f4', torch.float32)
    FLOAT64 = (-64, np.float64, '>f8', torch.float64)

    @property
    def bitpix(self) -> int:
        return self.value[0]

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(self.value[1])

    @property
    def storage_dtype(self) -> np.dtype:
        """Big-endian dtype of the values as stored on disk."""
        return np.dtype(self.value[2])

    @property
    def torch_dtype(self) -> Optional[torch.dtype]:
        return self.value[3]

    @property
    def width(self) -> int:
        return abs(self.bitpix) // 8

    @property
    def is_integer(self) -> bool:
        return self.bitpix > 0

    @property
    def bzero(self) -> int:
        """BZERO that maps the signed storage type to this unsigned type."""
        if self.bitpix <= 8:
            return 0
        return 1 << (self.bitpix - 1)

    @property
    def max_value(self) -> float:
        if self.is_integer:
            return float(np.iinfo(self.numpy_dtype).max)
        return float(np.finfo(self.numpy_dtype).max)


class FITSDataTypeHandler:
    """Handles FITS data type conversions and validation."""

    BITPIX_TO_DTYPE = {dtype.bitpix: dtype for dtype in FITSDataType}

    NUMPY_TO_DTYPE = {dtype.numpy_dtype: dtype for dtype in FITSDataType}

    @classmethod
    def from_bitpix(cls, bitpix: int, hdu_index: Optional[int] = None) -> FITSDataType:
        """Convert FITS BITPIX to FITSDataType."""
        if bitpix not in cls.BITPIX_TO_DTYPE:
            raise UnsupportedBitpixError(f"Unsupported BITPIX: {bitpix}", hdu_index)
        return cls.BITPIX_TO_DTYPE[bitpix]

    @classmethod
    def from_numpy(cls, dtype) -> FITSDataType:
        """Element type for a numpy dtype, ignoring byte order."""
        key = np.dtype(dtype).newbyteorder('=')
        if key not in cls.NUMPY_TO_DTYPE:
            raise UnsupportedBitpixError(f"No BITPIX for numpy dtype {np.dtype(dtype)}")
        return cls.NUMPY_TO_DTYPE[key]

    @staticmethod
    def storage_bytes(nbytes: int) -> int:
        """Size of a section once padded to a whole number of blocks."""
        return -(-nbytes // BLOCK_SIZE) * BLOCK_SIZE
