"""
Image model for fitsmanip.

FitsImage holds the pixels of an image HDU as an owned byte buffer tagged
with its element type. DoubleImage is the 2-D float64 working buffer the
pipeline operates on; image2double and FitsImage.rebuild convert between
the two.
"""

from typing import Optional, Sequence, Tuple

import numpy as np
import torch

from .core import DBL_EPSILON, FLT_EPSILON, FLT_MAX, FITSDataType, FITSDataTypeHandler
from .errors import BufferAllocationError, DimensionMismatchError
from .logging import log_performance, logger
from .runtime import Runtime, resolve


def _allocate(nbytes: int, runtime: Optional[Runtime], what: str) -> np.ndarray:
    resolve(runtime).check_allocation(nbytes, what)
    try:
        return np.zeros(nbytes, dtype=np.uint8)
    except MemoryError as e:
        raise BufferAllocationError(f"cannot allocate {nbytes} bytes for {what}") from e


class DoubleImage:
    """
    2-D float64 working buffer.

    Pixels are stored row-major (x fastest) in a 1-D contiguous tensor of
    width * height elements. The buffer owns its data.
    """

    def __init__(self, width: int, height: int, data: Optional[torch.Tensor] = None):
        if width < 0 or height < 0:
            raise DimensionMismatchError(f"invalid working buffer size {width}x{height}")
        self.width = int(width)
        self.height = int(height)
        if data is None:
            data = torch.zeros(self.width * self.height, dtype=torch.float64)
        else:
            data = data.detach().to(torch.float64).reshape(-1).contiguous()
            if data.numel() != self.width * self.height:
                raise DimensionMismatchError(
                    f"{data.numel()} values for a {self.width}x{self.height} buffer")
        self.data = data

    @property
    def totpix(self) -> int:
        return self.width * self.height

    @classmethod
    def from_array(cls, array) -> 'DoubleImage':
        """Copy a 2-D (height, width) or 1-D array into a new buffer."""
        tensor = torch.as_tensor(np.asarray(array, dtype=np.float64)).clone()
        if tensor.dim() == 1:
            return cls(tensor.numel(), 1, tensor)
        if tensor.dim() != 2:
            raise DimensionMismatchError(f"expected a 1-D or 2-D array, got {tensor.dim()}-D")
        height, width = tensor.shape
        return cls(width, height, tensor)

    def copy(self) -> 'DoubleImage':
        return DoubleImage(self.width, self.height, self.data.clone())

    def to_numpy(self) -> np.ndarray:
        """(height, width) view of the pixels."""
        return self.data.numpy().reshape(self.height, self.width)

    def view2d(self) -> torch.Tensor:
        return self.data.view(self.height, self.width)

    def __repr__(self):
        return f"DoubleImage(width={self.width}, height={self.height})"


class FitsImage:
    """
    Pixels of an image HDU.

    Attributes:
        naxes: axis sizes, NAXIS1 first
        bitpix: FITS BITPIX code
        dtype: element type derived from bitpix
        raw: owned uint8 buffer of totpix * pxsz bytes in host byte order,
            None for a header-only image
        blank: logical value marking undefined integer pixels, if any
    """

    def __init__(self, naxes: Sequence[int], bitpix: int, raw: Optional[np.ndarray] = None,
                 runtime: Optional[Runtime] = None):
        naxes = tuple(int(n) for n in naxes)
        if any(n < 0 for n in naxes):
            raise DimensionMismatchError(f"negative axis size in {naxes}")
        self.dtype = FITSDataTypeHandler.from_bitpix(bitpix)
        self.naxes = naxes
        self.blank: Optional[int] = None

        nbytes = self.totpix * self.pxsz
        if raw is None:
            self.raw = _allocate(nbytes, runtime, "image") if nbytes else None
        else:
            raw = np.ascontiguousarray(raw).view(np.uint8).reshape(-1)
            if raw.size != nbytes:
                raise DimensionMismatchError(
                    f"raw buffer has {raw.size} bytes, image needs {nbytes}")
            self.raw = raw if nbytes else None

    @classmethod
    def new(cls, naxis: int, naxes: Sequence[int], bitpix: int,
            runtime: Optional[Runtime] = None) -> 'FitsImage':
        """Allocate a zeroed image; a zero pixel count gives a header-only image."""
        if naxis != len(naxes):
            raise DimensionMismatchError(f"NAXIS={naxis} but {len(naxes)} axis sizes given")
        return cls(naxes, bitpix, runtime=runtime)

    @classmethod
    def from_array(cls, array: np.ndarray) -> 'FitsImage':
        """Build an image from an array shaped (NAXISn, ..., NAXIS1)."""
        array = np.asarray(array)
        dtype = FITSDataTypeHandler.from_numpy(array.dtype)
        native = np.ascontiguousarray(array, dtype=dtype.numpy_dtype)
        return cls(tuple(reversed(native.shape)), dtype.bitpix, native.copy().view(np.uint8))

    @property
    def bitpix(self) -> int:
        return self.dtype.bitpix

    @property
    def naxis(self) -> int:
        return len(self.naxes)

    @property
    def totpix(self) -> int:
        if not self.naxes:
            return 0
        total = 1
        for n in self.naxes:
            total *= n
        return total

    @property
    def pxsz(self) -> int:
        return self.dtype.width

    @property
    def nbytes(self) -> int:
        return self.totpix * self.pxsz

    @property
    def width(self) -> int:
        return self.naxes[0] if self.naxes else 0

    @property
    def height(self) -> int:
        return self.naxes[1] if self.naxis > 1 else (1 if self.naxes else 0)

    @property
    def is_header_only(self) -> bool:
        return self.raw is None

    def pixels(self, dtype=None) -> np.ndarray:
        """
        Typed flat view of the raw buffer.

        Raises:
            TypeError: If dtype does not match the image element type
        """
        expected = self.dtype.numpy_dtype
        if dtype is not None and np.dtype(dtype) != expected:
            raise TypeError(f"image holds {expected} pixels, not {np.dtype(dtype)}")
        if self.raw is None:
            return np.empty(0, dtype=expected)
        return self.raw.view(expected)

    def array(self) -> np.ndarray:
        """Typed view shaped (NAXISn, ..., NAXIS1)."""
        return self.pixels().reshape(tuple(reversed(self.naxes)))

    def to_tensor(self) -> torch.Tensor:
        """
        Copy of the pixels as a tensor shaped like array().

        Unsigned types torch has no dtype for are widened to int64.

        Raises:
            OverflowError: For UINT64 values above the int64 range
        """
        array = self.array()
        if self.dtype.torch_dtype is None:
            too_large = array.size and array.max() > np.iinfo(np.int64).max
            if self.dtype == FITSDataType.UINT64 and too_large:
                raise OverflowError("UINT64 pixels exceed the int64 range")
            array = array.astype(np.int64)
        return torch.from_numpy(array.copy())

    def mksimilar(self, runtime: Optional[Runtime] = None) -> 'FitsImage':
        """New zeroed image with the same shape and BITPIX."""
        return FitsImage(self.naxes, self.bitpix, runtime=runtime)

    def copy(self, runtime: Optional[Runtime] = None) -> 'FitsImage':
        dup = self.mksimilar(runtime)
        if self.raw is not None:
            dup.raw[:] = self.raw
        dup.blank = self.blank
        return dup

    @log_performance
    def rebuild(self, dimg: DoubleImage, runtime: Optional[Runtime] = None) -> 'FitsImage':
        """
        Replace the pixels with those of a working buffer.

        The new BITPIX is the narrowest type that holds every value: an
        unsigned integer type when all values are non-negative integers,
        otherwise float32 when adjacent distinct values are further apart
        than its epsilon and the range fits, otherwise float64. The axes
        are kept when the buffer has the image's own width and height, so
        1-D images and degenerate extra axes survive; otherwise the image
        takes the buffer's (width, height) shape.
        """
        values = dimg.data
        dtype = choose_bitpix(values)
        runtime = resolve(runtime)
        raw = _allocate(values.numel() * dtype.width, runtime, "image")

        src = values.numpy()
        dst = raw.view(dtype.numpy_dtype)

        def kernel(start, stop):
            np.copyto(dst[start:stop], src[start:stop], casting='unsafe')

        runtime.parallel_for(values.numel(), kernel)

        logger.debug(f"Rebuilt {dimg.width}x{dimg.height} image with BITPIX {dtype.bitpix}")
        if (dimg.width, dimg.height, dimg.totpix) != (self.width, self.height, self.totpix):
            self.naxes = (dimg.width, dimg.height)
        self.dtype = dtype
        self.raw = raw if raw.size else None
        self.blank = None
        return self

    def __repr__(self):
        return f"FitsImage(naxes={self.naxes}, bitpix={self.bitpix})"


def choose_bitpix(values: torch.Tensor) -> FITSDataType:
    """Narrowest element type that represents every value exactly enough."""
    if values.numel() == 0:
        return FITSDataType.UINT8
    ordered, _ = torch.sort(values.reshape(-1))
    # sort puts NaN last; only float types can store it
    undefined = bool(torch.isnan(ordered[-1]).item())
    if undefined:
        ordered = ordered[~torch.isnan(ordered)]
        if ordered.numel() == 0:
            return FITSDataType.FLOAT32
    vmin = ordered[0].item()
    vmax = ordered[-1].item()

    diffs = ordered[1:] - ordered[:-1]
    diffs = diffs[diffs > DBL_EPSILON]
    mindiff = diffs.min().item() if diffs.numel() else float('inf')

    is_integer = bool(torch.all(ordered == torch.floor(ordered)).item())
    if is_integer and vmin >= 0 and not undefined:
        for dtype in (FITSDataType.UINT8, FITSDataType.UINT16,
                      FITSDataType.UINT32, FITSDataType.UINT64):
            # u64 max rounds up to 2**64 as a double
            if vmax <= dtype.max_value and vmax < 2.0 ** dtype.bitpix:
                return dtype

    if mindiff > FLT_EPSILON and -FLT_MAX < vmin and vmax < FLT_MAX:
        return FITSDataType.FLOAT32
    return FITSDataType.FLOAT64


@log_performance
def image2double(img: FitsImage, runtime: Optional[Runtime] = None) -> DoubleImage:
    """
    Convert an image to a float64 working buffer.

    Width is NAXIS1 and height NAXIS2 (1 for a 1-D image). Extra axes are
    only allowed when they have size 1.

    Raises:
        DimensionMismatchError: For header-only images or real 3-D+ data
    """
    if img.totpix == 0:
        raise DimensionMismatchError("image has no pixels")
    if any(n != 1 for n in img.naxes[2:]):
        raise DimensionMismatchError(f"cannot convert a {img.naxis}-D image {img.naxes}")

    runtime = resolve(runtime)
    runtime.check_allocation(img.totpix * 8, "working buffer")
    out = torch.empty(img.totpix, dtype=torch.float64)
    dst = out.numpy()
    src = img.pixels()

    def kernel(start, stop):
        np.copyto(dst[start:stop], src[start:stop], casting='unsafe')

    runtime.parallel_for(img.totpix, kernel)
    return DoubleImage(img.width, img.height, out)
