"""
Working-buffer transformations for fitsmanip.

Statistics, normalisation to [0, 1] and the intensity transforms applied
to a DoubleImage before it is rendered through a palette or folded back
into a FitsImage. Kernels run in place over pixel chunks on the runtime's
worker pool.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import torch
from torch import Tensor

from .core import DBL_EPSILON
from .errors import DimensionMismatchError, RangeUnderflowError, UnsupportedOperationError
from .image import DoubleImage
from .logging import log_performance
from .runtime import Runtime, resolve


@dataclass
class ImgStat:
    """Statistics of a working buffer."""
    mean: float
    std: float
    min: float
    max: float

    @property
    def range(self) -> float:
        return self.max - self.min

    def __str__(self):
        return (f"min={self.min:g}, max={self.max:g}, "
                f"mean={self.mean:g}, std={self.std:g}")


def get_imgstat(img: DoubleImage) -> ImgStat:
    """
    Min, max, mean and population standard deviation in one pass.

    std is computed from the sums of x and x squared and is clamped to 0
    when rounding makes the variance negative. NaN pixels are undefined
    and left out of every statistic.

    Raises:
        DimensionMismatchError: If the image has no defined pixels
    """
    data = img.data
    undefined = torch.isnan(data)
    if undefined.any():
        data = data[~undefined]
    total = data.numel()
    if total == 0:
        raise DimensionMismatchError("statistics of an image without defined pixels")
    vmin, vmax = torch.aminmax(data)
    mean = torch.sum(data).item() / total
    sum2 = torch.dot(data, data).item()
    variance = sum2 / total - mean * mean
    std = math.sqrt(variance) if variance > 0 else 0.0
    return ImgStat(mean=mean, std=std, min=vmin.item(), max=vmax.item())


def _check_range(st: ImgStat):
    if st.max - st.min < 2 * DBL_EPSILON:
        raise RangeUnderflowError(f"data range is too small ({st.min:g} .. {st.max:g})")


@log_performance
def normalize_dbl(img: DoubleImage, st: Optional[ImgStat] = None,
                  runtime: Optional[Runtime] = None) -> DoubleImage:
    """
    Map pixels to [0, 1] in place: x -> (x - min) / (max - min).

    Raises:
        RangeUnderflowError: If max - min is below 2 * DBL_EPSILON
    """
    if st is None:
        st = get_imgstat(img)
    _check_range(st)
    low, scale = st.min, st.max - st.min
    data = img.data

    def kernel(start, stop):
        data[start:stop].sub_(low).div_(scale)

    resolve(runtime).parallel_for(img.totpix, kernel)
    return img


class LinearStretch:
    """Identity on the shifted values."""

    def __call__(self, tensor: Tensor) -> Tensor:
        return tensor

    def __repr__(self):
        return "LinearStretch()"


class LogStretch:
    """
    Logarithmic stretch, x -> ln(1 + x).
    """

    def __call__(self, tensor: Tensor) -> Tensor:
        return tensor.log1p_()

    def __repr__(self):
        return "LogStretch()"


class ExpStretch:
    """
    Exponential stretch, x -> exp(x - 1).
    """

    def __call__(self, tensor: Tensor) -> Tensor:
        return tensor.sub_(1.0).exp_()

    def __repr__(self):
        return "ExpStretch()"


class PowerStretch:
    """
    Power law stretch, x -> x ** gamma.
    """

    def __init__(self, gamma: float = 2.0):
        """
        Initialize power stretch.

        Args:
            gamma: Power law exponent
        """
        self.gamma = gamma

    def __call__(self, tensor: Tensor) -> Tensor:
        return tensor.pow_(self.gamma)

    def __repr__(self):
        return f"PowerStretch(gamma={self.gamma})"


class SqrtStretch(PowerStretch):
    """Square-root stretch."""

    def __init__(self):
        super().__init__(0.5)

    def __call__(self, tensor: Tensor) -> Tensor:
        return tensor.sqrt_()

    def __repr__(self):
        return "SqrtStretch()"


class IntensityTransform(Enum):
    """Intensity transforms applied after normalisation."""
    LINEAR = "linear"
    LOG = "log"
    EXP = "exp"
    POW = "pow"
    SQRT = "sqrt"

    @classmethod
    def from_name(cls, name: str) -> 'IntensityTransform':
        """Transform from its name or an unambiguous prefix of it."""
        name = name.strip().lower()
        matches = [t for t in cls if t.value.startswith(name)] if name else []
        if len(matches) != 1:
            raise UnsupportedOperationError(f"unknown intensity transform {name!r}")
        return matches[0]

    def stretch(self) -> Callable[[Tensor], Tensor]:
        """In-place callable implementing the transform."""
        match self:
            case IntensityTransform.LINEAR:
                return LinearStretch()
            case IntensityTransform.LOG:
                return LogStretch()
            case IntensityTransform.EXP:
                return ExpStretch()
            case IntensityTransform.POW:
                return PowerStretch(2.0)
            case IntensityTransform.SQRT:
                return SqrtStretch()
        raise UnsupportedOperationError(f"unknown intensity transform {self!r}")


@log_performance
def mktransform(img: DoubleImage, st: ImgStat, tr, runtime: Optional[Runtime] = None) -> DoubleImage:
    """
    Apply an intensity transform in place to (x - st.min).

    Args:
        img: Working buffer, normally normalised
        st: Statistics supplying the shift
        tr: IntensityTransform or its name

    Raises:
        RangeUnderflowError: If st.max - st.min is below 2 * DBL_EPSILON
        UnsupportedOperationError: For an unknown transform
    """
    if not isinstance(tr, IntensityTransform):
        tr = IntensityTransform.from_name(str(tr))
    _check_range(st)
    stretch = tr.stretch()
    low = st.min
    data = img.data

    def kernel(start, stop):
        chunk = data[start:stop]
        if low != 0.0:
            chunk.sub_(low)
        stretch(chunk)

    resolve(runtime).parallel_for(img.totpix, kernel)
    return img
