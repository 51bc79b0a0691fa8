"""
Histogram operations on normalised working buffers.

All functions expect pixel values already mapped to [0, 1] by
normalize_dbl. Bucket i covers [i/S, (i+1)/S); values at or above 1 fall
into the last bucket. NaN pixels are not counted and stay NaN.
"""

from dataclasses import dataclass
from typing import Optional

import torch
from torch import Tensor

from .core import DBL_EPSILON
from .errors import (DimensionMismatchError, HistogramOutOfBoundsError, InvalidFractionError,
                     RangeUnderflowError)
from .image import DoubleImage
from .logging import log_performance, logger
from .runtime import Runtime, resolve

MAX_HISTOGRAM_SIZE = 65535


@dataclass
class Histogram:
    """
    Histogram of a normalised buffer.

    Attributes:
        size: number of buckets S
        totpix: number of pixels counted
        counts: int64 tensor of S counts
        levels: float64 tensor of the S + 1 bucket edges i / S
    """
    size: int
    totpix: int
    counts: Tensor
    levels: Tensor

    def cumulative(self) -> Tensor:
        return torch.cumsum(self.counts, dim=0)


def _buckets(data: Tensor, size: int) -> Tensor:
    return torch.floor(data * size).clamp_(0, size - 1).to(torch.int64)


def dbl2histogram(img: DoubleImage, size: int) -> Histogram:
    """
    Count pixels per bucket.

    Raises:
        HistogramOutOfBoundsError: Unless 2 <= size <= 65535
        DimensionMismatchError: For an empty image
    """
    if not 2 <= size <= MAX_HISTOGRAM_SIZE:
        raise HistogramOutOfBoundsError(
            f"histogram size must be in [2, {MAX_HISTOGRAM_SIZE}], got {size}")
    data = img.data
    undefined = torch.isnan(data)
    if undefined.any():
        data = data[~undefined]
    if data.numel() == 0:
        raise DimensionMismatchError("histogram of an image without defined pixels")
    counts = torch.bincount(_buckets(data, size), minlength=size)
    levels = torch.arange(size + 1, dtype=torch.float64) / size
    return Histogram(size=size, totpix=data.numel(), counts=counts, levels=levels)


@log_performance
def dbl_histcutoff(img: DoubleImage, size: int, fbot: float, ftop: float,
                   runtime: Optional[Runtime] = None) -> DoubleImage:
    """
    Clip the darkest fbot and brightest ftop fractions of pixels and
    stretch what remains back to [0, 1], in place.

    The cut levels are bucket edges: the lower one is the first bucket
    whose cumulative count exceeds fbot * T, the upper one the first
    whose cumulative count exceeds (1 - ftop) * T.

    Raises:
        InvalidFractionError: Unless 0 <= fbot, ftop < 1 and fbot + ftop < 1
        RangeUnderflowError: If too few pixels remain or the levels coincide
    """
    if not (0 <= fbot < 1 and 0 <= ftop < 1) or fbot + ftop >= 1:
        raise InvalidFractionError(
            f"cut-off fractions must be in [0, 1) with a sum below 1, got {fbot} and {ftop}")
    hist = dbl2histogram(img, size)
    total = hist.totpix
    nbot = int(fbot * total)
    ntop_cut = int(ftop * total)
    if nbot + ntop_cut >= total:
        raise RangeUnderflowError(f"too few pixels remain after cutting {nbot} + {ntop_cut} "
                                  f"of {total}")
    ntop = total - ntop_cut

    cumulative = hist.cumulative()
    lo = int(torch.searchsorted(cumulative, torch.tensor([nbot]), right=True).item())
    hi = int(torch.searchsorted(cumulative, torch.tensor([ntop]), right=True).item())
    low_value = hist.levels[lo].item()
    high_value = hist.levels[min(hi, size)].item()
    span = high_value - low_value
    if span < 2 * DBL_EPSILON:
        raise RangeUnderflowError(f"cut-off range collapsed at {low_value:g}")
    logger.debug(f"Histogram cut-off between {low_value:g} and {high_value:g}")

    data = img.data

    def kernel(start, stop):
        chunk = data[start:stop]
        below = chunk <= low_value
        chunk.sub_(low_value).div_(span).clamp_(max=1.0)
        chunk.masked_fill_(below, 0.0)

    resolve(runtime).parallel_for(img.totpix, kernel)
    return img


@log_performance
def dbl_histeq(img: DoubleImage, size: int, runtime: Optional[Runtime] = None) -> DoubleImage:
    """
    Histogram equalisation in place.

    Each bucket i is mapped linearly onto [N[i], N[i+1]] where N[0] = 0
    and N[i+1] is the fraction of pixels in buckets 0..i.
    """
    hist = dbl2histogram(img, size)
    newlevels = torch.zeros(size + 1, dtype=torch.float64)
    newlevels[1:] = hist.cumulative().to(torch.float64) / hist.totpix

    data = img.data

    def kernel(start, stop):
        chunk = data[start:stop]
        undefined = torch.isnan(chunk)
        scaled = torch.nan_to_num(chunk, nan=0.0) * size
        bucket = torch.floor(scaled).clamp_(0, size - 1)
        frac = (scaled - bucket).clamp_(0.0, 1.0)
        index = bucket.to(torch.int64)
        lower = newlevels[index]
        result = lower + frac * (newlevels[index + 1] - lower)
        chunk.copy_(result.masked_fill_(undefined, float('nan')))

    resolve(runtime).parallel_for(img.totpix, kernel)
    return img
