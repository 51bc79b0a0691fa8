"""
Median filtering of working buffers.

Small windows use fixed comparator networks (Devillard, Batcher and
Havlicek et al. for the even sizes). Larger square windows use a running
median kept in a dual heap over a circular buffer, so that sliding the
window down one row costs O(log n) per inserted value.
"""

from typing import List, Optional, Sequence

import numpy as np
import torch
from torch import Tensor

from .errors import DimensionMismatchError
from .image import DoubleImage
from .logging import log_performance, logger
from .runtime import Runtime, resolve

# size -> (comparators, positions of the middle pair)
NETWORKS = {
    2: ((), (0, 1)),
    3: (((0, 1), (1, 2), (0, 1)), (1, 1)),
    4: (((0, 2), (1, 3), (0, 1), (2, 3)), (1, 2)),
    5: (((0, 1), (3, 4), (0, 3), (1, 4), (1, 2), (2, 3), (1, 2)), (2, 2)),
    6: (((1, 2), (3, 4), (0, 1), (2, 3), (4, 5), (1, 2), (3, 4), (0, 1), (2, 3), (4, 5),
         (1, 2), (3, 4)), (2, 3)),
    7: (((0, 5), (0, 3), (1, 6), (2, 4), (0, 1), (3, 5), (2, 6), (2, 3), (3, 6), (4, 5),
         (1, 4), (1, 3), (3, 4)), (3, 3)),
    8: (((0, 4), (1, 5), (2, 6), (3, 7), (0, 2), (1, 3), (4, 6), (5, 7), (2, 4), (3, 5),
         (0, 1), (2, 3), (4, 5), (6, 7), (1, 4), (3, 6)), (3, 4)),
    9: (((1, 2), (4, 5), (7, 8), (0, 1), (3, 4), (6, 7), (1, 2), (4, 5), (7, 8), (0, 3),
         (5, 8), (4, 7), (3, 6), (1, 4), (2, 5), (4, 7), (4, 2), (6, 4), (4, 2)), (4, 4)),
    16: (((0, 8), (1, 9), (2, 10), (3, 11), (4, 12), (5, 13), (6, 14), (7, 15),
          (0, 4), (1, 5), (2, 6), (3, 7), (8, 12), (9, 13), (10, 14), (11, 15),
          (4, 8), (5, 9), (6, 10), (7, 11), (0, 2), (1, 3), (4, 6), (5, 7),
          (8, 10), (9, 11), (12, 14), (13, 15), (2, 8), (3, 9), (6, 12), (7, 13),
          (2, 4), (3, 5), (6, 8), (7, 9), (10, 12), (11, 13), (0, 1), (2, 3),
          (4, 5), (6, 7), (8, 9), (10, 11), (12, 13), (14, 15), (1, 8), (3, 10),
          (5, 12), (7, 14), (5, 8), (7, 10)), (7, 8)),
    25: (((0, 1), (3, 4), (2, 4), (2, 3), (6, 7), (5, 7), (5, 6), (9, 10), (8, 10),
          (8, 9), (12, 13), (11, 13), (11, 12), (15, 16), (14, 16), (14, 15),
          (18, 19), (17, 19), (17, 18), (21, 22), (20, 22), (20, 21), (23, 24),
          (2, 5), (3, 6), (0, 6), (0, 3), (4, 7), (1, 7), (1, 4), (11, 14), (8, 14),
          (8, 11), (12, 15), (9, 15), (9, 12), (13, 16), (10, 16), (10, 13),
          (20, 23), (17, 23), (17, 20), (21, 24), (18, 24), (18, 21), (19, 22),
          (8, 17), (9, 18), (0, 18), (0, 9), (10, 19), (1, 19), (1, 10), (11, 20),
          (2, 20), (2, 11), (12, 21), (3, 21), (3, 12), (13, 22), (4, 22), (4, 13),
          (14, 23), (5, 23), (5, 14), (15, 24), (6, 24), (6, 15), (7, 16), (7, 19),
          (13, 21), (15, 23), (7, 13), (7, 15), (1, 9), (3, 11), (5, 17), (11, 17),
          (9, 17), (4, 10), (6, 12), (7, 14), (4, 6), (4, 7), (12, 14), (10, 14),
          (6, 7), (10, 12), (6, 10), (6, 17), (12, 17), (7, 17), (7, 10),
          (12, 18), (7, 12), (10, 18), (12, 20), (10, 20), (10, 12)), (12, 12)),
}


def _before(a: float, b: float) -> bool:
    """Strict order with NaN above every number, as numpy and torch sort."""
    return a < b or (b != b and a == a)


def _order(a, b):
    if isinstance(a, Tensor) or isinstance(b, Tensor):
        a, b = torch.as_tensor(a), torch.as_tensor(b)
        swap = (b < a) | (torch.isnan(a) & ~torch.isnan(b))
        return torch.where(swap, b, a), torch.where(swap, a, b)
    if _before(b, a):
        return b, a
    return a, b


def opt_median(values: Sequence):
    """
    Median of a window whose size has a comparator network.

    Elements may be Python numbers or tensors of a common shape; with
    tensors the network runs elementwise, giving the median of every
    position at once. The input sequence is not modified.

    Raises:
        ValueError: If there is no network for len(values)
    """
    n = len(values)
    if n not in NETWORKS:
        raise ValueError(f"no comparator network for {n} values")
    comparators, (lo, hi) = NETWORKS[n]
    p = list(values)
    for a, b in comparators:
        p[a], p[b] = _order(p[a], p[b])
    if lo == hi:
        return p[lo]
    return (p[lo] + p[hi]) / 2.


def quick_select(values: Sequence[float]) -> float:
    """
    Wirth/Devillard selection of element (n - 1) // 2 of the sorted input.

    For an even count this is the lower of the two middle values. NaN
    sorts above every number.
    """
    arr = [float(v) for v in values]
    n = len(arr)
    if n == 0:
        raise ValueError("median of an empty sequence")
    arr = [v for v in arr if v == v]
    median = (n - 1) // 2
    if median >= len(arr):
        return float('nan')
    low, high = 0, len(arr) - 1
    while True:
        if high <= low:
            break
        if high == low + 1:
            if arr[low] > arr[high]:
                arr[low], arr[high] = arr[high], arr[low]
            break
        # median of low, middle and high goes to low
        middle = (low + high) // 2
        if arr[middle] > arr[high]:
            arr[middle], arr[high] = arr[high], arr[middle]
        if arr[low] > arr[high]:
            arr[low], arr[high] = arr[high], arr[low]
        if arr[middle] > arr[low]:
            arr[middle], arr[low] = arr[low], arr[middle]
        arr[middle], arr[low + 1] = arr[low + 1], arr[middle]

        ll, hh = low + 1, high
        while True:
            ll += 1
            while arr[low] > arr[ll]:
                ll += 1
            hh -= 1
            while arr[hh] > arr[low]:
                hh -= 1
            if hh < ll:
                break
            arr[ll], arr[hh] = arr[hh], arr[ll]
        arr[low], arr[hh] = arr[hh], arr[low]

        if hh <= median:
            low = ll
        if hh >= median:
            high = hh - 1
    return arr[median]


def calc_median(values) -> float:
    """
    Median of a sequence, picking a comparator network when one exists
    for its length and quick_select otherwise.

    Args:
        values: Sequence of numbers or a 1-D tensor/array

    Returns:
        Median value as a float

    Raises:
        ValueError: For an empty input
    """
    if hasattr(values, "tolist"):
        values = values.tolist()
    n = len(values)
    if n < 1:
        raise ValueError("median of an empty sequence")
    if n == 1:
        return float(values[0])
    if n in NETWORKS:
        return float(opt_median([float(v) for v in values]))
    return quick_select(values)


def _half(i: int) -> int:
    # integer division truncating toward zero
    return -(-i // 2) if i < 0 else i // 2


class Mediator:
    """
    Running median of the last ``size`` inserted values.

    Values live in a circular buffer. The heap array is indexed from
    -size // 2 to size - 1 - size // 2: index 0 holds the median, negative
    indices form a max-heap of the lower half and positive ones a
    min-heap of the upper half. Once the buffer is full, every insertion
    replaces the oldest value.
    """

    def __init__(self, size: int):
        if size < 1:
            raise ValueError(f"window size must be positive, got {size}")
        self.size = size
        self._data = [0.0] * size
        self._pos = [0] * size
        self._heap = [0] * size
        self._offset = size // 2
        self._idx = 0
        self._count = 0
        # initial fill pattern: median, max, min, max, ...
        for n in range(size - 1, -1, -1):
            p = ((n + 1) // 2) * (-1 if n & 1 else 1)
            self._pos[n] = p
            self._heap[p + self._offset] = n

    def __len__(self):
        return self._count

    def _min_count(self) -> int:
        return _half(self._count - 1)

    def _max_count(self) -> int:
        return self._count // 2

    def _value(self, i: int) -> float:
        return self._data[self._heap[i + self._offset]]

    def _less(self, i: int, j: int) -> bool:
        return _before(self._value(i), self._value(j))

    def _exchange(self, i: int, j: int):
        heap, off = self._heap, self._offset
        heap[i + off], heap[j + off] = heap[j + off], heap[i + off]
        self._pos[heap[i + off]] = i
        self._pos[heap[j + off]] = j

    def _cmp_exchange(self, i: int, j: int) -> bool:
        if self._less(i, j):
            self._exchange(i, j)
            return True
        return False

    def _min_sort_down(self, i: int):
        while i <= self._min_count():
            if 1 < i < self._min_count() and self._less(i + 1, i):
                i += 1
            if not self._cmp_exchange(i, _half(i)):
                break
            i *= 2

    def _max_sort_down(self, i: int):
        while i >= -self._max_count():
            if -self._max_count() < i < -1 and self._less(i, i - 1):
                i -= 1
            if not self._cmp_exchange(_half(i), i):
                break
            i *= 2

    def _min_sort_up(self, i: int) -> bool:
        while i > 0 and self._cmp_exchange(i, _half(i)):
            i = _half(i)
        return i == 0

    def _max_sort_up(self, i: int) -> bool:
        while i < 0 and self._cmp_exchange(_half(i), i):
            i = _half(i)
        return i == 0

    def insert(self, value: float):
        """Insert a value, evicting the oldest one when the window is full."""
        is_new = self._count < self.size
        p = self._pos[self._idx]
        old = self._data[self._idx]
        self._data[self._idx] = value
        self._idx = (self._idx + 1) % self.size
        if is_new:
            self._count += 1

        if p > 0:
            if not is_new and _before(old, value):
                self._min_sort_down(p * 2)
            elif self._min_sort_up(p):
                self._max_sort_down(-1)
        elif p < 0:
            if not is_new and _before(value, old):
                self._max_sort_down(p * 2)
            elif self._max_sort_up(p):
                self._min_sort_down(1)
        else:
            if self._max_count():
                self._max_sort_down(-1)
            if self._min_count():
                self._min_sort_down(1)

    def median(self) -> float:
        """Current median, or the mean of the middle pair for an even count."""
        if self._count == 0:
            raise ValueError("median of an empty window")
        v = self._value(0)
        if self._count % 2 == 0:
            v = (v + self._value(-1)) / 2
        return v


def _median_line(line: Tensor) -> Tensor:
    """3-element median along a 1-D line with clamped ends."""
    if line.numel() < 2:
        return line.clone()
    left = torch.cat((line[:1], line[:-1]))
    right = torch.cat((line[1:], line[-1:]))
    return opt_median((left, line, right))


def _median_cross(src: Tensor, dst: Tensor, runtime: Runtime):
    height, width = src.shape
    if height == 1 or width == 1:
        dst.copy_(_median_line(src.reshape(-1)).reshape(height, width))
        return

    def kernel(start, stop):
        rows = slice(start + 1, stop + 1)
        centre = src[rows, 1:-1]
        dst[rows, 1:-1] = opt_median((centre, src[rows, :-2], src[rows, 2:],
                                      src[start:stop, 1:-1], src[start + 2:stop + 2, 1:-1]))

    resolve(runtime).parallel_for(height - 2, kernel, min_chunk=64)

    # edges: centre twice, the two neighbours along the edge, the inward one
    top, bottom = src[0, 1:-1], src[-1, 1:-1]
    dst[0, 1:-1] = opt_median((top, top, src[0, :-2], src[0, 2:], src[1, 1:-1]))
    dst[-1, 1:-1] = opt_median((bottom, bottom, src[-1, :-2], src[-1, 2:], src[-2, 1:-1]))
    left, right = src[1:-1, 0], src[1:-1, -1]
    dst[1:-1, 0] = opt_median((left, left, src[:-2, 0], src[2:, 0], src[1:-1, 1]))
    dst[1:-1, -1] = opt_median((right, right, src[:-2, -1], src[2:, -1], src[1:-1, -2]))

    # corners: centre twice, horizontal, vertical and diagonal neighbours
    for y, x, dy, dx in ((0, 0, 1, 1), (0, width - 1, 1, -1),
                         (height - 1, 0, -1, 1), (height - 1, width - 1, -1, -1)):
        c = src[y, x]
        dst[y, x] = opt_median((c, c, src[y, x + dx], src[y + dy, x], src[y + dy, x + dx]))


def _median_window(src: np.ndarray, dst: np.ndarray, radius: int, runtime: Runtime):
    height, width = src.shape
    block = 2 * radius + 1
    ncols = width - 2 * radius

    def kernel(start, stop):
        for x in range(start + radius, stop + radius):
            slab = src[:, x - radius:x + radius + 1].tolist()
            m = Mediator(block * block)
            for row in slab[:block - 1]:
                for v in row:
                    m.insert(v)
            column = []
            for row in slab[block - 1:]:
                for v in row:
                    m.insert(v)
                column.append(m.median())
            dst[radius:height - radius, x] = column

    runtime.parallel_for(ncols, kernel, min_chunk=1)


@log_performance
def get_median(img: DoubleImage, radius: int, runtime: Optional[Runtime] = None) -> DoubleImage:
    """
    Median filter a working buffer.

    Radius 0 selects the 3x3 cross (the pixel and its four neighbours)
    and covers the whole image. A positive radius uses the full
    (2r+1) x (2r+1) square and only filters pixels whose window fits
    inside the image; the frame of width r is copied through unchanged.
    NaN pixels order above every number, so an isolated one is filtered out.

    Args:
        img: Input buffer, left untouched
        radius: Window radius
        runtime: Worker pool to use, the default one when None

    Returns:
        New DoubleImage with the filtered pixels

    Raises:
        ValueError: For a negative radius
    """
    if radius < 0:
        raise ValueError(f"median radius must be non-negative, got {radius}")
    if img.totpix == 0:
        raise DimensionMismatchError("median of an empty image")
    runtime = resolve(runtime)
    out = img.copy()
    if radius == 0:
        _median_cross(img.view2d(), out.view2d(), runtime)
        return out

    block = 2 * radius + 1
    if img.width < block or img.height < block:
        logger.debug(f"{block}x{block} median window does not fit {img.width}x{img.height} image")
        return out
    _median_window(img.to_numpy(), out.to_numpy(), radius, runtime)
    return out
