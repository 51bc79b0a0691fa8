"""
Colourmaps for normalised working buffers.

Each palette is a piecewise-linear map from [0, 1] to RGB given by equally
spaced anchor colours. convert2palette renders a DoubleImage into a byte
tensor of RGB triplets that any image writer can consume.
"""

from enum import Enum
from typing import Optional, Sequence, Tuple

import torch
from torch import Tensor

from .errors import UnsupportedOperationError
from .image import DoubleImage
from .logging import log_performance
from .runtime import Runtime, resolve

RGB = Tuple[int, int, int]


class Palette(Enum):
    """Available colourmaps."""
    GRAY = "gray"
    BR = "br"
    HOT = "hot"
    COLD = "cold"
    JET = "jet"

    @classmethod
    def from_name(cls, name: str) -> 'Palette':
        """Palette from its name; the first letter is enough."""
        name = name.strip().lower()
        # first letters are unique
        for palette in cls:
            if name and palette.value[0] == name[0]:
                return palette
        raise UnsupportedOperationError(f"unknown palette {name!r}")

    @property
    def anchors(self) -> Sequence[RGB]:
        """Anchor colours at 0, 1/K, ..., 1."""
        match self:
            case Palette.GRAY:
                return ((0, 0, 0), (255, 255, 255))
            case Palette.BR:
                # blue, cyan, green, yellow, red
                return ((0, 0, 255), (0, 255, 255), (0, 255, 0), (255, 255, 0), (255, 0, 0))
            case Palette.HOT:
                # black, red, yellow, white
                return ((0, 0, 0), (255, 0, 0), (255, 255, 0), (255, 255, 255))
            case Palette.COLD:
                # black, blue, cyan, white
                return ((0, 0, 0), (0, 0, 255), (0, 255, 255), (255, 255, 255))
            case Palette.JET:
                # brown-black to dark blue through red, yellow, green and cyan;
                # the reverse of the matplotlib jet
                return ((127, 0, 0), (255, 0, 0), (255, 127, 0), (255, 255, 0), (127, 255, 127),
                        (0, 255, 255), (0, 127, 255), (0, 0, 255), (0, 0, 127))
        raise UnsupportedOperationError(f"unknown palette {self!r}")


def palette_lookup(values: Tensor, anchors: Sequence[RGB]) -> Tensor:
    """RGB bytes, shape (N, 3), for values clamped to [0, 1]; NaN maps to 0."""
    table = torch.tensor(anchors, dtype=torch.float64)
    nseg = table.shape[0] - 1
    x = torch.nan_to_num(values, nan=0.0).clamp(0.0, 1.0)
    scaled = x * nseg
    segment = torch.floor(scaled).clamp_(0, nseg - 1)
    t = (scaled - segment).unsqueeze(1)
    index = segment.to(torch.int64)
    lower = table[index]
    rgb = lower + (table[index + 1] - lower) * t
    return torch.floor(rgb).clamp_(0, 255).to(torch.uint8)


@log_performance
def convert2palette(img: DoubleImage, cmap, runtime: Optional[Runtime] = None) -> Tensor:
    """
    Render a normalised buffer through a palette.

    Args:
        img: Working buffer with values in [0, 1]; others are clamped
        cmap: Palette or palette name

    Returns:
        uint8 tensor of 3 * totpix bytes, RGB for each pixel in order

    Raises:
        UnsupportedOperationError: For an unknown palette
    """
    if not isinstance(cmap, Palette):
        cmap = Palette.from_name(str(cmap))
    anchors = cmap.anchors
    out = torch.empty((img.totpix, 3), dtype=torch.uint8)
    data = img.data

    def kernel(start, stop):
        out[start:stop] = palette_lookup(data[start:stop], anchors)

    resolve(runtime).parallel_for(img.totpix, kernel)
    return out.reshape(-1)


def to_ppm(rgb: Tensor, width: int, height: int, flip: bool = True) -> bytes:
    """
    Binary PPM image of RGB bytes.

    FITS rows run bottom to top, so rows are flipped by default to show
    the image the usual way up.
    """
    pixels = rgb.reshape(height, width, 3)
    if flip:
        pixels = torch.flip(pixels, dims=[0])
    header = f"P6\n{width} {height}\n255\n".encode('ascii')
    return header + pixels.contiguous().numpy().tobytes()
