"""
File name helpers.
"""

import os
from typing import Union

from .errors import FitsIOError

PathLike = Union[str, os.PathLike]


def file_is_absent(path: PathLike) -> bool:
    """True only when the path definitely does not exist."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return True
    except OSError:
        return False
    return False


def make_filename(prefix: str, suffix: str) -> str:
    """
    First free name of the form ``prefix_NNNN.suffix``.

    Args:
        prefix: Leading part of the name, may include a directory
        suffix: Extension without the dot, e.g. "fits" or "fit.gz"

    Returns:
        Path of a file that does not exist yet

    Raises:
        FitsIOError: If all numbers from 0001 to 9999 are taken
    """
    for num in range(1, 10000):
        name = f"{prefix}_{num:04d}.{suffix}"
        if file_is_absent(name):
            return name
    raise FitsIOError(f"no free file name left for {prefix}_NNNN.{suffix}")
