"""
FITS writing for fitsmanip.

Serialises image HDUs of a FitsFile: the mandatory header cards are
synthesised from the image, user-owned records are copied from the
keyword list, and pixels are written big endian with the BZERO offset
convention for unsigned types. rewrite() replaces a file in place
atomically.
"""

import os
import shutil
import signal
import tempfile
from contextlib import contextmanager
from typing import List, Optional

import numpy as np

from .core import BLOCK_SIZE, CARD_SIZE
from .errors import FITSError, FitsIOError, MalformedHeaderError, UnsupportedOperationError
from .hdu import HDU, FitsFile, HDUType
from .header_parser import format_card
from .image import FitsImage
from .logging import log_errors, log_hdu_error, log_performance, logger

_CRITICAL_SIGNALS = tuple(getattr(signal, name) for name in ('SIGINT', 'SIGTSTP')
                          if hasattr(signal, name))


def _pad(data: bytes, fill: bytes) -> bytes:
    remainder = len(data) % BLOCK_SIZE
    if remainder:
        data += fill * (BLOCK_SIZE - remainder)
    return data


def image_cards(image: FitsImage, hdu_index: int) -> List[str]:
    """
    Mandatory cards describing an image.

    Parameters:
    -----------
    image : FitsImage
        Image whose BITPIX and axes are described
    hdu_index : int
        1 for the primary HDU (SIMPLE), otherwise an IMAGE extension

    Returns:
    --------
    list of str
        80-character cards, without END
    """
    cards = []
    if hdu_index == 1:
        cards.append(format_card('SIMPLE', True, 'conforms to FITS standard'))
    else:
        cards.append(format_card('XTENSION', 'IMAGE', 'Image extension'))
    cards.append(format_card('BITPIX', image.bitpix, 'number of bits per data pixel'))
    cards.append(format_card('NAXIS', image.naxis, 'number of data axes'))
    for n, size in enumerate(image.naxes, 1):
        cards.append(format_card(f'NAXIS{n}', size, f'length of data axis {n}'))
    if hdu_index == 1:
        cards.append(format_card('EXTEND', True, 'FITS dataset may contain extensions'))
    else:
        cards.append(format_card('PCOUNT', 0, 'number of random group parameters'))
        cards.append(format_card('GCOUNT', 1, 'number of random groups'))
    if image.dtype.is_integer and image.dtype.bzero:
        cards.append(format_card('BZERO', image.dtype.bzero, 'offset data range to that of unsigned'))
        cards.append(format_card('BSCALE', 1, 'default scaling factor'))
    if image.blank is not None and image.dtype.is_integer:
        cards.append(format_card('BLANK', image.blank - image.dtype.bzero, 'undefined pixel value'))
    return cards


def encode_header(hdu: HDU, hdu_index: int) -> bytes:
    """Header of an image HDU, padded with spaces to a block boundary."""
    if hdu.hdutype != HDUType.IMAGE:
        raise UnsupportedOperationError(
            f"writing {hdu.hdutype.name} HDUs is not supported", hdu_index)
    image = hdu.image if hdu.image is not None else FitsImage((), 16)
    cards = image_cards(image, hdu_index)
    cards.extend(record.text for record in hdu.keywords.emittable())
    cards.append('END'.ljust(CARD_SIZE))
    for card in cards:
        if len(card) != CARD_SIZE or not (card.isascii() and card.isprintable()):
            raise MalformedHeaderError(f"cannot write card {card!r}", hdu_index)
    return _pad(''.join(cards).encode('ascii'), b' ')


def encode_image(image: Optional[FitsImage]) -> bytes:
    """Pixels as big-endian stored values, zero padded to a block boundary."""
    if image is None or image.raw is None:
        return b''
    values = image.pixels()
    dtype = image.dtype
    if dtype.is_integer and dtype.bzero:
        signed = (values ^ values.dtype.type(dtype.bzero)).view(values.dtype.str.replace('u', 'i'))
        stored = signed.astype(dtype.storage_dtype)
    else:
        stored = values.astype(dtype.storage_dtype)
    return _pad(stored.tobytes(), b'\0')


def encode_hdu(hdu: HDU, hdu_index: int) -> bytes:
    return encode_header(hdu, hdu_index) + encode_image(hdu.image)


@log_errors
@log_performance
def write(path, fits: FitsFile, overwrite: bool = False):
    """
    Write every HDU of a FitsFile.

    Parameters:
    -----------
    path : str or os.PathLike
        Output file name, used literally
    fits : FitsFile
        File to serialise; it is not modified
    overwrite : bool
        Replace an existing file instead of failing

    Raises:
    -------
    FitsIOError
        If the file exists (without overwrite) or cannot be written
    UnsupportedOperationError
        For table or unknown HDUs. HDUs before the failing one stay in
        the output file.
    """
    if path is None:
        raise FitsIOError("no output path given")
    path = os.fspath(path)
    if fits.nhdus == 0:
        raise FitsIOError(f"refusing to write {path}: no HDUs")

    try:
        stream = open(path, 'wb' if overwrite else 'xb')
    except FileExistsError as e:
        raise FitsIOError(f"{path} already exists") from e
    except OSError as e:
        raise FitsIOError(f"cannot create {path}: {e.strerror or e}") from e

    with stream:
        for index, hdu in enumerate(fits, 1):
            try:
                stream.write(encode_hdu(hdu, index))
            except FITSError as e:
                if e.hdu_index is None:
                    e.hdu_index = index
                log_hdu_error("write", index, e.message)
                raise
            except OSError as e:
                raise FitsIOError(f"cannot write {path}: {e.strerror or e}", index) from e
        stream.flush()
        os.fsync(stream.fileno())
    logger.debug(f"Wrote {fits.nhdus} HDUs to {path}")


@contextmanager
def blocked_signals(signals=_CRITICAL_SIGNALS):
    """Block SIGINT and SIGTSTP for the calling thread (POSIX only)."""
    if not hasattr(signal, 'pthread_sigmask') or not signals:
        yield
        return
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, signals)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


@contextmanager
def _maybe_blocked(block: bool):
    if block:
        with blocked_signals():
            yield
    else:
        yield


@log_errors
def rewrite(fits: FitsFile, block_signals: bool = True):
    """
    Replace the file a FitsFile was read from with its current contents.

    The new contents are written to a temporary sibling of the resolved
    path and moved over the target with os.replace, so the target holds
    either the old or the new file at every moment. On failure the
    temporary file is removed and the original is left untouched. When
    the path cannot be resolved or no sibling can be created the file is
    overwritten directly.

    Parameters:
    -----------
    fits : FitsFile
        File to write back; fits.path is the target
    block_signals : bool
        Block SIGINT and SIGTSTP while the target is being replaced
    """
    if fits.path is None:
        raise FitsIOError("FitsFile has no path to rewrite")

    try:
        target = os.path.realpath(fits.path, strict=True)
    except OSError as e:
        logger.warning(f"cannot resolve {fits.path} ({e}), overwriting in place")
        write(fits.path, fits, overwrite=True)
        return

    directory = os.path.dirname(target)
    try:
        fd, tmp = tempfile.mkstemp(prefix=f".{os.path.basename(target)}.", suffix=".tmp",
                                   dir=directory)
    except OSError as e:
        logger.warning(f"cannot create a temporary file in {directory} ({e}), "
                       "overwriting in place")
        write(target, fits, overwrite=True)
        return
    os.close(fd)

    try:
        write(tmp, fits, overwrite=True)
        shutil.copymode(target, tmp)
        with _maybe_blocked(block_signals):
            os.replace(tmp, target)
            _sync_directory(directory)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    logger.debug(f"Rewrote {target}")


def _sync_directory(directory: str):
    if not hasattr(os, 'O_DIRECTORY'):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
