"""
FITS reading for fitsmanip.

Parses the 2880-byte block stream of a file into a FitsFile: for each HDU
the header cards become a KeywordList, image data is decoded into a
FitsImage (honouring BZERO/BSCALE) and table data into a FitsTable.
"""

import os
from typing import List, Optional, Tuple

import numpy as np

from .core import BLOCK_SIZE, CARD_SIZE, CARDS_PER_BLOCK, FITSDataTypeHandler
from .errors import (BufferAllocationError, FITSError, FitsIOError, MalformedHeaderError,
                     UnsupportedExtensionError)
from .hdu import HDU, FitsFile, HDUType
from .header_parser import HeaderParser
from .image import FitsImage
from .keywords import KeywordList
from .logging import log_errors, log_hdu_error, log_performance, logger
from .runtime import Runtime, resolve
from .table import read_table

_EXTENSION_TYPES = {
    'IMAGE': HDUType.IMAGE,
    'TABLE': HDUType.ASCII_TABLE,
    'BINTABLE': HDUType.BINARY_TABLE,
}


@log_errors
def open_fits(path) -> FitsFile:
    """
    Open a FITS file for reading.

    The path is used literally. Only the first card is checked here; HDUs
    are parsed by read_all().

    Raises:
        FitsIOError: If the file cannot be opened
        MalformedHeaderError: If the file does not start with SIMPLE
    """
    path = os.fspath(path)
    try:
        stream = open(path, 'rb')
    except OSError as e:
        raise FitsIOError(f"cannot open {path}: {e.strerror or e}") from e

    first = stream.read(CARD_SIZE)
    if not first.startswith(b'SIMPLE  ='):
        stream.close()
        raise MalformedHeaderError(f"{path} is not a FITS file", 1)
    stream.seek(0)

    fits = FitsFile(path)
    fits._stream = stream
    logger.debug(f"Opened {path}")
    return fits


@log_performance
def read_all(fits: FitsFile, strict: bool = False, runtime: Optional[Runtime] = None) -> FitsFile:
    """
    Read every HDU of an opened file.

    A malformed HDU is appended as an UNKNOWN HDU carrying the error, and
    reading stops there; HDUs read before it are kept. An extension of an
    unrecognised type is kept as UNKNOWN and skipped. With strict=True
    both conditions raise instead.

    Raises:
        BufferAllocationError: If pixel or table data cannot be allocated
        FITSError: In strict mode, for the first bad HDU
    """
    if fits._stream is None:
        if fits.path is None:
            raise FitsIOError("FitsFile has no path to read from")
        fits._stream = open_fits(fits.path)._stream

    runtime = resolve(runtime)
    stream = fits._stream
    stream.seek(0)
    fits.clear()
    index = 0
    try:
        while True:
            index += 1
            keywords = None
            try:
                cards = _read_header(stream, index)
                if cards is None:
                    break
                keywords = KeywordList.from_cards(cards)
                hdu = _read_hdu(stream, keywords, index, runtime)
            except BufferAllocationError:
                raise
            except UnsupportedExtensionError as e:
                if strict:
                    raise
                logger.warning(str(e))
                fits.append_hdu(HDU(HDUType.UNKNOWN, keywords, error=e))
                continue
            except FITSError as e:
                if e.hdu_index is None:
                    e.hdu_index = index
                log_hdu_error("read", index, e.message)
                if strict:
                    raise
                fits.append_hdu(HDU(HDUType.UNKNOWN, keywords, error=e))
                break
            fits.append_hdu(hdu)
    finally:
        stream.close()
        fits._stream = None

    logger.debug(f"Read {fits.nhdus} HDUs from {fits.path}")
    return fits


def read(path, strict: bool = False, runtime: Optional[Runtime] = None) -> FitsFile:
    """Open a file and read all of its HDUs."""
    return read_all(open_fits(path), strict=strict, runtime=runtime)


def _read_header(stream, hdu_index: int) -> Optional[List[str]]:
    """Cards of the next header up to END; None at the end of the file."""
    cards = []
    while True:
        block = stream.read(BLOCK_SIZE)
        if not cards and not block:
            return None
        if not cards and hdu_index > 1 and not block.startswith(b'XTENSION'):
            logger.warning(f"Ignoring {len(block)}+ trailing bytes after HDU {hdu_index - 1}")
            return None
        if len(block) < BLOCK_SIZE:
            raise MalformedHeaderError(
                f"truncated header block ({len(block)} of {BLOCK_SIZE} bytes)", hdu_index)
        try:
            text = block.decode('ascii')
        except UnicodeDecodeError as e:
            raise MalformedHeaderError(f"non-ASCII byte in header at {e.start}", hdu_index) from e

        for i in range(CARDS_PER_BLOCK):
            card = text[i * CARD_SIZE:(i + 1) * CARD_SIZE]
            HeaderParser.check_card(card, hdu_index)
            if card[:8].rstrip() == 'END':
                return cards
            cards.append(card)


def _axes(keywords: KeywordList, hdu_index: int) -> Tuple[int, ...]:
    naxis = keywords.get_value('NAXIS', None)
    if not isinstance(naxis, int) or isinstance(naxis, bool) or not 0 <= naxis <= 999:
        raise MalformedHeaderError(f"missing or invalid NAXIS = {naxis!r}", hdu_index)
    naxes = []
    for n in range(1, naxis + 1):
        size = keywords.get_value(f'NAXIS{n}', None)
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise MalformedHeaderError(
                f"NAXIS = {naxis} but NAXIS{n} is missing or invalid ({size!r})", hdu_index)
        naxes.append(size)
    return tuple(naxes)


def _bitpix(keywords: KeywordList, hdu_index: int) -> int:
    bitpix = keywords.get_value('BITPIX', None)
    if not isinstance(bitpix, int) or isinstance(bitpix, bool):
        raise MalformedHeaderError(f"missing or invalid BITPIX = {bitpix!r}", hdu_index)
    FITSDataTypeHandler.from_bitpix(bitpix, hdu_index)
    return bitpix


def _read_hdu(stream, keywords: KeywordList, hdu_index: int, runtime: Runtime) -> HDU:
    first = keywords[0] if len(keywords) else None
    if hdu_index == 1:
        if first is None or first.key != 'SIMPLE':
            raise MalformedHeaderError("primary header does not start with SIMPLE", hdu_index)
        xtension = 'IMAGE'
    else:
        if first is None or first.key != 'XTENSION':
            raise MalformedHeaderError("extension header does not start with XTENSION", hdu_index)
        xtension = str(first.value).strip().upper()

    bitpix = _bitpix(keywords, hdu_index)
    naxes = _axes(keywords, hdu_index)
    pcount = keywords.get_value('PCOUNT', 0)
    gcount = keywords.get_value('GCOUNT', 1)
    if not isinstance(pcount, int) or not isinstance(gcount, int) or pcount < 0 or gcount < 0:
        raise MalformedHeaderError(f"invalid PCOUNT/GCOUNT = {pcount!r}/{gcount!r}", hdu_index)

    # Random groups have NAXIS1 = 0 and do not count it
    groups = hdu_index == 1 and keywords.get_value('GROUPS', False) is True
    counted = naxes[1:] if groups else naxes
    npix = int(np.prod(counted, dtype=np.int64)) if counted else 0
    size = abs(bitpix) // 8 * gcount * (pcount + npix) if naxes else 0
    padded = FITSDataTypeHandler.storage_bytes(size)

    hdutype = _EXTENSION_TYPES.get(xtension, HDUType.UNKNOWN)
    if groups:
        hdutype = HDUType.UNKNOWN
    if hdutype == HDUType.UNKNOWN:
        _skip(stream, padded, hdu_index)
        raise UnsupportedExtensionError(
            f"unsupported extension type {xtension!r}, data skipped", hdu_index)

    runtime.check_allocation(size, f"HDU {hdu_index} data")
    raw = stream.read(size)
    if len(raw) < size:
        raise MalformedHeaderError(
            f"truncated data block ({len(raw)} of {size} bytes)", hdu_index)
    if len(stream.read(padded - size)) < padded - size:
        logger.warning(f"HDU {hdu_index}: data padding is incomplete")

    if hdutype == HDUType.IMAGE:
        image, nundef = decode_image(keywords, raw, naxes, bitpix, hdu_index)
        if nundef:
            logger.warning(f"HDU {hdu_index}: found {nundef} pixels with undefined value")
        return HDU(hdutype, keywords, image)

    table = read_table(keywords, raw, ascii=hdutype == HDUType.ASCII_TABLE,
                       hdu_index=hdu_index)
    return HDU(hdutype, keywords, table)


def _skip(stream, nbytes: int, hdu_index: int):
    start = stream.tell()
    stream.seek(0, os.SEEK_END)
    end = stream.tell()
    if end - start < nbytes:
        raise MalformedHeaderError(f"truncated data block ({end - start} of {nbytes} bytes)",
                                   hdu_index)
    stream.seek(start + nbytes)


def _scaling(keywords: KeywordList, hdu_index: Optional[int]):
    bzero = keywords.get_value('BZERO', 0)
    bscale = keywords.get_value('BSCALE', 1)
    for key, value in (('BZERO', bzero), ('BSCALE', bscale)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedHeaderError(f"invalid {key} = {value!r}", hdu_index)
    if bscale == 0:
        raise MalformedHeaderError("BSCALE = 0", hdu_index)
    return bzero, bscale


def decode_image(keywords: KeywordList, raw: bytes, naxes: Tuple[int, ...], bitpix: int,
                 hdu_index: Optional[int] = None) -> Tuple[FitsImage, int]:
    """
    Decode big-endian image data into a FitsImage.

    Unsigned data stored with the BZERO = 2**(BITPIX-1) convention is
    restored exactly. Integer data without scaling keeps its BITPIX when
    no value is negative. Any other scaling, or negative integers, gives a
    BITPIX -64 image of logical values.

    Returns:
        (image, number of undefined pixels from BLANK or NaN)
    """
    dtype = FITSDataTypeHandler.from_bitpix(bitpix, hdu_index)
    totpix = int(np.prod(naxes, dtype=np.int64)) if naxes else 0
    if totpix == 0:
        return FitsImage(naxes, bitpix), 0

    stored = np.frombuffer(raw, dtype=dtype.storage_dtype, count=totpix)
    native = stored.astype(stored.dtype.newbyteorder('='))
    bzero, bscale = _scaling(keywords, hdu_index)

    if not dtype.is_integer:
        nundef = int(np.count_nonzero(np.isnan(native)))
        if bzero == 0 and bscale == 1:
            return FitsImage(naxes, bitpix, native.view(np.uint8)), nundef
        logger.debug(f"HDU {hdu_index}: applying BZERO={bzero} BSCALE={bscale}")
        scaled = native.astype(np.float64) * bscale + bzero
        return FitsImage(naxes, -64, scaled.view(np.uint8)), nundef

    blank = keywords.get_value('BLANK', None)
    if blank is not None and (isinstance(blank, bool) or not isinstance(blank, int)):
        raise MalformedHeaderError(f"invalid BLANK = {blank!r}", hdu_index)
    nundef = int(np.count_nonzero(native == blank)) if blank is not None else 0

    if bscale == 1 and dtype.bzero and bzero == dtype.bzero:
        sign = dtype.numpy_dtype.type(dtype.bzero)
        unsigned = native.view(dtype.numpy_dtype) ^ sign
        image = FitsImage(naxes, bitpix, unsigned.view(np.uint8))
        image.blank = blank + dtype.bzero if blank is not None else None
        return image, nundef

    if bscale == 1 and bzero == 0 and (bitpix == 8 or native.min() >= 0):
        image = FitsImage(naxes, bitpix, native.astype(dtype.numpy_dtype).view(np.uint8))
        image.blank = blank if blank is not None and blank >= 0 else None
        return image, nundef

    logger.warning(f"HDU {hdu_index}: pixel values do not fit unsigned BITPIX {bitpix} "
                   "storage, promoted to BITPIX -64")
    scaled = native.astype(np.float64) * bscale + bzero
    return FitsImage(naxes, -64, scaled.view(np.uint8)), nundef
