"""
HDU container classes for fitsmanip.

This module implements the in-memory structure of a FITS file:
- HDUType: type tag of an HDU
- HDU: keyword list plus a payload that agrees with the tag
- FitsFile: 1-based sequence of HDUs with a cursor
"""

import os
from enum import IntEnum
from typing import BinaryIO, Iterator, List, Optional, Union

from .errors import PayloadTypeError
from .image import FitsImage
from .keywords import KeywordList
from .table import FitsTable


class HDUType(IntEnum):
    """HDU type tags, numbered like the cfitsio HDU types."""
    IMAGE = 0
    ASCII_TABLE = 1
    BINARY_TABLE = 2
    UNKNOWN = -1

    @property
    def is_table(self) -> bool:
        return self in (HDUType.ASCII_TABLE, HDUType.BINARY_TABLE)


Payload = Union[FitsImage, FitsTable, None]


class HDU:
    """
    One header/data unit.

    The payload kind must match the type tag: a FitsImage (or None for an
    image not loaded yet) for IMAGE, a FitsTable for the table types and
    nothing for UNKNOWN.
    """

    def __init__(self, hdutype: HDUType = HDUType.IMAGE, keywords: Optional[KeywordList] = None,
                 payload: Payload = None, error: Optional[Exception] = None):
        self.hdutype = HDUType(hdutype)
        self.keywords = keywords if keywords is not None else KeywordList()
        self._check_payload(payload)
        self._payload = payload
        self.error = error

    def _check_payload(self, payload: Payload):
        if payload is None:
            return
        if self.hdutype == HDUType.IMAGE and isinstance(payload, FitsImage):
            return
        if self.hdutype.is_table and isinstance(payload, FitsTable):
            return
        raise PayloadTypeError(
            f"{type(payload).__name__} payload does not match {self.hdutype.name} HDU")

    @property
    def payload(self) -> Payload:
        return self._payload

    @payload.setter
    def payload(self, payload: Payload):
        self._check_payload(payload)
        self._payload = payload

    @property
    def image(self) -> Optional[FitsImage]:
        """Image payload; raises PayloadTypeError for other HDU types."""
        if self.hdutype != HDUType.IMAGE:
            raise PayloadTypeError(f"{self.hdutype.name} HDU has no image payload")
        return self._payload

    @image.setter
    def image(self, img: FitsImage):
        if self.hdutype != HDUType.IMAGE:
            raise PayloadTypeError(f"{self.hdutype.name} HDU cannot hold an image")
        self.payload = img

    @property
    def table(self) -> FitsTable:
        """Table payload; raises PayloadTypeError for other HDU types."""
        if not self.hdutype.is_table:
            raise PayloadTypeError(f"{self.hdutype.name} HDU has no table payload")
        return self._payload

    @property
    def name(self) -> Optional[str]:
        return self.keywords.get_value("EXTNAME", None)

    def release(self):
        """Drop the payload and the keyword list."""
        self._payload = None
        self.keywords = KeywordList()

    def __repr__(self):
        name = f", name={self.name!r}" if self.name else ""
        return f"HDU({self.hdutype.name}{name}, {len(self.keywords)} records, payload={self._payload!r})"


class FitsFile:
    """
    A FITS file: HDUs numbered from 1 and a cursor on the current one.

    Slot 0 of the HDU array is never used. Appending moves the cursor to
    the new HDU; removing an HDU invalidates the cursor.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = os.fspath(path) if path is not None else None
        self._hdus: List[Optional[HDU]] = [None]
        self._cursor = 0
        self._stream: Optional[BinaryIO] = None

    @classmethod
    def open(cls, path) -> 'FitsFile':
        """Open a file for reading; HDUs are loaded by read_all()."""
        from .fits_reader import open_fits
        return open_fits(path)

    def read_all(self, strict: bool = False) -> 'FitsFile':
        from .fits_reader import read_all
        return read_all(self, strict=strict)

    def write(self, path=None, overwrite: bool = False):
        from .fits_writer import write
        write(path if path is not None else self.path, self, overwrite=overwrite)

    def rewrite(self, block_signals: bool = True):
        from .fits_writer import rewrite
        rewrite(self, block_signals=block_signals)

    @property
    def nhdus(self) -> int:
        return len(self._hdus) - 1

    @property
    def cursor(self) -> Optional[HDU]:
        """Current HDU, None when empty or after a removal."""
        return self._hdus[self._cursor] if self._cursor else None

    @property
    def cursor_index(self) -> int:
        return self._cursor

    def append_hdu(self, hdutype: HDUType = HDUType.IMAGE, keywords: Optional[KeywordList] = None,
                   payload: Payload = None) -> HDU:
        """Append a new HDU and move the cursor to it."""
        hdu = hdutype if isinstance(hdutype, HDU) else HDU(hdutype, keywords, payload)
        self._hdus.append(hdu)
        self._cursor = self.nhdus
        return hdu

    def nth(self, index: int) -> HDU:
        """HDU number index, counting from 1."""
        if not 1 <= index <= self.nhdus:
            raise IndexError(f"HDU {index} out of range 1..{self.nhdus}")
        return self._hdus[index]

    def select(self, index: int) -> HDU:
        hdu = self.nth(index)
        self._cursor = index
        return hdu

    def remove_hdu(self, index: int) -> HDU:
        hdu = self.nth(index)
        del self._hdus[index]
        self._cursor = 0
        return hdu

    def images(self) -> Iterator[HDU]:
        return (hdu for hdu in self if hdu.hdutype == HDUType.IMAGE)

    def first_image(self) -> Optional[HDU]:
        """First image HDU that carries pixels."""
        for hdu in self.images():
            if hdu.image is not None and not hdu.image.is_header_only:
                return hdu
        return None

    def clear(self):
        """Release every HDU."""
        for hdu in self._hdus[1:]:
            hdu.release()
        self._hdus = [None]
        self._cursor = 0

    def close(self):
        """Release the open stream and every payload."""
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        self.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __iter__(self) -> Iterator[HDU]:
        return iter(self._hdus[1:])

    def __len__(self):
        return self.nhdus

    def __getitem__(self, index: int) -> HDU:
        return self.nth(index)

    def __repr__(self):
        return f"FitsFile({self.path!r}, {self.nhdus} HDUs)"
