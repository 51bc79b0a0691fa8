"""
Read-only table model for fitsmanip.

Decodes ASCII (XTENSION='TABLE') and binary (XTENSION='BINTABLE') table
HDUs into TableColumn objects. Scalar columns hold a native-endian numpy
array shaped (rows, repeat); string columns hold Python strings and
variable-length columns hold one array per row.
"""

import re
from enum import IntEnum
from typing import Any, Dict, List, Optional

import numpy as np
import torch

from .errors import KeyNotFoundError, MalformedHeaderError, UnsupportedOperationError
from .keywords import KeywordList
from .logging import logger


class ColumnType(IntEnum):
    """Column type codes, numbered like the cfitsio datatype codes."""
    BIT = 1
    BYTE = 11
    SBYTE = 12
    LOGICAL = 14
    STRING = 16
    USHORT = 20
    SHORT = 21
    UINT = 30
    INT = 31
    FLOAT = 42
    ULONGLONG = 80
    LONGLONG = 81
    DOUBLE = 82
    COMPLEX = 83
    DBLCOMPLEX = 163
    VARLEN = -1


# TFORM letter -> (type, bytes per element, big-endian storage dtype)
_BINARY_FORMS = {
    'L': (ColumnType.LOGICAL, 1, '>u1'),
    'X': (ColumnType.BIT, 1, '>u1'),
    'B': (ColumnType.BYTE, 1, '>u1'),
    'I': (ColumnType.SHORT, 2, '>i2'),
    'J': (ColumnType.INT, 4, '>i4'),
    'K': (ColumnType.LONGLONG, 8, '>i8'),
    'A': (ColumnType.STRING, 1, 'S1'),
    'E': (ColumnType.FLOAT, 4, '>f4'),
    'D': (ColumnType.DOUBLE, 8, '>f8'),
    'C': (ColumnType.COMPLEX, 8, '>c8'),
    'M': (ColumnType.DBLCOMPLEX, 16, '>c16'),
    'P': (ColumnType.VARLEN, 8, '>i4'),
    'Q': (ColumnType.VARLEN, 16, '>i8'),
}

# Storage type and TZERO giving the unsigned or signed-byte variants
_OFFSET_TYPES = {
    (ColumnType.BYTE, -128): (ColumnType.SBYTE, np.int8),
    (ColumnType.SHORT, 1 << 15): (ColumnType.USHORT, np.uint16),
    (ColumnType.INT, 1 << 31): (ColumnType.UINT, np.uint32),
    (ColumnType.LONGLONG, 1 << 63): (ColumnType.ULONGLONG, np.uint64),
}

_BINARY_TFORM = re.compile(r'^\s*(\d*)([LXBIJKAEDCMPQ])(?:([LXBIJKAEDCM])(?:\((\d+)\))?)?.*$')
_ASCII_TFORM = re.compile(r'^\s*([AIFED])(\d+)(?:\.(\d+))?\s*$')


class TableColumn:
    """
    One table column.

    Attributes:
        name: TTYPEn value
        unit: TUNITn value
        format: TFORMn value
        typecode: ColumnType
        width: bytes per element (1 for strings, bits and logicals)
        repeat: elements per row (characters for strings)
        nrows: number of rows
        data: (nrows, repeat) array, list of str for STRING, list of
            arrays for VARLEN
        null: TNULLn value, if any
        element_type: element ColumnType of a VARLEN column
    """

    def __init__(self, name: str, typecode: ColumnType, width: int, repeat: int, nrows: int,
                 data: Any, unit: str = '', format: str = '', null: Any = None,
                 tscal: float = 1.0, tzero: float = 0.0,
                 element_type: Optional[ColumnType] = None):
        self.name = name
        self.unit = unit
        self.format = format
        self.typecode = typecode
        self.width = width
        self.repeat = repeat
        self.nrows = nrows
        self.data = data
        self.null = null
        self.tscal = tscal
        self.tzero = tzero
        self.element_type = element_type

    @property
    def is_scalar(self) -> bool:
        return self.typecode not in (ColumnType.STRING, ColumnType.VARLEN)

    @property
    def nbytes(self) -> int:
        if self.is_scalar:
            return self.data.nbytes
        return sum(len(v) for v in self.data) if self.typecode == ColumnType.STRING else \
            sum(np.asarray(v).nbytes for v in self.data)

    def to_tensor(self) -> torch.Tensor:
        """Scalar column as a tensor, squeezed to 1-D when repeat is 1."""
        if not self.is_scalar:
            raise UnsupportedOperationError(f"column {self.name} of type {self.typecode.name} "
                                            "has no tensor form")
        data = self.data
        # torch has no general support for wide unsigned types
        if data.dtype == np.uint16:
            data = data.astype(np.int32)
        elif data.dtype in (np.uint32, np.uint64):
            data = data.astype(np.int64)
        tensor = torch.from_numpy(np.ascontiguousarray(data))
        return tensor[:, 0] if self.repeat == 1 else tensor

    def copy(self) -> 'TableColumn':
        if self.is_scalar:
            data = self.data.copy()
        elif self.typecode == ColumnType.STRING:
            data = list(self.data)
        else:
            data = [np.array(v, copy=True) for v in self.data]
        return TableColumn(self.name, self.typecode, self.width, self.repeat, self.nrows, data,
                           self.unit, self.format, self.null, self.tscal, self.tzero,
                           self.element_type)

    def cell(self, row: int) -> Any:
        value = self.data[row]
        if self.is_scalar and self.repeat == 1:
            return value[0].item()
        return value

    def __len__(self):
        return self.nrows

    def __repr__(self):
        return (f"TableColumn({self.name!r}, {self.typecode.name}, format={self.format!r}, "
                f"repeat={self.repeat}, rows={self.nrows})")


class FitsTable:
    """Columns of a table HDU."""

    def __init__(self, columns: List[TableColumn], nrows: int, name: Optional[str] = None,
                 ascii: bool = False):
        self.columns = columns
        self.nrows = nrows
        self.name = name
        self.ascii = ascii

    @property
    def ncols(self) -> int:
        return len(self.columns)

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> TableColumn:
        """Column by name, ignoring case."""
        for col in self.columns:
            if col.name.upper() == name.upper():
                return col
        raise KeyNotFoundError(f"no column named {name!r}")

    def copy(self) -> 'FitsTable':
        return FitsTable([c.copy() for c in self.columns], self.nrows, self.name, self.ascii)

    def to_tensor_frame(self):
        from .frame import to_tensor_frame
        return to_tensor_frame(self)

    def format(self, max_rows: Optional[int] = None) -> str:
        """Text listing: column descriptions followed by the rows."""
        kind = "ASCII" if self.ascii else "binary"
        lines = [f"{kind} table {self.name or ''} with {self.ncols} columns "
                 f"and {self.nrows} rows".replace("  ", " ")]
        for n, col in enumerate(self.columns, 1):
            unit = f" [{col.unit}]" if col.unit else ""
            lines.append(f"  {n:3d} {col.name:<16} {col.format:<8} {col.typecode.name}{unit}")
        nshow = self.nrows if max_rows is None else min(self.nrows, max_rows)
        for row in range(nshow):
            cells = []
            for col in self.columns:
                value = col.cell(row)
                if isinstance(value, np.ndarray):
                    value = value.tolist()
                cells.append(str(value))
            lines.append(" | ".join(cells))
        if nshow < self.nrows:
            lines.append(f"... {self.nrows - nshow} more rows")
        return "\n".join(lines)

    def __getitem__(self, key) -> TableColumn:
        if isinstance(key, int):
            return self.columns[key]
        return self.column(key)

    def __len__(self):
        return self.nrows

    def __iter__(self):
        return iter(self.columns)

    def __repr__(self):
        return f"FitsTable(name={self.name!r}, columns={self.names}, rows={self.nrows})"


def _required_int(keywords: KeywordList, key: str, hdu_index: Optional[int]) -> int:
    value = keywords.get_value(key, None)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise MalformedHeaderError(f"missing or invalid {key}", hdu_index)
    return value


def _column_info(keywords: KeywordList, n: int) -> Dict[str, Any]:
    name = keywords.get_value(f"TTYPE{n}", None)
    return {
        "name": str(name).strip() if name is not None else f"COL{n}",
        "unit": str(keywords.get_value(f"TUNIT{n}", "") or "").strip(),
        "null": keywords.get_value(f"TNULL{n}", None),
        "tscal": keywords.get_value(f"TSCAL{n}", 1.0),
        "tzero": keywords.get_value(f"TZERO{n}", 0.0),
    }


def read_table(keywords: KeywordList, raw: bytes, ascii: bool = False,
               hdu_index: Optional[int] = None) -> FitsTable:
    """
    Decode a table HDU from its keywords and its data section.

    Args:
        keywords: Header records of the HDU
        raw: Data section (rows followed by the heap), padding optional
        ascii: True for XTENSION='TABLE'
        hdu_index: HDU number used in error messages

    Raises:
        MalformedHeaderError: If table keywords are missing or inconsistent
    """
    row_bytes = _required_int(keywords, "NAXIS1", hdu_index)
    nrows = _required_int(keywords, "NAXIS2", hdu_index)
    nfields = _required_int(keywords, "TFIELDS", hdu_index)
    if len(raw) < row_bytes * nrows:
        raise MalformedHeaderError(
            f"table data truncated: {len(raw)} bytes for {nrows} rows of {row_bytes}", hdu_index)

    rows = np.frombuffer(raw, dtype=np.uint8, count=row_bytes * nrows).reshape(nrows, row_bytes)
    name = keywords.get_value("EXTNAME", None)
    if ascii:
        columns = [_read_ascii_column(keywords, rows, n, hdu_index) for n in range(1, nfields + 1)]
    else:
        heap_start = keywords.get_value("THEAP", row_bytes * nrows)
        heap = np.frombuffer(raw, dtype=np.uint8)[heap_start:]
        columns = []
        offset = 0
        for n in range(1, nfields + 1):
            col, size = _read_binary_column(keywords, rows, heap, n, offset, hdu_index)
            columns.append(col)
            offset += size
        if offset > row_bytes:
            raise MalformedHeaderError(
                f"columns need {offset} bytes per row but NAXIS1 = {row_bytes}", hdu_index)

    logger.debug(f"Read {'ASCII' if ascii else 'binary'} table with {nfields} columns, {nrows} rows")
    return FitsTable(columns, nrows, name=name, ascii=ascii)


def _decode_strings(block: np.ndarray) -> List[str]:
    return [bytes(row).rstrip(b'\0 ').decode('ascii', errors='replace') for row in block]


def _read_binary_column(keywords, rows, heap, n, offset, hdu_index):
    tform = keywords.get_value(f"TFORM{n}", None)
    match = _BINARY_TFORM.match(tform) if isinstance(tform, str) else None
    if match is None:
        raise MalformedHeaderError(f"invalid TFORM{n} = {tform!r}", hdu_index)
    repeat = int(match.group(1)) if match.group(1) else 1
    code = match.group(2)
    typecode, width, storage = _BINARY_FORMS[code]
    info = _column_info(keywords, n)
    nrows = rows.shape[0]

    if code == 'X':
        size = (repeat + 7) // 8
    else:
        size = width * repeat
    block = rows[:, offset:offset + size]

    if typecode == ColumnType.VARLEN:
        inner = match.group(3)
        if inner is None or repeat > 1:
            raise MalformedHeaderError(f"invalid variable-length TFORM{n} = {tform!r}", hdu_index)
        descriptors = np.ascontiguousarray(block).view(storage).astype(np.int64).reshape(nrows, 2)
        data = [_read_heap_array(heap, inner, int(count), int(start), hdu_index)
                for count, start in descriptors]
        element_type = _BINARY_FORMS[inner][0]
        col = TableColumn(info["name"], ColumnType.VARLEN, width, 1, nrows, data,
                          unit=info["unit"], format=tform.strip(), element_type=element_type)
        return col, size

    if typecode == ColumnType.STRING:
        data = _decode_strings(block)
        return TableColumn(info["name"], typecode, 1, repeat, nrows, data,
                           unit=info["unit"], format=tform.strip()), size

    if typecode == ColumnType.BIT:
        bits = np.unpackbits(np.ascontiguousarray(block), axis=1)[:, :repeat].astype(bool)
        return TableColumn(info["name"], typecode, 1, repeat, nrows, bits,
                           unit=info["unit"], format=tform.strip()), size

    if typecode == ColumnType.LOGICAL:
        data = np.ascontiguousarray(block) == ord('T')
        return TableColumn(info["name"], typecode, 1, repeat, nrows, data,
                           unit=info["unit"], format=tform.strip()), size

    values = np.ascontiguousarray(block).view(storage).reshape(nrows, repeat)
    data = values.astype(values.dtype.newbyteorder('='))
    tzero, tscal = info["tzero"], info["tscal"]
    offset_type = _OFFSET_TYPES.get((typecode, tzero)) if tscal == 1 else None
    if offset_type is not None:
        typecode, target = offset_type
        unsigned = data.view(np.dtype(data.dtype.str.replace('i', 'u')))
        sign = unsigned.dtype.type(1 << (8 * width - 1))
        data = (unsigned ^ sign).view(target)
        tzero, tscal = 0.0, 1.0

    col = TableColumn(info["name"], typecode, width, repeat, nrows, data,
                      unit=info["unit"], format=tform.strip(), null=info["null"],
                      tscal=tscal, tzero=tzero)
    return col, size


def _read_heap_array(heap, code, count, start, hdu_index):
    typecode, width, storage = _BINARY_FORMS[code]
    nbytes = (count + 7) // 8 if code == 'X' else count * width
    if start < 0 or start + nbytes > heap.size:
        raise MalformedHeaderError("variable-length array outside the heap", hdu_index)
    chunk = heap[start:start + nbytes]
    if code == 'A':
        return bytes(chunk).rstrip(b'\0 ').decode('ascii', errors='replace')
    if code == 'X':
        return np.unpackbits(chunk)[:count].astype(bool)
    if code == 'L':
        return chunk == ord('T')
    values = np.ascontiguousarray(chunk).view(storage)
    return values.astype(values.dtype.newbyteorder('='))


def _read_ascii_column(keywords, rows, n, hdu_index):
    tform = keywords.get_value(f"TFORM{n}", None)
    match = _ASCII_TFORM.match(tform) if isinstance(tform, str) else None
    if match is None:
        raise MalformedHeaderError(f"invalid TFORM{n} = {tform!r}", hdu_index)
    tbcol = keywords.get_value(f"TBCOL{n}", None)
    code, width = match.group(1), int(match.group(2))
    decimals = int(match.group(3)) if match.group(3) else 0
    if not isinstance(tbcol, int) or tbcol < 1 or tbcol - 1 + width > rows.shape[1]:
        raise MalformedHeaderError(f"invalid TBCOL{n} = {tbcol!r}", hdu_index)

    info = _column_info(keywords, n)
    nrows = rows.shape[0]
    fields = [bytes(r).decode('ascii', errors='replace')
              for r in rows[:, tbcol - 1:tbcol - 1 + width]]

    if code == 'A':
        return TableColumn(info["name"], ColumnType.STRING, 1, width, nrows,
                           [f.rstrip() for f in fields], unit=info["unit"], format=tform.strip())

    null = info["null"]
    null_text = str(null).strip() if null is not None else None
    if code == 'I':
        typecode = ColumnType.INT if width <= 9 else ColumnType.LONGLONG
        dtype = np.int32 if typecode == ColumnType.INT else np.int64
        fill = int(null) if isinstance(null, int) else 0
    else:
        typecode = ColumnType.FLOAT if code == 'E' else ColumnType.DOUBLE
        dtype = np.float32 if typecode == ColumnType.FLOAT else np.float64
        fill = np.nan

    data = np.empty((nrows, 1), dtype=dtype)
    for row, field in enumerate(fields):
        text = field.strip()
        if not text or text == null_text:
            data[row, 0] = fill
            continue
        try:
            if code == 'I':
                data[row, 0] = int(text)
            else:
                data[row, 0] = _ascii_real(text, decimals)
        except ValueError as e:
            raise MalformedHeaderError(
                f"cannot parse {text!r} in column {info['name']} row {row + 1}", hdu_index) from e

    return TableColumn(info["name"], typecode, np.dtype(dtype).itemsize, 1, nrows, data,
                       unit=info["unit"], format=tform.strip(), null=null)


def _ascii_real(text: str, decimals: int) -> float:
    text = text.replace('D', 'E').replace('d', 'e').replace(' ', '')
    if '.' not in text and decimals:
        mantissa, _, exponent = text.upper().partition('E')
        value = int(mantissa) / 10 ** decimals
        return value * 10 ** int(exponent) if exponent else value
    return float(text)
