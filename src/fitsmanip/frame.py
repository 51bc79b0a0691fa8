"""
Export of FITS tables to torch_frame TensorFrames.
"""

import warnings
from typing import Any, Dict, Union

import torch

from .table import ColumnType, FitsTable

try:
    from torch_frame import TensorFrame, stype

    HAS_TORCH_FRAME = True
except ImportError:
    HAS_TORCH_FRAME = False
    TensorFrame = Any  # type placeholder

_NUMERICAL = (ColumnType.BYTE, ColumnType.SBYTE, ColumnType.SHORT, ColumnType.USHORT,
              ColumnType.INT, ColumnType.UINT, ColumnType.FLOAT, ColumnType.DOUBLE)
_CATEGORICAL = (ColumnType.LOGICAL, ColumnType.LONGLONG, ColumnType.ULONGLONG)


def table_columns(table: FitsTable) -> Dict[str, torch.Tensor]:
    """Tensors of the scalar, single-element columns of a table."""
    data = {}
    for col in table.columns:
        if col.is_scalar and col.repeat == 1 and col.typecode != ColumnType.BIT:
            data[col.name] = col.to_tensor()
        else:
            warnings.warn(f"Skipping column {col.name} of type {col.typecode.name} "
                          f"with repeat {col.repeat}")
    return data


def to_tensor_frame(table: Union[FitsTable, Dict[str, torch.Tensor]]) -> TensorFrame:
    """
    Convert a FITS table to a torch_frame TensorFrame.

    Numeric columns become numerical features (as float32); logical and
    64-bit integer columns become categorical features. Vector, string,
    bit and variable-length columns are skipped with a warning.

    Args:
        table: A FitsTable, or a mapping of column names to 1-D tensors

    Returns:
        A torch_frame.TensorFrame object.

    Raises:
        ImportError: If torch_frame is not installed.
        ValueError: If no column can be converted.
    """
    if not HAS_TORCH_FRAME:
        raise ImportError(
            "torch-frame is not installed. Please install it with 'pip install pytorch-frame'."
        )

    if isinstance(table, FitsTable):
        kinds = {c.name: c.typecode for c in table.columns}
        data = table_columns(table)
    else:
        kinds = {}
        data = table
    if not data:
        raise ValueError("Input data is empty")

    num_cols, num_col_names = [], []
    cat_cols, cat_col_names = [], []

    for name, tensor in data.items():
        kind = kinds.get(name)
        categorical = kind in _CATEGORICAL if kind is not None else \
            tensor.dtype in (torch.int64, torch.bool)
        if tensor.dim() == 1:
            tensor = tensor.unsqueeze(1)
        if categorical:
            cat_cols.append(tensor.to(torch.int64))
            cat_col_names.append(name)
        elif kind in _NUMERICAL or tensor.is_floating_point() or kind is None:
            # torch-frame expects float for numerical
            num_cols.append(tensor.to(torch.float32))
            num_col_names.append(name)
        else:
            warnings.warn(f"Skipping column {name} with unsupported type {kind}")

    feat_dict = {}
    col_names_dict = {}

    if num_cols:
        feat_dict[stype.numerical] = torch.cat(num_cols, dim=1)
        col_names_dict[stype.numerical] = num_col_names

    if cat_cols:
        feat_dict[stype.categorical] = torch.cat(cat_cols, dim=1)
        col_names_dict[stype.categorical] = cat_col_names

    if not feat_dict:
        raise ValueError("No valid columns found to convert to TensorFrame")

    return TensorFrame(feat_dict=feat_dict, col_names_dict=col_names_dict)
