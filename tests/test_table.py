"""
Test table reading functionality.
"""

import numpy as np
import pytest
import torch
from astropy.io import fits
from astropy.table import Table

import fitsmanip
from fitsmanip.errors import KeyNotFoundError, MalformedHeaderError, UnsupportedOperationError
from fitsmanip.hdu import HDUType
from fitsmanip.keywords import KeywordList
from fitsmanip.table import ColumnType, read_table


@pytest.fixture
def binary_table_file(tmp_path):
    """Binary table covering scalar, vector, string, logical and heap columns."""
    path = tmp_path / "bintable.fits"
    cols = fits.ColDefs([
        fits.Column(name='ID', format='J', array=np.array([1, 2, 3], dtype=np.int32)),
        fits.Column(name='RA', format='D', unit='deg', array=np.array([120.1, 120.2, 120.3])),
        fits.Column(name='MAG', format='E', array=np.array([20.5, 21.0, 19.25], dtype=np.float32)),
        fits.Column(name='FLAG', format='B', array=np.array([0, 1, 255], dtype=np.uint8)),
        fits.Column(name='NAME', format='10A', array=np.array(['NGC1001', 'NGC1002', 'M31'])),
        fits.Column(name='OK', format='L', array=np.array([True, False, True])),
        fits.Column(name='VEC', format='3E',
                    array=np.arange(9, dtype=np.float32).reshape(3, 3)),
        fits.Column(name='VAR', format='PJ()',
                    array=np.array([[1], [2, 3], [4, 5, 6]], dtype=object)),
    ])
    hdu = fits.BinTableHDU.from_columns(cols, name='CAT')
    fits.HDUList([fits.PrimaryHDU(), hdu]).writeto(path)
    return path


@pytest.fixture
def ascii_table_file(tmp_path):
    path = tmp_path / "ascii.fits"
    cols = fits.ColDefs([
        fits.Column(name="a", format="I4", array=np.array([1, 2, 3])),
        fits.Column(name="b", format="F8.2", array=np.array([4.5, 5.5, 6.5])),
        fits.Column(name="c", format="A10", array=np.array(["x", "y", "z"])),
    ])
    fits.HDUList([fits.PrimaryHDU(), fits.TableHDU.from_columns(cols)]).writeto(path)
    return path


class TestBinaryTable:
    """Test binary table decoding."""

    def test_layout(self, binary_table_file):
        f = fitsmanip.read(binary_table_file)
        assert f.nhdus == 2
        hdu = f[2]
        assert hdu.hdutype == HDUType.BINARY_TABLE
        table = hdu.table
        assert table.name == 'CAT'
        assert table.nrows == 3
        assert table.names == ['ID', 'RA', 'MAG', 'FLAG', 'NAME', 'OK', 'VEC', 'VAR']
        assert table['RA'].unit == 'deg'

    def test_scalar_columns(self, binary_table_file):
        table = fitsmanip.read(binary_table_file)[2].table
        col = table.column('id')
        assert col.typecode == ColumnType.INT
        assert col.cell(0) == 1
        torch.testing.assert_close(col.to_tensor(), torch.tensor([1, 2, 3], dtype=torch.int32))
        np.testing.assert_allclose(table['RA'].to_tensor().numpy(), [120.1, 120.2, 120.3])
        assert table['MAG'].typecode == ColumnType.FLOAT
        assert table['FLAG'].typecode == ColumnType.BYTE
        assert table['FLAG'].cell(2) == 255

    def test_strings_and_logicals(self, binary_table_file):
        table = fitsmanip.read(binary_table_file)[2].table
        assert table['NAME'].typecode == ColumnType.STRING
        assert table['NAME'].data == ['NGC1001', 'NGC1002', 'M31']
        with pytest.raises(UnsupportedOperationError):
            table['NAME'].to_tensor()
        assert table['OK'].typecode == ColumnType.LOGICAL
        assert table['OK'].data[:, 0].tolist() == [True, False, True]

    def test_vector_column(self, binary_table_file):
        col = fitsmanip.read(binary_table_file)[2].table['VEC']
        assert col.repeat == 3
        assert col.to_tensor().shape == (3, 3)
        assert col.to_tensor()[2, 1].item() == 7.0

    def test_variable_length_column(self, binary_table_file):
        col = fitsmanip.read(binary_table_file)[2].table['VAR']
        assert col.typecode == ColumnType.VARLEN
        assert col.element_type == ColumnType.INT
        assert [a.tolist() for a in col.data] == [[1], [2, 3], [4, 5, 6]]

    def test_unsigned_column(self, tmp_path):
        path = tmp_path / "unsigned.fits"
        Table({'U16': np.array([0, 40000, 65535], dtype=np.uint16),
               'U32': np.array([0, 1, 4000000000], dtype=np.uint32)}).write(path, format='fits')
        table = fitsmanip.read(path)[2].table
        u16 = table['U16']
        assert u16.typecode == ColumnType.USHORT
        assert u16.data[:, 0].tolist() == [0, 40000, 65535]
        assert u16.to_tensor().dtype == torch.int32
        u32 = table['U32']
        assert u32.typecode == ColumnType.UINT
        assert u32.to_tensor().tolist() == [0, 1, 4000000000]

    def test_format_and_copy(self, binary_table_file):
        table = fitsmanip.read(binary_table_file)[2].table
        text = table.format(max_rows=2)
        assert 'NGC1001' in text
        assert '... 1 more rows' in text
        dup = table.copy()
        dup['ID'].data[0, 0] = 99
        assert table['ID'].cell(0) == 1

    def test_missing_column(self, binary_table_file):
        table = fitsmanip.read(binary_table_file)[2].table
        with pytest.raises(KeyNotFoundError):
            table.column('nope')

    def test_image_accessor_rejected(self, binary_table_file):
        hdu = fitsmanip.read(binary_table_file)[2]
        with pytest.raises(TypeError):
            hdu.image


class TestAsciiTable:
    def test_ascii_table(self, ascii_table_file):
        f = fitsmanip.read(ascii_table_file)
        hdu = f[2]
        assert hdu.hdutype == HDUType.ASCII_TABLE
        table = hdu.table
        assert table.ascii
        assert table['a'].typecode == ColumnType.INT
        assert table['a'].to_tensor().tolist() == [1, 2, 3]
        assert table['b'].typecode == ColumnType.DOUBLE
        np.testing.assert_allclose(table['b'].to_tensor().numpy(), [4.5, 5.5, 6.5])
        assert table['c'].data == ['x', 'y', 'z']

    def test_implied_decimals(self):
        keywords = KeywordList.from_cards([
            "XTENSION= 'TABLE   '",
            "NAXIS1  =                    6",
            "NAXIS2  =                    2",
            "TFIELDS =                    1",
            "TTYPE1  = 'X       '",
            "TFORM1  = 'F6.2    '",
            "TBCOL1  =                    1",
        ])
        table = read_table(keywords, b"  1234 -5E01", ascii=True)
        np.testing.assert_allclose(table['X'].data[:, 0], [12.34, -0.5])


def test_truncated_table_rejected():
    keywords = KeywordList.from_cards([
        "NAXIS1  =                    4",
        "NAXIS2  =                   10",
        "TFIELDS =                    1",
        "TFORM1  = 'J       '",
    ])
    with pytest.raises(MalformedHeaderError):
        read_table(keywords, b"\0" * 8, hdu_index=2)
