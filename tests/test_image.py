"""
Tests for the image model.
"""

import numpy as np
import pytest
import torch

from fitsmanip.core import FITSDataType, FITSDataTypeHandler
from fitsmanip.errors import DimensionMismatchError, UnsupportedBitpixError
from fitsmanip.image import DoubleImage, FitsImage, choose_bitpix, image2double


class TestDataTypes:
    def test_bitpix_mapping(self):
        assert FITSDataTypeHandler.from_bitpix(16) == FITSDataType.UINT16
        assert FITSDataTypeHandler.from_bitpix(-64) == FITSDataType.FLOAT64
        with pytest.raises(UnsupportedBitpixError):
            FITSDataTypeHandler.from_bitpix(12)

    def test_bzero(self):
        assert FITSDataType.UINT8.bzero == 0
        assert FITSDataType.UINT16.bzero == 32768
        assert FITSDataType.UINT64.bzero == 1 << 63
        assert FITSDataType.FLOAT32.width == 4

    def test_from_numpy(self):
        assert FITSDataTypeHandler.from_numpy(np.dtype('>f4')) == FITSDataType.FLOAT32
        with pytest.raises(UnsupportedBitpixError):
            FITSDataTypeHandler.from_numpy(np.int16)

    def test_storage_bytes(self):
        assert FITSDataTypeHandler.storage_bytes(0) == 0
        assert FITSDataTypeHandler.storage_bytes(1) == 2880
        assert FITSDataTypeHandler.storage_bytes(2881) == 5760


class TestFitsImage:
    def test_new_is_zeroed(self):
        img = FitsImage.new(2, (4, 3), 16)
        assert img.totpix == 12
        assert img.nbytes == 24
        assert img.width == 4 and img.height == 3
        assert np.all(img.pixels() == 0)
        assert img.array().shape == (3, 4)

    def test_header_only(self):
        img = FitsImage.new(0, (), 8)
        assert img.is_header_only
        assert img.totpix == 0
        img = FitsImage.new(2, (0, 5), -32)
        assert img.is_header_only

    def test_naxis_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            FitsImage.new(3, (4, 3), 16)

    def test_pixels_type_check(self):
        img = FitsImage.from_array(np.arange(6, dtype=np.float32).reshape(2, 3))
        assert img.bitpix == -32
        np.testing.assert_array_equal(img.pixels(np.float32), np.arange(6))
        with pytest.raises(TypeError):
            img.pixels(np.float64)

    def test_to_tensor(self):
        img = FitsImage.from_array(np.arange(6, dtype=np.float32).reshape(2, 3))
        tensor = img.to_tensor()
        assert tensor.dtype == torch.float32
        assert tensor.shape == (2, 3)
        img = FitsImage.from_array(np.array([[0, 65535]], dtype=np.uint16))
        tensor = img.to_tensor()
        assert tensor.dtype == torch.int64
        assert tensor.tolist() == [[0, 65535]]
        with pytest.raises(OverflowError):
            FitsImage.from_array(np.array([2 ** 63], dtype=np.uint64)).to_tensor()

    def test_copy_and_mksimilar(self):
        img = FitsImage.from_array(np.arange(6, dtype=np.uint16).reshape(2, 3))
        img.blank = 65535
        dup = img.copy()
        assert dup.blank == 65535
        np.testing.assert_array_equal(dup.array(), img.array())
        dup.pixels()[0] = 7
        assert img.pixels()[0] == 0
        similar = img.mksimilar()
        assert similar.naxes == img.naxes and similar.bitpix == img.bitpix
        assert np.all(similar.pixels() == 0)


class TestConversions:
    def test_image2double(self):
        img = FitsImage.from_array(np.arange(12, dtype=np.uint16).reshape(3, 4))
        dimg = image2double(img)
        assert (dimg.width, dimg.height) == (4, 3)
        torch.testing.assert_close(dimg.data, torch.arange(12, dtype=torch.float64))

    def test_image2double_1d_and_degenerate_axes(self):
        dimg = image2double(FitsImage.from_array(np.arange(5, dtype=np.float64)))
        assert (dimg.width, dimg.height) == (5, 1)
        dimg = image2double(FitsImage.from_array(np.ones((1, 2, 3), dtype=np.uint8)))
        assert (dimg.width, dimg.height) == (3, 2)

    def test_image2double_keeps_undefined_pixels(self):
        img = FitsImage.from_array(np.array([[1, 65535], [3, 4]], dtype=np.uint16))
        img.blank = 65535
        assert image2double(img).data.tolist() == [1.0, 65535.0, 3.0, 4.0]
        img = FitsImage.from_array(np.array([1.0, np.nan, 3.0], dtype=np.float32))
        data = image2double(img).data
        assert torch.isnan(data[1])
        assert data[2].item() == 3.0

    def test_image2double_rejects(self):
        with pytest.raises(DimensionMismatchError):
            image2double(FitsImage.new(0, (), 8))
        with pytest.raises(DimensionMismatchError):
            image2double(FitsImage.from_array(np.ones((2, 2, 3), dtype=np.uint8)))

    @pytest.mark.parametrize("values, expected", [
        ([0.0, 1.0, 255.0], FITSDataType.UINT8),
        ([0.0, 256.0], FITSDataType.UINT16),
        ([0.0, 70000.0], FITSDataType.UINT32),
        ([0.0, 2.0 ** 40], FITSDataType.UINT64),
        ([-1.0, 2.0], FITSDataType.FLOAT32),
        ([0.5, 1.0], FITSDataType.FLOAT32),
        ([0.0, 1e-9, 1.0], FITSDataType.FLOAT64),
        ([0.0, 1e300], FITSDataType.FLOAT64),
    ])
    def test_choose_bitpix(self, values, expected):
        assert choose_bitpix(torch.tensor(values, dtype=torch.float64)) == expected

    def test_rebuild(self, runtime):
        img = FitsImage.from_array(np.zeros((2, 2, 2), dtype=np.float32))
        dimg = DoubleImage(4, 3, torch.arange(12, dtype=torch.float64) * 100)
        img.rebuild(dimg, runtime)
        assert img.bitpix == 16
        assert img.naxes == (4, 3)
        np.testing.assert_array_equal(img.array(), np.arange(12).reshape(3, 4) * 100)

    def test_rebuild_keeps_axes(self, runtime):
        img = FitsImage.from_array(np.arange(5, dtype=np.float32))
        img.rebuild(image2double(img), runtime)
        assert img.naxes == (5,)
        assert img.bitpix == 8
        img = FitsImage.from_array(np.ones((1, 2, 3), dtype=np.float32))
        img.rebuild(image2double(img), runtime)
        assert img.naxes == (3, 2, 1)
        np.testing.assert_array_equal(img.array(), np.ones((1, 2, 3)))

    def test_rebuild_nan_stays_float(self, runtime):
        values = torch.tensor([0.0, float('nan'), 2.0, 3.0], dtype=torch.float64)
        img = FitsImage.from_array(np.zeros((2, 2), dtype=np.float32))
        img.rebuild(DoubleImage(2, 2, values), runtime)
        assert img.dtype == FITSDataType.FLOAT32
        assert np.isnan(img.array()[0, 1])
        assert img.array()[1, 1] == 3.0

    def test_double_image(self):
        dimg = DoubleImage.from_array([[1, 2, 3], [4, 5, 6]])
        assert (dimg.width, dimg.height, dimg.totpix) == (3, 2, 6)
        assert dimg.view2d()[1, 0].item() == 4.0
        dup = dimg.copy()
        dup.data[0] = 9
        assert dimg.data[0].item() == 1.0
        with pytest.raises(DimensionMismatchError):
            DoubleImage(2, 2, torch.zeros(3))
