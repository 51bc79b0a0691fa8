"""
Tests for the histogram operations.
"""

import pytest
import torch

from fitsmanip.errors import (DimensionMismatchError, HistogramOutOfBoundsError,
                              InvalidFractionError, RangeUnderflowError)
from fitsmanip.histogram import dbl2histogram, dbl_histcutoff, dbl_histeq
from fitsmanip.image import DoubleImage
from fitsmanip.transforms import normalize_dbl


def ramp(n):
    """Evenly spaced values from 0 to 1 inclusive."""
    return DoubleImage(n, 1, torch.arange(n, dtype=torch.float64) / (n - 1))


class TestHistogram:
    def test_s3_counts(self):
        img = DoubleImage(4, 3, torch.arange(12, dtype=torch.float64))
        normalize_dbl(img)
        hist = dbl2histogram(img, 11)
        assert hist.counts.tolist() == [1] * 10 + [2]
        assert hist.levels[0].item() == 0.0
        assert hist.levels[-1].item() == 1.0
        assert hist.cumulative()[-1].item() == 12

    @pytest.mark.parametrize("size", [2, 7, 256, 65535])
    def test_counts_cover_every_pixel(self, size):
        torch.manual_seed(size)
        img = DoubleImage(64, 32, torch.rand(64 * 32, dtype=torch.float64))
        hist = dbl2histogram(img, size)
        assert hist.counts.shape == (size,)
        assert hist.counts.sum().item() == img.totpix

    @pytest.mark.parametrize("size", [0, 1, 65536])
    def test_size_out_of_bounds(self, size):
        with pytest.raises(HistogramOutOfBoundsError):
            dbl2histogram(ramp(10), size)

    def test_empty_image(self):
        with pytest.raises(DimensionMismatchError):
            dbl2histogram(DoubleImage(0, 3), 10)

    def test_nan_not_counted(self):
        data = torch.arange(12, dtype=torch.float64)
        data[5] = float('nan')
        img = DoubleImage(4, 3, data)
        normalize_dbl(img)
        hist = dbl2histogram(img, 11)
        assert hist.totpix == 11
        assert hist.counts.sum().item() == 11
        assert hist.counts[5].item() == 0


class TestCutoff:
    def test_cutoff_clips_both_ends(self, runtime):
        img = ramp(100)
        dbl_histcutoff(img, 100, 0.1, 0.1, runtime=runtime)
        data = img.data
        assert data.min().item() == 0.0
        assert data.max().item() == 1.0
        assert (data == 0.0).sum().item() == 10
        assert (data == 1.0).sum().item() == 10
        assert torch.all(data[1:] >= data[:-1])

    def test_no_cut_keeps_range(self):
        img = ramp(50)
        before = img.data.clone()
        dbl_histcutoff(img, 1000, 0.0, 0.0)
        torch.testing.assert_close(img.data, before)

    @pytest.mark.parametrize("fbot, ftop", [(-0.1, 0.0), (0.0, 1.0), (0.6, 0.5), (1.0, 0.0)])
    def test_invalid_fractions(self, fbot, ftop):
        with pytest.raises(InvalidFractionError):
            dbl_histcutoff(ramp(10), 10, fbot, ftop)

    def test_collapsed_range(self):
        img = DoubleImage(10, 1, torch.full((10,), 0.5, dtype=torch.float64))
        with pytest.raises(RangeUnderflowError):
            dbl_histcutoff(img, 10, 0.1, 0.1)


class TestEqualisation:
    def test_output_range(self, runtime):
        torch.manual_seed(1)
        img = DoubleImage(100, 10, torch.rand(1000, dtype=torch.float64) ** 3)
        dbl_histeq(img, 256, runtime=runtime)
        assert img.data.min().item() >= 0.0
        assert img.data.max().item() <= 1.0

    def test_idempotent_on_uniform_input(self, runtime):
        size = 50
        once = dbl_histeq(ramp(1001), size, runtime=runtime)
        twice = dbl_histeq(once.copy(), size, runtime=runtime)
        assert torch.max(torch.abs(twice.data - once.data)).item() <= 1.0 / size

    def test_flattens_skewed_histogram(self):
        torch.manual_seed(2)
        img = DoubleImage(1000, 1, torch.rand(1000, dtype=torch.float64) ** 4)
        dbl_histeq(img, 100)
        counts = dbl2histogram(img, 4).counts
        assert counts.min().item() > 100

    def test_nan_kept(self, runtime):
        img = ramp(101)
        img.data[50] = float('nan')
        dbl_histeq(img, 10, runtime=runtime)
        assert torch.isnan(img.data[50])
        defined = img.data[~torch.isnan(img.data)]
        assert defined.numel() == 100
        assert defined.min().item() >= 0.0
        assert defined.max().item() <= 1.0


def test_cutoff_keeps_nan():
    img = ramp(100)
    img.data[3] = float('nan')
    dbl_histcutoff(img, 100, 0.1, 0.1)
    assert torch.isnan(img.data[3])
    assert torch.isnan(img.data).sum().item() == 1
