"""
Tests for median selection and median filtering.
"""

import math
import random
import statistics

import numpy as np
import pytest
import torch

from fitsmanip.errors import DimensionMismatchError
from fitsmanip.image import DoubleImage
from fitsmanip.median import (NETWORKS, Mediator, calc_median, get_median, opt_median,
                              quick_select)


def middle_pair(values):
    s = sorted(values)
    n = len(s)
    return (s[(n - 1) // 2] + s[n // 2]) / 2


class TestSelection:
    @pytest.mark.parametrize("size", sorted(NETWORKS))
    def test_networks_match_sorting(self, size):
        rng = random.Random(size)
        for _ in range(200):
            values = [rng.randint(-50, 50) for _ in range(size)]
            assert opt_median(values) == middle_pair(values)

    def test_network_on_tensors(self):
        torch.manual_seed(0)
        columns = [torch.randn(100, dtype=torch.float64) for _ in range(9)]
        result = opt_median(columns)
        expected = torch.stack(columns).median(dim=0).values
        torch.testing.assert_close(result, expected)

    def test_input_not_modified(self):
        values = [5, 4, 3, 2, 1]
        opt_median(values)
        assert values == [5, 4, 3, 2, 1]

    def test_no_network(self):
        with pytest.raises(ValueError):
            opt_median([1] * 10)

    @pytest.mark.parametrize("n", [1, 2, 10, 11, 100, 101])
    def test_quick_select_lower_median(self, n):
        rng = random.Random(n)
        values = [rng.uniform(-1, 1) for _ in range(n)]
        assert quick_select(values) == sorted(values)[(n - 1) // 2]

    def test_quick_select_duplicates(self):
        assert quick_select([3, 3, 3, 1, 1, 3, 3]) == 3.0

    def test_calc_median(self):
        assert calc_median([7.0]) == 7.0
        assert calc_median([1, 2, 3, 4]) == 2.5
        assert calc_median(np.array([9.0, 1.0, 5.0])) == 5.0
        assert calc_median(torch.arange(11, dtype=torch.float64)) == 5.0
        with pytest.raises(ValueError):
            calc_median([])


class TestMediator:
    @pytest.mark.parametrize("size", [1, 2, 3, 8, 9, 25])
    def test_matches_sliding_window(self, size):
        rng = random.Random(size)
        m = Mediator(size)
        stream = [rng.randint(0, 20) for _ in range(10 * size + 7)]
        for i, value in enumerate(stream):
            m.insert(value)
            window = stream[max(0, i + 1 - size):i + 1]
            assert len(m) == len(window)
            assert m.median() == statistics.median(window)

    def test_empty(self):
        with pytest.raises(ValueError):
            Mediator(3).median()
        with pytest.raises(ValueError):
            Mediator(0)


class TestMedianFilter:
    def test_s6_impulse(self, runtime):
        img = DoubleImage(5, 1, torch.tensor([0, 9, 0, 0, 0], dtype=torch.float64))
        out = get_median(img, 0, runtime=runtime)
        assert out.data.tolist() == [0.0] * 5
        assert img.data[1].item() == 9.0

    @pytest.mark.parametrize("radius", [0, 1, 2, 3])
    def test_constant_image(self, radius, runtime):
        img = DoubleImage(9, 7, torch.full((63,), 4.25, dtype=torch.float64))
        out = get_median(img, radius, runtime=runtime)
        torch.testing.assert_close(out.data, img.data)

    @pytest.mark.parametrize("radius", [0, 1, 2])
    def test_monotone_column(self, radius, runtime):
        height = 12
        img = DoubleImage(1, height, torch.arange(height, dtype=torch.float64) ** 2)
        out = get_median(img, radius, runtime=runtime)
        torch.testing.assert_close(out.data[radius:height - radius],
                                   img.data[radius:height - radius])

    def test_cross_removes_isolated_spike(self, runtime):
        data = torch.zeros((6, 7), dtype=torch.float64)
        data[3, 3] = 100
        data[0, 0] = 50
        data[0, 4] = 60
        img = DoubleImage(7, 6, data)
        out = get_median(img, 0, runtime=runtime)
        assert out.data.abs().max().item() == 0.0

    def test_cross_interior(self, runtime):
        torch.manual_seed(3)
        src = torch.randint(0, 10, (5, 6)).to(torch.float64)
        out = get_median(DoubleImage(6, 5, src), 0, runtime=runtime).view2d()
        for y in range(1, 4):
            for x in range(1, 5):
                window = [src[y, x], src[y, x - 1], src[y, x + 1], src[y - 1, x], src[y + 1, x]]
                assert out[y, x].item() == statistics.median(v.item() for v in window)

    def test_square_window(self, runtime):
        torch.manual_seed(4)
        src = torch.rand((8, 9), dtype=torch.float64)
        img = DoubleImage(9, 8, src)
        out = get_median(img, 1, runtime=runtime).view2d()
        for y in range(1, 7):
            for x in range(1, 8):
                expected = src[y - 1:y + 2, x - 1:x + 2].reshape(-1).median().item()
                assert out[y, x].item() == expected
        # frame copied through
        torch.testing.assert_close(out[0], src[0])
        torch.testing.assert_close(out[:, -1], src[:, -1])

    def test_window_larger_than_image(self):
        img = DoubleImage(3, 3, torch.arange(9, dtype=torch.float64))
        out = get_median(img, 2)
        torch.testing.assert_close(out.data, img.data)
        assert out.data is not img.data

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            get_median(DoubleImage(2, 2), -1)
        with pytest.raises(DimensionMismatchError):
            get_median(DoubleImage(0, 0), 1)

    @pytest.mark.parametrize("radius", [0, 1])
    def test_isolated_nan_filtered_out(self, radius, runtime):
        data = torch.ones((5, 5), dtype=torch.float64)
        data[2, 2] = float('nan')
        out = get_median(DoubleImage(5, 5, data), radius, runtime=runtime)
        torch.testing.assert_close(out.data, torch.ones(25, dtype=torch.float64))


class TestUndefinedValues:
    """NaN orders above every number in all median paths."""

    def test_network(self):
        nan = float('nan')
        assert opt_median([nan, 1.0, 5.0, 2.0, 3.0]) == 3.0
        assert math.isnan(opt_median([nan, nan, 1.0]))

    def test_network_on_tensors(self):
        a = torch.tensor([float('nan'), 1.0], dtype=torch.float64)
        b = torch.tensor([2.0, float('nan')], dtype=torch.float64)
        c = torch.tensor([4.0, 3.0], dtype=torch.float64)
        assert opt_median((a, b, c)).tolist() == [4.0, 3.0]

    def test_quick_select(self):
        nan = float('nan')
        assert quick_select([nan, 4.0, 1.0, 3.0, 2.0, 5.0, 0.0]) == 3.0
        assert math.isnan(quick_select([nan, nan, nan, 1.0]))

    def test_mediator(self):
        m = Mediator(5)
        for value in (float('nan'), 1.0, 5.0, 2.0, 3.0):
            m.insert(value)
        assert m.median() == 3.0
        m.insert(0.0)
        assert m.median() == 2.0
