"""Tests for module linear_regression of spottracker.lib."""

__authors__ = (
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import math

import numpy as np
import pytest
from pytest_cases import fixture
from pytest_cases import parametrize

from spottracker.lib.linear_regression import LinearRegression


@fixture(name='line')
def fixture_line():
    """Return a LinearRegression of points on y = 1 + 2x."""
    regression = LinearRegression()
    for x in range(5):
        regression.add_point(x, 1 + 2*x)
    return regression


class TestLinearRegression:
    """Tests for the LinearRegression class."""

    def test_exact_line(self, line):
        """Check fit results for points exactly on a line."""
        assert line.counter == 5
        assert line.slope == pytest.approx(2)
        assert line.offset == pytest.approx(1)
        assert line.rms_residuals == pytest.approx(0, abs=1e-12)
        assert line.fit_value(10) == pytest.approx(21)
        assert line.mean_x == pytest.approx(2)
        assert line.mean_dx2 == pytest.approx(2)

    def test_fit_value_array(self, line):
        """Check that fit_value works element-wise on arrays."""
        values = line.fit_value(np.array([0.0, 0.5, 1.0]))
        assert values == pytest.approx([1, 2, 3])

    def test_remove_point(self, line):
        """Check that adding with negative weight removes a point."""
        line.add_point(4, 100)
        assert line.slope != pytest.approx(2)
        line.add_point(4, 100, -1)
        assert line.counter == 5
        assert line.slope == pytest.approx(2)
        assert line.offset == pytest.approx(1)

    _nan_points = {
        'x': (math.nan, 1.0, 1.0),
        'y': (1.0, math.nan, 1.0),
        'weight': (1.0, 1.0, math.nan),
        }

    @parametrize(point=_nan_points.values(), ids=_nan_points)
    def test_nan_skipped(self, line, point):
        """Check that points containing NaN are not added."""
        line.add_point(*point)
        assert line.counter == 5
        assert line.slope == pytest.approx(2)

    def test_add_points(self, line):
        """Check equivalence of add_points with repeated add_point."""
        bulk = LinearRegression()
        bulk.add_points(np.arange(5), 1 + 2*np.arange(5))
        for attr in ('counter', 'slope', 'offset', 'mean_y', 'mean_dy2'):
            assert getattr(bulk, attr) == pytest.approx(getattr(line, attr))

    def test_add_points_weights(self):
        """Check that weights are used and NaN points are skipped."""
        regression = LinearRegression()
        regression.add_points([0, 1, 2, 3], [0, 1, math.nan, 10],
                              weights=[1, 1, 1, 0])
        assert regression.counter == 2
        assert regression.slope == pytest.approx(1)

    def test_empty(self):
        """Check that an empty regression gives NaN."""
        regression = LinearRegression()
        assert not regression.data_present
        assert math.isnan(regression.slope)
        assert math.isnan(regression.offset)

    def test_single_point(self):
        """Check that a single point gives a horizontal line."""
        regression = LinearRegression()
        regression.add_point(3, 7)
        assert regression.slope == 0
        assert regression.offset == pytest.approx(7)

    def test_set_slope(self, line):
        """Check the offset after forcing a slope."""
        offset = line.set_slope(1)
        assert offset == pytest.approx(line.mean_y - line.mean_x)
        assert line.slope == 1
        line.recalculate()
        assert line.slope == pytest.approx(2)

    def test_min_slope_exact(self, line):
        """Check that exact data keep their slope."""
        value = line.fit_value_with_min_slope(10, 0, 5)
        assert value == pytest.approx(21)

    def test_min_slope_uncertain(self):
        """Check that a slope within the errors is dropped."""
        regression = LinearRegression()
        regression.add_points([0, 1, 2], [0, 1, 2])
        value = regression.fit_value_with_min_slope(10, 1e6, 3)
        assert value == pytest.approx(regression.mean_y)

    def test_min_slope_few_points(self, line):
        """Check that the offset is returned for a single point."""
        assert line.fit_value_with_min_slope(10, 0, 1) == line.offset

    def test_fit_weight(self):
        """Check that the weight decreases away from the data."""
        regression = LinearRegression()
        regression.add_points([0, 1, 2, 3], [0.1, 0.9, 2.1, 2.9])
        at_center = regression.fit_weight(1.5)
        far_away = regression.fit_weight(30)
        assert at_center > far_away > 0

    def test_clear(self, line):
        """Check that clear removes all data."""
        line.clear()
        assert not line.data_present
        assert line.counter == 0
