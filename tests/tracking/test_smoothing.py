"""Tests for module smoothing of spottracker.tracking."""

__authors__ = (
    'Michael Schmid',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import numpy as np
import pytest
from pytest_cases import fixture

from spottracker.tracking.columns import Column
from spottracker.tracking.smoothing import limit_extrapolation
from spottracker.tracking.smoothing import smooth_curve
from spottracker.tracking.smoothing import smooth_positions

from ..helpers import make_run

_N_IMAGES = 12


@fixture(name='run')
def fixture_run():
    """Return a run without energies and with twelve images."""
    return make_run(n_images=_N_IMAGES, with_energies=False)


class TestSmoothPositions:
    """Tests for the smooth_positions function."""

    def test_constant_deviation(self, run):
        """Check that constant deviations are not changed."""
        data = run.data
        data[Column.DELTA_X][0] = 0.5
        data[Column.DELTA_Y][0] = -0.3
        data[Column.INTEGRAL][0] = 1.0
        data[Column.SIGNIFICANCE][0] = 10.0
        run.has_spot[0] = True
        smooth_positions(run)
        assert data[Column.DELTA_X_SMOOTH][0] == pytest.approx(
            np.full(_N_IMAGES, 0.5), abs=1e-6
            )
        assert data[Column.DELTA_Y_SMOOTH][0] == pytest.approx(
            np.full(_N_IMAGES, -0.3), abs=1e-6
            )
        x_pred, y_pred = run.predict(0, 3)
        assert data[Column.X][0, 3] == pytest.approx(x_pred + 0.5, abs=1e-6)
        assert data[Column.Y][0, 3] == pytest.approx(y_pred - 0.3, abs=1e-6)

    def test_gap_bridged(self, run):
        """Check that images where a spot was not seen get a position."""
        data = run.data
        data[Column.DELTA_X][0] = 1.0
        data[Column.DELTA_Y][0] = 1.0
        data[Column.INTEGRAL][0] = 1.0
        data[Column.SIGNIFICANCE][0] = 10.0
        data[Column.DELTA_X][0, 4:7] = np.nan
        data[Column.SIGNIFICANCE][0, 4:7] = 0.0
        run.has_spot[0] = True
        smooth_positions(run)
        assert data[Column.DELTA_X_SMOOTH][0, 4:7] == pytest.approx(1.0)
        assert not np.isnan(data[Column.X][0]).any()

    def test_only_spots_with_data(self, run):
        """Check that nothing is stored for spots without data."""
        smooth_positions(run)
        assert np.isnan(run.data[Column.X]).all()
        assert np.isnan(run.data[Column.DELTA_X_SMOOTH]).all()


@fixture(name='smoothed')
def fixture_smoothed(run):
    """Return a run after limiting extrapolation to two images.

    All spots have positions everywhere. Spot 0 is detected
    in images 3 to 5, spot 2 in all images, the others never.
    """
    data = run.data
    for column in (Column.X, Column.Y,
                   Column.DELTA_X_SMOOTH, Column.DELTA_Y_SMOOTH):
        data[column][:] = 1.0
    data[Column.SIGNIFICANCE][:] = 0.0
    data[Column.SIGNIFICANCE][0, 3:6] = 10.0
    data[Column.SIGNIFICANCE][2] = 10.0
    run.has_spot[:] = True
    limit_extrapolation(run, 2)
    return run


class TestLimitExtrapolation:
    """Tests for the limit_extrapolation function."""

    def test_limited(self, smoothed):
        """Check positions far from the detections are removed."""
        x_pos = smoothed.data[Column.X][0]
        assert np.isnan(x_pos[:1]).all()
        assert np.isnan(x_pos[8:]).all()
        assert not np.isnan(x_pos[1:8]).any()
        assert np.isnan(smoothed.data[Column.DELTA_Y_SMOOTH][0, 8:]).all()

    def test_detected_everywhere(self, smoothed):
        """Check that spots detected in all images are unchanged."""
        assert not np.isnan(smoothed.data[Column.X][2]).any()
        assert smoothed.has_spot[2]

    def test_never_detected(self, smoothed):
        """Check that spots never detected have no data."""
        assert smoothed.has_spot.tolist() == [True, False, True,
                                              False, False, False,
                                              False, False, False]


class TestSmoothCurve:
    """Tests for the smooth_curve function."""

    def test_linear(self):
        """Check that a straight line is not changed."""
        values = 2 + 0.5*np.arange(15)
        assert smooth_curve(values, 6) == pytest.approx(values)

    def test_nan_filled(self):
        """Check that missing values are interpolated."""
        values = 2 + 0.5*np.arange(15)
        with_gap = values.copy()
        with_gap[5] = np.nan
        assert smooth_curve(with_gap, 6) == pytest.approx(values)

    def test_spike(self):
        """Check that a spike is averaged over the window."""
        values = np.full(21, 50.0)
        values[10] = 60.0
        smoothed = smooth_curve(values, 6)
        assert smoothed[10] == pytest.approx(50 + 10/7)
        assert smoothed[0] == pytest.approx(50)
        assert smoothed[-1] == pytest.approx(50)

    def test_noise_reduced(self):
        """Check that alternating values are smoothed."""
        values = 10 + np.where(np.arange(30) % 2, 1.0, -1.0)
        smoothed = smooth_curve(values, 10)
        assert np.std(smoothed) < 0.5
