"""Tests for module columns of spottracker.tracking."""

__authors__ = (
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import numpy as np
import pytest
from pytest_cases import parametrize

from spottracker.photometry.analyzer import SpotMeasurement
from spottracker.tracking.columns import Column
from spottracker.tracking.columns import TrackData


class TestColumn:
    """Tests for the Column enumeration."""

    _valid = {
        'display name': ('intensity', Column.INT_I0_CORRECTED),
        'member name': ('INTEGRAL', Column.INTEGRAL),
        'lowercase member': ('r_size', Column.R_SIZE),
        'renamed': ('bg_sigma', Column.BACKGROUND_SIGMA),
        'member': (Column.X, Column.X),
        }

    @parametrize('name,expect', _valid.values(), ids=_valid)
    def test_from_name(self, name, expect):
        """Check finding columns by name."""
        assert Column.from_name(name) is expect

    def test_from_name_invalid(self):
        """Check complaints for an unknown column."""
        with pytest.raises(KeyError):
            Column.from_name('brightness')

    def test_str(self):
        """Check that columns have a short display name."""
        assert str(Column.DELTA_X_SMOOTH) == 'dx_smooth'


class TestTrackData:
    """Tests for the TrackData class."""

    def test_init(self):
        """Check that all values are initially NaN."""
        data = TrackData(3, 5)
        assert (data.n_spots, data.n_slices) == (3, 5)
        assert data.values.shape == (len(Column), 3, 5)
        assert np.all(np.isnan(data.values))
        assert repr(data) == 'TrackData(3 spots, 5 slices)'

    def test_getitem_is_view(self):
        """Check that columns can be modified in place."""
        data = TrackData(2, 2)
        data[Column.INTEGRAL][1, 0] = 3.5
        assert data.get(Column.INTEGRAL, 1, 0) == pytest.approx(3.5)

    _measurement = SpotMeasurement(x=1, y=2, integral=3, radial_size=4,
                                   tangential_size=5, significance=6,
                                   background=7, background_sigma=8)

    def test_store_with_position(self):
        """Check that all quantities of a measurement are stored."""
        data = TrackData(2, 3)
        data.store_measurement(1, 2, self._measurement, with_position=True)
        stored = data.values[:Column.BACKGROUND_SIGMA + 1, 1, 2]
        assert stored.tolist() == [1, 2, 3, 4, 5, 6, 7, 8]
        assert np.isnan(data.get(Column.DELTA_X, 1, 2))

    def test_store_without_position(self):
        """Check that the position is not stored unless requested."""
        data = TrackData(2, 3)
        data.store_measurement(0, 0, self._measurement)
        assert np.isnan(data.get(Column.X, 0, 0))
        assert data.get(Column.INTEGRAL, 0, 0) == pytest.approx(3)
        assert data.get(Column.BACKGROUND_SIGMA, 0, 0) == pytest.approx(8)
