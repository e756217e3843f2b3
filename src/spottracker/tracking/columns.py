"""Module columns of spottracker.tracking.

Defines the Column enumeration and the TrackData class, which holds
all quantities determined for each spot at each energy.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from enum import IntEnum

import numpy as np


class Column(IntEnum):
    """The quantities stored for each spot and energy."""

    X = 0
    Y = 1
    INTEGRAL = 2
    R_SIZE = 3              # Radial size (standard deviation)
    T_SIZE = 4              # Tangential size
    SIGNIFICANCE = 5
    BACKGROUND = 6          # Background level per pixel
    BACKGROUND_SIGMA = 7    # Background noise per pixel
    DELTA_X = 8             # Deviation of the tracked position from
    DELTA_Y = 9             #   the screen-model prediction
    DELTA_X_SMOOTH = 10     # The same, after smoothing
    DELTA_Y_SMOOTH = 11
    INT_I0_CORRECTED = 12   # Normalized intensity

    def __str__(self):
        return _COLUMN_NAMES[self]

    @classmethod
    def from_name(cls, name):
        """Return a Column from its member name or display name."""
        if isinstance(name, cls):
            return name
        for column, column_name in _COLUMN_NAMES.items():
            if name == column_name:
                return column
        return cls[name.upper()]


_COLUMN_NAMES = {
    Column.X: 'x',
    Column.Y: 'y',
    Column.INTEGRAL: 'integral',
    Column.R_SIZE: 'r_size',
    Column.T_SIZE: 't_size',
    Column.SIGNIFICANCE: 'significance',
    Column.BACKGROUND: 'background',
    Column.BACKGROUND_SIGMA: 'bg_sigma',
    Column.DELTA_X: 'dx_raw',
    Column.DELTA_Y: 'dy_raw',
    Column.DELTA_X_SMOOTH: 'dx_smooth',
    Column.DELTA_Y_SMOOTH: 'dy_smooth',
    Column.INT_I0_CORRECTED: 'intensity',
    }


class TrackData:
    """All quantities for each spot and energy, NaN if unknown.

    Attributes
    ----------
    values : numpy.ndarray
        Shape (len(Column), n_spots, n_slices).
    """

    def __init__(self, n_spots, n_slices):
        """Initialize with all values NaN."""
        self.values = np.full((len(Column), n_spots, n_slices), np.nan)

    def __getitem__(self, column):
        """Return a (n_spots, n_slices) view of the values in `column`."""
        return self.values[column]

    def __repr__(self):
        """Return a string representation of this instance."""
        _, n_spots, n_slices = self.values.shape
        return f'{type(self).__name__}({n_spots} spots, {n_slices} slices)'

    @property
    def n_spots(self):
        """Return the number of spots."""
        return self.values.shape[1]

    @property
    def n_slices(self):
        """Return the number of images."""
        return self.values.shape[2]

    def get(self, column, spot, slice_index):
        """Return a single value as a float."""
        return float(self.values[column, spot, slice_index])

    def store_measurement(self, spot, slice_index, measurement,
                          with_position=False):
        """Store the results of a SpotMeasurement.

        Parameters
        ----------
        spot, slice_index : int
            Where to store the measurement.
        measurement : SpotMeasurement
            The result of aperture photometry.
        with_position : bool, optional
            Whether also x and y should be stored. Default
            is False.
        """
        values = measurement.as_tuple()
        first = Column.X if with_position else Column.INTEGRAL
        self.values[first:Column.BACKGROUND_SIGMA + 1, spot, slice_index] = (
            values[first:Column.BACKGROUND_SIGMA + 1]
            )
