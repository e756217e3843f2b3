"""Module regression_2d of spottracker.lib.

Defines the Regression2D class, a weighted linear fit between two 2D
coordinate systems, (y1, y2) = (a1, a2) + ((b1, c1), (b2, c2)) @ (x1, x2).

When applied to measured vs. calculated spot positions, the
energy-dependent offsets (a1, a2) indicate residual fields or a poor
alignment of the electron gun. The energy dependence of the rotation
angle indicates longitudinal magnetic fields. The energy dependence
of the determinant (i.e., the squared scale factor) indicates an
energy offset, e.g., due to differences of the vacuum levels of
filament and sample region, or to sample charging.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import numpy as np

from spottracker.lib.dataclass_utils import frozen


@frozen
class AffineFit:
    """The overall results of a Regression2D.

    Attributes
    ----------
    x_offset, y_offset : float
        The offsets (a1, a2) of the fitted map.
    determinant : float
        Determinant of the linear part, i.e., the square of the
        scale factor between the two coordinate systems.
    angle : float
        Rotation angle in degrees. For a negative determinant
        this is the angle of the reflected system.
    weight : float
        A measure of how well-defined the fit is. It scales as
        (sum of weights) * (extent of the calculated data)**2.
    sum_data_weights : float
        Sum of the weights of all data points. With it, one
        can check for a non-degenerate 2D range of the data:
        weight/sum_data_weights should be of the same order
        of magnitude as the calculated coordinates.
    """

    x_offset: float
    y_offset: float
    determinant: float
    angle: float
    weight: float
    sum_data_weights: float


class Regression2D:
    """Weighted fit of an affine map between 2D coordinate systems."""

    _sum_names = ('w', 'x1', 'x2', 'x1_sqr', 'x2_sqr', 'x1x2',
                  'y1', 'y2', 'x1y1', 'x1y2', 'x2y1', 'x2y2')

    def __init__(self):
        """Initialize an empty regression."""
        self._sums = dict.fromkeys(self._sum_names, 0.0)

    def add_point(self, y1_exp, y2_exp, x1_calc, x2_calc, weight):
        """Add a measured point (y1_exp, y2_exp) for (x1_calc, x2_calc)."""
        sums = self._sums
        sums['w'] += weight
        sums['x1'] += weight*x1_calc
        sums['x2'] += weight*x2_calc
        sums['x1x2'] += weight*x1_calc*x2_calc
        sums['x1_sqr'] += weight*x1_calc*x1_calc
        sums['x2_sqr'] += weight*x2_calc*x2_calc
        sums['y1'] += weight*y1_exp
        sums['y2'] += weight*y2_exp
        sums['x1y1'] += weight*x1_calc*y1_exp
        sums['x1y2'] += weight*x1_calc*y2_exp
        sums['x2y1'] += weight*x2_calc*y1_exp
        sums['x2y2'] += weight*x2_calc*y2_exp

    def clear(self):
        """Remove all data."""
        self._sums = dict.fromkeys(self._sum_names, 0.0)

    def apply(self, x1_calc, x2_calc):
        """Return the fitted map applied to (x1_calc, x2_calc).

        Returns
        -------
        y1, y2 : float
            NaN if the fit is undetermined.
        """
        (a_1, a_2), (b_1, c_1, b_2, c_2), _ = self._coefficients()
        return a_1 + b_1*x1_calc + c_1*x2_calc, a_2 + b_2*x1_calc + c_2*x2_calc

    def fit(self):
        """Return an AffineFit with the overall results of the regression."""
        (a_1, a_2), (b_1, c_1, b_2, c_2), denom = self._coefficients()
        determinant = b_1*c_2 - b_2*c_1
        if determinant > 0:
            angle = np.degrees(np.arctan2(c_1 - b_2, b_1 + c_2))
        else:
            angle = np.degrees(np.arctan2(c_1 + b_2, b_1 - c_2))
        return AffineFit(x_offset=float(a_1),
                         y_offset=float(a_2),
                         determinant=float(determinant),
                         angle=float(angle),
                         weight=float(np.sqrt(abs(denom))),
                         sum_data_weights=float(self._sums['w']))

    def _coefficients(self):
        """Return offsets, linear coefficients and the denominator."""
        sums = {k: np.float64(v) for k, v in self._sums.items()}
        with np.errstate(divide='ignore', invalid='ignore'):
            inv_w = 1 / sums['w']

            def _reduced(name_ab, name_a, name_b):
                return sums[name_ab] - inv_w * sums[name_a] * sums[name_b]

            x1x2 = _reduced('x1x2', 'x1', 'x2')
            x1_sqr = _reduced('x1_sqr', 'x1', 'x1')
            x2_sqr = _reduced('x2_sqr', 'x2', 'x2')
            x1y1 = _reduced('x1y1', 'x1', 'y1')
            x1y2 = _reduced('x1y2', 'x1', 'y2')
            x2y1 = _reduced('x2y1', 'x2', 'y1')
            x2y2 = _reduced('x2y2', 'x2', 'y2')
            denom = x1_sqr*x2_sqr - x1x2**2
            inv_denom = 1 / denom
            b_1 = (x2_sqr*x1y1 - x1x2*x2y1) * inv_denom
            c_1 = (x1_sqr*x2y1 - x1x2*x1y1) * inv_denom
            b_2 = (x2_sqr*x1y2 - x1x2*x2y2) * inv_denom
            c_2 = (x1_sqr*x2y2 - x1x2*x1y2) * inv_denom
            a_1 = (sums['y1'] - b_1*sums['x1'] - c_1*sums['x2']) * inv_w
            a_2 = (sums['y2'] - b_2*sums['x1'] - c_2*sums['x2']) * inv_w
        return (a_1, a_2), (b_1, c_1, b_2, c_2), denom
