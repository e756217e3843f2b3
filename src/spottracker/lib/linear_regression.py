"""Module linear_regression of spottracker.lib.

Defines the LinearRegression class, a weighted linear fit of a single
function of one variable. Points can be added (and removed, by adding
them with negative weight) one at a time. Fit results are calculated
only when needed.

Note that the error estimates (e.g., fit_value_with_min_slope) are
valid only in the limit of a large number of points, as no correction
for the number of degrees of freedom is made.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import numpy as np

_NAN = float('nan')


class LinearRegression:
    """Weighted linear regression y = offset + slope*x."""

    def __init__(self):
        """Initialize an empty regression."""
        self.clear()

    def __repr__(self):
        """Return a string representation of this regression."""
        txt = f'{type(self).__name__} of {float(self._counter):g} points'
        if not self._calculated:
            return txt + ', not evaluated yet'
        return txt + f'; offset={self._offset:g}, slope={self._slope:g}'

    def clear(self):
        """Remove all data and fit results."""
        self._counter = np.float64(0)
        self._sum_x = np.float64(0)
        self._sum_y = np.float64(0)
        self._sum_xy = np.float64(0)
        self._sum_x2 = np.float64(0)
        self._sum_y2 = np.float64(0)
        self._offset = _NAN
        self._slope = _NAN
        self._rms_residuals = _NAN
        self._one_over_n2_x_rms_sqr = _NAN
        self._calculated = False

    @property
    def counter(self):
        """Return the number of points or the sum of weights."""
        return float(self._counter)

    @property
    def data_present(self):
        """Return whether any data was added."""
        return self._counter > 0

    @property
    def mean_x(self):
        """Return the (weighted) mean of x values."""
        with np.errstate(divide='ignore', invalid='ignore'):
            return float(self._sum_x / self._counter)

    @property
    def mean_y(self):
        """Return the (weighted) mean of y values."""
        with np.errstate(divide='ignore', invalid='ignore'):
            return float(self._sum_y / self._counter)

    @property
    def mean_dx2(self):
        """Return the mean square deviation of x from its average."""
        with np.errstate(divide='ignore', invalid='ignore'):
            return float(self._sum_x2/self._counter
                         - self._sum_x**2/self._counter**2)

    @property
    def mean_dy2(self):
        """Return the mean square deviation of y from its average."""
        with np.errstate(divide='ignore', invalid='ignore'):
            return float(self._sum_y2/self._counter
                         - self._sum_y**2/self._counter**2)

    @property
    def offset(self):
        """Return the intersection of the fit line with the y axis."""
        self._calculate_if_needed()
        return float(self._offset)

    @property
    def slope(self):
        """Return the slope of the fit line."""
        self._calculate_if_needed()
        return float(self._slope)

    @property
    def rms_residuals(self):
        """Return the mean square deviation from the fit line."""
        self._calculate_if_needed()
        return float(self._rms_residuals)

    def add_point(self, x, y, weight=1.0):
        """Add a point (x, y) with `weight`, unless any of them is NaN.

        A point can be removed by adding it again with negative weight.
        """
        if np.isnan(x) or np.isnan(y) or np.isnan(weight):
            return
        self._counter += weight
        self._sum_x += weight*x
        self._sum_y += weight*y
        self._sum_xy += weight*x*y
        self._sum_x2 += weight*x*x
        self._sum_y2 += weight*y*y
        self._calculated = False

    def add_points(self, xs, ys, weights=None):
        """Add many points at once, skipping those containing NaN.

        Parameters
        ----------
        xs, ys : numpy.ndarray
            Coordinates of the points to be added.
        weights : numpy.ndarray or None, optional
            Weight of each point. Default is None, i.e., all
            points have unit weight.

        Returns
        -------
        None.
        """
        xs = np.asarray(xs, dtype=float).ravel()
        ys = np.asarray(ys, dtype=float).ravel()
        weights = (np.ones_like(xs) if weights is None
                   else np.asarray(weights, dtype=float).ravel())
        valid = ~(np.isnan(xs) | np.isnan(ys) | np.isnan(weights))
        xs, ys, weights = xs[valid], ys[valid], weights[valid]
        if not xs.size:
            return
        self._counter += weights.sum()
        self._sum_x += (weights*xs).sum()
        self._sum_y += (weights*ys).sum()
        self._sum_xy += (weights*xs*ys).sum()
        self._sum_x2 += (weights*xs*xs).sum()
        self._sum_y2 += (weights*ys*ys).sum()
        self._calculated = False

    def recalculate(self):
        """Calculate the fit results from the current data.

        This is needed only to undo a previous set_slope: all
        results are otherwise calculated when they are requested.
        """
        counter = self._counter
        with np.errstate(divide='ignore', invalid='ignore'):
            inv_counter = 1 / counter
            std_x2_times_n = self._sum_x2 - self._sum_x**2 * inv_counter
            std_y2_times_n = self._sum_y2 - self._sum_y**2 * inv_counter
            cov_times_n = self._sum_xy - self._sum_x*self._sum_y*inv_counter
            self._one_over_n2_x_rms_sqr = 1 / (std_x2_times_n*counter)
            if counter > 0:
                slope = cov_times_n / std_x2_times_n
                if np.isnan(slope):  # Fit unsuccessful
                    slope = np.float64(0)
            else:
                slope = np.float64(_NAN)
            self._slope = slope
            self._offset = (self._sum_y - slope*self._sum_x) * inv_counter
            corr = cov_times_n / np.sqrt(std_x2_times_n*std_y2_times_n)
            if counter > 1e-100 and np.isnan(corr):  # y all equal
                corr = 1
            rms = std_y2_times_n * inv_counter * (1 - corr**2)
        self._rms_residuals = max(rms, 0)  # Rounding errors
        self._calculated = True

    def set_slope(self, slope):
        """Force the slope of the fit and return the resulting offset."""
        if self._counter > 0:
            self._slope = slope
            self._offset = (self._sum_y - slope*self._sum_x) / self._counter
        self._calculated = True
        return float(self._offset)

    def fit_value(self, x):
        """Return the value of the fit line at `x`."""
        self._calculate_if_needed()
        return self._offset + x*self._slope

    def fit_value_with_min_slope(self, x, y_err_sqr, n_points):
        """Return a conservative estimate of the fit value at `x`.

        The estimate uses the smallest slope that is compatible
        with the data, assuming the y values have an uncertainty
        of sqrt(y_err_sqr).

        Parameters
        ----------
        x : float
            Where the fit should be evaluated.
        y_err_sqr : float
            Squared uncertainty of the y values. The actual
            scatter of the data is used if larger.
        n_points : int
            Number of points. Also works for weighted data
            when there are `n_points` with equal weight.

        Returns
        -------
        value : float
            The fit offset if there are fewer than two points.
        """
        self._calculate_if_needed()
        if n_points < 2:
            return float(self._offset)
        with np.errstate(divide='ignore', invalid='ignore'):
            mean_x = self._sum_x / self._counter
            std_x2 = (self._sum_x2 - self._sum_x*mean_x) / self._counter
            y_err_sqr = max(self._rms_residuals, y_err_sqr)
            var_slope = np.sqrt(y_err_sqr / (std_x2*(n_points - 1)))
        slope = self._slope
        min_slope = (slope - np.sign(slope)*var_slope
                     if abs(slope) > var_slope else 0)
        return float(self._offset + mean_x*slope + (x - mean_x)*min_slope)

    def fit_weight(self, x):
        """Return a measure of the fit weight at `x`.

        The weight is proportional to 1/error**2. The error is very
        roughly 1/sqrt(weight*(n - 2)) for n points.
        """
        self._calculate_if_needed()
        with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
            delta = x*self._counter - self._sum_x
            return float(1 / (self._rms_residuals
                              * (1 + delta**2 * self._one_over_n2_x_rms_sqr)
                              + 1e-50))

    def _calculate_if_needed(self):
        """Recalculate fit results if data has changed."""
        if not self._calculated:
            self.recalculate()
