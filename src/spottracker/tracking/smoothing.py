"""Module smoothing of spottracker.tracking.

Smooths the deviations of the tracked spot positions from the screen
model, and uses the smoothed deviations to obtain the final positions
where the intensities are measured.

Smoothing fits a line through the deviations, as a function of
1/sqrt(E) (or of the image index, if the x axis is not the energy),
over a window sliding along the x axis. There are two passes: the
first one uses the significance of the spots as weights and bridges
gaps where spots were not detected, the second one smooths the output
of the first one, weighted with the accuracy of the first fit.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import logging

import numpy as np

from spottracker.lib.linear_regression import LinearRegression
from spottracker.photometry.analyzer import NO_SIGNIFICANCE
from spottracker.tracking.columns import Column
from spottracker.tracking.state import LOW_WEIGHT

logger = logging.getLogger(__name__)

# Weight of the extra point at E -> infinity, which avoids large slopes
E_INFTY_WEIGHT = 0.1

# Assumed uncertainty squared of deviations, without energies
_DELTA_ERR_SQR = 4

# Fit weight used where the first pass has too little data
_NEGLIGIBLE_WEIGHT = 1e-30


def smooth_positions(run):
    """Store smoothed deviations and positions for all spots of `run`.

    Parameters
    ----------
    run : TrackingRun
        Positions are smoothed for the spots with `run.has_spot`.
        The smoothed deviations and the resulting positions are
        stored in the DELTA_X_SMOOTH, DELTA_Y_SMOOTH, X, and Y
        columns of `run.data`.

    Returns
    -------
    None.
    """
    if run.use_energies:
        fit_x = run.inv_sqrt_energies
    else:
        fit_x = np.arange(run.n_slices, dtype=float)
    points_per_side = max(int(abs(0.5*run.position_averaging)), 2)
    for spot in np.flatnonzero(run.has_spot):
        smoothed = _first_pass(run, spot, fit_x, points_per_side)
        _second_pass(run, spot, fit_x, points_per_side, *smoothed)


def _first_pass(run, spot, fit_x, points_per_side):
    """Return deviations and weights from significance-weighted fits.

    The window is the smallest one that contains `points_per_side`
    measured points on each side, not counting those inferred
    from the neighbors.
    """
    data = run.data
    delta_x = data[Column.DELTA_X][spot]
    delta_y = data[Column.DELTA_Y][spot]
    use_sub_threshold = run.min_range == 0
    weights = np.array([
        0.0 if np.isnan(dx) or np.isnan(integral)
        else run.significance_to_weight(sig)
        for dx, integral, sig in zip(delta_x,
                                     data[Column.INTEGRAL][spot],
                                     data[Column.SIGNIFICANCE][spot])
        ])
    if not use_sub_threshold:
        weights[weights == LOW_WEIGHT] = 0  # Don't use neighbor info
    nonzero = np.flatnonzero(weights)
    last_used = nonzero[-1] if nonzero.size else 0

    x_line, y_line = LinearRegression(), LinearRegression()
    if run.use_energies:
        x_line.add_point(0, 0, E_INFTY_WEIGHT)
        y_line.add_point(0, 0, E_INFTY_WEIGHT)
    n_before = n_at_or_after = n_points = 0
    first = last = -1  # First and last point currently in the fit
    n_slices = run.n_slices
    delta_x_out, delta_y_out = np.empty(n_slices), np.empty(n_slices)
    weight_x_out, weight_y_out = np.empty(n_slices), np.empty(n_slices)
    min_counter = 2*run.significance_to_weight(NO_SIGNIFICANCE)
    for i in range(n_slices):
        if n_at_or_after > 0 and weights[i]:
            if weights[i] > LOW_WEIGHT:  # Only measured points count
                n_before += 1
                n_at_or_after -= 1
            while n_before > points_per_side:  # Remove old points
                x_line.add_point(fit_x[first], delta_x[first], -weights[first])
                y_line.add_point(fit_x[first], delta_y[first], -weights[first])
                n_points -= 1
                if weights[first] > LOW_WEIGHT:
                    n_before -= 1
                later = nonzero[(nonzero > first) & (nonzero < i)]
                if later.size:
                    first = later[0]
        n_needed = points_per_side + (1 if weights[i] else 0)
        j = last + 1
        while n_at_or_after < n_needed and j <= last_used:
            if weights[j]:
                x_line.add_point(fit_x[j], delta_x[j], weights[j])
                y_line.add_point(fit_x[j], delta_y[j], weights[j])
                n_points += 1
                last = j
                if weights[j] > LOW_WEIGHT:
                    if j < i:
                        n_before += 1
                    else:
                        n_at_or_after += 1
                if first < 0:
                    first = j
            j += 1
        if run.use_energies:
            delta_x_out[i] = x_line.fit_value(fit_x[i])
            delta_y_out[i] = y_line.fit_value(fit_x[i])
        else:  # Avoid large values from extrapolation
            delta_x_out[i] = x_line.fit_value_with_min_slope(
                fit_x[i], _DELTA_ERR_SQR, n_points
                )
            delta_y_out[i] = y_line.fit_value_with_min_slope(
                fit_x[i], _DELTA_ERR_SQR, n_points
                )
        enough_data = x_line.counter >= min_counter or use_sub_threshold
        weight_x_out[i] = (x_line.fit_weight(fit_x[i]) if enough_data
                           else _NEGLIGIBLE_WEIGHT)
        weight_y_out[i] = (y_line.fit_weight(fit_x[i]) if enough_data
                           else _NEGLIGIBLE_WEIGHT)
    return delta_x_out, delta_y_out, weight_x_out, weight_y_out


def _second_pass(run, spot, fit_x, points_per_side,
                 delta_x, delta_y, weight_x, weight_y):
    """Smooth the first-pass results with a fixed window; store positions."""
    data = run.data
    n_slices = run.n_slices
    x_line, y_line = LinearRegression(), LinearRegression()
    for i in range(min(points_per_side, n_slices)):
        x_line.add_point(fit_x[i], delta_x[i], weight_x[i])
        y_line.add_point(fit_x[i], delta_y[i], weight_y[i])
    for i in range(n_slices):
        i_add = i + points_per_side
        if i_add < n_slices:
            x_line.add_point(fit_x[i_add], delta_x[i_add], weight_x[i_add])
            y_line.add_point(fit_x[i_add], delta_y[i_add], weight_y[i_add])
        i_remove = i - points_per_side - 1
        if i_remove >= 0:
            x_line.add_point(fit_x[i_remove], delta_x[i_remove],
                             -weight_x[i_remove])
            y_line.add_point(fit_x[i_remove], delta_y[i_remove],
                             -weight_y[i_remove])
        smooth_x = x_line.fit_value(fit_x[i])
        smooth_y = y_line.fit_value(fit_x[i])
        x_pred, y_pred = run.predict(spot, i)
        data[Column.DELTA_X_SMOOTH][spot, i] = smooth_x
        data[Column.DELTA_Y_SMOOTH][spot, i] = smooth_y
        data[Column.X][spot, i] = x_pred + smooth_x
        data[Column.Y][spot, i] = y_pred + smooth_y
    if run.is_debug_spot(spot):
        i = n_slices // 2
        smooth_x = data[Column.DELTA_X_SMOOTH][spot, i]
        smooth_y = data[Column.DELTA_Y_SMOOTH][spot, i]
        logger.info(f'{run.spot_name(spot)} smoothed dx, dy at '
                    f'{run.x_value(i)}: {smooth_x:.1f}, {smooth_y:.1f}')


def limit_extrapolation(run, max_extrapolate):
    """Remove positions too far from where a spot was detected.

    Sets the positions and smoothed deviations to NaN if they are
    more than `max_extrapolate` images from the first or last image
    where the spot was detected with sufficient significance.
    Spots never detected are marked as not having data.

    Parameters
    ----------
    run : TrackingRun
        The tracking run, modified in place.
    max_extrapolate : int
        Maximum number of images between the first (or last)
        detection and the first (or last) position.

    Returns
    -------
    None.
    """
    data = run.data
    columns = (Column.X, Column.Y,
               Column.DELTA_X_SMOOTH, Column.DELTA_Y_SMOOTH)
    for spot in range(run.n_spots):
        detected = np.flatnonzero(data[Column.SIGNIFICANCE][spot]
                                  > run.min_significance)
        if not detected.size:
            if run.has_spot[spot]:
                logger.debug(f'{run.spot_name(spot)} never above '
                             'significance limit, deleted')
            run.has_spot[spot] = False
            continue
        first_seen, last_seen = detected[0], detected[-1]
        if first_seen - max_extrapolate > 0:
            for column in columns:
                data[column][spot, :first_seen - max_extrapolate] = np.nan
        if last_seen < run.n_slices - (max_extrapolate + 1):
            for column in columns:
                data[column][spot, last_seen + max_extrapolate + 1:] = np.nan


def smooth_curve(values, n_points):
    """Return `values` smoothed with a sliding linear fit.

    Parameters
    ----------
    values : Sequence of float
        The values to be smoothed, one per image. NaN values
        are not used for the fit, but get a smoothed value.
    n_points : float
        Width of the window of the fit, in number of values.

    Returns
    -------
    smoothed : numpy.ndarray
        Same length as `values`. NaN where the window has no
        valid values.
    """
    values = np.asarray(values, dtype=float)
    n_values = values.size
    half_width = max(int(round(0.5*n_points)), 1)
    line = LinearRegression()
    for i in range(min(half_width, n_values)):
        line.add_point(i, values[i])
    smoothed = np.empty(n_values)
    for i in range(n_values):
        i_add, i_remove = i + half_width, i - half_width - 1
        if i_add < n_values:
            line.add_point(i_add, values[i_add])
        if i_remove >= 0:
            line.add_point(i_remove, values[i_remove], -1.0)
        smoothed[i] = line.fit_value(i)
    return smoothed
