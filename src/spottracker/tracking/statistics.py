"""Module statistics of spottracker.tracking.

Statistics of the deviations of the (smoothed) spot positions from the
screen model, relative to those of the nearest neighbors. Spots that
deviate much more than their neighbors may have been tracked
incorrectly. They get a nonzero 'badness', and the worst ones are
deleted.
"""

__authors__ = (
    'Michael Schmid',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import logging

import numpy as np

from spottracker.tracking.columns import Column

logger = logging.getLogger(__name__)

# Badness values below this are considered fine
MIN_BADNESS = 40

# Spots with badness at least this are always deleted
MAX_BADNESS = 400

# Neighbors considered for the deviation of a spot
_MAX_NEIGHBORS = 8
_MIN_NEIGHBORS = 2

# Further neighbors are ignored if their reciprocal-space distance
# squared is larger than this times that of the nearest one
_MAX_DISTANCE_SQR_RATIO = 4.1

# Images with fewer spots are not considered for the statistics
_MIN_SPOTS_PER_IMAGE = 3


def deviation_statistics(run, min_significance_to_keep):
    """Set the badness of all spots, and delete very bad ones.

    A second pass excludes neighbors with nonzero badness,
    as they may have caused a nonzero badness of a good spot.

    Parameters
    ----------
    run : TrackingRun
        The tracking run. Its badness and has_spot are modified.
    min_significance_to_keep : float
        Spots with nonzero badness are deleted if their maximum
        significance is below this value.

    Returns
    -------
    None.
    """
    n_spots, n_slices = run.n_spots, run.n_slices
    deviations_sqr = np.zeros((n_spots, n_slices))
    mean_dev_sqr = np.zeros(n_slices)
    n_values = np.zeros(n_slices, dtype=int)
    max_significance = np.zeros(n_spots)
    for pass_ in range(2):
        for spot in np.flatnonzero(run.has_spot):
            if pass_ and not (run.badness[spot] and _has_bad_neighbor(run,
                                                                      spot)):
                continue  # Only spots affected by bad neighbors
            for i in range(n_slices):
                dev_sqr = _deviation_sqr(run, spot, i,
                                         exclude_bad=bool(pass_))
                if np.isnan(dev_sqr):
                    continue
                deviations_sqr[spot, i] = dev_sqr
                if not pass_:
                    mean_dev_sqr[i] += dev_sqr
                    n_values[i] += 1
        if not pass_:
            with np.errstate(divide='ignore', invalid='ignore'):
                mean_dev_sqr /= n_values
        has_bad_spot = _set_badness(run, deviations_sqr, mean_dev_sqr,
                                    n_values, max_significance)
        if not has_bad_spot:
            return
    for spot in np.flatnonzero(run.has_spot):
        badness = run.badness[spot]
        if (badness >= MAX_BADNESS
                or (badness > 0
                    and max_significance[spot] < min_significance_to_keep)):
            run.has_spot[spot] = False
            logger.debug(f'delete {run.pattern.name_with_group(spot)} '
                         f'badness={badness}, max significance='
                         f'{max_significance[spot]:.2f} (threshold='
                         f'{min_significance_to_keep:.2f})')


def _deviation_sqr(run, spot, slice_index, exclude_bad):
    """Return the mean squared deviation relative to the nearest spots.

    Returns
    -------
    deviation_sqr : float
        NaN if the spot has no smoothed position, or if fewer
        than two neighbors have one.
    """
    data, i = run.data, slice_index
    integral = data[Column.INTEGRAL][:, i]
    smooth_x = data[Column.DELTA_X_SMOOTH][:, i]
    smooth_y = data[Column.DELTA_Y_SMOOTH][:, i]
    if np.isnan(integral[spot] + smooth_x[spot] + smooth_y[spot]):
        return np.nan
    kx, ky = run.pattern.kx, run.pattern.ky
    sum_dx = sum_dy = 0.0
    first_delta_k_sqr = 0.0
    count = 0
    for other in run.pattern.nearest[spot]:
        if count >= _MAX_NEIGHBORS:
            break
        if np.isnan(integral[other] + smooth_x[other] + smooth_y[other]):
            continue
        if exclude_bad and run.badness[other]:
            continue
        delta_k_sqr = (kx[spot] - kx[other])**2 + (ky[spot] - ky[other])**2
        if not count:
            first_delta_k_sqr = delta_k_sqr
        elif (count > 3
              and delta_k_sqr > _MAX_DISTANCE_SQR_RATIO*first_delta_k_sqr):
            break
        sum_dx += smooth_x[spot] - smooth_x[other]
        sum_dy += smooth_y[spot] - smooth_y[other]
        count += 1
    if count < _MIN_NEIGHBORS:
        return np.nan
    return (sum_dx**2 + sum_dy**2) / count


def _set_badness(run, deviations_sqr, mean_dev_sqr, n_values,
                 max_significance):
    """Store the badness of all spots. Return whether any is bad."""
    data = run.data
    has_bad_spot = False
    for spot in np.flatnonzero(run.has_spot):
        max_significance[spot] = 0
        sum_badness_sqr, n_energies = 0.0, 0
        for i in range(run.n_slices):
            if np.isnan(data[Column.INTEGRAL][spot, i]):
                continue
            if n_values[i] < _MIN_SPOTS_PER_IMAGE:
                continue
            significance = data[Column.SIGNIFICANCE][spot, i]
            if significance > max_significance[spot]:
                max_significance[spot] = significance
            max_deviation_sqr = 2*mean_dev_sqr[i] + run.radii_int[i]**2
            sum_badness_sqr += deviations_sqr[spot, i] / max_deviation_sqr
            n_energies += 1
        with np.errstate(divide='ignore', invalid='ignore'):
            badness_sqr = np.float64(sum_badness_sqr) / n_energies
        badness = (int(100*(badness_sqr - 2.0)) if np.isfinite(badness_sqr)
                   else 0)
        if badness < MIN_BADNESS:
            badness = 0
        else:
            has_bad_spot = True
        run.badness[spot] = badness
        if run.is_debug_spot(spot):
            logger.info(f'{run.spot_name(spot)} badness: {badness} '
                        f'(from {n_energies} points), max significance='
                        f'{max_significance[spot]:.2f}')
    return has_bad_spot


def _has_bad_neighbor(run, spot):
    """Return whether any of the nearest spots has nonzero badness."""
    return any(run.badness[other] for other in run.pattern.nearest[spot])
