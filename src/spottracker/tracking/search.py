"""Module search of spottracker.tracking.

Finds the spots in one image of the stack, using what is known about
them from the images analyzed before. Spots are searched:
- at the predicted position, corrected by the deviation from the
  prediction when the spot was last seen;
- if the spot was not seen for a while, at the position inferred from
  the deviations of its neighbors;
- at the predicted position.
Afterwards, spots that have collided with a neighbor (i.e., both
spots are at the same position) are resolved by deleting one of them.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import logging
import math

import numpy as np

from spottracker.lib.parallel import n_search_workers
from spottracker.lib.parallel import run_parallel
from spottracker.lib.regression_2d import Regression2D
from spottracker.photometry.analyzer import NO_SIGNIFICANCE
from spottracker.photometry.analyzer import SpotMeasurement
from spottracker.tracking.columns import Column
from spottracker.tracking.state import LOW_SIGNIFICANCE
from spottracker.tracking.state import MAX_DEVIATION_RADII

logger = logging.getLogger(__name__)

_NAN = float('nan')

# Neighbors closer than about 1/4 of the screen size give a reliable
# estimate of the deviation from the prediction
_MIN_NEIGHBORS_OVER_DIST_SQR = 3 * 4**2

# Result of a search that did not measure anything
_NOT_MEASURED = SpotMeasurement(significance=0.0)


def significance_decay(min_significance, search_again):
    """Return the factor for the decay of significance per image.

    After `search_again` images, the significance of a spot that
    was detected with 2*min_significance decays to NO_SIGNIFICANCE.
    """
    exponent = 1 / search_again if search_again > 0 else math.inf
    return (NO_SIGNIFICANCE / (2*min_significance))**exponent


def search_slice(run, slice_index, last_slice_index, cancel_event=None):
    """Find all spots in one image and store the results in `run`.

    Parameters
    ----------
    run : TrackingRun
        Inputs and results of the tracking run.
    slice_index : int
        Index of the image to be analyzed.
    last_slice_index : int
        Index of the image analyzed before, whose results are
        used for inferring positions from neighbors. Can be
        `slice_index` for the first image of a pass.
    cancel_event : threading.Event, optional
        If set, stop searching and skip collision resolution.
        Default is None.

    Returns
    -------
    data_added : bool
        Whether any spot was found and accepted.
    """
    search = _SliceSearch(run, slice_index, last_slice_index)
    run_parallel(search.search_spot, run.n_spots,
                 n_search_workers(run.n_spots), cancel_event)
    if cancel_event is None or not cancel_event.is_set():
        resolve_collisions(run, slice_index)
    return search.data_added


def resolve_collisions(run, slice_index):
    """Delete one of two spots that are at the same position.

    Two spots collide if they are closer than the integration
    radius. If one of them is new or has jumped by more than
    half the integration radius, this one is deleted. Otherwise,
    the spot farther from its prediction is deleted.
    """
    data = run.data
    x_pos = data[Column.X][:, slice_index]
    y_pos = data[Column.Y][:, slice_index]
    delta_x = data[Column.DELTA_X][:, slice_index]
    delta_y = data[Column.DELTA_Y][:, slice_index]
    radius_sqr = run.radii_int[slice_index]**2
    for spot in range(run.n_spots):
        if math.isnan(x_pos[spot]):
            continue
        for other in run.pattern.nearest[spot]:
            if other < spot or math.isnan(x_pos[other]):
                continue
            dist_sqr = ((x_pos[spot] - x_pos[other])**2
                        + (y_pos[spot] - y_pos[other])**2)
            if not dist_sqr < radius_sqr:
                continue
            if math.isnan(delta_x[spot]) and math.isnan(delta_x[other]):
                continue  # Both invisible
            jumped = [
                not run.spot_states[s].step_size_sqr < 0.25*radius_sqr
                for s in (spot, other)
                ]
            if jumped[0] != jumped[1]:
                to_delete = spot if jumped[0] else other
            else:
                dist_i = delta_x[spot]**2 + delta_y[spot]**2
                dist_j = delta_x[other]**2 + delta_y[other]**2
                to_delete = spot if dist_i > dist_j else other
            x_pos[to_delete] = _NAN
            delta_x[to_delete] = _NAN
            run.spot_states[to_delete].forget_delta()
            kept = other if to_delete == spot else spot
            logger.debug(f'{run.x_value(slice_index)}: delete spot '
                         f'{run.spot_name(to_delete)} colliding with '
                         f'{run.spot_name(kept)}, '
                         f'd={math.sqrt(dist_sqr):.1f}')


class _SliceSearch:
    """Searches the spots in one image, one spot at a time."""

    def __init__(self, run, slice_index, last_slice_index):
        """Initialize instance."""
        self.run = run
        self.slice_index = slice_index
        self.last_slice_index = last_slice_index
        self.image = run.stack.image(slice_index)
        self.data = run.data.values
        self.data_added = False
        self.decay = significance_decay(run.min_significance,
                                        run.search_again)
        self.dlnk = 0.0  # Change of ln(k) since last_slice_index
        if run.use_energies:
            energies = run.stack.energies
            self.dlnk = math.sqrt(energies[last_slice_index]
                                  / energies[slice_index]) - 1
        # Neighbors as they were before searching. last_slice_index
        # may be the image being searched.
        self.neighbor_significance = np.array(
            [state.retained_significance[last_slice_index]
             for state in run.spot_states]
            )
        self.neighbor_delta_x = self.data[Column.DELTA_X, :,
                                          last_slice_index].copy()
        self.neighbor_delta_y = self.data[Column.DELTA_Y, :,
                                          last_slice_index].copy()

    def search_spot(self, spot):
        """Search `spot` in the image and store the results."""
        run, data, i = self.run, self.data, self.slice_index
        state = run.spot_states[spot]
        state.step_size_sqr = _NAN
        x_pred, y_pred, dx_dlnk, dy_dlnk = run.predict(spot, i,
                                                       with_derivatives=True)
        measurement = _NOT_MEASURED
        if data[Column.SIGNIFICANCE, spot, i] > run.min_significance:
            # Found in a previous pass
            state.step_size_sqr = (
                (state.last_delta_x - data[Column.DELTA_X, spot, i])**2
                + (state.last_delta_y - data[Column.DELTA_Y, spot, i])**2
                )
            state.last_delta_x = data[Column.DELTA_X, spot, i]
            state.last_delta_y = data[Column.DELTA_Y, spot, i]
            state.last_seen = i
        else:
            measurement = self._find(spot, x_pred, y_pred)
            if measurement.significance > run.min_significance:
                self._accept(spot, measurement, x_pred, y_pred,
                             (dx_dlnk*self.dlnk, dy_dlnk*self.dlnk))
            else:
                state.step_size_sqr = 0.0  # Keep the old deviation
            if not math.isnan(measurement.integral):
                # Inside the mask. Position is needed for collisions.
                data[Column.INTEGRAL, spot, i] = measurement.integral
                if state.has_delta:
                    data[Column.X, spot, i] = x_pred + state.last_delta_x
                    data[Column.Y, spot, i] = y_pred + state.last_delta_y
        self._update_significance(spot, measurement.significance,
                                  x_pred, y_pred)
        if run.is_debug_spot(spot):
            logger.info(
                f'{run.x_value(i)} {run.spot_name(spot)} Result: '
                f'integral={measurement.integral:.5g} '
                f'sig={data[Column.SIGNIFICANCE, spot, i]:.2f} '
                f'delta x,y={data[Column.DELTA_X, spot, i]:.2f},'
                f'{data[Column.DELTA_Y, spot, i]:.2f} '
                f'x,y={data[Column.X, spot, i]:.2f},'
                f'{data[Column.Y, spot, i]:.2f}'
                )

    def _find(self, spot, x_pred, y_pred):
        """Return a SpotMeasurement from the best guess of the position."""
        run, i = self.run, self.slice_index
        state = run.spot_states[spot]
        measurement = _NOT_MEASURED
        if state.has_delta:
            x_exp = x_pred + state.last_delta_x
            y_exp = y_pred + state.last_delta_y
            if run.stack.inside_mask(x_exp, y_exp):
                measurement = run.analyze(spot, i, x_exp, y_exp,
                                          self.image, center=True)
                self._trace(spot, 'expected', x_exp, y_exp, measurement)
        if (not measurement.significance > run.min_significance
                and state.unseen_for(i) >= run.search_again
                and state.retained_significance[i] == 0):
            measurement = self._search_again(spot, x_pred, y_pred,
                                             measurement)
        return measurement

    def _search_again(self, spot, x_pred, y_pred, measurement):
        """Search a spot not seen for a while, first with help of neighbors."""
        run, data, i = self.run, self.data, self.slice_index
        state = run.spot_states[spot]
        retry_at_prediction = True
        delta_x, delta_y, inv_dist_sqr = self._delta_from_neighbors(
            spot, x_pred, y_pred
            )
        max_dev_sqr = (run.radius(spot, i)*MAX_DEVIATION_RADII)**2
        if not math.isnan(delta_x) and (
                delta_x**2 + delta_y**2 < max_dev_sqr
                or ((delta_x - state.last_delta_x)**2
                    + (delta_y - state.last_delta_y)**2) < max_dev_sqr):
            x_fit, y_fit = x_pred + delta_x, y_pred + delta_y
            if run.stack.inside_mask(x_fit, y_fit):
                measurement = run.analyze(spot, i, x_fit, y_fit,
                                          self.image, center=True)
                self._trace(spot, 'from neighbors', x_fit, y_fit, measurement)
                if (not measurement.significance > run.min_significance
                        and not math.isnan(measurement.integral)
                        and not state.decaying_significance >= NO_SIGNIFICANCE
                        and state.retained_significance[i] == 0):
                    # Not found, but the inferred position is better
                    # than nothing
                    data[Column.DELTA_X, spot, i] = delta_x
                    data[Column.DELTA_Y, spot, i] = delta_y
                    data[Column.SIGNIFICANCE, spot, i] = LOW_SIGNIFICANCE
                    _, _, width, height = run.stack.mask_bounds
                    if (inv_dist_sqr*width*height
                            > _MIN_NEIGHBORS_OVER_DIST_SQR):
                        retry_at_prediction = False
        if (not measurement.significance > run.min_significance
                and retry_at_prediction
                and run.stack.inside_mask(x_pred, y_pred)):
            measurement = run.analyze(spot, i, x_pred, y_pred,
                                      self.image, center=True)
            self._trace(spot, 'uncorrected', x_pred, y_pred, measurement)
        return measurement

    def _delta_from_neighbors(self, spot, x_pred, y_pred):
        """Return the deviation from the prediction inferred from neighbors.

        Returns
        -------
        delta_x, delta_y : float
            NaN if fewer than three neighbors are known.
        sum_inv_dist_sqr : float
            Sum of 1/distance**2 of the neighbors, in pixels.
        """
        run, i = self.run, self.slice_index
        regression = Regression2D()
        n_neighbors, sum_inv_dist_sqr = 0, 0.0
        for other in run.pattern.nearest[spot]:
            significance = self.neighbor_significance[other]
            if (not significance > NO_SIGNIFICANCE
                    or math.isnan(self.neighbor_delta_x[other])):
                continue
            n_neighbors += 1
            x_other, y_other = run.predict(other, i)
            dist_sqr = (x_other - x_pred)**2 + (y_other - y_pred)**2
            inv_dist_sqr = 1 / dist_sqr if dist_sqr else math.inf
            sum_inv_dist_sqr += inv_dist_sqr
            regression.add_point(self.neighbor_delta_x[other],
                                 self.neighbor_delta_y[other],
                                 run.pattern.kx[other],
                                 run.pattern.ky[other],
                                 significance*inv_dist_sqr)
        if n_neighbors < 3:
            return _NAN, _NAN, sum_inv_dist_sqr
        delta_x, delta_y = regression.apply(run.pattern.kx[spot],
                                            run.pattern.ky[spot])
        if run.is_debug_spot(spot):
            logger.info(f'{run.x_value(i)} {run.spot_name(spot)} from '
                        f'{n_neighbors} neighbors: dx,y={delta_x:.1f},'
                        f'{delta_y:.1f}')
        return float(delta_x), float(delta_y), sum_inv_dist_sqr

    def _accept(self, spot, measurement, x_pred, y_pred, calc_step):
        """Store a significant spot, unless its position jumped."""
        run, data, i = self.run, self.data, self.slice_index
        state = run.spot_states[spot]
        unseen_for = state.unseen_for(i)
        if unseen_for >= run.search_again:
            logger.debug(
                f'Found {run.spot_name(spot)} at {run.x_value(i)} '
                f'x,y={measurement.x:.1f},{measurement.y:.1f} '
                f'sig={measurement.significance:.2f} '
                f'integral={measurement.integral:.5g}'
                )
        data[Column.SIGNIFICANCE, spot, i] = measurement.significance
        delta_x, delta_y = measurement.x - x_pred, measurement.y - y_pred
        state.step_size_sqr = ((delta_x - state.last_delta_x)**2
                               + (delta_y - state.last_delta_y)**2)
        radius = run.radius(spot, i)
        if (unseen_for >= run.search_again
                or not state.step_size_sqr > radius**2):
            self.data_added = True
            run.has_spot[spot] = True
            state.last_delta_x, state.last_delta_y = delta_x, delta_y
            state.last_seen = i
            data[Column.DELTA_X, spot, i] = delta_x
            data[Column.DELTA_Y, spot, i] = delta_y
            if self.last_slice_index != i and run.use_energies:
                self._check_stuck(spot, measurement, calc_step)

    def _check_stuck(self, spot, measurement, calc_step):
        """Look back whether `spot` stays at the same place, e.g., a defect.

        Spots should move with energy as the prediction does.
        A spot that is stuck at a fixed position (its deviation
        from the prediction changes more than its position) is
        probably a different feature. If so, only high-significance
        data in the last images are kept.
        """
        run, data, i = self.run, self.data, self.slice_index
        state = run.spot_states[spot]
        min_sig = run.min_significance
        calc_move = math.hypot(*calc_step)
        # Look back as far as the spot should move by radius + 2 pixels
        steps = (run.radius(spot, i) + 2) / calc_move if calc_move else 0
        steps = max(int(round(steps)), 1) if math.isfinite(steps) else 1
        old = i - steps if i > self.last_slice_index else i + steps
        if not 0 <= old < run.n_slices:
            return
        if data[Column.SIGNIFICANCE, spot, old] > min_sig:
            return
        move_sqr = ((measurement.x - data[Column.X, spot, old])**2
                    + (measurement.y - data[Column.Y, spot, old])**2)
        delta_x = data[Column.DELTA_X, spot]
        delta_y = data[Column.DELTA_Y, spot]
        delta_change_sqr = ((delta_x[i] - delta_x[old])**2
                            + (delta_y[i] - delta_y[old])**2)
        if not delta_change_sqr > 2*move_sqr:
            return
        logger.debug(f'{run.spot_name(spot)} got stuck at {run.x_value(i)}. '
                     'Keep only high significance back to '
                     f'{run.x_value(old)}')
        state.last_seen = None
        state.decaying_significance = 0.0
        step = 1 if i > old else -1
        for j in range(old, i + step, step):
            if data[Column.SIGNIFICANCE, spot, j] > 3*min_sig:
                state.last_delta_x = data[Column.DELTA_X, spot, j]
                state.last_delta_y = data[Column.DELTA_Y, spot, j]
                state.last_seen = j
            else:
                state.decaying_significance *= self.decay
                data[Column.X, spot, j] = _NAN
                data[Column.Y, spot, j] = _NAN
                if state.decaying_significance > NO_SIGNIFICANCE:
                    data[Column.DELTA_X, spot, j] = state.last_delta_x
                    data[Column.DELTA_Y, spot, j] = state.last_delta_y
                    data[Column.SIGNIFICANCE, spot, j] = LOW_SIGNIFICANCE
                else:
                    data[Column.DELTA_X, spot, j] = _NAN
                    data[Column.DELTA_Y, spot, j] = _NAN
                    data[Column.SIGNIFICANCE, spot, j] = 0.0
            state.retained_significance[j] = state.decaying_significance

    def _update_significance(self, spot, significance, x_pred, y_pred):
        """Keep track of the decaying significance of the last detection."""
        run, data, i = self.run, self.data, self.slice_index
        state = run.spot_states[spot]
        min_sig = run.min_significance
        if significance > 2*min_sig:
            significance = 2*min_sig
        elif significance <= min_sig:
            significance = 0.0
        if significance >= state.decaying_significance:  # False for NaN
            state.decaying_significance = significance
            state.retained_significance[i] = significance
            return
        state.decaying_significance *= self.decay
        # Keep the previous deviation if a detection is not too long ago
        if (data[Column.SIGNIFICANCE, spot, i] > NO_SIGNIFICANCE
                and state.decaying_significance > NO_SIGNIFICANCE
                and (state.decaying_significance
                     > state.retained_significance[i])):
            data[Column.X, spot, i] = x_pred + state.last_delta_x
            data[Column.Y, spot, i] = y_pred + state.last_delta_y
            state.retained_significance[i] = state.decaying_significance

    def _trace(self, spot, where, x_start, y_start, measurement):
        """Log the result of a search for the traced spot."""
        run = self.run
        if not run.is_debug_spot(spot):
            return
        logger.info(f'{run.x_value(self.slice_index)} {run.spot_name(spot)} '
                    f'{where} at {x_start:.1f},{y_start:.1f}: '
                    f'sig={measurement.significance:.2f} at '
                    f'{measurement.x:.1f},{measurement.y:.1f}')
