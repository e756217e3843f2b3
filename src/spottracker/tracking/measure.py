"""Module measure of spottracker.tracking.

The final measurement of the intensities, at the smoothed positions
obtained by tracking. This includes:
- the check for spots too close to a neighbor,
- the optional subtraction of the 1/r**2 background that surrounds
  bright spots, before measuring their neighbors,
- the background intensity of each image,
- the processing of the beam current I0, optionally corrected for
  the fast variations of the background intensity,
- the removal of spots with too few data points, and
- the normalization of the intensities.
Also defines the estimate of the image noise.
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
import threading

import numpy as np

from spottracker.lib.dataclass_utils import frozen
from spottracker.lib.linear_regression import LinearRegression
from spottracker.lib.parallel import n_measure_workers
from spottracker.lib.parallel import run_parallel
from spottracker.tracking.columns import Column
from spottracker.tracking.smoothing import smooth_curve
from spottracker.tracking.state import MIN_REL_INTEGRAL_FOR_BG

logger = logging.getLogger(__name__)

# Spots closer than this many integration radii are too close. With
# CIRCLE, the background ring of a spot does not overlap the core of
# its neighbor (the limit would be 1 + sqrt(2)).
TOO_CLOSE_RADII = 2.5

# Neighbors checked for being too close
_N_NEIGHBORS_TOO_CLOSE = 12

# Intensity of the highest maximum after normalization
NORMALIZED_MAX = 1000.0

# Fraction of the darkest pixels averaged for the background intensity
DARK_FRACTION = 0.4
_HISTOGRAM_BINS = 256

# Bright spots have an average intensity at least this many times
# the noise above the background
_BRIGHT_SPOT_NOISE_FACTOR = 10

# The 1/r**2 background is subtracted down to this times the noise
_BACKGROUND_BASE_FACTOR = 0.1

# Minimum number of pixels for fitting the 1/r**2 background. For
# the minimum variance of 1/r**2, a full ring between r and 2r would
# give 0.037/r**4.
_MIN_PIXELS_FOR_FIT = 8
_MIN_INV_R_SQR_VARIANCE = 0.018

# I0 is smoothed only for at least this many points
MIN_I0_SMOOTHING = 1.5

# Range of acceptable background/smoothed-background ratios
I0_CORRECTION_LIMITS = (0.1, 10)


@frozen
class HighestIntensity:
    """The brightest raw integral of all spots with valid data."""

    intensity: float = 0.0
    slice_index: int = -1
    spot: int = -1


@frozen
class MeasurementSummary:
    """Overall results of the final measurement.

    Attributes
    ----------
    too_close : numpy.ndarray
        For each spot, whether it came too close to a neighbor
        in any image.
    background_intensities : numpy.ndarray
        For each image, the mean intensity of the darkest
        pixels outside the spots.
    highest : HighestIntensity
        Where the highest raw integral was found.
    n_too_few_points : int
        Number of spots deleted because of too few data points
        or too low significance.
    """

    too_close: np.ndarray
    background_intensities: np.ndarray
    highest: HighestIntensity
    n_too_few_points: int

    @property
    def n_too_close(self):
        """Return the number of spots too close to a neighbor."""
        return int(np.count_nonzero(self.too_close))


def _round_half_up(value):
    """Return the nearest integer, rounding halves upwards."""
    return int(math.floor(value + 0.5))


def _circle_rows(x_center, y_center, radius, width, height):
    """Yield (y, x_min, x_max) for pixel rows of a circle, clipped."""
    y_min = max(0, math.ceil(y_center - radius))
    y_max = min(height - 1, math.floor(y_center + radius))
    for y in range(y_min, y_max + 1):
        delta_x = math.sqrt(max(radius**2 - (y - y_center)**2, 0))
        x_min = max(0, _round_half_up(x_center - delta_x))
        x_max = min(width - 1, _round_half_up(x_center + delta_x))
        if x_max >= x_min:
            yield y, x_min, x_max


def mask_minus_spots(run, slice_index, radius_factor=1.0, spots=None):
    """Return the mask without circles around spots.

    Parameters
    ----------
    run : TrackingRun
        The tracking run. Only spots with `run.has_spot` and a
        known position in `slice_index` are removed.
    slice_index : int
        The image whose spot positions should be used.
    radius_factor : float, optional
        Radius of the circles, in units of the integration
        radius. Default is 1.
    spots : numpy.ndarray, optional
        Boolean array. If given, only spots for which it is
        True are removed. Default is None.

    Returns
    -------
    mask : numpy.ndarray
        A boolean copy of the mask, False in the spot circles.
    """
    stack = run.stack
    mask = stack.mask.copy()
    selected = run.has_spot.copy()
    if spots is not None:
        selected &= spots
    x_pos = run.data[Column.X][:, slice_index]
    y_pos = run.data[Column.Y][:, slice_index]
    for spot in np.flatnonzero(selected):
        x_center, y_center = x_pos[spot], y_pos[spot]
        if not (np.isfinite(x_center) and np.isfinite(y_center)):
            continue
        radius = radius_factor * run.radius(spot, slice_index)
        for y, x_min, x_max in _circle_rows(x_center, y_center, radius,
                                            stack.width, stack.height):
            mask[y, x_min:x_max + 1] = False
    return mask


def estimate_noise(run, slice_index=0):
    """Return the pixel noise of the background in one image.

    The noise is estimated via a high-pass filter, i.e., the
    convolution with (-1, 2, -1) along the rows, over the pixels
    of the mask that are not within twice the integration radius
    of any spot.

    Parameters
    ----------
    run : TrackingRun
        The tracking run, with spot positions.
    slice_index : int, optional
        The image to be used. Default is the first one.

    Returns
    -------
    noise : float
        The standard deviation of the pixel values. NaN if
        there are not enough pixels.
    """
    mask = mask_minus_spots(run, slice_index, radius_factor=2.0)
    values = np.where(mask, run.stack.image(slice_index), np.nan)
    filtered = 2*values[:, 1:-1] - (values[:, :-2] + values[:, 2:])
    filtered = filtered[np.isfinite(filtered)]
    with np.errstate(divide='ignore', invalid='ignore'):
        # 6 == 1**2 + 2**2 + 1**2 from the kernel
        noise = np.sqrt(np.sum(filtered**2) / (6*filtered.size))
    logger.debug(f'Background noise: {noise:.4g}')
    return float(noise)


def background_intensity(image, mask):
    """Return the mean intensity of the darkest pixels in `mask`.

    The darkest DARK_FRACTION of the pixels are taken, from a
    histogram between four standard deviations below and one
    above the mean.

    Parameters
    ----------
    image : numpy.ndarray
        The pixel values.
    mask : numpy.ndarray
        Boolean, True for the pixels to be considered.

    Returns
    -------
    intensity : float
        NaN if no pixel is in `mask`.
    """
    values = image[mask]
    count = values.size
    if not count:
        return math.nan
    average = values.mean()
    stddev = math.sqrt(max(np.mean(values**2) - average**2, 0))
    histo_min = average - 4*stddev
    histo_max = average + stddev
    if not histo_max > histo_min:  # All values equal
        return float(average)
    scale = _HISTOGRAM_BINS / (histo_max - histo_min)
    bins = np.floor((values - histo_min)*scale + 0.5).astype(int)
    n_below = np.count_nonzero(bins < 0)
    histogram = np.bincount(bins[(bins >= 0) & (bins < _HISTOGRAM_BINS)],
                            minlength=_HISTOGRAM_BINS)
    n_dark = DARK_FRACTION * count
    running_count = n_below
    sum_intensity = n_below * histo_min
    for i, n_in_bin in enumerate(histogram):
        intensity = histo_min + i/scale
        if running_count + n_in_bin > n_dark:
            sum_intensity += (n_dark - running_count) * intensity
            break
        running_count += n_in_bin
        sum_intensity += n_in_bin * intensity
    return float(sum_intensity / n_dark)


def measure_intensities(run, noise, neighbor_background, min_points,
                        min_significance_to_keep, cancel_event=None,
                        slice_done=None):
    """Measure all spots at their smoothed positions, in all images.

    Parameters
    ----------
    run : TrackingRun
        The tracking run, with smoothed positions. Its data and
        has_spot are modified.
    noise : float
        Pixel noise, used to select the bright spots whose
        1/r**2 background is subtracted.
    neighbor_background : bool
        Whether the 1/r**2 background of bright spots should be
        subtracted before measuring their neighbors.
    min_points : int
        Spots are deleted if their longest sequence of images
        with valid intensity is shorter than this, or than half
        the number of images. At least one point is required.
    min_significance_to_keep : float
        Spots are deleted if they never reach this significance.
    cancel_event : threading.Event, optional
        If set, stop measuring. Default is None.
    slice_done : callable, optional
        Called without arguments after each image is measured.
        Default is None.

    Returns
    -------
    summary : MeasurementSummary or None
        None if the measurement was cancelled.
    """
    measurement = _SliceMeasurement(run, noise, neighbor_background,
                                    slice_done)
    run_parallel(measurement.measure_slice, run.n_slices,
                 n_measure_workers(run.n_slices), cancel_event)
    if cancel_event is not None and cancel_event.is_set():
        return None

    too_close = measurement.has_collision
    if run.use_energies:
        too_close = np.isfinite(measurement.max_energy) & run.has_spot
        energies = run.stack.energies
        for spot in np.flatnonzero(too_close):
            max_energy = measurement.max_energy[spot]
            logger.debug(f'{run.spot_name(spot)} too close to neighbor '
                         f'above {max_energy:.1f} eV')
            run.data[Column.INTEGRAL][spot, energies >= max_energy] = np.nan
    n_too_close = np.count_nonzero(too_close)
    if n_too_close:
        logger.debug(f'{n_too_close} beams with neighbors too close')

    inv_beam_current = None
    beam_current = processed_beam_current(run.stack.beam_current,
                                          measurement.background,
                                          run.settings)
    if beam_current is not None:
        with np.errstate(divide='ignore'):
            inv_beam_current = 1 / beam_current
    min_points = max(min(min_points, run.n_slices // 2), 1)
    highest, n_too_few_points, max_intensity = _remove_weak_spots(
        run, min_points, min_significance_to_keep, inv_beam_current
        )
    if n_too_few_points:
        logger.debug(f'{n_too_few_points} beams with too few points '
                     f'(<{min_points})')

    with np.errstate(divide='ignore', invalid='ignore'):
        factor = NORMALIZED_MAX / np.float64(max_intensity)  # inf if none
        if inv_beam_current is not None:
            factor = factor * inv_beam_current
        intensity = run.data[Column.INT_I0_CORRECTED]
        intensity[run.has_spot] = (run.data[Column.INTEGRAL][run.has_spot]
                                   * factor)
    return MeasurementSummary(too_close=too_close,
                              background_intensities=measurement.background,
                              highest=highest,
                              n_too_few_points=n_too_few_points)


def processed_beam_current(beam_current, background, settings):
    """Return the beam current I0 used for normalizing intensities.

    If settings.smooth_i0_points is large enough, I0 is smoothed.
    If also settings.i0_from_background, the smoothed I0 is then
    multiplied by the ratio between the background intensity of
    each image and its smoothed value. This brings back the fast
    variations of I0, as seen by the background intensity, which
    is less noisy than a measured I0.

    Parameters
    ----------
    beam_current : numpy.ndarray or None
        The measured I0 of each image.
    background : numpy.ndarray
        The background intensity of each image.
    settings : TrackerSettings
        The parameters of the run.

    Returns
    -------
    processed : numpy.ndarray or None
        None if `beam_current` is None. The correction from the
        background is not applied (with a warning) if it is out
        of range for any image.
    """
    if beam_current is None:
        return None
    processed = np.array(beam_current, dtype=float)
    n_points = settings.smooth_i0_points
    if n_points < MIN_I0_SMOOTHING:
        if settings.i0_from_background:
            logger.warning('I0 correction from background intensity '
                           'requires smoothing of I0. Not performed.')
        return processed
    processed = smooth_curve(processed, n_points)
    if settings.i0_from_background:
        processed *= _background_variations(background, n_points)
    return processed


def _background_variations(background, n_points):
    """Return background/smoothed background, or ones if out of range."""
    background = np.asarray(background, dtype=float)
    low, high = I0_CORRECTION_LIMITS
    with np.errstate(divide='ignore', invalid='ignore'):
        factors = background / smooth_curve(background, n_points)
        acceptable = (background > 0) & (factors > low) & (factors < high)
    if acceptable.all():
        return factors
    i = int(np.flatnonzero(~acceptable)[0])
    logger.warning('I0 correction from background intensity not '
                   f'performed. Image {i} has background '
                   f'{background[i]:.4g}, correction factor would be '
                   f'{factors[i]:.3g}')
    return np.ones_like(factors)


def _remove_weak_spots(run, min_points, min_significance_to_keep,
                       inv_beam_current):
    """Delete spots with too few points, and find the maximum intensity.

    Returns
    -------
    highest : HighestIntensity
        The highest raw integral, among the spots with data.
    n_deleted : int
        How many spots were deleted.
    max_intensity : float
        Highest (beam-current normalized) intensity of the
        spots that are kept.
    """
    data = run.data
    highest = HighestIntensity()
    max_intensity, n_deleted = 0.0, 0
    for spot in np.flatnonzero(run.has_spot):
        integrals = data[Column.INTEGRAL][spot]
        valid = ~np.isnan(integrals)
        n_contiguous = _longest_true_run(valid)
        if valid.any():
            brightest = int(np.argmax(np.where(valid, integrals, -np.inf)))
            if integrals[brightest] > highest.intensity:
                highest = HighestIntensity(float(integrals[brightest]),
                                           brightest, int(spot))
        max_significance = np.max(data[Column.SIGNIFICANCE][spot][valid],
                                  initial=0.0)
        intensities = integrals[valid]
        if inv_beam_current is not None:
            intensities = intensities * inv_beam_current[valid]
        spot_max = np.nanmax(intensities, initial=0.0)
        keep = (n_contiguous >= min_points
                and max_significance >= min_significance_to_keep)
        if keep:
            max_intensity = max(max_intensity, spot_max)
        else:
            run.has_spot[spot] = False
            n_deleted += 1
        if run.is_debug_spot(spot):
            logger.info(f'{run.spot_name(spot)} contiguous data points: '
                        f'{n_contiguous}, max significance: '
                        f'{max_significance:.2f} -> '
                        f'{"kept" if keep else "deleted"}')
    return highest, n_deleted, max_intensity


def _pixel_range(center, half_width, start, stop):
    """Return the pixel range around `center`, clipped to [start, stop)."""
    first, last = center - half_width, center + half_width
    if first > start:
        start = int(first)
    if last + 1 < stop:
        stop = min(math.ceil(last) + 1, stop)
    return start, stop


def _longest_true_run(values):
    """Return the length of the longest sequence of True in `values`."""
    longest = current = 0
    for value in values:
        current = current + 1 if value else 0
        longest = max(longest, current)
    return longest


class _SliceMeasurement:
    """Measures all spots in one image at a time."""

    def __init__(self, run, noise, neighbor_background, slice_done):
        """Initialize instance."""
        self.run = run
        self.noise = noise
        self.neighbor_background = neighbor_background
        self.slice_done = slice_done
        self.max_energy = np.full(run.n_spots, np.inf)
        self.has_collision = np.zeros(run.n_spots, dtype=bool)
        self.background = np.full(run.n_slices, np.nan)
        self._lock = threading.Lock()  # For max_energy

    def measure_slice(self, slice_index):
        """Measure all spots in one image and store the results."""
        run, data, i = self.run, self.run.data, slice_index
        image = run.stack.image(i)
        for spot in np.flatnonzero(run.has_spot):
            measurement = run.analyze(spot, i, data[Column.X][spot, i],
                                      data[Column.Y][spot, i], image)
            data.store_measurement(spot, i, measurement)
            if math.isnan(measurement.integral):
                # Outside. Do not show smoothed positions.
                data[Column.DELTA_X_SMOOTH][spot, i] = np.nan
                data[Column.DELTA_Y_SMOOTH][spot, i] = np.nan
        self._check_too_close(i)
        mask = None
        if self.neighbor_background:
            mask = self._subtract_neighbor_background(i, image)
        if mask is None:
            mask = mask_minus_spots(run, i)
        self.background[i] = background_intensity(image, mask)
        if self.slice_done:
            self.slice_done()

    def _check_too_close(self, slice_index):
        """Flag pairs of spots closer than TOO_CLOSE_RADII radii.

        A spot is affected if its neighbor is significant or has
        more than half of its integral. On an energy axis, the
        data of the affected spot are invalid at this and higher
        energies. Otherwise, only this image is invalid.
        """
        run, data, i = self.run, self.run.data, slice_index
        x_pos = data[Column.X][:, i]
        y_pos = data[Column.Y][:, i]
        integral = data[Column.INTEGRAL][:, i]
        significance = data[Column.SIGNIFICANCE][:, i]
        radius = run.radii_int[i]
        if run.pattern.has_superstructure:
            radius = max(radius, run.radii_sup[i])
        min_dist_sqr = (TOO_CLOSE_RADII * radius)**2
        min_sig = run.min_significance
        for spot in np.flatnonzero(run.has_spot):
            if math.isnan(integral[spot]):
                continue
            neighbors = run.pattern.nearest[spot][:_N_NEIGHBORS_TOO_CLOSE]
            for other in neighbors:
                if (other > spot or not run.has_spot[other]
                        or math.isnan(integral[other])):
                    continue  # Each pair only once
                dist_sqr = ((x_pos[spot] - x_pos[other])**2
                            + (y_pos[spot] - y_pos[other])**2)
                if not dist_sqr < min_dist_sqr:
                    continue
                # Positions outside may be inaccurate
                if not (run.stack.inside_mask(x_pos[spot], y_pos[spot])
                        and run.stack.inside_mask(x_pos[other],
                                                  y_pos[other])):
                    continue
                if run.is_debug_spot(spot) or run.is_debug_spot(other):
                    logger.info(f'{run.x_value(i)}: Collision: '
                                f'{run.spot_name(spot)} & '
                                f'{run.spot_name(other)} '
                                f'r={math.sqrt(dist_sqr):.2f}')
                if (significance[other] > min_sig
                        or integral[other] > 0.5*integral[spot]):
                    self._flag_too_close(spot, i)
                if (significance[spot] > min_sig
                        or integral[spot] > 0.5*integral[other]):
                    self._flag_too_close(other, i)

    def _flag_too_close(self, spot, slice_index):
        """Mark the data of `spot` as invalid from this image on."""
        run = self.run
        if run.use_energies:
            energy = run.stack.energies[slice_index]
            with self._lock:
                self.max_energy[spot] = min(self.max_energy[spot], energy)
        else:
            run.data[Column.INTEGRAL][spot, slice_index] = np.nan
            self.has_collision[spot] = True

    def _subtract_neighbor_background(self, slice_index, image):
        """Remeasure spots after subtracting the background of bright ones.

        The halo around bright spots is fitted as const + a/r**2
        between one and two integration radii, and a/r**2 is
        subtracted from a copy of the image, starting from the
        brightest spot. All other spots are measured again on
        the corrected image.

        Returns
        -------
        mask : numpy.ndarray
            The mask without the circles of the bright spots.
        """
        run, data, i = self.run, self.run.data, slice_index
        integral = data[Column.INTEGRAL][:, i]
        radii = np.array([run.radius(s, i) for s in range(run.n_spots)])
        with np.errstate(invalid='ignore'):
            is_bright = (
                run.has_spot
                & (integral
                   > math.pi*_BRIGHT_SPOT_NOISE_FACTOR*self.noise*radii**2)
                & (data[Column.SIGNIFICANCE][:, i] > run.min_significance)
                )
        mask = mask_minus_spots(run, i, spots=is_bright)
        corrected = image.copy()
        if is_bright.any():
            for order, spot in enumerate(self._sorted_bright(i, is_bright)):
                x_center = data[Column.X][spot, i]
                y_center = data[Column.Y][spot, i]
                if order:  # Except brightest: use refined position
                    measurement = run.analyze(spot, i, x_center, y_center,
                                              corrected)
                    data.store_measurement(spot, i, measurement)
                    if measurement.has_position:
                        x_center, y_center = measurement.x, measurement.y
                self._subtract_halo(corrected, mask, x_center, y_center,
                                    radii[spot])
        for spot in np.flatnonzero(run.has_spot & ~is_bright):
            if math.isnan(integral[spot]):  # Outside, or too close
                continue
            measurement = run.analyze(spot, i, data[Column.X][spot, i],
                                      data[Column.Y][spot, i], corrected)
            data.store_measurement(spot, i, measurement)
        return mask

    def _sorted_bright(self, slice_index, is_bright):
        """Return bright spots to be subtracted, brightest first."""
        integral = self.run.data[Column.INTEGRAL][:, slice_index]
        min_integral = MIN_REL_INTEGRAL_FOR_BG * integral[is_bright].max()
        spots = [spot for spot in np.flatnonzero(is_bright)
                 if integral[spot] > 0 and integral[spot] >= min_integral]
        return sorted(spots, key=lambda spot: integral[spot], reverse=True)

    def _subtract_halo(self, image, mask, x_center, y_center, radius):
        """Fit and subtract the a/r**2 halo around (x_center, y_center)."""
        if not (np.isfinite(x_center) and np.isfinite(y_center)):
            return
        height, width = image.shape
        regression = LinearRegression()
        for y, x_min, x_max in _circle_rows(x_center, y_center, 2*radius,
                                            width, height):
            x_row = np.arange(x_min, x_max + 1)
            in_mask = mask[y, x_min:x_max + 1]
            r_sqr = (x_row[in_mask] - x_center)**2 + (y - y_center)**2
            nonzero = r_sqr > 0
            regression.add_points(1 / r_sqr[nonzero],
                                  image[y, x_min:x_max + 1][in_mask][nonzero])
        if (regression.counter < _MIN_PIXELS_FOR_FIT
                or regression.mean_dx2 < _MIN_INV_R_SQR_VARIANCE/radius**4):
            return
        slope = regression.slope
        if not slope > 0:
            return  # Nothing to subtract
        base = _BACKGROUND_BASE_FACTOR * self.noise
        r_base = math.sqrt(slope / base) if base > 0 else math.inf
        x_min, y_min, bounds_width, bounds_height = self.run.stack.mask_bounds
        y_start, y_end = _pixel_range(y_center, r_base, y_min,
                                      y_min + bounds_height)
        x_start, x_end = _pixel_range(x_center, r_base, x_min,
                                      x_min + bounds_width)
        if y_end <= y_start or x_end <= x_start:
            return
        y_grid, x_grid = np.mgrid[y_start:y_end, x_start:x_end]
        r_sqr = (x_grid - x_center)**2 + (y_grid - y_center)**2
        with np.errstate(divide='ignore'):
            subtract = slope / r_sqr - base
        where = (subtract > 0) & (r_sqr > 0.25*radius**2)
        region = image[y_start:y_end, x_start:x_end]
        region[where] -= subtract[where]
