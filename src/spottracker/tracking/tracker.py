"""Module tracker of spottracker.tracking.

Defines the SpotTracker, which runs the whole tracking procedure
along the energy axis, and the TrackingResult it returns. The
track_spots function runs a SpotTracker with formatted log output.

Spots are searched in four passes, starting from the image where
the screen model was fitted:
1. upwards in energy, from the reference image to the last one;
2. all the way down, to the first image;
3. upwards again, from the first image to the reference one;
4. from the reference image to the last one, but only if the third
   pass found new spots (or to measure all spots, also those below
   the significance threshold).
Afterwards, positions are smoothed, questionable spots are removed,
and the intensities are measured at the smoothed positions.
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

from spottracker.errors import ScreenModelError
from spottracker.lib.dataclass_utils import frozen
from spottracker.lib.dataclass_utils import non_init_field
from spottracker.lib.dataclass_utils import set_frozen_attr
from spottracker.lib.log_utils import at_level
from spottracker.lib.log_utils import debug_or_lower
from spottracker.lib.log_utils import info_enabled_if
from spottracker.lib.log_utils import log_elapsed
from spottracker.lib.log_utils import prepare_tracker_logger
from spottracker.lib.log_utils import remove_handlers
from spottracker.settings import TrackerSettings
from spottracker.tracking.columns import Column
from spottracker.tracking.drift import fit_drift
from spottracker.tracking.measure import HighestIntensity
from spottracker.tracking.measure import estimate_noise
from spottracker.tracking.measure import measure_intensities
from spottracker.tracking.search import search_slice
from spottracker.tracking.smoothing import limit_extrapolation
from spottracker.tracking.smoothing import smooth_positions
from spottracker.tracking.state import TrackingRun
from spottracker.tracking.statistics import deviation_statistics

logger = logging.getLogger(__name__)
_PACKAGE_LOGGER = logging.getLogger(__name__.split('.', maxsplit=1)[0])

# Progress per image and pass. Two search passes and the
# measurement take most of the time, the rest is for the others.
_PROGRESS_PASSES = 3.5

# Fraction of the progress per image for the fourth search pass
_FOURTH_PASS_PROGRESS = 0.1

# The drift of the (0, 0) spot needs at least this many spots
_MIN_SPOTS_FOR_DRIFT = 3


@frozen
class TrackingResult:
    """The outcome of a tracking run.

    Attributes
    ----------
    pattern : SpotPattern
        The spots that were tracked.
    x_axis : numpy.ndarray
        The energies or, without energies, the image indices.
    data : TrackData
        All quantities for each spot and image.
    has_spot : numpy.ndarray
        For each spot, whether it has valid intensities.
    badness : numpy.ndarray
        For each spot, how questionable its tracking is. Zero
        for spots tracked well.
    drift : DriftResult or None
        Deviations of the (0, 0) spot and of the scale from the
        screen model. None if there are too few spots.
    too_close : numpy.ndarray
        For each spot, whether it came too close to a neighbor.
    background_intensities : numpy.ndarray
        The background intensity of each image.
    highest : HighestIntensity
        Where the highest raw integral was found.
    cancelled : bool
        Whether the run was cancelled. Results are incomplete.
    """

    pattern: object
    x_axis: np.ndarray
    data: object
    has_spot: np.ndarray
    badness: np.ndarray
    drift: object = None
    too_close: np.ndarray = None
    background_intensities: np.ndarray = None
    highest: HighestIntensity = HighestIntensity()
    cancelled: bool = False
    n_good_spots: int = non_init_field()

    def __post_init__(self):
        """Count the spots with valid intensities."""
        set_frozen_attr(self, 'n_good_spots',
                        int(np.count_nonzero(self.has_spot)))

    @property
    def n_too_close(self):
        """Return the number of spots too close to a neighbor."""
        if self.too_close is None:
            return 0
        return int(np.count_nonzero(self.too_close))

    @property
    def highest_intensity(self):
        """Return the highest raw integral, its x-axis value and spot.

        Returns
        -------
        intensity : float
            Zero if no spot has valid data.
        x_value : float
            Energy, or index of the image. NaN if no spot has
            valid data.
        spot_name : str or None
            The name of the spot with the highest integral.
        """
        highest = self.highest
        if highest.spot < 0:
            return highest.intensity, math.nan, None
        return (highest.intensity,
                float(self.x_axis[highest.slice_index]),
                self.pattern.names[highest.spot])

    def column(self, name, spot):
        """Return the values of one quantity for one spot.

        Parameters
        ----------
        name : str or Column
            The quantity, e.g., 'intensity' or 'INTEGRAL'.
        spot : int or str
            Index or name of the spot.

        Returns
        -------
        values : numpy.ndarray
            One value per image.

        Raises
        ------
        KeyError
            If `name` or `spot` is unknown.
        """
        column = Column.from_name(name)
        if isinstance(spot, str):
            index = self.pattern.index_of(spot)
            if index < 0:
                raise KeyError(f'Unknown spot {spot!r}')
            spot = index
        return self.data[column][spot]

    def status_text(self, verbose=False):
        """Return a short summary of the results."""
        text = 'Spot tracking:\n' if verbose else ''
        text += f'{self.n_good_spots} beams'
        if self.n_too_close:
            text += f', {self.n_too_close} too close (deleted)'
        if verbose:
            intensity, x_value, spot_name = self.highest_intensity
            text += (f'; highest raw intensity={intensity:.4g} '
                     f'at {x_value:.4g}, beam={spot_name}')
        return text


class _Progress:
    """Reports a never-decreasing fraction of the work done."""

    def __init__(self, callback):
        """Initialize instance from a callable taking a fraction."""
        self._callback = callback
        self._fraction = 0.0
        self._lock = threading.Lock()
        self.increment = 0.0

    def advance(self, increment=None):
        """Add `increment` (default: the current one) to the progress."""
        if increment is None:
            increment = self.increment
        with self._lock:
            self._fraction = min(self._fraction + increment, 1.0)
            if self._callback is not None:
                self._callback(self._fraction)

    def finish(self):
        """Report that all work is done."""
        self.advance(1.0)


class SpotTracker:
    """Tracks the spots of a pattern through a stack of images.

    Attributes
    ----------
    stack : ImageStack
        The images, their mask and energies.
    pattern : SpotPattern
        The spots to be tracked.
    model : ScreenModel
        The screen model, fitted to the spots of the image
        with index `reference_slice`.
    settings : TrackerSettings
        The parameters of the tracking run.
    reference_slice : int
        The image where tracking starts.
    """

    def __init__(self, stack, pattern, model, settings=None,
                 reference_slice=0):
        """Initialize instance.

        Raises
        ------
        ScreenModelError
            If `model` was not fitted.
        """
        if not model.is_fitted:
            raise ScreenModelError('Screen model must be fitted '
                                   'before tracking spots')
        self.stack = stack
        self.pattern = pattern
        self.model = model
        if settings is None:
            settings = TrackerSettings()
        self.settings = settings
        self.reference_slice = reference_slice

    def run(self, cancel_event=None, progress=None):
        """Track all spots and measure their intensities.

        Parameters
        ----------
        cancel_event : threading.Event, optional
            When set, the run stops as soon as possible, and
            the result is marked as cancelled. Default is None.
        progress : callable, optional
            Called with the fraction of the work done, a float
            between zero and one that never decreases. Default
            is None.

        Returns
        -------
        result : TrackingResult

        Raises
        ------
        InputMismatchError
            If the reference image is not in the stack.
        InvalidEnergyStepError
            If the energies are not evenly spaced.
        """
        run = TrackingRun(self.stack, self.pattern, self.model,
                          self.settings, self.reference_slice)
        with info_enabled_if(_PACKAGE_LOGGER, run.debug_spot >= 0):
            return self._run(run, cancel_event, _Progress(progress))

    def _run(self, run, cancel_event, reporter):
        """Run all steps of tracking for `run`. Return a TrackingResult."""
        reporter.increment = 1 / (_PROGRESS_PASSES*run.n_slices)
        with log_elapsed(logger, 'Tracking'):
            completed = self._search(run, cancel_event, reporter)
        if not completed:
            logger.info('Spot tracking cancelled')
            return self._make_result(run, cancelled=True)

        self._select_spots(run)
        smooth_positions(run)
        if run.min_range > 0:
            limit_extrapolation(run, int(run.position_averaging))
        sub_threshold = run.min_range == 0
        deviation_statistics(run, (0 if sub_threshold
                                   else 1.5*run.min_significance))

        noise = math.nan
        if self.settings.neighbor_background:
            noise = estimate_noise(run)
        with log_elapsed(logger, 'Measure'):
            summary = measure_intensities(
                run, noise, self.settings.neighbor_background,
                min_points=int(round(run.min_range)),
                min_significance_to_keep=(0 if sub_threshold
                                          else run.min_significance),
                cancel_event=cancel_event,
                slice_done=reporter.advance
                )
        if summary is None:
            logger.info('Spot tracking cancelled')
            return self._make_result(run, cancelled=True)

        drift = None
        if np.count_nonzero(run.has_spot) >= _MIN_SPOTS_FOR_DRIFT:
            drift = fit_drift(run)
        result = self._make_result(run, drift=drift,
                                   too_close=summary.too_close,
                                   background_intensities=(
                                       summary.background_intensities
                                       ),
                                   highest=summary.highest)
        reporter.finish()
        if not result.n_good_spots:
            logger.warning('Cannot measure any beams. Spots too close? '
                           '(check the integration radius)')
        else:
            logger.info(result.status_text())
        return result

    @staticmethod
    def _search(run, cancel_event, progress):
        """Run all search passes. Return False if cancelled."""
        n_slices, ref = run.n_slices, run.reference_slice
        passes = (  # (name, slices, index of last image)
            ('ascend', range(ref, n_slices), lambda i: max(i - 1, ref)),
            ('descend', range(n_slices - 2, -1, -1),
             lambda i: min(i + 1, n_slices - 1)),
            ('ascend again', range(ref), lambda i: max(i - 1, 0)),
            )
        data_added = False
        for name, slices, last_of in passes:
            for state in run.spot_states:
                state.decaying_significance = 0.0
            logger.debug(f'Search: {name}')
            data_added = _search_pass(run, slices, last_of, cancel_event,
                                      progress, progress.increment)
            if data_added is None:
                return False
        if not (data_added or run.min_range == 0):
            return True
        logger.debug('Search: ascend beyond start')
        return _search_pass(run, range(ref, n_slices),
                            lambda i: max(i - 1, 0), cancel_event, progress,
                            _FOURTH_PASS_PROGRESS*progress.increment
                            ) is not None

    @staticmethod
    def _select_spots(run):
        """Mark the spots found in enough images as having data."""
        data = run.data
        min_found = max(min(run.min_range, run.n_slices), 1)
        found = np.count_nonzero(~np.isnan(data[Column.X]), axis=1)
        run.has_spot[:] = found >= min_found
        if run.min_range == 0:  # Measure also below threshold
            run.has_spot |= np.any(~np.isnan(data[Column.DELTA_X])
                                   & ~np.isnan(data[Column.INTEGRAL]),
                                   axis=1)
        if not debug_or_lower(logger):
            return
        logger.debug('After tracking: '
                     f'{np.count_nonzero(run.has_spot)} good spots')
        never_found = np.flatnonzero(found == 0)
        if never_found.size:
            names = ', '.join(run.spot_name(s) for s in never_found)
            logger.debug(f'Never detected: {names}')

    def _make_result(self, run, **kwargs):
        """Return a TrackingResult from the current state of `run`."""
        if run.use_energies:
            x_axis = np.array(self.stack.energies)
        else:
            x_axis = np.arange(run.n_slices, dtype=float)
        return TrackingResult(pattern=self.pattern,
                              x_axis=x_axis,
                              data=run.data,
                              has_spot=run.has_spot,
                              badness=run.badness,
                              **kwargs)


def track_spots(stack, pattern, model, settings=None, reference_slice=0,
                log_file=None, console_output=True, log_level=logging.INFO,
                **run_kwargs):
    """Track spots and measure their intensities, with logging.

    This is the entry point for applications: messages of the
    run are formatted with a TrackerLogFormatter and go to the
    console and/or to a log file. The handlers are removed at
    the end of the run.

    Parameters
    ----------
    stack : ImageStack
        The images, their mask and energies.
    pattern : SpotPattern
        The spots to be tracked.
    model : ScreenModel
        The screen model, fitted to the spots of the image
        with index `reference_slice`.
    settings : TrackerSettings, optional
        The parameters of the run. Default is None, i.e.,
        use default settings.
    reference_slice : int, optional
        The image where tracking starts. Default is 0.
    log_file : str or Path, optional
        Where messages are written. Default is None, i.e.,
        no log file.
    console_output : bool, optional
        Whether messages are printed to stderr. Default is True.
    log_level : int, optional
        The level of the package logger during the run.
        Default is logging.INFO.
    **run_kwargs : object
        Passed on to SpotTracker.run, e.g., cancel_event or
        progress.

    Returns
    -------
    result : TrackingResult

    Raises
    ------
    ScreenModelError
        If `model` was not fitted.
    InputMismatchError
        If the reference image is not in the stack.
    InvalidEnergyStepError
        If the energies are not evenly spaced.
    """
    tracker = SpotTracker(stack, pattern, model, settings, reference_slice)
    handlers = prepare_tracker_logger(_PACKAGE_LOGGER, log_file,
                                      with_console=console_output)
    try:
        with at_level(_PACKAGE_LOGGER, log_level):
            logger.info(f'Tracking {len(pattern)} spots '
                        f'in {len(stack)} images')
            return tracker.run(**run_kwargs)
    finally:
        remove_handlers(_PACKAGE_LOGGER, handlers)


def _is_set(event):
    """Return whether a cancellation `event` was set."""
    return event is not None and event.is_set()


def _search_pass(run, slices, last_of, cancel_event, progress, increment):
    """Search all `slices` in order.

    Returns
    -------
    data_added : bool or None
        Whether any spot was found. None if cancelled.
    """
    data_added = False
    for i in slices:
        if _is_set(cancel_event):
            return None
        data_added |= search_slice(run, i, last_of(i), cancel_event)
        progress.advance(increment)
    return None if _is_set(cancel_event) else data_added
