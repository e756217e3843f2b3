"""Module state of spottracker.tracking.

Defines the state of a tracking run: the TrackingRun, with the inputs
and all results, and the SpotTrackState of each spot, which is needed
only while searching spots along the energy axis.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from dataclasses import dataclass
import logging
import math

import numpy as np

from spottracker.classes.integration_radius import UNKNOWN_ENERGY
from spottracker.errors import InputMismatchError
from spottracker.errors import InvalidEnergyStepError
from spottracker.errors import SpotPatternError
from spottracker.lib.dataclass_utils import non_init_field
from spottracker.photometry.analyzer import analyze_spot
from spottracker.photometry.analyzer import center_and_analyze_spot
from spottracker.photometry.shapes import SpotShape
from spottracker.tracking.columns import TrackData

logger = logging.getLogger(__name__)

_NAN = float('nan')

# Significance of positions inferred from the neighbors. Must be
# lower than 0.5*NO_SIGNIFICANCE of the photometry.
LOW_SIGNIFICANCE = 0.05

# Weight of positions with LOW_SIGNIFICANCE when smoothing
LOW_WEIGHT = 0.005

# Maximum deviation of positions inferred from the neighbors from
# the prediction, in units of the integration radius
MAX_DEVIATION_RADII = 2

# Spots with less integral (relative to the brightest one)
# do not get their 1/r**2 background subtracted
MIN_REL_INTEGRAL_FOR_BG = 1e-2

# Significance where smoothing weights reach half their maximum,
# measured from 0.8*min_significance
_HIGH_SIGNIFICANCE = 5


@dataclass
class SpotTrackState:
    """What the search remembers about one spot.

    Attributes
    ----------
    last_delta_x, last_delta_y : float
        Deviation from the predicted position when the spot
        was last seen. NaN if not seen yet (or deleted after
        a collision).
    last_seen : int or None
        Index of the image where the spot was last seen.
    decaying_significance : float
        Significance of the last detection, decreasing with
        each image where the spot is not seen.
    retained_significance : numpy.ndarray
        For each image, the significance of the detection or
        of the position carried over from nearby images.
    step_size_sqr : float
        Squared change of the deviation in the current image.
        NaN if the spot was not seen before.
    """

    last_delta_x: float = _NAN
    last_delta_y: float = _NAN
    last_seen: int = None
    decaying_significance: float = 0.0
    retained_significance: np.ndarray = None
    step_size_sqr: float = non_init_field(default=_NAN)

    def __post_init__(self):
        """Make sure retained significances are an array."""
        if self.retained_significance is None:
            self.retained_significance = np.zeros(0)

    @classmethod
    def for_slices(cls, n_slices):
        """Return a state for a stack with `n_slices` images."""
        return cls(retained_significance=np.zeros(n_slices))

    @property
    def has_delta(self):
        """Return whether a deviation from the prediction is known."""
        return not math.isnan(self.last_delta_x)

    def forget_delta(self):
        """Mark the deviation from the prediction as unknown."""
        self.last_delta_x = _NAN

    def unseen_for(self, slice_index):
        """Return the number of images since the spot was last seen."""
        if self.last_seen is None:
            return math.inf
        return abs(slice_index - self.last_seen)


class TrackingRun:
    """Inputs, derived quantities and results of one tracking run.

    Attributes
    ----------
    stack : ImageStack
        The images.
    pattern : SpotPattern
        The spots to be tracked.
    model : ScreenModel
        The fitted screen model.
    settings : TrackerSettings
        The parameters of the run.
    reference_slice : int
        Index of the image where the screen model was fitted.
    data : TrackData
        All results for each spot and image.
    has_spot : numpy.ndarray
        For each spot, whether it has valid intensities.
    badness : numpy.ndarray
        For each spot, a measure of questionable tracking.
        Zero for spots that were tracked well.
    spot_states : list of SpotTrackState
        What the search remembers about each spot.
    use_energies : bool
        Whether the x axis is the energy.
    energy_step : float
        Energy difference between images, 1 without energies.
    search_again, position_averaging, min_range : float
        The respective settings, in number of images.
    radii_int, radii_sup : numpy.ndarray
        Integration radii for integer and superstructure spots
        for each image.
    inv_sqrt_energies : numpy.ndarray
        1/sqrt(E) for each image. For all images the same
        (that of UNKNOWN_ENERGY) without energies.
    mask_center : tuple
        Center of the screen or, for AZIMUTH_BLUR, the (0, 0)
        spot. Defines radial and tangential directions.
    debug_spot : int
        Index of the spot whose tracking should be logged in
        detail, -1 for none.
    """

    def __init__(self, stack, pattern, model, settings, reference_slice):
        """Initialize instance.

        Raises
        ------
        InvalidEnergyStepError
            If the energies are not evenly spaced.
        InputMismatchError
            If `reference_slice` is not an index in `stack`.
        ScreenModelError
            If `model` is not fitted.
        """
        self.stack = stack
        self.pattern = pattern
        self.model = model
        self.settings = settings
        n_slices = len(stack)
        if not 0 <= reference_slice < n_slices:
            raise InputMismatchError(f'Reference image {reference_slice} '
                                     f'not in stack of {n_slices} images')
        self.reference_slice = reference_slice
        self.data = TrackData(len(pattern), n_slices)
        self.has_spot = np.zeros(len(pattern), dtype=bool)
        self.badness = np.zeros(len(pattern), dtype=int)
        self.spot_states = [SpotTrackState.for_slices(n_slices)
                            for _ in range(len(pattern))]

        self.use_energies = stack.has_energies
        self.energy_step = 1.0
        energies = np.full(n_slices, UNKNOWN_ENERGY)
        if self.use_energies:
            energies = stack.energies
            with np.errstate(divide='ignore', invalid='ignore'):
                step = abs(energies[-1] - energies[0]) / (n_slices - 1)
            if not step > 0:
                raise InvalidEnergyStepError(step)
            self.energy_step = float(step)
        self.search_again = settings.search_again / self.energy_step
        self.position_averaging = (settings.position_averaging
                                   / self.energy_step)
        self.min_range = settings.min_range / self.energy_step
        self.radius_energies = energies
        self.inv_sqrt_energies = 1 / np.sqrt(energies)

        radius = settings.integration_radius
        self.radii_int = np.array([radius(e) for e in energies])
        self.radii_sup = self.radii_int
        if pattern.has_superstructure:
            self.radii_sup = np.array([radius(e, superstructure=True)
                                       for e in energies])

        if settings.background_shape is SpotShape.AZIMUTH_BLUR:
            self.mask_center = model.predict(0.0, 0.0,
                                             1 / math.sqrt(UNKNOWN_ENERGY))
        else:
            self.mask_center = stack.mask_center
        self.debug_spot = self._find_debug_spot()

    @property
    def min_significance(self):
        """Return the threshold for detection of a spot."""
        return self.settings.min_significance

    @property
    def n_slices(self):
        """Return the number of images."""
        return len(self.stack)

    @property
    def n_spots(self):
        """Return the number of spots."""
        return len(self.pattern)

    def analyze(self, spot, slice_index, x, y, image, center=False):
        """Return a SpotMeasurement of `spot` at (x, y) in `image`.

        Parameters
        ----------
        spot, slice_index : int
            The spot and the index of the image. They define the
            integration radius.
        x, y : float
            Where the spot should be measured.
        image : numpy.ndarray
            The image for `slice_index`.
        center : bool, optional
            Whether the position should be refined iteratively,
            see center_and_analyze_spot. Default is False.

        Returns
        -------
        measurement : SpotMeasurement
        """
        func = center_and_analyze_spot if center else analyze_spot
        settings = self.settings
        return func(x, y, *self.mask_center,
                    settings.background_shape,
                    self.radius(spot, slice_index),
                    settings.az_blur_radians,
                    settings.min_significance,
                    image,
                    self.stack.mask)

    def is_debug_spot(self, spot):
        """Return whether `spot` should be traced in detail."""
        return spot == self.debug_spot

    def predict(self, spot, slice_index, with_derivatives=False):
        """Return the screen-model position of `spot` in an image."""
        return self.model.predict(self.pattern.kx[spot],
                                  self.pattern.ky[spot],
                                  self.inv_sqrt_energies[slice_index],
                                  with_derivatives=with_derivatives)

    def radius(self, spot, slice_index):
        """Return the integration radius of `spot` in an image."""
        radii = (self.radii_sup if self.pattern.is_superstructure[spot]
                 else self.radii_int)
        return float(radii[slice_index])

    def spot_name(self, spot):
        """Return the name of `spot`."""
        return self.pattern.names[spot]

    def x_value(self, slice_index):
        """Return the x-axis value of an image, for log messages."""
        if self.use_energies:
            return f'{self.stack.energies[slice_index]:.1f} eV'
        return f'#{slice_index}'

    def significance_to_weight(self, significance):
        """Return the weight of a position with `significance`.

        Weights level off at high significance. They are zero
        for significances below 0.8*min_significance, and
        LOW_WEIGHT for positions inferred from the neighbors.
        """
        if math.isnan(significance):
            return 0.0
        if significance == LOW_SIGNIFICANCE:
            return LOW_WEIGHT
        significance -= 0.8*self.min_significance
        if significance <= 0:
            return 0.0
        return LOW_WEIGHT + significance/(significance + _HIGH_SIGNIFICANCE)

    def _find_debug_spot(self):
        """Return the index of the spot to be traced, -1 if none."""
        name = self.settings.debug_spot
        if name is None:
            return -1
        if self.pattern.index_of(name) >= 0:
            return self.pattern.index_of(name)
        try:
            index, = self.pattern.indices_of([name])
        except SpotPatternError:
            logger.warning(f'Cannot trace spot {name!r}: not in spot pattern')
            return -1
        return index
