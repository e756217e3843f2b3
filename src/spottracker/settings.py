"""Module settings of spottracker.

Defines the TrackerSettings class, which collects all the parameters
of a tracking run. Default values are taken from the DEFAULTS dict
of the defaults module.
"""

__authors__ = (
    'Michele Riva (@michele-riva)',
    'Michael Schmid',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from dataclasses import fields as data_fields
from dataclasses import replace as data_replace
import logging
import math

from spottracker.classes.integration_radius import IntegrationRadius
from spottracker.defaults import DEFAULTS
from spottracker.errors import SettingsError
from spottracker.lib.dataclass_utils import as_dict
from spottracker.lib.dataclass_utils import frozen
from spottracker.lib.dataclass_utils import set_frozen_attr
from spottracker.photometry.analyzer import NO_SIGNIFICANCE
from spottracker.photometry.shapes import SpotShape

logger = logging.getLogger(__name__)

_MIN_SIGNIFICANCE_RANGE = (1.0, 10.0)


@frozen
class TrackerSettings:
    """The parameters of a tracking run.

    Attributes
    ----------
    background_shape : SpotShape
        The shape of the integration and background regions.
        A string with its name is also accepted at init.
    az_blur_degrees : float
        Only for AZIMUTH_BLUR: the angular blur of spots in
        tangential direction.
    radius_infty_sqr, radius_1ev_sqr, radius_1ev_sqr_superstructure : float
        Define the integration radius, see IntegrationRadius.
    min_significance : float
        Noise rejection. Spots with lower significance are
        considered not detected. Must be between 1 and 10.
    min_significance_index : float
        Significance threshold for spots used to fit the
        screen model.
    search_again : float
        Energy range (or number of images, without energies)
        after which a spot that was not seen is searched again
        with the help of its neighbors.
    position_averaging : float
        Energy range (or number of images) for smoothing
        spot positions.
    min_range : float
        Minimum energy range (or number of images) where a
        spot must be detected to be kept. Zero to also measure
        spots below the significance threshold.
    neighbor_background : bool
        Whether the 1/r**2 background around bright spots should
        be subtracted before measuring their neighbors.
    smooth_i0_points : float
        Number of images for smoothing the beam current I0.
        Values below 1.5 mean no smoothing.
    i0_from_background : bool
        Whether the fast variations of the background intensity
        should be used to correct the smoothed I0. Requires
        smoothing of I0.
    debug_spot : str or None
        Name of a spot for which a detailed trace is logged.
    """

    background_shape: SpotShape = DEFAULTS['background_shape']
    az_blur_degrees: float = DEFAULTS['az_blur_degrees']
    radius_infty_sqr: float = DEFAULTS['radius_infty_sqr']
    radius_1ev_sqr: float = DEFAULTS['radius_1ev_sqr']
    radius_1ev_sqr_superstructure: float = (
        DEFAULTS['radius_1ev_sqr_superstructure']
        )
    min_significance: float = DEFAULTS['min_significance']
    min_significance_index: float = DEFAULTS['min_significance_index']
    search_again: float = DEFAULTS['search_again']
    position_averaging: float = DEFAULTS['position_averaging']
    min_range: float = DEFAULTS['min_range']
    neighbor_background: bool = DEFAULTS['neighbor_background']
    smooth_i0_points: float = DEFAULTS['smooth_i0_points']
    i0_from_background: bool = DEFAULTS['i0_from_background']
    debug_spot: str = DEFAULTS['debug_spot']

    def __post_init__(self):
        """Convert and check values.

        Raises
        ------
        SettingsError
            If any value is out of range.
        """
        try:
            shape = SpotShape.from_name(self.background_shape)
        except (KeyError, ValueError, AttributeError):
            raise SettingsError('Unknown background shape '
                                f'{self.background_shape!r}') from None
        set_frozen_attr(self, 'background_shape', shape)
        low, high = _MIN_SIGNIFICANCE_RANGE
        if not low <= self.min_significance <= high:
            raise SettingsError(f'min_significance={self.min_significance} '
                                f'is not between {low} and {high}')
        if not self.min_significance_index >= NO_SIGNIFICANCE:
            raise SettingsError('min_significance_index must be at '
                                f'least {NO_SIGNIFICANCE}')
        for attr in ('az_blur_degrees', 'search_again',
                     'position_averaging', 'min_range',
                     'smooth_i0_points'):
            value = getattr(self, attr)
            if not (value >= 0 and math.isfinite(value)):
                raise SettingsError(f'{attr} must be a non-negative '
                                    f'number, found {value}')
        self.integration_radius  # Raises if radii are invalid

    @classmethod
    def from_dict(cls, values):
        """Return a TrackerSettings from a dict, ignoring unknown keys."""
        known = {f.name for f in data_fields(cls)}
        unknown = set(values) - known
        if unknown:
            logger.warning(f'Ignoring unknown tracker settings: '
                           f'{", ".join(sorted(unknown))}')
        return cls(**{k: v for k, v in values.items() if k in known})

    @property
    def az_blur_radians(self):
        """Return the azimuthal blur in radians, zero if not used."""
        if self.background_shape is not SpotShape.AZIMUTH_BLUR:
            return 0.0
        return math.radians(self.az_blur_degrees)

    @property
    def integration_radius(self):
        """Return the IntegrationRadius defined by these settings."""
        return IntegrationRadius(self.radius_infty_sqr,
                                 self.radius_1ev_sqr,
                                 self.radius_1ev_sqr_superstructure)

    def as_dict(self):
        """Return a dict of all settings."""
        return as_dict(self)

    def replace(self, **changes):
        """Return a copy of these settings with some values changed."""
        return data_replace(self, **changes)
