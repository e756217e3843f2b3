"""Module integration_radius of spottracker.classes.

Defines the IntegrationRadius class, the energy dependence of the
radius of the integration region of spots. Spots get sharper with
increasing energy, as r(E) = sqrt(r_infty**2 + r_1eV**2 / E).
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import math

from spottracker.errors import SettingsError
from spottracker.lib.dataclass_utils import frozen

# Used in place of the energy when the x axis is not an energy
# (e.g., time). Should be a reasonable energy, though.
UNKNOWN_ENERGY = 99.99999990123456789

# Smallest radius for which photometry makes sense
MIN_RADIUS = 1.5


@frozen
class IntegrationRadius:
    """The integration radius as a function of energy.

    Attributes
    ----------
    radius_infty_sqr : float
        Square of the radius for E -> infinity.
    radius_1ev_sqr : float
        Increase of the squared radius times energy for integer
        spots, i.e., r(E)**2 - r_infty**2 at E = 1 eV.
    radius_1ev_sqr_superstructure : float
        As `radius_1ev_sqr`, for superstructure spots.
    """

    radius_infty_sqr: float
    radius_1ev_sqr: float
    radius_1ev_sqr_superstructure: float

    def __post_init__(self):
        """Check that the radius can never be too small."""
        if not self.radius_infty_sqr >= MIN_RADIUS**2:
            raise SettingsError(
                f'Integration radius for E -> infinity must be >= {MIN_RADIUS}'
                )
        if not (self.radius_1ev_sqr >= 0
                and self.radius_1ev_sqr_superstructure >= 0):
            raise SettingsError('Integration radius must not increase '
                                'with energy')

    @classmethod
    def from_radii(cls, radius_infty, radius_integer, radius_superstructure,
                   energy):
        """Return an IntegrationRadius from the radii at a given energy.

        Parameters
        ----------
        radius_infty : float
            Radius for E -> infinity.
        radius_integer, radius_superstructure : float
            Radii at `energy`, for integer and superstructure
            spots. Neither of them may be smaller than
            `radius_infty`.
        energy : float
            The energy of `radius_integer` and `radius_superstructure`.
            Typically, the lowest energy of a stack. If it is
            UNKNOWN_ENERGY, the radius is independent of energy.

        Returns
        -------
        radius : IntegrationRadius

        Raises
        ------
        SettingsError
            If any radius is too small.
        """
        if energy == UNKNOWN_ENERGY:
            radius_infty = min(radius_integer, radius_superstructure)
        if not (radius_integer >= radius_infty
                and radius_superstructure >= radius_infty):
            raise SettingsError('Radii must be at least as large as '
                                'the radius for E -> infinity')
        return cls(
            radius_infty_sqr=radius_infty**2,
            radius_1ev_sqr=(radius_integer**2 - radius_infty**2)*energy,
            radius_1ev_sqr_superstructure=(
                (radius_superstructure**2 - radius_infty**2)*energy
                ),
            )

    def __call__(self, energy, superstructure=False):
        """Return the integration radius at `energy`."""
        r_1ev_sqr = (self.radius_1ev_sqr_superstructure if superstructure
                     else self.radius_1ev_sqr)
        return math.sqrt(self.radius_infty_sqr + r_1ev_sqr/energy)

    def radii(self, energy):
        """Return integer and superstructure radii at `energy`."""
        return self(energy), self(energy, superstructure=True)
