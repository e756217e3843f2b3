"""Module defaults of spottracker.

Defines the default values of the parameters of a tracking run.
Parameters are stored as a TrackerSettings (see module settings),
whose fields take their default values from here.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from spottracker.photometry.shapes import SpotShape

# Notice that we cannot use a module-level global object(), as this
# module may be imported a number of times when using multiprocessing
NO_VALUE = None


# Only immutable types in here, so that nobody can
# inadvertently modify the defaults of all runs.
DEFAULTS = {
    # Integration and background region
    'background_shape': SpotShape.CIRCLE,
    'az_blur_degrees': 3.0,       # Used only for AZIMUTH_BLUR
    # Integration radius r(E) = sqrt(radius_infty_sqr + radius_1ev_sqr/E)
    'radius_infty_sqr': 64.0,
    'radius_1ev_sqr': 1000.0,
    'radius_1ev_sqr_superstructure': 1000.0,
    # Tracking
    'min_significance': 2.5,
    'min_significance_index': 2.0,   # Only for fitting the screen model
    'search_again': 30.0,         # eV, or slices without energies
    'position_averaging': 30.0,   # eV, or slices without energies
    'min_range': 30.0,            # eV, or slices without energies
    # Final measurement
    'neighbor_background': True,
    # Smoothing of the beam current I0, in images; 0 for none
    'smooth_i0_points': 20.0,
    'i0_from_background': False,   # Needs smoothing of I0
    # Print a detailed trace for a spot with this name
    'debug_spot': NO_VALUE,
    }
