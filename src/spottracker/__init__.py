"""==================
    spottracker
==================

Spot localization, aperture photometry and energy-axis tracking of
LEED spots for the extraction of I(V) curves from image stacks.

Packages
--------
lib
    Generic helpers: regressions, logging, dataclass and math utilities.
classes
    Spot pattern, screen model, integration radius and image stack.
photometry
    Aperture photometry of a single spot.
tracking
    The multi-pass tracker running along the energy axis.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'
__version__ = '0.1.0'

import logging

# The package logger. Handlers are added only for runs with log
# output, see tracking.track_spots
logging.getLogger(__name__).addHandler(logging.NullHandler())
