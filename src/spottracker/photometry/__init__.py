"""Package photometry of spottracker.

Aperture photometry of single spots: integrated intensity, position,
size and significance of a spot, with background subtraction.

Modules
-------
analyzer
    Measurement of a spot at a given position, and iterative
    centering on a spot.
shapes
    Integration and background regions and their pixel weights.
"""

__authors__ = (
    'Michael Schmid',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'
