"""Package tracking of spottracker.

Tracks the spots through the stack of images along the energy axis,
and measures their intensities. Use the SpotTracker of module tracker,
or track_spots for a run with formatted log output.

Modules
-------
columns
    The quantities stored for each spot and image.
drift
    Deviation of the (0, 0) spot and of the scale factor from the
    screen model, and their energy dependence.
measure
    The final measurement of the intensities.
search
    Finding the spots in one image.
smoothing
    Smoothing of the tracked positions.
state
    The state of a tracking run and of each spot.
statistics
    Identification of spots that were tracked incorrectly.
tracker
    The SpotTracker, running all of the above.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from spottracker.tracking.tracker import SpotTracker
from spottracker.tracking.tracker import TrackingResult
from spottracker.tracking.tracker import track_spots
