"""Package classes of spottracker.

Defines the objects describing the input of a tracking run.

Modules
-------
image_stack
    The stack of images, with mask, energies and beam current.
integration_radius
    The energy dependence of the integration radius.
screen_model
    Polynomial model of the spot positions on the screen.
spot_pattern
    The catalogue of spots to be tracked.
"""

__authors__ = (
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'
