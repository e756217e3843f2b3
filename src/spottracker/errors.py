"""Module errors of spottracker.

Defines exceptions raised when the shared inputs of a tracking run
are unusable. Per-spot problems (spots outside the mask, spots too
weak to be seen, colliding spots) are never raised: they are part
of the normal output of the tracker.
"""

__authors__ = (
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'


class SpotTrackerError(Exception):
    """Base class for all exceptions of spottracker."""


class InputMismatchError(SpotTrackerError):
    """Images, mask and energies do not fit together."""


class EmptyStackError(SpotTrackerError):
    """There are no images to analyze."""


class InvalidEnergyStepError(SpotTrackerError):
    """The energies are not an evenly spaced, monotonic sequence."""

    def __init__(self, step):
        """Initialize instance from the offending energy step."""
        super().__init__(f'Invalid energy step: {step} eV')
        self.step = step


class ScreenModelError(SpotTrackerError):
    """A screen model is used before it was successfully fitted."""


class SpotPatternError(SpotTrackerError):
    """The spot pattern cannot be used."""


class SettingsError(SpotTrackerError, ValueError):
    """A tracker setting has an invalid value."""
