"""Test configuration for spottracker.tests.

Defines fixtures and fixture factories used in multiple tests.

Fixtures
--------
check_log_records (factory)
    Raise unless caplog records are exactly as expected.
make_tracker (factory)
    A SpotTracker for the synthetic images, with some settings.
pattern
    A 3x3 square lattice of spots.
synthetic_stack
    Images of the lattice, with spots moving with energy.
synthetic_model
    A linear screen model fitted in the first image.
tracking_result
    The result of tracking the synthetic stack.
"""

__authors__ = (
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from pytest_cases import fixture

from spottracker.tracking.tracker import SpotTracker

from .helpers import ENERGIES
from .helpers import SYNTHETIC_SETTINGS
from .helpers import make_model
from .helpers import make_pattern
from .helpers import make_stack


@fixture
def check_log_records(caplog):
    """Raise unless log records are exactly as expected."""
    def _check(expected_records):
        logged = tuple(r.getMessage() for r in caplog.records)
        assert len(logged) == len(expected_records)
        for log, expect in zip(logged, expected_records):
            if isinstance(expect, str):
                assert log == expect
            else:
                assert expect.fullmatch(log)
    return _check


@fixture(name='pattern', scope='session')
def fixture_pattern():
    """Return a SpotPattern of a 3x3 square lattice."""
    return make_pattern()


@fixture(name='synthetic_stack', scope='session')
def fixture_synthetic_stack(pattern):
    """Return an ImageStack of the lattice at ENERGIES."""
    return make_stack(pattern)


@fixture(name='synthetic_model', scope='session')
def fixture_synthetic_model(pattern):
    """Return a ScreenModel fitted to the first image."""
    return make_model(pattern, ENERGIES[0])


@fixture(name='make_tracker', scope='session')
def factory_make_tracker(pattern, synthetic_stack, synthetic_model):
    """Return a SpotTracker for the synthetic stack."""
    def _make(**settings):
        return SpotTracker(synthetic_stack, pattern, synthetic_model,
                           SYNTHETIC_SETTINGS.replace(**settings))
    return _make


@fixture(name='tracking_result', scope='session')
def fixture_tracking_result(make_tracker):
    """Return the TrackingResult of the synthetic stack."""
    return make_tracker().run()
