"""Tests for module tracker of spottracker.tracking."""

__authors__ = (
    'Michele Riva (@michele-riva)',
    'Michael Schmid',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import logging
import threading

import numpy as np
import pytest
from pytest_cases import fixture
from pytest_cases import parametrize

from spottracker.classes.image_stack import ImageStack
from spottracker.classes.integration_radius import UNKNOWN_ENERGY
from spottracker.classes.screen_model import FitFunction
from spottracker.classes.screen_model import ScreenModel
from spottracker.errors import ScreenModelError
from spottracker.tracking.columns import Column
from spottracker.lib.log_utils import at_level
from spottracker.tracking.tracker import SpotTracker
from spottracker.tracking.tracker import track_spots

from ..helpers import BACKGROUND
from ..helpers import ENERGIES
from ..helpers import IMAGE_SIZE
from ..helpers import NOISE
from ..helpers import SCREEN_CENTER
from ..helpers import SYNTHETIC_SETTINGS
from ..helpers import gaussian_image
from ..helpers import make_model
from ..helpers import make_static_stack
from ..helpers import spot_positions


class TestTrackingResult:
    """Tests for tracking the synthetic stack."""

    def test_all_spots_found(self, tracking_result):
        """Check that all spots have intensities."""
        assert tracking_result.n_good_spots == 9
        assert not tracking_result.cancelled
        assert not tracking_result.n_too_close
        assert not tracking_result.badness.any()

    def test_positions(self, tracking_result):
        """Check that spots were tracked at their true positions."""
        pattern = tracking_result.pattern
        for i, energy in enumerate(ENERGIES):
            x_true, y_true = spot_positions(pattern, energy)
            x_pos = tracking_result.data[Column.X][:, i]
            y_pos = tracking_result.data[Column.Y][:, i]
            assert np.abs(x_pos - x_true).max() < 0.25
            assert np.abs(y_pos - y_true).max() < 0.25

    _intensities = {'specular': ('0,0', 1000), 'other': ('1,-1', 500)}

    @parametrize('spot,expect', _intensities.values(), ids=_intensities)
    def test_intensities(self, tracking_result, spot, expect):
        """Check the normalized intensities of spots."""
        intensity = tracking_result.column('intensity', spot)
        assert not np.isnan(intensity).any()
        assert intensity.max() == pytest.approx(expect, rel=0.05)

    def test_background(self, tracking_result):
        """Check the background intensity of all images."""
        background = tracking_result.background_intensities
        assert background.shape == ENERGIES.shape
        assert np.all(background > BACKGROUND - 2*NOISE)
        assert np.all(background < BACKGROUND)

    def test_x_axis(self, tracking_result):
        """Check that the x axis is the energy."""
        assert tracking_result.x_axis == pytest.approx(ENERGIES)

    def test_highest(self, tracking_result):
        """Check the brightest spot."""
        _, energy, name = tracking_result.highest_intensity
        assert name == '0,0'
        assert energy in ENERGIES

    def test_drift(self, tracking_result):
        """Check that no drift is found for an ideal screen."""
        drift = tracking_result.drift
        assert drift.n_valid == len(ENERGIES)
        assert np.abs(drift.x_offset).max() < 0.2
        assert np.abs(drift.y_offset).max() < 0.2
        assert np.abs(drift.scale).max() < 1
        assert abs(drift.delta_phi) < 2

    def test_status_text(self, tracking_result):
        """Check the summary of the results."""
        assert tracking_result.status_text() == '9 beams'
        verbose = tracking_result.status_text(verbose=True)
        assert verbose.startswith('Spot tracking:\n9 beams; highest')
        assert 'beam=0,0' in verbose

    _columns = {
        'by name': ('integral', '1,0'),
        'by member': (Column.SIGNIFICANCE, 0),
        }

    @parametrize('name,spot', _columns.values(), ids=_columns)
    def test_column(self, tracking_result, name, spot):
        """Check access to the values of a spot."""
        values = tracking_result.column(name, spot)
        assert values.shape == ENERGIES.shape

    _invalid_columns = {
        'unknown spot': ('intensity', '7,7'),
        'unknown column': ('brightness', 0),
        }

    @parametrize('name,spot', _invalid_columns.values(), ids=_invalid_columns)
    def test_column_invalid(self, tracking_result, name, spot):
        """Check complaints for unknown spots or quantities."""
        with pytest.raises(KeyError):
            tracking_result.column(name, spot)

    def test_repeatable(self, tracking_result, make_tracker):
        """Check that running again gives exactly the same data."""
        again = make_tracker().run()
        np.testing.assert_array_equal(again.data.values,
                                      tracking_result.data.values)


class TestSpotTracker:
    """Tests for special cases of a tracking run."""

    def test_not_fitted(self, synthetic_stack, pattern):
        """Check complaints for a screen model that was not fitted."""
        model = ScreenModel(FitFunction.LINEAR, ENERGIES[0], SCREEN_CENTER)
        with pytest.raises(ScreenModelError):
            SpotTracker(synthetic_stack, pattern, model)

    def test_default_settings(self, synthetic_stack, pattern,
                              synthetic_model):
        """Check that settings are optional."""
        tracker = SpotTracker(synthetic_stack, pattern, synthetic_model)
        assert tracker.settings.min_range == 30

    def test_no_energies(self, pattern):
        """Check tracking when the x axis is not the energy."""
        stack = make_static_stack(pattern)
        model = make_model(pattern, UNKNOWN_ENERGY)
        settings = SYNTHETIC_SETTINGS.replace(min_range=4,
                                              position_averaging=4,
                                              search_again=4)
        result = SpotTracker(stack, pattern, model, settings).run()
        assert result.n_good_spots == 9
        assert result.x_axis.tolist() == list(range(len(stack)))
        assert np.isnan(result.drift.delta_phi)

    def test_no_spots(self, pattern, synthetic_model, caplog):
        """Check the warning when no spot is visible."""
        images = [gaussian_image((IMAGE_SIZE, IMAGE_SIZE), (),
                                 background=BACKGROUND, noise=NOISE, seed=i)
                  for i in range(len(ENERGIES))]
        stack = ImageStack(np.array(images), np.ones(images[0].shape),
                           energies=ENERGIES)
        tracker = SpotTracker(stack, pattern, synthetic_model,
                              SYNTHETIC_SETTINGS)
        with caplog.at_level(logging.WARNING):
            result = tracker.run()
        assert not result.n_good_spots
        assert result.drift is None
        assert 'Cannot measure any beams' in caplog.text


class TestCancelAndProgress:
    """Tests for cancelling a run and for its progress."""

    def test_cancelled_before(self, make_tracker):
        """Check that a run cancelled in advance returns immediately."""
        cancel = threading.Event()
        cancel.set()
        result = make_tracker().run(cancel_event=cancel)
        assert result.cancelled
        assert not result.n_good_spots

    def test_cancelled_while_running(self, make_tracker):
        """Check that a run can be cancelled from the progress callback."""
        cancel = threading.Event()
        calls = []

        def _progress(fraction):
            calls.append(fraction)
            cancel.set()

        result = make_tracker().run(cancel_event=cancel, progress=_progress)
        assert result.cancelled
        assert len(calls) == 1

    def test_progress(self, make_tracker):
        """Check that progress never decreases and ends at one."""
        fractions = []
        make_tracker().run(progress=fractions.append)
        assert fractions == sorted(fractions)
        assert fractions[-1] == 1.0
        assert fractions[0] < 0.1


@fixture(name='flat_stack', scope='module')
def fixture_flat_stack():
    """Return an ImageStack of uniform images, without spots."""
    images = np.full((len(ENERGIES), IMAGE_SIZE, IMAGE_SIZE), BACKGROUND)
    return ImageStack(images, np.ones((IMAGE_SIZE, IMAGE_SIZE)),
                      energies=ENERGIES)


class TestLogging:
    """Tests for the log output of a tracking run."""

    def test_track_spots_log_file(self, synthetic_stack, pattern,
                                  synthetic_model, tmp_path):
        """Check the log file of a run and the cleanup of handlers."""
        package_logger = logging.getLogger('spottracker')
        handlers_before = list(package_logger.handlers)
        level_before = package_logger.level
        log_file = tmp_path / 'tracking.log'
        result = track_spots(synthetic_stack, pattern, synthetic_model,
                             SYNTHETIC_SETTINGS, log_file=log_file,
                             console_output=False)
        assert result.n_good_spots == 9
        lines = log_file.read_text(encoding='utf-8').splitlines()
        assert lines[0] == f'Tracking 9 spots in {len(ENERGIES)} images'
        assert lines[-1] == '9 beams'
        assert not any(line.startswith('dbg:') for line in lines)
        assert package_logger.handlers == handlers_before
        assert package_logger.level == level_before

    def test_track_spots_debug(self, synthetic_stack, pattern,
                               synthetic_model, tmp_path):
        """Check that timing is logged at DEBUG level."""
        log_file = tmp_path / 'tracking.log'
        track_spots(synthetic_stack, pattern, synthetic_model,
                    SYNTHETIC_SETTINGS, log_file=log_file,
                    console_output=False, log_level=logging.DEBUG)
        contents = log_file.read_text(encoding='utf-8')
        assert 'dbg: Tracking: ' in contents
        assert 'dbg: Measure: ' in contents

    def test_debug_spot_trace(self, make_tracker, caplog):
        """Check that the trace of a spot shows with a WARNING logger."""
        package_logger = logging.getLogger('spottracker')
        with at_level(package_logger, logging.WARNING):
            make_tracker(debug_spot='1,0').run()
            assert package_logger.level == logging.WARNING
        traced = [r.getMessage() for r in caplog.records
                  if r.levelno == logging.INFO]
        assert any('1,0' in message for message in traced)

    def test_no_trace(self, make_tracker, caplog):
        """Check that no INFO is emitted by a WARNING logger."""
        package_logger = logging.getLogger('spottracker')
        with at_level(package_logger, logging.WARNING):
            make_tracker().run()
        assert not caplog.records

    def test_never_detected(self, flat_stack, pattern, synthetic_model,
                            caplog):
        """Check that spots never detected are listed at DEBUG level."""
        tracker = SpotTracker(flat_stack, pattern, synthetic_model,
                              SYNTHETIC_SETTINGS)
        with caplog.at_level(logging.DEBUG, logger='spottracker'):
            tracker.run()
        expect = 'Never detected: ' + ', '.join(pattern.names)
        assert expect in caplog.messages
