"""Tests for module measure of spottracker.tracking."""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import math
import threading

import numpy as np
import pytest
from pytest_cases import fixture
from pytest_cases import parametrize

from spottracker.tracking.columns import Column
from spottracker.settings import TrackerSettings
from spottracker.tracking.measure import NORMALIZED_MAX
from spottracker.tracking.measure import _longest_true_run
from spottracker.tracking.measure import background_intensity
from spottracker.tracking.measure import estimate_noise
from spottracker.tracking.measure import mask_minus_spots
from spottracker.tracking.measure import measure_intensities
from spottracker.tracking.measure import processed_beam_current

from ..helpers import BACKGROUND
from ..helpers import ENERGIES
from ..helpers import NOISE
from ..helpers import make_run
from ..helpers import spot_positions


@fixture(name='positioned_run')
def fixture_positioned_run():
    """Return a run with all spots at their true positions."""
    run = make_run()
    for i in range(run.n_slices):
        x_pos, y_pos = spot_positions(run.pattern, ENERGIES[i])
        run.data[Column.X][:, i] = x_pos
        run.data[Column.Y][:, i] = y_pos
    run.has_spot[:] = True
    return run


class TestBackgroundIntensity:
    """Tests for the background_intensity function."""

    def test_normal(self):
        """Check the mean of the darkest pixels of Gaussian noise."""
        rng = np.random.default_rng(3)
        image = rng.normal(100, 5, 10000)
        # Mean of the lowest 40 % of a normal distribution
        expect = 100 - 5*0.3863/0.4
        assert background_intensity(image, np.ones(10000, dtype=bool)) == (
            pytest.approx(expect, abs=0.5)
            )

    def test_constant(self):
        """Check the background of a constant image."""
        image = np.full((10, 10), 7.5)
        assert background_intensity(image, image > 0) == pytest.approx(7.5)

    def test_empty_mask(self):
        """Check that an empty mask gives NaN."""
        image = np.ones((10, 10))
        assert math.isnan(background_intensity(image, image < 0))

    def test_masked_pixels_ignored(self):
        """Check that pixels outside the mask do not count."""
        image = np.full((10, 10), 3.0)
        image[:, 5:] = 1000
        mask = np.zeros((10, 10), dtype=bool)
        mask[:, :5] = True
        assert background_intensity(image, mask) == pytest.approx(3)


class TestLongestTrueRun:
    """Tests for the _longest_true_run function."""

    _valid = {
        'empty': ([], 0),
        'all false': ([False]*4, 0),
        'all true': ([True]*4, 4),
        'middle': ([True, False, True, True, True, False, True], 3),
        'end': ([False, True, False, True, True], 2),
        }

    @parametrize('values,expect', _valid.values(), ids=_valid)
    def test_run(self, values, expect):
        """Check the length of the longest sequence of True."""
        assert _longest_true_run(np.array(values, dtype=bool)) == expect


@fixture(name='one_spot_run')
def fixture_one_spot_run():
    """Return a run with only one spot, at (20, 20) in the first image."""
    run = make_run()
    run.has_spot[0] = True
    run.data[Column.X][0, 0] = 20.0
    run.data[Column.Y][0, 0] = 20.0
    return run


class TestMaskMinusSpots:
    """Tests for the mask_minus_spots function."""

    _pixels = {  # (x, y), expect in mask
        'center': ((20, 20), False),
        'on circle': ((23, 20), False),
        'outside right': ((24, 20), True),
        'top': ((20, 17), False),
        'above': ((20, 16), True),
        'diagonal in': ((22, 22), False),
        'diagonal out': ((23, 22), True),
        }

    @parametrize('pixel,expect', _pixels.values(), ids=_pixels)
    def test_circle(self, one_spot_run, pixel, expect):
        """Check pixels in and around the circle of radius three."""
        mask = mask_minus_spots(one_spot_run, 0)
        x_pixel, y_pixel = pixel
        assert mask[y_pixel, x_pixel] == expect

    def test_copy(self, one_spot_run):
        """Check that the mask of the stack is not modified."""
        mask_minus_spots(one_spot_run, 0)
        assert one_spot_run.stack.mask.all()

    def test_radius_factor(self, one_spot_run):
        """Check larger circles."""
        mask = mask_minus_spots(one_spot_run, 0, radius_factor=2)
        assert not mask[20, 26]
        assert mask[20, 27]

    def test_selected_spots(self, one_spot_run):
        """Check that only selected spots are removed."""
        spots = np.zeros(one_spot_run.n_spots, dtype=bool)
        assert mask_minus_spots(one_spot_run, 0, spots=spots).all()

    def test_no_position(self, one_spot_run):
        """Check that spots without position are skipped."""
        assert mask_minus_spots(one_spot_run, 1).all()


class TestEstimateNoise:
    """Tests for the estimate_noise function."""

    @parametrize(slice_index=(0, 3))
    def test_noise(self, positioned_run, slice_index):
        """Check the noise of the synthetic images."""
        noise = estimate_noise(positioned_run, slice_index)
        assert noise == pytest.approx(NOISE, rel=0.08)


@fixture(name='measured')
def fixture_measured(positioned_run):
    """Return a run and the summary of its measurement."""
    summary = measure_intensities(positioned_run, NOISE,
                                  neighbor_background=True,
                                  min_points=2,
                                  min_significance_to_keep=2.5)
    return positioned_run, summary


class TestMeasureIntensities:
    """Tests for the final measurement at known positions."""

    def test_all_measured(self, measured):
        """Check that all spots have intensities in all images."""
        run, summary = measured
        assert run.has_spot.all()
        assert not np.isnan(run.data[Column.INTEGRAL]).any()
        assert not summary.n_too_close
        assert not summary.n_too_few_points

    def test_normalized(self, measured):
        """Check that the brightest spot is normalized."""
        run, _ = measured
        intensity = run.data[Column.INT_I0_CORRECTED]
        assert np.nanmax(intensity) == pytest.approx(NORMALIZED_MAX)
        center = run.pattern.index_of('0,0')
        assert np.argmax(intensity.max(axis=1)) == center

    def test_highest(self, measured):
        """Check where the highest integral was found."""
        run, summary = measured
        assert summary.highest.spot == run.pattern.index_of('0,0')
        expect = 2 * np.pi * 1000
        assert summary.highest.intensity == pytest.approx(expect, rel=0.05)

    def test_background(self, measured):
        """Check the background intensity of each image."""
        _, summary = measured
        assert summary.background_intensities.shape == (4,)
        assert np.all(summary.background_intensities < BACKGROUND)
        assert np.all(summary.background_intensities > BACKGROUND - NOISE)

    def test_cancelled(self, positioned_run):
        """Check that nothing is returned after cancelling."""
        cancel = threading.Event()
        cancel.set()
        assert measure_intensities(positioned_run, NOISE, True, 2, 2.5,
                                   cancel_event=cancel) is None



class TestProcessedBeamCurrent:
    """Tests for the processed_beam_current function."""

    _settings = {
        'no smoothing': TrackerSettings(smooth_i0_points=0),
        'smoothed': TrackerSettings(smooth_i0_points=6),
        }

    @parametrize(settings=_settings.values(), ids=_settings)
    def test_no_beam_current(self, settings):
        """Check that nothing is returned without a beam current."""
        assert processed_beam_current(None, np.ones(5), settings) is None

    def test_not_smoothed(self):
        """Check that I0 is used as is without smoothing."""
        beam_current = np.array([1.0, 3.0, 1.0, 3.0])
        settings = TrackerSettings(smooth_i0_points=1)
        processed = processed_beam_current(beam_current, np.ones(4),
                                           settings)
        assert processed == pytest.approx(beam_current)
        assert processed is not beam_current

    def test_smoothed(self):
        """Check that a linear I0 stays the same when smoothed."""
        beam_current = 1 + 0.1*np.arange(21)
        settings = TrackerSettings(smooth_i0_points=6)
        processed = processed_beam_current(beam_current, np.ones(21),
                                           settings)
        assert processed == pytest.approx(beam_current)

    def test_background_variations(self):
        """Check that background variations correct the smoothed I0."""
        background = np.full(21, 50.0)
        background[10] = 60.0
        settings = TrackerSettings(smooth_i0_points=6,
                                   i0_from_background=True)
        processed = processed_beam_current(np.full(21, 2.0), background,
                                           settings)
        assert processed[10] == pytest.approx(2 * 60 / (50 + 10/7))
        assert processed[0] == pytest.approx(2.0)
        assert processed[-1] == pytest.approx(2.0)

    def test_background_invalid(self, check_log_records):
        """Check that no correction is made for a zero background."""
        background = np.full(21, 50.0)
        background[4] = 0
        settings = TrackerSettings(smooth_i0_points=6,
                                   i0_from_background=True)
        processed = processed_beam_current(np.full(21, 2.0), background,
                                           settings)
        assert processed == pytest.approx(np.full(21, 2.0))
        check_log_records([
            'I0 correction from background intensity not performed. '
            'Image 4 has background 0, correction factor would be 0',
            ])

    def test_background_needs_smoothing(self, check_log_records):
        """Check complaints when correcting an I0 that is not smoothed."""
        settings = TrackerSettings(smooth_i0_points=0,
                                   i0_from_background=True)
        processed = processed_beam_current(np.array([1.0, 2.0]),
                                           np.ones(2), settings)
        assert processed == pytest.approx([1.0, 2.0])
        check_log_records([
            'I0 correction from background intensity '
            'requires smoothing of I0. Not performed.',
            ])
