"""Module helpers of spottracker.tests.

Contains some useful general definitions that can be used when creating
or running tests, most notably a synthetic LEED experiment: a square
lattice of Gaussian spots whose positions scale with 1/sqrt(E), as
they would on a flat screen far from the sample.
"""

__authors__ = (
    'Michele Riva (@michele-riva)',
    'Michael Schmid',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import numpy as np

from spottracker.classes.image_stack import ImageStack
from spottracker.classes.integration_radius import UNKNOWN_ENERGY
from spottracker.classes.screen_model import FitFunction
from spottracker.classes.screen_model import ScreenModel
from spottracker.classes.spot_pattern import SpotPattern
from spottracker.settings import TrackerSettings
from spottracker.tracking.state import TrackingRun

# Geometry of the synthetic screen
IMAGE_SIZE = 64
SCREEN_CENTER = (32.0, 32.0)
SCALE = 120.0                            # Pixels * sqrt(eV) per unit k
ENERGIES = np.arange(50.0, 82.0, 2.0)    # 16 images

# Spots of the synthetic pattern
LATTICE_HK = tuple((h, k) for h in (-1, 0, 1) for k in (-1, 0, 1))
SPOT_HEIGHT = 500.0
SPECULAR_HEIGHT = 1000.0                 # The (0, 0) spot is brighter
SPOT_SIGMA = 1.0
BACKGROUND = 10.0
NOISE = 2.0

# Settings suitable for the small synthetic spots
SYNTHETIC_SETTINGS = TrackerSettings(radius_infty_sqr=9.0,
                                     radius_1ev_sqr=0.0,
                                     radius_1ev_sqr_superstructure=0.0,
                                     search_again=10.0,
                                     position_averaging=10.0,
                                     min_range=10.0)


def gaussian_image(shape, spots, background=0.0, noise=0.0, seed=0):
    """Return an image with Gaussian spots.

    Parameters
    ----------
    shape : tuple
        Height and width of the image.
    spots : Iterable
        Items are (x, y, height, sigma) of each spot.
    background : float, optional
        Constant added to all pixels. Default is zero.
    noise : float, optional
        Standard deviation of the Gaussian pixel noise. Default
        is zero, i.e., no noise.
    seed : int, optional
        Seed of the random-number generator for the noise.

    Returns
    -------
    image : numpy.ndarray
    """
    y_grid, x_grid = np.mgrid[:shape[0], :shape[1]]
    image = np.full(shape, float(background))
    for x_center, y_center, height, sigma in spots:
        r_sqr = (x_grid - x_center)**2 + (y_grid - y_center)**2
        image += height * np.exp(-r_sqr / (2*sigma**2))
    if noise:
        rng = np.random.default_rng(seed)
        image += rng.normal(0.0, noise, shape)
    return image


def make_pattern(hk_indices=LATTICE_HK):
    """Return a SpotPattern of a square lattice with unit spacing."""
    names = [f'{h},{k}' for h, k in hk_indices]
    h_values, k_values = zip(*hk_indices)
    return SpotPattern(names, h_values, k_values, h_values, k_values)


def spot_positions(pattern, energy):
    """Return the true screen positions of all spots at `energy`."""
    factor = SCALE / np.sqrt(energy)
    return (SCREEN_CENTER[0] + pattern.kx*factor,
            SCREEN_CENTER[1] - pattern.ky*factor)


def spot_heights(pattern):
    """Return the peak height of each spot."""
    specular = (pattern.kx == 0) & (pattern.ky == 0)
    return np.where(specular, SPECULAR_HEIGHT, SPOT_HEIGHT)


def make_images(pattern, energies, noise=NOISE):
    """Return a 3D array of synthetic images, one per energy."""
    heights = spot_heights(pattern)
    images = []
    for i, energy in enumerate(energies):
        x_pos, y_pos = spot_positions(pattern, energy)
        spots = zip(x_pos, y_pos, heights, [SPOT_SIGMA]*len(pattern))
        images.append(gaussian_image((IMAGE_SIZE, IMAGE_SIZE), spots,
                                     background=BACKGROUND, noise=noise,
                                     seed=i))
    return np.array(images)


def make_stack(pattern, energies=ENERGIES, with_energies=True, **kwargs):
    """Return an ImageStack of synthetic images with a full mask."""
    images = make_images(pattern, energies, **kwargs)
    mask = np.ones((IMAGE_SIZE, IMAGE_SIZE), dtype=bool)
    return ImageStack(images, mask,
                      energies=energies if with_energies else None)


def make_static_stack(pattern, n_images=8):
    """Return a stack without energies, with spots that do not move."""
    energies = np.full(n_images, UNKNOWN_ENERGY)
    return make_stack(pattern, energies, with_energies=False)


def make_model(pattern, energy):
    """Return a linear ScreenModel fitted to the true positions."""
    x_pos, y_pos = spot_positions(pattern, energy)
    model = ScreenModel(FitFunction.LINEAR, energy, SCREEN_CENTER)
    model.fit(pattern.kx, pattern.ky, x_pos, y_pos)
    return model


def make_run(pattern=None, n_images=4, with_energies=True, **settings):
    """Return a TrackingRun on synthetic images, before any search."""
    if pattern is None:
        pattern = make_pattern()
    energies = ENERGIES[:n_images]
    if not with_energies:
        energies = np.full(n_images, UNKNOWN_ENERGY)
    stack = make_stack(pattern, energies, with_energies=with_energies)
    model = make_model(pattern, energies[0])
    return TrackingRun(stack, pattern, model,
                       SYNTHETIC_SETTINGS.replace(**settings),
                       reference_slice=0)
