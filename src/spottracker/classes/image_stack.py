"""Module image_stack of spottracker.classes.

Defines the ImageStack class, the energy-ordered sequence of images
to be analyzed, together with the mask of the valid screen area and
the energies (or other x-axis values) of the images.
"""

__authors__ = (
    'Michele Riva (@michele-riva)',
    'Michael Schmid',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import logging

import numpy as np

from spottracker.errors import EmptyStackError
from spottracker.errors import InputMismatchError

logger = logging.getLogger(__name__)


class ImageStack:
    """Images, mask and energies for a tracking run.

    Attributes
    ----------
    mask : numpy.ndarray
        Boolean array, True for the pixels that may be measured.
    energies : numpy.ndarray or None
        Energy of each image, in eV, monotonic. None if the
        x axis is not an energy (e.g., time).
    beam_current : numpy.ndarray or None
        The incident beam current I0 for each image, if known.
    """

    def __init__(self, images, mask, energies=None, beam_current=None):
        """Initialize instance.

        Parameters
        ----------
        images : Sequence
            The 2D images (already dark- and flat-field corrected),
            indexed as [y, x]. Can be a 3D numpy.ndarray, or any
            sequence supporting len() and indexing, e.g., one that
            produces images only when requested.
        mask : numpy.ndarray
            Same shape as each image. Non-zero pixels are valid.
        energies : Sequence of float, optional
            The energy of each image. Default is None.
        beam_current : Sequence of float, optional
            Incident beam current for each image. Intensities are
            normalized by it. Default is None.

        Raises
        ------
        EmptyStackError
            If `images` is empty or `mask` has no valid pixels.
        InputMismatchError
            If images and mask have different shapes, or if the
            number of energies or beam currents is not the
            number of images, or if the beam current is not
            positive or mostly NaN.
        """
        self._images = images
        self.mask = np.asarray(mask) != 0
        if not len(images):
            raise EmptyStackError('No images in stack')
        if self.mask.ndim != 2:
            raise InputMismatchError('Mask must be a 2D array')
        if not self.mask.any():
            raise EmptyStackError('Mask has no valid pixels')
        if (isinstance(images, np.ndarray)
                and images.shape[1:] != self.mask.shape):
            raise InputMismatchError(
                f'Images of shape {images.shape[1:]} do not match '
                f'mask of shape {self.mask.shape}'
                )
        self.energies = self._as_per_image(energies, 'energies')
        self.beam_current = self._as_per_image(beam_current, 'beam currents')
        if self.beam_current is not None:
            self._check_beam_current()
        self._bounds = self._find_mask_bounds()

    def __len__(self):
        """Return the number of images."""
        return len(self._images)

    @property
    def has_energies(self):
        """Return whether the x axis is the energy."""
        return self.energies is not None

    @property
    def height(self):
        """Return the number of pixel rows of each image."""
        return self.mask.shape[0]

    @property
    def width(self):
        """Return the number of pixel columns of each image."""
        return self.mask.shape[1]

    @property
    def mask_bounds(self):
        """Return the bounding box (x, y, width, height) of the mask."""
        return self._bounds

    @property
    def mask_center(self):
        """Return the center (x, y) of the bounding box of the mask."""
        x_min, y_min, width, height = self._bounds
        return x_min + 0.5*width, y_min + 0.5*height

    def energy(self, index):
        """Return the energy of image `index`, or None without energies."""
        return None if self.energies is None else float(self.energies[index])

    def image(self, index):
        """Return image `index` as a float array.

        This may block if images are produced on request.

        Raises
        ------
        InputMismatchError
            If the shape of the image does not match the mask.
        """
        image = np.asarray(self._images[index], dtype=float)
        if image.shape != self.mask.shape:
            raise InputMismatchError(
                f'Image {index} of shape {image.shape} does not '
                f'match mask of shape {self.mask.shape}'
                )
        return image

    def inside_mask(self, x, y):
        """Return whether pixel (x, y) is a valid one. False for NaN."""
        if not (0 <= x < self.width and 0 <= y < self.height):
            return False
        return bool(self.mask[int(y), int(x)])

    def _as_per_image(self, values, what):
        """Return `values` as an array with one item per image."""
        if values is None:
            return None
        values = np.array(values, dtype=float)
        if values.shape != (len(self),):
            raise InputMismatchError(f'Expected {len(self)} {what}, '
                                     f'found {values.size}')
        values.setflags(write=False)
        return values

    def _check_beam_current(self):
        """Raise if the beam current has invalid values."""
        current = self.beam_current
        n_invalid = np.count_nonzero(np.isnan(current))
        if np.any(current <= 0):
            bad = int(np.flatnonzero(current <= 0)[0])
            raise InputMismatchError('Beam current not positive: '
                                     f'{current[bad]} in image {bad}')
        if n_invalid >= len(current) / 2:
            raise InputMismatchError(f'Beam current contains {n_invalid}/'
                                     f'{len(current)} invalid numbers')

    def _find_mask_bounds(self):
        """Return the bounding box (x, y, width, height) of valid pixels."""
        rows = np.flatnonzero(self.mask.any(axis=1))
        columns = np.flatnonzero(self.mask.any(axis=0))
        return (int(columns[0]), int(rows[0]),
                int(columns[-1] - columns[0] + 1), int(rows[-1] - rows[0] + 1))
