"""Module drift of spottracker.tracking.

Fits the measured spot positions of each image to those predicted by
the screen model with an affine map. The energy dependence of the
offset of the (0, 0) spot indicates residual electric and magnetic
fields or a misalignment of the electron gun, that of the scale
factor an energy offset (e.g., a work-function difference between
filament and sample region).
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import logging
import math

import numpy as np

from spottracker.lib.dataclass_utils import frozen
from spottracker.lib.linear_regression import LinearRegression
from spottracker.lib.regression_2d import Regression2D
from spottracker.photometry.analyzer import NO_SIGNIFICANCE
from spottracker.tracking.columns import Column

logger = logging.getLogger(__name__)

# 1/sqrt(E) where the reference position of the (0, 0) spot is taken
_INV_SQRT_ENERGY_REF = 100

# A set of spots is degenerate (e.g., all on one line) unless the
# weight of the fit is larger than this times the largest |k|
_MIN_REL_WEIGHT = 1e-3


@frozen
class DriftResult:
    """Deviations from the screen model for each image, and their fits.

    Per-image arrays are NaN where the spots do not define the
    deviation (e.g., too few spots or all on one line). Fits and
    scalar results are available only with an energy x axis.

    Attributes
    ----------
    x_offset, y_offset : numpy.ndarray
        Offset of the (0, 0) spot from its predicted position,
        in pixels.
    scale : numpy.ndarray
        Deviation of the scale factor from the prediction, in
        percent.
    angle : numpy.ndarray
        Rotation with respect to the prediction, in degrees.
    weight : numpy.ndarray
        Weight of the fit of each image.
    x_offset_fit, y_offset_fit, scale_fit, angle_fit : numpy.ndarray
        Fits of the above as a function of the energy.
    x_offset_infty, y_offset_infty : float
        Offset at infinite energy.
    x_offset_100ev, y_offset_100ev : float
        Energy-dependent part of the offset at 100 eV.
    inv_scale_infty : float
        Inverse scale factor at infinite energy.
    delta_phi : float
        Estimate of the energy offset, in eV.
    """

    x_offset: np.ndarray
    y_offset: np.ndarray
    scale: np.ndarray
    angle: np.ndarray
    weight: np.ndarray
    x_offset_fit: np.ndarray
    y_offset_fit: np.ndarray
    scale_fit: np.ndarray
    angle_fit: np.ndarray
    x_offset_infty: float = math.nan
    y_offset_infty: float = math.nan
    x_offset_100ev: float = math.nan
    y_offset_100ev: float = math.nan
    inv_scale_infty: float = math.nan
    delta_phi: float = math.nan

    @property
    def n_valid(self):
        """Return the number of images with a valid fit."""
        return int(np.count_nonzero(np.isfinite(self.weight)))


def fit_drift(run):
    """Return a DriftResult for the spots of `run`.

    Parameters
    ----------
    run : TrackingRun
        The tracking run, after the final measurement.

    Returns
    -------
    drift : DriftResult
    """
    n_slices = run.n_slices
    per_slice = {name: np.full(n_slices, np.nan)
                 for name in ('x_offset', 'y_offset', 'determinant',
                              'angle', 'weight')}
    x_00, y_00 = run.model.predict(0.0, 0.0, _INV_SQRT_ENERGY_REF)
    for i in range(n_slices):
        fits = _fit_slice(run, i, x_00, y_00)
        if fits is None:
            continue
        scale_fit, offset_fit = fits
        per_slice['x_offset'][i] = offset_fit.x_offset
        per_slice['y_offset'][i] = offset_fit.y_offset
        per_slice['angle'][i] = offset_fit.angle
        per_slice['determinant'][i] = scale_fit.determinant
        per_slice['weight'][i] = scale_fit.weight
    n_valid = np.count_nonzero(np.isfinite(per_slice['weight']))
    energy_fits = {}
    if run.use_energies and n_valid >= 2:
        energy_fits = _fit_energy_dependence(run, per_slice)
    with np.errstate(invalid='ignore'):
        scale = 100*(np.sqrt(per_slice.pop('determinant')) - 1)
    empty = np.full(n_slices, np.nan)
    for name in ('x_offset_fit', 'y_offset_fit', 'scale_fit', 'angle_fit'):
        energy_fits.setdefault(name, empty.copy())
    logger.debug(f'Drift of (0, 0) spot determined for {n_valid} of '
                 f'{n_slices} images')
    return DriftResult(scale=scale, **per_slice, **energy_fits)


def _fit_slice(run, slice_index, x_00, y_00):
    """Return the affine fits of scale and (0, 0) position in an image.

    Returns
    -------
    fits : tuple or None
        AffineFit for the scale and for the position of the
        (0, 0) spot. None if the spots are degenerate.
    """
    data, i = run.data, slice_index
    kx, ky = run.pattern.kx, run.pattern.ky
    k_sqr = kx**2 + ky**2
    significance = data[Column.SIGNIFICANCE][:, i]
    x_pos, y_pos = data[Column.X][:, i], data[Column.Y][:, i]
    with np.errstate(invalid='ignore'):
        used = run.has_spot & (significance > NO_SIGNIFICANCE) & (x_pos > 0)
    if not used.any():
        return None
    max_k_sqr = k_sqr[used].max()
    nonzero_k_sqr = k_sqr[used & (k_sqr > 0)]
    min_k_sqr = nonzero_k_sqr.min() if nonzero_k_sqr.size else math.inf

    reg_scale, reg_00, check = Regression2D(), Regression2D(), Regression2D()
    for spot in np.flatnonzero(run.has_spot):
        weight = run.significance_to_weight(significance[spot])
        if not (weight > 0 and x_pos[spot] > 0):
            continue
        x_calc, y_calc = run.predict(spot, i)
        point = (x_pos[spot] - x_00, y_pos[spot] - y_00,
                 x_calc - x_00, y_calc - y_00)
        reg_scale.add_point(*point, weight)
        if math.isfinite(min_k_sqr):
            # Lower weight for spots further out
            weight *= math.sqrt(min_k_sqr / (min_k_sqr + k_sqr[spot]))
        reg_00.add_point(*point, weight)
        check.add_point(0, 0, kx[spot], ky[spot], 1)
    check_fit = check.fit()
    with np.errstate(divide='ignore', invalid='ignore'):
        rel_weight = np.float64(check_fit.weight) / check_fit.sum_data_weights
    if not rel_weight > _MIN_REL_WEIGHT*math.sqrt(max_k_sqr):
        return None
    return reg_scale.fit(), reg_00.fit()


def _fit_energy_dependence(run, per_slice):
    """Return fits of offsets and angle vs. 1/sqrt(E), scale vs. 1/E."""
    inv_sqrt_energy = run.inv_sqrt_energies
    inv_energy = inv_sqrt_energy**2
    weight = per_slice['weight']
    valid = weight > 0
    x_fit, y_fit = LinearRegression(), LinearRegression()
    angle_fit, scale_fit = LinearRegression(), LinearRegression()
    with np.errstate(divide='ignore'):
        inv_determinant = 1 / per_slice['determinant']
    for fit, x_values, y_values in (
            (x_fit, inv_sqrt_energy, per_slice['x_offset']),
            (y_fit, inv_sqrt_energy, per_slice['y_offset']),
            (angle_fit, inv_sqrt_energy, per_slice['angle']),
            (scale_fit, inv_energy, inv_determinant)):
        fit.add_points(x_values[valid], y_values[valid], weight[valid])
    with np.errstate(divide='ignore', invalid='ignore'):
        inv_scale_infty = np.sqrt(1 / np.float64(scale_fit.offset))
        delta_phi = -scale_fit.slope / np.float64(scale_fit.offset)
        scale_curve = 100*(inv_scale_infty
                           * np.sqrt(1 / (1 - delta_phi*inv_energy)) - 1)
    logger.debug(f'Offset of (0, 0) at E->infinity: {x_fit.offset:.2f}, '
                 f'{y_fit.offset:.2f}; energy offset: {delta_phi:.2f} eV')
    return {
        'x_offset_fit': x_fit.fit_value(inv_sqrt_energy),
        'y_offset_fit': y_fit.fit_value(inv_sqrt_energy),
        'scale_fit': scale_curve,
        'angle_fit': angle_fit.fit_value(inv_sqrt_energy),
        'x_offset_infty': float(x_fit.offset),
        'y_offset_infty': float(y_fit.offset),
        'x_offset_100ev': float(x_fit.slope*0.1),
        'y_offset_100ev': float(y_fit.slope*0.1),
        'inv_scale_infty': float(inv_scale_infty),
        'delta_phi': float(delta_phi),
        }
