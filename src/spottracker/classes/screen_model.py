"""Module screen_model of spottracker.classes.

Defines the ScreenModel class, a 2D polynomial that maps reciprocal-
space coordinates of spots and the electron energy to positions on
the LEED screen (i.e., in the image, in pixels).

There are primary fit functions, from linear to 5th order, and two
alternative ones for 2nd and 4th order. The alternative functions
have fewer parameters but include higher-order terms that depend
only on |k|. They may give a better fit if the distortions depend
only on the distance from the (0, 0) spot, e.g., for the (0, 0) spot
in the center and the camera close to the screen, or for a sample
not in the center of curvature of the screen.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from enum import IntEnum
import logging
import math

import numpy as np

from spottracker.errors import ScreenModelError
from spottracker.lib.math_utils import all_collinear
from spottracker.lib.math_utils import solve_symmetric
from spottracker.lib.math_utils import within_30_degrees

logger = logging.getLogger(__name__)

_NAN = float('nan')

# (x**2 + y**2) must not be less than 1/10 of that from the linear terms
MAX_NONLINEARITY_SQR = 10

# Number of leading values in to_array/from_array before the parameters
ARRAY_OFFSET = 6

# Terms up to these indices make up the 3rd- and 4th-order parts
_N_TERMS_UP_TO_3RD = 10
_N_TERMS_UP_TO_4TH = 15

# Each term is kx**a * ky**b * (kx**2 + ky**2)**c, as (a, b, c)
_MONOMIALS = (
    (0, 0, 0), (1, 0, 0), (0, 1, 0),                                # 0-2
    (2, 0, 0), (1, 1, 0), (0, 2, 0),                                # 3-5
    (3, 0, 0), (2, 1, 0), (1, 2, 0), (0, 3, 0),                     # 6-9
    (4, 0, 0), (3, 1, 0), (2, 2, 0), (1, 3, 0), (0, 4, 0),          # 10-14
    (5, 0, 0), (4, 1, 0), (3, 2, 0), (2, 3, 0), (1, 4, 0), (0, 5, 0),
    )
_EDGE_TERMS = {  # Terms replaced by radial ones in alternative fits
    'LIN_EDGE_DISTORT': {3: (1, 0, 1), 4: (0, 1, 1)},
    'CUBE_EDGE_DISTORT': {10: (1, 0, 2), 11: (0, 1, 2)},
    }


class FitFunction(IntEnum):
    """The function types of a ScreenModel."""

    LINEAR = 0
    SQUARE = 1
    CUBIC = 2
    FOURTH = 3
    FIFTH = 4
    LIN_EDGE_DISTORT = 5   # Linear plus r**2 * k terms
    CUBE_EDGE_DISTORT = 6  # Cubic plus r**4 * k terms

    def __str__(self):
        return _FUNCTION_NAMES[self]

    @property
    def alternative(self):
        """Return the alternative type with no more parameters, or None."""
        return _ALTERNATIVES.get(self, None)

    @property
    def main_type(self):
        """Return the primary type of the same order."""
        return _MAIN_TYPES.get(self, self)

    @property
    def monomials(self):
        """Return the (a, b, c) exponents of all terms of this function."""
        terms = list(_MONOMIALS[:self.n_params])
        for i, term in _EDGE_TERMS.get(self.name, {}).items():
            terms[i] = term
        return tuple(terms)

    @property
    def n_params(self):
        """Return the number of parameters per screen coordinate."""
        return _N_PARAMS[self]


_N_PARAMS = dict(zip(FitFunction, (3, 6, 10, 15, 21, 5, 12)))
_ALTERNATIVES = {
    FitFunction.SQUARE: FitFunction.LIN_EDGE_DISTORT,
    FitFunction.FOURTH: FitFunction.CUBE_EDGE_DISTORT,
    }
_MAIN_TYPES = {
    FitFunction.LIN_EDGE_DISTORT: FitFunction.SQUARE,
    FitFunction.CUBE_EDGE_DISTORT: FitFunction.FOURTH,
    }
_FUNCTION_NAMES = dict(zip(FitFunction, ('linear', 'square', 'cubic',
                                         '4th order', '5th order',
                                         'linear+r^3', 'cubic+r^5')))


def _term_values(monomials, kx, ky):
    """Return the values of all terms at (kx, ky)."""
    k_sqr = kx*kx + ky*ky
    return np.array([kx**a * ky**b * k_sqr**c for a, b, c in monomials])


def _term_gradients(monomials, kx, ky):
    """Return d/dkx and d/dky of all terms at (kx, ky)."""
    k_sqr = kx*kx + ky*ky
    d_kx, d_ky = [], []
    for a, b, c in monomials:
        x_part, y_part, r_part = kx**a, ky**b, k_sqr**c
        d_x_part = a * kx**(a - 1) if a else 0.0
        d_y_part = b * ky**(b - 1) if b else 0.0
        d_r_part = 2 * c * k_sqr**(c - 1) if c else 0.0
        d_kx.append(d_x_part*y_part*r_part + x_part*y_part*d_r_part*kx)
        d_ky.append(x_part*d_y_part*r_part + x_part*y_part*d_r_part*ky)
    return np.array(d_kx), np.array(d_ky)


class ScreenModel:
    """Mapping of reciprocal-space coordinates to screen positions.

    Positions are modeled with a polynomial in k/sqrt(E), i.e., as
    x = x0 + sum_i x_params[i] * term_i(kx*f, ky*f), with
    f = k_factor * inv_sqrt_energy, and likewise for y. The
    normalization factor `k_factor` makes the arguments of the
    terms close to one on average. Positions are fitted relative
    to the mask center.
    """

    def __init__(self, function, energy, mask_center):
        """Initialize an unfitted model.

        Parameters
        ----------
        function : FitFunction or int
            The type of polynomial.
        energy : float
            The energy of the spot positions to be fitted.
        mask_center : Sequence of float
            Center (x, y) of the mask, in pixels.
        """
        self.function = FitFunction(function)
        self.inv_sqrt_energy = 1 / math.sqrt(energy)
        self.mask_center = tuple(float(c) for c in mask_center)
        self.k_factor = _NAN
        self.x_params = self.y_params = None
        self.n_fit_spots = 0

    def __repr__(self):
        """Return a string representation of this model."""
        return (f'{type(self).__name__}({self.function!s}, '
                f'{self.n_fit_spots} spots)')

    @classmethod
    def from_array(cls, values):
        """Return a fitted ScreenModel from the values of to_array.

        Raises
        ------
        ScreenModelError
            If `values` is too short for its function type.
        """
        values = np.asarray(values, dtype=float)
        function = FitFunction(int(values[0]))
        n_params = function.n_params
        if values.size < ARRAY_OFFSET + 2*n_params:
            raise ScreenModelError('Error reading screen model: array '
                                   f'too short ({values.size})')
        model = cls(function, 1.0, values[3:5])
        model.k_factor = float(values[1])
        model.inv_sqrt_energy = float(values[2])
        model.x_params = values[ARRAY_OFFSET:ARRAY_OFFSET+n_params].copy()
        model.y_params = values[ARRAY_OFFSET+n_params:
                                ARRAY_OFFSET+2*n_params].copy()
        return model

    @classmethod
    def fit_best(cls, function, energy, mask_center, kx, ky, x, y):
        """Return the better-fitting of `function` and its alternative.

        Parameters
        ----------
        function : FitFunction
            The primary function type.
        energy : float
            The energy of the spot positions.
        mask_center : Sequence of float
            Center (x, y) of the mask.
        kx, ky, x, y : Sequence of float
            Reciprocal-space coordinates and screen positions
            of the spots.

        Returns
        -------
        model : ScreenModel or None
            The model with the lower rms residuals among the
            ones that could be fitted. None if none could be.
        """
        candidates = [FitFunction(function)]
        if candidates[0].alternative is not None:
            candidates.append(candidates[0].alternative)
        best_model, best_rms = None, math.inf
        for candidate in candidates:
            model = cls(candidate, energy, mask_center)
            if not model.fit(kx, ky, x, y):
                continue
            rms = model.rms_residuals(kx, ky, x, y)
            logger.debug(f'Screen model {model.status_text(rms)}')
            if rms < best_rms or best_model is None:
                best_model, best_rms = model, rms
        return best_model

    @property
    def is_fitted(self):
        """Return whether parameters are available."""
        return self.x_params is not None

    @property
    def name(self):
        """Return the name of the function type."""
        return str(self.function)

    @property
    def origin(self):
        """Return the screen position (x, y) of the (0, 0) spot."""
        self._check_fitted()
        return (float(self.x_params[0] + self.mask_center[0]),
                float(self.y_params[0] + self.mask_center[1]))

    # pylint: disable-next=too-many-locals
    def fit(self, kx, ky, x, y):
        """Fit the model to spots at known positions.

        If there are fewer than three spots, or all are collinear,
        one or two spots are added to obtain a fit: it is assumed
        that the screen coordinates are a scaled and rotated
        version of the reciprocal-space coordinates, and that the
        (0, 0) spot is at the mask center if it is not given.

        Parameters
        ----------
        kx, ky : Sequence of float
            Reciprocal-space coordinates of the spots.
        x, y : Sequence of float
            Positions of the spots on the screen.

        Returns
        -------
        success : bool
            False if the system is singular, or if there are too
            few spots for the number of parameters. Parameters are
            replaced only if successful.
        """
        kx, ky, x, y = (np.array(v, dtype=float).ravel()
                        for v in (kx, ky, x, y))
        n_given = kx.size
        n_params = self.function.n_params
        if not n_given:
            return False
        if self.function is not FitFunction.LINEAR and n_given < n_params:
            return False  # Would be overfitting
        try:
            kx, ky, x, y = self._add_missing_spots(kx, ky, x, y)
        except ValueError:
            return False
        n_spots = kx.size

        # Use arguments close to one on average, for numeric stability
        mean_k_sqr = np.sum(kx**2 + ky**2) / (2*n_spots)
        k_factor = 1 / math.sqrt(mean_k_sqr * self.inv_sqrt_energy)
        scale = k_factor * self.inv_sqrt_energy
        monomials = self.function.monomials
        terms = np.array([_term_values(monomials, kx_*scale, ky_*scale)
                          for kx_, ky_ in zip(kx, ky)])
        targets = np.column_stack((x - self.mask_center[0],
                                   y - self.mask_center[1]))
        try:
            params = solve_symmetric(terms.T @ terms, terms.T @ targets)
        except ValueError:
            logger.debug(f'Singular matrix when fitting {self.name} '
                         'screen model')
            return False
        self.k_factor = k_factor
        self.x_params, self.y_params = params[:, 0].copy(), params[:, 1].copy()
        self.n_fit_spots = n_spots
        return True

    def _add_missing_spots(self, kx, ky, x, y):
        """Return spot coordinates with enough spots for a fit.

        Raises
        ------
        ValueError
            If a missing (0, 0) spot would be needed, but
            the (0, 0) spot is already among the given ones.
        """
        n_given = kx.size
        collinear = all_collinear(kx, ky)
        n_spots = max(3, n_given)
        if collinear and n_given >= 3:
            n_spots = n_given + 1
        if n_spots == n_given:
            return kx, ky, x, y
        padded = [np.zeros(n_spots) for _ in range(4)]
        for new, old in zip(padded, (kx, ky, x, y)):
            new[:n_given] = old
        kx_new, ky_new, x_new, y_new = padded
        origin_spots = np.flatnonzero((kx == 0) & (ky == 0))
        has_origin = origin_spots.size > 0
        if collinear:
            # Add the highest-k spot, rotated by 90 degrees around the
            # (0, 0) spot, assuming that one system is right-handed and
            # one left-handed (screen coordinates have y down).
            if has_origin:
                x_center, y_center = x[origin_spots[0]], y[origin_spots[0]]
            else:
                x_center, y_center = self.mask_center
            highest = int(np.argmax(kx**2 + ky**2))
            kx_new[n_given] = -ky[highest]
            ky_new[n_given] = kx[highest]
            x_new[n_given] = x_center + (y[highest] - y_center)
            y_new[n_given] = y_center - (x[highest] - x_center)
        if kx_new[-1] == 0 and ky_new[-1] == 0:  # Still unknown
            if has_origin:
                raise ValueError('Cannot add (0, 0) spot')
            x_new[-1], y_new[-1] = self.mask_center
        return kx_new, ky_new, x_new, y_new

    def predict(self, kx, ky, inv_sqrt_energy, with_derivatives=False):
        """Return the screen position of a spot.

        Parameters
        ----------
        kx, ky : float
            Reciprocal-space coordinates of the spot.
        inv_sqrt_energy : float
            1/sqrt(E) for the energy E of interest.
        with_derivatives : bool, optional
            Whether also dx/d(ln k) and dy/d(ln k) should be
            returned. Default is False.

        Returns
        -------
        x, y : float
            The position on the screen. NaN if the model is not
            valid at (kx, ky), i.e., it folds back or is much
            smaller than its linear part.
        dx_dlnk, dy_dlnk : float
            Only if `with_derivatives`. Zero for (kx, ky) == (0, 0),
            NaN for invalid positions.

        Raises
        ------
        ScreenModelError
            If the model was not fitted.
        """
        self._check_fitted()
        scale = self.k_factor * inv_sqrt_energy
        kx, ky = kx*scale, ky*scale
        function = self.function
        is_linear = function is FitFunction.LINEAR
        monomials = function.monomials
        terms = _term_values(monomials, kx, ky)
        terms[0] = 0.0   # Offsets are added at the end
        x_pos = float(terms @ self.x_params)
        y_pos = float(terms @ self.y_params)
        x_lin = kx*self.x_params[1] + ky*self.x_params[2]
        y_lin = kx*self.y_params[1] + ky*self.y_params[2]
        dx_dlnk = dy_dlnk = _NAN
        if kx == 0 and ky == 0:
            dx_dlnk = dy_dlnk = 0.0
        elif (not is_linear
              and ((x_pos**2 + y_pos**2)*MAX_NONLINEARITY_SQR
                   < x_lin**2 + y_lin**2)):
            x_pos = y_pos = _NAN
        elif not is_linear or with_derivatives:
            d_kx, d_ky = _term_gradients(monomials, kx, ky)
            x_move = (d_kx*kx + d_ky*ky) @ self.x_params  # With increasing |k|
            y_move = (d_kx*kx + d_ky*ky) @ self.y_params
            if not is_linear and not self._moves_outwards(
                    (x_lin, y_lin), d_kx*kx + d_ky*ky):
                x_pos = y_pos = _NAN
            dx_dlnk, dy_dlnk = float(x_move), float(y_move)
        x_pos += self.x_params[0] + self.mask_center[0]
        y_pos += self.y_params[0] + self.mask_center[1]
        if with_derivatives:
            return float(x_pos), float(y_pos), dx_dlnk, dy_dlnk
        return float(x_pos), float(y_pos)

    def _moves_outwards(self, linear_direction, radial_gradients):
        """Return whether the model does not fold back.

        With increasing |k|, spots should move within 30 degrees
        of the direction given by the linear terms. For functions
        above CUBIC, also the terms up to 3rd order must fulfill
        this, and for FIFTH also those up to 4th order, as the
        gradient may get reversed twice, i.e., fold back and forth.
        Higher orders are assumed to be small corrections.
        """
        function = self.function
        partial_sums = [None]
        if (function > FitFunction.CUBIC
                and function is not FitFunction.LIN_EDGE_DISTORT):
            partial_sums.append(_N_TERMS_UP_TO_3RD)
        if function is FitFunction.FIFTH:
            partial_sums.append(_N_TERMS_UP_TO_4TH)
        for n_terms in partial_sums:
            move = (radial_gradients[:n_terms] @ self.x_params[:n_terms],
                    radial_gradients[:n_terms] @ self.y_params[:n_terms])
            if not within_30_degrees(linear_direction, move):
                return False
        return True

    def predict_spots(self, kx, ky, inv_sqrt_energy):
        """Return arrays of screen positions for many spots."""
        positions = np.array([self.predict(kx_, ky_, inv_sqrt_energy)
                              for kx_, ky_ in zip(kx, ky)]).reshape(-1, 2)
        return positions[:, 0], positions[:, 1]

    def rms_residuals(self, kx, ky, x, y):
        """Return the rms distance of fitted and measured positions.

        Positions are calculated at the energy of the fit.
        """
        x_fit, y_fit = self.predict_spots(kx, ky, self.inv_sqrt_energy)
        residuals_sqr = (x_fit - np.asarray(x))**2 + (y_fit - np.asarray(y))**2
        return float(np.sqrt(np.mean(residuals_sqr)))

    def status_text(self, rms_residuals):
        """Return a summary like 'cubic, drms=1.6 px, 50 spots'."""
        return (f'{self.name}, drms={rms_residuals:.1f} px, '
                f'{self.n_fit_spots} spots')

    def k_to_screen_scale(self):
        """Return the smaller scale factor of the linear terms.

        The scale factor is in pixels per reciprocal-space unit,
        at the energy of the fit.
        """
        self._check_fitted()
        x_par, y_par = self.x_params, self.y_params
        return (self.k_factor * self.inv_sqrt_energy
                * math.sqrt(min(x_par[1]**2 + y_par[1]**2,
                                x_par[2]**2 + y_par[2]**2)))

    def linear_matrix(self, inv_sqrt_energy):
        """Return the linear terms at 1/sqrt(E) as a 2x2 array.

        Returns
        -------
        matrix : numpy.ndarray
            [[dx/dkx, dx/dky], [dy/dkx, dy/dky]]
        """
        self._check_fitted()
        scale = self.k_factor * inv_sqrt_energy
        return scale * np.array([self.x_params[1:3], self.y_params[1:3]])

    def to_array(self):
        """Return all values needed to recreate this model.

        Returns
        -------
        values : numpy.ndarray
            function type, k_factor, inv_sqrt_energy,
            mask center x, mask center y, (spare),
            x_params, y_params.
        """
        self._check_fitted()
        header = [float(self.function), self.k_factor, self.inv_sqrt_energy,
                  *self.mask_center, 0.0]
        return np.concatenate((header, self.x_params, self.y_params))

    def _check_fitted(self):
        """Raise ScreenModelError if no parameters are available."""
        if not self.is_fitted:
            raise ScreenModelError(f'{self!r} was not fitted')
