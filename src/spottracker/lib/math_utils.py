"""Module math_utils of spottracker.lib.

Defines basic geometric and numeric functions.
"""

__authors__ = (
    'Florian Kraushofer (@fkraushofer)',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from itertools import combinations
import warnings

from scipy import linalg

# Relative tolerance for two vectors being parallel: the squared cross
# product must be smaller than this times the product of squared lengths
COLLINEAR_EPS = 1e-8

# cos(30deg)**2
COS_SQR_30_DEG = 0.75


def collinear(vec_1, vec_2):
    """Return whether two 2D vectors are (almost) parallel or antiparallel."""
    (x_1, y_1), (x_2, y_2) = vec_1, vec_2
    cross = x_1*y_2 - x_2*y_1
    return cross**2 < COLLINEAR_EPS * (x_1**2 + y_1**2) * (x_2**2 + y_2**2)


def all_collinear(xs, ys):
    """Return whether all points (xs, ys) lie on a single line.

    Parameters
    ----------
    xs, ys : Sequence of float
        Coordinates of the points. Fewer than three points
        are always collinear.

    Returns
    -------
    all_collinear : bool
        False as soon as one triplet of points is not collinear.
    """
    points = tuple(zip(xs, ys))
    for (x_1, y_1), (x_2, y_2), (x_3, y_3) in combinations(points, 3):
        if not collinear((x_2 - x_1, y_2 - y_1), (x_3 - x_2, y_3 - y_2)):
            return False
    return True


def within_30_degrees(vec_1, vec_2):
    """Return whether two 2D vectors point to directions within 30 degrees."""
    (x_1, y_1), (x_2, y_2) = vec_1, vec_2
    inner = x_1*x_2 + y_1*y_2
    norms_sqr = (x_1**2 + y_1**2) * (x_2**2 + y_2**2)
    return inner > 0 and inner**2 >= COS_SQR_30_DEG * norms_sqr


def is_integer(value, eps=1e-10):
    """Return whether `value` is an integer within `eps`."""
    return abs(value - round(value)) <= eps


def solve_symmetric(matrix, rhs):
    """Return the solution of a symmetric linear system.

    Parameters
    ----------
    matrix : numpy.ndarray
        Symmetric square matrix, shape (N, N).
    rhs : numpy.ndarray
        Right-hand side(s), shape (N,) or (N, M).

    Returns
    -------
    solution : numpy.ndarray
        Same shape as `rhs`.

    Raises
    ------
    ValueError
        If `matrix` is singular or so ill-conditioned
        that the solution would be meaningless.
    """
    with warnings.catch_warnings():  # Ill-conditioned --> singular
        warnings.simplefilter('error', category=linalg.LinAlgWarning)
        try:
            return linalg.solve(matrix, rhs, assume_a='sym')
        except (linalg.LinAlgError, linalg.LinAlgWarning):
            raise ValueError('Singular matrix') from None
