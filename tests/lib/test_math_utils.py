"""Tests for module math_utils of spottracker.lib."""

__authors__ = (
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

import numpy as np
import pytest
from pytest_cases import parametrize

from spottracker.lib.math_utils import all_collinear
from spottracker.lib.math_utils import collinear
from spottracker.lib.math_utils import is_integer
from spottracker.lib.math_utils import solve_symmetric
from spottracker.lib.math_utils import within_30_degrees


class TestCollinear:
    """Tests for the collinear and all_collinear functions."""

    _vectors = {
        'parallel': (((1, 2), (2, 4)), True),
        'antiparallel': (((1, 2), (-3, -6)), True),
        'orthogonal': (((1, 0), (0, 1)), False),
        'almost parallel': (((1, 0), (1, 1e-5)), True),
        'slightly off': (((1, 0), (1, 1e-3)), False),
        }

    @parametrize('vectors,expect', _vectors.values(), ids=_vectors)
    def test_two_vectors(self, vectors, expect):
        """Check whether pairs of vectors are collinear."""
        assert collinear(*vectors) == expect

    _points = {
        'no points': (((), ()), True),
        'one point': (((1,), (2,)), True),
        'two points': (((1, 3), (2, 0)), True),
        'on a line': (((0, 1, 2, 3), (1, 3, 5, 7)), True),
        'triangle': (((0, 1, 0), (0, 0, 1)), False),
        'last off': (((0, 1, 2, 3), (0, 0, 0, 1)), False),
        }

    @parametrize('points,expect', _points.values(), ids=_points)
    def test_all_collinear(self, points, expect):
        """Check whether points lie on one line."""
        assert all_collinear(*points) == expect


class TestWithin30Degrees:
    """Tests for the within_30_degrees function."""

    _valid = {
        'same': (((1, 0), (2, 0)), True),
        '29deg': (((1, 0), (np.cos(np.radians(29)), np.sin(np.radians(29)))),
                  True),
        '31deg': (((1, 0), (np.cos(np.radians(31)), np.sin(np.radians(31)))),
                  False),
        'opposite': (((1, 0), (-1, 0)), False),
        'zero': (((1, 0), (0, 0)), False),
        }

    @parametrize('vectors,expect', _valid.values(), ids=_valid)
    def test_valid(self, vectors, expect):
        """Check expected outcome for acceptable arguments."""
        assert within_30_degrees(*vectors) == expect


class TestIsInteger:
    """Tests for the is_integer function."""

    _valid = {
        'int': (3, True),
        'float int': (-2.0, True),
        'rounding': (1 - 1e-12, True),
        'half': (0.5, False),
        'third': (1/3, False),
        }

    @parametrize('value,expect', _valid.values(), ids=_valid)
    def test_valid(self, value, expect):
        """Check expected outcome for acceptable arguments."""
        assert is_integer(value) == expect

    def test_eps(self):
        """Check a custom tolerance."""
        assert is_integer(2.01, eps=0.02)


class TestSolveSymmetric:
    """Tests for the solve_symmetric function."""

    def test_solution(self):
        """Check the solution of a well-conditioned system."""
        matrix = np.array([[4.0, 1.0], [1.0, 3.0]])
        rhs = np.array([[1.0, 0.0], [2.0, 1.0]])
        solution = solve_symmetric(matrix, rhs)
        assert matrix @ solution == pytest.approx(rhs)

    def test_vector(self):
        """Check that the shape of the right-hand side is kept."""
        solution = solve_symmetric(np.eye(3), np.array([1.0, 2.0, 3.0]))
        assert solution.shape == (3,)
        assert solution == pytest.approx([1, 2, 3])

    _singular = {
        'zero': np.zeros((2, 2)),
        'rank one': np.array([[1.0, 2.0], [2.0, 4.0]]),
        }

    @parametrize(matrix=_singular.values(), ids=_singular)
    def test_singular(self, matrix):
        """Check complaints for a singular matrix."""
        with pytest.raises(ValueError):
            solve_symmetric(matrix, np.ones(2))
