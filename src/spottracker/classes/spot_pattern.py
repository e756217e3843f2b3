"""Module spot_pattern of spottracker.classes.

Defines the SpotPattern class, the catalogue of the diffraction spots
that should be tracked, and functions for reading it from a spot
pattern file.

The spot-pattern file is a comma-separated text file. Leading and
trailing white space, as well as empty lines, are ignored. Comment
lines start with any of '#%!*'. The first non-comment line is a header
(ignored). Each further line describes one spot with the items
    indices, h, k, kx, ky, group
'indices' are h and k, optionally as fractions, optionally enclosed
in brackets, and separated by white space, '_', ';', or '|'. h and k
are floats. kx and ky are the Cartesian reciprocal-space coordinates.
Symmetry-equivalent spots have the same integer group. Further items
are ignored. Example:
    (  h     k  ),    h   ,     k  ,     gx  ,    gy   , group
    (  1/2   0  ), 0.50000, 0.00000,  1.50000,  0.00000,     0
    ( -1/2   1/2),-0.50000, 0.50000, -0.75000,  1.29903,     0
    (  1     0  ), 1.00000, 0.00000,  3.00000,  0.00000,     1
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
from pathlib import Path
import re

import numpy as np
from scipy.spatial.distance import cdist

from spottracker.errors import SpotPatternError
from spottracker.lib.math_utils import is_integer

logger = logging.getLogger(__name__)

# Group number if the group of a spot is unknown
UNKNOWN_GROUP = -9999

# Maximum number of nearest spots listed for each spot
N_NEAREST = 20

# Tolerance for finding spots by their h, k indices
INDEX_TOLERANCE = 0.01

_COMMENT_CHARS = '#%!*'
_HK_SEPARATORS = re.compile(r'[\s,;_|]+')
_MIN_ITEMS_PER_LINE = 6


class SpotPattern:
    """An immutable catalogue of diffraction spots.

    Attributes
    ----------
    names : tuple of str
        Names of the spots, e.g., '1/2,0'.
    h, k : numpy.ndarray
        Indices of the spots, as floats.
    kx, ky : numpy.ndarray
        Cartesian reciprocal-space coordinates.
    groups : numpy.ndarray
        Symmetry-equivalent spots have the same group.
        UNKNOWN_GROUP if the group is not known.
    is_superstructure : numpy.ndarray
        For each spot, whether h or k are not integer.
    nearest : tuple of tuple of int
        For each spot, the indices of up to N_NEAREST other
        spots, sorted by increasing reciprocal-space distance.
    min_distance : float
        The smallest reciprocal-space distance between two spots.
    """

    def __init__(self, names, h, k, kx, ky, groups=None):
        """Initialize instance.

        Parameters
        ----------
        names : Sequence of str
            Names of the spots. Must be unique.
        h, k, kx, ky : Sequence of float
            Indices and reciprocal-space coordinates of the spots.
        groups : Sequence of int, optional
            Groups of symmetry-equivalent spots. Default is None,
            i.e., all groups are UNKNOWN_GROUP.

        Raises
        ------
        SpotPatternError
            If there are fewer than two spots, if the sequences
            have different lengths, or if names are duplicate.
        """
        self.names = tuple(names)
        n_spots = len(self.names)
        if groups is None:
            groups = [UNKNOWN_GROUP] * n_spots
        arrays = [np.array(values, dtype=float)
                  for values in (h, k, kx, ky)]
        if (any(a.shape != (n_spots,) for a in arrays)
                or len(groups) != n_spots):
            raise SpotPatternError('Inconsistent number of spot properties')
        if n_spots < 2:
            raise SpotPatternError(f'Only {n_spots} spot(s) in spot '
                                   'pattern, this is not enough')
        if len(set(self.names)) != n_spots:
            raise SpotPatternError('Duplicate spot names in spot pattern')
        self.h, self.k, self.kx, self.ky = arrays
        self.groups = np.array(groups, dtype=int)
        self.is_superstructure = np.array(
            [not (is_integer(h_) and is_integer(k_))
             for h_, k_ in zip(self.h, self.k)]
            )
        for array in (*arrays, self.groups, self.is_superstructure):
            array.setflags(write=False)
        self._index_of_name = {name: i for i, name in enumerate(self.names)}
        self.nearest, self.min_distance = self._make_nearest_table()

    def __len__(self):
        """Return the number of spots."""
        return len(self.names)

    def __repr__(self):
        """Return a string representation of this pattern."""
        shown = '; '.join(self.names[:10])
        if len(self) > 10:
            shown += '; ...'
        return f'{type(self).__name__}[{len(self)}]: {shown}'

    @property
    def has_groups(self):
        """Return whether all spots have a known group."""
        return not np.any(self.groups == UNKNOWN_GROUP)

    @property
    def has_superstructure(self):
        """Return whether there are any superstructure spots."""
        return bool(self.is_superstructure.any())

    @property
    def has_equivalent_beams(self):
        """Return whether at least one group has two or more spots."""
        known = self.groups[self.groups != UNKNOWN_GROUP]
        _, counts = np.unique(known, return_counts=True)
        return bool(np.any(counts > 1))

    def index_of(self, name):
        """Return the index of the spot called `name`, or -1 if none."""
        return self._index_of_name.get(name, -1)

    def spot_index(self, h, k):
        """Return the index of the spot with indices (h, k), or -1 if none."""
        matching = np.flatnonzero((np.abs(self.h - h) < INDEX_TOLERANCE)
                                  & (np.abs(self.k - k) < INDEX_TOLERANCE))
        return int(matching[0]) if matching.size else -1

    def spots_in_group(self, group):
        """Return the indices of all spots in `group`."""
        return tuple(int(i) for i in np.flatnonzero(self.groups == group))

    def name_with_group(self, index, replace_comma=False):
        """Return a name like '(1/2,2/5) [5]' for spot `index`.

        Parameters
        ----------
        index : int
            The index of the spot.
        replace_comma : bool, optional
            Whether the comma between h and k should be replaced
            by a vertical bar. Default is False.

        Returns
        -------
        name : str
            The group in square brackets is omitted if unknown.
        """
        name = self.names[index]
        if replace_comma:
            name = name.replace(',', '|')
        name = f'({name})'
        if self.groups[index] != UNKNOWN_GROUP:
            name += f' [{self.groups[index]}]'
        return name

    def indices_of(self, names):
        """Return the indices of spots given as names like '(1/2|0) [3]'.

        Parameters
        ----------
        names : Sequence of str
            Names of spots. Brackets are optional, h and k may
            be fractions. The group in square brackets, if given,
            must agree with the group of the spot.

        Returns
        -------
        indices : tuple of int

        Raises
        ------
        SpotPatternError
            If any name is invalid, if any spot is not found,
            or if groups are inconsistent. The message lists
            up to five problems.
        """
        indices, errors = [], []
        for name in names:
            group_match = re.search(r'\[\s*(-?\d+)\s*\]', name)
            bare = re.sub(r'\[.*\]', '', name)
            bare = bare.replace('(', '').replace(')', '')
            try:
                h_index, k_index = (
                    parse_index(i) for i in _HK_SEPARATORS.split(bare.strip())
                    )
            except ValueError:
                errors.append(f'invalid spot: {name}')
                continue
            index = self.spot_index(h_index, k_index)
            if index < 0:
                errors.append(f'spot not found: {name}')
            elif group_match and int(group_match[1]) != self.groups[index]:
                errors.append(f'{self.name_with_group(index)}: group '
                              f'different from spot pattern: {group_match[1]}')
            indices.append(index)
        if errors:
            raise SpotPatternError('\n'.join(errors[:5]))
        return tuple(indices)

    def _make_nearest_table(self):
        """Return the nearest-neighbor table and the smallest distance."""
        k_vectors = np.column_stack((self.kx, self.ky))
        distances = cdist(k_vectors, k_vectors)
        np.fill_diagonal(distances, np.inf)
        n_nearest = min(len(self) - 1, N_NEAREST)
        order = np.argsort(distances, axis=1, kind='stable')[:, :n_nearest]
        nearest = tuple(tuple(int(j) for j in row) for row in order)
        return nearest, float(distances.min())


def parse_index(index_str):
    """Return a float from a string like '-1/2' or '1.5'.

    Raises
    ------
    ValueError
        If `index_str` is not a number or a fraction.
    """
    index_str = index_str.strip()
    if '/' in index_str[1:]:
        numerator, denominator = index_str.split('/')
        return float(numerator) / float(denominator)
    return float(index_str)


def read_spot_pattern(path):
    """Return a SpotPattern read from the file at `path`."""
    path = Path(path)
    try:
        contents = path.read_text(encoding='utf-8')
    except OSError as exc:
        raise SpotPatternError('Cannot open spot pattern '
                               f'file {path}') from exc
    logger.debug(f'Reading spot pattern from {path}')
    return spot_pattern_from_string(contents)


def spot_pattern_from_string(contents):
    """Return a SpotPattern from the contents of a spot-pattern file.

    Parameters
    ----------
    contents : str
        The text of a spot-pattern file. See module docstring
        for its format.

    Returns
    -------
    pattern : SpotPattern

    Raises
    ------
    SpotPatternError
        If `contents` has an invalid format or too few spots.
    """
    if 'SUPERLATTICE' in contents and 'bulkGroup' in contents:
        raise SpotPatternError('Wrong spot pattern file format (looks '
                               'like input for the pattern simulator)')
    names, columns = [], []
    header_found = False
    for line_nr, line in enumerate(contents.splitlines(), start=1):
        line = line.strip()
        if not line or line[0] in _COMMENT_CHARS:
            continue
        if not header_found:
            header_found = True
            continue
        items = line.split(',')
        if len(items) < _MIN_ITEMS_PER_LINE:
            raise SpotPatternError(
                f'Spot pattern file: Line {line_nr} too short:\n{line}'
                )
        names.append(_spot_name(items[0]))
        try:
            h_index, k_index, kx_, ky_, group = (float(i) for i in items[1:6])
        except ValueError:
            valid = False
        else:
            valid = (math.isfinite(h_index)
                     and math.isfinite(k_index)
                     and group.is_integer())
        if not valid:
            raise SpotPatternError(
                f'Spot pattern file: Invalid number in line {line_nr}:\n{line}'
                )
        columns.append((h_index, k_index, kx_, ky_, int(group)))
    if not columns:
        raise SpotPatternError('Spot pattern file: No spots found')
    h_indices, k_indices, kx_values, ky_values, groups = zip(*columns)
    return SpotPattern(names, h_indices, k_indices,
                       kx_values, ky_values, groups)


def _spot_name(indices):
    """Return a spot name like '1/2,0' from '(  1/2   0  )'."""
    name = re.sub(r'\(\s*', '', indices.strip(), count=1)
    name = re.sub(r'\s*\)', '', name, count=1)
    return _HK_SEPARATORS.sub(',', name.strip(), count=1)
