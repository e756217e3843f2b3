"""Package lib of spottracker.

Defines generic functionality used throughout the spottracker
package.

Modules
-------
dataclass_utils
    Extension of the dataclasses standard-library module.
linear_regression
    Weighted linear regression with incremental addition and
    removal of points.
log_utils
    Functions and classes for handling logging features.
math_utils
    Basic geometric and numeric helpers.
parallel
    A minimal worker pool draining a shared index counter.
regression_2d
    Weighted fit of an affine map between two 2D coordinate systems.
"""

__authors__ = (
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'
