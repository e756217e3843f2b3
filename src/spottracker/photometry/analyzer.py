"""Module analyzer of spottracker.photometry.

Defines functions for analyzing a single spot with sub-pixel precision
(aperture photometry). The spot intensity is integrated over the
integration region, after subtracting a planar background fitted over
the surrounding background region (see module shapes). Since the
background region has the same area as the integration region, at
very low intensities the background noise increases the noise of the
integral by sqrt(2) at most.

Each analysis gives a SpotMeasurement:
x, y
    Sub-pixel position of the spot, from the first moments of the
    background-subtracted intensity. NaN unless the spot is
    significant enough.
integral
    Integrated intensity of the spot, after background subtraction.
radial_size, tangential_size
    Assuming a 2D Gaussian, the sigma in radial and tangential
    direction, from the normalized central second moments and
    corrected for the overestimate of integration radii that are
    not much larger than sigma. Close to the center, these are the
    semiminor and semimajor axes of the moments ellipse. For
    AZIMUTH_BLUR, the tangential size is scaled by the aspect ratio
    of the integration ellipse.
significance
    By which factor the spot is higher than the standard deviation
    of the background. The spot height is the geometric mean of the
    peak height (assuming a Gaussian) and of the average intensity
    in the integration region. Values below NO_SIGNIFICANCE are set
    to zero. These are reserved for positions inferred from the
    neighbors of a spot.
background, background_sigma
    Average intensity and standard deviation of the background.

If the regions are (partly) outside the mask, all values are NaN.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from dataclasses import replace
from enum import Enum
import math

import numpy as np

from spottracker.lib.dataclass_utils import as_dict
from spottracker.lib.dataclass_utils import frozen
from spottracker.photometry.shapes import Aperture
from spottracker.photometry.shapes import SpotShape

_NAN = float('nan')

# Measured significance values below this are set to zero
NO_SIGNIFICANCE = 0.5
MAX_SIGNIFICANCE = 1e3

# Iterative centering
MAX_ITERATIONS = 5
MIN_XY_SQR_CONVERGENCE = 0.3  # Squared move from the previous step

# A top-hat spot as large as the integration circle
# has a major semiaxis of 0.5 times its radius
MAX_MAJOR_TO_RADIUS = 0.49

# Heuristic correction of sigma from second moments, for sigma
# not much smaller than the integration radius. It is better
# than 5 % for a circular Gaussian with radius > 0.7 sigma.
_SIZE_CORRECTION = {  # (numerator, pole)
    SpotShape.OVAL: (0.001581, 0.4925),
    'others': (0.001199, 0.4744),
    }


@frozen
class SpotMeasurement:
    """The result of the analysis of a spot. All NaN by default."""

    x: float = _NAN
    y: float = _NAN
    integral: float = _NAN
    radial_size: float = _NAN
    tangential_size: float = _NAN
    significance: float = _NAN
    background: float = _NAN
    background_sigma: float = _NAN

    @property
    def has_position(self):
        """Return whether the position of the spot could be determined."""
        return not (math.isnan(self.x) or math.isnan(self.y))

    @property
    def in_mask(self):
        """Return whether the spot could be measured at all."""
        return not math.isnan(self.significance)

    def as_tuple(self):
        """Return all values, in the order of the fields."""
        return tuple(as_dict(self).values())


class RefinementState(Enum):
    """The states of the iterative centering of a spot."""

    SEEKING = 'seeking'
    CONVERGED = 'converged'
    DIVERGED_KEEP_FIRST = 'diverged, keep first'

    def __str__(self):
        return self.value


def center_and_analyze_spot(xs, ys, x0, y0, shape, radius, az_blur_radians,
                            min_significance, image, mask):
    """Return a SpotMeasurement after centering on a spot near (xs, ys).

    The spot is repeatedly analyzed at the position found in the
    previous iteration, until the position converges. The position
    must not move farther than `radius` from (xs, ys), or, for
    AZIMUTH_BLUR, outside the integration ellipse around (xs, ys).

    Parameters
    ----------
    xs, ys : float
        Starting position for the search, in pixels. The spot
        must be within `radius`.
    x0, y0 : float
        The screen center or, for AZIMUTH_BLUR, the position
        of the (0, 0) spot.
    shape : SpotShape
        Shape of the integration and background regions.
    radius : float
        Radius of the integration region. For AZIMUTH_BLUR, the
        semiminor axis of the integration ellipse.
    az_blur_radians : float
        Only for AZIMUTH_BLUR: semimajor axis of the integration
        ellipse over the distance from the (0, 0) spot, in the
        limit of large distances.
    min_significance : float
        Threshold for accepting a spot. Typically about 2.
        Larger values give stronger background suppression.
    image : numpy.ndarray
        The 2D image, indexed as [y, x].
    mask : numpy.ndarray
        Same shape as `image`. Non-zero pixels may be measured.

    Returns
    -------
    measurement : SpotMeasurement
        If the position cannot be determined with sufficient
        accuracy, x and y are NaN and the significance is less
        than `min_significance`. If the spot is (partly) outside
        the mask, all values are NaN.
    """
    last_x, last_y = xs, ys
    first_result = None
    state = RefinementState.SEEKING
    for iteration in range(MAX_ITERATIONS):
        result = analyze_spot(last_x, last_y, x0, y0, shape, radius,
                              az_blur_radians, min_significance, image, mask)
        if not iteration:
            if not result.has_position:  # Significance too low
                return result
            first_result = result
            continue
        if not _is_near_start(result, xs, ys, x0, y0,
                              shape, radius, az_blur_radians):
            state = RefinementState.DIVERGED_KEEP_FIRST
            break
        move_sqr = (result.x - last_x)**2 + (result.y - last_y)**2
        if move_sqr < MIN_XY_SQR_CONVERGENCE:
            state = RefinementState.CONVERGED
            break
        last_x, last_y = result.x, result.y
    if state is RefinementState.CONVERGED:
        return result

    # Diverged, or not converged within MAX_ITERATIONS
    if (first_result.significance > min_significance
            and not result.in_mask):
        return result
    return replace(first_result, x=_NAN, y=_NAN, significance=0.0)


def _is_near_start(result, xs, ys, x0, y0, shape, radius, az_blur_radians):
    """Return whether `result` is within the allowed region around (xs, ys)."""
    delta_x, delta_y = result.x - xs, result.y - ys
    rho_x, rho_y = xs - x0, ys - y0
    rho = math.hypot(rho_x, rho_y)
    if shape is SpotShape.AZIMUTH_BLUR and rho >= radius:
        cos_r, sin_r = rho_x / rho, rho_y / rho
        delta_r = delta_x*cos_r + delta_y*sin_r
        delta_t = delta_y*cos_r - delta_x*sin_r
        radius_t = math.sqrt(radius**2 + az_blur_radians**2 * rho**2)
        return (delta_r/radius)**2 + (delta_t/radius_t)**2 <= 1
    return delta_x**2 + delta_y**2 <= radius**2  # False for NaN


# pylint: disable-next=too-many-locals
def analyze_spot(xs, ys, x0, y0, shape, radius, az_blur_radians,
                 min_significance, image, mask):
    """Return a SpotMeasurement for a spot at (xs, ys).

    Parameters
    ----------
    xs, ys : float
        Position of the center of the integration region.
    x0, y0 : float
        The screen center or, for AZIMUTH_BLUR, the position
        of the (0, 0) spot.
    shape : SpotShape
        Shape of the integration and background regions.
    radius : float
        Radius of the integration region. For AZIMUTH_BLUR, the
        semiminor axis of the integration ellipse.
    az_blur_radians : float
        Only for AZIMUTH_BLUR, see center_and_analyze_spot.
    min_significance : float
        Position x, y is given only if the significance is
        at least this large.
    image : numpy.ndarray
        The 2D image, indexed as [y, x].
    mask : numpy.ndarray
        Same shape as `image`. Non-zero pixels may be measured.

    Returns
    -------
    measurement : SpotMeasurement
        All values are NaN if the integration or background
        regions are (partly) outside the image or the mask.
    """
    height, width = image.shape
    if not (radius <= xs <= width - 1 - radius
            and radius <= ys <= height - 1 - radius):  # Also for NaN
        return SpotMeasurement()
    aperture = Aperture.around(xs, ys, x0, y0, shape, radius, az_blur_radians)
    x_min, x_max, y_min, y_max = aperture.bounds(xs, ys, width, height)
    region = np.s_[y_min:y_max+1, x_min:x_max+1]
    pixels = np.asarray(image[region], dtype=float)
    in_mask = np.asarray(mask[region]) != 0
    pixel_y, pixel_x = np.mgrid[region]
    delta_x, delta_y = pixel_x - xs, pixel_y - ys

    total_weights = aperture.total_weights(delta_x, delta_y)
    measured = total_weights != 0
    if np.any(measured & ~in_mask & (total_weights >= 0.5)):
        return SpotMeasurement()  # Can't measure. Low weights are OK.
    peak_weights = aperture.peak_weights(delta_x, delta_y)

    use = measured & in_mask & (peak_weights != 1)
    offset, x_slope, y_slope = _fit_background_plane(
        delta_x[use], delta_y[use], pixels[use],
        (total_weights - peak_weights)[use]
        )
    values = pixels - (offset + delta_x*x_slope + delta_y*y_slope)

    # Standard deviation of the background, and moments of the peak
    bg_weights = (total_weights - peak_weights)[measured]
    bg_values = values[measured]
    sum_bw = bg_weights.sum()
    sum_b = (bg_weights*bg_values).sum()
    sum_b2 = (bg_weights*bg_values**2).sum()
    peak = measured & (peak_weights > 0)
    sum_pw = peak_weights[peak].sum()
    weighted = peak_weights[peak] * values[peak]
    d_x, d_y = delta_x[peak], delta_y[peak]
    integral = weighted.sum()
    sub_threshold = SpotMeasurement(integral=float(integral))
    with np.errstate(divide='ignore', invalid='ignore'):
        inv_integral = 1 / integral
        peak_x = (weighted*d_x).sum() * inv_integral
        peak_y = (weighted*d_y).sum() * inv_integral
        sigma_xx = (weighted*d_x*d_x).sum()*inv_integral - peak_x**2
        sigma_yy = (weighted*d_y*d_y).sum()*inv_integral - peak_y**2
        sigma_xy = (weighted*d_x*d_y).sum()*inv_integral - peak_x*peak_y
    half_trace = 0.5*(sigma_xx + sigma_yy)
    root = np.sqrt((0.5*(sigma_xx - sigma_yy))**2 + sigma_xy**2)
    minor_sqr = half_trace - root
    if minor_sqr <= 0:  # Not a maximum
        return replace(sub_threshold, significance=0.0)
    major_sqr = half_trace + root

    # Rotate to radial and tangential direction, unless at the center
    cos_r, sin_r = aperture.cos_r, aperture.sin_r
    if aperture.at_center:
        sigma_r_sqr, sigma_t_sqr = minor_sqr, major_sqr
    else:
        sigma_r_sqr = (sigma_xx*cos_r**2 + sigma_yy*sin_r**2
                       + 2*sigma_xy*cos_r*sin_r)
        sigma_t_sqr = (sigma_yy*cos_r**2 + sigma_xx*sin_r**2
                       - 2*sigma_xy*cos_r*sin_r)
    if aperture.is_blurred and not aperture.at_center:
        # Scale down in tangential (blurred) direction
        scale = radius / aperture.radius_t
        mixed_rt = ((sigma_yy - sigma_xx)*cos_r*sin_r
                    + sigma_xy*(cos_r**2 - sin_r**2)) * scale
        sigma_t_sqr *= scale**2
        major_sqr = (0.5*(sigma_r_sqr + sigma_t_sqr)
                     + np.sqrt((0.5*(sigma_r_sqr - sigma_t_sqr))**2
                               + mixed_rt**2))
    sigma_r = np.sqrt(sigma_r_sqr)
    sigma_t = np.sqrt(sigma_t_sqr)

    with np.errstate(divide='ignore', invalid='ignore'):
        background = sum_b / sum_bw    # Close to zero, but not exactly
        background_sigma = np.sqrt(max(sum_b2/sum_bw - background**2, 0))
        background_sigma += 1e-100
        peak_height = integral / (2*np.pi*max(np.sqrt(minor_sqr*major_sqr),
                                               0.01*radius**2))
        height_significance = peak_height / background_sigma
        mean_significance = integral / (sum_pw*background_sigma)
        significance = np.sqrt(height_significance*mean_significance)
    significance = min(significance, MAX_SIGNIFICANCE)

    numerator, pole = _SIZE_CORRECTION.get(aperture.shape,
                                           _SIZE_CORRECTION['others'])
    size_ratio = np.sqrt(sigma_r*sigma_t) / radius
    with np.errstate(divide='ignore'):
        size_correction = 1 + numerator/(pole - size_ratio)**2

    max_major = radius * MAX_MAJOR_TO_RADIUS
    is_valid = (integral > 0
                and minor_sqr > 0
                and 0 < major_sqr < max_major**2
                and significance > NO_SIGNIFICANCE)
    has_position = significance >= min_significance
    return replace(
        sub_threshold,
        x=float(xs + peak_x) if has_position else _NAN,
        y=float(ys + peak_y) if has_position else _NAN,
        radial_size=float(sigma_r*size_correction),
        tangential_size=float(sigma_t*size_correction),
        significance=float(significance) if is_valid else 0.0,
        background=float(offset),
        background_sigma=float(background_sigma),
        )


def _fit_background_plane(delta_x, delta_y, values, weights):
    """Return offset and slopes of a weighted planar fit to `values`.

    Slopes are zero if they cannot be determined.
    """
    s_w = weights.sum()
    s_x = (weights*delta_x).sum()
    s_y = (weights*delta_y).sum()
    s_xx = (weights*delta_x*delta_x).sum()
    s_xy = (weights*delta_x*delta_y).sum()
    s_yy = (weights*delta_y*delta_y).sum()
    s_v = (weights*values).sum()
    s_xv = (weights*delta_x*values).sum()
    s_yv = (weights*delta_y*values).sum()
    with np.errstate(divide='ignore', invalid='ignore'):
        inv_denom = 1 / (s_w*(s_xy**2 - s_xx*s_yy) - 2*s_x*s_xy*s_y
                         + s_xx*s_y**2 + s_yy*s_x**2)
        x_slope = (s_w*(s_yv*s_xy - s_xv*s_yy) + s_v*(s_x*s_yy - s_xy*s_y)
                   + s_y*(s_xv*s_y - s_yv*s_x)) * inv_denom
        y_slope = (s_w*(s_xv*s_xy - s_yv*s_xx) + s_v*(s_y*s_xx - s_xy*s_x)
                   + s_x*(s_yv*s_x - s_xv*s_y)) * inv_denom
        offset = (s_v*(s_xy**2 - s_xx*s_yy) + s_xv*(s_x*s_yy - s_xy*s_y)
                  + s_yv*(s_xx*s_y - s_x*s_xy)) * inv_denom
    if np.isnan(x_slope):
        x_slope = 0.0
    if np.isnan(y_slope):
        y_slope = 0.0
    return offset, x_slope, y_slope
