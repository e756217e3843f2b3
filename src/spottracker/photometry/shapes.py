"""Module shapes of spottracker.photometry.

Defines the geometry of the integration and background regions used
for aperture photometry of a spot, and the anti-aliased pixel weights
of these regions. Weights are one well inside a region, zero outside,
and drop linearly in a transition zone approximately one pixel wide.

The integration region is a circle of a given radius, except for
SpotShape.AZIMUTH_BLUR, where it is an ellipse elongated in the
direction tangential to the (0, 0) spot. The background region
surrounds the integration region and has the same area:
CIRCLE
    The outer border of the background is a circle with
    sqrt(2) times the integration radius.
OVAL
    The outer border is an ellipse with the integration radius
    as semiminor axis in radial direction, and twice as long in
    tangential direction.
AZIMUTH_BLUR
    The outer border is the circle of CIRCLE as long as the
    integration ellipse fits inside. For more elongated ellipses
    it is the integration ellipse stretched by sqrt(2) in radial
    direction.
Radial and tangential are undefined close to the center. Within one
integration radius from it, all shapes behave like CIRCLE.
"""

__authors__ = (
    'Michael Schmid',
    'Michele Riva (@michele-riva)',
    )
__copyright__ = 'Copyright (c) 2019-2025 ViPErLEED developers'
__created__ = '2025-02-10'
__license__ = 'GPLv3+'

from enum import Enum
import math

import numpy as np

from spottracker.lib.dataclass_utils import frozen

SQRT_2 = math.sqrt(2)


class SpotShape(Enum):
    """The shape of the integration and background regions."""

    CIRCLE = 'circle'
    OVAL = 'oval'
    AZIMUTH_BLUR = 'azimuth_blur'

    def __str__(self):
        return self.value

    @classmethod
    def from_name(cls, name):
        """Return a SpotShape from its name or value, case insensitive."""
        if isinstance(name, cls):
            return name
        try:
            return cls(name.lower())
        except ValueError:
            return cls[name.upper().replace(' ', '_')]


def circle_weight(dx, dy, radius):
    """Return weights of pixels (dx, dy) from the center of a circle."""
    r_sqr = np.asarray(dx)**2 + np.asarray(dy)**2
    with np.errstate(invalid='ignore'):
        transition = radius + 0.5 - np.sqrt(r_sqr)
    return np.where(r_sqr >= (radius + 0.5)**2, 0.0,
                    np.where(r_sqr <= (radius - 0.5)**2, 1.0, transition))


def oval_weight(dx, dy, cos_r, sin_r, radius):
    """Return weights of pixels (dx, dy) from the center of a 2:1 oval.

    Parameters
    ----------
    dx, dy : numpy.ndarray
        Pixel coordinates relative to the center of the oval.
    cos_r, sin_r : float
        Direction from the center of the screen to the oval.
    radius : float
        The semiminor axis, in radial direction. The semimajor
        axis (tangential) is twice as long.

    Returns
    -------
    weights : numpy.ndarray
    """
    x_p = sin_r*dx - cos_r*dy     # Tangential
    y_p = cos_r*dx + sin_r*dy     # Radial
    r_sqr = x_p**2 + 4*y_p**2
    outer = 2*radius + 0.5
    inner = 2*radius - 0.5
    # Make the transition zone one pixel wide everywhere
    corr = np.maximum(0.5*(1 - np.abs(x_p/outer)), 0)
    r_p = np.sqrt(r_sqr)
    weights = np.where(r_p >= outer + corr, 0.0,
                       np.where(r_p <= inner - corr, 1.0,
                                (outer + corr - r_p) / (1 + 2*corr)))
    weights = np.where(r_sqr < (2*radius - 1)**2, 1.0, weights)
    return np.where(r_sqr > (2*radius + 1)**2, 0.0, weights)


def ellipse_weight(dx, dy, cos_r, sin_r, inv_radius_r, inv_radius_t):
    """Return weights of pixels (dx, dy) from the center of an ellipse.

    The transition zone is approximately one pixel wide: 0.9 to 1
    pixels for an axis ratio of 3:1, 0.82 to 1 pixels for 4:1.

    Parameters
    ----------
    dx, dy : numpy.ndarray
        Pixel coordinates relative to the center of the ellipse.
    cos_r, sin_r : float
        Direction from the (0, 0) spot to the ellipse.
    inv_radius_r : float
        Inverse of the semiminor axis, in radial direction.
    inv_radius_t : float
        Inverse of the semimajor axis, in tangential direction.
        Must not be larger than `inv_radius_r`.

    Returns
    -------
    weights : numpy.ndarray
    """
    x_p = (sin_r*dx - cos_r*dy) * inv_radius_t
    y_p = (cos_r*dx + sin_r*dy) * inv_radius_r
    r_sqr = x_p**2 + y_p**2    # One at the border
    with np.errstate(divide='ignore', invalid='ignore'):
        x_p_norm_sqr = x_p**2 / r_sqr
    d_r = inv_radius_r * (1 - (1 - inv_radius_t/inv_radius_r)*x_p_norm_sqr)
    with np.errstate(divide='ignore', invalid='ignore'):
        transition = 0.5 + (1 - np.sqrt(r_sqr))/d_r
    weights = np.where(r_sqr >= (1 + 0.5*d_r)**2, 0.0,
                       np.where(r_sqr <= (1 - 0.5*d_r)**2, 1.0, transition))
    weights = np.where(r_sqr < 1 - inv_radius_r, 1.0, weights)
    return np.where(r_sqr > (1 + 0.5*inv_radius_r)**2, 0.0, weights)


@frozen
class Aperture:
    """Integration and background regions for one spot.

    Use Aperture.around to create instances. The shape-dependent
    weight functions are selected once, upon creation.

    Attributes
    ----------
    shape : SpotShape
        The shape actually used. CIRCLE close to the center.
    radius : float
        Radius of the integration region. For AZIMUTH_BLUR, the
        semiminor axis of the integration ellipse.
    at_center : bool
        Whether the spot is within one radius from the center.
    cos_r, sin_r : float
        Direction from the center to the spot.
    radius_t : float
        Semimajor axis of the integration ellipse. Equals `radius`
        for shapes other than AZIMUTH_BLUR.
    background_shape : SpotShape
        Shape of the outer border of the background region.
    half_width, half_height : float
        Half extent of the rectangle enclosing the regions.
    """

    shape: SpotShape
    radius: float
    at_center: bool
    cos_r: float
    sin_r: float
    radius_t: float
    background_shape: SpotShape
    half_width: float
    half_height: float

    @classmethod
    def around(cls, xs, ys, x0, y0, shape, radius, az_blur_radians=0.0):
        """Return the Aperture for a spot at (xs, ys).

        Parameters
        ----------
        xs, ys : float
            Position of the spot in pixels.
        x0, y0 : float
            The screen center or, for AZIMUTH_BLUR, the
            position of the (0, 0) spot.
        shape : SpotShape
            The requested shape.
        radius : float
            Radius of the integration region.
        az_blur_radians : float, optional
            Only for AZIMUTH_BLUR: in the limit of large distances
            from (x0, y0), the semimajor axis of the integration
            ellipse divided by the distance from (x0, y0).

        Returns
        -------
        aperture : Aperture
        """
        rho_x, rho_y = xs - x0, ys - y0
        rho = math.hypot(rho_x, rho_y)
        at_center = rho < radius
        if at_center:
            shape = SpotShape.CIRCLE
            cos_r, sin_r = 1.0, 0.0
        else:
            cos_r, sin_r = rho_x / rho, rho_y / rho
        bg_radius = radius * SQRT_2
        bg_shape = shape
        radius_t = radius
        if shape is SpotShape.AZIMUTH_BLUR:
            radius_t = math.sqrt(radius**2 + az_blur_radians**2 * rho**2)
            if radius_t < bg_radius:
                bg_shape = SpotShape.CIRCLE
            else:
                half_width = math.sqrt(2*(radius*cos_r)**2
                                       + (radius_t*sin_r)**2) + 0.5
                half_height = math.sqrt(2*(radius*sin_r)**2
                                        + (radius_t*cos_r)**2) + 0.5
        if bg_shape is SpotShape.CIRCLE:
            half_width = half_height = bg_radius + 0.5
        elif bg_shape is SpotShape.OVAL:
            half_width = radius*math.sqrt(cos_r**2 + 4*sin_r**2) + 0.5
            half_height = radius*math.sqrt(sin_r**2 + 4*cos_r**2) + 0.5
        return cls(shape=shape, radius=radius, at_center=at_center,
                   cos_r=cos_r, sin_r=sin_r, radius_t=radius_t,
                   background_shape=bg_shape, half_width=half_width,
                   half_height=half_height)

    @property
    def is_blurred(self):
        """Return whether the integration region is an ellipse."""
        return self.shape is SpotShape.AZIMUTH_BLUR

    def bounds(self, xs, ys, width, height):
        """Return the inclusive pixel limits of the regions around (xs, ys).

        Returns
        -------
        x_min, x_max, y_min, y_max : int
            Limited to the image size.
        """
        x_min = max(math.floor(xs - self.half_width), 0)
        y_min = max(math.floor(ys - self.half_height), 0)
        x_max = min(math.ceil(xs + self.half_width), width - 1)
        y_max = min(math.ceil(ys + self.half_height), height - 1)
        return x_min, x_max, y_min, y_max

    def total_weights(self, dx, dy):
        """Return weights of integration plus background region."""
        if self.background_shape is SpotShape.CIRCLE:
            return circle_weight(dx, dy, self.radius*SQRT_2)
        if self.shape is SpotShape.OVAL:
            return oval_weight(dx, dy, self.cos_r, self.sin_r, self.radius)
        return ellipse_weight(dx, dy, self.cos_r, self.sin_r,
                              1/(self.radius*SQRT_2), 1/self.radius_t)

    def peak_weights(self, dx, dy):
        """Return weights of the integration region."""
        if self.is_blurred:
            return ellipse_weight(dx, dy, self.cos_r, self.sin_r,
                                  1/self.radius, 1/self.radius_t)
        return circle_weight(dx, dy, self.radius)
