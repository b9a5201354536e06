"""
Collapse data cubes into kinematic images and resolve measurement ellipses.

## Images

For every pixel, with cube values F_k at velocity bin centres v_k:

- flux:       F = sum_k F_k
- velocity:   V = sum_k F_k v_k / F
- dispersion: sigma = sqrt(sum_k F_k (v_k - V)^2 / F)

Velocity and dispersion are 0 where F = 0 or the pixel is masked.

## Measurement Ellipses

Ellipses are centred on the image centre. Coordinates are pixel units along
sky x and y, and the position angle is measured from +x towards +y.

Three modes:

- ``FitEllipse(fac)``: shape and angle from the second moments of the flux
  image, grown until it encloses half the flux (R_eff), then scaled by fac.
- ``SpecifiedEllipse(a, b, fraction, angle)``: shape b/a from the caller
  (kpc), grown until it encloses ``fraction`` of the flux.
- ``FixedEllipse(a, b, fac, angle)``: the caller's R_eff ellipse (kpc) scaled
  by fac, no growing.

Growth uses the flux fraction: valid pixels are sorted by elliptical radius
and the ellipse stops at the first pixel where the cumulative flux reaches
the target. The returned semi-major axis sits halfway between that pixel and
the next one out, so the same pixel set is recovered when the ellipse is fed
back in as a ``FixedEllipse``.
"""

import logging
import warnings
from dataclasses import dataclass, replace
from typing import Optional, Tuple, Union

import numpy as np

from .cube import DataCube
from .errors import ConfigurationError, MeasurementWarning, SpinMeasurementError

logger = logging.getLogger(__name__)

# variance of a uniform distribution across one pixel
INTRA_PIXEL_VARIANCE = 1.0 / 12.0


@dataclass
class ObservedImages:
    """
    Flux, velocity and dispersion maps of one observation, indexed [ix, iy].

    Velocities are km/s; ``x_centers``/``y_centers`` are arcsec.
    """

    flux: np.ndarray
    velocity: np.ndarray
    dispersion: np.ndarray
    mask: np.ndarray
    x_centers: np.ndarray
    y_centers: np.ndarray
    pixel_scale: float
    kpc_per_pixel: float
    fov: float

    @property
    def valid(self) -> np.ndarray:
        """Pixels that take part in measurements."""
        return self.mask & (self.flux > 0)

    @property
    def half_width_pix(self) -> float:
        """Aperture half-width in pixels."""
        return self.fov / 2.0 / self.pixel_scale

    def pixel_grid(self) -> Tuple[np.ndarray, np.ndarray]:
        """Pixel centre coordinates (X, Y) in pixel units, indexed [ix, iy]."""
        X, Y = np.meshgrid(self.x_centers, self.y_centers, indexing='ij')
        return X / self.pixel_scale, Y / self.pixel_scale


def reduce_cube(cube: DataCube) -> ObservedImages:
    """Collapse ``cube`` along its velocity axis."""
    data = cube.data
    v = cube.v_centers
    flux = data.sum(axis=2)

    lit = cube.mask & (flux > 0)
    safe_flux = np.where(lit, flux, 1.0)

    velocity = np.tensordot(data, v, axes=([2], [0])) / safe_flux
    velocity = np.where(lit, velocity, 0.0)

    dv = v[None, None, :] - velocity[:, :, None]
    variance = np.sum(data * dv**2, axis=2) / safe_flux
    dispersion = np.where(lit, np.sqrt(np.clip(variance, 0.0, None)), 0.0)

    return ObservedImages(
        flux=np.where(cube.mask, flux, 0.0),
        velocity=velocity,
        dispersion=dispersion,
        mask=cube.mask.copy(),
        x_centers=cube.x_centers,
        y_centers=cube.y_centers,
        pixel_scale=cube.pixel_scale,
        kpc_per_pixel=cube.kpc_per_pixel,
        fov=cube.fov,
    )


@dataclass(frozen=True)
class FitEllipse:
    """Fit shape and angle from the flux image and scale R_eff by ``fac``."""

    fac: float = 1.0

    def __post_init__(self):
        if not self.fac > 0:
            raise ConfigurationError('measurement.fac', f"must be > 0, got {self.fac}")


@dataclass(frozen=True)
class SpecifiedEllipse:
    """
    Caller-chosen shape grown to enclose ``fraction`` of the flux.

    ``a`` and ``b`` are in kpc and only their ratio matters. ``angle`` is the
    position angle in degrees; None uses the angle fitted from the image.
    """

    a: float
    b: float
    fraction: float = 0.5
    angle: Optional[float] = None

    def __post_init__(self):
        _check_axes(self.a, self.b)
        if not 0 < self.fraction <= 1:
            raise ConfigurationError(
                'measurement.fraction', f"must be in (0, 1], got {self.fraction}"
            )


@dataclass(frozen=True)
class FixedEllipse:
    """
    Caller's R_eff ellipse (semi-axes ``a``, ``b`` in kpc) scaled by ``fac``.
    """

    a: float
    b: float
    fac: float = 1.0
    angle: Optional[float] = None

    def __post_init__(self):
        _check_axes(self.a, self.b)
        if not self.fac > 0:
            raise ConfigurationError('measurement.fac', f"must be > 0, got {self.fac}")


MeasurementMode = Union[FitEllipse, SpecifiedEllipse, FixedEllipse]


def _check_axes(a: float, b: float) -> None:
    if not a > 0:
        raise ConfigurationError('measurement.a', f"must be > 0, got {a}")
    if not b > 0:
        raise ConfigurationError('measurement.b', f"must be > 0, got {b}")
    if b > a:
        raise ConfigurationError(
            'measurement.b', f"semi-minor axis {b} exceeds semi-major axis {a}"
        )


@dataclass(frozen=True)
class MeasurementEllipse:
    """
    Ellipse over which kinematic statistics are integrated.

    Attributes
    ----------
    a_kpc, b_kpc : float
        Semi-major and semi-minor axes in kpc.
    a_pix, b_pix : float
        The same in pixels.
    position_angle : float
        Degrees from +x towards +y.
    axis_ratio : float
        b / a.
    enclosed_fraction : float
        Fraction of the image flux inside the ellipse.
    mode : str
        'fit', 'specified' or 'fixed'.
    clipped : bool
        True if the semi-major axis extends past the aperture; statistics
        then cover only the part of the ellipse inside the footprint.
    notes : tuple of str
        Advisory messages raised while resolving the ellipse.
    """

    a_kpc: float
    b_kpc: float
    a_pix: float
    b_pix: float
    position_angle: float
    axis_ratio: float
    enclosed_fraction: float
    mode: str
    clipped: bool = False
    notes: Tuple[str, ...] = ()

    def contains(self, x_pix: np.ndarray, y_pix: np.ndarray) -> np.ndarray:
        """True for points (pixel units, image centre at 0) inside the ellipse."""
        xr, yr = _rotate(x_pix, y_pix, self.position_angle)
        return (xr / self.a_pix) ** 2 + (yr / self.b_pix) ** 2 <= 1.0

    def pixel_mask(self, images: ObservedImages) -> np.ndarray:
        """Valid pixels of ``images`` whose centres lie inside the ellipse."""
        X, Y = images.pixel_grid()
        return images.valid & self.contains(X, Y)


def _rotate(x, y, angle_deg):
    angle = np.radians(angle_deg)
    cos_a, sin_a = np.cos(angle), np.sin(angle)
    return x * cos_a + y * sin_a, -x * sin_a + y * cos_a


def image_moments(images: ObservedImages) -> Tuple[float, float]:
    """
    Axis ratio and position angle (deg) from the flux-weighted second moments.

    The covariance of pixel centres gets the intra-pixel variance added on
    the diagonal, so a source narrower than one pixel still has a finite
    minor axis.
    """
    valid = images.valid
    flux = images.flux[valid]
    total = flux.sum()
    if total <= 0:
        raise SpinMeasurementError("Cannot fit an ellipse to an image with no flux")

    X, Y = images.pixel_grid()
    x, y = X[valid], Y[valid]
    xm = np.sum(flux * x) / total
    ym = np.sum(flux * y) / total
    dx, dy = x - xm, y - ym
    cxx = np.sum(flux * dx * dx) / total + INTRA_PIXEL_VARIANCE
    cyy = np.sum(flux * dy * dy) / total + INTRA_PIXEL_VARIANCE
    cxy = np.sum(flux * dx * dy) / total

    evals, evecs = np.linalg.eigh(np.array([[cxx, cxy], [cxy, cyy]]))
    axis_ratio = float(np.sqrt(evals[0] / evals[1]))
    major = evecs[:, 1]
    position_angle = float(np.degrees(np.arctan2(major[1], major[0])) % 180.0)
    return axis_ratio, position_angle


def grow_ellipse(
    images: ObservedImages,
    axis_ratio: float,
    position_angle: float,
    fraction: float,
) -> float:
    """
    Semi-major axis (pixels) of the smallest ellipse of the given shape that
    encloses ``fraction`` of the image flux.
    """
    valid = images.valid
    flux = images.flux[valid]
    total = flux.sum()
    if total <= 0:
        raise SpinMeasurementError("Cannot grow an ellipse on an image with no flux")

    X, Y = images.pixel_grid()
    xr, yr = _rotate(X[valid], Y[valid], position_angle)
    radius = np.hypot(xr, yr / axis_ratio)

    order = np.argsort(radius, kind='stable')
    radius = radius[order]
    cumulative = np.cumsum(flux[order]) / total

    # guard against round-off in the last cumulative sum
    k = min(int(np.searchsorted(cumulative, fraction * (1 - 1e-12))), len(radius) - 1)
    # include every pixel tied at the stopping radius
    k = int(np.searchsorted(radius, radius[k] * (1 + 1e-9), side='right')) - 1
    if k + 1 < len(radius):
        return 0.5 * (radius[k] + radius[k + 1])
    return float(radius[k]) + 0.5


def resolve_ellipse(images: ObservedImages, mode: MeasurementMode) -> MeasurementEllipse:
    """
    Build the measurement ellipse for ``mode``.

    Raises
    ------
    ConfigurationError
        If ``mode`` is not one of the measurement mode types.
    SpinMeasurementError
        If the ellipse has to be fitted or grown on an image with no flux.
    """
    if isinstance(mode, FitEllipse):
        axis_ratio, position_angle = image_moments(images)
        a_pix = grow_ellipse(images, axis_ratio, position_angle, 0.5) * mode.fac
        name = 'fit'
    elif isinstance(mode, SpecifiedEllipse):
        axis_ratio = mode.b / mode.a
        position_angle = _mode_angle(images, mode.angle)
        a_pix = grow_ellipse(images, axis_ratio, position_angle, mode.fraction)
        name = 'specified'
    elif isinstance(mode, FixedEllipse):
        axis_ratio = mode.b / mode.a
        position_angle = _mode_angle(images, mode.angle)
        a_pix = mode.a / images.kpc_per_pixel * mode.fac
        name = 'fixed'
    else:
        raise ConfigurationError(
            'measurement', f"unknown measurement mode {type(mode).__name__}"
        )

    b_pix = a_pix * axis_ratio
    ellipse = MeasurementEllipse(
        a_kpc=a_pix * images.kpc_per_pixel,
        b_kpc=b_pix * images.kpc_per_pixel,
        a_pix=a_pix,
        b_pix=b_pix,
        position_angle=position_angle,
        axis_ratio=axis_ratio,
        enclosed_fraction=0.0,
        mode=name,
    )

    total = images.flux[images.valid].sum()
    inside = ellipse.pixel_mask(images)
    fraction = float(images.flux[inside].sum() / total) if total > 0 else 0.0

    clipped = a_pix > images.half_width_pix
    notes = ()
    if clipped:
        msg = (
            f"Measurement ellipse semi-major axis ({a_pix:.2f} pix) exceeds the "
            f"aperture half-width ({images.half_width_pix:.2f} pix); statistics "
            "use the part of the ellipse inside the footprint"
        )
        warnings.warn(msg, MeasurementWarning, stacklevel=2)
        notes = (msg,)

    logger.debug(
        "%s ellipse: a=%.2f pix, q=%.3f, PA=%.1f deg, fraction=%.3f",
        name, a_pix, axis_ratio, position_angle, fraction,
    )
    return replace(ellipse, enclosed_fraction=fraction, clipped=clipped, notes=notes)


def _mode_angle(images: ObservedImages, angle: Optional[float]) -> float:
    if angle is not None:
        return float(angle)
    return image_moments(images)[1]
