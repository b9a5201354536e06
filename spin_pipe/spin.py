"""
Observed spin statistics.

    lambda_R = sum(F R |V|) / sum(F R sqrt(V^2 + sigma^2))

summed over valid pixels whose centres fall inside the measurement ellipse,
with R the distance of the pixel centre from the ellipse centre. Since
sqrt(V^2 + sigma^2) >= |V| pixel by pixel, 0 <= lambda_R <= 1.

    V / sigma = sqrt(sum(F V^2) / sum(F sigma^2))

over the same pixels.
"""

import numpy as np

from .errors import SpinMeasurementError
from .images import MeasurementEllipse, ObservedImages


def _ellipse_pixels(images: ObservedImages, ellipse: MeasurementEllipse):
    inside = ellipse.pixel_mask(images)
    X, Y = images.pixel_grid()
    radius = np.hypot(X[inside], Y[inside])
    return (
        images.flux[inside],
        images.velocity[inside],
        images.dispersion[inside],
        radius,
    )


def lambda_r(images: ObservedImages, ellipse: MeasurementEllipse) -> float:
    """
    Observed spin parameter inside ``ellipse``.

    Raises
    ------
    SpinMeasurementError
        If no flux-weighted motion falls inside the ellipse (denominator 0).
    """
    flux, velocity, dispersion, radius = _ellipse_pixels(images, ellipse)
    weight = flux * radius
    denominator = np.sum(weight * np.hypot(velocity, dispersion))
    if not denominator > 0:
        raise SpinMeasurementError(
            f"lambda_R is undefined: {len(flux)} pixels inside the "
            f"{ellipse.mode} ellipse carry no flux-weighted motion"
        )
    return float(np.sum(weight * np.abs(velocity)) / denominator)


def v_over_sigma(images: ObservedImages, ellipse: MeasurementEllipse) -> float:
    """
    Flux-weighted V/sigma inside ``ellipse``.

    Returns ``inf`` if every dispersion is zero and some pixel moves.
    """
    flux, velocity, dispersion, _ = _ellipse_pixels(images, ellipse)
    num = np.sum(flux * velocity**2)
    den = np.sum(flux * dispersion**2)
    if den > 0:
        return float(np.sqrt(num / den))
    if num > 0:
        return float('inf')
    raise SpinMeasurementError(
        f"V/sigma is undefined: {len(flux)} pixels inside the "
        f"{ellipse.mode} ellipse carry no flux-weighted motion"
    )


def ellipticity(ellipse: MeasurementEllipse) -> float:
    """1 - b/a of the measurement ellipse."""
    return 1.0 - ellipse.axis_ratio
