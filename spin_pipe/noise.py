"""
Sky-noise generation for mock data cubes.

The sky is described by the surface-brightness limit of the observation: a
pixel whose collapsed flux equals the flux of a ``threshold`` mag/arcsec^2
source has signal-to-noise one. Noise is drawn independently for every
(x, y, v) voxel and added after PSF convolution.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .cosmology import DEFAULT_MAGZERO, threshold_flux
from .errors import ConfigurationError


@dataclass(frozen=True)
class SkyNoiseConfig:
    """
    Sky-noise settings. Passing one of these to an observation turns noise on.

    Parameters
    ----------
    threshold : float, default=25.0
        Surface brightness (mag / arcsec^2) at which a pixel has S/N = 1.
    magzero : float, default=8.9
        Magnitude zero point of the flux units.
    seed : int, optional
        Random seed for reproducibility.
    """

    threshold: float = 25.0
    magzero: float = DEFAULT_MAGZERO
    seed: Optional[int] = None

    def __post_init__(self):
        if not np.isfinite(self.threshold):
            raise ConfigurationError(
                'sky_noise.threshold', f"must be finite, got {self.threshold}"
            )


def sky_noise_sigma(
    threshold: float,
    pixel_scale: float,
    n_velocity: int,
    magzero: float = DEFAULT_MAGZERO,
) -> float:
    """
    Per-voxel Gaussian sigma for a cube with ``n_velocity`` planes.

    Independent noise in each plane adds in quadrature when the cube is
    collapsed, so each voxel gets ``F_sky / sqrt(n_velocity)``.

    Parameters
    ----------
    threshold : float
        Surface brightness limit, mag / arcsec^2.
    pixel_scale : float
        arcsec / pixel.
    n_velocity : int
        Number of velocity planes.
    magzero : float
        Zero point of the flux units.

    Returns
    -------
    sigma : float
        Noise standard deviation per voxel, in flux units.
    """
    if n_velocity < 1:
        raise ValueError(f"n_velocity must be >= 1, got {n_velocity}")
    return threshold_flux(threshold, pixel_scale, magzero) / np.sqrt(n_velocity)


def add_sky_noise(
    cube: np.ndarray,
    sigma: float,
    footprint: Optional[np.ndarray] = None,
    seed: Optional[int] = None,
) -> np.ndarray:
    """
    Add Gaussian sky noise to a cube.

    Parameters
    ----------
    cube : np.ndarray
        Shape (nx, ny, nv), non-negative flux.
    sigma : float
        Per-voxel noise standard deviation.
    footprint : np.ndarray, optional
        Boolean (nx, ny) map; voxels outside it stay zero.
    seed : int, optional
        Random seed for reproducibility.

    Returns
    -------
    noisy : np.ndarray
        Noisy cube, clipped at zero so that it remains a valid flux cube.

    Notes
    -----
    Clipping biases faint voxels upward: an empty voxel comes out with mean
    ``sigma / sqrt(2 pi)`` (about 0.4 sigma), so a collapsed pixel of
    ``n_v`` empty planes gains about ``0.4 * sigma * n_v`` of spurious flux.
    Bright voxels (flux well above sigma) are essentially unbiased.
    """
    rng = np.random.default_rng(seed)
    noisy = cube + rng.normal(0.0, sigma, cube.shape)
    noisy = np.clip(noisy, 0.0, None)
    if footprint is not None:
        noisy[~footprint] = 0.0
    return noisy
