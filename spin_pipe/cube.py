"""
Build spatial x spatial x velocity data cubes from observed particles.

## Algorithm

1. Sky positions (kpc) are converted to arcsec at the aperture's redshift and
   assigned to pixels; particles outside the footprint are dropped.
2. Each particle's line-of-sight velocity is broadened by the instrument's
   line-spread function, a Gaussian with sigma = FWHM / 2.3548. Its flux is
   split across velocity bins in proportion to the integral of that Gaussian
   over each bin. The two outermost bins absorb the tails, so every
   particle's flux is deposited in full.
3. If a PSF is given, each velocity plane is convolved with the normalized
   kernel and re-masked to the footprint.
4. Pixels whose collapsed surface brightness is fainter than the magnitude
   threshold are masked and zeroed.
5. Optional sky noise is drawn per voxel and added to the unmasked pixels.

## Velocity Axis

Bins of width ``velocity_scale`` are centred on 0 km/s and extend to cover the
fastest deposited particle plus four LSF sigmas.

## Threads

The deposit (step 2) is a sum over particles. With ``n_threads > 1`` the
particles are split into contiguous chunks, each chunk fills its own partial
cube, and the partial cubes are summed. The result matches the serial path
to floating point round-off.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.special import ndtr

from .aperture import Aperture
from .cosmology import DEFAULT_MAGZERO, surface_brightness
from .geometry import ObservedParticles
from .noise import SkyNoiseConfig, add_sky_noise, sky_noise_sigma
from .psf import PSFConfig, convolve_cube, psf_kernel_for

logger = logging.getLogger(__name__)

# particles per deposit batch, bounds the (n, nv) weight matrix
DEPOSIT_CHUNK = 20000


@dataclass
class DataCube:
    """
    Mock IFU data cube.

    Attributes
    ----------
    data : np.ndarray
        Flux, shape (nx, ny, nv), non-negative.
    x_centers, y_centers : np.ndarray
        Spatial bin centres, arcsec.
    v_centers : np.ndarray
        Velocity bin centres, km/s.
    footprint : np.ndarray
        Boolean (nx, ny) aperture footprint.
    mask : np.ndarray
        Boolean (nx, ny) pixels used downstream: inside the footprint and not
        fainter than the threshold.
    pixel_scale : float
        arcsec / pixel.
    fov : float
        Aperture field of view, arcsec.
    kpc_per_pixel : float
    velocity_scale : float
        Velocity bin width, km/s.
    lsf_sigma : float
        LSF Gaussian sigma, km/s.
    axis_ratio : float
        b/a of the flux-weighted particle distribution on the sky.
    position_angle : float
        Major-axis angle (deg, from +x towards +y) of the same distribution.
    deposited_flux : float
        Total flux of the particles that landed inside the footprint, before
        PSF convolution and threshold masking.
    observed_flux : float
        Flux left in the cube after PSF convolution and threshold masking,
        before sky noise. Equals ``deposited_flux`` without a threshold or
        PSF.
    n_particles : int
        Number of particles that landed inside the footprint.
    """

    data: np.ndarray
    x_centers: np.ndarray
    y_centers: np.ndarray
    v_centers: np.ndarray
    footprint: np.ndarray
    mask: np.ndarray
    pixel_scale: float
    fov: float
    kpc_per_pixel: float
    velocity_scale: float
    lsf_sigma: float
    axis_ratio: float
    position_angle: float
    deposited_flux: float
    observed_flux: float
    n_particles: int
    psf: Optional[PSFConfig] = None
    sky_noise: Optional[SkyNoiseConfig] = None

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.data.shape


def velocity_bins(
    v_los: np.ndarray, velocity_scale: float, lsf_sigma: float
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Velocity bin centres and edges (km/s) covering ``v_los``.

    Returns
    -------
    centers : np.ndarray
        Shape (nv,), symmetric about 0.
    edges : np.ndarray
        Shape (nv + 1,).
    """
    if len(v_los) == 0:
        vmax = 0.0
    else:
        vmax = float(np.max(np.abs(v_los))) + 4.0 * lsf_sigma
    k = int(np.ceil(vmax / velocity_scale))
    steps = np.arange(-k, k + 1)
    centers = steps * velocity_scale
    edges = (np.arange(-k, k + 2) - 0.5) * velocity_scale
    return centers, edges


def line_profile_weights(
    v_los: np.ndarray, edges: np.ndarray, lsf_sigma: float
) -> np.ndarray:
    """
    Fraction of each particle's flux falling in each velocity bin.

    Parameters
    ----------
    v_los : np.ndarray
        Shape (n,), km/s.
    edges : np.ndarray
        Shape (nv + 1,), km/s.
    lsf_sigma : float
        Gaussian sigma of the line-spread function, km/s. Zero puts all the
        flux in the bin containing v_los.

    Returns
    -------
    weights : np.ndarray
        Shape (n, nv); each row sums to one.
    """
    v_los = np.asarray(v_los, dtype=np.float64)
    nv = len(edges) - 1
    inner = edges[1:-1]

    if lsf_sigma <= 0:
        idx = np.searchsorted(inner, v_los, side='right')
        weights = np.zeros((len(v_los), nv))
        weights[np.arange(len(v_los)), idx] = 1.0
        return weights

    cdf = ndtr((inner[None, :] - v_los[:, None]) / lsf_sigma)
    n = len(v_los)
    cdf = np.hstack([np.zeros((n, 1)), cdf, np.ones((n, 1))])
    return np.diff(cdf, axis=1)


def flux_axis_ratio(
    x: np.ndarray, y: np.ndarray, flux: np.ndarray
) -> Tuple[float, float]:
    """
    Axis ratio and position angle of a flux-weighted point distribution.

    Uses the eigenvalues of the 2D flux-weighted covariance matrix:
    b/a = sqrt(lambda_min / lambda_max).

    Returns
    -------
    axis_ratio : float
        In (0, 1]; 1 for a degenerate (empty or single point) distribution.
    position_angle : float
        Major axis angle in degrees, in [0, 180).
    """
    total = np.sum(flux)
    if len(x) < 2 or total <= 0:
        return 1.0, 0.0
    xm = np.sum(flux * x) / total
    ym = np.sum(flux * y) / total
    dx, dy = x - xm, y - ym
    cov = np.array([
        [np.sum(flux * dx * dx), np.sum(flux * dx * dy)],
        [np.sum(flux * dx * dy), np.sum(flux * dy * dy)],
    ]) / total
    evals, evecs = np.linalg.eigh(cov)
    if evals[1] <= 0:
        return 1.0, 0.0
    axis_ratio = float(np.sqrt(max(evals[0], 0.0) / evals[1]))
    major = evecs[:, 1]
    position_angle = float(np.degrees(np.arctan2(major[1], major[0])) % 180.0)
    return axis_ratio, position_angle


def _deposit(
    ix: np.ndarray,
    iy: np.ndarray,
    v_los: np.ndarray,
    flux: np.ndarray,
    edges: np.ndarray,
    lsf_sigma: float,
    shape: Tuple[int, int, int],
) -> np.ndarray:
    partial = np.zeros(shape)
    for start in range(0, len(flux), DEPOSIT_CHUNK):
        sl = slice(start, start + DEPOSIT_CHUNK)
        weights = line_profile_weights(v_los[sl], edges, lsf_sigma)
        # np.add.at handles repeated pixel indices
        np.add.at(partial, (ix[sl], iy[sl]), weights * flux[sl, None])
    return partial


def build_cube(
    observed: ObservedParticles,
    flux: np.ndarray,
    aperture: Aperture,
    velocity_scale: float,
    lsf_sigma: float,
    threshold: Optional[float] = None,
    magzero: float = DEFAULT_MAGZERO,
    psf: Optional[PSFConfig] = None,
    sky_noise: Optional[SkyNoiseConfig] = None,
    n_threads: int = 1,
) -> DataCube:
    """
    Bin observed particles into a data cube.

    Parameters
    ----------
    observed : ObservedParticles
        Particles in the observer frame (kpc, km/s).
    flux : np.ndarray
        Apparent flux of each particle, shape (n,).
    aperture : Aperture
        Spatial grid and footprint.
    velocity_scale : float
        Velocity bin width, km/s.
    lsf_sigma : float
        LSF Gaussian sigma, km/s.
    threshold : float, optional
        Surface-brightness limit (mag / arcsec^2). Fainter pixels are masked.
        None keeps every footprint pixel.
    magzero : float
        Zero point of the flux units.
    psf : PSFConfig, optional
        Seeing to convolve each velocity plane with.
    sky_noise : SkyNoiseConfig, optional
        Sky noise to add after convolution.
    n_threads : int, default=1
        Worker threads for the deposit.

    Returns
    -------
    DataCube
    """
    flux = np.asarray(flux, dtype=np.float64)
    if flux.shape != (len(observed),):
        raise ValueError(
            f"flux has shape {flux.shape}, expected ({len(observed)},)"
        )
    if np.any(flux < 0):
        raise ValueError("Particle fluxes must be non-negative")
    if not velocity_scale > 0:
        raise ValueError(f"velocity_scale must be > 0, got {velocity_scale}")
    if lsf_sigma < 0:
        raise ValueError(f"lsf_sigma must be >= 0, got {lsf_sigma}")
    n_threads = max(int(n_threads), 1)

    x_arcsec = aperture.kpc_to_arcsec(observed.x_obs)
    y_arcsec = aperture.kpc_to_arcsec(observed.y_obs)
    ix, iy, inside = aperture.pixel_index(x_arcsec, y_arcsec)
    keep = inside & (flux > 0)

    ix, iy = ix[keep], iy[keep]
    v_los = observed.v_los[keep]
    kept_flux = flux[keep]
    logger.debug(
        "%d of %d particles inside the %s aperture",
        keep.sum(), len(flux), aperture.shape.value,
    )

    axis_ratio, position_angle = flux_axis_ratio(
        x_arcsec[keep], y_arcsec[keep], kept_flux
    )

    v_centers, edges = velocity_bins(v_los, velocity_scale, lsf_sigma)
    n_pix = aperture.n_pix
    shape = (n_pix, n_pix, len(v_centers))

    if n_threads == 1 or len(kept_flux) < 2 * n_threads:
        data = _deposit(ix, iy, v_los, kept_flux, edges, lsf_sigma, shape)
    else:
        bounds = np.linspace(0, len(kept_flux), n_threads + 1).astype(int)
        with ThreadPoolExecutor(max_workers=n_threads) as pool:
            futures = [
                pool.submit(
                    _deposit,
                    ix[lo:hi], iy[lo:hi], v_los[lo:hi], kept_flux[lo:hi],
                    edges, lsf_sigma, shape,
                )
                for lo, hi in zip(bounds[:-1], bounds[1:])
            ]
            data = np.zeros(shape)
            for future in futures:
                data += future.result()

    footprint = aperture.footprint

    if psf is not None:
        kernel, padded_shape = psf_kernel_for(psf, (n_pix, n_pix), aperture.pixel_scale)
        data = convolve_cube(data, kernel, padded_shape)
        data[~footprint] = 0.0

    mask = footprint.copy()
    if threshold is not None:
        mu = surface_brightness(data.sum(axis=2), aperture.pixel_scale, magzero)
        mask &= mu <= threshold
        data[~mask] = 0.0
        logger.debug("%d pixels brighter than %.2f mag/arcsec^2", mask.sum(), threshold)

    observed_flux = float(data.sum())

    if sky_noise is not None:
        sigma = sky_noise_sigma(
            sky_noise.threshold, aperture.pixel_scale, len(v_centers), sky_noise.magzero
        )
        data = add_sky_noise(data, sigma, footprint=mask, seed=sky_noise.seed)

    centers = aperture.centers
    return DataCube(
        data=data,
        x_centers=centers.copy(),
        y_centers=centers.copy(),
        v_centers=v_centers,
        footprint=footprint,
        mask=mask,
        pixel_scale=aperture.pixel_scale,
        fov=aperture.fov,
        kpc_per_pixel=aperture.kpc_per_pixel,
        velocity_scale=velocity_scale,
        lsf_sigma=lsf_sigma,
        axis_ratio=axis_ratio,
        position_angle=position_angle,
        deposited_flux=float(kept_flux.sum()),
        observed_flux=observed_flux,
        n_particles=int(keep.sum()),
        psf=psf,
        sky_noise=sky_noise,
    )
