"""
End-to-end entry points.

- ``build_datacube``: catalog -> mock IFU cube
- ``find_lambda``: catalog -> cube -> images -> ellipse -> lambda_R
- ``sim_analysis``: catalog -> intrinsic radial profile

Image products are handed to FITS writers as ``ObservedImage`` objects: a 2D
array plus an ``astropy.io.fits.Header`` describing the observation.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from astropy.io import fits

from .aperture import Aperture
from .config import ObservationConfig, ProfileConfig
from .cosmology import luminosity_to_flux
from .cube import DataCube, build_cube
from .geometry import ObservedParticles, center_particles, observe
from .images import MeasurementEllipse, ObservedImages, reduce_cube, resolve_ellipse
from .noise import SkyNoiseConfig
from .particles import ParticleCatalog, merge_particles
from .profiles import RadialProfile, radial_profile
from .spin import ellipticity, lambda_r, v_over_sigma

logger = logging.getLogger(__name__)


@dataclass
class ObservedImage:
    """
    One 2D image product ready for serialization.

    Parameters
    ----------
    data : np.ndarray
        Image indexed [ix, iy].
    kind : str
        'flux', 'velocity' or 'dispersion'.
    pixel_scale : float
        arcsec / pixel.
    redshift : float
    central_wavelength : float
        Angstrom.
    r200 : float, optional
        Virial radius, kpc.
    name : str, optional
        Observation name.
    sky_noise : SkyNoiseConfig, optional
        Sky noise applied to the cube, if any.
    metadata : dict
        Extra header cards from the caller, e.g. disc, bulge and halo scale
        lengths. Keys longer than 8 characters become HIERARCH cards.
    """

    data: np.ndarray
    kind: str
    pixel_scale: float
    redshift: float
    central_wavelength: float
    r200: Optional[float] = None
    name: Optional[str] = None
    sky_noise: Optional[SkyNoiseConfig] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    _UNITS = {'flux': 'flux', 'velocity': 'km/s', 'dispersion': 'km/s'}

    def header(self) -> fits.Header:
        header = fits.Header()
        header['IMGTYPE'] = (self.kind, 'Image product')
        header['BUNIT'] = (self._UNITS.get(self.kind, ''), 'Pixel units')
        header['PIXSCALE'] = (self.pixel_scale, 'Spatial pixel scale, arcsec')
        header['REDSHIFT'] = (self.redshift, 'Redshift of the galaxy')
        header['WAVELEN'] = (self.central_wavelength, 'Central wavelength, angstrom')
        if self.r200 is not None:
            header['R200'] = (self.r200, 'Virial radius, kpc')
        if self.name is not None:
            header['OBSNAME'] = (self.name, 'Observation name')
        header['SKYNOISE'] = (self.sky_noise is not None, 'Sky noise added')
        if self.sky_noise is not None:
            header['SKYTHRSH'] = (
                self.sky_noise.threshold, 'Sky surface brightness limit, mag/arcsec^2'
            )
            header['MAGZERO'] = (self.sky_noise.magzero, 'Magnitude zero point')
        for key, value in self.metadata.items():
            header[str(key).upper()] = value
        return header

    def to_hdu(self) -> fits.ImageHDU:
        # FITS stores the first numpy axis as y
        return fits.ImageHDU(data=self.data.T, header=self.header())


@dataclass
class KinematicResult:
    """
    Outcome of ``find_lambda``.

    ``advisories`` lists the non-fatal conditions met along the way (absent
    particle types, a measurement ellipse larger than the aperture); each was
    also emitted as a warning.
    """

    lambda_r: float
    v_over_sigma: float
    ellipticity: float
    ellipse: MeasurementEllipse
    images: ObservedImages
    cube: DataCube
    config: ObservationConfig
    name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    advisories: List[str] = field(default_factory=list)

    def to_images(self) -> Dict[str, ObservedImage]:
        """Flux, velocity and dispersion images with headers."""
        config = self.config
        products = {}
        for kind in ('flux', 'velocity', 'dispersion'):
            products[kind] = ObservedImage(
                data=getattr(self.images, kind),
                kind=kind,
                pixel_scale=config.pixel_sscale,
                redshift=config.redshift,
                central_wavelength=config.central_wavelength,
                r200=config.r200,
                name=self.name,
                sky_noise=config.sky_noise,
                metadata=dict(self.metadata),
            )
        return products


def observe_catalog(
    catalog: ParticleCatalog, config: ObservationConfig
) -> Tuple[ObservedParticles, np.ndarray, List[str]]:
    """
    Select, centre and project the observed particles and compute their flux.

    Without explicit ``particle_types`` every luminous type present in the
    catalog is observed; explicitly requested types that are absent are
    reported as advisories.

    Returns
    -------
    observed : ObservedParticles
    flux : np.ndarray
        Apparent flux per particle.
    advisories : list of str
    """
    types = config.observed_types
    if config.particle_types is None:
        types = [t for t in types if t in catalog]
    groups, advisories = catalog.select(types)
    particles = merge_particles(
        groups, config.central_wavelength, config.mass_to_light
    )
    particles = center_particles(particles)
    observed = observe(particles, config.inclination)
    flux = luminosity_to_flux(
        particles.luminosity,
        config.redshift,
        magzero=config.magzero,
        solar_abs_mag=config.solar_abs_mag,
    )
    return observed, flux, advisories


def _build(catalog, config):
    observed, flux, advisories = observe_catalog(catalog, config)
    aperture = Aperture(
        shape=config.aperture_shape,
        fov=config.fov,
        pixel_scale=config.pixel_sscale,
        redshift=config.redshift,
    )
    logger.info(
        "Observing %d particles: %s aperture, %d x %d pixels, i=%.1f deg, z=%.3f",
        len(observed), aperture.shape.value, aperture.n_pix, aperture.n_pix,
        config.inclination, config.redshift,
    )
    cube = build_cube(
        observed,
        flux,
        aperture,
        velocity_scale=config.velocity_scale,
        lsf_sigma=config.lsf_sigma,
        threshold=config.threshold,
        magzero=config.magzero,
        psf=config.psf,
        sky_noise=config.sky_noise,
        n_threads=config.n_threads,
    )
    return cube, advisories


def build_datacube(
    catalog: ParticleCatalog, config: Optional[ObservationConfig] = None
) -> DataCube:
    """Mock IFU data cube of ``catalog`` observed with ``config``."""
    if config is None:
        config = ObservationConfig()
    cube, _ = _build(catalog, config)
    return cube


def find_lambda(
    catalog: ParticleCatalog,
    config: Optional[ObservationConfig] = None,
    name: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> KinematicResult:
    """
    Observe ``catalog`` and measure lambda_R.

    Parameters
    ----------
    catalog : ParticleCatalog
    config : ObservationConfig, optional
        Defaults to ``ObservationConfig()``.
    name : str, optional
        Observation name recorded in image headers.
    metadata : dict, optional
        Extra header cards for the image products.

    Raises
    ------
    ConfigurationError
        If the configuration or catalog is invalid.
    SpinMeasurementError
        If no flux falls inside the measurement ellipse.
    """
    if config is None:
        config = ObservationConfig()
    cube, advisories = _build(catalog, config)
    images = reduce_cube(cube)
    ellipse = resolve_ellipse(images, config.measurement)
    advisories = advisories + list(ellipse.notes)

    result = KinematicResult(
        lambda_r=lambda_r(images, ellipse),
        v_over_sigma=v_over_sigma(images, ellipse),
        ellipticity=ellipticity(ellipse),
        ellipse=ellipse,
        images=images,
        cube=cube,
        config=config,
        name=name,
        metadata=dict(metadata or {}),
        advisories=advisories,
    )
    logger.info(
        "lambda_R = %.3f, V/sigma = %.3f, ellipticity = %.3f (%s ellipse, a = %.2f kpc)",
        result.lambda_r, result.v_over_sigma, result.ellipticity,
        ellipse.mode, ellipse.a_kpc,
    )
    return result


def sim_analysis(
    catalog: ParticleCatalog, config: Optional[ProfileConfig] = None
) -> RadialProfile:
    """
    Intrinsic kinematic profile of ``catalog``.

    Raises
    ------
    ConfigurationError
        If the selected particles contain no dark matter and ``config`` has
        no analytic dark-matter profile.
    """
    if config is None:
        config = ProfileConfig()
    particles = catalog.merge(config.particle_types, luminous=False)
    return radial_profile(
        particles,
        bin_type=config.bin_type,
        rmax=config.rmax,
        rbin=config.rbin,
        dm_profile=config.dm_profile,
        centre=config.centre,
        n_threads=config.n_threads,
    )
