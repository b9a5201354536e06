"""
Distance, angular-scale and photometric conversions.

Every spatial scale in a mock observation depends on redshift: the same galaxy
placed at a different z covers a different number of pixels. Conversions go
through astropy's cosmology so that angular diameter and luminosity distances
are consistent.

## Flux Units

Particle light is carried as an apparent flux ``F`` on the magnitude scale
defined by a zero point ``magzero``:

    m = magzero - 2.5 log10(F)

With the default ``magzero = 8.9`` (AB) F is in Jy. A particle of luminosity
L (Lsun) at redshift z has ``m = M_sun - 2.5 log10(L) + DM(z)``.
"""

from typing import Optional

import numpy as np
from astropy import constants as const
from astropy import units as u
from astropy.cosmology import FlatLambdaCDM

from .errors import ConfigurationError

# Flat LCDM with H0 = 70, Om0 = 0.3
DEFAULT_COSMOLOGY = FlatLambdaCDM(
    H0=70.0 * u.km / u.s / u.Mpc, Om0=0.3, Tcmb0=2.725 * u.K
)

SPEED_OF_LIGHT_KMS = const.c.to(u.km / u.s).value

# G in kpc (km/s)^2 per 1e10 Msun
GRAV_CONST = (const.G * 1e10 * u.Msun / u.kpc).to(u.km**2 / u.s**2).value

DEFAULT_MAGZERO = 8.9
DEFAULT_SOLAR_ABS_MAG = 4.83


def _check_redshift(redshift: float) -> None:
    if not np.isfinite(redshift) or redshift <= 0:
        raise ConfigurationError('redshift', f"must be > 0, got {redshift}")


def arcsec_per_kpc(redshift: float, cosmology=None) -> float:
    """Proper angular scale at ``redshift`` in arcsec per kpc."""
    _check_redshift(redshift)
    cosmology = cosmology if cosmology is not None else DEFAULT_COSMOLOGY
    return cosmology.arcsec_per_kpc_proper(redshift).to(u.arcsec / u.kpc).value


def kpc_to_arcsec(coords_kpc: np.ndarray, redshift: float, cosmology=None) -> np.ndarray:
    """
    Convert physical offsets (kpc) to angular offsets (arcsec).

    theta = d_phys / D_A(z), evaluated through ``arcsec_per_kpc_proper``.
    """
    return np.asarray(coords_kpc) * arcsec_per_kpc(redshift, cosmology)


def distance_modulus(redshift: float, cosmology=None) -> float:
    """5 log10(D_L / 10 pc) at ``redshift``."""
    _check_redshift(redshift)
    cosmology = cosmology if cosmology is not None else DEFAULT_COSMOLOGY
    return cosmology.distmod(redshift).value


def luminosity_to_flux(
    luminosity: np.ndarray,
    redshift: float,
    magzero: float = DEFAULT_MAGZERO,
    solar_abs_mag: float = DEFAULT_SOLAR_ABS_MAG,
    cosmology=None,
) -> np.ndarray:
    """
    Apparent flux of sources with ``luminosity`` (Lsun) at ``redshift``.

    The flux is linear in luminosity, so summing fluxes of particles is the
    same as summing their light.
    """
    dm = distance_modulus(redshift, cosmology)
    scale = 10 ** (-0.4 * (solar_abs_mag + dm - magzero))
    return np.asarray(luminosity, dtype=np.float64) * scale


def surface_brightness(
    flux: np.ndarray, pixel_scale: float, magzero: float = DEFAULT_MAGZERO
) -> np.ndarray:
    """
    Surface brightness (mag / arcsec^2) of pixels holding ``flux``.

    Pixels without flux are infinitely faint (``+inf``).
    """
    flux = np.asarray(flux, dtype=np.float64)
    area = pixel_scale**2
    mu = np.full(flux.shape, np.inf)
    lit = flux > 0
    mu[lit] = magzero - 2.5 * np.log10(flux[lit] / area)
    return mu


def threshold_flux(
    threshold: float, pixel_scale: float, magzero: float = DEFAULT_MAGZERO
) -> float:
    """Flux of one pixel at surface brightness ``threshold`` mag / arcsec^2."""
    return 10 ** (-0.4 * (threshold - magzero)) * pixel_scale**2


def wavelength_to_velocity(
    delta_wavelength: float,
    central_wavelength: float,
    redshift: Optional[float] = None,
) -> float:
    """
    Velocity width (km/s) of a wavelength interval (Angstrom).

    If ``redshift`` is given, ``central_wavelength`` is the rest-frame line
    and the interval is measured at the observed wavelength
    ``central_wavelength * (1 + z)``.
    """
    observed = central_wavelength * (1.0 + redshift) if redshift else central_wavelength
    return delta_wavelength / observed * SPEED_OF_LIGHT_KMS
