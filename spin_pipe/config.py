"""
Configuration classes for mock observations and intrinsic profiles.

Every tunable of the pipeline lives in one of two dataclasses:

- ``ObservationConfig``: telescope, aperture, seeing, measurement ellipse and
  sky noise for ``find_lambda`` / ``build_datacube``
- ``ProfileConfig``: shell binning and analytic halo for ``sim_analysis``

``SpinConfig`` bundles both so a full run can be described by one YAML file:

.. code-block:: yaml

    observation:
      aperture_shape: hexagonal
      fov: 15
      inclination: 70
      psf: {kind: moffat, fwhm: 1.0}
      measurement: {mode: specified, a: 4.0, b: 2.0, fraction: 0.5}
      sky_noise: {threshold: 25}
    profile:
      bin_type: r
      rmax: 200
      rbin: 200
      dm_profile: {profile: hernquist, mass: 184.9, scale_radius: 34.5}

Invalid values raise ``ConfigurationError`` naming the offending parameter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np
import yaml

from .aperture import ApertureShape
from .cosmology import DEFAULT_MAGZERO, DEFAULT_SOLAR_ABS_MAG, wavelength_to_velocity
from .errors import ConfigurationError
from .images import FitEllipse, FixedEllipse, MeasurementMode, SpecifiedEllipse
from .noise import SkyNoiseConfig
from .particles import DEFAULT_MASS_TO_LIGHT, LUMINOUS_TYPES, ParticleType
from .profiles import BinType, DarkMatterProfile, HernquistProfile, NFWProfile
from .psf import FWHM_TO_SIGMA, PSFConfig

VSCALE_UNITS = ('angstrom', 'km/s')


def parse_psf(value) -> Optional[PSFConfig]:
    """PSF from None, a PSFConfig or ``{kind, fwhm}``."""
    if value is None or isinstance(value, PSFConfig):
        return value
    if isinstance(value, dict):
        _check_keys('psf', value, {'kind', 'fwhm'})
        if 'kind' not in value or 'fwhm' not in value:
            raise ConfigurationError('psf', "needs both 'kind' and 'fwhm'")
        return PSFConfig(kind=value['kind'], fwhm=value['fwhm'])
    raise ConfigurationError('psf', f"cannot interpret {value!r}")


def parse_sky_noise(value) -> Optional[SkyNoiseConfig]:
    """Sky noise from None/False (off), True (defaults) or a mapping."""
    if value is None or value is False:
        return None
    if value is True:
        return SkyNoiseConfig()
    if isinstance(value, SkyNoiseConfig):
        return value
    if isinstance(value, dict):
        _check_keys('sky_noise', value, {'threshold', 'magzero', 'seed'})
        return SkyNoiseConfig(**value)
    raise ConfigurationError('sky_noise', f"cannot interpret {value!r}")


_MEASUREMENT_MODES = {
    'fit': FitEllipse,
    'specified': SpecifiedEllipse,
    'fixed': FixedEllipse,
}


def parse_measurement(value) -> MeasurementMode:
    """
    Measurement mode from a mode instance or a mapping with a ``mode`` key.

    Examples
    --------
    >>> parse_measurement({'mode': 'fit', 'fac': 2.0})
    FitEllipse(fac=2.0)
    """
    if value is None:
        return FitEllipse()
    if isinstance(value, (FitEllipse, SpecifiedEllipse, FixedEllipse)):
        return value
    if isinstance(value, str):
        value = {'mode': value}
    if not isinstance(value, dict):
        raise ConfigurationError('measurement', f"cannot interpret {value!r}")

    options = dict(value)
    name = str(options.pop('mode', 'fit')).strip().lower()
    if name not in _MEASUREMENT_MODES:
        raise ConfigurationError(
            'measurement.mode',
            f"unknown mode {name!r}, expected one of {list(_MEASUREMENT_MODES)}",
        )
    mode_cls = _MEASUREMENT_MODES[name]
    try:
        return mode_cls(**options)
    except TypeError as err:
        raise ConfigurationError('measurement', f"{name} mode: {err}") from err


def parse_dm_profile(value, virial_radius: Optional[float] = None) -> Optional[DarkMatterProfile]:
    """
    Analytic halo from None, a DarkMatterProfile or a mapping.

    Mappings name the profile with ``profile`` ('hernquist' or 'nfw'); the
    other keys are the profile's constructor arguments. An NFW halo without a
    characteristic density or virial radius uses ``virial_radius``.
    """
    if value is None or isinstance(value, DarkMatterProfile):
        return value
    if not isinstance(value, dict):
        raise ConfigurationError('dm_profile', f"cannot interpret {value!r}")

    options = dict(value)
    name = str(options.pop('profile', '')).strip().lower()
    try:
        if name == 'hernquist':
            return HernquistProfile(**options)
        elif name == 'nfw':
            if 'characteristic_density' not in options:
                options.setdefault('virial_radius', virial_radius)
            return NFWProfile(**options)
    except TypeError as err:
        raise ConfigurationError('dm_profile', f"{name}: {err}") from err
    raise ConfigurationError(
        'dm_profile.profile', f"unknown profile {name!r}, expected 'hernquist' or 'nfw'"
    )


def parse_mass_to_light(value) -> Dict[ParticleType, float]:
    """Per-type ratios; types not named keep their default ratio."""
    parsed = dict(DEFAULT_MASS_TO_LIGHT)
    if value is None:
        return parsed
    for key, ratio in dict(value).items():
        if ratio is None:
            continue
        if not ratio > 0:
            raise ConfigurationError(
                f'mass_to_light.{key}', f"must be > 0, got {ratio}"
            )
        parsed[ParticleType.parse(key)] = float(ratio)
    return parsed


def parse_particle_types(value) -> Optional[Tuple[ParticleType, ...]]:
    if value is None:
        return None
    if isinstance(value, (str, int, ParticleType)):
        value = [value]
    types = tuple(sorted({ParticleType.parse(v) for v in value}))
    if not types:
        raise ConfigurationError('particle_types', "must name at least one type")
    return types


def _check_keys(section: str, mapping: Dict[str, Any], allowed) -> None:
    unknown = sorted(set(mapping) - set(allowed))
    if unknown:
        raise ConfigurationError(section, f"unrecognized keys {unknown}")


def _positive(name: str, value) -> None:
    if value is None or not np.isfinite(value) or not value > 0:
        raise ConfigurationError(name, f"must be a positive number, got {value}")


@dataclass
class ObservationConfig:
    """
    Settings of one mock IFU observation.

    Attributes
    ----------
    aperture_shape : str
        'circular', 'hexagonal' or 'square'.
    fov : float
        Field of view, arcsec.
    central_wavelength : float
        Rest wavelength of the observed line, Angstrom.
    lsf_fwhm : float
        Line-spread function FWHM, Angstrom. 0 disables broadening.
    pixel_sscale : float
        Spatial pixel size, arcsec.
    pixel_vscale : float
        Velocity pixel size, in ``vscale_unit``.
    vscale_unit : str
        'angstrom' or 'km/s'.
    inclination : float
        Degrees; 0 is face-on, 90 edge-on.
    redshift : float
        Must be > 0.
    r200 : float
        Virial radius, kpc. Recorded in image headers.
    threshold : float, optional
        Surface brightness limit, mag / arcsec^2. None keeps every pixel.
    magzero : float
        Magnitude zero point of the flux units.
    solar_abs_mag : float
        Absolute magnitude of the Sun in the observed band.
    psf : PSFConfig, optional
        Seeing; also accepts ``{kind, fwhm}``.
    measurement : FitEllipse, SpecifiedEllipse or FixedEllipse
        Measurement ellipse mode; also accepts ``{mode: ..., ...}``.
    sky_noise : SkyNoiseConfig, optional
        Sky noise; also accepts True or ``{threshold, magzero, seed}``.
    mass_to_light : dict
        Mass-to-light ratio per particle type for particles without a
        supplied luminosity. Types not named keep their default of 1.
    particle_types : tuple of ParticleType, optional
        Types to observe. Defaults to the luminous types.
    n_threads : int
        Worker threads for the cube deposit.

    Examples
    --------
    >>> config = ObservationConfig(
    ...     aperture_shape='hexagonal',
    ...     inclination=90,
    ...     psf={'kind': 'gaussian', 'fwhm': 1.0},
    ... )
    """

    aperture_shape: str = 'circular'
    fov: float = 15.0
    central_wavelength: float = 4800.0
    lsf_fwhm: float = 2.65
    pixel_sscale: float = 0.5
    pixel_vscale: float = 1.04
    vscale_unit: str = 'angstrom'
    inclination: float = 70.0
    redshift: float = 0.05
    r200: float = 200.0
    threshold: Optional[float] = 25.0
    magzero: float = DEFAULT_MAGZERO
    solar_abs_mag: float = DEFAULT_SOLAR_ABS_MAG
    psf: Optional[PSFConfig] = None
    measurement: MeasurementMode = field(default_factory=FitEllipse)
    sky_noise: Optional[SkyNoiseConfig] = None
    mass_to_light: Dict[ParticleType, float] = field(
        default_factory=lambda: dict(DEFAULT_MASS_TO_LIGHT)
    )
    particle_types: Optional[Tuple[ParticleType, ...]] = None
    n_threads: int = 1

    def __post_init__(self):
        self.aperture_shape = ApertureShape.parse(self.aperture_shape)
        for name in ('fov', 'central_wavelength', 'pixel_sscale', 'pixel_vscale',
                     'redshift', 'r200'):
            _positive(name, getattr(self, name))
        if self.pixel_sscale > self.fov:
            raise ConfigurationError(
                'pixel_sscale', f"pixel_sscale={self.pixel_sscale} exceeds fov={self.fov}"
            )
        if not np.isfinite(self.lsf_fwhm) or self.lsf_fwhm < 0:
            raise ConfigurationError('lsf_fwhm', f"must be >= 0, got {self.lsf_fwhm}")
        if not np.isfinite(self.inclination):
            raise ConfigurationError('inclination', f"must be finite, got {self.inclination}")
        self.vscale_unit = str(self.vscale_unit).strip().lower()
        if self.vscale_unit not in VSCALE_UNITS:
            raise ConfigurationError(
                'vscale_unit', f"must be one of {VSCALE_UNITS}, got {self.vscale_unit!r}"
            )
        if self.threshold is not None and not np.isfinite(self.threshold):
            raise ConfigurationError('threshold', f"must be finite, got {self.threshold}")
        if int(self.n_threads) < 1:
            raise ConfigurationError('n_threads', f"must be >= 1, got {self.n_threads}")
        self.n_threads = int(self.n_threads)

        self.psf = parse_psf(self.psf)
        self.measurement = parse_measurement(self.measurement)
        self.sky_noise = parse_sky_noise(self.sky_noise)
        self.mass_to_light = parse_mass_to_light(self.mass_to_light)
        self.particle_types = parse_particle_types(self.particle_types)

    @property
    def observed_types(self) -> Tuple[ParticleType, ...]:
        if self.particle_types is not None:
            return self.particle_types
        return tuple(sorted(LUMINOUS_TYPES))

    @property
    def velocity_scale(self) -> float:
        """Velocity bin width, km/s."""
        if self.vscale_unit == 'km/s':
            return float(self.pixel_vscale)
        return wavelength_to_velocity(
            self.pixel_vscale, self.central_wavelength, self.redshift
        )

    @property
    def lsf_sigma(self) -> float:
        """Gaussian sigma of the LSF, km/s."""
        fwhm = wavelength_to_velocity(self.lsf_fwhm, self.central_wavelength, self.redshift)
        return fwhm * FWHM_TO_SIGMA

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'ObservationConfig':
        _check_keys('observation', config_dict, cls.__dataclass_fields__)
        return cls(**config_dict)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'ObservationConfig':
        """
        Load an observation from a YAML file, either a bare mapping or one
        with an ``observation`` section.
        """
        config_dict = _load_yaml(path)
        if 'observation' in config_dict:
            config_dict = config_dict['observation']
        return cls.from_dict(config_dict)


@dataclass
class ProfileConfig:
    """
    Settings of an intrinsic kinematic profile.

    Attributes
    ----------
    bin_type : str
        'r' (spherical), 'cr' (cylindrical) or 'z' (planar).
    rmax : float
        Outer edge of the last shell, kpc.
    rbin : int
        Number of shells.
    dm_profile : DarkMatterProfile, optional
        Analytic halo; also accepts ``{profile: hernquist|nfw, ...}``.
    r200 : float
        Virial radius (kpc) used to normalize an NFW halo given without a
        characteristic density.
    particle_types : tuple of ParticleType, optional
        Types to include. Defaults to every type in the catalog.
    centre : bool
        Centre on the centre of mass before binning.
    n_threads : int
        Worker threads for the shell statistics.
    """

    bin_type: str = 'r'
    rmax: float = 200.0
    rbin: int = 200
    dm_profile: Optional[DarkMatterProfile] = None
    r200: float = 200.0
    particle_types: Optional[Tuple[ParticleType, ...]] = None
    centre: bool = True
    n_threads: int = 1

    def __post_init__(self):
        self.bin_type = BinType.parse(self.bin_type)
        _positive('rmax', self.rmax)
        _positive('r200', self.r200)
        if int(self.rbin) != self.rbin or self.rbin < 1:
            raise ConfigurationError('rbin', f"must be a positive integer, got {self.rbin}")
        self.rbin = int(self.rbin)
        if int(self.n_threads) < 1:
            raise ConfigurationError('n_threads', f"must be >= 1, got {self.n_threads}")
        self.n_threads = int(self.n_threads)
        self.dm_profile = parse_dm_profile(self.dm_profile, virial_radius=self.r200)
        self.particle_types = parse_particle_types(self.particle_types)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'ProfileConfig':
        _check_keys('profile', config_dict, cls.__dataclass_fields__)
        return cls(**config_dict)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'ProfileConfig':
        config_dict = _load_yaml(path)
        if 'profile' in config_dict:
            config_dict = config_dict['profile']
        return cls.from_dict(config_dict)


@dataclass
class SpinConfig:
    """
    Observation and profile settings of one analysis run.
    """

    observation: ObservationConfig = field(default_factory=ObservationConfig)
    profile: ProfileConfig = field(default_factory=ProfileConfig)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'SpinConfig':
        _check_keys('config', config_dict, {'observation', 'profile'})
        return cls(
            observation=ObservationConfig.from_dict(config_dict.get('observation') or {}),
            profile=ProfileConfig.from_dict(config_dict.get('profile') or {}),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'SpinConfig':
        """
        Load configuration from YAML file.

        Parameters
        ----------
        path : str or Path
            Path to YAML configuration file.

        Returns
        -------
        SpinConfig
        """
        return cls.from_dict(_load_yaml(path))


def _load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path, 'r') as f:
        config_dict = yaml.safe_load(f)
    if config_dict is None:
        return {}
    if not isinstance(config_dict, dict):
        raise ConfigurationError(str(path), "top level of a config file must be a mapping")
    return config_dict
