"""
Mock IFU observations and spin measurements of simulated galaxies.

Particle snapshots are projected onto an observer's sky, binned into
spatial x spatial x velocity data cubes, collapsed into flux, velocity and
dispersion images, and reduced to the observed spin parameter lambda_R.
Intrinsic kinematic profiles of the same particles are computed in
``profiles``.
"""

from .config import ObservationConfig, ProfileConfig, SpinConfig
from .errors import (
    ConfigurationError,
    MeasurementWarning,
    MissingParticleTypeWarning,
    SpinMeasurementError,
)
from .images import FitEllipse, FixedEllipse, SpecifiedEllipse
from .particles import ParticleCatalog, ParticleSet, ParticleType
from .pipeline import (
    KinematicResult,
    ObservedImage,
    build_datacube,
    find_lambda,
    sim_analysis,
)
from .profiles import HernquistProfile, NFWProfile
from .psf import PSFConfig
from .noise import SkyNoiseConfig

__all__ = [
    "ObservationConfig",
    "ProfileConfig",
    "SpinConfig",
    "ConfigurationError",
    "MeasurementWarning",
    "MissingParticleTypeWarning",
    "SpinMeasurementError",
    "FitEllipse",
    "FixedEllipse",
    "SpecifiedEllipse",
    "ParticleCatalog",
    "ParticleSet",
    "ParticleType",
    "KinematicResult",
    "ObservedImage",
    "build_datacube",
    "find_lambda",
    "sim_analysis",
    "HernquistProfile",
    "NFWProfile",
    "PSFConfig",
    "SkyNoiseConfig",
]
