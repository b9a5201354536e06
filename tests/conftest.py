"""
Pytest configuration and shared fixtures for spin_pipe tests.

This module provides:
- Warning suppression for expected test warnings
- Synthetic galaxies with analytically known kinematics
"""

import pytest
import warnings

import numpy as np
from galsim.errors import GalSimFFTSizeWarning

from spin_pipe.particles import ParticleCatalog, ParticleType


# ==============================================================================
# Warning Suppression Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def suppress_expected_warnings():
    """
    Suppress expected warnings during tests.

    Suppressed warnings:
    - GalSim FFT size warning (expected for large PSF stamps)
    """
    with warnings.catch_warnings():
        warnings.filterwarnings(
            "ignore",
            category=GalSimFFTSizeWarning,
        )

        yield


# ==============================================================================
# Slow Test Marker
# ==============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


# ==============================================================================
# Synthetic Galaxies
# ==============================================================================

# rigid rotation rate of the disc fixture, km/s/kpc
DISC_OMEGA = 20.0
DISC_RADIUS = 10.0
PARTICLE_MASS = 1e-4


def make_record(positions, velocities, mass=PARTICLE_MASS):
    """Loader-style record from (n, 3) arrays."""
    n = len(positions)
    return {
        'x': positions[:, 0],
        'y': positions[:, 1],
        'z': positions[:, 2],
        'vx': velocities[:, 0],
        'vy': velocities[:, 1],
        'vz': velocities[:, 2],
        'mass': np.full(n, mass),
    }


def rotating_disc(n=20000, radius=DISC_RADIUS, omega=DISC_OMEGA, thickness=0.1, seed=1):
    """
    Uniform-density disc in the x-y plane rotating rigidly about z.

    v = omega x r, so vx = -omega y and vy = omega x.
    """
    rng = np.random.default_rng(seed)
    r = radius * np.sqrt(rng.uniform(0, 1, n))
    phi = rng.uniform(0, 2 * np.pi, n)
    positions = np.column_stack([
        r * np.cos(phi),
        r * np.sin(phi),
        rng.normal(0, thickness, n),
    ])
    velocities = np.column_stack([
        -omega * positions[:, 1],
        omega * positions[:, 0],
        np.zeros(n),
    ])
    return positions, velocities


def isotropic_sphere(n=40000, scale=3.0, sigma_v=100.0, seed=2):
    """Gaussian ball with isotropic Gaussian velocities and no net rotation."""
    rng = np.random.default_rng(seed)
    positions = rng.normal(0, scale, (n, 3))
    velocities = rng.normal(0, sigma_v, (n, 3))
    return positions, velocities


@pytest.fixture(scope="module")
def disc_arrays():
    return rotating_disc()


@pytest.fixture(scope="module")
def disc_catalog(disc_arrays):
    positions, velocities = disc_arrays
    return ParticleCatalog.from_mapping({
        ParticleType.DISC: make_record(positions, velocities),
    })


@pytest.fixture(scope="module")
def sphere_catalog():
    positions, velocities = isotropic_sphere()
    return ParticleCatalog.from_mapping({
        'PartType4': make_record(positions, velocities),
    })


@pytest.fixture(scope="module")
def galaxy_with_halo():
    """Stellar sphere plus a more extended dark-matter halo."""
    stars_pos, stars_vel = isotropic_sphere(n=5000, scale=3.0, seed=3)
    halo_pos, halo_vel = isotropic_sphere(n=20000, scale=20.0, sigma_v=150.0, seed=4)
    return ParticleCatalog.from_mapping({
        'stars': make_record(stars_pos, stars_vel),
        'dm': make_record(halo_pos, halo_vel, mass=1e-3),
    })
