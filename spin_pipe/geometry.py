"""
Coordinate transforms for particle data.

## Coordinate Systems

**Simulation frame:**
- Origin: centre of mass (after ``center_particles``)
- Units: kpc, km/s
- The galaxy's disc is assumed to lie in the x-y plane

**Observer frame:**
- Obtained by rotating the simulation frame about the x axis by the
  inclination i (0 deg = face-on, 90 deg = edge-on)
- Sky plane: (x, y') with y' = y cos(i) - z sin(i)
- Line of sight: z' = y sin(i) + z cos(i)
- LOS velocity: v_LOS = vy sin(i) + vz cos(i)

**Kinematic frame:**
- Spherical polar (r, theta, phi) with theta measured from +z
- Cylindrical radius cr in the x-y plane
- Angular momentum J = m (r x v), units 1e10 Msun kpc km/s

## Zero-Radius Policy

Directions are undefined at the origin and on the z axis. Angles come from
arctan2 and are 0 there. Radial and polar velocities (vr, vtheta) are set to
0 where r = 0; azimuthal and cylindrical velocities (vphi, vcr) are set to 0
where cr = 0. J is exactly 0 at the origin.
"""

from dataclasses import dataclass, replace
from typing import Tuple

import numpy as np

from .particles import Particles


def center_of_mass(particles: Particles) -> Tuple[np.ndarray, np.ndarray]:
    """
    Mass-weighted mean position and velocity.

    Returns
    -------
    position : np.ndarray
        Shape (3,), kpc.
    velocity : np.ndarray
        Shape (3,), km/s.
    """
    weights = particles.masses
    if weights.sum() <= 0:
        # massless tracers: fall back to an unweighted mean
        weights = np.ones_like(weights)
    position = np.average(particles.positions, axis=0, weights=weights)
    velocity = np.average(particles.velocities, axis=0, weights=weights)
    return position, velocity


def center_particles(particles: Particles) -> Particles:
    """
    Shift particles so the centre of mass is at rest at the origin.

    Returns a new record; the input is not modified. Applying this twice is a
    no-op up to floating point error.
    """
    position, velocity = center_of_mass(particles)
    return replace(
        particles,
        positions=particles.positions - position,
        velocities=particles.velocities - velocity,
    )


def inclination_matrix(inclination_deg: float) -> np.ndarray:
    """
    Rotation about the x axis taking the simulation frame to the observer.

    R_x(i) = [[1, 0, 0], [0, cos i, -sin i], [0, sin i, cos i]]
    """
    angle = np.radians(inclination_deg)
    cos_angle = np.cos(angle)
    sin_angle = np.sin(angle)
    return np.array([
        [1.0, 0.0, 0.0],
        [0.0, cos_angle, -sin_angle],
        [0.0, sin_angle, cos_angle],
    ])


@dataclass(frozen=True)
class ObservedParticles:
    """
    Particles projected onto an observer's sky at a given inclination.

    Attributes
    ----------
    x_obs, y_obs : np.ndarray
        Sky-plane coordinates, kpc.
    z_los : np.ndarray
        Depth along the line of sight, kpc.
    r_obs : np.ndarray
        Projected radius sqrt(x_obs^2 + y_obs^2), kpc.
    v_los : np.ndarray
        Line-of-sight velocity, km/s.
    inclination_deg : float
    """

    x_obs: np.ndarray
    y_obs: np.ndarray
    z_los: np.ndarray
    r_obs: np.ndarray
    v_los: np.ndarray
    inclination_deg: float

    def __len__(self) -> int:
        return len(self.x_obs)


def observe(particles: Particles, inclination_deg: float) -> ObservedParticles:
    """
    Project particles into the observer frame at ``inclination_deg``.

    The rotated LOS axis is z' so the LOS velocity is the z-component of the
    rotated velocity, i.e. vy sin(i) + vz cos(i).
    """
    R = inclination_matrix(inclination_deg)
    coords = particles.positions @ R.T
    velocities = particles.velocities @ R.T

    x_obs = coords[:, 0]
    y_obs = coords[:, 1]
    return ObservedParticles(
        x_obs=x_obs,
        y_obs=y_obs,
        z_los=coords[:, 2],
        r_obs=np.hypot(x_obs, y_obs),
        v_los=velocities[:, 2],
        inclination_deg=float(inclination_deg),
    )


@dataclass(frozen=True)
class KinematicParticles:
    """
    Particles with spherical/cylindrical coordinates and angular momentum.

    Angles are in radians, lengths in kpc, velocities in km/s.
    """

    particles: Particles
    r: np.ndarray
    theta: np.ndarray
    phi: np.ndarray
    vr: np.ndarray
    vtheta: np.ndarray
    vphi: np.ndarray
    cr: np.ndarray
    vcr: np.ndarray
    Jx: np.ndarray
    Jy: np.ndarray
    Jz: np.ndarray

    def __len__(self) -> int:
        return len(self.r)

    @property
    def z(self) -> np.ndarray:
        return self.particles.positions[:, 2]

    @property
    def masses(self) -> np.ndarray:
        return self.particles.masses


def kinematic_coordinates(particles: Particles, centre: bool = True) -> KinematicParticles:
    """
    Spherical and cylindrical coordinates, velocities and angular momentum.

    Parameters
    ----------
    particles : Particles
    centre : bool, default=True
        Centre on the centre of mass first.
    """
    if centre:
        particles = center_particles(particles)

    x, y, z = particles.positions.T
    vx, vy, vz = particles.velocities.T

    cr = np.hypot(x, y)
    r = np.hypot(cr, z)
    theta = np.arctan2(cr, z)
    phi = np.arctan2(y, x)

    sin_t, cos_t = np.sin(theta), np.cos(theta)
    sin_p, cos_p = np.sin(phi), np.cos(phi)

    on_origin = r == 0
    on_axis = cr == 0

    vr = sin_t * cos_p * vx + sin_t * sin_p * vy + cos_t * vz
    vtheta = cos_t * cos_p * vx + cos_t * sin_p * vy - sin_t * vz
    vphi = -sin_p * vx + cos_p * vy
    vcr = cos_p * vx + sin_p * vy

    vr = np.where(on_origin, 0.0, vr)
    vtheta = np.where(on_origin, 0.0, vtheta)
    vphi = np.where(on_axis, 0.0, vphi)
    vcr = np.where(on_axis, 0.0, vcr)

    J = particles.masses[:, None] * np.cross(particles.positions, particles.velocities)

    return KinematicParticles(
        particles=particles,
        r=r,
        theta=theta,
        phi=phi,
        vr=vr,
        vtheta=vtheta,
        vphi=vphi,
        cr=cr,
        vcr=vcr,
        Jx=J[:, 0],
        Jy=J[:, 1],
        Jz=J[:, 2],
    )
