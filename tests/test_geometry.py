"""
Tests for centring, the observer projection and kinematic coordinates.
"""

import pytest
import numpy as np

from spin_pipe.geometry import (
    center_of_mass,
    center_particles,
    inclination_matrix,
    kinematic_coordinates,
    observe,
)
from spin_pipe.particles import Particles, ParticleType


def _particles(positions, velocities, masses=None):
    positions = np.atleast_2d(np.asarray(positions, dtype=float))
    velocities = np.atleast_2d(np.asarray(velocities, dtype=float))
    n = len(positions)
    if masses is None:
        masses = np.ones(n)
    return Particles(
        positions=positions,
        velocities=velocities,
        masses=np.asarray(masses, dtype=float),
        ids=np.arange(n),
        ptypes=np.full(n, int(ParticleType.STARS)),
    )


@pytest.fixture
def random_particles():
    rng = np.random.default_rng(42)
    return _particles(
        rng.normal(5.0, 2.0, (500, 3)),
        rng.normal(-30.0, 50.0, (500, 3)),
        rng.uniform(0.5, 2.0, 500),
    )


class TestCentring:

    def test_centre_of_mass_weighted(self):
        p = _particles([[0, 0, 0], [3, 0, 0]], [[0, 0, 0], [0, 3, 0]], [2.0, 1.0])
        position, velocity = center_of_mass(p)
        np.testing.assert_allclose(position, [1.0, 0.0, 0.0])
        np.testing.assert_allclose(velocity, [0.0, 1.0, 0.0])

    def test_centred_mean_is_zero(self, random_particles):
        centred = center_particles(random_particles)
        position, velocity = center_of_mass(centred)
        np.testing.assert_allclose(position, 0.0, atol=1e-12)
        np.testing.assert_allclose(velocity, 0.0, atol=1e-10)

    def test_idempotent(self, random_particles):
        once = center_particles(random_particles)
        twice = center_particles(once)
        np.testing.assert_allclose(twice.positions, once.positions, atol=1e-12)
        np.testing.assert_allclose(twice.velocities, once.velocities, atol=1e-10)

    def test_does_not_mutate(self, random_particles):
        before = random_particles.positions.copy()
        center_particles(random_particles)
        np.testing.assert_array_equal(random_particles.positions, before)

    def test_massless_falls_back_to_mean(self):
        p = _particles([[0, 0, 0], [2, 0, 0]], [[0, 0, 0], [0, 0, 0]], [0.0, 0.0])
        position, _ = center_of_mass(p)
        np.testing.assert_allclose(position, [1.0, 0.0, 0.0])


class TestObserve:

    def test_rotation_is_orthogonal(self):
        R = inclination_matrix(37.0)
        np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-14)

    def test_face_on(self, random_particles):
        obs = observe(random_particles, 0.0)
        np.testing.assert_allclose(obs.x_obs, random_particles.positions[:, 0])
        np.testing.assert_allclose(obs.y_obs, random_particles.positions[:, 1])
        np.testing.assert_allclose(obs.z_los, random_particles.positions[:, 2])
        np.testing.assert_allclose(obs.v_los, random_particles.velocities[:, 2])

    def test_edge_on(self, random_particles):
        obs = observe(random_particles, 90.0)
        pos, vel = random_particles.positions, random_particles.velocities
        np.testing.assert_allclose(obs.y_obs, -pos[:, 2], atol=1e-12)
        np.testing.assert_allclose(obs.z_los, pos[:, 1], atol=1e-12)
        np.testing.assert_allclose(obs.v_los, vel[:, 1], atol=1e-12)

    @pytest.mark.parametrize("inclination", [15.0, 45.0, 70.0])
    def test_general_inclination(self, random_particles, inclination):
        obs = observe(random_particles, inclination)
        i = np.radians(inclination)
        x, y, z = random_particles.positions.T
        _, vy, vz = random_particles.velocities.T
        np.testing.assert_allclose(obs.y_obs, np.cos(i) * y - np.sin(i) * z)
        np.testing.assert_allclose(obs.z_los, np.sin(i) * y + np.cos(i) * z)
        np.testing.assert_allclose(obs.v_los, np.sin(i) * vy + np.cos(i) * vz)
        np.testing.assert_allclose(obs.r_obs, np.hypot(x, obs.y_obs))

    def test_does_not_mutate(self, random_particles):
        before = random_particles.positions.copy()
        observe(random_particles, 60.0)
        np.testing.assert_array_equal(random_particles.positions, before)


class TestKinematicCoordinates:

    def test_circular_orbit(self):
        p = _particles([[2.0, 0, 0]], [[0, 5.0, 0]], [3.0])
        kin = kinematic_coordinates(p, centre=False)
        np.testing.assert_allclose(kin.r, 2.0)
        np.testing.assert_allclose(kin.cr, 2.0)
        np.testing.assert_allclose(kin.theta, np.pi / 2)
        np.testing.assert_allclose(kin.vphi, 5.0)
        np.testing.assert_allclose(kin.vr, 0.0, atol=1e-12)
        np.testing.assert_allclose(kin.vcr, 0.0, atol=1e-12)
        np.testing.assert_allclose(kin.Jz, 3.0 * 2.0 * 5.0)
        np.testing.assert_allclose([kin.Jx[0], kin.Jy[0]], 0.0, atol=1e-12)

    def test_radial_infall(self):
        p = _particles([[0, 0, 4.0]], [[0, 0, -7.0]])
        kin = kinematic_coordinates(p, centre=False)
        np.testing.assert_allclose(kin.vr, -7.0)
        np.testing.assert_allclose(kin.vtheta, 0.0, atol=1e-12)

    def test_zero_radius_policy(self):
        p = _particles(
            [[0, 0, 0], [0, 0, 3.0]],
            [[1.0, 2.0, 3.0], [1.0, 2.0, 3.0]],
        )
        kin = kinematic_coordinates(p, centre=False)
        assert np.all(np.isfinite(kin.vr))
        # origin
        assert kin.vr[0] == 0.0
        assert kin.vtheta[0] == 0.0
        assert kin.Jx[0] == 0.0 and kin.Jy[0] == 0.0 and kin.Jz[0] == 0.0
        # on the z axis
        assert kin.vphi[1] == 0.0
        assert kin.vcr[1] == 0.0
        np.testing.assert_allclose(kin.vr[1], 3.0)

    def test_angular_momentum_is_cross_product(self, random_particles):
        kin = kinematic_coordinates(random_particles, centre=False)
        expected = random_particles.masses[:, None] * np.cross(
            random_particles.positions, random_particles.velocities
        )
        np.testing.assert_allclose(
            np.column_stack([kin.Jx, kin.Jy, kin.Jz]), expected
        )

    def test_speed_preserved(self, random_particles):
        kin = kinematic_coordinates(random_particles)
        speed = np.sqrt(kin.vr**2 + kin.vtheta**2 + kin.vphi**2)
        centred = center_particles(random_particles)
        np.testing.assert_allclose(speed, np.linalg.norm(centred.velocities, axis=1))
