"""
End-to-end tests: catalog -> cube -> images -> lambda_R, and intrinsic
profiles through ``sim_analysis``.

The synthetic galaxies have analytically known kinematics: an isotropic
sphere has no ordered rotation, and a rigidly rotating cold disc seen
edge-on has V = omega x and almost no dispersion.
"""

import pytest
import numpy as np

from spin_pipe import (
    ConfigurationError,
    FixedEllipse,
    MeasurementWarning,
    MissingParticleTypeWarning,
    ObservationConfig,
    ProfileConfig,
    build_datacube,
    find_lambda,
    sim_analysis,
)
from spin_pipe.profiles import BinType

from conftest import DISC_OMEGA


def _cold_config(**kwargs):
    """Fine velocity bins and no line broadening."""
    options = dict(
        fov=30.0,
        vscale_unit='km/s',
        pixel_vscale=5.0,
        lsf_fwhm=0.0,
        threshold=None,
    )
    options.update(kwargs)
    return ObservationConfig(**options)


# ==============================================================================
# find_lambda
# ==============================================================================


class TestDispersionSupported:

    @pytest.mark.parametrize("inclination", [0.0, 45.0, 90.0])
    def test_sphere_has_low_spin(self, sphere_catalog, inclination):
        config = ObservationConfig(inclination=inclination, threshold=None)
        result = find_lambda(sphere_catalog, config)
        assert 0.0 <= result.lambda_r < 0.15
        assert result.ellipse.axis_ratio > 0.85

        inside = result.ellipse.pixel_mask(result.images)
        assert inside.sum() > 50
        assert np.mean(np.abs(result.images.velocity[inside])) < 25.0
        assert np.all(result.images.dispersion[inside] > 50.0)


class TestRotationSupported:

    @pytest.fixture(scope="class")
    def edge_on(self, disc_catalog):
        return find_lambda(disc_catalog, _cold_config(inclination=90.0))

    def test_edge_on_disc_has_high_spin(self, edge_on):
        assert edge_on.lambda_r > 0.9
        assert edge_on.v_over_sigma > 3.0
        assert edge_on.ellipticity > 0.8

    def test_velocity_field_follows_rotation(self, edge_on):
        images = edge_on.images
        inside = edge_on.ellipse.pixel_mask(images)
        X, _ = np.meshgrid(images.x_centers, images.y_centers, indexing='ij')
        x_kpc = X * images.kpc_per_pixel / images.pixel_scale
        expected = DISC_OMEGA * x_kpc
        tolerance = 5.0 + DISC_OMEGA * images.kpc_per_pixel
        assert inside.sum() > 20
        assert np.all(np.abs(images.velocity[inside] - expected[inside]) < tolerance)

    def test_face_on_disc_has_no_spin(self, disc_catalog):
        # default line spread, no line-of-sight motion at all
        config = ObservationConfig(inclination=0.0, fov=30.0, threshold=None)
        result = find_lambda(disc_catalog, config)
        assert result.lambda_r < 0.05
        assert result.ellipse.axis_ratio > 0.9

    def test_spin_grows_with_inclination(self, disc_catalog):
        values = [
            find_lambda(disc_catalog, _cold_config(inclination=i, lsf_fwhm=1.0)).lambda_r
            for i in (10.0, 40.0, 90.0)
        ]
        assert values[0] < values[1] < values[2]

    def test_threads_agree(self, disc_catalog):
        serial = find_lambda(disc_catalog, _cold_config(inclination=60.0))
        threaded = find_lambda(disc_catalog, _cold_config(inclination=60.0, n_threads=3))
        assert threaded.lambda_r == pytest.approx(serial.lambda_r, rel=1e-9)


class TestAdvisories:

    def test_missing_type(self, disc_catalog):
        config = _cold_config(inclination=60.0, particle_types=['disc', 'bulge'])
        with pytest.warns(MissingParticleTypeWarning):
            result = find_lambda(disc_catalog, config)
        assert len(result.advisories) == 1
        assert 'BULGE' in result.advisories[0]
        assert 0.0 < result.lambda_r <= 1.0

    def test_nothing_observable(self, disc_catalog):
        config = _cold_config(particle_types=['bulge'])
        with pytest.warns(MissingParticleTypeWarning):
            with pytest.raises(ConfigurationError):
                find_lambda(disc_catalog, config)

    def test_clipped_ellipse(self, disc_catalog):
        config = _cold_config(
            inclination=60.0, fov=10.0, measurement=FixedEllipse(a=20.0, b=10.0)
        )
        with pytest.warns(MeasurementWarning):
            result = find_lambda(disc_catalog, config)
        assert result.ellipse.clipped
        assert result.advisories == list(result.ellipse.notes)
        assert 0.0 < result.lambda_r <= 1.0


class TestImageProducts:

    @pytest.fixture(scope="class")
    def result(self, disc_catalog):
        config = _cold_config(
            inclination=60.0,
            sky_noise={'threshold': 26.0, 'seed': 4},
        )
        return find_lambda(
            disc_catalog, config, name='disc60', metadata={'disc_len': 3.0}
        )

    def test_products(self, result):
        products = result.to_images()
        assert set(products) == {'flux', 'velocity', 'dispersion'}
        np.testing.assert_array_equal(products['velocity'].data, result.images.velocity)

    def test_header(self, result):
        header = result.to_images()['velocity'].header()
        assert header['IMGTYPE'] == 'velocity'
        assert header['BUNIT'] == 'km/s'
        assert header['PIXSCALE'] == 0.5
        assert header['REDSHIFT'] == 0.05
        assert header['OBSNAME'] == 'disc60'
        assert header['SKYNOISE']
        assert header['SKYTHRSH'] == 26.0
        assert header['DISC_LEN'] == 3.0

    def test_hdu_is_transposed(self, result):
        image = result.to_images()['flux']
        hdu = image.to_hdu()
        np.testing.assert_array_equal(hdu.data, image.data.T)

    def test_noiseless_header(self, disc_catalog):
        result = find_lambda(disc_catalog, _cold_config(inclination=60.0))
        header = result.to_images()['flux'].header()
        assert not header['SKYNOISE']
        assert 'SKYTHRSH' not in header
        assert 'OBSNAME' not in header


# ==============================================================================
# build_datacube
# ==============================================================================


class TestBuildDatacube:

    def test_default_grid(self, sphere_catalog):
        cube = build_datacube(sphere_catalog, ObservationConfig(threshold=None))
        assert cube.shape[:2] == (30, 30)
        assert cube.deposited_flux > 0
        assert cube.data.sum() == pytest.approx(cube.deposited_flux, rel=1e-10)

    @pytest.mark.parametrize("shape", ['circular', 'hexagonal', 'square'])
    def test_footprints(self, sphere_catalog, shape):
        cube = build_datacube(
            sphere_catalog, ObservationConfig(aperture_shape=shape, threshold=None)
        )
        assert np.all(cube.data[~cube.footprint] == 0)
        if shape == 'square':
            assert cube.footprint.all()
        else:
            assert not cube.footprint.all()

    def test_threshold_masks_outskirts(self, sphere_catalog):
        cube = build_datacube(sphere_catalog, ObservationConfig(threshold=22.0))
        assert cube.mask.any()
        assert (cube.footprint & ~cube.mask).any()

    def test_seeing_spreads_light(self, sphere_catalog):
        sharp = build_datacube(sphere_catalog, ObservationConfig(threshold=None))
        blurred = build_datacube(
            sphere_catalog,
            ObservationConfig(threshold=None, psf={'kind': 'gaussian', 'fwhm': 2.0}),
        )
        assert blurred.data.sum(axis=2).max() < sharp.data.sum(axis=2).max()

    def test_partial_mass_to_light_keeps_other_defaults(self, galaxy_with_halo):
        default = build_datacube(galaxy_with_halo, ObservationConfig(threshold=None))
        overridden = build_datacube(
            galaxy_with_halo,
            ObservationConfig(threshold=None, mass_to_light={'disc': 2.0}),
        )
        assert overridden.deposited_flux > 0
        assert overridden.deposited_flux == pytest.approx(default.deposited_flux, rel=1e-12)

    def test_mass_to_light_scales_flux(self, disc_catalog):
        default = build_datacube(disc_catalog, _cold_config(inclination=60.0))
        dimmer = build_datacube(
            disc_catalog, _cold_config(inclination=60.0, mass_to_light={'disc': 2.0})
        )
        assert dimmer.deposited_flux == pytest.approx(0.5 * default.deposited_flux, rel=1e-10)


# ==============================================================================
# sim_analysis
# ==============================================================================


class TestSimAnalysis:

    def test_requires_dark_matter(self, disc_catalog):
        with pytest.raises(ConfigurationError) as err:
            sim_analysis(disc_catalog)
        assert err.value.parameter == 'dm_profile'

    def test_analytic_halo(self, disc_catalog):
        config = ProfileConfig(
            rmax=20.0,
            rbin=10,
            dm_profile={'profile': 'hernquist', 'mass': 100.0, 'scale_radius': 20.0},
        )
        profile = sim_analysis(disc_catalog, config)
        assert len(profile) == 10
        assert profile.mass[-1] == pytest.approx(20000 * 1e-4)
        assert np.all(profile.vc > 0)

    def test_particle_halo(self, galaxy_with_halo):
        profile = sim_analysis(galaxy_with_halo, ProfileConfig(rmax=50.0, rbin=25))
        assert profile.bin_type is BinType.SPHERICAL
        assert profile.counts.sum() > 0
        assert np.all(np.diff(profile.mass) >= 0)

    def test_type_selection(self, galaxy_with_halo):
        # stars alone have no halo to supply the circular velocity
        config = ProfileConfig(rmax=20.0, rbin=10, particle_types=['stars'])
        with pytest.raises(ConfigurationError):
            sim_analysis(galaxy_with_halo, config)

    def test_cylindrical(self, galaxy_with_halo):
        profile = sim_analysis(
            galaxy_with_halo, ProfileConfig(bin_type='cr', rmax=30.0, rbin=15)
        )
        assert profile.component == 'vcr'
        assert profile.vc is None
