"""
Tests for particle records, catalogs and luminosities.
"""

import pytest
import numpy as np

from spin_pipe.errors import ConfigurationError, MissingParticleTypeWarning
from spin_pipe.particles import (
    ParticleCatalog,
    ParticleSet,
    ParticleType,
    decode_particle_type,
    encode_ids,
    merge_particles,
)

from conftest import make_record


def _small_record(n=4, seed=0):
    rng = np.random.default_rng(seed)
    return make_record(rng.normal(size=(n, 3)), rng.normal(size=(n, 3)))


class TestParticleType:

    @pytest.mark.parametrize(
        "key,expected",
        [
            (ParticleType.BULGE, ParticleType.BULGE),
            (2, ParticleType.DISC),
            ('PartType0', ParticleType.GAS),
            ('parttype1', ParticleType.DARK_MATTER),
            ('halo', ParticleType.DARK_MATTER),
            ('Stars', ParticleType.STARS),
            ('disk', ParticleType.DISC),
        ],
    )
    def test_parse(self, key, expected):
        assert ParticleType.parse(key) is expected

    @pytest.mark.parametrize("key", ['quasar', 7, 'PartType9', 'PartTypeX', 'PartType'])
    def test_parse_unknown(self, key):
        with pytest.raises(ConfigurationError) as err:
            ParticleType.parse(key)
        assert err.value.parameter == 'particle_type'


class TestIdEncoding:

    def test_prefix_and_width(self):
        ids = encode_ids(ParticleType.DISC, 5)
        np.testing.assert_array_equal(ids, [21, 22, 23, 24, 25])

    def test_gas_uses_nine(self):
        ids = encode_ids(ParticleType.GAS, 12)
        assert ids[0] == 901
        assert ids[-1] == 912

    @pytest.mark.parametrize("ptype", list(ParticleType))
    def test_decode_roundtrip(self, ptype):
        ids = encode_ids(ptype, 150)
        np.testing.assert_array_equal(decode_particle_type(ids), int(ptype))

    def test_empty(self):
        assert len(encode_ids(ParticleType.STARS, 0)) == 0


class TestParticleSet:

    def test_from_record(self):
        record = _small_record()
        pset = ParticleSet.from_record('PartType2', record)
        assert pset.ptype is ParticleType.DISC
        assert pset.positions.shape == (4, 3)
        np.testing.assert_array_equal(pset.positions[:, 1], record['y'])
        np.testing.assert_array_equal(pset.ids, encode_ids(ParticleType.DISC, 4))

    def test_inconsistent_lengths(self):
        record = _small_record()
        record['vz'] = record['vz'][:3]
        with pytest.raises(ConfigurationError):
            ParticleSet.from_record('disc', record)

    def test_missing_keys(self):
        record = _small_record()
        del record['mass']
        with pytest.raises(ConfigurationError, match="missing"):
            ParticleSet.from_record('disc', record)

    def test_wrong_id_count(self):
        record = _small_record()
        record['id'] = [1, 2]
        with pytest.raises(ConfigurationError):
            ParticleSet.from_record('disc', record)

    def test_mass_to_light_luminosity(self):
        pset = ParticleSet.from_record('disc', _small_record())
        lum = pset.band_luminosity(mass_to_light=2.0)
        np.testing.assert_allclose(lum, pset.masses * 1e10 / 2.0)

    def test_no_mass_to_light_is_dark(self):
        pset = ParticleSet.from_record('dm', _small_record())
        np.testing.assert_array_equal(pset.band_luminosity(), 0.0)

    def test_scalar_luminosity_used_as_is(self):
        record = _small_record()
        record['lum'] = np.arange(4.0)
        pset = ParticleSet.from_record('stars', record)
        np.testing.assert_array_equal(pset.band_luminosity(mass_to_light=1.0), np.arange(4.0))

    def test_tabulated_luminosity_interpolated(self):
        record = _small_record(n=2)
        record['lum'] = np.array([[1.0, 3.0], [2.0, 2.0]])
        record['wav'] = np.array([4000.0, 6000.0])
        pset = ParticleSet.from_record('stars', record)
        np.testing.assert_allclose(pset.band_luminosity(5000.0), [2.0, 2.0])
        # clamped outside the table
        np.testing.assert_allclose(pset.band_luminosity(9000.0), [3.0, 2.0])

    def test_tabulated_luminosity_unsorted_and_single_sample(self):
        record = _small_record(n=2)
        record['lum'] = np.array([[5.0, 1.0, 3.0], [0.0, 4.0, 2.0]])
        record['wav'] = np.array([7000.0, 4000.0, 5000.0])
        pset = ParticleSet.from_record('stars', record)
        np.testing.assert_allclose(pset.band_luminosity(4500.0), [2.0, 3.0])
        np.testing.assert_allclose(pset.band_luminosity(6000.0), [4.0, 1.0])

        record = _small_record(n=2)
        record['lum'] = np.array([[1.5], [2.5]])
        record['wav'] = np.array([5000.0])
        pset = ParticleSet.from_record('stars', record)
        np.testing.assert_allclose(pset.band_luminosity(4800.0), [1.5, 2.5])

    def test_tabulated_luminosity_needs_wavelengths(self):
        record = _small_record(n=2)
        record['lum'] = np.ones((2, 3))
        with pytest.raises(ConfigurationError):
            ParticleSet.from_record('stars', record)


class TestCatalog:

    @pytest.fixture
    def catalog(self):
        return ParticleCatalog.from_mapping({
            'PartType2': _small_record(4, seed=1),
            'dm': _small_record(6, seed=2),
        })

    def test_presence(self, catalog):
        assert catalog.present == {ParticleType.DISC, ParticleType.DARK_MATTER}
        assert catalog.has_dark_matter
        assert 'disc' in catalog
        assert 'bulge' not in catalog
        assert 'not-a-type' not in catalog
        assert len(catalog) == 2

    def test_duplicate_type(self):
        with pytest.raises(ConfigurationError):
            ParticleCatalog.from_mapping({
                'disc': _small_record(),
                'PartType2': _small_record(),
            })

    def test_select_absent_type_is_advisory(self, catalog):
        with pytest.warns(MissingParticleTypeWarning):
            groups, advisories = catalog.select(['disc', 'bulge'])
        assert [g.ptype for g in groups] == [ParticleType.DISC]
        assert len(advisories) == 1
        assert 'BULGE' in advisories[0]

    def test_merge(self, catalog):
        merged = catalog.merge()
        assert len(merged) == 10
        assert merged.present == {ParticleType.DISC, ParticleType.DARK_MATTER}
        is_dm = merged.ptypes == int(ParticleType.DARK_MATTER)
        assert is_dm.sum() == 6
        # dark matter carries no light by default
        np.testing.assert_array_equal(merged.luminosity[is_dm], 0.0)
        assert np.all(merged.luminosity[~is_dm] > 0)

    def test_merge_without_luminosity(self, catalog):
        merged = catalog.merge(luminous=False)
        np.testing.assert_array_equal(merged.luminosity, 0.0)

    def test_merge_nothing(self):
        with pytest.raises(ConfigurationError):
            merge_particles([])

    def test_subset(self, catalog):
        merged = catalog.merge()
        sub = merged.subset(merged.ptypes == int(ParticleType.DISC))
        assert len(sub) == 4
        assert sub.present == {ParticleType.DISC}
