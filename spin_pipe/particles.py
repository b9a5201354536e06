"""
Particle records and catalogs for simulated galaxies.

A snapshot loader (outside this package) supplies, for each particle type, the
arrays ``x, y, z, vx, vy, vz, mass`` and optionally ``id`` and a luminosity
(``lum``, either one value per particle or a table over wavelength with a
companion ``wav`` array). This module wraps those records in a uniform shape
and keeps track of which particle kinds are present.

Units
-----
- Positions: kpc
- Velocities: km/s
- Masses: 1e10 Msun
- Luminosities: Lsun (scalar) or Lsun per wavelength sample (table)
- Wavelengths: Angstrom

Particle Types
--------------
Types follow the Gadget convention: 0 gas, 1 dark matter, 2 disc, 3 bulge,
4 stars, 5 boundary. Only disc, bulge and star particles carry light unless a
luminosity is supplied explicitly.
"""

from __future__ import annotations

import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np

from .errors import ConfigurationError, MissingParticleTypeWarning


class ParticleType(IntEnum):
    """Particle kinds, numbered as in Gadget snapshots."""

    GAS = 0
    DARK_MATTER = 1
    DISC = 2
    BULGE = 3
    STARS = 4
    BOUNDARY = 5

    @property
    def id_prefix(self) -> int:
        # a leading zero would vanish from an integer id
        return 9 if self is ParticleType.GAS else int(self)

    @classmethod
    def parse(cls, key: Union['ParticleType', int, str]) -> 'ParticleType':
        """
        Interpret a loader key as a particle type.

        Accepts a ParticleType, its integer value, ``"PartTypeN"`` or one of
        the names in ``_TYPE_ALIASES``.
        """
        if isinstance(key, cls):
            return key
        if isinstance(key, (int, np.integer)):
            try:
                return cls(int(key))
            except ValueError:
                raise ConfigurationError('particle_type', f"unknown type {key}")
        if isinstance(key, str):
            name = key.strip().lower()
            if name.startswith('parttype'):
                try:
                    number = int(name[len('parttype'):])
                except ValueError:
                    raise ConfigurationError('particle_type', f"unknown type {key!r}")
                return cls.parse(number)
            if name in _TYPE_ALIASES:
                return _TYPE_ALIASES[name]
        raise ConfigurationError('particle_type', f"unknown type {key!r}")


_TYPE_ALIASES = {
    'gas': ParticleType.GAS,
    'dm': ParticleType.DARK_MATTER,
    'dark_matter': ParticleType.DARK_MATTER,
    'darkmatter': ParticleType.DARK_MATTER,
    'halo': ParticleType.DARK_MATTER,
    'disc': ParticleType.DISC,
    'disk': ParticleType.DISC,
    'bulge': ParticleType.BULGE,
    'stars': ParticleType.STARS,
    'star': ParticleType.STARS,
    'stellar': ParticleType.STARS,
    'boundary': ParticleType.BOUNDARY,
}

LUMINOUS_TYPES = frozenset(
    {ParticleType.DISC, ParticleType.BULGE, ParticleType.STARS}
)

DEFAULT_MASS_TO_LIGHT = {
    ParticleType.DISC: 1.0,
    ParticleType.BULGE: 1.0,
    ParticleType.STARS: 1.0,
}

# masses are stored in units of 1e10 Msun
MASS_UNIT_MSUN = 1e10


def encode_ids(ptype: ParticleType, n: int) -> np.ndarray:
    """
    Build particle ids that carry their type as the leading digit.

    The k-th particle (k = 1..n) gets ``prefix * 10**w + k`` where ``w`` is
    the number of digits in ``n``.
    """
    ptype = ParticleType.parse(ptype)
    if n == 0:
        return np.zeros(0, dtype=np.int64)
    width = int(np.floor(np.log10(n))) + 1
    return ptype.id_prefix * 10**width + np.arange(1, n + 1, dtype=np.int64)


def decode_particle_type(ids: np.ndarray) -> np.ndarray:
    """Recover the particle type number from ids made by ``encode_ids``."""
    ids = np.asarray(ids, dtype=np.int64)
    n_digits = np.floor(np.log10(np.maximum(ids, 1))).astype(np.int64)
    prefix = ids // 10**n_digits
    return np.where(prefix == 9, int(ParticleType.GAS), prefix)


@dataclass
class ParticleSet:
    """
    Particles of a single type.

    Parameters
    ----------
    ptype : ParticleType
        Kind of every particle in the set.
    positions : np.ndarray
        Shape (n, 3), kpc.
    velocities : np.ndarray
        Shape (n, 3), km/s.
    masses : np.ndarray
        Shape (n,), 1e10 Msun.
    ids : np.ndarray, optional
        Shape (n,). Generated with ``encode_ids`` if omitted.
    luminosity : np.ndarray, optional
        Shape (n,) in Lsun, or (n, n_wave) tabulated over ``wavelengths``.
    wavelengths : np.ndarray, optional
        Shape (n_wave,), Angstrom. Required for a tabulated luminosity.
    """

    ptype: ParticleType
    positions: np.ndarray
    velocities: np.ndarray
    masses: np.ndarray
    ids: Optional[np.ndarray] = None
    luminosity: Optional[np.ndarray] = None
    wavelengths: Optional[np.ndarray] = None

    def __post_init__(self):
        self.ptype = ParticleType.parse(self.ptype)
        self.positions = np.asarray(self.positions, dtype=np.float64)
        self.velocities = np.asarray(self.velocities, dtype=np.float64)
        self.masses = np.asarray(self.masses, dtype=np.float64).reshape(-1)
        n = len(self.masses)
        name = self.ptype.name.lower()

        for label, arr in [('positions', self.positions), ('velocities', self.velocities)]:
            if arr.shape != (n, 3):
                raise ConfigurationError(
                    f'{name}.{label}',
                    f"expected shape ({n}, 3) to match masses, got {arr.shape}",
                )

        if self.ids is None:
            self.ids = encode_ids(self.ptype, n)
        else:
            self.ids = np.asarray(self.ids, dtype=np.int64).reshape(-1)
            if len(self.ids) != n:
                raise ConfigurationError(
                    f'{name}.id', f"expected {n} ids, got {len(self.ids)}"
                )

        if self.luminosity is not None:
            self.luminosity = np.asarray(self.luminosity, dtype=np.float64)
            if self.luminosity.ndim == 0:
                self.luminosity = np.full(n, float(self.luminosity))
            if self.luminosity.shape[0] != n:
                raise ConfigurationError(
                    f'{name}.lum',
                    f"expected {n} luminosities, got {self.luminosity.shape[0]}",
                )
            if self.luminosity.ndim == 2:
                if self.wavelengths is None:
                    raise ConfigurationError(
                        f'{name}.wav', "tabulated luminosity needs a wavelength array"
                    )
                self.wavelengths = np.asarray(self.wavelengths, dtype=np.float64)
                if self.wavelengths.shape != (self.luminosity.shape[1],):
                    raise ConfigurationError(
                        f'{name}.wav',
                        f"expected {self.luminosity.shape[1]} wavelengths, "
                        f"got {self.wavelengths.shape}",
                    )

    def __len__(self) -> int:
        return len(self.masses)

    @classmethod
    def from_record(cls, ptype, record: Dict[str, Any]) -> 'ParticleSet':
        """
        Build a set from a loader record with keys ``x, y, z, vx, vy, vz,
        mass`` and optionally ``id``, ``lum`` and ``wav``.
        """
        ptype = ParticleType.parse(ptype)
        missing = [k for k in ('x', 'y', 'z', 'vx', 'vy', 'vz', 'mass') if k not in record]
        if missing:
            raise ConfigurationError(
                ptype.name.lower(), f"record is missing keys {missing}"
            )

        lengths = {k: len(np.atleast_1d(record[k])) for k in ('x', 'y', 'z', 'vx', 'vy', 'vz', 'mass')}
        if len(set(lengths.values())) > 1:
            raise ConfigurationError(
                ptype.name.lower(), f"inconsistent array lengths {lengths}"
            )

        positions = np.column_stack([record['x'], record['y'], record['z']])
        velocities = np.column_stack([record['vx'], record['vy'], record['vz']])
        return cls(
            ptype=ptype,
            positions=positions,
            velocities=velocities,
            masses=record['mass'],
            ids=record.get('id'),
            luminosity=record.get('lum'),
            wavelengths=record.get('wav'),
        )

    def band_luminosity(
        self,
        central_wavelength: Optional[float] = None,
        mass_to_light: Optional[float] = None,
    ) -> np.ndarray:
        """
        Luminosity of each particle in Lsun for the observed band.

        A supplied scalar luminosity is used as is. A tabulated luminosity is
        linearly interpolated at ``central_wavelength``. Without a supplied
        luminosity, ``mass * 1e10 / mass_to_light`` is used, or zero if no
        mass-to-light ratio applies (non-luminous particles).
        """
        if self.luminosity is None:
            if mass_to_light is None:
                return np.zeros(len(self))
            if mass_to_light <= 0:
                raise ConfigurationError(
                    'mass_to_light', f"must be positive, got {mass_to_light}"
                )
            return self.masses * MASS_UNIT_MSUN / mass_to_light

        if self.luminosity.ndim == 1:
            return self.luminosity.copy()

        if central_wavelength is None:
            raise ConfigurationError(
                'central_wavelength',
                "required to evaluate a tabulated luminosity",
            )
        order = np.argsort(self.wavelengths)
        wav = self.wavelengths[order]
        # every row shares the wavelength grid, so the interpolation weights
        # are those of each unit sample; np.interp clamps at the table edges
        weights = np.array(
            [np.interp(central_wavelength, wav, unit) for unit in np.eye(len(wav))]
        )
        return self.luminosity[:, order] @ weights


@dataclass
class Particles:
    """
    Particles of any mix of types merged into one record.

    ``luminosity`` holds the band luminosity (Lsun) of each particle.
    """

    positions: np.ndarray
    velocities: np.ndarray
    masses: np.ndarray
    ids: np.ndarray
    ptypes: np.ndarray
    luminosity: np.ndarray = field(default=None)

    def __post_init__(self):
        if self.luminosity is None:
            self.luminosity = np.zeros(len(self.masses))

    def __len__(self) -> int:
        return len(self.masses)

    @property
    def present(self) -> frozenset:
        return frozenset(ParticleType(int(t)) for t in np.unique(self.ptypes))

    def subset(self, mask: np.ndarray) -> 'Particles':
        return Particles(
            positions=self.positions[mask],
            velocities=self.velocities[mask],
            masses=self.masses[mask],
            ids=self.ids[mask],
            ptypes=self.ptypes[mask],
            luminosity=self.luminosity[mask],
        )


def merge_particles(
    groups: Iterable[ParticleSet],
    central_wavelength: Optional[float] = None,
    mass_to_light: Optional[Dict[ParticleType, float]] = None,
    luminous: bool = True,
) -> Particles:
    """
    Concatenate particle sets into a single ``Particles`` record.

    Parameters
    ----------
    groups : iterable of ParticleSet
        Sets to merge, in order.
    central_wavelength : float, optional
        Wavelength (Angstrom) at which tabulated luminosities are evaluated.
    mass_to_light : dict, optional
        Mass-to-light ratio per type, used where no luminosity was supplied.
        Entries override ``DEFAULT_MASS_TO_LIGHT``; types not named keep
        their default.
    luminous : bool, default=True
        Evaluate band luminosities. If False the merged record carries zero
        luminosity, for mass-only analyses.
    """
    ratios = dict(DEFAULT_MASS_TO_LIGHT)
    ratios.update(mass_to_light or {})
    groups = list(groups)
    if not groups:
        raise ConfigurationError('particle_types', "no particles selected")

    return Particles(
        positions=np.concatenate([g.positions for g in groups]),
        velocities=np.concatenate([g.velocities for g in groups]),
        masses=np.concatenate([g.masses for g in groups]),
        ids=np.concatenate([g.ids for g in groups]),
        ptypes=np.concatenate(
            [np.full(len(g), int(g.ptype), dtype=np.int64) for g in groups]
        ),
        luminosity=np.concatenate(
            [
                g.band_luminosity(central_wavelength, ratios.get(g.ptype))
                if luminous else np.zeros(len(g))
                for g in groups
            ]
        ),
    )


class ParticleCatalog(Mapping):
    """
    Particle sets of one galaxy, keyed by ParticleType.

    Examples
    --------
    >>> catalog = ParticleCatalog.from_mapping({
    ...     'PartType2': {'x': x, 'y': y, 'z': z, 'vx': vx, 'vy': vy,
    ...                   'vz': vz, 'mass': m},
    ... })
    >>> ParticleType.DISC in catalog.present
    True
    """

    def __init__(self, groups: Iterable[ParticleSet]):
        self._groups: Dict[ParticleType, ParticleSet] = {}
        for group in groups:
            if group.ptype in self._groups:
                raise ConfigurationError(
                    'particle_type', f"duplicate group for {group.ptype.name}"
                )
            self._groups[group.ptype] = group

    @classmethod
    def from_mapping(cls, data: Dict[Any, Union[ParticleSet, Dict[str, Any]]]) -> 'ParticleCatalog':
        """Build a catalog from a loader mapping of type key -> record."""
        groups = []
        for key, record in data.items():
            if isinstance(record, ParticleSet):
                groups.append(record)
            else:
                groups.append(ParticleSet.from_record(key, record))
        return cls(groups)

    def __getitem__(self, key) -> ParticleSet:
        return self._groups[ParticleType.parse(key)]

    def __iter__(self):
        return iter(sorted(self._groups))

    def __len__(self) -> int:
        return len(self._groups)

    def __contains__(self, key) -> bool:
        try:
            return ParticleType.parse(key) in self._groups
        except ConfigurationError:
            return False

    @property
    def present(self) -> frozenset:
        return frozenset(self._groups)

    @property
    def has_dark_matter(self) -> bool:
        return ParticleType.DARK_MATTER in self._groups

    def select(
        self, types: Optional[Iterable] = None
    ) -> Tuple[List[ParticleSet], List[str]]:
        """
        Pick the requested particle sets.

        Absent types are skipped with a ``MissingParticleTypeWarning``; the
        warning messages are also returned so callers can report them.

        Returns
        -------
        groups : list of ParticleSet
        advisories : list of str
        """
        if types is None:
            wanted = sorted(self._groups)
        else:
            wanted = sorted({ParticleType.parse(t) for t in types})

        groups, advisories = [], []
        for ptype in wanted:
            if ptype in self._groups:
                groups.append(self._groups[ptype])
            else:
                msg = f"Particle type {ptype.name} requested but absent from catalog"
                warnings.warn(msg, MissingParticleTypeWarning, stacklevel=2)
                advisories.append(msg)
        return groups, advisories

    def merge(
        self,
        types: Optional[Iterable] = None,
        central_wavelength: Optional[float] = None,
        mass_to_light: Optional[Dict[ParticleType, float]] = None,
        luminous: bool = True,
    ) -> Particles:
        """Select ``types`` (all by default) and merge them."""
        groups, _ = self.select(types)
        return merge_particles(groups, central_wavelength, mass_to_light, luminous)

    def __repr__(self) -> str:
        counts = ", ".join(f"{t.name}={len(g)}" for t, g in sorted(self._groups.items()))
        return f"ParticleCatalog({counts})"
