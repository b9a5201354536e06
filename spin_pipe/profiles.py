"""
Intrinsic kinematic profiles of simulated galaxies.

Particles are binned into ``rbin`` equal-width shells out to ``rmax`` along
one of three directions:

- ``r``: 3D spherical shells, keeping r < rmax
- ``cr``: cylindrical annuli, keeping cr < rmax and |z| < rmax
- ``z``: planar slabs above the disc, keeping cr < rmax and 0 < z < rmax

Each shell's statistics are computed independently from the particles in
it; enclosed quantities are prefix sums over shells. Shell densities use the
matching volume element:

- spherical shell: 4/3 pi (r2^3 - r1^3)
- cylindrical annulus of height 2 rmax: 2 pi rmax (r2^2 - r1^2)
- planar slab of radius rmax: pi rmax^2 (z2 - z1)

Spherical shells also carry circular velocity, anisotropy, rotational
velocity and the Bullock spin parameter. The circular velocity needs all the
mass, so either dark-matter particles or an analytic halo must be supplied.

## Units

Lengths kpc, velocities km/s, masses 1e10 Msun, densities 1e10 Msun / kpc^3,
angular momentum 1e10 Msun kpc km/s.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import numpy as np
from astropy.table import Table

from .cosmology import GRAV_CONST
from .errors import ConfigurationError
from .geometry import kinematic_coordinates
from .particles import Particles, ParticleType

logger = logging.getLogger(__name__)


class BinType(str, Enum):
    SPHERICAL = 'r'
    CYLINDRICAL = 'cr'
    PLANAR = 'z'

    @classmethod
    def parse(cls, value) -> 'BinType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = [b.value for b in cls]
            raise ConfigurationError(
                'bin_type', f"unknown bin type {value!r}, expected one of {valid}"
            )


# velocity component summarized per shell
_COMPONENT = {
    BinType.SPHERICAL: 'vr',
    BinType.CYLINDRICAL: 'vcr',
    BinType.PLANAR: 'vz',
}


class DarkMatterProfile(ABC):
    '''
    Analytic dark-matter halo used in place of (or in addition to) particles.
    '''

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def enclosed_mass(self, r: np.ndarray) -> np.ndarray:
        '''
        Mass (1e10 Msun) inside radius ``r`` (kpc).
        '''
        pass


class HernquistProfile(DarkMatterProfile):
    '''
    Hernquist (1990) halo, M(r) = M r^2 / (a + r)^2.

    Parameters
    ----------
    mass : float
        Total halo mass, 1e10 Msun.
    scale_radius : float
        Scale radius a, kpc.
    '''

    def __init__(self, mass: float, scale_radius: float) -> None:
        if not mass > 0:
            raise ConfigurationError('dm_profile.mass', f"must be > 0, got {mass}")
        if not scale_radius > 0:
            raise ConfigurationError(
                'dm_profile.scale_radius', f"must be > 0, got {scale_radius}"
            )
        self.mass = float(mass)
        self.scale_radius = float(scale_radius)

    @property
    def name(self) -> str:
        return 'hernquist'

    def enclosed_mass(self, r: np.ndarray) -> np.ndarray:
        r = np.asarray(r, dtype=np.float64)
        return self.mass * r**2 / (self.scale_radius + r) ** 2

    def __repr__(self) -> str:
        return f"HernquistProfile(mass={self.mass}, scale_radius={self.scale_radius})"


class NFWProfile(DarkMatterProfile):
    '''
    Navarro-Frenk-White halo.

        M(r) = 4 pi rho_s a^3 [ln(1 + r/a) - (r/a) / (1 + r/a)]

    If ``characteristic_density`` is not given, it is fixed by requiring
    M(virial_radius) = virial_mass.

    Parameters
    ----------
    virial_mass : float
        1e10 Msun.
    scale_radius : float
        a, kpc.
    characteristic_density : float, optional
        rho_s, 1e10 Msun / kpc^3.
    virial_radius : float, optional
        r200, kpc. Needed when ``characteristic_density`` is omitted.
    '''

    def __init__(
        self,
        virial_mass: float,
        scale_radius: float,
        characteristic_density: Optional[float] = None,
        virial_radius: Optional[float] = None,
    ) -> None:
        if not virial_mass > 0:
            raise ConfigurationError(
                'dm_profile.virial_mass', f"must be > 0, got {virial_mass}"
            )
        if not scale_radius > 0:
            raise ConfigurationError(
                'dm_profile.scale_radius', f"must be > 0, got {scale_radius}"
            )
        self.virial_mass = float(virial_mass)
        self.scale_radius = float(scale_radius)
        self.virial_radius = virial_radius

        if characteristic_density is None:
            if virial_radius is None or not virial_radius > 0:
                raise ConfigurationError(
                    'dm_profile.characteristic_density',
                    "give a characteristic density or a positive virial radius",
                )
            c = virial_radius / scale_radius
            characteristic_density = virial_mass / (
                4.0 * np.pi * scale_radius**3 * (np.log1p(c) - c / (1.0 + c))
            )
        elif not characteristic_density > 0:
            raise ConfigurationError(
                'dm_profile.characteristic_density',
                f"must be > 0, got {characteristic_density}",
            )
        self.characteristic_density = float(characteristic_density)

    @property
    def name(self) -> str:
        return 'nfw'

    def enclosed_mass(self, r: np.ndarray) -> np.ndarray:
        x = np.asarray(r, dtype=np.float64) / self.scale_radius
        return (
            4.0 * np.pi * self.characteristic_density * self.scale_radius**3
            * (np.log1p(x) - x / (1.0 + x))
        )

    def __repr__(self) -> str:
        return (
            f"NFWProfile(virial_mass={self.virial_mass}, "
            f"scale_radius={self.scale_radius}, "
            f"characteristic_density={self.characteristic_density:.4g})"
        )


@dataclass
class RadialProfile:
    """
    Shell-by-shell kinematic profile.

    Arrays have one entry per shell. ``mass``, ``Jx``, ``Jy``, ``Jz`` and ``J``
    are enclosed within the shell's outer edge; ``mean_velocity`` and
    ``sigma_velocity`` describe ``component`` within the shell itself. The
    spherical-only fields are None for other bin types.
    """

    bin_type: BinType
    edges: np.ndarray
    counts: np.ndarray
    mass: np.ndarray
    logp: np.ndarray
    Jx: np.ndarray
    Jy: np.ndarray
    Jz: np.ndarray
    J: np.ndarray
    component: str
    mean_velocity: np.ndarray
    sigma_velocity: np.ndarray
    sigma_z: float
    vc: Optional[np.ndarray] = None
    sigma_vt: Optional[np.ndarray] = None
    sigma_vx: Optional[np.ndarray] = None
    sigma_vz: Optional[np.ndarray] = None
    beta: Optional[np.ndarray] = None
    vrot: Optional[np.ndarray] = None
    lam: Optional[np.ndarray] = None
    dm_profile: Optional[DarkMatterProfile] = None

    @property
    def radius(self) -> np.ndarray:
        """Outer edge of each shell."""
        return self.edges[1:]

    def __len__(self) -> int:
        return len(self.counts)

    def to_table(self) -> Table:
        """Profile as an astropy Table, one row per shell."""
        columns = {
            self.bin_type.value: self.radius,
            'n': self.counts,
            'mass': self.mass,
            'logp': self.logp,
            'Jx': self.Jx,
            'Jy': self.Jy,
            'Jz': self.Jz,
            'J': self.J,
            self.component: self.mean_velocity,
            f'sigma_{self.component}': self.sigma_velocity,
        }
        if self.bin_type is BinType.SPHERICAL:
            columns.update({
                'vc': self.vc,
                'sigma_vt': self.sigma_vt,
                'sigma_vx': self.sigma_vx,
                'sigma_vz': self.sigma_vz,
                'beta': self.beta,
                'vrot': self.vrot,
                'lambda': self.lam,
            })
        table = Table(columns)
        table.meta['bin_type'] = self.bin_type.value
        table.meta['sigma_z'] = self.sigma_z
        return table


def _shell_volumes(bin_type: BinType, edges: np.ndarray, rmax: float) -> np.ndarray:
    inner, outer = edges[:-1], edges[1:]
    if bin_type is BinType.SPHERICAL:
        return 4.0 / 3.0 * np.pi * (outer**3 - inner**3)
    elif bin_type is BinType.CYLINDRICAL:
        return 2.0 * np.pi * rmax * (outer**2 - inner**2)
    return np.pi * rmax**2 * (outer - inner)


def _select(kin, bin_type: BinType, rmax: float):
    z = kin.z
    if bin_type is BinType.SPHERICAL:
        return kin.r < rmax, kin.r
    elif bin_type is BinType.CYLINDRICAL:
        return (kin.cr < rmax) & (np.abs(z) < rmax), kin.cr
    return (kin.cr < rmax) & (z > 0) & (z < rmax), z


def _shell_sums(
    shell: np.ndarray,
    columns: Dict[str, np.ndarray],
    first: int,
    last: int,
) -> Dict[str, np.ndarray]:
    """
    Per-shell sums for shells ``first..last-1``.

    ``shell`` must be sorted; only the particles of the requested shells are
    touched.
    """
    lo, hi = np.searchsorted(shell, [first, last])
    local = shell[lo:hi] - first
    n_shells = last - first
    sums = {'n': np.bincount(local, minlength=n_shells).astype(np.int64)}
    for name, values in columns.items():
        sums[name] = np.bincount(local, weights=values[lo:hi], minlength=n_shells)
    return sums


def _mean_sigma(total, total_sq, counts):
    n = np.maximum(counts, 1)
    mean = np.where(counts > 0, total / n, 0.0)
    var = np.where(counts > 0, total_sq / n - mean**2, 0.0)
    return mean, np.sqrt(np.clip(var, 0.0, None))


def _safe_divide(num, den):
    out = np.zeros(np.broadcast(num, den).shape)
    np.divide(num, den, out=out, where=den > 0)
    return out


def radial_profile(
    particles: Particles,
    bin_type='r',
    rmax: float = 200.0,
    rbin: int = 200,
    dm_profile: Optional[DarkMatterProfile] = None,
    centre: bool = True,
    n_threads: int = 1,
) -> RadialProfile:
    """
    Bin particles into shells and compute the kinematic profile.

    Parameters
    ----------
    particles : Particles
        Merged particle record; should include dark matter unless
        ``dm_profile`` is given.
    bin_type : BinType or str
        'r', 'cr' or 'z'.
    rmax : float
        Outer edge of the last shell, kpc.
    rbin : int
        Number of shells.
    dm_profile : DarkMatterProfile, optional
        Analytic halo added to the enclosed mass for the circular velocity.
    centre : bool, default=True
        Centre on the centre of mass first.
    n_threads : int, default=1
        Worker threads; shells are split into contiguous chunks.

    Raises
    ------
    ConfigurationError
        If there are neither dark-matter particles nor an analytic profile,
        or the binning parameters are invalid.
    """
    bin_type = BinType.parse(bin_type)
    if not rmax > 0:
        raise ConfigurationError('rmax', f"must be > 0, got {rmax}")
    if int(rbin) != rbin or rbin < 1:
        raise ConfigurationError('rbin', f"must be a positive integer, got {rbin}")
    rbin = int(rbin)

    has_dm = np.any(particles.ptypes == int(ParticleType.DARK_MATTER))
    if not has_dm and dm_profile is None:
        raise ConfigurationError(
            'dm_profile',
            "no dark matter particles are present; supply an analytic "
            "dark-matter profile so the circular velocity includes the halo",
        )

    kin = kinematic_coordinates(particles, centre=centre)
    keep, coord = _select(kin, bin_type, rmax)

    edges = np.linspace(0.0, rmax, rbin + 1)
    width = rmax / rbin
    shell = np.clip((coord[keep] / width).astype(np.int64), 0, rbin - 1)
    order = np.argsort(shell, kind='stable')
    shell = shell[order]

    def take(values):
        return values[keep][order]

    columns = {
        'mass': take(kin.masses),
        'Jx': take(kin.Jx),
        'Jy': take(kin.Jy),
        'Jz': take(kin.Jz),
    }
    component = _COMPONENT[bin_type]
    if bin_type is BinType.SPHERICAL:
        velocities = kin.particles.velocities
        moments = {
            'vr': kin.vr,
            'vtheta': kin.vtheta,
            'vphi': kin.vphi,
            'vx': velocities[:, 0],
            'vz': velocities[:, 2],
        }
    elif bin_type is BinType.CYLINDRICAL:
        moments = {'vcr': kin.vcr}
    else:
        moments = {'vz': kin.particles.velocities[:, 2]}
    for name, values in moments.items():
        selected = take(values)
        columns[name] = selected
        columns[name + '^2'] = selected**2

    n_threads = max(int(n_threads), 1)
    if n_threads == 1 or rbin < 2 * n_threads:
        sums = _shell_sums(shell, columns, 0, rbin)
    else:
        bounds = np.linspace(0, rbin, n_threads + 1).astype(int)
        with ThreadPoolExecutor(max_workers=n_threads) as pool:
            chunks: List[Dict[str, np.ndarray]] = list(pool.map(
                lambda b: _shell_sums(shell, columns, b[0], b[1]),
                zip(bounds[:-1], bounds[1:]),
            ))
        sums = {k: np.concatenate([c[k] for c in chunks]) for k in chunks[0]}

    counts = sums['n']
    mass_enc = np.cumsum(sums['mass'])
    Jx, Jy, Jz = (np.cumsum(sums[k]) for k in ('Jx', 'Jy', 'Jz'))
    J = np.sqrt(Jx**2 + Jy**2 + Jz**2)

    with np.errstate(divide='ignore'):
        logp = np.log10(sums['mass'] / _shell_volumes(bin_type, edges, rmax))

    stats = {
        name: _mean_sigma(sums[name], sums[name + '^2'], counts) for name in moments
    }
    mean_velocity, sigma_velocity = stats[component]

    z_sel = kin.z[keep]
    sigma_z = float(np.std(z_sel)) if len(z_sel) else 0.0

    profile = RadialProfile(
        bin_type=bin_type,
        edges=edges,
        counts=counts,
        mass=mass_enc,
        logp=logp,
        Jx=Jx,
        Jy=Jy,
        Jz=Jz,
        J=J,
        component=component,
        mean_velocity=mean_velocity,
        sigma_velocity=sigma_velocity,
        sigma_z=sigma_z,
        dm_profile=dm_profile,
    )

    if bin_type is BinType.SPHERICAL:
        r = edges[1:]
        total_mass = mass_enc.copy()
        if dm_profile is not None:
            total_mass = total_mass + dm_profile.enclosed_mass(r)
        vc = np.sqrt(GRAV_CONST * total_mass / r)

        sigma_r = stats['vr'][1]
        sigma_vt = np.hypot(stats['vtheta'][1], stats['vphi'][1])
        profile.vc = vc
        profile.sigma_vt = sigma_vt
        profile.sigma_vx = stats['vx'][1]
        profile.sigma_vz = stats['vz'][1]
        profile.beta = np.where(
            sigma_r > 0, 1.0 - _safe_divide(sigma_vt**2, 2.0 * sigma_r**2), 0.0
        )
        profile.vrot = _safe_divide(J, mass_enc * r)
        profile.lam = _safe_divide(J, np.sqrt(2.0) * mass_enc * vc * r)

    logger.debug(
        "%s profile: %d of %d particles in %d shells out to %.1f kpc",
        bin_type.value, keep.sum(), len(particles), rbin, rmax,
    )
    return profile
