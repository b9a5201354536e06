"""
Instrument apertures and the spatial pixel grid.

An aperture is a square grid of ``n_pix x n_pix`` pixels of side
``pixel_scale`` (arcsec) centred on the galaxy, plus a boolean footprint that
marks the pixels whose centres fall inside the instrument's field of view:

- circular: centre within fov / 2 of the origin
- square: every pixel of the fov x fov grid
- hexagonal: inside a regular hexagon whose corner-to-corner diameter is the
  fov (circumradius fov / 2, corners on the x axis, flat sides top and
  bottom)

Arrays are indexed ``[ix, iy]``: the first axis runs along sky x.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple

import numpy as np

from .cosmology import arcsec_per_kpc
from .errors import ConfigurationError


class ApertureShape(str, Enum):
    CIRCULAR = 'circular'
    HEXAGONAL = 'hexagonal'
    SQUARE = 'square'

    @classmethod
    def parse(cls, value) -> 'ApertureShape':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = [s.value for s in cls]
            raise ConfigurationError(
                'aperture_shape', f"unknown shape {value!r}, expected one of {valid}"
            )


def _hexagon_contains(x: np.ndarray, y: np.ndarray, radius: float) -> np.ndarray:
    ax, ay = np.abs(x), np.abs(y)
    half_height = radius * np.sqrt(3.0) / 2.0
    return (ay <= half_height) & (ay <= np.sqrt(3.0) * (radius - ax))


@dataclass(frozen=True)
class Aperture:
    """
    Spatial sampling of a mock observation.

    Parameters
    ----------
    shape : ApertureShape or str
        'circular', 'hexagonal' or 'square'.
    fov : float
        Field of view (diameter / side) in arcsec.
    pixel_scale : float
        Spatial pixel size in arcsec.
    redshift : float
        Redshift of the galaxy, sets the kpc to arcsec conversion.
    cosmology : astropy.cosmology.Cosmology, optional
        Defaults to ``cosmology.DEFAULT_COSMOLOGY``.
    """

    shape: ApertureShape
    fov: float
    pixel_scale: float
    redshift: float
    cosmology: object = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'shape', ApertureShape.parse(self.shape))
        if not self.fov > 0:
            raise ConfigurationError('fov', f"must be > 0, got {self.fov}")
        if not self.pixel_scale > 0:
            raise ConfigurationError(
                'pixel_scale', f"must be > 0, got {self.pixel_scale}"
            )
        if self.pixel_scale > self.fov:
            raise ConfigurationError(
                'pixel_scale',
                f"pixel_scale={self.pixel_scale} exceeds fov={self.fov}",
            )
        # validates redshift as a side effect
        object.__setattr__(
            self, '_arcsec_per_kpc', arcsec_per_kpc(self.redshift, self.cosmology)
        )

    @property
    def n_pix(self) -> int:
        return int(np.ceil(self.fov / self.pixel_scale - 1e-9))

    @property
    def arcsec_per_kpc(self) -> float:
        return self._arcsec_per_kpc

    @property
    def kpc_per_pixel(self) -> float:
        return self.pixel_scale / self._arcsec_per_kpc

    @property
    def half_width(self) -> float:
        """Largest distance (arcsec) from the centre covered by the fov."""
        return self.fov / 2.0

    @property
    def edges(self) -> np.ndarray:
        """Pixel edges along either axis, arcsec."""
        extent = self.n_pix * self.pixel_scale
        return np.linspace(-extent / 2.0, extent / 2.0, self.n_pix + 1)

    @property
    def centers(self) -> np.ndarray:
        """Pixel centres along either axis, arcsec."""
        e = self.edges
        return 0.5 * (e[:-1] + e[1:])

    def grid(self) -> Tuple[np.ndarray, np.ndarray]:
        """Pixel centre coordinates (X, Y) in arcsec, indexed [ix, iy]."""
        c = self.centers
        return np.meshgrid(c, c, indexing='ij')

    @property
    def footprint(self) -> np.ndarray:
        """Boolean (n_pix, n_pix) map of pixels inside the aperture."""
        X, Y = self.grid()
        radius = self.fov / 2.0
        if self.shape is ApertureShape.CIRCULAR:
            return X**2 + Y**2 <= radius**2
        elif self.shape is ApertureShape.SQUARE:
            return np.ones_like(X, dtype=bool)
        elif self.shape is ApertureShape.HEXAGONAL:
            return _hexagon_contains(X, Y, radius)
        raise ConfigurationError('aperture_shape', f"unhandled shape {self.shape}")

    def kpc_to_arcsec(self, values_kpc: np.ndarray) -> np.ndarray:
        return np.asarray(values_kpc) * self._arcsec_per_kpc

    def pixel_index(
        self, x_arcsec: np.ndarray, y_arcsec: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Map sky positions to pixel indices.

        Returns
        -------
        ix, iy : np.ndarray
            Integer pixel indices (clipped into range).
        inside : np.ndarray
            True where the position lands on a pixel of the footprint.
        """
        e0 = self.edges[0]
        ix = np.floor((np.asarray(x_arcsec) - e0) / self.pixel_scale).astype(np.int64)
        iy = np.floor((np.asarray(y_arcsec) - e0) / self.pixel_scale).astype(np.int64)
        on_grid = (ix >= 0) & (ix < self.n_pix) & (iy >= 0) & (iy < self.n_pix)
        ix = np.clip(ix, 0, self.n_pix - 1)
        iy = np.clip(iy, 0, self.n_pix - 1)
        inside = on_grid & self.footprint[ix, iy]
        return ix, iy, inside
