"""
PSF convolution of data cubes.

Atmospheric seeing is modelled by one of two analytic profiles, rendered with
GalSim onto the cube's spatial pixel grid:

- Gaussian: sigma = FWHM / 2.3548
- Moffat: beta = 4.765, scale set by the FWHM

Kernels are normalized to unit sum so convolution conserves flux up to what
leaks past the edge of the grid. Every velocity plane of a cube is convolved
with the same kernel using a zero-padded FFT (linear, not circular).

Key functions:
- build_psf: PSFConfig -> galsim.GSObject
- gsobj_to_kernel: GSObject -> normalized, FFT-ready kernel
- convolve_fft_numpy: convolution over the spatial axes of an image or cube
- convolve_cube: convolution of every plane of an (nx, ny, nv) cube
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Tuple

import numpy as np
from scipy import fft as sp_fft
from scipy.fft import next_fast_len

from .errors import ConfigurationError

if TYPE_CHECKING:
    import galsim

FWHM_TO_SIGMA = 1.0 / (2.0 * np.sqrt(2.0 * np.log(2.0)))
MOFFAT_BETA = 4.765


class PSFKind(str, Enum):
    GAUSSIAN = 'gaussian'
    MOFFAT = 'moffat'

    @classmethod
    def parse(cls, value) -> 'PSFKind':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = [k.value for k in cls]
            raise ConfigurationError(
                'psf.kind', f"unknown PSF kind {value!r}, expected one of {valid}"
            )


@dataclass(frozen=True)
class PSFConfig:
    """
    Seeing description.

    Parameters
    ----------
    kind : PSFKind or str
        'gaussian' or 'moffat'.
    fwhm : float
        Full width at half maximum in arcsec.
    """

    kind: PSFKind
    fwhm: float

    def __post_init__(self):
        object.__setattr__(self, 'kind', PSFKind.parse(self.kind))
        if not self.fwhm > 0:
            raise ConfigurationError('psf.fwhm', f"must be > 0, got {self.fwhm}")

    @property
    def sigma(self) -> float:
        """Gaussian-equivalent sigma in arcsec."""
        return self.fwhm * FWHM_TO_SIGMA


def build_psf(config: PSFConfig) -> 'galsim.GSObject':
    """Build the GalSim profile for ``config``."""
    import galsim as gs

    if config.kind is PSFKind.GAUSSIAN:
        return gs.Gaussian(sigma=config.sigma)
    elif config.kind is PSFKind.MOFFAT:
        return gs.Moffat(beta=MOFFAT_BETA, fwhm=config.fwhm)
    raise ConfigurationError('psf.kind', f"unhandled PSF kind {config.kind}")


def gsobj_to_kernel(
    gsobj: 'galsim.GSObject',
    image_shape: Tuple[int, int],
    pixel_scale: float,
) -> Tuple[np.ndarray, np.ndarray, tuple]:
    """
    Render a GalSim profile as a normalized kernel ready for FFT convolution.

    Parameters
    ----------
    gsobj : galsim.GSObject
        PSF profile.
    image_shape : tuple
        Spatial shape of the images this kernel will convolve.
    pixel_scale : float
        arcsec/pixel.

    Returns
    -------
    kernel : np.ndarray
        Odd-sized, unit-sum kernel as rendered.
    kernel_shifted : np.ndarray
        Zero-padded kernel with its centre rolled to (0, 0).
    padded_shape : tuple
        Shape after padding for linear (non-circular) convolution.
    """
    kern_size = gsobj.getGoodImageSize(pixel_scale)
    # the kernel never needs to be wider than twice the image
    kern_size = min(kern_size, 2 * max(image_shape) + 1)
    if kern_size < 3:
        kern_size = 3
    # odd so the centre pixel is well-defined
    if kern_size % 2 == 0:
        kern_size += 1

    kern_img = gsobj.drawImage(nx=kern_size, ny=kern_size, scale=pixel_scale)
    kernel = kern_img.array.astype(np.float64)
    kernel /= kernel.sum()

    n0 = next_fast_len(image_shape[0] + kernel.shape[0] - 1)
    n1 = next_fast_len(image_shape[1] + kernel.shape[1] - 1)
    padded_shape = (n0, n1)

    # np.roll wraps the negative offsets to the end of the padded array
    padded_kernel = np.zeros(padded_shape, dtype=np.float64)
    padded_kernel[: kernel.shape[0], : kernel.shape[1]] = kernel
    half0 = kernel.shape[0] // 2
    half1 = kernel.shape[1] // 2
    padded_kernel = np.roll(padded_kernel, (-half0, -half1), axis=(0, 1))

    return kernel, padded_kernel, padded_shape


def convolve_fft_numpy(
    image: np.ndarray,
    kernel: np.ndarray,
    padded_shape: tuple,
) -> np.ndarray:
    """
    Linear convolution over the first two axes with a padded, centre-rolled
    kernel.

    ``image`` may be a 2D image or an (nx, ny, nv) cube; trailing axes are
    convolved plane by plane with the same kernel. Returns an array of the
    same shape as ``image``.
    """
    n0, n1 = image.shape[:2]
    trailing = image.shape[2:]
    padded = np.zeros(tuple(padded_shape) + trailing, dtype=np.float64)
    padded[:n0, :n1] = image

    kernel_fft = sp_fft.rfft2(kernel)
    kernel_fft = kernel_fft.reshape(kernel_fft.shape + (1,) * len(trailing))
    result = sp_fft.irfft2(
        sp_fft.rfft2(padded, axes=(0, 1)) * kernel_fft, s=padded_shape, axes=(0, 1)
    )
    return result[:n0, :n1]


def convolve_cube(
    cube: np.ndarray,
    kernel: np.ndarray,
    padded_shape: tuple,
) -> np.ndarray:
    """
    Convolve every velocity plane ``cube[:, :, k]`` with the same kernel.

    Parameters
    ----------
    cube : np.ndarray
        Shape (nx, ny, nv).
    kernel : np.ndarray
        Padded, centre-rolled kernel from ``gsobj_to_kernel``.
    padded_shape : tuple
        Padded spatial shape.

    Returns
    -------
    np.ndarray
        Convolved cube, same shape as input. Round-off negatives are clipped.
    """
    return np.clip(convolve_fft_numpy(cube, kernel, padded_shape), 0.0, None)


def psf_kernel_for(
    config: PSFConfig, image_shape: Tuple[int, int], pixel_scale: float
) -> Tuple[np.ndarray, tuple]:
    """Padded kernel and padded shape for convolving images of ``image_shape``."""
    _, padded_kernel, padded_shape = gsobj_to_kernel(
        build_psf(config), image_shape, pixel_scale
    )
    return padded_kernel, padded_shape
