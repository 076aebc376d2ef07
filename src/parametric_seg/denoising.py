"""
Denoising and preprocessing helpers shared by the segmentation plugins.

Padding follows the 'symmetric' convention throughout (scipy mode='reflect'),
so borders do not darken after smoothing.
"""

import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np
from scipy import ndimage
from scipy.ndimage import gaussian_filter
from skimage import color, transform

logger = logging.getLogger(__name__)

# 4-connected (von Neumann) neighbourhood
CROSS = np.array([[0, 1, 0], [1, 1, 1], [0, 1, 0]], dtype=bool)


def gaussian_smooth(image: np.ndarray, sigma: float) -> np.ndarray:
    """
    Separable Gaussian blur with symmetric padding.

    The kernel is truncated at 2 sigma, which gives a window of
    2*ceil(2*sigma)+1 pixels.

    Args:
        image: 2D array
        sigma: Standard deviation of the Gaussian in pixels

    Returns:
        Smoothed float64 image
    """
    return gaussian_filter(np.asarray(image, dtype=np.float64), sigma=sigma, mode='reflect', truncate=2.0)


def median_filter(image: np.ndarray, size: int = 3) -> np.ndarray:
    """Square median filter with symmetric padding."""
    return ndimage.median_filter(np.asarray(image, dtype=np.float64), size=size, mode='reflect')


def median_filter_and_smooth(
    image: np.ndarray,
    size: int = 3,
    sigma: float = 1.6
) -> np.ndarray:
    """Median filter each channel, then apply a Gaussian blur."""
    image = np.asarray(image, dtype=np.float64)
    if image.ndim == 3:
        filtered = np.stack([median_filter(image[..., c], size) for c in range(image.shape[2])], axis=-1)
        return gaussian_filter(filtered, sigma=(sigma, sigma, 0), mode='reflect', truncate=2.0)
    return gaussian_smooth(median_filter(image, size), sigma)


def median_filter_von_neumann(image: np.ndarray) -> np.ndarray:
    """Median over the 4-connected cross neighbourhood (5 pixels)."""
    image = np.asarray(image, dtype=np.float64)
    if image.ndim == 3:
        return np.stack(
            [ndimage.median_filter(image[..., c], footprint=CROSS, mode='reflect')
             for c in range(image.shape[2])],
            axis=-1
        )
    return ndimage.median_filter(image, footprint=CROSS, mode='reflect')


def downsample_upsample(image: np.ndarray, factor: float = 1.5) -> np.ndarray:
    """
    Simple pyramid denoising.

    Median filter, shrink by `factor`, blur (sigma=1.6), then resize back to
    the original shape with cubic interpolation.
    """
    image = np.asarray(image, dtype=np.float64)
    shape = image.shape[:2]
    small_shape = tuple(max(1, int(np.ceil(s / factor))) for s in shape)

    def _one(channel: np.ndarray) -> np.ndarray:
        channel = median_filter(channel, 3)
        channel = transform.resize(channel, small_shape, order=3, mode='symmetric', anti_aliasing=True)
        channel = gaussian_smooth(channel, 1.6)
        return transform.resize(channel, shape, order=3, mode='symmetric')

    if image.ndim == 3:
        return np.stack([_one(image[..., c]) for c in range(image.shape[2])], axis=-1)
    return _one(image)


DENOISERS: dict[str, Callable[[np.ndarray], np.ndarray]] = {
    'median_filter_and_smooth': median_filter_and_smooth,
    'median_filter_von_neumann': median_filter_von_neumann,
    'downsample_upsample': downsample_upsample,
}


@dataclass
class PreprocessOptions:
    """Preprocessing applied to the raw image before it enters the pipeline."""

    square: bool = False  # Square intensities to emphasise differences
    log_scale: bool = False  # I = log(I + 1)
    invert: bool = False  # I = max(I) - I
    denoise: str | None = None  # Key into DENOISERS


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Luminance transform for RGB input; other images pass through."""
    image = np.asarray(image)
    if image.ndim == 3 and image.shape[2] == 3:
        return color.rgb2gray(image)
    return image


def preprocess_image(image: np.ndarray, options: PreprocessOptions | None = None) -> np.ndarray:
    """
    Convert to grayscale float64 and apply the optional preprocessing steps.

    Order: square, log scale, invert, denoise.

    Args:
        image: 2D grayscale or RGB array
        options: Preprocessing flags (no-op if None)

    Returns:
        2D float64 image
    """
    image = np.asarray(to_grayscale(image), dtype=np.float64)
    if options is None:
        return image

    if options.square:
        image = image ** 2
    if options.log_scale:
        image = np.log(image + 1)
    if options.invert:
        image = image.max() - image
    if options.denoise:
        if options.denoise not in DENOISERS:
            raise ValueError(
                f"Unknown denoising method '{options.denoise}'. "
                f"Available: {sorted(DENOISERS)}"
            )
        logger.debug(f"Denoising with {options.denoise}")
        image = DENOISERS[options.denoise](image)

    return image
