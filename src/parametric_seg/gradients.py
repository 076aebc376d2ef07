"""
Gradient-magnitude segmentation.

Two plugin families build on the central-difference gradient magnitude:
- gradient sifting: threshold a smoothed image's gradient, clean it up
  morphologically, then keep components of a given size
- disordered gradient: contrast-stretch and smooth, clip the background,
  threshold the local entropy of the gradient magnitude, and wrap the
  result in its convex hull
"""

import logging

import numpy as np
from scipy import ndimage
from scipy.cluster.vq import kmeans2
from skimage import filters, morphology, util

from parametric_seg.denoising import gaussian_smooth, median_filter
from parametric_seg.sifting import SQUARE, component_areas, points_from_mask
from parametric_seg.thresholding import estimate_bimodal_threshold

logger = logging.getLogger(__name__)

GRADIENT_SMOOTHING_SIGMA = 2.5
ENTROPY_WINDOW = 9
CONTRAST_CLIP = 0.01


def gradient_magnitude(image: np.ndarray) -> np.ndarray:
    """Magnitude of the [-1, 0, 1] central differences, symmetric padding."""
    image = np.asarray(image, dtype=np.float64)
    kernel = np.array([-1.0, 0.0, 1.0])
    gx = ndimage.correlate1d(image, kernel, axis=1, mode='reflect')
    gy = ndimage.correlate1d(image, kernel, axis=0, mode='reflect')
    return np.hypot(gx, gy)


def gradient_threshold(image: np.ndarray, percentage: float) -> np.ndarray:
    """
    Threshold the gradient magnitude of a smoothed image.

    Algorithm:
    1. Gaussian blur (sigma 2.5)
    2. Gradient magnitude
    3. Keep pixels above percentage/100 of the maximum magnitude
    4. 3x3 opening then closing

    Args:
        image: 2D image
        percentage: Threshold as percent of the maximum gradient (0-100)

    Returns:
        Boolean mask of strong-gradient regions
    """
    magnitude = gradient_magnitude(gaussian_smooth(image, GRADIENT_SMOOTHING_SIGMA))
    mask = magnitude > magnitude.max() * (percentage / 100.0)
    mask = ndimage.binary_opening(mask, structure=SQUARE)
    return ndimage.binary_closing(mask, structure=SQUARE)


def rescale_and_smooth(image: np.ndarray, sigma: float) -> np.ndarray:
    """
    Contrast-stretch to 0-100 and blur.

    The median-filtered image is mapped so its 1% and 99% points of the
    intensity range land on 0 and 100, negatives are clipped, and a Gaussian
    blur of `sigma` is applied. sigma <= 0 returns the image as float.
    """
    image = np.asarray(image, dtype=np.float64)
    if sigma <= 0:
        return image

    filtered = median_filter(image, 3)
    mn = float(filtered.min())
    value_range = float(filtered.max()) - mn
    low = mn + CONTRAST_CLIP * value_range
    high = mn + (1 - CONTRAST_CLIP) * value_range

    stretched = np.maximum(0.0, (filtered - low) / (high - low + np.finfo(np.float64).eps)) * 100.0
    return gaussian_smooth(stretched, sigma)


def clip_image(image: np.ndarray, percentage: float) -> np.ndarray:
    """Subtract percentage/100 of the intensity range and clip at zero."""
    image = np.asarray(image, dtype=np.float64)
    offset = (percentage / 100.0) * float(np.ptp(image))
    return np.maximum(image - offset, 0.0)


def segment_by_inverted_gradient(image: np.ndarray, threshold: float) -> np.ndarray:
    """
    Threshold the local entropy of the gradient magnitude.

    The gradient magnitude is scaled to 8 bits by its maximum and its
    entropy is taken over a 9x9 window. Pixels above
    min + threshold * (max - min) of the entropy map are kept.

    Args:
        image: 2D image
        threshold: Fraction of the entropy range (0-1)

    Returns:
        Boolean mask
    """
    magnitude = gradient_magnitude(image)
    peak = float(magnitude.max())
    scaled = magnitude / peak if peak > 0 else magnitude
    entropy = filters.rank.entropy(
        util.img_as_ubyte(np.clip(scaled, 0.0, 1.0)),
        np.ones((ENTROPY_WINDOW, ENTROPY_WINDOW), dtype=np.uint8)
    )

    mn = float(entropy.min())
    mx = float(entropy.max())
    return entropy > mn + threshold * (mx - mn)


def mask_convex_hull(mask: np.ndarray) -> np.ndarray:
    """
    Convex boundary polygon of all foreground in a mask.

    Returns:
        Closed (N, 2) polygon of (x, y) vertices, or an empty (0, 2) array
        for an empty mask
    """
    mask = np.asarray(mask, dtype=bool)
    if not mask.any():
        return np.empty((0, 2), dtype=np.float64)

    hull = morphology.convex_hull_image(mask)
    hull = ndimage.binary_closing(hull, structure=SQUARE)
    return points_from_mask(hull)


def estimate_gradient_params(image: np.ndarray) -> list[float]:
    """
    [sigma, threshold, entropy_threshold] for the disordered-gradient plugin.

    Sigma is fixed at 3. The clipping threshold is the bimodal estimate on
    the rescaled, smoothed image. The entropy threshold is the midpoint of
    two k-means centres of the normalised gradient magnitude.
    """
    image = np.asarray(image, dtype=np.float64)
    sigma = 3.0
    threshold = estimate_bimodal_threshold(rescale_and_smooth(image, sigma)).threshold

    magnitude = gradient_magnitude(image)
    peak = float(magnitude.max())
    if peak <= 0:
        return [sigma, threshold, 0.1]

    magnitude = magnitude / peak
    centroids, _ = kmeans2(magnitude.ravel(), np.array([0.0, 1.0]), minit='matrix')
    entropy_threshold = float(np.clip(np.mean(centroids), 0.0, 1.0))

    return [sigma, threshold, entropy_threshold]


def estimate_gradient_sift_params(image: np.ndarray) -> list[float]:
    """
    [gradient_threshold, size, tolerance] for gradient sifting.

    The gradient threshold is the midpoint of two k-means centres of the
    smoothed gradient magnitude, as percent of its maximum. Size and tolerance are
    the mean and three standard deviations of the resulting component areas.
    """
    magnitude = gradient_magnitude(gaussian_smooth(image, GRADIENT_SMOOTHING_SIGMA))
    peak = float(magnitude.max())
    if peak <= 0:
        return [5.0, 50.0, 100.0]

    centroids, _ = kmeans2((magnitude / peak).ravel(), np.array([0.0, 1.0]), minit='matrix')
    percentage = float(np.clip(np.mean(centroids) * 100.0, 0.0, 100.0))

    _, areas = component_areas(gradient_threshold(image, percentage))
    areas = areas[1:]
    if len(areas) == 0:
        return [percentage, 50.0, 100.0]

    return [percentage, float(np.mean(areas)), float(3 * np.std(areas))]
