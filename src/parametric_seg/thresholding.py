"""
Intensity thresholding for the segmentation plugins.

This module implements:
- Bimodal threshold estimation (minimum combined within-class variance on
  sorted log intensities)
- Percentage-of-range global thresholding
- Locally adaptive (Bradley-style mean) thresholding combined with a global
  intensity floor
- Automatic radius/threshold estimation for the adaptive plugin

Thresholds exchanged between layers are percentages (0-100) of the observed
intensity range, so the same slider value means the same thing on 8-bit,
16-bit and float images.
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy import ndimage
from scipy.cluster.vq import kmeans2
from skimage import filters

from parametric_seg.denoising import CROSS, gaussian_smooth, median_filter

logger = logging.getLogger(__name__)

# Padding applied around masks before erosion so the image border does not erode
CLEANUP_PAD = 3


@dataclass
class BimodalEstimate:
    """Output of the bimodal threshold estimator."""

    threshold: float  # Percent of intensity range (0-100)
    radius: float = 3.0  # Heuristic default: small radius keeps refinement fast
    shrink_factor: float = 0.5  # Heuristic default for alpha-shape fitting

    def as_vector(self) -> list[float]:
        """Parameter vector in the order [threshold, radius, shrink_factor]."""
        return [float(self.threshold), float(self.radius), float(self.shrink_factor)]


def percentage_to_intensity(image: np.ndarray, percentage: float) -> float:
    """
    Convert a 0-100 percentage of the image's range into an intensity.

    Args:
        image: Array whose min/max define the range
        percentage: Percent of (max - min) above min

    Returns:
        min + (max - min) * percentage / 100
    """
    mn = float(np.min(image))
    mx = float(np.max(image))
    return mn + (mx - mn) * (percentage / 100.0)


def estimate_bimodal_threshold(image: np.ndarray) -> BimodalEstimate:
    """
    Estimate a foreground/background threshold for a bimodal image.

    Algorithm:
    1. 3x3 median filter (suppresses shot noise while keeping edges)
    2. Log-compress intensities: x = log2(I - min + 1)
    3. Sort x and build prefix sums of x and x^2 in one pass; suffix sums
       come from subtracting the prefix from the total
    4. For every split i, cost = var(x[:i+1]) + var(x[i+1:])
    5. Take the split with minimum cost, undo the log, and express the
       intensity as a percentage of the filtered image's range

    This is O(n log n), dominated by the sort.

    Args:
        image: 2D single-channel image

    Returns:
        BimodalEstimate with the threshold percentage and companion defaults.
        A constant image gives threshold 50.0 (midpoint of the range).
    """
    filtered = median_filter(image, 3)
    mn = float(filtered.min())
    mx = float(filtered.max())

    if mx <= mn or filtered.size < 2:
        logger.debug("Constant image, falling back to midpoint threshold")
        return BimodalEstimate(threshold=50.0)

    x = np.sort(np.log2(filtered.ravel() - mn + 1.0))
    n = x.size

    cy = np.cumsum(x)
    cy2 = np.cumsum(x ** 2)
    ry = cy[-1] - cy
    ry2 = cy2[-1] - cy2

    # Class sizes for a split after sample i
    n_fwd = np.arange(1, n + 1, dtype=np.float64)
    n_bwd = n - n_fwd

    # The last split leaves the backward class empty and is excluded
    n_fwd = n_fwd[:-1]
    n_bwd = n_bwd[:-1]
    var_fwd = cy2[:-1] / n_fwd - (cy[:-1] / n_fwd) ** 2
    var_bwd = ry2[:-1] / n_bwd - (ry[:-1] / n_bwd) ** 2

    # Cancellation in the running sums can give tiny negative variances
    cost = np.clip(var_fwd, 0, None) + np.clip(var_bwd, 0, None)
    idx = int(np.argmin(cost))

    intensity = 2.0 ** x[idx] - 1.0 + mn
    threshold = (intensity - mn) / (mx - mn) * 100.0

    return BimodalEstimate(threshold=float(np.clip(threshold, 0.0, 100.0)))


def threshold_image(image: np.ndarray, percentage: float) -> np.ndarray:
    """
    Median filter, then binarize at a percentage of the filtered range.

    Args:
        image: 2D image
        percentage: Threshold as percent of range (0-100)

    Returns:
        Boolean mask
    """
    filtered = median_filter(image, 3)
    return filtered > percentage_to_intensity(filtered, percentage)


def hard_threshold(image: np.ndarray, threshold: float) -> np.ndarray:
    """Median filter, then binarize at an absolute intensity."""
    return median_filter(image, 3) > threshold


def adaptive_threshold_surface(image: np.ndarray, radius: float) -> np.ndarray:
    """
    Compute a locally adaptive threshold surface (bright foreground).

    The image is median filtered, then each pixel's threshold is the mean of
    a (2*ceil(radius)+1)^2 neighbourhood.

    Args:
        image: 2D image
        radius: Neighbourhood radius in pixels

    Returns:
        Threshold surface with the same shape as image
    """
    filtered = median_filter(image, 3)
    window = 2 * int(np.ceil(max(radius, 0.0))) + 1
    return filters.threshold_local(filtered, block_size=window, method='mean', offset=0, mode='reflect')


def _remove_specks(mask: np.ndarray) -> np.ndarray:
    """
    Remove isolated foreground pixels with a cross-shaped opening.

    The mask is zero-padded before erosion and cropped back afterwards,
    then dilated with the same element.
    """
    padded = np.pad(mask.astype(bool), CLEANUP_PAD, mode='constant', constant_values=False)
    eroded = ndimage.binary_erosion(padded, structure=CROSS)
    eroded = eroded[CLEANUP_PAD:-CLEANUP_PAD, CLEANUP_PAD:-CLEANUP_PAD]
    return ndimage.binary_dilation(eroded, structure=CROSS)


def mask_to_coordinates(mask: np.ndarray) -> np.ndarray:
    """Return (x, y) = (column, row) coordinates of the True pixels as an (N, 2) float array."""
    rows, cols = np.nonzero(mask)
    return np.column_stack([cols, rows]).astype(np.float64)


def threshold_and_binarize(
    image: np.ndarray,
    surface: np.ndarray,
    percentage: float
) -> np.ndarray:
    """
    Combine the adaptive threshold with a global brightness floor.

    Algorithm:
    1. Floor mask: raw intensity > min + range * percentage / 100
    2. Adaptive mask: raw intensity > threshold surface
    3. Mask = adaptive AND floor
    4. Remove single-pixel specks (pad, erode with cross, crop, dilate)

    Args:
        image: Raw 2D image
        surface: Threshold surface from adaptive_threshold_surface
        percentage: Global floor as percent of range (0-100)

    Returns:
        (N, 2) array of (x, y) foreground pixel coordinates
    """
    image = np.asarray(image, dtype=np.float64)
    if surface.shape != image.shape:
        raise ValueError(
            f"Threshold surface shape {surface.shape} does not match image shape {image.shape}"
        )

    floor = image > percentage_to_intensity(image, percentage)
    adaptive = image > surface
    mask = adaptive * floor

    return mask_to_coordinates(_remove_specks(mask))


def estimate_bradley_params(image: np.ndarray) -> list[float]:
    """
    Estimate [radius, threshold, shrink_factor] for the adaptive plugin.

    The radius comes from the most common magnitude in the Fourier transform
    of the median-filtered Laplacian; it should exceed the feature size. The
    threshold is the brighter of two k-means centres, as percent of range.

    Args:
        image: 2D image

    Returns:
        [radius, threshold_percentage, 0.5]
    """
    image = np.asarray(image, dtype=np.float64)
    smoothed = gaussian_smooth(image, 1.0)
    laplacian = ndimage.laplace(smoothed, mode='reflect')
    laplacian = median_filter(laplacian, 3)

    magnitudes = np.abs(np.real(np.fft.fft2(laplacian))).ravel()
    counts, edges = np.histogram(magnitudes, bins='auto')
    diameter = edges[int(np.argmax(counts)) + 1]
    radius = float(np.ceil(diameter / 2))

    filtered = median_filter(image, 3)
    mn = float(filtered.min())
    mx = float(filtered.max())
    if mx <= mn:
        return [radius, 50.0, 0.5]

    # Seeded at the range extremes so the estimate is deterministic
    centroids, _ = kmeans2(filtered.ravel(), np.array([mn, mx]), minit='matrix')
    threshold = (float(np.max(centroids)) - mn) / (mx - mn) * 100.0

    return [radius, float(np.clip(threshold, 0.0, 100.0)), 0.5]
