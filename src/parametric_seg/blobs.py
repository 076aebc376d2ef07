"""
Blob detection and blob hull extraction.

Steps used by the blob-hull plugin:
1. Clipped Laplacian of Gaussian (blob saliency)
2. Non-maximum suppression of the response, gated by a global intensity floor
3. Alpha-shape hull around the surviving peaks, pushed outward by sigma
   (peaks sit inside blobs, the visible blob edge is about sigma further out)

The blob-detect plugin instead subtracts a local minimum, thresholds and
fills the result, and reports component centroids.
"""

import logging

import numpy as np
from scipy import ndimage
from scipy.ndimage import gaussian_filter
from skimage import morphology

from parametric_seg.denoising import CROSS, median_filter
from parametric_seg.hull import alpha_shape, deduplicate_points
from parametric_seg.thresholding import mask_to_coordinates, percentage_to_intensity

logger = logging.getLogger(__name__)

MIN_SIGMA = 0.1
NORMAL_SMOOTHING_WINDOW = 5


def clipped_log(image: np.ndarray, sigma: float) -> np.ndarray:
    """
    Laplacian of Gaussian with negative values clipped to zero.

    Args:
        image: 2D image
        sigma: Gaussian scale (floored at 0.1)

    Returns:
        Non-negative response image
    """
    sigma = max(float(sigma), MIN_SIGMA)
    smoothed = gaussian_filter(np.asarray(image, dtype=np.float64), sigma=sigma, mode='nearest', truncate=2.0)
    # 5-point Laplacian, replicate padding
    response = ndimage.laplace(smoothed, mode='nearest')
    return np.maximum(response, 0)


def threshold_blobs(
    image: np.ndarray,
    response: np.ndarray,
    percentage: float
) -> np.ndarray:
    """
    Select blob peak pixels from a saliency response.

    A pixel is kept if it equals the maximum of its 3x3 neighbourhood in
    `response` and its raw intensity exceeds min + range * percentage / 100.
    Kept pixels are dilated with a cross so the point cloud stays connected.

    Args:
        image: Raw 2D image
        response: Saliency image (e.g. from clipped_log), same shape
        percentage: Intensity floor as percent of range (0-100)

    Returns:
        (N, 2) array of (x, y) coordinates
    """
    image = np.asarray(image, dtype=np.float64)
    is_peak = ndimage.grey_dilation(response, size=(3, 3), mode='nearest') == response
    floor = image > percentage_to_intensity(image, percentage)

    mask = ndimage.binary_dilation(is_peak & floor, structure=CROSS)
    return mask_to_coordinates(mask)


def _outward_normals(polygon: np.ndarray) -> np.ndarray:
    """
    Smoothed unit outward normals for an open ring of vertices.

    The tangent at vertex i is the sum of the backward and forward edge
    vectors, p[i+1] - p[i-1]. Tangents are normalised, averaged over a
    circular 5-vertex window, and rotated by 90 degrees.
    """
    eps = np.finfo(np.float64).eps

    tangent = np.roll(polygon, -1, axis=0) - np.roll(polygon, 1, axis=0)
    tangent /= np.maximum(eps, np.linalg.norm(tangent, axis=1, keepdims=True))
    tangent = ndimage.uniform_filter1d(tangent, size=NORMAL_SMOOTHING_WINDOW, axis=0, mode='wrap')

    x = polygon[:, 0]
    y = polygon[:, 1]
    signed_area = 0.5 * np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y)

    if signed_area >= 0:
        normal = np.column_stack([tangent[:, 1], -tangent[:, 0]])
    else:
        normal = np.column_stack([-tangent[:, 1], tangent[:, 0]])

    return normal / np.maximum(eps, np.linalg.norm(normal, axis=1, keepdims=True))


def blob_hull(points: np.ndarray, sigma: float, shrink_factor: float) -> np.ndarray:
    """
    Fit a boundary around blob peaks and offset it outward by sigma.

    Algorithm:
    1. Merge near-duplicate points (closer than sqrt(2))
    2. Alpha shape over the remaining points
    3. Smoothed outward normal at each boundary vertex
    4. Move every vertex sigma along its normal

    Boundary fitting failures (fewer than 3 points, collinear points,
    triangulation errors) are not raised; the result is empty instead.

    Args:
        points: (N, 2) array of (x, y) peak coordinates
        sigma: Smoothing scale used to find the peaks (floored at 0.1)
        shrink_factor: Alpha-shape shrink factor (0 convex, 1 tight)

    Returns:
        (M, 2) closed polygon (first vertex repeated last), or an empty
        (0, 2) array when no boundary can be fitted
    """
    empty = np.empty((0, 2), dtype=np.float64)
    sigma = max(float(sigma), MIN_SIGMA)

    try:
        unique = deduplicate_points(points)
        if len(unique) < 3:
            logger.debug(f"Blob hull skipped: only {len(unique)} distinct points")
            return empty

        idx = alpha_shape(unique, shrink_factor)
        ring = unique[idx[:-1]]
        offset = ring + sigma * _outward_normals(ring)
    except Exception as e:
        logger.debug(f"Blob hull fitting failed: {e}")
        return empty

    return np.vstack([offset, offset[:1]])


def simple_alpha_shape(points: np.ndarray, shrink_factor: float) -> np.ndarray:
    """
    Alpha-shape boundary of a point cloud after merging near-duplicates.

    Args:
        points: (N, 2) array of (x, y) coordinates
        shrink_factor: Alpha-shape shrink factor (0 convex, 1 tight)

    Returns:
        Closed (M, 2) polygon, or an empty (0, 2) array when fewer than 3
        distinct points remain
    """
    unique = deduplicate_points(points)
    if len(unique) < 3:
        logger.debug(f"Alpha shape skipped: only {len(unique)} distinct points")
        return np.empty((0, 2), dtype=np.float64)

    return unique[alpha_shape(unique, shrink_factor)]


def reduce_local_differences(image: np.ndarray, radius: float) -> np.ndarray:
    """
    Subtract the local minimum over a disk, clipped at zero.

    The median-filtered image minus its grey erosion by a disk of `radius`
    (rounded, at least 1) removes slowly varying background so blobs of
    different brightness become comparable.
    """
    filtered = median_filter(image, 3)
    footprint = morphology.disk(max(int(round(radius)), 1)).astype(bool)
    background = ndimage.minimum_filter(filtered, footprint=footprint, mode='reflect')
    return np.maximum(filtered - background, 0)


def threshold_and_fill(image: np.ndarray, percentage: float) -> np.ndarray:
    """
    Binarize at a percentage of the range, open with a cross, fill holes.

    Args:
        image: 2D image
        percentage: Threshold as percent of range (0-100)

    Returns:
        Boolean mask
    """
    mask = image > percentage_to_intensity(image, percentage)
    mask = ndimage.binary_opening(mask, structure=CROSS)
    return ndimage.binary_fill_holes(mask)
