"""
Connected-component size sifting.

Masks are labelled with 8-connectivity and components are kept or dropped
by area. Three selection rules are provided:
- rank window: keep areas between two percentiles of the sorted area list
- target window: keep areas around a target rank, +/- a rank tolerance
- absolute window: keep areas within target +/- tolerance pixels
"""

import logging

import numpy as np
from scipy import ndimage
from skimage import measure

from parametric_seg.denoising import median_filter
from parametric_seg.hull import alpha_shape, deduplicate_points
from parametric_seg.thresholding import (
    estimate_bimodal_threshold,
    mask_to_coordinates,
    percentage_to_intensity,
)

logger = logging.getLogger(__name__)

SQUARE = np.ones((3, 3), dtype=bool)


def component_areas(mask: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Label a mask and measure its components.

    Returns:
        (labels, areas) where areas[k] is the pixel count of label k and
        areas[0] is the background
    """
    labels = measure.label(np.asarray(mask, dtype=bool), connectivity=2)
    areas = np.bincount(labels.ravel())
    return labels, areas


def keep_areas_between(mask: np.ndarray, min_area: float, max_area: float) -> np.ndarray:
    """Keep components whose area lies in [min_area, max_area]."""
    labels, areas = component_areas(mask)
    keep = (areas >= min_area) & (areas <= max_area)
    keep[0] = False
    return keep[labels]


def _rank_to_area(sorted_areas: np.ndarray, rank: int) -> int:
    """Area at a 1-based rank, clamped into the list."""
    rank = min(max(int(rank), 1), len(sorted_areas))
    return int(sorted_areas[rank - 1])


def filter_by_size(mask: np.ndarray, min_size: float, max_size: float) -> np.ndarray:
    """
    Keep components between two percentiles of the area ranking.

    Args:
        mask: 2D boolean mask
        min_size: Lower bound as percent of the sorted component list (0-100)
        max_size: Upper bound as percent of the sorted component list (0-100);
            swapped with min_size if smaller

    Returns:
        Filtered boolean mask
    """
    labels, areas = component_areas(mask)
    sorted_areas = np.sort(areas[1:])
    n_objects = len(sorted_areas)
    if n_objects < 1:
        return np.zeros(labels.shape, dtype=bool)

    if min_size > max_size:
        min_size, max_size = max_size, min_size

    lower = _rank_to_area(sorted_areas, np.floor(min_size / 100.0 * n_objects))
    upper = _rank_to_area(sorted_areas, np.ceil(max_size / 100.0 * n_objects))
    logger.debug(f"Size filter: {n_objects} components, keeping areas {lower}-{upper}")

    return keep_areas_between(mask, lower, upper)


def filter_by_target_size(mask: np.ndarray, target: float, tolerance: float) -> np.ndarray:
    """
    Keep components whose area rank lies near a target rank.

    Args:
        mask: 2D boolean mask
        target: Target rank as percent of the sorted component list (0-100)
        tolerance: Width of the rank window as percent of the list (0-100),
            centred on the target

    Returns:
        Filtered boolean mask
    """
    labels, areas = component_areas(mask)
    sorted_areas = np.sort(areas[1:])
    n_objects = len(sorted_areas)
    if n_objects < 1:
        return np.zeros(labels.shape, dtype=bool)

    centre = target / 100.0 * n_objects
    half_width = tolerance / 100.0 * n_objects / 2.0

    lower = _rank_to_area(sorted_areas, np.floor(centre - half_width))
    upper = _rank_to_area(sorted_areas, np.ceil(centre + half_width))

    return keep_areas_between(mask, lower, upper)


def sift_mask(mask: np.ndarray, size: float, tolerance: float) -> np.ndarray:
    """
    Keep components of size +/- tolerance pixels, then fill holes.

    The lower bound is at least one pixel.
    """
    lower = max(size - tolerance, 1.0)
    upper = max(size + tolerance, 1.0)
    return ndimage.binary_fill_holes(keep_areas_between(mask, lower, upper))


def points_from_mask(mask: np.ndarray) -> np.ndarray:
    """
    Convex boundary around the outer edge pixels of a mask.

    Edge pixels are those added by one 3x3 dilation. They are merged within
    sqrt(2) and wrapped with a zero-shrink alpha shape.

    Returns:
        Closed (N, 2) polygon of (x, y) vertices, or an empty (0, 2) array
        when fewer than 3 distinct edge points exist
    """
    mask = np.asarray(mask, dtype=bool)
    edge = ndimage.binary_dilation(mask, structure=SQUARE) != mask
    points = deduplicate_points(mask_to_coordinates(edge))
    if len(points) < 3:
        return np.empty((0, 2), dtype=np.float64)

    return points[alpha_shape(points, 0.0)]


def _threshold_mask(image: np.ndarray) -> tuple[float, np.ndarray]:
    """Bimodal threshold percentage and the mask it gives on the median-filtered image."""
    threshold = estimate_bimodal_threshold(image).threshold
    filtered = median_filter(image, 3)
    return threshold, filtered > percentage_to_intensity(filtered, threshold)


def estimate_sift_params(image: np.ndarray) -> list[float]:
    """
    [threshold, min_size, max_size] for rank-window sifting.

    The threshold comes from the bimodal estimator. The size window spans
    the 1st to 99th percentile of the component ranking, or everything when
    the threshold finds no component.
    """
    threshold, mask = _threshold_mask(image)
    _, areas = component_areas(mask)
    if len(areas) < 2:
        return [threshold, 0.0, 100.0]
    return [threshold, 1.0, 99.0]


def estimate_tolerance_params(image: np.ndarray) -> list[float]:
    """
    [threshold, target, tolerance] for target-window sifting.

    The target is the rank (percent of components) of the mean area. The
    tolerance covers the mean plus three standard deviations of area,
    relative to the area range, capped at 100.
    """
    threshold, mask = _threshold_mask(image)
    _, areas = component_areas(mask)
    areas = areas[1:]
    if len(areas) == 0:
        return [threshold, 50.0, 100.0]

    mean_area = float(np.mean(areas))
    target = 100.0 * np.count_nonzero(areas <= mean_area) / len(areas)

    area_range = float(areas.max() - areas.min())
    if area_range <= 0:
        return [threshold, target, 100.0]

    tolerance = np.ceil((mean_area + 3 * float(np.std(areas))) / area_range * 100.0)
    return [threshold, target, float(min(tolerance, 100.0))]
