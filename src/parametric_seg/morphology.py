"""
Binary mask refinement and mask-to-boundary conversion.
"""

import logging

import numpy as np
from scipy import ndimage
from skimage import morphology

from parametric_seg.denoising import CROSS
from parametric_seg.hull import alpha_shape, deduplicate_points
from parametric_seg.thresholding import CLEANUP_PAD, mask_to_coordinates

logger = logging.getLogger(__name__)


def refine_mask(mask: np.ndarray, radius: float) -> np.ndarray:
    """
    Regularise a binary mask with disk-shaped morphology.

    Algorithm:
    1. Round radius and build a disk footprint (distance <= radius)
    2. Opening (drops small specks and thin protrusions)
    3. Closing (fills small holes and gaps)
    4. One dilation with the 4-connected cross

    Args:
        mask: 2D boolean mask
        radius: Disk radius in pixels; radius <= 0 returns the mask unchanged

    Returns:
        Refined boolean mask

    Raises:
        ValueError: radius is NaN or infinite
    """
    if not np.isfinite(radius):
        raise ValueError(f"Refinement radius must be finite, got {radius}")
    if radius <= 0:
        return mask

    radius = int(round(radius))
    if radius == 0:
        return mask

    footprint = morphology.disk(radius).astype(bool)

    # Replicate-pad so objects touching the border are not eroded by it
    pad = radius + 1
    padded = np.pad(np.asarray(mask, dtype=bool), pad, mode='edge')
    padded = ndimage.binary_opening(padded, structure=footprint)
    padded = ndimage.binary_closing(padded, structure=footprint)
    refined = padded[pad:-pad, pad:-pad]

    return ndimage.binary_dilation(refined, structure=CROSS)


def boundary_pixels(mask: np.ndarray, structure: np.ndarray = CROSS) -> np.ndarray:
    """
    Boundary pixels of a mask, thickened by one dilation with `structure`.

    The mask is zero-padded before erosion so objects touching the image
    border still get a boundary there.
    """
    padded = np.pad(np.asarray(mask, dtype=bool), CLEANUP_PAD, mode='constant', constant_values=False)
    edge = ndimage.binary_erosion(padded, structure=CROSS) != padded
    edge = edge[CLEANUP_PAD:-CLEANUP_PAD, CLEANUP_PAD:-CLEANUP_PAD]
    return ndimage.binary_dilation(edge, structure=structure)


def mask_to_polygon(mask: np.ndarray, shrink_factor: float) -> np.ndarray:
    """
    Alpha-shape polygon around the boundary pixels of a mask.

    Args:
        mask: 2D boolean mask
        shrink_factor: Alpha-shape shrink factor (0 convex, 1 tight)

    Returns:
        Closed (N, 2) polygon of (x, y) vertices, or an empty (0, 2) array
        when fewer than 3 distinct boundary points remain
    """
    unique = deduplicate_points(mask_to_coordinates(boundary_pixels(mask)))
    if len(unique) < 3:
        return np.empty((0, 2), dtype=np.float64)

    return unique[alpha_shape(unique, shrink_factor)]
