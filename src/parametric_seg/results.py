"""
Result typing and conversion for segmentation outputs.

A pipeline's final artifact is one of:
- a binary mask (bool array)
- a label array (unsigned 8/16-bit integers)
- a contour (N x 2 float array of (x, y) vertices, first == last)
- a point cloud (N x 2 float array of (x, y) points, open)

This module classifies artifacts, converts between masks and point sets,
validates stored per-slice results before stacking them into a volume, and
rescales 3D point tables to isotropic pixel or micron coordinates.
"""

import logging
from enum import Enum
from typing import Any, Mapping, Sequence, Union

import numpy as np
import pandas as pd
from skimage import draw, measure

from parametric_seg.errors import TypeMismatchError
from parametric_seg.hull import alpha_shape, deduplicate_points
from parametric_seg.morphology import boundary_pixels
from parametric_seg.thresholding import mask_to_coordinates

logger = logging.getLogger(__name__)

# dtypes accepted as raster segmentation results
MASK_DTYPES = (np.bool_, np.uint8, np.uint16)

# Shrink factor used when a multi-component mask is reduced to one boundary
MULTI_COMPONENT_SHRINK = 0.9


class ArtifactKind(str, Enum):
    IMAGE = 'image'
    MASK = 'mask'
    LABEL = 'label'
    CONTOUR = 'contour'
    POINTCLOUD = 'pointcloud'
    EMPTY = 'empty'


# Kinds that count as a segmentation result (valid pipeline stop points)
SEGMENTATION_KINDS = frozenset({
    ArtifactKind.MASK,
    ArtifactKind.LABEL,
    ArtifactKind.CONTOUR,
    ArtifactKind.POINTCLOUD,
})


def _is_point_set(data: np.ndarray) -> bool:
    return data.ndim == 2 and data.shape[1] == 2 and np.issubdtype(data.dtype, np.floating)


def classify_result(artifact: Any) -> ArtifactKind:
    """
    Determine what kind of artifact a layer produced.

    Args:
        artifact: Array-like layer output (or None)

    Returns:
        ArtifactKind. Two-column float arrays are point sets: contours when
        the first and last points coincide, point clouds otherwise.
    """
    if artifact is None:
        return ArtifactKind.EMPTY

    data = np.asarray(artifact)
    if data.size == 0:
        return ArtifactKind.EMPTY

    if _is_point_set(data):
        if len(data) > 2 and np.array_equal(data[0], data[-1]):
            return ArtifactKind.CONTOUR
        return ArtifactKind.POINTCLOUD

    if data.dtype == np.bool_:
        return ArtifactKind.MASK
    if data.dtype in (np.uint8, np.uint16) or np.issubdtype(data.dtype, np.signedinteger):
        return ArtifactKind.LABEL

    return ArtifactKind.IMAGE


def result_to_mask(artifact: Any, shape: tuple[int, int]) -> np.ndarray:
    """
    Rasterise a segmentation result.

    Args:
        artifact: Mask, label array, contour or point cloud
        shape: (rows, cols) of the output raster

    Returns:
        Boolean mask for point sets (polygon fill) and empty results; masks
        and label arrays are returned unchanged

    Raises:
        TypeMismatchError: artifact is a plain intensity image
    """
    kind = classify_result(artifact)

    if kind is ArtifactKind.EMPTY:
        return np.zeros(shape, dtype=bool)
    if kind in (ArtifactKind.MASK, ArtifactKind.LABEL):
        return np.asarray(artifact)
    if kind in (ArtifactKind.CONTOUR, ArtifactKind.POINTCLOUD):
        points = np.asarray(artifact)
        # polygon2mask expects (row, col) vertices
        return draw.polygon2mask(shape, points[:, ::-1])

    raise TypeMismatchError(f"Cannot convert an intensity image of dtype {np.asarray(artifact).dtype} to a mask")


def mask_to_points(mask: np.ndarray) -> np.ndarray:
    """
    Convert a mask to a boundary point set.

    A single connected component gives its traced outline. Several
    components are merged into one alpha-shape boundary around all of
    their edge pixels.

    Args:
        mask: 2D boolean mask

    Returns:
        (N, 2) array of (x, y) boundary points, or an empty (0, 2) array
    """
    mask = np.asarray(mask, dtype=bool)
    labels, n_components = measure.label(mask, return_num=True)

    if n_components == 0:
        return np.empty((0, 2), dtype=np.float64)

    if n_components > 1:
        edges = boundary_pixels(mask, structure=np.ones((3, 3), dtype=bool))
        points = deduplicate_points(mask_to_coordinates(edges))
        return points[alpha_shape(points, MULTI_COMPONENT_SHRINK)]

    padded = np.pad(mask, 1, mode='constant').astype(np.float64)
    contours = measure.find_contours(padded, 0.5)
    outline = max(contours, key=len) - 1
    return np.column_stack([outline[:, 1], outline[:, 0]])


def _slice_data(record: Any, field: str) -> np.ndarray:
    if isinstance(record, Mapping):
        if field not in record:
            raise TypeMismatchError(f"Result record has no field '{field}'")
        record = record[field]
    return np.asarray(record)


def extract_volume_results(
    results: Union[Sequence[Any], Mapping[str, Sequence[Any]]],
    field: str = 'Results'
) -> np.ndarray:
    """
    Stack per-slice mask or label results into a volume.

    Args:
        results: Sequence of per-slice results, each either an array or a
            mapping holding the array under `field`; a mapping of `field` to
            such a sequence is also accepted
        field: Key of the result array in each record

    Returns:
        (rows, cols, slices) array

    Raises:
        TypeMismatchError: the results are point sets, or a multi-slice
            raster whose dtype is not bool/uint8/uint16, or slice shapes differ
    """
    if isinstance(results, Mapping):
        if field not in results:
            raise TypeMismatchError(f"Result collection has no field '{field}'")
        results = results[field]

    slices = [_slice_data(record, field) for record in results]
    if not slices:
        raise TypeMismatchError("Result collection is empty")

    first = slices[0]
    is_image_type = first.ndim >= 2 and first.shape[1] > 2
    n_slices = sum(s.shape[2] if s.ndim == 3 else 1 for s in slices)
    is_volume = n_slices > 1
    is_mask_dtype = first.dtype.type in MASK_DTYPES

    if not is_image_type:
        raise TypeMismatchError(
            "Results are not a mask or label matrix. "
            "Please load them as a point cloud instead."
        )
    if is_volume and not is_mask_dtype:
        raise TypeMismatchError(
            f"Results of dtype {first.dtype} are not a mask or label matrix. "
            "Please try loading different results or load as a point cloud."
        )

    try:
        volume = np.concatenate([np.atleast_3d(s) for s in slices], axis=2)
    except ValueError as e:
        raise TypeMismatchError(f"Result slices have inconsistent shapes: {e}") from e

    logger.debug(f"Extracted volume of shape {volume.shape} ({volume.dtype})")
    return volume


def set_points_coordinate_sys(
    table: Union[pd.DataFrame, Mapping[str, Any]],
    xy_pixel_size: float,
    z_spacing: float,
    pixel_units: bool = True
) -> np.ndarray:
    """
    Rescale a 3D point table to isotropic coordinates.

    Z is multiplied by z_spacing / xy_pixel_size so one unit on every axis
    covers the same physical distance. With pixel_units=False all three
    axes are then multiplied by xy_pixel_size (microns).

    Args:
        table: DataFrame (or mapping) with X, Y, Z columns
        xy_pixel_size: Lateral pixel size in microns
        z_spacing: Distance between planes in microns
        pixel_units: True for pixel units, False for microns

    Returns:
        (N, 3) array of [X, Y, Z]
    """
    if xy_pixel_size <= 0:
        raise ValueError(f"xy_pixel_size must be positive, got {xy_pixel_size}")

    frame = table if isinstance(table, pd.DataFrame) else pd.DataFrame(dict(table))
    missing = [c for c in ('X', 'Y', 'Z') if c not in frame.columns]
    if missing:
        raise KeyError(f"Point table is missing columns: {missing}")

    x = frame['X'].to_numpy(dtype=np.float64)
    y = frame['Y'].to_numpy(dtype=np.float64)
    z = frame['Z'].to_numpy(dtype=np.float64) * (z_spacing / xy_pixel_size)

    if not pixel_units:
        x = x * xy_pixel_size
        y = y * xy_pixel_size
        z = z * xy_pixel_size

    return np.column_stack([x, y, z])
