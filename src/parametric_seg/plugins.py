"""
Built-in segmentation plugins.

Each plugin is a factory returning a PipelineSpec. Layer transforms are
registered by name so specs stay picklable for multiprocessing.

Plugins:
- intensity_threshold: percent-of-range threshold -> mask refinement -> alpha-shape polygon
- simple_intensity_threshold: absolute threshold -> mask refinement -> alpha-shape polygon
- bradley_masked: adaptive threshold surface -> floor-masked binarization -> alpha shape
- blob_hull: clipped LoG -> peak thresholding -> sigma-offset blob hull
- detect_blob_centroids: Gaussian blur -> difference of Gaussians -> threshold -> centroids
- threshold_and_sift: threshold -> keep components in an area-rank window -> convex boundary
- tolerance_sift: threshold -> keep components near a target area rank -> convex boundary
- gradient_sift: gradient-magnitude threshold -> keep components of size +/- tolerance pixels
- disordered_gradient: contrast stretch and blur -> clip -> gradient entropy threshold -> convex hull
- blob_detect: local minimum subtraction -> threshold and fill -> centroids
"""

import logging
from typing import Callable

import numpy as np
from scipy import ndimage
from skimage import measure

from parametric_seg.blobs import (
    blob_hull,
    clipped_log,
    reduce_local_differences,
    simple_alpha_shape,
    threshold_and_fill,
    threshold_blobs,
)
from parametric_seg.denoising import CROSS, gaussian_smooth, median_filter
from parametric_seg.errors import ConfigurationError
from parametric_seg.gradients import (
    clip_image,
    estimate_gradient_params,
    estimate_gradient_sift_params,
    gradient_threshold,
    mask_convex_hull,
    rescale_and_smooth,
    segment_by_inverted_gradient,
)
from parametric_seg.morphology import mask_to_polygon, refine_mask
from parametric_seg.pipeline import LayerSpec, Parameter, PipelineSpec, register_transform
from parametric_seg.results import ArtifactKind
from parametric_seg.sifting import (
    estimate_sift_params,
    estimate_tolerance_params,
    filter_by_size,
    filter_by_target_size,
    points_from_mask,
    sift_mask,
)
from parametric_seg.thresholding import (
    adaptive_threshold_surface,
    estimate_bimodal_threshold,
    estimate_bradley_params,
    hard_threshold,
    percentage_to_intensity,
    threshold_and_binarize,
    threshold_image,
)

logger = logging.getLogger(__name__)

PLUGINS: dict[str, Callable[[], PipelineSpec]] = {}


def register_plugin(name: str) -> Callable[[Callable[[], PipelineSpec]], Callable[[], PipelineSpec]]:
    """Decorator registering a plugin factory under `name`."""
    def decorator(factory: Callable[[], PipelineSpec]) -> Callable[[], PipelineSpec]:
        PLUGINS[name] = factory
        return factory
    return decorator


def available_plugins() -> list[str]:
    return sorted(PLUGINS)


def get_plugin(name: str) -> PipelineSpec:
    """
    Build the PipelineSpec of a registered plugin.

    Raises:
        ConfigurationError: no plugin with that name
    """
    try:
        factory = PLUGINS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown plugin '{name}'. Available: {available_plugins()}"
        ) from None
    return factory()


# ---------------------------------------------------------------------------
# Layer transforms: transform(images, params)
# ---------------------------------------------------------------------------

@register_transform('threshold_image')
def _threshold_image(images, params):
    return threshold_image(images[0], params[0])


@register_transform('hard_threshold')
def _hard_threshold(images, params):
    return hard_threshold(images[0], params[0])


@register_transform('refine_mask')
def _refine_mask(images, params):
    return refine_mask(images[0], params[0])


@register_transform('mask_to_polygon')
def _mask_to_polygon(images, params):
    return mask_to_polygon(images[0], params[0])


@register_transform('adaptive_threshold')
def _adaptive_threshold(images, params):
    return adaptive_threshold_surface(images[0], params[0])


@register_transform('threshold_and_binarize')
def _threshold_and_binarize(images, params):
    image, surface = images
    return threshold_and_binarize(image, surface, params[0])


@register_transform('simple_alpha_shape')
def _simple_alpha_shape(images, params):
    return simple_alpha_shape(images[0], params[0])


@register_transform('clipped_log')
def _clipped_log(images, params):
    return clipped_log(images[0], params[0])


@register_transform('threshold_blobs')
def _threshold_blobs(images, params):
    image, response = images
    return threshold_blobs(image, response, params[0])


@register_transform('blob_hull')
def _blob_hull(images, params):
    sigma, shrink_factor = params
    return blob_hull(images[0], sigma, shrink_factor)


@register_transform('gaussian_smooth')
def _gaussian_smooth(images, params):
    return gaussian_smooth(median_filter(images[0], 3), params[0])


@register_transform('difference_of_gaussian')
def _difference_of_gaussian(images, params):
    smoothed, image = images
    return smoothed - gaussian_smooth(median_filter(image, 3), params[0])


@register_transform('threshold_and_open')
def _threshold_and_open(images, params):
    image = images[0]
    mask = image > percentage_to_intensity(image, params[0])
    # Opening with the cross drops single-pixel components
    return ndimage.binary_opening(mask, structure=CROSS)


@register_transform('centroids')
def _centroids(images, params):
    labels = measure.label(images[0])
    centroids = [region.centroid for region in measure.regionprops(labels)]
    if not centroids:
        return np.empty((0, 2), dtype=np.float64)
    rc = np.asarray(centroids, dtype=np.float64)
    return rc[:, ::-1]


@register_transform('filter_by_size')
def _filter_by_size(images, params):
    min_size, max_size = params
    return filter_by_size(images[0], min_size, max_size)


@register_transform('filter_by_target_size')
def _filter_by_target_size(images, params):
    target, tolerance = params
    return filter_by_target_size(images[0], target, tolerance)


@register_transform('points_from_mask')
def _points_from_mask(images, params):
    return points_from_mask(images[0])


@register_transform('gradient_threshold')
def _gradient_threshold(images, params):
    return gradient_threshold(images[0], params[0])


@register_transform('sift_mask')
def _sift_mask(images, params):
    size, tolerance = params
    return sift_mask(images[0], size, tolerance)


@register_transform('rescale_and_smooth')
def _rescale_and_smooth(images, params):
    return rescale_and_smooth(images[0], params[0])


@register_transform('clip_image')
def _clip_image(images, params):
    return clip_image(images[0], params[0])


@register_transform('segment_by_inverted_gradient')
def _segment_by_inverted_gradient(images, params):
    return segment_by_inverted_gradient(images[0], params[0])


@register_transform('mask_convex_hull')
def _mask_convex_hull(images, params):
    return mask_convex_hull(images[0])


@register_transform('reduce_local_differences')
def _reduce_local_differences(images, params):
    return reduce_local_differences(images[0], params[0])


@register_transform('threshold_and_fill')
def _threshold_and_fill(images, params):
    return threshold_and_fill(images[0], params[0])


# ---------------------------------------------------------------------------
# Auto estimators (module level so specs pickle)
# ---------------------------------------------------------------------------

def bimodal_auto_params(image: np.ndarray) -> list[float]:
    """[threshold, radius, shrink_factor] from the bimodal estimator."""
    return estimate_bimodal_threshold(image).as_vector()


def absolute_auto_params(image: np.ndarray) -> list[float]:
    """Bimodal estimate with the threshold converted to an absolute intensity."""
    estimate = estimate_bimodal_threshold(image)
    threshold = percentage_to_intensity(median_filter(image, 3), estimate.threshold)
    return [threshold, estimate.radius, estimate.shrink_factor]


def centroid_auto_params(image: np.ndarray) -> list[float]:
    """Blur scales at their defaults, threshold from the bimodal estimator."""
    return [2.0, 5.0, estimate_bimodal_threshold(image).threshold]


def blob_detect_auto_params(image: np.ndarray) -> list[float]:
    """Radius 3, threshold from the bimodal estimator on the background-subtracted image."""
    radius = 3.0
    return [radius, estimate_bimodal_threshold(reduce_local_differences(image, radius)).threshold]


# ---------------------------------------------------------------------------
# Plugins
# ---------------------------------------------------------------------------

def _threshold_param(value: float = 20.0) -> Parameter:
    return Parameter('Threshold', 0.0, 100.0, value, symbol='epsilon', units='% intensity')


def _radius_param(value: float = 3.0) -> Parameter:
    return Parameter('Radius', 0.0, 20.0, value, symbol='rho', units='pixels')


def _shrink_param(value: float = 0.5) -> Parameter:
    return Parameter('Shrink Factor', 0.0, 1.0, value, symbol='alpha', units='convexity')


@register_plugin('intensity_threshold')
def intensity_threshold() -> PipelineSpec:
    return PipelineSpec(
        name='intensity_threshold',
        description='Thresholds and computes an alpha-shape hull',
        result_type='contour',
        parameters=(_threshold_param(20.0), _radius_param(3.0), _shrink_param(0.5)),
        layers=(
            LayerSpec('binarize', 'threshold_image', parameters=(0,), images=(0,),
                      output_kind=ArtifactKind.MASK, description='Thresholds image'),
            LayerSpec('refine', 'refine_mask', parameters=(1,), images=(1,),
                      output_kind=ArtifactKind.MASK, description='Morphological filtering'),
            LayerSpec('alphashape', 'mask_to_polygon', parameters=(2,), images=(2,),
                      output_kind=ArtifactKind.CONTOUR, description='Alpha shape'),
        ),
        auto_estimator=bimodal_auto_params,
    )


@register_plugin('simple_intensity_threshold')
def simple_intensity_threshold() -> PipelineSpec:
    return PipelineSpec(
        name='simple_intensity_threshold',
        description='Applies a global absolute threshold',
        result_type='contour',
        parameters=(
            Parameter('Threshold', 0.0, 2.0 ** 16 - 1, 100.0, units='intensity'),
            _radius_param(3.0),
            _shrink_param(0.5),
        ),
        layers=(
            LayerSpec('binarize', 'hard_threshold', parameters=(0,), images=(0,),
                      output_kind=ArtifactKind.MASK, description='Thresholds image'),
            LayerSpec('refine', 'refine_mask', parameters=(1,), images=(1,),
                      output_kind=ArtifactKind.MASK, description='Smooths mask'),
            LayerSpec('alphashape', 'mask_to_polygon', parameters=(2,), images=(2,),
                      output_kind=ArtifactKind.CONTOUR, description='Computes alpha shape'),
        ),
        auto_estimator=absolute_auto_params,
    )


@register_plugin('bradley_masked')
def bradley_masked() -> PipelineSpec:
    return PipelineSpec(
        name='bradley_masked',
        description='Thresholds with a locally adaptive threshold',
        result_type='contour',
        parameters=(_radius_param(3.0), _threshold_param(10.0), _shrink_param(0.5)),
        layers=(
            LayerSpec('binarize', 'adaptive_threshold', parameters=(0,), images=(0,),
                      output_kind=ArtifactKind.IMAGE, description='Adaptively thresholds image'),
            LayerSpec('refine', 'threshold_and_binarize', parameters=(1,), images=(0, 1),
                      output_kind=ArtifactKind.POINTCLOUD, description='Binarizes image'),
            LayerSpec('alphashape', 'simple_alpha_shape', parameters=(2,), images=(2,),
                      output_kind=ArtifactKind.CONTOUR, description='Alpha shape'),
        ),
        auto_estimator=estimate_bradley_params,
    )


@register_plugin('blob_hull')
def blob_hull_plugin() -> PipelineSpec:
    return PipelineSpec(
        name='blob_hull',
        description='Uses blobs to find a hull',
        result_type='contour',
        parameters=(
            Parameter('Sigma', 0.0, 10.0, 2.0, symbol='sigma', units='std dev'),
            _threshold_param(10.0),
            _shrink_param(0.5),
        ),
        layers=(
            LayerSpec('cLoG', 'clipped_log', parameters=(0,), images=(0,),
                      output_kind=ArtifactKind.IMAGE, description='Computes clipped Laplacian of Gaussian'),
            LayerSpec('refine', 'threshold_blobs', parameters=(1,), images=(0, 1),
                      output_kind=ArtifactKind.POINTCLOUD, description='Thresholds clipped LoG of image'),
            LayerSpec('alphashape', 'blob_hull', parameters=(0, 2), images=(2,),
                      output_kind=ArtifactKind.CONTOUR, description='Alpha shape'),
        ),
        auto_estimator=(2.0, 10.0, 0.0),
    )


@register_plugin('detect_blob_centroids')
def detect_blob_centroids() -> PipelineSpec:
    return PipelineSpec(
        name='detect_blob_centroids',
        description='Difference of Gaussians blob centroids',
        result_type='pointcloud',
        parameters=(
            Parameter('Sigma 1', 0.0, 20.0, 2.0, symbol='sigma_1'),
            Parameter('Sigma 2', 0.0, 20.0, 5.0, symbol='sigma_2'),
            _threshold_param(10.0),
        ),
        layers=(
            LayerSpec('Gaussian Filter 1', 'gaussian_smooth', parameters=(0,), images=(0,),
                      output_kind=ArtifactKind.IMAGE, description='Smooths image'),
            LayerSpec('Gaussian Filter 2', 'difference_of_gaussian', parameters=(1,), images=(1, 0),
                      output_kind=ArtifactKind.IMAGE, description='Difference of Gaussian'),
            LayerSpec('Threshold', 'threshold_and_open', parameters=(2,), images=(2,),
                      output_kind=ArtifactKind.MASK, description='Threshold'),
            LayerSpec('Blob Centroids', 'centroids', parameters=(), images=(3,),
                      output_kind=ArtifactKind.POINTCLOUD, description='Find centroids'),
        ),
        auto_estimator=centroid_auto_params,
    )


def _sift_layers(sift_transform: str, sift_description: str) -> tuple[LayerSpec, ...]:
    return (
        LayerSpec('binarize', 'threshold_image', parameters=(0,), images=(0,),
                  output_kind=ArtifactKind.MASK, description='Thresholds image'),
        LayerSpec('sift', sift_transform, parameters=(1, 2), images=(1,),
                  output_kind=ArtifactKind.MASK, description=sift_description),
        LayerSpec('boundary', 'points_from_mask', parameters=(), images=(2,),
                  output_kind=ArtifactKind.CONTOUR, description='Convex boundary'),
    )


@register_plugin('threshold_and_sift')
def threshold_and_sift() -> PipelineSpec:
    return PipelineSpec(
        name='threshold_and_sift',
        description='Thresholds and keeps objects within a size range',
        result_type='contour',
        parameters=(
            _threshold_param(5.0),
            Parameter('Min-size', 0.0, 100.0, 0.0, units='% of objects'),
            Parameter('Max-size', 0.0, 100.0, 100.0, units='% of objects'),
        ),
        layers=_sift_layers('filter_by_size', 'Filters objects by size rank'),
        auto_estimator=estimate_sift_params,
    )


@register_plugin('tolerance_sift')
def tolerance_sift() -> PipelineSpec:
    return PipelineSpec(
        name='tolerance_sift',
        description='Thresholds and keeps objects near a target size',
        result_type='contour',
        parameters=(
            _threshold_param(5.0),
            Parameter('Target-size', 0.0, 100.0, 50.0, units='% of objects'),
            Parameter('Tolerance', 0.0, 100.0, 100.0, units='% of objects'),
        ),
        layers=_sift_layers('filter_by_target_size', 'Filters objects around a target size rank'),
        auto_estimator=estimate_tolerance_params,
    )


@register_plugin('gradient_sift')
def gradient_sift() -> PipelineSpec:
    return PipelineSpec(
        name='gradient_sift',
        description='Thresholds the gradient and keeps objects of a given size',
        result_type='mask',
        parameters=(
            Parameter('Gradient Threshold', 0.0, 100.0, 5.0, units='% max gradient'),
            Parameter('Target-size', 0.0, 90000.0, 50.0, units='pixels'),
            Parameter('Tolerance', 0.0, 90000.0, 100.0, units='pixels'),
        ),
        layers=(
            LayerSpec('binarize', 'gradient_threshold', parameters=(0,), images=(0,),
                      output_kind=ArtifactKind.MASK, description='Thresholds gradient magnitude'),
            LayerSpec('sift', 'sift_mask', parameters=(1, 2), images=(1,),
                      output_kind=ArtifactKind.MASK, description='Filters objects by size'),
        ),
        auto_estimator=estimate_gradient_sift_params,
    )


@register_plugin('disordered_gradient')
def disordered_gradient() -> PipelineSpec:
    return PipelineSpec(
        name='disordered_gradient',
        description='Segments regions of disordered gradient',
        result_type='contour',
        parameters=(
            Parameter('Sigma', 0.0, 20.0, 3.0, symbol='sigma', units='std dev'),
            _threshold_param(10.0),
            Parameter('Gradient Entropy Threshold', 0.0, 1.0, 0.1, units='fraction of range'),
        ),
        layers=(
            LayerSpec('smooth', 'rescale_and_smooth', parameters=(0,), images=(0,),
                      output_kind=ArtifactKind.IMAGE, description='Rescales and smooths image'),
            LayerSpec('clip', 'clip_image', parameters=(1,), images=(1,),
                      output_kind=ArtifactKind.IMAGE, description='Clips background'),
            LayerSpec('entropy', 'segment_by_inverted_gradient', parameters=(2,), images=(2,),
                      output_kind=ArtifactKind.MASK, description='Thresholds gradient entropy'),
            LayerSpec('hull', 'mask_convex_hull', parameters=(), images=(3,),
                      output_kind=ArtifactKind.CONTOUR, description='Convex hull'),
        ),
        auto_estimator=estimate_gradient_params,
    )


@register_plugin('blob_detect')
def blob_detect() -> PipelineSpec:
    return PipelineSpec(
        name='blob_detect',
        description='Local background subtraction blob centroids',
        result_type='pointcloud',
        parameters=(
            Parameter('Radius', 1.0, 100.0, 3.0, symbol='rho', units='pixels'),
            _threshold_param(50.0),
        ),
        layers=(
            LayerSpec('background', 'reduce_local_differences', parameters=(0,), images=(0,),
                      output_kind=ArtifactKind.IMAGE, description='Subtracts local minimum'),
            LayerSpec('Threshold', 'threshold_and_fill', parameters=(1,), images=(1,),
                      output_kind=ArtifactKind.MASK, description='Thresholds and fills blobs'),
            LayerSpec('Blob Centroids', 'centroids', parameters=(), images=(2,),
                      output_kind=ArtifactKind.POINTCLOUD, description='Find centroids'),
        ),
        auto_estimator=blob_detect_auto_params,
    )
