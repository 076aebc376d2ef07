"""
Parametric Seg - plugin-based segmentation of microscopy images.

A plugin is a short pipeline of image-processing layers driven by a few
scalar parameters; the result is a mask, label array, contour or point cloud.
"""

__version__ = "1.0.0"

from parametric_seg.denoising import (
    DENOISERS,
    PreprocessOptions,
    preprocess_image,
)
from parametric_seg.errors import (
    ComputationError,
    ConfigurationError,
    SegmentationError,
    TypeMismatchError,
)
from parametric_seg.hull import alpha_shape, deduplicate_points
from parametric_seg.pipeline import (
    ImageBuffer,
    LayerSpec,
    Parameter,
    PipelineGraph,
    PipelineSpec,
    RunResult,
    RunState,
    register_transform,
    run_batch,
)
from parametric_seg.plugins import (
    available_plugins,
    get_plugin,
    register_plugin,
)
from parametric_seg.results import (
    ArtifactKind,
    classify_result,
    extract_volume_results,
    mask_to_points,
    result_to_mask,
    set_points_coordinate_sys,
)

__all__ = [
    "__version__",
    # Errors
    "SegmentationError",
    "ConfigurationError",
    "ComputationError",
    "TypeMismatchError",
    # Preprocessing
    "DENOISERS",
    "PreprocessOptions",
    "preprocess_image",
    # Geometry
    "alpha_shape",
    "deduplicate_points",
    # Pipeline
    "Parameter",
    "LayerSpec",
    "PipelineSpec",
    "ImageBuffer",
    "PipelineGraph",
    "RunResult",
    "RunState",
    "register_transform",
    "run_batch",
    # Plugins
    "available_plugins",
    "get_plugin",
    "register_plugin",
    # Results
    "ArtifactKind",
    "classify_result",
    "result_to_mask",
    "mask_to_points",
    "extract_volume_results",
    "set_points_coordinate_sys",
]
