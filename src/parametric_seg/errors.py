"""
Exception types raised by the segmentation pipeline.

- ConfigurationError: malformed pipeline configuration (parameter or image
  index mismatches), detected before any transform runs
- ComputationError: a layer transform could not produce a result
- TypeMismatchError: a stored result is not a mask, label array or point cloud
"""


class SegmentationError(Exception):
    """Base class for all segmentation pipeline errors."""


class ConfigurationError(SegmentationError, ValueError):
    """Raised when a PipelineSpec is inconsistent."""


class ComputationError(SegmentationError, RuntimeError):
    """Raised when a layer transform fails during a run."""

    def __init__(self, message: str, layer: int | None = None, layer_name: str | None = None):
        super().__init__(message)
        self.layer = layer
        self.layer_name = layer_name


class TypeMismatchError(SegmentationError, TypeError):
    """Raised when a result artifact has an unexpected shape or dtype."""
