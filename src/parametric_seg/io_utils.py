"""
I/O utilities for the segmentation pipeline.

This module handles:
- Image file discovery
- Image loading (grayscale, RGB, or stack max projection)
- Export of segmentation results (point sets to CSV, rasters to TIF)
- Parameter override files (JSON, YAML or CSV)
"""

import logging
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
from skimage import io

from parametric_seg.pipeline import RunResult
from parametric_seg.results import ArtifactKind

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = ('.tif', '.tiff', '.png')
BOOLEAN_WORDS = {'true': True, 'yes': True, 'false': False, 'no': False}


class FileDiscovery:
    """Discover image files to segment."""

    @staticmethod
    def find_images(input_dir: Path, recursive: bool = False) -> list[Path]:
        """
        Find all supported image files in a directory.

        Args:
            input_dir: Directory to search
            recursive: Also search subdirectories

        Returns:
            Sorted list of image paths
        """
        input_path = Path(input_dir)

        if not input_path.exists():
            raise FileNotFoundError(f"Input directory not found: {input_dir}")

        pattern = '**/*' if recursive else '*'
        files = [
            f for f in input_path.glob(pattern)
            if f.is_file() and f.suffix.lower() in IMAGE_SUFFIXES
        ]
        return sorted(files)


class ImageLoader:
    """Load microscopy images."""

    @staticmethod
    def load_image(file_path: Path) -> np.ndarray:
        """
        Load an image from disk.

        Intensities are not rescaled, so absolute thresholds keep their
        meaning. RGB(A) images are returned as RGB; other multi-plane
        images are max-projected along the first axis.

        Args:
            file_path: Path to image file

        Returns:
            2D array, or (rows, cols, 3) for RGB images
        """
        image = io.imread(str(file_path))

        if image.ndim == 3 and image.shape[-1] in (3, 4):
            return image[..., :3]

        if image.ndim > 2:
            logger.debug(f"{Path(file_path).name}: max projection of {image.shape}")
            image = image.max(axis=0)
            while image.ndim > 2:
                image = image.max(axis=0)

        return image


class ResultExporter:
    """Export segmentation results."""

    @staticmethod
    def points_to_frame(points: np.ndarray) -> pd.DataFrame:
        """(N, 2) (x, y) array to a DataFrame with X and Y columns."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return pd.DataFrame({'X': points[:, 0], 'Y': points[:, 1]})

    @staticmethod
    def export_results(
        results: dict[str, RunResult],
        output_dir: Path,
        plugin: str | None = None
    ) -> None:
        """
        Write each run's final artifact plus a summary table.

        Point sets go to {image_id}.csv, masks and label arrays to
        {image_id}.tif. summary.csv lists every run with its status.

        Args:
            results: Mapping of image id to RunResult
            output_dir: Output directory
            plugin: Optional plugin name used as a subdirectory
        """
        output_path = Path(output_dir)
        if plugin:
            output_path = output_path / plugin
        output_path.mkdir(parents=True, exist_ok=True)

        rows = []
        for image_id, result in results.items():
            row: dict[str, Any] = {
                'ImageId': image_id,
                'Status': result.status.value,
                'Kind': '',
                'Count': 0,
                'FailedLayer': result.failed_layer,
                'Error': str(result.error) if result.error else '',
            }

            if result.ok:
                kind = result.output_kind
                row['Kind'] = kind.value
                output = result.output

                if kind in (ArtifactKind.CONTOUR, ArtifactKind.POINTCLOUD, ArtifactKind.EMPTY):
                    frame = ResultExporter.points_to_frame(
                        output if output is not None else np.empty((0, 2))
                    )
                    frame.to_csv(output_path / f"{image_id}.csv", index=False)
                    row['Count'] = len(frame)
                elif kind is ArtifactKind.MASK:
                    mask = np.asarray(output, dtype=np.uint8) * 255
                    io.imsave(str(output_path / f"{image_id}.tif"), mask, check_contrast=False)
                    row['Count'] = int(np.count_nonzero(output))
                elif kind is ArtifactKind.LABEL:
                    labels = np.asarray(output).astype(np.uint16)
                    io.imsave(str(output_path / f"{image_id}.tif"), labels, check_contrast=False)
                    row['Count'] = int(labels.max())
                else:
                    logger.warning(f"{image_id}: final artifact is a plain image, not exported")

            rows.append(row)

        if rows:
            summary = pd.DataFrame(rows)
            output_file = output_path / "summary.csv"
            summary.to_csv(output_file, index=False)
            logger.info(f"Exported {len(summary)} rows to {output_file}")


def load_parameter_config(config_path: Path) -> dict[str, dict[str, Any]]:
    """
    Load per-plugin parameter overrides from JSON, YAML, or CSV file.

    Supported formats:

    JSON/YAML:
    {
        "default": {"Shrink Factor": 0.5},
        "blob_hull": {"Sigma": 3, "Threshold": 12}
    }

    CSV (simple table format):
    plugin,Threshold,Radius,Shrink Factor
    default,,,0.5
    intensity_threshold,25,4,

    Empty cells in CSV inherit from 'default' row.

    Args:
        config_path: Path to configuration file (JSON, YAML, or CSV)

    Returns:
        Dictionary mapping plugin name to parameter overrides
    """
    config_path = Path(config_path)

    if config_path.suffix == '.csv':
        return _load_csv_config(config_path)
    elif config_path.suffix == '.json':
        import json
        with open(config_path) as f:
            return json.load(f)
    elif config_path.suffix in ['.yml', '.yaml']:
        import yaml
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    else:
        raise ValueError(f"Unsupported config format: {config_path.suffix}")


def _load_csv_config(config_path: Path) -> dict[str, dict[str, Any]]:
    """
    Load parameter configuration from CSV file.

    The 'plugin' column is required and used as the key. Empty cells are
    skipped so they inherit from the 'default' row.

    Args:
        config_path: Path to CSV file

    Returns:
        Dictionary mapping plugin name to parameter overrides
    """
    import csv

    config: dict[str, dict[str, Any]] = {}

    with open(config_path, newline='') as f:
        reader = csv.DictReader(f)

        if not reader.fieldnames or 'plugin' not in reader.fieldnames:
            raise ValueError("CSV config must have a 'plugin' column")

        for row in reader:
            plugin = row.pop('plugin').strip()
            if not plugin:
                continue

            params: dict[str, Any] = {}
            for key, value in row.items():
                value = value.strip() if value else ''
                if not value:
                    continue
                params[key.strip()] = _parse_config_value(value)

            config[plugin] = params

    return config


def _parse_config_value(value: str) -> int | float | bool | str:
    """Numbers become int or float, yes/no and true/false become bool, anything else stays a string."""
    for convert in (int, float):
        try:
            return convert(value)
        except ValueError:
            continue
    return BOOLEAN_WORDS.get(value.lower(), value)


def get_parameters_for_plugin(
    config: dict[str, dict[str, Any]],
    plugin: str,
    names: list[str] | None = None
) -> dict[str, Any]:
    """
    Get parameters for a plugin, falling back to defaults.

    Args:
        config: Full parameter configuration
        plugin: Plugin name
        names: If given, drop (and log) keys that are not in this list

    Returns:
        Dictionary of parameter overrides for this plugin
    """
    params = dict(config.get('default', {}))

    if plugin in config:
        params.update(config[plugin])

    if names is not None:
        unknown = [k for k in params if k not in names]
        if unknown:
            logger.warning(f"Ignoring parameters not used by {plugin}: {unknown}")
        params = {k: v for k, v in params.items() if k in names}

    return params
