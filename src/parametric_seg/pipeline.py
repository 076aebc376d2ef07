"""
Plugin pipeline executor.

A segmentation plugin is a PipelineSpec: an ordered list of layers plus the
scalar parameters (slider controls) they consume. Running a spec against an
image threads data through an append-only ImageBuffer:

    buffer[0]  original (preprocessed) image
    buffer[k]  output of layer k (1-based)

Each layer reads the parameters at its declared indices and the buffer
entries at its declared image indices (default: the most recent entry), calls
its transform and appends the result. A transform failure aborts the run;
the partial buffer is discarded and the failing layer is reported.

Usage:
    python -m parametric_seg.pipeline --input images/ --output results/ --plugin blob_hull
    python -m parametric_seg.pipeline --input images/ --output results/ --config params.yaml --auto
"""

import argparse
import logging
import os
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union

import numpy as np

from parametric_seg.denoising import PreprocessOptions, preprocess_image
from parametric_seg.errors import ComputationError, ConfigurationError
from parametric_seg.results import SEGMENTATION_KINDS, ArtifactKind, classify_result

logger = logging.getLogger(__name__)

Transform = Callable[[list, list], Any]

# Named layer transforms; plugins register theirs on import
TRANSFORMS: dict[str, Transform] = {}


def register_transform(name: str) -> Callable[[Transform], Transform]:
    """
    Decorator registering a layer transform under `name`.

    A transform is called as transform(images, params) where `images` is the
    list of buffer entries the layer asked for and `params` the list of
    parameter values, both in declaration order.
    """
    def decorator(func: Transform) -> Transform:
        if name in TRANSFORMS and TRANSFORMS[name] is not func:
            logger.warning(f"Transform '{name}' re-registered")
        TRANSFORMS[name] = func
        return func
    return decorator


def resolve_transform(transform: Union[str, Transform]) -> Transform:
    """Look up a registered transform by name, or pass a callable through."""
    if callable(transform):
        return transform
    try:
        return TRANSFORMS[transform]
    except KeyError:
        raise ConfigurationError(
            f"Unknown transform '{transform}'. Registered: {sorted(TRANSFORMS)}"
        ) from None


@dataclass(frozen=True)
class Parameter:
    """A named scalar control with bounds."""

    name: str
    minimum: float
    maximum: float
    value: float
    symbol: str = ''
    units: str = ''

    def clamped(self, value: float) -> 'Parameter':
        """
        Copy of this parameter with a new value forced into [minimum, maximum].

        Positive values are floored at machine epsilon.
        """
        value = float(value)
        if value > 0:
            value = max(np.finfo(np.float64).eps, value)
        value = min(self.maximum, max(self.minimum, value))
        return replace(self, value=value)


@dataclass(frozen=True)
class LayerSpec:
    """One processing layer of a pipeline."""

    name: str
    transform: Union[str, Transform]
    parameters: tuple[int, ...] = ()  # Indices into the parameter vector
    images: tuple[int, ...] = (-1,)  # Indices into the image buffer; negative = relative
    output_kind: Optional[ArtifactKind] = None  # Declared kind of the layer's output
    description: str = ''

    def __post_init__(self):
        object.__setattr__(self, 'parameters', tuple(int(i) for i in self.parameters))
        object.__setattr__(self, 'images', tuple(int(i) for i in self.images))


def selector_to_indices(selector: Sequence[Any], n_parameters: int, layer_name: str = '') -> tuple[int, ...]:
    """
    Convert a boolean selector over the parameter vector to an index list.

    Raises:
        ConfigurationError: selector length differs from the parameter count
    """
    if len(selector) != n_parameters:
        raise ConfigurationError(
            f"Layer '{layer_name}' input mask has length {len(selector)}, "
            f"expected {n_parameters} (one entry per parameter)"
        )
    return tuple(i for i, used in enumerate(selector) if used)


@dataclass(frozen=True)
class PipelineSpec:
    """
    Immutable pipeline configuration: layers, parameters and metadata.

    Validation runs on construction, so a spec that exists is runnable:
    parameter indices are in range, every image reference points at an entry
    produced by an earlier layer, and string transforms are registered.
    """

    layers: tuple[LayerSpec, ...]
    parameters: tuple[Parameter, ...]
    name: str = ''
    description: str = ''
    result_type: str = ''
    auto_estimator: Union[Callable[[np.ndarray], Sequence[float]], Sequence[float], None] = None

    def __post_init__(self):
        object.__setattr__(self, 'layers', tuple(self.layers))
        object.__setattr__(self, 'parameters', tuple(self.parameters))
        self.validate()

    def validate(self) -> None:
        """Check all parameter and image references; raise ConfigurationError on the first problem."""
        if not self.layers:
            raise ConfigurationError("Pipeline has no layers")

        n_params = len(self.parameters)
        names = [p.name for p in self.parameters]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate parameter names: {names}")

        for position, layer in enumerate(self.layers, start=1):
            resolve_transform(layer.transform)

            for idx in layer.parameters:
                if not 0 <= idx < n_params:
                    raise ConfigurationError(
                        f"Layer {position} ('{layer.name}') uses parameter {idx}, "
                        f"but only {n_params} parameters exist"
                    )

            # Before layer k runs the buffer holds k entries (input + k-1 outputs)
            available = position
            for idx in layer.images:
                if not -available <= idx < available:
                    raise ConfigurationError(
                        f"Layer {position} ('{layer.name}') references image {idx}, "
                        f"but only {available} images exist at that point"
                    )

        unused = [p.name for i, p in enumerate(self.parameters) if self.flow[i] == 0]
        if unused:
            logger.debug(f"Parameters not consumed by any layer: {unused}")

    @property
    def flow(self) -> tuple[int, ...]:
        """For each parameter, the 1-based index of the first layer using it (0 if unused)."""
        flow = []
        for p in range(len(self.parameters)):
            first = next(
                (k for k, layer in enumerate(self.layers, start=1) if p in layer.parameters),
                0
            )
            flow.append(first)
        return tuple(flow)

    @property
    def parameter_names(self) -> list[str]:
        return [p.name for p in self.parameters]

    @property
    def values(self) -> list[float]:
        return [p.value for p in self.parameters]

    def parameter_index(self, name: str) -> int:
        """Index of a parameter by name."""
        try:
            return self.parameter_names.index(name)
        except ValueError:
            raise ConfigurationError(
                f"Unknown parameter '{name}'. Available: {self.parameter_names}"
            ) from None

    def with_value(self, key: Union[int, str], value: float) -> 'PipelineSpec':
        """New spec with one parameter updated (clamped to its bounds)."""
        idx = self.parameter_index(key) if isinstance(key, str) else int(key)
        if not 0 <= idx < len(self.parameters):
            raise ConfigurationError(f"Parameter index {idx} out of range")
        params = list(self.parameters)
        params[idx] = params[idx].clamped(value)
        return replace(self, parameters=tuple(params))

    def with_values(self, values: Union[Sequence[float], dict[str, float]]) -> 'PipelineSpec':
        """
        New spec with several parameters updated.

        Args:
            values: Either a full vector (one value per parameter, in order)
                or a mapping of parameter name to value
        """
        if isinstance(values, dict):
            spec = self
            for name, value in values.items():
                spec = spec.with_value(name, value)
            return spec

        if len(values) != len(self.parameters):
            raise ConfigurationError(
                f"Got {len(values)} parameter values, expected {len(self.parameters)}"
            )
        params = tuple(p.clamped(v) for p, v in zip(self.parameters, values))
        return replace(self, parameters=params)

    def first_layer_using(self, key: Union[int, str]) -> int:
        """1-based index of the first layer consuming a parameter (0 if none)."""
        idx = self.parameter_index(key) if isinstance(key, str) else int(key)
        return self.flow[idx]

    @classmethod
    def from_controls(
        cls,
        controls: Sequence[dict[str, Any]],
        layers: Sequence[dict[str, Any]],
        **kwargs
    ) -> 'PipelineSpec':
        """
        Build a spec from plain control and layer descriptors.

        Controls: {'name', 'min', 'max', 'value' (or 'default'), optional
        'symbol', 'units'}.

        Layers: {'name', 'transform', optional 'parameters' (index list) or
        'input_mask' (boolean selector, one entry per control), optional
        'images' (index list), 'output_kind', 'description'}.
        """
        parameters = []
        for c in controls:
            try:
                value = c['value'] if 'value' in c else c['default']
                parameters.append(Parameter(
                    name=c['name'],
                    minimum=float(c['min']),
                    maximum=float(c['max']),
                    value=float(value),
                    symbol=c.get('symbol', ''),
                    units=c.get('units', ''),
                ))
            except KeyError as e:
                raise ConfigurationError(f"Control {c!r} is missing field {e}") from None

        layer_specs = []
        for i, layer in enumerate(layers, start=1):
            name = layer.get('name', f'layer{i}')
            if 'input_mask' in layer:
                indices = selector_to_indices(layer['input_mask'], len(parameters), name)
            else:
                indices = tuple(layer.get('parameters', ()))
            kind = layer.get('output_kind')
            layer_specs.append(LayerSpec(
                name=name,
                transform=layer['transform'],
                parameters=indices,
                images=tuple(layer.get('images', (-1,))),
                output_kind=ArtifactKind(kind) if kind else None,
                description=layer.get('description', ''),
            ))

        return cls(layers=tuple(layer_specs), parameters=tuple(parameters), **kwargs)


@dataclass(frozen=True)
class Artifact:
    """One ImageBuffer slot: the data and its kind."""

    kind: ArtifactKind
    data: Any


class ImageBuffer:
    """Append-only sequence of artifacts produced during one run."""

    def __init__(self, image: np.ndarray):
        self._entries: list[Artifact] = []
        self.append(image)

    def append(self, data: Any) -> Artifact:
        artifact = Artifact(kind=classify_result(data), data=data)
        self._entries.append(artifact)
        return artifact

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index: int) -> Any:
        return self._entries[index].data

    def kind(self, index: int) -> ArtifactKind:
        return self._entries[index].kind

    @property
    def artifacts(self) -> tuple[Artifact, ...]:
        return tuple(self._entries)

    @property
    def latest(self) -> Any:
        return self._entries[-1].data


class RunState(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass
class RunResult:
    """Outcome of a single pipeline run."""

    status: RunState
    buffer: Optional[ImageBuffer] = None
    stop_layer: int = 0
    failed_layer: Optional[int] = None
    error: Optional[ComputationError] = None

    @property
    def ok(self) -> bool:
        return self.status is RunState.COMPLETED

    @property
    def output(self) -> Any:
        """The final artifact (None for a failed run)."""
        if self.buffer is None:
            return None
        return self.buffer.latest

    @property
    def output_kind(self) -> Optional[ArtifactKind]:
        if self.buffer is None:
            return None
        return self.buffer.kind(-1)


class PipelineGraph:
    """Runs a PipelineSpec against images, one fresh ImageBuffer per run."""

    def __init__(
        self,
        spec: PipelineSpec,
        preprocess: Optional[PreprocessOptions] = None
    ):
        """
        Initialize the executor.

        Args:
            spec: Validated pipeline configuration
            preprocess: Optional preprocessing applied before buffer[0]
        """
        self.spec = spec
        self.preprocess = preprocess
        self.state = RunState.IDLE
        self.current_layer = 0

    @property
    def n_layers(self) -> int:
        return len(self.spec.layers)

    def update_parameters(self, values: Union[Sequence[float], dict[str, float]]) -> None:
        """Replace the spec with one carrying new parameter values (between runs)."""
        if self.state is RunState.RUNNING:
            raise ConfigurationError("Cannot update parameters during a run")
        self.spec = self.spec.with_values(values)

    def auto_estimate(self, image: np.ndarray) -> PipelineSpec:
        """
        Set parameter values from the plugin's auto estimator.

        The estimator is either a callable taking the preprocessed image or a
        fixed vector. Specs without an estimator are left unchanged.

        Returns:
            The updated spec (also stored on the graph)
        """
        estimator = self.spec.auto_estimator
        if estimator is None:
            return self.spec

        if callable(estimator):
            values = estimator(preprocess_image(image, self.preprocess))
        else:
            values = estimator

        values = [float(v) for v in values]
        logger.info(f"Auto-estimated parameters for '{self.spec.name}': {values}")
        self.update_parameters(values)
        return self.spec

    def valid_stop_layers(self) -> list[int]:
        """1-based layers whose declared output is a mask, label array or point set."""
        return [
            k for k, layer in enumerate(self.spec.layers, start=1)
            if layer.output_kind in SEGMENTATION_KINDS
        ]

    def resolve_stop(self, stop_at: Optional[int]) -> int:
        """
        Snap a requested stop layer to the closest valid one.

        None means the last layer. Ties go to the earlier layer.
        """
        if stop_at is None:
            return self.n_layers

        stop_at = min(max(1, int(stop_at)), self.n_layers)
        valid = self.valid_stop_layers()
        if not valid:
            return stop_at
        return min(valid, key=lambda k: (abs(k - stop_at), k))

    def _gather(self, layer: LayerSpec, buffer: ImageBuffer, position: int) -> tuple[list, list]:
        values = self.spec.values
        params = [values[i] for i in layer.parameters]

        images = []
        for idx in layer.images:
            if not -len(buffer) <= idx < len(buffer):
                raise ConfigurationError(
                    f"Layer {position} ('{layer.name}') references image {idx}, "
                    f"but only {len(buffer)} images exist"
                )
            images.append(buffer[idx])
        return images, params

    def run(self, image: np.ndarray, stop_at: Optional[int] = None) -> RunResult:
        """
        Execute the pipeline on one image.

        Args:
            image: 2D grayscale or RGB image
            stop_at: Optional 1-based layer to stop after (snapped to a
                layer producing a mask, label array or point set)

        Returns:
            RunResult; on failure the buffer is None and failed_layer/error
            describe the cause

        Raises:
            ConfigurationError: invalid stop layer or image reference
            ValueError: input is not a 2D or RGB image
        """
        self.spec.validate()
        last = self.resolve_stop(stop_at)

        data = preprocess_image(image, self.preprocess)
        if data.ndim != 2:
            raise ValueError(f"Expected a 2D or RGB image, got shape {np.shape(image)}")

        buffer = ImageBuffer(data)
        self.state = RunState.RUNNING
        start_time = time.time()

        for position, layer in enumerate(self.spec.layers[:last], start=1):
            self.current_layer = position
            try:
                images, params = self._gather(layer, buffer, position)
            except ConfigurationError:
                self.state = RunState.FAILED
                raise
            transform = resolve_transform(layer.transform)

            logger.debug(f"  Layer {position} '{layer.name}' params={params}")
            try:
                output = transform(images, params)
            except Exception as e:
                self.state = RunState.FAILED
                error = ComputationError(
                    f"Layer {position} ('{layer.name}') failed: {e}",
                    layer=position,
                    layer_name=layer.name
                )
                error.__cause__ = e
                logger.error(str(error))
                return RunResult(
                    status=RunState.FAILED,
                    stop_layer=last,
                    failed_layer=position,
                    error=error
                )

            artifact = buffer.append(output)
            logger.debug(f"  Layer {position} produced {artifact.kind.value}")

        self.state = RunState.COMPLETED
        logger.debug(
            f"Pipeline '{self.spec.name}' completed {last} layers in "
            f"{time.time() - start_time:.3f} s -> {buffer.kind(-1).value}"
        )
        return RunResult(status=RunState.COMPLETED, buffer=buffer, stop_layer=last)

    def run_or_raise(self, image: np.ndarray, stop_at: Optional[int] = None) -> ImageBuffer:
        """Like run(), but raise the ComputationError of a failed run."""
        result = self.run(image, stop_at=stop_at)
        if not result.ok:
            raise result.error
        return result.buffer


def _run_single(args: tuple) -> dict[str, Any]:
    """
    Run one image through a pipeline. Module-level function for multiprocessing.

    Args:
        args: Tuple of (image_id, image, spec, preprocess, auto)

    Returns:
        Dictionary with 'image_id' and 'result', or 'image_id' and 'error'
    """
    image_id, image, spec, preprocess, auto = args

    try:
        if callable(image):
            image = image()
        graph = PipelineGraph(spec, preprocess=preprocess)
        if auto:
            graph.auto_estimate(image)
        return {'image_id': image_id, 'result': graph.run(image)}
    except Exception as e:
        return {'image_id': image_id, 'error': str(e)}


def _failed_before_run(message: str) -> RunResult:
    """FAILED result for an image that never reached layer 1."""
    return RunResult(
        status=RunState.FAILED,
        failed_layer=0,
        error=ComputationError(message, layer=0)
    )


def run_batch(
    images: dict[str, Union[np.ndarray, Callable[[], np.ndarray]]],
    spec: PipelineSpec,
    n_workers: int = 1,
    preprocess: Optional[PreprocessOptions] = None,
    auto: bool = False
) -> dict[str, RunResult]:
    """
    Run independent pipeline instances over many images.

    Each run owns its own buffer; the spec is shared read-only. Images may
    be given as arrays or as zero-argument loaders.

    Args:
        images: Mapping of image id to image (or loader)
        spec: Pipeline configuration
        n_workers: Number of worker processes (1 = sequential)
        preprocess: Optional preprocessing options
        auto: Auto-estimate parameters per image before running

    Returns:
        Mapping of image id to RunResult for every image. An image that
        cannot be loaded or auto-estimated gets a FAILED result with
        failed_layer 0
    """
    args_list = [(image_id, image, spec, preprocess, auto) for image_id, image in images.items()]
    results: dict[str, RunResult] = {}

    def _collect(outcome: dict[str, Any]) -> None:
        if 'error' in outcome:
            logger.error(f"Error processing {outcome['image_id']}: {outcome['error']}")
            results[outcome['image_id']] = _failed_before_run(outcome['error'])
            return
        run_result = outcome['result']
        if run_result.ok:
            logger.info(f"  {outcome['image_id']}: {run_result.output_kind.value}")
        else:
            logger.error(f"  {outcome['image_id']}: failed at layer {run_result.failed_layer}")
        results[outcome['image_id']] = run_result

    if n_workers == 1:
        for args in args_list:
            _collect(_run_single(args))
    else:
        logger.info(f"Using {n_workers} parallel workers")
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            futures = {executor.submit(_run_single, args): args[0] for args in args_list}

            for future in as_completed(futures):
                image_id = futures[future]
                try:
                    _collect(future.result())
                except Exception as e:
                    logger.error(f"Error processing {image_id}: {e}")
                    results[image_id] = _failed_before_run(str(e))

    return results


def main():
    """Main entry point for CLI."""
    from parametric_seg.io_utils import (
        FileDiscovery,
        ResultExporter,
        get_parameters_for_plugin,
        load_parameter_config,
    )
    from parametric_seg.plugins import available_plugins, get_plugin

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description='Segment microscopy images with a parametric plugin pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Segment every TIF in a folder with the default plugin
  parametric-seg --input images/ --output results/

  # Blob hull segmentation with auto-estimated parameters
  parametric-seg --input images/ --output results/ --plugin blob_hull --auto

  # Parameter overrides from a file
  parametric-seg --input images/ --output results/ --config params.yaml

  # Stop after the mask refinement layer
  parametric-seg --input images/ --output results/ --stop-at 2
        """
    )

    parser.add_argument(
        '--input', '-i',
        type=Path,
        required=True,
        help='Input directory containing TIF images'
    )

    parser.add_argument(
        '--output', '-o',
        type=Path,
        required=True,
        help='Output directory for results'
    )

    parser.add_argument(
        '--plugin', '-p',
        type=str,
        default='intensity_threshold',
        help='Segmentation plugin (default: intensity_threshold)'
    )

    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to parameter configuration file (JSON, YAML or CSV)'
    )

    parser.add_argument(
        '--auto', '-a',
        action='store_true',
        help='Auto-estimate parameters for each image'
    )

    parser.add_argument(
        '--stop-at',
        type=int,
        help='Stop after this layer (1-based)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    parser.add_argument(
        '--workers', '-w',
        type=int,
        default=1,
        help='Number of parallel workers (default: 1, use -1 for all CPUs)'
    )

    args = parser.parse_args()

    n_workers = args.workers
    if n_workers == -1:
        n_workers = os.cpu_count() or 1
    elif n_workers < 1:
        n_workers = 1

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.plugin not in available_plugins():
        parser.error(f"Unknown plugin '{args.plugin}'. Available: {available_plugins()}")

    spec = get_plugin(args.plugin)

    if args.config:
        logger.info(f"Loading configuration from {args.config}")
        config = load_parameter_config(args.config)
        overrides = get_parameters_for_plugin(config, args.plugin, spec.parameter_names)
        if overrides:
            spec = spec.with_values(overrides)
            logger.info(f"Using parameters for {args.plugin}: {overrides}")

    if args.stop_at is not None:
        stop = PipelineGraph(spec).resolve_stop(args.stop_at)
        spec = replace(spec, layers=spec.layers[:stop])

    image_files = FileDiscovery.find_images(args.input)
    if not image_files:
        logger.warning(f"No images found in {args.input}")
        return

    logger.info(f"Found {len(image_files)} images")
    loaders = {path.stem: _ImageFileLoader(path) for path in image_files}

    start_time = time.time()
    results = run_batch(loaders, spec, n_workers=n_workers, auto=args.auto)
    ResultExporter.export_results(results, args.output, plugin=args.plugin)

    elapsed_time = time.time() - start_time
    logger.info(f"Pipeline complete in {elapsed_time:.2f} seconds")


@dataclass
class _ImageFileLoader:
    """Picklable zero-argument loader so workers read their own image."""

    path: Path

    def __call__(self) -> np.ndarray:
        from parametric_seg.io_utils import ImageLoader
        return ImageLoader.load_image(self.path)


if __name__ == '__main__':
    main()
