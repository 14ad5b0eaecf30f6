"""
Generation Pipeline Orchestrator

Turns one image into a splat scene file:

1. Ensure the model is available (0-20% of progress)
2. Load a session and resolve its schema
3. Work out the input size the model expects
4. Gate on device memory (checked first, before any expensive work)
5. Decode and resize the image
6. Build the input features
7. Predict with backend fallback (25-35%)
8. Wrap the outputs in typed views
9. Extract, assemble and write points in batches (35-100%)
10. Close the writer and return the path and point count
"""

import asyncio
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, NamedTuple, Optional, Tuple

from rich.console import Console

from .assemble import PointAssembler, SampleExtractor
from .backend import BackendFallbackController, ComputePreference, DeviceClass, backend_candidates
from .device import (
    MEMORY_THRESHOLD_BYTES,
    DeviceProfile,
    OutputQuality,
    check_device_memory,
    default_quality,
    max_output_points,
    select_point_indices,
)
from .errors import GenerationCancelled, IOFailure
from .image_input import DEFAULT_INPUT_SIZE, build_input_features, infer_input_size, prepare_image
from .ply_writer import SplatPLYWriter
from .resources import DISK_SPACE_REQUIRED_BYTES, ModelResources
from .schema import SchemaResolver, SemanticSchema
from .session import onnx_session_loader

console = Console()

BATCH_SIZE = 2048

MODEL_PROGRESS = 0.2
PREDICT_START_PROGRESS = 0.25
PREDICT_END_PROGRESS = 0.35


@dataclass
class GenerationConfig:
    """Configuration for a generation pipeline."""
    # Output
    output_dir: Path = Path("./output")
    output_name: Optional[str] = None
    binary: bool = True
    sh_degree: int = 0

    # Assembly
    batch_size: int = BATCH_SIZE
    default_input_size: Tuple[int, int] = DEFAULT_INPUT_SIZE
    disparity_factor: float = 1.0
    output_quality: Optional[OutputQuality] = None  # None picks from the device profile

    # Execution
    compute_preference: ComputePreference = ComputePreference.AUTO
    device_class: Optional[DeviceClass] = None

    # Gates
    allow_low_memory_override: bool = False
    memory_threshold: int = MEMORY_THRESHOLD_BYTES
    disk_space_required: int = DISK_SPACE_REQUIRED_BYTES


@dataclass
class GenerationStats:
    """Timings collected during one generate() call."""
    start_time: float = 0
    end_time: float = 0
    stages: Dict = field(default_factory=dict)

    def start(self):
        self.start_time = time.time()

    def stop(self):
        self.end_time = time.time()

    def record_stage(self, name: str, duration: float, **kwargs):
        self.stages[name] = {"duration_seconds": duration, **kwargs}

    @property
    def total_duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> Dict:
        return {
            "total_duration_seconds": self.total_duration,
            "stages": self.stages,
        }


class GenerationResult(NamedTuple):
    path: Path
    point_count: int


class ProgressReporter:
    """
    Clamps progress to [0, 1] and never lets it go backwards.

    The callback may run on a worker thread. Exceptions it raises are logged
    and dropped.
    """

    def __init__(self, callback: Optional[Callable[[float], None]] = None):
        self.callback = callback
        self.value = 0.0
        self._lock = threading.Lock()

    def report(self, value: float) -> None:
        value = min(max(float(value), 0.0), 1.0)
        with self._lock:
            if value < self.value:
                return
            self.value = value
        if self.callback is None:
            return
        try:
            self.callback(value)
        except Exception as e:
            console.print(f"[yellow]Progress callback raised {type(e).__name__}: {e}[/yellow]")

    def scaled(self, low: float, high: float) -> Callable[[float], None]:
        """Callback mapping a sub-task's [0, 1] onto [low, high]."""
        return lambda value: self.report(low + (high - low) * value)


class GenerationPipeline:
    """
    Owns at most one loaded session and runs one generation at a time.

    Args:
        resources: Model provider with an async ensure_available(progress)
        config: Generation configuration
        session_factory: model_path -> (backend -> session); defaults to onnxruntime
        writer_factory: path -> streaming scene writer; defaults to SplatPLYWriter
        device: Device profile; detected from the host when omitted
    """

    def __init__(
        self,
        resources: ModelResources,
        config: Optional[GenerationConfig] = None,
        session_factory: Optional[Callable] = None,
        writer_factory: Optional[Callable] = None,
        device: Optional[DeviceProfile] = None,
    ):
        self.resources = resources
        self.config = config or GenerationConfig()
        self.device = device or DeviceProfile.detect(self.config.device_class)
        self.session_factory = session_factory or onnx_session_loader
        self.writer_factory = writer_factory or SplatPLYWriter
        self.resolver = SchemaResolver()
        self.controller: Optional[BackendFallbackController] = None
        self.stats = GenerationStats()

        self._model_path: Optional[Path] = None
        self._schema: Optional[SemanticSchema] = None
        self._schema_session = None
        self._lock = asyncio.Lock()
        self._cancelled = threading.Event()
        # Blocking decode, model and write calls run here, one at a time
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="splatgen-predict")

    @property
    def is_loaded(self) -> bool:
        return self.controller is not None and self.controller.session is not None

    def cancel(self) -> None:
        """Request cancellation; honored at the next batch boundary."""
        self._cancelled.set()

    async def generate(
        self,
        image_bytes: bytes,
        disparity_factor: Optional[float] = None,
        allow_low_memory_override: Optional[bool] = None,
        progress: Optional[Callable[[float], None]] = None,
    ) -> GenerationResult:
        """
        Generate a splat scene from encoded image bytes.

        Returns:
            GenerationResult(path, point_count)
        """
        config = self.config
        if disparity_factor is None:
            disparity_factor = config.disparity_factor
        if allow_low_memory_override is None:
            allow_low_memory_override = config.allow_low_memory_override

        reporter = ProgressReporter(progress)
        loop = asyncio.get_running_loop()

        async with self._lock:
            self._cancelled.clear()
            self.stats = GenerationStats()
            self.stats.start()
            writer = None
            try:
                check_device_memory(self.device, allow_low_memory_override, config.memory_threshold)

                stage_start = time.time()
                model_path = await self.resources.ensure_available(reporter.scaled(0.0, MODEL_PROGRESS))
                reporter.report(MODEL_PROGRESS)
                self.stats.record_stage("model", time.time() - stage_start, path=str(model_path))
                self._check_cancelled()

                stage_start = time.time()
                controller = self._controller_for(model_path)
                await loop.run_in_executor(self._executor, controller.acquire_session)
                schema = self._current_schema()
                self.stats.record_stage("load", time.time() - stage_start,
                                        backend=controller.session_backend.value)

                size = infer_input_size(schema.image_input) or config.default_input_size
                image = await loop.run_in_executor(self._executor, prepare_image, image_bytes, size)
                inputs = build_input_features(schema, image, disparity_factor)
                console.print(f"[dim]Input image {size[0]}x{size[1]}, disparity factor {disparity_factor}[/dim]")
                reporter.report(PREDICT_START_PROGRESS)
                self._check_cancelled()

                stage_start = time.time()
                outputs = await loop.run_in_executor(self._executor, controller.predict, inputs)
                reporter.report(PREDICT_END_PROGRESS)
                self.stats.record_stage("predict", time.time() - stage_start,
                                        backend=controller.current_backend.value,
                                        attempts=len(controller.attempts) + 1)

                # A fallback may have replaced the session
                schema = self._current_schema()
                extractor = SampleExtractor.from_outputs(schema, outputs)

                quality = config.output_quality or default_quality(self.device)
                cap = max_output_points(quality, self.device)
                indices = select_point_indices(extractor.point_count(), cap)
                total = len(indices)
                if total < extractor.point_count():
                    console.print(f"[yellow]Subsampling {extractor.point_count():,} points to {total:,} "
                                  f"({quality.value} quality)[/yellow]")

                stage_start = time.time()
                path = self._output_path()
                writer = self.writer_factory(path)
                try:
                    await self._write_points(writer, extractor, indices, reporter)
                except OSError as e:
                    raise IOFailure(f"Could not write {path}: {e}") from e
                writer = None
                reporter.report(1.0)
                self.stats.record_stage("write", time.time() - stage_start, points=total)

            except GenerationCancelled:
                console.print("[yellow]Generation cancelled[/yellow]")
                self._release_session()
                if writer is not None:
                    writer.abort()
                raise
            except BaseException:
                if writer is not None:
                    writer.abort()
                raise
            finally:
                self.stats.stop()

        console.print(f"[green]Generated {total:,} points in {self.stats.total_duration:.1f}s[/green]")
        return GenerationResult(path, total)

    async def _write_points(self, writer, extractor: SampleExtractor, indices, reporter: ProgressReporter) -> None:
        """Start, fill and close the writer with one executor call per batch."""
        loop = asyncio.get_running_loop()
        assembler = PointAssembler()
        batch_size = max(1, self.config.batch_size)
        total = len(indices)
        written = 0

        def write_batch(chunk):
            writer.write(assembler.assemble_batch(extractor.extract_batch(chunk)))

        await loop.run_in_executor(self._executor, writer.start, self.config.sh_degree, self.config.binary, total)
        for start in range(0, total, batch_size):
            self._check_cancelled()
            chunk = indices[start:start + batch_size]
            await loop.run_in_executor(self._executor, write_batch, chunk)
            written += len(chunk)
            # 1.0 is reported only after the writer closes
            if written < total:
                reporter.report(PREDICT_END_PROGRESS + (1.0 - PREDICT_END_PROGRESS) * written / total)
        self._check_cancelled()
        await loop.run_in_executor(self._executor, writer.close)

    async def unload_model(self) -> None:
        """Release the loaded session. Waits for a running generation to finish."""
        async with self._lock:
            self._release_session()

    def close(self) -> None:
        self._release_session()
        self._executor.shutdown(wait=True)

    def _check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise GenerationCancelled()

    def _controller_for(self, model_path: Path) -> BackendFallbackController:
        candidates = backend_candidates(self.device.device_class, self.config.compute_preference)
        if self.controller is None or self._model_path != model_path:
            self._release_session()
            self.controller = BackendFallbackController(self.session_factory(model_path), candidates)
            self._model_path = model_path
        else:
            self.controller.set_candidates(candidates)
        return self.controller

    def _current_schema(self) -> SemanticSchema:
        session = self.controller.session
        if self._schema is None or self._schema_session is not session:
            self._schema = self.resolver.resolve(session)
            self._schema_session = session
        return self._schema

    def _release_session(self) -> None:
        if self.controller is not None:
            self.controller.release()
        self._schema = None
        self._schema_session = None

    def _output_path(self) -> Path:
        name = self.config.output_name or f"splat-{uuid.uuid4().hex[:12]}"
        if not name.endswith(".ply"):
            name += ".ply"
        return Path(self.config.output_dir) / name
