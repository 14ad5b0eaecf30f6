"""
Sample Extraction and Point Assembly

SampleExtractor reads one point's raw model values through the typed views.
PointAssembler sanitizes them and encodes the serializable scene point:

1. Scales clamped to [floor, ceiling] (no zero-size or infinite splats)
2. Rotation normalized to a unit quaternion
3. Linear color clamped to [0, 1]
4. Linear color converted to display (sRGB) color
5. Opacity pulled strictly inside (0, 1)
6. Display color encoded as the degree-0 spherical harmonic coefficient

Clamping happens before any conversion so NaN/Inf from degenerate model
outputs never reach the color transfer function.
"""

from dataclasses import dataclass
from typing import Iterator, Mapping, Sequence, Tuple

import numpy as np

from utils.color import linear_to_srgb, normalize_quaternions, rgb_to_sh_dc

from .errors import UnresolvedOutputs
from .schema import SemanticSchema
from .tensor_view import QuatView, ScalarPerPointView, TensorView, Vec3View

SCALE_FLOOR = 1e-8
SCALE_CEILING = 1e4
OPACITY_EPSILON = 1e-6


@dataclass(frozen=True)
class PointSample:
    """Raw per-point model values, consumed immediately by the assembler."""
    position: Tuple[float, float, float]
    scale: Tuple[float, float, float]
    rotation: Tuple[float, float, float, float]
    color_linear: Tuple[float, float, float]
    opacity: float


@dataclass(frozen=True)
class ScenePoint:
    """Serializable splat: linear opacity and scale, w-x-y-z rotation."""
    position: Tuple[float, float, float]
    sh_dc: Tuple[float, float, float]
    opacity: float
    scale: Tuple[float, float, float]
    rotation: Tuple[float, float, float, float]


@dataclass
class PointSampleBatch:
    """Column arrays for a run of samples."""
    positions: np.ndarray
    scales: np.ndarray
    rotations: np.ndarray
    colors_linear: np.ndarray
    opacities: np.ndarray

    def __len__(self) -> int:
        return len(self.positions)

    @classmethod
    def from_samples(cls, samples: Sequence[PointSample]) -> "PointSampleBatch":
        return cls(
            positions=np.array([s.position for s in samples], dtype=np.float64).reshape(-1, 3),
            scales=np.array([s.scale for s in samples], dtype=np.float64).reshape(-1, 3),
            rotations=np.array([s.rotation for s in samples], dtype=np.float64).reshape(-1, 4),
            colors_linear=np.array([s.color_linear for s in samples], dtype=np.float64).reshape(-1, 3),
            opacities=np.array([s.opacity for s in samples], dtype=np.float64).reshape(-1),
        )


@dataclass
class ScenePointBatch:
    """Column arrays for one chunk handed to the scene writer."""
    positions: np.ndarray
    sh_dc: np.ndarray
    opacities: np.ndarray
    scales: np.ndarray
    rotations: np.ndarray

    def __len__(self) -> int:
        return len(self.positions)

    def __iter__(self) -> Iterator[ScenePoint]:
        for i in range(len(self)):
            yield self.point(i)

    def point(self, i: int) -> ScenePoint:
        return ScenePoint(
            position=tuple(float(v) for v in self.positions[i]),
            sh_dc=tuple(float(v) for v in self.sh_dc[i]),
            opacity=float(self.opacities[i]),
            scale=tuple(float(v) for v in self.scales[i]),
            rotation=tuple(float(v) for v in self.rotations[i]),
        )

    @classmethod
    def from_points(cls, points: Sequence[ScenePoint]) -> "ScenePointBatch":
        if isinstance(points, ScenePointBatch):
            return points
        return cls(
            positions=np.array([p.position for p in points], dtype=np.float64).reshape(-1, 3),
            sh_dc=np.array([p.sh_dc for p in points], dtype=np.float64).reshape(-1, 3),
            opacities=np.array([p.opacity for p in points], dtype=np.float64).reshape(-1),
            scales=np.array([p.scale for p in points], dtype=np.float64).reshape(-1, 3),
            rotations=np.array([p.rotation for p in points], dtype=np.float64).reshape(-1, 4),
        )


class SampleExtractor:
    """Reads PointSamples from the five resolved output tensors."""

    def __init__(
        self,
        positions: Vec3View,
        scales: Vec3View,
        rotations: QuatView,
        colors: Vec3View,
        opacities: ScalarPerPointView,
    ):
        self.positions = positions
        self.scales = scales
        self.rotations = rotations
        self.colors = colors
        self.opacities = opacities

        counts = {
            view.name: view.point_count()
            for view in (positions, scales, rotations, colors, opacities)
        }
        if len(set(counts.values())) != 1:
            raise UnresolvedOutputs(
                list(counts),
                reason="point counts differ: " + ", ".join(f"{k}={v}" for k, v in counts.items()),
            )

    @classmethod
    def from_outputs(cls, schema: SemanticSchema, outputs: Mapping[str, object]) -> "SampleExtractor":
        """Wrap prediction outputs (name -> array) using the schema's bindings."""
        names = schema.output_names()

        def require(role: str) -> TensorView:
            name = names[role]
            if name not in outputs or outputs[name] is None:
                raise UnresolvedOutputs([name], reason="missing from prediction output")
            return TensorView.from_array(outputs[name])

        return cls(
            positions=Vec3View(require("positions"), names["positions"]),
            scales=Vec3View(require("scales"), names["scales"]),
            rotations=QuatView(require("rotations"), names["rotations"]),
            colors=Vec3View(require("colors"), names["colors"]),
            opacities=ScalarPerPointView(require("opacities"), names["opacities"]),
        )

    def point_count(self) -> int:
        return self.positions.point_count()

    def extract(self, index: int) -> PointSample:
        return PointSample(
            position=self.positions.read(index),
            scale=self.scales.read(index),
            rotation=self.rotations.read(index),
            color_linear=self.colors.read(index),
            opacity=self.opacities.read(index),
        )

    def extract_batch(self, indices) -> PointSampleBatch:
        indices = np.asarray(indices, dtype=np.int64)
        return PointSampleBatch(
            positions=self.positions.read_many(indices).astype(np.float64),
            scales=self.scales.read_many(indices).astype(np.float64),
            rotations=self.rotations.read_many(indices).astype(np.float64),
            colors_linear=self.colors.read_many(indices).astype(np.float64),
            opacities=self.opacities.read_many(indices).astype(np.float64),
        )


class PointAssembler:
    """Turns raw samples into scene points."""

    def __init__(self, scale_floor: float = SCALE_FLOOR, scale_ceiling: float = SCALE_CEILING,
                 opacity_epsilon: float = OPACITY_EPSILON):
        self.scale_floor = scale_floor
        self.scale_ceiling = scale_ceiling
        self.opacity_epsilon = opacity_epsilon

    def assemble(self, sample: PointSample) -> ScenePoint:
        return self.assemble_batch(PointSampleBatch.from_samples([sample])).point(0)

    def assemble_batch(self, batch: PointSampleBatch) -> ScenePointBatch:
        # fmax/fmin return the non-NaN operand, so NaN lands on the bound
        scales = np.fmin(np.fmax(batch.scales, self.scale_floor), self.scale_ceiling)
        rotations = normalize_quaternions(batch.rotations).reshape(-1, 4)
        colors = np.fmin(np.fmax(batch.colors_linear, 0.0), 1.0)
        display = linear_to_srgb(colors)
        opacities = np.fmin(
            np.fmax(batch.opacities, self.opacity_epsilon),
            1.0 - self.opacity_epsilon,
        )
        sh_dc = rgb_to_sh_dc(display)

        return ScenePointBatch(
            positions=np.asarray(batch.positions, dtype=np.float64),
            sh_dc=np.asarray(sh_dc, dtype=np.float64).reshape(-1, 3),
            opacities=opacities,
            scales=scales,
            rotations=rotations,
        )
