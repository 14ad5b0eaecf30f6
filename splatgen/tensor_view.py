"""
Stride-aware readers over flat model output buffers.

TensorView reads single elements from a float32/float16/float64 buffer given
a shape and element strides. The point-major views on top of it resolve the
tensor's layout once ([1, N, k], [N, k], [N], [N, 1], [1, N]) into a point
stride and a component stride, so per-point reads never branch on shape.
"""

from typing import Optional, Sequence, Tuple

import numpy as np
from rich.console import Console

from utils.half_float import decode_half, decode_half_array

from .descriptors import TensorDescriptor
from .errors import IndexOutOfBounds, UnresolvedOutputs, UnsupportedDType

console = Console()

# Storage type read from the raw buffer for each dtype tag
STORAGE_TYPES = {
    "float32": np.float32,
    "float16": np.uint16,
    "float64": np.float64,
}

DTYPE_ALIASES = {
    "float": "float32",
    "half": "float16",
    "double": "float64",
}


def normalize_dtype(dtype) -> str:
    tag = dtype.name if isinstance(dtype, np.dtype) else str(dtype).lower()
    tag = DTYPE_ALIASES.get(tag, tag)
    if tag not in STORAGE_TYPES:
        raise UnsupportedDType(tag)
    return tag


class TensorView:
    """Read-only, bounds-checked element reader over a flat numeric buffer."""

    def __init__(self, dtype, shape: Sequence[int], strides: Sequence[int], buffer):
        self.dtype = normalize_dtype(dtype)
        self.shape = tuple(int(d) for d in shape)
        self.strides = tuple(int(s) for s in strides)
        if len(self.strides) != len(self.shape):
            raise ValueError(f"Expected {len(self.shape)} strides, got {len(self.strides)}")

        self._raw = np.frombuffer(buffer, dtype=STORAGE_TYPES[self.dtype])
        self._decoded: Optional[np.ndarray] = None

    @classmethod
    def from_array(cls, array) -> "TensorView":
        """Wrap a numpy array (copied to C order if needed)."""
        array = np.asarray(array)
        if array.dtype.name not in STORAGE_TYPES:
            raise UnsupportedDType(array.dtype.name)
        array = np.ascontiguousarray(array)
        if array.ndim == 0:
            array = array.reshape(1)
        desc = TensorDescriptor.from_array("array", array)
        return cls(desc.dtype, desc.shape, desc.strides, array)

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        """Number of elements in the underlying buffer."""
        return len(self._raw)

    def offset_of(self, index: Sequence[int]) -> int:
        if len(index) != self.rank:
            raise IndexOutOfBounds(tuple(index), self.rank)
        offset = 0
        for i, dim, stride in zip(index, self.shape, self.strides):
            if not 0 <= i < dim:
                raise IndexOutOfBounds(tuple(index), dim)
            offset += i * stride
        return offset

    def read(self, index: Sequence[int]) -> float:
        """Read the element at a multi-dimensional index."""
        return self.read_linear(self.offset_of(index))

    def read_linear(self, offset: int) -> float:
        """Read the element at a linear element offset into the buffer."""
        if not 0 <= offset < len(self._raw):
            raise IndexOutOfBounds(offset, len(self._raw))
        raw = self._raw[offset]
        if self.dtype == "float16":
            return decode_half(int(raw))
        return float(np.float32(raw))

    def values(self) -> np.ndarray:
        """Whole buffer decoded to float32 (computed once)."""
        if self._decoded is None:
            if self.dtype == "float16":
                self._decoded = decode_half_array(self._raw)
            elif self.dtype == "float64":
                self._decoded = self._raw.astype(np.float32)
            else:
                self._decoded = self._raw
        return self._decoded

    def gather(self, offsets: np.ndarray) -> np.ndarray:
        """Read many linear offsets at once as float32."""
        offsets = np.asarray(offsets, dtype=np.int64)
        if offsets.size:
            low, high = int(offsets.min()), int(offsets.max())
            if low < 0 or high >= len(self._raw):
                raise IndexOutOfBounds(low if low < 0 else high, len(self._raw))
        return self.values()[offsets]


class PointMajorView:
    """
    Base for views addressing [1, N, k] or [N, k] tensors by point index.

    The layout is reduced to (point_stride, component_stride) at construction.
    """

    components = 3

    def __init__(self, view: TensorView, name: str = "tensor"):
        self.view = view
        self.name = name

        if view.rank == 3:
            self._point_axis = 1
        elif view.rank == 2:
            self._point_axis = 0
        else:
            raise UnresolvedOutputs([name], reason=f"expected rank 2 or 3, got shape {list(view.shape)}")

        if view.shape[-1] != self.components:
            raise UnresolvedOutputs(
                [name], reason=f"expected last dimension {self.components}, got shape {list(view.shape)}")
        if view.rank == 3 and view.shape[0] < 1:
            raise UnresolvedOutputs([name], reason=f"empty batch dimension in shape {list(view.shape)}")

        self._count = view.shape[self._point_axis]
        self.point_stride = view.strides[self._point_axis]
        self.component_stride = view.strides[-1]
        self._component_offsets = np.arange(self.components, dtype=np.int64) * self.component_stride

    def point_count(self) -> int:
        return self._count

    def _check(self, point_index: int) -> int:
        if not 0 <= point_index < self._count:
            raise IndexOutOfBounds(point_index, self._count)
        return point_index * self.point_stride

    def _read(self, point_index: int) -> Tuple[float, ...]:
        base = self._check(point_index)
        return tuple(
            self.view.read_linear(base + c * self.component_stride)
            for c in range(self.components)
        )

    def read_many(self, indices) -> np.ndarray:
        """Read components for many points: returns (len(indices), components) float32."""
        indices = np.asarray(indices, dtype=np.int64)
        if indices.size:
            if int(indices.min()) < 0 or int(indices.max()) >= self._count:
                bad = int(indices.min()) if int(indices.min()) < 0 else int(indices.max())
                raise IndexOutOfBounds(bad, self._count)
        offsets = indices[:, None] * self.point_stride + self._component_offsets[None, :]
        return self.view.gather(offsets)


class Vec3View(PointMajorView):
    """Per-point 3-vectors (positions, scales, colors)."""

    components = 3

    def read(self, point_index: int) -> Tuple[float, float, float]:
        return self._read(point_index)


class QuatView(PointMajorView):
    """Per-point quaternions stored w, x, y, z."""

    components = 4

    def read(self, point_index: int) -> Tuple[float, float, float, float]:
        return self._read(point_index)


class ScalarPerPointView:
    """
    Per-point scalars from [N], [N, 1] or [1, N] tensors.

    For rank 2 a leading dimension of 1 means the points run along axis 1.
    When neither dimension is 1 the [N, k] reading wins and column 0 is used;
    that layout is a guess and is reported as such.
    """

    def __init__(self, view: TensorView, name: str = "tensor"):
        self.view = view
        self.name = name

        if view.rank == 1:
            axis = 0
        elif view.rank == 2:
            rows, cols = view.shape
            if rows == 1 and cols != 1:
                axis = 1
            else:
                axis = 0
                if rows != 1 and cols != 1:
                    console.print(f"[yellow]Ambiguous per-point layout for {name} "
                                  f"{list(view.shape)}, reading column 0[/yellow]")
        else:
            raise UnresolvedOutputs([name], reason=f"expected rank 1 or 2, got shape {list(view.shape)}")

        self._count = view.shape[axis]
        self.point_stride = view.strides[axis]

    def point_count(self) -> int:
        return self._count

    def read(self, point_index: int) -> float:
        if not 0 <= point_index < self._count:
            raise IndexOutOfBounds(point_index, self._count)
        return self.view.read_linear(point_index * self.point_stride)

    def read_many(self, indices) -> np.ndarray:
        indices = np.asarray(indices, dtype=np.int64)
        if indices.size:
            if int(indices.min()) < 0 or int(indices.max()) >= self._count:
                bad = int(indices.min()) if int(indices.min()) < 0 else int(indices.max())
                raise IndexOutOfBounds(bad, self._count)
        return self.view.gather(indices * self.point_stride)
