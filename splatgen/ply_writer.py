"""
Streaming Gaussian Splat PLY Writer

Writes scene points chunk by chunk: start() emits the header with a
forward-declared vertex count, write() appends a chunk, close() finalizes.
Opacity is stored as a logit and scale as a natural log, the convention
splat viewers and trainers read.
"""

from pathlib import Path
from typing import List, Sequence, Union

import numpy as np
from rich.console import Console

from utils.color import logit

from .assemble import ScenePoint, ScenePointBatch
from .errors import CountMismatch, IOFailure

console = Console()


def splat_property_names(sh_degree: int = 0) -> List[str]:
    """Vertex property names in file order."""
    rest = 3 * ((sh_degree + 1) ** 2 - 1)
    return (
        ["x", "y", "z", "f_dc_0", "f_dc_1", "f_dc_2"]
        + [f"f_rest_{i}" for i in range(rest)]
        + ["opacity", "scale_0", "scale_1", "scale_2", "rot_0", "rot_1", "rot_2", "rot_3"]
    )


class SplatPLYWriter:
    """
    Append-only splat PLY sink.

    Args:
        path: Output file
        validate_count: Raise CountMismatch when the written count differs
            from the count declared in start()
    """

    def __init__(self, path: Path, validate_count: bool = True):
        self.path = Path(path)
        self.validate_count = validate_count
        self.sh_degree = 0
        self.binary = True
        self.expected_count = 0
        self.written = 0
        self._file = None
        self._names: List[str] = []

    def start(self, sh_degree: int = 0, binary: bool = True, point_count: int = 0) -> None:
        if sh_degree < 0:
            raise ValueError(f"Invalid spherical harmonic degree: {sh_degree}")
        self.sh_degree = sh_degree
        self.binary = binary
        self.expected_count = point_count
        self.written = 0
        self._names = splat_property_names(sh_degree)

        header = (
            "ply\n"
            f"format {'binary_little_endian' if binary else 'ascii'} 1.0\n"
            "comment generated by splatgen\n"
            f"element vertex {point_count}\n"
            + "".join(f"property float {name}\n" for name in self._names)
            + "end_header\n"
        )

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "wb")
            self._file.write(header.encode("ascii"))
        except OSError as e:
            self._close_quietly()
            raise IOFailure(f"Could not start {self.path}: {e}") from e

    def write(self, points: Union[ScenePointBatch, Sequence[ScenePoint]]) -> None:
        if self._file is None:
            raise IOFailure(f"Writer for {self.path} is not started")

        batch = ScenePointBatch.from_points(points)
        n = len(batch)
        if self.validate_count and self.written + n > self.expected_count:
            raise CountMismatch(self.expected_count, self.written + n)

        table = self._pack(batch)
        try:
            if self.binary:
                self._file.write(table.astype("<f4").tobytes())
            else:
                np.savetxt(self._file, table, fmt="%.9g")
        except OSError as e:
            raise IOFailure(f"Could not write to {self.path}: {e}") from e
        self.written += n

    def close(self) -> None:
        if self._file is None:
            return
        try:
            self._file.flush()
            self._file.close()
        except OSError as e:
            raise IOFailure(f"Could not finalize {self.path}: {e}") from e
        finally:
            self._file = None

        if self.validate_count and self.written != self.expected_count:
            raise CountMismatch(self.expected_count, self.written)

        size_mb = self.path.stat().st_size / (1024 * 1024)
        console.print(f"[green]Wrote splat: {self.path.name} ({self.written:,} points, {size_mb:.1f} MB)[/green]")

    def abort(self) -> None:
        """Close and delete a partially written file."""
        self._close_quietly()
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            console.print(f"[yellow]Could not remove partial file {self.path}: {e}[/yellow]")

    def _close_quietly(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                pass
            self._file = None

    def _pack(self, batch: ScenePointBatch) -> np.ndarray:
        n = len(batch)
        rest = len(self._names) - 14
        columns = [
            np.asarray(batch.positions, dtype=np.float64).reshape(n, 3),
            np.asarray(batch.sh_dc, dtype=np.float64).reshape(n, 3),
            np.zeros((n, rest), dtype=np.float64),
            logit(batch.opacities).reshape(n, 1),
            np.log(np.asarray(batch.scales, dtype=np.float64)).reshape(n, 3),
            np.asarray(batch.rotations, dtype=np.float64).reshape(n, 4),
        ]
        return np.hstack(columns).astype(np.float32)


def write_scene_ply(
    path: Path,
    points: Union[ScenePointBatch, Sequence[ScenePoint]],
    binary: bool = True,
    sh_degree: int = 0,
) -> int:
    """Write a whole scene in one call. Returns the number of points written."""
    batch = ScenePointBatch.from_points(points)
    writer = SplatPLYWriter(path)
    writer.start(sh_degree=sh_degree, binary=binary, point_count=len(batch))
    try:
        writer.write(batch)
        writer.close()
    except BaseException:
        writer.abort()
        raise
    return len(batch)
