"""
Splat PLY Inspection

Parses PLY headers, reads the splat vertex columns back, and extracts the
optional camera blocks (extrinsic, intrinsic, image_size elements) plus a
sampled mean depth that hints which way the scene faces.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np

from .errors import IOFailure

MAX_HEADER_BYTES = 256 * 1024

PLY_TYPES = {
    "char": "i1", "int8": "i1",
    "uchar": "u1", "uint8": "u1",
    "short": "i2", "int16": "i2",
    "ushort": "u2", "uint16": "u2",
    "int": "i4", "int32": "i4",
    "uint": "u4", "uint32": "u4",
    "float": "f4", "float32": "f4",
    "double": "f8", "float64": "f8",
}


@dataclass
class PLYProperty:
    name: str
    type: str
    is_list: bool = False


@dataclass
class PLYElement:
    name: str
    count: int
    properties: List[PLYProperty] = field(default_factory=list)

    def dtype(self, byte_order: str = "<") -> np.dtype:
        """Packed record type; list properties have no fixed width."""
        fields = []
        for prop in self.properties:
            if prop.is_list:
                raise IOFailure(f"Element {self.name} has a list property, no fixed record width")
            if prop.type not in PLY_TYPES:
                raise IOFailure(f"Unknown PLY property type: {prop.type}")
            fields.append((prop.name, byte_order + PLY_TYPES[prop.type]))
        return np.dtype(fields)

    def property_names(self) -> List[str]:
        return [p.name for p in self.properties]


@dataclass
class PLYHeader:
    format: str
    elements: List[PLYElement]
    body_offset: int
    comments: List[str] = field(default_factory=list)

    def element(self, name: str) -> Optional[PLYElement]:
        return next((e for e in self.elements if e.name == name), None)


def read_header(ply_path: Path) -> PLYHeader:
    """Parse the ASCII header; body_offset is where element data starts."""
    try:
        with open(ply_path, "rb") as f:
            data = f.read(MAX_HEADER_BYTES)
    except OSError as e:
        raise IOFailure(f"Failed to read PLY: {e}") from e

    if not data.startswith(b"ply"):
        raise IOFailure(f"Not a PLY file: {ply_path}")

    end = None
    for needle in (b"end_header\n", b"end_header\r\n"):
        pos = data.find(needle)
        if pos >= 0:
            end = pos + len(needle)
            break
    if end is None:
        raise IOFailure(f"Could not find end_header in {ply_path}")

    fmt = ""
    elements: List[PLYElement] = []
    comments: List[str] = []
    for line in data[:end].decode("ascii", errors="ignore").splitlines():
        parts = line.split()
        if not parts:
            continue
        if parts[0] == "format" and len(parts) >= 2:
            fmt = parts[1]
        elif parts[0] == "comment":
            comments.append(line[len("comment"):].strip())
        elif parts[0] == "element" and len(parts) >= 3:
            elements.append(PLYElement(name=parts[1], count=int(parts[2])))
        elif parts[0] == "property" and elements:
            if len(parts) >= 5 and parts[1] == "list":
                elements[-1].properties.append(PLYProperty(parts[4], parts[3], is_list=True))
            elif len(parts) >= 3:
                elements[-1].properties.append(PLYProperty(parts[2], parts[1]))

    return PLYHeader(format=fmt, elements=elements, body_offset=end, comments=comments)


def get_ply_info(ply_path: Path) -> Dict:
    """
    Get information about a PLY file.

    Returns:
        Dict with point_count, file_size, properties
    """
    ply_path = Path(ply_path)
    if not ply_path.exists():
        raise IOFailure(f"PLY file not found: {ply_path}")

    header = read_header(ply_path)
    vertex = header.element("vertex")
    size = ply_path.stat().st_size
    properties = [{"type": p.type, "name": p.name} for p in vertex.properties] if vertex else []

    return {
        "file_size": size,
        "file_size_mb": size / (1024 * 1024),
        "format": header.format,
        "point_count": vertex.count if vertex else 0,
        "properties": properties,
        "property_count": len(properties),
        "elements": [e.name for e in header.elements],
    }


@dataclass
class GaussianArrays:
    positions: np.ndarray
    sh_dc: Optional[np.ndarray]
    opacities: Optional[np.ndarray]
    scales: Optional[np.ndarray]
    rotations: Optional[np.ndarray]
    sh_rest: Optional[np.ndarray]

    def __len__(self) -> int:
        return len(self.positions)


def _columns(data, names: List[str]) -> Optional[np.ndarray]:
    if not all(n in data.dtype.names for n in names):
        return None
    return np.column_stack([data[n] for n in names]).astype(np.float32)


def read_gaussian_ply(ply_path: Path) -> GaussianArrays:
    """
    Read the vertex columns of a splat PLY (binary little-endian or ASCII).

    Opacity and scale are returned as stored (logit / log space).
    """
    header = read_header(ply_path)
    vertex = header.element("vertex")
    if vertex is None:
        raise IOFailure(f"No vertex element in {ply_path}")

    offset = header.body_offset
    for element in header.elements:
        if element is vertex:
            break
        offset += element.count * element.dtype().itemsize

    dtype = vertex.dtype()
    with open(ply_path, "rb") as f:
        f.seek(offset)
        if header.format == "binary_little_endian":
            raw = f.read(vertex.count * dtype.itemsize)
            if len(raw) < vertex.count * dtype.itemsize:
                raise IOFailure(f"Vertex data truncated in {ply_path}")
            data = np.frombuffer(raw, dtype=dtype)
        elif header.format == "ascii":
            if header.elements[0] is not vertex:
                raise IOFailure("ASCII PLY must start with the vertex element")
            lines = f.read().decode("ascii", errors="ignore").splitlines()[:vertex.count]
            table = np.array([line.split() for line in lines], dtype=np.float64).reshape(-1, len(dtype.names))
            if len(table) < vertex.count:
                raise IOFailure(f"Vertex data truncated in {ply_path}")
            data = np.zeros(vertex.count, dtype=dtype)
            for i, name in enumerate(dtype.names):
                data[name] = table[:, i]
        else:
            raise IOFailure(f"Unsupported PLY format: {header.format}")

    rest_names = sorted(
        (n for n in data.dtype.names if n.startswith("f_rest_")),
        key=lambda n: int(n.rsplit("_", 1)[1]),
    )
    opacities = data["opacity"].astype(np.float32) if "opacity" in data.dtype.names else None

    return GaussianArrays(
        positions=_columns(data, ["x", "y", "z"]),
        sh_dc=_columns(data, ["f_dc_0", "f_dc_1", "f_dc_2"]),
        opacities=opacities,
        scales=_columns(data, ["scale_0", "scale_1", "scale_2"]),
        rotations=_columns(data, ["rot_0", "rot_1", "rot_2", "rot_3"]),
        sh_rest=_columns(data, rest_names) if rest_names else None,
    )


class ForwardAxis(str, Enum):
    POSITIVE_Z = "+z"
    NEGATIVE_Z = "-z"
    UNKNOWN = "unknown"


@dataclass
class CameraMetadata:
    extrinsic: Optional[np.ndarray] = None
    intrinsic: Optional[np.ndarray] = None
    image_size: Optional[Tuple[int, int]] = None


@dataclass
class SplatPLYMetadata:
    camera: CameraMetadata
    sampled_mean_z: Optional[float]
    forward_axis_hint: ForwardAxis


def _single_property(element: PLYElement, count: int, ply_type: str) -> bool:
    return (
        element.count == count
        and len(element.properties) == 1
        and not element.properties[0].is_list
        and PLY_TYPES.get(element.properties[0].type) == PLY_TYPES[ply_type]
    )


def _read_camera(f, header: PLYHeader) -> CameraMetadata:
    camera = CameraMetadata()
    offset = header.body_offset
    for element in header.elements:
        try:
            width = element.count * element.dtype().itemsize
        except IOFailure:
            # Cannot skip past a variable-width element
            break

        if element.name in ("extrinsic", "intrinsic", "image_size"):
            f.seek(offset)
            raw = f.read(width)
            if len(raw) == width:
                if element.name == "extrinsic" and _single_property(element, 16, "float"):
                    # Stored column by column
                    camera.extrinsic = np.frombuffer(raw, dtype="<f4").reshape(4, 4).T.copy()
                elif element.name == "intrinsic" and _single_property(element, 9, "float"):
                    camera.intrinsic = np.frombuffer(raw, dtype="<f4").reshape(3, 3).copy()
                elif element.name == "image_size" and _single_property(element, 2, "uint"):
                    w, h = np.frombuffer(raw, dtype="<u4")
                    camera.image_size = (int(w), int(h))
        offset += width
    return camera


def _sample_mean_z(f, header: PLYHeader, sample_vertex_count: int) -> Optional[float]:
    vertex = header.element("vertex")
    if vertex is None or vertex.count == 0 or "z" not in vertex.property_names():
        return None
    to_sample = min(vertex.count, max(sample_vertex_count, 0))
    if to_sample == 0:
        return None

    offset = header.body_offset
    for element in header.elements:
        if element is vertex:
            break
        offset += element.count * element.dtype().itemsize

    dtype = vertex.dtype()
    f.seek(offset)
    raw = f.read(to_sample * dtype.itemsize)
    if len(raw) != to_sample * dtype.itemsize:
        raise IOFailure(f"Vertex data too short (expected {to_sample * dtype.itemsize} bytes)")
    z = np.frombuffer(raw, dtype=dtype)["z"]
    return float(np.mean(z, dtype=np.float64))


def read_metadata(ply_path: Path, sample_vertex_count: int = 4096) -> SplatPLYMetadata:
    """Camera blocks and orientation hint for a binary little-endian splat PLY."""
    header = read_header(ply_path)
    if header.format != "binary_little_endian":
        raise IOFailure(f"Only binary_little_endian is supported (got {header.format})")

    with open(ply_path, "rb") as f:
        camera = _read_camera(f, header)
        mean_z = _sample_mean_z(f, header, sample_vertex_count)

    if mean_z is None:
        hint = ForwardAxis.UNKNOWN
    else:
        hint = ForwardAxis.POSITIVE_Z if mean_z >= 0 else ForwardAxis.NEGATIVE_Z

    return SplatPLYMetadata(camera=camera, sampled_mean_z=mean_z, forward_axis_hint=hint)
