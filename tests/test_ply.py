"""Tests for the splat PLY writer and reader."""

import numpy as np
import pytest

from splatgen.assemble import PointAssembler, PointSample, PointSampleBatch, ScenePointBatch
from splatgen.errors import CountMismatch, IOFailure
from splatgen.ply_metadata import ForwardAxis, get_ply_info, read_gaussian_ply, read_header, read_metadata
from splatgen.ply_writer import SplatPLYWriter, splat_property_names, write_scene_ply
from utils.color import sigmoid


def make_points(n, z=1.0):
    samples = [
        PointSample(
            position=(float(i), -float(i), z),
            scale=(0.01, 0.02, 0.03),
            rotation=(1.0, 0.0, 0.0, 0.0),
            color_linear=(0.5, 0.25, 1.0),
            opacity=0.8,
        )
        for i in range(n)
    ]
    return PointAssembler().assemble_batch(PointSampleBatch.from_samples(samples))


def write_camera_ply(path, z_values, extrinsic, intrinsic, image_size):
    """Binary PLY with camera elements after the vertex element."""
    header = (
        "ply\n"
        "format binary_little_endian 1.0\n"
        f"element vertex {len(z_values)}\n"
        "property float x\n"
        "property float y\n"
        "property float z\n"
        "element extrinsic 16\n"
        "property float extrinsic\n"
        "element intrinsic 9\n"
        "property float intrinsic\n"
        "element image_size 2\n"
        "property uint image_size\n"
        "end_header\n"
    )
    vertices = np.zeros((len(z_values), 3), dtype="<f4")
    vertices[:, 2] = z_values
    with open(path, "wb") as f:
        f.write(header.encode("ascii"))
        f.write(vertices.tobytes())
        # Column-major
        f.write(np.asarray(extrinsic, dtype="<f4").T.tobytes())
        f.write(np.asarray(intrinsic, dtype="<f4").tobytes())
        f.write(np.asarray(image_size, dtype="<u4").tobytes())


class TestPropertyNames:
    def test_degree_zero(self):
        names = splat_property_names(0)

        assert len(names) == 14
        assert names[:6] == ["x", "y", "z", "f_dc_0", "f_dc_1", "f_dc_2"]
        assert names[6] == "opacity"

    def test_degree_three_rest_coefficients(self):
        names = splat_property_names(3)
        assert sum(n.startswith("f_rest_") for n in names) == 45


class TestSplatPLYWriter:
    """Streaming writes and their failure modes."""

    def test_binary_chunks_round_trip(self, tmp_path):
        path = tmp_path / "scene.ply"
        points = make_points(10)
        writer = SplatPLYWriter(path)
        writer.start(sh_degree=0, binary=True, point_count=10)
        writer.write(ScenePointBatch(points.positions[:4], points.sh_dc[:4], points.opacities[:4],
                                     points.scales[:4], points.rotations[:4]))
        writer.write([points.point(i) for i in range(4, 10)])
        writer.close()

        data = read_gaussian_ply(path)

        assert len(data) == 10
        np.testing.assert_allclose(data.positions, points.positions, rtol=1e-6)
        np.testing.assert_allclose(data.sh_dc, points.sh_dc, rtol=1e-5)
        np.testing.assert_allclose(sigmoid(data.opacities), points.opacities, rtol=1e-5)
        np.testing.assert_allclose(np.exp(data.scales), points.scales, rtol=1e-5)
        np.testing.assert_allclose(data.rotations, points.rotations)
        assert data.sh_rest is None

    def test_ascii(self, tmp_path):
        path = tmp_path / "scene.ply"
        points = make_points(3)

        write_scene_ply(path, points, binary=False)

        assert path.read_bytes().startswith(b"ply\nformat ascii 1.0\n")
        data = read_gaussian_ply(path)
        np.testing.assert_allclose(data.positions, points.positions, rtol=1e-6)

    def test_sh_rest_written_as_zeros(self, tmp_path):
        path = tmp_path / "scene.ply"
        write_scene_ply(path, make_points(2), sh_degree=1)

        data = read_gaussian_ply(path)

        assert data.sh_rest.shape == (2, 9)
        assert not data.sh_rest.any()

    def test_infinite_scale_stored_finite(self, tmp_path):
        path = tmp_path / "scene.ply"
        raw = PointSample(position=(0.0, 0.0, 1.0), scale=(np.inf, np.nan, 0.0),
                          rotation=(1.0, 0.0, 0.0, 0.0), color_linear=(0.5, 0.5, 0.5), opacity=0.5)

        write_scene_ply(path, PointAssembler().assemble_batch(PointSampleBatch.from_samples([raw])))

        assert np.isfinite(read_gaussian_ply(path).scales).all()

    def test_overflow_raises(self, tmp_path):
        writer = SplatPLYWriter(tmp_path / "scene.ply")
        writer.start(point_count=2)

        with pytest.raises(CountMismatch):
            writer.write(make_points(3))
        writer.abort()

    def test_short_write_raises_on_close(self, tmp_path):
        writer = SplatPLYWriter(tmp_path / "scene.ply")
        writer.start(point_count=5)
        writer.write(make_points(3))

        with pytest.raises(CountMismatch) as exc:
            writer.close()
        assert (exc.value.expected, exc.value.actual) == (5, 3)

    def test_count_not_validated_when_disabled(self, tmp_path):
        writer = SplatPLYWriter(tmp_path / "scene.ply", validate_count=False)
        writer.start(point_count=5)
        writer.write(make_points(3))
        writer.close()

        assert writer.written == 3

    def test_abort_removes_file(self, tmp_path):
        path = tmp_path / "scene.ply"
        writer = SplatPLYWriter(path)
        writer.start(point_count=4)
        writer.write(make_points(2))

        writer.abort()

        assert not path.exists()

    def test_write_before_start(self, tmp_path):
        with pytest.raises(IOFailure):
            SplatPLYWriter(tmp_path / "scene.ply").write(make_points(1))


class TestPLYInfo:
    def test_info(self, tmp_path):
        path = tmp_path / "scene.ply"
        write_scene_ply(path, make_points(7))

        info = get_ply_info(path)

        assert info["point_count"] == 7
        assert info["format"] == "binary_little_endian"
        assert info["property_count"] == 14
        assert info["file_size"] == path.stat().st_size

    def test_missing_file(self, tmp_path):
        with pytest.raises(IOFailure):
            get_ply_info(tmp_path / "missing.ply")

    def test_not_a_ply(self, tmp_path):
        path = tmp_path / "bad.ply"
        path.write_bytes(b"not a ply file")
        with pytest.raises(IOFailure):
            read_header(path)

    def test_header_list_property(self, tmp_path):
        path = tmp_path / "mesh.ply"
        path.write_bytes(
            b"ply\nformat ascii 1.0\nelement face 0\nproperty list uchar int vertex_indices\nend_header\n")

        header = read_header(path)

        assert header.elements[0].properties[0].is_list
        assert header.elements[0].properties[0].name == "vertex_indices"


class TestMetadata:
    """Camera blocks and forward axis hint."""

    def test_camera_blocks(self, tmp_path):
        path = tmp_path / "camera.ply"
        extrinsic = np.arange(16, dtype=np.float32).reshape(4, 4)
        intrinsic = np.array([[500, 0, 320], [0, 500, 240], [0, 0, 1]], dtype=np.float32)
        write_camera_ply(path, [1.0, 2.0, 3.0], extrinsic, intrinsic, (640, 480))

        metadata = read_metadata(path)

        np.testing.assert_array_equal(metadata.camera.extrinsic, extrinsic)
        np.testing.assert_array_equal(metadata.camera.intrinsic, intrinsic)
        assert metadata.camera.image_size == (640, 480)
        assert metadata.sampled_mean_z == pytest.approx(2.0)
        assert metadata.forward_axis_hint == ForwardAxis.POSITIVE_Z

    def test_negative_z(self, tmp_path):
        path = tmp_path / "scene.ply"
        write_scene_ply(path, make_points(5, z=-2.0))

        metadata = read_metadata(path)

        assert metadata.forward_axis_hint == ForwardAxis.NEGATIVE_Z
        assert metadata.camera.extrinsic is None
        assert metadata.camera.image_size is None

    def test_sample_count_limits_read(self, tmp_path):
        path = tmp_path / "camera.ply"
        write_camera_ply(path, [1.0, 1.0, -10.0], np.eye(4), np.eye(3), (1, 1))

        assert read_metadata(path, sample_vertex_count=2).sampled_mean_z == pytest.approx(1.0)

    def test_empty_scene_unknown_axis(self, tmp_path):
        path = tmp_path / "empty.ply"
        write_scene_ply(path, make_points(0))

        metadata = read_metadata(path)

        assert metadata.sampled_mean_z is None
        assert metadata.forward_axis_hint == ForwardAxis.UNKNOWN

    def test_ascii_rejected(self, tmp_path):
        path = tmp_path / "scene.ply"
        write_scene_ply(path, make_points(2), binary=False)

        with pytest.raises(IOFailure):
            read_metadata(path)
