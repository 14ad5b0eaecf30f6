"""Tests for model caching and device gates."""

import asyncio
import zipfile

import numpy as np
import pytest

from splatgen.backend import DeviceClass
from splatgen.device import (
    DeviceProfile,
    OutputQuality,
    check_device_memory,
    default_quality,
    max_output_points,
    recommended_max_output_points,
    select_point_indices,
)
from splatgen.errors import GIB, InsufficientDeviceMemory, InsufficientDiskSpace, MissingResource
from splatgen.resources import ModelResources


def make_model(directory, name="sharp.onnx"):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_bytes(b"fake-onnx-graph")
    return path


class TestModelResources:
    """ensure_available staging and cache management."""

    def test_stage_from_file(self, tmp_path):
        source = make_model(tmp_path / "src")
        (tmp_path / "src" / "sharp.onnx.data").write_bytes(b"weights")
        resources = ModelResources(source=source, cache_dir=tmp_path / "cache", disk_space_required=0)
        reported = []

        path = asyncio.run(resources.ensure_available(reported.append))

        assert path == tmp_path / "cache" / "sharp" / "sharp.onnx"
        assert path.read_bytes() == b"fake-onnx-graph"
        assert (path.parent / "sharp.onnx.data").exists()
        assert reported == [0.0, 0.6, 0.85, 1.0]
        assert resources.cached_model_exists()

    def test_cache_hit_reports_done(self, tmp_path):
        source = make_model(tmp_path / "src")
        resources = ModelResources(source=source, cache_dir=tmp_path / "cache", disk_space_required=0)
        asyncio.run(resources.ensure_available())
        source.unlink()
        reported = []

        path = asyncio.run(resources.ensure_available(reported.append))

        assert path.exists()
        assert reported == [1.0]

    def test_stage_from_directory(self, tmp_path):
        make_model(tmp_path / "src" / "nested", name="model.onnx")
        resources = ModelResources(source=tmp_path / "src", cache_dir=tmp_path / "cache", disk_space_required=0)

        path = asyncio.run(resources.ensure_available())

        assert path.name == "model.onnx"

    def test_stage_from_zip(self, tmp_path):
        archive = tmp_path / "sharp.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("sharp.onnx", b"graph")
        resources = ModelResources(source=archive, cache_dir=tmp_path / "cache", disk_space_required=0)

        path = asyncio.run(resources.ensure_available())

        assert path.read_bytes() == b"graph"

    def test_missing_source(self, tmp_path):
        resources = ModelResources(source=tmp_path / "nope.onnx", cache_dir=tmp_path / "cache",
                                   disk_space_required=0)
        with pytest.raises(MissingResource):
            asyncio.run(resources.ensure_available())

    def test_no_source_configured(self, tmp_path):
        resources = ModelResources(cache_dir=tmp_path / "cache", disk_space_required=0)
        with pytest.raises(MissingResource):
            asyncio.run(resources.ensure_available())

    def test_zip_without_model(self, tmp_path):
        archive = tmp_path / "empty.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("README.txt", "no model here")
        resources = ModelResources(source=archive, cache_dir=tmp_path / "cache", disk_space_required=0)

        with pytest.raises(MissingResource):
            asyncio.run(resources.ensure_available())
        assert not resources.cached_model_exists()

    def test_disk_gate(self, tmp_path):
        source = make_model(tmp_path / "src")
        resources = ModelResources(source=source, cache_dir=tmp_path / "cache", disk_space_required=1 << 62)

        with pytest.raises(InsufficientDiskSpace) as exc:
            asyncio.run(resources.ensure_available())
        assert exc.value.required_bytes == 1 << 62
        assert "GB" in str(exc.value)

    def test_delete_cached_model(self, tmp_path):
        source = make_model(tmp_path / "src")
        resources = ModelResources(source=source, cache_dir=tmp_path / "cache", disk_space_required=0)
        asyncio.run(resources.ensure_available())

        assert resources.delete_cached_model()
        assert not resources.cached_model_exists()
        assert not resources.delete_cached_model()


class TestDeviceGates:
    """Memory gate and point budgets."""

    def test_mobile_below_threshold_fails(self):
        profile = DeviceProfile(DeviceClass.MOBILE, 6 * GIB)

        with pytest.raises(InsufficientDeviceMemory) as exc:
            check_device_memory(profile)
        assert exc.value.required_bytes == 8 * GIB
        assert exc.value.available_bytes == 6 * GIB

    def test_override(self):
        check_device_memory(DeviceProfile(DeviceClass.MOBILE, 2 * GIB), allow_override=True)

    def test_desktop_not_gated(self):
        check_device_memory(DeviceProfile(DeviceClass.DESKTOP, 2 * GIB))

    @pytest.mark.parametrize("memory,expected", [
        (3 * GIB, 150_000),
        (5 * GIB, 300_000),
        (7 * GIB, 600_000),
        (12 * GIB, None),
    ])
    def test_recommended_cap(self, memory, expected):
        assert recommended_max_output_points(DeviceProfile(DeviceClass.MOBILE, memory)) == expected

    def test_quality_caps(self):
        mobile = DeviceProfile(DeviceClass.MOBILE, 5 * GIB)
        desktop = DeviceProfile(DeviceClass.DESKTOP, 64 * GIB)

        assert max_output_points(OutputQuality.FULL, mobile) is None
        assert max_output_points(OutputQuality.BALANCED, mobile) == 300_000
        assert max_output_points(OutputQuality.LOW, mobile) == 150_000
        assert max_output_points(OutputQuality.LOW, DeviceProfile(DeviceClass.MOBILE, 3 * GIB)) == 75_000
        assert max_output_points(OutputQuality.BALANCED, desktop) is None
        assert max_output_points(OutputQuality.LOW, desktop) == 300_000
        assert default_quality(mobile) == OutputQuality.BALANCED
        assert default_quality(desktop) == OutputQuality.FULL

    def test_select_indices_evenly_spaced(self):
        indices = select_point_indices(10, 4)

        np.testing.assert_array_equal(indices, [0, 2, 5, 7])
        assert np.all(np.diff(indices) > 0)

    def test_select_indices_no_cap(self):
        np.testing.assert_array_equal(select_point_indices(5), np.arange(5))
        np.testing.assert_array_equal(select_point_indices(5, 10), np.arange(5))
