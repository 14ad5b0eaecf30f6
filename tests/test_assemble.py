"""Tests for sample extraction and point assembly."""

import math

import numpy as np
import pytest

from splatgen.assemble import (
    OPACITY_EPSILON,
    SCALE_CEILING,
    SCALE_FLOOR,
    PointAssembler,
    PointSample,
    PointSampleBatch,
    SampleExtractor,
    ScenePointBatch,
)
from splatgen.descriptors import FeatureDescriptor, FeatureKind
from splatgen.errors import UnresolvedOutputs
from splatgen.schema import CANONICAL_OUTPUT_NAMES, SemanticSchema
from utils.color import SH_C0, linear_to_srgb, normalize_quaternions, rgb_to_sh_dc, sh_dc_to_rgb


def sample(**overrides):
    values = dict(
        position=(1.0, 2.0, 3.0),
        scale=(0.1, 0.2, 0.3),
        rotation=(1.0, 0.0, 0.0, 0.0),
        color_linear=(0.5, 0.5, 0.5),
        opacity=0.5,
    )
    values.update(overrides)
    return PointSample(**values)


def canonical_schema():
    def desc(name):
        return FeatureDescriptor(name=name, kind=FeatureKind.MULTI_ARRAY)

    return SemanticSchema(
        image_input=FeatureDescriptor(name="image", kind=FeatureKind.MULTI_ARRAY),
        disparity_input=None,
        **{role: desc(name) for role, name in CANONICAL_OUTPUT_NAMES.items()},
    )


def canonical_outputs(n):
    rng = np.random.default_rng(3)
    return {
        CANONICAL_OUTPUT_NAMES["positions"]: rng.normal(size=(1, n, 3)).astype(np.float32),
        CANONICAL_OUTPUT_NAMES["scales"]: rng.random((1, n, 3)).astype(np.float32),
        CANONICAL_OUTPUT_NAMES["rotations"]: rng.normal(size=(1, n, 4)).astype(np.float32),
        CANONICAL_OUTPUT_NAMES["colors"]: rng.random((1, n, 3)).astype(np.float16),
        CANONICAL_OUTPUT_NAMES["opacities"]: rng.random((1, n)).astype(np.float32),
    }


class TestColorHelpers:
    """Transfer function and spherical harmonic encoding."""

    def test_srgb_continuous_at_threshold(self):
        threshold = 0.0031308
        below = linear_to_srgb(threshold)
        above = 1.055 * threshold ** (1 / 2.4) - 0.055

        assert below == pytest.approx(threshold * 12.92)
        assert abs(below - above) < 1e-5

    def test_srgb_endpoints(self):
        assert linear_to_srgb(0.0) == 0.0
        assert linear_to_srgb(1.0) == pytest.approx(1.0)

    def test_sh_dc_round_trip(self):
        rgb = np.array([0.0, 0.5, 1.0])
        np.testing.assert_allclose(sh_dc_to_rgb(rgb_to_sh_dc(rgb)), rgb)
        assert rgb_to_sh_dc(0.5) == 0.0
        assert rgb_to_sh_dc(1.0) == pytest.approx(0.5 / SH_C0)

    def test_zero_quaternion_becomes_identity(self):
        q = normalize_quaternions(np.array([[0.0, 0.0, 0.0, 0.0], [0.0, 2.0, 0.0, 0.0]]))
        np.testing.assert_array_equal(q, [[1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0]])


class TestPointAssembler:
    """Clamping, normalization and encoding order."""

    def test_scale_floor(self):
        point = PointAssembler().assemble(sample(scale=(0.0, -1.0, 0.5)))

        assert point.scale[0] == SCALE_FLOOR
        assert point.scale[1] == SCALE_FLOOR
        assert point.scale[2] == 0.5

    @pytest.mark.parametrize("opacity,expected", [
        (0.0, OPACITY_EPSILON),
        (1.0, 1.0 - OPACITY_EPSILON),
        (-3.0, OPACITY_EPSILON),
        (0.25, 0.25),
    ])
    def test_opacity_clamp(self, opacity, expected):
        point = PointAssembler().assemble(sample(opacity=opacity))
        assert point.opacity == pytest.approx(expected, abs=1e-12)
        assert 0.0 < point.opacity < 1.0

    def test_rotation_normalized(self):
        point = PointAssembler().assemble(sample(rotation=(2.0, 0.0, 0.0, 2.0)))

        assert math.sqrt(sum(v * v for v in point.rotation)) == pytest.approx(1.0)
        assert point.rotation[0] == pytest.approx(math.sqrt(0.5))

    def test_color_clamped_then_encoded(self):
        point = PointAssembler().assemble(sample(color_linear=(-0.5, 2.0, 0.0)))

        assert point.sh_dc[0] == pytest.approx(-0.5 / SH_C0)
        assert point.sh_dc[1] == pytest.approx(0.5 / SH_C0)
        assert point.sh_dc[2] == pytest.approx(-0.5 / SH_C0)

    def test_sh_dc_uses_display_color(self):
        point = PointAssembler().assemble(sample(color_linear=(0.2, 0.2, 0.2)))
        expected = (linear_to_srgb(0.2) - 0.5) / SH_C0

        assert point.sh_dc == pytest.approx((expected, expected, expected))

    def test_non_finite_inputs_stay_finite(self):
        """NaN/Inf from a degenerate model output never reach the file."""
        point = PointAssembler().assemble(sample(
            scale=(math.nan, math.inf, 1.0),
            rotation=(math.nan, 0.0, 0.0, 0.0),
            color_linear=(math.nan, math.inf, -math.inf),
            opacity=math.nan,
        ))

        values = point.scale + point.rotation + point.sh_dc + (point.opacity,)
        assert all(math.isfinite(v) for v in values)
        assert point.rotation == (1.0, 0.0, 0.0, 0.0)
        assert point.scale[:2] == (SCALE_FLOOR, SCALE_CEILING)

    def test_position_passes_through(self):
        point = PointAssembler().assemble(sample(position=(-4.0, 5.5, 1e6)))
        assert point.position == (-4.0, 5.5, 1e6)

    def test_batch_matches_single(self):
        samples = [sample(opacity=0.1 * i, scale=(0.01 * i,) * 3) for i in range(1, 6)]
        assembler = PointAssembler()

        batch = assembler.assemble_batch(PointSampleBatch.from_samples(samples))

        assert len(batch) == 5
        for i, s in enumerate(samples):
            single = assembler.assemble(s)
            point = batch.point(i)
            assert point.sh_dc == pytest.approx(single.sh_dc)
            assert point.scale == pytest.approx(single.scale)
            assert point.rotation == pytest.approx(single.rotation)
            assert point.opacity == pytest.approx(single.opacity)


class TestSampleExtractor:
    """Reading samples from resolved outputs."""

    def test_extract_matches_outputs(self):
        outputs = canonical_outputs(20)
        extractor = SampleExtractor.from_outputs(canonical_schema(), outputs)
        s = extractor.extract(7)

        assert extractor.point_count() == 20
        assert s.position == pytest.approx(outputs[CANONICAL_OUTPUT_NAMES["positions"]][0, 7])
        assert s.rotation == pytest.approx(outputs[CANONICAL_OUTPUT_NAMES["rotations"]][0, 7])
        assert s.color_linear == pytest.approx(
            outputs[CANONICAL_OUTPUT_NAMES["colors"]][0, 7].astype(np.float32))
        assert s.opacity == pytest.approx(outputs[CANONICAL_OUTPUT_NAMES["opacities"]][0, 7])

    def test_extract_batch_matches_extract(self):
        extractor = SampleExtractor.from_outputs(canonical_schema(), canonical_outputs(30))
        indices = [0, 11, 29]
        batch = extractor.extract_batch(indices)

        for row, i in enumerate(indices):
            s = extractor.extract(i)
            np.testing.assert_allclose(batch.positions[row], s.position)
            np.testing.assert_allclose(batch.scales[row], s.scale)
            np.testing.assert_allclose(batch.opacities[row], s.opacity)

    def test_mismatched_point_counts(self):
        outputs = canonical_outputs(10)
        outputs[CANONICAL_OUTPUT_NAMES["opacities"]] = np.zeros((1, 9), dtype=np.float32)

        with pytest.raises(UnresolvedOutputs):
            SampleExtractor.from_outputs(canonical_schema(), outputs)

    def test_missing_output(self):
        outputs = canonical_outputs(10)
        del outputs[CANONICAL_OUTPUT_NAMES["colors"]]

        with pytest.raises(UnresolvedOutputs) as exc:
            SampleExtractor.from_outputs(canonical_schema(), outputs)
        assert exc.value.names == [CANONICAL_OUTPUT_NAMES["colors"]]


class TestScenePointBatch:
    def test_from_points_round_trip(self):
        points = [PointAssembler().assemble(sample(opacity=0.3)), PointAssembler().assemble(sample())]
        batch = ScenePointBatch.from_points(points)

        assert len(batch) == 2
        assert list(batch) == points
        assert ScenePointBatch.from_points(batch) is batch
