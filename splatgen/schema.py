"""
Schema Resolution

Maps a prediction session's declared inputs and outputs to the roles the
splat pipeline needs: the image input, an optional disparity input, and the
five per-point outputs (positions, scales, rotations, colors, opacities).

Outputs bind by their canonical names when all five are declared. Otherwise
an ordered rule list matches on rank, last dimension and name hints; every
role must bind or resolution fails as a whole.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from rich.console import Console

from .descriptors import FeatureDescriptor, FeatureKind
from .errors import UnresolvedInputs, UnresolvedOutputs

console = Console()

IMAGE_INPUT_NAME = "image"
DISPARITY_INPUT_NAME = "disparity_factor"

OUTPUT_ROLES = ("positions", "scales", "rotations", "colors", "opacities")

CANONICAL_OUTPUT_NAMES = {
    "positions": "mean_vectors_3d_positions",
    "scales": "singular_values_scales",
    "rotations": "quaternions_rotations",
    "colors": "colors_rgb_linear",
    "opacities": "opacities_alpha_channel",
}


@dataclass(frozen=True)
class OutputRule:
    """
    One heuristic binding rule.

    ranks are tried in order (earlier rank wins); last_dim of None accepts
    any trailing dimension; an empty hints tuple matches any name.
    """
    role: str
    ranks: Tuple[int, ...]
    last_dim: Optional[int] = None
    hints: Tuple[str, ...] = ()

    def matches(self, desc: FeatureDescriptor, rank: int) -> bool:
        if desc.rank != rank:
            return False
        if self.last_dim is not None and desc.last_dim != self.last_dim:
            return False
        if not self.hints:
            return True
        name = desc.name.lower()
        return any(hint in name for hint in self.hints)


# Evaluated top to bottom; a rule is skipped once its role is bound and a
# tensor bound by an earlier rule is never reused.
OUTPUT_RULES: Tuple[OutputRule, ...] = (
    OutputRule("rotations", (3, 2), 4, ("rot",)),
    OutputRule("rotations", (3, 2), 4),
    OutputRule("positions", (3, 2), 3, ("pos", "mean")),
    OutputRule("scales", (3, 2), 3, ("scale", "singular")),
    OutputRule("colors", (3, 2), 3, ("color", "rgb")),
    OutputRule("opacities", (2,), None, ("opacity", "alpha")),
    # Unhinted 3-vectors bind in declaration order: positions, scales, colors
    OutputRule("positions", (3, 2), 3),
    OutputRule("scales", (3, 2), 3),
    OutputRule("colors", (3, 2), 3),
    OutputRule("opacities", (2,), None),
    OutputRule("opacities", (1,), None),
)


@dataclass(frozen=True)
class SemanticSchema:
    """Resolved roles for one loaded session. Re-resolve after a reload."""
    image_input: FeatureDescriptor
    disparity_input: Optional[FeatureDescriptor]
    positions: FeatureDescriptor
    scales: FeatureDescriptor
    rotations: FeatureDescriptor
    colors: FeatureDescriptor
    opacities: FeatureDescriptor
    used_heuristics: bool = False

    def output_names(self) -> Dict[str, str]:
        return {role: getattr(self, role).name for role in OUTPUT_ROLES}


class SchemaResolver:
    """Resolves a SemanticSchema from declared session descriptors."""

    def __init__(self, rules: Sequence[OutputRule] = OUTPUT_RULES):
        self.rules = tuple(rules)

    def resolve(self, session) -> SemanticSchema:
        """
        Resolve roles for a session exposing input_descriptors/output_descriptors.

        Raises:
            UnresolvedInputs: no usable image input
            UnresolvedOutputs: any of the five output roles could not bind
        """
        inputs = list(session.input_descriptors)
        outputs = list(session.output_descriptors)

        image_input = self.resolve_image_input(inputs)
        disparity_input = self.resolve_disparity_input(inputs, exclude=image_input.name)
        bindings, used_heuristics = self.resolve_outputs(outputs)

        return SemanticSchema(
            image_input=image_input,
            disparity_input=disparity_input,
            used_heuristics=used_heuristics,
            **bindings,
        )

    def resolve_image_input(self, inputs: List[FeatureDescriptor]) -> FeatureDescriptor:
        candidates = [d for d in inputs if d.kind in (FeatureKind.IMAGE, FeatureKind.MULTI_ARRAY)]
        named = next((d for d in candidates if d.name == IMAGE_INPUT_NAME), None)
        chosen = named or (candidates[0] if candidates else None)
        if chosen is None:
            raise UnresolvedInputs([d.name for d in inputs], reason="no image-like input")
        return chosen

    def resolve_disparity_input(
        self,
        inputs: List[FeatureDescriptor],
        exclude: Optional[str] = None,
    ) -> Optional[FeatureDescriptor]:
        remaining = [d for d in inputs if d.name != exclude]
        named = next((d for d in remaining if d.name == DISPARITY_INPUT_NAME), None)
        if named is not None:
            return named
        scalar_kinds = (FeatureKind.DOUBLE, FeatureKind.INT64, FeatureKind.MULTI_ARRAY)
        return next(
            (d for d in remaining if d.kind in scalar_kinds and "disparity" in d.name.lower()),
            None,
        )

    def resolve_outputs(
        self,
        outputs: List[FeatureDescriptor],
    ) -> Tuple[Dict[str, FeatureDescriptor], bool]:
        """Returns (role -> descriptor, used_heuristics)."""
        by_name = {d.name: d for d in outputs}

        if all(name in by_name for name in CANONICAL_OUTPUT_NAMES.values()):
            console.print("[dim]Bound model outputs by canonical names[/dim]")
            return {role: by_name[name] for role, name in CANONICAL_OUTPUT_NAMES.items()}, False

        arrays = [d for d in outputs if d.kind == FeatureKind.MULTI_ARRAY and d.shape is not None]
        bindings: Dict[str, FeatureDescriptor] = {}
        claimed = set()

        for rule in self.rules:
            if rule.role in bindings:
                continue
            match = self._first_match(rule, arrays, claimed)
            if match is not None:
                bindings[rule.role] = match
                claimed.add(match.name)

        missing = [role for role in OUTPUT_ROLES if role not in bindings]
        if missing:
            raise UnresolvedOutputs(list(by_name), missing_roles=missing)

        console.print("[yellow]Model outputs bound heuristically:[/yellow]")
        for role in OUTPUT_ROLES:
            console.print(f"[dim]  {role}: {bindings[role].describe()}[/dim]")
        return bindings, True

    @staticmethod
    def _first_match(
        rule: OutputRule,
        arrays: List[FeatureDescriptor],
        claimed: set,
    ) -> Optional[FeatureDescriptor]:
        for rank in rule.ranks:
            for desc in arrays:
                if desc.name not in claimed and rule.matches(desc, rank):
                    return desc
        return None


def resolve_schema(session) -> SemanticSchema:
    """Resolve a schema with the default rule list."""
    return SchemaResolver().resolve(session)
