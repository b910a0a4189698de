from __future__ import annotations

import array
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from pygltflib import GLTF2

from gltf_asset import SceneAsset, TYPE_COMPONENT_COUNT, primitive_attributes, read_indices, unpack_floats
from gltf_errors import (
    AccessorUnpackError,
    MissingAttributeError,
    MultipleMeshesError,
    UnsupportedAccessorShapeError,
    UnsupportedTopologyError,
)


logger = logging.getLogger(__name__)

TRIANGLES_MODE = 4

PRIMITIVE_MODE_NAMES: dict[int, str] = {
    0: "POINTS",
    1: "LINES",
    2: "LINE_LOOP",
    3: "LINE_STRIP",
    4: "TRIANGLES",
    5: "TRIANGLE_STRIP",
    6: "TRIANGLE_FAN",
}

POSITION_COMPONENTS = 3
COLOR_COMPONENTS = 4
OPAQUE_ALPHA = 1.0


class AttributeSemantic(enum.Enum):
    POSITION = "position"
    COLOR = "color"
    IGNORED = "ignored"


ATTRIBUTE_SEMANTICS: dict[str, AttributeSemantic] = {
    "POSITION": AttributeSemantic.POSITION,
    "COLOR_0": AttributeSemantic.COLOR,
}

ACCEPTED_ACCESSOR_TYPES: dict[AttributeSemantic, tuple[str, ...]] = {
    AttributeSemantic.POSITION: ("VEC3",),
    AttributeSemantic.COLOR: ("VEC3", "VEC4"),
}


def classify_attribute(name: str) -> AttributeSemantic:
    return ATTRIBUTE_SEMANTICS.get(name, AttributeSemantic.IGNORED)


def _float_array(values: Iterable[float] = ()) -> array.array:
    return array.array("f", values)


def _index_array(values: Iterable[int] = ()) -> array.array:
    return array.array("I", values)


@dataclass(frozen=True)
class IndexedGeometry:
    """Vertices stored once, referenced by triangle corner through ``indices``.

    ``vertex_positions`` holds xyz triples and ``vertex_colors`` rgba quadruples,
    both as 32-bit floats. ``indices`` are vertex numbers, not float offsets.
    """

    vertex_positions: array.array = field(default_factory=_float_array)
    vertex_colors: array.array = field(default_factory=_float_array)
    indices: array.array = field(default_factory=_index_array)

    @classmethod
    def from_sequences(
        cls,
        vertex_positions: Iterable[float] = (),
        vertex_colors: Iterable[float] = (),
        indices: Iterable[int] = (),
    ) -> "IndexedGeometry":
        return cls(_float_array(vertex_positions), _float_array(vertex_colors), _index_array(indices))

    @property
    def vertex_count(self) -> int:
        return len(self.vertex_positions) // POSITION_COMPONENTS

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3


@dataclass(frozen=True)
class FlatGeometry:
    """Draw-arrays geometry: one position and one color per triangle corner."""

    vertex_positions: array.array = field(default_factory=_float_array)
    vertex_colors: array.array = field(default_factory=_float_array)

    @property
    def vertex_count(self) -> int:
        return len(self.vertex_positions) // POSITION_COMPONENTS

    def to_document(self) -> dict[str, list[float]]:
        return {
            "vertexPositions": self.vertex_positions.tolist(),
            "vertexColors": self.vertex_colors.tolist(),
        }


def find_mesh_node(gltf: GLTF2) -> tuple[int, int] | None:
    found: tuple[int, int] | None = None
    for node_index, node in enumerate(gltf.nodes or []):
        if node.mesh is None:
            continue
        if found is not None:
            raise MultipleMeshesError(
                f"Only one mesh is supported: nodes {found[0]} and {node_index} both reference a mesh"
            )
        found = (node_index, node.mesh)
    return found


def _check_topology(primitives: list[Any]) -> None:
    for primitive_index, primitive in enumerate(primitives):
        mode = TRIANGLES_MODE if primitive.mode is None else primitive.mode
        if mode != TRIANGLES_MODE:
            name = PRIMITIVE_MODE_NAMES.get(mode, f"UNKNOWN({mode})")
            raise UnsupportedTopologyError(f"Primitive {primitive_index} uses {name} topology (expected TRIANGLES)")


def _rgb_to_rgba(values: list[float]) -> list[float]:
    out: list[float] = []
    for i in range(0, len(values), 3):
        out.extend(values[i : i + 3])
        out.append(OPAQUE_ALPHA)
    return out


def _unpack_attribute(asset: SceneAsset, name: str, semantic: AttributeSemantic, accessor: Any) -> list[float]:
    accepted = ACCEPTED_ACCESSOR_TYPES[semantic]
    if accessor.type not in accepted:
        raise UnsupportedAccessorShapeError(
            f"Unsupported accessor.type for {name}: {accessor.type} (expected {' or '.join(accepted)})"
        )

    components = TYPE_COMPONENT_COUNT[accessor.type]
    expected = accessor.count * components
    values = unpack_floats(asset, accessor)
    if len(values) != expected:
        raise AccessorUnpackError(
            f"Unpacked {len(values)} floats for {name}, expected {expected} ({accessor.count} x {components})"
        )

    if semantic is AttributeSemantic.COLOR and components == 3:
        return _rgb_to_rgba(values)
    return values


def _unpack_primitive_attributes(
    asset: SceneAsset,
    primitive_index: int,
    primitive: Any,
    positions: array.array,
    colors: array.array,
) -> int:
    vertex_count = 0
    for name, accessor_index in primitive_attributes(primitive):
        accessor = asset.gltf.accessors[accessor_index]
        vertex_count = accessor.count
        semantic = classify_attribute(name)
        if semantic is AttributeSemantic.IGNORED:
            logger.debug("Primitive %d: ignoring attribute %s", primitive_index, name)
            continue
        values = _unpack_attribute(asset, name, semantic, accessor)
        target = positions if semantic is AttributeSemantic.POSITION else colors
        target.extend(values)
    return vertex_count


def _primitive_indices(asset: SceneAsset, primitive: Any, vertex_count: int) -> list[int]:
    if primitive.indices is None:
        # Non-indexed triangles draw their vertices in order.
        return list(range(vertex_count))

    accessor = asset.gltf.accessors[primitive.indices]
    values = read_indices(asset, accessor)
    if len(values) != accessor.count:
        raise AccessorUnpackError(f"Read {len(values)} indices, expected {accessor.count}")
    return values


def _require_matching_attributes(primitive_index: int, position_vertices: int, color_vertices: int) -> None:
    # Positions and colors must stay aligned vertex for vertex across primitives.
    if position_vertices == color_vertices:
        return
    if color_vertices == 0:
        raise MissingAttributeError(f"Primitive {primitive_index}: COLOR_0 is missing")
    if position_vertices == 0:
        raise MissingAttributeError(f"Primitive {primitive_index}: POSITION is missing")
    raise MissingAttributeError(
        f"Primitive {primitive_index}: POSITION covers {position_vertices} vertices "
        f"but COLOR_0 covers {color_vertices}"
    )


def extract_geometry(asset: SceneAsset) -> IndexedGeometry:
    """Collect positions, colors and indices of the single mesh in ``asset``.

    The single-mesh and triangle-topology preconditions are checked before any
    accessor is unpacked. Every primitive must contribute positions and colors
    for the same vertices; indices of later primitives are re-based onto them.
    """
    gltf = asset.gltf
    found = find_mesh_node(gltf)
    if found is None:
        logger.debug("No mesh-bearing node found")
        return IndexedGeometry()

    node_index, mesh_index = found
    primitives = list(gltf.meshes[mesh_index].primitives or [])
    _check_topology(primitives)
    logger.debug("Node %d references mesh %d with %d primitives", node_index, mesh_index, len(primitives))

    positions = _float_array()
    colors = _float_array()
    indices = _index_array()
    for primitive_index, primitive in enumerate(primitives):
        base_vertex = len(positions) // POSITION_COMPONENTS
        vertex_count = _unpack_primitive_attributes(asset, primitive_index, primitive, positions, colors)
        _require_matching_attributes(
            primitive_index,
            len(positions) // POSITION_COMPONENTS - base_vertex,
            len(colors) // COLOR_COMPONENTS - base_vertex,
        )
        primitive_indices = _primitive_indices(asset, primitive, vertex_count)
        if base_vertex and primitive_indices:
            logger.warning("Primitive %d: re-basing indices by %d vertices", primitive_index, base_vertex)
        indices.extend(base_vertex + i for i in primitive_indices)
        logger.debug(
            "Primitive %d: %d vertices, %d indices",
            primitive_index,
            vertex_count,
            len(primitive_indices),
        )

    return IndexedGeometry(positions, colors, indices)


def _require_attribute(name: str, values: array.array, components: int, vertex_count: int) -> None:
    available = len(values) // components
    if available >= vertex_count:
        return
    if not values:
        raise MissingAttributeError(f"Index buffer references vertex {vertex_count - 1} but {name} is missing")
    raise MissingAttributeError(
        f"Index buffer references vertex {vertex_count - 1} but {name} only covers {available} vertices"
    )


def flatten_geometry(geometry: IndexedGeometry) -> FlatGeometry:
    indices = geometry.indices
    if not indices:
        return FlatGeometry()

    required = max(indices) + 1
    _require_attribute("POSITION", geometry.vertex_positions, POSITION_COMPONENTS, required)
    _require_attribute("COLOR_0", geometry.vertex_colors, COLOR_COMPONENTS, required)

    src_positions = geometry.vertex_positions
    src_colors = geometry.vertex_colors
    positions = _float_array([0.0]) * (POSITION_COMPONENTS * len(indices))
    colors = _float_array([0.0]) * (COLOR_COMPONENTS * len(indices))

    for k, i in enumerate(indices):
        positions[3 * k : 3 * k + 3] = src_positions[3 * i : 3 * i + 3]
        colors[4 * k : 4 * k + 4] = src_colors[4 * i : 4 * i + 4]

    return FlatGeometry(positions, colors)
