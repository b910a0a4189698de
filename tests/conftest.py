from __future__ import annotations

import base64
import json
import struct
from pathlib import Path
from typing import Any

import pytest
from pygltflib import GLTF2, Accessor, Attributes, Buffer, BufferView, Mesh, Node, Primitive

from gltf_asset import SceneAsset, TYPE_COMPONENT_COUNT

FLOAT = 5126
UNSIGNED_BYTE = 5121
UNSIGNED_SHORT = 5123
UNSIGNED_INT = 5125
SHORT = 5122

FORMAT = {5120: "b", UNSIGNED_BYTE: "B", SHORT: "h", UNSIGNED_SHORT: "H", UNSIGNED_INT: "I", FLOAT: "f"}

QUAD_POSITIONS = [0, 0, 0, 1, 0, 0, 0, 1, 0, 1, 1, 0]
QUAD_COLORS = [1, 0, 0, 1, 0, 1, 0, 1, 0, 0, 1, 1, 1, 1, 1, 1]
QUAD_INDICES = [0, 1, 2, 2, 1, 3]


class GltfBuilder:
    """Assembles a small glTF document (JSON dict + one binary buffer) for tests."""

    def __init__(self) -> None:
        self.blob = bytearray()
        self.doc: dict[str, Any] = {
            "asset": {"version": "2.0"},
            "scene": 0,
            "scenes": [{"nodes": []}],
            "nodes": [],
            "meshes": [],
            "accessors": [],
            "bufferViews": [],
        }

    def add_view(self, data: bytes, *, byte_stride: int | None = None) -> int:
        self.blob.extend(b"\x00" * ((4 - len(self.blob) % 4) % 4))
        view: dict[str, Any] = {"buffer": 0, "byteOffset": len(self.blob), "byteLength": len(data)}
        if byte_stride is not None:
            view["byteStride"] = byte_stride
        self.doc["bufferViews"].append(view)
        self.blob.extend(data)
        return len(self.doc["bufferViews"]) - 1

    def add_accessor(
        self,
        values: list[float],
        *,
        type_: str = "VEC3",
        component_type: int = FLOAT,
        normalized: bool = False,
        count: int | None = None,
        **extra: Any,
    ) -> int:
        data = struct.pack("<" + FORMAT[component_type] * len(values), *values)
        accessor: dict[str, Any] = {
            "bufferView": self.add_view(data),
            "componentType": component_type,
            "count": len(values) // TYPE_COMPONENT_COUNT[type_] if count is None else count,
            "type": type_,
        }
        if normalized:
            accessor["normalized"] = True
        accessor.update(extra)
        self.doc["accessors"].append(accessor)
        return len(self.doc["accessors"]) - 1

    def add_indices(self, values: list[int], component_type: int = UNSIGNED_SHORT) -> int:
        return self.add_accessor(values, type_="SCALAR", component_type=component_type)

    def add_node(self, mesh: int | None = None) -> int:
        node: dict[str, Any] = {} if mesh is None else {"mesh": mesh}
        self.doc["nodes"].append(node)
        self.doc["scenes"][0]["nodes"].append(len(self.doc["nodes"]) - 1)
        return len(self.doc["nodes"]) - 1

    def add_mesh(self, *primitives: dict[str, Any]) -> int:
        self.doc["meshes"].append({"primitives": list(primitives)})
        return len(self.doc["meshes"]) - 1

    def add_mesh_node(self, *primitives: dict[str, Any]) -> int:
        return self.add_node(self.add_mesh(*primitives))

    def scene_asset(self) -> SceneAsset:
        gltf = GLTF2(
            nodes=[Node(mesh=node.get("mesh")) for node in self.doc["nodes"]],
            meshes=[
                Mesh(
                    primitives=[
                        Primitive(
                            attributes=Attributes(**p.get("attributes", {})),
                            indices=p.get("indices"),
                            mode=p.get("mode", 4),
                        )
                        for p in mesh["primitives"]
                    ]
                )
                for mesh in self.doc["meshes"]
            ],
            accessors=[Accessor(**a) for a in self.doc["accessors"]],
            bufferViews=[BufferView(**v) for v in self.doc["bufferViews"]],
            buffers=[Buffer(byteLength=len(self.blob))],
        )
        return SceneAsset(gltf=gltf, buffers=(bytes(self.blob),))

    def _json_bytes(self, buffer: dict[str, Any]) -> bytes:
        doc = dict(self.doc, buffers=[buffer])
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    def write_glb(self, path: Path) -> Path:
        json_bytes = self._json_bytes({"byteLength": len(self.blob)})
        json_bytes += b" " * ((4 - len(json_bytes) % 4) % 4)
        bin_chunk = bytes(self.blob) + b"\x00" * ((4 - len(self.blob) % 4) % 4)

        total_length = 12 + 8 + len(json_bytes) + 8 + len(bin_chunk)
        header = struct.pack("<4sII", b"glTF", 2, total_length)
        json_header = struct.pack("<II", len(json_bytes), 0x4E4F534A)
        bin_header = struct.pack("<II", len(bin_chunk), 0x004E4942)
        path.write_bytes(header + json_header + json_bytes + bin_header + bin_chunk)
        return path

    def write_gltf(self, path: Path, *, embed: bool = False) -> Path:
        if embed:
            uri = "data:application/octet-stream;base64," + base64.b64encode(bytes(self.blob)).decode("ascii")
        else:
            uri = path.stem + ".bin"
            path.with_name(uri).write_bytes(bytes(self.blob))
        path.write_bytes(self._json_bytes({"uri": uri, "byteLength": len(self.blob)}))
        return path


def triangle_primitive(position: int, color: int | None = None, indices: int | None = None, mode: int = 4) -> dict[str, Any]:
    attributes = {"POSITION": position}
    if color is not None:
        attributes["COLOR_0"] = color
    primitive: dict[str, Any] = {"attributes": attributes, "mode": mode}
    if indices is not None:
        primitive["indices"] = indices
    return primitive


@pytest.fixture
def builder() -> GltfBuilder:
    return GltfBuilder()


@pytest.fixture
def quad_builder() -> GltfBuilder:
    """Two triangles sharing an edge: 4 vertices, unsigned-16 indices."""
    b = GltfBuilder()
    position = b.add_accessor(QUAD_POSITIONS)
    color = b.add_accessor(QUAD_COLORS, type_="VEC4")
    indices = b.add_indices(QUAD_INDICES)
    b.add_mesh_node(triangle_primitive(position, color, indices))
    return b
