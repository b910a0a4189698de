from __future__ import annotations

import base64
import binascii
import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence
from urllib.parse import unquote

from pygltflib import GLTF2

from gltf_errors import AssetLoadError, UnsupportedIndexFormatError


logger = logging.getLogger(__name__)

COMPONENT_TYPE_INT8 = 5120
COMPONENT_TYPE_UINT8 = 5121
COMPONENT_TYPE_INT16 = 5122
COMPONENT_TYPE_UINT16 = 5123
COMPONENT_TYPE_UINT32 = 5125
COMPONENT_TYPE_FLOAT32 = 5126

COMPONENT_TYPE_FORMAT: dict[int, tuple[str, int]] = {
    COMPONENT_TYPE_INT8: ("b", 1),
    COMPONENT_TYPE_UINT8: ("B", 1),
    COMPONENT_TYPE_INT16: ("h", 2),
    COMPONENT_TYPE_UINT16: ("H", 2),
    COMPONENT_TYPE_UINT32: ("I", 4),
    COMPONENT_TYPE_FLOAT32: ("f", 4),
}

INDEX_COMPONENT_TYPES = (COMPONENT_TYPE_UINT8, COMPONENT_TYPE_UINT16, COMPONENT_TYPE_UINT32)

# Normalized integer -> float divisors; signed types clamp at -1.0.
NORMALIZED_DIVISOR: dict[int, float] = {
    COMPONENT_TYPE_INT8: 127.0,
    COMPONENT_TYPE_UINT8: 255.0,
    COMPONENT_TYPE_INT16: 32767.0,
    COMPONENT_TYPE_UINT16: 65535.0,
    COMPONENT_TYPE_UINT32: 4294967295.0,
}
SIGNED_COMPONENT_TYPES = (COMPONENT_TYPE_INT8, COMPONENT_TYPE_INT16)

TYPE_COMPONENT_COUNT: dict[str, int] = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT2": 4,
    "MAT3": 9,
    "MAT4": 16,
}


@dataclass(frozen=True)
class SceneAsset:
    gltf: GLTF2
    buffers: tuple[bytes, ...]
    path: Path | None = None


def primitive_attributes(primitive: Any) -> list[tuple[str, int]]:
    """Return the (semantic name, accessor index) pairs a primitive declares, in pygltflib field order."""
    attributes = primitive.attributes
    if attributes is None:
        return []
    return [(name, index) for name, index in vars(attributes).items() if isinstance(index, int)]


def load_asset(path: Path | str) -> SceneAsset:
    path = Path(path)
    if not path.is_file():
        raise AssetLoadError(f"Input not found: {path}")

    try:
        gltf = GLTF2.load(str(path))
    except Exception as exc:
        raise AssetLoadError(f"Failed to parse {path}: {exc}") from exc
    if gltf is None:
        raise AssetLoadError(f"Failed to parse {path}")

    buffers = tuple(_resolve_buffer(gltf, i, buffer, path) for i, buffer in enumerate(gltf.buffers or []))
    validate_asset(gltf, buffers)

    logger.debug(
        "Loaded %s: %d nodes, %d meshes, %d accessors, %d buffers",
        path,
        len(gltf.nodes or []),
        len(gltf.meshes or []),
        len(gltf.accessors or []),
        len(buffers),
    )
    return SceneAsset(gltf=gltf, buffers=buffers, path=path)


def _resolve_buffer(gltf: GLTF2, index: int, buffer: Any, source_path: Path) -> bytes:
    uri = buffer.uri
    if uri is None:
        blob = gltf.binary_blob() if index == 0 else None
        if blob is None:
            raise AssetLoadError(f"Buffer {index} has no uri and there is no GLB BIN chunk")
        data = bytes(blob)
    elif uri.startswith("data:"):
        header, sep, payload = uri.partition(",")
        if not sep or not header.endswith(";base64"):
            raise AssetLoadError(f"Buffer {index}: only base64 data URIs are supported")
        try:
            data = base64.b64decode(payload, validate=True)
        except binascii.Error as exc:
            raise AssetLoadError(f"Buffer {index}: invalid base64 payload ({exc})") from exc
    else:
        buffer_path = source_path.parent / unquote(uri)
        try:
            data = buffer_path.read_bytes()
        except OSError as exc:
            raise AssetLoadError(f"Failed to read buffer {index}: {buffer_path} ({exc})") from exc

    byte_length = buffer.byteLength or 0
    if len(data) < byte_length:
        raise AssetLoadError(f"Buffer {index} is truncated: {len(data)} bytes, expected {byte_length}")
    return data


def validate_asset(gltf: GLTF2, buffers: Sequence[bytes]) -> None:
    accessors = gltf.accessors or []
    buffer_views = gltf.bufferViews or []
    meshes = gltf.meshes or []

    for view_index, view in enumerate(buffer_views):
        if not isinstance(view.buffer, int) or not (0 <= view.buffer < len(buffers)):
            raise AssetLoadError(f"bufferView {view_index}: buffer index out of range: {view.buffer}")
        if view.byteLength is None or view.byteLength < 0:
            raise AssetLoadError(f"bufferView {view_index}: invalid byteLength")
        view_end = (view.byteOffset or 0) + view.byteLength
        if view_end > len(buffers[view.buffer]):
            raise AssetLoadError(f"bufferView {view_index} points outside buffer {view.buffer}")

    for accessor_index, accessor in enumerate(accessors):
        _validate_accessor(accessor_index, accessor, buffer_views)

    for node_index, node in enumerate(gltf.nodes or []):
        if node.mesh is not None and not (0 <= node.mesh < len(meshes)):
            raise AssetLoadError(f"Node {node_index}: mesh index out of range: {node.mesh}")

    asset = SceneAsset(gltf=gltf, buffers=tuple(buffers))
    for mesh_index, mesh in enumerate(meshes):
        for primitive_index, primitive in enumerate(mesh.primitives or []):
            _validate_primitive(asset, f"Mesh {mesh_index} primitive {primitive_index}", primitive)


def _check_view_index(where: str, view_index: Any, buffer_views: Sequence[Any]) -> Any:
    if not isinstance(view_index, int) or not (0 <= view_index < len(buffer_views)):
        raise AssetLoadError(f"{where}: bufferView index out of range: {view_index}")
    return buffer_views[view_index]


def _validate_accessor(accessor_index: int, accessor: Any, buffer_views: Sequence[Any]) -> None:
    where = f"Accessor {accessor_index}"
    if accessor.type not in TYPE_COMPONENT_COUNT:
        raise AssetLoadError(f"{where}: unsupported type: {accessor.type}")
    if accessor.componentType not in COMPONENT_TYPE_FORMAT:
        raise AssetLoadError(f"{where}: unsupported componentType: {accessor.componentType}")
    count = accessor.count
    if not isinstance(count, int) or count < 0:
        raise AssetLoadError(f"{where}: invalid count: {count}")

    _, component_size = COMPONENT_TYPE_FORMAT[accessor.componentType]
    element_size = TYPE_COMPONENT_COUNT[accessor.type] * component_size

    if accessor.bufferView is not None:
        view = _check_view_index(where, accessor.bufferView, buffer_views)
        stride = view.byteStride or element_size
        if stride < element_size:
            raise AssetLoadError(f"{where}: byteStride {stride} is smaller than element size {element_size}")
        if count > 0:
            needed = (accessor.byteOffset or 0) + (count - 1) * stride + element_size
            if needed > view.byteLength:
                raise AssetLoadError(f"{where} points outside bufferView {accessor.bufferView}")

    sparse = accessor.sparse
    if sparse is None:
        return
    if not isinstance(sparse.count, int) or not (0 < sparse.count <= count):
        raise AssetLoadError(f"{where}: invalid sparse.count: {sparse.count}")
    if sparse.indices.componentType not in INDEX_COMPONENT_TYPES:
        raise AssetLoadError(f"{where}: unsupported sparse indices componentType: {sparse.indices.componentType}")
    _, index_size = COMPONENT_TYPE_FORMAT[sparse.indices.componentType]
    for part, part_size in ((sparse.indices, index_size), (sparse.values, element_size)):
        view = _check_view_index(f"{where} sparse", part.bufferView, buffer_views)
        if (part.byteOffset or 0) + sparse.count * part_size > view.byteLength:
            raise AssetLoadError(f"{where}: sparse data points outside bufferView {part.bufferView}")


def _validate_primitive(asset: SceneAsset, where: str, primitive: Any) -> None:
    accessors = asset.gltf.accessors or []

    counts: set[int] = set()
    for name, accessor_index in primitive_attributes(primitive):
        if not (0 <= accessor_index < len(accessors)):
            raise AssetLoadError(f"{where}: {name} accessor index out of range: {accessor_index}")
        counts.add(accessors[accessor_index].count)
    if len(counts) > 1:
        raise AssetLoadError(f"{where}: attribute accessors disagree on vertex count: {sorted(counts)}")

    if primitive.indices is None:
        return
    if not isinstance(primitive.indices, int) or not (0 <= primitive.indices < len(accessors)):
        raise AssetLoadError(f"{where}: indices accessor index out of range: {primitive.indices}")

    index_accessor = accessors[primitive.indices]
    if not counts or index_accessor.componentType not in INDEX_COMPONENT_TYPES:
        return
    vertex_count = counts.pop()
    values = read_accessor(asset, index_accessor)
    if values and max(values) >= vertex_count:
        raise AssetLoadError(f"{where}: index {max(values)} out of range for {vertex_count} vertices")


def _read_elements(
    asset: SceneAsset,
    *,
    view_index: int,
    byte_offset: int,
    count: int,
    components: int,
    component_type: int,
) -> list[int | float]:
    fmt, component_size = COMPONENT_TYPE_FORMAT[component_type]
    view = asset.gltf.bufferViews[view_index]
    data = asset.buffers[view.buffer]

    view_start = view.byteOffset or 0
    view_end = min(view_start + (view.byteLength or 0), len(data))
    element_size = components * component_size
    stride = view.byteStride or element_size
    base_offset = view_start + byte_offset

    unpack_fmt = "<" + fmt
    values: list[int | float] = []
    for i in range(count):
        offset = base_offset + i * stride
        for c in range(components):
            position = offset + c * component_size
            # A short view yields a short read; callers compare against count.
            if position + component_size > view_end:
                return values
            values.append(struct.unpack_from(unpack_fmt, data, position)[0])
    return values


def read_accessor(asset: SceneAsset, accessor: Any) -> list[int | float]:
    """Read the raw component values of an accessor, flattened in element order.

    Strided views are honored, an accessor without a bufferView reads as zeros,
    and sparse substitutions are applied on top of the dense values.
    """
    components = TYPE_COMPONENT_COUNT[accessor.type]
    count = accessor.count or 0

    if accessor.bufferView is None:
        values: list[int | float] = [0] * (count * components)
    else:
        values = _read_elements(
            asset,
            view_index=accessor.bufferView,
            byte_offset=accessor.byteOffset or 0,
            count=count,
            components=components,
            component_type=accessor.componentType,
        )

    sparse = accessor.sparse
    if sparse is not None:
        element_indices = _read_elements(
            asset,
            view_index=sparse.indices.bufferView,
            byte_offset=sparse.indices.byteOffset or 0,
            count=sparse.count,
            components=1,
            component_type=sparse.indices.componentType,
        )
        substitutes = _read_elements(
            asset,
            view_index=sparse.values.bufferView,
            byte_offset=sparse.values.byteOffset or 0,
            count=sparse.count,
            components=components,
            component_type=accessor.componentType,
        )
        for n, element in enumerate(element_indices):
            start = int(element) * components
            if start + components > len(values):
                raise AssetLoadError(f"Sparse index {element} out of range for {count} elements")
            values[start : start + components] = substitutes[n * components : (n + 1) * components]

    return values


def unpack_floats(asset: SceneAsset, accessor: Any) -> list[float]:
    raw = read_accessor(asset, accessor)
    component_type = accessor.componentType
    if component_type == COMPONENT_TYPE_FLOAT32 or not accessor.normalized:
        return [float(v) for v in raw]

    divisor = NORMALIZED_DIVISOR[component_type]
    if component_type in SIGNED_COMPONENT_TYPES:
        return [max(v / divisor, -1.0) for v in raw]
    return [v / divisor for v in raw]


def read_indices(asset: SceneAsset, accessor: Any) -> list[int]:
    if accessor.componentType not in INDEX_COMPONENT_TYPES:
        raise UnsupportedIndexFormatError(f"Unsupported indices componentType: {accessor.componentType}")
    if accessor.normalized:
        raise UnsupportedIndexFormatError("Indices accessor must not be normalized")
    if accessor.type != "SCALAR":
        raise UnsupportedIndexFormatError(f"Unsupported indices accessor.type: {accessor.type} (expected SCALAR)")
    return [int(v) for v in read_accessor(asset, accessor)]
