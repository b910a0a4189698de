from __future__ import annotations


class GeometryError(RuntimeError):
    exit_code = 1


class ArgumentError(GeometryError):
    exit_code = 2


class AssetLoadError(GeometryError):
    exit_code = 3


class MultipleMeshesError(GeometryError):
    exit_code = 4


class UnsupportedTopologyError(GeometryError):
    exit_code = 5


class UnsupportedAccessorShapeError(GeometryError):
    exit_code = 6


class AccessorUnpackError(GeometryError):
    exit_code = 7


class UnsupportedIndexFormatError(GeometryError):
    exit_code = 8


class MissingAttributeError(GeometryError):
    exit_code = 9
