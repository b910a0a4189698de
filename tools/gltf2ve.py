#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import math
import sys
from pathlib import Path
from typing import IO, Sequence

from gltf_asset import load_asset
from gltf_errors import ArgumentError, GeometryError
from gltf_geometry import FlatGeometry, extract_geometry, flatten_geometry


logger = logging.getLogger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise ArgumentError(f"{message}\n{self.format_usage().rstrip()}")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = _ArgumentParser(
        prog="gltf2ve",
        description="Flatten the triangle mesh of a glTF asset into draw-arrays vertex positions and colors.",
        add_help=False,
    )
    parser.add_argument("asset", type=Path, help="Input .gltf or .glb file")
    return parser.parse_args(argv)


def _json_number(value: float) -> float | None:
    # JSON has no NaN/Infinity literals.
    return value if math.isfinite(value) else None


def emit_document(flat: FlatGeometry, stream: IO[str] | None = None) -> None:
    out = sys.stdout if stream is None else stream
    document = {key: [_json_number(v) for v in values] for key, values in flat.to_document().items()}
    json.dump(document, out, ensure_ascii=True, separators=(",", ":"))
    out.write("\n")


def convert(asset_path: Path) -> FlatGeometry:
    asset = load_asset(asset_path)
    geometry = extract_geometry(asset)
    flat = flatten_geometry(geometry)
    logger.info(
        "%s: %d vertices, %d triangles -> %d flat vertices",
        asset_path,
        geometry.vertex_count,
        geometry.triangle_count,
        flat.vertex_count,
    )
    return flat


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    emit_document(convert(args.asset))
    return 0


def run(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr, format="%(levelname)s: %(message)s")
    try:
        return main(argv)
    except GeometryError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code


if __name__ == "__main__":
    raise SystemExit(run())
