# parcelles/hashing.py
"""
Content hashes used for deduplication.

feature_hash: digest of a normalised MultiPolygon. Coordinates are rounded
to a fixed precision, rings are serialised outer ring first then holes in
their original order, vertices are never reordered. Positions are joined
by spaces, rings by "|", polygons by ";".

file_hash: plain SHA-256 of the uploaded bytes.
"""
from __future__ import annotations

import hashlib
import math

DEFAULT_PRECISION = 8


def _fmt(v: float, precision: int) -> str:
    v = float(v)
    if not math.isfinite(v):
        return repr(v)
    # + 0.0 folds -0.0 into 0.0
    return f"{round(v, precision) + 0.0:.{precision}f}"


def canonical_string(multi: dict, precision: int = DEFAULT_PRECISION) -> str:
    polygons = []
    for polygon in multi.get("coordinates") or []:
        rings = []
        for ring in polygon:
            rings.append(" ".join(f"{_fmt(p[0], precision)},{_fmt(p[1], precision)}" for p in ring))
        polygons.append("|".join(rings))
    return ";".join(polygons)


def feature_hash(multi: dict, precision: int = DEFAULT_PRECISION) -> str:
    return hashlib.sha256(canonical_string(multi, precision).encode("utf-8")).hexdigest()


def file_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()
