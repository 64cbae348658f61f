# parcelles/geometry.py
"""
Geometry normalisation for imported parcelles.

Everything here is a pure function over GeoJSON-style dicts (lon/lat order).
Stored geometries are always MultiPolygons: Polygon inputs are wrapped,
MultiPolygon inputs pass through.
"""
from __future__ import annotations

import math
from typing import Any, Iterable, Iterator, Optional, Sequence

from pyproj import CRS, Geod, Transformer
from shapely.geometry import mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient

from parcelles import errors

SUPPORTED_TYPES = ("Polygon", "MultiPolygon")

_GEOD = Geod(ellps="WGS84")
_WGS84 = CRS.from_epsg(4326)


# ---------- coordinate helpers ----------

def _position(p: Any) -> list[float]:
    """[x, y] from a GeoJSON position; Z/M ordinates are dropped."""
    if not isinstance(p, (list, tuple)) or len(p) < 2:
        raise ValueError(f"Invalid position: {p!r}")
    x, y = p[0], p[1]
    if isinstance(x, bool) or isinstance(y, bool) or not isinstance(x, (int, float)) or not isinstance(y, (int, float)):
        raise ValueError(f"Non-numeric coordinate: {p!r}")
    x, y = float(x), float(y)
    if not (math.isfinite(x) and math.isfinite(y)):
        raise ValueError(f"Non-finite coordinate: {p!r}")
    return [x, y]


def _ring(r: Any) -> list[list[float]]:
    if not isinstance(r, (list, tuple)):
        raise ValueError("Ring must be an array of positions")
    return [_position(p) for p in r]


def _polygon(rings: Any) -> list[list[list[float]]]:
    if not isinstance(rings, (list, tuple)) or not rings:
        raise ValueError("Polygon must contain at least one ring")
    return [_ring(r) for r in rings]


def iter_positions(multi_coords: Iterable) -> Iterator[list[float]]:
    for polygon in multi_coords:
        for ring in polygon:
            yield from ring


# ---------- normalisation ----------

def normalize(geometry: Optional[dict]) -> dict:
    """
    Return the MultiPolygon form of a Polygon/MultiPolygon geometry.

    Raises ParcelleError(UNSUPPORTED_GEOMETRY_TYPE) for other types and
    ParcelleError(INVALID_GEOMETRY) for malformed coordinate arrays.
    """
    if not geometry or not isinstance(geometry, dict):
        raise errors.invalid_geometry("Feature has no geometry")

    gtype = geometry.get("type")
    if gtype not in SUPPORTED_TYPES:
        raise errors.unsupported_geometry(gtype)

    coords = geometry.get("coordinates")
    try:
        if gtype == "Polygon":
            multi = [_polygon(coords)]
        else:
            if not isinstance(coords, (list, tuple)) or not coords:
                raise ValueError("MultiPolygon must contain at least one polygon")
            multi = [_polygon(p) for p in coords]
    except ValueError as e:
        raise errors.invalid_geometry(f"Malformed coordinates: {e}")

    return {"type": "MultiPolygon", "coordinates": multi}


def has_non_finite(multi_coords: Iterable) -> bool:
    return any(not (math.isfinite(x) and math.isfinite(y)) for x, y in iter_positions(multi_coords))


def to_shape(geometry: dict) -> BaseGeometry:
    return shape(geometry)


def from_shape(geom: BaseGeometry) -> dict:
    """GeoJSON MultiPolygon dict (lists, not tuples) from a polygonal shapely geometry."""
    def _lists(c):
        if isinstance(c, (list, tuple)):
            return [_lists(x) for x in c]
        return float(c)

    m = mapping(geom)
    coords = _lists(m["coordinates"])
    if m["type"] == "Polygon":
        coords = [coords]
    return {"type": "MultiPolygon", "coordinates": coords}


# ---------- measurements ----------

def area_hectares(geom: BaseGeometry) -> float:
    """
    Geodesic area on the WGS84 ellipsoid, in hectares (4 decimals).
    0.0 when the coordinates are not longitude/latitude at all.
    """
    if geom.is_empty:
        return 0.0
    minx, miny, maxx, maxy = geom.bounds
    if minx < -180 or maxx > 180 or miny < -90 or maxy > 90:
        return 0.0
    area_m2 = 0.0
    for p in getattr(geom, "geoms", [geom]):
        if p.geom_type != "Polygon" or p.is_empty:
            continue
        # signed by ring orientation, so orient counter-clockwise first
        a, _ = _GEOD.geometry_area_perimeter(orient(p, sign=1.0))
        area_m2 += abs(a)
    return round(area_m2 / 10_000.0, 4)


def interior_centroid(geom: BaseGeometry, precision: int = 6) -> Optional[dict]:
    """
    A point guaranteed to lie inside the polygon, as {"lat", "lng"}.

    Plots are often concave, so the arithmetic centroid can fall outside;
    shapely's point_on_surface cannot.
    """
    if geom.is_empty:
        return None
    p = geom.point_on_surface()
    return {"lat": round(p.y, precision), "lng": round(p.x, precision)}


# ---------- projections ----------

def needs_reprojection(crs: CRS) -> bool:
    return crs.to_epsg(min_confidence=70) != 4326


def parse_crs(definition: str) -> CRS:
    """CRS from a .prj WKT, an EPSG code or a GeoJSON crs name (urn:ogc:def:crs:...)."""
    return CRS.from_user_input(definition)


def reproject(geometry: dict, crs: CRS) -> dict:
    """Transform every position of a GeoJSON geometry to WGS84 lon/lat."""
    transformer = Transformer.from_crs(crs, _WGS84, always_xy=True)

    def _walk(c):
        if isinstance(c, (list, tuple)) and c and isinstance(c[0], (int, float)) and not isinstance(c[0], bool):
            if len(c) < 2:
                return list(c)
            x, y = transformer.transform(c[0], c[1])
            return [x, y]
        if isinstance(c, (list, tuple)):
            return [_walk(x) for x in c]
        return c

    return {**geometry, "coordinates": _walk(geometry.get("coordinates"))}


def first_out_of_bounds(multi_coords: Iterable, bounds: Sequence[float]) -> Optional[list[float]]:
    """First finite position outside (min_lng, min_lat, max_lng, max_lat), if any."""
    min_lng, min_lat, max_lng, max_lat = bounds
    for x, y in iter_positions(multi_coords):
        if not (math.isfinite(x) and math.isfinite(y)):
            continue
        if x < min_lng or x > max_lng or y < min_lat or y > max_lat:
            return [x, y]
    return None
