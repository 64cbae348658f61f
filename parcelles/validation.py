# parcelles/validation.py
"""
Feature validation.

check_geometry and repair_geometry are independent pure functions;
validate_feature composes them and adds the coordinate-range warning.
"""
from __future__ import annotations

from typing import NamedTuple, Optional, Sequence

from shapely.geometry import MultiPolygon
from shapely.geometry.base import BaseGeometry
from shapely.validation import explain_validity, make_valid

from parcelles import geometry as geo
from parcelles.enums import ErrorCode
from parcelles.schemas import FeatureValidation

MIN_RING_POSITIONS = 4


class ValidatedGeometry(NamedTuple):
    geometry: dict                 # effective MultiPolygon (repaired when fixed)
    shape: Optional[BaseGeometry]  # None when the geometry could not be built
    validation: FeatureValidation
    original_valid: bool
    fixed: bool
    sample_coord: Optional[list]


# ---------- checks ----------

def _structural_errors(multi: dict) -> list[str]:
    errs: list[str] = []
    for pi, polygon in enumerate(multi["coordinates"]):
        for ri, ring in enumerate(polygon):
            if len(ring) < MIN_RING_POSITIONS:
                errs.append(
                    f"Ring {ri} of polygon {pi} has {len(ring)} positions (minimum {MIN_RING_POSITIONS})"
                )
    if geo.has_non_finite(multi["coordinates"]):
        errs.append("Geometry contains non-finite coordinates")
    return errs


def check_geometry(multi: dict) -> list[str]:
    """Blocking problems of a normalised MultiPolygon; empty list means valid."""
    errs = _structural_errors(multi)
    if errs:
        return errs
    shp = geo.to_shape(multi)
    if shp.is_empty:
        return ["Geometry is empty"]
    if not shp.is_valid:
        return [f"Invalid polygon: {explain_validity(shp)}"]
    if shp.area <= 0:
        return ["Polygon has zero area"]
    return []


def _polygonal_parts(g: BaseGeometry) -> list:
    if g.geom_type == "Polygon":
        return [g]
    if g.geom_type in ("MultiPolygon", "GeometryCollection"):
        parts = []
        for sub in g.geoms:
            parts.extend(_polygonal_parts(sub))
        return parts
    return []


def repair_geometry(multi: dict) -> Optional[dict]:
    """
    Fix an invalid but repairable polygon with make_valid.
    Returns the repaired MultiPolygon, or None if nothing polygonal and valid remains.
    """
    if _structural_errors(multi):
        return None
    fixed = make_valid(geo.to_shape(multi))
    parts = [p for p in _polygonal_parts(fixed) if not p.is_empty and p.area > 0]
    if not parts:
        return None
    repaired = MultiPolygon(parts)
    if repaired.is_empty or not repaired.is_valid or repaired.area <= 0:
        return None
    return geo.from_shape(repaired)


# ---------- composition ----------

def validate_feature(multi: dict, *, bounds: Sequence[float]) -> ValidatedGeometry:
    errors = check_geometry(multi)
    original_valid = not errors
    effective = multi
    fixed = False
    warnings: list[str] = []

    if errors and not _structural_errors(multi):
        repaired = repair_geometry(multi)
        if repaired is not None:
            effective, fixed, errors = repaired, True, []
            warnings.append(ErrorCode.GEOMETRY_FIXED.value)

    shp = None if _structural_errors(effective) else geo.to_shape(effective)

    sample = geo.first_out_of_bounds(effective["coordinates"], bounds)
    if sample is not None:
        warnings.append(ErrorCode.LIKELY_PROJECTED_COORDINATES.value)

    validation = FeatureValidation(
        ok=not errors,
        errors=errors,
        warnings=warnings,
        requires_confirmation=sample is not None,
    )
    return ValidatedGeometry(effective, shp, validation, original_valid, fixed, sample)
