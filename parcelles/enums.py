# parcelles/enums.py
"""
Whitelists shared by the storage constraints (models.py) and the request
validators (schemas.py). Changing a value here changes both.
"""
from __future__ import annotations

from enum import Enum


class Certification(str, Enum):
    RAINFOREST_ALLIANCE = "rainforest_alliance"
    UTZ = "utz"
    FAIRTRADE = "fairtrade"
    BIO = "bio"
    ORGANIC = "organic"
    OTHER = "other"


class ConformityStatus(str, Enum):
    CONFORME = "conforme"
    NON_CONFORME = "non_conforme"
    EN_COURS = "en_cours"
    INFORMATIONS_MANQUANTES = "informations_manquantes"


class ParcelleSource(str, Enum):
    MANUAL = "manual"
    SHAPEFILE = "shapefile"
    KML = "kml"
    GEOJSON = "geojson"


class ImportFileType(str, Enum):
    SHAPEFILE_ZIP = "shapefile_zip"
    KML = "kml"
    KMZ = "kmz"
    GEOJSON = "geojson"


class ImportStatus(str, Enum):
    UPLOADED = "uploaded"
    PARSED = "parsed"
    APPLIED = "applied"
    FAILED = "failed"


class AssignmentKind(str, Enum):
    EXISTING = "existing"
    NEW = "new"
    ORPHAN = "orphan"


class ErrorCode(str, Enum):
    SHAPEFILE_MISSING_REQUIRED = "SHAPEFILE_MISSING_REQUIRED"
    INVALID_GEOMETRY = "INVALID_GEOMETRY"
    UNSUPPORTED_GEOMETRY_TYPE = "UNSUPPORTED_GEOMETRY_TYPE"
    LIKELY_PROJECTED_COORDINATES = "LIKELY_PROJECTED_COORDINATES"
    MISSING_PRJ_ASSUMED_WGS84 = "MISSING_PRJ_ASSUMED_WGS84"
    GEOMETRY_FIXED = "GEOMETRY_FIXED"
    DUPLICATE_GEOMETRY = "DUPLICATE_GEOMETRY"
    DUPLICATE_FILE = "DUPLICATE_FILE"
    IMPORT_ALREADY_APPLIED = "IMPORT_ALREADY_APPLIED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# KMZ is unpacked to KML, so both land as "kml"
SOURCE_BY_FILE_TYPE: dict[ImportFileType, ParcelleSource] = {
    ImportFileType.SHAPEFILE_ZIP: ParcelleSource.SHAPEFILE,
    ImportFileType.KML: ParcelleSource.KML,
    ImportFileType.KMZ: ParcelleSource.KML,
    ImportFileType.GEOJSON: ParcelleSource.GEOJSON,
}

FILE_TYPE_BY_EXTENSION: dict[str, ImportFileType] = {
    "zip": ImportFileType.SHAPEFILE_ZIP,
    "kml": ImportFileType.KML,
    "kmz": ImportFileType.KMZ,
    "geojson": ImportFileType.GEOJSON,
    "json": ImportFileType.GEOJSON,
}

ALLOWED_TRANSITIONS: dict[ImportStatus, frozenset[ImportStatus]] = {
    ImportStatus.UPLOADED: frozenset({ImportStatus.PARSED, ImportStatus.FAILED}),
    ImportStatus.PARSED: frozenset({ImportStatus.PARSED, ImportStatus.APPLIED, ImportStatus.FAILED}),
    ImportStatus.APPLIED: frozenset(),
    ImportStatus.FAILED: frozenset(),
}


def can_transition(current: str | ImportStatus, target: str | ImportStatus) -> bool:
    return ImportStatus(target) in ALLOWED_TRANSITIONS[ImportStatus(current)]


def values(enum_cls: type[Enum]) -> list[str]:
    return [m.value for m in enum_cls]


def sql_in_list(enum_cls: type[Enum]) -> str:
    """Render the enum as a SQL IN list, e.g. "('a', 'b')"."""
    return "(" + ", ".join(f"'{v}'" for v in values(enum_cls)) + ")"
