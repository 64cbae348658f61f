# parcelles/errors.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from parcelles.enums import ErrorCode

logger = logging.getLogger(__name__)

HTTP_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.SHAPEFILE_MISSING_REQUIRED: 400,
    ErrorCode.INVALID_GEOMETRY: 400,
    ErrorCode.UNSUPPORTED_GEOMETRY_TYPE: 400,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.DUPLICATE_FILE: 409,
    ErrorCode.IMPORT_ALREADY_APPLIED: 409,
    ErrorCode.LIMIT_EXCEEDED: 413,
    ErrorCode.INTERNAL_ERROR: 500,
}


class ParcelleError(Exception):
    """Structural or workflow failure, surfaced to the caller as-is."""

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.details = details or {}

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.code, 400)

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.code.value, "message": self.message, "details": self.details}


# ---------- constructors ----------

def not_found(resource: str, resource_id: Any) -> ParcelleError:
    return ParcelleError(
        ErrorCode.NOT_FOUND,
        f"{resource} not found",
        {"resource": resource, "id": str(resource_id)},
    )


def validation_error(field: str, message: str) -> ParcelleError:
    return ParcelleError(ErrorCode.VALIDATION_ERROR, message, {"field": field, "message": message})


def limit_exceeded(resource: str, limit: int, actual: int) -> ParcelleError:
    return ParcelleError(
        ErrorCode.LIMIT_EXCEEDED,
        f"{resource} limit exceeded: {actual} > {limit}",
        {"limit": limit, "actual": actual, "resource": resource},
    )


def duplicate_file(existing_import_id: Any) -> ParcelleError:
    return ParcelleError(
        ErrorCode.DUPLICATE_FILE,
        "This file has already been uploaded",
        {"existing_import_id": str(existing_import_id)},
    )


def already_applied(import_id: Any) -> ParcelleError:
    return ParcelleError(
        ErrorCode.IMPORT_ALREADY_APPLIED,
        "Import has already been applied",
        {"import_file_id": str(import_id)},
    )


def unauthorized(message: str = "Authentication required") -> ParcelleError:
    return ParcelleError(ErrorCode.UNAUTHORIZED, message)


def missing_shapefile_members(missing: Iterable[str]) -> ParcelleError:
    missing = sorted(missing)
    return ParcelleError(
        ErrorCode.SHAPEFILE_MISSING_REQUIRED,
        "Shapefile archive is missing required members: " + ", ".join(missing),
        {"missing": missing},
    )


def invalid_geometry(reason: str, feature_index: Optional[int] = None) -> ParcelleError:
    return ParcelleError(
        ErrorCode.INVALID_GEOMETRY,
        reason,
        {"reason": reason, "feature_index": feature_index},
    )


def unsupported_geometry(gtype: Any) -> ParcelleError:
    return ParcelleError(
        ErrorCode.UNSUPPORTED_GEOMETRY_TYPE,
        f"Unsupported geometry type: {gtype}",
        {"type": gtype, "expected": ["Polygon", "MultiPolygon"]},
    )


# ---------- FastAPI handlers ----------

async def parcelle_error_handler(request: Request, exc: ParcelleError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path", "header")]
    err = validation_error(".".join(loc) or "request", first.get("msg", "Invalid request"))
    return JSONResponse(status_code=err.status_code, content=err.to_dict())
