# parcelles/exporter.py
from __future__ import annotations

import io
from typing import Iterable, Tuple

import pandas as pd
from sqlalchemy.orm import Session, contains_eager

from parcelles import crud, errors, models, schemas
from parcelles.config import Settings

COLUMNS = ["Identifiant", "Planteur", "Village", "Hectares", "Certificats", "Statut", "Latitude", "Longitude", "Source"]

MEDIA_TYPES = {
    "csv": "text/csv; charset=utf-8",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def _row(p: models.Parcelle, precision: int) -> dict:
    centroid = p.centroid or {}
    lat, lng = centroid.get("lat"), centroid.get("lng")
    return {
        "Identifiant": p.code or p.id,
        "Planteur": p.planteur.name if p.planteur is not None else None,
        "Village": p.village,
        "Hectares": round(float(p.surface_hectares or 0.0), 4),
        "Certificats": ", ".join(p.certifications or []),
        "Statut": p.conformity_status,
        "Latitude": round(lat, precision) if lat is not None else None,
        "Longitude": round(lng, precision) if lng is not None else None,
        "Source": p.source,
    }


def to_frame(rows: Iterable[models.Parcelle], precision: int = 6) -> pd.DataFrame:
    return pd.DataFrame([_row(p, precision) for p in rows], columns=COLUMNS)


def render(df: pd.DataFrame, fmt: str) -> bytes:
    if fmt == "csv":
        # BOM so spreadsheet tools pick up UTF-8 accents
        return df.to_csv(index=False).encode("utf-8-sig")
    output = io.BytesIO()
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name="Parcelles", index=False)
    return output.getvalue()


def export_parcelles(
    db: Session,
    coop_id: str,
    filters: schemas.ParcelleFilters,
    fmt: str,
    settings: Settings,
) -> Tuple[bytes, str]:
    """(file bytes, media type) for the cooperative's parcelles matching filters."""
    if fmt not in MEDIA_TYPES:
        raise errors.validation_error("format", "format must be csv or xlsx")

    q = crud.query_parcelles(db, coop_id, filters)
    total = q.count()
    if total > settings.MAX_EXPORT_ROWS:
        raise errors.limit_exceeded("export_rows", settings.MAX_EXPORT_ROWS, total)

    rows = (
        q.options(contains_eager(models.Parcelle.planteur))
        .order_by(models.Parcelle.created_at, models.Parcelle.id)
        .all()
    )
    df = to_frame(rows, settings.DISPLAY_COORDINATE_PRECISION)
    return render(df, fmt), MEDIA_TYPES[fmt]
