# parcelles/parser.py
"""
Import parser: raw features from an IngestSource -> ParsedFeature list.

Per feature, in file order: attributes -> normalise -> validate/repair ->
hash -> duplicate check (earlier features of the batch first, then persisted
parcelles). A bad feature is reported and skipped; it never aborts the file.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from parcelles import geometry as geo
from parcelles import hashing, validation
from parcelles.config import Settings, settings as default_settings
from parcelles.enums import ErrorCode
from parcelles.errors import ParcelleError, limit_exceeded
from parcelles.ingest_sources import IngestSource
from parcelles.schemas import Centroid, ParsedFeature, ParseReport, ParseResult, ReportEntry

logger = logging.getLogger(__name__)

LABEL_FIELDS = ("name", "NAME", "Name", "label", "LABEL", "nom", "NOM", "description")

# hashes -> {hash: parcelle_id} for active parcelles visible to the caller
ExistingHashLookup = Callable[[Iterable[str]], Dict[str, str]]


def extract_label(props: Dict[str, Any]) -> Optional[str]:
    for key in LABEL_FIELDS:
        v = props.get(key)
        if v is not None and str(v).strip():
            return str(v).strip()
    return None


def temp_id_for(import_id: str, index: int) -> str:
    """Stable per (import, index) so a re-parse reproduces the same ids."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"parcel-import:{import_id}:{index}"))


def _entry(code: ErrorCode | str, message: str, index: Optional[int] = None, **kw) -> ReportEntry:
    return ReportEntry(code=getattr(code, "value", code), message=message, feature_index=index, **kw)


class ImportParser:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        existing_hashes: ExistingHashLookup | None = None,
    ):
        self._settings = settings or default_settings
        self._existing_hashes = existing_hashes or (lambda hashes: {})

    def _read(self, source: IngestSource) -> List[Dict[str, Any]]:
        raw = list(source.records())
        limit = self._settings.MAX_FEATURES_PER_IMPORT
        if len(raw) > limit:
            raise limit_exceeded("features", limit, len(raw))
        return raw

    def _feature(self, import_id: str, index: int, rec: Dict[str, Any], report: ParseReport) -> Optional[ParsedFeature]:
        props = rec.get("properties") or {}
        try:
            multi = geo.normalize(rec.get("geometry"))
        except ParcelleError as e:
            logger.debug("feature %d excluded: %s", index, e.code.value)
            report.errors.append(_entry(e.code, e.message, index, details={**e.details, "feature_index": index}))
            return None

        s = self._settings
        checked = validation.validate_feature(multi, bounds=s.EXPECTED_BOUNDS)
        if not checked.validation.ok:
            # unrepairable: reported, never offered for import
            reason = "; ".join(checked.validation.errors)
            logger.debug("feature %d excluded: %s", index, reason)
            report.errors.append(_entry(
                ErrorCode.INVALID_GEOMETRY, reason, index,
                details={"reason": reason, "feature_index": index},
            ))
            return None

        area = geo.area_hectares(checked.shape)
        centroid = geo.interior_centroid(checked.shape, s.DISPLAY_COORDINATE_PRECISION)

        if checked.fixed:
            report.warnings.append(_entry(
                ErrorCode.GEOMETRY_FIXED, "Invalid geometry was repaired automatically", index,
            ))
        if checked.sample_coord is not None:
            report.warnings.append(_entry(
                ErrorCode.LIKELY_PROJECTED_COORDINATES,
                "Coordinates fall outside the expected longitude/latitude range; "
                "the file may use a projected coordinate system",
                index,
                requires_confirmation=True,
                details={"sample_coord": checked.sample_coord},
            ))

        logger.debug("feature %d parsed fixed=%s", index, checked.fixed)
        return ParsedFeature(
            temp_id=temp_id_for(import_id, index),
            feature_index=index,
            label=extract_label(props),
            properties=props,
            geometry=checked.geometry,
            geom_original_valid=checked.original_valid,
            geom_fixed=checked.fixed,
            area_ha=area,
            centroid=Centroid(**centroid) if centroid else None,
            validation=checked.validation,
            feature_hash=hashing.feature_hash(checked.geometry, s.HASH_COORDINATE_PRECISION),
        )

    def _mark_duplicates(self, features: List[ParsedFeature], report: ParseReport) -> None:
        first_seen: Dict[str, str] = {}
        for f in features:
            if f.feature_hash in first_seen:
                f.is_duplicate = True
                f.existing_parcelle_id = first_seen[f.feature_hash]
                f.duplicate_source = "batch"
            else:
                first_seen[f.feature_hash] = f.temp_id

        existing = self._existing_hashes(list(first_seen)) if first_seen else {}
        for f in features:
            if not f.is_duplicate and f.feature_hash in existing:
                f.is_duplicate = True
                f.existing_parcelle_id = existing[f.feature_hash]
                f.duplicate_source = "existing"

        for f in features:
            if f.is_duplicate:
                report.warnings.append(_entry(
                    ErrorCode.DUPLICATE_GEOMETRY,
                    "Geometry already imported" if f.duplicate_source == "existing"
                    else "Geometry repeats an earlier feature of this file",
                    f.feature_index,
                    details={"existing_parcelle_id": f.existing_parcelle_id, "source": f.duplicate_source},
                ))

    def parse(self, source: IngestSource, *, import_id: str) -> ParseResult:
        raw = self._read(source)
        report = ParseReport(nb_features=len(raw))
        report.warnings.extend(_entry(w["code"], w["message"], details=w.get("details", {})) for w in source.warnings)

        available: Dict[str, None] = {}
        features: List[ParsedFeature] = []
        for index, rec in enumerate(raw):
            for key in (rec.get("properties") or {}):
                available.setdefault(key, None)
            parsed = self._feature(import_id, index, rec, report)
            if parsed is not None:
                features.append(parsed)

        self._mark_duplicates(features, report)

        report.nb_valid = sum(1 for f in features if f.validation.ok)
        report.nb_invalid = len(raw) - report.nb_valid
        report.nb_duplicates = sum(1 for f in features if f.is_duplicate)
        return ParseResult(
            import_file_id=import_id,
            features=features,
            report=report,
            available_fields=list(available),
        )
