# parcelles/import_service.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from parcelles import crud, errors, hashing, models, resolver, schemas, validation
from parcelles import geometry as geo
from parcelles.config import Settings, settings as default_settings
from parcelles.enums import (
    FILE_TYPE_BY_EXTENSION,
    SOURCE_BY_FILE_TYPE,
    ConformityStatus,
    ErrorCode,
    ImportFileType,
    ImportStatus,
    ParcelleSource,
    can_transition,
)
from parcelles.errors import ParcelleError
from parcelles.ingest_sources import source_for
from parcelles.parser import ImportParser
from parcelles.storage import FileStorage, storage_path_for

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Insert = Callable[..., models.Parcelle]

VILLAGE_FIELDS = ("village", "VILLAGE", "Village", "localite", "LOCALITE", "Localite", "lieu", "LIEU")
ADDITIONAL_DATA_FIELDS = ("date", "DATE", "certification", "CERTIFICATION", "code", "CODE",
                          "superficie", "SUPERFICIE", "surface", "SURFACE")
PLANTEUR_FIELDS = ("Nom_prod", "NOM_PROD", "nom_prod", "planteur", "PLANTEUR", "Planteur",
                   "nom", "NOM", "name", "NAME")

CONFORMITY_SYNONYMS: Dict[str, ConformityStatus] = {
    **{k: ConformityStatus.CONFORME for k in ("conforme", "ok", "valid", "valide", "oui", "yes", "1", "true")},
    **{k: ConformityStatus.NON_CONFORME for k in ("non conforme", "non", "no", "0", "false", "invalid", "invalide")},
    **{k: ConformityStatus.EN_COURS for k in ("en cours", "pending", "en attente", "verification", "a verifier")},
    **{k: ConformityStatus.INFORMATIONS_MANQUANTES
       for k in ("informations manquantes", "missing", "manquant", "manquante", "incomplet", "incomplete")},
}


# ---------- attribute helpers ----------

def _text(props: Dict[str, Any], field: Optional[str]) -> Optional[str]:
    if not field:
        return None
    v = props.get(field)
    if v is None or not str(v).strip():
        return None
    return str(v).strip()


def _first_text(props: Dict[str, Any], fields) -> Optional[str]:
    for f in fields:
        v = _text(props, f)
        if v:
            return v
    return None


def conformity_from_value(value: Any) -> Optional[ConformityStatus]:
    """Map a free-text attribute (French or English) to a conformity status."""
    if value is None:
        return None
    key = resolver.normalize_name(str(value)).replace("_", " ")
    return CONFORMITY_SYNONYMS.get(key)


def detect_conformity(
    props: Dict[str, Any],
    name_field: Optional[str] = None,
    area_ha: Optional[float] = None,
) -> ConformityStatus:
    """
    conforme: a planteur name, a village or a positive area, and at least
    one additional data field. en_cours: a name or a positive area.
    Anything else is informations_manquantes.

    When name_field is given only that attribute counts as the name.
    """
    name = _text(props, name_field) if name_field else _first_text(props, PLANTEUR_FIELDS)
    has_name = name is not None
    has_village = _first_text(props, VILLAGE_FIELDS) is not None
    has_area = area_ha is not None and area_ha > 0
    has_extra = _first_text(props, ADDITIONAL_DATA_FIELDS) is not None

    if has_name and (has_village or has_area) and has_extra:
        return ConformityStatus.CONFORME
    if has_name or has_area:
        return ConformityStatus.EN_COURS
    return ConformityStatus.INFORMATIONS_MANQUANTES


def resolve_conformity(
    props: Dict[str, Any],
    mapping: schemas.FieldMapping,
    defaults: schemas.ApplyDefaults,
    area_ha: Optional[float] = None,
    name_field: Optional[str] = None,
) -> ConformityStatus:
    """Mapped attribute first, then auto-detection if enabled, else the default."""
    default = defaults.conformity_status or ConformityStatus.INFORMATIONS_MANQUANTES
    field = mapping.conformity_status_field
    if field and props.get(field) is not None:
        # an unrecognised value keeps the default rather than guessing
        return conformity_from_value(props[field]) or default
    if defaults.auto_detect_conformity:
        return detect_conformity(props, name_field, area_ha)
    return default


def applicable(features: List[schemas.ParsedFeature]) -> List[schemas.ParsedFeature]:
    """Features apply would persist: valid and not duplicated."""
    return [f for f in features if f.validation.ok and not f.is_duplicate]


class ParcelleImportService:
    def __init__(
        self,
        *,
        storage: FileStorage,
        settings: Settings | None = None,
        clock: Clock | None = None,
        insert: Insert | None = None,
    ):
        # DI
        self._storage = storage
        self._settings = settings or default_settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._insert = insert or crud.insert_parcelle

    # ---------- guards ----------

    @staticmethod
    def _coop(user: schemas.CurrentUser) -> str:
        if not user.cooperative_id:
            raise errors.validation_error("cooperative_id", "A cooperative is required for this operation")
        return user.cooperative_id

    def _import_file(self, db: Session, user: schemas.CurrentUser, import_id: str) -> models.ImportFile:
        obj = crud.get_import_file(db, import_id, self._coop(user))
        if obj is None:
            raise errors.not_found("Import file", import_id)
        return obj

    @staticmethod
    def _require_parsed(obj: models.ImportFile) -> None:
        if obj.import_status == ImportStatus.APPLIED.value:
            raise errors.already_applied(obj.id)
        if obj.import_status != ImportStatus.PARSED.value:
            raise errors.validation_error(
                "import_status", f"Import must be parsed first (current status: {obj.import_status})"
            )

    # ---------- upload ----------

    @staticmethod
    def detect_file_type(filename: str) -> ImportFileType:
        ext = filename.rsplit(".", 1)[-1].lower() if "." in (filename or "") else ""
        file_type = FILE_TYPE_BY_EXTENSION.get(ext)
        if file_type is None:
            raise errors.validation_error(
                "file", "Unsupported file type; expected .zip (shapefile), .kml, .kmz, .geojson or .json"
            )
        return file_type

    def upload(
        self,
        db: Session,
        user: schemas.CurrentUser,
        *,
        filename: str,
        content: bytes,
        planteur_id: Optional[str] = None,
    ) -> models.ImportFile:
        coop = self._coop(user)
        file_type = self.detect_file_type(filename)

        limit = self._settings.MAX_FILE_SIZE_BYTES
        if len(content) > limit:
            raise errors.limit_exceeded("file_size", limit, len(content))
        if not content:
            raise errors.validation_error("file", "File is empty")

        if planteur_id and crud.get_planteur(db, planteur_id, coop) is None:
            raise errors.validation_error("planteur_id", "Planteur not found in this cooperative")

        digest = hashing.file_hash(content)
        existing = crud.find_import_by_hash(db, coop, digest)
        if existing is not None:
            raise errors.duplicate_file(existing.id)

        now = self._clock()
        path = storage_path_for(coop, filename, now)
        self._storage.save(path, content)
        obj = crud.create_import_file(
            db,
            cooperative_id=coop,
            planteur_id=planteur_id,
            filename=filename,
            storage_path=path,
            file_type=file_type.value,
            file_hash=digest,
            created_by=user.user_id,
            created_at=now,
        )
        logger.info("import %s uploaded (%s, %d bytes)", obj.id, file_type.value, len(content))
        return obj

    # ---------- parse ----------

    def _parse_stored(self, db: Session, obj: models.ImportFile) -> schemas.ParseResult:
        try:
            content = self._storage.load(obj.storage_path)
        except OSError as e:
            raise ParcelleError(ErrorCode.INTERNAL_ERROR, "Stored file could not be read", {"reason": str(e)})
        parser = ImportParser(
            settings=self._settings,
            existing_hashes=lambda hashes: crud.existing_hashes(db, obj.cooperative_id, hashes),
        )
        return parser.parse(source_for(obj.file_type, content, self._settings), import_id=obj.id)

    def parse(self, db: Session, user: schemas.CurrentUser, import_id: str) -> schemas.ParseResult:
        obj = self._import_file(db, user, import_id)
        if not can_transition(obj.import_status, ImportStatus.PARSED):
            if obj.import_status == ImportStatus.APPLIED.value:
                raise errors.already_applied(obj.id)
            raise errors.validation_error("import_status", "Import has failed; upload the file again")

        try:
            result = self._parse_stored(db, obj)
        except ParcelleError as e:
            if e.code != ErrorCode.INTERNAL_ERROR:
                report = schemas.ParseReport(
                    errors=[schemas.ReportEntry(code=e.code.value, message=e.message, details=e.details)]
                )
                crud.mark_failed(db, obj, e.message, report.model_dump(mode="json"))
                logger.warning("import %s failed to parse: %s", obj.id, e.code.value)
            raise

        crud.mark_parsed(db, obj, result.report.model_dump(mode="json"), result.report.nb_features)
        logger.info(
            "import %s parsed: %d features, %d valid, %d duplicates",
            obj.id, result.report.nb_features, result.report.nb_valid, result.report.nb_duplicates,
        )
        return result

    # ---------- preview ----------

    def preview(self, db: Session, user: schemas.CurrentUser, import_id: str, mode) -> schemas.AutoCreatePreview:
        obj = self._import_file(db, user, import_id)
        self._require_parsed(obj)
        result = self._parse_stored(db, obj)
        plan = resolver.plan(applicable(result.features), mode, crud.PlanteurDirectory(db, obj.cooperative_id))
        return resolver.preview(plan)

    # ---------- apply ----------

    def _reject_unclaimed(self, db: Session, user: schemas.CurrentUser, import_id: str) -> None:
        db.rollback()
        db.expire_all()
        self._require_parsed(self._import_file(db, user, import_id))
        # status was parsed again by the time we looked; report as a conflict all the same
        raise errors.already_applied(import_id)

    def _guarded(self, db: Session, fn: Callable[[], Any]) -> tuple[Any, Optional[str]]:
        """Run fn inside a SAVEPOINT; (result, None) or (None, reason)."""
        try:
            with db.begin_nested():
                return fn(), None
        except (SQLAlchemyError, ValueError) as e:
            return None, str(getattr(e, "orig", None) or e)

    def apply(
        self,
        db: Session,
        user: schemas.CurrentUser,
        import_id: str,
        request: schemas.ApplyImportRequest,
    ) -> schemas.ApplyImportResult:
        obj = self._import_file(db, user, import_id)
        self._require_parsed(obj)
        coop = obj.cooperative_id
        file_type = obj.file_type

        # ParsedFeature is never stored; apply works from a fresh parse
        result = self._parse_stored(db, obj)
        todo = applicable(result.features)
        nb_skipped = sum(1 for f in result.features if f.is_duplicate and f.validation.ok)
        mode = request.mode
        plan = resolver.plan(todo, mode, crud.PlanteurDirectory(db, coop))

        now = self._clock()
        if not crud.claim_for_apply(db, obj.id, user.user_id, now):
            self._reject_unclaimed(db, user, import_id)

        all_or_nothing = self._settings.APPLY_STRATEGY == "all_or_nothing"
        if not all_or_nothing:
            # the claim stands even if every insert below fails
            db.commit()

        def create_planteur(name: str, name_norm: str) -> Optional[str]:
            p, reason = self._guarded(db, lambda: crud.create_planteur(
                db,
                coop_id=coop,
                name=name,
                name_norm=name_norm,
                created_by=user.user_id,
                chef_planteur_id=getattr(mode, "default_chef_planteur_id", None),
                import_id=obj.id,
                now=now,
            ))
            if p is None:
                logger.warning("import %s: planteur %r could not be created: %s", import_id, name, reason)
                return None
            return p.id

        created_planteurs = resolver.materialize(plan, create_planteur)

        source = SOURCE_BY_FILE_TYPE[ImportFileType(file_type)].value
        name_field = getattr(mode, "name_field", None)
        codes: Dict[str, set] = {}
        created_ids: List[str] = []
        failures: List[schemas.ApplyFailure] = []

        for f in todo:
            try:
                planteur_id = resolver.planteur_for(plan.assignments[f.temp_id], created_planteurs)
            except KeyError:
                failures.append(schemas.ApplyFailure(
                    temp_id=f.temp_id, feature_index=f.feature_index, reason="Planteur could not be created",
                ))
                continue

            props = f.properties
            code = None
            if planteur_id is not None:
                taken = codes.setdefault(planteur_id, crud.parcelle_codes(db, planteur_id))
                code = _text(props, request.mapping.code_field)
                if code:
                    taken.add(code)
                else:
                    code = crud.next_parcelle_code(taken)

            fields = dict(
                planteur_id=planteur_id,
                code=code,
                label=_text(props, request.mapping.label_field) or f.label,
                village=_text(props, request.mapping.village_field) or _first_text(props, VILLAGE_FIELDS),
                geometry=f.geometry,
                centroid=f.centroid.model_dump() if f.centroid else None,
                surface_hectares=f.area_ha,
                certifications=[c.value for c in request.defaults.certifications],
                conformity_status=resolve_conformity(
                    props, request.mapping, request.defaults, f.area_ha, name_field,
                ).value,
                risk_flags={},
                source=source,
                import_file_id=obj.id,
                feature_hash=f.feature_hash,
                created_by=user.user_id,
                created_at=now,
                updated_at=now,
            )
            parcelle, reason = self._guarded(db, lambda: self._insert(db, **fields))
            if parcelle is None:
                logger.warning("import %s: feature %d not persisted: %s", import_id, f.feature_index, reason)
                failures.append(schemas.ApplyFailure(temp_id=f.temp_id, feature_index=f.feature_index, reason=reason))
                continue
            created_ids.append(parcelle.id)

        if all_or_nothing and failures:
            db.rollback()
            raise ParcelleError(
                ErrorCode.INTERNAL_ERROR,
                "Apply failed; no parcelles were created",
                {"failures": [x.model_dump() for x in failures]},
            )

        crud.record_apply_counts(
            db, obj.id, nb_applied=len(created_ids), nb_skipped=nb_skipped, nb_failed=len(failures),
        )
        db.commit()
        logger.info(
            "import %s applied: %d applied, %d skipped, %d failed",
            import_id, len(created_ids), nb_skipped, len(failures),
        )
        return schemas.ApplyImportResult(
            import_file_id=obj.id,
            nb_applied=len(created_ids),
            nb_skipped=nb_skipped,
            created_ids=created_ids,
            created_planteur_ids=list(created_planteurs.values()),
            failures=failures,
        )

    # ---------- manual creation ----------

    def create_manual(self, db: Session, user: schemas.CurrentUser, payload: schemas.ParcelleCreate) -> models.Parcelle:
        coop = self._coop(user)
        planteur = crud.get_planteur(db, payload.planteur_id, coop)
        if planteur is None:
            raise errors.validation_error("planteur_id", "Planteur not found in this cooperative")

        multi = geo.normalize(payload.geometry)
        checked = validation.validate_feature(multi, bounds=self._settings.EXPECTED_BOUNDS)
        if not checked.validation.ok:
            raise errors.invalid_geometry("; ".join(checked.validation.errors))

        precision = self._settings.DISPLAY_COORDINATE_PRECISION
        now = self._clock()
        taken = crud.parcelle_codes(db, planteur.id)
        if payload.code and payload.code in taken:
            raise errors.validation_error("code", "Code already used for this planteur")
        try:
            obj = crud.insert_parcelle(
                db,
                planteur_id=planteur.id,
                code=payload.code or crud.next_parcelle_code(taken),
                label=payload.label,
                village=payload.village,
                geometry=checked.geometry,
                centroid=geo.interior_centroid(checked.shape, precision),
                surface_hectares=geo.area_hectares(checked.shape),
                certifications=[c.value for c in payload.certifications],
                conformity_status=payload.conformity_status.value,
                risk_flags=payload.risk_flags,
                source=ParcelleSource.MANUAL.value,
                feature_hash=None,
                created_by=user.user_id,
                created_at=now,
                updated_at=now,
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            raise errors.validation_error("code", "Code already used for this planteur")
        db.refresh(obj)
        return obj

    # ---------- orphan follow-up ----------

    @staticmethod
    def _orphans(db: Session, coop: str, parcelle_ids: List[str]) -> List[models.Parcelle]:
        ids = list(dict.fromkeys(parcelle_ids))
        found = {}
        for pid in ids:
            p = crud.get_parcelle(db, pid, coop)
            if p is not None and p.is_active:
                found[pid] = p
        missing = [pid for pid in ids if pid not in found]
        if missing:
            raise errors.validation_error("parcelle_ids", f"Some parcelles were not found: {', '.join(missing)}")
        assigned = [p.code or p.id for p in found.values() if not p.is_orphan]
        if assigned:
            raise errors.validation_error(
                "parcelle_ids", f"Cannot assign non-orphan parcelles: {', '.join(assigned)}"
            )
        return [found[pid] for pid in ids]

    def _attach(self, db: Session, parcelles: List[models.Parcelle], planteur: models.Planteur) -> List[str]:
        taken = crud.parcelle_codes(db, planteur.id)
        now = self._clock()
        for p in parcelles:
            # a code carried over from the import is kept unless the planteur already uses it
            if p.code and p.code not in taken:
                taken.add(p.code)
            else:
                p.code = crud.next_parcelle_code(taken)
            p.planteur_id = planteur.id
            p.updated_at = now
        db.flush()
        return [p.id for p in parcelles]

    def _assign_result(self, planteur: models.Planteur, ids: List[str]) -> schemas.AssignParcellesResult:
        return schemas.AssignParcellesResult(
            planteur_id=planteur.id,
            planteur_name=planteur.name,
            planteur_code=planteur.code,
            updated_count=len(ids),
            assigned_ids=ids,
        )

    def assign_orphans(
        self, db: Session, user: schemas.CurrentUser, request: schemas.AssignParcellesRequest,
    ) -> schemas.AssignParcellesResult:
        coop = self._coop(user)
        planteur = crud.get_planteur(db, request.planteur_id, coop)
        if planteur is None:
            raise errors.not_found("Planteur", request.planteur_id)
        parcelles = self._orphans(db, coop, request.parcelle_ids)
        try:
            ids = self._attach(db, parcelles, planteur)
            db.commit()
        except IntegrityError:
            db.rollback()
            raise errors.validation_error("code", "Code already used for this planteur")
        logger.info("%d orphan parcelles assigned to planteur %s", len(ids), planteur.id)
        return self._assign_result(planteur, ids)

    def assign_to_new_planteur(
        self, db: Session, user: schemas.CurrentUser, request: schemas.AssignNewPlanteurRequest,
    ) -> schemas.AssignParcellesResult:
        coop = self._coop(user)
        name = resolver.display_name(request.planteur.name)
        name_norm = resolver.normalize_name(name)
        if not name_norm:
            raise errors.validation_error("planteur.name", "Name must not be empty")
        clash = crud.PlanteurDirectory(db, coop).by_names([name_norm])
        if name_norm in clash:
            raise errors.validation_error(
                "planteur.name", f'A planteur with this name already exists: "{clash[name_norm][1]}"'
            )
        parcelles = self._orphans(db, coop, request.parcelle_ids)
        try:
            planteur = crud.create_planteur(
                db,
                coop_id=coop,
                name=name,
                name_norm=name_norm,
                created_by=user.user_id,
                chef_planteur_id=request.planteur.chef_planteur_id,
                now=self._clock(),
            )
            ids = self._attach(db, parcelles, planteur)
            db.commit()
        except IntegrityError:
            db.rollback()
            raise errors.validation_error("planteur.name", "Planteur could not be created")
        logger.info("planteur %s created for %d orphan parcelles", planteur.id, len(ids))
        return self._assign_result(planteur, ids)

    # ---------- update ----------

    def update_parcelle(
        self, db: Session, user: schemas.CurrentUser, parcelle_id: str, payload: schemas.ParcelleUpdate,
    ) -> models.Parcelle:
        obj = crud.get_parcelle(db, parcelle_id, self._coop(user))
        if obj is None or not obj.is_active:
            raise errors.not_found("Parcelle", parcelle_id)

        changes = payload.model_dump(exclude_unset=True)
        for key in ("code", "geometry", "certifications", "conformity_status", "risk_flags"):
            if key in changes and changes[key] is None:
                raise errors.validation_error(key, f"{key} cannot be null")

        s = self._settings
        if "geometry" in changes:
            multi = geo.normalize(changes.pop("geometry"))
            checked = validation.validate_feature(multi, bounds=s.EXPECTED_BOUNDS)
            if not checked.validation.ok:
                raise errors.invalid_geometry("; ".join(checked.validation.errors))
            obj.geometry = checked.geometry
            obj.centroid = geo.interior_centroid(checked.shape, s.DISPLAY_COORDINATE_PRECISION)
            obj.surface_hectares = geo.area_hectares(checked.shape)
            if obj.feature_hash is not None:
                obj.feature_hash = hashing.feature_hash(checked.geometry, s.HASH_COORDINATE_PRECISION)

        code = changes.get("code")
        if code and obj.planteur_id and code != obj.code and code in crud.parcelle_codes(db, obj.planteur_id):
            raise errors.validation_error("code", "Code already used for this planteur")
        if "certifications" in changes:
            changes["certifications"] = [c.value for c in changes["certifications"]]
        if "conformity_status" in changes:
            changes["conformity_status"] = changes["conformity_status"].value

        for key, value in changes.items():
            setattr(obj, key, value)
        obj.updated_at = self._clock()
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise errors.validation_error("code", "Code already used for this planteur")
        db.refresh(obj)
        logger.info("parcelle %s updated: %s", obj.id, ", ".join(sorted(payload.model_fields_set)))
        return obj
