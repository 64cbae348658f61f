# parcelles/crud.py
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy import String, cast, func, or_, select, update
from sqlalchemy.orm import Query, Session

from parcelles import models, schemas
from parcelles.enums import ImportStatus

PARCELLE_CODE_FORMAT = "PARC-{:04d}"

# ---------- tiny, single-purpose helpers ----------

def _visible_to(coop_id: str):
    """Parcelles belong to a cooperative through their planteur, orphans through their import file."""
    return or_(models.Planteur.cooperative_id == coop_id, models.ImportFile.cooperative_id == coop_id)

def _parcelles_in(db: Session, coop_id: str) -> Query:
    return (
        db.query(models.Parcelle)
        .outerjoin(models.Planteur, models.Parcelle.planteur_id == models.Planteur.id)
        .outerjoin(models.ImportFile, models.Parcelle.import_file_id == models.ImportFile.id)
        .filter(_visible_to(coop_id))
    )

def _apply_filters(q: Query, f: schemas.ParcelleFilters) -> Query:
    q = q.filter(models.Parcelle.is_active.is_(f.is_active))
    if f.planteur_id:
        q = q.filter(models.Parcelle.planteur_id == f.planteur_id)
    if f.orphan is not None:
        col = models.Parcelle.planteur_id
        q = q.filter(col.is_(None) if f.orphan else col.isnot(None))
    if f.conformity_status:
        q = q.filter(models.Parcelle.conformity_status == f.conformity_status.value)
    if f.certification:
        # JSON list stored as text on SQLite, json on PostgreSQL
        q = q.filter(cast(models.Parcelle.certifications, String).like(f'%"{f.certification.value}"%'))
    if f.village:
        q = q.filter(func.lower(models.Parcelle.village) == f.village.strip().lower())
    if f.source:
        q = q.filter(models.Parcelle.source == f.source.value)
    if f.import_file_id:
        q = q.filter(models.Parcelle.import_file_id == f.import_file_id)
    return q

# ---------- import files ----------

def get_import_file(db: Session, import_id: str, coop_id: str) -> Optional[models.ImportFile]:
    obj = db.get(models.ImportFile, import_id)
    if obj is None or obj.cooperative_id != coop_id:
        return None
    return obj

def find_import_by_hash(db: Session, coop_id: str, file_hash: str) -> Optional[models.ImportFile]:
    return (
        db.query(models.ImportFile)
        .filter(
            models.ImportFile.cooperative_id == coop_id,
            models.ImportFile.file_hash == file_hash,
            models.ImportFile.import_status != ImportStatus.FAILED.value,
        )
        .order_by(models.ImportFile.created_at)
        .first()
    )

def create_import_file(db: Session, **fields) -> models.ImportFile:
    obj = models.ImportFile(import_status=ImportStatus.UPLOADED.value, **fields)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def mark_parsed(db: Session, obj: models.ImportFile, report: dict, nb_features: int) -> None:
    obj.import_status = ImportStatus.PARSED.value
    obj.parse_report = report
    obj.nb_features = nb_features
    obj.failed_reason = None
    db.commit()

def mark_failed(db: Session, obj: models.ImportFile, reason: str, report: Optional[dict] = None) -> None:
    obj.import_status = ImportStatus.FAILED.value
    obj.failed_reason = reason
    if report is not None:
        obj.parse_report = report
    db.commit()

def claim_for_apply(db: Session, import_id: str, user_id: str, now: datetime) -> bool:
    """
    parsed -> applied as one conditional UPDATE; False when another caller
    (or an earlier apply) got there first. Does not commit.
    """
    res = db.execute(
        update(models.ImportFile)
        .where(
            models.ImportFile.id == import_id,
            models.ImportFile.import_status == ImportStatus.PARSED.value,
        )
        .values(import_status=ImportStatus.APPLIED.value, applied_by=user_id, applied_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1

def record_apply_counts(db: Session, import_id: str, *, nb_applied: int, nb_skipped: int, nb_failed: int) -> None:
    db.execute(
        update(models.ImportFile)
        .where(models.ImportFile.id == import_id)
        .values(nb_applied=nb_applied, nb_skipped_duplicates=nb_skipped, nb_failed=nb_failed)
        .execution_options(synchronize_session=False)
    )

# ---------- planteurs ----------

def get_planteur(db: Session, planteur_id: str, coop_id: str) -> Optional[models.Planteur]:
    obj = db.get(models.Planteur, planteur_id)
    if obj is None or obj.cooperative_id != coop_id or not obj.is_active:
        return None
    return obj

class PlanteurDirectory:
    """Active planteurs of one cooperative, as the resolver sees them."""

    def __init__(self, db: Session, coop_id: str):
        self._db = db
        self._coop_id = coop_id

    def by_id(self, planteur_id: str) -> Optional[Tuple[str, str]]:
        p = get_planteur(self._db, planteur_id, self._coop_id)
        return (p.id, p.name) if p else None

    def by_names(self, names_norm: Iterable[str]) -> Dict[str, Tuple[str, str]]:
        names_norm = list(names_norm)
        if not names_norm:
            return {}
        rows = (
            self._db.query(models.Planteur)
            .filter(
                models.Planteur.cooperative_id == self._coop_id,
                models.Planteur.is_active.is_(True),
                models.Planteur.name_norm.in_(names_norm),
            )
            .order_by(models.Planteur.created_at)
            .all()
        )
        out: Dict[str, Tuple[str, str]] = {}
        for p in rows:
            out.setdefault(p.name_norm, (p.id, p.name))
        return out

def create_planteur(
    db: Session,
    *,
    coop_id: str,
    name: str,
    name_norm: str,
    created_by: str,
    chef_planteur_id: Optional[str] = None,
    import_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.Planteur:
    """Flushes, never commits: the caller owns the transaction."""
    obj = models.Planteur(
        cooperative_id=coop_id,
        name=name,
        name_norm=name_norm,
        chef_planteur_id=chef_planteur_id,
        auto_created=import_id is not None,
        created_via_import_id=import_id,
        created_by=created_by,
    )
    if now is not None:
        obj.created_at = now
    db.add(obj)
    db.flush()
    obj.code = f"PLT-{obj.id[:8].upper()}"
    db.flush()
    return obj

# ---------- parcelles ----------

def existing_hashes(db: Session, coop_id: str, hashes: Iterable[str]) -> Dict[str, str]:
    """feature_hash -> id of the oldest active parcelle visible to the cooperative."""
    hashes = list(hashes)
    if not hashes:
        return {}
    rows = (
        _parcelles_in(db, coop_id)
        .filter(models.Parcelle.is_active.is_(True), models.Parcelle.feature_hash.in_(hashes))
        .order_by(models.Parcelle.created_at)
        .with_entities(models.Parcelle.feature_hash, models.Parcelle.id)
        .all()
    )
    out: Dict[str, str] = {}
    for h, pid in rows:
        out.setdefault(h, pid)
    return out

def parcelle_codes(db: Session, planteur_id: str) -> set:
    rows = db.execute(select(models.Parcelle.code).where(models.Parcelle.planteur_id == planteur_id)).all()
    return {code for (code,) in rows if code}

def next_parcelle_code(taken: set) -> str:
    """PARC-0001 style, continuing after the planteur's existing parcelles; adds the code to `taken`."""
    n = len(taken) + 1
    while PARCELLE_CODE_FORMAT.format(n) in taken:
        n += 1
    code = PARCELLE_CODE_FORMAT.format(n)
    taken.add(code)
    return code

def insert_parcelle(db: Session, **fields) -> models.Parcelle:
    """Flushes, never commits: the caller owns the transaction."""
    obj = models.Parcelle(**fields)
    db.add(obj)
    db.flush()
    return obj

def get_parcelle(db: Session, parcelle_id: str, coop_id: str) -> Optional[models.Parcelle]:
    return _parcelles_in(db, coop_id).filter(models.Parcelle.id == parcelle_id).first()

def soft_delete_parcelle(db: Session, obj: models.Parcelle) -> models.Parcelle:
    obj.is_active = False
    db.commit()
    db.refresh(obj)
    return obj

def query_parcelles(db: Session, coop_id: str, filters: schemas.ParcelleFilters) -> Query:
    return _apply_filters(_parcelles_in(db, coop_id), filters)

# ---------- thin orchestrator ----------

def list_parcelles(
    db: Session,
    coop_id: str,
    filters: schemas.ParcelleFilters,
    *,
    page: int,
    page_size: int,
) -> tuple[list[models.Parcelle], int]:
    q = query_parcelles(db, coop_id, filters)
    total = q.count()
    items = (
        q.order_by(models.Parcelle.created_at.desc(), models.Parcelle.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return items, total
