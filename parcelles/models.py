# parcelles/models.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, validates

from .db import Base
from .enums import Certification, ConformityStatus, ImportFileType, ImportStatus, ParcelleSource, sql_in_list


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(v):
    # SQLite drops tzinfo on the way back
    return v if v is None or v.tzinfo else v.replace(tzinfo=timezone.utc)


class Planteur(Base):
    __tablename__ = "planteurs"

    id = Column(String(36), primary_key=True, default=_uuid)
    cooperative_id = Column(String(36), nullable=False, index=True)
    name = Column(String, nullable=False)
    name_norm = Column(String, nullable=False, index=True)     # see resolver.normalize_name
    code = Column(String, nullable=True)
    chef_planteur_id = Column(String(36), nullable=True)
    auto_created = Column(Boolean, nullable=False, default=False)
    created_via_import_id = Column(String(36), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(36), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    parcelles = relationship("Parcelle", back_populates="planteur")

    @validates("created_at")
    def _tz(self, _, v):
        return _aware(v)


class ImportFile(Base):
    __tablename__ = "parcel_import_files"
    __table_args__ = (
        CheckConstraint(f"file_type IN {sql_in_list(ImportFileType)}", name="ck_import_file_type"),
        CheckConstraint(f"import_status IN {sql_in_list(ImportStatus)}", name="ck_import_status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    cooperative_id = Column(String(36), nullable=False, index=True)
    planteur_id = Column(String(36), ForeignKey("planteurs.id"), nullable=True)
    filename = Column(String, nullable=False)
    storage_path = Column(String, nullable=False)
    file_type = Column(String, nullable=False)
    file_hash = Column(String(64), nullable=False, index=True)
    import_status = Column(String, nullable=False, default=ImportStatus.UPLOADED.value, index=True)
    parse_report = Column(JSON, nullable=True)
    failed_reason = Column(Text, nullable=True)

    nb_features = Column(Integer, nullable=False, default=0)
    nb_applied = Column(Integer, nullable=False, default=0)
    nb_skipped_duplicates = Column(Integer, nullable=False, default=0)
    nb_failed = Column(Integer, nullable=False, default=0)

    created_by = Column(String(36), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    applied_by = Column(String(36), nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=True)

    @validates("created_at", "applied_at")
    def _tz(self, _, v):
        return _aware(v)


class Parcelle(Base):
    __tablename__ = "parcelles"
    __table_args__ = (
        UniqueConstraint("planteur_id", "code", name="uq_parcelle_planteur_code"),
        CheckConstraint(f"conformity_status IN {sql_in_list(ConformityStatus)}", name="ck_parcelle_conformity"),
        CheckConstraint(f"source IN {sql_in_list(ParcelleSource)}", name="ck_parcelle_source"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    planteur_id = Column(String(36), ForeignKey("planteurs.id"), nullable=True, index=True)
    code = Column(String, nullable=True)
    label = Column(String, nullable=True)
    village = Column(String, nullable=True)

    # GeoJSON MultiPolygon; JSON keeps SQLite and PostgreSQL alike
    geometry = Column(JSON, nullable=False)
    centroid = Column(JSON, nullable=True)                      # {"lat": .., "lng": ..}
    surface_hectares = Column(Float, nullable=False, default=0.0)

    certifications = Column(JSON, nullable=False, default=list)
    conformity_status = Column(String, nullable=False, default=ConformityStatus.INFORMATIONS_MANQUANTES.value)
    risk_flags = Column(JSON, nullable=False, default=dict)

    source = Column(String, nullable=False)
    import_file_id = Column(String(36), ForeignKey("parcel_import_files.id"), nullable=True, index=True)
    feature_hash = Column(String(64), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_by = Column(String(36), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    planteur = relationship("Planteur", back_populates="parcelles")
    import_file = relationship("ImportFile")

    @property
    def is_orphan(self) -> bool:
        return self.planteur_id is None

    @validates("certifications")
    def _known_certifications(self, _, v):
        allowed = {c.value for c in Certification}
        vals = [getattr(c, "value", c) for c in (v or [])]
        unknown = [c for c in vals if c not in allowed]
        if unknown:
            raise ValueError(f"Unknown certifications: {unknown}")
        return vals

    @validates("created_at", "updated_at")
    def _tz(self, _, v):
        return _aware(v)
