# parcelles/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from parcelles.enums import (
    Certification,
    ConformityStatus,
    ImportFileType,
    ImportStatus,
    ParcelleSource,
)


class CurrentUser(BaseModel):
    user_id: str
    cooperative_id: Optional[str] = None


# ---------- parse ----------

class Centroid(BaseModel):
    lat: float
    lng: float


class FeatureValidation(BaseModel):
    ok: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    requires_confirmation: bool = False


class ParsedFeature(BaseModel):
    """Transient: lives between parse and apply, never stored."""

    temp_id: str
    feature_index: int
    label: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    geometry: Dict[str, Any]
    geom_original_valid: bool = True
    geom_fixed: bool = False
    area_ha: float = 0.0
    centroid: Optional[Centroid] = None
    validation: FeatureValidation = Field(default_factory=FeatureValidation)
    feature_hash: str
    is_duplicate: bool = False
    existing_parcelle_id: Optional[str] = None
    duplicate_source: Optional[Literal["existing", "batch"]] = None

    @model_validator(mode="after")
    def _duplicate_has_target(self):
        if self.is_duplicate and not self.existing_parcelle_id:
            raise ValueError("is_duplicate requires existing_parcelle_id")
        return self


class ReportEntry(BaseModel):
    code: str
    message: str
    feature_index: Optional[int] = None
    requires_confirmation: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)


class ParseReport(BaseModel):
    nb_features: int = 0
    nb_valid: int = 0
    nb_invalid: int = 0
    nb_duplicates: int = 0
    errors: List[ReportEntry] = Field(default_factory=list)
    warnings: List[ReportEntry] = Field(default_factory=list)


class ParseResult(BaseModel):
    import_file_id: str
    features: List[ParsedFeature]
    report: ParseReport
    available_fields: List[str]


# ---------- import modes ----------

class AssignMode(BaseModel):
    mode: Literal["assign"] = "assign"
    planteur_id: str


class OrphanMode(BaseModel):
    mode: Literal["orphan"] = "orphan"


class AutoCreateMode(BaseModel):
    mode: Literal["auto_create"] = "auto_create"
    name_field: str = Field(..., min_length=1)
    default_chef_planteur_id: Optional[str] = None


ImportMode = Annotated[Union[AssignMode, OrphanMode, AutoCreateMode], Field(discriminator="mode")]


class FieldMapping(BaseModel):
    label_field: Optional[str] = None
    code_field: Optional[str] = None
    village_field: Optional[str] = None
    conformity_status_field: Optional[str] = None


class ApplyDefaults(BaseModel):
    certifications: List[Certification] = Field(default_factory=list)
    conformity_status: Optional[ConformityStatus] = None
    auto_detect_conformity: bool = False


class ApplyImportRequest(BaseModel):
    mode: ImportMode
    mapping: FieldMapping = Field(default_factory=FieldMapping)
    defaults: ApplyDefaults = Field(default_factory=ApplyDefaults)

    @model_validator(mode="before")
    @classmethod
    def _legacy_planteur_id(cls, data: Any) -> Any:
        # older clients send {planteur_id, mapping, defaults}
        if isinstance(data, dict) and "mode" not in data and data.get("planteur_id"):
            data = dict(data)
            data["mode"] = {"mode": "assign", "planteur_id": str(data.pop("planteur_id"))}
        return data


# ---------- apply / preview results ----------

class ApplyFailure(BaseModel):
    temp_id: str
    feature_index: int
    reason: str


class ApplyImportResult(BaseModel):
    import_file_id: str
    nb_applied: int
    nb_skipped: int
    created_ids: List[str]
    created_planteur_ids: List[str] = Field(default_factory=list)
    failures: List[ApplyFailure] = Field(default_factory=list)


class NewPlanteurPreview(BaseModel):
    name: str
    name_norm: str
    parcelle_count: int


class ExistingPlanteurPreview(BaseModel):
    id: str
    name: str
    parcelle_count: int


class AutoCreatePreview(BaseModel):
    new_planteurs: List[NewPlanteurPreview] = Field(default_factory=list)
    existing_planteurs: List[ExistingPlanteurPreview] = Field(default_factory=list)
    orphan_count: int = 0


# ---------- persisted rows ----------

class ImportFileOut(BaseModel):
    id: str
    cooperative_id: str
    planteur_id: Optional[str] = None
    filename: str
    storage_path: str
    file_type: ImportFileType
    file_hash: str
    import_status: ImportStatus
    parse_report: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    nb_features: int = 0
    nb_applied: int = 0
    nb_skipped_duplicates: int = 0
    nb_failed: int = 0
    created_by: str
    created_at: datetime
    applied_by: Optional[str] = None
    applied_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ParcelleBase(BaseModel):
    planteur_id: Optional[str] = None
    code: Optional[str] = None
    label: Optional[str] = None
    village: Optional[str] = None
    certifications: List[Certification] = Field(default_factory=list)
    conformity_status: ConformityStatus = ConformityStatus.INFORMATIONS_MANQUANTES
    risk_flags: Dict[str, Any] = Field(default_factory=dict)


class ParcelleCreate(ParcelleBase):
    planteur_id: str
    geometry: Dict[str, Any]


class ParcelleUpdate(BaseModel):
    """Partial update: only the fields sent are changed."""

    code: Optional[str] = Field(None, min_length=1, max_length=50)
    label: Optional[str] = Field(None, max_length=200)
    village: Optional[str] = Field(None, max_length=100)
    geometry: Optional[Dict[str, Any]] = None
    certifications: Optional[List[Certification]] = None
    conformity_status: Optional[ConformityStatus] = None
    risk_flags: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _something_to_update(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        return self


class ParcelleOut(ParcelleBase):
    id: str
    geometry: Dict[str, Any]
    centroid: Optional[Centroid] = None
    surface_hectares: float
    source: ParcelleSource
    import_file_id: Optional[str] = None
    feature_hash: Optional[str] = None
    is_active: bool
    is_orphan: bool
    created_by: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ParcelleFilters(BaseModel):
    planteur_id: Optional[str] = None
    orphan: Optional[bool] = None
    conformity_status: Optional[ConformityStatus] = None
    certification: Optional[Certification] = None
    village: Optional[str] = None
    source: Optional[ParcelleSource] = None
    import_file_id: Optional[str] = None
    is_active: bool = True


class ParcelleList(BaseModel):
    items: List[ParcelleOut]
    total: int
    page: int
    page_size: int


# ---------- orphan follow-up ----------

class AssignParcellesRequest(BaseModel):
    parcelle_ids: List[str] = Field(..., min_length=1)
    planteur_id: str


class NewPlanteurIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    chef_planteur_id: Optional[str] = None


class AssignNewPlanteurRequest(BaseModel):
    parcelle_ids: List[str] = Field(..., min_length=1)
    planteur: NewPlanteurIn


class AssignParcellesResult(BaseModel):
    planteur_id: str
    planteur_name: str
    planteur_code: Optional[str] = None
    updated_count: int
    assigned_ids: List[str]
