import logging
from typing import Optional

from fastapi import Body, Depends, FastAPI, File, Form, Query, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import Response
from sqlalchemy.orm import Session

from parcelles import crud, errors, exporter, schemas
from parcelles.config import Settings, settings
from parcelles.db import Base, engine, get_db
from parcelles.deps import get_cooperative_id, get_current_user, get_import_service, get_settings
from parcelles.errors import ParcelleError
from parcelles.import_service import ParcelleImportService

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Parcelles import API")
app.add_exception_handler(ParcelleError, errors.parcelle_error_handler)
app.add_exception_handler(RequestValidationError, errors.request_validation_handler)

# Create tables at startup
@app.on_event("startup")
def _init_db():
    Base.metadata.create_all(bind=engine)


# ---------- import workflow ----------

@app.post("/parcelles/import/upload", response_model=schemas.ImportFileOut, status_code=201)
async def upload_import(
    file: UploadFile = File(...),
    planteur_id: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    user: schemas.CurrentUser = Depends(get_current_user),
    svc: ParcelleImportService = Depends(get_import_service),
):
    content = await file.read()
    return svc.upload(db, user, filename=file.filename or "", content=content, planteur_id=planteur_id)

@app.get("/parcelles/import/{import_id}", response_model=schemas.ImportFileOut)
def get_import(
    import_id: str,
    db: Session = Depends(get_db),
    coop_id: str = Depends(get_cooperative_id),
):
    obj = crud.get_import_file(db, import_id, coop_id)
    if not obj:
        raise errors.not_found("Import file", import_id)
    return obj

@app.post("/parcelles/import/{import_id}/parse", response_model=schemas.ParseResult)
def parse_import(
    import_id: str,
    db: Session = Depends(get_db),
    user: schemas.CurrentUser = Depends(get_current_user),
    svc: ParcelleImportService = Depends(get_import_service),
):
    return svc.parse(db, user, import_id)

@app.post("/parcelles/import/{import_id}/preview-auto-create", response_model=schemas.AutoCreatePreview)
def preview_import(
    import_id: str,
    mode: schemas.ImportMode = Body(...),
    db: Session = Depends(get_db),
    user: schemas.CurrentUser = Depends(get_current_user),
    svc: ParcelleImportService = Depends(get_import_service),
):
    return svc.preview(db, user, import_id, mode)

@app.post("/parcelles/import/{import_id}/apply", response_model=schemas.ApplyImportResult)
def apply_import(
    import_id: str,
    request: schemas.ApplyImportRequest,
    db: Session = Depends(get_db),
    user: schemas.CurrentUser = Depends(get_current_user),
    svc: ParcelleImportService = Depends(get_import_service),
):
    return svc.apply(db, user, import_id, request)


# ---------- parcelles ----------

@app.get("/parcelles", response_model=schemas.ParcelleList)
def list_parcelles(
    filters: schemas.ParcelleFilters = Depends(),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    coop_id: str = Depends(get_cooperative_id),
    s: Settings = Depends(get_settings),
):
    size = min(page_size or s.DEFAULT_PAGE_SIZE, s.MAX_PAGE_SIZE)
    items, total = crud.list_parcelles(db, coop_id, filters, page=page, page_size=size)
    return schemas.ParcelleList(
        items=[schemas.ParcelleOut.model_validate(p) for p in items],
        total=total,
        page=page,
        page_size=size,
    )

@app.post("/parcelles", response_model=schemas.ParcelleOut, status_code=201)
def create_parcelle(
    payload: schemas.ParcelleCreate,
    db: Session = Depends(get_db),
    user: schemas.CurrentUser = Depends(get_current_user),
    svc: ParcelleImportService = Depends(get_import_service),
):
    return svc.create_manual(db, user, payload)

@app.post("/parcelles/assign", response_model=schemas.AssignParcellesResult)
def assign_parcelles(
    request: schemas.AssignParcellesRequest,
    db: Session = Depends(get_db),
    user: schemas.CurrentUser = Depends(get_current_user),
    svc: ParcelleImportService = Depends(get_import_service),
):
    return svc.assign_orphans(db, user, request)

@app.post("/parcelles/assign-new-planteur", response_model=schemas.AssignParcellesResult, status_code=201)
def assign_parcelles_to_new_planteur(
    request: schemas.AssignNewPlanteurRequest,
    db: Session = Depends(get_db),
    user: schemas.CurrentUser = Depends(get_current_user),
    svc: ParcelleImportService = Depends(get_import_service),
):
    return svc.assign_to_new_planteur(db, user, request)

@app.get("/parcelles/export")
def export_parcelles(
    format: str = Query("csv"),
    filters: schemas.ParcelleFilters = Depends(),
    db: Session = Depends(get_db),
    coop_id: str = Depends(get_cooperative_id),
    s: Settings = Depends(get_settings),
):
    fmt = format.lower()
    content, media_type = exporter.export_parcelles(db, coop_id, filters, fmt, s)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="parcelles.{fmt}"'},
    )

@app.get("/parcelles/{parcelle_id}", response_model=schemas.ParcelleOut)
def get_parcelle(
    parcelle_id: str,
    db: Session = Depends(get_db),
    coop_id: str = Depends(get_cooperative_id),
):
    obj = crud.get_parcelle(db, parcelle_id, coop_id)
    if not obj:
        raise errors.not_found("Parcelle", parcelle_id)
    return obj

@app.patch("/parcelles/{parcelle_id}", response_model=schemas.ParcelleOut)
def update_parcelle(
    parcelle_id: str,
    payload: schemas.ParcelleUpdate,
    db: Session = Depends(get_db),
    user: schemas.CurrentUser = Depends(get_current_user),
    svc: ParcelleImportService = Depends(get_import_service),
):
    return svc.update_parcelle(db, user, parcelle_id, payload)

@app.delete("/parcelles/{parcelle_id}", response_model=schemas.ParcelleOut)
def delete_parcelle(
    parcelle_id: str,
    db: Session = Depends(get_db),
    coop_id: str = Depends(get_cooperative_id),
):
    obj = crud.get_parcelle(db, parcelle_id, coop_id)
    if not obj or not obj.is_active:
        raise errors.not_found("Parcelle", parcelle_id)
    return crud.soft_delete_parcelle(db, obj)
