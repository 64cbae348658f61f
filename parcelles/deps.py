# parcelles/deps.py
from typing import Optional

from fastapi import Depends, Header

from parcelles import errors, schemas
from parcelles.config import Settings, settings
from parcelles.db import get_db  # noqa: F401  re-exported for routes and test overrides
from parcelles.import_service import ParcelleImportService
from parcelles.storage import FileStorage, LocalFileStorage


def get_settings() -> Settings:
    return settings


def get_storage(s: Settings = Depends(get_settings)) -> FileStorage:
    return LocalFileStorage(s.UPLOAD_DIR)


def get_import_service(
    storage: FileStorage = Depends(get_storage),
    s: Settings = Depends(get_settings),
) -> ParcelleImportService:
    return ParcelleImportService(storage=storage, settings=s)


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_cooperative_id: Optional[str] = Header(None),
) -> schemas.CurrentUser:
    # identity is established upstream; we only read what the gateway forwards
    if not x_user_id or not x_user_id.strip():
        raise errors.unauthorized()
    return schemas.CurrentUser(
        user_id=x_user_id.strip(),
        cooperative_id=(x_cooperative_id or "").strip() or None,
    )


def get_cooperative_id(user: schemas.CurrentUser = Depends(get_current_user)) -> str:
    if not user.cooperative_id:
        raise errors.validation_error("cooperative_id", "X-Cooperative-Id header is required")
    return user.cooperative_id
