# parcelles/config.py
from __future__ import annotations

from pathlib import Path
from typing import Literal, Tuple

from pydantic_settings import BaseSettings

# Resolve to the project root (one level up from parcelles/)
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    DATABASE_URL: str = f"sqlite:///{(BASE_DIR / 'parcelles.db').as_posix()}"
    UPLOAD_DIR: str = str(BASE_DIR / "data" / "uploads")

    MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024
    MAX_FEATURES_PER_IMPORT: int = 500
    HASH_COORDINATE_PRECISION: int = 8
    DISPLAY_COORDINATE_PRECISION: int = 6
    MAX_EXPORT_ROWS: int = 50_000
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # min_lng, min_lat, max_lng, max_lat
    EXPECTED_BOUNDS: Tuple[float, float, float, float] = (-180.0, -90.0, 180.0, 90.0)

    APPLY_STRATEGY: Literal["best_effort", "all_or_nothing"] = "best_effort"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"


settings = Settings()
