# parcelles/storage.py
from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Protocol

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(filename: str) -> str:
    name = Path(filename or "upload").name
    name = _UNSAFE.sub("_", name).strip("._") or "upload"
    return name[:120]


def storage_path_for(coop_id: str, filename: str, now: datetime) -> str:
    """{cooperative}/{timestamp}_{sanitised filename}"""
    return f"{coop_id}/{now.strftime('%Y%m%dT%H%M%S%f')}_{sanitize_filename(filename)}"


class FileStorage(Protocol):
    def save(self, path: str, content: bytes) -> None:
        ...

    def load(self, path: str) -> bytes:
        ...


class LocalFileStorage(FileStorage):
    def __init__(self, root: str | Path):
        self._root = Path(root)

    def _resolve(self, path: str) -> Path:
        full = (self._root / path).resolve()
        if self._root.resolve() not in full.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return full

    def save(self, path: str, content: bytes) -> None:
        full = self._resolve(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(content)

    def load(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()
