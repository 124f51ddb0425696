"""Locations of the database and of uploaded files awaiting processing."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final

APP_DIR_NAME: Final[str] = "tallyman"
DEFAULT_DB_FILENAME: Final[str] = "tallyman.db"
UPLOADS_DIR_NAME: Final[str] = "uploads"


def _ensure(directory: Path, *, ensure: bool) -> Path:
    if ensure:
        directory.mkdir(parents=True, exist_ok=True)
    return directory


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Data directory layout.

    Uploads live below the data directory unless ``uploads_dir`` points
    elsewhere, e.g. at a volume shared by several worker hosts.
    """

    data_dir: Path
    database_filename: str = DEFAULT_DB_FILENAME
    uploads_dir: Path | None = None

    @property
    def root(self) -> Path:
        return self.data_dir.expanduser().resolve()

    def database_path(self, *, ensure: bool = True) -> Path:
        return _ensure(self.root, ensure=ensure) / self.database_filename

    def uploads_path(self, *, ensure: bool = True) -> Path:
        uploads = (
            self.uploads_dir.expanduser().resolve()
            if self.uploads_dir is not None
            else self.root / UPLOADS_DIR_NAME
        )
        return _ensure(uploads, ensure=ensure)

    def database_uri(self) -> str:
        return f"sqlite+pysqlite:///{self.database_path()}"


@dataclass(frozen=True, slots=True)
class DatabaseConfig:
    uri: str


def _default_data_dir() -> Path:
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA")
        base_path = Path(base) if base else (Path.home() / "AppData" / "Local")
    else:
        base = os.getenv("XDG_DATA_HOME")
        base_path = Path(base) if base else (Path.home() / ".local" / "share")
    return base_path / APP_DIR_NAME


def get_storage_config() -> StorageConfig:
    data_dir = os.getenv("TALLYMAN_DATA_DIR")
    uploads_dir = os.getenv("TALLYMAN_UPLOADS_DIR")
    return StorageConfig(
        data_dir=Path(data_dir) if data_dir else _default_data_dir(),
        uploads_dir=Path(uploads_dir) if uploads_dir else None,
    )


def get_database_config(*, storage: StorageConfig | None = None) -> DatabaseConfig:
    """``DATABASE_URI`` wins; otherwise a SQLite file in the data directory."""

    env_uri = os.getenv("DATABASE_URI")
    if env_uri:
        return DatabaseConfig(uri=env_uri)
    return DatabaseConfig(uri=(storage or get_storage_config()).database_uri())


def get_database_uri() -> str:
    return get_database_config().uri
