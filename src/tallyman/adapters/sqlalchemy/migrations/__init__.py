"""Alembic migrations bundled with the SQLAlchemy adapter.

In a source checkout the ``[tool.alembic]`` table of ``pyproject.toml``
supplies the Alembic options, so ``alembic upgrade head`` and ``startup()``
agree. An installed wheel carries no ``pyproject.toml`` and runs the
migrations next to this module.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import TYPE_CHECKING, Final

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

from tallyman.config import get_database_uri

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Engine

MIGRATIONS_PATH: Final[Path] = Path(__file__).resolve().parent
PROJECT_ROOT: Final[Path] = MIGRATIONS_PATH.parents[4]
PYPROJECT_PATH: Final[Path] = PROJECT_ROOT / "pyproject.toml"


def _pyproject_options() -> dict[str, str]:
    if not PYPROJECT_PATH.is_file():
        return {}
    with PYPROJECT_PATH.open("rb") as handle:
        document = tomllib.load(handle)
    section = document.get("tool", {}).get("alembic", {})
    return {str(key): str(value) for key, value in section.items()}


def _project_path(value: str) -> Path:
    candidate = Path(value)
    return candidate if candidate.is_absolute() else (PROJECT_ROOT / candidate).resolve()


def build_config(*, database_uri: str | None = None) -> Config:
    options = _pyproject_options()
    config = Config(toml_file=str(PYPROJECT_PATH)) if options else Config()

    script_location = options.pop("script_location", None)
    config.set_main_option(
        "script_location",
        str(_project_path(script_location) if script_location else MIGRATIONS_PATH),
    )
    prepend_sys_path = options.pop("prepend_sys_path", None)
    if prepend_sys_path:
        config.set_main_option("prepend_sys_path", str(_project_path(prepend_sys_path)))
    for key, value in options.items():
        config.set_main_option(key, value)
    if database_uri is not None:
        config.set_main_option("sqlalchemy.url", database_uri)
    return config


def head_revision() -> str | None:
    """Newest revision shipped with the package."""

    return ScriptDirectory.from_config(build_config()).get_current_head()


def current_revision(connection: Connection) -> str | None:
    """Revision the connected database has been migrated to, if any."""

    return MigrationContext.configure(connection).get_current_revision()


def upgrade_head(*, engine: Engine | None = None, database_uri: str | None = None) -> None:
    """Upgrade the database schema to the latest revision."""

    if engine is None:
        command.upgrade(build_config(database_uri=database_uri or get_database_uri()), "head")
        return
    config = build_config()
    with engine.begin() as connection:
        config.attributes["connection"] = connection
        command.upgrade(config, "head")
