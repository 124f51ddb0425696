"""SQLAlchemy-backed units of work for ingestion, reconciliation and the audit trail.

The adapter owns one process-wide engine. ``startup`` binds it, brings the
schema to the Alembic head and makes units of work available; ``shutdown``
disposes it again.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Literal

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from tallyman.adapters.sqlalchemy.mappings import start_mappers
from tallyman.adapters.sqlalchemy.migrations import current_revision, upgrade_head
from tallyman.adapters.sqlalchemy.repositories import (
    SqlAlchemyAuditLogRepository,
    SqlAlchemyMatchingRuleRepository,
    SqlAlchemyReconciliationResultRepository,
    SqlAlchemyRecordRepository,
    SqlAlchemyUploadJobRepository,
)
from tallyman.config import get_database_uri
from tallyman.domain.ports.unit_of_work import ReconciliationRepositories, RepositoryCollection

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import TracebackType

    from sqlalchemy.engine import Connection, Engine

# seconds a writer waits for a competing SQLite transaction
SQLITE_BUSY_TIMEOUT = 30


class StartupError(RuntimeError):
    """The persistence adapter was used in the wrong lifecycle state."""


class _EngineRegistry:
    """Holds the bound engine and lazily builds its session factory."""

    __slots__ = ("_engine", "_sessions")

    def __init__(self) -> None:
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None

    @property
    def engine(self) -> Engine | None:
        return self._engine

    def bind(self, engine: Engine) -> None:
        self._engine = engine
        self._sessions = None

    def release(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._sessions = None

    def require_engine(self) -> Engine:
        if self._engine is None:
            raise StartupError("Database not started; call startup() first")
        return self._engine

    def sessions(self) -> sessionmaker[Session]:
        engine = self.require_engine()
        if self._sessions is None:
            self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        return self._sessions


_REGISTRY = _EngineRegistry()


def _sqlite_connect(dbapi_connection: Any, connection_record: Any) -> None:
    _ = connection_record
    # hand transaction control to SQLAlchemy so SAVEPOINT works with pysqlite
    dbapi_connection.isolation_level = None


def _sqlite_begin(connection: Connection) -> None:
    # take the write lock up front; concurrent writers queue on the busy timeout
    connection.exec_driver_sql("BEGIN IMMEDIATE")


def _enable_sqlite_savepoints(engine: Engine) -> None:
    if engine.dialect.name != "sqlite" or event.contains(engine, "begin", _sqlite_begin):
        return
    event.listen(engine, "connect", _sqlite_connect)
    event.listen(engine, "begin", _sqlite_begin)


def create_database_engine(database_uri: str) -> Engine:
    connect_args: dict[str, Any] = {}
    if database_uri.startswith("sqlite"):
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
    return create_engine(database_uri, connect_args=connect_args)


def startup(
    *,
    engine: Engine | None = None,
    database_uri: str | None = None,
    force: bool = False,
) -> None:
    """Bind the engine, map the domain classes and migrate the schema to head.

    A second call without ``force`` is an error so that two callers cannot
    silently disagree about which database is in use.
    """

    if _REGISTRY.engine is not None and not force:
        raise StartupError("Database already started; pass force=True to switch engines")

    target = engine or create_database_engine(database_uri or get_database_uri())
    start_mappers()
    _enable_sqlite_savepoints(target)
    upgrade_head(engine=target)
    _REGISTRY.bind(target)


def configured_engine() -> Engine | None:
    return _REGISTRY.engine


def is_started() -> bool:
    return _REGISTRY.engine is not None


def schema_revision() -> str | None:
    """Migration revision of the configured database."""

    with _REGISTRY.require_engine().connect() as connection:
        return current_revision(connection)


def shutdown() -> None:
    """Dispose the engine; a later ``startup`` may bind a different one."""

    _REGISTRY.release()


class BaseSqlAlchemyUnitOfWork[TRepositories: RepositoryCollection](ABC):
    """One session per ``with`` block; repositories are rebuilt for each block.

    Leaving the block with an exception rolls back whatever was not committed.
    """

    def __init__(self) -> None:
        self._sessions = _REGISTRY.sessions()
        self._session: Session | None = None
        self._repositories: TRepositories | None = None

    @abstractmethod
    def _build_repositories(self, session: Session) -> TRepositories: ...

    def __enter__(self) -> BaseSqlAlchemyUnitOfWork[TRepositories]:
        if self._session is not None:
            raise StartupError("Unit of work is already open")
        self._session = self._sessions()
        self._repositories = self._build_repositories(self._session)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> Literal[False]:
        session = self.session
        try:
            if exc_type is not None:
                session.rollback()
        finally:
            session.close()
            self._session = None
            self._repositories = None
        return False

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def flush(self) -> None:
        self.session.flush()

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        with self.session.begin_nested():
            yield

    @property
    def repositories(self) -> TRepositories:
        if self._repositories is None:
            raise StartupError("Repositories are only available inside the with block")
        return self._repositories

    @property
    def session(self) -> Session:
        if self._session is None:
            raise StartupError("No open session; use the unit of work as a context manager")
        return self._session


class SqlAlchemyUnitOfWork(BaseSqlAlchemyUnitOfWork[ReconciliationRepositories]):
    """Unit of work spanning jobs, records, rules, results and audit logs."""

    def _build_repositories(self, session: Session) -> ReconciliationRepositories:
        return ReconciliationRepositories(
            jobs=SqlAlchemyUploadJobRepository(session),
            records=SqlAlchemyRecordRepository(session),
            rules=SqlAlchemyMatchingRuleRepository(session),
            results=SqlAlchemyReconciliationResultRepository(session),
            audit_logs=SqlAlchemyAuditLogRepository(session),
        )


if TYPE_CHECKING:
    from tallyman.domain.ports.unit_of_work import ReconciliationUnitOfWork

    _uow_check: ReconciliationUnitOfWork = SqlAlchemyUnitOfWork()
