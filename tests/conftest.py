from __future__ import annotations

import os
from dataclasses import replace
from typing import TYPE_CHECKING

import pytest

from tallyman.adapters.artifacts import LocalArtifactStore
from tallyman.adapters.sqlalchemy.unit_of_work import (
    SqlAlchemyUnitOfWork,
    create_database_engine,
    shutdown,
    startup,
)
from tallyman.app import build_app
from tallyman.config import QueueConfig, ReconciliationConfig
from tallyman.domain.ports import Backoff, BackoffKind, EnqueueOptions
from tests.helpers.fakes import FakeUnitOfWorkFactory

os.environ.setdefault("DATABASE_URI", "sqlite+pysqlite:///:memory:")

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from sqlalchemy.engine import Engine

    from tallyman.app import TallymanApp


@pytest.fixture
def sqlite_engine(tmp_path: Path) -> Iterator[Engine]:
    # a file database so that every unit of work gets a connection of its own
    engine = create_database_engine(f"sqlite+pysqlite:///{tmp_path / 'tallyman.db'}")
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def sqlite_unit_of_work(sqlite_engine: Engine) -> Iterator[Callable[[], SqlAlchemyUnitOfWork]]:
    startup(engine=sqlite_engine, force=True)

    def factory() -> SqlAlchemyUnitOfWork:
        return SqlAlchemyUnitOfWork()

    try:
        yield factory
    finally:
        shutdown()


@pytest.fixture
def fake_uow() -> FakeUnitOfWorkFactory:
    return FakeUnitOfWorkFactory()


@pytest.fixture
def artifact_store(tmp_path: Path) -> LocalArtifactStore:
    return LocalArtifactStore(tmp_path / "uploads")


@pytest.fixture
def instant_queue_config() -> QueueConfig:
    """Production attempt counts without the backoff delays."""

    return QueueConfig(
        ingestion=EnqueueOptions(
            attempts=3,
            backoff=Backoff(kind=BackoffKind.EXPONENTIAL, delay_seconds=0),
        ),
        reconciliation=EnqueueOptions(
            attempts=2,
            backoff=Backoff(kind=BackoffKind.FIXED, delay_seconds=0),
        ),
        workers=2,
    )


@pytest.fixture
def app(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    artifact_store: LocalArtifactStore,
    instant_queue_config: QueueConfig,
) -> TallymanApp:
    return build_app(
        unit_of_work_factory=sqlite_unit_of_work,
        artifacts=artifact_store,
        reconciliation=ReconciliationConfig(ingest_batch_size=2),
        queue_config=instant_queue_config,
    )


@pytest.fixture
def brokered_queue_config(instant_queue_config: QueueConfig) -> QueueConfig:
    """Jobs go to an in-memory broker and wait there for a worker."""

    return replace(instant_queue_config, broker_url="memory://")


@pytest.fixture
def brokered_app(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    artifact_store: LocalArtifactStore,
    brokered_queue_config: QueueConfig,
) -> TallymanApp:
    return build_app(
        unit_of_work_factory=sqlite_unit_of_work,
        artifacts=artifact_store,
        queue_config=brokered_queue_config,
    )
