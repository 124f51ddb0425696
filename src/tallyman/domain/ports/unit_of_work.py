"""Transaction boundary shared by the job, record, rule, result and audit stores."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable
    from contextlib import AbstractContextManager
    from types import TracebackType

    from tallyman.domain.ports.persistence import (
        AuditLogRepository,
        MatchingRuleRepository,
        ReconciliationResultRepository,
        RecordRepository,
        UploadJobRepository,
    )


@runtime_checkable
class RepositoryCollection(Protocol):
    """Whatever set of repositories one unit of work hands out."""


@runtime_checkable
class UnitOfWork[TRepositories: RepositoryCollection](Protocol):
    """Writes become durable on ``commit``; leaving the block uncommitted discards them."""

    @property
    def repositories(self) -> TRepositories: ...

    def __enter__(self) -> UnitOfWork[TRepositories]: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> bool: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def flush(self) -> None: ...

    def savepoint(self) -> AbstractContextManager[None]:
        """Nested scope: an exception inside rolls back only the nested writes."""
        ...


@dataclass(slots=True)
class ReconciliationRepositories(RepositoryCollection):
    """Repositories shared by ingestion, reconciliation and the audit trail."""

    jobs: UploadJobRepository
    records: RecordRepository
    rules: MatchingRuleRepository
    results: ReconciliationResultRepository
    audit_logs: AuditLogRepository


type ReconciliationUnitOfWork = UnitOfWork[ReconciliationRepositories]
type UnitOfWorkFactory = Callable[[], ReconciliationUnitOfWork]
