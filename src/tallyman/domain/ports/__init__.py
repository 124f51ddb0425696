"""Domain port definitions for adapters."""

from __future__ import annotations

from .artifacts import ArtifactStore
from .decoding import PREVIEW_ROWS, DecodedTable, Row, TablePreview, TabularDecoder
from .persistence import (
    AuditFilter,
    AuditLogRepository,
    JobFilter,
    JobTotals,
    MatchingRuleRepository,
    MatchValue,
    Page,
    PageRequest,
    ReconciliationResultRepository,
    RecordRepository,
    Repository,
    ResultFilter,
    UploadJobRepository,
)
from .queue import (
    Backoff,
    BackoffKind,
    EnqueueOptions,
    ProgressReporter,
    QueueJobState,
    QueueJobStatus,
    QueueName,
    QueuePayload,
    QueueProcessor,
    QueueTransport,
    RetriesExhausted,
)
from .unit_of_work import (
    ReconciliationRepositories,
    ReconciliationUnitOfWork,
    RepositoryCollection,
    UnitOfWork,
    UnitOfWorkFactory,
)

__all__ = [
    "PREVIEW_ROWS",
    "ArtifactStore",
    "AuditFilter",
    "AuditLogRepository",
    "Backoff",
    "BackoffKind",
    "DecodedTable",
    "EnqueueOptions",
    "JobFilter",
    "JobTotals",
    "MatchValue",
    "MatchingRuleRepository",
    "Page",
    "PageRequest",
    "ProgressReporter",
    "QueueJobState",
    "QueueJobStatus",
    "QueueName",
    "QueuePayload",
    "QueueProcessor",
    "QueueTransport",
    "RetriesExhausted",
    "ReconciliationRepositories",
    "ReconciliationResultRepository",
    "ReconciliationUnitOfWork",
    "RecordRepository",
    "Repository",
    "RepositoryCollection",
    "ResultFilter",
    "Row",
    "TablePreview",
    "TabularDecoder",
    "UnitOfWork",
    "UnitOfWorkFactory",
    "UploadJobRepository",
]
