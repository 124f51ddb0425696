"""Ports for persisting domain aggregates."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from tallyman.domain.model import (
    AuditAction,
    AuditEntityType,
    AuditLog,
    JobStatus,
    MatchingRule,
    MatchStatus,
    ReconciliationResult,
    Record,
    UploadJob,
)

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping, Sequence
    from datetime import datetime
    from decimal import Decimal
    from uuid import UUID

    from tallyman.domain.model import BatchScope, RecordField

DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True, slots=True)
class PageRequest:
    page: int = 1
    size: int = DEFAULT_PAGE_SIZE

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if self.size < 1:
            raise ValueError("size must be >= 1")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.size


@dataclass(frozen=True, slots=True)
class Page[T]:
    items: Sequence[T]
    total: int
    page: int
    size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.size) if self.total else 0

    @classmethod
    def of(cls, items: Sequence[T], total: int, request: PageRequest) -> Page[T]:
        return cls(items=items, total=total, page=request.page, size=request.size)


@dataclass(frozen=True, slots=True)
class JobFilter:
    status: JobStatus | None = None
    submitted_by: str | None = None
    created_since: datetime | None = None
    created_until: datetime | None = None


@dataclass(frozen=True, slots=True)
class ResultFilter:
    job_id: UUID | None = None
    attempt: int | None = None
    run: int | None = None
    status: MatchStatus | None = None
    # restrict to the latest attempt and reconciliation run of each job
    current_only: bool = True


@dataclass(frozen=True, slots=True)
class AuditFilter:
    record_id: UUID | None = None
    job_id: UUID | None = None
    actions: Collection[AuditAction] = field(default_factory=tuple)
    entity_type: AuditEntityType | None = None
    actor_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None


@dataclass(frozen=True, slots=True)
class JobTotals:
    """Aggregated counters over a group of upload jobs."""

    jobs: int = 0
    total_records: int = 0
    processed_records: int = 0
    failed_records: int = 0
    matched_records: int = 0
    partially_matched_records: int = 0
    unmatched_records: int = 0
    duplicate_records: int = 0


type MatchValue = str | Decimal | datetime


@runtime_checkable
class Repository[TEntity](Protocol):
    """Minimal repository contract for a persistent aggregate store."""

    def add(self, entity: TEntity) -> None: ...


@runtime_checkable
class UploadJobRepository(Repository[UploadJob], Protocol):
    def get(self, job_id: UUID) -> UploadJob | None: ...

    def find_latest(
        self, *, fingerprint: str, submitted_by: str, statuses: Collection[JobStatus]
    ) -> UploadJob | None:
        """Most recently created job with this fingerprint, actor and status."""
        ...

    def search(self, job_filter: JobFilter, page: PageRequest) -> Page[UploadJob]: ...

    def totals_by_status(self, job_filter: JobFilter) -> dict[JobStatus, JobTotals]:
        """Counters summed per status; ``job_filter.status`` is ignored."""
        ...


@runtime_checkable
class RecordRepository(Repository[Record], Protocol):
    def add_all(self, records: Sequence[Record]) -> None: ...

    def get(self, record_id: UUID) -> Record | None: ...

    def find_matching(
        self,
        scope: BatchScope,
        criteria: Mapping[RecordField, MatchValue],
        *,
        exclude_id: UUID | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        """Records of ``scope`` equal on every criterion, in row order."""
        ...

    def find_in_other_jobs(
        self, job_id: UUID, transaction_id: str, *, limit: int = 1
    ) -> list[Record]: ...

    def list_for_scope(self, scope: BatchScope) -> list[Record]: ...


@runtime_checkable
class MatchingRuleRepository(Repository[MatchingRule], Protocol):
    def get(self, rule_id: UUID) -> MatchingRule | None: ...

    def get_by_name(self, name: str) -> MatchingRule | None: ...

    def list_rules(self, *, enabled_only: bool = False) -> list[MatchingRule]: ...

    def remove(self, rule: MatchingRule) -> None: ...

    def latest_update(self) -> datetime | None: ...


@runtime_checkable
class ReconciliationResultRepository(Repository[ReconciliationResult], Protocol):
    def search(
        self, result_filter: ResultFilter, page: PageRequest
    ) -> Page[ReconciliationResult]: ...

    def count_by_status(self, result_filter: ResultFilter) -> dict[MatchStatus, int]: ...


@runtime_checkable
class AuditLogRepository(Repository[AuditLog], Protocol):
    """Append-only store; ``update`` and ``remove`` always raise."""

    def update(self, entry: AuditLog) -> None: ...

    def remove(self, entry: AuditLog) -> None: ...

    def timeline(
        self, *, record_id: UUID | None = None, job_id: UUID | None = None
    ) -> list[AuditLog]:
        """Matching entries, oldest first."""
        ...

    def search(self, audit_filter: AuditFilter, page: PageRequest) -> Page[AuditLog]:
        """Matching entries, newest first."""
        ...
