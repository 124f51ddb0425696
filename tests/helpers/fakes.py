"""In-memory fakes of the persistence and decoding ports."""

from __future__ import annotations

from collections import Counter, defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Literal

from tallyman.domain.errors import AuditLogImmutableError
from tallyman.domain.model import (
    ExactMatchConfig,
    FileType,
    MatchingRule,
    Record,
    RecordField,
    utcnow,
)
from tallyman.domain.ports import (
    DecodedTable,
    JobTotals,
    Page,
    ReconciliationRepositories,
    TablePreview,
)

if TYPE_CHECKING:
    from collections.abc import Collection, Iterator, Mapping, Sequence
    from pathlib import Path
    from types import TracebackType
    from uuid import UUID

    from tallyman.domain.model import (
        AuditLog,
        BatchScope,
        JobStatus,
        MatchStatus,
        ReconciliationResult,
        RuleConfig,
        UploadJob,
    )
    from tallyman.domain.ports import (
        AuditFilter,
        EnqueueOptions,
        JobFilter,
        MatchValue,
        PageRequest,
        QueueName,
        QueuePayload,
        ResultFilter,
        Row,
    )


def make_record(
    transaction_id: str = "TXN-1",
    *,
    scope: BatchScope,
    amount: Decimal | str = "100.00",
    reference_number: str = "REF-1",
    date: datetime | None = None,
    row_number: int = 0,
) -> Record:
    return Record(
        job_id=scope.job_id,
        attempt=scope.attempt,
        row_number=row_number,
        transaction_id=transaction_id,
        amount=Decimal(amount),
        reference_number=reference_number,
        date=date or datetime(2024, 1, 15, tzinfo=UTC),
    )


def make_rule(
    name: str = "Exact",
    *,
    config: RuleConfig | None = None,
    priority: int = 0,
    enabled: bool = True,
    created_at: datetime | None = None,
) -> MatchingRule:
    return MatchingRule(
        name=name,
        config=config or ExactMatchConfig(),
        priority=priority,
        enabled=enabled,
        created_at=created_at or utcnow(),
    )


def _page[T](items: Sequence[T], request: PageRequest) -> Page[T]:
    window = list(items[request.offset : request.offset + request.size])
    return Page.of(window, len(items), request)


@dataclass
class InMemoryStore:
    jobs: dict[UUID, UploadJob] = field(default_factory=dict)
    records: list[Record] = field(default_factory=list)
    records_by_transaction: dict[str, list[Record]] = field(
        default_factory=lambda: defaultdict(list)
    )
    rules: dict[UUID, MatchingRule] = field(default_factory=dict)
    results: list[ReconciliationResult] = field(default_factory=list)
    audit_logs: list[AuditLog] = field(default_factory=list)


class FakeUploadJobRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def add(self, entity: UploadJob) -> None:
        self._store.jobs[entity.id] = entity

    def get(self, job_id: UUID) -> UploadJob | None:
        return self._store.jobs.get(job_id)

    def find_latest(
        self, *, fingerprint: str, submitted_by: str, statuses: Collection[JobStatus]
    ) -> UploadJob | None:
        candidates = [
            job
            for job in self._store.jobs.values()
            if job.fingerprint == fingerprint
            and job.submitted_by == submitted_by
            and job.status in statuses
        ]
        return max(candidates, key=lambda job: job.created_at, default=None)

    def search(self, job_filter: JobFilter, page: PageRequest) -> Page[UploadJob]:
        jobs = [
            job
            for job in self._filtered(job_filter)
            if job_filter.status is None or job.status is job_filter.status
        ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return _page(jobs, page)

    def totals_by_status(self, job_filter: JobFilter) -> dict[JobStatus, JobTotals]:
        grouped: dict[JobStatus, list[UploadJob]] = defaultdict(list)
        for job in self._filtered(job_filter):
            grouped[job.status].append(job)
        return {
            status: JobTotals(
                jobs=len(jobs),
                total_records=sum(job.total_records for job in jobs),
                processed_records=sum(job.processed_records for job in jobs),
                failed_records=sum(job.failed_records for job in jobs),
                matched_records=sum(job.matched_records for job in jobs),
                partially_matched_records=sum(job.partially_matched_records for job in jobs),
                unmatched_records=sum(job.unmatched_records for job in jobs),
                duplicate_records=sum(job.duplicate_records for job in jobs),
            )
            for status, jobs in grouped.items()
        }

    def _filtered(self, job_filter: JobFilter) -> list[UploadJob]:
        return [
            job
            for job in self._store.jobs.values()
            if (job_filter.submitted_by is None or job.submitted_by == job_filter.submitted_by)
            and (job_filter.created_since is None or job.created_at >= job_filter.created_since)
            and (job_filter.created_until is None or job.created_at <= job_filter.created_until)
        ]


class FakeRecordRepository:
    def __init__(self, store: InMemoryStore, *, fail_on: set[str] | None = None) -> None:
        self._store = store
        self.fail_on = fail_on or set()

    def add(self, entity: Record) -> None:
        self._store.records.append(entity)
        self._store.records_by_transaction[entity.transaction_id].append(entity)

    def add_all(self, records: Sequence[Record]) -> None:
        for record in records:
            self.add(record)

    def get(self, record_id: UUID) -> Record | None:
        return next((record for record in self._store.records if record.id == record_id), None)

    def find_matching(
        self,
        scope: BatchScope,
        criteria: Mapping[RecordField, MatchValue],
        *,
        exclude_id: UUID | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        for value in criteria.values():
            if isinstance(value, str) and value in self.fail_on:
                raise RuntimeError(f"lookup failed for {value}")
        pool = self._store.records
        transaction_id = criteria.get(RecordField.TRANSACTION_ID)
        if isinstance(transaction_id, str):
            pool = self._store.records_by_transaction.get(transaction_id, [])
        hits = [
            record
            for record in pool
            if record.scope == scope
            and record.id != exclude_id
            and all(record.value_of(name) == value for name, value in criteria.items())
        ]
        hits.sort(key=lambda record: record.row_number)
        return hits if limit is None else hits[:limit]

    def find_in_other_jobs(
        self, job_id: UUID, transaction_id: str, *, limit: int = 1
    ) -> list[Record]:
        hits = [
            record
            for record in self._store.records_by_transaction.get(transaction_id, [])
            if record.job_id != job_id
        ]
        return hits[:limit]

    def list_for_scope(self, scope: BatchScope) -> list[Record]:
        hits = [record for record in self._store.records if record.scope == scope]
        return sorted(hits, key=lambda record: record.row_number)


class FakeMatchingRuleRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def add(self, entity: MatchingRule) -> None:
        self._store.rules[entity.id] = entity

    def get(self, rule_id: UUID) -> MatchingRule | None:
        return self._store.rules.get(rule_id)

    def get_by_name(self, name: str) -> MatchingRule | None:
        return next((rule for rule in self._store.rules.values() if rule.name == name), None)

    def list_rules(self, *, enabled_only: bool = False) -> list[MatchingRule]:
        return [rule for rule in self._store.rules.values() if rule.enabled or not enabled_only]

    def remove(self, rule: MatchingRule) -> None:
        del self._store.rules[rule.id]

    def latest_update(self) -> datetime | None:
        return max((rule.updated_at for rule in self._store.rules.values()), default=None)


class FakeReconciliationResultRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def add(self, entity: ReconciliationResult) -> None:
        self._store.results.append(entity)

    def search(
        self, result_filter: ResultFilter, page: PageRequest
    ) -> Page[ReconciliationResult]:
        results = self._filtered(result_filter)
        results.sort(key=lambda result: result.created_at, reverse=True)
        return _page(results, page)

    def count_by_status(self, result_filter: ResultFilter) -> dict[MatchStatus, int]:
        return dict(Counter(result.status for result in self._filtered(result_filter)))

    def _filtered(self, result_filter: ResultFilter) -> list[ReconciliationResult]:
        selected: list[ReconciliationResult] = []
        for result in self._store.results:
            if result_filter.current_only:
                job = self._store.jobs.get(result.job_id)
                if job is None or (job.retry_count, job.reconciliation_run) != (
                    result.attempt,
                    result.run,
                ):
                    continue
            if result_filter.job_id is not None and result.job_id != result_filter.job_id:
                continue
            if result_filter.attempt is not None and result.attempt != result_filter.attempt:
                continue
            if result_filter.run is not None and result.run != result_filter.run:
                continue
            if result_filter.status is not None and result.status is not result_filter.status:
                continue
            selected.append(result)
        return selected


class FakeAuditLogRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def add(self, entity: AuditLog) -> None:
        self._store.audit_logs.append(entity)

    def update(self, entry: AuditLog) -> None:
        raise AuditLogImmutableError(f"Audit log {entry.id} cannot be updated")

    def remove(self, entry: AuditLog) -> None:
        raise AuditLogImmutableError(f"Audit log {entry.id} cannot be deleted")

    def timeline(
        self, *, record_id: UUID | None = None, job_id: UUID | None = None
    ) -> list[AuditLog]:
        return [
            entry
            for entry in self._store.audit_logs
            if (record_id is None or entry.record_id == record_id)
            and (job_id is None or entry.job_id == job_id)
        ]

    def search(self, audit_filter: AuditFilter, page: PageRequest) -> Page[AuditLog]:
        entries = [
            entry
            for entry in self._store.audit_logs
            if (audit_filter.record_id is None or entry.record_id == audit_filter.record_id)
            and (audit_filter.job_id is None or entry.job_id == audit_filter.job_id)
            and (not audit_filter.actions or entry.action in audit_filter.actions)
            and (audit_filter.actor_id is None or entry.actor_id == audit_filter.actor_id)
        ]
        return _page(entries[::-1], page)


class FakeUnitOfWork:
    """Writes land in the shared store immediately.

    ``savepoint`` discards the results and audit entries appended inside a
    failing block; a plain ``rollback`` is only counted.
    """

    def __init__(
        self, store: InMemoryStore, *, records: FakeRecordRepository | None = None
    ) -> None:
        self.store = store
        self.commits = 0
        self.rollbacks = 0
        self._repositories = ReconciliationRepositories(
            jobs=FakeUploadJobRepository(store),
            records=records or FakeRecordRepository(store),
            rules=FakeMatchingRuleRepository(store),
            results=FakeReconciliationResultRepository(store),
            audit_logs=FakeAuditLogRepository(store),
        )

    @property
    def repositories(self) -> ReconciliationRepositories:
        return self._repositories

    def __enter__(self) -> FakeUnitOfWork:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> Literal[False]:
        if exc_type is not None:
            self.rollback()
        return False

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def flush(self) -> None:
        return None

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        results_mark = len(self.store.results)
        audit_mark = len(self.store.audit_logs)
        try:
            yield
        except BaseException:
            del self.store.results[results_mark:]
            del self.store.audit_logs[audit_mark:]
            raise


class FakeUnitOfWorkFactory:
    def __init__(self, store: InMemoryStore | None = None) -> None:
        self.store = store or InMemoryStore()
        self.records = FakeRecordRepository(self.store)
        self.created: list[FakeUnitOfWork] = []

    def __call__(self) -> FakeUnitOfWork:
        uow = FakeUnitOfWork(self.store, records=self.records)
        self.created.append(uow)
        return uow


class StaticDecoder:
    """Decoder returning pre-built rows regardless of the file content."""

    def __init__(self, rows: Sequence[Row], columns: tuple[str, ...] = ()) -> None:
        self.rows = list(rows)
        self.columns = columns or (tuple(self.rows[0]) if self.rows else ())
        self.decoded: list[tuple[Path, FileType]] = []

    def decode(self, path: Path, file_type: FileType = FileType.CSV) -> DecodedTable:
        self.decoded.append((path, file_type))
        return DecodedTable(rows=self.rows, columns=self.columns)

    def preview(
        self, path: Path, file_type: FileType = FileType.CSV, limit: int = 20
    ) -> TablePreview:
        _ = (path, file_type)
        return TablePreview(rows=self.rows[:limit], total_rows=len(self.rows), columns=self.columns)


class RecordingQueue:
    """Queue transport that only remembers what was enqueued."""

    def __init__(self) -> None:
        self.enqueued: list[tuple[str, dict[str, object]]] = []
        self._handles: set[str] = set()

    def enqueue(
        self,
        queue: QueueName,
        job_id: UUID,
        payload: QueuePayload,
        options: EnqueueOptions,
        *,
        handle: str | None = None,
    ) -> str:
        _ = (job_id, options)
        resolved = handle or f"{queue.value}-{len(self.enqueued)}"
        if resolved in self._handles:
            return resolved
        self._handles.add(resolved)
        self.enqueued.append((resolved, dict(payload)))
        return resolved

    def get_job(self, handle: str) -> None:
        _ = handle
        return None
