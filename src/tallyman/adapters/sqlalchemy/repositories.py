"""Repository implementations backed by SQLAlchemy sessions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, select

from tallyman.adapters.sqlalchemy.mappings import (
    audit_log_table,
    matching_rule_table,
    reconciliation_result_table,
    record_table,
    upload_job_table,
)
from tallyman.domain.errors import AuditLogImmutableError
from tallyman.domain.model import (
    AuditLog,
    JobStatus,
    MatchingRule,
    MatchStatus,
    ReconciliationResult,
    Record,
    UploadJob,
)
from tallyman.domain.ports import JobTotals, Page

if TYPE_CHECKING:
    import uuid
    from collections.abc import Collection, Mapping, Sequence
    from datetime import datetime

    from sqlalchemy import ColumnElement, Select
    from sqlalchemy.orm import Session

    from tallyman.domain.model import BatchScope, RecordField
    from tallyman.domain.ports import (
        AuditFilter,
        JobFilter,
        MatchValue,
        PageRequest,
        ResultFilter,
    )


def _paginate[TEntity](
    session: Session, stmt: Select[tuple[TEntity]], request: PageRequest
) -> Page[TEntity]:
    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total = session.execute(count_stmt).scalar_one()
    items = list(session.scalars(stmt.offset(request.offset).limit(request.size)))
    return Page.of(items, total, request)


class SqlAlchemyUploadJobRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, entity: UploadJob) -> None:
        self.session.add(entity)

    def get(self, job_id: uuid.UUID) -> UploadJob | None:
        return self.session.get(UploadJob, job_id)

    def find_latest(
        self, *, fingerprint: str, submitted_by: str, statuses: Collection[JobStatus]
    ) -> UploadJob | None:
        stmt = (
            select(UploadJob)
            .where(upload_job_table.c.fingerprint == fingerprint)
            .where(upload_job_table.c.submitted_by == submitted_by)
            .where(upload_job_table.c.status.in_(list(statuses)))
            .order_by(upload_job_table.c.created_at.desc())
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def search(self, job_filter: JobFilter, page: PageRequest) -> Page[UploadJob]:
        conditions = self._conditions(job_filter)
        if job_filter.status is not None:
            conditions.append(upload_job_table.c.status == job_filter.status)
        stmt = (
            select(UploadJob)
            .where(*conditions)
            .order_by(upload_job_table.c.created_at.desc(), upload_job_table.c.id)
        )
        return _paginate(self.session, stmt, page)

    def totals_by_status(self, job_filter: JobFilter) -> dict[JobStatus, JobTotals]:
        columns = upload_job_table.c
        stmt = (
            select(
                columns.status,
                func.count(),
                func.coalesce(func.sum(columns.total_records), 0),
                func.coalesce(func.sum(columns.processed_records), 0),
                func.coalesce(func.sum(columns.failed_records), 0),
                func.coalesce(func.sum(columns.matched_records), 0),
                func.coalesce(func.sum(columns.partially_matched_records), 0),
                func.coalesce(func.sum(columns.unmatched_records), 0),
                func.coalesce(func.sum(columns.duplicate_records), 0),
            )
            .where(*self._conditions(job_filter))
            .group_by(columns.status)
        )
        totals: dict[JobStatus, JobTotals] = {}
        for status, *sums in self.session.execute(stmt):
            totals[JobStatus(status)] = JobTotals(*(int(value) for value in sums))
        return totals

    @staticmethod
    def _conditions(job_filter: JobFilter) -> list[ColumnElement[bool]]:
        columns = upload_job_table.c
        conditions: list[ColumnElement[bool]] = []
        if job_filter.submitted_by is not None:
            conditions.append(columns.submitted_by == job_filter.submitted_by)
        if job_filter.created_since is not None:
            conditions.append(columns.created_at >= job_filter.created_since)
        if job_filter.created_until is not None:
            conditions.append(columns.created_at <= job_filter.created_until)
        return conditions


class SqlAlchemyRecordRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, entity: Record) -> None:
        self.session.add(entity)

    def add_all(self, records: Sequence[Record]) -> None:
        self.session.add_all(records)

    def get(self, record_id: uuid.UUID) -> Record | None:
        return self.session.get(Record, record_id)

    def find_matching(
        self,
        scope: BatchScope,
        criteria: Mapping[RecordField, MatchValue],
        *,
        exclude_id: uuid.UUID | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        stmt = self._scoped(scope)
        for name, value in criteria.items():
            stmt = stmt.where(record_table.c[name.attribute] == value)
        if exclude_id is not None:
            stmt = stmt.where(record_table.c.id != exclude_id)
        stmt = stmt.order_by(record_table.c.row_number, record_table.c.created_at)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))

    def find_in_other_jobs(
        self, job_id: uuid.UUID, transaction_id: str, *, limit: int = 1
    ) -> list[Record]:
        stmt = (
            select(Record)
            .where(record_table.c.transaction_id == transaction_id)
            .where(record_table.c.job_id != job_id)
            .order_by(record_table.c.created_at)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def list_for_scope(self, scope: BatchScope) -> list[Record]:
        stmt = self._scoped(scope).order_by(record_table.c.row_number)
        return list(self.session.scalars(stmt))

    @staticmethod
    def _scoped(scope: BatchScope) -> Select[tuple[Record]]:
        return (
            select(Record)
            .where(record_table.c.job_id == scope.job_id)
            .where(record_table.c.attempt == scope.attempt)
        )


class SqlAlchemyMatchingRuleRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, entity: MatchingRule) -> None:
        self.session.add(entity)

    def get(self, rule_id: uuid.UUID) -> MatchingRule | None:
        return self.session.get(MatchingRule, rule_id)

    def get_by_name(self, name: str) -> MatchingRule | None:
        stmt = select(MatchingRule).where(matching_rule_table.c.name == name)
        return self.session.scalars(stmt).first()

    def list_rules(self, *, enabled_only: bool = False) -> list[MatchingRule]:
        stmt = select(MatchingRule)
        if enabled_only:
            stmt = stmt.where(matching_rule_table.c.enabled.is_(True))
        stmt = stmt.order_by(
            matching_rule_table.c.priority.desc(), matching_rule_table.c.created_at.desc()
        )
        return list(self.session.scalars(stmt))

    def remove(self, rule: MatchingRule) -> None:
        self.session.delete(rule)

    def latest_update(self) -> datetime | None:
        stmt = select(func.max(matching_rule_table.c.updated_at))
        return self.session.execute(stmt).scalar_one_or_none()


class SqlAlchemyReconciliationResultRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, entity: ReconciliationResult) -> None:
        self.session.add(entity)

    def search(
        self, result_filter: ResultFilter, page: PageRequest
    ) -> Page[ReconciliationResult]:
        stmt = self._filtered(select(ReconciliationResult), result_filter).order_by(
            reconciliation_result_table.c.created_at.desc(), reconciliation_result_table.c.id
        )
        return _paginate(self.session, stmt, page)

    def count_by_status(self, result_filter: ResultFilter) -> dict[MatchStatus, int]:
        columns = reconciliation_result_table.c
        stmt = self._filtered(
            select(columns.status, func.count()).select_from(reconciliation_result_table),
            result_filter,
        ).group_by(columns.status)
        return {MatchStatus(status): int(count) for status, count in self.session.execute(stmt)}

    @staticmethod
    def _filtered[TSelect: Select[Any]](stmt: TSelect, result_filter: ResultFilter) -> TSelect:
        columns = reconciliation_result_table.c
        if result_filter.current_only:
            stmt = stmt.join(
                upload_job_table,
                and_(
                    upload_job_table.c.id == columns.job_id,
                    upload_job_table.c.retry_count == columns.attempt,
                    upload_job_table.c.reconciliation_run == columns.run,
                ),
            )
        if result_filter.job_id is not None:
            stmt = stmt.where(columns.job_id == result_filter.job_id)
        if result_filter.attempt is not None:
            stmt = stmt.where(columns.attempt == result_filter.attempt)
        if result_filter.run is not None:
            stmt = stmt.where(columns.run == result_filter.run)
        if result_filter.status is not None:
            stmt = stmt.where(columns.status == result_filter.status)
        return stmt


class SqlAlchemyAuditLogRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, entity: AuditLog) -> None:
        self.session.add(entity)

    def update(self, entry: AuditLog) -> None:
        raise AuditLogImmutableError(f"Audit log entry {entry.id} cannot be updated")

    def remove(self, entry: AuditLog) -> None:
        raise AuditLogImmutableError(f"Audit log entry {entry.id} cannot be deleted")

    def timeline(
        self, *, record_id: uuid.UUID | None = None, job_id: uuid.UUID | None = None
    ) -> list[AuditLog]:
        columns = audit_log_table.c
        stmt = select(AuditLog)
        if record_id is not None:
            stmt = stmt.where(columns.record_id == record_id)
        if job_id is not None:
            stmt = stmt.where(columns.job_id == job_id)
        stmt = stmt.order_by(columns.timestamp, columns.seq)
        return list(self.session.scalars(stmt))

    def search(self, audit_filter: AuditFilter, page: PageRequest) -> Page[AuditLog]:
        columns = audit_log_table.c
        stmt = select(AuditLog)
        if audit_filter.record_id is not None:
            stmt = stmt.where(columns.record_id == audit_filter.record_id)
        if audit_filter.job_id is not None:
            stmt = stmt.where(columns.job_id == audit_filter.job_id)
        if audit_filter.actions:
            stmt = stmt.where(columns.action.in_(list(audit_filter.actions)))
        if audit_filter.entity_type is not None:
            stmt = stmt.where(columns.entity_type == audit_filter.entity_type)
        if audit_filter.actor_id is not None:
            stmt = stmt.where(columns.actor_id == audit_filter.actor_id)
        if audit_filter.since is not None:
            stmt = stmt.where(columns.timestamp >= audit_filter.since)
        if audit_filter.until is not None:
            stmt = stmt.where(columns.timestamp <= audit_filter.until)
        stmt = stmt.order_by(columns.timestamp.desc(), columns.seq.desc())
        return _paginate(self.session, stmt, page)


if TYPE_CHECKING:
    from tallyman.domain.ports import (
        AuditLogRepository,
        MatchingRuleRepository,
        ReconciliationResultRepository,
        RecordRepository,
        UploadJobRepository,
    )

    def _check_protocols(session: Session) -> None:
        _jobs: UploadJobRepository = SqlAlchemyUploadJobRepository(session)
        _records: RecordRepository = SqlAlchemyRecordRepository(session)
        _rules: MatchingRuleRepository = SqlAlchemyMatchingRuleRepository(session)
        _results: ReconciliationResultRepository = SqlAlchemyReconciliationResultRepository(
            session
        )
        _audit: AuditLogRepository = SqlAlchemyAuditLogRepository(session)
