"""Tests for SQLAlchemy repositories."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import update
from sqlalchemy.dialects import sqlite
from sqlalchemy.exc import DBAPIError

from tallyman.adapters.sqlalchemy.mappings import ExactDecimal
from tallyman.domain.errors import AuditLogImmutableError
from tallyman.domain.model import (
    AuditAction,
    AuditEntityType,
    AuditLog,
    AuditSource,
    BatchScope,
    ColumnMapping,
    JobStatus,
    MatchStatus,
    PartialMatchConfig,
    ReconciliationResult,
    RecordField,
    UploadJob,
)
from tallyman.domain.ports import AuditFilter, JobFilter, PageRequest, ResultFilter
from tests.helpers.fakes import make_record, make_rule

if TYPE_CHECKING:
    from collections.abc import Callable

    from tallyman.adapters.sqlalchemy.unit_of_work import SqlAlchemyUnitOfWork
    from tallyman.domain.model import AdditionalValue, Record

type UnitOfWorkFactory = Callable[[], SqlAlchemyUnitOfWork]


def _job(submitted_by: str = "user-1", **overrides: object) -> UploadJob:
    job = UploadJob(
        file_name="batch.csv",
        fingerprint="digest",
        submitted_by=submitted_by,
        column_mapping=ColumnMapping.from_dict({"transactionId": "txn", "amount": "amt"}),
    )
    for name, value in overrides.items():
        setattr(job, name, value)
    return job


def _result(record: Record, status: MatchStatus, *, run: int) -> ReconciliationResult:
    return ReconciliationResult(
        job_id=record.job_id,
        record_id=record.id,
        uploaded_record=record.snapshot(),
        status=status,
        matched_rule="None",
        attempt=record.attempt,
        run=run,
    )


def _audit(job: UploadJob, action: AuditAction, *, minutes: int, actor: str = "user-1") -> AuditLog:
    return AuditLog(
        action=action,
        entity_type=AuditEntityType.UPLOAD_JOB,
        actor_id=actor,
        source=AuditSource.SYSTEM,
        job_id=job.id,
        new_value={"status": str(job.status)},
        timestamp=datetime(2024, 1, 1, tzinfo=UTC) + timedelta(minutes=minutes),
    )


def test_exact_decimal_stores_canonical_text() -> None:
    column_type = ExactDecimal()
    dialect = sqlite.dialect()

    assert column_type.process_bind_param(Decimal("1.500"), dialect) == "1.5"
    assert column_type.process_bind_param(Decimal("1E+2"), dialect) == "100"
    assert column_type.process_bind_param(Decimal("0.00"), dialect) == "0"
    assert column_type.process_result_value("12.34", dialect) == Decimal("12.34")


def test_records_round_trip_with_additional_fields(sqlite_unit_of_work: UnitOfWorkFactory) -> None:
    job = _job()
    record = make_record(scope=job.scope, amount="1000.50")
    extras: dict[str, AdditionalValue] = {
        "branch": "North",
        "fee": Decimal("0.25"),
        "flagged": True,
        "settled": datetime(2024, 2, 1, 12, tzinfo=UTC),
    }
    record.additional_fields = extras

    with sqlite_unit_of_work() as uow:
        uow.repositories.jobs.add(job)
        uow.repositories.records.add(record)
        uow.commit()

    with sqlite_unit_of_work() as uow:
        stored = uow.repositories.records.get(record.id)
        assert stored is not None
        assert stored.amount == Decimal("1000.50")
        assert stored.date == datetime(2024, 1, 15, tzinfo=UTC)
        assert stored.additional_fields == extras
        stored_job = uow.repositories.jobs.get(job.id)
        assert stored_job is not None
        assert stored_job.column_mapping == job.column_mapping


def test_find_matching_stays_within_the_batch_scope(
    sqlite_unit_of_work: UnitOfWorkFactory,
) -> None:
    job, other_job = _job(), _job("user-2")
    first_attempt = make_record("T1", scope=job.scope, amount="100.00", row_number=2)
    same_row = make_record("T1", scope=job.scope, amount="100", row_number=1)
    retried = make_record("T1", scope=BatchScope(job.id, attempt=1))
    elsewhere = make_record("T1", scope=other_job.scope)

    with sqlite_unit_of_work() as uow:
        uow.repositories.jobs.add(job)
        uow.repositories.jobs.add(other_job)
        uow.repositories.records.add_all([first_attempt, same_row, retried, elsewhere])
        uow.commit()

    with sqlite_unit_of_work() as uow:
        records = uow.repositories.records
        found = records.find_matching(
            job.scope, {RecordField.TRANSACTION_ID: "T1", RecordField.AMOUNT: Decimal("100.0")}
        )
        excluded = records.find_matching(
            job.scope, {RecordField.TRANSACTION_ID: "T1"}, exclude_id=same_row.id, limit=5
        )
        other_jobs = records.find_in_other_jobs(job.id, "T1", limit=5)

    assert [record.id for record in found] == [same_row.id, first_attempt.id]
    assert [record.id for record in excluded] == [first_attempt.id]
    assert [record.id for record in other_jobs] == [elsewhere.id]


def test_current_results_follow_the_latest_run(sqlite_unit_of_work: UnitOfWorkFactory) -> None:
    job = _job(reconciliation_run=2, total_records=1)
    record = make_record(scope=job.scope)

    with sqlite_unit_of_work() as uow:
        uow.repositories.jobs.add(job)
        uow.repositories.records.add(record)
        uow.repositories.results.add(_result(record, MatchStatus.NOT_MATCHED, run=1))
        uow.repositories.results.add(_result(record, MatchStatus.MATCHED, run=2))
        uow.commit()

    with sqlite_unit_of_work() as uow:
        results = uow.repositories.results
        current = results.count_by_status(ResultFilter(job_id=job.id))
        every_run = results.count_by_status(ResultFilter(job_id=job.id, current_only=False))
        page = results.search(ResultFilter(job_id=job.id), PageRequest(page=1, size=10))

    assert current == {MatchStatus.MATCHED: 1}
    assert every_run == {MatchStatus.MATCHED: 1, MatchStatus.NOT_MATCHED: 1}
    assert page.total == 1
    assert page.items[0].uploaded_record == record.snapshot()


def test_job_search_and_totals(sqlite_unit_of_work: UnitOfWorkFactory) -> None:
    completed = _job(status=JobStatus.COMPLETED, total_records=3, matched_records=2)
    failed = _job(status=JobStatus.FAILED, total_records=4, failed_records=4)
    other_user = _job("user-2", status=JobStatus.COMPLETED, total_records=9)

    with sqlite_unit_of_work() as uow:
        for job in (completed, failed, other_user):
            uow.repositories.jobs.add(job)
        uow.commit()

    with sqlite_unit_of_work() as uow:
        jobs = uow.repositories.jobs
        totals = jobs.totals_by_status(JobFilter(submitted_by="user-1"))
        page = jobs.search(JobFilter(status=JobStatus.COMPLETED), PageRequest(page=1, size=1))
        latest = jobs.find_latest(
            fingerprint="digest", submitted_by="user-1", statuses=[JobStatus.FAILED]
        )

    assert totals[JobStatus.COMPLETED].jobs == 1
    assert totals[JobStatus.COMPLETED].matched_records == 2
    assert totals[JobStatus.FAILED].failed_records == 4
    assert (page.total, page.pages, len(page.items)) == (2, 2, 1)
    assert latest is not None
    assert latest.id == failed.id


def test_rules_keep_their_configuration(sqlite_unit_of_work: UnitOfWorkFactory) -> None:
    config = PartialMatchConfig(amount_variance_percent=Decimal("1.25"), date_variance_days=1)
    enabled = make_rule("loose", config=config, priority=3)
    disabled = make_rule("off", enabled=False)

    with sqlite_unit_of_work() as uow:
        uow.repositories.rules.add(enabled)
        uow.repositories.rules.add(disabled)
        uow.commit()

    with sqlite_unit_of_work() as uow:
        rules = uow.repositories.rules
        active = rules.list_rules(enabled_only=True)
        by_name = rules.get_by_name("off")

    assert [rule.name for rule in active] == ["loose"]
    assert active[0].config == config
    assert by_name is not None
    assert by_name.enabled is False


def test_audit_search_is_newest_first(sqlite_unit_of_work: UnitOfWorkFactory) -> None:
    job = _job()
    entries = [
        _audit(job, AuditAction.UPLOAD, minutes=0),
        _audit(job, AuditAction.RECONCILE, minutes=1),
        _audit(job, AuditAction.UPDATE, minutes=2, actor="admin"),
    ]

    with sqlite_unit_of_work() as uow:
        uow.repositories.jobs.add(job)
        for entry in entries:
            uow.repositories.audit_logs.add(entry)
        uow.commit()

    with sqlite_unit_of_work() as uow:
        audit_logs = uow.repositories.audit_logs
        timeline = audit_logs.timeline(job_id=job.id)
        by_actor = audit_logs.search(AuditFilter(actor_id="user-1"), PageRequest())

    assert [entry.action for entry in timeline] == [
        AuditAction.UPLOAD,
        AuditAction.RECONCILE,
        AuditAction.UPDATE,
    ]
    assert [entry.action for entry in by_actor.items] == [
        AuditAction.RECONCILE,
        AuditAction.UPLOAD,
    ]


def test_audit_entries_cannot_be_changed_or_removed(
    sqlite_unit_of_work: UnitOfWorkFactory,
) -> None:
    job = _job()
    entry = _audit(job, AuditAction.UPLOAD, minutes=0)
    with sqlite_unit_of_work() as uow:
        uow.repositories.jobs.add(job)
        uow.repositories.audit_logs.add(entry)
        uow.commit()

    with sqlite_unit_of_work() as uow:
        stored = uow.repositories.audit_logs.timeline(job_id=job.id)[0]
        with pytest.raises(AuditLogImmutableError):
            stored.actor_id = "someone-else"
        with pytest.raises(AuditLogImmutableError):
            uow.repositories.audit_logs.remove(stored)
        with pytest.raises(AuditLogImmutableError):
            uow.session.execute(update(AuditLog).values(actor_id="someone-else"))

    with sqlite_unit_of_work() as uow:
        stored = uow.repositories.audit_logs.timeline(job_id=job.id)[0]
        uow.session.delete(stored)
        with pytest.raises(AuditLogImmutableError):
            uow.flush()

    with sqlite_unit_of_work() as uow:
        connection = uow.session.connection()
        with pytest.raises(DBAPIError, match="append-only"):
            connection.exec_driver_sql("DELETE FROM audit_log")

    with sqlite_unit_of_work() as uow:
        assert len(uow.repositories.audit_logs.timeline(job_id=job.id)) == 1
