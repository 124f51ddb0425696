from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from tallyman.adapters.celery_queue import CeleryQueue
from tallyman.adapters.csv_decoder import CsvTabularDecoder
from tallyman.adapters.rules import RuleDefinition
from tallyman.config import QueueConfig
from tallyman.domain.errors import InvalidJobState
from tallyman.domain.ingest_pipeline import IngestionPipeline, IngestRequest
from tallyman.domain.model import (
    AuditAction,
    AuditEntityType,
    ColumnMapping,
    JobStatus,
    MatchStatus,
    PartialMatchConfig,
    UploadJob,
)
from tallyman.domain.ports import (
    AuditFilter,
    Backoff,
    BackoffKind,
    EnqueueOptions,
    PageRequest,
    QueueJobState,
    QueueName,
    ResultFilter,
)
from tallyman.domain.reconciliation import ReconciliationEngine, RuleCache

if TYPE_CHECKING:
    from collections.abc import Callable

    from tallyman.adapters.artifacts import LocalArtifactStore
    from tallyman.adapters.sqlalchemy.unit_of_work import SqlAlchemyUnitOfWork
    from tallyman.app import TallymanApp

MAPPING = {
    "transactionId": "Txn",
    "amount": "Amount",
    "referenceNumber": "Ref",
    "date": "Date",
}
HEADER = "Txn,Amount,Ref,Date,Branch"

MIXED_BATCH = "\n".join(
    [
        HEADER,
        "T1,100.00,R1,2024-01-01,North",
        "T2,200.00,S1,2024-01-02,North",
        "T3,201.00,S1,2024-01-02,South",
        "T4,50.00,R4,2024-01-03,South",
        "T5,abc,R5,2024-01-03,South",
    ]
).encode()

CLEAN_BATCH = "\n".join(
    [HEADER, "A1,10.00,X1,2024-02-01,North", "A2,10.00,X2,2024-02-01,North"]
).encode()


@pytest.fixture
def seeded_app(app: TallymanApp) -> TallymanApp:
    app.seed_default_rules(actor_id="admin")
    return app


def test_mixed_batch_is_partially_failed(seeded_app: TallymanApp) -> None:
    submission = seeded_app.submit_upload(MIXED_BATCH, "batch.csv", MAPPING, "alice")

    view = seeded_app.get_job_status(submission.job.id)
    job = view.job
    assert job.status is JobStatus.PARTIALLY_FAILED
    assert (job.total_records, job.processed_records, job.failed_records) == (5, 5, 1)
    assert (job.partially_matched_records, job.unmatched_records) == (2, 2)
    assert view.progress == 100
    assert seeded_app.artifacts.exists(job.artifact_key)

    summary = seeded_app.reconciliation_summary(ResultFilter(job_id=job.id))
    assert (summary.total, summary.partially_matched, summary.unmatched) == (4, 2, 2)
    assert summary.accuracy == Decimal("50.00")

    partial = seeded_app.list_results(
        ResultFilter(job_id=job.id, status=MatchStatus.PARTIALLY_MATCHED), PageRequest()
    )
    assert {result.matched_rule for result in partial.items} == {
        "Partial Match - 2% Amount Variance"
    }


def test_clean_batch_completes_and_resubmission_is_idempotent(seeded_app: TallymanApp) -> None:
    first = seeded_app.submit_upload(CLEAN_BATCH, "clean.csv", MAPPING, "alice")

    again = seeded_app.submit_upload(CLEAN_BATCH, "clean-copy.csv", MAPPING, "alice")
    other_actor = seeded_app.submit_upload(CLEAN_BATCH, "clean.csv", MAPPING, "bob")

    job = seeded_app.get_job_status(first.job.id).job
    assert job.status is JobStatus.COMPLETED
    assert not seeded_app.artifacts.exists(job.artifact_key)
    assert again.existing
    assert again.job.id == first.job.id
    assert not other_actor.existing


def test_retry_reprocesses_the_stored_artifact(seeded_app: TallymanApp) -> None:
    submission = seeded_app.submit_upload(MIXED_BATCH, "batch.csv", MAPPING, "alice")

    retried = seeded_app.retry_upload(submission.job.id, "alice")
    assert retried.status is JobStatus.PENDING

    job = seeded_app.get_job_status(submission.job.id).job
    assert job.retry_count == 1
    assert job.status is JobStatus.PARTIALLY_FAILED
    current = seeded_app.reconciliation_summary(ResultFilter(job_id=job.id))
    every_attempt = seeded_app.reconciliation_summary(
        ResultFilter(job_id=job.id, current_only=False)
    )
    assert current.total == 4
    assert current.duplicate == 0
    assert every_attempt.total == 8


def test_reprocessing_applies_the_current_rules(seeded_app: TallymanApp) -> None:
    submission = seeded_app.submit_upload(MIXED_BATCH, "batch.csv", MAPPING, "alice")
    for rule in seeded_app.list_rules(enabled=True):
        if isinstance(rule.config, PartialMatchConfig):
            seeded_app.toggle_rule(rule.id, actor_id="admin")

    seeded_app.reprocess_upload(submission.job.id, "auditor")

    job = seeded_app.get_job_status(submission.job.id).job
    assert job.reconciliation_run == 2
    partial = seeded_app.list_results(
        ResultFilter(job_id=job.id, status=MatchStatus.PARTIALLY_MATCHED), PageRequest()
    )
    assert {result.matched_rule for result in partial.items} == {"Reference Number Match"}


def test_reprocessing_after_disabling_every_rule_leaves_records_unmatched(
    seeded_app: TallymanApp,
) -> None:
    submission = seeded_app.submit_upload(MIXED_BATCH, "batch.csv", MAPPING, "alice")
    for rule in seeded_app.list_rules(enabled=True):
        seeded_app.toggle_rule(rule.id, actor_id="admin")

    seeded_app.reprocess_upload(submission.job.id, "auditor")

    job = seeded_app.get_job_status(submission.job.id).job
    assert job.reconciliation_run == 2
    assert (job.partially_matched_records, job.unmatched_records) == (0, 4)
    summary = seeded_app.reconciliation_summary(ResultFilter(job_id=job.id))
    assert (summary.total, summary.unmatched) == (4, 4)


def test_reprocessing_a_pending_job_is_rejected(brokered_app: TallymanApp) -> None:
    submission = brokered_app.submit_upload(CLEAN_BATCH, "clean.csv", MAPPING, "alice")

    with pytest.raises(InvalidJobState):
        brokered_app.reprocess_upload(submission.job.id, "auditor")


def test_corrections_and_denials_land_in_the_audit_trail(seeded_app: TallymanApp) -> None:
    submission = seeded_app.submit_upload(CLEAN_BATCH, "clean.csv", MAPPING, "alice")
    result = seeded_app.list_results(ResultFilter(job_id=submission.job.id)).items[0]

    corrected = seeded_app.manual_correction(result.record_id, {"amount": "12.50"}, "auditor")
    seeded_app.record_unauthorized_attempt(
        actor_id="mallory",
        entity_type=AuditEntityType.RECORD,
        attempted="delete record",
        record_id=result.record_id,
    )

    assert corrected.amount == Decimal("12.50")
    actions = [entry.action for entry in seeded_app.get_audit_timeline(record_id=result.record_id)]
    assert actions == [
        AuditAction.RECONCILE,
        AuditAction.MANUAL_CORRECTION,
        AuditAction.UNAUTHORIZED_ATTEMPT,
    ]
    job_timeline = seeded_app.get_audit_timeline(job_id=submission.job.id)
    job_actions = [entry.action for entry in job_timeline]
    assert AuditAction.UPLOAD in job_actions
    denied = seeded_app.search_audit_logs(AuditFilter(actor_id="mallory"))
    assert denied.total == 1


def test_import_rules_updates_rules_by_name(app: TallymanApp) -> None:
    definitions = [
        RuleDefinition.model_validate(
            {"ruleName": "Ref", "ruleType": "REFERENCE_MATCH", "priority": 1}
        ),
        RuleDefinition.model_validate({"ruleName": "Exact", "ruleType": "EXACT_MATCH"}),
    ]
    app.import_rules(definitions, actor_id="admin")

    updated = RuleDefinition.model_validate(
        {"ruleName": "Ref", "ruleType": "REFERENCE_MATCH", "priority": 50, "enabled": False}
    )
    app.import_rules([updated], actor_id="admin")

    rules = {rule.name: rule for rule in app.list_rules()}
    assert set(rules) == {"Ref", "Exact"}
    assert rules["Ref"].priority == 50
    assert rules["Ref"].enabled is False
    assert [rule.name for rule in app.list_rules(enabled=True)] == ["Exact"]


def test_worker_resumes_jobs_left_pending(
    brokered_app: TallymanApp, app: TallymanApp
) -> None:
    submission = brokered_app.submit_upload(CLEAN_BATCH, "clean.csv", MAPPING, "alice")
    queued = brokered_app.get_job_status(submission.job.id)
    assert queued.job.status is JobStatus.PENDING
    assert queued.queue is not None
    assert queued.queue.state is QueueJobState.WAITING

    app.run_worker()

    assert app.get_job_status(submission.job.id).job.status is JobStatus.COMPLETED


class LockedDatabase:
    """Unit-of-work factory whose first calls fail the way a held SQLite lock does."""

    def __init__(self, factory: Callable[[], SqlAlchemyUnitOfWork], *, failures: int) -> None:
        self._factory = factory
        self.failures = failures

    def __call__(self) -> SqlAlchemyUnitOfWork:
        if self.failures > 0:
            self.failures -= 1
            raise sqlite3.OperationalError("database is locked")
        return self._factory()


def test_job_that_never_starts_is_failed_once_its_attempts_run_out(
    sqlite_unit_of_work: Callable[[], SqlAlchemyUnitOfWork],
    artifact_store: LocalArtifactStore,
) -> None:
    mapping = ColumnMapping.from_dict(MAPPING)
    job = UploadJob(
        file_name="clean.csv",
        fingerprint="digest",
        submitted_by="alice",
        column_mapping=mapping,
        artifact_key="clean.csv",
    )
    artifact_store.save("clean.csv", CLEAN_BATCH)
    with sqlite_unit_of_work() as uow:
        uow.repositories.jobs.add(job)
        uow.commit()

    locked = LockedDatabase(sqlite_unit_of_work, failures=2)
    pipeline = IngestionPipeline(
        unit_of_work_factory=locked,
        decoder=CsvTabularDecoder(),
        artifacts=artifact_store,
        engine=ReconciliationEngine(RuleCache(lambda: [])),
    )
    queue = CeleryQueue.from_config(QueueConfig())
    queue.register(QueueName.FILE_PROCESSING, pipeline, on_exhausted=pipeline.give_up)
    payload = IngestRequest(artifact_key="clean.csv", mapping=mapping, actor_id="alice")

    handle = queue.enqueue(
        QueueName.FILE_PROCESSING,
        job.id,
        payload.to_payload(),
        EnqueueOptions(attempts=2, backoff=Backoff(BackoffKind.FIXED, 0)),
    )

    assert locked.failures == 0
    with sqlite_unit_of_work() as uow:
        stored = uow.repositories.jobs.get(job.id)
    assert stored is not None
    assert stored.status is JobStatus.FAILED
    assert stored.failed_at is not None
    assert stored.error_message == "OperationalError: database is locked"
    status = queue.get_job(handle)
    assert status is not None
    assert status.state is QueueJobState.FAILED
