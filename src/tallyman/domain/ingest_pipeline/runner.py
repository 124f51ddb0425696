"""Queue processors for ingestion and pure-reconciliation jobs."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tallyman.domain.audit_ledger import AuditLedger
from tallyman.domain.errors import ArtifactMissing, InvalidJobState, JobNotFound
from tallyman.domain.model import AuditAction, AuditEntityType, AuditSource, JobStatus
from tallyman.domain.rules import rules_version

from .payload import IngestRequest, ReconcileRequest
from .validation import validate_rows

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from uuid import UUID

    from tallyman.domain.model import MatchingRule, Record, UploadJob
    from tallyman.domain.ports import (
        ArtifactStore,
        ProgressReporter,
        QueuePayload,
        ReconciliationUnitOfWork,
        TabularDecoder,
        UnitOfWorkFactory,
    )
    from tallyman.domain.reconciliation import ReconciliationEngine, RecordError

    from .validation import RowFailure

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000

INGEST_PROGRESS_CEILING = 60
AUDITED_PROGRESS = 65
RECONCILE_PROGRESS_FLOOR = 70
RECONCILE_PROGRESS_CEILING = 90
DONE_PROGRESS = 100


def _yield_to_scheduler() -> None:
    time.sleep(0)


@dataclass(frozen=True, slots=True)
class IngestSummary:
    job_id: UUID
    status: JobStatus
    persisted: int
    row_failures: tuple[RowFailure, ...]
    reconciliation_errors: tuple[RecordError, ...]


def _scaled(done: int, total: int, floor: int, ceiling: int) -> int:
    if total <= 0:
        return ceiling
    return floor + (ceiling - floor) * done // total


def _require_job(uow: ReconciliationUnitOfWork, job_id: UUID) -> UploadJob:
    job = uow.repositories.jobs.get(job_id)
    if job is None:
        raise JobNotFound(job_id)
    return job


class IngestionPipeline:
    """Turns an uploaded file into records and classifications for one job.

    Everything a job writes happens inside one unit of work: validated rows are
    flushed batch by batch, reconciled, and committed together with the final
    job status. Row failures and per-record reconciliation failures are
    tallied; any other error aborts the transaction, marks the job ``Failed``
    in a separate transaction and propagates so the queue can retry.
    """

    def __init__(
        self,
        *,
        unit_of_work_factory: UnitOfWorkFactory,
        decoder: TabularDecoder,
        artifacts: ArtifactStore,
        engine: ReconciliationEngine,
        batch_size: int = DEFAULT_BATCH_SIZE,
        yield_control: Callable[[], None] = _yield_to_scheduler,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._uow_factory = unit_of_work_factory
        self._decoder = decoder
        self._artifacts = artifacts
        self._engine = engine
        self._batch_size = batch_size
        self._yield = yield_control

    def __call__(
        self, job_id: UUID, payload: QueuePayload, report_progress: ProgressReporter
    ) -> None:
        self.process(job_id, payload, report_progress)

    def process(
        self, job_id: UUID, payload: QueuePayload, report_progress: ProgressReporter
    ) -> IngestSummary | None:
        """Run one delivery of an ingestion job; ``None`` if it was already settled."""

        request = IngestRequest.from_payload(payload)
        if not self._mark_processing(job_id):
            return None
        try:
            # loaded before the write transaction opens; a refresh inside it would block
            rules = self._engine.rule_cache.get_active_rules()
            summary = self._ingest(job_id, request, rules, report_progress)
        except Exception as exc:
            log.exception("File processing failed for job %s", job_id)
            self._mark_failed(job_id, exc)
            raise
        report_progress(DONE_PROGRESS)
        if summary.status is JobStatus.COMPLETED:
            self._artifacts.discard(request.artifact_key)
        log.info(
            "Job %s finished as %s: %d persisted, %d row failures, %d reconciliation errors",
            job_id,
            summary.status,
            summary.persisted,
            len(summary.row_failures),
            len(summary.reconciliation_errors),
        )
        return summary

    def _mark_processing(self, job_id: UUID) -> bool:
        with self._uow_factory() as uow:
            job = _require_job(uow, job_id)
            if job.is_settled:
                log.info("Job %s is already %s, skipping redelivery", job_id, job.status)
                return False
            job.start()
            uow.commit()
        return True

    def _mark_failed(self, job_id: UUID, exc: BaseException) -> None:
        with self._uow_factory() as uow:
            job = uow.repositories.jobs.get(job_id)
            if job is None:
                log.warning("Job %s vanished, cannot record failure", job_id)
                return
            job.fail(str(exc) or type(exc).__name__, f"{type(exc).__name__}: {exc}")
            uow.commit()

    def give_up(self, job_id: UUID, payload: QueuePayload, exc: BaseException) -> None:
        """Settle a job whose delivery attempts are all used up.

        Deliveries that failed before the job could be marked ``Processing``
        (e.g. a lock timeout) leave it ``Pending``; it is marked ``Failed`` here.
        """

        _ = payload
        with self._uow_factory() as uow:
            job = uow.repositories.jobs.get(job_id)
            if job is None or job.is_settled or job.status is JobStatus.FAILED:
                return
            log.error("Job %s gave up after its last delivery attempt: %s", job_id, exc)
            job.fail(
                f"Processing attempts exhausted: {str(exc) or type(exc).__name__}",
                f"{type(exc).__name__}: {exc}",
            )
            uow.commit()

    def _ingest(
        self,
        job_id: UUID,
        request: IngestRequest,
        rules: Sequence[MatchingRule],
        report_progress: ProgressReporter,
    ) -> IngestSummary:
        if not self._artifacts.exists(request.artifact_key):
            raise ArtifactMissing(f"Uploaded file for job {job_id} is no longer available")
        table = self._decoder.decode(
            self._artifacts.path_for(request.artifact_key), request.file_type
        )
        rows = table.rows
        total = len(rows)

        with self._uow_factory() as uow:
            repositories = uow.repositories
            job = _require_job(uow, job_id)
            job.begin_attempt(total, rules_version=rules_version(repositories.rules))
            scope = job.scope

            persisted: list[Record] = []
            failures: list[RowFailure] = []
            for start in range(0, total, self._batch_size):
                batch = rows[start : start + self._batch_size]
                valid, batch_failures = validate_rows(
                    batch, request.mapping, first_row_number=start + 1
                )
                records = [row.to_record(scope) for row in valid]
                repositories.records.add_all(records)
                uow.flush()
                persisted.extend(records)
                failures.extend(batch_failures)

                job.record_ingested(processed=len(batch), failed=len(batch_failures))
                report_progress(
                    job.record_progress(
                        _scaled(job.processed_records, total, 0, INGEST_PROGRESS_CEILING)
                    )
                )
                self._yield()
            if total == 0:
                report_progress(job.record_progress(INGEST_PROGRESS_CEILING))

            AuditLedger(repositories.audit_logs).record(
                action=AuditAction.UPLOAD,
                entity_type=AuditEntityType.UPLOAD_JOB,
                actor_id=request.actor_id,
                source=AuditSource.SYSTEM,
                job_id=job.id,
                new_value={
                    "fileName": job.file_name,
                    "totalRecords": job.total_records,
                    "failedRecords": job.failed_records,
                },
            )
            report_progress(job.record_progress(AUDITED_PROGRESS))
            report_progress(job.record_progress(RECONCILE_PROGRESS_FLOOR))

            def on_progress(done: int, count: int) -> None:
                report_progress(
                    job.record_progress(
                        _scaled(done, count, RECONCILE_PROGRESS_FLOOR, RECONCILE_PROGRESS_CEILING)
                    )
                )

            outcome = self._engine.reconcile(
                uow,
                scope,
                persisted,
                request.actor_id,
                on_progress,
                run=job.begin_reconciliation(),
                rules=rules,
            )
            report_progress(job.record_progress(RECONCILE_PROGRESS_CEILING))

            job.apply_classification_counts(
                outcome.counts(),
                row_failures=len(failures),
                reconciliation_errors=len(outcome.errors),
            )
            status = job.finish(
                persisted=len(persisted),
                row_failures=len(failures),
                reconciliation_errors=len(outcome.errors),
            )
            uow.commit()

        return IngestSummary(
            job_id=job_id,
            status=status,
            persisted=len(persisted),
            row_failures=tuple(failures),
            reconciliation_errors=tuple(outcome.errors),
        )


class ReconciliationRunner:
    """Re-classifies the current attempt's records, e.g. after a rule change."""

    def __init__(
        self, *, unit_of_work_factory: UnitOfWorkFactory, engine: ReconciliationEngine
    ) -> None:
        self._uow_factory = unit_of_work_factory
        self._engine = engine

    def __call__(
        self, job_id: UUID, payload: QueuePayload, report_progress: ProgressReporter
    ) -> None:
        self.run(job_id, payload, report_progress)

    def run(
        self, job_id: UUID, payload: QueuePayload, report_progress: ProgressReporter
    ) -> IngestSummary:
        request = ReconcileRequest.from_payload(payload)
        rules = self._engine.rule_cache.get_active_rules()
        with self._uow_factory() as uow:
            repositories = uow.repositories
            job = _require_job(uow, job_id)
            if job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
                raise InvalidJobState(f"Job {job_id} is {job.status} and cannot be reprocessed")
            scope = job.scope
            records = repositories.records.list_for_scope(scope)
            row_failures = max(job.total_records - len(records), 0)
            report_progress(10)

            def on_progress(done: int, count: int) -> None:
                report_progress(_scaled(done, count, 10, RECONCILE_PROGRESS_CEILING))

            outcome = self._engine.reconcile(
                uow,
                scope,
                records,
                request.actor_id,
                on_progress,
                run=job.begin_reconciliation(),
                rules=rules,
            )
            job.rules_version = rules_version(repositories.rules)
            job.apply_classification_counts(
                outcome.counts(),
                row_failures=row_failures,
                reconciliation_errors=len(outcome.errors),
            )
            status = job.finish(
                persisted=len(records),
                row_failures=row_failures,
                reconciliation_errors=len(outcome.errors),
            )
            uow.commit()
        report_progress(DONE_PROGRESS)
        log.info("Reprocessed job %s as %s (%d records)", job_id, status, len(records))
        return IngestSummary(
            job_id=job_id,
            status=status,
            persisted=len(records),
            row_failures=(),
            reconciliation_errors=tuple(outcome.errors),
        )
