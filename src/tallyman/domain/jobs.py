"""Submission, idempotency and retry of upload jobs."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import PurePath
from typing import TYPE_CHECKING

from tallyman.domain.audit_ledger import AuditLedger
from tallyman.domain.errors import (
    ArtifactMissing,
    InvalidColumnMapping,
    InvalidJobState,
    JobNotFound,
    UnsupportedFileType,
)
from tallyman.domain.ingest_pipeline.payload import IngestRequest, ReconcileRequest
from tallyman.domain.model import (
    LIVE_OR_FINISHED_STATUSES,
    RETRYABLE_STATUSES,
    AuditAction,
    AuditEntityType,
    AuditSource,
    FileType,
    JobStatus,
    UploadJob,
)
from tallyman.domain.ports import EnqueueOptions, JobFilter, PageRequest, QueueName

if TYPE_CHECKING:
    from uuid import UUID

    from tallyman.domain.model import ColumnMapping, RequestOrigin, Snapshot
    from tallyman.domain.ports import (
        ArtifactStore,
        QueueJobStatus,
        QueueTransport,
        ReconciliationUnitOfWork,
        UnitOfWorkFactory,
    )

log = logging.getLogger(__name__)

REQUEUE_PAGE_SIZE = 100

_FILE_TYPES: dict[str, FileType] = {
    ".csv": FileType.CSV,
    ".xlsx": FileType.EXCEL,
    ".xls": FileType.EXCEL,
}


def fingerprint(content: bytes) -> str:
    """SHA-256 hex digest over the full file content."""
    return hashlib.sha256(content).hexdigest()


def file_type_for(file_name: str) -> FileType:
    suffix = PurePath(file_name).suffix.lower()
    try:
        return _FILE_TYPES[suffix]
    except KeyError:
        raise UnsupportedFileType(file_name) from None


def ingestion_handle(job: UploadJob) -> str:
    return f"upload-{job.id}-{job.retry_count}"


def job_snapshot(job: UploadJob) -> Snapshot:
    return {
        "fileName": job.file_name,
        "fileHash": job.fingerprint,
        "status": job.status.value,
        "retryCount": job.retry_count,
        "columnMapping": job.column_mapping.to_dict(),
    }


@dataclass(frozen=True, slots=True)
class Submission:
    job: UploadJob
    existing: bool


@dataclass(frozen=True, slots=True)
class JobStatusView:
    """Persisted job merged with the queue transport's view of it."""

    job: UploadJob
    queue: QueueJobStatus | None

    @property
    def progress(self) -> int:
        if self.queue is not None and self.job.status is JobStatus.PROCESSING:
            return max(self.job.progress_percent, self.queue.progress)
        return self.job.progress_percent


def _require_job(uow: ReconciliationUnitOfWork, job_id: UUID) -> UploadJob:
    job = uow.repositories.jobs.get(job_id)
    if job is None:
        raise JobNotFound(job_id)
    return job


class JobOrchestrator:
    def __init__(
        self,
        *,
        unit_of_work_factory: UnitOfWorkFactory,
        artifacts: ArtifactStore,
        queue: QueueTransport,
        ingestion_options: EnqueueOptions,
        reconciliation_options: EnqueueOptions,
    ) -> None:
        self._uow_factory = unit_of_work_factory
        self._artifacts = artifacts
        self._queue = queue
        self._ingestion_options = ingestion_options
        self._reconciliation_options = reconciliation_options

    def check_existing(self, digest: str, actor_id: str) -> UploadJob | None:
        """Latest completed or in-flight job of ``actor_id`` for the same content."""

        with self._uow_factory() as uow:
            return uow.repositories.jobs.find_latest(
                fingerprint=digest,
                submitted_by=actor_id,
                statuses=LIVE_OR_FINISHED_STATUSES,
            )

    def submit(
        self,
        content: bytes,
        file_name: str,
        mapping: ColumnMapping,
        actor_id: str,
        *,
        origin: RequestOrigin | None = None,
    ) -> Submission:
        missing = mapping.missing()
        if missing:
            raise InvalidColumnMapping(
                "Missing required column mappings: " + ", ".join(name.value for name in missing)
            )
        file_type = file_type_for(file_name)
        digest = fingerprint(content)

        existing = self.check_existing(digest, actor_id)
        if existing is not None:
            log.info("File %s already processed as job %s", file_name, existing.id)
            return Submission(job=existing, existing=True)

        job = UploadJob(
            file_name=PurePath(file_name).name,
            fingerprint=digest,
            submitted_by=actor_id,
            column_mapping=mapping,
            file_type=file_type,
        )
        job.artifact_key = f"{job.id}{PurePath(file_name).suffix.lower()}"
        job.queue_job_id = ingestion_handle(job)
        self._artifacts.save(job.artifact_key, content)

        with self._uow_factory() as uow:
            uow.repositories.jobs.add(job)
            AuditLedger(uow.repositories.audit_logs).record(
                action=AuditAction.CREATE,
                entity_type=AuditEntityType.UPLOAD_JOB,
                actor_id=actor_id,
                source=AuditSource.API,
                job_id=job.id,
                new_value=job_snapshot(job),
                origin=origin,
            )
            uow.commit()

        self._enqueue_ingestion(job, actor_id)
        log.info("Upload job %s accepted and queued for processing", job.id)
        return Submission(job=job, existing=False)

    def retry(
        self, job_id: UUID, actor_id: str, *, origin: RequestOrigin | None = None
    ) -> UploadJob:
        with self._uow_factory() as uow:
            job = _require_job(uow, job_id)
            if job.status not in RETRYABLE_STATUSES:
                raise InvalidJobState("Only failed or partially failed jobs can be retried")
            if not self._artifacts.exists(job.artifact_key):
                raise ArtifactMissing(
                    f"Original file of job {job_id} no longer exists. Cannot retry."
                )
            before = job_snapshot(job)
            job.reset_for_retry()
            job.queue_job_id = ingestion_handle(job)
            AuditLedger(uow.repositories.audit_logs).record(
                action=AuditAction.UPDATE,
                entity_type=AuditEntityType.UPLOAD_JOB,
                actor_id=actor_id,
                source=AuditSource.API,
                job_id=job.id,
                old_value=before,
                new_value=job_snapshot(job),
                origin=origin,
            )
            uow.commit()

        # the job's submitter stays the actor of the reprocessed rows
        self._enqueue_ingestion(job, job.submitted_by)
        log.info("Upload job %s queued for retry %d", job.id, job.retry_count)
        return job

    def request_reconciliation(self, job_id: UUID, actor_id: str) -> str:
        """Queue a re-classification of the job's current records."""

        with self._uow_factory() as uow:
            job = _require_job(uow, job_id)
            if job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
                raise InvalidJobState(f"Job {job_id} is {job.status} and cannot be reprocessed")
        return self._queue.enqueue(
            QueueName.RECONCILIATION,
            job_id,
            ReconcileRequest(actor_id=actor_id).to_payload(),
            self._reconciliation_options,
        )

    def requeue_unfinished(self) -> int:
        """Enqueue ingestion again for jobs a stopped worker left pending or processing."""

        unfinished: list[UploadJob] = []
        with self._uow_factory() as uow:
            for status in (JobStatus.PENDING, JobStatus.PROCESSING):
                request = PageRequest(size=REQUEUE_PAGE_SIZE)
                while True:
                    page = uow.repositories.jobs.search(JobFilter(status=status), request)
                    unfinished.extend(page.items)
                    if request.page >= page.pages:
                        break
                    request = PageRequest(page=request.page + 1, size=REQUEUE_PAGE_SIZE)
        for job in unfinished:
            self._enqueue_ingestion(job, job.submitted_by)
        if unfinished:
            log.info("Re-enqueued %d unfinished upload jobs", len(unfinished))
        return len(unfinished)

    def status(self, job_id: UUID) -> JobStatusView:
        with self._uow_factory() as uow:
            job = _require_job(uow, job_id)
        queue_status = None
        if job.queue_job_id is not None:
            queue_status = self._queue.get_job(job.queue_job_id)
        return JobStatusView(job=job, queue=queue_status)

    def _enqueue_ingestion(self, job: UploadJob, actor_id: str) -> None:
        request = IngestRequest(
            artifact_key=job.artifact_key,
            mapping=job.column_mapping,
            actor_id=actor_id,
            file_type=job.file_type,
        )
        self._queue.enqueue(
            QueueName.FILE_PROCESSING,
            job.id,
            request.to_payload(),
            self._ingestion_options,
            handle=job.queue_job_id,
        )
