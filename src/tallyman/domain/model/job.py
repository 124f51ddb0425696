"""Upload job aggregate and its lifecycle state machine."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from tallyman.domain.errors import InvalidJobState
from tallyman.domain.model.entity import Entity, utcnow
from tallyman.domain.model.enums import FileType, JobStatus, MatchStatus
from tallyman.domain.model.values import BatchScope, ColumnMapping

if TYPE_CHECKING:
    from collections.abc import Mapping

RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.PARTIALLY_FAILED})
# Jobs in these states satisfy an idempotent resubmission.
LIVE_OR_FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.PROCESSING})
SETTLED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.PARTIALLY_FAILED})

_COUNTERS = (
    "processed_records",
    "failed_records",
    "matched_records",
    "partially_matched_records",
    "unmatched_records",
    "duplicate_records",
)


@dataclass(eq=False, kw_only=True)
class UploadJob(Entity):
    """One submitted file and the bookkeeping of its processing attempts."""

    file_name: str
    fingerprint: str
    submitted_by: str
    column_mapping: ColumnMapping
    file_type: FileType = FileType.CSV
    artifact_key: str = ""
    status: JobStatus = JobStatus.PENDING

    total_records: int = 0
    processed_records: int = 0
    failed_records: int = 0
    matched_records: int = 0
    partially_matched_records: int = 0
    unmatched_records: int = 0
    duplicate_records: int = 0

    progress_percent: int = 0
    retry_count: int = 0
    reconciliation_run: int = 0
    error_message: str | None = None
    failure_reason: str | None = None
    queue_job_id: str | None = None
    rules_version: str | None = None

    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "created_at" and name in self.__dict__:
            raise AttributeError("UploadJob.created_at is immutable")
        super().__setattr__(name, value)

    @property
    def scope(self) -> BatchScope:
        """Records written by the current attempt are scoped to this value."""
        return BatchScope(job_id=self.id, attempt=self.retry_count)

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    # lifecycle ---------------------------------------------------------

    def start(self, *, now: datetime | None = None) -> None:
        """Move the job into ``Processing``; ``started_at`` is stamped once."""

        if self.is_settled:
            raise InvalidJobState(f"Job {self.id} is already {self.status}")
        if self.status is JobStatus.FAILED:
            # redelivered by the queue transport after a structural failure
            self.progress_percent = 0
        self.status = JobStatus.PROCESSING
        self.error_message = None
        self.failure_reason = None
        self.failed_at = None
        if self.started_at is None:
            self.started_at = now or utcnow()

    def begin_attempt(self, total: int, *, rules_version: str | None = None) -> None:
        if total < 0:
            raise ValueError("total must be non-negative")
        self.total_records = total
        for name in _COUNTERS:
            setattr(self, name, 0)
        if rules_version is not None:
            self.rules_version = rules_version

    def record_ingested(self, *, processed: int, failed: int) -> None:
        """Account for one ingested batch of rows."""

        self._set_counter("processed_records", self.processed_records + processed)
        self._set_counter("failed_records", self.failed_records + failed)

    def record_progress(self, percent: int) -> int:
        """Raise the progress marker; lower values are ignored within an attempt."""

        bounded = max(0, min(100, int(percent)))
        if bounded > self.progress_percent:
            self.progress_percent = bounded
        return self.progress_percent

    def begin_reconciliation(self) -> int:
        """Number the next reconciliation run over the current attempt."""

        self.reconciliation_run += 1
        return self.reconciliation_run

    def apply_classification_counts(
        self,
        counts: Mapping[MatchStatus, int],
        *,
        row_failures: int = 0,
        reconciliation_errors: int = 0,
    ) -> None:
        self._set_counter("matched_records", counts.get(MatchStatus.MATCHED, 0))
        self._set_counter(
            "partially_matched_records", counts.get(MatchStatus.PARTIALLY_MATCHED, 0)
        )
        self._set_counter("unmatched_records", counts.get(MatchStatus.NOT_MATCHED, 0))
        self._set_counter("duplicate_records", counts.get(MatchStatus.DUPLICATE, 0))
        self._set_counter("failed_records", row_failures + reconciliation_errors)

    def finish(
        self,
        *,
        persisted: int,
        row_failures: int,
        reconciliation_errors: int,
        now: datetime | None = None,
    ) -> JobStatus:
        """Settle the attempt and return the final status."""

        if row_failures == 0 and reconciliation_errors == 0:
            self.status = JobStatus.COMPLETED
            self.error_message = None
        elif persisted > 0:
            self.status = JobStatus.PARTIALLY_FAILED
            self.error_message = (
                f"{row_failures} rows failed to process, "
                f"{reconciliation_errors} reconciliation errors"
            )
        else:
            self.status = JobStatus.FAILED
            self.error_message = "All records failed to process"
        self.completed_at = now or utcnow()
        self.record_progress(100)
        return self.status

    def fail(self, reason: str, detail: str | None = None, *, now: datetime | None = None) -> None:
        self.status = JobStatus.FAILED
        self.failure_reason = reason
        self.error_message = detail or reason
        self.failed_at = now or utcnow()

    def reset_for_retry(self) -> None:
        if self.status not in RETRYABLE_STATUSES:
            raise InvalidJobState(
                f"Only failed or partially failed jobs can be retried; job {self.id} is "
                f"{self.status}"
            )
        self.status = JobStatus.PENDING
        self.retry_count += 1
        self.error_message = None
        self.failure_reason = None
        self.failed_at = None
        self.completed_at = None
        self.progress_percent = 0
        self.total_records = 0
        for name in _COUNTERS:
            setattr(self, name, 0)

    def counts(self) -> Counter[MatchStatus]:
        return Counter(
            {
                MatchStatus.MATCHED: self.matched_records,
                MatchStatus.PARTIALLY_MATCHED: self.partially_matched_records,
                MatchStatus.NOT_MATCHED: self.unmatched_records,
                MatchStatus.DUPLICATE: self.duplicate_records,
            }
        )

    def _set_counter(self, name: str, value: int) -> None:
        if value < 0:
            raise ValueError(f"{name} must be non-negative")
        if value > self.total_records:
            raise ValueError(
                f"{name}={value} exceeds total_records={self.total_records} for job {self.id}"
            )
        setattr(self, name, value)
