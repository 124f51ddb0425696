from __future__ import annotations

from datetime import UTC, datetime

import pytest

from tallyman.domain.errors import InvalidJobState
from tallyman.domain.model import ColumnMapping, JobStatus, MatchStatus, UploadJob


def _job(**overrides: object) -> UploadJob:
    defaults: dict[str, object] = {
        "file_name": "batch.csv",
        "fingerprint": "abc",
        "submitted_by": "user-1",
        "column_mapping": ColumnMapping(),
    }
    defaults.update(overrides)
    return UploadJob(**defaults)  # type: ignore[arg-type]


def test_created_at_cannot_be_reassigned() -> None:
    job = _job()

    with pytest.raises(AttributeError):
        job.created_at = datetime(2020, 1, 1, tzinfo=UTC)


def test_start_stamps_started_at_once() -> None:
    job = _job()
    first = datetime(2024, 1, 1, tzinfo=UTC)
    job.start(now=first)
    job.fail("boom")

    job.start(now=datetime(2024, 1, 2, tzinfo=UTC))

    assert job.status is JobStatus.PROCESSING
    assert job.started_at == first
    assert job.failure_reason is None


def test_start_rejects_settled_job() -> None:
    job = _job()
    job.start()
    job.begin_attempt(0)
    job.finish(persisted=0, row_failures=0, reconciliation_errors=0)

    with pytest.raises(InvalidJobState):
        job.start()


def test_progress_never_decreases_within_attempt() -> None:
    job = _job()

    assert job.record_progress(40) == 40
    assert job.record_progress(10) == 40
    assert job.record_progress(250) == 100


def test_counters_are_bounded_by_total() -> None:
    job = _job()
    job.begin_attempt(3)

    with pytest.raises(ValueError, match="exceeds total_records"):
        job.record_ingested(processed=4, failed=0)


@pytest.mark.parametrize(
    ("persisted", "row_failures", "errors", "expected"),
    [
        (3, 0, 0, JobStatus.COMPLETED),
        (0, 0, 0, JobStatus.COMPLETED),
        (2, 1, 0, JobStatus.PARTIALLY_FAILED),
        (3, 0, 1, JobStatus.PARTIALLY_FAILED),
        (0, 3, 0, JobStatus.FAILED),
    ],
)
def test_finish_derives_status(
    persisted: int, row_failures: int, errors: int, expected: JobStatus
) -> None:
    job = _job()
    job.begin_attempt(3)

    status = job.finish(
        persisted=persisted, row_failures=row_failures, reconciliation_errors=errors
    )

    assert status is expected
    assert job.progress_percent == 100
    assert job.completed_at is not None


def test_classification_counts_fold_failures_together() -> None:
    job = _job()
    job.begin_attempt(10)

    job.apply_classification_counts(
        {MatchStatus.MATCHED: 5, MatchStatus.DUPLICATE: 1, MatchStatus.FAILED: 1},
        row_failures=2,
        reconciliation_errors=1,
    )

    assert job.matched_records == 5
    assert job.duplicate_records == 1
    assert job.failed_records == 3


def test_reset_for_retry_bumps_attempt_and_clears_counters() -> None:
    job = _job()
    job.begin_attempt(4)
    job.record_ingested(processed=4, failed=1)
    job.finish(persisted=3, row_failures=1, reconciliation_errors=0)
    original_scope = job.scope

    job.reset_for_retry()

    assert job.status is JobStatus.PENDING
    assert job.retry_count == 1
    assert job.scope != original_scope
    assert (job.total_records, job.processed_records, job.failed_records) == (0, 0, 0)
    assert job.progress_percent == 0


def test_reset_for_retry_rejects_completed_job() -> None:
    job = _job()
    job.begin_attempt(0)
    job.finish(persisted=0, row_failures=0, reconciliation_errors=0)

    with pytest.raises(InvalidJobState):
        job.reset_for_retry()
