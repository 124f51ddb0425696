"""At-most-once classification of uploaded records by transaction id."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Literal

from tallyman.domain.model import RecordField

if TYPE_CHECKING:
    from tallyman.domain.model import BatchScope, Record
    from tallyman.domain.ports import RecordRepository


class DuplicateKind(StrEnum):
    NOT_DUPLICATE = "not_duplicate"
    WITHIN_BATCH = "within_batch"
    ACROSS_JOBS = "across_jobs"
    WITHIN_JOB = "within_job"


@dataclass(frozen=True, slots=True)
class NotDuplicate:
    kind: Literal[DuplicateKind.NOT_DUPLICATE] = DuplicateKind.NOT_DUPLICATE


@dataclass(frozen=True, slots=True)
class DuplicateWithinBatch:
    kind: Literal[DuplicateKind.WITHIN_BATCH] = DuplicateKind.WITHIN_BATCH
    reason: str = "Duplicate within upload"


@dataclass(frozen=True, slots=True, kw_only=True)
class DuplicateAcrossJobs:
    existing: Record
    kind: Literal[DuplicateKind.ACROSS_JOBS] = DuplicateKind.ACROSS_JOBS
    reason: str = "Duplicate in system"


@dataclass(frozen=True, slots=True, kw_only=True)
class DuplicateWithinJob:
    existing: Record
    kind: Literal[DuplicateKind.WITHIN_JOB] = DuplicateKind.WITHIN_JOB
    reason: str = "Multiple matches found"


type DuplicateVerdict = (
    NotDuplicate | DuplicateWithinBatch | DuplicateAcrossJobs | DuplicateWithinJob
)


class DuplicateDetector:
    """Checks run cheapest first and the first hit wins.

    The seen set belongs to one reconciliation run and must only be used by the
    worker executing that run; records have to be classified in input order.
    """

    def __init__(self, records: RecordRepository) -> None:
        self._records = records
        self._seen: set[str] = set()

    def begin_batch(self) -> None:
        self._seen.clear()

    def classify(self, candidate: Record, scope: BatchScope) -> DuplicateVerdict:
        transaction_id = candidate.transaction_id
        if transaction_id in self._seen:
            return DuplicateWithinBatch()
        self._seen.add(transaction_id)

        elsewhere = self._records.find_in_other_jobs(scope.job_id, transaction_id, limit=1)
        if elsewhere:
            return DuplicateAcrossJobs(existing=elsewhere[0])

        same_job = self._records.find_matching(
            scope, {RecordField.TRANSACTION_ID: transaction_id}, limit=2
        )
        if len(same_job) > 1:
            return DuplicateWithinJob(existing=same_job[0])
        return NotDuplicate()
