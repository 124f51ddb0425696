"""Read models over jobs and reconciliation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from tallyman.domain.model import JobStatus, MatchStatus
from tallyman.domain.ports import JobFilter, JobTotals, PageRequest, ResultFilter

if TYPE_CHECKING:
    from collections.abc import Mapping

    from tallyman.domain.model import ReconciliationResult, UploadJob
    from tallyman.domain.ports import Page, UnitOfWorkFactory

_CENTS = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class ReconciliationSummary:
    total: int = 0
    matched: int = 0
    partially_matched: int = 0
    unmatched: int = 0
    duplicate: int = 0
    failed: int = 0
    accuracy: Decimal = Decimal("0.00")

    @classmethod
    def from_counts(cls, counts: Mapping[MatchStatus, int]) -> ReconciliationSummary:
        matched = counts.get(MatchStatus.MATCHED, 0)
        partially_matched = counts.get(MatchStatus.PARTIALLY_MATCHED, 0)
        total = sum(counts.values())
        accuracy = Decimal("0.00")
        if total:
            accuracy = (Decimal(matched + partially_matched) / total * 100).quantize(
                _CENTS, rounding=ROUND_HALF_UP
            )
        return cls(
            total=total,
            matched=matched,
            partially_matched=partially_matched,
            unmatched=counts.get(MatchStatus.NOT_MATCHED, 0),
            duplicate=counts.get(MatchStatus.DUPLICATE, 0),
            failed=counts.get(MatchStatus.FAILED, 0),
            accuracy=accuracy,
        )


@dataclass(frozen=True, slots=True)
class UploadStatistics:
    by_status: dict[JobStatus, JobTotals] = field(default_factory=dict)

    @property
    def total_uploads(self) -> int:
        return sum(totals.jobs for totals in self.by_status.values())

    @property
    def total_records(self) -> int:
        return sum(totals.total_records for totals in self.by_status.values())

    @property
    def average_records_per_upload(self) -> Decimal:
        if not self.total_uploads:
            return Decimal("0.00")
        return (Decimal(self.total_records) / self.total_uploads).quantize(
            _CENTS, rounding=ROUND_HALF_UP
        )


class ReconciliationQueries:
    def __init__(self, unit_of_work_factory: UnitOfWorkFactory) -> None:
        self._uow_factory = unit_of_work_factory

    def list_jobs(
        self, job_filter: JobFilter | None = None, page: PageRequest | None = None
    ) -> Page[UploadJob]:
        with self._uow_factory() as uow:
            return uow.repositories.jobs.search(job_filter or JobFilter(), page or PageRequest())

    def upload_statistics(self, job_filter: JobFilter | None = None) -> UploadStatistics:
        with self._uow_factory() as uow:
            totals = uow.repositories.jobs.totals_by_status(job_filter or JobFilter())
        return UploadStatistics(by_status=totals)

    def list_results(
        self, result_filter: ResultFilter | None = None, page: PageRequest | None = None
    ) -> Page[ReconciliationResult]:
        with self._uow_factory() as uow:
            return uow.repositories.results.search(
                result_filter or ResultFilter(), page or PageRequest()
            )

    def reconciliation_summary(
        self, result_filter: ResultFilter | None = None
    ) -> ReconciliationSummary:
        with self._uow_factory() as uow:
            counts = uow.repositories.results.count_by_status(result_filter or ResultFilter())
        return ReconciliationSummary.from_counts(counts)
