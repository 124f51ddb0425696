"""Reconciliation verdicts, written once per processed record."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from tallyman.domain.model.entity import Entity, utcnow
from tallyman.domain.model.enums import MatchStatus

if TYPE_CHECKING:
    from uuid import UUID

    from tallyman.domain.model.values import FieldMismatch, RecordSnapshot

NO_MATCHING_RULE = "No matching rule"
DUPLICATE_DETECTION = "Duplicate Detection"
ERROR_DURING_PROCESSING = "Error during processing"


@dataclass(eq=False, kw_only=True)
class ReconciliationResult(Entity):
    job_id: UUID
    record_id: UUID
    uploaded_record: RecordSnapshot
    status: MatchStatus
    matched_rule: str
    attempt: int = 0
    run: int = 0
    system_record: RecordSnapshot | None = None
    mismatches: list[FieldMismatch] = field(default_factory=list)
    duplicate_reason: str | None = None
    error_message: str | None = None
    confidence: Decimal = Decimal(0)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not Decimal(0) <= self.confidence <= Decimal(100):
            raise ValueError(f"confidence must lie in [0, 100], got {self.confidence}")

    def describe(self) -> dict[str, object]:
        """Snapshot written to the audit trail."""
        return {
            "resultId": str(self.id),
            "recordId": str(self.record_id),
            "run": self.run,
            "matchStatus": self.status.value,
            "matchedRule": self.matched_rule,
            "confidence": str(self.confidence),
            "systemRecord": None if self.system_record is None else self.system_record.to_dict(),
            "uploadedRecord": self.uploaded_record.to_dict(),
            "mismatchedFields": [mismatch.to_dict() for mismatch in self.mismatches],
            "duplicateReason": self.duplicate_reason,
            "errorMessage": self.error_message,
        }
