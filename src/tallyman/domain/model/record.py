"""Uploaded transaction records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from tallyman.domain.model.entity import Entity, utcnow
from tallyman.domain.model.enums import RecordField
from tallyman.domain.model.values import AdditionalValue, BatchScope, RecordSnapshot

if TYPE_CHECKING:
    from uuid import UUID


@dataclass(eq=False, kw_only=True)
class Record(Entity):
    """One validated row of an upload, owned by exactly one job attempt."""

    job_id: UUID
    transaction_id: str
    amount: Decimal
    reference_number: str
    date: datetime
    attempt: int = 0
    row_number: int = 0
    additional_fields: dict[str, AdditionalValue] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError(f"amount must be non-negative, got {self.amount}")

    @property
    def scope(self) -> BatchScope:
        return BatchScope(job_id=self.job_id, attempt=self.attempt)

    def value_of(self, name: RecordField) -> str | Decimal | datetime:
        return getattr(self, name.attribute)

    def snapshot(self) -> RecordSnapshot:
        return RecordSnapshot(
            transaction_id=self.transaction_id,
            amount=self.amount,
            reference_number=self.reference_number,
            date=self.date,
        )

    def correct(
        self,
        *,
        transaction_id: str | None = None,
        amount: Decimal | None = None,
        reference_number: str | None = None,
        date: datetime | None = None,
        now: datetime | None = None,
    ) -> tuple[RecordSnapshot, RecordSnapshot]:
        """Apply a manual correction and return the (old, new) snapshots."""

        if amount is not None and amount < 0:
            raise ValueError(f"amount must be non-negative, got {amount}")
        before = self.snapshot()
        if transaction_id is not None:
            self.transaction_id = transaction_id
        if amount is not None:
            self.amount = amount
        if reference_number is not None:
            self.reference_number = reference_number
        if date is not None:
            self.date = date
        self.updated_at = now or utcnow()
        return before, self.snapshot()
