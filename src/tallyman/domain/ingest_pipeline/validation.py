"""Row-level validation of decoded rows into records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tallyman.domain.model import (
    REQUIRED_FIELDS,
    Record,
    RecordField,
    coerce_additional_value,
    parse_amount,
    parse_date,
)

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime
    from decimal import Decimal

    from tallyman.domain.model import AdditionalValue, BatchScope, ColumnMapping
    from tallyman.domain.ports import Row


class RowValidationError(ValueError):
    def __init__(self, row_number: int, message: str) -> None:
        super().__init__(message)
        self.row_number = row_number


@dataclass(frozen=True, slots=True)
class ValidatedRow:
    row_number: int
    transaction_id: str
    amount: Decimal
    reference_number: str
    date: datetime
    additional_fields: dict[str, AdditionalValue] = field(default_factory=dict)

    def to_record(self, scope: BatchScope) -> Record:
        return Record(
            job_id=scope.job_id,
            attempt=scope.attempt,
            row_number=self.row_number,
            transaction_id=self.transaction_id,
            amount=self.amount,
            reference_number=self.reference_number,
            date=self.date,
            additional_fields=dict(self.additional_fields),
        )


@dataclass(frozen=True, slots=True)
class RowFailure:
    row_number: int
    error: str
    data: dict[str, object] = field(default_factory=dict)


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_row(row: Row, mapping: ColumnMapping, row_number: int) -> ValidatedRow:
    """Validate one decoded row; ``row_number`` is 1-based."""

    raw = {name: row.get(mapping.column_for(name)) for name in REQUIRED_FIELDS}
    if any(_is_blank(value) for value in raw.values()):
        raise RowValidationError(row_number, f"Missing required fields in row {row_number}")

    raw_amount = raw[RecordField.AMOUNT]
    try:
        amount = parse_amount(raw_amount)
    except ValueError as exc:
        raise RowValidationError(
            row_number, f"Invalid amount in row {row_number}: {raw_amount}"
        ) from exc
    if amount < 0:
        raise RowValidationError(row_number, f"Negative amount in row {row_number}: {raw_amount}")

    raw_date = raw[RecordField.DATE]
    try:
        date = parse_date(raw_date)
    except ValueError as exc:
        raise RowValidationError(
            row_number, f"Invalid date in row {row_number}: {raw_date}"
        ) from exc

    mapped = mapping.mapped_columns()
    additional = {
        column: coerce_additional_value(value)
        for column, value in row.items()
        if column not in mapped and value is not None
    }
    return ValidatedRow(
        row_number=row_number,
        transaction_id=str(raw[RecordField.TRANSACTION_ID]).strip(),
        amount=amount,
        reference_number=str(raw[RecordField.REFERENCE_NUMBER]).strip(),
        date=date,
        additional_fields=additional,
    )


def validate_rows(
    rows: Iterable[Row], mapping: ColumnMapping, *, first_row_number: int = 1
) -> tuple[list[ValidatedRow], list[RowFailure]]:
    """Split a batch into valid rows and row-level failures, in input order."""

    valid: list[ValidatedRow] = []
    failures: list[RowFailure] = []
    for offset, row in enumerate(rows):
        row_number = first_row_number + offset
        try:
            valid.append(validate_row(row, mapping, row_number))
        except RowValidationError as exc:
            failures.append(RowFailure(row_number=row_number, error=str(exc), data=dict(row)))
    return valid, failures
