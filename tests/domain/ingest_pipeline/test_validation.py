from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from tallyman.domain.ingest_pipeline import RowValidationError, validate_row, validate_rows
from tallyman.domain.model import BatchScope, ColumnMapping

MAPPING = ColumnMapping.from_dict(
    {"transactionId": "Txn", "amount": "Amt", "referenceNumber": "Ref", "date": "When"}
)


def test_valid_row_keeps_unmapped_columns_as_additional_fields() -> None:
    row = {
        "Txn": " T-1 ",
        "Amt": "1,000.50",
        "Ref": "R-1",
        "When": "2024-03-01",
        "Branch": "North",
        "Empty": None,
    }

    validated = validate_row(row, MAPPING, 7)
    record = validated.to_record(BatchScope(job_id=uuid4(), attempt=2))

    assert validated.transaction_id == "T-1"
    assert validated.amount == Decimal("1000.50")
    assert validated.date == datetime(2024, 3, 1, tzinfo=UTC)
    assert validated.additional_fields == {"Branch": "North"}
    assert (record.row_number, record.attempt) == (7, 2)


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"Ref": "  "}, "Missing required fields in row 3"),
        ({"Amt": "12abc"}, "Invalid amount in row 3: 12abc"),
        ({"Amt": "-4"}, "Negative amount in row 3: -4"),
        ({"When": "31/31/2024"}, "Invalid date in row 3: 31/31/2024"),
    ],
)
def test_invalid_rows_name_the_row(overrides: dict[str, object], message: str) -> None:
    row: dict[str, object] = {"Txn": "T", "Amt": "1", "Ref": "R", "When": "2024-01-01"}
    row.update(overrides)

    with pytest.raises(RowValidationError, match=message) as excinfo:
        validate_row(row, MAPPING, 3)
    assert excinfo.value.row_number == 3


def test_validate_rows_numbers_rows_from_the_batch_offset() -> None:
    rows = [
        {"Txn": "A", "Amt": "1", "Ref": "R", "When": "2024-01-01"},
        {"Txn": "B", "Amt": "x", "Ref": "R", "When": "2024-01-01"},
    ]

    valid, failures = validate_rows(rows, MAPPING, first_row_number=1001)

    assert [row.row_number for row in valid] == [1001]
    assert [(failure.row_number, failure.data["Txn"]) for failure in failures] == [(1002, "B")]
