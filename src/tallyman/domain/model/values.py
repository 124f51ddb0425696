"""Value objects shared by records, results and jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from tallyman.domain.model.enums import RecordField

if TYPE_CHECKING:
    from collections.abc import Mapping
    from uuid import UUID

type AdditionalValue = str | Decimal | bool | datetime
type Snapshot = dict[str, object]

REQUIRED_FIELDS: tuple[RecordField, ...] = tuple(RecordField)


@dataclass(frozen=True, slots=True)
class BatchScope:
    """One processing attempt of one upload job.

    Records persisted by an attempt only ever match or collide with records of
    the same scope; a retried job starts a fresh scope.
    """

    job_id: UUID
    attempt: int = 0


@dataclass(frozen=True, slots=True)
class ColumnMapping:
    """Map of logical record field to the source column holding it."""

    columns: Mapping[RecordField, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, str]) -> ColumnMapping:
        columns: dict[RecordField, str] = {}
        for key, column in raw.items():
            try:
                logical = RecordField(key)
            except ValueError:
                continue
            if column and str(column).strip():
                columns[logical] = str(column)
        return cls(columns=columns)

    def missing(self) -> tuple[RecordField, ...]:
        return tuple(name for name in REQUIRED_FIELDS if name not in self.columns)

    def column_for(self, name: RecordField) -> str:
        return self.columns[name]

    def mapped_columns(self) -> frozenset[str]:
        return frozenset(self.columns.values())

    def to_dict(self) -> dict[str, str]:
        return {name.value: column for name, column in self.columns.items()}


@dataclass(frozen=True, slots=True)
class RecordSnapshot:
    """Copy of the matchable fields of a record at classification time."""

    transaction_id: str
    amount: Decimal
    reference_number: str
    date: datetime

    def to_dict(self) -> Snapshot:
        return {
            RecordField.TRANSACTION_ID.value: self.transaction_id,
            RecordField.AMOUNT.value: str(self.amount),
            RecordField.REFERENCE_NUMBER.value: self.reference_number,
            RecordField.DATE.value: self.date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RecordSnapshot:
        return cls(
            transaction_id=str(data[RecordField.TRANSACTION_ID.value]),
            amount=Decimal(str(data[RecordField.AMOUNT.value])),
            reference_number=str(data[RecordField.REFERENCE_NUMBER.value]),
            date=datetime.fromisoformat(str(data[RecordField.DATE.value])),
        )


@dataclass(frozen=True, slots=True)
class FieldMismatch:
    """One field that differs between the system record and the uploaded one."""

    field: str
    system_value: str | None
    uploaded_value: str | None
    variance: str | None = None

    def to_dict(self) -> Snapshot:
        return {
            "field": self.field,
            "systemValue": self.system_value,
            "uploadedValue": self.uploaded_value,
            "variance": self.variance,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FieldMismatch:
        def _optional(key: str) -> str | None:
            value = data.get(key)
            return None if value is None else str(value)

        return cls(
            field=str(data["field"]),
            system_value=_optional("systemValue"),
            uploaded_value=_optional("uploadedValue"),
            variance=_optional("variance"),
        )


@dataclass(frozen=True, slots=True)
class RequestOrigin:
    """Where a collaborator-initiated change came from."""

    ip_address: str | None = None
    user_agent: str | None = None


def parse_amount(value: object) -> Decimal:
    """Parse a raw cell into a finite decimal amount."""

    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int | float):
        amount = Decimal(str(value))
    else:
        text = str(value).strip().replace(",", "")
        try:
            amount = Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount


# slashed numeric dates are month first, the way browsers read them
_FALLBACK_DATE_FORMATS: tuple[str, ...] = (
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M:%S",
    "%b %d, %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%d %b %Y",
    "%d %B %Y",
)


def _parse_date_text(value: object) -> datetime:
    text = " ".join(str(value).split())
    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(iso_text)
    except ValueError:
        pass
    for fmt in _FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)  # noqa: DTZ007
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {value!r}")


def parse_date(value: object) -> datetime:
    """Parse a raw cell into an aware UTC datetime.

    ISO-8601 text is preferred; US ``MM/DD/YYYY``, ``YYYY/MM/DD`` and English
    month-name forms are accepted as well. Naive values are taken as UTC.
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = _parse_date_text(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def coerce_additional_value(value: object) -> AdditionalValue:
    """Narrow a raw cell to the closed set of additional-field scalars."""

    if isinstance(value, bool | str | Decimal | datetime):
        return value
    if isinstance(value, int | float):
        return Decimal(str(value))
    if isinstance(value, date):
        return parse_date(value)
    return str(value)
