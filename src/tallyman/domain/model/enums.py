"""Domain enums (pure, dependency-light).

Values match the strings exchanged with collaborators and stored in the
database, so they must not change.
"""

from __future__ import annotations

from enum import StrEnum


class JobStatus(StrEnum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    PARTIALLY_FAILED = "PartiallyFailed"


class MatchStatus(StrEnum):
    MATCHED = "Matched"
    PARTIALLY_MATCHED = "Partially Matched"
    NOT_MATCHED = "Not Matched"
    DUPLICATE = "Duplicate"
    FAILED = "Failed"


class RuleType(StrEnum):
    EXACT_MATCH = "EXACT_MATCH"
    PARTIAL_MATCH = "PARTIAL_MATCH"
    REFERENCE_MATCH = "REFERENCE_MATCH"


class PartialMatchSelection(StrEnum):
    """Which persisted record wins when several satisfy a partial-match tolerance."""

    FIRST_FOUND = "first_found"
    BEST_FOUND = "best_found"


class AuditAction(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RECONCILE = "RECONCILE"
    UPLOAD = "UPLOAD"
    MANUAL_CORRECTION = "MANUAL_CORRECTION"
    UNAUTHORIZED_ATTEMPT = "UNAUTHORIZED_ATTEMPT"


class AuditEntityType(StrEnum):
    RECORD = "Record"
    UPLOAD_JOB = "UploadJob"
    RECONCILIATION_RESULT = "ReconciliationResult"


class AuditSource(StrEnum):
    API = "API"
    SYSTEM = "SYSTEM"
    MANUAL = "MANUAL"


class FileType(StrEnum):
    CSV = "csv"
    EXCEL = "excel"


class RecordField(StrEnum):
    """Logical record fields addressable by column mappings and rules."""

    TRANSACTION_ID = "transactionId"
    AMOUNT = "amount"
    REFERENCE_NUMBER = "referenceNumber"
    DATE = "date"

    @property
    def attribute(self) -> str:
        """Name of the matching attribute on :class:`Record`."""
        return _ATTRIBUTES[self]


_ATTRIBUTES: dict[RecordField, str] = {
    RecordField.TRANSACTION_ID: "transaction_id",
    RecordField.AMOUNT: "amount",
    RecordField.REFERENCE_NUMBER: "reference_number",
    RecordField.DATE: "date",
}
