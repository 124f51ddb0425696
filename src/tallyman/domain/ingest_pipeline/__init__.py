"""Ingestion of uploaded files into batch-scoped, reconciled records.

Progress schedule of one ingestion job: 0-60 % while rows are validated and
persisted, 65 % once the upload is audited, 70-90 % during reconciliation and
100 % after the job has been settled.
"""

from __future__ import annotations

from .payload import IngestRequest, ReconcileRequest
from .runner import DEFAULT_BATCH_SIZE, IngestionPipeline, IngestSummary, ReconciliationRunner
from .validation import RowFailure, RowValidationError, ValidatedRow, validate_row, validate_rows

__all__ = [
    "DEFAULT_BATCH_SIZE",
    "IngestRequest",
    "IngestSummary",
    "IngestionPipeline",
    "ReconcileRequest",
    "ReconciliationRunner",
    "RowFailure",
    "RowValidationError",
    "ValidatedRow",
    "validate_row",
    "validate_rows",
]
