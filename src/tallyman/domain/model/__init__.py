"""Public domain model surface."""

from __future__ import annotations

from tallyman.domain.model.audit import AuditLog
from tallyman.domain.model.entity import Entity, new_id, utcnow
from tallyman.domain.model.enums import (
    AuditAction,
    AuditEntityType,
    AuditSource,
    FileType,
    JobStatus,
    MatchStatus,
    PartialMatchSelection,
    RecordField,
    RuleType,
)
from tallyman.domain.model.job import (
    LIVE_OR_FINISHED_STATUSES,
    RETRYABLE_STATUSES,
    SETTLED_STATUSES,
    UploadJob,
)
from tallyman.domain.model.record import Record
from tallyman.domain.model.result import (
    DUPLICATE_DETECTION,
    ERROR_DURING_PROCESSING,
    NO_MATCHING_RULE,
    ReconciliationResult,
)
from tallyman.domain.model.rule import (
    DEFAULT_EXACT_FIELDS,
    DEFAULT_PARTIAL_FIELDS,
    ExactMatchConfig,
    MatchingRule,
    PartialMatchConfig,
    ReferenceMatchConfig,
    RuleConfig,
    rule_type_of,
)
from tallyman.domain.model.values import (
    REQUIRED_FIELDS,
    AdditionalValue,
    BatchScope,
    ColumnMapping,
    FieldMismatch,
    RecordSnapshot,
    RequestOrigin,
    Snapshot,
    coerce_additional_value,
    parse_amount,
    parse_date,
)

__all__ = [  # noqa: RUF022
    # identity
    "Entity",
    "new_id",
    "utcnow",
    # enums
    "AuditAction",
    "AuditEntityType",
    "AuditSource",
    "FileType",
    "JobStatus",
    "MatchStatus",
    "PartialMatchSelection",
    "RecordField",
    "RuleType",
    # aggregates
    "AuditLog",
    "MatchingRule",
    "ReconciliationResult",
    "Record",
    "UploadJob",
    # rules
    "DEFAULT_EXACT_FIELDS",
    "DEFAULT_PARTIAL_FIELDS",
    "ExactMatchConfig",
    "PartialMatchConfig",
    "ReferenceMatchConfig",
    "RuleConfig",
    "rule_type_of",
    # job states
    "LIVE_OR_FINISHED_STATUSES",
    "RETRYABLE_STATUSES",
    "SETTLED_STATUSES",
    # result sentinels
    "DUPLICATE_DETECTION",
    "ERROR_DURING_PROCESSING",
    "NO_MATCHING_RULE",
    # values
    "REQUIRED_FIELDS",
    "AdditionalValue",
    "BatchScope",
    "ColumnMapping",
    "FieldMismatch",
    "RecordSnapshot",
    "RequestOrigin",
    "Snapshot",
    "coerce_additional_value",
    "parse_amount",
    "parse_date",
]
