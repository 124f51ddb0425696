"""SQLAlchemy mapping metadata for the reconciliation domain model."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from functools import cache
from typing import TYPE_CHECKING, Any, cast

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Dialect,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    TypeDecorator,
    Uuid,
    event,
    orm,
)
from sqlalchemy.orm import Session, configure_mappers

from tallyman.adapters.rules import dump_config, load_config
from tallyman.domain.errors import AuditLogImmutableError
from tallyman.domain.model import (
    AuditAction,
    AuditEntityType,
    AuditLog,
    AuditSource,
    ColumnMapping,
    FieldMismatch,
    FileType,
    JobStatus,
    MatchingRule,
    MatchStatus,
    ReconciliationResult,
    Record,
    RecordSnapshot,
    UploadJob,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import ORMExecuteState

    from tallyman.domain.model import AdditionalValue, RuleConfig

log = logging.getLogger(__name__)

UUIDColumnType = Uuid[uuid.UUID]


class UTCDateTime(TypeDecorator[datetime]):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        return value if value.tzinfo else value.replace(tzinfo=UTC)


class ExactDecimal(TypeDecorator[Decimal]):
    """Decimal stored as its canonical text so equality lookups are exact on every backend."""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: Dialect) -> str | None:
        _ = dialect
        if value is None:
            return None
        if value == 0:
            return "0"
        return format(value.normalize(), "f")

    def process_result_value(self, value: str | None, dialect: Dialect) -> Decimal | None:
        _ = dialect
        if value is None:
            return None
        return Decimal(value)


class RecordSnapshotType(TypeDecorator[RecordSnapshot]):
    impl = Text
    cache_ok = True

    def process_bind_param(self, value: RecordSnapshot | None, dialect: Dialect) -> str | None:
        _ = dialect
        if value is None:
            return None
        return json.dumps(value.to_dict())

    def process_result_value(self, value: str | None, dialect: Dialect) -> RecordSnapshot | None:
        _ = dialect
        if value is None:
            return None
        return RecordSnapshot.from_dict(json.loads(value))


class FieldMismatchListType(TypeDecorator[list[FieldMismatch]]):
    impl = Text
    cache_ok = True

    def process_bind_param(
        self, value: list[FieldMismatch] | None, dialect: Dialect
    ) -> str | None:
        _ = dialect
        return json.dumps([mismatch.to_dict() for mismatch in value or ()])

    def process_result_value(self, value: str | None, dialect: Dialect) -> list[FieldMismatch]:
        _ = dialect
        if value is None:
            return []
        loaded = json.loads(value)
        if not isinstance(loaded, list):
            return []
        items = cast(list[Any], loaded)
        return [FieldMismatch.from_dict(item) for item in items if isinstance(item, dict)]


class ColumnMappingType(TypeDecorator[ColumnMapping]):
    impl = Text
    cache_ok = True

    def process_bind_param(self, value: ColumnMapping | None, dialect: Dialect) -> str | None:
        _ = dialect
        if value is None:
            return None
        return json.dumps(value.to_dict(), sort_keys=True)

    def process_result_value(self, value: str | None, dialect: Dialect) -> ColumnMapping:
        _ = dialect
        if value is None:
            return ColumnMapping()
        return ColumnMapping.from_dict(json.loads(value))


class AdditionalFieldsType(TypeDecorator[dict[str, "AdditionalValue"]]):
    """Unmapped source columns, each tagged with its scalar kind."""

    impl = Text
    cache_ok = True

    def process_bind_param(
        self, value: dict[str, AdditionalValue] | None, dialect: Dialect
    ) -> str | None:
        _ = dialect
        payload = {key: _tag_value(item) for key, item in (value or {}).items()}
        return json.dumps(payload, sort_keys=True)

    def process_result_value(
        self, value: str | None, dialect: Dialect
    ) -> dict[str, AdditionalValue]:
        _ = dialect
        if value is None:
            return {}
        loaded = json.loads(value)
        if not isinstance(loaded, dict):
            return {}
        items = cast(dict[str, Any], loaded)
        return {key: _untag_value(item) for key, item in items.items() if isinstance(item, dict)}


def _tag_value(value: AdditionalValue) -> dict[str, Any]:
    match value:
        case bool():
            return {"type": "bool", "value": value}
        case Decimal():
            return {"type": "decimal", "value": str(value)}
        case datetime():
            return {"type": "datetime", "value": value.isoformat()}
        case str():
            return {"type": "str", "value": value}


def _untag_value(tagged: dict[str, Any]) -> AdditionalValue:
    kind = tagged.get("type")
    raw = tagged.get("value")
    if kind == "bool":
        return bool(raw)
    if kind == "decimal":
        return Decimal(str(raw))
    if kind == "datetime":
        return datetime.fromisoformat(str(raw))
    return str(raw)


class RuleConfigType(TypeDecorator["RuleConfig"]):
    impl = Text
    cache_ok = True

    def process_bind_param(self, value: RuleConfig | None, dialect: Dialect) -> str | None:
        _ = dialect
        if value is None:
            return None
        return dump_config(value)

    def process_result_value(self, value: str | None, dialect: Dialect) -> RuleConfig | None:
        _ = dialect
        if value is None:
            return None
        return load_config(value)


mapper_registry = orm.registry()
mapper_registry.metadata.naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_label)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_label)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Tables ----------------------------------------------------------------------

upload_job_table = Table(
    "upload_job",
    mapper_registry.metadata,
    Column("id", UUIDColumnType, primary_key=True, default=uuid.uuid4),
    Column("file_name", String, nullable=False),
    Column("file_type", Enum(FileType, native_enum=False), nullable=False),
    Column("fingerprint", String(64), nullable=False),
    Column("submitted_by", String, nullable=False),
    Column("artifact_key", String, nullable=False),
    Column("column_mapping", ColumnMappingType, nullable=False),
    Column("status", Enum(JobStatus, native_enum=False), nullable=False),
    Column("total_records", Integer, nullable=False, default=0),
    Column("processed_records", Integer, nullable=False, default=0),
    Column("failed_records", Integer, nullable=False, default=0),
    Column("matched_records", Integer, nullable=False, default=0),
    Column("partially_matched_records", Integer, nullable=False, default=0),
    Column("unmatched_records", Integer, nullable=False, default=0),
    Column("duplicate_records", Integer, nullable=False, default=0),
    Column("progress_percent", Integer, nullable=False, default=0),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("reconciliation_run", Integer, nullable=False, default=0),
    Column("error_message", Text, nullable=True),
    Column("failure_reason", Text, nullable=True),
    Column("queue_job_id", String, nullable=True),
    Column("rules_version", String, nullable=True),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("started_at", UTCDateTime(), nullable=True),
    Column("completed_at", UTCDateTime(), nullable=True),
    Column("failed_at", UTCDateTime(), nullable=True),
    Index("ix_upload_job_fingerprint_actor", "fingerprint", "submitted_by"),
    Index("ix_upload_job_status_created", "status", "created_at"),
)

record_table = Table(
    "record",
    mapper_registry.metadata,
    Column("id", UUIDColumnType, primary_key=True, default=uuid.uuid4),
    Column(
        "job_id", UUIDColumnType, ForeignKey("upload_job.id", ondelete="CASCADE"), nullable=False
    ),
    Column("attempt", Integer, nullable=False, default=0),
    Column("row_number", Integer, nullable=False, default=0),
    Column("transaction_id", String, nullable=False),
    Column("amount", ExactDecimal(), nullable=False),
    Column("reference_number", String, nullable=False),
    Column("date", UTCDateTime(), nullable=False),
    Column("additional_fields", AdditionalFieldsType, nullable=False),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
    Index("ix_record_scope_transaction", "job_id", "attempt", "transaction_id"),
    Index("ix_record_scope_reference", "job_id", "attempt", "reference_number"),
    Index("ix_record_scope_row", "job_id", "attempt", "row_number"),
    Index("ix_record_transaction_id", "transaction_id"),
)

matching_rule_table = Table(
    "matching_rule",
    mapper_registry.metadata,
    Column("id", UUIDColumnType, primary_key=True, default=uuid.uuid4),
    Column("name", String, nullable=False, unique=True),
    Column("description", Text, nullable=True),
    Column("priority", Integer, nullable=False, default=0),
    Column("enabled", Boolean, nullable=False, default=True),
    Column("config", RuleConfigType, nullable=False),
    Column("created_by", String, nullable=True),
    Column("updated_by", String, nullable=True),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
    Index("ix_matching_rule_enabled_priority", "enabled", "priority"),
)

reconciliation_result_table = Table(
    "reconciliation_result",
    mapper_registry.metadata,
    Column("id", UUIDColumnType, primary_key=True, default=uuid.uuid4),
    Column(
        "job_id", UUIDColumnType, ForeignKey("upload_job.id", ondelete="CASCADE"), nullable=False
    ),
    Column(
        "record_id", UUIDColumnType, ForeignKey("record.id", ondelete="CASCADE"), nullable=False
    ),
    Column("attempt", Integer, nullable=False, default=0),
    Column("run", Integer, nullable=False, default=0),
    Column("status", Enum(MatchStatus, native_enum=False), nullable=False),
    Column("matched_rule", String, nullable=False),
    Column("uploaded_record", RecordSnapshotType, nullable=False),
    Column("system_record", RecordSnapshotType, nullable=True),
    Column("mismatches", FieldMismatchListType, nullable=False),
    Column("duplicate_reason", String, nullable=True),
    Column("error_message", Text, nullable=True),
    Column("confidence", ExactDecimal(), nullable=False),
    Column("created_at", UTCDateTime(), nullable=False),
    Index("ix_reconciliation_result_scope", "job_id", "attempt", "run", "status"),
    Index("ix_reconciliation_result_record", "record_id"),
)

audit_log_table = Table(
    "audit_log",
    mapper_registry.metadata,
    # insertion order breaks timestamp ties
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", UUIDColumnType, nullable=False, unique=True, default=uuid.uuid4),
    Column("record_id", UUIDColumnType, nullable=True),
    Column("job_id", UUIDColumnType, nullable=True),
    Column("action", Enum(AuditAction, native_enum=False), nullable=False),
    Column("entity_type", Enum(AuditEntityType, native_enum=False), nullable=False),
    Column("actor_id", String, nullable=False),
    Column("source", Enum(AuditSource, native_enum=False), nullable=False),
    Column("old_value", JSON, nullable=True),
    Column("new_value", JSON, nullable=True),
    Column("timestamp", UTCDateTime(), nullable=False),
    Column("ip_address", String, nullable=True),
    Column("user_agent", String, nullable=True),
    Index("ix_audit_log_record_timestamp", "record_id", "timestamp"),
    Index("ix_audit_log_job_timestamp", "job_id", "timestamp"),
    Index("ix_audit_log_actor_timestamp", "actor_id", "timestamp"),
    Index("ix_audit_log_timestamp", "timestamp"),
)


# Audit immutability ------------------------------------------------------------


def _reject_audit_flush(mapper: Any, connection: Any, target: AuditLog) -> None:
    _ = (mapper, connection)
    raise AuditLogImmutableError(f"Audit log entry {target.id} cannot be modified or deleted")


def _reject_audit_bulk_statement(orm_execute_state: ORMExecuteState) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    target = getattr(orm_execute_state.statement, "table", None)
    mapper = orm_execute_state.bind_mapper
    if getattr(target, "name", None) == audit_log_table.name or (
        mapper is not None and mapper.class_ is AuditLog
    ):
        raise AuditLogImmutableError("Bulk UPDATE/DELETE against audit_log is not permitted")


# Mapping -----------------------------------------------------------------------


@cache
def start_mappers() -> orm.registry:
    """Configure SQLAlchemy mappers for the domain model."""

    log.info("Starting SQLAlchemy mappers")

    mapper_registry.map_imperatively(UploadJob, upload_job_table)
    mapper_registry.map_imperatively(Record, record_table)
    mapper_registry.map_imperatively(MatchingRule, matching_rule_table)
    mapper_registry.map_imperatively(ReconciliationResult, reconciliation_result_table)
    mapper_registry.map_imperatively(AuditLog, audit_log_table)

    event.listen(AuditLog, "before_update", _reject_audit_flush)
    event.listen(AuditLog, "before_delete", _reject_audit_flush)
    event.listen(Session, "do_orm_execute", _reject_audit_bulk_statement)

    configure_mappers()
    return mapper_registry
