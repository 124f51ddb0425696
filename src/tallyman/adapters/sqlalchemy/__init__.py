"""SQLAlchemy adapter package for Tallyman."""

from __future__ import annotations

from .mappings import mapper_registry, start_mappers
from .repositories import (
    SqlAlchemyAuditLogRepository,
    SqlAlchemyMatchingRuleRepository,
    SqlAlchemyReconciliationResultRepository,
    SqlAlchemyRecordRepository,
    SqlAlchemyUploadJobRepository,
)
from .unit_of_work import (
    SqlAlchemyUnitOfWork,
    StartupError,
    configured_engine,
    is_started,
    schema_revision,
    shutdown,
    startup,
)

__all__ = [
    "SqlAlchemyAuditLogRepository",
    "SqlAlchemyMatchingRuleRepository",
    "SqlAlchemyReconciliationResultRepository",
    "SqlAlchemyRecordRepository",
    "SqlAlchemyUnitOfWork",
    "SqlAlchemyUploadJobRepository",
    "StartupError",
    "configured_engine",
    "is_started",
    "mapper_registry",
    "schema_revision",
    "shutdown",
    "start_mappers",
    "startup",
]
