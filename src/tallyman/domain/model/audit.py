"""Append-only audit trail entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from tallyman.domain.errors import AuditLogImmutableError
from tallyman.domain.model.entity import Entity, utcnow

if TYPE_CHECKING:
    from uuid import UUID

    from tallyman.domain.model.enums import AuditAction, AuditEntityType, AuditSource
    from tallyman.domain.model.values import Snapshot


@dataclass(eq=False, kw_only=True)
class AuditLog(Entity):
    """One state transition of a record, job or result.

    Every attribute can be assigned exactly once; reassignment or deletion
    raises :class:`AuditLogImmutableError`.
    """

    action: AuditAction
    entity_type: AuditEntityType
    actor_id: str
    source: AuditSource
    record_id: UUID | None = None
    job_id: UUID | None = None
    old_value: Snapshot | None = None
    new_value: Snapshot | None = None
    timestamp: datetime = field(default_factory=utcnow)
    ip_address: str | None = None
    user_agent: str | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.__dict__ and not name.startswith("_sa_"):
            raise AuditLogImmutableError(f"Audit log entries are immutable (field {name!r})")
        super().__setattr__(name, value)

    def __delattr__(self, name: str) -> None:
        raise AuditLogImmutableError(f"Audit log entries are immutable (field {name!r})")
