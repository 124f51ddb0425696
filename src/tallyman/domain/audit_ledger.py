"""Append-only audit trail over every classification, correction and job action."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tallyman.domain.model import (
    AuditAction,
    AuditEntityType,
    AuditLog,
    AuditSource,
    RequestOrigin,
)
from tallyman.domain.ports import AuditFilter, PageRequest

if TYPE_CHECKING:
    from uuid import UUID

    from tallyman.domain.model import ReconciliationResult, Snapshot
    from tallyman.domain.ports import AuditLogRepository, Page

log = logging.getLogger(__name__)

_NO_ORIGIN = RequestOrigin()


class AuditLedger:
    def __init__(self, repository: AuditLogRepository) -> None:
        self._repository = repository

    def record(
        self,
        *,
        action: AuditAction,
        entity_type: AuditEntityType,
        actor_id: str,
        source: AuditSource,
        record_id: UUID | None = None,
        job_id: UUID | None = None,
        old_value: Snapshot | None = None,
        new_value: Snapshot | None = None,
        origin: RequestOrigin | None = None,
    ) -> AuditLog:
        origin = origin or _NO_ORIGIN
        entry = AuditLog(
            action=action,
            entity_type=entity_type,
            actor_id=actor_id,
            source=source,
            record_id=record_id,
            job_id=job_id,
            old_value=old_value,
            new_value=new_value,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
        )
        self._repository.add(entry)
        return entry

    def record_reconciliation(self, result: ReconciliationResult, actor_id: str) -> AuditLog:
        return self.record(
            action=AuditAction.RECONCILE,
            entity_type=AuditEntityType.RECONCILIATION_RESULT,
            actor_id=actor_id,
            source=AuditSource.SYSTEM,
            record_id=result.record_id,
            job_id=result.job_id,
            new_value=result.describe(),
        )

    def record_unauthorized_attempt(
        self,
        *,
        actor_id: str,
        entity_type: AuditEntityType,
        attempted: str,
        record_id: UUID | None = None,
        job_id: UUID | None = None,
        origin: RequestOrigin | None = None,
    ) -> AuditLog:
        """Trace a rejected operation; the caller decides what was unauthorized."""

        log.warning("Unauthorized %s attempt by %s", attempted, actor_id)
        return self.record(
            action=AuditAction.UNAUTHORIZED_ATTEMPT,
            entity_type=entity_type,
            actor_id=actor_id,
            source=AuditSource.API,
            record_id=record_id,
            job_id=job_id,
            new_value={"attempted": attempted},
            origin=origin,
        )

    def timeline(
        self, *, record_id: UUID | None = None, job_id: UUID | None = None
    ) -> list[AuditLog]:
        if record_id is None and job_id is None:
            raise ValueError("timeline requires a record_id or a job_id")
        return self._repository.timeline(record_id=record_id, job_id=job_id)

    def search(
        self, audit_filter: AuditFilter | None = None, page: PageRequest | None = None
    ) -> Page[AuditLog]:
        return self._repository.search(audit_filter or AuditFilter(), page or PageRequest())
