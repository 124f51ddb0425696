from __future__ import annotations

import pytest

from tallyman.domain.errors import AuditLogImmutableError
from tallyman.domain.model import AuditAction, AuditEntityType, AuditLog, AuditSource


def _entry() -> AuditLog:
    return AuditLog(
        action=AuditAction.RECONCILE,
        entity_type=AuditEntityType.RECONCILIATION_RESULT,
        actor_id="user-1",
        source=AuditSource.SYSTEM,
        new_value={"matchStatus": "Matched"},
    )


def test_audit_entry_fields_cannot_be_reassigned() -> None:
    entry = _entry()

    with pytest.raises(AuditLogImmutableError):
        entry.actor_id = "someone-else"


def test_audit_entry_fields_cannot_be_deleted() -> None:
    entry = _entry()

    with pytest.raises(AuditLogImmutableError):
        del entry.new_value
