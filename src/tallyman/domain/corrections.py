"""Manual correction of uploaded records."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tallyman.domain.audit_ledger import AuditLedger
from tallyman.domain.errors import InvalidCorrection, RecordNotFound
from tallyman.domain.model import (
    AuditAction,
    AuditEntityType,
    AuditSource,
    RecordField,
    parse_amount,
    parse_date,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime
    from decimal import Decimal
    from uuid import UUID

    from tallyman.domain.model import Record, RequestOrigin
    from tallyman.domain.ports import UnitOfWorkFactory

log = logging.getLogger(__name__)

CORRECTABLE_FIELDS: frozenset[str] = frozenset(name.value for name in RecordField)


def _text(name: RecordField, value: object) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise InvalidCorrection(f"{name.value} must not be empty")
    return text


def _amount(value: object) -> Decimal:
    try:
        amount = parse_amount(value)
    except ValueError as exc:
        raise InvalidCorrection("Amount must be a positive number") from exc
    if amount < 0:
        raise InvalidCorrection("Amount must be a positive number")
    return amount


def _date(value: object) -> datetime:
    try:
        return parse_date(value)
    except ValueError as exc:
        raise InvalidCorrection("Invalid date format") from exc


class CorrectionService:
    def __init__(self, unit_of_work_factory: UnitOfWorkFactory) -> None:
        self._uow_factory = unit_of_work_factory

    def correct(
        self,
        record_id: UUID,
        fields: Mapping[str, object],
        actor_id: str,
        *,
        origin: RequestOrigin | None = None,
    ) -> Record:
        """Write the corrected record state and exactly one audit entry.

        Keys outside the four logical record fields are ignored; at least one
        logical field has to be present.
        """

        updates = {
            RecordField(key): value for key, value in fields.items() if key in CORRECTABLE_FIELDS
        }
        if not updates:
            allowed = ", ".join(sorted(CORRECTABLE_FIELDS))
            raise InvalidCorrection(f"No valid fields to update; allowed fields: {allowed}")
        transaction_id = (
            _text(RecordField.TRANSACTION_ID, updates[RecordField.TRANSACTION_ID])
            if RecordField.TRANSACTION_ID in updates
            else None
        )
        reference_number = (
            _text(RecordField.REFERENCE_NUMBER, updates[RecordField.REFERENCE_NUMBER])
            if RecordField.REFERENCE_NUMBER in updates
            else None
        )
        amount = _amount(updates[RecordField.AMOUNT]) if RecordField.AMOUNT in updates else None
        date = _date(updates[RecordField.DATE]) if RecordField.DATE in updates else None

        with self._uow_factory() as uow:
            record = uow.repositories.records.get(record_id)
            if record is None:
                raise RecordNotFound(record_id)
            before, after = record.correct(
                transaction_id=transaction_id,
                amount=amount,
                reference_number=reference_number,
                date=date,
            )
            AuditLedger(uow.repositories.audit_logs).record(
                action=AuditAction.MANUAL_CORRECTION,
                entity_type=AuditEntityType.RECORD,
                actor_id=actor_id,
                source=AuditSource.MANUAL,
                record_id=record.id,
                job_id=record.job_id,
                old_value=before.to_dict(),
                new_value=after.to_dict(),
                origin=origin,
            )
            uow.commit()
        log.info("Record %s manually corrected by %s", record_id, actor_id)
        return record
