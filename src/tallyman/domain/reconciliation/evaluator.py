"""Application of one matching rule to one candidate record."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Literal

from tallyman.domain.model import (
    ExactMatchConfig,
    FieldMismatch,
    MatchStatus,
    PartialMatchConfig,
    PartialMatchSelection,
    RecordField,
    ReferenceMatchConfig,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tallyman.domain.model import BatchScope, MatchingRule, Record
    from tallyman.domain.ports import MatchValue, RecordRepository

HUNDRED = Decimal(100)
_CENTS = Decimal("0.01")
_SECONDS_PER_DAY = 86_400


@dataclass(frozen=True, slots=True, kw_only=True)
class Match:
    system_record: Record
    status: Literal[MatchStatus.MATCHED, MatchStatus.PARTIALLY_MATCHED]
    mismatches: tuple[FieldMismatch, ...] = ()
    confidence: Decimal = HUNDRED


@dataclass(frozen=True, slots=True)
class NoMatch:
    pass


type Verdict = Match | NoMatch


def amount_variance(system_amount: Decimal, uploaded_amount: Decimal) -> Decimal | None:
    """Relative difference in percent of the system amount.

    ``None`` when undefined, i.e. a zero system amount against a non-zero upload.
    """

    if system_amount == 0:
        return Decimal(0) if uploaded_amount == 0 else None
    return abs(system_amount - uploaded_amount) / system_amount * HUNDRED


def format_variance(variance: Decimal) -> str:
    return f"{variance.quantize(_CENTS, rounding=ROUND_HALF_UP)}%"


def confidence_for(status: MatchStatus, variance: Decimal | None) -> Decimal:
    if status is MatchStatus.MATCHED:
        return HUNDRED
    if variance is None:
        return Decimal(0)
    return max(Decimal(0), HUNDRED - variance).quantize(_CENTS, rounding=ROUND_HALF_UP)


class RuleEvaluator:
    """Stateless apart from the record repository of the current transaction."""

    def __init__(self, records: RecordRepository) -> None:
        self._records = records

    def apply(self, rule: MatchingRule, candidate: Record, scope: BatchScope) -> Verdict:
        match rule.config:
            case ExactMatchConfig() as config:
                return self._exact(config, candidate, scope)
            case PartialMatchConfig() as config:
                return self._partial(config, candidate, scope)
            case ReferenceMatchConfig():
                return self._reference(candidate, scope)

    # rule kinds --------------------------------------------------------

    def _exact(self, config: ExactMatchConfig, candidate: Record, scope: BatchScope) -> Verdict:
        hits = self._records.find_matching(
            scope,
            _criteria(candidate, config.effective_fields),
            exclude_id=candidate.id,
            limit=1,
        )
        if not hits:
            return NoMatch()
        return Match(system_record=hits[0], status=MatchStatus.MATCHED)

    def _partial(
        self, config: PartialMatchConfig, candidate: Record, scope: BatchScope
    ) -> Verdict:
        hits = self._records.find_matching(
            scope,
            _criteria(candidate, config.effective_fields),
            exclude_id=candidate.id,
        )
        best: tuple[Decimal, Record] | None = None
        for system_record in hits:
            variance = amount_variance(system_record.amount, candidate.amount)
            if variance is None or variance > config.amount_variance_percent:
                continue
            if config.date_variance_days > 0 and not _within_days(
                system_record, candidate, config.date_variance_days
            ):
                continue
            if config.selection is PartialMatchSelection.FIRST_FOUND:
                return _partial_match(system_record, candidate, variance)
            if best is None or variance < best[0]:
                best = (variance, system_record)
        if best is None:
            return NoMatch()
        return _partial_match(best[1], candidate, best[0])

    def _reference(self, candidate: Record, scope: BatchScope) -> Verdict:
        hits = self._records.find_matching(
            scope,
            {RecordField.REFERENCE_NUMBER: candidate.reference_number},
            exclude_id=candidate.id,
            limit=1,
        )
        if not hits:
            return NoMatch()
        system_record = hits[0]
        mismatches: list[FieldMismatch] = []
        if system_record.transaction_id != candidate.transaction_id:
            mismatches.append(_transaction_id_mismatch(system_record, candidate))
        if system_record.amount != candidate.amount:
            mismatches.append(
                FieldMismatch(
                    field=RecordField.AMOUNT.value,
                    system_value=str(system_record.amount),
                    uploaded_value=str(candidate.amount),
                )
            )
        status = MatchStatus.PARTIALLY_MATCHED if mismatches else MatchStatus.MATCHED
        return Match(
            system_record=system_record,
            status=status,
            mismatches=tuple(mismatches),
            confidence=confidence_for(
                status, amount_variance(system_record.amount, candidate.amount)
            ),
        )


def _criteria(candidate: Record, fields: Sequence[RecordField]) -> dict[RecordField, MatchValue]:
    return {name: candidate.value_of(name) for name in fields}


def _within_days(system_record: Record, candidate: Record, days: int) -> bool:
    delta = abs((candidate.date - system_record.date).total_seconds())
    return delta / _SECONDS_PER_DAY <= days


def _transaction_id_mismatch(system_record: Record, candidate: Record) -> FieldMismatch:
    return FieldMismatch(
        field=RecordField.TRANSACTION_ID.value,
        system_value=system_record.transaction_id,
        uploaded_value=candidate.transaction_id,
    )


def _partial_match(system_record: Record, candidate: Record, variance: Decimal) -> Match:
    mismatches: list[FieldMismatch] = []
    if system_record.amount != candidate.amount:
        mismatches.append(
            FieldMismatch(
                field=RecordField.AMOUNT.value,
                system_value=str(system_record.amount),
                uploaded_value=str(candidate.amount),
                variance=format_variance(variance),
            )
        )
    if system_record.transaction_id != candidate.transaction_id:
        mismatches.append(_transaction_id_mismatch(system_record, candidate))
    status = MatchStatus.PARTIALLY_MATCHED if mismatches else MatchStatus.MATCHED
    return Match(
        system_record=system_record,
        status=status,
        mismatches=tuple(mismatches),
        confidence=confidence_for(status, variance),
    )
