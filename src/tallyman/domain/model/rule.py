"""Matching rules and their per-kind configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from tallyman.domain.model.entity import Entity, utcnow
from tallyman.domain.model.enums import PartialMatchSelection, RecordField, RuleType

DEFAULT_EXACT_FIELDS: tuple[RecordField, ...] = (RecordField.TRANSACTION_ID, RecordField.AMOUNT)
DEFAULT_PARTIAL_FIELDS: tuple[RecordField, ...] = (RecordField.REFERENCE_NUMBER,)


@dataclass(frozen=True, slots=True)
class ExactMatchConfig:
    """Fields that must be identical. Empty means the default field set."""

    fields: tuple[RecordField, ...] = ()

    @property
    def effective_fields(self) -> tuple[RecordField, ...]:
        return self.fields or DEFAULT_EXACT_FIELDS


@dataclass(frozen=True, slots=True)
class PartialMatchConfig:
    required_fields: tuple[RecordField, ...] = ()
    amount_variance_percent: Decimal = Decimal(2)
    date_variance_days: int = 0
    selection: PartialMatchSelection = PartialMatchSelection.FIRST_FOUND

    def __post_init__(self) -> None:
        if self.amount_variance_percent < 0:
            raise ValueError("amount_variance_percent must be non-negative")
        if self.date_variance_days < 0:
            raise ValueError("date_variance_days must be non-negative")

    @property
    def effective_fields(self) -> tuple[RecordField, ...]:
        return self.required_fields or DEFAULT_PARTIAL_FIELDS


@dataclass(frozen=True, slots=True)
class ReferenceMatchConfig:
    """Reference numbers must be equal; nothing else is configurable."""


type RuleConfig = ExactMatchConfig | PartialMatchConfig | ReferenceMatchConfig


def rule_type_of(config: RuleConfig) -> RuleType:
    match config:
        case ExactMatchConfig():
            return RuleType.EXACT_MATCH
        case PartialMatchConfig():
            return RuleType.PARTIAL_MATCH
        case ReferenceMatchConfig():
            return RuleType.REFERENCE_MATCH


@dataclass(eq=False, kw_only=True)
class MatchingRule(Entity):
    name: str
    config: RuleConfig
    priority: int = 0
    enabled: bool = True
    description: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def rule_type(self) -> RuleType:
        return rule_type_of(self.config)

    def touch(self, actor_id: str | None, *, now: datetime | None = None) -> None:
        self.updated_by = actor_id
        self.updated_at = now or utcnow()
