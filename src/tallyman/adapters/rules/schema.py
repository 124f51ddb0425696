"""Pydantic models describing matching-rule definitions exchanged with collaborators."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tallyman.domain.model import PartialMatchSelection, RecordField, RuleType


def _blank_to_none(value: object) -> object:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


class RuleBaseModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PartialMatchPayload(RuleBaseModel):
    amount_variance_percent: Decimal = Field(
        default=Decimal(2), ge=0, alias="amountVariancePercent"
    )
    date_variance_days: int = Field(default=0, ge=0, alias="dateVarianceDays")
    required_fields: list[RecordField] = Field(default_factory=list, alias="requiredFields")
    selection: PartialMatchSelection = PartialMatchSelection.FIRST_FOUND


class RuleConfigPayload(RuleBaseModel):
    exact_match_fields: list[RecordField] = Field(default_factory=list, alias="exactMatchFields")
    partial_match_config: PartialMatchPayload | None = Field(
        default=None, alias="partialMatchConfig"
    )


class StoredRuleConfig(RuleConfigPayload):
    """Rule configuration as persisted in the rule store."""

    rule_type: RuleType = Field(alias="ruleType")


class RuleDefinition(RuleConfigPayload):
    name: str = Field(alias="ruleName", min_length=1)
    rule_type: RuleType = Field(alias="ruleType")
    description: str | None = None
    priority: int = 0
    enabled: bool = True

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    _normalize_description = field_validator("description", mode="before")(_blank_to_none)


class RuleSetDocument(RuleBaseModel):
    """A batch of rule definitions, e.g. a file passed to ``tallyman rules import``."""

    rules: list[RuleDefinition]
