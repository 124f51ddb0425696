"""Translate rule payloads into domain rule configurations and back."""

from __future__ import annotations

from typing import TYPE_CHECKING

from tallyman.domain.model import (
    ExactMatchConfig,
    PartialMatchConfig,
    ReferenceMatchConfig,
    RuleType,
)
from tallyman.domain.rules import RuleDraft

from .schema import PartialMatchPayload, RuleConfigPayload, RuleDefinition, StoredRuleConfig

if TYPE_CHECKING:
    from tallyman.domain.model import MatchingRule, RuleConfig


def config_from_payload(rule_type: RuleType, payload: RuleConfigPayload) -> RuleConfig:
    match rule_type:
        case RuleType.EXACT_MATCH:
            return ExactMatchConfig(fields=tuple(payload.exact_match_fields))
        case RuleType.PARTIAL_MATCH:
            partial = payload.partial_match_config or PartialMatchPayload()
            return PartialMatchConfig(
                required_fields=tuple(partial.required_fields),
                amount_variance_percent=partial.amount_variance_percent,
                date_variance_days=partial.date_variance_days,
                selection=partial.selection,
            )
        case RuleType.REFERENCE_MATCH:
            return ReferenceMatchConfig()


def stored_config(config: RuleConfig) -> StoredRuleConfig:
    match config:
        case ExactMatchConfig(fields=fields):
            return StoredRuleConfig(rule_type=RuleType.EXACT_MATCH, exact_match_fields=list(fields))
        case PartialMatchConfig():
            return StoredRuleConfig(
                rule_type=RuleType.PARTIAL_MATCH,
                partial_match_config=PartialMatchPayload(
                    amount_variance_percent=config.amount_variance_percent,
                    date_variance_days=config.date_variance_days,
                    required_fields=list(config.required_fields),
                    selection=config.selection,
                ),
            )
        case ReferenceMatchConfig():
            return StoredRuleConfig(rule_type=RuleType.REFERENCE_MATCH)


def dump_config(config: RuleConfig) -> str:
    return stored_config(config).model_dump_json(by_alias=True, exclude_none=True)


def load_config(raw: str) -> RuleConfig:
    stored = StoredRuleConfig.model_validate_json(raw)
    return config_from_payload(stored.rule_type, stored)


def draft_from_definition(definition: RuleDefinition) -> RuleDraft:
    return RuleDraft(
        name=definition.name,
        config=config_from_payload(definition.rule_type, definition),
        priority=definition.priority,
        enabled=definition.enabled,
        description=definition.description,
    )


def definition_from_rule(rule: MatchingRule) -> RuleDefinition:
    """Render a stored rule in the collaborator-facing shape."""

    stored = stored_config(rule.config)
    return RuleDefinition(
        name=rule.name,
        rule_type=stored.rule_type,
        description=rule.description,
        priority=rule.priority,
        enabled=rule.enabled,
        exact_match_fields=stored.exact_match_fields,
        partial_match_config=stored.partial_match_config,
    )
