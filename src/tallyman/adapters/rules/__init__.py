"""Public interface for rule definition payloads."""

from __future__ import annotations

from .schema import (
    PartialMatchPayload,
    RuleConfigPayload,
    RuleDefinition,
    RuleSetDocument,
    StoredRuleConfig,
)
from .translator import (
    config_from_payload,
    definition_from_rule,
    draft_from_definition,
    dump_config,
    load_config,
    stored_config,
)

__all__ = [
    "PartialMatchPayload",
    "RuleConfigPayload",
    "RuleDefinition",
    "RuleSetDocument",
    "StoredRuleConfig",
    "config_from_payload",
    "definition_from_rule",
    "draft_from_definition",
    "dump_config",
    "load_config",
    "stored_config",
]
