"""Administration of matching rules.

Every mutation commits and then invalidates the shared rule cache so that the
next reconciliation run sees the new rule set, TTL notwithstanding.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from tallyman.domain.errors import DuplicateRuleName, RuleNotFound
from tallyman.domain.model import (
    ExactMatchConfig,
    MatchingRule,
    PartialMatchConfig,
    RecordField,
    ReferenceMatchConfig,
    utcnow,
)
from tallyman.domain.reconciliation.rule_cache import sort_by_priority

if TYPE_CHECKING:
    from collections.abc import Mapping
    from uuid import UUID

    from tallyman.domain.model import RuleConfig, RuleType
    from tallyman.domain.ports import MatchingRuleRepository, UnitOfWorkFactory
    from tallyman.domain.reconciliation import RuleCache

log = logging.getLogger(__name__)

INITIAL_RULES_VERSION = "1.0.0"


@dataclass(frozen=True, slots=True, kw_only=True)
class RuleDraft:
    name: str
    config: RuleConfig
    priority: int = 0
    enabled: bool = True
    description: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class RuleChanges:
    """Fields left as ``None`` keep their current value."""

    name: str | None = None
    config: RuleConfig | None = None
    priority: int | None = None
    enabled: bool | None = None
    description: str | None = None


DEFAULT_RULES: tuple[RuleDraft, ...] = (
    RuleDraft(
        name="Exact Match - Transaction ID and Amount",
        description="Matches records with identical transaction ID and amount",
        priority=100,
        config=ExactMatchConfig(fields=(RecordField.TRANSACTION_ID, RecordField.AMOUNT)),
    ),
    RuleDraft(
        name="Exact Match - All Fields",
        description="Matches records with all fields identical",
        priority=90,
        config=ExactMatchConfig(fields=tuple(RecordField)),
    ),
    RuleDraft(
        name="Partial Match - 2% Amount Variance",
        description="Matches records with same reference number and amount within ±2%",
        priority=80,
        config=PartialMatchConfig(
            required_fields=(RecordField.REFERENCE_NUMBER,),
            amount_variance_percent=Decimal(2),
            date_variance_days=0,
        ),
    ),
    RuleDraft(
        name="Partial Match - 5% Amount Variance",
        description="Matches records with same reference number and amount within ±5%",
        priority=70,
        enabled=False,
        config=PartialMatchConfig(
            required_fields=(RecordField.REFERENCE_NUMBER,),
            amount_variance_percent=Decimal(5),
            date_variance_days=1,
        ),
    ),
    RuleDraft(
        name="Reference Number Match",
        description="Matches records by reference number only",
        priority=60,
        config=ReferenceMatchConfig(),
    ),
)


def rules_version(repository: MatchingRuleRepository) -> str:
    """ISO timestamp of the latest rule change, stamped on every job attempt."""

    latest = repository.latest_update()
    return latest.isoformat() if latest is not None else INITIAL_RULES_VERSION


class RuleService:
    def __init__(self, unit_of_work_factory: UnitOfWorkFactory, rule_cache: RuleCache) -> None:
        self._uow_factory = unit_of_work_factory
        self._rule_cache = rule_cache

    def list_rules(
        self, *, enabled: bool | None = None, rule_type: RuleType | None = None
    ) -> list[MatchingRule]:
        with self._uow_factory() as uow:
            rules = uow.repositories.rules.list_rules()
        if enabled is not None:
            rules = [rule for rule in rules if rule.enabled is enabled]
        if rule_type is not None:
            rules = [rule for rule in rules if rule.rule_type is rule_type]
        return sort_by_priority(rules)

    def get(self, rule_id: UUID) -> MatchingRule:
        with self._uow_factory() as uow:
            return _require(uow.repositories.rules, rule_id)

    def create(self, draft: RuleDraft, *, actor_id: str) -> MatchingRule:
        with self._uow_factory() as uow:
            repository = uow.repositories.rules
            if repository.get_by_name(draft.name) is not None:
                raise DuplicateRuleName(draft.name)
            rule = MatchingRule(
                name=draft.name,
                config=draft.config,
                priority=draft.priority,
                enabled=draft.enabled,
                description=draft.description,
                created_by=actor_id,
                updated_by=actor_id,
            )
            repository.add(rule)
            uow.commit()
        self._rule_cache.invalidate()
        log.info("Created matching rule %r (priority %d)", rule.name, rule.priority)
        return rule

    def update(self, rule_id: UUID, changes: RuleChanges, *, actor_id: str) -> MatchingRule:
        with self._uow_factory() as uow:
            repository = uow.repositories.rules
            rule = _require(repository, rule_id)
            if changes.name is not None and changes.name != rule.name:
                if repository.get_by_name(changes.name) is not None:
                    raise DuplicateRuleName(changes.name)
                rule.name = changes.name
            if changes.config is not None:
                rule.config = changes.config
            if changes.priority is not None:
                rule.priority = changes.priority
            if changes.enabled is not None:
                rule.enabled = changes.enabled
            if changes.description is not None:
                rule.description = changes.description
            rule.touch(actor_id)
            uow.commit()
        self._rule_cache.invalidate()
        log.info("Updated matching rule %r", rule.name)
        return rule

    def delete(self, rule_id: UUID) -> None:
        with self._uow_factory() as uow:
            repository = uow.repositories.rules
            rule = _require(repository, rule_id)
            repository.remove(rule)
            uow.commit()
        self._rule_cache.invalidate()
        log.info("Deleted matching rule %r", rule.name)

    def toggle(self, rule_id: UUID, *, actor_id: str) -> MatchingRule:
        with self._uow_factory() as uow:
            rule = _require(uow.repositories.rules, rule_id)
            rule.enabled = not rule.enabled
            rule.touch(actor_id)
            uow.commit()
        self._rule_cache.invalidate()
        log.info("Rule %r %s", rule.name, "enabled" if rule.enabled else "disabled")
        return rule

    def reorder(self, priorities: Mapping[UUID, int], *, actor_id: str) -> list[MatchingRule]:
        """Assign new priorities; nothing is written if any rule is unknown."""

        with self._uow_factory() as uow:
            repository = uow.repositories.rules
            now = utcnow()
            changed: list[MatchingRule] = []
            for rule_id, priority in priorities.items():
                rule = _require(repository, rule_id)
                rule.priority = priority
                rule.touch(actor_id, now=now)
                changed.append(rule)
            uow.commit()
        self._rule_cache.invalidate()
        return sort_by_priority(changed)

    def seed_default_rules(self, *, actor_id: str | None = None) -> int:
        """Install the default rule set into an empty store."""

        with self._uow_factory() as uow:
            repository = uow.repositories.rules
            existing = repository.list_rules()
            if existing:
                log.info("Found %d existing matching rules", len(existing))
                return 0
            for draft in DEFAULT_RULES:
                repository.add(
                    MatchingRule(
                        name=draft.name,
                        config=draft.config,
                        priority=draft.priority,
                        enabled=draft.enabled,
                        description=draft.description,
                        created_by=actor_id,
                        updated_by=actor_id,
                    )
                )
            uow.commit()
        self._rule_cache.invalidate()
        log.info("%d default matching rules created", len(DEFAULT_RULES))
        return len(DEFAULT_RULES)

    def rules_version(self) -> str:
        with self._uow_factory() as uow:
            return rules_version(uow.repositories.rules)


def _require(repository: MatchingRuleRepository, rule_id: UUID) -> MatchingRule:
    rule = repository.get(rule_id)
    if rule is None:
        raise RuleNotFound(rule_id)
    return rule
