"""Rule-based reconciliation of uploaded records.

Layered flow per record:
1) duplicate detection against the run's seen set and the persisted records
2) rule evaluation in priority order from a TTL-cached rule snapshot
3) one persisted verdict plus one audit entry
"""

from __future__ import annotations

from .duplicates import (
    DuplicateAcrossJobs,
    DuplicateDetector,
    DuplicateKind,
    DuplicateVerdict,
    DuplicateWithinBatch,
    DuplicateWithinJob,
    NotDuplicate,
)
from .engine import ReconciliationEngine, ReconciliationOutcome, RecordError
from .evaluator import Match, NoMatch, RuleEvaluator, Verdict, amount_variance, format_variance
from .rule_cache import (
    DEFAULT_RULE_CACHE_TTL,
    RuleCache,
    RuleLoader,
    StaleRuleSnapshotWarning,
    ordered_rules,
    sort_by_priority,
)

__all__ = [
    "DEFAULT_RULE_CACHE_TTL",
    "DuplicateAcrossJobs",
    "DuplicateDetector",
    "DuplicateKind",
    "DuplicateVerdict",
    "DuplicateWithinBatch",
    "DuplicateWithinJob",
    "Match",
    "NoMatch",
    "NotDuplicate",
    "ReconciliationEngine",
    "ReconciliationOutcome",
    "RecordError",
    "RuleCache",
    "RuleEvaluator",
    "RuleLoader",
    "StaleRuleSnapshotWarning",
    "Verdict",
    "amount_variance",
    "format_variance",
    "ordered_rules",
    "sort_by_priority",
]
