"""Per-record classification of a batch against the active rule set.

For every candidate, in input order:

1) duplicate detection (short-circuits rule evaluation)
2) rules in priority order; the first match wins
3) the verdict is persisted and followed by exactly one audit entry

A failure while handling one candidate is rolled back to a savepoint and turned
into a ``Failed`` verdict; the run itself never aborts because of one record.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tallyman.domain.audit_ledger import AuditLedger
from tallyman.domain.model import (
    DUPLICATE_DETECTION,
    ERROR_DURING_PROCESSING,
    NO_MATCHING_RULE,
    MatchStatus,
    ReconciliationResult,
)

from .duplicates import (
    DuplicateAcrossJobs,
    DuplicateDetector,
    DuplicateWithinBatch,
    DuplicateWithinJob,
    NotDuplicate,
)
from .evaluator import Match, RuleEvaluator

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from uuid import UUID

    from tallyman.domain.model import BatchScope, MatchingRule, Record
    from tallyman.domain.ports import ReconciliationUnitOfWork

    from .rule_cache import RuleCache

log = logging.getLogger(__name__)

type ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True, slots=True)
class RecordError:
    record_id: UUID
    transaction_id: str
    error: str


@dataclass(slots=True)
class ReconciliationOutcome:
    results: list[ReconciliationResult] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def counts(self) -> Counter[MatchStatus]:
        return Counter(result.status for result in self.results)


class ReconciliationEngine:
    def __init__(self, rule_cache: RuleCache) -> None:
        self._rule_cache = rule_cache

    @property
    def rule_cache(self) -> RuleCache:
        return self._rule_cache

    def reconcile(
        self,
        uow: ReconciliationUnitOfWork,
        scope: BatchScope,
        candidates: Sequence[Record],
        actor_id: str,
        on_progress: ProgressCallback | None = None,
        *,
        run: int = 0,
        rules: Sequence[MatchingRule] | None = None,
    ) -> ReconciliationOutcome:
        """Classify ``candidates`` in order and persist one result per candidate.

        Callers already inside a write transaction pass the ``rules`` snapshot
        they loaded beforehand; refreshing the cache from within the
        transaction would wait on the transaction's own lock.
        """

        if rules is None:
            rules = self._rule_cache.get_active_rules()
        repositories = uow.repositories
        detector = DuplicateDetector(repositories.records)
        detector.begin_batch()
        evaluator = RuleEvaluator(repositories.records)
        ledger = AuditLedger(repositories.audit_logs)
        outcome = ReconciliationOutcome()
        total = len(candidates)

        log.info(
            "Reconciling %d records of job %s (attempt %d) with %d rules",
            total,
            scope.job_id,
            scope.attempt,
            len(rules),
        )
        for index, candidate in enumerate(candidates, start=1):
            try:
                with uow.savepoint():
                    result = self._classify(candidate, scope, run, rules, detector, evaluator)
                    repositories.results.add(result)
                    ledger.record_reconciliation(result, actor_id)
            except Exception as exc:
                log.exception("Error reconciling record %s", candidate.transaction_id)
                outcome.errors.append(
                    RecordError(
                        record_id=candidate.id,
                        transaction_id=candidate.transaction_id,
                        error=str(exc),
                    )
                )
                result = _failed(candidate, scope, run, str(exc))
                repositories.results.add(result)
                ledger.record_reconciliation(result, actor_id)
            outcome.results.append(result)
            if on_progress is not None:
                on_progress(index, total)
        return outcome

    def _classify(
        self,
        candidate: Record,
        scope: BatchScope,
        run: int,
        rules: Sequence[MatchingRule],
        detector: DuplicateDetector,
        evaluator: RuleEvaluator,
    ) -> ReconciliationResult:
        match detector.classify(candidate, scope):
            case NotDuplicate():
                pass
            case DuplicateWithinBatch(reason=reason):
                return _duplicate(candidate, scope, run, None, reason)
            case (
                DuplicateAcrossJobs(existing=existing, reason=reason)
                | DuplicateWithinJob(existing=existing, reason=reason)
            ):
                return _duplicate(candidate, scope, run, existing, reason)

        for rule in rules:
            verdict = evaluator.apply(rule, candidate, scope)
            if isinstance(verdict, Match):
                return ReconciliationResult(
                    job_id=scope.job_id,
                    attempt=scope.attempt,
                    run=run,
                    record_id=candidate.id,
                    uploaded_record=candidate.snapshot(),
                    system_record=verdict.system_record.snapshot(),
                    status=verdict.status,
                    mismatches=list(verdict.mismatches),
                    matched_rule=rule.name,
                    confidence=verdict.confidence,
                )

        return ReconciliationResult(
            job_id=scope.job_id,
            attempt=scope.attempt,
            run=run,
            record_id=candidate.id,
            uploaded_record=candidate.snapshot(),
            status=MatchStatus.NOT_MATCHED,
            matched_rule=NO_MATCHING_RULE,
        )


def _failed(candidate: Record, scope: BatchScope, run: int, message: str) -> ReconciliationResult:
    return ReconciliationResult(
        job_id=scope.job_id,
        attempt=scope.attempt,
        run=run,
        record_id=candidate.id,
        uploaded_record=candidate.snapshot(),
        status=MatchStatus.FAILED,
        matched_rule=ERROR_DURING_PROCESSING,
        error_message=message,
    )


def _duplicate(
    candidate: Record, scope: BatchScope, run: int, existing: Record | None, reason: str
) -> ReconciliationResult:
    return ReconciliationResult(
        job_id=scope.job_id,
        attempt=scope.attempt,
        run=run,
        record_id=candidate.id,
        uploaded_record=candidate.snapshot(),
        system_record=None if existing is None else existing.snapshot(),
        status=MatchStatus.DUPLICATE,
        matched_rule=DUPLICATE_DETECTION,
        duplicate_reason=reason,
    )
