"""TTL-cached, priority-ordered snapshot of the enabled matching rules."""

from __future__ import annotations

import logging
import threading
import time
import warnings
from datetime import timedelta
from typing import TYPE_CHECKING

from tallyman.domain.errors import RuleStoreUnavailable

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from tallyman.domain.model import MatchingRule

log = logging.getLogger(__name__)

DEFAULT_RULE_CACHE_TTL = timedelta(minutes=5)

type RuleLoader = Callable[[], Iterable[MatchingRule]]


class StaleRuleSnapshotWarning(RuntimeWarning):
    """The rule store could not be reached; the previous snapshot is served."""


def sort_by_priority(rules: Iterable[MatchingRule]) -> list[MatchingRule]:
    """Highest priority first.

    Ties break on the most recently created rule, then on the rule name so the
    order never depends on how the store returned the rows.
    """

    ordered = sorted(rules, key=lambda rule: rule.name)
    ordered.sort(key=lambda rule: (rule.priority, rule.created_at), reverse=True)
    return ordered


def ordered_rules(rules: Iterable[MatchingRule]) -> tuple[MatchingRule, ...]:
    return tuple(sort_by_priority(rule for rule in rules if rule.enabled))


class RuleCache:
    """Owned by the engine's construction context and shared across workers."""

    def __init__(
        self,
        loader: RuleLoader,
        *,
        ttl: timedelta = DEFAULT_RULE_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl_seconds = ttl.total_seconds()
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: tuple[MatchingRule, ...] | None = None
        self._loaded_at: float | None = None
        self._stale = False

    @property
    def has_snapshot(self) -> bool:
        return self._snapshot is not None

    def get_active_rules(self) -> tuple[MatchingRule, ...]:
        with self._lock:
            now = self._clock()
            if self._snapshot is not None and self._is_fresh(now):
                return self._snapshot
            try:
                snapshot = ordered_rules(self._loader())
            except Exception as exc:
                if self._snapshot is None:
                    raise RuleStoreUnavailable(
                        f"Matching rules could not be loaded: {exc}"
                    ) from exc
                log.warning("Rule store unavailable, serving previous snapshot: %s", exc)
                warnings.warn(
                    f"Rule store unavailable, serving previous rule snapshot: {exc}",
                    StaleRuleSnapshotWarning,
                    stacklevel=2,
                )
                self._stale = True
                return self._snapshot
            self._snapshot = snapshot
            self._loaded_at = now
            self._stale = False
            log.debug("Loaded %d active matching rules", len(snapshot))
            return snapshot

    def invalidate(self) -> None:
        """Force the next ``get_active_rules`` call to hit the store."""

        with self._lock:
            self._loaded_at = None

    def _is_fresh(self, now: float) -> bool:
        if self._loaded_at is None or self._stale:
            return False
        return now - self._loaded_at < self._ttl_seconds
