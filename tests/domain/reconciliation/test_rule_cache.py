from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tallyman.domain.errors import RuleStoreUnavailable
from tallyman.domain.reconciliation import RuleCache, StaleRuleSnapshotWarning, sort_by_priority
from tests.helpers.fakes import make_rule


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _Loader:
    def __init__(self, rules: list[object]) -> None:
        self.rules = rules
        self.calls = 0
        self.error: Exception | None = None

    def __call__(self) -> list[object]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.rules)


def test_rules_are_ordered_by_priority_then_newest() -> None:
    older = make_rule("b-older", priority=5, created_at=datetime(2024, 1, 1, tzinfo=UTC))
    newer = make_rule("a-newer", priority=5, created_at=datetime(2024, 2, 1, tzinfo=UTC))
    top = make_rule("z-top", priority=10)

    assert [rule.name for rule in sort_by_priority([older, top, newer])] == [
        "z-top",
        "a-newer",
        "b-older",
    ]


def test_equal_priority_and_timestamp_break_on_name() -> None:
    stamp = datetime(2024, 1, 1, tzinfo=UTC)
    rules = [make_rule(name, created_at=stamp) for name in ("c", "a", "b")]

    assert [rule.name for rule in sort_by_priority(rules)] == ["a", "b", "c"]


def test_snapshot_served_within_ttl_and_disabled_rules_dropped() -> None:
    clock = _Clock()
    loader = _Loader([make_rule("on"), make_rule("off", enabled=False)])
    cache = RuleCache(loader, ttl=timedelta(seconds=60), clock=clock)  # type: ignore[arg-type]

    first = cache.get_active_rules()
    clock.now = 59
    second = cache.get_active_rules()

    assert [rule.name for rule in first] == ["on"]
    assert second is first
    assert loader.calls == 1

    clock.now = 60
    cache.get_active_rules()
    assert loader.calls == 2


def test_invalidate_forces_reload() -> None:
    loader = _Loader([make_rule()])
    cache = RuleCache(loader, clock=_Clock())  # type: ignore[arg-type]
    cache.get_active_rules()

    cache.invalidate()
    cache.get_active_rules()

    assert loader.calls == 2


def test_unreachable_store_serves_previous_snapshot_with_warning() -> None:
    clock = _Clock()
    loader = _Loader([make_rule("kept")])
    cache = RuleCache(loader, ttl=timedelta(seconds=1), clock=clock)  # type: ignore[arg-type]
    cache.get_active_rules()
    loader.error = ConnectionError("down")
    clock.now = 5

    with pytest.warns(StaleRuleSnapshotWarning):
        rules = cache.get_active_rules()

    assert [rule.name for rule in rules] == ["kept"]
    # a stale snapshot is retried on every call until the store answers again
    loader.error = None
    loader.rules = [make_rule("fresh")]
    assert [rule.name for rule in cache.get_active_rules()] == ["fresh"]


def test_unreachable_store_without_snapshot_raises() -> None:
    loader = _Loader([])
    loader.error = ConnectionError("down")
    cache = RuleCache(loader)  # type: ignore[arg-type]

    with pytest.raises(RuleStoreUnavailable):
        cache.get_active_rules()
    assert not cache.has_snapshot
