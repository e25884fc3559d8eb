from __future__ import annotations

import pytest

from geolink.fairness import (
    REASON_NO_REPLACEMENT,
    Removal,
    Substitution,
    gini,
    inbound_counts,
    inbound_histogram,
    plan_metrics,
    rebalance,
)
from geolink.scoring import ScoredCandidate


def _cands(*targets: str) -> list[ScoredCandidate]:
    return [
        ScoredCandidate(
            target=t,
            score=float(len(targets) - i),
            is_reciprocal=True,
            same_cluster=True,
            distance_km=None,
        )
        for i, t in enumerate(targets)
    ]


class TestGini:
    def test_empty_and_all_zero(self) -> None:
        assert gini([]) == 0.0
        assert gini([0, 0, 0]) == 0.0

    def test_equal_distribution_is_zero(self) -> None:
        assert gini([5, 5, 5]) == pytest.approx(0.0)

    def test_concentrated_distribution(self) -> None:
        assert gini([0, 0, 0, 10]) == pytest.approx(0.75)

    def test_order_does_not_matter(self) -> None:
        assert gini([3, 1, 2]) == gini([1, 2, 3])


def test_inbound_counts_and_histogram() -> None:
    plan = {"a": ["x", "y"], "b": ["x"], "c": []}

    assert inbound_counts(plan) == {"x": 2, "y": 1}
    assert inbound_histogram(plan) == {"1": 1, "2": 1}
    assert plan_metrics(plan) == {"totalLinks": 3, "gini": round(gini([2, 1]), 4)}


def test_five_sources_over_cap_two_are_substituted() -> None:
    plan = {f"s{i}": ["x"] for i in range(1, 6)}
    candidates = {f"s{i}": _cands("x", f"y{i}") for i in range(1, 6)}
    adj = {f"s{i}": ["x", f"y{i}"] for i in range(1, 6)}

    audit = rebalance(plan, candidates, adj, cap=2, neighbors_min=1, neighbors_max=6)

    assert len(audit.substitutions) + len(audit.removals) == 3
    assert inbound_counts(audit.plan)["x"] <= 2
    assert audit.substitutions == [
        Substitution("s1", None, "x", "y1"),
        Substitution("s2", None, "x", "y2"),
        Substitution("s3", None, "x", "y3"),
    ]
    assert audit.cap_used == 2
    assert audit.before == {"totalLinks": 5, "gini": 0.0}
    assert audit.after["totalLinks"] == 5
    assert audit.after["gini"] > audit.before["gini"]


def test_drops_links_when_no_replacement_and_above_min() -> None:
    plan = {f"s{i}": ["x", f"z{i}"] for i in range(1, 6)}
    candidates = {f"s{i}": _cands("x", f"z{i}") for i in range(1, 6)}
    adj = {f"s{i}": ["x", f"z{i}"] for i in range(1, 6)}

    audit = rebalance(plan, candidates, adj, cap=2, neighbors_min=1)

    assert audit.substitutions == []
    assert [r.source for r in audit.removals] == ["s1", "s2", "s3"]
    assert all(r.reason == REASON_NO_REPLACEMENT for r in audit.removals)
    assert audit.plan["s1"] == ["z1"]
    assert inbound_counts(audit.plan)["x"] == 2


def test_leaves_edge_when_at_minimum() -> None:
    plan = {f"s{i}": ["x"] for i in range(1, 6)}
    candidates = {f"s{i}": _cands("x") for i in range(1, 6)}

    audit = rebalance(plan, candidates, {}, cap=2, neighbors_min=1)

    assert audit.substitutions == [] and audit.removals == []
    assert audit.plan == plan


def test_best_connected_sources_are_visited_first() -> None:
    plan = {"quiet": ["x"], "busy": ["x"], "mid": ["x"]}
    candidates = {key: _cands("x", f"alt-{key}") for key in plan}
    adj = {"quiet": ["x"], "busy": ["x", "p", "q", "r"], "mid": ["x", "p"]}

    audit = rebalance(plan, candidates, adj, cap=1, neighbors_min=1)

    assert [s.source for s in audit.substitutions] == ["busy", "mid"]
    assert audit.plan["quiet"] == ["x"]


def test_replacement_must_be_under_cap() -> None:
    plan = {"a": ["x"], "b": ["x"], "c": ["busy"], "d": ["busy"]}
    candidates = {"a": _cands("x", "busy", "free"), "b": _cands("x", "busy", "free")}

    audit = rebalance(plan, candidates, {}, cap=2, neighbors_min=1)

    # x and busy both sit exactly at the cap
    assert audit.substitutions == []

    audit = rebalance(plan, candidates, {}, cap=1, neighbors_min=1)

    swapped = {
        s.source: s.to_target for s in audit.substitutions if s.from_target == "x"
    }
    assert swapped == {"a": "free"}


def test_service_keys_are_reported_per_service() -> None:
    plan = {"plumbing/a": ["x"], "plumbing/b": ["x"]}
    candidates = {key: _cands("x", "y") for key in plan}

    audit = rebalance(plan, candidates, {}, cap=1, neighbors_min=1)

    assert audit.substitutions[0].as_dict() == {
        "source": "a",
        "service": "plumbing",
        "from": "x",
        "to": "y",
    }


def test_dynamic_cap_when_none_given() -> None:
    plan = {"a": ["x"], "b": ["x"], "c": ["x"], "d": ["y"]}
    candidates = {key: _cands("x", f"alt-{key}") for key in plan}

    audit = rebalance(plan, candidates, {}, cap=None, neighbors_min=1)

    # inbound x=3, y=1: mean 2, stddev 1 -> cap 3, nothing to do
    assert audit.cap_used == 3
    assert audit.substitutions == []


def test_input_plan_is_not_mutated() -> None:
    plan = {f"s{i}": ["x"] for i in range(1, 4)}
    candidates = {f"s{i}": _cands("x", f"y{i}") for i in range(1, 4)}

    rebalance(plan, candidates, {}, cap=1, neighbors_min=1)

    assert plan == {"s1": ["x"], "s2": ["x"], "s3": ["x"]}


def test_removal_as_dict() -> None:
    assert Removal("a", None, "x").as_dict() == {
        "source": "a",
        "service": None,
        "removed": "x",
        "reason": REASON_NO_REPLACEMENT,
    }


def test_lists_longer_than_max_keep_every_link_accounted_for() -> None:
    plan = {"s": ["a", "b", "c", "d"], "t": ["a"], "u": ["a"]}
    candidates = {"s": _cands("a", "b", "c", "d"), "t": _cands("a"), "u": _cands("a")}

    audit = rebalance(plan, candidates, {}, cap=1, neighbors_min=1, neighbors_max=2)

    assert audit.plan["s"] == ["b", "c", "d"]
    assert [r.removed for r in audit.removals] == ["a"]
    assert audit.after["totalLinks"] + len(audit.removals) == audit.before["totalLinks"]


def test_under_cap_plan_with_long_lists_is_returned_unchanged() -> None:
    plan = {"s": ["a", "b", "c", "d"]}

    candidates = {"s": _cands("a", "b", "c", "d")}

    audit = rebalance(plan, candidates, {}, cap=5, neighbors_max=2)

    assert audit.plan == plan
    assert audit.removals == [] and audit.substitutions == []
    assert audit.after["totalLinks"] == audit.before["totalLinks"] == 4
