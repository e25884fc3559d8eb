"""Globally fair neighbor selection.

``plan_links`` picks at most ``neighbors_max`` targets per plan key so that no
target collects more than ``cap`` inbound links. Three phases run over keys in
sorted order:

1. bounded round-robin, one pick per key per round, honoring the cap;
2. minimum backfill, which may exceed the cap and records every such pick;
3. optional reciprocity backfill, honoring both ``max`` and the cap.

All shared counters live in an ``InboundState`` passed through the phases.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Iterable, Mapping, Sequence

from .config import DYNAMIC_CAP, LinkPolicy
from .scoring import ScoredCandidate
from .util import log_event, setup_json_logger

_LOG = setup_json_logger("geolink.planner")


def plan_key(service: str | None, suburb: str) -> str:
    return f"{service}/{suburb}" if service else suburb


def split_plan_key(key: str) -> tuple[str | None, str]:
    service, sep, suburb = key.rpartition("/")
    return (service if sep else None), suburb


@dataclass
class InboundState:
    counts: dict[str, int] = field(default_factory=dict)

    def get(self, target: str) -> int:
        return self.counts.get(target, 0)

    def add(self, target: str, delta: int = 1) -> None:
        self.counts[target] = self.counts.get(target, 0) + delta

    def snapshot(self) -> dict[str, int]:
        return {k: v for k, v in sorted(self.counts.items()) if v > 0}

    @classmethod
    def from_plan(cls, plan: Mapping[str, Sequence[str]]) -> "InboundState":
        state = cls()
        for key in sorted(plan):
            for target in plan[key]:
                state.add(target)
        return state


@dataclass(frozen=True)
class Relaxation:
    key: str
    target: str
    inbound: int
    cap: int | None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Shortfall:
    key: str
    selected: int
    required: int

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ReciprocalLink:
    key: str
    target: str

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PlanResult:
    plan: dict[str, list[str]]
    cap: int | None
    inbound: dict[str, int]
    relaxations: list[Relaxation]
    shortfalls: list[Shortfall]
    reciprocity_added: list[ReciprocalLink]
    rounds: int


def dynamic_cap(inbound_values: Iterable[int], fallback: int) -> int:
    """``ceil(mean + stddev)`` of the non-zero inbound counts, at least 1.

    Population standard deviation. ``fallback`` is used when there is no
    inbound link at all.
    """
    values = [v for v in inbound_values if v > 0]
    if not values:
        return max(1, fallback)
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return max(1, math.ceil(mean + math.sqrt(variance)))


def resolve_inbound_cap(
    candidates: Mapping[str, Sequence[ScoredCandidate]], policy: LinkPolicy
) -> int | None:
    cap = policy.inbound_cap
    if cap is None or isinstance(cap, int):
        return cap
    if cap != DYNAMIC_CAP:
        raise ValueError(f"unknown inbound cap policy {cap!r}")
    # Distribution the plan would have with no cap at all.
    unconstrained = InboundState()
    for key in sorted(candidates):
        for cand in candidates[key][: policy.neighbors_max]:
            unconstrained.add(cand.target)
    return dynamic_cap(unconstrained.counts.values(), policy.neighbors_max)


def _under_cap(state: InboundState, target: str, cap: int | None) -> bool:
    return cap is None or state.get(target) < cap


def _round_robin(
    keys: list[str],
    candidates: Mapping[str, Sequence[ScoredCandidate]],
    picks: dict[str, list[str]],
    state: InboundState,
    *,
    neighbors_max: int,
    cap: int | None,
) -> int:
    rounds = 0
    for _ in range(neighbors_max):
        added = 0
        for key in keys:
            chosen = picks[key]
            if len(chosen) >= neighbors_max:
                continue
            for cand in candidates[key]:
                if cand.target in chosen or not _under_cap(state, cand.target, cap):
                    continue
                chosen.append(cand.target)
                state.add(cand.target)
                added += 1
                break
        rounds += 1
        if not added:
            break
    return rounds


def _min_backfill(
    keys: list[str],
    candidates: Mapping[str, Sequence[ScoredCandidate]],
    picks: dict[str, list[str]],
    state: InboundState,
    *,
    neighbors_min: int,
    cap: int | None,
) -> tuple[list[Relaxation], list[Shortfall]]:
    relaxations: list[Relaxation] = []
    shortfalls: list[Shortfall] = []
    for key in keys:
        chosen = picks[key]
        for cand in candidates[key]:
            if len(chosen) >= neighbors_min:
                break
            if cand.target in chosen:
                continue
            chosen.append(cand.target)
            state.add(cand.target)
            relaxations.append(
                Relaxation(key, cand.target, state.get(cand.target), cap)
            )
        if len(chosen) < neighbors_min:
            shortfalls.append(Shortfall(key, len(chosen), neighbors_min))
    return relaxations, shortfalls


def _reciprocity_backfill(
    keys: list[str],
    picks: dict[str, list[str]],
    state: InboundState,
    *,
    neighbors_max: int,
    cap: int | None,
) -> list[ReciprocalLink]:
    added: list[ReciprocalLink] = []
    for key in keys:
        service, source = split_plan_key(key)
        for target in list(picks[key]):
            back_key = plan_key(service, target)
            back = picks.get(back_key)
            if back is None or source in back:
                continue
            if len(back) >= neighbors_max or not _under_cap(state, source, cap):
                continue
            back.append(source)
            state.add(source)
            added.append(ReciprocalLink(back_key, source))
    return added


def plan_links(
    candidates: Mapping[str, Sequence[ScoredCandidate]],
    policy: LinkPolicy,
    *,
    state: InboundState | None = None,
) -> PlanResult:
    """Select a link plan for every key of ``candidates``.

    ``candidates`` must already be ordered best first. Passing ``state`` lets
    a caller seed inbound counts from links planned elsewhere; it is updated
    in place.
    """
    state = InboundState() if state is None else state
    cap = resolve_inbound_cap(candidates, policy)
    keys = sorted(candidates)
    picks: dict[str, list[str]] = {key: [] for key in keys}

    rounds = _round_robin(
        keys, candidates, picks, state, neighbors_max=policy.neighbors_max, cap=cap
    )
    relaxations, shortfalls = _min_backfill(
        keys, candidates, picks, state, neighbors_min=policy.neighbors_min, cap=cap
    )
    reciprocal: list[ReciprocalLink] = []
    if policy.enforce_reciprocity:
        reciprocal = _reciprocity_backfill(
            keys, picks, state, neighbors_max=policy.neighbors_max, cap=cap
        )

    for r in relaxations:
        log_event(
            _LOG,
            "planner.cap.relaxed",
            key=r.key,
            target=r.target,
            inbound=r.inbound,
            cap=r.cap,
        )
    for s in shortfalls:
        log_event(
            _LOG,
            "planner.min.unsatisfiable",
            level=logging.WARNING,
            key=s.key,
            selected=s.selected,
            required=s.required,
        )
    log_event(
        _LOG,
        "planner.done",
        keys=len(keys),
        cap=cap,
        rounds=rounds,
        relaxations=len(relaxations),
        shortfalls=len(shortfalls),
        reciprocity_added=len(reciprocal),
    )

    return PlanResult(
        plan=picks,
        cap=cap,
        inbound=state.snapshot(),
        relaxations=relaxations,
        shortfalls=shortfalls,
        reciprocity_added=reciprocal,
        rounds=rounds,
    )


def expand_candidates(
    scored: Mapping[str, list[ScoredCandidate]], services: Sequence[str]
) -> dict[str, list[ScoredCandidate]]:
    """Per-suburb candidate lists fanned out to ``service/suburb`` plan keys."""
    if not services:
        return {plan_key(None, s): list(c) for s, c in sorted(scored.items())}
    return {
        plan_key(service, suburb): list(cands)
        for service in sorted(services)
        for suburb, cands in sorted(scored.items())
    }
