"""Post-hoc inbound fairness audit and rebalancing of a link plan."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable, Mapping, Sequence

from .planner import InboundState, dynamic_cap, split_plan_key
from .scoring import ScoredCandidate
from .util import log_event, setup_json_logger

_LOG = setup_json_logger("geolink.fairness")

REASON_NO_REPLACEMENT = "over-cap-no-replacement"


def gini(values: Iterable[float]) -> float:
    """Gini coefficient of a non-negative distribution, in ``[0, 1]``."""
    v = sorted(float(x) for x in values if x >= 0)
    n = len(v)
    total = sum(v)
    if n == 0 or total == 0:
        return 0.0
    cumulative = 0.0
    area = 0.0
    for x in v:
        cumulative += x
        area += cumulative
    g = (n + 1 - 2 * area / total) / n
    return min(1.0, max(0.0, g))


def inbound_counts(plan: Mapping[str, Sequence[str]]) -> dict[str, int]:
    return InboundState.from_plan(plan).snapshot()


def inbound_histogram(plan: Mapping[str, Sequence[str]]) -> dict[str, int]:
    hist: dict[int, int] = {}
    for count in inbound_counts(plan).values():
        hist[count] = hist.get(count, 0) + 1
    return {str(k): hist[k] for k in sorted(hist)}


def plan_metrics(plan: Mapping[str, Sequence[str]]) -> dict[str, float]:
    counts = list(inbound_counts(plan).values())
    return {"totalLinks": sum(counts), "gini": round(gini(counts), 4)}


@dataclass(frozen=True)
class Substitution:
    source: str
    service: str | None
    from_target: str
    to_target: str

    def as_dict(self) -> dict:
        return {
            "source": self.source,
            "service": self.service,
            "from": self.from_target,
            "to": self.to_target,
        }


@dataclass(frozen=True)
class Removal:
    source: str
    service: str | None
    removed: str
    reason: str = REASON_NO_REPLACEMENT

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class AuditResult:
    plan: dict[str, list[str]]
    cap_used: int
    substitutions: list[Substitution]
    removals: list[Removal]
    before: dict[str, float]
    after: dict[str, float]


def rebalance(
    plan: Mapping[str, Sequence[str]],
    candidates: Mapping[str, Sequence[ScoredCandidate]],
    adj: Mapping[str, Sequence[str]],
    *,
    cap: int | None = None,
    neighbors_min: int = 3,
    neighbors_max: int = 6,
) -> AuditResult:
    """Bring every over-subscribed target back under ``cap``.

    For each over-cap target (most inbound first) its sources are visited,
    the best-connected suburbs first. A source either swaps the target for
    its best unused candidate that is itself under cap, drops the link when it
    keeps more than ``neighbors_min`` links, or keeps it unchanged.

    ``plan`` is not modified; the rebalanced copy is returned.
    """
    work = {key: list(plan[key]) for key in sorted(plan)}
    state = InboundState.from_plan(work)
    before = plan_metrics(work)
    if cap is None:
        cap = dynamic_cap(state.counts.values(), neighbors_max)

    over = sorted(
        (t for t, n in state.counts.items() if n > cap),
        key=lambda t: (-state.get(t), t),
    )
    substitutions: list[Substitution] = []
    removals: list[Removal] = []

    for target in over:
        sources = sorted(
            (key for key in work if target in work[key]),
            key=lambda k: (-len(adj.get(split_plan_key(k)[1], ())), k),
        )
        for key in sources:
            if state.get(target) <= cap:
                break
            service, suburb = split_plan_key(key)
            current = work[key]
            replacement = None
            for cand in candidates.get(key, ()):
                if cand.target == target or cand.target in current:
                    continue
                if state.get(cand.target) >= cap:
                    continue
                replacement = cand.target
                break

            idx = current.index(target)
            if replacement is not None:
                current[idx] = replacement
                state.add(target, -1)
                state.add(replacement)
                substitutions.append(Substitution(suburb, service, target, replacement))
            elif len(current) > neighbors_min:
                del current[idx]
                state.add(target, -1)
                removals.append(Removal(suburb, service, target))

    after = plan_metrics(work)
    log_event(
        _LOG,
        "fairness.rebalance.done",
        cap=cap,
        over_cap_targets=len(over),
        substitutions=len(substitutions),
        removals=len(removals),
        gini_before=before["gini"],
        gini_after=after["gini"],
    )
    return AuditResult(
        plan=work,
        cap_used=cap,
        substitutions=substitutions,
        removals=removals,
        before=before,
        after=after,
    )
