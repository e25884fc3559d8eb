from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Sequence

from .datasets import Coordinates
from .graph import Adjacency, asym_pairs, islands as find_islands
from .scoring import haversine_km
from .util import log_event, setup_json_logger

_LOG = setup_json_logger("geolink.repair")

RECIPROCITY_ADDED = "reciprocityAdded"
LINKED_ISLAND = "linkedIsland"
ISLAND_ALREADY_LINKED = "islandAlreadyLinked"
ISLAND_UNFIXABLE = "islandUnfixable"


@dataclass(frozen=True)
class Change:
    type: str
    a: str
    b: str | None = None

    def as_dict(self) -> dict:
        out = {"type": self.type, "a": self.a}
        if self.b is not None:
            out["b"] = self.b
        return out


@dataclass(frozen=True)
class RepairResult:
    adjacency: Adjacency
    changes: list[Change]

    @property
    def summary(self) -> dict[str, int]:
        def count(kind: str) -> int:
            return sum(1 for c in self.changes if c.type == kind)

        return {
            "reciprocityAdded": count(RECIPROCITY_ADDED),
            "islandsLinked": count(LINKED_ISLAND),
            "alreadyLinked": count(ISLAND_ALREADY_LINKED),
            "unfixable": count(ISLAND_UNFIXABLE),
        }

    @property
    def unfixable(self) -> list[str]:
        return [c.a for c in self.changes if c.type == ISLAND_UNFIXABLE]


def _nearest(
    node: str, pool: Sequence[str], coords: Mapping[str, Coordinates]
) -> str | None:
    best = None
    best_km = float("inf")
    for other in pool:
        if other == node:
            continue
        km = haversine_km(coords.get(node), coords.get(other))
        if km is not None and km < best_km:
            best, best_km = other, km
    return best


def choose_island_partner(
    node: str,
    adj: Mapping[str, Sequence[str]],
    *,
    cluster_of: Mapping[str, str],
    coords: Mapping[str, Coordinates],
) -> str | None:
    """Nearest same-cluster node, else nearest node, else the first node that
    already has links."""
    everyone = sorted(adj)
    cluster = cluster_of.get(node)
    if cluster:
        same = [n for n in everyone if cluster_of.get(n) == cluster]
        best = _nearest(node, same, coords)
        if best is not None:
            return best
    best = _nearest(node, everyone, coords)
    if best is not None:
        return best
    for other in everyone:
        if other != node and adj.get(other):
            return other
    return None


def auto_repair(
    adj: Mapping[str, Sequence[str]],
    *,
    cluster_of: Mapping[str, str] | None = None,
    coords: Mapping[str, Coordinates] | None = None,
    asym: Sequence[tuple[str, str]] | None = None,
    island_nodes: Sequence[str] | None = None,
) -> RepairResult:
    """Add missing back-edges and link isolated nodes.

    Defects default to what the diagnostics find on ``adj``. The input is not
    mutated; the returned adjacency is deduped and sorted.
    """
    cluster_of = cluster_of or {}
    coords = coords or {}
    work: dict[str, list[str]] = {k: list(v) for k, v in sorted(adj.items())}
    asym = asym_pairs(work) if asym is None else asym
    island_nodes = find_islands(work) if island_nodes is None else island_nodes
    changes: list[Change] = []

    def add_edge(a: str, b: str, kind: str) -> bool:
        if a == b:
            return False
        targets = work.setdefault(a, [])
        work.setdefault(b, [])
        if b in targets:
            return False
        targets.append(b)
        changes.append(Change(kind, a, b))
        return True

    for a, b in sorted(asym):
        add_edge(b, a, RECIPROCITY_ADDED)

    for a in sorted(island_nodes):
        best = choose_island_partner(a, work, cluster_of=cluster_of, coords=coords)
        if best is None:
            changes.append(Change(ISLAND_UNFIXABLE, a))
            log_event(_LOG, "repair.island.unfixable", level=logging.WARNING, node=a)
            continue
        forward = add_edge(a, best, LINKED_ISLAND)
        backward = add_edge(best, a, RECIPROCITY_ADDED)
        if not forward and not backward:
            changes.append(Change(ISLAND_ALREADY_LINKED, a, best))

    repaired = {k: sorted(set(v)) for k, v in sorted(work.items())}
    result = RepairResult(adjacency=repaired, changes=changes)
    log_event(_LOG, "repair.done", **result.summary)
    return result
