"""Adjacency normalization and read-only graph diagnostics.

Every function here is pure: inputs are never mutated and data-quality
problems are reported as values, not raised.
"""
from __future__ import annotations

import hashlib
import json
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Mapping

Adjacency = dict[str, list[str]]


def slugify(value: Any) -> str | None:
    """Lower-cased, stripped slug; ``None`` for non-strings and blanks."""
    if not isinstance(value, str):
        return None
    slug = value.strip().lower()
    return slug or None


def _targets(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    out = []
    for item in value:
        slug = slugify(item)
        if slug is not None:
            out.append(slug)
    return out


def normalize_adjacency(raw: Mapping[str, Any]) -> Adjacency:
    """Canonical adjacency: lowercase ids, every referenced id is a node,
    no self-loops, neighbor lists deduped and sorted.

    Malformed entries are coerced rather than rejected.
    """
    # Pass 1: collect every id seen as key or value.
    nodes: set[str] = set()
    sources: list[tuple[str, list[str]]] = []
    for key, value in (raw or {}).items():
        src = slugify(key)
        if src is None:
            continue
        targets = _targets(value)
        nodes.add(src)
        nodes.update(targets)
        sources.append((src, targets))

    # Pass 2: build. Keys differing only by case are merged.
    merged: dict[str, set[str]] = {n: set() for n in nodes}
    for src, targets in sources:
        merged[src].update(t for t in targets if t != src)
    return {n: sorted(merged[n]) for n in sorted(merged)}


def count_self_loops(raw: Mapping[str, Any]) -> int:
    count = 0
    for key, value in (raw or {}).items():
        src = slugify(key)
        if src is None:
            continue
        count += sum(1 for t in set(_targets(value)) if t == src)
    return count


def connected_components(adj: Mapping[str, list[str]]) -> list[list[str]]:
    undirected: dict[str, set[str]] = {n: set() for n in adj}
    for u, vs in adj.items():
        for v in vs:
            undirected.setdefault(v, set()).add(u)
            undirected[u].add(v)

    seen: set[str] = set()
    comps: list[list[str]] = []
    for start in sorted(undirected):
        if start in seen:
            continue
        seen.add(start)
        stack = [start]
        comp: list[str] = []
        while stack:
            u = stack.pop()
            comp.append(u)
            for v in sorted(undirected[u]):
                if v not in seen:
                    seen.add(v)
                    stack.append(v)
        comps.append(sorted(comp))
    return sorted(comps, key=lambda c: (-len(c), c[0]))


def largest_component_ratio(
    adj: Mapping[str, list[str]], components: list[list[str]] | None = None
) -> float:
    comps = connected_components(adj) if components is None else components
    largest = max((len(c) for c in comps), default=0)
    return largest / max(1, len(adj))


def degree_stats(adj: Mapping[str, list[str]]) -> dict[str, float]:
    degs = sorted(len(vs) for vs in adj.values())
    if not degs:
        return {"min": 0, "median": 0, "max": 0, "mean": 0.0, "p90": 0}
    n = len(degs)

    def q(p: float) -> int:
        return degs[min(n - 1, math.floor(p * (n - 1)))]

    return {
        "min": degs[0],
        "median": q(0.5),
        "max": degs[-1],
        "mean": sum(degs) / n,
        "p90": q(0.9),
    }


def degree_histogram(adj: Mapping[str, list[str]]) -> dict[str, int]:
    hist = Counter(len(vs) for vs in adj.values())
    return {str(d): hist[d] for d in sorted(hist)}


def asym_pairs(adj: Mapping[str, list[str]]) -> list[tuple[str, str]]:
    back = {u: set(vs) for u, vs in adj.items()}
    out = []
    for u, vs in adj.items():
        for v in vs:
            if u != v and u not in back.get(v, ()):
                out.append((u, v))
    return sorted(set(out))


def islands(adj: Mapping[str, list[str]]) -> list[str]:
    return sorted(n for n, vs in adj.items() if not vs)


def directed_edge_count(adj: Mapping[str, list[str]]) -> int:
    return sum(len(vs) for vs in adj.values())


def undirected_edge_count(adj: Mapping[str, list[str]]) -> int:
    seen: set[tuple[str, str]] = set()
    for u, vs in adj.items():
        for v in vs:
            if u != v:
                seen.add((u, v) if u < v else (v, u))
    return len(seen)


@dataclass(frozen=True)
class CrossClusterRatio:
    cross_edges: int
    total_edges: int
    ratio: float


def cross_cluster_ratio(
    adj: Mapping[str, list[str]], cluster_of: Mapping[str, str]
) -> CrossClusterRatio:
    cross = total = 0
    for u in sorted(adj):
        for v in adj[u]:
            total += 1
            cu, cv = cluster_of.get(u), cluster_of.get(v)
            if cu and cv and cu != cv:
                cross += 1
    return CrossClusterRatio(cross, total, cross / total if total else 0.0)


def stable_graph_hash(adj: Mapping[str, list[str]]) -> str:
    """sha256 over sorted keys and sorted neighbor lists.

    Logically equal graphs hash equal whatever their key or list order.
    """
    canonical = [[k, sorted(adj[k] or [])] for k in sorted(adj)]
    payload = json.dumps(canonical, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Diagnosis:
    adjacency: Adjacency
    nodes: int
    components: list[list[str]]
    largest_component_ratio: float
    degree_stats: dict[str, float]
    degree_histogram: dict[str, int]
    cross_cluster: CrossClusterRatio
    asym_pairs: list[tuple[str, str]]
    islands: list[str]
    self_loops: int
    content_hash: str
    timings: dict[str, float] = field(default_factory=dict, compare=False)


def diagnose(
    raw: Mapping[str, Any], cluster_of: Mapping[str, str] | None = None
) -> Diagnosis:
    adj = normalize_adjacency(raw)
    comps = connected_components(adj)
    return Diagnosis(
        adjacency=adj,
        nodes=len(adj),
        components=comps,
        largest_component_ratio=largest_component_ratio(adj, comps),
        degree_stats=degree_stats(adj),
        degree_histogram=degree_histogram(adj),
        cross_cluster=cross_cluster_ratio(adj, cluster_of or {}),
        asym_pairs=asym_pairs(adj),
        islands=islands(adj),
        self_loops=count_self_loops(raw),
        content_hash=stable_graph_hash(adj),
    )
