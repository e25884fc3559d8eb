from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Mapping

from .config import ScoringWeights
from .datasets import Coordinates

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class ScoredCandidate:
    target: str
    score: float
    is_reciprocal: bool
    same_cluster: bool
    distance_km: float | None

    def as_dict(self) -> dict:
        return {
            "targetSlug": self.target,
            "score": self.score,
            "isReciprocal": self.is_reciprocal,
            "sameCluster": self.same_cluster,
            "distanceKm": self.distance_km,
        }


def haversine_km(a: Coordinates | None, b: Coordinates | None) -> float | None:
    if a is None or b is None:
        return None
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def max_degree(adj: Mapping[str, list[str]]) -> int:
    return max((len(vs) for vs in adj.values()), default=0)


def score_candidates(
    node: str,
    adj: Mapping[str, list[str]],
    *,
    cluster_of: Mapping[str, str],
    coords: Mapping[str, Coordinates],
    weights: ScoringWeights,
    enforce_reciprocity: bool = False,
    graph_max_degree: int | None = None,
) -> list[ScoredCandidate]:
    """Score every neighbor of ``node``; best first, ties by slug.

    The hub term is ``-(degree / max degree)`` so well-linked targets are
    pushed down.
    """
    top = max(1, max_degree(adj) if graph_max_degree is None else graph_max_degree)
    scale = max(1.0, weights.distance_scale_km)
    own_cluster = cluster_of.get(node) or ""
    own_coords = coords.get(node)

    scored = []
    for target in adj.get(node, []):
        if target == node:
            continue
        reciprocal = node in adj.get(target, ())
        if enforce_reciprocity and not reciprocal:
            continue
        other_cluster = cluster_of.get(target) or ""
        same_cluster = bool(own_cluster) and own_cluster == other_cluster
        distance = haversine_km(own_coords, coords.get(target))
        distance_score = 0.0 if distance is None else max(0.0, 1.0 - distance / scale)
        hub_score = -(len(adj.get(target, ())) / top)
        score = (
            weights.cluster * (1.0 if same_cluster else 0.0)
            + weights.reciprocal * (1.0 if reciprocal else 0.0)
            + weights.distance * distance_score
            + weights.hub * hub_score
        )
        scored.append(
            ScoredCandidate(
                target=target,
                score=score,
                is_reciprocal=reciprocal,
                same_cluster=same_cluster,
                distance_km=distance,
            )
        )
    scored.sort(key=lambda c: (-c.score, c.target))
    return scored


def score_all(
    adj: Mapping[str, list[str]],
    *,
    cluster_of: Mapping[str, str],
    coords: Mapping[str, Coordinates],
    weights: ScoringWeights,
    enforce_reciprocity: bool = False,
) -> dict[str, list[ScoredCandidate]]:
    top = max_degree(adj)
    return {
        node: score_candidates(
            node,
            adj,
            cluster_of=cluster_of,
            coords=coords,
            weights=weights,
            enforce_reciprocity=enforce_reciprocity,
            graph_max_degree=top,
        )
        for node in sorted(adj)
    }
