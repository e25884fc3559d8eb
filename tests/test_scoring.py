from __future__ import annotations

import pytest

from geolink.config import ScoringWeights
from geolink.datasets import Coordinates
from geolink.scoring import haversine_km, max_degree, score_all, score_candidates


def test_haversine_one_degree_of_longitude_on_the_equator() -> None:
    km = haversine_km(Coordinates(0.0, 0.0), Coordinates(0.0, 1.0))

    assert km == pytest.approx(111.195, rel=1e-3)


def test_haversine_missing_coordinates_is_none() -> None:
    assert haversine_km(None, Coordinates(0.0, 0.0)) is None
    assert haversine_km(Coordinates(1.0, 1.0), Coordinates(1.0, 1.0)) == 0.0


def test_score_components_and_order() -> None:
    adj = {"a": ["b", "c"], "b": ["a"], "c": ["a"]}
    cluster_of = {"a": "north", "b": "north", "c": "south"}

    scored = score_candidates(
        "a", adj, cluster_of=cluster_of, coords={}, weights=ScoringWeights()
    )

    assert [c.target for c in scored] == ["b", "c"]
    # cluster 1.0 + reciprocal 0.5 + hub 0.5 * -(1/2)
    assert scored[0].score == pytest.approx(1.25)
    assert scored[0].same_cluster is True
    assert scored[0].is_reciprocal is True
    assert scored[0].distance_km is None
    assert scored[1].score == pytest.approx(0.25)


def test_ties_broken_by_slug() -> None:
    adj = {"a": ["c", "b"], "b": ["a"], "c": ["a"]}

    scored = score_candidates(
        "a", adj, cluster_of={}, coords={}, weights=ScoringWeights()
    )

    assert [c.target for c in scored] == ["b", "c"]
    assert scored[0].score == scored[1].score


def test_enforce_reciprocity_drops_one_way_candidates() -> None:
    adj = {"a": ["b", "c"], "b": ["a"], "c": []}

    scored = score_candidates(
        "a",
        adj,
        cluster_of={},
        coords={},
        weights=ScoringWeights(),
        enforce_reciprocity=True,
    )

    assert [c.target for c in scored] == ["b"]


def test_nearby_candidate_gets_distance_credit() -> None:
    adj = {"a": ["b", "c"], "b": ["a"], "c": ["a"]}
    coords = {
        "a": Coordinates(0.0, 0.0),
        "b": Coordinates(0.0, 0.05),
        "c": Coordinates(0.0, 1.0),
    }

    scored = score_candidates(
        "a", adj, cluster_of={}, coords=coords, weights=ScoringWeights()
    )

    assert scored[0].target == "b"
    assert scored[0].distance_km == pytest.approx(5.56, rel=1e-2)
    # c is beyond the 10 km scale and gets no distance credit
    assert scored[1].score == pytest.approx(0.5 - 0.25)


def test_score_all_covers_every_node() -> None:
    adj = {"a": ["b"], "b": ["a"], "c": []}

    scored = score_all(adj, cluster_of={}, coords={}, weights=ScoringWeights())

    assert list(scored) == ["a", "b", "c"]
    assert scored["c"] == []
    assert max_degree(adj) == 1


def test_as_dict_uses_report_field_names() -> None:
    adj = {"a": ["b"], "b": ["a"]}

    scored = score_candidates(
        "a", adj, cluster_of={}, coords={}, weights=ScoringWeights()
    )

    assert set(scored[0].as_dict()) == {
        "targetSlug",
        "score",
        "isReciprocal",
        "sameCluster",
        "distanceKm",
    }
