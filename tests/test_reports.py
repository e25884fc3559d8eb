from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from geolink import reports
from geolink.config import LinkPolicy
from geolink.datasets import Finding, parse_clusters
from geolink.errors import EXIT_REPORT_SCHEMA, ReportSchemaError
from geolink.fairness import rebalance
from geolink.graph import diagnose
from geolink.planner import plan_links
from geolink.repair import auto_repair
from geolink.scoring import ScoredCandidate

GENERATED_AT = "2026-01-01T00:00:00Z"


def _doctor_report(generated_at: str = GENERATED_AT) -> dict:
    diagnosis = diagnose(
        {"a": ["b", "c"], "b": ["a"], "c": []}, {"a": "north", "b": "north"}
    )
    return reports.build_doctor_report(
        diagnosis,
        [Finding("missing-cluster", "c", "c is not assigned to any cluster")],
        input_hashes={"adjacency": "0" * 64},
        timings={"diagnose": 1.23456789, "total": 1.5},
        generated_at=generated_at,
    )


def test_stable_report_rounds_floats_and_sorts_keys() -> None:
    stable = reports.stable_report(
        {"b": 0.1234567891, "a": [1.0, (2, 3)], "c": -0.0000001}
    )

    assert stable == {"a": [1.0, [2, 3]], "b": 0.123457, "c": 0.0}
    assert list(stable) == ["a", "b", "c"]


def test_doctor_report_is_valid_and_written(tmp_path: Path) -> None:
    out = tmp_path / "reports" / "doctor.json"

    written = reports.write_report(out, reports.DOCTOR, _doctor_report())

    on_disk = json.loads(out.read_text(encoding="utf-8"))
    assert on_disk == written
    assert on_disk["asym_pairs"] == [["a", "c"]]
    assert on_disk["islands"] == ["c"]
    assert on_disk["meta"]["inputHashes"]["graph"]
    assert on_disk["meta"]["timings"]["diagnose"] == 1.234568
    assert on_disk["degrees"]["histogram"] == {"0": 1, "1": 1, "2": 1}


def test_invalid_report_is_rejected_without_touching_disk(tmp_path: Path) -> None:
    report = _doctor_report()
    report["largest_component_ratio"] = 1.5
    out = tmp_path / "doctor.json"

    with pytest.raises(ReportSchemaError) as exc:
        reports.write_report(out, reports.DOCTOR, report)

    assert exc.value.exit_code == EXIT_REPORT_SCHEMA
    assert exc.value.location == "largest_component_ratio"
    assert not out.exists()
    assert list(tmp_path.iterdir()) == []


def test_missing_required_field_reports_root(tmp_path: Path) -> None:
    report = _doctor_report()
    del report["nodes"]

    with pytest.raises(ReportSchemaError) as exc:
        reports.validate_report(reports.DOCTOR, report)

    assert exc.value.location == "(root)"


def test_failed_replace_keeps_previous_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    out = tmp_path / "doctor.json"
    out.write_text("previous\n", encoding="utf-8")

    def _boom(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _boom)

    with pytest.raises(OSError, match="disk full"):
        reports.write_report(out, reports.DOCTOR, _doctor_report())

    assert out.read_text(encoding="utf-8") == "previous\n"
    assert [p.name for p in tmp_path.iterdir()] == ["doctor.json"]


def test_strip_volatile_makes_reruns_comparable() -> None:
    first = _doctor_report(GENERATED_AT)
    second = _doctor_report("2026-02-02T00:00:00Z")
    second["meta"]["timings"] = {"total": 99.0}

    assert reports.strip_volatile(first) == reports.strip_volatile(second)
    assert reports.report_digest(first) == reports.report_digest(second)
    assert "generatedAt" in first["meta"]


def test_digest_changes_with_content() -> None:
    first = _doctor_report()
    second = _doctor_report()
    second["self_loops"] = 4

    assert reports.report_digest(first) != reports.report_digest(second)


def test_metrics_report_counts_edges() -> None:
    diagnosis = diagnose(
        {"a": ["b", "c"], "b": ["a"], "c": []},
        {"a": "north", "b": "north", "c": "south"},
    )
    clusters = parse_clusters({"north": ["a", "b"], "south": ["c"]})

    report = reports.build_metrics_report(
        diagnosis, clusters, generated_at=GENERATED_AT
    )
    reports.validate_report(reports.METRICS, reports.stable_report(report))

    assert report["clusters"] == 2
    assert report["suburbs"] == 3
    assert report["edges"]["directed"] == 3
    assert report["edges"]["undirected"] == 2
    assert report["edges"]["cross_cluster_ratio"] == pytest.approx(1 / 3)


def _cands(*targets: str) -> list[ScoredCandidate]:
    return [
        ScoredCandidate(
            target=t,
            score=float(len(targets) - i),
            is_reciprocal=True,
            same_cluster=False,
            distance_km=None,
        )
        for i, t in enumerate(targets)
    ]


def test_link_optimization_report_validates() -> None:
    candidates = {f"s{i}": _cands("x", f"y{i}") for i in range(1, 5)}
    policy = LinkPolicy(neighbors_max=1, neighbors_min=1, inbound_cap=None)
    result = plan_links(candidates, policy)
    audit = rebalance(
        result.plan, candidates, {}, cap=2, neighbors_min=1, neighbors_max=1
    )

    report = reports.build_link_optimization_report(
        result, audit, generated_at=GENERATED_AT
    )
    reports.validate_report(reports.LINK_OPTIMIZATION, reports.stable_report(report))

    assert report["policyCapUsed"] == 2
    assert report["substitutionsCount"] == 2
    assert report["substitutions"][0] == {
        "source": "s1",
        "service": None,
        "from": "x",
        "to": "y1",
    }
    assert report["planner"]["capUsed"] is None


def test_link_optimization_report_without_audit() -> None:
    candidates = {"a": _cands("b"), "b": _cands("a")}
    policy = LinkPolicy(neighbors_max=2, neighbors_min=1, inbound_cap=3)
    result = plan_links(candidates, policy)

    report = reports.build_link_optimization_report(
        result, None, generated_at=GENERATED_AT
    )
    reports.validate_report(reports.LINK_OPTIMIZATION, reports.stable_report(report))

    assert report["policyCapUsed"] == 3
    assert report["metrics"]["before"] == report["metrics"]["after"]


def test_unbounded_cap_without_audit_is_null() -> None:
    candidates = {"a": _cands("b"), "b": _cands("a")}
    policy = LinkPolicy(neighbors_max=2, neighbors_min=1, inbound_cap=None)
    result = plan_links(candidates, policy)

    report = reports.build_link_optimization_report(
        result, None, generated_at=GENERATED_AT
    )
    reports.validate_report(reports.LINK_OPTIMIZATION, reports.stable_report(report))

    assert report["policyCapUsed"] is None


def test_auto_fix_report_validates() -> None:
    result = auto_repair({"a": ["b"], "b": [], "z": []})

    report = reports.build_auto_fix_report(
        result, graph_hash="f" * 64, generated_at=GENERATED_AT
    )
    reports.validate_report(reports.AUTO_FIX, reports.stable_report(report))

    assert report["summary"]["reciprocityAdded"] >= 1


def test_links_report_splits_service_keys() -> None:
    rows = reports.build_links_report({"plumbing/bondi": ["coogee"], "bronte": []})

    reports.validate_report(reports.LINKS, rows)
    assert rows == [
        {"service": None, "suburb": "bronte", "neighbors": []},
        {"service": "plumbing", "suburb": "bondi", "neighbors": ["coogee"]},
    ]


def test_unknown_report_kind_is_a_programming_error() -> None:
    with pytest.raises(ValueError):
        reports.validate_report("nope", {})
