"""Report builders and the schema-checked writer.

Every report is normalized by ``stable_report`` (floats rounded to 6 dp, keys
sorted, tuples as lists) so two runs over the same inputs produce the same
bytes apart from the volatile fields removed by ``strip_volatile``.
"""
from __future__ import annotations

import copy
import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, Sequence

import jsonschema

from . import __version__
from .config import SCHEMA_DIR
from .datasets import ClusterIndex, Finding
from .errors import ReportSchemaError
from .fairness import AuditResult, plan_metrics
from .graph import Diagnosis, directed_edge_count, undirected_edge_count
from .planner import PlanResult, split_plan_key
from .repair import RepairResult
from .util import (
    canonical_json,
    log_event,
    setup_json_logger,
    sha256_bytes,
    utc_now_iso,
    write_json,
)

_LOG = setup_json_logger("geolink.reports")

SCHEMA_VERSION = 1

DOCTOR = "doctor"
METRICS = "metrics"
LINK_OPTIMIZATION = "link-optimization"
AUTO_FIX = "auto-fix"
LINKS = "links"
REPORT_KINDS = (DOCTOR, METRICS, LINK_OPTIMIZATION, AUTO_FIX, LINKS)

REPORT_FILES = {kind: f"{kind}.json" for kind in REPORT_KINDS}

VOLATILE_KEYS = ("generatedAt", "timings")


def stable_report(value: Any, *, digits: int = 6) -> Any:
    if isinstance(value, float):
        rounded = round(value, digits)
        return 0.0 if rounded == 0 else rounded
    if isinstance(value, Mapping):
        return {
            str(k): stable_report(value[k], digits=digits)
            for k in sorted(value, key=str)
        }
    if isinstance(value, (list, tuple)):
        return [stable_report(v, digits=digits) for v in value]
    return value


@lru_cache(maxsize=None)
def _validator(kind: str) -> jsonschema.Draft202012Validator:
    if kind not in REPORT_FILES:
        raise ValueError(f"unknown report kind {kind!r}")
    path = SCHEMA_DIR / f"{kind}.schema.json"
    schema = json.loads(path.read_text(encoding="utf-8"))
    jsonschema.Draft202012Validator.check_schema(schema)
    return jsonschema.Draft202012Validator(schema)


def validate_report(kind: str, report: Any) -> None:
    errors = sorted(
        _validator(kind).iter_errors(report),
        key=lambda e: list(map(str, e.absolute_path)),
    )
    if not errors:
        return
    first = errors[0]
    location = "/".join(str(x) for x in first.absolute_path) or "(root)"
    log_event(
        _LOG,
        "report.schema.invalid",
        kind=kind,
        location=location,
        errors=len(errors),
    )
    raise ReportSchemaError(kind, location, first.message)


def write_report(path: Path, kind: str, report: Any) -> Any:
    """Validate ``report`` and write it atomically; nothing is written when
    validation fails."""
    stable = stable_report(report)
    validate_report(kind, stable)
    write_json(path, stable)
    log_event(_LOG, "report.written", kind=kind, path=str(path))
    return stable


def strip_volatile(report: Any) -> Any:
    """Copy of ``report`` without ``generatedAt`` and timing blocks."""
    out = copy.deepcopy(report)
    if isinstance(out, dict):
        for key in VOLATILE_KEYS:
            out.pop(key, None)
        meta = out.get("meta")
        if isinstance(meta, dict):
            for key in VOLATILE_KEYS:
                meta.pop(key, None)
    return out


def report_digest(report: Any) -> str:
    payload = canonical_json(stable_report(strip_volatile(report)))
    return sha256_bytes(payload.encode("utf-8"))


def _meta(
    input_hashes: Mapping[str, str],
    timings: Mapping[str, float],
    generated_at: str | None,
) -> dict[str, Any]:
    return {
        "generatedAt": generated_at or utc_now_iso(),
        "toolVersion": __version__,
        "inputHashes": dict(input_hashes),
        "timings": {"total": 0.0, **timings},
    }


def build_doctor_report(
    diagnosis: Diagnosis,
    findings: Sequence[Finding] = (),
    *,
    input_hashes: Mapping[str, str] | None = None,
    timings: Mapping[str, float] | None = None,
    generated_at: str | None = None,
) -> dict[str, Any]:
    hashes = {**(input_hashes or {}), "graph": diagnosis.content_hash}
    return {
        "schemaVersion": SCHEMA_VERSION,
        "nodes": diagnosis.nodes,
        "components": len(diagnosis.components),
        "largest_component_ratio": diagnosis.largest_component_ratio,
        "degrees": {
            **diagnosis.degree_stats,
            "histogram": dict(diagnosis.degree_histogram),
        },
        "cross_cluster_ratio": diagnosis.cross_cluster.ratio,
        "asym_pairs": [list(pair) for pair in diagnosis.asym_pairs],
        "self_loops": diagnosis.self_loops,
        "islands": list(diagnosis.islands),
        "findings": [f.as_dict() for f in findings],
        "meta": _meta(hashes, {**diagnosis.timings, **(timings or {})}, generated_at),
    }


def build_metrics_report(
    diagnosis: Diagnosis,
    clusters: ClusterIndex,
    *,
    input_hashes: Mapping[str, str] | None = None,
    timings: Mapping[str, float] | None = None,
    generated_at: str | None = None,
) -> dict[str, Any]:
    adj = diagnosis.adjacency
    hashes = {**(input_hashes or {}), "graph": diagnosis.content_hash}
    return {
        "schemaVersion": SCHEMA_VERSION,
        "clusters": len(clusters.clusters),
        "suburbs": diagnosis.nodes,
        "edges": {
            "directed": directed_edge_count(adj),
            "undirected": undirected_edge_count(adj),
            "cross_cluster_ratio": diagnosis.cross_cluster.ratio,
        },
        "degree": dict(diagnosis.degree_stats),
        "meta": _meta(hashes, timings or {}, generated_at),
    }


def build_link_optimization_report(
    plan_result: PlanResult,
    audit: AuditResult | None = None,
    *,
    timings: Mapping[str, float] | None = None,
    generated_at: str | None = None,
) -> dict[str, Any]:
    """Planner outcome plus the fairness audit.

    Without an audit (rebalancing disabled) the before/after metrics are both
    taken from the plan and no changes are listed.
    """
    if audit is None:
        metrics = plan_metrics(plan_result.plan)
        cap_used = plan_result.cap
        substitutions: list[dict] = []
        removals: list[dict] = []
        before = after = metrics
    else:
        cap_used = audit.cap_used
        substitutions = [s.as_dict() for s in audit.substitutions]
        removals = [r.as_dict() for r in audit.removals]
        before, after = audit.before, audit.after

    report = {
        "schemaVersion": SCHEMA_VERSION,
        "generatedAt": generated_at or utc_now_iso(),
        "policyCapUsed": cap_used,
        "substitutionsCount": len(substitutions),
        "removalsCount": len(removals),
        "metrics": {"before": dict(before), "after": dict(after)},
        "substitutions": substitutions,
        "removals": removals,
        "planner": {
            "capUsed": plan_result.cap,
            "rounds": plan_result.rounds,
            "relaxations": [r.as_dict() for r in plan_result.relaxations],
            "shortfalls": [s.as_dict() for s in plan_result.shortfalls],
            "reciprocityAdded": [r.as_dict() for r in plan_result.reciprocity_added],
        },
    }
    if timings:
        report["timings"] = dict(timings)
    return report


def build_auto_fix_report(
    result: RepairResult,
    *,
    graph_hash: str | None = None,
    timings: Mapping[str, float] | None = None,
    generated_at: str | None = None,
) -> dict[str, Any]:
    report: dict[str, Any] = {
        "schemaVersion": SCHEMA_VERSION,
        "generatedAt": generated_at or utc_now_iso(),
        "summary": result.summary,
        "changes": [c.as_dict() for c in result.changes],
    }
    if graph_hash:
        report["graphHash"] = graph_hash
    if timings:
        report["timings"] = dict(timings)
    return report


def build_links_report(plan: Mapping[str, Sequence[str]]) -> list[dict[str, Any]]:
    rows = []
    for key in sorted(plan):
        service, suburb = split_plan_key(key)
        rows.append(
            {"service": service, "suburb": suburb, "neighbors": list(plan[key])}
        )
    return rows
