"""One batch run: load, diagnose, score, plan, audit, repair, report.

Each ``run_*`` function loads what it needs from a ``Config``, writes its
reports under ``config.reports_dir`` and returns an outcome object for the
caller (usually the CLI) to gate on.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from . import reports
from .config import Config
from .datasets import Finding, GeoDatasets, dataset_findings, load_datasets
from .fairness import AuditResult, rebalance
from .gate import GateResult, evaluate_gate, promote_findings
from .graph import Diagnosis, diagnose
from .planner import PlanResult, expand_candidates, plan_links
from .repair import RepairResult, auto_repair
from .scoring import score_all
from .util import log_event, setup_json_logger, timed, write_json

_LOG = setup_json_logger("geolink.pipeline")


@dataclass(frozen=True)
class DoctorOutcome:
    diagnosis: Diagnosis
    findings: list[Finding]
    report: dict[str, Any]
    gate: GateResult
    path: Path


@dataclass(frozen=True)
class MetricsOutcome:
    report: dict[str, Any]
    path: Path


@dataclass(frozen=True)
class PlanOutcome:
    plan_result: PlanResult
    audit: AuditResult | None
    plan: dict[str, list[str]]
    report: dict[str, Any]
    path: Path
    links_path: Path


@dataclass(frozen=True)
class FixOutcome:
    repair: RepairResult
    report: dict[str, Any]
    path: Path
    adjacency_path: Path | None


def _total(timings: dict[str, float]) -> dict[str, float]:
    return {**timings, "total": round(sum(timings.values()), 3)}


def load_inputs(config: Config) -> GeoDatasets:
    return load_datasets(config.adjacency_path, config.clusters_path, config.meta_path)


def _diagnose(
    datasets: GeoDatasets, timings: dict[str, float]
) -> tuple[Diagnosis, list[Finding]]:
    with timed(timings, "diagnose"):
        diagnosis = diagnose(datasets.raw_adjacency, datasets.clusters.cluster_of)
    with timed(timings, "findings"):
        findings = dataset_findings(
            list(diagnosis.adjacency), datasets.clusters, datasets.suburbs
        )
    return diagnosis, findings


def run_doctor(config: Config, datasets: GeoDatasets | None = None) -> DoctorOutcome:
    """Write ``doctor.json`` and evaluate the gate.

    The report is persisted before promoted findings can abort the run.
    """
    timings: dict[str, float] = {}
    if datasets is None:
        with timed(timings, "load"):
            datasets = load_inputs(config)
    diagnosis, findings = _diagnose(datasets, timings)

    report = reports.build_doctor_report(
        diagnosis,
        findings,
        input_hashes=datasets.input_hashes,
        timings=_total(timings),
    )
    path = config.reports_dir / reports.REPORT_FILES[reports.DOCTOR]
    stable = reports.write_report(path, reports.DOCTOR, report)
    log_event(
        _LOG,
        "pipeline.doctor.done",
        nodes=diagnosis.nodes,
        components=len(diagnosis.components),
        asym_pairs=len(diagnosis.asym_pairs),
        islands=len(diagnosis.islands),
        findings=len(findings),
    )

    promote_findings(findings, config.gate)
    gate = evaluate_gate(diagnosis, findings, config.gate)
    return DoctorOutcome(
        diagnosis=diagnosis, findings=findings, report=stable, gate=gate, path=path
    )


def run_metrics(config: Config, datasets: GeoDatasets | None = None) -> MetricsOutcome:
    timings: dict[str, float] = {}
    if datasets is None:
        with timed(timings, "load"):
            datasets = load_inputs(config)
    with timed(timings, "diagnose"):
        diagnosis = diagnose(datasets.raw_adjacency, datasets.clusters.cluster_of)
    report = reports.build_metrics_report(
        diagnosis,
        datasets.clusters,
        input_hashes=datasets.input_hashes,
        timings=_total(timings),
    )
    path = config.reports_dir / reports.REPORT_FILES[reports.METRICS]
    stable = reports.write_report(path, reports.METRICS, report)
    return MetricsOutcome(report=stable, path=path)


def run_plan(config: Config, datasets: GeoDatasets | None = None) -> PlanOutcome:
    """Score, plan and (optionally) rebalance; write ``links.json`` and
    ``link-optimization.json``."""
    policy = config.policy
    timings: dict[str, float] = {}
    if datasets is None:
        with timed(timings, "load"):
            datasets = load_inputs(config)
    with timed(timings, "diagnose"):
        diagnosis = diagnose(datasets.raw_adjacency, datasets.clusters.cluster_of)
    adj = diagnosis.adjacency

    with timed(timings, "score"):
        scored = score_all(
            adj,
            cluster_of=datasets.clusters.cluster_of,
            coords=datasets.coordinates(),
            weights=policy.scoring,
            enforce_reciprocity=policy.enforce_reciprocity,
        )
        candidates = expand_candidates(scored, config.services)

    with timed(timings, "plan"):
        plan_result = plan_links(candidates, policy)

    audit = None
    plan = plan_result.plan
    if policy.rebalance:
        with timed(timings, "rebalance"):
            audit = rebalance(
                plan_result.plan,
                candidates,
                adj,
                cap=plan_result.cap,
                neighbors_min=policy.neighbors_min,
                neighbors_max=policy.neighbors_max,
            )
        plan = audit.plan

    links_path = config.reports_dir / reports.REPORT_FILES[reports.LINKS]
    path = config.reports_dir / reports.REPORT_FILES[reports.LINK_OPTIMIZATION]
    report = reports.build_link_optimization_report(
        plan_result, audit, timings=_total(timings)
    )
    # Both reports are validated before either touches disk.
    links = reports.stable_report(reports.build_links_report(plan))
    reports.validate_report(reports.LINKS, links)
    stable = reports.stable_report(report)
    reports.validate_report(reports.LINK_OPTIMIZATION, stable)
    reports.write_report(links_path, reports.LINKS, links)
    reports.write_report(path, reports.LINK_OPTIMIZATION, stable)

    log_event(
        _LOG,
        "pipeline.plan.done",
        keys=len(plan),
        cap=plan_result.cap,
        rebalanced=audit is not None,
        relaxations=len(plan_result.relaxations),
        shortfalls=len(plan_result.shortfalls),
    )
    return PlanOutcome(
        plan_result=plan_result,
        audit=audit,
        plan=plan,
        report=stable,
        path=path,
        links_path=links_path,
    )


def run_fix(
    config: Config,
    datasets: GeoDatasets | None = None,
    *,
    write_adjacency: Path | None = None,
    dry_run: bool = False,
) -> FixOutcome:
    """Repair reciprocity and islands; write ``auto-fix.json`` and the
    repaired adjacency (to ``write_adjacency`` or back to the configured
    adjacency path) unless ``dry_run``."""
    timings: dict[str, float] = {}
    if datasets is None:
        with timed(timings, "load"):
            datasets = load_inputs(config)
    with timed(timings, "diagnose"):
        diagnosis = diagnose(datasets.raw_adjacency, datasets.clusters.cluster_of)
    with timed(timings, "repair"):
        result = auto_repair(
            diagnosis.adjacency,
            cluster_of=datasets.clusters.cluster_of,
            coords=datasets.coordinates(),
            asym=diagnosis.asym_pairs,
            island_nodes=diagnosis.islands,
        )

    report = reports.build_auto_fix_report(
        result, graph_hash=diagnosis.content_hash, timings=_total(timings)
    )
    path = config.reports_dir / reports.REPORT_FILES[reports.AUTO_FIX]
    stable = reports.write_report(path, reports.AUTO_FIX, report)

    target = None
    if not dry_run:
        target = write_adjacency or config.adjacency_path
        write_json(target, result.adjacency)
        log_event(_LOG, "pipeline.fix.adjacency.written", path=str(target))
    return FixOutcome(repair=result, report=stable, path=path, adjacency_path=target)


def run_all(config: Config) -> tuple[DoctorOutcome, MetricsOutcome, PlanOutcome]:
    """Doctor, metrics and plan over one load of the datasets."""
    datasets = load_inputs(config)
    doctor = run_doctor(config, datasets)
    metrics = run_metrics(config, datasets)
    plan = run_plan(config, datasets)
    return doctor, metrics, plan
