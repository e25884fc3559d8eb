"""CI gate: failure classes mapped to exit codes, plus baseline drift checks."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from .config import GatePolicy
from .datasets import FINDING_DUPLICATE_CLUSTER, FINDING_MISSING_CLUSTER, Finding
from .errors import (
    EXIT_DUPLICATE_CLUSTERS,
    EXIT_MISSING_CLUSTERS,
    EXIT_OK,
    EXIT_ORPHANS,
    EXIT_RECIPROCITY,
    DriftDetectedError,
    InputMissingError,
    SchemaViolationError,
)
from .graph import Diagnosis, stable_graph_hash
from .reports import report_digest
from .util import log_event, read_json, setup_json_logger

_LOG = setup_json_logger("geolink.gate")


@dataclass(frozen=True)
class GateCheck:
    check_id: str
    exit_code: int
    count: int
    failed: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.check_id,
            "status": "fail" if self.failed else "pass",
            "count": self.count,
            "exitCode": self.exit_code,
        }


@dataclass(frozen=True)
class GateResult:
    checks: list[GateCheck] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        # Lowest code wins when several classes fail.
        for check in self.checks:
            if check.failed:
                return check.exit_code
        return EXIT_OK

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK

    def as_dict(self) -> dict[str, Any]:
        return {
            "exitCode": self.exit_code,
            "checks": [c.as_dict() for c in self.checks],
        }


def evaluate_gate(
    diagnosis: Diagnosis, findings: Sequence[Finding], policy: GatePolicy
) -> GateResult:
    orphans = len(diagnosis.islands)
    duplicates = sum(1 for f in findings if f.code == FINDING_DUPLICATE_CLUSTER)
    missing = sum(1 for f in findings if f.code == FINDING_MISSING_CLUSTER)
    checks = [
        GateCheck(
            "reciprocity",
            EXIT_RECIPROCITY,
            len(diagnosis.asym_pairs),
            policy.fail_reciprocity and bool(diagnosis.asym_pairs),
        ),
        GateCheck(
            "orphans",
            EXIT_ORPHANS,
            orphans,
            policy.fail_orphans is not None and orphans > policy.fail_orphans,
        ),
        GateCheck(
            "duplicates",
            EXIT_DUPLICATE_CLUSTERS,
            duplicates,
            policy.fail_duplicates and duplicates > 0,
        ),
        GateCheck(
            "missing-clusters",
            EXIT_MISSING_CLUSTERS,
            missing,
            policy.fail_missing_clusters and missing > 0,
        ),
    ]
    result = GateResult(checks=checks)
    for check in checks:
        if check.failed:
            log_event(
                _LOG,
                "gate.check.failed",
                level=logging.WARNING,
                check=check.check_id,
                count=check.count,
                exit_code=check.exit_code,
            )
    log_event(_LOG, "gate.evaluated", exit_code=result.exit_code)
    return result


def promote_findings(findings: Sequence[Finding], policy: GatePolicy) -> None:
    """Raise ``SchemaViolationError`` when findings are promoted to fatal."""
    if policy.promote_findings and findings:
        raise SchemaViolationError(list(findings))


def artifact_digest(path: Path) -> str:
    """Digest of a report or adjacency file, ignoring volatile fields.

    Adjacency files (a mapping of slug to list) hash through
    ``stable_graph_hash``; anything else is treated as a report.
    """
    if not path.is_file():
        raise InputMissingError("artifact", path)
    payload = read_json(path)
    if (
        isinstance(payload, dict)
        and payload
        and all(isinstance(v, list) for v in payload.values())
    ):
        return stable_graph_hash(payload)
    return report_digest(payload)


def check_drift(baseline: Path, current: Path) -> str:
    """Compare ``current`` with the committed ``baseline``; return the digest
    when they match, raise ``DriftDetectedError`` otherwise."""
    base_digest = artifact_digest(baseline)
    current_digest = artifact_digest(current)
    if base_digest != current_digest:
        log_event(
            _LOG,
            "gate.drift.detected",
            level=logging.WARNING,
            artifact=str(current),
            baseline=str(baseline),
        )
        raise DriftDetectedError(str(current), base_digest, current_digest)
    log_event(_LOG, "gate.drift.clean", artifact=str(current), digest=current_digest)
    return current_digest
