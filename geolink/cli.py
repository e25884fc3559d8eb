from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from .config import Config, load_config
from .errors import EXIT_IO_ERROR, EXIT_OK, GeoLinkError
from .gate import check_drift
from .pipeline import run_all, run_doctor, run_fix, run_metrics, run_plan
from .util import (
    MetricsEmitter,
    generate_request_id,
    get_request_id,
    log_event,
    set_request_id,
    setup_json_logger,
)

_LOG = setup_json_logger("geolink.cli")


def _default_config_path() -> Path:
    return Path("geolink.config.yaml")


def _normalize_global_flags(argv: list[str]) -> list[str]:
    """Allow global flags after the subcommand.

    `argparse` only accepts global args before the subcommand, so
    `geolink doctor --config X` is rewritten to `geolink --config X doctor`.
    """
    if not argv:
        return argv

    out = list(argv)
    for flag in ("--config", "--metrics-out", "--request-id"):
        if flag in out:
            i = out.index(flag)
            if i + 1 < len(out):
                val = out[i + 1]
                del out[i : i + 2]
                out = [flag, val, *out]
    return out


def _abs(value: str | None) -> str | None:
    return str(Path(value).resolve()) if value else None


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    """CLI values that take precedence over the config file.

    Paths are made absolute here so they resolve against the working
    directory rather than the config file's directory.
    """
    return {
        "adjacency": _abs(getattr(args, "adjacency", None)),
        "clusters": _abs(getattr(args, "clusters", None)),
        "meta": _abs(getattr(args, "meta", None)),
        "reports_dir": _abs(getattr(args, "reports_dir", None)),
        "neighbors_max": getattr(args, "neighbors_max", None),
        "neighbors_min": getattr(args, "neighbors_min", None),
        "inbound_cap": getattr(args, "cap", None),
        "enforce_reciprocity": getattr(args, "reciprocity", False) or None,
        "strict": getattr(args, "strict", False) or None,
        "rebalance": False if getattr(args, "no_rebalance", False) else None,
        "fail_reciprocity": False if getattr(args, "allow_asymmetric", False) else None,
        "fail_orphans": getattr(args, "fail_orphans", None),
        "fail_duplicates": getattr(args, "fail_duplicates", False) or None,
        "fail_missing_clusters": getattr(args, "fail_missing_clusters", False) or None,
        "promote_findings": getattr(args, "promote_findings", False) or None,
    }


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def cmd_doctor(cfg: Config) -> int:
    outcome = run_doctor(cfg)
    _print({"report": str(outcome.path), "gate": outcome.gate.as_dict()})
    return outcome.gate.exit_code


def cmd_metrics(cfg: Config) -> int:
    outcome = run_metrics(cfg)
    _print(outcome.report)
    return EXIT_OK


def cmd_plan(cfg: Config) -> int:
    outcome = run_plan(cfg)
    report = outcome.report
    _print(
        {
            "links": str(outcome.links_path),
            "report": str(outcome.path),
            "policyCapUsed": report["policyCapUsed"],
            "substitutionsCount": report["substitutionsCount"],
            "removalsCount": report["removalsCount"],
            "metrics": report["metrics"],
            "shortfalls": len(outcome.plan_result.shortfalls),
        }
    )
    return EXIT_OK


def cmd_fix(cfg: Config, write_adjacency: Path | None, dry_run: bool) -> int:
    outcome = run_fix(cfg, write_adjacency=write_adjacency, dry_run=dry_run)
    _print(
        {
            "report": str(outcome.path),
            "adjacency": (
                str(outcome.adjacency_path) if outcome.adjacency_path else None
            ),
            "summary": outcome.repair.summary,
        }
    )
    return EXIT_OK


def cmd_drift(baseline: Path, current: Path) -> int:
    digest = check_drift(baseline, current)
    _print(
        {
            "baseline": str(baseline),
            "current": str(current),
            "digest": digest,
            "drift": False,
        }
    )
    return EXIT_OK


def cmd_run(cfg: Config) -> int:
    doctor, metrics, plan = run_all(cfg)
    _print(
        {
            "gate": doctor.gate.as_dict(),
            "reports": [
                str(doctor.path),
                str(metrics.path),
                str(plan.links_path),
                str(plan.path),
            ],
        }
    )
    return doctor.gate.exit_code


def _run_command_with_observability(
    *,
    command_name: str,
    fn,
    metrics: MetricsEmitter,
) -> int:
    started = time.perf_counter()
    log_event(_LOG, "cli.command.start", command=command_name)
    try:
        rc = fn()
    except Exception as exc:
        latency_ms = (time.perf_counter() - started) * 1000.0
        log_event(
            _LOG,
            "cli.command.error",
            command=command_name,
            error=str(exc),
            gate_outcome="error",
            latency_ms=round(latency_ms, 3),
        )
        metrics.emit(
            metric="geolink.command",
            status="error",
            latency_ms=latency_ms,
            gate_outcome="error",
            error=type(exc).__name__,
        )
        raise

    latency_ms = (time.perf_counter() - started) * 1000.0
    gate_outcome = "success" if rc == 0 else "failure"
    status = "success" if rc == 0 else "error"
    log_event(
        _LOG,
        "cli.command.finish",
        command=command_name,
        gate_outcome=gate_outcome,
        latency_ms=round(latency_ms, 3),
        status=status,
    )
    metrics.emit(
        metric="geolink.command",
        status=status,
        latency_ms=latency_ms,
        gate_outcome=gate_outcome,
        error=(None if rc == 0 else f"exit_code={rc}"),
    )
    return rc


def _cap_arg(value: str) -> int | str:
    if value.strip().lower() == "dynamic":
        return "dynamic"
    try:
        cap = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"expected an integer or 'dynamic', got {value!r}"
        ) from exc
    if cap < 0:
        raise argparse.ArgumentTypeError("cap must be >= 0")
    return cap


def _add_data_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--adjacency", default=None, help="Adjacency JSON (slug -> [slug])."
    )
    parser.add_argument("--clusters", default=None, help="Cluster JSON.")
    parser.add_argument("--meta", default=None, help="Suburb metadata JSON.")
    parser.add_argument(
        "--reports-dir", default=None, help="Directory for report output."
    )


def _add_gate_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--allow-asymmetric",
        action="store_true",
        help="Do not fail on missing reciprocity.",
    )
    parser.add_argument(
        "--fail-orphans",
        type=int,
        default=None,
        metavar="N",
        help="Fail when more than N nodes have no neighbors.",
    )
    parser.add_argument(
        "--fail-duplicates",
        action="store_true",
        help="Fail on duplicate cluster assignment.",
    )
    parser.add_argument(
        "--fail-missing-clusters",
        action="store_true",
        help="Fail when a suburb has no cluster.",
    )
    parser.add_argument(
        "--promote-findings",
        action="store_true",
        help="Treat any dataset finding as fatal (CI mode).",
    )


def _add_policy_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--neighbors-max", type=int, default=None, help="Links per page upper bound."
    )
    parser.add_argument(
        "--neighbors-min", type=int, default=None, help="Links per page lower bound."
    )
    parser.add_argument(
        "--cap",
        type=_cap_arg,
        default=None,
        help="Global inbound cap: an integer or 'dynamic'.",
    )
    parser.add_argument(
        "--reciprocity", action="store_true", help="Only link reciprocal neighbors."
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Reciprocity on, max clamped to [3, 5], dynamic cap when unset.",
    )
    parser.add_argument(
        "--no-rebalance", action="store_true", help="Skip the fairness rebalance."
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="geolink",
        description="Geo link-graph optimizer and diagnostics (deterministic).",
    )
    p.add_argument(
        "--config",
        default=str(_default_config_path()),
        help="Path to the JSON or YAML config.",
    )
    p.add_argument(
        "--metrics-out",
        default="artifacts/observability/metrics.jsonl",
        help="Path to JSONL metrics file emitter output.",
    )
    p.add_argument(
        "--request-id",
        default=None,
        help="Correlation/request identifier for all structured logs and metrics.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    doc = sub.add_parser(
        "doctor", help="Diagnose graph health and gate on failure classes."
    )
    _add_data_flags(doc)
    _add_gate_flags(doc)

    met = sub.add_parser("metrics", help="Write graph size and degree metrics.")
    _add_data_flags(met)

    plan = sub.add_parser("plan", help="Select a fair link plan and audit it.")
    _add_data_flags(plan)
    _add_policy_flags(plan)

    fix = sub.add_parser("fix", help="Add missing back-links and link islands.")
    _add_data_flags(fix)
    fix.add_argument(
        "--write-adjacency",
        default=None,
        help="Write the repaired adjacency here instead of over the input.",
    )
    fix.add_argument("--dry-run", action="store_true", help="Write the report only.")

    drift = sub.add_parser(
        "drift", help="Compare a regenerated artifact with its baseline."
    )
    drift.add_argument("--baseline", required=True, help="Committed artifact.")
    drift.add_argument("--current", required=True, help="Regenerated artifact.")

    run = sub.add_parser("run", help="doctor + metrics + plan in one pass.")
    _add_data_flags(run)
    _add_gate_flags(run)
    _add_policy_flags(run)
    return p


def main(argv: list[str] | None = None) -> None:
    argv = _normalize_global_flags(argv or sys.argv[1:])
    p = build_parser()
    args = p.parse_args(argv)
    cfg_path = Path(args.config)

    req_id = args.request_id or generate_request_id()
    set_request_id(req_id)
    metrics = MetricsEmitter(Path(args.metrics_out))
    log_event(
        _LOG, "cli.request.context", request_id=get_request_id(), command=args.cmd
    )

    overrides = _overrides(args)

    try:
        if args.cmd == "doctor":
            rc = _run_command_with_observability(
                command_name=args.cmd,
                fn=lambda: cmd_doctor(load_config(cfg_path, overrides=overrides)),
                metrics=metrics,
            )
        elif args.cmd == "metrics":
            rc = _run_command_with_observability(
                command_name=args.cmd,
                fn=lambda: cmd_metrics(load_config(cfg_path, overrides=overrides)),
                metrics=metrics,
            )
        elif args.cmd == "plan":
            rc = _run_command_with_observability(
                command_name=args.cmd,
                fn=lambda: cmd_plan(load_config(cfg_path, overrides=overrides)),
                metrics=metrics,
            )
        elif args.cmd == "fix":
            write_to = (
                Path(args.write_adjacency).resolve() if args.write_adjacency else None
            )
            rc = _run_command_with_observability(
                command_name=args.cmd,
                fn=lambda: cmd_fix(
                    load_config(cfg_path, overrides=overrides),
                    write_adjacency=write_to,
                    dry_run=args.dry_run,
                ),
                metrics=metrics,
            )
        elif args.cmd == "drift":
            rc = _run_command_with_observability(
                command_name=args.cmd,
                fn=lambda: cmd_drift(Path(args.baseline), Path(args.current)),
                metrics=metrics,
            )
        elif args.cmd == "run":
            rc = _run_command_with_observability(
                command_name=args.cmd,
                fn=lambda: cmd_run(load_config(cfg_path, overrides=overrides)),
                metrics=metrics,
            )
        else:
            raise RuntimeError("unreachable")
    except GeoLinkError as exc:
        print(str(exc), file=sys.stderr)
        rc = exc.exit_code
    except (
        OSError,
        json.JSONDecodeError,
        yaml.YAMLError,
        jsonschema.ValidationError,
    ) as exc:
        print(f"E_IO: {type(exc).__name__}: {exc}", file=sys.stderr)
        rc = EXIT_IO_ERROR

    raise SystemExit(rc)


if __name__ == "__main__":
    main()
