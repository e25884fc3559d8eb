from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import jsonschema
import yaml

SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"
CONFIG_SCHEMA_PATH = SCHEMA_DIR / "config.schema.json"

DYNAMIC_CAP = "dynamic"
DEFAULT_NEIGHBORS_MAX = 6
DEFAULT_REPORTS_DIR = "__reports/geo"
DEFAULT_DATA = {
    "adjacency": "src/data/areas.adj.json",
    "clusters": "src/data/areas.clusters.json",
    "meta": "src/data/suburbs.meta.json",
}


@dataclass(frozen=True)
class ScoringWeights:
    cluster: float = 1.0
    distance: float = 1.0
    reciprocal: float = 0.5
    hub: float = 0.5
    distance_scale_km: float = 10.0


@dataclass(frozen=True)
class LinkPolicy:
    neighbors_max: int = DEFAULT_NEIGHBORS_MAX
    neighbors_min: int = 3
    # int, None (unbounded) or DYNAMIC_CAP
    inbound_cap: int | str | None = None
    enforce_reciprocity: bool = False
    strict: bool = False
    rebalance: bool = True
    scoring: ScoringWeights = field(default_factory=ScoringWeights)


@dataclass(frozen=True)
class GatePolicy:
    fail_reciprocity: bool = True
    fail_orphans: int | None = None
    fail_duplicates: bool = False
    fail_missing_clusters: bool = False
    promote_findings: bool = False


@dataclass(frozen=True)
class Config:
    base_dir: Path
    services: tuple[str, ...]
    adjacency_path: Path
    clusters_path: Path
    meta_path: Path
    reports_dir: Path
    policy: LinkPolicy
    gate: GatePolicy


def read_config_file(path: Path) -> dict[str, Any]:
    # JSON is a subset of YAML, so one parser covers both formats.
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        raw = {}
    schema = json.loads(CONFIG_SCHEMA_PATH.read_text(encoding="utf-8"))
    jsonschema.validate(instance=raw, schema=schema)
    return raw


def _service_ids(raw: list[Any]) -> tuple[str, ...]:
    ids = []
    for entry in raw:
        sid = entry.get("id") if isinstance(entry, Mapping) else entry
        sid = str(sid).strip().lower()
        if sid and sid not in ids:
            ids.append(sid)
    return tuple(ids)


def _pick(overrides: Mapping[str, Any], key: str, file_value: Any, default: Any) -> Any:
    if overrides.get(key) is not None:
        return overrides[key]
    if file_value is not None:
        return file_value
    return default


def _parse_cap(value: Any) -> int | str | None:
    if value is None:
        return None
    if isinstance(value, str):
        if value.strip().lower() == DYNAMIC_CAP:
            return DYNAMIC_CAP
        return max(0, int(value))
    return max(0, int(value))


def resolve_policy(
    raw: Mapping[str, Any], overrides: Mapping[str, Any] | None = None
) -> LinkPolicy:
    """Merge CLI overrides over file policies over defaults, then apply strict mode."""
    overrides = overrides or {}
    scoring_raw = raw.get("scoring") or {}
    defaults = ScoringWeights()
    scoring = ScoringWeights(
        cluster=float(scoring_raw.get("weightCluster", defaults.cluster)),
        distance=float(scoring_raw.get("weightDistance", defaults.distance)),
        reciprocal=float(scoring_raw.get("weightReciprocalEdge", defaults.reciprocal)),
        hub=float(scoring_raw.get("weightHubDamping", defaults.hub)),
        distance_scale_km=float(
            scoring_raw.get("distanceScaleKm", defaults.distance_scale_km)
        ),
    )

    max_n = int(
        _pick(
            overrides, "neighbors_max", raw.get("neighborsMax"), DEFAULT_NEIGHBORS_MAX
        )
    )
    min_n = int(
        _pick(overrides, "neighbors_min", raw.get("neighborsMin"), min(3, max_n))
    )
    cap_override = overrides.get("inbound_cap")
    cap = _parse_cap(
        cap_override if cap_override is not None else raw.get("globalInboundCap")
    )
    enforce = bool(overrides.get("enforce_reciprocity")) or bool(
        raw.get("enforceReciprocity", False)
    )
    strict = bool(overrides.get("strict")) or bool(raw.get("strict", False))
    rebalance = _pick(overrides, "rebalance", raw.get("rebalance"), True)

    max_n = max(0, max_n)
    if strict:
        enforce = True
        max_n = max(3, min(max_n, 5))
        if cap is None:
            cap = DYNAMIC_CAP
    min_n = max(0, min(min_n, max_n))

    return LinkPolicy(
        neighbors_max=max_n,
        neighbors_min=min_n,
        inbound_cap=cap,
        enforce_reciprocity=enforce,
        strict=strict,
        rebalance=bool(rebalance),
        scoring=scoring,
    )


def resolve_gate(
    raw: Mapping[str, Any], overrides: Mapping[str, Any] | None = None
) -> GatePolicy:
    overrides = overrides or {}
    orphans = _pick(overrides, "fail_orphans", raw.get("failOrphans"), None)

    def _flag(override_key: str, raw_key: str) -> bool:
        return bool(overrides.get(override_key)) or bool(raw.get(raw_key, False))

    return GatePolicy(
        fail_reciprocity=bool(
            _pick(overrides, "fail_reciprocity", raw.get("failReciprocity"), True)
        ),
        fail_orphans=int(orphans) if orphans is not None else None,
        fail_duplicates=_flag("fail_duplicates", "failDuplicates"),
        fail_missing_clusters=_flag("fail_missing_clusters", "failMissingClusters"),
        promote_findings=_flag("promote_findings", "promoteFindings"),
    )


def load_config(
    path: Path | None, *, overrides: Mapping[str, Any] | None = None
) -> Config:
    """Build the run configuration once: CLI overrides > config file > defaults.

    A missing ``path`` (or a path that does not exist) means defaults only,
    resolved relative to the current directory.
    """
    overrides = dict(overrides or {})
    if path is not None and path.is_file():
        raw = read_config_file(path)
        base_dir = path.parent.resolve()
    else:
        raw = {}
        base_dir = Path.cwd().resolve()

    def _rel(p: Any) -> Path:
        q = Path(str(p))
        return (base_dir / q).resolve() if not q.is_absolute() else q.resolve()

    data = {**DEFAULT_DATA, **(raw.get("data") or {})}
    for key in ("adjacency", "clusters", "meta"):
        if overrides.get(key) is not None:
            data[key] = overrides[key]

    reports_dir = (
        overrides.get("reports_dir") or raw.get("reportsDir") or DEFAULT_REPORTS_DIR
    )

    return Config(
        base_dir=base_dir,
        services=_service_ids(list(raw.get("services") or [])),
        adjacency_path=_rel(data["adjacency"]),
        clusters_path=_rel(data["clusters"]),
        meta_path=_rel(data["meta"]),
        reports_dir=_rel(reports_dir),
        policy=resolve_policy(raw.get("policies") or {}, overrides),
        gate=resolve_gate(raw.get("gate") or {}, overrides),
    )
