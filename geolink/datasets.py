"""Loading of the adjacency, cluster and suburb-metadata datasets.

Structural problems found while loading are returned as ``Finding`` values;
only a missing required file aborts.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .errors import InputMissingError
from .graph import normalize_adjacency, slugify
from .util import read_json, sha256_file

FINDING_DUPLICATE_CLUSTER = "duplicate-cluster-assignment"
FINDING_MISSING_CLUSTER = "missing-cluster"
FINDING_UNKNOWN_NODE = "cluster-unknown-node"
FINDING_BAD_CLUSTER = "malformed-cluster"
FINDING_COORD_RANGE = "coordinates-out-of-range"
FINDING_COORD_PLACEHOLDER = "coordinates-placeholder"


@dataclass(frozen=True)
class Finding:
    code: str
    subject: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True)
class Suburb:
    slug: str
    name: str
    coordinates: Coordinates | None = None
    cluster: str | None = None
    tier: str | None = None


@dataclass(frozen=True)
class ClusterIndex:
    clusters: tuple[str, ...] = ()
    cluster_of: dict[str, str] = field(default_factory=dict)
    duplicates: dict[str, list[str]] = field(default_factory=dict)
    malformed: tuple[str, ...] = ()

    def members(self) -> set[str]:
        return set(self.cluster_of)


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def parse_coordinates(entry: Any) -> Coordinates | None:
    """Read ``{lat, lng}`` (also ``latitude``/``longitude``/``lon``)."""
    if not isinstance(entry, Mapping):
        return None
    lat = _number(entry.get("lat", entry.get("latitude")))
    lng = _number(entry.get("lng", entry.get("lon", entry.get("longitude"))))
    if lat is None or lng is None:
        return None
    return Coordinates(lat=lat, lng=lng)


def parse_clusters(raw: Any) -> ClusterIndex:
    """Accepts ``{cluster: [suburb, ...]}`` or ``{clusters: [{slug, suburbs}]}``.

    Suburb entries may be slugs or objects with a ``slug`` key. When a suburb
    is listed by several clusters the lexicographically first cluster wins and
    the collision is kept in ``duplicates``.
    """
    pairs: list[tuple[str, list[Any]]] = []
    malformed: list[str] = []
    if isinstance(raw, Mapping) and isinstance(raw.get("clusters"), list):
        for i, entry in enumerate(raw["clusters"]):
            slug = slugify(entry.get("slug")) if isinstance(entry, Mapping) else None
            if slug is None or not isinstance(entry.get("suburbs"), list):
                malformed.append(f"clusters[{i}]")
                continue
            pairs.append((slug, entry["suburbs"]))
    elif isinstance(raw, Mapping):
        for key, members in raw.items():
            slug = slugify(key)
            if slug is None or not isinstance(members, list):
                malformed.append(str(key))
                continue
            pairs.append((slug, members))

    assigned: dict[str, list[str]] = {}
    for cluster, members in sorted(pairs, key=lambda p: p[0]):
        for member in members:
            sub = slugify(
                member.get("slug") if isinstance(member, Mapping) else member
            )
            if sub is None:
                continue
            owners = assigned.setdefault(sub, [])
            if cluster not in owners:
                owners.append(cluster)

    return ClusterIndex(
        clusters=tuple(sorted({c for c, _ in pairs})),
        cluster_of={s: owners[0] for s, owners in sorted(assigned.items())},
        duplicates={
            s: owners for s, owners in sorted(assigned.items()) if len(owners) > 1
        },
        malformed=tuple(malformed),
    )


def cluster_embedded_coordinates(raw: Any) -> dict[str, Coordinates]:
    """Coordinates carried inline by ``{clusters: [{suburbs: [{slug, lat, lng}]}]}``."""
    out: dict[str, Coordinates] = {}
    if not (isinstance(raw, Mapping) and isinstance(raw.get("clusters"), list)):
        return out
    for entry in raw["clusters"]:
        if not isinstance(entry, Mapping) or not isinstance(entry.get("suburbs"), list):
            continue
        for member in entry["suburbs"]:
            if not isinstance(member, Mapping):
                continue
            slug = slugify(member.get("slug"))
            coords = parse_coordinates(member)
            if slug is not None and coords is not None:
                out.setdefault(slug, coords)
    return out


def parse_suburbs(
    meta: Mapping[str, Any] | None,
    nodes: list[str],
    clusters: ClusterIndex,
    inline_coords: Mapping[str, Coordinates] | None = None,
) -> dict[str, Suburb]:
    meta_by_slug: dict[str, Mapping[str, Any]] = {}
    for key, value in (meta or {}).items():
        slug = slugify(key)
        if slug is not None and isinstance(value, Mapping):
            meta_by_slug.setdefault(slug, value)

    out: dict[str, Suburb] = {}
    for slug in sorted(set(nodes) | set(meta_by_slug)):
        entry = meta_by_slug.get(slug, {})
        coords = parse_coordinates(entry.get("coordinates")) or parse_coordinates(entry)
        if coords is None and inline_coords:
            coords = inline_coords.get(slug)
        tier = entry.get("tier")
        out[slug] = Suburb(
            slug=slug,
            name=str(entry.get("name") or slug.replace("-", " ").title()),
            coordinates=coords,
            cluster=clusters.cluster_of.get(slug),
            tier=str(tier) if tier is not None else None,
        )
    return out


def dataset_findings(
    nodes: list[str],
    clusters: ClusterIndex,
    suburbs: Mapping[str, Suburb],
) -> list[Finding]:
    findings: list[Finding] = []
    node_set = set(nodes)
    for where in clusters.malformed:
        findings.append(
            Finding(
                FINDING_BAD_CLUSTER,
                where,
                f"cluster entry {where} has no slug or suburbs list",
            )
        )
    for slug, owners in sorted(clusters.duplicates.items()):
        findings.append(
            Finding(
                FINDING_DUPLICATE_CLUSTER,
                slug,
                f"{slug} appears in clusters [{', '.join(owners)}]",
            )
        )
    for slug in sorted(clusters.members() - node_set):
        findings.append(
            Finding(
                FINDING_UNKNOWN_NODE,
                slug,
                f"cluster {clusters.cluster_of[slug]} references unknown suburb {slug}",
            )
        )
    if clusters.clusters:
        for slug in sorted(node_set - clusters.members()):
            findings.append(
                Finding(
                    FINDING_MISSING_CLUSTER,
                    slug,
                    f"{slug} is not assigned to any cluster",
                )
            )
    for slug in sorted(suburbs):
        coords = suburbs[slug].coordinates
        if coords is None:
            continue
        if coords.lat == 0 and coords.lng == 0:
            findings.append(
                Finding(
                    FINDING_COORD_PLACEHOLDER,
                    slug,
                    f"{slug} has placeholder coordinates 0,0",
                )
            )
        elif not (-90 <= coords.lat <= 90 and -180 <= coords.lng <= 180):
            findings.append(
                Finding(FINDING_COORD_RANGE, slug, f"{slug} coordinates out of range")
            )
    return findings


@dataclass(frozen=True)
class GeoDatasets:
    raw_adjacency: dict[str, Any]
    clusters: ClusterIndex
    suburbs: dict[str, Suburb]
    input_hashes: dict[str, str]

    def coordinates(self) -> dict[str, Coordinates]:
        return {
            s: sub.coordinates
            for s, sub in self.suburbs.items()
            if sub.coordinates is not None
        }


def _require(label: str, path: Path | None) -> Path:
    if path is None or not path.is_file():
        raise InputMissingError(label, path)
    return path


def load_datasets(
    adjacency_path: Path,
    clusters_path: Path | None = None,
    meta_path: Path | None = None,
) -> GeoDatasets:
    """Read the datasets from disk. The adjacency is required; clusters and
    metadata are optional and default to empty."""
    adj_file = _require("adjacency", adjacency_path)
    raw_adj = read_json(adj_file)
    if not isinstance(raw_adj, dict):
        raw_adj = {}
    hashes = {"adjacency": sha256_file(adj_file)}

    raw_clusters: Any = {}
    if clusters_path is not None and clusters_path.is_file():
        raw_clusters = read_json(clusters_path)
        hashes["clusters"] = sha256_file(clusters_path)
    meta: Any = {}
    if meta_path is not None and meta_path.is_file():
        meta = read_json(meta_path)
        hashes["meta"] = sha256_file(meta_path)

    return build_datasets(raw_adj, raw_clusters, meta, input_hashes=hashes)


def build_datasets(
    raw_adjacency: Mapping[str, Any],
    raw_clusters: Any = None,
    meta: Mapping[str, Any] | None = None,
    *,
    input_hashes: Mapping[str, str] | None = None,
) -> GeoDatasets:
    clusters = parse_clusters(raw_clusters or {})
    nodes = list(normalize_adjacency(raw_adjacency))
    suburbs = parse_suburbs(
        meta if isinstance(meta, Mapping) else {},
        nodes,
        clusters,
        cluster_embedded_coordinates(raw_clusters),
    )
    return GeoDatasets(
        raw_adjacency=dict(raw_adjacency),
        clusters=clusters,
        suburbs=suburbs,
        input_hashes=dict(input_hashes or {}),
    )
