from __future__ import annotations

import hashlib
import json
import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

PRODUCT_MODULE_PREFIXES = ("geolink",)


def _canonical_env_hash(env: dict[str, str]) -> str:
    payload = json.dumps(sorted(env.items()), ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@pytest.fixture(autouse=True)
def isolate_runtime_state() -> Iterator[None]:
    modules_before = set(sys.modules.keys())
    environ_before = dict(os.environ)
    environ_before_hash = _canonical_env_hash(environ_before)

    yield

    post_modules = set(sys.modules.keys())
    new_modules = post_modules - modules_before
    for module_name in new_modules:
        if module_name.startswith(PRODUCT_MODULE_PREFIXES):
            sys.modules.pop(module_name, None)

    post_env = dict(os.environ)
    for key in list(post_env.keys()):
        if key not in environ_before:
            os.environ.pop(key, None)
    for key, value in environ_before.items():
        os.environ[key] = value

    assert _canonical_env_hash(dict(os.environ)) == environ_before_hash


def _write_json_file(path: Path, payload: object) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


@pytest.fixture
def geo_data(tmp_path: Path) -> dict[str, Path]:
    """A small symmetric graph over two clusters with coordinates."""
    adjacency = {
        "bondi": ["bronte", "coogee", "randwick"],
        "bronte": ["bondi", "coogee"],
        "coogee": ["bondi", "bronte", "randwick"],
        "randwick": ["bondi", "coogee", "kensington"],
        "kensington": ["randwick"],
    }
    clusters = {
        "eastern-beaches": ["bondi", "bronte", "coogee"],
        "inner-east": ["randwick", "kensington"],
    }
    coords = {
        "bondi": (-33.8915, 151.2767),
        "bronte": (-33.9036, 151.2638),
        "coogee": (-33.9197, 151.2551),
        "randwick": (-33.9146, 151.2437),
        "kensington": (-33.9057, 151.2227),
    }
    meta = {
        slug: {"name": slug.title(), "coordinates": {"lat": lat, "lng": lng}}
        for slug, (lat, lng) in coords.items()
    }
    data = tmp_path / "data"
    return {
        "adjacency": _write_json_file(data / "areas.adj.json", adjacency),
        "clusters": _write_json_file(data / "areas.clusters.json", clusters),
        "meta": _write_json_file(data / "suburbs.meta.json", meta),
        "reports": tmp_path / "reports",
    }
