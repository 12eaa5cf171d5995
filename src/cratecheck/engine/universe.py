"""Crate universe model and YAML/JSON loader.

The universe is the read-only input of a run: every crate with its direct
dependency edges and feature table.  Extraction from real workspace manifests
happens elsewhere; this module only accepts the already-extracted mapping::

    crates:
      sp-core:
        dependencies:
          - sp-io
          - {name: frame-system, kind: build}
        features:
          std: {defines: true, enabled: true, forwards: [sp-io/std]}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import yaml

from cratecheck.engine.errors import UniverseError

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)

VALID_DEPENDENCY_KINDS: frozenset[str] = frozenset({"normal", "dev", "build"})

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Feature:
    """A feature declaration of a single crate."""

    name: str
    defines: bool = False  # the crate itself exposes this flag
    enabled: bool = False  # activated by default or forced on
    forwards: frozenset[str] = frozenset()  # "crate/feature" propagation entries


@dataclass(frozen=True, order=True)
class DependencyEdge:
    """A direct dependency edge between two crates of the universe."""

    from_crate: str
    to_crate: str
    kind: str = "normal"  # "normal" | "dev" | "build"


@dataclass(frozen=True)
class Crate:
    """A single workspace crate.  The name doubles as its unique id."""

    name: str
    features: Mapping[str, Feature] = field(default_factory=dict)
    dependencies: tuple[DependencyEdge, ...] = ()

    def feature(self, name: str) -> Feature | None:
        """Return the feature called *name*, or ``None``."""
        return self.features.get(name)


class CrateUniverse:
    """Immutable snapshot of every crate taking part in a run."""

    def __init__(self, crates: Mapping[str, Crate]) -> None:
        for crate in crates.values():
            for edge in crate.dependencies:
                if edge.from_crate != crate.name:
                    msg = (
                        f"Crate '{crate.name}' lists edge from '{edge.from_crate}', "
                        f"expected edges to start at the crate itself"
                    )
                    raise UniverseError(msg)
                if edge.to_crate not in crates:
                    msg = (
                        f"Crate '{crate.name}' depends on unknown crate '{edge.to_crate}'"
                    )
                    raise UniverseError(msg)
        self._crates: dict[str, Crate] = {name: crates[name] for name in sorted(crates)}

    def __contains__(self, name: object) -> bool:
        return name in self._crates

    def __iter__(self) -> Iterator[Crate]:
        return iter(self._crates.values())

    def __len__(self) -> int:
        return len(self._crates)

    def __getitem__(self, name: str) -> Crate:
        return self._crates[name]

    def get(self, name: str) -> Crate | None:
        return self._crates.get(name)

    @property
    def names(self) -> tuple[str, ...]:
        """All crate names, sorted."""
        return tuple(self._crates)

    def edges(self) -> Iterator[DependencyEdge]:
        for crate in self._crates.values():
            yield from crate.dependencies

    def replace(self, crate: Crate) -> CrateUniverse:
        """Return a new universe where *crate* replaces its namesake."""
        crates = dict(self._crates)
        crates[crate.name] = crate
        return CrateUniverse(crates)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> CrateUniverse:
        """Build a universe from the ``crate name -> {dependencies, features}`` mapping.

        Raises :class:`UniverseError` on dangling edges, unknown edge kinds,
        or malformed entries.
        """
        crates_data = data
        if set(data) == {"crates"} and isinstance(data["crates"], dict):
            crates_data = data["crates"]

        crates: dict[str, Crate] = {}
        for raw_name, crate_data in crates_data.items():
            name = str(raw_name)
            if crate_data is None:
                crate_data = {}
            if not isinstance(crate_data, dict):
                msg = f"Crate '{name}': entry must be a mapping"
                raise UniverseError(msg)
            crates[name] = Crate(
                name=name,
                features=_parse_features(name, crate_data.get("features") or {}),
                dependencies=_parse_dependencies(name, crate_data.get("dependencies") or []),
            )

        universe = cls(crates)
        logger.debug(
            "Loaded universe: %d crates, %d edges",
            len(universe),
            sum(1 for _ in universe.edges()),
        )
        return universe


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _parse_features(crate: str, features_data: object) -> dict[str, Feature]:
    """Parse the feature table of one crate."""
    if not isinstance(features_data, dict):
        msg = f"Crate '{crate}': 'features' must be a mapping"
        raise UniverseError(msg)

    features: dict[str, Feature] = {}
    for raw_name, feature_data in features_data.items():
        name = str(raw_name)
        if feature_data is None:
            feature_data = {}
        if not isinstance(feature_data, dict):
            msg = f"Crate '{crate}': feature '{name}' must be a mapping"
            raise UniverseError(msg)

        forwards_raw = feature_data.get("forwards") or []
        if isinstance(forwards_raw, str):
            forwards_raw = [forwards_raw]
        if not isinstance(forwards_raw, list):
            msg = f"Crate '{crate}': feature '{name}' forwards must be a list"
            raise UniverseError(msg)

        features[name] = Feature(
            name=name,
            defines=bool(feature_data.get("defines", False)),
            enabled=bool(feature_data.get("enabled", False)),
            forwards=frozenset(str(f) for f in forwards_raw),
        )
    return features


def _parse_dependencies(crate: str, deps_data: object) -> tuple[DependencyEdge, ...]:
    """Parse the dependency list of one crate, collapsing duplicate edges."""
    if not isinstance(deps_data, list):
        msg = f"Crate '{crate}': 'dependencies' must be a list"
        raise UniverseError(msg)

    edges: set[DependencyEdge] = set()
    for idx, dep in enumerate(deps_data):
        if isinstance(dep, str):
            target, kind = dep, "normal"
        elif isinstance(dep, dict):
            target = dep.get("name")
            kind = str(dep.get("kind", "normal"))
            if target is None:
                msg = f"Crate '{crate}': dependency at index {idx} missing 'name'"
                raise UniverseError(msg)
        else:
            msg = f"Crate '{crate}': dependency at index {idx} must be a string or mapping"
            raise UniverseError(msg)

        if kind not in VALID_DEPENDENCY_KINDS:
            msg = (
                f"Crate '{crate}': invalid dependency kind '{kind}', "
                f"must be one of {sorted(VALID_DEPENDENCY_KINDS)}"
            )
            raise UniverseError(msg)
        edges.add(DependencyEdge(crate, str(target), kind))

    return tuple(sorted(edges))


def load_universe(path: Path) -> CrateUniverse:
    """Read a universe file.  ``*.json`` is read as JSON, anything else as YAML."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read universe file {path}: {exc}"
        raise UniverseError(msg) from exc

    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        msg = f"Cannot parse universe file {path}: {exc}"
        raise UniverseError(msg) from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        msg = f"{path}: universe must be a mapping of crate names"
        raise UniverseError(msg)
    return CrateUniverse.from_mapping(data)
