"""Shared test fixtures for cratecheck."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from cratecheck.engine.universe import CrateUniverse

if TYPE_CHECKING:
    from pathlib import Path


PROPAGATION_RULE = (
    "test: Check that the feature propagates.\n"
    "\tgiven:\n"
    "\t\tcrates: [A, B]\n"
    "\t\tdependencies:\n"
    "\t\t\tA: direct: B\n"
    "\t\tfeatures:\n"
    "\t\t\tA: enabled: runtime-benchmarks\n"
    "\t\t\tB: defines: runtime-benchmarks\n"
    "\tthen:\n"
    "\t\tB: enabled: runtime-benchmarks\n"
    "\totherwise:\n"
    '\t\terror: "feature `runtime-benchmarks` is not propagates"\n'
    "\t\t\tauto-fix: enable-feature: A: runtime-benchmarks: B/runtime-benchmarks\n"
)

DIRECT_RULE = (
    "test: Check that the primitives do not directly depend on frame or any pallet.\n"
    "\tgiven:\n"
    "\t\tcrates:\n"
    '\t\t\tA: name: regex("^sp-.*")\n'
    '\t\t\tB: name: regex("^frame-*") | regex("^pallet-*")\n'
    "\tthen:\n"
    "\t\tnot: dependencies:\n"
    "\t\t\tA: direct: B\n"
    "\totherwise:\n"
    '\t\terror: "sp-* crates should not depend on frame-* or pallet-* crates"\n'
    "\t\t\tauto-fix: remove-dependency: A: B\n"
)

TRANSITIVE_RULE = (
    "test: Check that the primitives do not transitively depend on frame or any pallet.\n"
    "\tgiven:\n"
    "\t\tcrates:\n"
    '\t\t\tA: name: regex("^sp-.*")\n'
    '\t\t\tB: name: regex("^frame-*") | regex("^pallet-*")\n'
    "\tthen:\n"
    "\t\tnot: dependencies:\n"
    "\t\t\tA: transitive: B\n"
    "\totherwise:\n"
    '\t\terror: "sp-* crates should not depend on frame-* or pallet-* crates"\n'
    "\t\t\tauto-fix: remove-dependency: A: B\n"
)


@pytest.fixture()
def propagation_universe() -> CrateUniverse:
    """A enables runtime-benchmarks and depends on B, which defines it; no forward."""
    return CrateUniverse.from_mapping(
        {
            "A": {
                "dependencies": ["B"],
                "features": {"runtime-benchmarks": {"defines": True, "enabled": True}},
            },
            "B": {"features": {"runtime-benchmarks": {"defines": True}}},
        }
    )


@pytest.fixture()
def layered_universe() -> CrateUniverse:
    """sp-core -> sp-io -> frame-system, with no direct sp-core -> frame-system edge."""
    return CrateUniverse.from_mapping(
        {
            "sp-core": {"dependencies": ["sp-io"]},
            "sp-io": {"dependencies": ["frame-system"]},
            "frame-system": {},
            "pallet-balances": {"dependencies": ["frame-system"]},
        }
    )


@pytest.fixture()
def rules_file(tmp_path: Path) -> Path:
    """All three reference rules in one DSL file."""
    path = tmp_path / "workspace.rules"
    path.write_text(PROPAGATION_RULE + "\n\n" + DIRECT_RULE + "\n\n" + TRANSITIVE_RULE)
    return path


@pytest.fixture()
def universe_file(tmp_path: Path) -> Path:
    """A YAML universe violating the direct and transitive primitive rules."""
    path = tmp_path / "universe.yml"
    path.write_text(
        "crates:\n"
        "  sp-core:\n"
        "    dependencies:\n"
        "      - sp-io\n"
        "      - frame-system\n"
        "  sp-io:\n"
        "    dependencies: [frame-system]\n"
        "  frame-system:\n"
        "    features:\n"
        "      std: {defines: true, enabled: true}\n"
    )
    return path


@pytest.fixture()
def propagation_rule() -> str:
    return PROPAGATION_RULE


@pytest.fixture()
def direct_rule() -> str:
    return DIRECT_RULE


@pytest.fixture()
def transitive_rule() -> str:
    return TRANSITIVE_RULE
