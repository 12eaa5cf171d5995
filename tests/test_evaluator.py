"""Tests for cratecheck.engine.evaluator — binding enumeration and assertions."""

from __future__ import annotations

import pytest

from cratecheck.config import EngineConfig
from cratecheck.engine.autofix import (
    AddDependency,
    EnableFeatureForward,
    RemoveDependency,
    preview_fix,
)
from cratecheck.engine.dsl import parse_rules
from cratecheck.engine.errors import PatternCompileError, UnknownCrateReferenceError
from cratecheck.engine.evaluator import evaluate_rules, validate_rules
from cratecheck.engine.universe import CrateUniverse

OPEN_PAIR_RULE = (
    "test: every pair\n"
    "  given:\n"
    "    crates: [A, B]\n"
    "  then:\n"
    "    not: A: direct: B\n"
    "  otherwise:\n"
    "    error: '{A} -> {B}'\n"
)

BAD_REGEX_RULE = (
    "test: bad regex\n"
    "  given:\n"
    "    crates:\n"
    '      A: name: regex("^sp-(")\n'
    "  then:\n"
    "    A: defines: std\n"
)

UNKNOWN_CRATE_RULE = (
    "test: unknown crate\n"
    "  given:\n"
    "    crates:\n"
    '      A: name: "sp-std"\n'
    "  then:\n"
    "    A: defines: std\n"
)


@pytest.fixture()
def primitives_universe() -> CrateUniverse:
    """sp-core depends directly on frame-system and pallet-x; sp-io on frame-system."""
    return CrateUniverse.from_mapping(
        {
            "sp-core": {"dependencies": ["frame-system", "pallet-x", "sp-io"]},
            "sp-io": {"dependencies": ["frame-system"]},
            "frame-system": {},
            "pallet-x": {},
        }
    )


# ---------------------------------------------------------------------------
# Reference scenarios
# ---------------------------------------------------------------------------


class TestFeaturePropagation:
    def test_missing_forward_is_reported(
        self, propagation_rule: str, propagation_universe: CrateUniverse
    ) -> None:
        result = evaluate_rules(parse_rules(propagation_rule), propagation_universe)

        assert result.failures == []
        assert len(result.violations) == 1
        v = result.violations[0]
        assert v.binding == (("A", "A"), ("B", "B"))
        assert v.message == "feature `runtime-benchmarks` is not propagates"
        assert v.fix == EnableFeatureForward("A", "runtime-benchmarks", "B/runtime-benchmarks")
        assert v.evidence == ()

    def test_applying_fix_clears_violation(
        self, propagation_rule: str, propagation_universe: CrateUniverse
    ) -> None:
        rules = parse_rules(propagation_rule)
        (v,) = evaluate_rules(rules, propagation_universe).violations
        assert v.fix is not None

        patched = preview_fix(propagation_universe, v.fix)
        assert evaluate_rules(rules, patched).ok

    def test_weak_forward_counts(self, propagation_rule: str) -> None:
        universe = CrateUniverse.from_mapping(
            {
                "A": {
                    "dependencies": ["B"],
                    "features": {
                        "runtime-benchmarks": {
                            "defines": True,
                            "enabled": True,
                            "forwards": ["B?/runtime-benchmarks"],
                        }
                    },
                },
                "B": {"features": {"runtime-benchmarks": {"defines": True}}},
            }
        )
        assert evaluate_rules(parse_rules(propagation_rule), universe).ok

    def test_target_enabled_elsewhere_still_violates(self, propagation_rule: str) -> None:
        universe = CrateUniverse.from_mapping(
            {
                "A": {
                    "dependencies": ["B"],
                    "features": {"runtime-benchmarks": {"defines": True, "enabled": True}},
                },
                "B": {"features": {"runtime-benchmarks": {"defines": True, "enabled": True}}},
            }
        )
        result = evaluate_rules(parse_rules(propagation_rule), universe)
        assert [v.crates for v in result.violations] == [("A", "B")]

    def test_no_activator_means_no_binding(self, propagation_rule: str) -> None:
        universe = CrateUniverse.from_mapping(
            {
                "A": {"dependencies": ["B"]},
                "B": {"features": {"runtime-benchmarks": {"defines": True}}},
            }
        )
        assert evaluate_rules(parse_rules(propagation_rule), universe).ok


class TestForbiddenDependencies:
    def test_direct_rule(self, direct_rule: str, primitives_universe: CrateUniverse) -> None:
        result = evaluate_rules(parse_rules(direct_rule), primitives_universe)

        assert [v.crates for v in result.violations] == [
            ("sp-core", "frame-system"),
            ("sp-core", "pallet-x"),
            ("sp-io", "frame-system"),
        ]
        first = result.violations[0]
        assert first.fix == RemoveDependency("sp-core", "frame-system")
        assert first.evidence == ("sp-core", "frame-system")

    def test_direct_rule_ignores_transitive_paths(
        self, direct_rule: str, layered_universe: CrateUniverse
    ) -> None:
        result = evaluate_rules(parse_rules(direct_rule), layered_universe)
        assert [v.crates for v in result.violations] == [("sp-io", "frame-system")]

    def test_transitive_rule(
        self, transitive_rule: str, layered_universe: CrateUniverse
    ) -> None:
        result = evaluate_rules(parse_rules(transitive_rule), layered_universe)

        assert [v.crates for v in result.violations] == [
            ("sp-core", "frame-system"),
            ("sp-io", "frame-system"),
        ]
        assert result.violations[0].evidence == ("sp-core", "sp-io", "frame-system")

    def test_vacuously_true_when_no_crate_matches(self, direct_rule: str) -> None:
        universe = CrateUniverse.from_mapping({"frame-system": {}, "pallet-x": {}})
        result = evaluate_rules(parse_rules(direct_rule), universe)
        assert result.ok
        assert result.rules_evaluated == 1

    def test_message_placeholders(self, primitives_universe: CrateUniverse) -> None:
        rule_text = OPEN_PAIR_RULE.replace("every pair", "pairs").replace(
            "crates: [A, B]", "crates:\n      A: name: sp-io\n      B"
        )
        result = evaluate_rules(parse_rules(rule_text), primitives_universe)
        assert [v.message for v in result.violations] == ["sp-io -> frame-system"]


class TestPreconditions:
    def test_given_clauses_filter_bindings(self, primitives_universe: CrateUniverse) -> None:
        text = (
            "test: filtered\n"
            "  given:\n"
            "    crates: [A, B]\n"
            "    dependencies:\n"
            "      A: transitive: B\n"
            "  then:\n"
            '    B: defines: std\n'
        )
        result = evaluate_rules(parse_rules(text), primitives_universe)
        assert [v.crates for v in result.violations] == [
            ("sp-core", "frame-system"),
            ("sp-core", "pallet-x"),
            ("sp-core", "sp-io"),
            ("sp-io", "frame-system"),
        ]

    def test_precondition_target_declared_first(self, layered_universe: CrateUniverse) -> None:
        text = (
            "test: reversed order\n"
            "  given:\n"
            "    crates:\n"
            "      B: name: frame-system\n"
            "      A\n"
            "    dependencies:\n"
            "      A: direct: B\n"
            "  then:\n"
            "    not: A: direct: B\n"
        )
        result = evaluate_rules(parse_rules(text), layered_universe)
        assert [v.binding for v in result.violations] == [
            (("B", "frame-system"), ("A", "pallet-balances")),
            (("B", "frame-system"), ("A", "sp-io")),
        ]


class TestFeatureGuards:
    """Features that must stay off, and features dependents must mirror."""

    @pytest.fixture()
    def benchmark_universe(self) -> CrateUniverse:
        """node -> runtime -> io; only io defines runtime-benchmarks."""
        return CrateUniverse.from_mapping(
            {
                "node": {"dependencies": ["runtime"]},
                "runtime": {
                    "dependencies": ["io"],
                    "features": {"default": {"forwards": ["io/runtime-benchmarks"]}},
                },
                "io": {"features": {"runtime-benchmarks": {"defines": True}}},
            }
        )

    def test_never_enables(self, benchmark_universe: CrateUniverse) -> None:
        text = (
            "test: default never enables runtime-benchmarks\n"
            "  given:\n"
            "    crates: [A]\n"
            "  then:\n"
            "    not: A: enables: default/runtime-benchmarks\n"
            "  otherwise:\n"
            "    error: '{A} enables runtime-benchmarks by default'\n"
        )
        result = evaluate_rules(parse_rules(text), benchmark_universe)

        (v,) = result.violations
        assert v.crates == ("runtime",)
        assert v.message == "runtime enables runtime-benchmarks by default"
        assert v.evidence == ("runtime/default", "io/runtime-benchmarks")

    def test_never_implies(self, benchmark_universe: CrateUniverse) -> None:
        text = (
            "test: default never implies runtime-benchmarks\n"
            "  given:\n"
            "    crates: [A]\n"
            "  then:\n"
            "    not: A: implies: default/runtime-benchmarks\n"
        )
        result = evaluate_rules(parse_rules(text), benchmark_universe)

        assert [v.crates for v in result.violations] == [("node",), ("runtime",)]
        assert result.violations[0].evidence == (
            "node/default",
            "runtime/default",
            "io/runtime-benchmarks",
        )

    def test_feature_missing_on_dependent(self) -> None:
        text = (
            "test: dependents mirror std\n"
            "  given:\n"
            "    crates: [A, B]\n"
            "    dependencies:\n"
            "      A: direct: B\n"
            "    features:\n"
            "      B: defines: std\n"
            "  then:\n"
            "    A: defines: std\n"
            "  otherwise:\n"
            "    error: '{A} lacks std of {B}'\n"
            "    auto-fix: enable-feature: A: std: B/std\n"
        )
        universe = CrateUniverse.from_mapping(
            {
                "a": {"dependencies": ["b", "c"]},
                "b": {"features": {"std": {"defines": True}}},
                "c": {},
                "d": {"dependencies": ["b"], "features": {"std": {"defines": True}}},
            }
        )
        result = evaluate_rules(parse_rules(text), universe, EngineConfig(verify_fixes=True))

        (v,) = result.violations
        assert v.crates == ("a", "b")
        assert v.fix == EnableFeatureForward("a", "std", "b/std")
        assert v.fix_verified is True


# ---------------------------------------------------------------------------
# Failure isolation and determinism
# ---------------------------------------------------------------------------


class TestRuleFailures:
    def test_bad_regex_fails_only_its_rule(
        self, direct_rule: str, primitives_universe: CrateUniverse
    ) -> None:
        rules = parse_rules(BAD_REGEX_RULE + direct_rule)
        result = evaluate_rules(rules, primitives_universe)

        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.rule_name == "bad regex"
        assert isinstance(failure.error, PatternCompileError)
        assert len(result.violations) == 3
        assert not result.ok

    def test_unknown_literal_fails_rule(self, primitives_universe: CrateUniverse) -> None:
        result = evaluate_rules(parse_rules(UNKNOWN_CRATE_RULE), primitives_universe)
        (failure,) = result.failures
        assert isinstance(failure.error, UnknownCrateReferenceError)
        assert "sp-std" in failure.message

    def test_budget_exceeded(self, direct_rule: str, primitives_universe: CrateUniverse) -> None:
        rules = parse_rules(OPEN_PAIR_RULE + direct_rule)
        result = evaluate_rules(rules, primitives_universe, EngineConfig(iteration_budget=10))

        assert [f.rule_name for f in result.failures] == ["every pair"]
        assert "iteration budget of 10 exceeded" in result.failures[0].message
        assert len(result.violations) == 3

    def test_budget_large_enough(self, primitives_universe: CrateUniverse) -> None:
        # 4 candidates for A, then 4 for B under each: 20 steps
        config = EngineConfig(iteration_budget=20)
        result = evaluate_rules(parse_rules(OPEN_PAIR_RULE), primitives_universe, config)
        assert result.failures == []
        assert len(result.violations) == 4


class TestDeterminism:
    def test_parallel_matches_sequential(
        self,
        propagation_rule: str,
        direct_rule: str,
        transitive_rule: str,
        primitives_universe: CrateUniverse,
    ) -> None:
        rules = parse_rules(
            BAD_REGEX_RULE + propagation_rule + direct_rule + transitive_rule + OPEN_PAIR_RULE
        )
        sequential = evaluate_rules(rules, primitives_universe)
        parallel = evaluate_rules(
            rules, primitives_universe, EngineConfig(max_workers=4, precompute_closure=True)
        )

        assert parallel.violations == sequential.violations
        assert [f.rule_name for f in parallel.failures] == [
            f.rule_name for f in sequential.failures
        ]

    def test_violations_sorted_by_rule_then_binding(
        self, direct_rule: str, transitive_rule: str, primitives_universe: CrateUniverse
    ) -> None:
        result = evaluate_rules(
            parse_rules(transitive_rule + direct_rule), primitives_universe
        )
        keys = [v.sort_key for v in result.violations]
        assert keys == sorted(keys)
        assert result.violations[0].rule_index == 0


class TestVerifyFixes:
    def test_fixes_marked_verified(
        self, direct_rule: str, primitives_universe: CrateUniverse
    ) -> None:
        result = evaluate_rules(
            parse_rules(direct_rule), primitives_universe, EngineConfig(verify_fixes=True)
        )
        assert result.violations
        assert all(v.fix_verified is True for v in result.violations)

    def test_remove_direct_edge_does_not_fix_transitive(
        self, transitive_rule: str, layered_universe: CrateUniverse
    ) -> None:
        result = evaluate_rules(
            parse_rules(transitive_rule), layered_universe, EngineConfig(verify_fixes=True)
        )
        verified = {v.crates: v.fix_verified for v in result.violations}
        # sp-core has no direct edge to frame-system; removing it changes nothing
        assert verified == {
            ("sp-core", "frame-system"): False,
            ("sp-io", "frame-system"): True,
        }

    def test_budget_exhausted_on_patched_universe_leaves_fix_unverified(self) -> None:
        text = (
            "test: chain\n"
            "  given:\n"
            "    crates:\n"
            '      X: name: "a"\n'
            "      Y\n"
            '      Z: name: "c"\n'
            "    dependencies:\n"
            "      X: direct: Y\n"
            "  then:\n"
            "    Y: direct: Z\n"
            "  otherwise:\n"
            "    error: '{Y} does not reach {Z}'\n"
            "    auto-fix: add-dependency: X: Z\n"
        )
        universe = CrateUniverse.from_mapping({"a": {"dependencies": ["b"]}, "b": {}, "c": {}})
        # three candidates fit the budget; the added edge a -> c needs a fourth
        config = EngineConfig(iteration_budget=3, verify_fixes=True)

        result = evaluate_rules(parse_rules(text), universe, config)

        assert result.failures == []
        (v,) = result.violations
        assert v.fix == AddDependency("a", "c")
        assert v.fix_verified is None


# ---------------------------------------------------------------------------
# validate_rules
# ---------------------------------------------------------------------------


class TestValidateRules:
    def test_clean_rules(self, direct_rule: str, primitives_universe: CrateUniverse) -> None:
        assert validate_rules(parse_rules(direct_rule), primitives_universe) == []

    def test_reports_problems(self, primitives_universe: CrateUniverse) -> None:
        text = (
            BAD_REGEX_RULE
            + UNKNOWN_CRATE_RULE
            + "test: nothing matches\n"
            "  given:\n"
            "    crates:\n"
            '      A: name: regex("^polkadot-")\n'
            "      B\n"
            "  then:\n"
            "    not: A: direct: B\n"
            "  otherwise:\n"
            "    error: nope\n"
            "    auto-fix: remove-dependency: A: C\n"
        )
        warnings = validate_rules(parse_rules(text), primitives_universe)

        assert len(warnings) == 4
        assert "invalid regex" in warnings[0]
        assert "'sp-std' does not exist" in warnings[1]
        assert "matches no crate" in warnings[2]
        assert "undeclared variable 'C'" in warnings[3]
