"""Rule evaluator: enumerate bindings, filter by preconditions, assert, report.

Per rule:

1. resolve each pattern variable to its candidate crates;
2. drop candidates failing feature preconditions, then enumerate bindings by
   backtracking in declaration order, narrowing each variable through the
   dependency preconditions that relate it to already-bound variables;
3. evaluate the ``then`` assertion for every surviving binding;
4. report one :class:`Violation` per binding for which it fails.

Rules are independent, so :func:`evaluate_rules` may fan them out to a
thread pool.  Results are sorted afterwards, making the output identical
regardless of scheduling.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from cratecheck.engine.autofix import render_message, synthesize_fix, verify_fix
from cratecheck.engine.errors import EvaluationError, FixTemplateError
from cratecheck.engine.graph_query import ReachabilityIndex
from cratecheck.engine.patterns import PatternResolver, iter_leaves

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from cratecheck.config import EngineConfig
    from cratecheck.engine.autofix import AutoFixAction
    from cratecheck.engine.dsl import Predicate, Rule
    from cratecheck.engine.universe import CrateUniverse

logger = logging.getLogger(__name__)

# variable -> crate, in the rule's variable declaration order
Binding = tuple[tuple[str, str], ...]

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Violation:
    """A binding for which a rule's assertion fails."""

    rule_name: str
    rule_index: int
    binding: Binding
    message: str
    fix: AutoFixAction | None = None
    fix_error: str | None = None
    evidence: tuple[str, ...] = ()  # dependency or feature path proving a forbidden relation
    fix_verified: bool | None = None

    @property
    def crates(self) -> tuple[str, ...]:
        return tuple(crate for _, crate in self.binding)

    @property
    def sort_key(self) -> tuple[int, tuple[str, ...]]:
        return (self.rule_index, self.crates)


@dataclass(frozen=True)
class RuleFailure:
    """A rule that could not be evaluated; other rules are unaffected."""

    rule_name: str
    rule_index: int
    error: EvaluationError

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass
class EvaluationResult:
    """Aggregate outcome of one evaluation pass."""

    violations: list[Violation] = field(default_factory=list)
    failures: list[RuleFailure] = field(default_factory=list)
    rules_evaluated: int = 0

    @property
    def ok(self) -> bool:
        return not self.violations and not self.failures


# ---------------------------------------------------------------------------
# Universe-aware validation (warnings, not errors)
# ---------------------------------------------------------------------------


def validate_rules(rules: Sequence[Rule], universe: CrateUniverse) -> list[str]:
    """Check rules against the universe, returning warning messages.

    Reports literal crate names missing from the universe, regexes that do
    not compile or match nothing, and fix templates whose crate slots name
    undeclared variables.  Nothing is raised.
    """
    warnings: list[str] = []
    resolver = PatternResolver(universe)

    for rule in rules:
        for variable, spec in rule.variables:
            if spec is None:
                continue
            for leaf in iter_leaves(spec):
                try:
                    matched = resolver.resolve_pattern(leaf, rule_name=rule.name)
                except EvaluationError as exc:
                    warnings.append(f"{exc} (variable {variable})")
                    continue
                if not matched:
                    warnings.append(
                        f"rule '{rule.name}': pattern {leaf} of {variable} matches no crate"
                    )

        if rule.fix is None:
            continue
        declared = set(rule.variable_names)
        crate_args = list(rule.fix.args[:2])
        if rule.fix.action == "enable-feature":
            crate_args = [rule.fix.args[0], rule.fix.args[2].split("/", 1)[0]]
        for arg in crate_args:
            name = arg.strip("{}")
            if name not in declared:
                warnings.append(
                    f"rule '{rule.name}': auto-fix references undeclared variable '{name}'"
                )

    return warnings


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def check_predicate(
    predicate: Predicate, binding: dict[str, str], index: ReachabilityIndex
) -> bool:
    """Evaluate *predicate* literally against the universe."""
    subject = binding[predicate.subject]
    if predicate.relation == "direct":
        return index.direct(subject, binding[predicate.target])
    if predicate.relation == "transitive":
        return index.transitive(subject, binding[predicate.target])
    if predicate.relation == "defines":
        return index.is_defined(subject, predicate.target)
    if predicate.relation == "enables":
        return index.enables(subject, *predicate.feature_pair)
    if predicate.relation == "implies":
        return index.implies(subject, *predicate.feature_pair)
    return index.is_enabled(subject, predicate.target)


def _check_assertion_predicate(
    rule: Rule, binding: dict[str, str], index: ReachabilityIndex
) -> bool:
    """Evaluate the assertion predicate in the context of *binding*.

    ``X: enabled: F`` holds when every activator propagates ``F`` into ``X``.
    Activators are the bound crates that the ``given`` clause makes depend
    directly on ``X`` and that have ``F`` enabled.  Without activators the
    raw ``enabled`` flag of ``X`` decides.
    """
    predicate = rule.assertion.predicate
    if predicate.relation != "enabled":
        return check_predicate(predicate, binding, index)

    crate, feature = binding[predicate.subject], predicate.target
    activators = sorted(
        {
            binding[p.subject]
            for p in rule.preconditions
            if p.relation == "direct"
            and p.target == predicate.subject
            and index.is_enabled(binding[p.subject], feature)
        }
    )
    if not activators:
        return index.is_enabled(crate, feature)
    return all(index.propagates(a, crate, feature) for a in activators)


# ---------------------------------------------------------------------------
# Binding enumeration
# ---------------------------------------------------------------------------


class _BindingEnumerator:
    """Backtracking enumeration of the bindings that satisfy all preconditions."""

    def __init__(
        self,
        rule: Rule,
        index: ReachabilityIndex,
        candidates: dict[str, tuple[str, ...]],
        budget: int | None,
    ) -> None:
        self.rule = rule
        self.index = index
        self.budget = budget
        self.iterations = 0
        self.order = rule.variable_names
        self.dependency_preconditions = [p for p in rule.preconditions if p.is_dependency]

        feature_preconditions = [p for p in rule.preconditions if not p.is_dependency]
        self.candidates: dict[str, frozenset[str]] = {}
        for variable in self.order:
            kept = [
                crate
                for crate in candidates[variable]
                if all(
                    check_predicate(p, {variable: crate}, index)
                    for p in feature_preconditions
                    if p.subject == variable
                )
            ]
            self.candidates[variable] = frozenset(kept)

    def _options(self, variable: str, assigned: dict[str, str]) -> list[str]:
        options = self.candidates[variable]
        for p in self.dependency_preconditions:
            if p.target == variable and p.subject in assigned and p.subject != variable:
                src = assigned[p.subject]
                if p.relation == "direct":
                    options = options & self.index.successors(src)
                else:
                    options = options & self.index.reachable(src)
            elif p.subject == variable and p.target in assigned and p.target != variable:
                dst = assigned[p.target]
                if p.relation == "direct":
                    options = options & self.index.predecessors(dst)
                else:
                    options = options & self.index.reverse_reachable(dst)
        return sorted(options)

    def _consistent(self, variable: str, assigned: dict[str, str]) -> bool:
        for p in self.dependency_preconditions:
            if variable not in (p.subject, p.target):
                continue
            if p.subject in assigned and p.target in assigned:
                if not check_predicate(p, assigned, self.index):
                    return False
        return True

    def _tick(self) -> None:
        self.iterations += 1
        if self.budget is not None and self.iterations > self.budget:
            msg = (
                f"iteration budget of {self.budget} exceeded while enumerating bindings; "
                f"relate the variables with 'dependencies:' preconditions"
            )
            raise EvaluationError(msg, rule_name=self.rule.name)

    def _extend(self, position: int, assigned: dict[str, str]) -> Iterator[dict[str, str]]:
        if position == len(self.order):
            yield dict(assigned)
            return
        variable = self.order[position]
        for crate in self._options(variable, assigned):
            self._tick()
            assigned[variable] = crate
            if self._consistent(variable, assigned):
                yield from self._extend(position + 1, assigned)
            del assigned[variable]

    def __iter__(self) -> Iterator[dict[str, str]]:
        return self._extend(0, {})


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _evidence(rule: Rule, binding: dict[str, str], index: ReachabilityIndex) -> tuple[str, ...]:
    """Path that makes a negated assertion fail, rendered as crate or ``crate/feature`` hops."""
    predicate = rule.assertion.predicate
    if not rule.assertion.negated:
        return ()
    subject = binding[predicate.subject]
    if predicate.is_dependency:
        return index.shortest_path(subject, binding[predicate.target])
    if predicate.relation == "implies":
        chain = index.feature_path(subject, *predicate.feature_pair)
        return tuple(f"{crate}/{feature}" for crate, feature in chain)
    if predicate.relation == "enables":
        feature, forbidden = predicate.feature_pair
        # first offending crate only
        targets = index.enabled_targets(subject, feature, forbidden)
        return (f"{subject}/{feature}", f"{targets[0]}/{forbidden}")
    return ()


def _make_violation(
    rule: Rule,
    binding: dict[str, str],
    index: ReachabilityIndex,
    *,
    synthesize: bool,
) -> Violation:
    fix: AutoFixAction | None = None
    fix_error: str | None = None
    if synthesize and rule.fix is not None:
        try:
            fix = synthesize_fix(rule.fix, binding, rule_name=rule.name)
        except FixTemplateError as exc:
            logger.warning("Cannot synthesize auto-fix: %s", exc)
            fix_error = str(exc)

    return Violation(
        rule_name=rule.name,
        rule_index=rule.index,
        binding=tuple((v, binding[v]) for v in rule.variable_names),
        message=render_message(rule.message, binding, rule_name=rule.name),
        fix=fix,
        fix_error=fix_error,
        evidence=_evidence(rule, binding, index),
    )


def evaluate_rule(
    rule: Rule,
    index: ReachabilityIndex,
    resolver: PatternResolver,
    *,
    iteration_budget: int | None = None,
    synthesize: bool = True,
) -> list[Violation]:
    """Evaluate one rule and return its violations in binding order.

    Raises :class:`EvaluationError` (or a subclass) when the rule's patterns
    cannot be resolved or the iteration budget is exhausted.
    """
    candidates = resolver.resolve(rule)
    enumerator = _BindingEnumerator(rule, index, candidates, iteration_budget)

    violations: list[Violation] = []
    checked = 0
    for binding in enumerator:
        checked += 1
        holds = _check_assertion_predicate(rule, binding, index)
        if rule.assertion.negated:
            holds = not holds
        if not holds:
            violations.append(_make_violation(rule, binding, index, synthesize=synthesize))

    logger.debug(
        "Rule '%s': %d bindings checked, %d violations (%d iterations)",
        rule.name,
        checked,
        len(violations),
        enumerator.iterations,
    )
    violations.sort(key=lambda v: v.sort_key)
    return violations


def _verified(
    rule: Rule, violation: Violation, universe: CrateUniverse, config: EngineConfig
) -> Violation:
    if violation.fix is None:
        return violation
    try:
        ok = verify_fix(rule, violation, universe, config)
    except EvaluationError as exc:
        logger.warning("Cannot verify auto-fix for rule '%s': %s", rule.name, exc)
        return violation
    return replace(violation, fix_verified=ok)


def evaluate_rules(
    rules: Sequence[Rule],
    universe: CrateUniverse,
    config: EngineConfig | None = None,
) -> EvaluationResult:
    """Evaluate every rule against *universe*.

    A rule that raises :class:`EvaluationError` is recorded as a
    :class:`RuleFailure`; the remaining rules still run.
    """
    if config is None:
        from cratecheck.config import EngineConfig

        config = EngineConfig()

    index = ReachabilityIndex(universe, config.dependency_kinds)
    if config.precompute_closure:
        index.precompute()
    resolver = PatternResolver(universe)

    # list.append is atomic, so the sinks are safe for concurrent writers.
    violations: list[Violation] = []
    failures: list[RuleFailure] = []

    def _run(rule: Rule) -> None:
        try:
            found = evaluate_rule(
                rule, index, resolver, iteration_budget=config.iteration_budget
            )
        except EvaluationError as exc:
            if exc.rule_name is None:
                exc.rule_name = rule.name
            logger.warning("Rule evaluation failed: %s", exc)
            failures.append(RuleFailure(rule.name, rule.index, exc))
            return
        violations.extend(found)

    if config.max_workers > 1 and len(rules) > 1:
        with ThreadPoolExecutor(max_workers=config.max_workers) as pool:
            futures = [pool.submit(_run, rule) for rule in rules]
            for future in futures:
                future.result()
    else:
        for rule in rules:
            _run(rule)

    violations.sort(key=lambda v: v.sort_key)
    failures.sort(key=lambda f: f.rule_index)

    if config.verify_fixes:
        by_name = {rule.name: rule for rule in rules}
        violations = [_verified(by_name[v.rule_name], v, universe, config) for v in violations]

    return EvaluationResult(
        violations=violations, failures=failures, rules_evaluated=len(rules)
    )
