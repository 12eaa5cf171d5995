"""Auto-fix synthesis: turn a rule's fix template into an inert suggestion.

Suggestions are plain data.  Nothing here edits a manifest; the only
"application" offered is :func:`preview_fix`, which builds a patched copy of
the in-memory universe so that a suggestion can be checked before anyone
touches real files.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from cratecheck.engine.errors import FixTemplateError
from cratecheck.engine.universe import Crate, DependencyEdge, Feature

if TYPE_CHECKING:
    from collections.abc import Mapping

    from cratecheck.config import EngineConfig
    from cratecheck.engine.dsl import AutoFixTemplate, Rule
    from cratecheck.engine.evaluator import Violation
    from cratecheck.engine.universe import CrateUniverse

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EnableFeatureForward:
    """Add ``target`` to the forwards of ``crate``'s ``feature``."""

    crate: str
    feature: str
    target: str  # "crate/feature"

    def describe(self) -> str:
        return f"add '{self.target}' to feature '{self.feature}' of '{self.crate}'"

    def to_dict(self) -> dict[str, object]:
        return {
            "action": "enable-feature",
            "crate": self.crate,
            "feature": self.feature,
            "target": self.target,
        }


@dataclass(frozen=True)
class RemoveDependency:
    """Drop the dependency ``from_crate -> to_crate``."""

    from_crate: str
    to_crate: str

    def describe(self) -> str:
        return f"remove dependency '{self.from_crate}' -> '{self.to_crate}'"

    def to_dict(self) -> dict[str, object]:
        return {
            "action": "remove-dependency",
            "from": self.from_crate,
            "to": self.to_crate,
        }


@dataclass(frozen=True)
class AddDependency:
    """Add the dependency ``from_crate -> to_crate``, optionally with a feature."""

    from_crate: str
    to_crate: str
    feature: str | None = None

    def describe(self) -> str:
        text = f"add dependency '{self.from_crate}' -> '{self.to_crate}'"
        if self.feature:
            text += f" with feature '{self.feature}'"
        return text

    def to_dict(self) -> dict[str, object]:
        return {
            "action": "add-dependency",
            "from": self.from_crate,
            "to": self.to_crate,
            "feature": self.feature,
        }


AutoFixAction = EnableFeatureForward | RemoveDependency | AddDependency

# ---------------------------------------------------------------------------
# Substitution
# ---------------------------------------------------------------------------


def render_message(template: str, binding: Mapping[str, str], *, rule_name: str = "") -> str:
    """Substitute ``{Var}`` placeholders in a violation message.

    ``{rule}`` expands to the rule name.  Unknown placeholders stay verbatim.
    """

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in binding:
            return binding[name]
        if name == "rule" and rule_name:
            return rule_name
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_sub, template)


def _crate_slot(arg: str, binding: Mapping[str, str], template: AutoFixTemplate) -> str:
    name = arg[1:-1] if arg.startswith("{") and arg.endswith("}") else arg
    if name not in binding:
        msg = f"auto-fix '{template.action}' references unbound variable '{name}'"
        raise FixTemplateError(msg, line=template.line)
    return binding[name]


def _literal_slot(arg: str, binding: Mapping[str, str], template: AutoFixTemplate) -> str:
    missing = [m for m in _PLACEHOLDER_RE.findall(arg) if m not in binding]
    if missing:
        msg = f"auto-fix '{template.action}' references unbound placeholder '{{{missing[0]}}}'"
        raise FixTemplateError(msg, line=template.line)
    if not arg:
        msg = f"auto-fix '{template.action}' has an empty argument"
        raise FixTemplateError(msg, line=template.line)
    return _PLACEHOLDER_RE.sub(lambda m: binding[m.group(1)], arg)


def synthesize_fix(
    template: AutoFixTemplate,
    binding: Mapping[str, str],
    *,
    rule_name: str | None = None,
) -> AutoFixAction:
    """Instantiate *template* against *binding*.

    Raises :class:`FixTemplateError` when the template references a variable
    or placeholder the binding does not contain.
    """
    try:
        if template.action == "enable-feature":
            crate_arg, feature_arg, target_arg = template.args
            if "/" not in target_arg:
                msg = f"auto-fix target '{target_arg}' must look like <crate>/<feature>"
                raise FixTemplateError(msg, line=template.line)
            target_crate, target_feature = target_arg.split("/", 1)
            target = (
                f"{_crate_slot(target_crate, binding, template)}/"
                f"{_literal_slot(target_feature, binding, template)}"
            )
            return EnableFeatureForward(
                crate=_crate_slot(crate_arg, binding, template),
                feature=_literal_slot(feature_arg, binding, template),
                target=target,
            )
        if template.action == "remove-dependency":
            from_arg, to_arg = template.args
            return RemoveDependency(
                from_crate=_crate_slot(from_arg, binding, template),
                to_crate=_crate_slot(to_arg, binding, template),
            )
        if template.action == "add-dependency":
            from_arg, to_arg, *rest = template.args
            feature = _literal_slot(rest[0], binding, template) if rest else None
            return AddDependency(
                from_crate=_crate_slot(from_arg, binding, template),
                to_crate=_crate_slot(to_arg, binding, template),
                feature=feature,
            )
    except FixTemplateError as exc:
        if exc.rule_name is None:
            exc.rule_name = rule_name
        raise
    except ValueError as exc:
        msg = f"auto-fix '{template.action}' has the wrong number of arguments"
        raise FixTemplateError(msg, rule_name=rule_name, line=template.line) from exc

    msg = f"unknown auto-fix action '{template.action}'"
    raise FixTemplateError(msg, rule_name=rule_name, line=template.line)


# ---------------------------------------------------------------------------
# In-memory preview
# ---------------------------------------------------------------------------


def _with_forward(crate: Crate, feature: str, target: str, *, enabled: bool) -> Crate:
    features = dict(crate.features)
    current = features.get(feature)
    if current is None:
        current = Feature(name=feature, defines=True, enabled=enabled)
    features[feature] = replace(current, forwards=current.forwards | {target})
    return replace(crate, features=features)


def preview_fix(universe: CrateUniverse, action: AutoFixAction) -> CrateUniverse:
    """Return a copy of *universe* with *action* applied.  *universe* is untouched."""
    if isinstance(action, EnableFeatureForward):
        crate = _with_forward(
            universe[action.crate], action.feature, action.target, enabled=False
        )
        return universe.replace(crate)

    if isinstance(action, RemoveDependency):
        crate = universe[action.from_crate]
        kept = tuple(e for e in crate.dependencies if e.to_crate != action.to_crate)
        return universe.replace(replace(crate, dependencies=kept))

    crate = universe[action.from_crate]
    edges = set(crate.dependencies) | {DependencyEdge(action.from_crate, action.to_crate)}
    crate = replace(crate, dependencies=tuple(sorted(edges)))
    if action.feature:
        crate = _with_forward(
            crate, "default", f"{action.to_crate}/{action.feature}", enabled=True
        )
    return universe.replace(crate)


def verify_fix(
    rule: Rule,
    violation: Violation,
    universe: CrateUniverse,
    config: EngineConfig | None = None,
) -> bool:
    """Re-evaluate *rule* on the previewed fix; True if the violation is gone."""
    # Lazy import: evaluator imports this module.
    from cratecheck.engine.evaluator import evaluate_rule
    from cratecheck.engine.graph_query import ReachabilityIndex
    from cratecheck.engine.patterns import PatternResolver

    if violation.fix is None:
        return False

    patched = preview_fix(universe, violation.fix)
    kinds = config.dependency_kinds if config is not None else None
    index = ReachabilityIndex(patched) if kinds is None else ReachabilityIndex(patched, kinds)
    budget = config.iteration_budget if config is not None else None
    remaining = evaluate_rule(
        rule, index, PatternResolver(patched), iteration_budget=budget, synthesize=False
    )
    still_failing = any(v.binding == violation.binding for v in remaining)
    logger.debug(
        "Fix for rule '%s' at %s %s",
        rule.name,
        violation.binding,
        "does not resolve the violation" if still_failing else "verified",
    )
    return not still_failing
