"""Rule engine — DSL loader, pattern resolver, graph queries, evaluator, auto-fix."""

from cratecheck.engine.autofix import (
    AddDependency,
    AutoFixAction,
    EnableFeatureForward,
    RemoveDependency,
    preview_fix,
    render_message,
    synthesize_fix,
    verify_fix,
)
from cratecheck.engine.dsl import (
    Assertion,
    AutoFixTemplate,
    Predicate,
    Rule,
    load_rules,
    parse_rules,
)
from cratecheck.engine.errors import (
    ConfigError,
    CratecheckError,
    EvaluationError,
    FixTemplateError,
    ParseError,
    PatternCompileError,
    UniverseError,
    UnknownCrateReferenceError,
)
from cratecheck.engine.evaluator import (
    Binding,
    EvaluationResult,
    RuleFailure,
    Violation,
    evaluate_rule,
    evaluate_rules,
    validate_rules,
)
from cratecheck.engine.graph_query import ReachabilityIndex
from cratecheck.engine.patterns import (
    LiteralPattern,
    PatternResolver,
    PatternSpec,
    RegexPattern,
    UnionPattern,
)
from cratecheck.engine.universe import (
    Crate,
    CrateUniverse,
    DependencyEdge,
    Feature,
    load_universe,
)

__all__ = [
    "AddDependency",
    "Assertion",
    "AutoFixAction",
    "AutoFixTemplate",
    "Binding",
    "ConfigError",
    "Crate",
    "CrateUniverse",
    "CratecheckError",
    "DependencyEdge",
    "EnableFeatureForward",
    "EvaluationError",
    "EvaluationResult",
    "Feature",
    "FixTemplateError",
    "LiteralPattern",
    "ParseError",
    "PatternCompileError",
    "PatternResolver",
    "PatternSpec",
    "Predicate",
    "ReachabilityIndex",
    "RegexPattern",
    "RemoveDependency",
    "Rule",
    "RuleFailure",
    "UnionPattern",
    "UniverseError",
    "UnknownCrateReferenceError",
    "Violation",
    "evaluate_rule",
    "evaluate_rules",
    "load_rules",
    "load_universe",
    "parse_rules",
    "preview_fix",
    "render_message",
    "synthesize_fix",
    "validate_rules",
    "verify_fix",
]
