"""Linter orchestrator: load rules and universe, evaluate, format results."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from cratecheck.config import EngineConfig
from cratecheck.engine.dsl import load_rules
from cratecheck.engine.errors import ParseError, UniverseError
from cratecheck.engine.evaluator import (
    RuleFailure,
    Violation,
    evaluate_rules,
    validate_rules,
)
from cratecheck.engine.universe import load_universe

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LintError(Exception):
    """Raised when lint cannot start: bad rule file or bad universe input."""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class LintResult:
    """Result of a lint run."""

    violations: list[Violation] = field(default_factory=list)
    failures: list[RuleFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    rules_evaluated: int = 0
    crates_loaded: int = 0
    elapsed_ms: float = 0.0

    @property
    def exit_code(self) -> int:
        """0 when clean, 1 when any violation or rule failure exists."""
        return 1 if self.violations or self.failures else 0


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def _keep_fix(violation: Violation, fix_crate: str | None, fix_dependency: str | None) -> bool:
    if violation.fix is None:
        return True
    fix = violation.fix.to_dict()
    source = fix.get("crate", fix.get("from"))
    target = fix.get("to")
    if target is None and "target" in fix:
        target = str(fix["target"]).split("/", 1)[0]
    if fix_crate is not None and source != fix_crate:
        return False
    return not (fix_dependency is not None and target != fix_dependency)


def lint(
    rules_path: Path,
    universe_path: Path,
    *,
    config: EngineConfig | None = None,
    only_crates: Iterable[str] = (),
    fix_crate: str | None = None,
    fix_dependency: str | None = None,
) -> LintResult:
    """Run the lint process: load rules and universe, evaluate, and return results.

    Parameters
    ----------
    rules_path:
        Rule DSL file.
    universe_path:
        Crate universe file (YAML, or JSON for ``*.json``).
    config:
        Engine tunables; defaults apply when *None*.
    only_crates:
        When non-empty, keep only violations whose binding involves one of
        these crates.
    fix_crate, fix_dependency:
        Keep auto-fix suggestions only for this source / target crate.

    Raises
    ------
    LintError
        When the rule file or universe cannot be loaded.
    """
    start = time.monotonic()
    config = config or EngineConfig()

    try:
        rules = load_rules(rules_path)
    except ParseError as exc:
        msg = f"Invalid rules: {exc}"
        raise LintError(msg) from exc

    try:
        universe = load_universe(universe_path)
    except UniverseError as exc:
        msg = f"Invalid crate universe: {exc}"
        raise LintError(msg) from exc

    warnings = validate_rules(rules, universe)
    for warning in warnings:
        logger.warning("%s", warning)

    evaluation = evaluate_rules(rules, universe, config)

    violations = evaluation.violations
    wanted = set(only_crates)
    if wanted:
        violations = [v for v in violations if wanted & set(v.crates)]
    if fix_crate is not None or fix_dependency is not None:
        violations = [
            v if _keep_fix(v, fix_crate, fix_dependency) else replace(v, fix=None)
            for v in violations
        ]

    elapsed = (time.monotonic() - start) * 1000
    logger.info(
        "Evaluated %d rules against %d crates in %.1fms",
        evaluation.rules_evaluated,
        len(universe),
        elapsed,
    )
    return LintResult(
        violations=violations,
        failures=evaluation.failures,
        warnings=warnings,
        rules_evaluated=evaluation.rules_evaluated,
        crates_loaded=len(universe),
        elapsed_ms=elapsed,
    )


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


def _binding_text(violation: Violation) -> str:
    return ", ".join(f"{var}={crate}" for var, crate in violation.binding)


def format_rich(result: LintResult, *, path_delimiter: str = " -> ") -> str:
    """Format a LintResult as human-readable text.

    Evidence paths are joined with *path_delimiter*.

    Example output with violations::

        Rules: 3 loaded
        Crates: 212 loaded

        x Check that the primitives do not depend on frame.
          A=sp-core, B=frame-system
          sp-* crates should not depend on frame-* crates
          path: sp-core -> frame-system
          fix: remove dependency 'sp-core' -> 'frame-system'

        1 violations found (3 rules evaluated, 0.1s)
    """
    lines: list[str] = []

    lines.append(f"Rules: {result.rules_evaluated} loaded")
    lines.append(f"Crates: {result.crates_loaded} loaded")
    lines.append("")

    elapsed_str = f"{result.elapsed_ms / 1000:.1f}s"

    for failure in result.failures:
        lines.append(f"! {failure.rule_name}")
        lines.append(f"  evaluation failed: {failure.error.message}")
        lines.append("")

    if result.violations:
        for v in result.violations:
            lines.append(f"✗ {v.rule_name}")
            if v.binding:
                lines.append(f"  {_binding_text(v)}")
            lines.append(f"  {v.message}")
            if len(v.evidence) > 1:
                lines.append(f"  path: {path_delimiter.join(v.evidence)}")
            if v.fix is not None:
                suffix = ""
                if v.fix_verified is not None:
                    suffix = " (verified)" if v.fix_verified else " (does not resolve)"
                lines.append(f"  fix: {v.fix.describe()}{suffix}")
            elif v.fix_error is not None:
                lines.append(f"  fix unavailable: {v.fix_error}")
            lines.append("")

        count = len(result.violations)
        lines.append(
            f"{count} violations found ({result.rules_evaluated} rules evaluated, {elapsed_str})"
        )
    else:
        lines.append(
            f"✓ No violations found ({result.rules_evaluated} rules evaluated, {elapsed_str})"
        )

    return "\n".join(lines)


def format_json(result: LintResult) -> str:
    """Format a LintResult as structured JSON with ``violations``, ``failures`` and ``summary``."""
    violations_list: list[dict[str, object]] = []
    for v in result.violations:
        violations_list.append(
            {
                "rule_name": v.rule_name,
                "binding": dict(v.binding),
                "message": v.message,
                "evidence": list(v.evidence),
                "fix": v.fix.to_dict() if v.fix is not None else None,
                "fix_error": v.fix_error,
                "fix_verified": v.fix_verified,
            }
        )

    output: dict[str, object] = {
        "violations": violations_list,
        "failures": [
            {"rule_name": f.rule_name, "error": f.error.message} for f in result.failures
        ],
        "warnings": list(result.warnings),
        "summary": {
            "rules_evaluated": result.rules_evaluated,
            "crates_loaded": result.crates_loaded,
            "violations_count": len(result.violations),
            "failures_count": len(result.failures),
            "elapsed_ms": result.elapsed_ms,
        },
    }

    return json.dumps(output, indent=2)


def format_porcelain(result: LintResult) -> str:
    """Format a LintResult as one TAB-separated line per violation.

    Format: ``rule_name<TAB>var=crate,...<TAB>message<TAB>fix``

    Rule failures use ``error`` in the binding column.  Returns an empty
    string when the run is clean.
    """
    lines: list[str] = []
    for f in result.failures:
        lines.append(f"{f.rule_name}\terror\t{f.error.message}\t")
    for v in result.violations:
        binding = ",".join(f"{var}={crate}" for var, crate in v.binding)
        fix = v.fix.describe() if v.fix is not None else ""
        lines.append(f"{v.rule_name}\t{binding}\t{v.message}\t{fix}")
    return "\n".join(lines)
