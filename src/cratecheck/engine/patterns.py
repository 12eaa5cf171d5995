"""Crate-name patterns and their resolution against the universe."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cratecheck.engine.errors import PatternCompileError, UnknownCrateReferenceError

if TYPE_CHECKING:
    from cratecheck.engine.dsl import Rule
    from cratecheck.engine.universe import CrateUniverse

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Pattern variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LiteralPattern:
    """Matches the single crate with exactly this name."""

    name: str

    def __str__(self) -> str:
        return f'"{self.name}"'


@dataclass(frozen=True)
class RegexPattern:
    """Matches every crate whose name the regex finds a match in."""

    pattern: str

    def __str__(self) -> str:
        return f'regex("{self.pattern}")'


@dataclass(frozen=True)
class UnionPattern:
    """Set union of its member patterns."""

    members: tuple[PatternSpec, ...]

    def __str__(self) -> str:
        return " | ".join(str(m) for m in self.members)


PatternSpec = LiteralPattern | RegexPattern | UnionPattern


def iter_leaves(spec: PatternSpec) -> list[LiteralPattern | RegexPattern]:
    """Flatten a pattern into its literal and regex leaves."""
    if isinstance(spec, UnionPattern):
        leaves: list[LiteralPattern | RegexPattern] = []
        for member in spec.members:
            leaves.extend(iter_leaves(member))
        return leaves
    return [spec]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class PatternResolver:
    """Expands pattern variables into candidate crate sets.

    Resolution is pure: the universe never changes during a run, so compiled
    regexes and per-rule candidate sets are cached for the resolver's lifetime.
    """

    def __init__(self, universe: CrateUniverse) -> None:
        self._universe = universe
        self._regex_cache: dict[str, re.Pattern[str]] = {}
        self._rule_cache: dict[str, dict[str, tuple[str, ...]]] = {}

    def compile(self, pattern: str, *, rule_name: str | None = None) -> re.Pattern[str]:
        """Compile *pattern* once; later calls reuse the compiled object."""
        compiled = self._regex_cache.get(pattern)
        if compiled is None:
            try:
                compiled = re.compile(pattern)
            except re.error as exc:
                msg = f"invalid regex {pattern!r}: {exc}"
                raise PatternCompileError(msg, rule_name=rule_name) from exc
            self._regex_cache[pattern] = compiled
        return compiled

    def resolve_pattern(
        self, spec: PatternSpec | None, *, rule_name: str | None = None
    ) -> frozenset[str]:
        """Return the crate names matched by *spec*; ``None`` matches every crate."""
        if spec is None:
            return frozenset(self._universe.names)
        if isinstance(spec, LiteralPattern):
            if spec.name not in self._universe:
                msg = f"crate '{spec.name}' does not exist in the universe"
                raise UnknownCrateReferenceError(msg, rule_name=rule_name)
            return frozenset({spec.name})
        if isinstance(spec, RegexPattern):
            regex = self.compile(spec.pattern, rule_name=rule_name)
            return frozenset(name for name in self._universe.names if regex.search(name))

        matched: set[str] = set()
        for member in spec.members:
            matched |= self.resolve_pattern(member, rule_name=rule_name)
        return frozenset(matched)

    def resolve(self, rule: Rule) -> dict[str, tuple[str, ...]]:
        """Return ``{variable: sorted candidate names}`` for every variable of *rule*."""
        cached = self._rule_cache.get(rule.name)
        if cached is not None:
            return cached

        candidates: dict[str, tuple[str, ...]] = {}
        for variable, spec in rule.variables:
            candidates[variable] = tuple(
                sorted(self.resolve_pattern(spec, rule_name=rule.name))
            )
            logger.debug(
                "Rule '%s': %s resolves to %d crates",
                rule.name,
                variable,
                len(candidates[variable]),
            )
        self._rule_cache[rule.name] = candidates
        return candidates
