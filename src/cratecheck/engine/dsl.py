"""Rule loader: parse the indentation-scoped rule DSL into typed Rule records.

Example::

    test: Check that the primitives do not directly depend on frame.
        given:
            crates:
                A: name: regex("^sp-.*")
                B: name: regex("^frame-") | regex("^pallet-")
        then:
            not: dependencies:
                A: direct: B
        otherwise:
            error: "{A} should not depend on {B}"
                auto-fix: remove-dependency: A: B

Parsing happens in two steps.  The text is first folded into a tree of
:class:`_Line` nodes by indentation, then each ``test:`` subtree is parsed by
recursive descent.  Any structural error raises :class:`ParseError` and aborts
the whole load.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cratecheck.engine.errors import ParseError
from cratecheck.engine.patterns import (
    LiteralPattern,
    PatternSpec,
    RegexPattern,
    UnionPattern,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEPENDENCY_RELATIONS: frozenset[str] = frozenset({"direct", "transitive"})
FEATURE_RELATIONS: frozenset[str] = frozenset({"enabled", "defines", "enables", "implies"})
# relations whose target is "<feature>/<feature>"
FEATURE_PAIR_RELATIONS: frozenset[str] = frozenset({"enables", "implies"})
RELATIONS: frozenset[str] = DEPENDENCY_RELATIONS | FEATURE_RELATIONS

# action -> allowed argument counts
FIX_ACTIONS: dict[str, frozenset[int]] = {
    "enable-feature": frozenset({3}),
    "remove-dependency": frozenset({2}),
    "add-dependency": frozenset({2, 3}),
}

_SECTION_FAMILIES: dict[str, frozenset[str]] = {
    "dependencies": DEPENDENCY_RELATIONS,
    "features": FEATURE_RELATIONS,
}

_TAB_WIDTH = 4
_VARIABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_BARE_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")
_CALL_RE = re.compile(r"^(regex|literal)\s*\((.*)\)$", re.DOTALL)

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Predicate:
    """A dependency or feature relation between a variable and a target.

    For dependency relations *target* is another variable; for feature
    relations it is a feature name, and for ``enables`` and ``implies`` a
    ``feature/forbidden`` pair.
    """

    subject: str
    relation: str  # "direct" | "transitive" | "enabled" | "defines" | "enables" | "implies"
    target: str
    line: int = 0

    @property
    def is_dependency(self) -> bool:
        return self.relation in DEPENDENCY_RELATIONS

    @property
    def feature_pair(self) -> tuple[str, str]:
        """Split an ``enables``/``implies`` target into ``(feature, forbidden)``."""
        feature, _, forbidden = self.target.partition("/")
        return feature, forbidden

    def __str__(self) -> str:
        return f"{self.subject}: {self.relation}: {self.target}"


@dataclass(frozen=True)
class Assertion:
    """The ``then`` clause of a rule."""

    predicate: Predicate
    negated: bool = False

    def __str__(self) -> str:
        return f"not: {self.predicate}" if self.negated else str(self.predicate)


@dataclass(frozen=True)
class AutoFixTemplate:
    """An ``auto-fix`` directive before variables are substituted."""

    action: str  # "enable-feature" | "remove-dependency" | "add-dependency"
    args: tuple[str, ...]
    line: int = 0


@dataclass(frozen=True)
class Rule:
    """A parsed ``test`` block."""

    name: str
    index: int  # declaration order within the rule set
    variables: tuple[tuple[str, PatternSpec | None], ...]
    preconditions: tuple[Predicate, ...]
    assertion: Assertion
    message: str
    fix: AutoFixTemplate | None = None
    line: int = 0
    source: str = "<string>"

    @property
    def variable_names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.variables)


@dataclass
class _Line:
    """One non-blank source line and the lines indented beneath it."""

    text: str
    number: int
    indent: int
    children: list[_Line] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Lexical helpers
# ---------------------------------------------------------------------------


def _build_tree(text: str, source: str) -> list[_Line]:
    """Fold source lines into a forest by indentation."""
    roots: list[_Line] = []
    stack: list[_Line] = []

    for number, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            continue
        leading = raw[: len(raw) - len(raw.lstrip())]
        indent = len(leading.expandtabs(_TAB_WIDTH))
        node = _Line(text=stripped, number=number, indent=indent)

        while stack and stack[-1].indent >= indent:
            stack.pop()
        siblings = stack[-1].children if stack else roots
        if siblings and siblings[0].indent != indent:
            msg = (
                f"inconsistent indentation (expected {siblings[0].indent} columns, "
                f"got {indent})"
            )
            raise ParseError(msg, line=number, source=source)
        siblings.append(node)
        stack.append(node)

    return roots


def _split_top_level(text: str, sep: str, maxsplit: int = -1) -> list[str]:
    """Split *text* on *sep* outside quotes, parentheses and brackets."""
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None
    escaped = False

    for ch in text:
        if maxsplit >= 0 and len(parts) >= maxsplit:
            current.append(ch)
            continue
        if quote is not None:
            current.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)

    parts.append("".join(current))
    return [p.strip() for p in parts]


def _fields(text: str) -> list[str]:
    """Split a DSL line on top-level colons, dropping a trailing empty field."""
    parts = _split_top_level(text, ":")
    if len(parts) > 1 and parts[-1] == "":
        parts.pop()
    return parts


def _head(text: str) -> tuple[str, str]:
    """Split ``key: rest`` on the first top-level colon."""
    parts = _split_top_level(text, ":", maxsplit=1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        quote = value[0]
        return value[1:-1].replace("\\" + quote, quote)
    return value


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _RuleParser:
    """Recursive-descent parser for one ``test`` subtree."""

    def __init__(self, node: _Line, index: int, source: str) -> None:
        self.node = node
        self.index = index
        self.source = source
        self.name: str | None = None
        self.variables: dict[str, PatternSpec | None] = {}

    def error(self, message: str, line: int) -> ParseError:
        return ParseError(message, rule_name=self.name, line=line, source=self.source)

    def parse(self) -> Rule:
        key, rest = _head(self.node.text)
        if key != "test":
            msg = f"expected a 'test:' block, found '{key}'"
            raise self.error(msg, self.node.number)
        self.name = _unquote(rest)
        if not self.name:
            raise self.error("'test:' requires a rule name", self.node.number)

        sections: dict[str, _Line] = {}
        for child in self.node.children:
            section, _ = _head(child.text)
            if section not in {"given", "then", "otherwise"}:
                msg = f"unknown section '{section}', expected given, then or otherwise"
                raise self.error(msg, child.number)
            if section in sections:
                raise self.error(f"duplicate '{section}' section", child.number)
            sections[section] = child

        preconditions: tuple[Predicate, ...] = ()
        if "given" in sections:
            preconditions = self._parse_given(sections["given"])

        if "then" not in sections:
            raise self.error("missing 'then' section", self.node.number)
        assertion = self._parse_then(sections["then"])

        message = f"rule '{self.name}' failed"
        fix: AutoFixTemplate | None = None
        if "otherwise" in sections:
            message, fix = self._parse_otherwise(sections["otherwise"])

        return Rule(
            name=self.name,
            index=self.index,
            variables=tuple(self.variables.items()),
            preconditions=preconditions,
            assertion=assertion,
            message=message,
            fix=fix,
            line=self.node.number,
            source=self.source,
        )

    # -- given ---------------------------------------------------------------

    def _parse_given(self, given: _Line) -> tuple[Predicate, ...]:
        crate_lines = [c for c in given.children if _head(c.text)[0] == "crates"]
        other_lines = [c for c in given.children if _head(c.text)[0] != "crates"]
        for line in crate_lines:
            self._parse_crates(line)

        preconditions: list[Predicate] = []
        for line in other_lines:
            key, rest = _head(line.text)
            family = _SECTION_FAMILIES.get(key)
            if family is None:
                preconditions.append(self._parse_predicate(_fields(line.text), line))
                continue
            if rest:
                preconditions.append(self._parse_predicate(_fields(rest), line, family))
            for child in line.children:
                preconditions.append(self._parse_predicate(_fields(child.text), child, family))
        return tuple(preconditions)

    def _parse_crates(self, line: _Line) -> None:
        _, rest = _head(line.text)
        if rest:
            if not (rest.startswith("[") and rest.endswith("]")):
                msg = "inline 'crates:' must be a list like [A, B]"
                raise self.error(msg, line.number)
            for item in _split_top_level(rest[1:-1], ","):
                if item:
                    self._declare(item, None, line)
        for child in line.children:
            parts = _fields(child.text)
            if len(parts) == 1:
                self._declare(parts[0], None, child)
                continue
            variable, *spec_parts = parts
            if spec_parts[0] == "name":
                spec_parts = spec_parts[1:]
            if len(spec_parts) != 1 or not spec_parts[0]:
                msg = f"expected '{variable}: name: <pattern>'"
                raise self.error(msg, child.number)
            self._declare(variable, self._parse_pattern(spec_parts[0], child), child)

    def _declare(self, variable: str, spec: PatternSpec | None, line: _Line) -> None:
        if not _VARIABLE_RE.match(variable):
            raise self.error(f"invalid variable name '{variable}'", line.number)
        if variable in self.variables:
            raise self.error(f"variable '{variable}' declared twice", line.number)
        self.variables[variable] = spec

    def _parse_pattern(self, text: str, line: _Line) -> PatternSpec:
        members: list[PatternSpec] = []
        for part in _split_top_level(text, "|"):
            if not part:
                raise self.error(f"empty alternative in pattern '{text}'", line.number)
            call = _CALL_RE.match(part)
            if call is not None:
                arg = call.group(2).strip()
                if len(arg) < 2 or arg[0] not in "\"'" or arg[-1] != arg[0]:
                    msg = f"{call.group(1)}(...) expects a quoted string, got {arg!r}"
                    raise self.error(msg, line.number)
                value = _unquote(arg)
                if call.group(1) == "regex":
                    members.append(RegexPattern(value))
                else:
                    members.append(LiteralPattern(value))
            elif part[0] in "\"'":
                members.append(LiteralPattern(_unquote(part)))
            elif _BARE_NAME_RE.match(part):
                members.append(LiteralPattern(part))
            else:
                raise self.error(f"cannot parse pattern '{part}'", line.number)
        if len(members) == 1:
            return members[0]
        return UnionPattern(tuple(members))

    def _parse_predicate(
        self, parts: list[str], line: _Line, family: frozenset[str] | None = None
    ) -> Predicate:
        if len(parts) != 3:
            msg = f"expected '<var>: <relation>: <target>', got '{line.text}'"
            raise self.error(msg, line.number)
        subject, relation, target = parts
        if relation not in RELATIONS:
            msg = f"unknown relation '{relation}', must be one of {sorted(RELATIONS)}"
            raise self.error(msg, line.number)
        if family is not None and relation not in family:
            msg = f"relation '{relation}' is not allowed in this section"
            raise self.error(msg, line.number)
        self._require_variable(subject, line)
        if relation in DEPENDENCY_RELATIONS:
            self._require_variable(target, line)
        else:
            target = _unquote(target)
            if not target:
                raise self.error("feature name must not be empty", line.number)
            if relation in FEATURE_PAIR_RELATIONS:
                self._check_feature_pair(relation, target, line)
        return Predicate(subject=subject, relation=relation, target=target, line=line.number)

    def _require_variable(self, name: str, line: _Line) -> None:
        if name not in self.variables:
            msg = f"undeclared variable '{name}' (declare it under 'crates:')"
            raise self.error(msg, line.number)

    def _check_feature_pair(self, relation: str, target: str, line: _Line) -> None:
        feature, sep, forbidden = target.partition("/")
        if not sep or not feature or not forbidden or "/" in forbidden:
            msg = f"'{relation}' expects '<feature>/<feature>', got '{target}'"
            raise self.error(msg, line.number)
        if feature == forbidden:
            msg = f"'{relation}' needs two different features, got '{target}'"
            raise self.error(msg, line.number)

    # -- then ----------------------------------------------------------------

    def _parse_then(self, then: _Line) -> Assertion:
        _, rest = _head(then.text)
        if rest:
            if then.children:
                raise self.error("'then' holds exactly one assertion", then.number)
            return self._parse_assertion(_fields(rest), then)
        if len(then.children) != 1:
            raise self.error("'then' holds exactly one assertion", then.number)
        child = then.children[0]
        return self._parse_assertion(_fields(child.text), child)

    def _parse_assertion(
        self,
        parts: list[str],
        line: _Line,
        *,
        negated: bool = False,
        family: frozenset[str] | None = None,
    ) -> Assertion:
        while parts and (parts[0] == "not" or parts[0] in _SECTION_FAMILIES):
            head = parts.pop(0)
            if head == "not":
                if negated:
                    raise self.error("'not:' may appear only once", line.number)
                negated = True
            else:
                family = _SECTION_FAMILIES[head]

        if not parts:
            if len(line.children) != 1:
                raise self.error("'then' holds exactly one assertion", line.number)
            child = line.children[0]
            return self._parse_assertion(
                _fields(child.text), child, negated=negated, family=family
            )
        if line.children:
            raise self.error("'then' holds exactly one assertion", line.number)
        return Assertion(self._parse_predicate(parts, line, family), negated=negated)

    # -- otherwise -----------------------------------------------------------

    def _parse_otherwise(self, otherwise: _Line) -> tuple[str, AutoFixTemplate | None]:
        message: str | None = None
        fix: AutoFixTemplate | None = None

        for child in otherwise.children:
            key, rest = _head(child.text)
            if key == "error":
                if message is not None:
                    raise self.error("duplicate 'error' entry", child.number)
                message = _unquote(rest)
                for nested in child.children:
                    fix = self._parse_fix_line(nested, fix)
            elif key == "auto-fix":
                fix = self._parse_fix_line(child, fix)
            else:
                msg = f"unknown entry '{key}' in 'otherwise', expected error or auto-fix"
                raise self.error(msg, child.number)

        if message is None:
            raise self.error("'otherwise' requires an 'error' message", otherwise.number)
        return message, fix

    def _parse_fix_line(self, line: _Line, current: AutoFixTemplate | None) -> AutoFixTemplate:
        key, rest = _head(line.text)
        if key != "auto-fix":
            raise self.error(f"unknown entry '{key}', expected auto-fix", line.number)
        if current is not None:
            raise self.error("a rule carries at most one auto-fix", line.number)
        parts = _fields(rest)
        action, args = parts[0], tuple(_unquote(a) for a in parts[1:])
        arities = FIX_ACTIONS.get(action)
        if arities is None:
            msg = f"unknown auto-fix action '{action}', must be one of {sorted(FIX_ACTIONS)}"
            raise self.error(msg, line.number)
        if len(args) not in arities:
            expected = " or ".join(str(n) for n in sorted(arities))
            msg = f"auto-fix '{action}' takes {expected} arguments, got {len(args)}"
            raise self.error(msg, line.number)
        return AutoFixTemplate(action=action, args=args, line=line.number)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_rules(text: str, *, source: str = "<string>") -> list[Rule]:
    """Parse DSL *text* into rules, in declaration order.

    Raises :class:`ParseError` on the first malformed rule.
    """
    rules: list[Rule] = []
    seen_names: set[str] = set()

    for index, node in enumerate(_build_tree(text, source)):
        rule = _RuleParser(node, index, source).parse()
        if rule.name in seen_names:
            msg = "duplicate rule name"
            raise ParseError(msg, rule_name=rule.name, line=node.number, source=source)
        seen_names.add(rule.name)
        rules.append(rule)

    logger.debug("Parsed %d rules from %s", len(rules), source)
    return rules


def load_rules(rules_path: Path) -> list[Rule]:
    """Read and parse a rule file."""
    try:
        text = rules_path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"cannot read rule file: {exc}"
        raise ParseError(msg, source=str(rules_path)) from exc
    return parse_rules(text, source=str(rules_path))
