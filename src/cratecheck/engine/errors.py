"""Error taxonomy for rule loading, universe loading, and rule evaluation."""

from __future__ import annotations


class CratecheckError(Exception):
    """Base class for all errors raised by cratecheck."""


# ---------------------------------------------------------------------------
# Load-time errors (abort the run before any evaluation)
# ---------------------------------------------------------------------------


class ParseError(CratecheckError):
    """Raised when the rule DSL is malformed.

    A parse failure aborts loading of the whole rule set.
    """

    def __init__(
        self,
        message: str,
        *,
        rule_name: str | None = None,
        line: int | None = None,
        source: str = "<string>",
    ) -> None:
        self.message = message
        self.rule_name = rule_name
        self.line = line
        self.source = source
        super().__init__(str(self))

    def __str__(self) -> str:
        location = self.source if self.line is None else f"{self.source}:{self.line}"
        if self.rule_name:
            return f"{location}: rule '{self.rule_name}': {self.message}"
        return f"{location}: {self.message}"


class UniverseError(CratecheckError):
    """Raised when the crate universe input is inconsistent."""


class ConfigError(CratecheckError):
    """Raised when the engine configuration holds invalid values."""


# ---------------------------------------------------------------------------
# Rule-scoped errors (abort one rule, the others still run)
# ---------------------------------------------------------------------------


class EvaluationError(CratecheckError):
    """Raised when a single rule cannot be evaluated."""

    def __init__(self, message: str, *, rule_name: str | None = None) -> None:
        self.message = message
        self.rule_name = rule_name
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.rule_name:
            return f"rule '{self.rule_name}': {self.message}"
        return self.message


class PatternCompileError(EvaluationError):
    """Raised when a ``regex(...)`` crate pattern does not compile."""


class UnknownCrateReferenceError(EvaluationError):
    """Raised when a literal crate name is absent from the universe."""


class FixTemplateError(CratecheckError):
    """Raised when an auto-fix template references an unbound placeholder."""

    def __init__(
        self, message: str, *, rule_name: str | None = None, line: int | None = None
    ) -> None:
        self.message = message
        self.rule_name = rule_name
        self.line = line
        super().__init__(str(self))

    def __str__(self) -> str:
        where = f" (line {self.line})" if self.line is not None else ""
        if self.rule_name:
            return f"rule '{self.rule_name}'{where}: {self.message}"
        return f"{self.message}{where}"
