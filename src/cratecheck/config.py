"""Engine configuration read from ``cratecheck.yml``.

Example::

    engine:
      iteration_budget: 1000000
      max_workers: 4
      dependency_kinds: [normal, build]
      precompute_closure: false
      verify_fixes: true
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any

import yaml

from cratecheck.engine.errors import ConfigError
from cratecheck.engine.universe import VALID_DEPENDENCY_KINDS

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "cratecheck.yml"


@dataclass(frozen=True)
class EngineConfig:
    """Tunables for one evaluation run."""

    iteration_budget: int = 1_000_000  # candidates considered per rule
    max_workers: int = 1  # >1 evaluates rules on a thread pool
    dependency_kinds: frozenset[str] = VALID_DEPENDENCY_KINDS
    precompute_closure: bool = False
    verify_fixes: bool = False

    def __post_init__(self) -> None:
        if self.iteration_budget <= 0:
            msg = f"iteration_budget must be positive, got {self.iteration_budget}"
            raise ConfigError(msg)
        if self.max_workers <= 0:
            msg = f"max_workers must be positive, got {self.max_workers}"
            raise ConfigError(msg)
        unknown = set(self.dependency_kinds) - VALID_DEPENDENCY_KINDS
        if unknown or not self.dependency_kinds:
            msg = (
                f"dependency_kinds must be a non-empty subset of "
                f"{sorted(VALID_DEPENDENCY_KINDS)}, got {sorted(self.dependency_kinds)}"
            )
            raise ConfigError(msg)

    def override(self, **changes: Any) -> EngineConfig:
        """Return a copy with every non-``None`` keyword applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def _coerce(name: str, value: object) -> object:
    if name in {"precompute_closure", "verify_fixes"}:
        # YAML already yields bool for true/false; a quoted "false" must not pass
        if not isinstance(value, bool):
            msg = f"engine.{name}: expected a boolean, got {value!r}"
            raise ConfigError(msg)
        return value

    if name in {"iteration_budget", "max_workers"}:
        try:
            return int(value)  # type: ignore[call-overload]
        except (TypeError, ValueError) as exc:
            msg = f"engine.{name}: expected an integer, got {value!r}"
            raise ConfigError(msg) from exc

    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        msg = f"engine.{name}: expected a list, got {value!r}"
        raise ConfigError(msg)
    return frozenset(str(v) for v in value)


def load_config(config_path: Path | None) -> EngineConfig:
    """Load the ``engine`` section of *config_path*.

    Falls back to defaults when the file or section is missing or the YAML
    cannot be read.  Invalid values raise :class:`ConfigError`.
    """
    if config_path is None or not config_path.is_file():
        return EngineConfig()

    try:
        with config_path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError):
        logger.warning("Failed to read %s, using default engine config", config_path)
        return EngineConfig()

    if not isinstance(data, dict):
        return EngineConfig()
    section = data.get("engine")
    if not isinstance(section, dict):
        return EngineConfig()

    known = {f.name for f in fields(EngineConfig)}
    kwargs: dict[str, Any] = {}
    for key, value in section.items():
        name = str(key).replace("-", "_")
        if name not in known:
            logger.warning("Ignoring unknown engine option '%s' in %s", key, config_path)
            continue
        kwargs[name] = _coerce(name, value)

    return EngineConfig(**kwargs)
