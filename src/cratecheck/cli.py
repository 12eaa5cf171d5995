"""cratecheck CLI entry point."""

from __future__ import annotations

import json
import logging
import sys
from functools import partial
from pathlib import Path

import click

from cratecheck import __version__

_FILE = click.Path(exists=True, dir_okay=False, path_type=Path)


@click.group()
@click.version_option(version=__version__, prog_name="cratecheck")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output (errors only).")
@click.pass_context
def main(ctx: click.Context, *, verbose: bool, quiet: bool) -> None:
    """cratecheck - architecture rules for crate workspaces."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet

    level = logging.WARNING
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger("cratecheck").setLevel(level)


@main.command()
@click.option("--rules", "rules_path", type=_FILE, required=True, help="Rule DSL file.")
@click.option(
    "--universe",
    "universe_path",
    type=_FILE,
    required=True,
    help="Crate universe file (YAML, or JSON for *.json).",
)
@click.option(
    "--config",
    "config_path",
    type=_FILE,
    default=None,
    help="Engine config (default: ./cratecheck.yml if present).",
)
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["rich", "json", "porcelain"]),
    default=None,
    help="Output format (default: rich if TTY, porcelain if piped).",
)
@click.option("--workers", type=int, default=None, help="Evaluate rules on N threads.")
@click.option("--budget", type=int, default=None, help="Iteration budget per rule.")
@click.option(
    "--verify-fixes",
    is_flag=True,
    default=False,
    help="Re-evaluate each suggested fix on a patched copy of the universe.",
)
@click.option(
    "--only-crate",
    "only_crates",
    multiple=True,
    help="Report only violations involving this crate (repeatable).",
)
@click.option("--fix-crate", default=None, help="Suggest fixes only for this source crate.")
@click.option(
    "--fix-dependency", default=None, help="Suggest fixes only for this dependency crate."
)
@click.option(
    "--path-delimiter",
    default=" -> ",
    show_default=True,
    help="Delimiter between the hops of an evidence path (\\n and \\t are unescaped).",
)
@click.option(
    "--strict/--no-strict",
    default=True,
    help="Exit 1 if violations or rule failures are found (default).",
)
def lint(
    *,
    rules_path: Path,
    universe_path: Path,
    config_path: Path | None,
    fmt: str | None,
    workers: int | None,
    budget: int | None,
    verify_fixes: bool,
    only_crates: tuple[str, ...],
    fix_crate: str | None,
    fix_dependency: str | None,
    path_delimiter: str,
    strict: bool,
) -> None:
    """Check the crate universe against the rules.

    Exit codes: 0 = clean (or violations with --no-strict),
    1 = violations or failed rules, 2 = rules, universe or config invalid.
    """
    from cratecheck.config import DEFAULT_CONFIG_NAME, load_config
    from cratecheck.engine.errors import ConfigError
    from cratecheck.linter import LintError, format_json, format_porcelain, format_rich
    from cratecheck.linter import lint as run_lint

    if fmt is None:
        fmt = "rich" if sys.stdout.isatty() else "porcelain"

    try:
        config = load_config(config_path or Path.cwd() / DEFAULT_CONFIG_NAME)
        config = config.override(
            max_workers=workers, iteration_budget=budget, verify_fixes=verify_fixes or None
        )
        result = run_lint(
            rules_path,
            universe_path,
            config=config,
            only_crates=only_crates,
            fix_crate=fix_crate,
            fix_dependency=fix_dependency,
        )
    except (LintError, ConfigError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)

    delimiter = path_delimiter.replace("\\n", "\n").replace("\\t", "\t")
    formatters = {
        "rich": partial(format_rich, path_delimiter=delimiter),
        "json": format_json,
        "porcelain": format_porcelain,
    }
    output = formatters[fmt](result)
    if output:
        click.echo(output)

    if strict and result.exit_code:
        sys.exit(result.exit_code)


@main.command("check-rules")
@click.argument("rules_path", type=_FILE)
@click.option(
    "--universe",
    "universe_path",
    type=_FILE,
    default=None,
    help="Also validate crate patterns against this universe.",
)
def check_rules(*, rules_path: Path, universe_path: Path | None) -> None:
    """Parse a rule file and report problems without evaluating it."""
    from cratecheck.engine.dsl import load_rules
    from cratecheck.engine.errors import ParseError, UniverseError
    from cratecheck.engine.evaluator import validate_rules
    from cratecheck.engine.universe import load_universe

    try:
        rules = load_rules(rules_path)
        universe = load_universe(universe_path) if universe_path is not None else None
    except (ParseError, UniverseError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)

    for rule in rules:
        click.echo(f"{rule.line:>4}  {rule.name}")

    if universe is not None:
        for warning in validate_rules(rules, universe):
            click.echo(f"warning: {warning}", err=True)

    click.echo(f"{len(rules)} rules OK")


@main.command("trace")
@click.argument("src")
@click.argument("dst")
@click.option(
    "--universe",
    "universe_path",
    type=_FILE,
    required=True,
    help="Crate universe file (YAML, or JSON for *.json).",
)
@click.option(
    "--config",
    "config_path",
    type=_FILE,
    default=None,
    help="Engine config (default: ./cratecheck.yml if present).",
)
@click.option("--json", "as_json", is_flag=True, help="JSON output.")
def trace_cmd(
    *, src: str, dst: str, universe_path: Path, config_path: Path | None, as_json: bool
) -> None:
    """Show the shortest dependency path from SRC to DST.

    Only edges of the kinds in ``engine.dependency_kinds`` are followed.
    """
    from cratecheck.config import DEFAULT_CONFIG_NAME, load_config
    from cratecheck.engine.errors import ConfigError, UniverseError
    from cratecheck.engine.universe import load_universe
    from cratecheck.trace import render_trace, result_to_dict, trace

    try:
        config = load_config(config_path or Path.cwd() / DEFAULT_CONFIG_NAME)
        universe = load_universe(universe_path)
        result = trace(universe, src, dst, kinds=config.dependency_kinds)
    except (ConfigError, UniverseError, LookupError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)

    if as_json:
        click.echo(json.dumps(result_to_dict(result), ensure_ascii=False, indent=2))
    else:
        from rich.console import Console

        render_trace(result, Console())

    if not result.reachable:
        sys.exit(1)
