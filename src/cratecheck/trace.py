"""Dependency tracing: the shortest path between two crates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from cratecheck.engine.graph_query import ReachabilityIndex
from cratecheck.engine.universe import VALID_DEPENDENCY_KINDS

if TYPE_CHECKING:
    from collections.abc import Iterable

    from rich.console import Console

    from cratecheck.engine.universe import CrateUniverse


@dataclass(frozen=True)
class TraceResult:
    """Outcome of tracing ``src`` to ``dst``."""

    src: str
    dst: str
    path: tuple[str, ...]  # empty when dst is unreachable
    direct: bool

    @property
    def reachable(self) -> bool:
        return bool(self.path)


def trace(
    universe: CrateUniverse,
    src: str,
    dst: str,
    *,
    kinds: Iterable[str] = VALID_DEPENDENCY_KINDS,
) -> TraceResult:
    """Find the shortest dependency path from *src* to *dst*.

    Raises ``LookupError`` when either crate is not in the universe.
    """
    for name in (src, dst):
        if name not in universe:
            msg = f"Crate '{name}' not found in the universe"
            raise LookupError(msg)

    index = ReachabilityIndex(universe, kinds)
    return TraceResult(
        src=src,
        dst=dst,
        path=index.shortest_path(src, dst),
        direct=index.direct(src, dst),
    )


def render_trace(result: TraceResult, console: Console) -> None:
    """Render a TraceResult as a Rich tree, one level per hop."""
    from rich.tree import Tree

    if not result.reachable:
        console.print(f"[yellow]{result.src}[/] does not depend on [yellow]{result.dst}[/]")
        return

    root = Tree(f"[bold]{result.path[0]}[/]")
    node = root
    for hop in result.path[1:]:
        node = node.add(f"[bold]{hop}[/]")
    console.print(root)

    kind = "direct" if result.direct else f"transitive, {len(result.path) - 1} hops"
    console.print(f"[dim]{kind}[/]")


def result_to_dict(result: TraceResult) -> dict[str, object]:
    """Serialize a TraceResult to a JSON-compatible dict."""
    return {
        "from": result.src,
        "to": result.dst,
        "reachable": result.reachable,
        "direct": result.direct,
        "path": list(result.path),
    }
