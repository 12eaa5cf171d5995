"""Reachability index over the crate universe.

Answers ``direct``/``transitive`` dependency questions, feature
propagation questions and feature implication chains.  The index is built
once per universe and is read-only afterwards; lazily memoised reachability
sets are filled at most once per source crate.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

from cratecheck.engine.universe import VALID_DEPENDENCY_KINDS

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cratecheck.engine.universe import CrateUniverse

logger = logging.getLogger(__name__)


def split_forward(entry: str) -> tuple[str, str] | None:
    """Split a ``crate/feature`` forwarding entry.

    The weak form ``crate?/feature`` counts as the plain one.  Entries that
    are not crate forwards (``dep:crate`` or a bare local feature) return
    ``None``.
    """
    if "/" not in entry or entry.startswith("dep:"):
        return None
    crate, feature = entry.split("/", 1)
    return crate.rstrip("?"), feature


class ReachabilityIndex:
    """Direct and transitive dependency lookups for one universe."""

    def __init__(
        self,
        universe: CrateUniverse,
        kinds: Iterable[str] = VALID_DEPENDENCY_KINDS,
    ) -> None:
        self.universe = universe
        self.kinds = frozenset(kinds)
        self._successors: dict[str, frozenset[str]] = {}
        predecessors: dict[str, set[str]] = {name: set() for name in universe.names}

        for crate in universe:
            targets = {e.to_crate for e in crate.dependencies if e.kind in self.kinds}
            self._successors[crate.name] = frozenset(targets)
            for target in targets:
                predecessors[target].add(crate.name)

        self._predecessors = {k: frozenset(v) for k, v in predecessors.items()}
        self._reachable: dict[str, frozenset[str]] = {}
        self._reverse_reachable: dict[str, frozenset[str]] = {}

    # -- dependency relations -------------------------------------------------

    def successors(self, crate: str) -> frozenset[str]:
        """Crates *crate* directly depends on."""
        return self._successors.get(crate, frozenset())

    def predecessors(self, crate: str) -> frozenset[str]:
        """Crates that directly depend on *crate*."""
        return self._predecessors.get(crate, frozenset())

    def direct(self, src: str, dst: str) -> bool:
        return dst in self.successors(src)

    def reachable(self, crate: str) -> frozenset[str]:
        """Crates reachable from *crate* through one or more edges.

        *crate* itself is included only when it lies on a cycle.
        """
        cached = self._reachable.get(crate)
        if cached is not None:
            return cached

        visited: set[str] = set()
        queue: deque[str] = deque(self.successors(crate))
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            queue.extend(n for n in self.successors(current) if n not in visited)

        result = frozenset(visited)
        self._reachable[crate] = result
        return result

    def transitive(self, src: str, dst: str) -> bool:
        return dst in self.reachable(src)

    def reverse_reachable(self, crate: str) -> frozenset[str]:
        """Crates from which *crate* is reachable."""
        cached = self._reverse_reachable.get(crate)
        if cached is not None:
            return cached

        visited: set[str] = set()
        queue: deque[str] = deque(self.predecessors(crate))
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            queue.extend(n for n in self.predecessors(current) if n not in visited)

        result = frozenset(visited)
        self._reverse_reachable[crate] = result
        return result

    def precompute(self) -> None:
        """Fill the reachability memo for every crate up front."""
        for name in self.universe.names:
            self.reachable(name)
        logger.debug("Precomputed transitive closure for %d crates", len(self.universe))

    def shortest_path(self, src: str, dst: str) -> tuple[str, ...]:
        """Return the shortest dependency path ``src -> ... -> dst``.

        Returns an empty tuple when *dst* is not reachable.  For ``src == dst``
        the path is the shortest cycle through *src*.
        """
        parents: dict[str, str] = {}
        queue: deque[str] = deque()
        for nxt in sorted(self.successors(src)):
            parents.setdefault(nxt, src)
            queue.append(nxt)

        while queue:
            current = queue.popleft()
            if current == dst:
                path = [current]
                while len(path) == 1 or path[-1] != src:
                    path.append(parents[path[-1]])
                return tuple(reversed(path))
            for nxt in sorted(self.successors(current)):
                if nxt not in parents:
                    parents[nxt] = current
                    queue.append(nxt)
        return ()

    # -- feature relations ----------------------------------------------------

    def is_defined(self, crate: str, feature: str) -> bool:
        feat = self.universe[crate].feature(feature)
        return feat is not None and feat.defines

    def is_enabled(self, crate: str, feature: str) -> bool:
        feat = self.universe[crate].feature(feature)
        return feat is not None and feat.enabled

    def forwards(self, crate: str) -> frozenset[tuple[str, str]]:
        """All ``(target crate, feature)`` pairs *crate* forwards to, under any feature."""
        pairs: set[tuple[str, str]] = set()
        for feat in self.universe[crate].features.values():
            for entry in feat.forwards:
                split = split_forward(entry)
                if split is not None:
                    pairs.add(split)
        return frozenset(pairs)

    def propagates(self, src: str, dst: str, feature: str) -> bool:
        """True iff *src* declares a ``dst/feature`` forwarding entry.

        Whether *dst* has *feature* switched on for unrelated reasons does not
        matter.
        """
        return (dst, feature) in self.forwards(src)

    def needs_propagation(self, src: str, dst: str, feature: str) -> bool:
        """True when *src* enables *feature*, depends on *dst*, and *dst* defines it."""
        return (
            self.direct(src, dst)
            and self.is_enabled(src, feature)
            and self.is_defined(dst, feature)
        )

    def enabled_targets(self, crate: str, feature: str, forbidden: str) -> tuple[str, ...]:
        """Crates on which *feature* of *crate* directly switches on *forbidden*.

        A bare ``forbidden`` entry counts for *crate* itself; ``dep/forbidden``
        and ``dep?/forbidden`` count when ``dep`` is a dependency of *crate*.
        """
        feat = self.universe[crate].feature(feature)
        if feat is None:
            return ()
        targets: set[str] = set()
        for entry in feat.forwards:
            if entry == forbidden:
                targets.add(crate)
                continue
            split = split_forward(entry)
            if split is not None and split[1] == forbidden and self.direct(crate, split[0]):
                targets.add(split[0])
        return tuple(sorted(targets))

    def enables(self, crate: str, feature: str, forbidden: str) -> bool:
        return bool(self.enabled_targets(crate, feature, forbidden))

    # -- feature implication --------------------------------------------------

    def _feature_successors(self, node: tuple[str, str]) -> list[tuple[str, str]]:
        """``(crate, feature)`` nodes switched on by *node*.

        ``default`` turns on the default set of every dependency.  Each
        forwarding entry adds one edge: ``dep:x`` to ``x``'s default set,
        ``x/f`` to ``(x, f)`` and a bare ``f`` to the crate's own ``f``.
        Crates outside the universe are dead ends.
        """
        crate, feature = node
        found = self.universe.get(crate)
        if found is None:
            return []

        nxt: set[tuple[str, str]] = set()
        if feature == "default":
            nxt.update((dep, "default") for dep in self.successors(crate))
        feat = found.feature(feature)
        if feat is not None:
            for entry in feat.forwards:
                if entry.startswith("dep:"):
                    nxt.add((entry[len("dep:") :], "default"))
                    continue
                split = split_forward(entry)
                nxt.add(split if split is not None else (crate, entry))
        return sorted(nxt)

    def feature_path(
        self, crate: str, feature: str, forbidden: str
    ) -> tuple[tuple[str, str], ...]:
        """Shortest implication chain from ``(crate, feature)`` to any *forbidden* node.

        The chain has at least one step and ends at the first node, in
        breadth-first order, whose feature is *forbidden* on any crate.
        Returns an empty tuple when *feature* never implies *forbidden*.
        """
        start = (crate, feature)
        parents: dict[tuple[str, str], tuple[str, str] | None] = {start: None}
        queue: deque[tuple[str, str]] = deque([start])
        while queue:
            current = queue.popleft()
            for nxt in self._feature_successors(current):
                if nxt in parents:
                    continue
                parents[nxt] = current
                if nxt[1] == forbidden:
                    path = [nxt]
                    parent: tuple[str, str] | None = current
                    while parent is not None:
                        path.append(parent)
                        parent = parents[parent]
                    return tuple(reversed(path))
                queue.append(nxt)
        return ()

    def implies(self, crate: str, feature: str, forbidden: str) -> bool:
        return bool(self.feature_path(crate, feature, forbidden))
