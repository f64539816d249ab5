"""Dependency resolution over composite packages.

Composite packages reference their members by produced artifact filename.
This module turns the active package list into a graph of
``composite -> member`` edges and a deterministic build order in which every
member precedes the composites that use it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field

from fleetpack.errors import (
    CycleDetectedError,
    DuplicateNameError,
    UnknownPackageError,
    UnknownReferenceError,
)
from fleetpack.manifest.schema import CompositeSource, PackageSpec

logger = logging.getLogger(__name__)

# Request keyword meaning "every deliverable package"
ALL_PACKAGES = "all"


@dataclass(frozen=True)
class ResolvedGraph:
    """Active packages plus composite -> member edges.

    Attributes:
        specs: Active packages by name, in declaration order.
        edges: Composite name -> member package names, in declared order.
    """

    specs: dict[str, PackageSpec]
    edges: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def members(self, name: str) -> tuple[str, ...]:
        return self.edges.get(name, ())

    def dependents(self) -> dict[str, list[str]]:
        """Return member name -> composites that reference it."""
        reverse: dict[str, list[str]] = {name: [] for name in self.specs}
        for composite, members in self.edges.items():
            for member in members:
                reverse[member].append(composite)
        return reverse


@dataclass(frozen=True)
class BuildOrder:
    """Total order over graph nodes with members before composites."""

    graph: ResolvedGraph
    order: tuple[str, ...]

    def __iter__(self) -> Iterator[str]:
        return iter(self.order)

    def __len__(self) -> int:
        return len(self.order)

    def __contains__(self, name: object) -> bool:
        return name in self.order

    def specs(self) -> list[PackageSpec]:
        return [self.graph.specs[name] for name in self.order]


def build_graph(active_specs: Sequence[PackageSpec]) -> ResolvedGraph:
    """Construct the dependency graph for the active packages.

    Raises:
        DuplicateNameError: If two specs share a name.
        UnknownReferenceError: If a composite member is not produced by any
            active package.
    """
    specs: dict[str, PackageSpec] = {}
    by_filename: dict[str, str] = {}
    for spec in active_specs:
        if spec.name in specs:
            raise DuplicateNameError(spec.name)
        specs[spec.name] = spec
        by_filename[spec.artifact_filename] = spec.name

    edges: dict[str, tuple[str, ...]] = {}
    for spec in specs.values():
        if not isinstance(spec.source, CompositeSource):
            continue
        members: list[str] = []
        for reference in spec.source.packages:
            member = by_filename.get(reference)
            if member is None:
                raise UnknownReferenceError(spec.name, reference)
            members.append(member)
        edges[spec.name] = tuple(members)

    return ResolvedGraph(specs=specs, edges=edges)


def topological_order(graph: ResolvedGraph) -> tuple[str, ...]:
    """Depth-first topological sort, stable over declaration order.

    Raises:
        CycleDetectedError: With the full cycle, first node repeated last.
    """
    order: list[str] = []
    visited: set[str] = set()

    for root in graph.specs:
        if root in visited:
            continue
        # Explicit stack of (node, remaining members); path mirrors it
        stack: list[tuple[str, Iterator[str]]] = [(root, iter(graph.members(root)))]
        path: list[str] = [root]
        on_stack: set[str] = {root}
        while stack:
            name, members = stack[-1]
            member = next(members, None)
            if member is None:
                stack.pop()
                path.pop()
                on_stack.discard(name)
                visited.add(name)
                order.append(name)
            elif member in visited:
                continue
            elif member in on_stack:
                start = path.index(member)
                raise CycleDetectedError([*path[start:], member])
            else:
                stack.append((member, iter(graph.members(member))))
                path.append(member)
                on_stack.add(member)
    return tuple(order)


def resolve(active_specs: Sequence[PackageSpec]) -> BuildOrder:
    """Resolve active packages into a safe build order.

    Raises:
        DuplicateNameError, UnknownReferenceError, CycleDetectedError.
    """
    graph = build_graph(active_specs)
    order = topological_order(graph)
    logger.debug("Resolved build order: %s", ", ".join(order))
    return BuildOrder(graph=graph, order=order)


def closure(order: BuildOrder, requested: Iterable[str] | None = None) -> BuildOrder:
    """Narrow a build order to the requested packages and their members.

    Args:
        order: Full build order for the active packages.
        requested: Package names to build. ``None`` or ``["all"]`` selects
            every package that is not intermediate-only; intermediate-only
            packages then enter only as members of a selected composite.

    Raises:
        UnknownPackageError: If a requested name is unknown or inactive.
    """
    graph = order.graph
    names = list(requested) if requested is not None else [ALL_PACKAGES]

    roots: list[str] = []
    for name in names:
        if name == ALL_PACKAGES:
            roots.extend(
                spec.name for spec in graph.specs.values() if not spec.intermediate_only
            )
        elif name in graph.specs:
            roots.append(name)
        else:
            raise UnknownPackageError(name)

    needed: set[str] = set()
    stack = list(roots)
    while stack:
        name = stack.pop()
        if name in needed:
            continue
        needed.add(name)
        stack.extend(graph.members(name))

    return BuildOrder(
        graph=graph, order=tuple(name for name in order.order if name in needed)
    )


__all__ = [
    "ALL_PACKAGES",
    "BuildOrder",
    "ResolvedGraph",
    "build_graph",
    "closure",
    "resolve",
    "topological_order",
]
