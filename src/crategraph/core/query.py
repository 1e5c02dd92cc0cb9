"""Package queries and the immutable package sets they resolve to."""

from __future__ import annotations

import enum
from collections.abc import Callable, Iterable, Iterator
from typing import TYPE_CHECKING

from crategraph.core.cycles import reachable, topo_order
from crategraph.core.ids import DependencyDirection, DependencyKind, PackageId
from crategraph.errors import GraphMismatchError

if TYPE_CHECKING:
    from crategraph.core.feature_query import FeatureFilter, FeatureSet
    from crategraph.core.graph import PackageGraph, PackageLink, PackageMetadata


class LinkFilter(enum.Enum):
    """Built-in link predicates for ``PackageGraph.resolve_with``."""

    ALL = "all"
    NO_DEV = "no-dev"
    NO_BUILD = "no-build"
    NORMAL_ONLY = "normal-only"
    WORKSPACE_ONLY = "workspace-only"
    # Only links out of workspace packages: reaches workspace members and
    # their direct external dependencies, nothing beyond.
    DIRECT_EXTERNAL = "direct-external"

    def accepts(self, link: PackageLink) -> bool:
        if self is LinkFilter.ALL:
            return True
        if self is LinkFilter.NO_DEV:
            return link.kind is not DependencyKind.DEV
        if self is LinkFilter.NO_BUILD:
            return link.kind is not DependencyKind.BUILD
        if self is LinkFilter.NORMAL_ONLY:
            return link.kind is DependencyKind.NORMAL
        if self is LinkFilter.WORKSPACE_ONLY:
            return link.from_.in_workspace and link.to.in_workspace
        return link.from_.in_workspace


def resolve_package_ixs(
    graph: PackageGraph,
    initials: Iterable[int],
    direction: DependencyDirection,
    edge_filter: Callable[[int], bool] | None,
) -> set[int]:
    """Indexes of packages reachable from ``initials`` in ``direction``."""
    initials = list(initials)
    if direction is DependencyDirection.BOTH:
        forward = reachable(initials, graph._edges_of(DependencyDirection.FORWARD), edge_filter)
        reverse = reachable(initials, graph._edges_of(DependencyDirection.REVERSE), edge_filter)
        return set(forward) | set(reverse)
    return set(reachable(initials, graph._edges_of(direction), edge_filter))


class PackageQuery:
    """Starting packages plus a traversal direction, over one PackageGraph."""

    def __init__(
        self,
        graph: PackageGraph,
        initial_ixs: frozenset[int],
        direction: DependencyDirection,
    ) -> None:
        self._graph = graph
        self.initial_ixs = initial_ixs
        self.direction = direction

    @property
    def graph(self) -> PackageGraph:
        return self._graph

    def __repr__(self) -> str:
        return f"PackageQuery({len(self.initial_ixs)} initials, {self.direction.value})"

    def check_graph(self, graph: PackageGraph) -> None:
        if graph is not self._graph:
            raise GraphMismatchError("query was created from a different package graph")

    def initials(self) -> list[PackageId]:
        return sorted(self._graph._nodes[ix].record.id for ix in self.initial_ixs)

    def starts_from(self, package_id: PackageId | str) -> bool:
        """True if the package is one of the initials. Raises for unknown ids."""
        return self._graph._package_ix(package_id) in self.initial_ixs

    def resolve(self) -> PackageSet:
        return self._graph.resolve(self)

    def resolve_with(self, predicate: LinkFilter | Callable[[PackageLink], bool]) -> PackageSet:
        return self._graph.resolve_with(self, predicate)


class PackageSet:
    """
    An immutable set of packages from one PackageGraph.

    Supports the usual set algebra. Combining sets from different graphs
    raises GraphMismatchError, and sets from different graphs never compare
    equal.
    """

    __slots__ = ("_graph", "_ixs")

    def __init__(self, graph: PackageGraph, ixs: frozenset[int]) -> None:
        self._graph = graph
        self._ixs = ixs

    @property
    def graph(self) -> PackageGraph:
        return self._graph

    @property
    def ixs(self) -> frozenset[int]:
        return self._ixs

    def __len__(self) -> int:
        return len(self._ixs)

    def __bool__(self) -> bool:
        return bool(self._ixs)

    def is_empty(self) -> bool:
        return not self._ixs

    def __iter__(self) -> Iterator[PackageId]:
        return iter(self.package_ids())

    def __contains__(self, package_id: object) -> bool:
        if isinstance(package_id, str):
            package_id = PackageId(package_id)
        if not isinstance(package_id, PackageId) or not self._graph.contains(package_id):
            return False
        return self._graph._ix_by_id[package_id] in self._ixs

    def contains(self, package_id: PackageId | str) -> bool:
        """Membership test that raises UnknownPackageIdError for ids not in the graph."""
        return self._graph._package_ix(package_id) in self._ixs

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageSet):
            return NotImplemented
        return self._graph is other._graph and self._ixs == other._ixs

    def __hash__(self) -> int:
        return hash((id(self._graph), self._ixs))

    def __repr__(self) -> str:
        names = ", ".join(sorted(self._graph._nodes[ix].record.name for ix in self._ixs))
        return f"PackageSet({{{names}}})"

    def _check(self, other: PackageSet) -> None:
        if other._graph is not self._graph:
            raise GraphMismatchError("package sets come from different package graphs")

    def union(self, other: PackageSet) -> PackageSet:
        self._check(other)
        return PackageSet(self._graph, self._ixs | other._ixs)

    def intersection(self, other: PackageSet) -> PackageSet:
        self._check(other)
        return PackageSet(self._graph, self._ixs & other._ixs)

    def difference(self, other: PackageSet) -> PackageSet:
        self._check(other)
        return PackageSet(self._graph, self._ixs - other._ixs)

    def symmetric_difference(self, other: PackageSet) -> PackageSet:
        self._check(other)
        return PackageSet(self._graph, self._ixs ^ other._ixs)

    __or__ = union
    __and__ = intersection
    __sub__ = difference
    __xor__ = symmetric_difference

    def issubset(self, other: PackageSet) -> bool:
        self._check(other)
        return self._ixs <= other._ixs

    def _ordered_ixs(self, direction: DependencyDirection) -> list[int]:
        graph = self._graph
        order = topo_order(graph._condensation(), self._ixs, graph._non_dev_successors)
        if direction is DependencyDirection.REVERSE:
            order.reverse()
        return order

    def package_ids(
        self, direction: DependencyDirection = DependencyDirection.FORWARD
    ) -> list[PackageId]:
        """
        Package ids in topological order.

        Forward puts dependents before their dependencies, reverse the
        opposite. Packages in a cycle follow non-dev build order.
        """
        return [self._graph._nodes[ix].record.id for ix in self._ordered_ixs(direction)]

    def packages(
        self, direction: DependencyDirection = DependencyDirection.FORWARD
    ) -> list[PackageMetadata]:
        return [self._graph._view(ix) for ix in self._ordered_ixs(direction)]

    def root_ids(
        self, direction: DependencyDirection = DependencyDirection.FORWARD
    ) -> list[PackageId]:
        """
        Packages nothing else in the set points at.

        Forward: no dependents inside the set. Reverse: no dependencies inside
        the set. A cycle with no outside edge into it contributes all members.
        """
        graph = self._graph
        condensation = graph._condensation()
        if direction is DependencyDirection.REVERSE:
            has_incoming = {
                condensation.scc_of(ix)
                for ix in self._ixs
                for l in graph._nodes[ix].outgoing
                if graph._links[l].to_ix in self._ixs
                and not condensation.is_same_scc(ix, graph._links[l].to_ix)
            }
        else:
            has_incoming = {
                condensation.scc_of(ix)
                for ix in self._ixs
                for l in graph._nodes[ix].incoming
                if graph._links[l].from_ix in self._ixs
                and not condensation.is_same_scc(ix, graph._links[l].from_ix)
            }
        return [
            graph._nodes[ix].record.id
            for ix in self._ordered_ixs(direction)
            if condensation.scc_of(ix) not in has_incoming
        ]

    def links(
        self, direction: DependencyDirection = DependencyDirection.FORWARD
    ) -> list[PackageLink]:
        """Links with both endpoints in the set, ordered by their source package."""
        graph = self._graph
        out = []
        for ix in self._ordered_ixs(direction):
            for l in graph._nodes[ix].outgoing:
                if graph._links[l].to_ix in self._ixs:
                    out.append(graph._link_view(l))
        return out

    def to_feature_set(self, feature_filter: FeatureFilter) -> FeatureSet:
        """Convert to a feature set, picking features of each package with ``feature_filter``."""
        return self._graph.feature_graph().resolve_packages(self, feature_filter)

    def to_dict(self) -> dict:
        return {
            "packages": [
                {"id": str(p.id), "name": p.name, "version": p.version}
                for p in self.packages()
            ]
        }
