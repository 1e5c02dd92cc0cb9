"""Feature filters, feature queries and feature sets."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from typing import TYPE_CHECKING

from crategraph.core.cycles import reachable, topo_order
from crategraph.core.ids import DependencyDirection, PackageId
from crategraph.core.query import PackageQuery, PackageSet
from crategraph.errors import GraphMismatchError, UnknownFeatureIdError

if TYPE_CHECKING:
    from crategraph.core.feature import CrossLink, FeatureGraph, FeatureId
    from crategraph.core.graph import PackageMetadata


class FeatureFilter(ABC):
    """Decides which features of a package to start from when moving from packages to features."""

    @abstractmethod
    def accept(self, graph: FeatureGraph, feature_id: FeatureId) -> bool:
        ...


class StandardFeatures(enum.Enum):
    """No features, default features, or every feature."""

    NONE = "none"
    DEFAULT = "default"
    ALL = "all"

    def accept(self, graph: FeatureGraph, feature_id: FeatureId) -> bool:
        if self is StandardFeatures.ALL:
            return True
        if self is StandardFeatures.NONE:
            return feature_id.feature is None
        return graph.is_default_feature(feature_id)


FeatureFilter.register(StandardFeatures)


def none_filter() -> FeatureFilter:
    """Only base nodes: the package with no optional features."""
    return StandardFeatures.NONE


def default_filter() -> FeatureFilter:
    return StandardFeatures.DEFAULT


def all_filter() -> FeatureFilter:
    return StandardFeatures.ALL


class _NamedFeatures(FeatureFilter):
    def __init__(self, base: FeatureFilter, names: Iterable[str]) -> None:
        self.base = base
        self.names = frozenset(names)

    def accept(self, graph: FeatureGraph, feature_id: FeatureId) -> bool:
        return feature_id.feature in self.names or self.base.accept(graph, feature_id)

    def __repr__(self) -> str:
        return f"feature_filter({self.base!r}, {sorted(self.names)!r})"


def feature_filter(base: FeatureFilter, names: Iterable[str]) -> FeatureFilter:
    """
    Accept what ``base`` accepts plus features called ``names``.

    Example: ``feature_filter(default_filter(), ["serde"])`` is Cargo's
    ``--features serde``.
    """
    return _NamedFeatures(base, names)


class FeatureFilterFn(FeatureFilter):
    """Wrap a ``(feature_graph, feature_id) -> bool`` callable as a filter."""

    def __init__(self, fn: Callable[[FeatureGraph, FeatureId], bool]) -> None:
        self.fn = fn

    def accept(self, graph: FeatureGraph, feature_id: FeatureId) -> bool:
        return self.fn(graph, feature_id)


def resolve_feature_ixs(
    graph: FeatureGraph,
    initials: Iterable[int],
    direction: DependencyDirection,
    cross_filter: Callable[[int], bool] | None,
) -> set[int]:
    """
    Feature indexes reachable from ``initials``.

    Edges inside a package are always followed. ``cross_filter`` is asked once
    about each cross-package edge reached. Weak edges (``dep?/feat``) are held
    back until their optional dependency is itself enabled.
    """
    initials = list(initials)
    if direction is DependencyDirection.BOTH:
        return resolve_feature_ixs(
            graph, initials, DependencyDirection.FORWARD, cross_filter
        ) | resolve_feature_ixs(graph, initials, DependencyDirection.REVERSE, cross_filter)

    edges_of = graph._edges_of(direction)
    gate_weak = direction is DependencyDirection.FORWARD
    deferred: list[int] = []

    def edge_filter(edge_ix: int) -> bool:
        if not graph._is_cross_edge(edge_ix):
            return True
        if gate_weak and graph._weak_gate(edge_ix) is not None:
            deferred.append(edge_ix)
            return False
        return cross_filter is None or cross_filter(edge_ix)

    found = set(reachable(initials, edges_of, edge_filter))
    while deferred:
        starts = []
        pending = []
        for edge_ix in deferred:
            to_ix = graph._edges[edge_ix].to_ix
            if graph._weak_gate(edge_ix) in found:
                if to_ix not in found and (cross_filter is None or cross_filter(edge_ix)):
                    starts.append(to_ix)
            else:
                pending.append(edge_ix)
        deferred[:] = pending
        if not starts:
            break
        found.update(reachable(starts, edges_of, edge_filter, visited=found))
    return found


class FeatureQuery:
    """Starting features plus a direction, over one FeatureGraph."""

    def __init__(
        self,
        graph: FeatureGraph,
        initial_ixs: frozenset[int],
        direction: DependencyDirection,
    ) -> None:
        self._graph = graph
        self.initial_ixs = initial_ixs
        self.direction = direction

    @property
    def graph(self) -> FeatureGraph:
        return self._graph

    def __repr__(self) -> str:
        return f"FeatureQuery({len(self.initial_ixs)} initials, {self.direction.value})"

    def initials(self) -> list[FeatureId]:
        return sorted(self._graph._ids[ix] for ix in self.initial_ixs)

    def initial_package_ixs(self) -> set[int]:
        return {self._graph._package_of[ix] for ix in self.initial_ixs}

    def starts_from(self, feature_id: FeatureId | tuple) -> bool:
        return self._graph._feature_ix(feature_id) in self.initial_ixs

    def starts_from_package(self, package_id: PackageId | str) -> bool:
        """True if any initial feature belongs to the package."""
        package_ix = self._graph.package_graph._package_ix(package_id)
        return package_ix in self.initial_package_ixs()

    def to_package_query(self) -> PackageQuery:
        return PackageQuery(
            self._graph.package_graph,
            frozenset(self.initial_package_ixs()),
            self.direction,
        )

    def resolve(self) -> FeatureSet:
        return FeatureSet(
            self._graph,
            frozenset(resolve_feature_ixs(self._graph, self.initial_ixs, self.direction, None)),
        )

    def resolve_with(self, predicate: Callable[[CrossLink], bool]) -> FeatureSet:
        """Resolve, following a cross-package edge only if ``predicate`` accepts it."""
        from crategraph.core.feature import CrossLink

        graph = self._graph
        ixs = resolve_feature_ixs(
            graph,
            self.initial_ixs,
            self.direction,
            lambda edge_ix: predicate(CrossLink(graph, edge_ix)),
        )
        return FeatureSet(graph, frozenset(ixs))


class FeatureList:
    """The enabled features of one package within a FeatureSet."""

    def __init__(self, package: PackageMetadata, features: Iterable[str | None]) -> None:
        self.package = package
        self._features = tuple(sorted(features, key=lambda f: (f is not None, f or "")))

    def __iter__(self) -> Iterator[str | None]:
        return iter(self._features)

    def __len__(self) -> int:
        return len(self._features)

    def __contains__(self, name: object) -> bool:
        return name in self._features

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureList):
            return NotImplemented
        return self.package == other.package and self._features == other._features

    def __repr__(self) -> str:
        return f"FeatureList({self.package.name}, {list(self._features)!r})"

    def has_base(self) -> bool:
        return None in self._features

    def named_features(self) -> list[str]:
        return [f for f in self._features if f is not None]

    def to_dict(self) -> dict:
        return {
            "id": str(self.package.id),
            "name": self.package.name,
            "version": self.package.version,
            "features": self.named_features(),
        }


class FeatureSet:
    """An immutable set of features from one FeatureGraph, with set algebra."""

    __slots__ = ("_graph", "_ixs")

    def __init__(self, graph: FeatureGraph, ixs: frozenset[int]) -> None:
        self._graph = graph
        self._ixs = ixs

    @property
    def graph(self) -> FeatureGraph:
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

    def __iter__(self) -> Iterator[FeatureId]:
        return iter(self.feature_ids())

    def __contains__(self, feature_id: object) -> bool:
        try:
            return self._graph._feature_ix(feature_id) in self._ixs  # type: ignore[arg-type]
        except (UnknownFeatureIdError, TypeError, ValueError):
            return False

    def contains(self, feature_id: FeatureId | tuple) -> bool:
        """Membership test that raises UnknownFeatureIdError for unknown features."""
        return self._graph._feature_ix(feature_id) in self._ixs

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureSet):
            return NotImplemented
        return self._graph is other._graph and self._ixs == other._ixs

    def __hash__(self) -> int:
        return hash((id(self._graph), self._ixs))

    def __repr__(self) -> str:
        return f"FeatureSet({len(self._ixs)} features)"

    def _check(self, other: FeatureSet) -> None:
        if other._graph is not self._graph:
            raise GraphMismatchError("feature sets come from different feature graphs")

    def union(self, other: FeatureSet) -> FeatureSet:
        self._check(other)
        return FeatureSet(self._graph, self._ixs | other._ixs)

    def intersection(self, other: FeatureSet) -> FeatureSet:
        self._check(other)
        return FeatureSet(self._graph, self._ixs & other._ixs)

    def difference(self, other: FeatureSet) -> FeatureSet:
        self._check(other)
        return FeatureSet(self._graph, self._ixs - other._ixs)

    def symmetric_difference(self, other: FeatureSet) -> FeatureSet:
        self._check(other)
        return FeatureSet(self._graph, self._ixs ^ other._ixs)

    __or__ = union
    __and__ = intersection
    __sub__ = difference
    __xor__ = symmetric_difference

    def to_package_set(self) -> PackageSet:
        package_ixs = frozenset(self._graph._package_of[ix] for ix in self._ixs)
        return PackageSet(self._graph.package_graph, package_ixs)

    def package_ids(
        self, direction: DependencyDirection = DependencyDirection.FORWARD
    ) -> list[PackageId]:
        return self.to_package_set().package_ids(direction)

    def feature_ids(
        self, direction: DependencyDirection = DependencyDirection.FORWARD
    ) -> list[FeatureId]:
        """Feature ids in topological order (forward: dependents first)."""
        graph = self._graph
        order = topo_order(graph._condensation, self._ixs, graph._non_dev_successors)
        if direction is DependencyDirection.REVERSE:
            order.reverse()
        return [graph._ids[ix] for ix in order]

    def _names_by_package(self) -> dict[int, list[str | None]]:
        by_package: dict[int, list[str | None]] = {}
        for ix in self._ixs:
            by_package.setdefault(self._graph._package_of[ix], []).append(self._graph._ids[ix].feature)
        return by_package

    def features_for(self, package_id: PackageId | str) -> FeatureList | None:
        """Enabled features of one package, or None if the package isn't in the set."""
        pg = self._graph.package_graph
        package_ix = pg._package_ix(package_id)
        names = self._names_by_package().get(package_ix)
        if names is None:
            return None
        return FeatureList(pg._view(package_ix), names)

    def packages_with_features(
        self, direction: DependencyDirection = DependencyDirection.FORWARD
    ) -> list[FeatureList]:
        by_package = self._names_by_package()
        return [
            FeatureList(package, by_package[package.package_ix])
            for package in self.to_package_set().packages(direction)
        ]

    def to_dict(self) -> dict:
        return {"packages": [fl.to_dict() for fl in self.packages_with_features()]}
