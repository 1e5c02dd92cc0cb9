"""The feature graph: one node per (package, feature) pair.

Derived from a PackageGraph on first use (``PackageGraph.feature_graph()``)
and immutable afterwards. Problems in feature declarations don't abort the
derivation; they are collected as FeatureGraphWarning records.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from functools import total_ordering
from typing import TYPE_CHECKING

from crategraph.core.cycles import Condensation, reachable
from crategraph.core.ids import DependencyDirection, DependencyKind, PackageId
from crategraph.core.platform import PlatformStatus
from crategraph.core.feature_query import FeatureQuery, FeatureSet
from crategraph.errors import GraphMismatchError, UnknownFeatureIdError

if TYPE_CHECKING:
    from crategraph.core.cargo import CargoOptions, CargoSet
    from crategraph.core.feature_query import FeatureFilter
    from crategraph.core.graph import PackageGraph, PackageLink, PackageMetadata
    from crategraph.core.query import PackageQuery, PackageSet

logger = logging.getLogger(__name__)


@total_ordering
@dataclass(frozen=True)
class FeatureId:
    """A package plus an optional feature name. ``feature=None`` is the base node."""

    package_id: PackageId
    feature: str | None = None

    def is_base(self) -> bool:
        return self.feature is None

    def _key(self) -> tuple:
        return (self.package_id, self.feature is not None, self.feature or "")

    def __lt__(self, other: FeatureId) -> bool:
        if not isinstance(other, FeatureId):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        if self.feature is None:
            return f"{self.package_id}/[base]"
        return f"{self.package_id}/{self.feature}"


class FeatureEdgeKind(enum.Enum):
    FEATURE_TO_BASE = "feature-to-base"
    FEATURE_DEPENDENCY = "feature-dependency"
    DEPENDENCY = "dependency"


class FeatureBuildStage(enum.Enum):
    ADD_NAMED_FEATURE_EDGES = "add-named-feature-edges"
    ADD_DEPENDENCY_EDGES = "add-dependency-edges"


class WarningKind(enum.Enum):
    MISSING_FEATURE = "missing-feature"
    MISSING_DEPENDENCY = "missing-dependency"


@dataclass(frozen=True)
class FeatureGraphWarning:
    """A feature requirement that could not be resolved."""

    package_id: PackageId
    stage: FeatureBuildStage
    kind: WarningKind
    feature_name: str
    detail: str = ""

    def __str__(self) -> str:
        what = "feature" if self.kind is WarningKind.MISSING_FEATURE else "dependency"
        msg = f"{self.package_id}: missing {what} {self.feature_name!r} ({self.stage.value})"
        return f"{msg}: {self.detail}" if self.detail else msg

    def to_dict(self) -> dict:
        return {
            "package_id": str(self.package_id),
            "stage": self.stage.value,
            "kind": self.kind.value,
            "feature_name": self.feature_name,
            "detail": self.detail,
        }


@dataclass
class _FeatureEdge:
    from_ix: int
    to_ix: int
    kind: FeatureEdgeKind
    normal: PlatformStatus = field(default_factory=PlatformStatus.never)
    build: PlatformStatus = field(default_factory=PlatformStatus.never)
    dev: PlatformStatus = field(default_factory=PlatformStatus.never)
    # For ``dep?/feat``: follow only once this node is enabled.
    weak_gate: int | None = None
    package_links: list[int] = field(default_factory=list)

    def add_status(self, kind: DependencyKind, status: PlatformStatus) -> None:
        if kind is DependencyKind.NORMAL:
            self.normal = self.normal.merge(status)
        elif kind is DependencyKind.BUILD:
            self.build = self.build.merge(status)
        else:
            self.dev = self.dev.merge(status)


class FeatureMetadata:
    """View of one feature node."""

    __slots__ = ("_graph", "_ix")

    def __init__(self, graph: FeatureGraph, ix: int) -> None:
        self._graph = graph
        self._ix = ix

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureMetadata):
            return NotImplemented
        return self._graph is other._graph and self._ix == other._ix

    def __hash__(self) -> int:
        return hash((id(self._graph), self._ix))

    def __repr__(self) -> str:
        return f"FeatureMetadata({self.feature_id})"

    @property
    def feature_ix(self) -> int:
        return self._ix

    @property
    def feature_id(self) -> FeatureId:
        return self._graph._ids[self._ix]

    @property
    def package(self) -> PackageMetadata:
        return self._graph.package_graph._view(self._graph._package_of[self._ix])

    @property
    def package_ix(self) -> int:
        return self._graph._package_of[self._ix]

    def is_base(self) -> bool:
        return self.feature_id.feature is None

    def is_optional_dependency(self) -> bool:
        fid = self.feature_id
        return fid.feature is not None and fid.feature in self._graph._optional_names[self.package_ix]


class CrossLink:
    """View of a feature edge between two packages, with per-kind platform status."""

    __slots__ = ("_graph", "_ix")

    def __init__(self, graph: FeatureGraph, ix: int) -> None:
        self._graph = graph
        self._ix = ix

    @property
    def _edge(self) -> _FeatureEdge:
        return self._graph._edges[self._ix]

    def __repr__(self) -> str:
        return f"CrossLink({self.from_} -> {self.to})"

    @property
    def edge_ix(self) -> int:
        return self._ix

    @property
    def from_(self) -> FeatureMetadata:
        return FeatureMetadata(self._graph, self._edge.from_ix)

    @property
    def to(self) -> FeatureMetadata:
        return FeatureMetadata(self._graph, self._edge.to_ix)

    def endpoints(self) -> tuple[FeatureMetadata, FeatureMetadata]:
        return self.from_, self.to

    def status_for_kind(self, kind: DependencyKind) -> PlatformStatus:
        edge = self._edge
        if kind is DependencyKind.NORMAL:
            return edge.normal
        if kind is DependencyKind.BUILD:
            return edge.build
        return edge.dev

    def normal(self) -> PlatformStatus:
        return self._edge.normal

    def build(self) -> PlatformStatus:
        return self._edge.build

    def dev(self) -> PlatformStatus:
        return self._edge.dev

    def dev_only(self) -> bool:
        edge = self._edge
        return edge.normal.is_never() and edge.build.is_never()

    def is_weak(self) -> bool:
        return self._edge.weak_gate is not None

    def package_links(self) -> list[PackageLink]:
        pg = self._graph.package_graph
        return [pg._link_view(l) for l in self._edge.package_links]


class FeatureGraph:
    """
    Directed graph over FeatureIds.

    Every feature points at its package's base node; features point at the
    same-package features they enable; dependency edges cross packages and
    carry the platform status of the package link(s) they came from.
    """

    def __init__(self, package_graph: PackageGraph) -> None:
        self.package_graph = package_graph
        self._ids: list[FeatureId] = []
        self._package_of: list[int] = []
        self._ix_by_id: dict[FeatureId, int] = {}
        self._base_ix: list[int] = []
        self._nodes_of_package: list[list[int]] = []
        self._optional_names: list[frozenset[str]] = []
        self._edges: list[_FeatureEdge] = []
        self._edge_by_key: dict[tuple[int, int, FeatureEdgeKind], int] = {}
        self._outgoing: list[list[int]] = []
        self._incoming: list[list[int]] = []
        self._warnings: list[FeatureGraphWarning] = []
        self._build()
        self._default_closure = [self._compute_default(p) for p in range(len(self._base_ix))]
        self._condensation = Condensation(range(len(self._ids)), self._successors)
        logger.debug(
            "Built feature graph: %d features, %d edges, %d warnings",
            len(self._ids),
            len(self._edges),
            len(self._warnings),
        )
        for warning in self._warnings:
            logger.warning("Feature graph: %s", warning)

    # --- construction ---

    def _add_node(self, package_ix: int, name: str | None) -> int:
        pg = self.package_graph
        fid = FeatureId(pg._nodes[package_ix].record.id, name)
        ix = self._ix_by_id.get(fid)
        if ix is not None:
            return ix
        ix = len(self._ids)
        self._ids.append(fid)
        self._package_of.append(package_ix)
        self._ix_by_id[fid] = ix
        self._nodes_of_package[package_ix].append(ix)
        self._outgoing.append([])
        self._incoming.append([])
        return ix

    def _node_ix(self, package_ix: int, name: str | None) -> int | None:
        fid = FeatureId(self.package_graph._nodes[package_ix].record.id, name)
        return self._ix_by_id.get(fid)

    def _add_edge(self, from_ix: int, to_ix: int, kind: FeatureEdgeKind) -> _FeatureEdge:
        key = (from_ix, to_ix, kind)
        edge_ix = self._edge_by_key.get(key)
        if edge_ix is None:
            edge_ix = len(self._edges)
            self._edges.append(_FeatureEdge(from_ix, to_ix, kind))
            self._edge_by_key[key] = edge_ix
            self._outgoing[from_ix].append(edge_ix)
            self._incoming[to_ix].append(edge_ix)
        return self._edges[edge_ix]

    def _warn(
        self,
        package_ix: int,
        stage: FeatureBuildStage,
        kind: WarningKind,
        name: str,
        detail: str = "",
    ) -> None:
        package_id = self.package_graph._nodes[package_ix].record.id
        self._warnings.append(FeatureGraphWarning(package_id, stage, kind, name, detail))

    def _considered_links(self, package_ix: int) -> list[int]:
        """Links that contribute feature edges. Dev links only count for workspace members."""
        pg = self.package_graph
        node = pg._nodes[package_ix]
        return [
            l
            for l in node.outgoing
            if node.in_workspace or pg._links[l].kind is not DependencyKind.DEV
        ]

    def _build(self) -> None:
        pg = self.package_graph
        for package_ix, node in enumerate(pg._nodes):
            self._nodes_of_package.append([])
            self._base_ix.append(self._add_node(package_ix, None))
            optional = {d.dep_name for d in node.record.declared if d.instance.optional}
            self._optional_names.append(frozenset(optional))
            for name in node.record.features:
                self._add_node(package_ix, name)
            for name in sorted(optional):
                self._add_node(package_ix, name)

        for package_ix in range(len(pg._nodes)):
            base = self._base_ix[package_ix]
            for ix in self._nodes_of_package[package_ix]:
                if ix != base:
                    self._add_edge(ix, base, FeatureEdgeKind.FEATURE_TO_BASE)

        for package_ix in range(len(pg._nodes)):
            self._add_named_feature_edges(package_ix)
        for package_ix in range(len(pg._nodes)):
            self._add_dependency_edges(package_ix)

    def _add_named_feature_edges(self, package_ix: int) -> None:
        pg = self.package_graph
        record = pg._nodes[package_ix].record
        stage = FeatureBuildStage.ADD_NAMED_FEATURE_EDGES
        links_by_name: dict[str, list[int]] = {}
        for l in self._considered_links(package_ix):
            links_by_name.setdefault(pg._links[l].dep_name, []).append(l)

        for feature_name, values in record.features.items():
            from_ix = self._node_ix(package_ix, feature_name)
            for value in values:
                if value.startswith("dep:"):
                    dep_name = value[4:]
                    to_ix = self._node_ix(package_ix, dep_name)
                    if dep_name in self._optional_names[package_ix] and to_ix is not None:
                        self._add_edge(from_ix, to_ix, FeatureEdgeKind.FEATURE_DEPENDENCY)
                    else:
                        self._warn(package_ix, stage, WarningKind.MISSING_DEPENDENCY, dep_name,
                                   f"feature {feature_name!r} enables unknown optional dependency")
                    continue

                if "/" not in value:
                    to_ix = self._node_ix(package_ix, value)
                    if to_ix is None:
                        self._warn(package_ix, stage, WarningKind.MISSING_FEATURE, value,
                                   f"named by feature {feature_name!r}")
                    else:
                        self._add_edge(from_ix, to_ix, FeatureEdgeKind.FEATURE_DEPENDENCY)
                    continue

                dep_part, _, dep_feature = value.partition("/")
                weak = dep_part.endswith("?")
                dep_name = dep_part.rstrip("?")
                links = links_by_name.get(dep_name)
                if not links:
                    self._warn(package_ix, stage, WarningKind.MISSING_DEPENDENCY, dep_name,
                               f"named by feature {feature_name!r} ({value})")
                    continue
                gate = None
                if dep_name in self._optional_names[package_ix]:
                    gate = self._node_ix(package_ix, dep_name)
                    if not weak:
                        self._add_edge(from_ix, gate, FeatureEdgeKind.FEATURE_DEPENDENCY)
                for l in links:
                    link = pg._links[l]
                    to_ix = self._node_ix(link.to_ix, dep_feature)
                    if to_ix is None:
                        self._warn(package_ix, stage, WarningKind.MISSING_FEATURE, dep_feature,
                                   f"{pg._nodes[link.to_ix].record.name} has no such feature ({value})")
                        continue
                    edge = self._add_edge(from_ix, to_ix, FeatureEdgeKind.DEPENDENCY)
                    edge.add_status(link.kind, link.status.required.merge(link.status.optional))
                    if weak and gate is not None:
                        edge.weak_gate = gate
                    if l not in edge.package_links:
                        edge.package_links.append(l)

    def _add_dependency_edges(self, package_ix: int) -> None:
        pg = self.package_graph
        stage = FeatureBuildStage.ADD_DEPENDENCY_EDGES
        base = self._base_ix[package_ix]
        for l in self._considered_links(package_ix):
            link = pg._links[l]
            to_base = self._base_ix[link.to_ix]
            for instance in link.instances:
                if instance.optional:
                    from_ix = self._node_ix(package_ix, link.dep_name)
                else:
                    from_ix = base
                targets = [to_base]
                for feature in instance.features:
                    to_ix = self._node_ix(link.to_ix, feature)
                    if to_ix is None:
                        self._warn(package_ix, stage, WarningKind.MISSING_FEATURE, feature,
                                   f"requested from {pg._nodes[link.to_ix].record.name}")
                    else:
                        targets.append(to_ix)
                if instance.uses_default_features:
                    default_ix = self._node_ix(link.to_ix, "default")
                    if default_ix is not None:
                        targets.append(default_ix)
                status = PlatformStatus.for_target(instance.target)
                for to_ix in targets:
                    edge = self._add_edge(from_ix, to_ix, FeatureEdgeKind.DEPENDENCY)
                    edge.add_status(link.kind, status)
                    if l not in edge.package_links:
                        edge.package_links.append(l)

    def _compute_default(self, package_ix: int) -> frozenset[int]:
        """Features of one package that ``default`` turns on, transitively."""
        default_ix = self._node_ix(package_ix, "default")
        if default_ix is None:
            return frozenset()

        def edges_of(ix: int) -> Iterator[tuple[int, int]]:
            for e in self._outgoing[ix]:
                if self._edges[e].kind is FeatureEdgeKind.FEATURE_DEPENDENCY:
                    yield e, self._edges[e].to_ix

        return frozenset(reachable([default_ix], edges_of))

    # --- adjacency used by queries ---

    def _successors(self, ix: int) -> Iterator[int]:
        return (self._edges[e].to_ix for e in self._outgoing[ix])

    def _non_dev_successors(self, ix: int) -> Iterator[int]:
        for e in self._outgoing[ix]:
            edge = self._edges[e]
            if edge.kind is not FeatureEdgeKind.DEPENDENCY or not (
                edge.normal.is_never() and edge.build.is_never()
            ):
                yield edge.to_ix

    def _edges_of(self, direction: DependencyDirection) -> Callable[[int], Iterator[tuple[int, int]]]:
        if direction is DependencyDirection.FORWARD:
            return lambda ix: ((e, self._edges[e].to_ix) for e in self._outgoing[ix])
        if direction is DependencyDirection.REVERSE:
            return lambda ix: ((e, self._edges[e].from_ix) for e in self._incoming[ix])
        raise ValueError("only forward and reverse edges can be enumerated")

    def _is_cross_edge(self, edge_ix: int) -> bool:
        return self._edges[edge_ix].kind is FeatureEdgeKind.DEPENDENCY

    def _weak_gate(self, edge_ix: int) -> int | None:
        return self._edges[edge_ix].weak_gate

    def _feature_ix(self, feature_id: FeatureId | tuple) -> int:
        if isinstance(feature_id, tuple) and not isinstance(feature_id, FeatureId):
            package_id, name = feature_id
            if isinstance(package_id, str):
                package_id = PackageId(package_id)
            feature_id = FeatureId(package_id, name)
        ix = self._ix_by_id.get(feature_id)
        if ix is None:
            raise UnknownFeatureIdError(feature_id)
        return ix

    def _feature_ixs(self, feature_ids: Iterable[FeatureId | tuple]) -> list[int]:
        return [self._feature_ix(f) for f in feature_ids]

    def _contains_feature(self, package_ix: int, name: str | None) -> bool:
        return self._node_ix(package_ix, name) is not None

    # --- public API ---

    def feature_count(self) -> int:
        return len(self._ids)

    def link_count(self) -> int:
        return len(self._edges)

    def build_warnings(self) -> list[FeatureGraphWarning]:
        return list(self._warnings)

    def feature_ids(self) -> list[FeatureId]:
        return list(self._ids)

    def contains(self, feature_id: FeatureId) -> bool:
        return feature_id in self._ix_by_id

    def metadata(self, feature_id: FeatureId | tuple) -> FeatureMetadata:
        return FeatureMetadata(self, self._feature_ix(feature_id))

    def all_features_for(self, package_id: PackageId | str) -> list[FeatureId]:
        """Base node plus every named feature and optional dependency of a package."""
        package_ix = self.package_graph._package_ix(package_id)
        return sorted(self._ids[ix] for ix in self._nodes_of_package[package_ix])

    def is_default_feature(self, feature_id: FeatureId | tuple) -> bool:
        """True for base nodes and features turned on by ``default``."""
        ix = self._feature_ix(feature_id)
        if self._ids[ix].feature is None:
            return True
        return ix in self._default_closure[self._package_of[ix]]

    def cross_links(self) -> list[CrossLink]:
        return [
            CrossLink(self, e)
            for e, edge in enumerate(self._edges)
            if edge.kind is FeatureEdgeKind.DEPENDENCY
        ]

    def is_cyclic(self, a: FeatureId | tuple, b: FeatureId | tuple) -> bool:
        return self._condensation.is_same_scc(self._feature_ix(a), self._feature_ix(b))

    def depends_on(self, a: FeatureId | tuple, b: FeatureId | tuple) -> bool:
        a_ix = self._feature_ix(a)
        b_ix = self._feature_ix(b)
        return b_ix in reachable([a_ix], self._edges_of(DependencyDirection.FORWARD))

    def query(
        self,
        feature_ids: Iterable[FeatureId | tuple],
        direction: DependencyDirection = DependencyDirection.FORWARD,
    ) -> FeatureQuery:
        return FeatureQuery(self, frozenset(self._feature_ixs(feature_ids)), direction)

    def query_forward(self, feature_ids: Iterable[FeatureId | tuple]) -> FeatureQuery:
        return self.query(feature_ids, DependencyDirection.FORWARD)

    def query_reverse(self, feature_ids: Iterable[FeatureId | tuple]) -> FeatureQuery:
        return self.query(feature_ids, DependencyDirection.REVERSE)

    def query_packages(
        self,
        package_query: PackageQuery,
        feature_filter: FeatureFilter,
    ) -> FeatureQuery:
        """Feature query starting from the filtered features of a package query's initials."""
        package_query.check_graph(self.package_graph)
        initials = self._filtered_ixs(package_query.initial_ixs, feature_filter)
        return FeatureQuery(self, frozenset(initials), package_query.direction)

    def query_workspace(self, feature_filter: FeatureFilter) -> FeatureQuery:
        return self.query_packages(self.package_graph.query_workspace(), feature_filter)

    def _filtered_ixs(self, package_ixs: Iterable[int], feature_filter: FeatureFilter) -> list[int]:
        out = []
        for package_ix in package_ixs:
            for ix in self._nodes_of_package[package_ix]:
                if feature_filter.accept(self, self._ids[ix]):
                    out.append(ix)
        return out

    def resolve_packages(
        self,
        package_set: PackageSet,
        feature_filter: FeatureFilter,
    ) -> FeatureSet:
        """
        The features of every package in ``package_set`` that the filter accepts.

        No links are followed. With ``all_filter()`` the result maps back to
        exactly ``package_set``.
        """
        if package_set.graph is not self.package_graph:
            raise GraphMismatchError("package set comes from a different package graph")
        return FeatureSet(self, frozenset(self._filtered_ixs(package_set.ixs, feature_filter)))

    def resolve_all(self) -> FeatureSet:
        return FeatureSet(self, frozenset(range(len(self._ids))))

    def resolve_none(self) -> FeatureSet:
        return FeatureSet(self, frozenset())

    def resolve_ids(self, feature_ids: Iterable[FeatureId | tuple]) -> FeatureSet:
        return FeatureSet(self, frozenset(self._feature_ixs(feature_ids)))

    def cargo_set(self, initials: FeatureSet, options: CargoOptions | None = None) -> CargoSet:
        """Simulate a Cargo build starting from ``initials``."""
        from crategraph.core.cargo import CargoOptions, CargoSet

        query = self.query_forward(initials.feature_ids())
        return CargoSet.resolve(query, options or CargoOptions())
