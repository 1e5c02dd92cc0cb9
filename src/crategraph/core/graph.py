"""The package graph: packages and the dependency links between them.

The graph is an arena. Packages and links live in lists owned by the
PackageGraph and are addressed by integer indexes; PackageMetadata and
PackageLink are lightweight views pairing the graph with an index. The graph
is never mutated after construction, so it can be shared between threads.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, NewType

from semantic_version import Version

from crategraph.core.cycles import Condensation, non_dev_build_order, reachable
from crategraph.core.ids import (
    BuildTarget,
    DeclaredDependency,
    DependencyDirection,
    DependencyInstance,
    DependencyKind,
    PackageId,
    PackageRecord,
    PackageSource,
    relative_dir,
    version_matches,
)
from crategraph.core.metadata import MetadataDocument, load_json, parse_metadata, read_metadata_file
from crategraph.core.platform import EnabledStatus, PlatformStatus
from crategraph.core.query import LinkFilter, PackageQuery, PackageSet, resolve_package_ixs
from crategraph.errors import (
    DuplicateWorkspaceMemberError,
    PackageGraphConstructError,
    PackageGraphInternalError,
    UnknownDependencyError,
    UnknownPackageIdError,
)

if TYPE_CHECKING:
    from crategraph.core.cargo import CargoOptions, CargoSet
    from crategraph.core.feature import FeatureGraph
    from crategraph.core.feature_query import FeatureFilter

logger = logging.getLogger(__name__)

PackageIx = NewType("PackageIx", int)
LinkIx = NewType("LinkIx", int)

LinkPredicate = Callable[["PackageLink"], bool]


@dataclass
class _PackageNode:
    record: PackageRecord
    source: PackageSource
    in_workspace: bool
    outgoing: list[LinkIx] = field(default_factory=list)
    incoming: list[LinkIx] = field(default_factory=list)


@dataclass
class _LinkNode:
    from_ix: PackageIx
    to_ix: PackageIx
    kind: DependencyKind
    dep_name: str
    instances: list[DependencyInstance] = field(default_factory=list)
    status: EnabledStatus = field(default_factory=EnabledStatus)


class Workspace:
    """The workspace members of a package graph."""

    def __init__(self, graph: PackageGraph, root: str, members: list[PackageIx]) -> None:
        self._graph = graph
        self.root = root
        self._members = members
        self._by_name: dict[str, PackageIx] = {}
        self._by_path: dict[str, PackageIx] = {}
        for ix in members:
            node = graph._nodes[ix]
            name = node.record.name
            path = node.source.location
            if name in self._by_name:
                other = graph._nodes[self._by_name[name]].record.id
                raise DuplicateWorkspaceMemberError(name, str(other), str(node.record.id))
            if path in self._by_path:
                other = graph._nodes[self._by_path[path]].record.id
                raise DuplicateWorkspaceMemberError(path, str(other), str(node.record.id))
            self._by_name[name] = ix
            self._by_path[path] = ix

    def __len__(self) -> int:
        return len(self._members)

    def __contains__(self, package_id: object) -> bool:
        if isinstance(package_id, str):
            package_id = PackageId(package_id)
        ix = self._graph._ix_by_id.get(package_id)  # type: ignore[arg-type]
        return ix is not None and self._graph._nodes[ix].in_workspace

    def member_ids(self) -> list[PackageId]:
        return [self._graph._nodes[ix].record.id for ix in self._members]

    def members(self) -> list[PackageMetadata]:
        """Members sorted by path relative to the workspace root."""
        return [PackageMetadata(self._graph, ix) for _, ix in sorted(self._by_path.items())]

    def member_by_name(self, name: str) -> PackageMetadata | None:
        ix = self._by_name.get(name)
        return None if ix is None else PackageMetadata(self._graph, ix)

    def member_by_path(self, path: str) -> PackageMetadata | None:
        ix = self._by_path.get(str(PurePosixPath(path)))
        return None if ix is None else PackageMetadata(self._graph, ix)


class PackageMetadata:
    """View of one package in a PackageGraph."""

    __slots__ = ("_graph", "_ix")

    def __init__(self, graph: PackageGraph, ix: PackageIx) -> None:
        self._graph = graph
        self._ix = ix

    @property
    def _node(self) -> _PackageNode:
        return self._graph._nodes[self._ix]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageMetadata):
            return NotImplemented
        return self._graph is other._graph and self._ix == other._ix

    def __hash__(self) -> int:
        return hash((id(self._graph), self._ix))

    def __repr__(self) -> str:
        return f"PackageMetadata({self.id})"

    @property
    def graph(self) -> PackageGraph:
        return self._graph

    @property
    def package_ix(self) -> PackageIx:
        return self._ix

    @property
    def id(self) -> PackageId:
        return self._node.record.id

    @property
    def name(self) -> str:
        return self._node.record.name

    @property
    def version(self) -> str:
        return self._node.record.version_str

    @property
    def parsed_version(self) -> Version:
        return self._node.record.version

    @property
    def source(self) -> PackageSource:
        return self._node.source

    @property
    def manifest_path(self) -> str:
        return self._node.record.manifest_path

    @property
    def description(self) -> str | None:
        return self._node.record.description

    @property
    def license(self) -> str | None:
        return self._node.record.license

    @property
    def authors(self) -> tuple[str, ...]:
        return self._node.record.authors

    @property
    def edition(self) -> str:
        return self._node.record.edition

    @property
    def links(self) -> str | None:
        """The native library this package links to (``links`` manifest key)."""
        return self._node.record.links

    @property
    def publish(self) -> tuple[str, ...] | None:
        return self._node.record.publish

    @property
    def in_workspace(self) -> bool:
        return self._node.in_workspace

    @property
    def features(self) -> dict[str, tuple[str, ...]]:
        return dict(self._node.record.features)

    def named_features(self) -> list[str]:
        return sorted(self._node.record.features)

    def optional_dependency_names(self) -> list[str]:
        """Names of optional dependencies; each doubles as a feature."""
        names = {d.dep_name for d in self._node.record.declared if d.instance.optional}
        return sorted(names)

    @property
    def build_targets(self) -> tuple[BuildTarget, ...]:
        return self._node.record.targets

    @property
    def has_build_script(self) -> bool:
        return any(t.is_build_script for t in self._node.record.targets)

    @property
    def is_proc_macro(self) -> bool:
        return any(t.is_proc_macro for t in self._node.record.targets)

    def direct_links(self) -> list[PackageLink]:
        return self.direct_links_directed(DependencyDirection.FORWARD)

    def reverse_direct_links(self) -> list[PackageLink]:
        return self.direct_links_directed(DependencyDirection.REVERSE)

    def direct_links_directed(self, direction: DependencyDirection) -> list[PackageLink]:
        return self._graph._links_of(self._ix, direction)

    def to_dict(self) -> dict:
        """Serialize package metadata to a JSON-friendly dict."""
        return {
            "id": str(self.id),
            "name": self.name,
            "version": self.version,
            "source": str(self.source),
            "in_workspace": self.in_workspace,
            "features": {k: list(v) for k, v in sorted(self._node.record.features.items())},
            "optional_dependencies": self.optional_dependency_names(),
            "has_build_script": self.has_build_script,
            "is_proc_macro": self.is_proc_macro,
            "targets": [t.to_dict() for t in self.build_targets],
        }


class PackageLink:
    """
    View of one dependency link: from -> to for a single dependency kind.

    A link may merge several declared requirements of the same kind (for
    instance one per platform condition); ``instances`` lists them.
    """

    __slots__ = ("_graph", "_ix")

    def __init__(self, graph: PackageGraph, ix: LinkIx) -> None:
        self._graph = graph
        self._ix = ix

    @property
    def _link(self) -> _LinkNode:
        return self._graph._links[self._ix]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageLink):
            return NotImplemented
        return self._graph is other._graph and self._ix == other._ix

    def __hash__(self) -> int:
        return hash((id(self._graph), self._ix))

    def __repr__(self) -> str:
        return f"PackageLink({self.from_.name} -> {self.to.name}, {self.kind.value})"

    @property
    def link_ix(self) -> LinkIx:
        return self._ix

    @property
    def from_(self) -> PackageMetadata:
        return PackageMetadata(self._graph, self._link.from_ix)

    @property
    def to(self) -> PackageMetadata:
        return PackageMetadata(self._graph, self._link.to_ix)

    def endpoints(self) -> tuple[PackageMetadata, PackageMetadata]:
        return self.from_, self.to

    @property
    def kind(self) -> DependencyKind:
        return self._link.kind

    @property
    def dep_name(self) -> str:
        """Name the depending package uses for this dependency (rename or name)."""
        return self._link.dep_name

    @property
    def resolved_name(self) -> str:
        return self._link.dep_name.replace("-", "_")

    @property
    def instances(self) -> tuple[DependencyInstance, ...]:
        return tuple(self._link.instances)

    def status(self) -> EnabledStatus:
        return self._link.status

    def is_dev(self) -> bool:
        return self._link.kind is DependencyKind.DEV

    def is_optional(self) -> bool:
        """True if every instance of this link is optional."""
        return all(i.optional for i in self._link.instances)

    def features(self) -> list[str]:
        feats: set[str] = set()
        for i in self._link.instances:
            feats.update(i.features)
        return sorted(feats)

    def uses_default_features(self) -> bool:
        return any(i.uses_default_features for i in self._link.instances)

    def to_dict(self) -> dict:
        status = self._link.status
        return {
            "from": str(self.from_.id),
            "to": str(self.to.id),
            "kind": self.kind.value,
            "dep_name": self.dep_name,
            "required": status.required.to_dict(),
            "optional": status.optional.to_dict(),
            "features": self.features(),
            "uses_default_features": self.uses_default_features(),
        }


class Cycles:
    """Dependency cycles. Cargo only permits them through dev-dependencies."""

    def __init__(self, graph: PackageGraph) -> None:
        self._graph = graph
        self._condensation = graph._condensation()

    def is_cyclic(self, a: PackageId, b: PackageId) -> bool:
        """True if the two packages are part of the same cycle."""
        return self._condensation.is_same_scc(
            self._graph._package_ix(a), self._graph._package_ix(b)
        )

    def all_cycles(self) -> list[list[PackageId]]:
        """Every cycle of two or more packages, members in non-dev build order."""
        graph = self._graph
        out = []
        for members in self._condensation.multi_sccs():
            ordered = graph._order_scc_members(members)
            out.append([graph._nodes[ix].record.id for ix in ordered])
        return out


class PackageGraph:
    """
    Immutable directed graph of packages and dependency links.

    Build it with ``from_metadata``, ``from_json`` or ``from_path``.
    """

    def __init__(self, doc: MetadataDocument) -> None:
        self._nodes: list[_PackageNode] = []
        self._links: list[_LinkNode] = []
        self._ix_by_id: dict[PackageId, PackageIx] = {}
        self._lock = threading.Lock()
        self._lazy: dict[str, Any] = {}
        self._build(doc)
        logger.debug(
            "Built package graph: %d packages, %d links, %d workspace members",
            len(self._nodes),
            len(self._links),
            len(self._workspace),
        )

    @classmethod
    def from_metadata(cls, data: dict[str, Any]) -> PackageGraph:
        """Build from a decoded ``cargo metadata`` JSON object."""
        return cls(parse_metadata(data))

    @classmethod
    def from_json(cls, text: str) -> PackageGraph:
        return cls.from_metadata(load_json(text))

    @classmethod
    def from_path(cls, path: Path | str) -> PackageGraph:
        return cls.from_metadata(read_metadata_file(Path(path)))

    # --- construction ---

    def _build(self, doc: MetadataDocument) -> None:
        members = set(doc.workspace_members)
        known = {r.id for r in doc.packages}
        for member in doc.workspace_members:
            if member not in known:
                raise UnknownDependencyError(str(member), "workspace_members")

        for record in doc.packages:
            if record.id in self._ix_by_id:
                raise PackageGraphConstructError(f"duplicate package id: {record.id}")
            if record.id in members:
                source = PackageSource.workspace(relative_dir(record.manifest_path, doc.workspace_root))
            elif record.source is None:
                source = PackageSource.path(str(PurePosixPath(record.manifest_path).parent))
            else:
                source = PackageSource.external(record.source)
            self._ix_by_id[record.id] = PackageIx(len(self._nodes))
            self._nodes.append(_PackageNode(record, source, record.id in members))

        member_ixs = [self._ix_by_id[m] for m in doc.workspace_members]
        self._workspace = Workspace(self, doc.workspace_root, member_ixs)

        link_by_key: dict[tuple[int, int, DependencyKind, str], LinkIx] = {}
        for from_id, deps in (doc.resolve or {}).items():
            from_ix = self._ix_by_id.get(from_id)
            if from_ix is None:
                raise UnknownDependencyError(str(from_id), "resolve.nodes")
            from_record = self._nodes[from_ix].record
            for dep in deps:
                to_ix = self._ix_by_id.get(dep.pkg)
                if to_ix is None:
                    raise UnknownDependencyError(str(dep.pkg), str(from_id))
                to_record = self._nodes[to_ix].record
                matches = [
                    d
                    for d in from_record.declared
                    if (d.resolved_name == dep.name if d.rename is not None else d.name == to_record.name)
                    and self._req_matches(from_id, d, to_record)
                    and (not dep.kinds or d.instance.kind in dep.kinds)
                ]
                if not matches:
                    raise PackageGraphConstructError(
                        f"{from_id}: resolved dependency {dep.name!r} ({dep.pkg}) "
                        "matches no declared dependency"
                    )
                for declared in matches:
                    if declared.instance.kind is DependencyKind.DEV and declared.instance.optional:
                        raise PackageGraphConstructError(
                            f"for package '{from_id}': dev-dependency '{declared.dep_name}' marked optional"
                        )
                    key = (from_ix, to_ix, declared.instance.kind, declared.dep_name)
                    link_ix = link_by_key.get(key)
                    if link_ix is None:
                        link_ix = LinkIx(len(self._links))
                        link_by_key[key] = link_ix
                        self._links.append(
                            _LinkNode(from_ix, to_ix, declared.instance.kind, declared.dep_name)
                        )
                        self._nodes[from_ix].outgoing.append(link_ix)
                        self._nodes[to_ix].incoming.append(link_ix)
                    link = self._links[link_ix]
                    if declared.instance not in link.instances:
                        link.instances.append(declared.instance)

        for link in self._links:
            required = PlatformStatus.never()
            optional = PlatformStatus.never()
            for instance in link.instances:
                status = PlatformStatus.for_target(instance.target)
                if instance.optional:
                    optional = optional.merge(status)
                else:
                    required = required.merge(status)
            link.status = EnabledStatus(required, optional)

    @staticmethod
    def _req_matches(from_id: PackageId, declared: DeclaredDependency, to_record: PackageRecord) -> bool:
        req = declared.instance.version_req
        try:
            return version_matches(req, to_record.version)
        except ValueError:
            logger.warning(
                "%s: can't parse version requirement %r for %r, matching by name only",
                from_id,
                req,
                declared.dep_name,
            )
            return True

    # --- internal accessors (shared with query/feature/cargo modules) ---

    def _package_ix(self, package_id: PackageId | str) -> PackageIx:
        if isinstance(package_id, str):
            package_id = PackageId(package_id)
        ix = self._ix_by_id.get(package_id)
        if ix is None:
            raise UnknownPackageIdError(package_id)
        return ix

    def _view(self, ix: int) -> PackageMetadata:
        return PackageMetadata(self, PackageIx(ix))

    def _link_view(self, ix: int) -> PackageLink:
        return PackageLink(self, LinkIx(ix))

    def _package_ixs(self, package_ids: Iterable[PackageId | str]) -> list[PackageIx]:
        return [self._package_ix(p) for p in package_ids]

    def _links_of(self, ix: PackageIx, direction: DependencyDirection) -> list[PackageLink]:
        node = self._nodes[ix]
        if direction is DependencyDirection.FORWARD:
            link_ixs = node.outgoing
        elif direction is DependencyDirection.REVERSE:
            link_ixs = node.incoming
        else:
            link_ixs = node.outgoing + node.incoming
        return [PackageLink(self, l) for l in link_ixs]

    def _edges_of(self, direction: DependencyDirection) -> Callable[[int], Iterator[tuple[int, int]]]:
        if direction is DependencyDirection.FORWARD:
            return lambda ix: ((l, self._links[l].to_ix) for l in self._nodes[ix].outgoing)
        if direction is DependencyDirection.REVERSE:
            return lambda ix: ((l, self._links[l].from_ix) for l in self._nodes[ix].incoming)
        raise ValueError("only forward and reverse edges can be enumerated")

    def _successors(self, ix: int) -> Iterator[int]:
        return (self._links[l].to_ix for l in self._nodes[ix].outgoing)

    def _non_dev_successors(self, ix: int) -> Iterator[int]:
        return (
            self._links[l].to_ix
            for l in self._nodes[ix].outgoing
            if self._links[l].kind is not DependencyKind.DEV
        )

    def _get_lazy(self, key: str, factory: Callable[[], Any]) -> Any:
        value = self._lazy.get(key)
        if value is None:
            with self._lock:
                value = self._lazy.get(key)
                if value is None:
                    value = factory()
                    self._lazy[key] = value
        return value

    def _condensation(self) -> Condensation:
        return self._get_lazy(
            "condensation",
            lambda: Condensation(range(len(self._nodes)), self._successors),
        )

    def _order_scc_members(self, members: list[int]) -> list[int]:
        return non_dev_build_order(members, self._non_dev_successors)

    # --- public API ---

    def package_count(self) -> int:
        return len(self._nodes)

    def link_count(self) -> int:
        return len(self._links)

    def package_ids(self) -> list[PackageId]:
        return [n.record.id for n in self._nodes]

    def packages(self) -> list[PackageMetadata]:
        return [PackageMetadata(self, PackageIx(i)) for i in range(len(self._nodes))]

    def links(self) -> list[PackageLink]:
        return [PackageLink(self, LinkIx(i)) for i in range(len(self._links))]

    def workspace(self) -> Workspace:
        return self._workspace

    def contains(self, package_id: PackageId | str) -> bool:
        if isinstance(package_id, str):
            package_id = PackageId(package_id)
        return package_id in self._ix_by_id

    def metadata(self, package_id: PackageId | str) -> PackageMetadata:
        """Look up a package; raises UnknownPackageIdError if it isn't in the graph."""
        return PackageMetadata(self, self._package_ix(package_id))

    def packages_by_name(self, name: str) -> list[PackageMetadata]:
        return [
            PackageMetadata(self, PackageIx(i))
            for i, n in enumerate(self._nodes)
            if n.record.name == name
        ]

    def direct_links(
        self,
        package_id: PackageId | str,
        direction: DependencyDirection = DependencyDirection.FORWARD,
    ) -> list[PackageLink]:
        """Links out of (forward), into (reverse) or both for one package."""
        return self._links_of(self._package_ix(package_id), direction)

    def query(
        self,
        package_ids: Iterable[PackageId | str],
        direction: DependencyDirection = DependencyDirection.FORWARD,
    ) -> PackageQuery:
        return PackageQuery(self, frozenset(self._package_ixs(package_ids)), direction)

    def query_forward(self, package_ids: Iterable[PackageId | str]) -> PackageQuery:
        return self.query(package_ids, DependencyDirection.FORWARD)

    def query_reverse(self, package_ids: Iterable[PackageId | str]) -> PackageQuery:
        return self.query(package_ids, DependencyDirection.REVERSE)

    def query_workspace(self) -> PackageQuery:
        return self.query_forward(self._workspace.member_ids())

    def resolve(self, query: PackageQuery) -> PackageSet:
        return self.resolve_with(query, LinkFilter.ALL)

    def resolve_with(
        self,
        query: PackageQuery,
        predicate: LinkFilter | LinkPredicate,
    ) -> PackageSet:
        """
        Resolve a query, following only links the predicate accepts.

        Args:
            query: Starting packages and direction.
            predicate: A LinkFilter member or a callable taking a PackageLink.
                Called once per link reached during the traversal.

        Returns:
            PackageSet of every package reached, initials included.
        """
        query.check_graph(self)
        if isinstance(predicate, LinkFilter):
            accepts = predicate.accepts
        else:
            accepts = predicate
        ixs = resolve_package_ixs(
            self,
            query.initial_ixs,
            query.direction,
            lambda link_ix: accepts(PackageLink(self, LinkIx(link_ix))),
        )
        return PackageSet(self, frozenset(ixs))

    def resolve_all(self) -> PackageSet:
        return PackageSet(self, frozenset(range(len(self._nodes))))

    def resolve_none(self) -> PackageSet:
        return PackageSet(self, frozenset())

    def resolve_ids(self, package_ids: Iterable[PackageId | str]) -> PackageSet:
        """A set of exactly these packages, without following links."""
        return PackageSet(self, frozenset(self._package_ixs(package_ids)))

    def depends_on(self, a: PackageId | str, b: PackageId | str) -> bool:
        """True if ``a`` transitively depends on ``b`` (any kind of link)."""
        a_ix = self._package_ix(a)
        b_ix = self._package_ix(b)
        return b_ix in reachable([a_ix], self._edges_of(DependencyDirection.FORWARD))

    def directly_depends_on(self, a: PackageId | str, b: PackageId | str) -> bool:
        a_ix = self._package_ix(a)
        b_ix = self._package_ix(b)
        return any(self._links[l].to_ix == b_ix for l in self._nodes[a_ix].outgoing)

    def cycles(self) -> Cycles:
        return Cycles(self)

    def feature_graph(self) -> FeatureGraph:
        """The feature graph, derived on first use and cached for the graph's lifetime."""
        from crategraph.core.feature import FeatureGraph

        return self._get_lazy("feature_graph", lambda: FeatureGraph(self))

    def cargo_set(
        self,
        package_set: PackageSet,
        options: CargoOptions | None = None,
        feature_filter: FeatureFilter | None = None,
    ) -> CargoSet:
        """
        Simulate building ``package_set`` with Cargo.

        Args:
            package_set: Packages to build, typically workspace members.
            options: Build options; defaults to CargoOptions().
            feature_filter: Features to enable on the initial packages;
                defaults to their default features.
        """
        from crategraph.core.cargo import CargoSet
        from crategraph.core.feature_query import default_filter

        fg = self.feature_graph()
        query = fg.query_packages(
            PackageQuery(self, package_set.ixs, DependencyDirection.FORWARD),
            feature_filter or default_filter(),
        )
        return CargoSet.resolve(query, options)

    def verify(self) -> None:
        """
        Re-check graph invariants.

        Raises:
            PackageGraphInternalError: An invariant does not hold.
        """
        n = len(self._nodes)
        for ix, link in enumerate(self._links):
            if not (0 <= link.from_ix < n and 0 <= link.to_ix < n):
                raise PackageGraphInternalError(f"link {ix} has an endpoint outside the graph")
            if ix not in self._nodes[link.from_ix].outgoing or ix not in self._nodes[link.to_ix].incoming:
                raise PackageGraphInternalError(f"link {ix} is missing from its endpoints' adjacency")
            if link.status.is_never():
                raise PackageGraphInternalError(f"link {ix} is never enabled")
        for ix, node in enumerate(self._nodes):
            if self._ix_by_id.get(node.record.id) != ix:
                raise PackageGraphInternalError(f"index mismatch for {node.record.id}")

        # Cycles must go through a dev link.
        non_dev = Condensation(range(n), self._non_dev_successors)
        for members in non_dev.multi_sccs():
            ids = ", ".join(str(self._nodes[m].record.id) for m in members)
            raise PackageGraphInternalError(f"cycle without a dev-dependency: {ids}")

        # Weakly connected from the workspace.
        member_ixs = [self._ix_by_id[m] for m in self._workspace.member_ids()]
        if member_ixs:
            def both(ix: int) -> list[tuple[int, int]]:
                node = self._nodes[ix]
                return [(l, self._links[l].to_ix) for l in node.outgoing] + [
                    (l, self._links[l].from_ix) for l in node.incoming
                ]

            seen = set(reachable(member_ixs, both))
            if len(seen) != n:
                missing = sorted(str(self._nodes[i].record.id) for i in range(n) if i not in seen)
                raise PackageGraphInternalError(
                    f"packages not connected to the workspace: {', '.join(missing)}"
                )

    def to_dict(self) -> dict:
        return {
            "workspace_root": self._workspace.root,
            "workspace_members": [str(m) for m in self._workspace.member_ids()],
            "packages": [p.to_dict() for p in self.packages()],
            "links": [l.to_dict() for l in self.links()],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)
