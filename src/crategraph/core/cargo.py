"""Simulate which packages and features a Cargo build would include.

Given initial features and build options, CargoSet works out what gets built
for the target platform and for the host (build scripts, proc macros and
their dependencies), following either the original ("v1") or the newer
("v2") feature resolver.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from crategraph.core.feature_query import (
    FeatureQuery,
    FeatureSet,
    all_filter,
    resolve_feature_ixs,
)
from crategraph.core.ids import DependencyDirection, DependencyKind, PackageId
from crategraph.core.platform import (
    CfgEvaluator,
    EnabledStatus,
    EnabledTernary,
    Platform,
    PlatformEvaluator,
    PlatformStatus,
)
from crategraph.core.query import PackageSet, resolve_package_ixs
from crategraph.errors import (
    CargoSetError,
    ResolutionDidNotConvergeError,
    UnknownPackageIdError,
)

if TYPE_CHECKING:
    from crategraph.core.feature import CrossLink, FeatureGraph
    from crategraph.core.graph import PackageGraph, PackageLink

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 16


class CargoResolverVersion(enum.Enum):
    """Which Cargo feature resolver to emulate."""

    V1 = "1"
    # ``cargo install`` with the v1 resolver: dev-dependencies don't take part
    # in feature resolution unless explicitly requested.
    V1_INSTALL = "1-install"
    V2 = "2"


class CargoResolvePhase(enum.Enum):
    V1_UNIFIED = "v1-unified"
    TARGET_FEATURE = "target-feature"
    HOST_FEATURE = "host-feature"
    TARGET_PACKAGE = "target-package"
    HOST_PACKAGE = "host-package"


class BuildPlatform(enum.Enum):
    TARGET = "target"
    HOST = "host"


class CargoPostfilter:
    """
    Hook to veto links during resolution. Accepts everything by default.

    Subclass and override either method; returning False removes the link
    from the traversal in that phase.
    """

    def accept_package(self, phase: CargoResolvePhase, link: PackageLink) -> bool:
        return True

    def accept_feature(self, phase: CargoResolvePhase, link: CrossLink) -> bool:
        return True


@dataclass
class CargoOptions:
    """
    Options for a simulated build.

    Args:
        resolver: Feature resolver version to emulate.
        include_dev: Include dev-dependencies of the initial packages.
        proc_macros_on_target: Also build initial proc macros for the target.
        target_platform: Platform to build for; None means any platform.
        host_platform: Platform the build runs on; None means any platform.
        omitted_packages: Packages to treat as absent from the graph.
        unify_target_host: Give target and host the union of both results.
        postfilter: Hook that can veto individual links.
        evaluator: Interprets platform conditions.
        max_iterations: Cap on re-resolution rounds for feature-dependent conditions.
    """

    resolver: CargoResolverVersion = CargoResolverVersion.V1
    include_dev: bool = False
    proc_macros_on_target: bool = False
    target_platform: Platform | None = None
    host_platform: Platform | None = None
    omitted_packages: frozenset[PackageId | str] = field(default_factory=frozenset)
    unify_target_host: bool = False
    postfilter: CargoPostfilter = field(default_factory=CargoPostfilter)
    evaluator: PlatformEvaluator = field(default_factory=CfgEvaluator)
    max_iterations: int = DEFAULT_MAX_ITERATIONS

    def set_platform(self, platform: Platform | None) -> CargoOptions:
        """Use the same platform for target and host."""
        self.target_platform = platform
        self.host_platform = platform
        return self

    def platform(self, build_platform: BuildPlatform) -> Platform | None:
        if build_platform is BuildPlatform.TARGET:
            return self.target_platform
        return self.host_platform


class _Evaluation:
    """Evaluates platform statuses for one resolution pass."""

    def __init__(
        self,
        options: CargoOptions,
        *,
        strict: bool,
        features: dict[int, frozenset[str]] | None,
    ) -> None:
        self.options = options
        self.strict = strict
        self.features = features
        self.saw_unknown = False

    def _platform(self, build_platform: BuildPlatform, from_ix: int) -> Platform | None:
        platform = self.options.platform(build_platform)
        if platform is None or self.features is None:
            return platform
        return platform.with_features(self.features.get(from_ix, frozenset()))

    def _decide(self, result: EnabledTernary) -> bool:
        if result is EnabledTernary.UNKNOWN:
            self.saw_unknown = True
            return not self.strict
        return result is EnabledTernary.ENABLED

    def status(self, status: PlatformStatus, build_platform: BuildPlatform, from_ix: int) -> bool:
        if status.is_never():
            return False
        platform = self._platform(build_platform, from_ix)
        return self._decide(status.evaluate(platform, self.options.evaluator))

    def link_status(
        self,
        status: EnabledStatus,
        consider_optional: bool,
        build_platform: BuildPlatform,
        from_ix: int,
    ) -> bool:
        platform = self._platform(build_platform, from_ix)
        evaluator = self.options.evaluator
        if consider_optional:
            result = status.enabled_on(platform, evaluator)
        else:
            result = status.required_on(platform, evaluator)
        return self._decide(result)


@dataclass
class _PassResult:
    target_features: frozenset[int]
    host_features: frozenset[int]
    target_packages: frozenset[int]
    host_packages: frozenset[int]
    target_direct: set[int]
    host_direct: set[int]
    proc_macro_links: list[int]
    build_dep_links: list[int]

    def enabled_features(self, graph: FeatureGraph) -> dict[int, frozenset[str]]:
        """Named features per package, target and host combined."""
        by_package: dict[int, set[str]] = {}
        for ix in self.target_features | self.host_features:
            names = by_package.setdefault(graph._package_of[ix], set())
            name = graph._ids[ix].feature
            if name is not None:
                names.add(name)
        return {p: frozenset(n) for p, n in by_package.items()}


class _Resolver:
    """One resolution pass over a feature query."""

    def __init__(
        self,
        query: FeatureQuery,
        options: CargoOptions,
        omitted: frozenset[int],
        evaluation: _Evaluation,
    ) -> None:
        self.query = query
        self.fg = query.graph
        self.pg = query.graph.package_graph
        self.options = options
        self.omitted = omitted
        self.ev = evaluation
        self.initial_packages = query.initial_package_ixs()

    def _is_proc_macro(self, package_ix: int) -> bool:
        return self.pg._view(package_ix).is_proc_macro

    def run(self) -> _PassResult:
        if self.options.resolver is CargoResolverVersion.V2:
            inter_target, inter_host = self._v2_intermediate()
        else:
            avoid_dev = (
                self.options.resolver is CargoResolverVersion.V1_INSTALL
                and not self.options.include_dev
            )
            inter_target = inter_host = self._v1_intermediate(avoid_dev)
        return self._build_set(inter_target, inter_host)

    # --- step 1: intermediate feature sets ---

    def _v1_intermediate(self, avoid_dev: bool) -> frozenset[int]:
        """Every feature any possible build could enable, ignoring platforms."""
        fg = self.fg
        initials = self.query.initial_ixs
        postfilter = self.options.postfilter

        def follow(edge_ix: int) -> bool:
            edge = fg._edges[edge_ix]
            if fg._package_of[edge.to_ix] in self.omitted:
                return False
            if not avoid_dev and edge.from_ix in initials:
                res = True
            else:
                res = not (edge.normal.is_never() and edge.build.is_never())
            return res and postfilter.accept_feature(
                CargoResolvePhase.V1_UNIFIED, _cross_link(fg, edge_ix)
            )

        return frozenset(
            resolve_feature_ixs(fg, initials, DependencyDirection.FORWARD, follow)
        )

    def _v2_intermediate(self) -> tuple[frozenset[int], frozenset[int]]:
        fg = self.fg
        ev = self.ev
        opts = self.options
        initials = self.query.initial_ixs
        target = BuildPlatform.TARGET
        host = BuildPlatform.HOST
        host_ixs = [ix for ix in initials if self._is_proc_macro(fg._package_of[ix])]

        def follow_target(edge_ix: int) -> bool:
            edge = fg._edges[edge_ix]
            from_pkg = fg._package_of[edge.from_ix]
            to_pkg = fg._package_of[edge.to_ix]
            if to_pkg in self.omitted:
                return False
            consider_dev = opts.include_dev and edge.from_ix in initials
            follow = ev.status(edge.normal, target, from_pkg) or (
                consider_dev and ev.status(edge.dev, target, from_pkg)
            )
            proc_macro_redirect = follow and self._is_proc_macro(to_pkg)
            build_dep_redirect = ev.status(edge.build, host, from_pkg)
            if (follow or proc_macro_redirect or build_dep_redirect) and not opts.postfilter.accept_feature(
                CargoResolvePhase.TARGET_FEATURE, _cross_link(fg, edge_ix)
            ):
                return False
            if build_dep_redirect or proc_macro_redirect:
                host_ixs.append(edge.to_ix)
            return follow and not proc_macro_redirect

        target_set = resolve_feature_ixs(fg, initials, DependencyDirection.FORWARD, follow_target)

        def follow_host(edge_ix: int) -> bool:
            edge = fg._edges[edge_ix]
            from_pkg = fg._package_of[edge.from_ix]
            if fg._package_of[edge.to_ix] in self.omitted:
                return False
            # Dev-dependencies of initials are unified on the host too.
            consider_dev = opts.include_dev and edge.from_ix in initials
            res = (
                ev.status(edge.normal, host, from_pkg)
                or ev.status(edge.build, host, from_pkg)
                or (consider_dev and ev.status(edge.dev, host, from_pkg))
            )
            return res and opts.postfilter.accept_feature(
                CargoResolvePhase.HOST_FEATURE, _cross_link(fg, edge_ix)
            )

        host_set = resolve_feature_ixs(fg, host_ixs, DependencyDirection.FORWARD, follow_host)
        return frozenset(target_set), frozenset(host_set)

    # --- step 2 and 3: packages per platform ---

    def _is_enabled(
        self,
        intermediate: frozenset[int],
        link_ix: int,
        build_platform: BuildPlatform,
    ) -> bool:
        link = self.pg._links[link_ix]
        consider_optional = False
        if link.dep_name in self.fg._optional_names[link.from_ix]:
            optional_ix = self.fg._node_ix(link.from_ix, link.dep_name)
            consider_optional = optional_ix in intermediate
        return self.ev.link_status(link.status, consider_optional, build_platform, link.from_ix)

    def _build_set(
        self,
        inter_target: frozenset[int],
        inter_host: frozenset[int],
    ) -> _PassResult:
        pg = self.pg
        opts = self.options
        postfilter = opts.postfilter
        target = BuildPlatform.TARGET
        host = BuildPlatform.HOST

        target_initials: list[int] = []
        host_initials: list[int] = []
        for package_ix in sorted(self.initial_packages):
            if self._is_proc_macro(package_ix):
                host_initials.append(package_ix)
                if opts.proc_macros_on_target:
                    target_initials.append(package_ix)
            else:
                target_initials.append(package_ix)

        proc_macro_links: list[int] = []
        build_dep_links: list[int] = []
        target_direct: set[int] = set()
        host_direct: set[int] = set()

        def follow_target(link_ix: int) -> bool:
            link = pg._links[link_ix]
            if link.to_ix in self.omitted:
                return False
            from_node = pg._nodes[link.from_ix]
            follow = build_dep_redirect = False
            if link.kind is DependencyKind.NORMAL:
                follow = self._is_enabled(inter_target, link_ix, target)
            elif link.kind is DependencyKind.DEV:
                consider_dev = opts.include_dev and link.from_ix in self.initial_packages
                follow = consider_dev and self._is_enabled(inter_target, link_ix, target)
            elif pg._view(link.from_ix).has_build_script:
                build_dep_redirect = self._is_enabled(inter_target, link_ix, host)
            proc_macro_redirect = follow and self._is_proc_macro(link.to_ix)

            if (follow or proc_macro_redirect or build_dep_redirect) and not postfilter.accept_package(
                CargoResolvePhase.TARGET_PACKAGE, pg._link_view(link_ix)
            ):
                return False

            if build_dep_redirect or proc_macro_redirect:
                host_initials.append(link.to_ix)
            if build_dep_redirect:
                build_dep_links.append(link_ix)
            if proc_macro_redirect:
                proc_macro_links.append(link_ix)
                follow = False

            third_party = from_node.in_workspace and not pg._nodes[link.to_ix].in_workspace
            if third_party and follow:
                target_direct.add(link.to_ix)
            if third_party and (build_dep_redirect or proc_macro_redirect):
                host_direct.add(link.to_ix)
            return follow

        target_packages = resolve_package_ixs(
            pg, target_initials, DependencyDirection.FORWARD, follow_target
        )

        def follow_host(link_ix: int) -> bool:
            link = pg._links[link_ix]
            if link.to_ix in self.omitted:
                return False
            # Dev-dependencies were already handled on the target side.
            if link.kind is DependencyKind.NORMAL:
                res = self._is_enabled(inter_host, link_ix, host)
            elif link.kind is DependencyKind.BUILD:
                res = pg._view(link.from_ix).has_build_script and self._is_enabled(
                    inter_host, link_ix, host
                )
            else:
                res = False
            res = res and postfilter.accept_package(
                CargoResolvePhase.HOST_PACKAGE, pg._link_view(link_ix)
            )
            if res and pg._nodes[link.from_ix].in_workspace and not pg._nodes[link.to_ix].in_workspace:
                host_direct.add(link.to_ix)
            return res

        host_packages = resolve_package_ixs(
            pg, host_initials, DependencyDirection.FORWARD, follow_host
        )

        fg = self.fg
        target_features = frozenset(
            ix for p in target_packages for ix in fg._nodes_of_package[p] if ix in inter_target
        )
        host_features = frozenset(
            ix for p in host_packages for ix in fg._nodes_of_package[p] if ix in inter_host
        )
        return _PassResult(
            target_features=target_features,
            host_features=host_features,
            target_packages=frozenset(target_packages),
            host_packages=frozenset(host_packages),
            target_direct=target_direct,
            host_direct=host_direct,
            proc_macro_links=sorted(set(proc_macro_links)),
            build_dep_links=sorted(set(build_dep_links)),
        )


def _cross_link(graph: FeatureGraph, edge_ix: int) -> CrossLink:
    from crategraph.core.feature import CrossLink

    return CrossLink(graph, edge_ix)


def _references_features(graph: PackageGraph, evaluator: PlatformEvaluator) -> bool:
    conditions = {
        instance.target
        for link in graph._links
        for instance in link.instances
        if instance.target is not None
    }
    return any(evaluator.references_features(c) for c in conditions)


class CargoSet:
    """
    The result of a simulated Cargo build.

    Holds, for the target and the host platform, the packages built and the
    features enabled on them, plus the links that were redirected to the
    host and the direct third-party dependencies of workspace packages.
    """

    def __init__(
        self,
        original_query: FeatureQuery,
        result: _PassResult,
        *,
        options: CargoOptions | None = None,
        target_uncertain: frozenset[int] = frozenset(),
        host_uncertain: frozenset[int] = frozenset(),
        iterations: int = 1,
    ) -> None:
        fg = original_query.graph
        pg = fg.package_graph
        self.original_query = original_query
        self.options = options or CargoOptions()
        self.target_features = FeatureSet(fg, result.target_features)
        self.host_features = FeatureSet(fg, result.host_features)
        self.target_packages = PackageSet(pg, result.target_packages)
        self.host_packages = PackageSet(pg, result.host_packages)
        self.target_direct_deps = PackageSet(pg, frozenset(result.target_direct))
        self.host_direct_deps = PackageSet(pg, frozenset(result.host_direct))
        self.target_uncertain = PackageSet(pg, target_uncertain)
        self.host_uncertain = PackageSet(pg, host_uncertain)
        self._proc_macro_links = result.proc_macro_links
        self._build_dep_links = result.build_dep_links
        self.iterations = iterations

    @classmethod
    def resolve(cls, query: FeatureQuery, options: CargoOptions | None = None) -> CargoSet:
        """
        Simulate a build for a forward feature query.

        Args:
            query: Initial features. Must be a forward query.
            options: Build options; defaults to CargoOptions().

        Returns:
            The CargoSet describing what gets built on target and host.

        Raises:
            CargoSetError: The query is a reverse query or an omitted package is unknown.
            ResolutionDidNotConvergeError: Feature-dependent platform
                conditions never settled within ``options.max_iterations``.
        """
        options = options or CargoOptions()
        if query.direction is not DependencyDirection.FORWARD:
            raise CargoSetError("build simulation needs a forward query")
        fg = query.graph
        pg = fg.package_graph
        try:
            omitted = frozenset(pg._package_ixs(options.omitted_packages))
        except UnknownPackageIdError as e:
            raise CargoSetError(f"omitted package is not in the graph: {e.package_id}") from e

        has_platform = options.target_platform is not None or options.host_platform is not None
        feature_aware = has_platform and _references_features(pg, options.evaluator)

        features: dict[int, frozenset[str]] | None = {} if feature_aware else None
        iterations = 0
        while True:
            iterations += 1
            ev = _Evaluation(options, strict=False, features=features)
            result = _Resolver(query, options, omitted, ev).run()
            if not feature_aware:
                break
            enabled = result.enabled_features(fg)
            if enabled == features:
                break
            if iterations >= options.max_iterations:
                logger.error(
                    "Build resolution did not converge after %d iterations", iterations
                )
                raise ResolutionDidNotConvergeError(iterations)
            logger.debug(
                "Feature-dependent conditions changed; re-resolving (round %d)",
                iterations + 1,
                extra={"resolver": options.resolver.value, "iteration": iterations + 1},
            )
            features = enabled

        target_uncertain: frozenset[int] = frozenset()
        host_uncertain: frozenset[int] = frozenset()
        if ev.saw_unknown:
            strict = _Resolver(
                query, options, omitted, _Evaluation(options, strict=True, features=features)
            ).run()
            target_uncertain = result.target_packages - strict.target_packages
            host_uncertain = result.host_packages - strict.host_packages

        if options.unify_target_host:
            result = _PassResult(
                target_features=result.target_features | result.host_features,
                host_features=result.target_features | result.host_features,
                target_packages=result.target_packages | result.host_packages,
                host_packages=result.target_packages | result.host_packages,
                target_direct=result.target_direct | result.host_direct,
                host_direct=result.target_direct | result.host_direct,
                proc_macro_links=result.proc_macro_links,
                build_dep_links=result.build_dep_links,
            )
            target_uncertain = host_uncertain = target_uncertain | host_uncertain

        logger.debug(
            "Resolved build: %d target packages, %d host packages (%d iteration(s))",
            len(result.target_packages),
            len(result.host_packages),
            iterations,
            extra={"resolver": options.resolver.value, "iteration": iterations},
        )
        return cls(
            query,
            result,
            options=options,
            target_uncertain=target_uncertain,
            host_uncertain=host_uncertain,
            iterations=iterations,
        )

    def features(self, build_platform: BuildPlatform) -> FeatureSet:
        if build_platform is BuildPlatform.TARGET:
            return self.target_features
        return self.host_features

    def packages(self, build_platform: BuildPlatform) -> PackageSet:
        if build_platform is BuildPlatform.TARGET:
            return self.target_packages
        return self.host_packages

    def direct_deps(self, build_platform: BuildPlatform) -> PackageSet:
        if build_platform is BuildPlatform.TARGET:
            return self.target_direct_deps
        return self.host_direct_deps

    def uncertain(self, build_platform: BuildPlatform) -> PackageSet:
        if build_platform is BuildPlatform.TARGET:
            return self.target_uncertain
        return self.host_uncertain

    def direct_deps_features(self, build_platform: BuildPlatform) -> FeatureSet:
        """Enabled features of the direct third-party dependencies on one platform."""
        features = self.features(build_platform)
        direct = features.graph.resolve_packages(self.direct_deps(build_platform), all_filter())
        return features.intersection(direct)

    def all_packages(self) -> PackageSet:
        return self.target_packages.union(self.host_packages)

    def proc_macro_links(self) -> list[PackageLink]:
        """Links to proc macros that were redirected from the target to the host."""
        pg = self.target_packages.graph
        return [pg._link_view(l) for l in self._proc_macro_links]

    def build_dep_links(self) -> list[PackageLink]:
        """Build-dependency links of target packages, built on the host."""
        pg = self.target_packages.graph
        return [pg._link_view(l) for l in self._build_dep_links]

    def to_dict(self) -> dict:
        """Summary of the build: per platform, each package with its status and features."""
        out: dict = {
            "initials": [str(f) for f in self.original_query.initials()],
            "iterations": self.iterations,
        }
        for build_platform in BuildPlatform:
            features = self.features(build_platform)
            direct = self.direct_deps(build_platform)
            uncertain = self.uncertain(build_platform)
            entries = []
            for flist in features.packages_with_features():
                package = flist.package
                if package.in_workspace:
                    status = "initial" if self.original_query.starts_from_package(package.id) else "workspace"
                elif package.id in direct:
                    status = "direct"
                else:
                    status = "transitive"
                entries.append(
                    {
                        "name": package.name,
                        "version": package.version,
                        "source": str(package.source),
                        "status": status,
                        "uncertain": package.id in uncertain,
                        "features": flist.named_features(),
                    }
                )
            out[build_platform.value] = entries
        return out
