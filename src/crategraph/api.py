"""Public API: use crategraph from Python or from other tools."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from crategraph.core.cargo import CargoOptions, CargoResolverVersion, CargoSet
from crategraph.core.feature_query import (
    FeatureFilter,
    all_filter,
    default_filter,
    feature_filter,
    none_filter,
)
from crategraph.core.graph import PackageGraph
from crategraph.core.ids import DependencyDirection, PackageId
from crategraph.core.platform import Platform
from crategraph.core.query import LinkFilter, PackageSet
from crategraph.errors import CrateGraphError, UnknownPackageIdError

logger = logging.getLogger(__name__)

FeatureSpec = str | Sequence[str]


def load_graph(source: dict[str, Any] | str | Path) -> PackageGraph:
    """
    Build a PackageGraph from ``cargo metadata`` output.

    Args:
        source: A decoded metadata dict, the JSON text itself, or a path to a
            JSON file.

    Returns:
        The constructed PackageGraph.
    """
    if isinstance(source, dict):
        return PackageGraph.from_metadata(source)
    if isinstance(source, str) and source.lstrip().startswith("{"):
        return PackageGraph.from_json(source)
    return PackageGraph.from_path(source)


def package_ids_by_name(graph: PackageGraph, names_or_ids: Iterable[str | PackageId]) -> list[PackageId]:
    """
    Map package names (or ids) to package ids.

    An exact id wins. Otherwise the name must match exactly one package, or
    exactly one workspace member when several versions are present.

    Raises:
        UnknownPackageIdError: Nothing matches, or the name is ambiguous.
    """
    out = []
    for item in names_or_ids:
        if isinstance(item, PackageId) or (item and graph.contains(item)):
            out.append(graph.metadata(item).id)
            continue
        matches = graph.packages_by_name(item)
        if len(matches) > 1:
            members = [p for p in matches if p.in_workspace]
            if len(members) == 1:
                matches = members
            else:
                versions = ", ".join(sorted(p.version for p in matches))
                raise UnknownPackageIdError(f"{item} (ambiguous: versions {versions})")
        if not matches:
            raise UnknownPackageIdError(item)
        out.append(matches[0].id)
    return out


def resolve_packages(
    graph: PackageGraph,
    names_or_ids: Iterable[str | PackageId],
    direction: DependencyDirection = DependencyDirection.FORWARD,
    link_filter: LinkFilter = LinkFilter.ALL,
) -> PackageSet:
    """Packages reachable from the named packages, following ``link_filter`` links."""
    query = graph.query(package_ids_by_name(graph, names_or_ids), direction)
    return graph.resolve_with(query, link_filter)


def _feature_filter(features: FeatureSpec) -> FeatureFilter:
    if features == "default":
        return default_filter()
    if features == "all":
        return all_filter()
    if features == "none":
        return none_filter()
    if isinstance(features, str):
        return feature_filter(default_filter(), [f.strip() for f in features.split(",") if f.strip()])
    return feature_filter(default_filter(), features)


def _platform(triple: str | Platform | None) -> Platform | None:
    if triple is None or isinstance(triple, Platform):
        return triple
    return Platform(triple)


def simulate_build(
    graph: PackageGraph,
    names_or_ids: Iterable[str | PackageId],
    *,
    features: FeatureSpec | FeatureFilter = "default",
    resolver: CargoResolverVersion | str = CargoResolverVersion.V1,
    include_dev: bool = False,
    target: str | Platform | None = None,
    host: str | Platform | None = None,
    omitted: Iterable[str | PackageId] = (),
    **options: Any,
) -> CargoSet:
    """
    Simulate ``cargo build`` for the named packages.

    Args:
        graph: Package graph to simulate on.
        names_or_ids: Packages to build (names or ids).
        features: "default", "all", "none", a feature list (added to the
            defaults, like ``--features``) or a FeatureFilter.
        resolver: Resolver version or its string form ("1", "1-install", "2").
        include_dev: Include dev-dependencies of the built packages.
        target: Target triple or Platform; None means any platform.
        host: Host triple or Platform; defaults to ``target``.
        omitted: Packages to leave out of the build.
        **options: Any other CargoOptions field.

    Returns:
        The CargoSet describing what gets built.
    """
    initials = graph.resolve_ids(package_ids_by_name(graph, names_or_ids))
    if not isinstance(features, FeatureFilter):
        features = _feature_filter(features)
    target_platform = _platform(target)
    host_platform = _platform(host) if host is not None else target_platform
    cargo_options = CargoOptions(
        resolver=CargoResolverVersion(resolver),
        include_dev=include_dev,
        target_platform=target_platform,
        host_platform=host_platform,
        omitted_packages=frozenset(package_ids_by_name(graph, omitted)),
        **options,
    )
    return graph.cargo_set(initials, cargo_options, features)


def build_order(graph: PackageGraph) -> list[PackageId]:
    """All packages in build order: dependencies before their dependents."""
    return graph.resolve_all().package_ids(DependencyDirection.REVERSE)


def simulate_many(
    graph: PackageGraph,
    requests: Sequence[dict[str, Any]],
    *,
    max_workers: int | None = None,
) -> list[CargoSet | CrateGraphError]:
    """
    Run several independent build simulations in parallel.

    Each request is a dict of ``simulate_build`` keyword arguments plus
    ``packages``. Results come back in request order; a request that fails
    yields its CrateGraphError in place of a CargoSet.
    """
    # Derive the feature graph once, before the threads share it.
    graph.feature_graph()

    def run(request: dict[str, Any]) -> CargoSet | CrateGraphError:
        kwargs = dict(request)
        packages = kwargs.pop("packages")
        try:
            return simulate_build(graph, packages, **kwargs)
        except CrateGraphError as e:
            logger.warning(
                "Simulation for %s failed: %s", packages, e, extra={"packages": list(packages), "error_code": e.code}
            )
            return e

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(run, requests))
