"""Core library: metadata parsing, package and feature graphs, queries, build simulation."""

from crategraph.core.cargo import (
    BuildPlatform,
    CargoOptions,
    CargoPostfilter,
    CargoResolvePhase,
    CargoResolverVersion,
    CargoSet,
)
from crategraph.core.feature import FeatureGraph, FeatureGraphWarning, FeatureId
from crategraph.core.feature_query import (
    FeatureFilter,
    FeatureQuery,
    FeatureSet,
    all_filter,
    default_filter,
    feature_filter,
    none_filter,
)
from crategraph.core.graph import PackageGraph, PackageLink, PackageMetadata, Workspace
from crategraph.core.ids import DependencyDirection, DependencyKind, PackageId, PackageSource
from crategraph.core.platform import CfgEvaluator, EnabledTernary, Platform, PlatformStatus
from crategraph.core.query import LinkFilter, PackageQuery, PackageSet

__all__ = [
    "BuildPlatform",
    "CargoOptions",
    "CargoPostfilter",
    "CargoResolvePhase",
    "CargoResolverVersion",
    "CargoSet",
    "FeatureGraph",
    "FeatureGraphWarning",
    "FeatureId",
    "FeatureFilter",
    "FeatureQuery",
    "FeatureSet",
    "all_filter",
    "default_filter",
    "feature_filter",
    "none_filter",
    "PackageGraph",
    "PackageLink",
    "PackageMetadata",
    "Workspace",
    "DependencyDirection",
    "DependencyKind",
    "PackageId",
    "PackageSource",
    "CfgEvaluator",
    "EnabledTernary",
    "Platform",
    "PlatformStatus",
    "LinkFilter",
    "PackageQuery",
    "PackageSet",
]
