"""crategraph: query Cargo package and feature graphs and simulate builds (library, TUI, CLI)."""

from importlib.metadata import version, PackageNotFoundError

from crategraph.api import (
    build_order,
    load_graph,
    package_ids_by_name,
    resolve_packages,
    simulate_build,
    simulate_many,
)
from crategraph.core import (
    CargoOptions,
    CargoResolverVersion,
    CargoSet,
    FeatureGraph,
    PackageGraph,
    PackageId,
    Platform,
)
from crategraph.errors import CrateGraphError

__all__ = [
    "build_order",
    "load_graph",
    "package_ids_by_name",
    "resolve_packages",
    "simulate_build",
    "simulate_many",
    "CargoOptions",
    "CargoResolverVersion",
    "CargoSet",
    "FeatureGraph",
    "PackageGraph",
    "PackageId",
    "Platform",
    "CrateGraphError",
    "__version__",
]

try:
    __version__ = version("crategraph")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"  # Not installed as package
