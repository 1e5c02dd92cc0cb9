"""Command-line interface for crategraph: list packages, walk dependencies, simulate builds."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from crategraph.api import build_order, package_ids_by_name, simulate_build
from crategraph.core.cargo import CargoResolverVersion, CargoSet
from crategraph.core.feature_query import (
    FeatureFilter,
    all_filter,
    default_filter,
    feature_filter,
    none_filter,
)
from crategraph.core.graph import PackageGraph, PackageMetadata
from crategraph.core.ids import DependencyDirection, DependencyKind, PackageId
from crategraph.core.platform import Platform
from crategraph.core.query import LinkFilter, PackageSet
from crategraph.errors import CrateGraphError
from crategraph.logging_config import LEVEL_ENV, setup_logging

logger = logging.getLogger(__name__)

DEFAULT_METADATA = "metadata.json"


def _load(args: argparse.Namespace) -> PackageGraph:
    logger.debug("Loading metadata from %s", args.metadata)
    return PackageGraph.from_path(Path(args.metadata))


def _source_label(package: PackageMetadata) -> str:
    if package.in_workspace:
        return "workspace"
    return str(package.source)


def _print_tree_text(
    graph: PackageGraph,
    package_id: PackageId,
    direction: DependencyDirection,
    link_filter: LinkFilter,
    max_depth: int | None = None,
) -> None:
    """Print dependencies (or dependents) of a package as an indented tree."""
    seen: set[PackageId] = set()

    def walk(pid: PackageId, prefix: str, marker: str, depth: int, path: set[PackageId]) -> None:
        package = graph.metadata(pid)
        suffix = ""
        if pid in path:
            suffix = " [cycle]"
        elif pid in seen and depth > 0:
            suffix = " [...]"
        print(f"{prefix}{marker}{package.name} ({package.version}){suffix}")
        if suffix or (max_depth is not None and depth >= max_depth):
            return
        seen.add(pid)
        links = [l for l in graph.direct_links(pid, direction) if link_filter.accepts(l)]
        others = []
        for link in links:
            other = link.to if direction is DependencyDirection.FORWARD else link.from_
            if other.id not in others:
                others.append(other.id)
        child_prefix = prefix + ("    " if marker in ("", "└── ") else "│   ")
        for i, other in enumerate(others):
            is_last = i == len(others) - 1
            walk(other, child_prefix if marker else "", "└── " if is_last else "├── ", depth + 1, path | {pid})

    walk(package_id, "", "", 0, set())


def _package_rows(packages: list[PackageMetadata]) -> list[dict]:
    return [
        {
            "id": str(p.id),
            "name": p.name,
            "version": p.version,
            "source": _source_label(p),
        }
        for p in packages
    ]


def cmd_list(args: argparse.Namespace) -> int:
    """List packages in the graph."""
    graph = _load(args)
    if args.workspace:
        packages = graph.workspace().members()
    else:
        packages = sorted(graph.packages(), key=lambda p: (p.name, p.parsed_version))

    if args.json:
        print(json.dumps(_package_rows(packages), indent=2))
        return 0
    if not packages:
        print("No packages found.")
        return 1
    print(f"Found {len(packages)} package(s):\n")
    for package in packages:
        print(f"  {package.name} {package.version} [{_source_label(package)}]")
    return 0


def _walk(args: argparse.Namespace, direction: DependencyDirection) -> int:
    graph = _load(args)
    (package_id,) = package_ids_by_name(graph, [args.package])
    link_filter = LinkFilter.NO_DEV if args.no_dev else LinkFilter.ALL

    if args.direct:
        links = [l for l in graph.direct_links(package_id, direction) if link_filter.accepts(l)]
        if args.json:
            print(json.dumps([l.to_dict() for l in links], indent=2))
            return 0
        for link in links:
            other = link.to if direction is DependencyDirection.FORWARD else link.from_
            print(f"  {other.name} {other.version} ({link.kind.value})")
        return 0

    if args.tree and not args.json:
        _print_tree_text(graph, package_id, direction, link_filter, args.depth)
        return 0

    result = graph.resolve_with(graph.query([package_id], direction), link_filter)
    result = result - graph.resolve_ids([package_id])
    if args.json:
        print(json.dumps(_package_rows(result.packages(direction)), indent=2))
        return 0
    what = "dependencies" if direction is DependencyDirection.FORWARD else "dependents"
    print(f"{graph.metadata(package_id).name}: {len(result)} {what}\n")
    for package in result.packages(direction):
        print(f"  {package.name} {package.version} [{_source_label(package)}]")
    return 0


def cmd_deps(args: argparse.Namespace) -> int:
    """Show transitive dependencies of a package."""
    return _walk(args, DependencyDirection.FORWARD)


def cmd_rdeps(args: argparse.Namespace) -> int:
    """Show transitive dependents of a package."""
    return _walk(args, DependencyDirection.REVERSE)


def _features_from_args(args: argparse.Namespace) -> FeatureFilter:
    if args.all_features:
        return all_filter()
    base = none_filter() if args.no_default_features else default_filter()
    names = [f.strip() for group in (args.features or []) for f in group.split(",") if f.strip()]
    if names:
        return feature_filter(base, names)
    return base


def _platform_from_args(triple: str | None, args: argparse.Namespace) -> Platform | None:
    if triple is None:
        return None
    target_features = frozenset(args.target_feature) if args.target_feature else None
    return Platform(triple, target_features=target_features, flags=frozenset(args.cfg or ()))


def _print_build(cargo_set: CargoSet) -> None:
    summary = cargo_set.to_dict()
    for platform in ("target", "host"):
        entries = summary[platform]
        print(f"{platform.capitalize()}: {len(entries)} package(s)")
        for entry in entries:
            features = ", ".join(entry["features"])
            uncertain = " ?" if entry["uncertain"] else ""
            print(f"  {entry['name']} {entry['version']} ({entry['status']}){uncertain}")
            if features:
                print(f"      features: {features}")
        print()
    if cargo_set.iterations > 1:
        print(f"Resolved in {cargo_set.iterations} iterations.")


def cmd_build(args: argparse.Namespace) -> int:
    """Simulate a cargo build of one or more packages."""
    graph = _load(args)
    target = _platform_from_args(args.target, args)
    host = _platform_from_args(args.host, args) if args.host else target
    cargo_set = simulate_build(
        graph,
        args.packages,
        features=_features_from_args(args),
        resolver=CargoResolverVersion(args.resolver),
        include_dev=args.dev,
        target=target,
        host=host,
        omitted=args.omit or (),
        unify_target_host=args.unify,
    )
    if args.json:
        print(json.dumps(cargo_set.to_dict(), indent=2))
    else:
        _print_build(cargo_set)
    return 0


def cmd_cycles(args: argparse.Namespace) -> int:
    """List dependency cycles (through dev-dependencies)."""
    graph = _load(args)
    cycles = graph.cycles().all_cycles()
    if args.json:
        print(json.dumps([[str(p) for p in cycle] for cycle in cycles], indent=2))
        return 0
    if not cycles:
        print("No cycles found.")
        return 0
    print(f"Found {len(cycles)} cycle(s):\n")
    for cycle in cycles:
        names = [graph.metadata(p).name for p in cycle]
        print("  " + " -> ".join(names + names[:1]))
    return 0


def cmd_order(args: argparse.Namespace) -> int:
    """Print every package in build order."""
    graph = _load(args)
    order = build_order(graph)
    if args.json:
        print(json.dumps([str(p) for p in order], indent=2))
        return 0
    for i, package_id in enumerate(order, 1):
        package = graph.metadata(package_id)
        print(f"{i:4d}. {package.name} {package.version}")
    return 0


def cmd_warnings(args: argparse.Namespace) -> int:
    """List problems found while deriving the feature graph."""
    graph = _load(args)
    warnings = graph.feature_graph().build_warnings()
    if args.json:
        print(json.dumps([w.to_dict() for w in warnings], indent=2))
        return 0
    if not warnings:
        print("No feature graph warnings.")
        return 0
    for warning in warnings:
        print(f"  {warning}")
    return 0


def _node_label(graph: PackageGraph, package: PackageMetadata) -> str:
    if len(graph.packages_by_name(package.name)) > 1:
        return f"{package.name} {package.version}"
    return package.name


def _collect_edges(
    package_set: PackageSet,
    no_dev: bool = False,
) -> set[tuple[str, str]]:
    """Edges (from label -> to label) between packages of the set."""
    graph = package_set.graph
    edges: set[tuple[str, str]] = set()
    for link in package_set.links():
        if no_dev and link.kind is DependencyKind.DEV:
            continue
        edges.add((_node_label(graph, link.from_), _node_label(graph, link.to)))
    return edges


def _generate_dot(
    package_set: PackageSet,
    title: str | None = None,
    highlight_roots: bool = True,
    no_dev: bool = False,
) -> str:
    """Generate DOT (Graphviz) format for a package set."""
    graph = package_set.graph
    lines = [
        "digraph dependencies {",
        "    rankdir=LR;",
        '    node [shape=box, style=rounded, fontname="sans-serif"];',
    ]
    if title:
        lines.insert(1, f'    label="{title}";')
        lines.insert(2, "    labelloc=t;")

    # Workspace members stand out
    if highlight_roots:
        members = sorted(_node_label(graph, p) for p in package_set.packages() if p.in_workspace)
        for name in members:
            lines.append(f'    "{name}" [style="rounded,filled", fillcolor=lightblue];')

    for parent, child in sorted(_collect_edges(package_set, no_dev)):
        lines.append(f'    "{parent}" -> "{child}";')

    lines.append("}")
    return "\n".join(lines)


def _generate_mermaid(
    package_set: PackageSet,
    title: str | None = None,
    highlight_roots: bool = True,
    no_dev: bool = False,
) -> str:
    """Generate Mermaid format for a package set."""
    graph = package_set.graph
    lines = ["graph LR"]
    if title:
        lines[0] = f"---\ntitle: {title}\n---\ngraph LR"

    if highlight_roots:
        members = sorted(_node_label(graph, p) for p in package_set.packages() if p.in_workspace)
        for name in members:
            lines.append(f"    {_mermaid_id(name)}[{name}]")
            lines.append(f"    style {_mermaid_id(name)} fill:#lightblue")

    for parent, child in sorted(_collect_edges(package_set, no_dev)):
        lines.append(f"    {_mermaid_id(parent)} --> {_mermaid_id(child)}")

    return "\n".join(lines)


def _mermaid_id(name: str) -> str:
    """Convert a package label to a valid Mermaid node ID."""
    return name.replace("-", "_").replace(".", "_").replace(" ", "_")


def cmd_graph(args: argparse.Namespace) -> int:
    """Generate a dependency graph in DOT or Mermaid format."""
    graph = _load(args)
    link_filter = LinkFilter.NO_DEV if args.no_dev else LinkFilter.ALL
    if args.package:
        package_ids = package_ids_by_name(graph, [args.package])
        package_set = graph.resolve_with(graph.query_forward(package_ids), link_filter)
    else:
        package_set = graph.resolve_with(graph.query_workspace(), link_filter)

    if args.no_title:
        title = None
    elif args.package:
        title = f"{args.package} dependencies"
    else:
        title = "Workspace dependencies"

    if args.format == "mermaid":
        output = _generate_mermaid(package_set, title=title, no_dev=args.no_dev)
    else:
        output = _generate_dot(package_set, title=title, no_dev=args.no_dev)

    if args.output:
        Path(args.output).write_text(output)
        print(f"Graph written to: {args.output}", file=sys.stderr)
    else:
        print(output)
    return 0


def cmd_tui(args: argparse.Namespace) -> int:
    """Launch the interactive TUI."""
    from crategraph.tui.app import CrateGraphApp

    app = CrateGraphApp(
        metadata_path=Path(getattr(args, "metadata", DEFAULT_METADATA)),
        root_package=getattr(args, "package", None),
    )
    app.run()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the crategraph CLI."""
    parser = argparse.ArgumentParser(
        prog="crategraph",
        description="Explore Cargo package and feature graphs from the command line.",
    )
    parser.add_argument("--version", action="version", version="%(prog)s 0.1.0")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit log records as JSON lines",
    )
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        help="Write log records to PATH instead of stderr (the TUI defaults to crategraph-tui.log)",
    )

    # Options shared by every command
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-m",
        "--metadata",
        metavar="PATH",
        default=DEFAULT_METADATA,
        help=f"cargo metadata JSON file (default: {DEFAULT_METADATA})",
    )
    common.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # crategraph list
    list_parser = subparsers.add_parser(
        "list",
        parents=[common],
        help="List packages",
        description="List every package in the metadata, or only workspace members.",
    )
    list_parser.add_argument(
        "-w",
        "--workspace",
        action="store_true",
        help="Only list workspace members",
    )
    list_parser.set_defaults(func=cmd_list)

    # crategraph deps / rdeps
    for name, func, help_text in (
        ("deps", cmd_deps, "Show the dependencies of a package"),
        ("rdeps", cmd_rdeps, "Show the packages that depend on a package"),
    ):
        walk_parser = subparsers.add_parser(name, parents=[common], help=help_text, description=help_text + ".")
        walk_parser.add_argument("package", help="Package name or id")
        walk_parser.add_argument(
            "--no-dev",
            action="store_true",
            help="Don't follow dev-dependencies",
        )
        walk_parser.add_argument(
            "--direct",
            action="store_true",
            help="Only direct links",
        )
        walk_parser.add_argument(
            "-t",
            "--tree",
            action="store_true",
            help="Print as a tree",
        )
        walk_parser.add_argument(
            "-d",
            "--depth",
            type=int,
            default=None,
            help="Maximum tree depth (default: unlimited)",
        )
        walk_parser.set_defaults(func=func)

    # crategraph build
    build_parser = subparsers.add_parser(
        "build",
        parents=[common],
        help="Simulate a cargo build",
        description="Work out which packages and features a cargo build would include.",
    )
    build_parser.add_argument("packages", nargs="+", help="Packages to build")
    build_parser.add_argument(
        "--resolver",
        choices=[v.value for v in CargoResolverVersion],
        default=CargoResolverVersion.V1.value,
        help="Feature resolver version (default: 1)",
    )
    build_parser.add_argument(
        "--dev",
        action="store_true",
        help="Include dev-dependencies (as cargo test does)",
    )
    build_parser.add_argument(
        "-F",
        "--features",
        action="append",
        metavar="FEATURES",
        help="Comma-separated features to enable (can be repeated)",
    )
    build_parser.add_argument(
        "--all-features",
        action="store_true",
        help="Enable every feature of the built packages",
    )
    build_parser.add_argument(
        "--no-default-features",
        action="store_true",
        help="Don't enable default features",
    )
    build_parser.add_argument(
        "--target",
        metavar="TRIPLE",
        help="Target triple (default: any platform)",
    )
    build_parser.add_argument(
        "--host",
        metavar="TRIPLE",
        help="Host triple (default: same as --target)",
    )
    build_parser.add_argument(
        "--target-feature",
        action="append",
        metavar="FEATURE",
        help="Enabled CPU target feature (can be repeated)",
    )
    build_parser.add_argument(
        "--cfg",
        action="append",
        metavar="FLAG",
        help="Set a cfg flag, e.g. tokio_unstable (can be repeated)",
    )
    build_parser.add_argument(
        "--omit",
        action="append",
        metavar="PKG",
        help="Treat this package as absent (can be repeated)",
    )
    build_parser.add_argument(
        "--unify",
        action="store_true",
        help="Unify target and host results",
    )
    build_parser.set_defaults(func=cmd_build)

    cycles_parser = subparsers.add_parser("cycles", parents=[common], help="List dependency cycles")
    cycles_parser.set_defaults(func=cmd_cycles)

    order_parser = subparsers.add_parser("order", parents=[common], help="Print packages in build order")
    order_parser.set_defaults(func=cmd_order)

    warnings_parser = subparsers.add_parser(
        "warnings",
        parents=[common],
        help="List feature graph warnings",
    )
    warnings_parser.set_defaults(func=cmd_warnings)

    # crategraph graph
    graph_parser = subparsers.add_parser(
        "graph",
        parents=[common],
        help="Generate a dependency graph (DOT/Mermaid format)",
        description=(
            "Generate a visual dependency graph. "
            "Without arguments, graphs the workspace and its dependencies. "
            "Specify a package name to graph just that package."
        ),
    )
    graph_parser.add_argument(
        "package",
        nargs="?",
        help="Package name to graph (optional; without it, graphs the workspace)",
    )
    graph_parser.add_argument(
        "-f",
        "--format",
        choices=["dot", "mermaid"],
        default="dot",
        help="Output format: dot (Graphviz) or mermaid (default: dot)",
    )
    graph_parser.add_argument(
        "-o",
        "--output",
        metavar="FILE",
        help="Output file (default: stdout)",
    )
    graph_parser.add_argument(
        "--no-dev",
        action="store_true",
        help="Leave out dev-dependencies",
    )
    graph_parser.add_argument(
        "--no-title",
        action="store_true",
        help="Don't include a title in the graph",
    )
    graph_parser.set_defaults(func=cmd_graph)

    # crategraph tui (default if no command)
    tui_parser = subparsers.add_parser(
        "tui",
        parents=[common],
        help="Launch the interactive terminal UI",
        description="Start the interactive TUI for browsing packages and dependencies.",
    )
    tui_parser.add_argument(
        "package",
        nargs="?",
        help="Optional: start with this package expanded",
    )
    tui_parser.set_defaults(func=cmd_tui)

    args = parser.parse_args(argv)
    if args.verbose or args.log_json or args.log_file or os.environ.get(LEVEL_ENV):
        setup_logging(
            "tui" if args.command in (None, "tui") else "cli",
            "DEBUG" if args.verbose else None,
            json_output=args.log_json or None,
            log_file=args.log_file,
        )

    # Default to TUI if no command specified
    if args.command is None:
        return cmd_tui(argparse.Namespace(metadata=DEFAULT_METADATA, package=None))

    try:
        return args.func(args)
    except CrateGraphError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
