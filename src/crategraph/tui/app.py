"""Textual TUI for browsing a Cargo workspace's dependency graph."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Vertical
from textual.screen import ModalScreen
from textual.widgets import Footer, Header, Input, LoadingIndicator, Static, Tree
from textual.widgets.tree import TreeNode
from textual.worker import Worker, WorkerState

from crategraph.api import load_graph, package_ids_by_name
from crategraph.core.graph import PackageGraph, PackageMetadata
from crategraph.core.ids import DependencyDirection, DependencyKind, PackageId
from crategraph.errors import CrateGraphError
from crategraph.logging_config import LEVEL_ENV, setup_logging

# Limits to avoid huge trees
MAX_TREE_DEPTH = 12
MAX_TREE_NODES = 2000
EXPAND_DEPTH_DEFAULT = 1

COLOR_WORKSPACE = "bold green"
COLOR_CRATES_IO = "white"
COLOR_OTHER = "bold cyan"  # git and other registries
COLOR_PATH_DEP = "bold yellow"  # path dependencies outside the workspace
COLOR_HEADER = "bold magenta"
COLOR_STATS = "cyan"
COLOR_DIM = "dim"

KIND_TAGS = {
    DependencyKind.NORMAL: "",
    DependencyKind.BUILD: " [yellow]build[/]",
    DependencyKind.DEV: " [blue]dev[/]",
}


@dataclass
class TreeEntry:
    """What a tree node stands for: a package, reached over a link of some kind."""

    package_id: PackageId
    kinds: tuple[DependencyKind, ...] = ()
    depth: int = 0
    loaded: bool = False
    cycle: bool = False


def _count_nodes(node: Any) -> int:
    """Count nodes in tree (for cap)."""
    n = 1
    for c in getattr(node, "children", []):
        n += _count_nodes(c)
    return n


def _node_stats(node: Any) -> tuple[int, int, int]:
    """Return (direct_children, total_descendants, max_depth) for a node."""
    children = getattr(node, "children", []) or []
    direct = len(children)
    total = 0
    max_d = 0
    for c in children:
        sub_direct, sub_total, sub_depth = _node_stats(c)
        total += 1 + sub_total
        max_d = max(max_d, 1 + sub_depth)
    return direct, total, max_d


def _package_color(package: PackageMetadata) -> str:
    if package.in_workspace:
        return COLOR_WORKSPACE
    if package.source.is_crates_io():
        return COLOR_CRATES_IO
    if package.source.is_path():
        return COLOR_PATH_DEP
    return COLOR_OTHER


def _package_label(package: PackageMetadata, kinds: tuple[DependencyKind, ...] = ()) -> str:
    color = _package_color(package)
    tags = "".join(KIND_TAGS[k] for k in kinds)
    return f"[{color}]{package.name}[/] [dim]v{package.version}[/]{tags}"


def _dependency_entries(graph: PackageGraph, package_id: PackageId) -> list[tuple[PackageMetadata, tuple[DependencyKind, ...]]]:
    """Direct dependencies of a package, one entry per dependency, with every kind it's used as."""
    by_package: dict[PackageId, list[DependencyKind]] = {}
    order: list[PackageMetadata] = []
    for link in graph.direct_links(package_id, DependencyDirection.FORWARD):
        kinds = by_package.get(link.to.id)
        if kinds is None:
            kinds = by_package[link.to.id] = []
            order.append(link.to)
        if link.kind not in kinds:
            kinds.append(link.kind)
    order.sort(key=lambda p: (not p.in_workspace, p.name))
    return [(p, tuple(sorted(by_package[p.id], key=lambda k: k.value))) for p in order]


def _ancestor_ids(node: TreeNode) -> set[PackageId]:
    ids = set()
    parent = node.parent
    while parent is not None:
        if isinstance(parent.data, TreeEntry):
            ids.add(parent.data.package_id)
        parent = parent.parent
    return ids


def _expand_to_depth(tn: TreeNode, depth: int, current: int = 0) -> None:
    """Expand tree nodes up to given depth (0 = root only)."""
    if current >= depth:
        return
    tn.expand()
    for child in tn.children:
        _expand_to_depth(child, depth, current + 1)


class SearchScreen(ModalScreen[str | None]):
    """Modal to search for packages in the tree. Keyboard-only."""

    BINDINGS = [
        Binding("escape", "cancel", "Cancel", show=True),
    ]

    DEFAULT_CSS = """
    SearchScreen {
        align: center middle;
        padding: 2 4;
    }
    SearchScreen #search_title {
        text-align: center;
        padding-bottom: 1;
    }
    SearchScreen #search_input {
        width: 60;
        margin: 1 0;
    }
    SearchScreen #search_hint {
        text-align: center;
        padding-top: 1;
    }
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._input: Input | None = None

    def compose(self) -> ComposeResult:
        with Vertical():
            yield Static(
                "[bold cyan]Search[/]\n\n"
                "Type a crate name or part of one. Only expanded nodes are searched.",
                id="search_title",
                markup=True,
            )
            yield Input(placeholder="crate name...", id="search_input")
            yield Static(
                "[dim]Enter[/] = Search  ·  [dim]Escape[/] = Cancel\n"
                "[dim]After search: [bold]n[/bold] = next match, [bold]N[/bold] = previous[/]",
                id="search_hint",
                markup=True,
            )

    def on_mount(self) -> None:
        self._input = self.query_one("#search_input", Input)
        self._input.focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "search_input":
            return
        value = self._input.value.strip() if self._input else ""
        self.dismiss(value if value else None)

    def action_cancel(self) -> None:
        self.dismiss(None)


class CrateGraphApp(App[None]):
    """Terminal UI to explore a Cargo workspace's dependencies."""

    TITLE = "crategraph"
    BINDINGS = [
        Binding("/", "search", "Search"),
        Binding("f", "search", "Search", show=False),
        Binding("n", "next_match", "Next match", show=False),
        Binding("N", "prev_match", "Prev match", show=False),
        Binding("d", "toggle_details", "Details"),
        Binding("q", "quit", "Quit"),
        Binding("r", "reload", "Reload"),
        Binding("e", "expand_all", "Expand all"),
        Binding("c", "collapse_all", "Collapse"),
    ]

    DEFAULT_CSS = """
    #loading {
        height: auto;
        display: none;
    }
    #loading.loading {
        display: block;
    }
    #details {
        padding: 1 2;
        border: solid $primary;
        height: auto;
        min-height: 8;
    }
    """

    def __init__(
        self,
        metadata_path: Path | str = "metadata.json",
        root_package: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._metadata_path = Path(metadata_path)
        self._root_package = root_package
        self._graph: PackageGraph | None = None
        self._node_count = 0
        self._search_matches: list[TreeNode] = []
        self._search_index: int = 0
        self._details_visible: bool = True

    def compose(self) -> ComposeResult:
        yield Header(show_clock=False)
        with Container(id="loading"):
            yield LoadingIndicator()
            yield Static("[dim]Loading metadata...[/]", markup=True)
        with Container(id="main_container"):
            yield Tree("Workspace", id="dep_tree")
            yield Static(
                "[dim]↑/↓[/] move  ·  [dim]Enter[/]/[dim]Space[/] expand  ·  [dim]/[/] search",
                id="details",
            )
        yield Footer()

    def on_mount(self) -> None:
        self.sub_title = str(self._metadata_path)
        self._start_load()

    def _start_load(self) -> None:
        self.query_one("#loading").add_class("loading")
        self.run_worker(self._load_worker, thread=True)

    def _load_worker(self) -> PackageGraph:
        """Parse metadata in a background thread."""
        return load_graph(self._metadata_path)

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        if event.state == WorkerState.SUCCESS:
            self.query_one("#loading").remove_class("loading")
            self._graph = event.worker.result
            self._populate_root()
        elif event.state == WorkerState.ERROR:
            self.query_one("#loading").remove_class("loading")
            self._set_details(f"[red]Error: {event.worker.error}[/]")

    def _clear_tree(self, tree: Tree) -> None:
        while tree.root.children:
            tree.root.children[0].remove()

    def _populate_root(self) -> None:
        graph = self._graph
        if graph is None:
            return
        tree = self.query_one("#dep_tree", Tree)
        self._clear_tree(tree)
        self._node_count = 0
        members = graph.workspace().members()
        if self._root_package:
            try:
                (root_id,) = package_ids_by_name(graph, [self._root_package])
            except CrateGraphError as e:
                self._set_details(f"[red]{e}[/]")
                return
            roots = [graph.metadata(root_id)]
        else:
            roots = members

        tree.root.label = f"[{COLOR_HEADER}]Workspace ({len(members)} members)[/]"
        for package in roots:
            node = tree.root.add(_package_label(package), expand=False)
            node.data = TreeEntry(package.id)
            self._node_count += 1
            self._load_children(node)
        tree.root.expand()
        _expand_to_depth(tree.root, EXPAND_DEPTH_DEFAULT)
        self._set_details(self._format_summary())
        tree.focus()

    def _load_children(self, node: TreeNode) -> None:
        """Add a node's dependencies as children, once."""
        entry = node.data
        graph = self._graph
        if not isinstance(entry, TreeEntry) or entry.loaded or entry.cycle or graph is None:
            return
        entry.loaded = True
        if entry.depth >= MAX_TREE_DEPTH:
            node.add_leaf("[dim]… depth limit[/]")
            return
        ancestors = _ancestor_ids(node) | {entry.package_id}
        for package, kinds in _dependency_entries(graph, entry.package_id):
            if self._node_count >= MAX_TREE_NODES:
                node.add_leaf(f"[dim]… truncated ({MAX_TREE_NODES} nodes max)[/]")
                return
            self._node_count += 1
            cycle = package.id in ancestors
            label = _package_label(package, kinds) + (" [red](cycle)[/]" if cycle else "")
            has_deps = not cycle and bool(graph.direct_links(package.id))
            if has_deps:
                child = node.add(label, expand=False)
            else:
                child = node.add_leaf(label)
            child.data = TreeEntry(package.id, kinds, entry.depth + 1, cycle=cycle)

    def on_tree_node_expanded(self, event: Tree.NodeExpanded) -> None:
        for child in event.node.children:
            self._load_children(child)

    def on_tree_node_highlighted(self, event: Tree.NodeHighlighted) -> None:
        entry = event.node.data
        if isinstance(entry, TreeEntry):
            self._set_details(self._format_entry(event.node, entry))

    def _format_summary(self) -> str:
        graph = self._graph
        if graph is None:
            return ""
        external = sum(1 for p in graph.packages() if not p.in_workspace)
        cycles = graph.cycles().all_cycles()
        return "\n".join(
            [
                f"[{COLOR_HEADER}]Metadata[/]",
                f"  Workspace members:  [{COLOR_STATS}]{len(graph.workspace())}[/]",
                f"  Third-party crates: [{COLOR_STATS}]{external}[/]",
                f"  Links:              [{COLOR_STATS}]{graph.link_count()}[/]",
                f"  Dev cycles:         [{COLOR_STATS}]{len(cycles)}[/]",
            ]
        )

    def _format_entry(self, node: TreeNode, entry: TreeEntry) -> str:
        graph = self._graph
        if graph is None:
            return ""
        package = graph.metadata(entry.package_id)
        direct, loaded_below, max_depth = _node_stats(node)
        deps = graph.resolve(graph.query_forward([package.id]))
        kinds = ", ".join(k.value for k in entry.kinds) or "root"
        features = package.named_features()
        optional = package.optional_dependency_names()

        lines = [
            f"[{COLOR_HEADER}]Package[/]",
            f"  {_package_label(package)}",
            f"  [{COLOR_DIM}]{package.source}[/]",
            "",
            f"[{COLOR_HEADER}]Description[/]",
            f"  {package.description or '(no description)'}",
            "",
            f"[{COLOR_HEADER}]Dependency[/]",
            f"  Kind: {kinds}",
            f"  Direct dependencies:     [{COLOR_STATS}]{direct}[/]",
            f"  Transitive dependencies: [{COLOR_STATS}]{len(deps) - 1}[/]",
            f"  Loaded below / depth:    [{COLOR_STATS}]{loaded_below}[/] / [{COLOR_STATS}]{max_depth}[/]",
            "",
            f"[{COLOR_HEADER}]Features[/]",
            f"  {', '.join(features) if features else '(none)'}",
        ]
        if optional:
            lines.append(f"  [{COLOR_DIM}]optional deps: {', '.join(optional)}[/]")
        if package.has_build_script:
            lines.append(f"  [{COLOR_DIM}]has a build script[/]")
        if package.is_proc_macro:
            lines.append(f"  [{COLOR_DIM}]proc macro[/]")
        return "\n".join(lines)

    def _set_details(self, text: str) -> None:
        details = self.query_one("#details", Static)
        details.update(text)

    def action_reload(self) -> None:
        self._graph = None
        self._search_matches = []
        self._start_load()

    def action_expand_all(self) -> None:
        tree = self.query_one("#dep_tree", Tree)
        tree.root.expand_all()

    def action_collapse_all(self) -> None:
        tree = self.query_one("#dep_tree", Tree)
        tree.root.collapse_all()
        tree.root.expand()

    def action_search(self) -> None:
        """Open search modal."""
        self.push_screen(SearchScreen(), self._on_search_done)

    def _on_search_done(self, query: str | None) -> None:
        if not query:
            return
        self._search_matches = []
        self._search_index = 0

        tree = self.query_one("#dep_tree", Tree)
        self._collect_matches(tree.root, query.lower())

        if not self._search_matches:
            self.notify(f"No matches for '{query}'", severity="warning", timeout=2)
            return

        self.notify(
            f"Found {len(self._search_matches)} match(es) for '{query}'",
            severity="information",
            timeout=2,
        )
        self._goto_match(0)

    def _collect_matches(self, node: TreeNode, query: str) -> None:
        entry = node.data
        if isinstance(entry, TreeEntry) and self._graph is not None:
            if query in self._graph.metadata(entry.package_id).name.lower():
                self._search_matches.append(node)
        for child in node.children:
            self._collect_matches(child, query)

    def _goto_match(self, index: int) -> None:
        if not self._search_matches:
            return
        self._search_index = index % len(self._search_matches)
        match_node = self._search_matches[self._search_index]

        # Expand all ancestors so the node is visible
        parent = match_node.parent
        ancestors = []
        while parent is not None:
            ancestors.append(parent)
            parent = parent.parent
        for ancestor in reversed(ancestors):
            ancestor.expand()

        tree = self.query_one("#dep_tree", Tree)
        tree.select_node(match_node)
        tree.scroll_to_node(match_node)
        self.notify(
            f"Match {self._search_index + 1}/{len(self._search_matches)}: {match_node.label}",
            severity="information",
            timeout=2,
        )

    def action_next_match(self) -> None:
        if not self._search_matches:
            self.notify("No active search. Press / to search.", severity="information", timeout=2)
            return
        self._goto_match(self._search_index + 1)

    def action_prev_match(self) -> None:
        if not self._search_matches:
            self.notify("No active search. Press / to search.", severity="information", timeout=2)
            return
        self._goto_match(self._search_index - 1)

    def action_toggle_details(self) -> None:
        self._details_visible = not self._details_visible
        details = self.query_one("#details", Static)
        details.styles.display = "block" if self._details_visible else "none"

    def action_quit(self) -> None:
        self.exit()


def main() -> None:
    """Entry point for the crategraph TUI: ``crategraph-tui [METADATA] [PACKAGE]``."""
    if os.environ.get(LEVEL_ENV):
        setup_logging("tui")
    metadata = sys.argv[1] if len(sys.argv) > 1 else "metadata.json"
    root = sys.argv[2].strip() if len(sys.argv) > 2 else None
    app = CrateGraphApp(metadata_path=metadata, root_package=root)
    app.run()


if __name__ == "__main__":
    main()
