"""Graph algorithms that tolerate cycles.

Dependency graphs are acyclic except through dev-dependencies, so nothing in
here assumes a DAG. Everything works on dense integer node indexes and
adjacency callables, which lets the package graph and the feature graph share
the same code. SCCs and the condensation come from networkx; the traversals
here are iterative.
"""

from __future__ import annotations

import heapq
from collections.abc import Callable, Iterable, Sequence

import networkx as nx

Successors = Callable[[int], Iterable[int]]
# Outgoing edges of a node as (edge index, neighbor) pairs.
EdgesOf = Callable[[int], Iterable[tuple[int, int]]]
EdgeFilter = Callable[[int], bool]


def _digraph(nodes: Sequence[int], successors: Successors) -> nx.DiGraph:
    graph = nx.DiGraph()
    graph.add_nodes_from(nodes)
    graph.add_edges_from(
        (node, nxt) for node in nodes for nxt in successors(node) if nxt in graph
    )
    return graph


def strongly_connected_components(
    nodes: Sequence[int],
    successors: Successors,
) -> list[list[int]]:
    """
    Strongly connected components in reverse topological order.

    A component is listed after every component it can reach. Members of a
    component keep their order in ``nodes``.
    """
    condensation = Condensation(nodes, successors)
    return [condensation.members(s) for s in reversed(condensation.topo_order())]


def non_dev_build_order(
    members: Sequence[int],
    non_dev_successors: Successors,
) -> list[int]:
    """
    Order the members of one SCC as if dev edges did not exist.

    A member comes before the members it depends on through non-dev edges.
    Ties, and any cycle left once dev edges are gone, are broken by position
    in ``members``.
    """
    if len(members) <= 1:
        return list(members)
    position = {node: i for i, node in enumerate(members)}
    indegree = dict.fromkeys(members, 0)
    edges: dict[int, list[int]] = {node: [] for node in members}
    for node in members:
        for nxt in set(non_dev_successors(node)):
            if nxt in position and nxt != node:
                edges[node].append(nxt)
                indegree[nxt] += 1

    ready = [position[n] for n in members if indegree[n] == 0]
    heapq.heapify(ready)
    remaining = set(members)
    order: list[int] = []
    while remaining:
        if not ready:
            # Still cyclic without dev edges: release the earliest member.
            heapq.heappush(ready, min(position[n] for n in remaining))
        node = members[heapq.heappop(ready)]
        if node not in remaining:
            continue
        remaining.discard(node)
        order.append(node)
        for nxt in edges[node]:
            if nxt in remaining:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    heapq.heappush(ready, position[nxt])
    return order


class Condensation:
    """
    The SCC condensation of a graph. Always acyclic.

    Components are numbered in topological order (sources first); unrelated
    components are ordered by the earliest input position of their members.
    """

    def __init__(self, nodes: Sequence[int], successors: Successors) -> None:
        nodes = list(nodes)
        position = {node: i for i, node in enumerate(nodes)}
        dag = nx.condensation(_digraph(nodes, successors))
        rank = {s: min(position[n] for n in dag.nodes[s]["members"]) for s in dag}
        order = list(nx.lexicographical_topological_sort(dag, key=rank.__getitem__))
        renumber = {old: new for new, old in enumerate(order)}

        self._sccs: list[list[int]] = [
            sorted(dag.nodes[old]["members"], key=position.__getitem__) for old in order
        ]
        self._scc_of: dict[int, int] = {
            node: renumber[old] for node, old in dag.graph["mapping"].items()
        }
        self._dag: nx.DiGraph = nx.relabel_nodes(dag, renumber)
        self._rank = [rank[old] for old in order]

    def __len__(self) -> int:
        return len(self._sccs)

    def scc_of(self, node: int) -> int:
        return self._scc_of[node]

    def members(self, scc: int) -> list[int]:
        return list(self._sccs[scc])

    def is_same_scc(self, a: int, b: int) -> bool:
        return a == b or self._scc_of[a] == self._scc_of[b]

    def multi_sccs(self) -> list[list[int]]:
        """Components with more than one member, in topological order."""
        return [list(members) for members in self._sccs if len(members) > 1]

    def successors(self, scc: int) -> set[int]:
        return set(self._dag.successors(scc))

    def externals(self) -> list[int]:
        """Components with no incoming edges."""
        return [s for s in range(len(self._sccs)) if self._dag.in_degree(s) == 0]

    def topo_order(self, restrict: set[int] | None = None) -> list[int]:
        """
        Topological order of components (sources first).

        With ``restrict``, only components containing a node in ``restrict``
        are ordered, using the edges between them.
        """
        if restrict is None:
            return list(range(len(self._sccs)))
        wanted = {self._scc_of[n] for n in restrict}
        return list(
            nx.lexicographical_topological_sort(self._dag.subgraph(wanted), key=self._rank.__getitem__)
        )


def reachable(
    initials: Iterable[int],
    edges_of: EdgesOf,
    edge_filter: EdgeFilter | None = None,
    visited: set[int] | None = None,
) -> list[int]:
    """
    Nodes reachable from ``initials``, in DFS postorder.

    Keeps separate ``discovered`` and ``finished`` sets: reaching a node that
    is discovered but not yet finished (a back edge into an in-progress cycle)
    neither re-expands it nor adds it twice. ``edge_filter`` is called exactly
    once for every edge leaving a reached node.

    Nodes in ``visited`` count as already finished: they are neither expanded
    nor returned. Used to continue an earlier traversal.
    """
    discovered: set[int] = set(visited) if visited else set()
    finished: set[int] = set()
    postorder: list[int] = []
    for start in initials:
        if start in discovered:
            continue
        discovered.add(start)
        stack: list[tuple[int, Iterable[tuple[int, int]]]] = [(start, iter(edges_of(start)))]
        while stack:
            node, it = stack[-1]
            for edge, nxt in it:
                if edge_filter is not None and not edge_filter(edge):
                    continue
                if nxt not in discovered:
                    discovered.add(nxt)
                    stack.append((nxt, iter(edges_of(nxt))))
                    break
            else:
                stack.pop()
                finished.add(node)
                postorder.append(node)
    return postorder


def topo_order(
    condensation: Condensation,
    nodes: Iterable[int],
    non_dev_successors: Successors,
) -> list[int]:
    """
    Topologically order ``nodes`` (sources first), expanding each SCC in
    non-dev build order.
    """
    node_set = set(nodes)
    order: list[int] = []
    for scc in condensation.topo_order(restrict=node_set):
        members = [n for n in condensation.members(scc) if n in node_set]
        order.extend(non_dev_build_order(members, non_dev_successors))
    return order
