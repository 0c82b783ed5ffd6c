"""
Topology analysis utilities for routing graphs.

Routing graphs may contain cycles (a router can be wired back into its own
upstream). These helpers classify a graph and find cycles using NetworkX
so callers can decide whether to accept a topology.
"""

from enum import Enum

import networkx as nx


class GraphTopology(str, Enum):
    """Shape of a routing graph."""

    EMPTY = "empty"
    SINGLE_NODE = "single_node"
    CHAIN = "chain"
    TREE = "tree"
    DAG = "dag"
    CYCLIC = "cyclic"


def has_cycles(graph: nx.DiGraph) -> bool:
    """
    Check if a directed graph has cycles.

    Args:
        graph: NetworkX DiGraph to check

    Returns:
        True if graph has cycles (self-loops included), False otherwise
    """
    return not nx.is_directed_acyclic_graph(graph)


def would_create_cycle(graph: nx.DiGraph, source: str, target: str) -> bool:
    """
    Check whether adding ``source -> target`` would close a cycle.

    A cycle appears exactly when ``target`` already reaches ``source``.
    """
    if source == target:
        return True
    if source not in graph or target not in graph:
        return False
    return nx.has_path(graph, target, source)


def find_cycles(graph: nx.DiGraph) -> list[list[str]]:
    """Return every elementary cycle, each as a list of node IDs."""
    return [list(cycle) for cycle in nx.simple_cycles(graph)]


def is_chain(graph: nx.DiGraph) -> bool:
    """
    Check if a graph is a single linear path.

    Every node has at most one input and one output and the whole graph is
    one weakly connected acyclic component.
    """
    if graph.number_of_nodes() == 0 or has_cycles(graph):
        return False
    if any(graph.in_degree(n) > 1 or graph.out_degree(n) > 1 for n in graph.nodes()):
        return False
    return nx.is_weakly_connected(graph)


def get_entry_nodes(graph: nx.DiGraph) -> list[str]:
    """Nodes without inputs (where data enters the graph)."""
    return [node for node in graph.nodes() if graph.in_degree(node) == 0]


def get_sink_nodes(graph: nx.DiGraph) -> list[str]:
    """Nodes without outputs (where data leaves the graph)."""
    return [node for node in graph.nodes() if graph.out_degree(node) == 0]


def get_isolated_nodes(graph: nx.DiGraph) -> list[str]:
    """Nodes with no connections at all."""
    return [node for node in graph.nodes() if graph.degree(node) == 0]


def detect_topology(graph: nx.DiGraph) -> GraphTopology:
    """
    Classify a routing graph.

    Checks from most specific to least specific: chain, tree, then DAG.

    Args:
        graph: NetworkX DiGraph to analyze

    Returns:
        Detected GraphTopology value
    """
    if graph.number_of_nodes() == 0:
        return GraphTopology.EMPTY
    if graph.number_of_nodes() == 1 and graph.number_of_edges() == 0:
        return GraphTopology.SINGLE_NODE
    if has_cycles(graph):
        return GraphTopology.CYCLIC
    if is_chain(graph):
        return GraphTopology.CHAIN
    if nx.is_arborescence(graph):
        return GraphTopology.TREE
    return GraphTopology.DAG
