# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Flow Graph Scheduling

Execution ordering using topological sort (Kahn's algorithm), plus the
single cycle-detection primitive shared by the executor and export
validation.
"""

from typing import List, Set, Dict, Iterable, Tuple
from collections import deque

from visualflow.core.logging import get_logger
from .models import FlowNode, FlowEdge
from .context import ExecutionContext
from .exceptions import GraphCycleError

logger = get_logger(__name__)


def prune_dangling_edges(
    nodes: Iterable[FlowNode],
    edges: Iterable[FlowEdge]
) -> Tuple[List[FlowEdge], List[FlowEdge]]:
    """
    Split edges into (kept, dropped).

    An edge is dropped when its source or target is not a node in the graph.
    """
    node_ids = {node.id for node in nodes}
    kept: List[FlowEdge] = []
    dropped: List[FlowEdge] = []

    for edge in edges:
        if edge.source in node_ids and edge.target in node_ids:
            kept.append(edge)
        else:
            dropped.append(edge)

    if dropped:
        logger.warning(
            "Dropping dangling edges",
            extra={"edges": [f"{e.source}->{e.target}" for e in dropped]}
        )

    return kept, dropped


def _kahn(node_ids: List[str], edges: Iterable[FlowEdge]) -> Tuple[List[str], Dict[str, int]]:
    """Run Kahn's algorithm. Returns (emitted ids, remaining in-degrees)."""
    graph: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    in_degree: Dict[str, int] = {node_id: 0 for node_id in node_ids}

    for edge in edges:
        if edge.source not in graph or edge.target not in in_degree:
            continue
        graph[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    # Seed in declaration order so ties are deterministic
    queue = deque([node_id for node_id in node_ids if in_degree[node_id] == 0])
    emitted: List[str] = []
    processed: Set[str] = set()

    while queue:
        node_id = queue.popleft()
        if node_id in processed:
            continue
        emitted.append(node_id)
        processed.add(node_id)

        for neighbor in graph[node_id]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0 and neighbor not in processed:
                queue.append(neighbor)

    return emitted, in_degree


def find_cycle_nodes(node_ids: Iterable[str], edges: Iterable[FlowEdge]) -> Set[str]:
    """
    Nodes that cannot be ordered: members of a cycle or downstream of one.

    Empty set means the graph is acyclic.
    """
    node_ids = list(dict.fromkeys(node_ids))
    emitted, _ = _kahn(node_ids, edges)
    return set(node_ids) - set(emitted)


def order(nodes: List[FlowNode], edges: List[FlowEdge]) -> List[FlowNode]:
    """
    Topologically order nodes.

    Ties are broken by declaration order; nodes with no edges run in
    declaration order. Raises GraphCycleError when edges exist and not
    every node could be ordered.
    """
    by_id: Dict[str, FlowNode] = {}
    for node in nodes:
        by_id.setdefault(node.id, node)

    edges = list(edges)
    emitted, _ = _kahn(list(by_id), edges)

    if edges and len(emitted) != len(by_id):
        unprocessed = set(by_id) - set(emitted)
        raise GraphCycleError(unprocessed)

    return [by_id[node_id] for node_id in emitted]


def incoming_edges(node_id: str, edges: Iterable[FlowEdge]) -> List[FlowEdge]:
    """Edges targeting node_id, in declaration order"""
    return [edge for edge in edges if edge.target == node_id]


def incoming_nodes(node_id: str, edges: Iterable[FlowEdge]) -> List[str]:
    return [edge.source for edge in incoming_edges(node_id, edges)]


def dependencies_resolved(node_id: str, edges: Iterable[FlowEdge], context: ExecutionContext) -> bool:
    """True when every upstream node already has a result"""
    return all(source in context.results for source in incoming_nodes(node_id, edges))
