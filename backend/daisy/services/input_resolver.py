"""
Input resolution: which nodes feed a given node.

Results follow edge-insertion order (the order inputs were connected), not a
topological order. Nothing here mutates the graph.
"""

from __future__ import annotations

import logging

from daisy.models.graph import Edge, Graph, Node

logger = logging.getLogger(__name__)


def get_incoming_edges(graph: Graph, target_id: str) -> list[Edge]:
    """Return the edges pointing into target_id, in insertion order."""
    return [
        edge.model_copy()
        for edge in graph.edges
        if edge.target_node_id == target_id
    ]


def get_incoming_nodes(graph: Graph, target_id: str) -> list[Node]:
    """
    Return snapshots of every node with an edge into target_id.

    An unknown target or a target with no incoming edges yields an empty list.
    Edges whose source node cannot be found are skipped.
    """
    incoming: list[Node] = []
    for edge in graph.edges:
        if edge.target_node_id != target_id:
            continue
        source = graph.nodes.get(edge.source_node_id)
        if source is None:
            logger.warning(
                "Edge %s references missing source node %s",
                edge.id,
                edge.source_node_id,
            )
            continue
        incoming.append(source.model_copy(deep=True))

    logger.debug("Resolved %d incoming nodes for %s", len(incoming), target_id)
    return incoming
