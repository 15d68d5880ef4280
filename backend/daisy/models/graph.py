"""
Graph models: the in-session representation of a workflow canvas.

The Graph owns every Node. Other components receive deep copies (snapshots)
and write back only through Graph.update_node_attributes, which replaces the
attribute map of exactly one node.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NodeKind(str, Enum):
    TEXT_INPUT = "textInput"
    IMAGE_INPUT = "imageInput"
    AI_PROMPT = "aiPrompt"
    TEXT_PROCESSOR = "textProcessor"
    IMAGE_GENERATION = "imageGeneration"
    VIDEO_GENERATION = "videoGeneration"
    OUTPUT = "output"


class NodeNotFoundError(KeyError):
    """Raised when a node id does not exist in the graph."""

    def __init__(self, node_id: str):
        super().__init__(node_id)
        self.node_id = node_id

    def __str__(self) -> str:
        return f"Node '{self.node_id}' not found in graph"


class Node(BaseModel):
    id: str
    kind: NodeKind
    attributes: dict[str, Any] = Field(default_factory=dict)


class Edge(BaseModel):
    id: str
    source_node_id: str
    target_node_id: str


class ConnectedInput(BaseModel):
    """Read-only summary of an upstream node, used for input previews."""
    node_id: str
    kind: NodeKind
    attributes: dict[str, Any] = Field(default_factory=dict)


class ExecutionContext(BaseModel):
    text_context: str = ""
    image_context: str | None = None
    connected_inputs: list[ConnectedInput] = Field(default_factory=list)


def edge_id_for(source_node_id: str, target_node_id: str) -> str:
    return f"edge-{source_node_id}-{target_node_id}"


class Graph(BaseModel):
    nodes: dict[str, Node] = Field(default_factory=dict)
    edges: list[Edge] = Field(default_factory=list)

    @classmethod
    def with_starter_node(cls) -> Graph:
        """Create a graph pre-seeded with the welcome text node."""
        graph = cls()
        graph.add_node(
            NodeKind.TEXT_INPUT,
            attributes={
                "label": "Welcome Text",
                "value": (
                    "Welcome to Daisy AI Workflow Editor! "
                    "Drag nodes from the sidebar to get started."
                ),
            },
            node_id="welcome",
        )
        return graph

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def has_node(self, node_id: str) -> bool:
        return node_id in self.nodes

    def get_node(self, node_id: str) -> Node:
        """Return a snapshot of the node with the given id."""
        node = self.nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node.model_copy(deep=True)

    def snapshot(self) -> Graph:
        return self.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_node(
        self,
        kind: NodeKind,
        attributes: dict[str, Any] | None = None,
        node_id: str | None = None,
    ) -> Node:
        """
        Create a node of the given kind.

        The kind's default attributes are applied first, then overridden by
        the given attributes.
        """
        from daisy.models.node_registry import get_node_spec

        kind = NodeKind(kind)
        if node_id is None:
            node_id = f"{kind.value}_{uuid.uuid4().hex[:8]}"
        if node_id in self.nodes:
            raise ValueError(f"Node '{node_id}' already exists")

        merged = dict(get_node_spec(kind).default_attributes)
        merged.update(attributes or {})
        node = Node(id=node_id, kind=kind, attributes=merged)
        self.nodes[node_id] = node
        return node.model_copy(deep=True)

    def connect(self, source_node_id: str, target_node_id: str) -> Edge:
        """
        Connect source → target.

        Both nodes must exist. Self-loops are rejected. Connecting an ordered
        pair that is already connected returns the existing edge.
        """
        if source_node_id not in self.nodes:
            raise NodeNotFoundError(source_node_id)
        if target_node_id not in self.nodes:
            raise NodeNotFoundError(target_node_id)
        if source_node_id == target_node_id:
            raise ValueError(f"Cannot connect node '{source_node_id}' to itself")

        for edge in self.edges:
            if edge.source_node_id == source_node_id and edge.target_node_id == target_node_id:
                return edge.model_copy()

        edge = Edge(
            id=edge_id_for(source_node_id, target_node_id),
            source_node_id=source_node_id,
            target_node_id=target_node_id,
        )
        self.edges.append(edge)
        return edge.model_copy()

    def update_node_attributes(self, node_id: str, changes: dict[str, Any]) -> Node:
        """
        Merge changes into one node's attributes.

        A new attribute map is built and swapped in, so readers holding the
        previous map never observe a partial update.
        """
        node = self.nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        node.attributes = {**node.attributes, **changes}
        return node.model_copy(deep=True)
