"""
Workflow editing session.

Bundles one Graph with the services that act on it: event bus, edge
signaler, credentials, capability client and node dispatcher. The API works
against a single process-wide session obtained from get_session().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import lru_cache
from typing import Any

from daisy.capabilities.client import CapabilityClient
from daisy.capabilities.credentials import CredentialStore
from daisy.config import EngineSettings, get_settings
from daisy.models.graph import Edge, ExecutionContext, Graph, Node, NodeKind
from daisy.services.context_aggregator import aggregate_for_node
from daisy.services.edge_signaling import EdgeActivitySignaler
from daisy.services.event_bus import EventBus, EventType
from daisy.services.node_dispatcher import NodeDispatcher, NodeRunResult

logger = logging.getLogger(__name__)


class WorkflowSession:
    def __init__(
        self,
        graph: Graph | None = None,
        settings: EngineSettings | None = None,
        client: CapabilityClient | None = None,
        credentials: CredentialStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.graph = graph if graph is not None else Graph.with_starter_node()
        self.bus = EventBus()
        self.signaler = EdgeActivitySignaler(
            self.bus,
            default_duration=self.settings.edge_activation_seconds,
            test_duration=self.settings.test_animation_seconds,
        )
        self.credentials = credentials if credentials is not None else CredentialStore.from_env()
        self.client = client or CapabilityClient(self.settings)
        self.dispatcher = NodeDispatcher(
            self.graph,
            self.client,
            self.credentials,
            self.signaler,
            self.bus,
            settings=self.settings,
            sleep=sleep,
        )

    def add_node(
        self,
        kind: NodeKind,
        attributes: dict[str, Any] | None = None,
        node_id: str | None = None,
    ) -> Node:
        node = self.graph.add_node(kind, attributes=attributes, node_id=node_id)
        self.bus.emit(EventType.NODE_ADDED, node_id=node.id, kind=node.kind.value)
        logger.info("Added %s node %s", node.kind.value, node.id)
        return node

    def update_node(self, node_id: str, changes: dict[str, Any]) -> Node:
        """Apply user edits to a node's attributes."""
        return self.dispatcher.write_attributes(node_id, changes)

    async def connect(self, source_node_id: str, target_node_id: str) -> Edge:
        """
        Connect two nodes.

        An output node with nothing displayed yet is refreshed straight away.
        """
        existing = {edge.id for edge in self.graph.edges}
        edge = self.graph.connect(source_node_id, target_node_id)
        if edge.id in existing:
            return edge

        self.bus.emit(
            EventType.EDGE_ADDED,
            edge_ids=[edge.id],
            source_node_id=source_node_id,
            target_node_id=target_node_id,
        )
        logger.info("Connected %s → %s", source_node_id, target_node_id)

        target = self.graph.get_node(target_node_id)
        if target.kind == NodeKind.OUTPUT and not target.attributes.get("value"):
            await self.dispatcher.run_node(target_node_id)
        return edge

    def context(self, node_id: str) -> ExecutionContext:
        return aggregate_for_node(self.graph, node_id)

    async def run_node(self, node_id: str) -> NodeRunResult:
        return await self.dispatcher.run_node(node_id)

    def test_animation(self) -> list[str]:
        edge_ids = [edge.id for edge in self.graph.edges]
        self.signaler.test_animation(edge_ids)
        return edge_ids


@lru_cache(maxsize=1)
def get_session() -> WorkflowSession:
    """Get or create the process-wide session."""
    return WorkflowSession()


def reset_session() -> WorkflowSession:
    """Discard the process-wide session and start a fresh one."""
    get_session.cache_clear()
    return get_session()
