"""
Graph Store for the operational knowledge graph.

Provides a unified upsert/query interface over nodes and edges, keyed by
deterministic id, type and site. Two backends are available: an in-memory
NetworkX store for development and tests, and a SQLAlchemy store
(``harvestgraph.graph.sql_store``) for production.
"""

import copy
import json
import logging
import math
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

import networkx as nx

from harvestgraph.exceptions import InvalidNodeIdError, NodeNotFoundError
from harvestgraph.graph.edges import EdgeType, GraphEdge, format_edge_id
from harvestgraph.graph.schema import GraphNode, NodeType, format_node_id, parse_node_id

logger = logging.getLogger(__name__)


@dataclass
class GraphStatistics:
    """Counts of active nodes and edges for a site."""

    site_id: str
    node_counts: dict[str, int] = field(default_factory=dict)
    edge_counts: dict[str, int] = field(default_factory=dict)
    anomalous_nodes: int = 0
    last_updated_at: Optional[datetime] = None

    @property
    def total_nodes(self) -> int:
        return sum(self.node_counts.values())

    @property
    def total_edges(self) -> int:
        return sum(self.edge_counts.values())


# =============================================================================
# Record validation
# =============================================================================


def _payload_error(payload: Optional[str], required: bool) -> Optional[str]:
    if payload is None:
        return "missing properties payload" if required else None
    try:
        parsed = json.loads(payload)
    except (TypeError, ValueError):
        return "properties payload is not valid JSON"
    if not isinstance(parsed, dict):
        return "properties payload is not a JSON object"
    return None


def validate_node(node: GraphNode) -> Optional[str]:
    """Return a rejection reason for a malformed node, or None if it is valid."""
    try:
        expected_id = format_node_id(node.node_type, node.source_entity_id)
    except ValueError:
        return f"unknown node type {node.node_type!r}"
    if node.node_id != expected_id:
        return f"node id does not match {expected_id}"
    if not node.site_id:
        return "missing site id"
    if node.anomaly_score is not None and not isinstance(node.anomaly_score, (int, float)):
        return "anomaly score is not a number"
    if node.anomaly_score is not None and not 0.0 <= node.anomaly_score <= 1.0:
        return f"anomaly score {node.anomaly_score} out of range"
    return _payload_error(node.properties_json, required=True)


def validate_edge(edge: GraphEdge) -> Optional[str]:
    """Return a rejection reason for a malformed edge, or None if it is valid."""
    try:
        parse_node_id(edge.source_node_id)
        parse_node_id(edge.target_node_id)
        expected_id = format_edge_id(edge.edge_type, edge.source_node_id, edge.target_node_id)
    except (InvalidNodeIdError, ValueError) as e:
        return str(e)
    if edge.edge_id != expected_id:
        return f"edge id does not match {expected_id}"
    if not edge.site_id:
        return "missing site id"
    if isinstance(edge.weight, bool) or not isinstance(edge.weight, (int, float)):
        return "edge weight is not a number"
    if not math.isfinite(edge.weight):
        return "edge weight is not finite"
    return _payload_error(edge.properties_json, required=False)


# =============================================================================
# Store interface
# =============================================================================


class GraphStore(ABC):
    """Abstract base class for graph stores."""

    async def connect(self) -> None:
        """Prepare the store for use."""

    async def close(self) -> None:
        """Release resources held by the store."""

    async def __aenter__(self) -> "GraphStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Writes

    @abstractmethod
    async def upsert_nodes(self, nodes: Iterable[GraphNode]) -> int:
        """
        Insert or merge nodes keyed by node id.

        Merging replaces label, payload and timestamps and reactivates the
        node; the anomaly score is kept unless the incoming node sets one.
        Malformed nodes are logged and skipped.

        Returns:
            Number of nodes accepted
        """

    @abstractmethod
    async def upsert_edges(self, edges: Iterable[GraphEdge]) -> int:
        """Insert or merge edges keyed by edge id. Returns number accepted."""

    @abstractmethod
    async def set_anomaly_score(
        self, node_id: str, score: float, explanation: Optional[str]
    ) -> None:
        """Record the latest anomaly score on an existing node."""

    @abstractmethod
    async def deactivate_nodes_not_in_set(
        self, site_id: str, node_type: NodeType, keep_ids: set[str]
    ) -> int:
        """Soft-delete active nodes of a type whose ids are not kept."""

    @abstractmethod
    async def deactivate_edges_not_in_set(
        self, site_id: str, edge_type: EdgeType, keep_ids: set[str]
    ) -> int:
        """Soft-delete active edges of a type whose ids are not kept."""

    # Reads

    @abstractmethod
    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        """Get a node by id, active or not."""

    @abstractmethod
    async def get_nodes_by_type(
        self, site_id: str, node_type: NodeType, active_only: bool = True
    ) -> list[GraphNode]:
        """Get all nodes of a type for a site."""

    @abstractmethod
    async def get_nodes_by_source_ids(
        self, site_id: str, node_type: NodeType, source_ids: Iterable[str]
    ) -> list[GraphNode]:
        """Get nodes of a type by their source entity ids."""

    @abstractmethod
    async def get_outgoing_edges(
        self, node_id: str, edge_type: Optional[EdgeType] = None, active_only: bool = True
    ) -> list[GraphEdge]:
        """Get edges whose source is the node."""

    @abstractmethod
    async def get_incoming_edges(
        self, node_id: str, edge_type: Optional[EdgeType] = None, active_only: bool = True
    ) -> list[GraphEdge]:
        """Get edges whose target is the node."""

    @abstractmethod
    async def get_edges_by_type(
        self, site_id: str, edge_type: EdgeType, active_only: bool = True
    ) -> list[GraphEdge]:
        """Get all edges of a type for a site."""

    @abstractmethod
    async def get_edges_between(
        self, source_node_id: str, target_node_id: str, active_only: bool = True
    ) -> list[GraphEdge]:
        """Get edges from one node to another."""

    @abstractmethod
    async def get_anomalous_nodes(
        self, site_id: str, min_score: float = 0.7, limit: int = 100
    ) -> list[GraphNode]:
        """Get active nodes at or above a score, highest first."""

    @abstractmethod
    async def get_statistics(self, site_id: str) -> GraphStatistics:
        """Get node/edge counts by type for a site."""

    async def get_neighborhood(
        self, node_id: str, depth: int = 1, max_nodes: int = 500
    ) -> tuple[list[GraphNode], list[GraphEdge]]:
        """
        Breadth-first expansion around a node over active edges in both directions.

        Args:
            node_id: Center node
            depth: Number of hops to expand
            max_nodes: Stop expanding once this many nodes are collected

        Returns:
            (nodes, edges) reachable within depth; edges only between collected nodes
        """
        center = await self.get_node(node_id)
        if center is None:
            raise NodeNotFoundError(node_id)

        visited: dict[str, GraphNode] = {center.node_id: center}
        edges: dict[str, GraphEdge] = {}
        frontier = deque([(center.node_id, 0)])

        while frontier:
            current, level = frontier.popleft()
            if level >= depth:
                continue
            adjacent = await self.get_outgoing_edges(current)
            adjacent += await self.get_incoming_edges(current)
            for edge in adjacent:
                neighbor_id = (
                    edge.target_node_id if edge.source_node_id == current else edge.source_node_id
                )
                if neighbor_id not in visited and len(visited) < max_nodes:
                    neighbor = await self.get_node(neighbor_id)
                    if neighbor is not None and neighbor.is_active:
                        visited[neighbor_id] = neighbor
                        frontier.append((neighbor_id, level + 1))
                if neighbor_id in visited:
                    edges[edge.edge_id] = edge

        return list(visited.values()), list(edges.values())


# =============================================================================
# In-memory backend
# =============================================================================


class NetworkXGraphStore(GraphStore):
    """
    In-memory NetworkX store for development/testing.

    Nodes and edges are kept in dict indexes keyed by id; the MultiDiGraph
    mirrors the topology for graph algorithms. Callers always receive
    copies, so mutating a returned node never changes the store.
    """

    def __init__(self):
        self.graph = nx.MultiDiGraph()
        self._nodes: dict[str, GraphNode] = {}
        self._edges: dict[str, GraphEdge] = {}

    async def connect(self) -> None:
        logger.info("Initialized NetworkX in-memory graph store")

    async def close(self) -> None:
        """Clear the graph."""
        self.graph.clear()
        self._nodes.clear()
        self._edges.clear()

    async def upsert_nodes(self, nodes: Iterable[GraphNode]) -> int:
        accepted = 0
        for node in nodes:
            reason = validate_node(node)
            if reason:
                logger.warning(f"Rejected node {node.node_id}: {reason}")
                continue

            incoming = copy.copy(node)
            incoming.node_type = NodeType(incoming.node_type)
            existing = self._nodes.get(node.node_id)
            if existing is not None:
                incoming.created_at = existing.created_at
                if incoming.anomaly_score is None:
                    incoming.anomaly_score = existing.anomaly_score
                    incoming.anomaly_explanation = existing.anomaly_explanation
            incoming.is_active = True
            incoming.updated_at = datetime.utcnow()

            self._nodes[node.node_id] = incoming
            self.graph.add_node(node.node_id, node_type=incoming.node_type.value, site_id=incoming.site_id)
            accepted += 1
        return accepted

    async def upsert_edges(self, edges: Iterable[GraphEdge]) -> int:
        accepted = 0
        for edge in edges:
            reason = validate_edge(edge)
            if reason:
                logger.warning(f"Rejected edge {edge.edge_id}: {reason}")
                continue

            incoming = copy.copy(edge)
            incoming.edge_type = EdgeType(incoming.edge_type)
            existing = self._edges.get(edge.edge_id)
            if existing is not None:
                incoming.created_at = existing.created_at
            incoming.is_active = True
            incoming.updated_at = datetime.utcnow()

            self._edges[edge.edge_id] = incoming
            self.graph.add_edge(
                edge.source_node_id,
                edge.target_node_id,
                key=edge.edge_id,
                edge_type=incoming.edge_type.value,
                weight=incoming.weight,
            )
            accepted += 1
        return accepted

    async def set_anomaly_score(
        self, node_id: str, score: float, explanation: Optional[str]
    ) -> None:
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        node.set_anomaly_score(score, explanation)

    async def deactivate_nodes_not_in_set(
        self, site_id: str, node_type: NodeType, keep_ids: set[str]
    ) -> int:
        count = 0
        for node in self._nodes.values():
            if (
                node.site_id == site_id
                and node.node_type == node_type
                and node.is_active
                and node.node_id not in keep_ids
            ):
                node.deactivate()
                count += 1
        if count:
            logger.debug(f"Deactivated {count} nodes of type {node_type.value}")
        return count

    async def deactivate_edges_not_in_set(
        self, site_id: str, edge_type: EdgeType, keep_ids: set[str]
    ) -> int:
        count = 0
        for edge in self._edges.values():
            if (
                edge.site_id == site_id
                and edge.edge_type == edge_type
                and edge.is_active
                and edge.edge_id not in keep_ids
            ):
                edge.deactivate()
                count += 1
        if count:
            logger.debug(f"Deactivated {count} edges of type {edge_type.value}")
        return count

    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        node = self._nodes.get(node_id)
        return copy.copy(node) if node else None

    async def get_nodes_by_type(
        self, site_id: str, node_type: NodeType, active_only: bool = True
    ) -> list[GraphNode]:
        return [
            copy.copy(n)
            for n in self._nodes.values()
            if n.site_id == site_id
            and n.node_type == node_type
            and (n.is_active or not active_only)
        ]

    async def get_nodes_by_source_ids(
        self, site_id: str, node_type: NodeType, source_ids: Iterable[str]
    ) -> list[GraphNode]:
        nodes = []
        for source_id in source_ids:
            node = self._nodes.get(format_node_id(node_type, source_id))
            if node is not None and node.site_id == site_id:
                nodes.append(copy.copy(node))
        return nodes

    def _edges_for(self, pairs, edge_type: Optional[EdgeType], active_only: bool) -> list[GraphEdge]:
        result = []
        for _, _, key in pairs:
            edge = self._edges.get(key)
            if edge is None:
                continue
            if edge_type is not None and edge.edge_type != edge_type:
                continue
            if active_only and not edge.is_active:
                continue
            result.append(copy.copy(edge))
        return result

    async def get_outgoing_edges(
        self, node_id: str, edge_type: Optional[EdgeType] = None, active_only: bool = True
    ) -> list[GraphEdge]:
        if node_id not in self.graph:
            return []
        return self._edges_for(self.graph.out_edges(node_id, keys=True), edge_type, active_only)

    async def get_incoming_edges(
        self, node_id: str, edge_type: Optional[EdgeType] = None, active_only: bool = True
    ) -> list[GraphEdge]:
        if node_id not in self.graph:
            return []
        return self._edges_for(self.graph.in_edges(node_id, keys=True), edge_type, active_only)

    async def get_edges_by_type(
        self, site_id: str, edge_type: EdgeType, active_only: bool = True
    ) -> list[GraphEdge]:
        return [
            copy.copy(e)
            for e in self._edges.values()
            if e.site_id == site_id
            and e.edge_type == edge_type
            and (e.is_active or not active_only)
        ]

    async def get_edges_between(
        self, source_node_id: str, target_node_id: str, active_only: bool = True
    ) -> list[GraphEdge]:
        if not self.graph.has_edge(source_node_id, target_node_id):
            return []
        keys = self.graph[source_node_id][target_node_id].keys()
        return self._edges_for(
            ((source_node_id, target_node_id, k) for k in keys), None, active_only
        )

    async def get_anomalous_nodes(
        self, site_id: str, min_score: float = 0.7, limit: int = 100
    ) -> list[GraphNode]:
        nodes = [
            n
            for n in self._nodes.values()
            if n.site_id == site_id
            and n.is_active
            and n.anomaly_score is not None
            and n.anomaly_score >= min_score
        ]
        nodes.sort(key=lambda n: n.anomaly_score, reverse=True)
        return [copy.copy(n) for n in nodes[:limit]]

    async def get_statistics(self, site_id: str) -> GraphStatistics:
        nodes = [n for n in self._nodes.values() if n.site_id == site_id and n.is_active]
        edges = [e for e in self._edges.values() if e.site_id == site_id and e.is_active]
        timestamps = [n.updated_at for n in nodes] + [e.updated_at for e in edges]
        return GraphStatistics(
            site_id=site_id,
            node_counts=dict(Counter(n.node_type.value for n in nodes)),
            edge_counts=dict(Counter(e.edge_type.value for e in edges)),
            anomalous_nodes=sum(1 for n in nodes if n.is_anomalous),
            last_updated_at=max(timestamps) if timestamps else None,
        )


# Factory function

def create_graph_store(backend_type: str = "networkx", session_factory=None) -> GraphStore:
    """
    Create a graph store with the specified backend.

    Args:
        backend_type: One of "networkx", "sql"
        session_factory: async_sessionmaker for the graph tables (sql only)

    Returns:
        Configured GraphStore instance
    """
    if backend_type == "networkx":
        return NetworkXGraphStore()
    if backend_type == "sql":
        if session_factory is None:
            raise ValueError("The sql graph store requires a session factory")
        from harvestgraph.graph.sql_store import SqlGraphStore
        return SqlGraphStore(session_factory)
    raise ValueError(f"Unknown backend type: {backend_type}. Supported: networkx, sql")
