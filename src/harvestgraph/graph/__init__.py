"""
Operational knowledge graph.

Typed nodes and edges derived from source rows, with deterministic identity
and opaque per-type property payloads.

Backends:
- NetworkX in-memory store for development and tests
- SQLAlchemy store over the graph_nodes / graph_edges tables
"""

from harvestgraph.graph.schema import (
    GraphNode,
    NodeType,
    format_node_id,
    node_type_prefix,
    parse_node_id,
)
from harvestgraph.graph.edges import (
    EdgeType,
    GraphEdge,
    format_edge_id,
)
from harvestgraph.graph.properties import (
    PROPERTIES_BY_NODE_TYPE,
    GraphProperties,
    load_properties,
)
from harvestgraph.graph.store import (
    GraphStatistics,
    GraphStore,
    NetworkXGraphStore,
    create_graph_store,
)

__all__ = [
    # Nodes
    "GraphNode",
    "NodeType",
    "format_node_id",
    "node_type_prefix",
    "parse_node_id",
    # Edges
    "EdgeType",
    "GraphEdge",
    "format_edge_id",
    # Payloads
    "GraphProperties",
    "PROPERTIES_BY_NODE_TYPE",
    "load_properties",
    # Stores
    "GraphStatistics",
    "GraphStore",
    "NetworkXGraphStore",
    "create_graph_store",
]
