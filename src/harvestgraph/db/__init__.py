"""
Database module for HarvestGraph.
"""

from harvestgraph.db.orm import (
    AnomalyResultRecord,
    Base,
    GraphEdgeRecord,
    GraphNodeRecord,
)
from harvestgraph.db.session import (
    create_engine,
    create_session_factory,
    init_graph_tables,
)

__all__ = [
    "Base",
    "GraphNodeRecord",
    "GraphEdgeRecord",
    "AnomalyResultRecord",
    "create_engine",
    "create_session_factory",
    "init_graph_tables",
]
