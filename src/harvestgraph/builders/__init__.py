"""
Domain graph builders.

One builder per bounded domain; each reads its source tables for a site
and upserts the derived nodes and edges:
- Package: packages, inventory movements, locations, lineage
- Task: tasks, time entries, users, dependencies
- Telemetry: sensor streams, irrigation runs, emitters, alerts
- Genetics: strains, steering profiles, harvests, lab tests
"""

from harvestgraph.builders.base import (
    BuildResult,
    GraphBuilder,
    is_schema_drift,
)
from harvestgraph.builders.genetics import GeneticsGraphBuilder
from harvestgraph.builders.package import PackageGraphBuilder
from harvestgraph.builders.task import TaskGraphBuilder
from harvestgraph.builders.telemetry import TelemetryGraphBuilder, stream_type_name


def create_default_builders(session_factory, store) -> list[GraphBuilder]:
    """Create the four domain builders over one source session factory."""
    return [
        PackageGraphBuilder(session_factory, store),
        TaskGraphBuilder(session_factory, store),
        TelemetryGraphBuilder(session_factory, store),
        GeneticsGraphBuilder(session_factory, store),
    ]


__all__ = [
    # Base
    "BuildResult",
    "GraphBuilder",
    "is_schema_drift",
    # Builders
    "PackageGraphBuilder",
    "TaskGraphBuilder",
    "TelemetryGraphBuilder",
    "GeneticsGraphBuilder",
    "create_default_builders",
    "stream_type_name",
]
