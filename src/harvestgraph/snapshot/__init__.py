"""
Snapshot orchestration and background scheduling.
"""

from harvestgraph.snapshot.orchestrator import (
    INCREMENTAL_NODE_TYPES,
    GraphSnapshotOrchestrator,
    GraphUpdate,
    SnapshotMode,
    SnapshotResult,
)
from harvestgraph.snapshot.scheduler import (
    ActiveSiteProvider,
    GraphSnapshotScheduler,
    SchedulerJob,
    SchedulerOptions,
    SqlActiveSiteProvider,
    StaticSiteProvider,
)

__all__ = [
    "INCREMENTAL_NODE_TYPES",
    "ActiveSiteProvider",
    "GraphSnapshotOrchestrator",
    "GraphSnapshotScheduler",
    "GraphUpdate",
    "SchedulerJob",
    "SchedulerOptions",
    "SnapshotMode",
    "SnapshotResult",
    "SqlActiveSiteProvider",
    "StaticSiteProvider",
]
