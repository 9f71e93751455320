"""
Graph snapshot orchestration.

Runs the domain builders for a site in one of three modes:
- Full: every builder, no watermark, then soft-deletes what the rebuild
  no longer emits
- Partial: the minimal set of builders covering the requested node types
- Incremental: builders implicated by update hints, each from the earliest
  hint for its domain

Builders run concurrently; a failing builder fails the snapshot result but
never raises out of the orchestrator.
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

from harvestgraph.builders.base import BuildResult, GraphBuilder
from harvestgraph.graph.edges import EdgeType
from harvestgraph.graph.schema import NodeType
from harvestgraph.graph.store import GraphStore

logger = logging.getLogger(__name__)


class SnapshotMode(str, Enum):
    """How a snapshot selects builders and watermarks."""

    FULL = "full"
    PARTIAL = "partial"
    INCREMENTAL = "incremental"


@dataclass
class GraphUpdate:
    """Hint that source rows of a node type changed at a point in time."""

    node_type: NodeType
    occurred_at: datetime
    source_entity_id: Optional[str] = None


@dataclass
class SnapshotResult:
    """Uniform result of a full, partial or incremental snapshot."""

    site_id: str
    mode: SnapshotMode
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    success: bool = False
    nodes_created: int = 0
    edges_created: int = 0
    nodes_updated: int = 0
    edges_updated: int = 0
    nodes_deactivated: int = 0
    edges_deactivated: int = 0
    builders_run: list[str] = field(default_factory=list)
    node_counts_by_type: dict[str, int] = field(default_factory=dict)
    edge_counts_by_type: dict[str, int] = field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get snapshot duration in seconds."""
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def total_nodes(self) -> int:
        return self.nodes_created + self.nodes_updated

    @property
    def total_edges(self) -> int:
        return self.edges_created + self.edges_updated


# Node types whose changes the background incremental check looks for
INCREMENTAL_NODE_TYPES = (
    NodeType.PACKAGE,
    NodeType.INVENTORY_MOVEMENT,
    NodeType.TASK,
    NodeType.TIME_ENTRY,
    NodeType.IRRIGATION_RUN,
    NodeType.SENSOR_STREAM,
    NodeType.ALERT_INSTANCE,
    NodeType.STRAIN,
    NodeType.HARVEST,
    NodeType.LAB_TEST_BATCH,
)


class GraphSnapshotOrchestrator:
    """
    Coordinate builder runs for a site.

    Parallelism is bounded by a semaphore sized to the source connection
    pool, since every builder holds its own connection while it runs.
    """

    def __init__(
        self,
        builders: Sequence[GraphBuilder],
        store: GraphStore,
        deactivate_stale: bool = True,
        max_parallel_builders: Optional[int] = None,
        history_size: int = 100,
    ):
        self.builders = list(builders)
        self.store = store
        self.deactivate_stale = deactivate_stale
        self._semaphore = asyncio.Semaphore(max_parallel_builders or max(len(self.builders), 1))
        self._history: deque[SnapshotResult] = deque(maxlen=history_size)

        self._owner: dict[NodeType, GraphBuilder] = {}
        for builder in self.builders:
            for node_type in builder.node_types:
                self._owner.setdefault(node_type, builder)

    def builder_for(self, node_type: NodeType) -> Optional[GraphBuilder]:
        """Get the builder that owns a node type."""
        return self._owner.get(NodeType(node_type))

    def builders_for(self, node_types: Iterable[NodeType]) -> list[GraphBuilder]:
        """Minimal covering set of builders for the node types, in registration order."""
        wanted = {self.builder_for(t) for t in node_types}
        return [b for b in self.builders if b in wanted]

    async def build_full_snapshot(self, site_id: str) -> SnapshotResult:
        """Run all builders without a watermark."""
        logger.info(f"Starting full graph snapshot for site {site_id}")
        result = SnapshotResult(site_id=site_id, mode=SnapshotMode.FULL)
        await self._execute(result, [(b, None) for b in self.builders])
        return result

    async def build_partial_snapshot(
        self, site_id: str, node_types: Iterable[NodeType]
    ) -> SnapshotResult:
        """Run only the builders that own the requested node types."""
        node_types = {NodeType(t) for t in node_types}
        logger.info(
            f"Starting partial graph snapshot for site {site_id}, "
            f"types: {', '.join(sorted(t.value for t in node_types))}"
        )
        result = SnapshotResult(site_id=site_id, mode=SnapshotMode.PARTIAL)
        await self._execute(result, [(b, None) for b in self.builders_for(node_types)])
        return result

    async def apply_incremental_updates(
        self, site_id: str, updates: Iterable[GraphUpdate]
    ) -> SnapshotResult:
        """
        Rebuild the domains touched by a set of update hints.

        Hints are grouped by owning builder; each builder runs once with the
        earliest hint time of its group as its watermark.
        """
        updates = list(updates)
        logger.info(f"Applying {len(updates)} incremental updates for site {site_id}")

        watermarks: dict[str, datetime] = {}
        for update in updates:
            builder = self.builder_for(update.node_type)
            if builder is None:
                logger.debug(f"No builder owns node type {update.node_type}, ignoring update")
                continue
            current = watermarks.get(builder.name)
            if current is None or update.occurred_at < current:
                watermarks[builder.name] = update.occurred_at

        plan = [(b, watermarks[b.name]) for b in self.builders if b.name in watermarks]
        result = SnapshotResult(site_id=site_id, mode=SnapshotMode.INCREMENTAL)
        await self._execute(result, plan)
        return result

    async def _run_builder(
        self, builder: GraphBuilder, site_id: str, since: Optional[datetime]
    ) -> BuildResult:
        async with self._semaphore:
            return await builder.build(site_id, since)

    async def _execute(
        self,
        result: SnapshotResult,
        plan: list[tuple[GraphBuilder, Optional[datetime]]],
    ) -> None:
        result.builders_run = [b.name for b, _ in plan]
        outcomes = await asyncio.gather(
            *(self._run_builder(b, result.site_id, since) for b, since in plan),
            return_exceptions=True,
        )

        succeeded: dict[str, BuildResult] = {}
        errors = []
        for (builder, _), outcome in zip(plan, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error(f"{builder.name} builder failed for site {result.site_id}: {outcome}")
                errors.append(f"{builder.name}: {outcome}")
                continue
            succeeded[builder.name] = outcome

        nodes = sum(r.nodes for r in succeeded.values())
        edges = sum(r.edges for r in succeeded.values())
        if result.mode == SnapshotMode.INCREMENTAL:
            result.nodes_updated, result.edges_updated = nodes, edges
        else:
            result.nodes_created, result.edges_created = nodes, edges

        for build in succeeded.values():
            for node_type, ids in build.node_ids.items():
                key = NodeType(node_type).value
                result.node_counts_by_type[key] = result.node_counts_by_type.get(key, 0) + len(ids)
            for edge_type, ids in build.edge_ids.items():
                key = EdgeType(edge_type).value
                result.edge_counts_by_type[key] = result.edge_counts_by_type.get(key, 0) + len(ids)

        if result.mode == SnapshotMode.FULL and self.deactivate_stale:
            try:
                await self._deactivate_stale(result, plan, succeeded)
            except Exception as e:
                logger.error(f"Stale deactivation failed for site {result.site_id}: {e}")
                errors.append(f"deactivation: {e}")

        result.success = not errors
        result.error_message = "; ".join(errors) if errors else None
        result.completed_at = datetime.utcnow()
        self._history.append(result)

        if result.success:
            logger.info(
                f"Completed {result.mode.value} graph snapshot for site {result.site_id}: "
                f"{nodes} nodes, {edges} edges in {result.duration_seconds:.1f}s"
            )
        else:
            logger.error(
                f"Failed {result.mode.value} graph snapshot for site {result.site_id}: "
                f"{result.error_message}"
            )

    async def _deactivate_stale(
        self,
        result: SnapshotResult,
        plan: list[tuple[GraphBuilder, Optional[datetime]]],
        succeeded: dict[str, BuildResult],
    ) -> None:
        """
        Soft-delete nodes and edges the full rebuild no longer emits.

        A type is only swept when every builder that owns it completed the
        query group producing it; edge types shared between builders (such
        as CreatedBy) keep the union of all emitted ids.
        """
        keep_nodes: dict[NodeType, set[str]] = defaultdict(set)
        keep_edges: dict[EdgeType, set[str]] = defaultdict(set)
        blocked_nodes: set[NodeType] = set()
        blocked_edges: set[EdgeType] = set()

        for builder, _ in plan:
            build = succeeded.get(builder.name)
            for node_type in builder.node_types:
                if build is None or node_type not in build.node_ids:
                    blocked_nodes.add(node_type)
                else:
                    keep_nodes[node_type] |= build.node_ids[node_type]
            for edge_type in builder.edge_types:
                if build is None or edge_type not in build.edge_ids:
                    blocked_edges.add(edge_type)
                else:
                    keep_edges[edge_type] |= build.edge_ids[edge_type]

        for node_type, keep in keep_nodes.items():
            if node_type not in blocked_nodes:
                result.nodes_deactivated += await self.store.deactivate_nodes_not_in_set(
                    result.site_id, node_type, keep
                )
        for edge_type, keep in keep_edges.items():
            if edge_type not in blocked_edges:
                result.edges_deactivated += await self.store.deactivate_edges_not_in_set(
                    result.site_id, edge_type, keep
                )

        if result.nodes_deactivated or result.edges_deactivated:
            logger.info(
                f"Deactivated {result.nodes_deactivated} stale nodes and "
                f"{result.edges_deactivated} stale edges for site {result.site_id}"
            )

    def get_recent_results(self, limit: int = 10, site_id: Optional[str] = None) -> list[SnapshotResult]:
        """Get recent snapshot results, newest first."""
        results = [r for r in reversed(self._history) if site_id is None or r.site_id == site_id]
        return results[:limit]

    def get_stats(self) -> dict[str, Any]:
        """Get orchestrator statistics."""
        results = list(self._history)
        succeeded = [r for r in results if r.success]
        durations = [r.duration_seconds for r in succeeded if r.duration_seconds is not None]
        avg_duration = sum(durations) / len(durations) if durations else 0.0

        by_mode: dict[str, int] = defaultdict(int)
        for r in results:
            by_mode[r.mode.value] += 1

        return {
            "total_snapshots": len(results),
            "successful_snapshots": len(succeeded),
            "failed_snapshots": len(results) - len(succeeded),
            "snapshots_by_mode": dict(by_mode),
            "registered_builders": [b.name for b in self.builders],
            "average_duration_seconds": round(avg_duration, 1),
        }
