"""
Command line entry point.

Usage:
    harvestgraph init-db
    harvestgraph run [--site SITE_ID ...]
    harvestgraph snapshot SITE_ID [--mode full|partial|incremental] [--types Task ...]
    harvestgraph detect SITE_ID [--node-type InventoryMovement] [--top 20]
    harvestgraph critical-path SITE_ID
    harvestgraph predict TASK_ID
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from harvestgraph.anomaly import (
    AnomalyDetectionService,
    IrrigationAnomalyDetector,
    MovementAnomalyDetector,
    SqlAnomalyResultStore,
    SqlZoneResponseProvider,
)
from harvestgraph.builders import create_default_builders
from harvestgraph.config import Settings, settings as default_settings
from harvestgraph.db.session import create_engine, create_session_factory, init_graph_tables
from harvestgraph.graph import GraphStore, NodeType, create_graph_store
from harvestgraph.prediction import SqlTaskHistorySource, TaskPredictionService
from harvestgraph.snapshot import (
    INCREMENTAL_NODE_TYPES,
    GraphSnapshotOrchestrator,
    GraphSnapshotScheduler,
    GraphUpdate,
    SchedulerOptions,
    SnapshotResult,
    SqlActiveSiteProvider,
    StaticSiteProvider,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Wired components sharing one source and one graph engine."""

    source_engine: AsyncEngine
    graph_engine: AsyncEngine
    store: GraphStore
    orchestrator: GraphSnapshotOrchestrator
    anomalies: AnomalyDetectionService
    predictions: TaskPredictionService
    source_sessions: object

    async def close(self) -> None:
        await self.store.close()
        await self.source_engine.dispose()
        if self.graph_engine is not self.source_engine:
            await self.graph_engine.dispose()


async def create_services(settings: Optional[Settings] = None) -> Services:
    settings = settings or default_settings

    source_engine = create_engine(settings.database_url)
    if settings.graph_database_url:
        graph_engine = create_engine(settings.graph_database_url)
    else:
        graph_engine = source_engine
    source_sessions = create_session_factory(source_engine)
    graph_sessions = create_session_factory(graph_engine)

    store = create_graph_store(settings.graph_backend, graph_sessions)
    await store.connect()

    builders = create_default_builders(source_sessions, store)
    orchestrator = GraphSnapshotOrchestrator(
        builders,
        store,
        deactivate_stale=settings.graph_deactivate_stale,
        max_parallel_builders=settings.db_pool_size,
    )
    anomalies = AnomalyDetectionService(
        store,
        SqlAnomalyResultStore(
            graph_sessions, timedelta(minutes=settings.anomaly_dedup_window_minutes)
        ),
        MovementAnomalyDetector(store, settings.movement_anomaly_threshold),
        IrrigationAnomalyDetector(
            store,
            SqlZoneResponseProvider(
                source_sessions,
                settings.irrigation_expected_vwc_increase,
                settings.irrigation_baseline_days,
            ),
            settings.irrigation_anomaly_threshold,
        ),
    )
    predictions = TaskPredictionService(
        store, SqlTaskHistorySource(source_sessions), settings.task_history_days
    )
    return Services(
        source_engine=source_engine,
        graph_engine=graph_engine,
        store=store,
        orchestrator=orchestrator,
        anomalies=anomalies,
        predictions=predictions,
        source_sessions=source_sessions,
    )


def print_snapshot(result: SnapshotResult) -> None:
    print("=" * 50)
    print(f"Site:        {result.site_id}")
    print(f"Mode:        {result.mode.value}")
    print(f"Success:     {result.success}")
    print(f"Builders:    {', '.join(result.builders_run) or '-'}")
    print(f"Nodes:       {result.total_nodes} ({result.nodes_deactivated} deactivated)")
    print(f"Edges:       {result.total_edges} ({result.edges_deactivated} deactivated)")
    if result.duration_seconds is not None:
        print(f"Duration:    {result.duration_seconds:.1f}s")
    if result.error_message:
        print(f"Errors:      {result.error_message}")
    print("=" * 50)


async def cmd_init_db(services: Services, args) -> int:
    await init_graph_tables(services.graph_engine)
    return 0


async def cmd_snapshot(services: Services, args) -> int:
    orchestrator = services.orchestrator
    if args.mode == "full":
        result = await orchestrator.build_full_snapshot(args.site_id)
    elif args.mode == "partial":
        if not args.types:
            print("ERROR: --types is required for partial snapshots")
            return 1
        result = await orchestrator.build_partial_snapshot(args.site_id, args.types)
    else:
        since = args.since or datetime.utcnow() - timedelta(hours=1)
        types = args.types or list(INCREMENTAL_NODE_TYPES)
        updates = [GraphUpdate(node_type=t, occurred_at=since) for t in types]
        result = await orchestrator.apply_incremental_updates(args.site_id, updates)

    print_snapshot(result)
    return 0 if result.success else 1


async def cmd_detect(services: Services, args) -> int:
    node_types = [args.node_type] if args.node_type else services.anomalies.supported_node_types
    for node_type in node_types:
        batch = await services.anomalies.score_anomalies(args.site_id, node_type)
        print(
            f"{node_type.value}: {batch.anomalies_detected} anomalies in {batch.total_scored} scored "
            f"(threshold {batch.threshold_used:.2f}, {batch.model_version}, "
            f"{batch.duration_seconds:.1f}s)"
        )

    if args.top:
        for result in await services.anomalies.get_top_anomalies(args.site_id, args.top):
            print(f"  {result.score:.2f}  {result.node_id}  {result.explanation}")
    return 0


async def cmd_critical_path(services: Services, args) -> int:
    tasks = await services.predictions.find_critical_path(args.site_id)
    if not tasks:
        print("No critical path tasks")
    for task in tasks:
        hours = task.total_blocked_time.total_seconds() / 3600
        print(
            f"{task.impact_score:5.2f}  {task.title} ({task.task_id}): "
            f"{task.dependent_task_count} dependents, {hours:.1f}h blocked"
        )

    for cycle in await services.predictions.find_dependency_cycles(args.site_id):
        print(f"Dependency cycle: {' -> '.join(cycle)}")
    return 0


async def cmd_predict(services: Services, args) -> int:
    recommendation = await services.predictions.predict_assignee(args.task_id)
    eta = await services.predictions.predict_eta(args.task_id)

    print(f"Assignee:    {recommendation.recommended_user_name} ({recommendation.confidence:.2f})")
    print(f"Reasoning:   {recommendation.reasoning}")
    for alt in recommendation.alternatives:
        print(f"  - {alt.user_name} ({alt.score:.2f}): {alt.reasoning}")
    print(f"ETA:         {eta.predicted_completion_at:%Y-%m-%d %H:%M} (confidence {eta.confidence:.2f})")
    for risk in eta.risk_factors:
        print(f"  ! {risk}")
    return 0


async def cmd_run(services: Services, args) -> int:
    if args.site:
        site_provider = StaticSiteProvider(args.site)
    else:
        site_provider = SqlActiveSiteProvider(services.source_sessions)

    scheduler = GraphSnapshotScheduler(
        services.orchestrator, site_provider, SchedulerOptions.from_settings()
    )
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "run": cmd_run,
    "snapshot": cmd_snapshot,
    "detect": cmd_detect,
    "critical-path": cmd_critical_path,
    "predict": cmd_predict,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harvestgraph",
        description="Operational knowledge graph builder and scoring engine",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the graph and anomaly result tables")

    run = subparsers.add_parser("run", help="Run the background snapshot scheduler")
    run.add_argument(
        "--site", action="append", help="Site to process (repeatable; default: all active sites)"
    )

    snapshot = subparsers.add_parser("snapshot", help="Build a graph snapshot for one site")
    snapshot.add_argument("site_id")
    snapshot.add_argument(
        "--mode", choices=["full", "partial", "incremental"], default="full", help="Snapshot mode"
    )
    snapshot.add_argument("--types", type=NodeType, nargs="+", help="Node types to rebuild")
    snapshot.add_argument(
        "--since",
        type=datetime.fromisoformat,
        help="Incremental watermark, ISO format (default: one hour ago)",
    )

    detect = subparsers.add_parser("detect", help="Run anomaly detection for one site")
    detect.add_argument("site_id")
    detect.add_argument("--node-type", type=NodeType, help="Only score this node type")
    detect.add_argument("--top", type=int, default=0, help="Show the top N open anomalies")

    critical = subparsers.add_parser("critical-path", help="Rank tasks blocking other work")
    critical.add_argument("site_id")

    predict = subparsers.add_parser("predict", help="Predict assignee and ETA for a task")
    predict.add_argument("task_id")

    return parser


async def run_command(args) -> int:
    services = await create_services()
    try:
        return await COMMANDS[args.command](services, args)
    finally:
        await services.close()


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else default_settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
