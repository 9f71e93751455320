"""
Pytest configuration and shared fixtures for HarvestGraph tests.
"""

from datetime import datetime, timedelta
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from harvestgraph.anomaly.irrigation import (
    ZoneIrrigationResponse,
    ZoneResponseBaseline,
    ZoneResponseProvider,
)
from harvestgraph.anomaly.results import InMemoryAnomalyResultStore
from harvestgraph.db.session import create_session_factory, init_graph_tables
from harvestgraph.graph.edges import EdgeType, GraphEdge
from harvestgraph.graph.properties import (
    IrrigationRunProperties,
    MovementProperties,
    TaskProperties,
    UserProperties,
)
from harvestgraph.graph.schema import GraphNode, NodeType
from harvestgraph.graph.store import NetworkXGraphStore
from harvestgraph.prediction.tasks import TaskHistorySource

SITE_ID = "site-1"

# Subset of the operational schema; tables left out here exercise drift handling
SOURCE_SCHEMA = [
    """
    CREATE TABLE sites (
        site_id TEXT PRIMARY KEY,
        is_active BOOLEAN NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE packages (
        id TEXT PRIMARY KEY, site_id TEXT NOT NULL,
        package_label TEXT, item_id TEXT, item_name TEXT, item_category TEXT,
        quantity REAL, initial_quantity REAL, unit_of_measure TEXT,
        location_id TEXT, location_name TEXT, status TEXT, lab_testing_state TEXT,
        thc_percent REAL, cbd_percent REAL, generation_depth INTEGER,
        root_ancestor_id TEXT, hold_reason_code TEXT, metrc_sync_status TEXT,
        unit_cost REAL, grade TEXT, created_at TIMESTAMP, updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE inventory_movements (
        id TEXT PRIMARY KEY, site_id TEXT NOT NULL,
        movement_type TEXT, status TEXT, package_id TEXT, package_label TEXT,
        quantity REAL, unit_of_measure TEXT,
        from_location_id TEXT, from_location_path TEXT,
        to_location_id TEXT, to_location_path TEXT, reason_code TEXT,
        requires_approval BOOLEAN, first_approver_id TEXT, second_approver_id TEXT,
        verified_by_user_id TEXT, created_by_user_id TEXT,
        sales_order_id TEXT, transfer_id TEXT, processing_job_id TEXT,
        created_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE tasks (
        task_id TEXT PRIMARY KEY, site_id TEXT NOT NULL,
        task_type TEXT, custom_task_type TEXT, title TEXT, status TEXT, priority TEXT,
        assigned_to_user_id TEXT, assigned_to_role TEXT,
        due_date TIMESTAMP, started_at TIMESTAMP, completed_at TIMESTAMP,
        related_entity_type TEXT, related_entity_id TEXT, blocking_reason TEXT,
        assigned_by_user_id TEXT, created_by_user_id TEXT, assigned_at TIMESTAMP,
        created_at TIMESTAMP, updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE task_time_entries (
        task_time_entry_id TEXT PRIMARY KEY, task_id TEXT, user_id TEXT,
        started_at TIMESTAMP, ended_at TIMESTAMP, notes TEXT
    )
    """,
    """
    CREATE TABLE users (
        user_id TEXT PRIMARY KEY, display_name TEXT, email TEXT, is_active BOOLEAN
    )
    """,
    """
    CREATE TABLE task_dependencies (
        task_id TEXT, depends_on_task_id TEXT, dependency_type TEXT, is_blocking BOOLEAN
    )
    """,
    """
    CREATE TABLE sensor_streams (
        id TEXT PRIMARY KEY, site_id TEXT NOT NULL, stream_type INTEGER, unit TEXT,
        display_name TEXT, equipment_id TEXT, equipment_channel_id TEXT,
        location_id TEXT, room_id TEXT, zone_id TEXT, is_active BOOLEAN,
        metadata TEXT, created_at TIMESTAMP, updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE sensor_readings (
        time TIMESTAMP, stream_id TEXT, value REAL
    )
    """,
    """
    CREATE TABLE irrigation_runs (
        id TEXT PRIMARY KEY, site_id TEXT NOT NULL, program_id TEXT, group_id TEXT,
        schedule_id TEXT, status TEXT, total_steps INTEGER, completed_steps INTEGER,
        created_at TIMESTAMP, started_at TIMESTAMP, completed_at TIMESTAMP,
        initiated_by TEXT, initiated_by_user_id TEXT, interlock_type TEXT, fault_message TEXT
    )
    """,
    """
    CREATE TABLE irrigation_run_zones (
        run_id TEXT, zone_id TEXT
    )
    """,
]


def _db_value(value):
    # SQLite stores timestamps as ISO text
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S.%f")
    return value


# =============================================================================
# Databases
# =============================================================================


@pytest_asyncio.fixture
async def source_engine(tmp_path):
    """SQLite stand-in for the operational source store."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'source.db'}")
    async with engine.begin() as conn:
        for statement in SOURCE_SCHEMA:
            await conn.execute(text(statement))
    yield engine
    await engine.dispose()


@pytest.fixture
def source_sessions(source_engine):
    """Session factory over the source store."""
    return create_session_factory(source_engine)


@pytest.fixture
def insert_row(source_engine):
    """Insert one row into a source table."""

    async def insert(table: str, **values) -> None:
        columns = ", ".join(values)
        placeholders = ", ".join(f":{c}" for c in values)
        async with source_engine.begin() as conn:
            await conn.execute(
                text(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"),
                {k: _db_value(v) for k, v in values.items()},
            )

    return insert


@pytest_asyncio.fixture
async def graph_engine(tmp_path):
    """SQLite database holding the graph and anomaly result tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'graph.db'}")
    await init_graph_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def graph_sessions(graph_engine):
    """Session factory over the graph tables."""
    return create_session_factory(graph_engine)


# =============================================================================
# Graph fixtures
# =============================================================================


@pytest_asyncio.fixture
async def store():
    """Create an in-memory graph store."""
    graph_store = NetworkXGraphStore()
    await graph_store.connect()
    yield graph_store
    await graph_store.close()


@pytest.fixture
def result_store() -> InMemoryAnomalyResultStore:
    """Create an in-memory anomaly result store."""
    return InMemoryAnomalyResultStore(timedelta(hours=1))


@pytest.fixture
def make_movement():
    """Factory for InventoryMovement nodes and their location edges."""

    def make(
        movement_id: str,
        quantity: float = 50.0,
        movement_type: str = "Transfer",
        created_by: str = "user-1",
        created_at: Optional[datetime] = None,
        from_location: Optional[str] = None,
        to_location: Optional[str] = None,
        site_id: str = SITE_ID,
        **overrides,
    ) -> tuple[GraphNode, list[GraphEdge]]:
        created_at = created_at or datetime(2026, 3, 2, 10, 0)
        properties = MovementProperties(
            movement_type=movement_type,
            status="Completed",
            package_id=f"pkg-{movement_id}",
            quantity=quantity,
            unit_of_measure="g",
            from_location_id=from_location,
            to_location_id=to_location,
            created_by_user_id=created_by,
            **overrides,
        )
        node = GraphNode.create(
            site_id,
            NodeType.INVENTORY_MOVEMENT,
            movement_id,
            f"Movement: {movement_type}",
            created_at,
            properties=properties,
        )
        edges = []
        if from_location:
            edges.append(
                GraphEdge.create(
                    site_id, EdgeType.MOVED_FROM, NodeType.INVENTORY_MOVEMENT, movement_id,
                    NodeType.LOCATION, from_location, created_at,
                )
            )
        if to_location:
            edges.append(
                GraphEdge.create(
                    site_id, EdgeType.MOVED_TO, NodeType.INVENTORY_MOVEMENT, movement_id,
                    NodeType.LOCATION, to_location, created_at,
                )
            )
        return node, edges

    return make


@pytest.fixture
def make_task():
    """Factory for Task nodes."""

    def make(
        task_id: str,
        title: Optional[str] = None,
        status: str = "Pending",
        site_id: str = SITE_ID,
        **props,
    ) -> GraphNode:
        properties = TaskProperties(
            task_type=props.pop("task_type", "Harvest"),
            title=title or f"Task {task_id}",
            status=status,
            **props,
        )
        return GraphNode.create(
            site_id,
            NodeType.TASK,
            task_id,
            f"Task: {properties.title}",
            datetime(2026, 3, 1, 8, 0),
            properties=properties,
        )

    return make


@pytest.fixture
def make_user():
    """Factory for User nodes."""

    def make(user_id: str, display_name: str = "", site_id: str = SITE_ID, **props) -> GraphNode:
        properties = UserProperties(display_name=display_name or user_id.title(), **props)
        return GraphNode.create(
            site_id,
            NodeType.USER,
            user_id,
            f"User: {properties.display_name}",
            datetime(2026, 1, 1),
            properties=properties,
        )

    return make


@pytest.fixture
def make_irrigation_run():
    """Factory for IrrigationRun nodes."""

    def make(
        run_id: str,
        status: str = "Completed",
        zones: tuple[str, ...] = ("zone-a",),
        site_id: str = SITE_ID,
    ) -> GraphNode:
        started_at = datetime(2026, 3, 2, 6, 0)
        properties = IrrigationRunProperties(
            status=status,
            total_steps=2,
            completed_steps=2,
            started_at=started_at,
            completed_at=started_at + timedelta(minutes=10),
            target_zone_ids=list(zones),
        )
        return GraphNode.create(
            site_id,
            NodeType.IRRIGATION_RUN,
            run_id,
            f"Irrigation Run ({status})",
            started_at,
            properties=properties,
        )

    return make


def depends_on(task_id: str, depends_on_id: str, site_id: str = SITE_ID) -> GraphEdge:
    return GraphEdge.create(
        site_id, EdgeType.DEPENDS_ON, NodeType.TASK, task_id, NodeType.TASK, depends_on_id,
        datetime(2026, 3, 1, 8, 0),
    )


@pytest.fixture
def make_dependency():
    """Factory for DependsOn edges between two tasks."""
    return depends_on


# =============================================================================
# Fakes
# =============================================================================


class FakeZoneResponseProvider(ZoneResponseProvider):
    """Serves canned zone responses and baselines."""

    def __init__(self):
        self.responses: dict[str, list[ZoneIrrigationResponse]] = {}
        self.baselines: dict[str, ZoneResponseBaseline] = {}

    async def get_zone_responses(self, site_id, run_id, run):
        return list(self.responses.get(run_id, []))

    async def get_zone_baselines(self, site_id):
        return dict(self.baselines)


class FakeTaskHistorySource(TaskHistorySource):
    """Serves canned completion statistics; None entries mean the read failed."""

    def __init__(self):
        self.completed: dict[str, Optional[int]] = {}
        self.active: dict[str, Optional[int]] = {}
        self.durations: list[float] = []

    async def count_completed_by_user(self, site_id, user_id, task_type, since):
        return self.completed.get(user_id, 0)

    async def count_active_tasks(self, site_id, user_id):
        return self.active.get(user_id, 0)

    async def get_completion_durations(self, site_id, task_type, since, limit=100):
        return list(self.durations[:limit])


@pytest.fixture
def zone_responses() -> FakeZoneResponseProvider:
    """Create a fake zone response provider."""
    return FakeZoneResponseProvider()


@pytest.fixture
def task_history() -> FakeTaskHistorySource:
    """Create a fake task history source."""
    return FakeTaskHistorySource()
