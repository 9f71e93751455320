"""
Tests for the domain graph builders.
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import text

from harvestgraph.builders import (
    GeneticsGraphBuilder,
    PackageGraphBuilder,
    TaskGraphBuilder,
    TelemetryGraphBuilder,
    stream_type_name,
)
from harvestgraph.builders.base import as_bool, as_datetime, as_id, as_list
from harvestgraph.builders.task import summarize_assignee_history
from harvestgraph.graph import EdgeType, NodeType, load_properties
from harvestgraph.graph.properties import (
    IrrigationRunProperties,
    MovementProperties,
    TaskProperties,
    UserProperties,
)

SITE_ID = "site-1"
T0 = datetime(2026, 3, 1, 9, 0)


class TestRowCoercion:
    """Tests for source value coercion."""

    def test_as_id_lowercases(self):
        """Identifiers are normalized to lowercase."""
        assert as_id("ABC-123") == "abc-123"
        assert as_id("  ") is None
        assert as_id(None) is None

    def test_as_datetime_converts_to_naive_utc(self):
        """Aware timestamps are converted to naive UTC."""
        value = as_datetime("2026-03-01T10:00:00+01:00")
        assert value == datetime(2026, 3, 1, 9, 0)
        assert value.tzinfo is None

    def test_as_bool(self):
        """Text and integer booleans are understood."""
        assert as_bool(1) is True
        assert as_bool("false") is False
        assert as_bool(None, default=True) is True

    def test_as_list(self):
        """Array columns arrive as JSON text or Postgres literals."""
        assert as_list('["A", "b"]') == ["a", "b"]
        assert as_list("{X,Y}") == ["x", "y"]
        assert as_list(None) == []


class TestPackageBuilder:
    """Tests for the package traceability builder."""

    @pytest.fixture
    def builder(self, source_sessions, store) -> PackageGraphBuilder:
        """Create a package builder over the test source store."""
        return PackageGraphBuilder(source_sessions, store)

    @pytest_asyncio.fixture
    async def seeded(self, insert_row):
        """Two packages, one derived from the other, and one movement."""
        await insert_row(
            "packages", id="PKG-1", site_id=SITE_ID, package_label="1A4000001",
            quantity=100, location_id="LOC-1", location_name="Vault",
            status="Active", created_at=T0, updated_at=T0,
        )
        await insert_row(
            "packages", id="PKG-2", site_id=SITE_ID, package_label="1A4000002",
            quantity=20, location_id="LOC-2", location_name="Trim Room",
            root_ancestor_id="PKG-1", status="Active",
            created_at=T0 + timedelta(hours=1), updated_at=T0 + timedelta(hours=1),
        )
        await insert_row(
            "inventory_movements", id="MOV-1", site_id=SITE_ID, movement_type="Transfer",
            status="Completed", package_id="PKG-2", quantity=20, unit_of_measure="g",
            from_location_id="LOC-1", to_location_id="LOC-2", requires_approval=0,
            first_approver_id="USER-2", created_by_user_id="USER-1",
            created_at=T0 + timedelta(hours=2),
        )
        # Another site's package must never show up
        await insert_row(
            "packages", id="PKG-9", site_id="site-2", package_label="OTHER",
            created_at=T0, updated_at=T0,
        )

    @pytest.mark.asyncio
    async def test_build_full(self, builder, store, seeded):
        """A full build emits packages, movements, locations and lineage."""
        result = await builder.build(SITE_ID)

        assert result.node_ids[NodeType.PACKAGE] == {"Package:pkg-1", "Package:pkg-2"}
        assert result.node_ids[NodeType.INVENTORY_MOVEMENT] == {"InventoryMovement:mov-1"}
        assert result.node_ids[NodeType.LOCATION] == {"Location:loc-1", "Location:loc-2"}
        assert result.edge_ids[EdgeType.DERIVED_FROM] == {
            "DerivedFrom:Package:pkg-2->Package:pkg-1"
        }
        assert result.skipped_groups == []

        movement = await store.get_node("InventoryMovement:mov-1")
        props = load_properties(movement, MovementProperties)
        assert props.quantity == 20
        assert props.created_by_user_id == "user-1"

        outgoing = {e.edge_type for e in await store.get_outgoing_edges(movement.node_id)}
        assert outgoing == {
            EdgeType.INVOLVES_PACKAGE,
            EdgeType.MOVED_FROM,
            EdgeType.MOVED_TO,
            EdgeType.CREATED_BY,
            EdgeType.APPROVED_BY,
        }

    @pytest.mark.asyncio
    async def test_build_is_idempotent(self, builder, store, seeded):
        """Building twice produces the same graph."""
        await builder.build(SITE_ID)
        first = await store.get_statistics(SITE_ID)
        await builder.build(SITE_ID)
        second = await store.get_statistics(SITE_ID)

        assert first.node_counts == second.node_counts
        assert first.edge_counts == second.edge_counts

    @pytest.mark.asyncio
    async def test_watermark_limits_rows(self, builder, seeded):
        """Only rows changed at or after the watermark are read."""
        result = await builder.build(SITE_ID, since=T0 + timedelta(minutes=30))

        assert result.node_ids[NodeType.PACKAGE] == {"Package:pkg-2"}
        assert result.node_ids[NodeType.INVENTORY_MOVEMENT] == {"InventoryMovement:mov-1"}
        # Locations carry no timestamps and are always refreshed
        assert len(result.node_ids[NodeType.LOCATION]) == 2

    @pytest.mark.asyncio
    async def test_malformed_row_is_skipped(self, builder, insert_row, seeded):
        """A row without a creation time is counted and skipped."""
        await insert_row(
            "packages", id="PKG-3", site_id=SITE_ID, package_label="BROKEN", updated_at=T0
        )

        result = await builder.build(SITE_ID)

        assert result.rows_skipped == 1
        assert "Package:pkg-3" not in result.node_ids[NodeType.PACKAGE]

    @pytest.mark.asyncio
    async def test_missing_order_column_skips_only_its_edges(
        self, builder, source_engine, insert_row, seeded
    ):
        """A movements table without sales_order_id still yields every movement."""
        await insert_row(
            "inventory_movements", id="MOV-2", site_id=SITE_ID, movement_type="Transfer",
            status="Completed", package_id="PKG-1", quantity=5, created_by_user_id="USER-1",
            transfer_id="TR-1", created_at=T0 + timedelta(hours=3),
        )
        async with source_engine.begin() as conn:
            await conn.execute(text("ALTER TABLE inventory_movements DROP COLUMN sales_order_id"))

        result = await builder.build(SITE_ID)

        assert result.node_ids[NodeType.INVENTORY_MOVEMENT] == {
            "InventoryMovement:mov-1",
            "InventoryMovement:mov-2",
        }
        assert result.skipped_groups == ["inventory_movements.sales_order_id"]
        assert EdgeType.PART_OF_SALES_ORDER not in result.edge_ids
        assert result.edge_ids[EdgeType.PART_OF_TRANSFER] == {
            "PartOfTransfer:InventoryMovement:mov-2->Transfer:tr-1"
        }
        assert len(result.edge_ids[EdgeType.INVOLVES_PACKAGE]) == 2


class TestTaskBuilder:
    """Tests for the task builder."""

    @pytest.fixture
    def builder(self, source_sessions, store) -> TaskGraphBuilder:
        """Create a task builder over the test source store."""
        return TaskGraphBuilder(source_sessions, store)

    @pytest_asyncio.fixture
    async def seeded(self, insert_row):
        """Two tasks with a blocking dependency, a time entry and two users."""
        await insert_row("users", user_id="U-1", display_name="Ada", is_active=1)
        await insert_row("users", user_id="U-2", display_name="Bo", is_active=1)
        await insert_row(
            "tasks", task_id="T-1", site_id=SITE_ID, task_type="Harvest", title="Cut room 3",
            status="Completed", assigned_to_user_id="U-1", assigned_to_role="Cultivator",
            created_by_user_id="U-2", started_at=T0, completed_at=T0 + timedelta(hours=3),
            created_at=T0, updated_at=T0,
        )
        await insert_row(
            "tasks", task_id="T-2", site_id=SITE_ID, task_type="Trim", title="Trim room 3",
            status="Pending", blocking_reason="Waiting on harvest",
            created_by_user_id="U-2", created_at=T0, updated_at=T0,
        )
        await insert_row(
            "task_dependencies", task_id="T-2", depends_on_task_id="T-1",
            dependency_type="FinishToStart", is_blocking=1,
        )
        await insert_row(
            "task_time_entries", task_time_entry_id="TE-1", task_id="T-1", user_id="U-1",
            started_at=T0, ended_at=T0 + timedelta(minutes=90),
        )

    @pytest.mark.asyncio
    async def test_build(self, builder, store, seeded):
        """Tasks, users, time entries and dependencies are emitted."""
        result = await builder.build(SITE_ID)

        assert result.node_ids[NodeType.TASK] == {"Task:t-1", "Task:t-2"}
        assert result.node_ids[NodeType.USER] == {"User:u-1", "User:u-2"}
        assert result.node_ids[NodeType.TIME_ENTRY] == {"TimeEntry:te-1"}

        dependency = (await store.get_outgoing_edges("Task:t-2", EdgeType.DEPENDS_ON))[0]
        assert dependency.target_node_id == "Task:t-1"
        assert dependency.weight == 2.0

        blocked = load_properties(await store.get_node("Task:t-2"), TaskProperties)
        assert blocked.is_blocked is True

        entry = await store.get_node("TimeEntry:te-1")
        assert entry.label == "Time Entry: 90 min"

    @pytest.mark.asyncio
    async def test_user_statistics(self, builder, store, seeded):
        """Users carry completion statistics from their assigned tasks."""
        await builder.build(SITE_ID)

        ada = load_properties(await store.get_node("User:u-1"), UserProperties)
        assert ada.total_tasks_completed == 1
        assert ada.avg_task_completion_hours == pytest.approx(3.0)
        assert ada.primary_role == "Cultivator"

    def test_summarize_assignee_history(self):
        """The primary role is the most frequent assignment role."""
        rows = [
            {"assigned_to_user_id": "u", "assigned_to_role": "Trimmer", "status": "Pending",
             "started_at": None, "completed_at": None},
            {"assigned_to_user_id": "u", "assigned_to_role": "Grower", "status": "Completed",
             "started_at": T0, "completed_at": T0 + timedelta(hours=2)},
            {"assigned_to_user_id": "u", "assigned_to_role": "Grower", "status": "Completed",
             "started_at": T0, "completed_at": T0 + timedelta(hours=4)},
        ]

        stats = summarize_assignee_history(rows)

        assert stats["u"] == {"completed": 2, "avg_hours": 3.0, "primary_role": "Grower"}

    @pytest.mark.asyncio
    async def test_missing_creator_column_keeps_tasks(self, builder, source_engine, seeded):
        """Without created_by_user_id only the CreatedBy edges are lost."""
        async with source_engine.begin() as conn:
            await conn.execute(text("ALTER TABLE tasks DROP COLUMN created_by_user_id"))

        result = await builder.build(SITE_ID)

        assert result.node_ids[NodeType.TASK] == {"Task:t-1", "Task:t-2"}
        assert set(result.skipped_groups) == {"tasks.created_by_user_id", "users by created_by_user_id"}
        assert EdgeType.CREATED_BY not in result.edge_ids
        assert result.edge_ids[EdgeType.ASSIGNED_BY] == set()
        assert result.edge_ids[EdgeType.ASSIGNED_TO] == {"AssignedTo:Task:t-1->User:u-1"}
        # Bo is only linked as a creator
        assert result.node_ids[NodeType.USER] == {"User:u-1"}

    @pytest.mark.asyncio
    async def test_time_entry_without_user(self, builder, store, insert_row, seeded):
        """An entry with no user keeps its node and task link."""
        await insert_row(
            "task_time_entries", task_time_entry_id="TE-2", task_id="T-1", started_at=T0,
        )

        result = await builder.build(SITE_ID)

        assert result.rows_skipped == 0
        assert "TimeEntry:te-2" in result.node_ids[NodeType.TIME_ENTRY]
        edges = await store.get_outgoing_edges("TimeEntry:te-2")
        assert [e.edge_type for e in edges] == [EdgeType.TIME_ENTRY_FOR]


class TestTelemetryBuilder:
    """Tests for the telemetry builder."""

    @pytest.mark.asyncio
    async def test_missing_tables_are_skipped(self, source_sessions, store, insert_row):
        """Absent alert and emitter tables do not fail the build."""
        await insert_row(
            "sensor_streams", id="S-1", site_id=SITE_ID, stream_type=20, display_name="VWC 1",
            zone_id="Z-1", is_active=1, created_at=T0, updated_at=T0,
        )
        await insert_row(
            "irrigation_runs", id="R-1", site_id=SITE_ID, status="Completed",
            total_steps=1, completed_steps=1, created_at=T0, started_at=T0,
            completed_at=T0 + timedelta(minutes=5),
        )
        await insert_row("irrigation_run_zones", run_id="R-1", zone_id="Z-1")

        result = await TelemetryGraphBuilder(source_sessions, store).build(SITE_ID)

        assert set(result.skipped_groups) == {
            "zone_emitter_configurations",
            "alert_rules",
            "alert_instances",
        }
        assert NodeType.ALERT_RULE not in result.node_ids
        assert result.edge_ids[EdgeType.MEASURES_ZONE] == {
            "MeasuresZone:SensorStream:s-1->Zone:z-1"
        }

        run = load_properties(await store.get_node("IrrigationRun:r-1"), IrrigationRunProperties)
        assert run.target_zone_ids == ["z-1"]

    @pytest.mark.asyncio
    async def test_emitter_config_without_zone(self, source_sessions, source_engine, store, insert_row):
        """A configuration with no zone is kept without a HasEmitters edge."""
        async with source_engine.begin() as conn:
            await conn.execute(
                text(
                    "CREATE TABLE zone_emitter_configurations ("
                    "id TEXT PRIMARY KEY, site_id TEXT NOT NULL, zone_id TEXT, zone_name TEXT, "
                    "emitter_count INTEGER, emitter_flow_rate_liters_per_hour REAL, emitter_type TEXT, "
                    "emitters_per_plant INTEGER, operating_pressure_kpa REAL, "
                    "last_calibrated_at TIMESTAMP, created_at TIMESTAMP, updated_at TIMESTAMP)"
                )
            )
        await insert_row(
            "zone_emitter_configurations", id="EC-1", site_id=SITE_ID, emitter_count=120,
            emitter_flow_rate_liters_per_hour=2.0, created_at=T0, updated_at=T0,
        )

        result = await TelemetryGraphBuilder(source_sessions, store).build(SITE_ID)

        assert result.rows_skipped == 0
        assert result.node_ids[NodeType.ZONE_EMITTER_CONFIG] == {"ZoneEmitterConfig:ec-1"}
        assert result.edge_ids[EdgeType.HAS_EMITTERS] == set()

    @pytest.mark.asyncio
    async def test_alert_instances_without_stream_column(
        self, source_sessions, source_engine, store, insert_row
    ):
        """Alert instances survive a source table that has no stream_id."""
        async with source_engine.begin() as conn:
            await conn.execute(
                text(
                    "CREATE TABLE alert_instances ("
                    "id TEXT PRIMARY KEY, site_id TEXT NOT NULL, rule_id TEXT, severity TEXT, "
                    "fired_at TIMESTAMP, cleared_at TIMESTAMP, current_value REAL, "
                    "threshold_value REAL, message TEXT)"
                )
            )
        await insert_row(
            "alert_instances", id="AI-1", site_id=SITE_ID, rule_id="AR-1", severity="High",
            fired_at=T0,
        )

        result = await TelemetryGraphBuilder(source_sessions, store).build(SITE_ID)

        assert result.node_ids[NodeType.ALERT_INSTANCE] == {"AlertInstance:ai-1"}
        assert result.edge_ids[EdgeType.FIRED_FOR_RULE] == {
            "FiredForRule:AlertInstance:ai-1->AlertRule:ar-1"
        }
        assert "alert_instances.stream_id" in result.skipped_groups
        assert EdgeType.TRIGGERED_BY_STREAM not in result.edge_ids

    def test_stream_type_name(self):
        """Unknown stream types fall back to their number."""
        assert stream_type_name(20) == "VWC/Soil Moisture"
        assert stream_type_name(99) == "Type 99"


class TestGeneticsBuilder:
    """Tests for the genetics builder."""

    @pytest.mark.asyncio
    async def test_all_tables_missing(self, source_sessions, store):
        """A domain with no source tables builds an empty, partial result."""
        result = await GeneticsGraphBuilder(source_sessions, store).build(SITE_ID)

        assert result.nodes == 0
        assert result.is_partial
        assert result.node_ids == {}
