"""
Tests for anomaly result storage and the detection service.
"""

import uuid
from datetime import datetime, timedelta

import pytest

from harvestgraph.anomaly import (
    AnomalyDetectionService,
    AnomalyResult,
    IrrigationAnomalyDetector,
    MovementAnomalyDetector,
    SqlAnomalyResultStore,
)
from harvestgraph.exceptions import AnomalyNotFoundError, NodeNotFoundError
from harvestgraph.graph import NodeType

SITE_ID = "site-1"
T0 = datetime(2026, 3, 2, 12, 0)


def anomaly(node_id="InventoryMovement:m1", score=0.8, detected_at=T0, site_id=SITE_ID, **overrides):
    values = dict(
        site_id=site_id,
        node_id=node_id,
        node_type=NodeType.INVENTORY_MOVEMENT,
        anomaly_type="movement",
        score=score,
        explanation="Unusual quantity (score: 0.90)",
        model_version="movement-anomaly-v1.0",
        feature_attributions={"quantity_anomaly": 0.9},
        detected_at=detected_at,
    )
    values.update(overrides)
    return AnomalyResult(**values)


class ResultStoreContract:
    """Behavior shared by every result store."""

    @pytest.mark.asyncio
    async def test_save_assigns_ids(self, results):
        """Stored results get a row id."""
        stored = await results.save([anomaly()])

        assert stored[0].id is not None
        assert (await results.get(stored[0].id)).score == 0.8

    @pytest.mark.asyncio
    async def test_dedup_within_window_updates(self, results):
        """A repeat detection inside the window updates the earlier row."""
        first = (await results.save([anomaly(score=0.7)]))[0]
        second = (
            await results.save(
                [anomaly(score=0.9, detected_at=T0 + timedelta(minutes=30), explanation="worse")]
            )
        )[0]

        assert second.id == first.id
        top = await results.get_top(SITE_ID)
        assert len(top) == 1
        assert top[0].score == 0.9
        assert top[0].explanation == "worse"
        assert top[0].detected_at == T0 + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_dedup_outside_window_inserts(self, results):
        """A detection exactly one window later starts a new row."""
        first = (await results.save([anomaly()]))[0]
        second = (await results.save([anomaly(detected_at=T0 + timedelta(hours=1))]))[0]

        assert second.id != first.id
        assert len(await results.get_top(SITE_ID)) == 2

    @pytest.mark.asyncio
    async def test_dedup_is_per_anomaly_type(self, results):
        """Different anomaly types on one node are kept apart."""
        await results.save([anomaly(), anomaly(anomaly_type="irrigation_response")])

        assert len(await results.get_top(SITE_ID)) == 2

    @pytest.mark.asyncio
    async def test_get_top_orders_and_filters(self, results):
        """Top results are ordered by score and scoped to site and type."""
        await results.save(
            [
                anomaly("InventoryMovement:low", score=0.6),
                anomaly("InventoryMovement:high", score=0.95),
                anomaly("IrrigationRun:r1", score=0.8, node_type=NodeType.IRRIGATION_RUN),
                anomaly("InventoryMovement:other-site", score=0.99, site_id="site-2"),
            ]
        )

        assert [r.score for r in await results.get_top(SITE_ID, limit=1)] == [0.95]
        movements = await results.get_top(SITE_ID, node_type=NodeType.INVENTORY_MOVEMENT)
        assert [r.node_id for r in movements] == ["InventoryMovement:high", "InventoryMovement:low"]

    @pytest.mark.asyncio
    async def test_acknowledge(self, results):
        """Acknowledged results leave the review queue."""
        stored = (await results.save([anomaly()]))[0]

        acknowledged = await results.acknowledge(stored.id, "reviewer", "expected bulk transfer")

        assert acknowledged.acknowledged_by == "reviewer"
        assert acknowledged.resolution_notes == "expected bulk transfer"
        assert acknowledged.is_acknowledged
        assert await results.get_top(SITE_ID) == []

    @pytest.mark.asyncio
    async def test_acknowledge_unknown(self, results):
        """Acknowledging a missing result raises AnomalyNotFoundError."""
        with pytest.raises(AnomalyNotFoundError):
            await results.acknowledge(uuid.uuid4(), "reviewer")


class TestInMemoryResultStore(ResultStoreContract):
    """Tests for InMemoryAnomalyResultStore."""

    @pytest.fixture
    def results(self, result_store):
        return result_store


class TestSqlResultStore(ResultStoreContract):
    """Tests for SqlAnomalyResultStore."""

    @pytest.fixture
    def results(self, graph_sessions):
        return SqlAnomalyResultStore(graph_sessions, timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_missing_table_returns_empty(self, source_sessions):
        """Reading from a database without the results table yields nothing."""
        results = SqlAnomalyResultStore(source_sessions, timedelta(hours=1))

        assert await results.get_top(SITE_ID) == []


class TestSeverity:
    """Tests for result severity bands."""

    @pytest.mark.parametrize(
        "score,severity",
        [(0.9, "critical"), (0.85, "critical"), (0.7, "high"), (0.5, "medium"), (0.2, "low")],
    )
    def test_severity(self, score, severity):
        assert anomaly(score=score).severity == severity


class TestAnomalyDetectionService:
    """Tests for AnomalyDetectionService."""

    @pytest.fixture
    def service(self, store, result_store, zone_responses) -> AnomalyDetectionService:
        return AnomalyDetectionService(
            store,
            result_store,
            MovementAnomalyDetector(store, threshold=0.5),
            IrrigationAnomalyDetector(store, zone_responses, threshold=0.6),
        )

    async def seed_movements(self, store, make_movement, site_id=SITE_ID, prefix=""):
        for i in range(20):
            node, _ = make_movement(f"{prefix}m{i}", quantity=50, site_id=site_id)
            await store.upsert_nodes([node])
        odd, _ = make_movement(
            f"{prefix}odd",
            site_id=site_id,
            quantity=10000,
            movement_type="Destruction",
            created_by="night-owl",
            created_at=datetime(2026, 3, 2, 3, 0),
            first_approver_id="approver",
            second_approver_id="approver",
        )
        await store.upsert_nodes([odd])

    @pytest.mark.asyncio
    async def test_batch_scoring_persists_results(self, store, service, make_movement):
        """Batch results are stored and appear in the review queue."""
        await self.seed_movements(store, make_movement)

        batch = await service.score_anomalies(SITE_ID, NodeType.INVENTORY_MOVEMENT)

        assert batch.total_scored == 21
        assert batch.anomalies_detected == 1
        assert batch.threshold_used == 0.5
        assert batch.model_version == MovementAnomalyDetector.MODEL_VERSION
        assert batch.results[0].id is not None
        top = await service.get_top_anomalies(SITE_ID)
        assert [r.node_id for r in top] == ["InventoryMovement:odd"]

    @pytest.mark.asyncio
    async def test_repeated_batches_deduplicate(self, store, service, make_movement):
        """Running the same batch twice keeps one row per node."""
        await self.seed_movements(store, make_movement)

        await service.score_anomalies(SITE_ID, NodeType.INVENTORY_MOVEMENT)
        await service.score_anomalies(SITE_ID, NodeType.INVENTORY_MOVEMENT)

        assert len(await service.get_top_anomalies(SITE_ID)) == 1

    @pytest.mark.asyncio
    async def test_batch_without_detector(self, service):
        """Node types without a detector yield an empty batch."""
        batch = await service.score_anomalies(SITE_ID, NodeType.TASK)

        assert batch.total_scored == 0
        assert batch.anomalies_detected == 0
        assert batch.model_version == "N/A"

    @pytest.mark.asyncio
    async def test_score_node_dispatches_by_type(self, store, service, make_movement):
        """On-demand scoring routes to the node type's detector."""
        await self.seed_movements(store, make_movement)

        result = await service.score_node_anomaly("InventoryMovement:odd")

        assert result.anomaly_type == "movement"
        assert result.score >= 0.5

    @pytest.mark.asyncio
    async def test_score_unsupported_node(self, store, service, make_task):
        """Scoring a node type without a detector returns a zero result."""
        await store.upsert_nodes([make_task("t1")])

        result = await service.score_node_anomaly("Task:t1")

        assert result.anomaly_type == "unsupported"
        assert result.score == 0.0
        assert result.model_version == "N/A"

    @pytest.mark.asyncio
    async def test_score_missing_node(self, service):
        """Scoring a missing node raises NodeNotFoundError."""
        with pytest.raises(NodeNotFoundError):
            await service.score_node_anomaly("InventoryMovement:ghost")

    @pytest.mark.asyncio
    async def test_incremental_keeps_anomalies_only(self, store, service, make_movement):
        """Incremental scoring stores results above threshold and skips bad ids."""
        await self.seed_movements(store, make_movement)

        stored = await service.score_incremental(
            SITE_ID, ["InventoryMovement:m1", "InventoryMovement:odd", "InventoryMovement:ghost"]
        )

        assert [r.node_id for r in stored] == ["InventoryMovement:odd"]

    @pytest.mark.asyncio
    async def test_incremental_ignores_other_sites(self, store, service, make_movement):
        """Nodes of another site are not scored or stored for this site."""
        await self.seed_movements(store, make_movement)
        await self.seed_movements(store, make_movement, site_id="site-2", prefix="far-")
        assert (await service.score_node_anomaly("InventoryMovement:far-odd")).score >= 0.5

        stored = await service.score_incremental(
            SITE_ID, ["InventoryMovement:odd", "InventoryMovement:far-odd"]
        )

        assert [r.node_id for r in stored] == ["InventoryMovement:odd"]
        assert all(r.site_id == SITE_ID for r in await service.get_top_anomalies(SITE_ID))
        assert await service.get_top_anomalies("site-2") == []

    @pytest.mark.asyncio
    async def test_acknowledge(self, store, service, make_movement):
        """Acknowledged anomalies leave the queue."""
        await self.seed_movements(store, make_movement)
        batch = await service.score_anomalies(SITE_ID, NodeType.INVENTORY_MOVEMENT)

        await service.acknowledge_anomaly(batch.results[0].id, "reviewer")

        assert await service.get_top_anomalies(SITE_ID) == []

    def test_supported_node_types(self, service):
        assert set(service.supported_node_types) == {
            NodeType.INVENTORY_MOVEMENT,
            NodeType.IRRIGATION_RUN,
        }
