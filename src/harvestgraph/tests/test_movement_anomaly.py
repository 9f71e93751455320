"""
Tests for movement anomaly detection.
"""

from datetime import datetime

import pytest

from harvestgraph.anomaly import MovementAnomalyDetector, MovementBaseline
from harvestgraph.exceptions import NodeNotFoundError
from harvestgraph.graph.properties import MovementProperties

SITE_ID = "site-1"


async def add(store, *movements):
    for node, edges in movements:
        await store.upsert_nodes([node])
        await store.upsert_edges(edges)


class TestMovementAnomalyDetector:
    """Tests for MovementAnomalyDetector."""

    @pytest.fixture
    def detector(self, store) -> MovementAnomalyDetector:
        """Create a detector with the default threshold."""
        return MovementAnomalyDetector(store, threshold=0.7)

    @pytest.mark.asyncio
    async def test_large_quantity_is_flagged(self, store, detector, make_movement):
        """A quantity far above the site mean scores high on the quantity feature."""
        await add(store, *(make_movement(f"m{i}", quantity=50) for i in range(20)))
        await add(store, make_movement("big", quantity=10000))

        result = await detector.score_movement("big")

        assert result.feature_attributions["quantity_anomaly"] > 0.85
        assert "Unusual quantity" in result.explanation
        assert result.model_version == MovementAnomalyDetector.MODEL_VERSION
        assert result.anomaly_type == "movement"

    @pytest.mark.asyncio
    async def test_normal_movement_scores_low(self, store, detector, make_movement):
        """A movement like all the others is not anomalous."""
        await add(store, *(make_movement(f"m{i}", quantity=50) for i in range(20)))

        result = await detector.score_movement("m3")

        assert result.score < 0.1
        assert result.explanation == "Low-level anomaly detected"

    @pytest.mark.asyncio
    async def test_detect_anomalies_sets_node_score(self, store, make_movement):
        """Anomalous movements get their score written to the graph."""
        detector = MovementAnomalyDetector(store, threshold=0.5)
        await add(store, *(make_movement(f"m{i}", quantity=50) for i in range(20)))
        await add(
            store,
            make_movement(
                "odd",
                quantity=10000,
                movement_type="Destruction",
                created_by="night-owl",
                created_at=datetime(2026, 3, 2, 3, 0),
                first_approver_id="approver",
                second_approver_id="approver",
            ),
        )

        results, scored = await detector.scan(SITE_ID)

        assert scored == 21
        assert [r.node_id for r in results] == ["InventoryMovement:odd"]
        node = await store.get_node("InventoryMovement:odd")
        assert node.anomaly_score == pytest.approx(results[0].score)
        assert node.anomaly_explanation == results[0].explanation

    @pytest.mark.asyncio
    async def test_detect_anomalies_since_filter(self, store, make_movement):
        """Only movements created after the watermark are scored."""
        detector = MovementAnomalyDetector(store, threshold=0.0)
        await add(
            store,
            make_movement("old", created_at=datetime(2026, 3, 1, 10, 0)),
            make_movement("new", created_at=datetime(2026, 3, 3, 10, 0)),
        )

        results = await detector.detect_anomalies(SITE_ID, since=datetime(2026, 3, 2))

        assert [r.node_id for r in results] == ["InventoryMovement:new"]

    @pytest.mark.asyncio
    async def test_no_movements(self, detector):
        """An empty site yields no results."""
        assert await detector.scan(SITE_ID) == ([], 0)

    @pytest.mark.asyncio
    async def test_unknown_movement(self, detector):
        """Scoring a missing movement raises NodeNotFoundError."""
        with pytest.raises(NodeNotFoundError):
            await detector.score_movement("missing")

    @pytest.mark.asyncio
    async def test_baseline_location_paths(self, store, detector, make_movement):
        """Paired MovedFrom/MovedTo edges form the transition counts."""
        await add(
            store,
            make_movement("m1", from_location="vault", to_location="trim"),
            make_movement("m2", from_location="vault", to_location="trim"),
            make_movement("m3", from_location="trim"),
        )

        baseline = await detector.build_baseline(SITE_ID)

        assert baseline.total_movements == 3
        assert baseline.location_transition_counts == {
            "Location:vault->Location:trim": 2
        }


class TestFeatureScores:
    """Tests for individual feature heuristics."""

    @pytest.fixture
    def detector(self) -> MovementAnomalyDetector:
        """Detector without a store, for pure feature checks."""
        return MovementAnomalyDetector(store=None, threshold=0.7)

    def props(self, **overrides) -> MovementProperties:
        values = dict(movement_type="Transfer", package_id="p", created_by_user_id="u1")
        values.update(overrides)
        return MovementProperties(**values)

    def test_unseen_movement_type(self, detector):
        """A type never seen at the site scores 0.9."""
        baseline = MovementBaseline(total_movements=10)
        assert detector._score_movement_type(self.props(), baseline) == 0.9

    def test_approval_same_approver_twice(self, detector):
        """The same user approving twice is flagged."""
        props = self.props(first_approver_id="a", second_approver_id="a")
        assert detector._score_approval_pattern(props) == pytest.approx(0.6)

    def test_approval_self_approved_and_duplicate(self, detector):
        """Approval flags add up and are capped at 1."""
        props = self.props(first_approver_id="u1", second_approver_id="u1")
        assert detector._score_approval_pattern(props) == 1.0

    def test_missing_required_approval(self, detector):
        """A movement requiring approval without an approver is flagged."""
        assert detector._score_approval_pattern(self.props(requires_approval=True)) == 0.5

    @pytest.mark.parametrize(
        "hour,expected",
        [(10, 0.0), (6, 0.0), (20, 0.0), (5, 0.6), (2, 0.9), (0, 1.0), (21, 0.6), (23, 0.8)],
    )
    def test_time_of_day(self, detector, hour, expected):
        """Off-hours activity grows with distance from the workday and caps at 1."""
        score = detector._score_time_of_day(datetime(2026, 3, 2, hour, 0))
        assert score == pytest.approx(expected)

    def test_user_behavior(self, detector):
        """Unknown and infrequent creators are flagged."""
        baseline = MovementBaseline(total_movements=10)
        baseline.user_movement_counts.update({"regular": 9, "rare": 1})

        assert detector._score_user_behavior(self.props(created_by_user_id="new"), baseline) == 0.7
        assert detector._score_user_behavior(self.props(created_by_user_id="rare"), baseline) == 0.4
        assert detector._score_user_behavior(self.props(created_by_user_id="regular"), baseline) == 0.0

    def test_explanation_orders_by_weighted_contribution(self, detector):
        """At most three features are described, strongest weighted first."""
        explanation = detector.explain(
            {
                "movement_type_rarity": 0.9,
                "quantity_anomaly": 0.8,
                "approval_pattern": 0.6,
                "time_anomaly": 1.0,
                "location_path": 0.0,
                "user_behavior": 0.4,
            }
        )

        parts = explanation.split("; ")
        assert len(parts) == 3
        assert parts[0] == "Unusual quantity (score: 0.80)"
        assert parts[1] == "Rare movement type (score: 0.90)"
        assert parts[2] == "Suspicious approval pattern (score: 0.60)"
