"""
Movement anomaly detection over InventoryMovement nodes.

Scores each movement on six independent graph features against a baseline
built from the site's active movements:
- Movement-type rarity
- Quantity deviation
- Approval pattern flags
- Off-hours activity
- Location path rarity (paired MovedFrom/MovedTo edges)
- Creator behavior
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from harvestgraph.anomaly.models import AnomalyResult
from harvestgraph.config import settings
from harvestgraph.exceptions import NodeNotFoundError
from harvestgraph.graph.edges import EdgeType
from harvestgraph.graph.properties import MovementProperties, load_properties
from harvestgraph.graph.schema import GraphNode, NodeType, format_node_id
from harvestgraph.graph.store import GraphStore

logger = logging.getLogger(__name__)


@dataclass
class MovementBaseline:
    """Site-level movement statistics, rebuilt for every detection pass."""

    total_movements: int = 0
    mean_quantity: float = 0.0
    stddev_quantity: float = 0.0
    movement_type_counts: Counter = field(default_factory=Counter)
    user_movement_counts: Counter = field(default_factory=Counter)
    location_transition_counts: Counter = field(default_factory=Counter)


def location_path_key(from_node_id: str, to_node_id: str) -> str:
    return f"{from_node_id}->{to_node_id}"


class MovementAnomalyDetector:
    """
    Unsupervised scorer for inventory movements.

    The composite score is a weighted sum of feature scores in [0, 1];
    batch detection only emits results at or above the threshold.
    """

    MODEL_VERSION = "movement-anomaly-v1.0"
    ANOMALY_TYPE = "movement"

    FEATURE_WEIGHTS = {
        "movement_type_rarity": 0.15,
        "quantity_anomaly": 0.25,
        "approval_pattern": 0.20,
        "time_anomaly": 0.10,
        "location_path": 0.15,
        "user_behavior": 0.15,
    }

    FEATURE_DESCRIPTIONS = {
        "movement_type_rarity": "Rare movement type",
        "quantity_anomaly": "Unusual quantity",
        "approval_pattern": "Suspicious approval pattern",
        "time_anomaly": "Off-hours activity",
        "location_path": "Unusual location path",
        "user_behavior": "Atypical user behavior",
    }

    # Working hours window (inclusive)
    WORKDAY_START_HOUR = 6
    WORKDAY_END_HOUR = 20

    def __init__(self, store: GraphStore, threshold: Optional[float] = None):
        self.store = store
        self.threshold = threshold if threshold is not None else settings.movement_anomaly_threshold

    async def detect_anomalies(
        self, site_id: str, since: Optional[datetime] = None
    ) -> list[AnomalyResult]:
        """Score movements and return the anomalous ones."""
        results, _ = await self.scan(site_id, since)
        return results

    async def scan(
        self, site_id: str, since: Optional[datetime] = None
    ) -> tuple[list[AnomalyResult], int]:
        """
        Score every active movement of a site.

        Anomalous movements also get their score written to the graph node.

        Args:
            site_id: Site to scan
            since: Only score movements created at or after this time

        Returns:
            (results at or above threshold, number of movements scored)
        """
        nodes = await self.store.get_nodes_by_type(site_id, NodeType.INVENTORY_MOVEMENT)
        if not nodes:
            logger.debug(f"No movement nodes found for site {site_id}")
            return [], 0

        baseline = await self.build_baseline(site_id, nodes)
        if since is not None:
            nodes = [n for n in nodes if n.source_created_at >= since]

        results = []
        for node in nodes:
            score, features = await self._score_node(node, baseline)
            if score < self.threshold:
                continue
            result = self._result(node, score, features)
            results.append(result)
            await self.store.set_anomaly_score(node.node_id, score, result.explanation)

        logger.info(
            f"Detected {len(results)} movement anomalies in {len(nodes)} movements for site {site_id}"
        )
        return results, len(nodes)

    async def score_movement(self, movement_id: str) -> AnomalyResult:
        """
        Score a single movement regardless of threshold.

        Raises:
            NodeNotFoundError: if the movement is not in the graph
        """
        node_id = format_node_id(NodeType.INVENTORY_MOVEMENT, movement_id)
        node = await self.store.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id, f"Movement node not found: {movement_id}")

        baseline = await self.build_baseline(node.site_id)
        score, features = await self._score_node(node, baseline)
        return self._result(node, score, features)

    async def build_baseline(
        self, site_id: str, nodes: Optional[list[GraphNode]] = None
    ) -> MovementBaseline:
        if nodes is None:
            nodes = await self.store.get_nodes_by_type(site_id, NodeType.INVENTORY_MOVEMENT)

        baseline = MovementBaseline(total_movements=len(nodes))
        if not nodes:
            return baseline

        quantities = []
        for node in nodes:
            props = load_properties(node, MovementProperties)
            if props is None:
                continue
            baseline.movement_type_counts[props.movement_type] += 1
            baseline.user_movement_counts[props.created_by_user_id] += 1
            quantities.append(props.quantity)

        if quantities:
            mean = sum(quantities) / len(quantities)
            baseline.mean_quantity = mean
            baseline.stddev_quantity = math.sqrt(
                sum((q - mean) ** 2 for q in quantities) / len(quantities)
            )

        from_edges = await self.store.get_edges_by_type(site_id, EdgeType.MOVED_FROM)
        to_edges = await self.store.get_edges_by_type(site_id, EdgeType.MOVED_TO)
        to_by_movement = {e.source_node_id: e for e in to_edges}
        for from_edge in from_edges:
            to_edge = to_by_movement.get(from_edge.source_node_id)
            if to_edge is not None:
                key = location_path_key(from_edge.target_node_id, to_edge.target_node_id)
                baseline.location_transition_counts[key] += 1

        return baseline

    async def _score_node(
        self, node: GraphNode, baseline: MovementBaseline
    ) -> tuple[float, dict[str, float]]:
        props = load_properties(node, MovementProperties)
        if props is None:
            return 0.0, {}

        features = {
            "movement_type_rarity": self._score_movement_type(props, baseline),
            "quantity_anomaly": self._score_quantity(props, baseline),
            "approval_pattern": self._score_approval_pattern(props),
            "time_anomaly": self._score_time_of_day(node.source_created_at),
            "location_path": await self._score_location_path(node, baseline),
            "user_behavior": self._score_user_behavior(props, baseline),
        }

        total = sum(value * self.FEATURE_WEIGHTS[name] for name, value in features.items())
        return min(max(total, 0.0), 1.0), features

    def _score_movement_type(self, props: MovementProperties, baseline: MovementBaseline) -> float:
        count = baseline.movement_type_counts.get(props.movement_type)
        if not count:
            return 0.9
        frequency = count / baseline.total_movements
        return 1.0 - min(frequency * 10.0, 1.0)

    def _score_quantity(self, props: MovementProperties, baseline: MovementBaseline) -> float:
        if baseline.mean_quantity <= 0 or baseline.stddev_quantity <= 0:
            return 0.0
        z_score = abs(props.quantity - baseline.mean_quantity) / baseline.stddev_quantity
        return 1.0 - math.exp(-z_score / 2.0)

    def _score_approval_pattern(self, props: MovementProperties) -> float:
        score = 0.0
        first, second = props.first_approver_id, props.second_approver_id

        if props.requires_approval and not first:
            score += 0.5
        if first and first == props.created_by_user_id:
            score += 0.4
        if first and second and first == second:
            score += 0.6

        return min(score, 1.0)

    def _score_time_of_day(self, created_at: datetime) -> float:
        hour = created_at.hour
        if hour < self.WORKDAY_START_HOUR:
            return min(0.5 + (self.WORKDAY_START_HOUR - hour) * 0.1, 1.0)
        if hour > self.WORKDAY_END_HOUR:
            return min(0.5 + (hour - self.WORKDAY_END_HOUR) * 0.1, 1.0)
        return 0.0

    async def _score_location_path(self, node: GraphNode, baseline: MovementBaseline) -> float:
        edges = await self.store.get_outgoing_edges(node.node_id)
        from_edge = next((e for e in edges if e.edge_type == EdgeType.MOVED_FROM), None)
        to_edge = next((e for e in edges if e.edge_type == EdgeType.MOVED_TO), None)
        if from_edge is None or to_edge is None:
            return 0.0

        count = baseline.location_transition_counts.get(
            location_path_key(from_edge.target_node_id, to_edge.target_node_id)
        )
        if not count:
            return 0.6
        frequency = count / baseline.total_movements
        return 1.0 - min(frequency * 20.0, 1.0)

    def _score_user_behavior(self, props: MovementProperties, baseline: MovementBaseline) -> float:
        count = baseline.user_movement_counts.get(props.created_by_user_id)
        if not count:
            return 0.7
        if count < 5:
            return 0.4
        return 0.0

    def explain(self, features: dict[str, float]) -> str:
        """Describe the strongest contributing features, at most three."""
        significant = [(name, value) for name, value in features.items() if value > 0.3]
        significant.sort(key=lambda f: f[1] * self.FEATURE_WEIGHTS.get(f[0], 0.1), reverse=True)

        if not significant:
            return "Low-level anomaly detected"

        parts = []
        for name, value in significant[:3]:
            description = self.FEATURE_DESCRIPTIONS.get(name, name)
            parts.append(f"{description} (score: {value:.2f})")
        return "; ".join(parts)

    def _result(self, node: GraphNode, score: float, features: dict[str, float]) -> AnomalyResult:
        return AnomalyResult(
            site_id=node.site_id,
            node_id=node.node_id,
            node_type=NodeType.INVENTORY_MOVEMENT,
            anomaly_type=self.ANOMALY_TYPE,
            score=score,
            explanation=self.explain(features),
            model_version=self.MODEL_VERSION,
            feature_attributions=features,
        )
