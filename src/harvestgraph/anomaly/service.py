"""
Anomaly detection service.

Dispatches scoring to the detector registered for a node type, persists
results through an AnomalyResultStore and serves the review queue.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from harvestgraph.anomaly.irrigation import IrrigationAnomalyDetector
from harvestgraph.anomaly.models import AnomalyBatchResult, AnomalyResult
from harvestgraph.anomaly.movement import MovementAnomalyDetector
from harvestgraph.anomaly.results import AnomalyResultStore
from harvestgraph.exceptions import NodeNotFoundError
from harvestgraph.graph.schema import NodeType
from harvestgraph.graph.store import GraphStore

logger = logging.getLogger(__name__)


class AnomalyDetectionService:
    """Entry point for batch, incremental and on-demand anomaly scoring."""

    def __init__(
        self,
        store: GraphStore,
        result_store: AnomalyResultStore,
        movement_detector: MovementAnomalyDetector,
        irrigation_detector: IrrigationAnomalyDetector,
    ):
        self.store = store
        self.result_store = result_store
        self.movement_detector = movement_detector
        self.irrigation_detector = irrigation_detector

        self._detectors = {
            NodeType.INVENTORY_MOVEMENT: movement_detector,
            NodeType.IRRIGATION_RUN: irrigation_detector,
        }

    @property
    def supported_node_types(self) -> list[NodeType]:
        return list(self._detectors)

    async def score_anomalies(self, site_id: str, node_type: NodeType) -> AnomalyBatchResult:
        """
        Run batch detection for one node type and persist the results.

        Node types without a detector produce an empty batch.
        """
        started_at = datetime.utcnow()
        node_type = NodeType(node_type)
        logger.info(f"Scoring anomalies for site {site_id}, type {node_type.value}")

        detector = self._detectors.get(node_type)
        if detector is None:
            logger.warning(f"No anomaly detector for node type {node_type.value}")
            return AnomalyBatchResult(
                site_id=site_id,
                node_type=node_type,
                total_scored=0,
                anomalies_detected=0,
                threshold_used=0.0,
                duration=datetime.utcnow() - started_at,
                model_version="N/A",
            )

        results, scored = await detector.scan(site_id)
        stored = await self.result_store.save(results)

        return AnomalyBatchResult(
            site_id=site_id,
            node_type=node_type,
            total_scored=scored,
            anomalies_detected=len(results),
            threshold_used=detector.threshold,
            duration=datetime.utcnow() - started_at,
            model_version=detector.MODEL_VERSION,
            results=stored,
        )

    async def score_node_anomaly(self, node_id: str) -> AnomalyResult:
        """
        Score one node on demand, regardless of threshold.

        Raises:
            NodeNotFoundError: if the node does not exist
        """
        node = await self.store.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)

        if node.node_type == NodeType.INVENTORY_MOVEMENT:
            return await self.movement_detector.score_movement(node.source_entity_id)
        if node.node_type == NodeType.IRRIGATION_RUN:
            return await self.irrigation_detector.score_irrigation_run(node.source_entity_id)

        return AnomalyResult(
            site_id=node.site_id,
            node_id=node.node_id,
            node_type=node.node_type,
            anomaly_type="unsupported",
            score=0.0,
            explanation="Anomaly detection not supported for this node type",
            model_version="N/A",
        )

    async def score_incremental(self, site_id: str, node_ids: Iterable[str]) -> list[AnomalyResult]:
        """
        Score a list of nodes and persist those at or above their detector's threshold.

        Nodes that fail to score or belong to another site are logged and skipped.
        """
        results = []
        for node_id in node_ids:
            node = await self.store.get_node(node_id)
            if node is not None and node.site_id != site_id:
                logger.warning(f"Skipping node {node_id}: belongs to site {node.site_id}, not {site_id}")
                continue
            try:
                result = await self.score_node_anomaly(node_id)
            except Exception as e:
                logger.warning(f"Error scoring node {node_id}: {e}")
                continue

            detector = self._detectors.get(result.node_type)
            if detector is not None and result.score >= detector.threshold:
                results.append(result)

        stored = await self.result_store.save(results)
        logger.info(f"Incremental scoring for site {site_id} kept {len(stored)} anomalies")
        return stored

    async def get_top_anomalies(
        self, site_id: str, limit: int = 50, node_type: Optional[NodeType] = None
    ) -> list[AnomalyResult]:
        """Highest-scoring unacknowledged results, optionally for one node type."""
        return await self.result_store.get_top(site_id, limit, node_type)

    async def acknowledge_anomaly(
        self, anomaly_id: UUID, user_id: str, notes: Optional[str] = None
    ) -> AnomalyResult:
        """
        Record that a result was reviewed.

        Raises:
            AnomalyNotFoundError: if the result does not exist
        """
        result = await self.result_store.acknowledge(anomaly_id, user_id, notes)
        logger.info(f"Anomaly {anomaly_id} acknowledged by user {user_id}")
        return result
