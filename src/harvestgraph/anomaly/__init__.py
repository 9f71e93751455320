"""
Graph-based anomaly detection.

Detectors score graph nodes from feature heuristics; the service persists
results with deduplication and serves the review queue.
"""

from harvestgraph.anomaly.irrigation import (
    IrrigationAnomalyDetector,
    SqlZoneResponseProvider,
    ZoneIrrigationResponse,
    ZoneResponseBaseline,
    ZoneResponseProvider,
)
from harvestgraph.anomaly.models import AnomalyBatchResult, AnomalyResult
from harvestgraph.anomaly.movement import MovementAnomalyDetector, MovementBaseline
from harvestgraph.anomaly.results import (
    AnomalyResultStore,
    InMemoryAnomalyResultStore,
    SqlAnomalyResultStore,
)
from harvestgraph.anomaly.service import AnomalyDetectionService

__all__ = [
    "AnomalyBatchResult",
    "AnomalyDetectionService",
    "AnomalyResult",
    "AnomalyResultStore",
    "InMemoryAnomalyResultStore",
    "IrrigationAnomalyDetector",
    "MovementAnomalyDetector",
    "MovementBaseline",
    "SqlAnomalyResultStore",
    "SqlZoneResponseProvider",
    "ZoneIrrigationResponse",
    "ZoneResponseBaseline",
    "ZoneResponseProvider",
]
