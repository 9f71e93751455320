"""
Result types shared by the anomaly detectors and the detection service.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from harvestgraph.graph.schema import NodeType


@dataclass
class AnomalyResult:
    """Outcome of scoring one graph entity."""

    site_id: str
    node_id: str
    node_type: NodeType
    anomaly_type: str
    score: float  # 0.0 to 1.0
    explanation: str
    model_version: str
    feature_attributions: dict[str, float] = field(default_factory=dict)
    edge_id: Optional[str] = None
    detected_at: datetime = field(default_factory=datetime.utcnow)

    # Set once the result has been persisted
    id: Optional[UUID] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledged_at is not None

    @property
    def severity(self) -> str:
        """Get severity level based on score."""
        if self.score >= 0.85:
            return "critical"
        elif self.score >= 0.70:
            return "high"
        elif self.score >= 0.50:
            return "medium"
        else:
            return "low"


@dataclass
class AnomalyBatchResult:
    """Summary of a batch detection pass over one node type."""

    site_id: str
    node_type: NodeType
    total_scored: int
    anomalies_detected: int
    threshold_used: float
    duration: timedelta
    model_version: str
    results: list[AnomalyResult] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return self.duration.total_seconds()
