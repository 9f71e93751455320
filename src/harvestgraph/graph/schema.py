"""
Node schema for the operational knowledge graph.

Every node is derived from exactly one row in an operational source table.
Node identity is a pure function of (node type, source entity id) so that
rebuilding from the same row always lands on the same node.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from harvestgraph.exceptions import InvalidNodeIdError


class NodeType(str, Enum):
    """Types of nodes in the operational graph."""

    # Inventory
    PACKAGE = "Package"
    INVENTORY_MOVEMENT = "InventoryMovement"
    LOCATION = "Location"
    SALES_ORDER = "SalesOrder"
    TRANSFER = "Transfer"
    PROCESSING_JOB = "ProcessingJob"

    # Tasks and people
    TASK = "Task"
    TIME_ENTRY = "TimeEntry"
    USER = "User"
    TEAM = "Team"
    SOP = "Sop"

    # Facility and telemetry
    ZONE = "Zone"
    ROOM = "Room"
    EQUIPMENT = "Equipment"
    SENSOR_STREAM = "SensorStream"
    IRRIGATION_RUN = "IrrigationRun"
    ZONE_EMITTER_CONFIG = "ZoneEmitterConfig"
    ALERT_RULE = "AlertRule"
    ALERT_INSTANCE = "AlertInstance"

    # Genetics and cultivation
    STRAIN = "Strain"
    CROP_STEERING_PROFILE = "CropSteeringProfile"
    RESPONSE_CURVE = "ResponseCurve"
    HARVEST = "Harvest"
    LAB_TEST_BATCH = "LabTestBatch"
    PLANT = "Plant"


NODE_ID_SEPARATOR = ":"


def format_node_id(node_type: NodeType, source_entity_id) -> str:
    """Build the deterministic node id for a source row."""
    return f"{NodeType(node_type).value}{NODE_ID_SEPARATOR}{str(source_entity_id).lower()}"


def parse_node_id(node_id: str) -> tuple[NodeType, str]:
    """
    Split a node id into its node type and source entity id.

    Raises:
        InvalidNodeIdError: if the id is not '{NodeType}:{source id}'
    """
    type_part, sep, source_part = (node_id or "").partition(NODE_ID_SEPARATOR)
    if not sep or not source_part:
        raise InvalidNodeIdError(f"Malformed node id: {node_id!r}")
    try:
        return NodeType(type_part), source_part
    except ValueError:
        raise InvalidNodeIdError(f"Unknown node type in id: {node_id!r}") from None


def node_type_prefix(node_type: NodeType) -> str:
    """Prefix shared by every node id of the given type."""
    return f"{NodeType(node_type).value}{NODE_ID_SEPARATOR}"


@dataclass
class GraphNode:
    """A typed vertex traceable to one source row."""

    node_id: str
    site_id: str
    node_type: NodeType
    source_entity_id: str
    label: str
    source_created_at: datetime
    source_updated_at: datetime
    properties_json: str = "{}"
    anomaly_score: Optional[float] = None
    anomaly_explanation: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def create(
        cls,
        site_id: str,
        node_type: NodeType,
        source_entity_id,
        label: str,
        source_created_at: datetime,
        source_updated_at: Optional[datetime] = None,
        properties: Optional[BaseModel] = None,
    ) -> "GraphNode":
        """Create a node with its id derived from type and source id."""
        if source_entity_id is None or source_created_at is None:
            raise ValueError(f"{NodeType(node_type).value} node needs a source id and creation time")
        source_id = str(source_entity_id).lower()
        return cls(
            node_id=format_node_id(node_type, source_id),
            site_id=str(site_id),
            node_type=NodeType(node_type),
            source_entity_id=source_id,
            label=label,
            source_created_at=source_created_at,
            source_updated_at=source_updated_at or source_created_at,
            properties_json=properties.model_dump_json() if properties is not None else "{}",
        )

    def set_anomaly_score(self, score: float, explanation: Optional[str]) -> None:
        """Record the latest anomaly score for this node."""
        if not 0.0 <= score <= 1.0:
            raise ValueError(f"Anomaly score must be between 0 and 1, got {score}")
        self.anomaly_score = score
        self.anomaly_explanation = explanation
        self.updated_at = datetime.utcnow()

    def deactivate(self) -> None:
        """Soft-delete the node; it stays available for history."""
        self.is_active = False
        self.updated_at = datetime.utcnow()

    @property
    def is_anomalous(self) -> bool:
        return self.anomaly_score is not None and self.anomaly_score >= 0.7
