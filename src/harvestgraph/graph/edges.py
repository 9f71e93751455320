"""
Edge schema for the operational knowledge graph.

Edges reference nodes by their deterministic ids. The referenced node may not
have been materialized yet in the same batch; integrity is logical only.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from harvestgraph.graph.schema import NodeType, format_node_id


class EdgeType(str, Enum):
    """Types of relationships in the operational graph."""

    # Inventory movement flow
    INVOLVES_PACKAGE = "InvolvesPackage"
    MOVED_FROM = "MovedFrom"
    MOVED_TO = "MovedTo"
    CREATED_BY = "CreatedBy"
    VERIFIED_BY = "VerifiedBy"
    APPROVED_BY = "ApprovedBy"
    SECOND_APPROVED_BY = "SecondApprovedBy"
    PART_OF_SALES_ORDER = "PartOfSalesOrder"
    PART_OF_TRANSFER = "PartOfTransfer"
    PART_OF_PROCESSING_JOB = "PartOfProcessingJob"
    DERIVED_FROM = "DerivedFrom"

    # Task management
    DEPENDS_ON = "DependsOn"
    ASSIGNED_TO = "AssignedTo"
    ASSIGNED_BY = "AssignedBy"
    TIME_ENTRY_FOR = "TimeEntryFor"
    LOGGED_BY = "LoggedBy"

    # Telemetry and irrigation
    ATTACHED_TO_EQUIPMENT = "AttachedToEquipment"
    MEASURES_ZONE = "MeasuresZone"
    LOCATED_IN = "LocatedIn"
    HAS_EMITTERS = "HasEmitters"
    FIRED_FOR_RULE = "FiredForRule"
    TRIGGERED_BY_STREAM = "TriggeredByStream"

    # Genetics
    HAS_STEERING_PROFILE = "HasSteeringProfile"
    OF_STRAIN = "OfStrain"
    TESTED_PACKAGE = "TestedPackage"


def format_edge_id(edge_type: EdgeType, source_node_id: str, target_node_id: str) -> str:
    """Build the deterministic edge id for a relationship."""
    return f"{EdgeType(edge_type).value}:{source_node_id}->{target_node_id}"


@dataclass
class GraphEdge:
    """A typed relationship between two graph nodes."""

    edge_id: str
    site_id: str
    edge_type: EdgeType
    source_node_id: str
    target_node_id: str
    occurred_at: datetime
    weight: float = 1.0
    properties_json: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def create(
        cls,
        site_id: str,
        edge_type: EdgeType,
        source_type: NodeType,
        source_entity_id,
        target_type: NodeType,
        target_entity_id,
        occurred_at: datetime,
        weight: float = 1.0,
        properties: Optional[BaseModel] = None,
    ) -> "GraphEdge":
        """Create an edge between two source rows identified by type and id."""
        if source_entity_id is None or target_entity_id is None or occurred_at is None:
            raise ValueError(f"{EdgeType(edge_type).value} edge needs both endpoints and a timestamp")
        source_node_id = format_node_id(source_type, source_entity_id)
        target_node_id = format_node_id(target_type, target_entity_id)
        return cls(
            edge_id=format_edge_id(edge_type, source_node_id, target_node_id),
            site_id=str(site_id),
            edge_type=EdgeType(edge_type),
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            occurred_at=occurred_at,
            weight=weight,
            properties_json=properties.model_dump_json() if properties is not None else None,
        )

    def deactivate(self) -> None:
        self.is_active = False
        self.updated_at = datetime.utcnow()
