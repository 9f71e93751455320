"""
Typed property payloads for graph nodes and edges.

The graph core treats ``properties_json`` as an opaque string. Each builder
owns the schema of the node types it emits; consumers deserialize here, at
the store boundary, into one model per node type.
"""

import logging
from datetime import datetime
from typing import Optional, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from harvestgraph.graph.schema import GraphNode, NodeType

logger = logging.getLogger(__name__)

P = TypeVar("P", bound="GraphProperties")


class GraphProperties(BaseModel):
    """Base class for node and edge payloads."""

    model_config = ConfigDict(extra="ignore")

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls: type[P], payload: Optional[str]) -> Optional[P]:
        """Deserialize a payload, returning None when it is missing or malformed."""
        if not payload:
            return None
        try:
            return cls.model_validate_json(payload)
        except ValidationError as e:
            logger.warning(f"Malformed {cls.__name__} payload: {e.error_count()} errors")
            return None


# =============================================================================
# Inventory
# =============================================================================


class PackageProperties(GraphProperties):
    package_label: str
    item_name: str = ""
    item_category: str = ""
    quantity: float = 0.0
    initial_quantity: float = 0.0
    unit_of_measure: str = ""
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    status: str = ""
    lab_testing_state: Optional[str] = None
    thc_percent: Optional[float] = None
    cbd_percent: Optional[float] = None
    generation_depth: int = 0
    root_ancestor_id: Optional[str] = None
    hold_reason_code: Optional[str] = None
    metrc_sync_status: Optional[str] = None
    unit_cost: Optional[float] = None
    grade: Optional[str] = None


class MovementProperties(GraphProperties):
    movement_type: str
    status: str = ""
    package_id: str
    package_label: Optional[str] = None
    quantity: float = 0.0
    unit_of_measure: str = ""
    from_location_id: Optional[str] = None
    from_location_path: Optional[str] = None
    to_location_id: Optional[str] = None
    to_location_path: Optional[str] = None
    reason_code: Optional[str] = None
    requires_approval: bool = False
    first_approver_id: Optional[str] = None
    second_approver_id: Optional[str] = None
    verified_by_user_id: Optional[str] = None
    created_by_user_id: str


class LocationProperties(GraphProperties):
    location_name: Optional[str] = None


# =============================================================================
# Tasks
# =============================================================================


class TaskProperties(GraphProperties):
    task_type: str = ""
    custom_task_type: Optional[str] = None
    title: str = "Untitled Task"
    status: str = ""
    priority: Optional[str] = None
    assigned_to_user_id: Optional[str] = None
    assigned_to_role: Optional[str] = None
    due_date: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    blocking_reason: Optional[str] = None
    is_blocked: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in ("Completed", "Cancelled")


class TimeEntryProperties(GraphProperties):
    task_id: str
    user_id: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_minutes: int = 0
    notes: Optional[str] = None


class UserProperties(GraphProperties):
    display_name: str = ""
    email: Optional[str] = None
    is_active: bool = True
    primary_role: Optional[str] = None
    total_tasks_completed: int = 0
    avg_task_completion_hours: Optional[float] = None


class DependencyEdgeProperties(GraphProperties):
    dependency_type: str = "FinishToStart"
    is_blocking: bool = False


# =============================================================================
# Telemetry and irrigation
# =============================================================================


class SensorStreamProperties(GraphProperties):
    stream_type: int
    stream_type_name: str
    unit: str = ""
    display_name: str = "Sensor"
    equipment_id: Optional[str] = None
    equipment_channel_id: Optional[str] = None
    location_id: Optional[str] = None
    room_id: Optional[str] = None
    zone_id: Optional[str] = None
    is_active: bool = True


class IrrigationRunProperties(GraphProperties):
    program_id: Optional[str] = None
    group_id: Optional[str] = None
    schedule_id: Optional[str] = None
    status: str = ""
    total_steps: int = 0
    completed_steps: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    initiated_by: str = "system"
    initiated_by_user_id: Optional[str] = None
    interlock_type: Optional[str] = None
    fault_message: Optional[str] = None
    target_zone_ids: list[str] = []


class ZoneEmitterProperties(GraphProperties):
    zone_id: Optional[str] = None
    zone_name: str = ""
    emitter_count: int = 0
    emitter_flow_rate_liters_per_hour: float = 0.0
    emitter_type: Optional[str] = None
    emitters_per_plant: Optional[int] = None
    operating_pressure_kpa: Optional[float] = None
    last_calibrated_at: Optional[datetime] = None
    total_flow_liters_per_minute: float = 0.0


class AlertRuleProperties(GraphProperties):
    rule_name: str
    rule_type: str = ""
    severity: str = ""
    is_active: bool = True
    stream_ids: list[str] = []


class AlertInstanceProperties(GraphProperties):
    rule_id: str
    severity: str = ""
    fired_at: datetime
    cleared_at: Optional[datetime] = None
    current_value: Optional[float] = None
    threshold_value: Optional[float] = None
    message: Optional[str] = None


# =============================================================================
# Genetics
# =============================================================================


class StrainProperties(GraphProperties):
    name: str
    breeder: Optional[str] = None
    seed_bank: Optional[str] = None
    genetic_classification: str = ""
    testing_status: str = ""
    nominal_thc_percent: Optional[float] = None
    nominal_cbd_percent: Optional[float] = None
    expected_harvest_window_days: Optional[int] = None
    crop_steering_profile_id: Optional[str] = None
    has_custom_steering_profile: bool = False
    metrc_strain_id: Optional[int] = None


class SteeringProfileProperties(GraphProperties):
    name: str = "Profile"
    strain_id: Optional[str] = None
    target_mode: str = ""
    is_active: bool = True
    is_site_default: bool = False


class HarvestProperties(GraphProperties):
    harvest_name: str
    harvest_type: str = ""
    status: str = ""
    current_phase: Optional[str] = None
    strain_id: Optional[str] = None
    strain_name: Optional[str] = None
    plant_count: int = 0
    total_wet_weight_grams: Optional[float] = None
    total_dry_weight_grams: Optional[float] = None
    metrc_harvest_id: Optional[int] = None


class LabTestBatchProperties(GraphProperties):
    batch_number: str
    lab_name: Optional[str] = None
    status: str = ""
    passed: Optional[bool] = None
    thc_percent: Optional[float] = None
    cbd_percent: Optional[float] = None
    total_cannabinoids: Optional[float] = None
    requires_remediation: bool = False
    sample_collected_at: Optional[datetime] = None
    results_received_at: Optional[datetime] = None


PROPERTIES_BY_NODE_TYPE: dict[NodeType, type[GraphProperties]] = {
    NodeType.PACKAGE: PackageProperties,
    NodeType.INVENTORY_MOVEMENT: MovementProperties,
    NodeType.LOCATION: LocationProperties,
    NodeType.TASK: TaskProperties,
    NodeType.TIME_ENTRY: TimeEntryProperties,
    NodeType.USER: UserProperties,
    NodeType.SENSOR_STREAM: SensorStreamProperties,
    NodeType.IRRIGATION_RUN: IrrigationRunProperties,
    NodeType.ZONE_EMITTER_CONFIG: ZoneEmitterProperties,
    NodeType.ALERT_RULE: AlertRuleProperties,
    NodeType.ALERT_INSTANCE: AlertInstanceProperties,
    NodeType.STRAIN: StrainProperties,
    NodeType.CROP_STEERING_PROFILE: SteeringProfileProperties,
    NodeType.HARVEST: HarvestProperties,
    NodeType.LAB_TEST_BATCH: LabTestBatchProperties,
}


def load_properties(node: GraphNode, expected: type[P]) -> Optional[P]:
    """Deserialize a node's payload as the expected model."""
    registered = PROPERTIES_BY_NODE_TYPE.get(node.node_type)
    if registered is not None and not issubclass(registered, expected):
        logger.warning(
            f"Node {node.node_id} holds {registered.__name__}, not {expected.__name__}"
        )
        return None
    return expected.from_json(node.properties_json)
