"""
Telemetry and irrigation graph builder.

Creates nodes for SensorStream, IrrigationRun, ZoneEmitterConfig, AlertRule
and AlertInstance, and edges for equipment/zone/room placement, emitter
configuration and alert monitoring.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Optional

from sqlalchemy.engine import RowMapping
from sqlalchemy.ext.asyncio import AsyncSession

from harvestgraph.builders.base import (
    BuildResult,
    GraphBuilder,
    OptionalLink,
    as_bool,
    as_datetime,
    as_float,
    as_id,
    as_int,
    as_list,
    as_str,
    with_watermark,
)
from harvestgraph.graph.edges import EdgeType, GraphEdge
from harvestgraph.graph.properties import (
    AlertInstanceProperties,
    AlertRuleProperties,
    IrrigationRunProperties,
    SensorStreamProperties,
    ZoneEmitterProperties,
)
from harvestgraph.graph.schema import GraphNode, NodeType

logger = logging.getLogger(__name__)


FETCH_SENSOR_STREAMS_QUERY = """
SELECT
    id, stream_type, unit, display_name, equipment_id,
    equipment_channel_id, location_id, room_id, zone_id,
    is_active, metadata, created_at, updated_at
FROM sensor_streams
WHERE site_id = :site_id
"""

FETCH_IRRIGATION_RUNS_QUERY = """
SELECT
    id, program_id, group_id, schedule_id, status,
    total_steps, completed_steps, created_at, started_at,
    completed_at, initiated_by, initiated_by_user_id,
    interlock_type, fault_message
FROM irrigation_runs
WHERE site_id = :site_id
"""

FETCH_IRRIGATION_RUN_ZONES_QUERY = """
SELECT rz.run_id, rz.zone_id
FROM irrigation_run_zones rz
JOIN irrigation_runs r ON rz.run_id = r.id
WHERE r.site_id = :site_id
"""

FETCH_ZONE_EMITTERS_QUERY = """
SELECT
    id, zone_id, zone_name, emitter_count,
    emitter_flow_rate_liters_per_hour, emitter_type,
    emitters_per_plant, operating_pressure_kpa,
    last_calibrated_at, created_at, updated_at
FROM zone_emitter_configurations
WHERE site_id = :site_id
"""

FETCH_ALERT_RULES_QUERY = """
SELECT
    id, rule_name, rule_type, stream_ids, severity,
    is_active, created_at, updated_at
FROM alert_rules
WHERE site_id = :site_id
"""

FETCH_ALERT_INSTANCES_QUERY = """
SELECT
    id, rule_id, severity, fired_at,
    cleared_at, current_value, threshold_value, message
FROM alert_instances
WHERE site_id = :site_id
"""

# stream_id is not present on every deployment of alert_instances
ALERT_STREAM_LINK = OptionalLink(
    table="alert_instances",
    key="id",
    column="stream_id",
    edge_type=EdgeType.TRIGGERED_BY_STREAM,
    source_type=NodeType.ALERT_INSTANCE,
    target_type=NodeType.SENSOR_STREAM,
    timestamp="fired_at",
    watermark="fired_at",
)

# Runs have no updated_at; a run changes until it completes
IRRIGATION_RUN_WATERMARK = "COALESCE(completed_at, started_at, created_at)"

STREAM_TYPE_NAMES = {
    1: "Temperature",
    2: "Humidity",
    3: "CO2",
    4: "VPD",
    5: "Light PAR",
    6: "Light PPFD",
    10: "EC",
    11: "pH",
    12: "Dissolved Oxygen",
    13: "Water Temp",
    14: "Water Level",
    20: "VWC/Soil Moisture",
    21: "Soil Temp",
    22: "Soil EC",
    30: "Pressure",
    31: "Flow Rate",
    32: "Flow Total",
}

VWC_STREAM_TYPE = 20
FLOW_RATE_STREAM_TYPE = 31


def stream_type_name(stream_type: int) -> str:
    return STREAM_TYPE_NAMES.get(stream_type, f"Type {stream_type}")


class TelemetryGraphBuilder(GraphBuilder):
    """Builds the sensor, irrigation and alerting graph."""

    name = "telemetry"
    node_types = (
        NodeType.ZONE,
        NodeType.ROOM,
        NodeType.EQUIPMENT,
        NodeType.SENSOR_STREAM,
        NodeType.IRRIGATION_RUN,
        NodeType.ZONE_EMITTER_CONFIG,
        NodeType.ALERT_RULE,
        NodeType.ALERT_INSTANCE,
    )
    edge_types = (
        EdgeType.ATTACHED_TO_EQUIPMENT,
        EdgeType.MEASURES_ZONE,
        EdgeType.LOCATED_IN,
        EdgeType.HAS_EMITTERS,
        EdgeType.FIRED_FOR_RULE,
        EdgeType.TRIGGERED_BY_STREAM,
    )

    async def _build(
        self,
        session: AsyncSession,
        site_id: str,
        since: Optional[datetime],
        result: BuildResult,
    ) -> None:
        # Sensor streams and their placement edges
        params = {"site_id": site_id}
        query = with_watermark(FETCH_SENSOR_STREAMS_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "sensor_streams", result)
        if rows is not None:
            nodes, edges = self._map_rows(rows, lambda r: self._sensor_stream(site_id, r), result)
            await self._emit(
                result,
                nodes,
                edges,
                node_types=[NodeType.SENSOR_STREAM],
                edge_types=[EdgeType.ATTACHED_TO_EQUIPMENT, EdgeType.MEASURES_ZONE, EdgeType.LOCATED_IN],
            )

        # Irrigation runs; target zones are optional
        zone_rows = await self._fetch(
            session,
            FETCH_IRRIGATION_RUN_ZONES_QUERY,
            {"site_id": site_id},
            "irrigation_run_zones",
            result,
        )
        target_zones: dict[str, list[str]] = defaultdict(list)
        for row in zone_rows or []:
            run_id, zone_id = as_id(row["run_id"]), as_id(row["zone_id"])
            if run_id and zone_id:
                target_zones[run_id].append(zone_id)

        params = {"site_id": site_id}
        query = with_watermark(FETCH_IRRIGATION_RUNS_QUERY, IRRIGATION_RUN_WATERMARK, since, params)
        rows = await self._fetch(session, query, params, "irrigation_runs", result)
        if rows is not None:
            nodes, _ = self._map_rows(
                rows, lambda r: ([self._irrigation_run_node(site_id, r, target_zones)], []), result
            )
            await self._emit(result, nodes, [], node_types=[NodeType.IRRIGATION_RUN])

        # Zone emitter configurations
        params = {"site_id": site_id}
        query = with_watermark(FETCH_ZONE_EMITTERS_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "zone_emitter_configurations", result)
        if rows is not None:
            nodes, edges = self._map_rows(rows, lambda r: self._zone_emitter(site_id, r), result)
            await self._emit(
                result,
                nodes,
                edges,
                node_types=[NodeType.ZONE_EMITTER_CONFIG],
                edge_types=[EdgeType.HAS_EMITTERS],
            )

        # Alert rules
        params = {"site_id": site_id}
        query = with_watermark(FETCH_ALERT_RULES_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "alert_rules", result)
        if rows is not None:
            nodes, _ = self._map_rows(rows, lambda r: ([self._alert_rule_node(site_id, r)], []), result)
            await self._emit(result, nodes, [], node_types=[NodeType.ALERT_RULE])

        # Alert instances are append-only, watermarked on fire time
        params = {"site_id": site_id}
        query = with_watermark(FETCH_ALERT_INSTANCES_QUERY, "fired_at", since, params)
        rows = await self._fetch(session, query, params, "alert_instances", result)
        if rows is not None:
            nodes, edges = self._map_rows(rows, lambda r: self._alert_instance(site_id, r), result)
            await self._emit(
                result,
                nodes,
                edges,
                node_types=[NodeType.ALERT_INSTANCE],
                edge_types=[EdgeType.FIRED_FOR_RULE],
            )
            await self._emit_links(session, site_id, since, [ALERT_STREAM_LINK], result)

    def _sensor_stream(self, site_id: str, row: RowMapping) -> tuple[list[GraphNode], list[GraphEdge]]:
        stream_id = as_id(row["id"])
        stream_type = as_int(row["stream_type"])
        created_at = as_datetime(row["created_at"])
        display_name = as_str(row["display_name"]) or "Sensor"

        properties = SensorStreamProperties(
            stream_type=stream_type,
            stream_type_name=stream_type_name(stream_type),
            unit=as_str(row["unit"]) or "",
            display_name=display_name,
            equipment_id=as_id(row["equipment_id"]),
            equipment_channel_id=as_id(row["equipment_channel_id"]),
            location_id=as_id(row["location_id"]),
            room_id=as_id(row["room_id"]),
            zone_id=as_id(row["zone_id"]),
            is_active=as_bool(row["is_active"], default=True),
        )
        node = GraphNode.create(
            site_id,
            NodeType.SENSOR_STREAM,
            stream_id,
            f"Stream: {display_name} ({properties.stream_type_name})",
            created_at,
            as_datetime(row["updated_at"]),
            properties,
        )

        edges = []
        for target_id, edge_type, target_type in (
            (properties.equipment_id, EdgeType.ATTACHED_TO_EQUIPMENT, NodeType.EQUIPMENT),
            (properties.zone_id, EdgeType.MEASURES_ZONE, NodeType.ZONE),
            (properties.room_id, EdgeType.LOCATED_IN, NodeType.ROOM),
        ):
            if target_id:
                edges.append(
                    GraphEdge.create(
                        site_id, edge_type, NodeType.SENSOR_STREAM, stream_id, target_type, target_id, created_at
                    )
                )
        return [node], edges

    def _irrigation_run_node(
        self, site_id: str, row: RowMapping, target_zones: dict[str, list[str]]
    ) -> GraphNode:
        run_id = as_id(row["id"])
        status = as_str(row["status"]) or ""
        created_at = as_datetime(row["created_at"])
        completed_at = as_datetime(row["completed_at"])
        properties = IrrigationRunProperties(
            program_id=as_id(row["program_id"]),
            group_id=as_id(row["group_id"]),
            schedule_id=as_id(row["schedule_id"]),
            status=status,
            total_steps=as_int(row["total_steps"], 0),
            completed_steps=as_int(row["completed_steps"], 0),
            started_at=as_datetime(row["started_at"]),
            completed_at=completed_at,
            initiated_by=as_str(row["initiated_by"]) or "system",
            initiated_by_user_id=as_id(row["initiated_by_user_id"]),
            interlock_type=as_str(row["interlock_type"]),
            fault_message=as_str(row["fault_message"]),
            target_zone_ids=target_zones.get(run_id, []),
        )
        return GraphNode.create(
            site_id,
            NodeType.IRRIGATION_RUN,
            run_id,
            f"Irrigation Run: {status}",
            created_at,
            completed_at or created_at,
            properties,
        )

    def _zone_emitter(self, site_id: str, row: RowMapping) -> tuple[list[GraphNode], list[GraphEdge]]:
        config_id = as_id(row["id"])
        zone_id = as_id(row["zone_id"])
        zone_name = as_str(row["zone_name"]) or "Unknown Zone"
        created_at = as_datetime(row["created_at"])
        emitter_count = as_int(row["emitter_count"], 0)
        flow_rate = as_float(row["emitter_flow_rate_liters_per_hour"], 0.0)

        properties = ZoneEmitterProperties(
            zone_id=zone_id,
            zone_name=zone_name,
            emitter_count=emitter_count,
            emitter_flow_rate_liters_per_hour=flow_rate,
            emitter_type=as_str(row["emitter_type"]) or "",
            emitters_per_plant=as_int(row["emitters_per_plant"], 1),
            operating_pressure_kpa=as_float(row["operating_pressure_kpa"]),
            last_calibrated_at=as_datetime(row["last_calibrated_at"]),
            total_flow_liters_per_minute=emitter_count * flow_rate / 60,
        )
        node = GraphNode.create(
            site_id,
            NodeType.ZONE_EMITTER_CONFIG,
            config_id,
            f"Emitter Config: {zone_name}",
            created_at,
            as_datetime(row["updated_at"]),
            properties,
        )
        edges = []
        if zone_id:
            edges.append(
                GraphEdge.create(
                    site_id,
                    EdgeType.HAS_EMITTERS,
                    NodeType.ZONE,
                    zone_id,
                    NodeType.ZONE_EMITTER_CONFIG,
                    config_id,
                    created_at,
                )
            )
        return [node], edges

    def _alert_rule_node(self, site_id: str, row: RowMapping) -> GraphNode:
        rule_name = as_str(row["rule_name"])
        properties = AlertRuleProperties(
            rule_name=rule_name,
            rule_type=as_str(row["rule_type"]) or "",
            severity=as_str(row["severity"]) or "",
            is_active=as_bool(row["is_active"], default=True),
            stream_ids=as_list(row["stream_ids"]),
        )
        return GraphNode.create(
            site_id,
            NodeType.ALERT_RULE,
            as_id(row["id"]),
            f"Alert Rule: {rule_name}",
            as_datetime(row["created_at"]),
            as_datetime(row["updated_at"]),
            properties,
        )

    def _alert_instance(self, site_id: str, row: RowMapping) -> tuple[list[GraphNode], list[GraphEdge]]:
        instance_id = as_id(row["id"])
        fired_at = as_datetime(row["fired_at"])
        cleared_at = as_datetime(row["cleared_at"])
        properties = AlertInstanceProperties(
            rule_id=as_id(row["rule_id"]),
            severity=as_str(row["severity"]) or "",
            fired_at=fired_at,
            cleared_at=cleared_at,
            current_value=as_float(row["current_value"]),
            threshold_value=as_float(row["threshold_value"]),
            message=as_str(row["message"]),
        )
        node = GraphNode.create(
            site_id,
            NodeType.ALERT_INSTANCE,
            instance_id,
            f"Alert: {properties.severity}",
            fired_at,
            cleared_at or fired_at,
            properties,
        )
        edge = GraphEdge.create(
            site_id,
            EdgeType.FIRED_FOR_RULE,
            NodeType.ALERT_INSTANCE,
            instance_id,
            NodeType.ALERT_RULE,
            properties.rule_id,
            fired_at,
        )
        return [node], [edge]
