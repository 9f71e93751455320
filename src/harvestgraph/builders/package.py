"""
Package traceability graph builder.

Creates nodes for Package, InventoryMovement and Location, and edges for
movement flows, approvals and lineage.
"""

import logging
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
    as_str,
    with_watermark,
)
from harvestgraph.graph.edges import EdgeType, GraphEdge
from harvestgraph.graph.properties import (
    LocationProperties,
    MovementProperties,
    PackageProperties,
)
from harvestgraph.graph.schema import GraphNode, NodeType

logger = logging.getLogger(__name__)


FETCH_PACKAGES_QUERY = """
SELECT
    id, package_label, item_id, item_name, item_category,
    quantity, initial_quantity, unit_of_measure,
    location_id, location_name, status, lab_testing_state,
    thc_percent, cbd_percent, generation_depth, root_ancestor_id,
    hold_reason_code, metrc_sync_status, unit_cost, grade,
    created_at, updated_at
FROM packages
WHERE site_id = :site_id
"""

FETCH_MOVEMENTS_QUERY = """
SELECT
    id, movement_type, status, package_id, package_label,
    quantity, unit_of_measure, from_location_id, from_location_path,
    to_location_id, to_location_path, reason_code, requires_approval,
    first_approver_id, second_approver_id, verified_by_user_id,
    created_by_user_id, created_at
FROM inventory_movements
WHERE site_id = :site_id
"""

FETCH_LOCATIONS_QUERY = """
SELECT DISTINCT location_id, location_name
FROM packages
WHERE site_id = :site_id AND location_id IS NOT NULL
"""

FETCH_LINEAGE_QUERY = """
SELECT id, root_ancestor_id, created_at
FROM packages
WHERE site_id = :site_id
AND root_ancestor_id IS NOT NULL
AND root_ancestor_id != id
"""

# Movement foreign key -> (edge type, target node type)
MOVEMENT_LINKS = (
    ("package_id", EdgeType.INVOLVES_PACKAGE, NodeType.PACKAGE),
    ("from_location_id", EdgeType.MOVED_FROM, NodeType.LOCATION),
    ("to_location_id", EdgeType.MOVED_TO, NodeType.LOCATION),
    ("created_by_user_id", EdgeType.CREATED_BY, NodeType.USER),
    ("verified_by_user_id", EdgeType.VERIFIED_BY, NodeType.USER),
    ("first_approver_id", EdgeType.APPROVED_BY, NodeType.USER),
    ("second_approver_id", EdgeType.SECOND_APPROVED_BY, NodeType.USER),
)

# Order links are not present on every deployment of inventory_movements
MOVEMENT_ORDER_LINKS = tuple(
    OptionalLink(
        table="inventory_movements",
        key="id",
        column=column,
        edge_type=edge_type,
        source_type=NodeType.INVENTORY_MOVEMENT,
        target_type=target_type,
        watermark="created_at",
    )
    for column, edge_type, target_type in (
        ("sales_order_id", EdgeType.PART_OF_SALES_ORDER, NodeType.SALES_ORDER),
        ("transfer_id", EdgeType.PART_OF_TRANSFER, NodeType.TRANSFER),
        ("processing_job_id", EdgeType.PART_OF_PROCESSING_JOB, NodeType.PROCESSING_JOB),
    )
)


class PackageGraphBuilder(GraphBuilder):
    """Builds the package/movement traceability graph."""

    name = "package"
    node_types = (
        NodeType.PACKAGE,
        NodeType.INVENTORY_MOVEMENT,
        NodeType.LOCATION,
        NodeType.SALES_ORDER,
        NodeType.TRANSFER,
        NodeType.PROCESSING_JOB,
    )
    edge_types = (
        tuple(edge_type for _, edge_type, _ in MOVEMENT_LINKS)
        + tuple(link.edge_type for link in MOVEMENT_ORDER_LINKS)
        + (EdgeType.DERIVED_FROM,)
    )

    async def _build(
        self,
        session: AsyncSession,
        site_id: str,
        since: Optional[datetime],
        result: BuildResult,
    ) -> None:
        # Packages
        params = {"site_id": site_id}
        query = with_watermark(FETCH_PACKAGES_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "packages", result)
        if rows is not None:
            nodes, _ = self._map_rows(rows, lambda r: ([self._package_node(site_id, r)], []), result)
            await self._emit(result, nodes, [], node_types=[NodeType.PACKAGE])

        # Movements are append-only facts, watermarked on creation
        params = {"site_id": site_id}
        query = with_watermark(FETCH_MOVEMENTS_QUERY, "created_at", since, params)
        rows = await self._fetch(session, query, params, "inventory_movements", result)
        if rows is not None:
            nodes, edges = self._map_rows(rows, lambda r: self._movement(site_id, r), result)
            await self._emit(
                result,
                nodes,
                edges,
                node_types=[NodeType.INVENTORY_MOVEMENT],
                edge_types=[edge_type for _, edge_type, _ in MOVEMENT_LINKS],
            )
            await self._emit_links(session, site_id, since, MOVEMENT_ORDER_LINKS, result)

        # Locations are refreshed on every run; they carry no timestamps
        rows = await self._fetch(
            session, FETCH_LOCATIONS_QUERY, {"site_id": site_id}, "locations", result
        )
        if rows is not None:
            nodes, _ = self._map_rows(rows, lambda r: ([self._location_node(site_id, r)], []), result)
            await self._emit(result, nodes, [], node_types=[NodeType.LOCATION])

        # Lineage
        params = {"site_id": site_id}
        query = with_watermark(FETCH_LINEAGE_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "package lineage", result)
        if rows is not None:
            _, edges = self._map_rows(rows, lambda r: ([], [self._lineage_edge(site_id, r)]), result)
            await self._emit(result, [], edges, edge_types=[EdgeType.DERIVED_FROM])

    def _package_node(self, site_id: str, row: RowMapping) -> GraphNode:
        label = as_str(row["package_label"]) or ""
        properties = PackageProperties(
            package_label=label,
            item_name=as_str(row["item_name"]) or "",
            item_category=as_str(row["item_category"]) or "",
            quantity=as_float(row["quantity"], 0.0),
            initial_quantity=as_float(row["initial_quantity"], 0.0),
            unit_of_measure=as_str(row["unit_of_measure"]) or "",
            location_id=as_id(row["location_id"]),
            location_name=as_str(row["location_name"]),
            status=as_str(row["status"]) or "",
            lab_testing_state=as_str(row["lab_testing_state"]),
            thc_percent=as_float(row["thc_percent"]),
            cbd_percent=as_float(row["cbd_percent"]),
            generation_depth=as_int(row["generation_depth"], 0),
            root_ancestor_id=as_id(row["root_ancestor_id"]),
            hold_reason_code=as_str(row["hold_reason_code"]),
            metrc_sync_status=as_str(row["metrc_sync_status"]),
            unit_cost=as_float(row["unit_cost"]),
            grade=as_str(row["grade"]),
        )
        return GraphNode.create(
            site_id,
            NodeType.PACKAGE,
            as_id(row["id"]),
            f"Package: {label}",
            as_datetime(row["created_at"]),
            as_datetime(row["updated_at"]),
            properties,
        )

    def _movement(self, site_id: str, row: RowMapping) -> tuple[list[GraphNode], list[GraphEdge]]:
        movement_id = as_id(row["id"])
        created_at = as_datetime(row["created_at"])
        properties = MovementProperties(
            movement_type=as_str(row["movement_type"]),
            status=as_str(row["status"]) or "",
            package_id=as_id(row["package_id"]),
            package_label=as_str(row["package_label"]),
            quantity=as_float(row["quantity"], 0.0),
            unit_of_measure=as_str(row["unit_of_measure"]) or "",
            from_location_id=as_id(row["from_location_id"]),
            from_location_path=as_str(row["from_location_path"]),
            to_location_id=as_id(row["to_location_id"]),
            to_location_path=as_str(row["to_location_path"]),
            reason_code=as_str(row["reason_code"]),
            requires_approval=as_bool(row["requires_approval"]),
            first_approver_id=as_id(row["first_approver_id"]),
            second_approver_id=as_id(row["second_approver_id"]),
            verified_by_user_id=as_id(row["verified_by_user_id"]),
            created_by_user_id=as_id(row["created_by_user_id"]),
        )
        node = GraphNode.create(
            site_id,
            NodeType.INVENTORY_MOVEMENT,
            movement_id,
            f"Movement: {properties.movement_type} - {properties.package_label or ''}",
            created_at,
            created_at,
            properties,
        )

        edges = []
        for column, edge_type, target_type in MOVEMENT_LINKS:
            target_id = as_id(row[column])
            if target_id is None:
                continue
            edges.append(
                GraphEdge.create(
                    site_id,
                    edge_type,
                    NodeType.INVENTORY_MOVEMENT,
                    movement_id,
                    target_type,
                    target_id,
                    created_at,
                )
            )
        return [node], edges

    def _location_node(self, site_id: str, row: RowMapping) -> GraphNode:
        name = as_str(row["location_name"])
        now = datetime.utcnow()
        return GraphNode.create(
            site_id,
            NodeType.LOCATION,
            as_id(row["location_id"]),
            f"Location: {name or 'Unknown'}",
            now,
            now,
            LocationProperties(location_name=name),
        )

    def _lineage_edge(self, site_id: str, row: RowMapping) -> GraphEdge:
        return GraphEdge.create(
            site_id,
            EdgeType.DERIVED_FROM,
            NodeType.PACKAGE,
            as_id(row["id"]),
            NodeType.PACKAGE,
            as_id(row["root_ancestor_id"]),
            as_datetime(row["created_at"]),
        )
