"""
Genetics and cultivation graph builder.

Creates nodes for Strain, CropSteeringProfile, Harvest and LabTestBatch,
and edges linking strains to steering profiles, harvests to strains and lab
tests to the packages they tested.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.engine import RowMapping
from sqlalchemy.ext.asyncio import AsyncSession

from harvestgraph.builders.base import (
    BuildResult,
    GraphBuilder,
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
    HarvestProperties,
    LabTestBatchProperties,
    SteeringProfileProperties,
    StrainProperties,
)
from harvestgraph.graph.schema import GraphNode, NodeType

logger = logging.getLogger(__name__)


FETCH_STRAINS_QUERY = """
SELECT
    strain_id, name, breeder, seed_bank, genetic_classification,
    testing_status, nominal_thc_percent, nominal_cbd_percent,
    expected_harvest_window_days, crop_steering_profile_id,
    metrc_strain_id, created_at, updated_at
FROM strains
WHERE site_id = :site_id
"""

FETCH_STEERING_PROFILES_QUERY = """
SELECT
    id, strain_id, name, target_mode, is_active,
    configuration, created_at, updated_at
FROM crop_steering_profiles
WHERE site_id = :site_id
"""

FETCH_HARVESTS_QUERY = """
SELECT
    id, harvest_name, harvest_type, status, current_phase,
    strain_id, strain_name, plant_count,
    total_wet_weight_grams, total_dry_weight_grams,
    metrc_harvest_id, created_at, updated_at
FROM harvests
WHERE site_id = :site_id
"""

FETCH_LAB_TESTS_QUERY = """
SELECT
    id, batch_number, lab_name, status, passed,
    thc_percent, cbd_percent, total_cannabinoids,
    requires_remediation, sample_collected_at, results_received_at,
    created_at, updated_at
FROM lab_test_batches
WHERE site_id = :site_id
"""

# package_id is not present on every deployment of lab_test_batches
FETCH_LAB_TEST_PACKAGES_QUERY = """
SELECT id, package_id, created_at
FROM lab_test_batches
WHERE site_id = :site_id AND package_id IS NOT NULL
"""


class GeneticsGraphBuilder(GraphBuilder):
    """Builds the strain/profile/harvest/lab-test graph."""

    name = "genetics"
    node_types = (
        NodeType.STRAIN,
        NodeType.CROP_STEERING_PROFILE,
        NodeType.RESPONSE_CURVE,
        NodeType.HARVEST,
        NodeType.LAB_TEST_BATCH,
        NodeType.PLANT,
    )
    edge_types = (
        EdgeType.HAS_STEERING_PROFILE,
        EdgeType.OF_STRAIN,
        EdgeType.TESTED_PACKAGE,
    )

    async def _build(
        self,
        session: AsyncSession,
        site_id: str,
        since: Optional[datetime],
        result: BuildResult,
    ) -> None:
        params = {"site_id": site_id}
        query = with_watermark(FETCH_STRAINS_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "strains", result)
        if rows is not None:
            nodes, edges = self._map_rows(rows, lambda r: self._strain(site_id, r), result)
            await self._emit(
                result,
                nodes,
                edges,
                node_types=[NodeType.STRAIN],
                edge_types=[EdgeType.HAS_STEERING_PROFILE],
            )

        params = {"site_id": site_id}
        query = with_watermark(FETCH_STEERING_PROFILES_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "crop_steering_profiles", result)
        if rows is not None:
            nodes, _ = self._map_rows(rows, lambda r: ([self._steering_profile_node(site_id, r)], []), result)
            await self._emit(result, nodes, [], node_types=[NodeType.CROP_STEERING_PROFILE])

        params = {"site_id": site_id}
        query = with_watermark(FETCH_HARVESTS_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "harvests", result)
        if rows is not None:
            nodes, edges = self._map_rows(rows, lambda r: self._harvest(site_id, r), result)
            await self._emit(
                result, nodes, edges, node_types=[NodeType.HARVEST], edge_types=[EdgeType.OF_STRAIN]
            )

        params = {"site_id": site_id}
        query = with_watermark(FETCH_LAB_TESTS_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "lab_test_batches", result)
        if rows is not None:
            nodes, _ = self._map_rows(rows, lambda r: ([self._lab_test_node(site_id, r)], []), result)
            await self._emit(result, nodes, [], node_types=[NodeType.LAB_TEST_BATCH])

        params = {"site_id": site_id}
        query = with_watermark(FETCH_LAB_TEST_PACKAGES_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "lab test packages", result)
        if rows is not None:
            _, edges = self._map_rows(rows, lambda r: ([], [self._tested_package_edge(site_id, r)]), result)
            await self._emit(result, [], edges, edge_types=[EdgeType.TESTED_PACKAGE])

    def _strain(self, site_id: str, row: RowMapping) -> tuple[list[GraphNode], list[GraphEdge]]:
        strain_id = as_id(row["strain_id"])
        name = as_str(row["name"])
        profile_id = as_id(row["crop_steering_profile_id"])
        updated_at = as_datetime(row["updated_at"])

        properties = StrainProperties(
            name=name,
            breeder=as_str(row["breeder"]),
            seed_bank=as_str(row["seed_bank"]),
            genetic_classification=as_str(row["genetic_classification"]) or "",
            testing_status=as_str(row["testing_status"]) or "",
            nominal_thc_percent=as_float(row["nominal_thc_percent"]),
            nominal_cbd_percent=as_float(row["nominal_cbd_percent"]),
            expected_harvest_window_days=as_int(row["expected_harvest_window_days"]),
            crop_steering_profile_id=profile_id,
            has_custom_steering_profile=profile_id is not None,
            metrc_strain_id=as_int(row["metrc_strain_id"]),
        )
        node = GraphNode.create(
            site_id,
            NodeType.STRAIN,
            strain_id,
            f"Strain: {name}",
            as_datetime(row["created_at"]),
            updated_at,
            properties,
        )
        edges = []
        if profile_id:
            edges.append(
                GraphEdge.create(
                    site_id,
                    EdgeType.HAS_STEERING_PROFILE,
                    NodeType.STRAIN,
                    strain_id,
                    NodeType.CROP_STEERING_PROFILE,
                    profile_id,
                    updated_at,
                )
            )
        return [node], edges

    def _steering_profile_node(self, site_id: str, row: RowMapping) -> GraphNode:
        name = as_str(row["name"]) or "Profile"
        strain_id = as_id(row["strain_id"])
        properties = SteeringProfileProperties(
            name=name,
            strain_id=strain_id,
            target_mode=as_str(row["target_mode"]) or "",
            is_active=as_bool(row["is_active"], default=True),
            is_site_default=strain_id is None,
        )
        return GraphNode.create(
            site_id,
            NodeType.CROP_STEERING_PROFILE,
            as_id(row["id"]),
            f"Profile: {name}",
            as_datetime(row["created_at"]),
            as_datetime(row["updated_at"]),
            properties,
        )

    def _harvest(self, site_id: str, row: RowMapping) -> tuple[list[GraphNode], list[GraphEdge]]:
        harvest_id = as_id(row["id"])
        harvest_name = as_str(row["harvest_name"]) or "Harvest"
        created_at = as_datetime(row["created_at"])
        properties = HarvestProperties(
            harvest_name=harvest_name,
            harvest_type=as_str(row["harvest_type"]) or "",
            status=as_str(row["status"]) or "",
            current_phase=as_str(row["current_phase"]) or "",
            strain_id=as_id(row["strain_id"]),
            strain_name=as_str(row["strain_name"]),
            plant_count=as_int(row["plant_count"], 0),
            total_wet_weight_grams=as_float(row["total_wet_weight_grams"]),
            total_dry_weight_grams=as_float(row["total_dry_weight_grams"]),
            metrc_harvest_id=as_int(row["metrc_harvest_id"]),
        )
        node = GraphNode.create(
            site_id,
            NodeType.HARVEST,
            harvest_id,
            f"Harvest: {harvest_name}",
            created_at,
            as_datetime(row["updated_at"]),
            properties,
        )
        edges = []
        if properties.strain_id:
            edges.append(
                GraphEdge.create(
                    site_id,
                    EdgeType.OF_STRAIN,
                    NodeType.HARVEST,
                    harvest_id,
                    NodeType.STRAIN,
                    properties.strain_id,
                    created_at,
                )
            )
        return [node], edges

    def _lab_test_node(self, site_id: str, row: RowMapping) -> GraphNode:
        batch_number = as_str(row["batch_number"]) or "Batch"
        passed = row["passed"]
        properties = LabTestBatchProperties(
            batch_number=batch_number,
            lab_name=as_str(row["lab_name"]),
            status=as_str(row["status"]) or "",
            passed=None if passed is None else as_bool(passed),
            thc_percent=as_float(row["thc_percent"]),
            cbd_percent=as_float(row["cbd_percent"]),
            total_cannabinoids=as_float(row["total_cannabinoids"]),
            requires_remediation=as_bool(row["requires_remediation"]),
            sample_collected_at=as_datetime(row["sample_collected_at"]),
            results_received_at=as_datetime(row["results_received_at"]),
        )
        return GraphNode.create(
            site_id,
            NodeType.LAB_TEST_BATCH,
            as_id(row["id"]),
            f"Lab Test: {batch_number}",
            as_datetime(row["created_at"]),
            as_datetime(row["updated_at"]),
            properties,
        )

    def _tested_package_edge(self, site_id: str, row: RowMapping) -> GraphEdge:
        return GraphEdge.create(
            site_id,
            EdgeType.TESTED_PACKAGE,
            NodeType.LAB_TEST_BATCH,
            as_id(row["id"]),
            NodeType.PACKAGE,
            as_id(row["package_id"]),
            as_datetime(row["created_at"]),
        )
