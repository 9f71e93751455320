"""
SQLAlchemy-backed graph store.

Persists nodes and edges in the ``graph_nodes`` / ``graph_edges`` tables.
Upserts merge row by row inside a single session: a malformed record is
logged and skipped, the rest of the batch is committed.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvestgraph.db.orm import GraphEdgeRecord, GraphNodeRecord
from harvestgraph.exceptions import NodeNotFoundError
from harvestgraph.graph.edges import EdgeType, GraphEdge
from harvestgraph.graph.schema import GraphNode, NodeType, format_node_id
from harvestgraph.graph.store import GraphStatistics, GraphStore, validate_edge, validate_node

logger = logging.getLogger(__name__)

# Parameter lists are chunked to stay under driver bind limits
LOOKUP_CHUNK_SIZE = 500


def _to_node(record: GraphNodeRecord) -> GraphNode:
    return GraphNode(
        node_id=record.node_id,
        site_id=record.site_id,
        node_type=NodeType(record.node_type),
        source_entity_id=record.source_entity_id,
        label=record.label,
        source_created_at=record.source_created_at,
        source_updated_at=record.source_updated_at,
        properties_json=record.properties_json,
        anomaly_score=record.anomaly_score,
        anomaly_explanation=record.anomaly_explanation,
        is_active=record.is_active,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _to_edge(record: GraphEdgeRecord) -> GraphEdge:
    return GraphEdge(
        edge_id=record.edge_id,
        site_id=record.site_id,
        edge_type=EdgeType(record.edge_type),
        source_node_id=record.source_node_id,
        target_node_id=record.target_node_id,
        occurred_at=record.occurred_at,
        weight=record.weight,
        properties_json=record.properties_json,
        is_active=record.is_active,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _chunks(values: list, size: int = LOOKUP_CHUNK_SIZE):
    for i in range(0, len(values), size):
        yield values[i:i + size]


class SqlGraphStore(GraphStore):
    """Graph store over SQLAlchemy ORM tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # Writes

    async def upsert_nodes(self, nodes: Iterable[GraphNode]) -> int:
        valid: dict[str, GraphNode] = {}
        for node in nodes:
            reason = validate_node(node)
            if reason:
                logger.warning(f"Rejected node {node.node_id}: {reason}")
                continue
            valid[node.node_id] = node
        if not valid:
            return 0

        now = datetime.utcnow()
        async with self.session_factory() as session:
            existing: dict[str, GraphNodeRecord] = {}
            for chunk in _chunks(list(valid)):
                result = await session.execute(
                    select(GraphNodeRecord).where(GraphNodeRecord.node_id.in_(chunk))
                )
                existing.update({r.node_id: r for r in result.scalars()})

            for node_id, node in valid.items():
                record = existing.get(node_id)
                if record is None:
                    record = GraphNodeRecord(
                        node_id=node_id,
                        site_id=node.site_id,
                        node_type=NodeType(node.node_type).value,
                        source_entity_id=node.source_entity_id,
                        created_at=now,
                    )
                    session.add(record)
                record.label = node.label
                record.source_created_at = node.source_created_at
                record.source_updated_at = node.source_updated_at
                record.properties_json = node.properties_json
                if node.anomaly_score is not None:
                    record.anomaly_score = node.anomaly_score
                    record.anomaly_explanation = node.anomaly_explanation
                record.is_active = True
                record.updated_at = now

            await session.commit()
        return len(valid)

    async def upsert_edges(self, edges: Iterable[GraphEdge]) -> int:
        valid: dict[str, GraphEdge] = {}
        for edge in edges:
            reason = validate_edge(edge)
            if reason:
                logger.warning(f"Rejected edge {edge.edge_id}: {reason}")
                continue
            valid[edge.edge_id] = edge
        if not valid:
            return 0

        now = datetime.utcnow()
        async with self.session_factory() as session:
            existing: dict[str, GraphEdgeRecord] = {}
            for chunk in _chunks(list(valid)):
                result = await session.execute(
                    select(GraphEdgeRecord).where(GraphEdgeRecord.edge_id.in_(chunk))
                )
                existing.update({r.edge_id: r for r in result.scalars()})

            for edge_id, edge in valid.items():
                record = existing.get(edge_id)
                if record is None:
                    record = GraphEdgeRecord(
                        edge_id=edge_id,
                        site_id=edge.site_id,
                        edge_type=EdgeType(edge.edge_type).value,
                        source_node_id=edge.source_node_id,
                        target_node_id=edge.target_node_id,
                        created_at=now,
                    )
                    session.add(record)
                record.weight = edge.weight
                record.properties_json = edge.properties_json
                record.occurred_at = edge.occurred_at
                record.is_active = True
                record.updated_at = now

            await session.commit()
        return len(valid)

    async def set_anomaly_score(
        self, node_id: str, score: float, explanation: Optional[str]
    ) -> None:
        if not 0.0 <= score <= 1.0:
            raise ValueError(f"Anomaly score must be between 0 and 1, got {score}")
        async with self.session_factory() as session:
            result = await session.execute(
                update(GraphNodeRecord)
                .where(GraphNodeRecord.node_id == node_id)
                .values(
                    anomaly_score=score,
                    anomaly_explanation=explanation,
                    updated_at=datetime.utcnow(),
                )
            )
            if result.rowcount == 0:
                raise NodeNotFoundError(node_id)
            await session.commit()

    async def deactivate_nodes_not_in_set(
        self, site_id: str, node_type: NodeType, keep_ids: set[str]
    ) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(GraphNodeRecord.node_id).where(
                    GraphNodeRecord.site_id == site_id,
                    GraphNodeRecord.node_type == node_type.value,
                    GraphNodeRecord.is_active.is_(True),
                )
            )
            stale = [node_id for node_id in result.scalars() if node_id not in keep_ids]
            for chunk in _chunks(stale):
                await session.execute(
                    update(GraphNodeRecord)
                    .where(GraphNodeRecord.node_id.in_(chunk))
                    .values(is_active=False, updated_at=datetime.utcnow())
                )
            await session.commit()

        if stale:
            logger.debug(f"Deactivated {len(stale)} nodes of type {node_type.value}")
        return len(stale)

    async def deactivate_edges_not_in_set(
        self, site_id: str, edge_type: EdgeType, keep_ids: set[str]
    ) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(GraphEdgeRecord.edge_id).where(
                    GraphEdgeRecord.site_id == site_id,
                    GraphEdgeRecord.edge_type == edge_type.value,
                    GraphEdgeRecord.is_active.is_(True),
                )
            )
            stale = [edge_id for edge_id in result.scalars() if edge_id not in keep_ids]
            for chunk in _chunks(stale):
                await session.execute(
                    update(GraphEdgeRecord)
                    .where(GraphEdgeRecord.edge_id.in_(chunk))
                    .values(is_active=False, updated_at=datetime.utcnow())
                )
            await session.commit()

        if stale:
            logger.debug(f"Deactivated {len(stale)} edges of type {edge_type.value}")
        return len(stale)

    # Reads

    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        async with self.session_factory() as session:
            record = await session.get(GraphNodeRecord, node_id)
            return _to_node(record) if record else None

    async def get_nodes_by_type(
        self, site_id: str, node_type: NodeType, active_only: bool = True
    ) -> list[GraphNode]:
        query = select(GraphNodeRecord).where(
            GraphNodeRecord.site_id == site_id,
            GraphNodeRecord.node_type == NodeType(node_type).value,
        )
        if active_only:
            query = query.where(GraphNodeRecord.is_active.is_(True))
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [_to_node(r) for r in result.scalars()]

    async def get_nodes_by_source_ids(
        self, site_id: str, node_type: NodeType, source_ids: Iterable[str]
    ) -> list[GraphNode]:
        node_ids = [format_node_id(node_type, s) for s in source_ids]
        nodes = []
        async with self.session_factory() as session:
            for chunk in _chunks(node_ids):
                result = await session.execute(
                    select(GraphNodeRecord).where(
                        GraphNodeRecord.site_id == site_id,
                        GraphNodeRecord.node_id.in_(chunk),
                    )
                )
                nodes.extend(_to_node(r) for r in result.scalars())
        return nodes

    async def _select_edges(self, *criteria, edge_type=None, active_only=True) -> list[GraphEdge]:
        query = select(GraphEdgeRecord).where(*criteria)
        if edge_type is not None:
            query = query.where(GraphEdgeRecord.edge_type == EdgeType(edge_type).value)
        if active_only:
            query = query.where(GraphEdgeRecord.is_active.is_(True))
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [_to_edge(r) for r in result.scalars()]

    async def get_outgoing_edges(
        self, node_id: str, edge_type: Optional[EdgeType] = None, active_only: bool = True
    ) -> list[GraphEdge]:
        return await self._select_edges(
            GraphEdgeRecord.source_node_id == node_id,
            edge_type=edge_type,
            active_only=active_only,
        )

    async def get_incoming_edges(
        self, node_id: str, edge_type: Optional[EdgeType] = None, active_only: bool = True
    ) -> list[GraphEdge]:
        return await self._select_edges(
            GraphEdgeRecord.target_node_id == node_id,
            edge_type=edge_type,
            active_only=active_only,
        )

    async def get_edges_by_type(
        self, site_id: str, edge_type: EdgeType, active_only: bool = True
    ) -> list[GraphEdge]:
        return await self._select_edges(
            GraphEdgeRecord.site_id == site_id,
            edge_type=edge_type,
            active_only=active_only,
        )

    async def get_edges_between(
        self, source_node_id: str, target_node_id: str, active_only: bool = True
    ) -> list[GraphEdge]:
        return await self._select_edges(
            GraphEdgeRecord.source_node_id == source_node_id,
            GraphEdgeRecord.target_node_id == target_node_id,
            active_only=active_only,
        )

    async def get_anomalous_nodes(
        self, site_id: str, min_score: float = 0.7, limit: int = 100
    ) -> list[GraphNode]:
        query = (
            select(GraphNodeRecord)
            .where(
                GraphNodeRecord.site_id == site_id,
                GraphNodeRecord.is_active.is_(True),
                GraphNodeRecord.anomaly_score >= min_score,
            )
            .order_by(GraphNodeRecord.anomaly_score.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [_to_node(r) for r in result.scalars()]

    async def get_statistics(self, site_id: str) -> GraphStatistics:
        async with self.session_factory() as session:
            node_rows = await session.execute(
                select(GraphNodeRecord.node_type, func.count())
                .where(GraphNodeRecord.site_id == site_id, GraphNodeRecord.is_active.is_(True))
                .group_by(GraphNodeRecord.node_type)
            )
            edge_rows = await session.execute(
                select(GraphEdgeRecord.edge_type, func.count())
                .where(GraphEdgeRecord.site_id == site_id, GraphEdgeRecord.is_active.is_(True))
                .group_by(GraphEdgeRecord.edge_type)
            )
            anomalous = await session.scalar(
                select(func.count())
                .select_from(GraphNodeRecord)
                .where(
                    GraphNodeRecord.site_id == site_id,
                    GraphNodeRecord.is_active.is_(True),
                    GraphNodeRecord.anomaly_score >= 0.7,
                )
            )
            last_updated = await session.scalar(
                select(func.max(GraphNodeRecord.updated_at)).where(
                    GraphNodeRecord.site_id == site_id
                )
            )

        return GraphStatistics(
            site_id=site_id,
            node_counts={node_type: count for node_type, count in node_rows.all()},
            edge_counts={edge_type: count for edge_type, count in edge_rows.all()},
            anomalous_nodes=anomalous or 0,
            last_updated_at=last_updated,
        )
