"""
Anomaly result persistence.

Results are deduplicated per (node_id, anomaly_type): a detection inside the
dedup window of an earlier one updates that row, anything later starts a new
historical row.
"""

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvestgraph.anomaly.models import AnomalyResult
from harvestgraph.builders.base import is_schema_drift
from harvestgraph.config import settings
from harvestgraph.db.orm import AnomalyResultRecord
from harvestgraph.exceptions import AnomalyNotFoundError
from harvestgraph.graph.schema import NodeType, node_type_prefix

logger = logging.getLogger(__name__)


def _to_result(record: AnomalyResultRecord) -> AnomalyResult:
    return AnomalyResult(
        id=record.id,
        site_id=record.site_id,
        node_id=record.node_id,
        edge_id=record.edge_id,
        node_type=NodeType(record.node_type),
        anomaly_type=record.anomaly_type,
        score=record.score,
        explanation=record.explanation,
        model_version=record.model_version,
        feature_attributions=dict(record.feature_attributions or {}),
        detected_at=record.detected_at,
        acknowledged_at=record.acknowledged_at,
        acknowledged_by=record.acknowledged_by,
        resolution_notes=record.resolution_notes,
    )


class AnomalyResultStore(ABC):
    """Abstract store for detection results."""

    def __init__(self, dedup_window: Optional[timedelta] = None):
        self.dedup_window = dedup_window or timedelta(minutes=settings.anomaly_dedup_window_minutes)

    @abstractmethod
    async def save(self, results: Iterable[AnomalyResult]) -> list[AnomalyResult]:
        """
        Persist results with deduplication.

        Returns:
            The stored results with their row ids assigned
        """

    @abstractmethod
    async def get(self, anomaly_id: UUID) -> Optional[AnomalyResult]:
        """Get a result by ID."""

    @abstractmethod
    async def get_top(
        self, site_id: str, limit: int = 50, node_type: Optional[NodeType] = None
    ) -> list[AnomalyResult]:
        """Get the highest-scoring unacknowledged results of a site."""

    @abstractmethod
    async def acknowledge(
        self, anomaly_id: UUID, user_id: str, notes: Optional[str] = None
    ) -> AnomalyResult:
        """
        Mark a result as reviewed.

        Raises:
            AnomalyNotFoundError: if no result has this id
        """


class SqlAnomalyResultStore(AnomalyResultStore):
    """Results in the ``anomaly_results`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dedup_window: Optional[timedelta] = None,
    ):
        super().__init__(dedup_window)
        self.session_factory = session_factory

    async def save(self, results: Iterable[AnomalyResult]) -> list[AnomalyResult]:
        results = list(results)
        if not results:
            return []

        stored = []
        inserted = updated = 0
        async with self.session_factory() as session:
            for result in results:
                existing = await session.execute(
                    select(AnomalyResultRecord)
                    .where(
                        AnomalyResultRecord.node_id == result.node_id,
                        AnomalyResultRecord.anomaly_type == result.anomaly_type,
                        AnomalyResultRecord.detected_at > result.detected_at - self.dedup_window,
                    )
                    .order_by(AnomalyResultRecord.detected_at.desc())
                    .limit(1)
                )
                record = existing.scalar_one_or_none()

                if record is not None:
                    record.score = result.score
                    record.explanation = result.explanation
                    record.feature_attributions = dict(result.feature_attributions)
                    record.model_version = result.model_version
                    record.detected_at = result.detected_at
                    updated += 1
                else:
                    record = AnomalyResultRecord(
                        id=uuid.uuid4(),
                        site_id=result.site_id,
                        node_id=result.node_id,
                        edge_id=result.edge_id,
                        node_type=NodeType(result.node_type).value,
                        anomaly_type=result.anomaly_type,
                        score=result.score,
                        explanation=result.explanation,
                        feature_attributions=dict(result.feature_attributions),
                        model_version=result.model_version,
                        detected_at=result.detected_at,
                    )
                    session.add(record)
                    inserted += 1

                await session.flush()
                stored.append(_to_result(record))
            await session.commit()

        logger.info(f"Stored anomaly results: {inserted} new, {updated} updated")
        return stored

    async def get(self, anomaly_id: UUID) -> Optional[AnomalyResult]:
        async with self.session_factory() as session:
            record = await session.get(AnomalyResultRecord, anomaly_id)
            return _to_result(record) if record else None

    async def get_top(
        self, site_id: str, limit: int = 50, node_type: Optional[NodeType] = None
    ) -> list[AnomalyResult]:
        query = select(AnomalyResultRecord).where(
            AnomalyResultRecord.site_id == site_id,
            AnomalyResultRecord.acknowledged_at.is_(None),
        )
        if node_type is not None:
            query = query.where(AnomalyResultRecord.node_id.like(f"{node_type_prefix(node_type)}%"))
        query = query.order_by(AnomalyResultRecord.score.desc()).limit(limit)

        async with self.session_factory() as session:
            try:
                result = await session.execute(query)
            except DBAPIError as e:
                if not is_schema_drift(e):
                    raise
                logger.warning("Anomaly results table not found, returning empty list")
                return []
            return [_to_result(r) for r in result.scalars().all()]

    async def acknowledge(
        self, anomaly_id: UUID, user_id: str, notes: Optional[str] = None
    ) -> AnomalyResult:
        async with self.session_factory() as session:
            record = await session.get(AnomalyResultRecord, anomaly_id)
            if record is None:
                raise AnomalyNotFoundError(anomaly_id)
            record.acknowledge(user_id, notes)
            await session.commit()
            return _to_result(record)


class InMemoryAnomalyResultStore(AnomalyResultStore):
    """Results kept in a dict, for development and tests."""

    def __init__(self, dedup_window: Optional[timedelta] = None):
        super().__init__(dedup_window)
        self._results: dict[UUID, AnomalyResult] = {}

    async def save(self, results: Iterable[AnomalyResult]) -> list[AnomalyResult]:
        stored = []
        for result in results:
            window_start = result.detected_at - self.dedup_window
            matches = [
                r
                for r in self._results.values()
                if r.node_id == result.node_id
                and r.anomaly_type == result.anomaly_type
                and r.detected_at > window_start
            ]
            if matches:
                existing = max(matches, key=lambda r: r.detected_at)
                existing.score = result.score
                existing.explanation = result.explanation
                existing.feature_attributions = dict(result.feature_attributions)
                existing.model_version = result.model_version
                existing.detected_at = result.detected_at
            else:
                existing = copy.copy(result)
                existing.id = uuid.uuid4()
                existing.feature_attributions = dict(result.feature_attributions)
                self._results[existing.id] = existing
            stored.append(copy.copy(existing))
        return stored

    async def get(self, anomaly_id: UUID) -> Optional[AnomalyResult]:
        result = self._results.get(anomaly_id)
        return copy.copy(result) if result else None

    async def get_top(
        self, site_id: str, limit: int = 50, node_type: Optional[NodeType] = None
    ) -> list[AnomalyResult]:
        prefix = node_type_prefix(node_type) if node_type is not None else ""
        results = [
            r
            for r in self._results.values()
            if r.site_id == site_id and not r.is_acknowledged and r.node_id.startswith(prefix)
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return [copy.copy(r) for r in results[:limit]]

    async def acknowledge(
        self, anomaly_id: UUID, user_id: str, notes: Optional[str] = None
    ) -> AnomalyResult:
        result = self._results.get(anomaly_id)
        if result is None:
            raise AnomalyNotFoundError(anomaly_id)
        result.acknowledged_at = datetime.utcnow()
        result.acknowledged_by = user_id
        result.resolution_notes = notes
        return copy.copy(result)
