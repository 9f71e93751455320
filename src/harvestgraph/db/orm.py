"""
SQLAlchemy models for the derived graph and the anomaly result history.

The graph tables are a rebuildable cache over the operational source tables:
no foreign keys are declared between edges and nodes, and rows are soft
deleted through ``is_active``.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class GraphNodeRecord(Base):
    """Persisted graph node."""

    __tablename__ = "graph_nodes"

    node_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    node_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    label: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    source_created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    source_updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Opaque node-type specific payload
    properties_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    # Latest detector output
    anomaly_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    anomaly_explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "anomaly_score IS NULL OR (anomaly_score >= 0 AND anomaly_score <= 1)",
            name="check_graph_node_anomaly_score",
        ),
        Index("idx_graph_nodes_site_type", "site_id", "node_type", "is_active"),
        Index("idx_graph_nodes_source", "site_id", "source_entity_id"),
        Index("idx_graph_nodes_anomaly", "site_id", "anomaly_score"),
    )


class GraphEdgeRecord(Base):
    """Persisted graph edge."""

    __tablename__ = "graph_edges"

    edge_id: Mapped[str] = mapped_column(String(450), primary_key=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    edge_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_node_id: Mapped[str] = mapped_column(String(200), nullable=False)
    target_node_id: Mapped[str] = mapped_column(String(200), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    properties_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("idx_graph_edges_site_type", "site_id", "edge_type", "is_active"),
        Index("idx_graph_edges_source", "source_node_id", "edge_type"),
        Index("idx_graph_edges_target", "target_node_id", "edge_type"),
    )


class AnomalyResultRecord(Base):
    """
    Deduplicated history of anomaly detections.

    One row per (node_id, anomaly_type) within the dedup window; later
    detections outside the window add new rows.
    """

    __tablename__ = "anomaly_results"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False)
    node_id: Mapped[str] = mapped_column(String(200), nullable=False)
    edge_id: Mapped[Optional[str]] = mapped_column(String(450), nullable=True)
    node_type: Mapped[str] = mapped_column(String(50), nullable=False)
    anomaly_type: Mapped[str] = mapped_column(String(50), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    explanation: Mapped[str] = mapped_column(Text, nullable=False, default="")
    feature_attributions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    model_version: Mapped[str] = mapped_column(String(50), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    # Human acknowledgment
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "score >= 0 AND score <= 1",
            name="check_anomaly_result_score",
        ),
        Index("idx_anomaly_results_dedup", "node_id", "anomaly_type", "detected_at"),
        Index("idx_anomaly_results_open", "site_id", "acknowledged_at", "score"),
    )

    def acknowledge(self, user_id: str, notes: Optional[str] = None) -> None:
        """Mark the result as reviewed."""
        self.acknowledged_at = datetime.utcnow()
        self.acknowledged_by = user_id
        self.resolution_notes = notes

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledged_at is not None
