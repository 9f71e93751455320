"""
Base class and helpers for domain graph builders.

A builder reads the source tables of one bounded domain for a site, maps
rows to graph nodes and edges, and upserts them into the graph store.
Source reads are raw SQL against the operational store; every builder
opens its own session so builders can run in parallel.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvestgraph.graph.edges import EdgeType, GraphEdge
from harvestgraph.graph.schema import GraphNode, NodeType
from harvestgraph.graph.store import GraphStore

logger = logging.getLogger(__name__)

# SQLSTATE codes for undefined table / undefined column
SCHEMA_DRIFT_SQLSTATES = {"42P01", "42703"}
SCHEMA_DRIFT_MESSAGES = ("no such table", "no such column", "does not exist")

# Exceptions that mark a single source row as unmappable
ROW_MAPPING_ERRORS = (ValueError, TypeError, KeyError, ValidationError)


def is_schema_drift(exc: BaseException) -> bool:
    """True if a database error means a source table or column is missing."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in SCHEMA_DRIFT_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(fragment in message for fragment in SCHEMA_DRIFT_MESSAGES)


# =============================================================================
# Row coercion
# =============================================================================


def as_str(value: Any) -> Optional[str]:
    """Driver value (UUID, text, number) to string."""
    if value is None:
        return None
    return str(value)


def as_id(value: Any) -> Optional[str]:
    """Source identifier as a lowercase string, None when absent or blank."""
    text_value = as_str(value)
    if text_value is None or not text_value.strip():
        return None
    return text_value.strip().lower()


def as_datetime(value: Any) -> Optional[datetime]:
    """Driver value to a naive UTC datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if not isinstance(value, datetime):
        raise TypeError(f"Cannot convert {type(value).__name__} to datetime")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def as_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None:
        return default
    return float(value)


def as_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None:
        return default
    return int(value)


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "t", "true", "yes", "y")
    return bool(value)


def as_list(value: Any) -> list[str]:
    """Array column (native array, JSON text or '{a,b}' literal) to lowercase ids."""
    if value is None:
        return []
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            value = json.loads(stripped)
        elif stripped.startswith("{") and stripped.endswith("}"):
            value = [part.strip().strip('"') for part in stripped[1:-1].split(",")]
        else:
            value = stripped.split(",")
    return [item for item in (as_id(v) for v in value) if item]


# =============================================================================
# Build results
# =============================================================================


@dataclass
class BuildResult:
    """
    Outcome of one builder run.

    Iterates as ``(nodes, edges)``. ``node_ids`` / ``edge_ids`` hold the ids
    emitted per type, only for the query groups that actually ran; a type
    missing from these maps was skipped because of schema drift.
    """

    builder: str
    site_id: str
    since: Optional[datetime] = None
    nodes: int = 0
    edges: int = 0
    rows_skipped: int = 0
    node_ids: dict[NodeType, set[str]] = field(default_factory=dict)
    edge_ids: dict[EdgeType, set[str]] = field(default_factory=dict)
    skipped_groups: list[str] = field(default_factory=list)

    def __iter__(self):
        return iter((self.nodes, self.edges))

    @property
    def is_partial(self) -> bool:
        return bool(self.skipped_groups)


RowMapper = Callable[[RowMapping], tuple[list[GraphNode], list[GraphEdge]]]


FETCH_LINK_QUERY = """
SELECT {key} AS source_id, {column} AS target_id, {timestamp} AS linked_at
FROM {table}
WHERE site_id = :site_id AND {column} IS NOT NULL
"""


@dataclass(frozen=True)
class OptionalLink:
    """
    An edge read from a foreign key column that not every source schema has.

    Each link is fetched on its own so a missing column only skips its
    edge type; the owning nodes come from the core query.
    """

    table: str
    key: str
    column: str
    edge_type: EdgeType
    source_type: NodeType
    target_type: NodeType
    timestamp: str = "created_at"
    watermark: str = "updated_at"

    @property
    def query(self) -> str:
        return FETCH_LINK_QUERY.format(
            key=self.key, column=self.column, timestamp=self.timestamp, table=self.table
        )

    def edge(self, site_id: str, row: RowMapping) -> GraphEdge:
        return GraphEdge.create(
            site_id,
            self.edge_type,
            self.source_type,
            as_id(row["source_id"]),
            self.target_type,
            as_id(row["target_id"]),
            as_datetime(row["linked_at"]),
        )


class GraphBuilder(ABC):
    """Abstract base class for domain graph builders."""

    name: str = ""
    node_types: tuple[NodeType, ...] = ()
    edge_types: tuple[EdgeType, ...] = ()

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], store: GraphStore):
        self.session_factory = session_factory
        self.store = store

    async def build(self, site_id: str, since: Optional[datetime] = None) -> BuildResult:
        """
        Build the domain subgraph for a site.

        Args:
            site_id: Site to build
            since: Watermark; only source rows changed at or after it are read

        Returns:
            BuildResult with accepted node/edge counts and emitted ids
        """
        logger.debug(f"Building {self.name} graph for site {site_id}, since {since}")
        result = BuildResult(builder=self.name, site_id=str(site_id), since=since)

        async with self.session_factory() as session:
            await self._build(session, str(site_id), since, result)

        logger.info(
            f"Built {self.name} graph for site {site_id}: "
            f"{result.nodes} nodes, {result.edges} edges"
            + (f" (skipped: {', '.join(result.skipped_groups)})" if result.skipped_groups else "")
        )
        return result

    @abstractmethod
    async def _build(
        self,
        session: AsyncSession,
        site_id: str,
        since: Optional[datetime],
        result: BuildResult,
    ) -> None:
        """Read source rows and emit nodes/edges into ``result``."""

    # Helpers for subclasses

    async def _fetch(
        self,
        session: AsyncSession,
        query: str,
        params: dict[str, Any],
        group: str,
        result: BuildResult,
    ) -> Optional[Sequence[RowMapping]]:
        """
        Run a source query, returning None when its table or a column is missing.

        The session is rolled back after a drift error so later queries on
        the same connection can proceed.
        """
        try:
            rows = await session.execute(text(query), params)
            return rows.mappings().all()
        except DBAPIError as e:
            if not is_schema_drift(e):
                raise
            logger.warning(f"{self.name} builder skipped {group} for site {result.site_id}: {e.orig}")
            result.skipped_groups.append(group)
            await session.rollback()
            return None

    def _map_rows(
        self, rows: Iterable[RowMapping], mapper: RowMapper, result: BuildResult
    ) -> tuple[list[GraphNode], list[GraphEdge]]:
        nodes: list[GraphNode] = []
        edges: list[GraphEdge] = []
        for row in rows:
            try:
                row_nodes, row_edges = mapper(row)
            except ROW_MAPPING_ERRORS as e:
                result.rows_skipped += 1
                logger.warning(f"{self.name} builder skipped malformed row {dict(row)!r}: {e}")
                continue
            nodes.extend(row_nodes)
            edges.extend(row_edges)
        return nodes, edges

    async def _emit(
        self,
        result: BuildResult,
        nodes: list[GraphNode],
        edges: list[GraphEdge],
        node_types: Iterable[NodeType] = (),
        edge_types: Iterable[EdgeType] = (),
    ) -> None:
        """
        Upsert a query group's output and record the emitted ids.

        ``node_types`` / ``edge_types`` name every type the group is
        responsible for, so a group that legitimately emits nothing still
        counts as having run.
        """
        for node_type in node_types:
            result.node_ids.setdefault(node_type, set())
        for edge_type in edge_types:
            result.edge_ids.setdefault(edge_type, set())

        if nodes:
            result.nodes += await self.store.upsert_nodes(nodes)
        if edges:
            result.edges += await self.store.upsert_edges(edges)

        for node in nodes:
            result.node_ids.setdefault(NodeType(node.node_type), set()).add(node.node_id)
        for edge in edges:
            result.edge_ids.setdefault(EdgeType(edge.edge_type), set()).add(edge.edge_id)

    async def _emit_links(
        self,
        session: AsyncSession,
        site_id: str,
        since: Optional[datetime],
        links: Iterable[OptionalLink],
        result: BuildResult,
    ) -> None:
        """Fetch and upsert each optional link; a missing column skips only that edge type."""
        for link in links:
            params = {"site_id": site_id}
            query = with_watermark(link.query, link.watermark, since, params)
            rows = await self._fetch(session, query, params, f"{link.table}.{link.column}", result)
            if rows is None:
                continue
            _, edges = self._map_rows(rows, lambda r: ([], [link.edge(site_id, r)]), result)
            await self._emit(result, [], edges, edge_types=[link.edge_type])


def with_watermark(query: str, column: str, since: Optional[datetime], params: dict) -> str:
    """Append the watermark predicate to a query when a since timestamp is given."""
    if since is None:
        return query
    params["since"] = since
    return f"{query} AND {column} >= :since"
