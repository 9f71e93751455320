"""
Task management graph builder.

Creates nodes for Task, TimeEntry and User, and edges for dependencies,
assignments and logged time.
"""

import logging
from collections import Counter, defaultdict
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
    as_id,
    as_str,
    with_watermark,
)
from harvestgraph.graph.edges import EdgeType, GraphEdge
from harvestgraph.graph.properties import (
    DependencyEdgeProperties,
    TaskProperties,
    TimeEntryProperties,
    UserProperties,
)
from harvestgraph.graph.schema import GraphNode, NodeType

logger = logging.getLogger(__name__)


FETCH_TASKS_QUERY = """
SELECT
    task_id, task_type, custom_task_type, title, status,
    priority, assigned_to_user_id, assigned_to_role,
    due_date, started_at, completed_at,
    related_entity_type, related_entity_id, blocking_reason, assigned_at,
    created_at, updated_at
FROM tasks
WHERE site_id = :site_id
"""

FETCH_TIME_ENTRIES_QUERY = """
SELECT
    tte.task_time_entry_id, tte.task_id, tte.user_id,
    tte.started_at, tte.ended_at, tte.notes
FROM task_time_entries tte
JOIN tasks t ON tte.task_id = t.task_id
WHERE t.site_id = :site_id
"""

FETCH_USERS_QUERY = """
SELECT DISTINCT u.user_id, u.display_name, u.email, u.is_active
FROM users u
JOIN tasks t ON t.{column} = u.user_id
WHERE t.site_id = :site_id
"""

FETCH_ASSIGNEE_HISTORY_QUERY = """
SELECT assigned_to_user_id, assigned_to_role, status, started_at, completed_at
FROM tasks
WHERE site_id = :site_id AND assigned_to_user_id IS NOT NULL
"""

FETCH_DEPENDENCIES_QUERY = """
SELECT
    td.task_id, td.depends_on_task_id, td.dependency_type,
    td.is_blocking, t.created_at
FROM task_dependencies td
JOIN tasks t ON td.task_id = t.task_id
WHERE t.site_id = :site_id
"""

BLOCKING_DEPENDENCY_WEIGHT = 2.0

# Assigner and creator columns are not present on every deployment of tasks
TASK_AUTHOR_LINKS = (
    OptionalLink(
        table="tasks",
        key="task_id",
        column="assigned_by_user_id",
        edge_type=EdgeType.ASSIGNED_BY,
        source_type=NodeType.TASK,
        target_type=NodeType.USER,
        timestamp="COALESCE(assigned_at, created_at)",
    ),
    OptionalLink(
        table="tasks",
        key="task_id",
        column="created_by_user_id",
        edge_type=EdgeType.CREATED_BY,
        source_type=NodeType.TASK,
        target_type=NodeType.USER,
    ),
)


class TaskGraphBuilder(GraphBuilder):
    """Builds the task/dependency/assignment graph."""

    name = "task"
    node_types = (
        NodeType.TASK,
        NodeType.TIME_ENTRY,
        NodeType.USER,
        NodeType.SOP,
        NodeType.TEAM,
    )
    edge_types = (
        EdgeType.DEPENDS_ON,
        EdgeType.ASSIGNED_TO,
        EdgeType.ASSIGNED_BY,
        EdgeType.CREATED_BY,
        EdgeType.TIME_ENTRY_FOR,
        EdgeType.LOGGED_BY,
    )

    async def _build(
        self,
        session: AsyncSession,
        site_id: str,
        since: Optional[datetime],
        result: BuildResult,
    ) -> None:
        # Tasks and their assignment edges
        params = {"site_id": site_id}
        query = with_watermark(FETCH_TASKS_QUERY, "updated_at", since, params)
        rows = await self._fetch(session, query, params, "tasks", result)
        if rows is not None:
            nodes, edges = self._map_rows(rows, lambda r: self._task(site_id, r), result)
            await self._emit(
                result,
                nodes,
                edges,
                node_types=[NodeType.TASK],
                edge_types=[EdgeType.ASSIGNED_TO],
            )
            await self._emit_links(session, site_id, since, TASK_AUTHOR_LINKS, result)

        # Time entries are watermarked on their start time
        params = {"site_id": site_id}
        query = with_watermark(FETCH_TIME_ENTRIES_QUERY, "tte.started_at", since, params)
        rows = await self._fetch(session, query, params, "task_time_entries", result)
        if rows is not None:
            nodes, edges = self._map_rows(rows, lambda r: self._time_entry(site_id, r), result)
            await self._emit(
                result,
                nodes,
                edges,
                node_types=[NodeType.TIME_ENTRY],
                edge_types=[EdgeType.TIME_ENTRY_FOR, EdgeType.LOGGED_BY],
            )

        # Users linked to the site's tasks, with completion history
        params = {"site_id": site_id}
        query = FETCH_USERS_QUERY.format(column="assigned_to_user_id")
        rows = await self._fetch(session, query, params, "users", result)
        if rows is not None:
            users = {row["user_id"]: row for row in rows}
            for link in TASK_AUTHOR_LINKS:
                query = FETCH_USERS_QUERY.format(column=link.column)
                linked = await self._fetch(session, query, params, f"users by {link.column}", result)
                for row in linked or []:
                    users.setdefault(row["user_id"], row)
            history = await self._fetch(
                session, FETCH_ASSIGNEE_HISTORY_QUERY, {"site_id": site_id}, "assignee history", result
            )
            stats = summarize_assignee_history(history or [])
            nodes, _ = self._map_rows(
                users.values(), lambda r: ([self._user_node(site_id, r, stats)], []), result
            )
            await self._emit(result, nodes, [], node_types=[NodeType.USER])

        # Dependencies are always rebuilt in full; the table has no timestamps
        rows = await self._fetch(
            session, FETCH_DEPENDENCIES_QUERY, {"site_id": site_id}, "task_dependencies", result
        )
        if rows is not None:
            _, edges = self._map_rows(rows, lambda r: ([], [self._dependency_edge(site_id, r)]), result)
            await self._emit(result, [], edges, edge_types=[EdgeType.DEPENDS_ON])

    def _task(self, site_id: str, row: RowMapping) -> tuple[list[GraphNode], list[GraphEdge]]:
        task_id = as_id(row["task_id"])
        created_at = as_datetime(row["created_at"])
        title = as_str(row["title"]) or "Untitled Task"
        blocking_reason = as_str(row["blocking_reason"])

        properties = TaskProperties(
            task_type=as_str(row["task_type"]) or "",
            custom_task_type=as_str(row["custom_task_type"]),
            title=title,
            status=as_str(row["status"]) or "Unknown",
            priority=as_str(row["priority"]) or "",
            assigned_to_user_id=as_id(row["assigned_to_user_id"]),
            assigned_to_role=as_str(row["assigned_to_role"]),
            due_date=as_datetime(row["due_date"]),
            started_at=as_datetime(row["started_at"]),
            completed_at=as_datetime(row["completed_at"]),
            related_entity_type=as_str(row["related_entity_type"]),
            related_entity_id=as_id(row["related_entity_id"]),
            blocking_reason=blocking_reason,
            is_blocked=blocking_reason is not None,
        )
        node = GraphNode.create(
            site_id,
            NodeType.TASK,
            task_id,
            f"Task: {title}",
            created_at,
            as_datetime(row["updated_at"]),
            properties,
        )

        edges = []
        assigned_at = as_datetime(row["assigned_at"]) or created_at
        assignee = properties.assigned_to_user_id
        if assignee:
            edges.append(
                GraphEdge.create(
                    site_id, EdgeType.ASSIGNED_TO, NodeType.TASK, task_id, NodeType.USER, assignee, assigned_at
                )
            )
        return [node], edges

    def _time_entry(self, site_id: str, row: RowMapping) -> tuple[list[GraphNode], list[GraphEdge]]:
        entry_id = as_id(row["task_time_entry_id"])
        task_id = as_id(row["task_id"])
        user_id = as_id(row["user_id"])
        started_at = as_datetime(row["started_at"])
        ended_at = as_datetime(row["ended_at"])

        duration_minutes = int((ended_at - started_at).total_seconds() // 60) if ended_at else 0
        properties = TimeEntryProperties(
            task_id=task_id,
            user_id=user_id,
            started_at=started_at,
            ended_at=ended_at,
            duration_minutes=duration_minutes,
            notes=as_str(row["notes"]),
        )
        node = GraphNode.create(
            site_id,
            NodeType.TIME_ENTRY,
            entry_id,
            f"Time Entry: {duration_minutes} min",
            started_at,
            ended_at or started_at,
            properties,
        )
        edges = [
            GraphEdge.create(
                site_id, EdgeType.TIME_ENTRY_FOR, NodeType.TIME_ENTRY, entry_id, NodeType.TASK, task_id, started_at
            )
        ]
        if user_id:
            edges.append(
                GraphEdge.create(
                    site_id,
                    EdgeType.LOGGED_BY,
                    NodeType.TIME_ENTRY,
                    entry_id,
                    NodeType.USER,
                    user_id,
                    started_at,
                )
            )
        return [node], edges

    def _user_node(self, site_id: str, row: RowMapping, stats: dict[str, dict]) -> GraphNode:
        user_id = as_id(row["user_id"])
        display_name = as_str(row["display_name"]) or "Unknown User"
        user_stats = stats.get(user_id, {})
        now = datetime.utcnow()
        properties = UserProperties(
            display_name=display_name,
            email=as_str(row["email"]),
            is_active=as_bool(row["is_active"], default=True),
            primary_role=user_stats.get("primary_role"),
            total_tasks_completed=user_stats.get("completed", 0),
            avg_task_completion_hours=user_stats.get("avg_hours"),
        )
        return GraphNode.create(
            site_id, NodeType.USER, user_id, f"User: {display_name}", now, now, properties
        )

    def _dependency_edge(self, site_id: str, row: RowMapping) -> GraphEdge:
        is_blocking = as_bool(row["is_blocking"])
        properties = DependencyEdgeProperties(
            dependency_type=as_str(row["dependency_type"]) or "FinishToStart",
            is_blocking=is_blocking,
        )
        return GraphEdge.create(
            site_id,
            EdgeType.DEPENDS_ON,
            NodeType.TASK,
            as_id(row["task_id"]),
            NodeType.TASK,
            as_id(row["depends_on_task_id"]),
            as_datetime(row["created_at"]),
            weight=BLOCKING_DEPENDENCY_WEIGHT if is_blocking else 1.0,
            properties=properties,
        )


def summarize_assignee_history(rows) -> dict[str, dict]:
    """
    Per-user completion statistics from the tasks assigned to them.

    Returns a mapping user id -> {"completed", "avg_hours", "primary_role"}
    where the primary role is the role the user is most often assigned as.
    """
    roles: dict[str, Counter] = defaultdict(Counter)
    durations: dict[str, list[float]] = defaultdict(list)
    completed: Counter = Counter()

    for row in rows:
        user_id = as_id(row["assigned_to_user_id"])
        if not user_id:
            continue
        role = as_str(row["assigned_to_role"])
        if role:
            roles[user_id][role] += 1
        if as_str(row["status"]) != "Completed":
            continue
        completed[user_id] += 1
        started_at = as_datetime(row["started_at"])
        completed_at = as_datetime(row["completed_at"])
        if started_at and completed_at and completed_at >= started_at:
            durations[user_id].append((completed_at - started_at).total_seconds() / 3600)

    stats = {}
    for user_id in set(roles) | set(completed):
        user_durations = durations.get(user_id)
        stats[user_id] = {
            "completed": completed.get(user_id, 0),
            "avg_hours": sum(user_durations) / len(user_durations) if user_durations else None,
            "primary_role": roles[user_id].most_common(1)[0][0] if roles.get(user_id) else None,
        }
    return stats
