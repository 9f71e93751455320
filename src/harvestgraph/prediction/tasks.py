"""
Task assignment, ETA and critical path predictions.

Combines graph features (users, dependencies, task state) with completion
statistics read from the source task tables:
- Assignee recommendation from five weighted factors
- Completion time from historical durations of the same task type
- Critical path ranking by direct dependents and their overdue time
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import networkx as nx
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvestgraph.builders.base import as_datetime
from harvestgraph.config import settings
from harvestgraph.exceptions import NodeNotFoundError
from harvestgraph.graph.edges import EdgeType
from harvestgraph.graph.properties import TaskProperties, UserProperties, load_properties
from harvestgraph.graph.schema import GraphNode, NodeType, format_node_id, parse_node_id
from harvestgraph.graph.store import GraphStore

logger = logging.getLogger(__name__)


MODEL_VERSION = "task-prediction-v1.0"


@dataclass
class AlternateAssignee:
    user_id: str
    user_name: str
    score: float
    reasoning: str


@dataclass
class AssigneeRecommendation:
    """Best assignee for a task plus up to three runners-up."""

    task_id: str
    recommended_user_id: Optional[str]
    recommended_user_name: str
    confidence: float
    reasoning: str
    alternatives: list[AlternateAssignee] = field(default_factory=list)
    model_version: str = MODEL_VERSION


@dataclass
class EtaPrediction:
    """Predicted completion of a task."""

    task_id: str
    predicted_completion_at: datetime
    predicted_duration: timedelta
    confidence: float
    confidence_interval_low: timedelta
    confidence_interval_high: timedelta
    risk_factors: list[str] = field(default_factory=list)
    model_version: str = MODEL_VERSION


@dataclass
class CriticalPathTask:
    """An active task ranked by how much work it holds up."""

    task_id: str
    title: str
    dependent_task_count: int
    total_blocked_time: timedelta
    impact_score: float


@dataclass
class DependencyDelay:
    task_id: str
    delay_minutes: int


# =============================================================================
# Historical statistics
# =============================================================================


class TaskHistorySource(ABC):
    """
    Completion statistics from the source task tables.

    Methods return None (or an empty list) when the statistic cannot be
    read; callers substitute neutral values.
    """

    @abstractmethod
    async def count_completed_by_user(
        self, site_id: str, user_id: str, task_type: str, since: datetime
    ) -> Optional[int]:
        """Completed tasks of a type the user logged time on since a point in time."""

    @abstractmethod
    async def count_active_tasks(self, site_id: str, user_id: str) -> Optional[int]:
        """Pending and in-progress tasks assigned to the user."""

    @abstractmethod
    async def get_completion_durations(
        self, site_id: str, task_type: str, since: datetime, limit: int = 100
    ) -> list[float]:
        """Durations in minutes of recently completed tasks of a type, newest first."""


COUNT_COMPLETED_BY_USER_QUERY = """
SELECT COUNT(DISTINCT t.task_id) AS completed_count
FROM tasks t
JOIN task_time_entries tte ON t.task_id = tte.task_id
WHERE t.site_id = :site_id
  AND tte.user_id = :user_id
  AND t.task_type = :task_type
  AND t.status = 'Completed'
  AND t.completed_at > :since
"""

COUNT_ACTIVE_TASKS_QUERY = """
SELECT COUNT(*) AS active_tasks
FROM tasks
WHERE site_id = :site_id
  AND assigned_to_user_id = :user_id
  AND status IN ('Pending', 'InProgress')
"""

FETCH_COMPLETION_TIMES_QUERY = """
SELECT started_at, completed_at
FROM tasks
WHERE site_id = :site_id
  AND task_type = :task_type
  AND status = 'Completed'
  AND started_at IS NOT NULL
  AND completed_at IS NOT NULL
  AND completed_at > :since
ORDER BY completed_at DESC
LIMIT :limit
"""


class SqlTaskHistorySource(TaskHistorySource):
    """Reads task statistics with plain SQL over the source store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _scalar(self, query: str, params: dict, description: str) -> Optional[int]:
        async with self.session_factory() as session:
            try:
                result = await session.execute(text(query), params)
                return int(result.scalar() or 0)
            except SQLAlchemyError as e:
                logger.warning(f"Error fetching {description}: {e}")
                return None

    async def count_completed_by_user(
        self, site_id: str, user_id: str, task_type: str, since: datetime
    ) -> Optional[int]:
        return await self._scalar(
            COUNT_COMPLETED_BY_USER_QUERY,
            {"site_id": site_id, "user_id": user_id, "task_type": task_type, "since": since},
            "task type affinity",
        )

    async def count_active_tasks(self, site_id: str, user_id: str) -> Optional[int]:
        return await self._scalar(
            COUNT_ACTIVE_TASKS_QUERY,
            {"site_id": site_id, "user_id": user_id},
            "user workload",
        )

    async def get_completion_durations(
        self, site_id: str, task_type: str, since: datetime, limit: int = 100
    ) -> list[float]:
        params = {"site_id": site_id, "task_type": task_type, "since": since, "limit": limit}
        async with self.session_factory() as session:
            try:
                result = await session.execute(text(FETCH_COMPLETION_TIMES_QUERY), params)
                rows = result.mappings().all()
            except SQLAlchemyError as e:
                logger.warning(f"Error fetching historical task data: {e}")
                return []

        durations = []
        for row in rows:
            started_at, completed_at = as_datetime(row["started_at"]), as_datetime(row["completed_at"])
            if started_at and completed_at:
                durations.append((completed_at - started_at).total_seconds() / 60)
        return durations


# =============================================================================
# Prediction service
# =============================================================================


class TaskPredictionService:
    """Heuristic predictions over the task graph."""

    # (weight, label) per assignee factor
    AFFINITY = (0.30, "task type experience")
    WORKLOAD = (0.25, "workload capacity")
    ROLE_MATCH = (0.20, "role match")
    PERFORMANCE = (0.15, "past performance")
    AVAILABILITY = (0.10, "availability")

    DEFAULT_AVAILABILITY = 0.8
    NEUTRAL_SCORE = 0.5
    MAX_ALTERNATIVES = 3

    DEFAULT_DURATION = timedelta(hours=4)
    DEFAULT_INTERVAL = (timedelta(hours=1), timedelta(hours=8))
    DEFAULT_CONFIDENCE = 0.3
    DEFAULT_DEPENDENCY_DELAY_MINUTES = 60
    MIN_HISTORY_FOR_CONFIDENCE = 5
    HISTORY_LIMIT = 100

    CRITICAL_PATH_LIMIT = 20

    def __init__(
        self,
        store: GraphStore,
        history: TaskHistorySource,
        history_days: Optional[int] = None,
    ):
        self.store = store
        self.history = history
        self.history_days = history_days or settings.task_history_days

    async def _get_task(self, task_id: str) -> tuple[GraphNode, TaskProperties]:
        node_id = format_node_id(NodeType.TASK, task_id)
        node = await self.store.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id, f"Task node not found: {task_id}")
        props = load_properties(node, TaskProperties)
        if props is None:
            raise NodeNotFoundError(node_id, f"Task properties not found: {task_id}")
        return node, props

    # -------------------------------------------------------------------------
    # Assignee recommendation
    # -------------------------------------------------------------------------

    async def predict_assignee(self, task_id: str) -> AssigneeRecommendation:
        """
        Recommend who should take a task.

        Raises:
            NodeNotFoundError: if the task is not in the graph
        """
        task_node, task = await self._get_task(task_id)
        users = await self.store.get_nodes_by_type(task_node.site_id, NodeType.USER)
        if not users:
            return self._no_assignee(task_node.source_entity_id)

        candidates = []
        for user in users:
            score, reason = await self._score_assignee(task_node, task, user)
            candidates.append((user, score, reason))
        candidates.sort(key=lambda c: c[1], reverse=True)

        best_user, best_score, best_reason = candidates[0]
        if best_score <= 0:
            return self._no_assignee(task_node.source_entity_id)

        alternatives = [
            AlternateAssignee(
                user_id=user.source_entity_id,
                user_name=self._display_name(user),
                score=score,
                reasoning=reason,
            )
            for user, score, reason in candidates[1 : 1 + self.MAX_ALTERNATIVES]
        ]
        return AssigneeRecommendation(
            task_id=task_node.source_entity_id,
            recommended_user_id=best_user.source_entity_id,
            recommended_user_name=self._display_name(best_user),
            confidence=best_score,
            reasoning=best_reason,
            alternatives=alternatives,
        )

    async def _score_assignee(
        self, task_node: GraphNode, task: TaskProperties, user: GraphNode
    ) -> tuple[float, str]:
        props = load_properties(user, UserProperties)
        if props is None or not props.is_active:
            return 0.0, "User inactive"

        since = datetime.utcnow() - timedelta(days=self.history_days)
        completed = await self.history.count_completed_by_user(
            task_node.site_id, user.source_entity_id, task.task_type, since
        )
        affinity = self.NEUTRAL_SCORE if completed is None else min(completed / 10, 1.0)

        active = await self.history.count_active_tasks(task_node.site_id, user.source_entity_id)
        workload = self.NEUTRAL_SCORE if active is None else min(active / 5, 1.0)

        factors = [
            (affinity, *self.AFFINITY),
            (1.0 - workload, *self.WORKLOAD),
            (role_match_score(task.assigned_to_role, props.primary_role), *self.ROLE_MATCH),
            (performance_score(props), *self.PERFORMANCE),
            (self.DEFAULT_AVAILABILITY, *self.AVAILABILITY),
        ]
        total = sum(score * weight for score, weight, _ in factors)

        top = [f for f in factors if f[0] > 0.5]
        top.sort(key=lambda f: f[0] * f[1], reverse=True)
        if top:
            reason = "Recommended based on: " + ", ".join(label for _, _, label in top[:2])
        else:
            reason = "General availability"

        return min(max(total, 0.0), 1.0), reason

    def _display_name(self, user: GraphNode) -> str:
        props = load_properties(user, UserProperties)
        return props.display_name if props and props.display_name else "Unknown"

    def _no_assignee(self, task_id: str) -> AssigneeRecommendation:
        return AssigneeRecommendation(
            task_id=task_id,
            recommended_user_id=None,
            recommended_user_name="No recommendation",
            confidence=0.0,
            reasoning="No eligible assignees found",
        )

    # -------------------------------------------------------------------------
    # ETA prediction
    # -------------------------------------------------------------------------

    async def predict_eta(self, task_id: str) -> EtaPrediction:
        """
        Predict when a task will be completed.

        Raises:
            NodeNotFoundError: if the task is not in the graph
        """
        task_node, task = await self._get_task(task_id)

        since = datetime.utcnow() - timedelta(days=self.history_days)
        durations = await self.history.get_completion_durations(
            task_node.site_id, task.task_type, since, self.HISTORY_LIMIT
        )
        delays = await self._dependency_delays(task_node)

        duration, confidence, (low, high) = self.estimate_duration(durations)
        adjusted = duration + timedelta(minutes=sum(d.delay_minutes for d in delays))
        start = task.started_at or datetime.utcnow()

        return EtaPrediction(
            task_id=task_node.source_entity_id,
            predicted_completion_at=start + adjusted,
            predicted_duration=adjusted,
            confidence=confidence,
            confidence_interval_low=low,
            confidence_interval_high=high,
            risk_factors=self.identify_risks(task, delays, len(durations)),
        )

    def estimate_duration(
        self, durations: list[float]
    ) -> tuple[timedelta, float, tuple[timedelta, timedelta]]:
        """
        Duration estimate from historical durations in minutes.

        Returns:
            (predicted duration, confidence, (interval low, interval high))
        """
        if not durations:
            return self.DEFAULT_DURATION, self.DEFAULT_CONFIDENCE, self.DEFAULT_INTERVAL

        mean = sum(durations) / len(durations)
        stddev = math.sqrt(sum((d - mean) ** 2 for d in durations) / len(durations))

        dispersion = stddev / mean / 2 if mean > 0 else 0.0
        confidence = min(0.9, 0.5 + len(durations) / 100 - dispersion)
        confidence = max(0.3, confidence)

        low = max(5.0, mean - 1.96 * stddev)
        high = mean + 1.96 * stddev
        return (
            timedelta(minutes=mean),
            confidence,
            (timedelta(minutes=low), timedelta(minutes=high)),
        )

    async def _dependency_delays(self, task_node: GraphNode) -> list[DependencyDelay]:
        delays = []
        now = datetime.utcnow()
        edges = await self.store.get_outgoing_edges(task_node.node_id, EdgeType.DEPENDS_ON)
        for edge in edges:
            dependency = await self.store.get_node(edge.target_node_id)
            if dependency is None:
                continue
            props = load_properties(dependency, TaskProperties)
            if props is None or props.status == "Completed":
                continue

            if props.due_date is not None:
                remaining = (props.due_date - now).total_seconds() / 60
            else:
                remaining = self.DEFAULT_DEPENDENCY_DELAY_MINUTES
            delays.append(DependencyDelay(dependency.source_entity_id, int(max(0, remaining))))
        return delays

    def identify_risks(
        self, task: TaskProperties, delays: list[DependencyDelay], history_count: int
    ) -> list[str]:
        risks = []
        if task.is_blocked:
            risks.append(f"Task is blocked: {task.blocking_reason}")
        if delays:
            total_hours = sum(d.delay_minutes for d in delays) / 60
            risks.append(f"Waiting on {len(delays)} dependencies (~{total_hours:.1f}h)")
        if task.due_date is not None and task.due_date < datetime.utcnow():
            risks.append("Task is past due date")
        if history_count < self.MIN_HISTORY_FOR_CONFIDENCE:
            risks.append("Limited historical data for this task type")
        if not task.assigned_to_user_id:
            risks.append("Task is unassigned")
        return risks

    # -------------------------------------------------------------------------
    # Dependency analysis
    # -------------------------------------------------------------------------

    async def find_critical_path(self, site_id: str) -> list[CriticalPathTask]:
        """Rank active tasks by direct dependents and their overdue time."""
        logger.debug(f"Finding critical path tasks for site {site_id}")

        active: dict[str, TaskProperties] = {}
        for node in await self.store.get_nodes_by_type(site_id, NodeType.TASK):
            props = load_properties(node, TaskProperties)
            if props is not None and not props.is_terminal:
                active[node.node_id] = props
        if not active:
            return []

        edges = await self.store.get_edges_by_type(site_id, EdgeType.DEPENDS_ON)
        dependents: dict[str, list[str]] = {}
        for edge in edges:
            dependents.setdefault(edge.target_node_id, []).append(edge.source_node_id)

        now = datetime.utcnow()
        critical = []
        for node_id, props in active.items():
            dependent_ids = dependents.get(node_id, [])
            blocked = timedelta()
            for dependent_id in dependent_ids:
                dependent = active.get(dependent_id)
                if dependent is not None and dependent.due_date is not None and dependent.due_date < now:
                    blocked += now - dependent.due_date

            if not dependent_ids and blocked <= timedelta():
                continue
            blocked_hours = blocked.total_seconds() / 3600
            _, source_id = parse_node_id(node_id)
            critical.append(
                CriticalPathTask(
                    task_id=source_id,
                    title=props.title or "Unknown",
                    dependent_task_count=len(dependent_ids),
                    total_blocked_time=blocked,
                    impact_score=len(dependent_ids) * 0.3 + min(blocked_hours, 100) * 0.01,
                )
            )

        critical.sort(key=lambda t: t.impact_score, reverse=True)
        critical = critical[: self.CRITICAL_PATH_LIMIT]
        logger.info(f"Found {len(critical)} critical path tasks for site {site_id}")
        return critical

    async def find_dependency_cycles(self, site_id: str) -> list[list[str]]:
        """
        Find circular task dependencies.

        Returns:
            Each cycle as a list of task source ids
        """
        edges = await self.store.get_edges_by_type(site_id, EdgeType.DEPENDS_ON)
        graph = nx.DiGraph()
        graph.add_edges_from((e.source_node_id, e.target_node_id) for e in edges)

        cycles = []
        for cycle in nx.simple_cycles(graph):
            cycles.append([parse_node_id(node_id)[1] for node_id in cycle])
        if cycles:
            logger.warning(f"Found {len(cycles)} dependency cycles for site {site_id}")
        return cycles


def role_match_score(required_role: Optional[str], user_role: Optional[str]) -> float:
    if not required_role:
        return 0.5
    if not user_role:
        return 0.3

    required, actual = required_role.lower(), user_role.lower()
    if required == actual:
        return 1.0
    # "Senior Cultivator" matches "Cultivator"
    if required in actual or actual in required:
        return 0.7
    return 0.2


def performance_score(user: UserProperties) -> float:
    """Blend of completion volume and average completion speed."""
    avg_hours = user.avg_task_completion_hours
    if avg_hours is None:
        avg_hours = 24.0
    completion = min(user.total_tasks_completed / 50, 1.0)
    speed = max(0.0, 1.0 - avg_hours / 48)
    return completion * 0.6 + speed * 0.4
