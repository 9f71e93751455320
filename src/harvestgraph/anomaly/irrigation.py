"""
Irrigation response anomaly detection over IrrigationRun nodes.

Identifies when soil moisture (VWC) does not respond to irrigation the way
a zone normally does, pointing at:
- Clogged emitters
- Sensor malfunction or drift
- Commands that never executed
- Zone configuration errors

Per-zone responses and baselines come from a ZoneResponseProvider; the SQL
provider derives them from sensor readings around each run.
"""

import logging
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvestgraph.anomaly.models import AnomalyResult
from harvestgraph.builders.base import as_datetime, as_float, as_id, as_int, is_schema_drift
from harvestgraph.builders.telemetry import FLOW_RATE_STREAM_TYPE, VWC_STREAM_TYPE
from harvestgraph.config import settings
from harvestgraph.exceptions import NodeNotFoundError
from harvestgraph.graph.properties import IrrigationRunProperties, load_properties
from harvestgraph.graph.schema import GraphNode, NodeType, format_node_id
from harvestgraph.graph.store import GraphStore

logger = logging.getLogger(__name__)


@dataclass
class ZoneIrrigationResponse:
    """Observed VWC response of one zone to one irrigation run."""

    zone_id: str
    run_id: str
    vwc_before: float
    vwc_after: float
    expected_vwc_increase: float
    time_to_peak_seconds: Optional[int] = None
    command_acknowledged: bool = True
    flow_detected: bool = True

    @property
    def vwc_increase(self) -> float:
        return self.vwc_after - self.vwc_before


@dataclass
class ZoneResponseBaseline:
    """Historical response statistics for a zone."""

    zone_id: str
    mean_time_to_peak_seconds: float = 0.0
    mean_baseline_vwc: float = 0.0
    stddev_baseline_vwc: float = 0.0
    mean_vwc_increase: float = 0.0
    stddev_vwc_increase: float = 0.0
    historical_response_count: int = 0


# =============================================================================
# Response providers
# =============================================================================


class ZoneResponseProvider(ABC):
    """Source of per-zone irrigation responses and their baselines."""

    @abstractmethod
    async def get_zone_responses(
        self, site_id: str, run_id: str, run: IrrigationRunProperties
    ) -> list[ZoneIrrigationResponse]:
        """Get the response of every target zone of a run that has VWC data."""

    @abstractmethod
    async def get_zone_baselines(self, site_id: str) -> dict[str, ZoneResponseBaseline]:
        """Get baselines for all zones of a site, keyed by zone id."""


# VWC before a run is the latest reading inside this lookback
PRE_RUN_LOOKBACK = timedelta(hours=1)
# VWC keeps rising for a while after the valves close
POST_RUN_SETTLE = timedelta(minutes=30)


FETCH_ZONE_READINGS_QUERY = """
SELECT ss.zone_id, ss.stream_type, sr.time, sr.value
FROM sensor_readings sr
JOIN sensor_streams ss ON sr.stream_id = ss.id
WHERE ss.site_id = :site_id
  AND ss.zone_id IS NOT NULL
  AND ss.stream_type IN (:vwc_type, :flow_type)
  AND sr.time >= :window_start
  AND sr.time <= :window_end
ORDER BY sr.time
"""

FETCH_BASELINE_RUNS_QUERY = """
SELECT r.id AS run_id, rz.zone_id, r.started_at, r.completed_at,
       r.total_steps, r.completed_steps
FROM irrigation_runs r
JOIN irrigation_run_zones rz ON rz.run_id = r.id
WHERE r.site_id = :site_id
  AND r.status = 'Completed'
  AND r.started_at IS NOT NULL
  AND r.completed_at >= :since
"""


@dataclass
class _Reading:
    time: datetime
    value: float


def summarize_zone_response(
    zone_id: str,
    run_id: str,
    started_at: datetime,
    ended_at: Optional[datetime],
    vwc_readings: list[_Reading],
    flow_readings: list[_Reading],
    expected_vwc_increase: float,
    command_acknowledged: bool = True,
) -> Optional[ZoneIrrigationResponse]:
    """
    Reduce the readings around a run to a zone response.

    Returns None when the zone has no VWC reading before the run starts.
    """
    ended_at = ended_at or started_at
    before = [
        r for r in vwc_readings if started_at - PRE_RUN_LOOKBACK <= r.time < started_at
    ]
    if not before:
        return None
    vwc_before = max(before, key=lambda r: r.time).value

    after = [r for r in vwc_readings if started_at <= r.time <= ended_at + POST_RUN_SETTLE]
    peak = max(after, key=lambda r: r.value) if after else None

    during = [r for r in flow_readings if started_at <= r.time <= ended_at]
    # Zones without a flow meter cannot contradict the run
    flow_detected = any(r.value > 0 for r in during) if during else True

    return ZoneIrrigationResponse(
        zone_id=zone_id,
        run_id=run_id,
        vwc_before=vwc_before,
        vwc_after=peak.value if peak else vwc_before,
        expected_vwc_increase=expected_vwc_increase,
        time_to_peak_seconds=int((peak.time - started_at).total_seconds()) if peak else None,
        command_acknowledged=command_acknowledged,
        flow_detected=flow_detected,
    )


def build_zone_baselines(
    responses: Iterable[ZoneIrrigationResponse],
) -> dict[str, ZoneResponseBaseline]:
    """Aggregate historical zone responses into per-zone baselines."""
    by_zone: dict[str, list[ZoneIrrigationResponse]] = defaultdict(list)
    for response in responses:
        by_zone[response.zone_id].append(response)

    baselines = {}
    for zone_id, zone_responses in by_zone.items():
        peaks = [r.time_to_peak_seconds for r in zone_responses if r.time_to_peak_seconds is not None]
        before = [r.vwc_before for r in zone_responses]
        increases = [r.vwc_increase for r in zone_responses]
        baselines[zone_id] = ZoneResponseBaseline(
            zone_id=zone_id,
            mean_time_to_peak_seconds=sum(peaks) / len(peaks) if peaks else 0.0,
            mean_baseline_vwc=_mean(before),
            stddev_baseline_vwc=_stddev(before),
            mean_vwc_increase=_mean(increases),
            stddev_vwc_increase=_stddev(increases),
            historical_response_count=len(zone_responses),
        )
    return baselines


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _stddev(values: list[float]) -> float:
    if not values:
        return 0.0
    mean = _mean(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def _steps_acknowledged(total_steps: int, completed_steps: int) -> bool:
    return total_steps <= 0 or completed_steps >= total_steps


class SqlZoneResponseProvider(ZoneResponseProvider):
    """
    Derives zone responses from VWC and flow readings in the source store.

    A missing readings table is treated as "no data" with a warning, so the
    detector degrades to an empty result instead of failing.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        expected_vwc_increase: Optional[float] = None,
        baseline_days: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.expected_vwc_increase = (
            expected_vwc_increase
            if expected_vwc_increase is not None
            else settings.irrigation_expected_vwc_increase
        )
        self.baseline_days = baseline_days or settings.irrigation_baseline_days

    async def _query(self, query: str, params: dict) -> list:
        async with self.session_factory() as session:
            try:
                result = await session.execute(text(query), params)
                return result.mappings().all()
            except DBAPIError as e:
                if not is_schema_drift(e):
                    raise
                logger.warning(f"Irrigation response data unavailable, using defaults: {e.orig}")
                return []

    async def _readings(
        self, site_id: str, window_start: datetime, window_end: datetime
    ) -> tuple[dict[str, list[_Reading]], dict[str, list[_Reading]]]:
        rows = await self._query(
            FETCH_ZONE_READINGS_QUERY,
            {
                "site_id": site_id,
                "vwc_type": VWC_STREAM_TYPE,
                "flow_type": FLOW_RATE_STREAM_TYPE,
                "window_start": window_start,
                "window_end": window_end,
            },
        )
        vwc: dict[str, list[_Reading]] = defaultdict(list)
        flow: dict[str, list[_Reading]] = defaultdict(list)
        for row in rows:
            zone_id, time = as_id(row["zone_id"]), as_datetime(row["time"])
            value = as_float(row["value"])
            if zone_id is None or time is None or value is None:
                continue
            target = vwc if as_int(row["stream_type"]) == VWC_STREAM_TYPE else flow
            target[zone_id].append(_Reading(time, value))
        return vwc, flow

    async def get_zone_responses(
        self, site_id: str, run_id: str, run: IrrigationRunProperties
    ) -> list[ZoneIrrigationResponse]:
        if run.started_at is None or not run.target_zone_ids:
            return []

        ended_at = run.completed_at or run.started_at
        vwc, flow = await self._readings(
            site_id, run.started_at - PRE_RUN_LOOKBACK, ended_at + POST_RUN_SETTLE
        )
        acknowledged = _steps_acknowledged(run.total_steps, run.completed_steps)

        responses = []
        for zone_id in run.target_zone_ids:
            response = summarize_zone_response(
                zone_id,
                run_id,
                run.started_at,
                run.completed_at,
                vwc.get(zone_id, []),
                flow.get(zone_id, []),
                self.expected_vwc_increase,
                command_acknowledged=acknowledged,
            )
            if response is not None:
                responses.append(response)
        return responses

    async def get_zone_baselines(self, site_id: str) -> dict[str, ZoneResponseBaseline]:
        since = datetime.utcnow() - timedelta(days=self.baseline_days)
        runs = await self._query(FETCH_BASELINE_RUNS_QUERY, {"site_id": site_id, "since": since})
        if not runs:
            return {}

        vwc, flow = await self._readings(
            site_id, since - PRE_RUN_LOOKBACK, datetime.utcnow() + POST_RUN_SETTLE
        )
        responses = []
        for row in runs:
            zone_id, started_at = as_id(row["zone_id"]), as_datetime(row["started_at"])
            if zone_id is None or started_at is None:
                continue
            response = summarize_zone_response(
                zone_id,
                as_id(row["run_id"]),
                started_at,
                as_datetime(row["completed_at"]),
                vwc.get(zone_id, []),
                flow.get(zone_id, []),
                self.expected_vwc_increase,
                command_acknowledged=_steps_acknowledged(
                    as_int(row["total_steps"], 0), as_int(row["completed_steps"], 0)
                ),
            )
            if response is not None:
                responses.append(response)

        baselines = build_zone_baselines(responses)
        logger.debug(f"Built irrigation baselines for {len(baselines)} zones at site {site_id}")
        return baselines


# =============================================================================
# Detector
# =============================================================================


class IrrigationAnomalyDetector:
    """
    Scores completed irrigation runs zone by zone.

    Batch detection emits one result per anomalous zone; scoring a single
    run reports the worst zone with features namespaced by zone id.
    """

    MODEL_VERSION = "irrigation-anomaly-v1.0"
    ANOMALY_TYPE = "irrigation_response"

    FEATURE_WEIGHTS = {
        "response_ratio": 0.30,
        "time_to_peak": 0.15,
        "neighbor_consistency": 0.15,
        "command_execution": 0.15,
        "sensor_drift": 0.10,
        "pattern_deviation": 0.15,
    }

    MIN_PATTERN_HISTORY = 10

    def __init__(
        self,
        store: GraphStore,
        response_provider: ZoneResponseProvider,
        threshold: Optional[float] = None,
    ):
        self.store = store
        self.response_provider = response_provider
        self.threshold = threshold if threshold is not None else settings.irrigation_anomaly_threshold

    async def detect_anomalies(
        self, site_id: str, since: Optional[datetime] = None
    ) -> list[AnomalyResult]:
        """Score completed runs and return one result per anomalous zone."""
        results, _ = await self.scan(site_id, since)
        return results

    async def scan(
        self, site_id: str, since: Optional[datetime] = None
    ) -> tuple[list[AnomalyResult], int]:
        """
        Score every completed irrigation run of a site.

        Args:
            site_id: Site to scan
            since: Only score runs created at or after this time

        Returns:
            (per-zone results at or above threshold, number of runs scored)
        """
        nodes = await self.store.get_nodes_by_type(site_id, NodeType.IRRIGATION_RUN)
        if not nodes:
            logger.debug(f"No irrigation run nodes found for site {site_id}")
            return [], 0

        if since is not None:
            nodes = [n for n in nodes if n.source_created_at >= since]

        baselines = await self.response_provider.get_zone_baselines(site_id)

        results = []
        scored = 0
        for node in nodes:
            props = load_properties(node, IrrigationRunProperties)
            if props is None or props.status != "Completed":
                continue
            scored += 1

            responses = await self.response_provider.get_zone_responses(
                site_id, node.source_entity_id, props
            )
            worst: Optional[AnomalyResult] = None
            for response in responses:
                score, features = self.score_response(response, baselines.get(response.zone_id))
                if score >= self.threshold:
                    result = self._result(node, score, self.explain(response, features), features)
                    results.append(result)
                    if worst is None or result.score > worst.score:
                        worst = result

            # The run node carries its worst zone
            if worst is not None:
                await self.store.set_anomaly_score(node.node_id, worst.score, worst.explanation)

        logger.info(
            f"Detected {len(results)} irrigation anomalies in {scored} runs for site {site_id}"
        )
        return results, scored

    async def score_irrigation_run(self, run_id: str) -> AnomalyResult:
        """
        Score a single run regardless of threshold.

        Raises:
            NodeNotFoundError: if the run is not in the graph
        """
        node_id = format_node_id(NodeType.IRRIGATION_RUN, run_id)
        node = await self.store.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id, f"Irrigation run node not found: {run_id}")

        props = load_properties(node, IrrigationRunProperties)
        if props is None:
            return self._no_data_result(node)

        responses = await self.response_provider.get_zone_responses(
            node.site_id, node.source_entity_id, props
        )
        if not responses:
            return self._no_data_result(node)

        baselines = await self.response_provider.get_zone_baselines(node.site_id)
        aggregate_score = 0.0
        aggregate_features: dict[str, float] = {}
        for response in responses:
            score, features = self.score_response(response, baselines.get(response.zone_id))
            aggregate_score = max(aggregate_score, score)
            for name, value in features.items():
                aggregate_features[f"{response.zone_id}_{name}"] = value

        return self._result(
            node,
            aggregate_score,
            self.explain_aggregate(responses, aggregate_score),
            aggregate_features,
        )

    def score_response(
        self, response: ZoneIrrigationResponse, baseline: Optional[ZoneResponseBaseline]
    ) -> tuple[float, dict[str, float]]:
        """Score one zone response. Returns (composite score, feature scores)."""
        features = {
            "response_ratio": self._score_response_ratio(response),
            "time_to_peak": self._score_time_to_peak(response, baseline),
            # Needs neighbor zone layout, which the graph does not carry yet
            "neighbor_consistency": 0.0,
            "command_execution": self._score_command_execution(response),
            "sensor_drift": self._score_sensor_drift(response, baseline),
            "pattern_deviation": self._score_pattern_deviation(response, baseline),
        }
        total = sum(value * self.FEATURE_WEIGHTS[name] for name, value in features.items())
        return min(max(total, 0.0), 1.0), features

    def _score_response_ratio(self, response: ZoneIrrigationResponse) -> float:
        if response.expected_vwc_increase <= 0:
            return 0.0

        ratio = response.vwc_increase / response.expected_vwc_increase
        if ratio < 0.3:
            return 0.9
        elif ratio < 0.5:
            return 0.7
        elif ratio < 0.7:
            return 0.4
        elif ratio > 2.0:
            return 0.6
        elif ratio > 1.5:
            return 0.3
        return 0.0

    def _score_time_to_peak(
        self, response: ZoneIrrigationResponse, baseline: Optional[ZoneResponseBaseline]
    ) -> float:
        if response.time_to_peak_seconds is None or baseline is None:
            return 0.0
        expected = baseline.mean_time_to_peak_seconds
        if expected <= 0:
            return 0.0

        deviation = abs(response.time_to_peak_seconds - expected) / expected
        if deviation > 3:
            return 0.8
        if deviation > 2:
            return 0.5
        if deviation > 1:
            return 0.3
        return 0.0

    def _score_command_execution(self, response: ZoneIrrigationResponse) -> float:
        if not response.command_acknowledged:
            return 0.7
        if not response.flow_detected:
            return 0.8
        return 0.0

    def _score_sensor_drift(
        self, response: ZoneIrrigationResponse, baseline: Optional[ZoneResponseBaseline]
    ) -> float:
        if baseline is None:
            return 0.0

        deviation = abs(response.vwc_before - baseline.mean_baseline_vwc)
        stddev = baseline.stddev_baseline_vwc
        if deviation > stddev * 2:
            return 0.7
        elif deviation > stddev:
            return 0.3
        return 0.0

    def _score_pattern_deviation(
        self, response: ZoneIrrigationResponse, baseline: Optional[ZoneResponseBaseline]
    ) -> float:
        if baseline is None or baseline.historical_response_count < self.MIN_PATTERN_HISTORY:
            return 0.0
        if baseline.stddev_vwc_increase <= 0:
            return 0.0

        z_score = abs(response.vwc_increase - baseline.mean_vwc_increase) / baseline.stddev_vwc_increase
        if z_score > 3:
            return 0.8
        if z_score > 2:
            return 0.5
        if z_score > 1.5:
            return 0.2
        return 0.0

    def explain(self, response: ZoneIrrigationResponse, features: dict[str, float]) -> str:
        issues = []
        if features.get("response_ratio", 0.0) > 0.5:
            issues.append(
                f"VWC response {response.vwc_increase:.1f}% vs expected "
                f"{response.expected_vwc_increase:.1f}%"
            )
        if features.get("command_execution", 0.0) > 0.5:
            issues.append("Irrigation command may not have executed properly")
        if features.get("sensor_drift", 0.0) > 0.5:
            issues.append("Possible sensor calibration issue")

        if not issues:
            return "Irrigation response anomaly detected"
        return "; ".join(issues)

    def explain_aggregate(self, responses: list[ZoneIrrigationResponse], score: float) -> str:
        unresponsive = sum(1 for r in responses if r.vwc_after <= r.vwc_before)
        if unresponsive:
            return f"{unresponsive} of {len(responses)} zones showed no VWC response to irrigation"
        return f"Irrigation response anomaly detected (score: {score:.2f})"

    def _result(
        self, node: GraphNode, score: float, explanation: str, features: dict[str, float]
    ) -> AnomalyResult:
        return AnomalyResult(
            site_id=node.site_id,
            node_id=node.node_id,
            node_type=NodeType.IRRIGATION_RUN,
            anomaly_type=self.ANOMALY_TYPE,
            score=score,
            explanation=explanation,
            model_version=self.MODEL_VERSION,
            feature_attributions=features,
        )

    def _no_data_result(self, node: GraphNode) -> AnomalyResult:
        return self._result(node, 0.0, "Insufficient data for anomaly detection", {})
