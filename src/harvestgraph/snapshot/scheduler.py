"""
Background snapshot scheduler.

Drives two independent periodic loops over all active sites:
- Full snapshot loop (default every 24 hours)
- Incremental check loop (default every 15 minutes), a safety net for
  change events that never arrived

Sites are processed one at a time; a failing site is logged and skipped.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvestgraph.config import Settings, settings as default_settings
from harvestgraph.snapshot.orchestrator import (
    INCREMENTAL_NODE_TYPES,
    GraphSnapshotOrchestrator,
    GraphUpdate,
    SnapshotResult,
)

logger = logging.getLogger(__name__)


FETCH_ACTIVE_SITES_QUERY = """
SELECT site_id
FROM sites
WHERE is_active = TRUE
ORDER BY site_id;
"""


# =============================================================================
# Site discovery
# =============================================================================


class ActiveSiteProvider(ABC):
    """Source of the sites the scheduler should snapshot."""

    @abstractmethod
    async def get_active_site_ids(self) -> list[str]:
        """Get the ids of all active sites."""


class SqlActiveSiteProvider(ActiveSiteProvider):
    """Reads active sites from the operational ``sites`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_active_site_ids(self) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(text(FETCH_ACTIVE_SITES_QUERY))
            return [str(row.site_id).lower() for row in result.fetchall()]


class StaticSiteProvider(ActiveSiteProvider):
    """Fixed list of sites, for development and single-site deployments."""

    def __init__(self, site_ids: list[str]):
        self.site_ids = list(site_ids)

    async def get_active_site_ids(self) -> list[str]:
        return list(self.site_ids)


# =============================================================================
# Scheduler
# =============================================================================


@dataclass
class SchedulerOptions:
    """Timing options for the background loops."""

    startup_delay_minutes: float = 2.0
    run_full_snapshot_on_startup: bool = True
    full_snapshot_interval_hours: float = 24.0
    incremental_interval_minutes: float = 15.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SchedulerOptions":
        settings = settings or default_settings
        return cls(
            startup_delay_minutes=settings.graph_startup_delay_minutes,
            run_full_snapshot_on_startup=settings.graph_run_full_snapshot_on_startup,
            full_snapshot_interval_hours=settings.graph_full_snapshot_interval_hours,
            incremental_interval_minutes=settings.graph_incremental_interval_minutes,
        )


@dataclass
class SchedulerJob:
    """One pass of a loop over all active sites."""

    id: UUID
    job_type: str
    status: str = "pending"  # pending, running, completed, failed
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sites_processed: int = 0
    sites_failed: int = 0
    errors: list[str] = field(default_factory=list)
    results: list[SnapshotResult] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get job duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class GraphSnapshotScheduler:
    """
    Run full and incremental snapshots in the background.

    Incremental passes use a per-site watermark: the start time of the last
    successful pass (full or incremental) for that site.
    """

    def __init__(
        self,
        orchestrator: GraphSnapshotOrchestrator,
        site_provider: ActiveSiteProvider,
        options: Optional[SchedulerOptions] = None,
        history_size: int = 100,
    ):
        self.orchestrator = orchestrator
        self.site_provider = site_provider
        self.options = options or SchedulerOptions.from_settings()
        self.history_size = history_size

        self._jobs: dict[UUID, SchedulerJob] = {}
        self._watermarks: dict[str, datetime] = {}
        self._tasks: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        """Launch the background loops on the running event loop."""
        if self.is_running:
            logger.warning("Snapshot scheduler already running")
            return
        logger.info(
            f"Starting snapshot scheduler: full every {self.options.full_snapshot_interval_hours}h, "
            f"incremental every {self.options.incremental_interval_minutes}m"
        )
        self._tasks = [asyncio.create_task(self._run(), name="graph-snapshot-scheduler")]

    async def stop(self) -> None:
        """Cancel the loops and wait for them to finish."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Snapshot scheduler stopped")

    async def _run(self) -> None:
        await asyncio.sleep(self.options.startup_delay_minutes * 60)
        if self.options.run_full_snapshot_on_startup:
            await self._safe_pass(self.run_full_pass)

        loops = [
            asyncio.create_task(self._full_loop(), name="graph-full-snapshot-loop"),
            asyncio.create_task(self._incremental_loop(), name="graph-incremental-loop"),
        ]
        self._tasks.extend(loops)
        await asyncio.gather(*loops)

    async def _full_loop(self) -> None:
        interval = self.options.full_snapshot_interval_hours * 3600
        while True:
            await asyncio.sleep(interval)
            await self._safe_pass(self.run_full_pass)

    async def _incremental_loop(self) -> None:
        interval = self.options.incremental_interval_minutes * 60
        while True:
            await asyncio.sleep(interval)
            await self._safe_pass(self.run_incremental_pass)

    async def _safe_pass(self, run_pass) -> None:
        try:
            await run_pass()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Snapshot pass failed: {e}")

    async def run_full_pass(self) -> SchedulerJob:
        """Run a full snapshot for every active site, one site at a time."""
        return await self._run_pass("full", self._full_snapshot_for_site)

    async def run_incremental_pass(self) -> SchedulerJob:
        """Run an incremental check for every active site, one site at a time."""
        return await self._run_pass("incremental", self._incremental_for_site)

    async def _run_pass(self, job_type: str, run_site) -> SchedulerJob:
        job = SchedulerJob(
            id=uuid4(),
            job_type=job_type,
            status="running",
            started_at=datetime.utcnow(),
        )
        self._record_job(job)

        try:
            site_ids = await self.site_provider.get_active_site_ids()
        except Exception as e:
            job.status = "failed"
            job.errors.append(f"site discovery: {e}")
            job.completed_at = datetime.utcnow()
            logger.error(f"{job_type.capitalize()} pass {job.id} could not list sites: {e}")
            raise

        logger.info(f"Starting {job_type} pass {job.id} over {len(site_ids)} sites")

        for site_id in site_ids:
            try:
                result = await run_site(site_id)
                job.results.append(result)
                if not result.success:
                    raise RuntimeError(result.error_message or "snapshot failed")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                job.sites_failed += 1
                job.errors.append(f"{site_id}: {e}")
                logger.error(f"{job_type.capitalize()} snapshot failed for site {site_id}: {e}")
            job.sites_processed += 1

        job.status = "completed"
        job.completed_at = datetime.utcnow()
        logger.info(
            f"{job_type.capitalize()} pass {job.id} completed in {job.duration_seconds:.1f}s: "
            f"{job.sites_processed} sites, {job.sites_failed} failed"
        )
        return job

    async def _full_snapshot_for_site(self, site_id: str) -> SnapshotResult:
        started_at = datetime.utcnow()
        result = await self.orchestrator.build_full_snapshot(site_id)
        if result.success:
            self._watermarks[site_id] = started_at
        return result

    async def _incremental_for_site(self, site_id: str) -> SnapshotResult:
        started_at = datetime.utcnow()
        since = self._watermarks.get(site_id) or (
            started_at - timedelta(minutes=self.options.incremental_interval_minutes)
        )
        updates = [GraphUpdate(node_type=t, occurred_at=since) for t in INCREMENTAL_NODE_TYPES]
        result = await self.orchestrator.apply_incremental_updates(site_id, updates)
        if result.success:
            self._watermarks[site_id] = started_at
        return result

    def get_watermark(self, site_id: str) -> Optional[datetime]:
        return self._watermarks.get(site_id)

    def _record_job(self, job: SchedulerJob) -> None:
        self._jobs[job.id] = job
        if len(self._jobs) > self.history_size:
            oldest = min(self._jobs.values(), key=lambda j: j.started_at or datetime.min)
            del self._jobs[oldest.id]

    def get_job(self, job_id: UUID) -> Optional[SchedulerJob]:
        """Get a job by ID."""
        return self._jobs.get(job_id)

    def get_recent_jobs(self, limit: int = 10) -> list[SchedulerJob]:
        """Get recent jobs sorted by start time."""
        jobs = list(self._jobs.values())
        jobs.sort(
            key=lambda j: j.started_at or datetime.min,
            reverse=True,
        )
        return jobs[:limit]

    def get_stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        jobs = list(self._jobs.values())
        completed = [j for j in jobs if j.status == "completed"]
        failed = [j for j in jobs if j.status == "failed"]

        avg_duration = 0.0
        if completed:
            durations = [j.duration_seconds for j in completed if j.duration_seconds]
            avg_duration = sum(durations) / len(durations) if durations else 0

        return {
            "running": self.is_running,
            "total_jobs": len(jobs),
            "completed_jobs": len(completed),
            "failed_jobs": len(failed),
            "site_failures": sum(j.sites_failed for j in jobs),
            "tracked_sites": len(self._watermarks),
            "average_duration_seconds": round(avg_duration, 1),
        }
