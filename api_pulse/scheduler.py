"""APScheduler jobs that provide the external tick for the engine."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from api_pulse import db
from api_pulse.costs import CostAggregator
from api_pulse.engine import SchedulingEngine
from api_pulse.settings import Settings


logger = structlog.get_logger(__name__)

CYCLE_JOB_ID = "run_due_cycle"
COST_JOB_ID = "sync_costs"
RETENTION_JOB_ID = "prune_results"


class JobScheduler:
    """Manages the recurring engine jobs on an AsyncIOScheduler."""

    def __init__(self, settings: Settings, scheduler: AsyncIOScheduler | None = None) -> None:
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.jobs: dict[str, dict[str, Any]] = {}
        self.running = False

    def start(self) -> None:
        if self.running:
            logger.warning("scheduler_already_running")
            return
        self.scheduler.start()
        self.running = True
        logger.info("scheduler_started", jobs=sorted(self.jobs))

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("scheduler_stopped")

    def _add(self, job_id: str, func: Callable, trigger: Any, *, kind: str, description: str | None) -> None:
        if job_id in self.jobs:
            logger.warning("job_replaced", job_id=job_id)
            self.remove_job(job_id)
        # A slow cycle must not overlap the next one; missed ticks coalesce into one run.
        job = self.scheduler.add_job(
            func=func,
            trigger=trigger,
            id=job_id,
            name=description or job_id,
            max_instances=1,
            coalesce=True,
        )
        self.jobs[job_id] = {
            "job": job,
            "type": kind,
            "description": description,
            "added_at": datetime.now(timezone.utc),
        }
        logger.info("job_added", job_id=job_id, type=kind, description=description)

    def add_interval_job(self, job_id: str, func: Callable, seconds: int, *, description: str | None = None) -> None:
        self._add(job_id, func, IntervalTrigger(seconds=int(seconds)), kind="interval", description=description)

    def add_cron_job(self, job_id: str, func: Callable, cron_expression: str, *, description: str | None = None) -> None:
        # Format: "minute hour day month day_of_week"
        parts = cron_expression.split()
        if len(parts) != 5:
            raise ValueError(f"Invalid cron expression: {cron_expression}")
        trigger = CronTrigger(
            minute=parts[0],
            hour=parts[1],
            day=parts[2],
            month=parts[3],
            day_of_week=parts[4],
            timezone="UTC",
        )
        self._add(job_id, func, trigger, kind="cron", description=description)

    def remove_job(self, job_id: str) -> bool:
        if job_id not in self.jobs:
            return False
        self.scheduler.remove_job(job_id)
        del self.jobs[job_id]
        logger.info("job_removed", job_id=job_id)
        return True

    def list_jobs(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for job_id, info in self.jobs.items():
            job = self.scheduler.get_job(job_id)
            if job is None:
                continue
            next_run = getattr(job, "next_run_time", None)
            out.append(
                {
                    "job_id": job_id,
                    "name": job.name,
                    "type": info["type"],
                    "next_run": next_run.isoformat() if next_run else None,
                    "added_at": info["added_at"].isoformat(),
                    "description": info.get("description"),
                }
            )
        return out


def register_engine_jobs(
    jobs: JobScheduler,
    *,
    engine: SchedulingEngine,
    costs: CostAggregator | None = None,
) -> None:
    settings = jobs.settings

    async def _cycle() -> None:
        try:
            await engine.run_due_cycle()
        except Exception as e:
            # Next tick retries; the scheduler itself must keep running.
            logger.error("cycle_failed", error=f"{type(e).__name__}: {e}")

    async def _prune() -> None:
        cutoff = time.time() - float(settings.retention_days) * 86400.0
        try:
            removed = await asyncio.to_thread(db.prune_check_results, settings, before_ts=cutoff)
        except Exception as e:
            logger.error("prune_failed", error=f"{type(e).__name__}: {e}")
            return
        logger.info("prune_complete", removed=removed, retention_days=settings.retention_days)

    jobs.add_interval_job(CYCLE_JOB_ID, _cycle, settings.tick_seconds, description="Probe due monitors")
    jobs.add_cron_job(RETENTION_JOB_ID, _prune, "30 4 * * *", description="Prune old check results")

    if costs is not None:

        async def _costs() -> None:
            try:
                await costs.sync_all()
            except Exception as e:
                logger.error("cost_sync_job_failed", error=f"{type(e).__name__}: {e}")

        jobs.add_cron_job(
            COST_JOB_ID,
            _costs,
            f"0 {int(settings.cost_sync_hour)} * * *",
            description="Reconcile provider costs",
        )
