from __future__ import annotations

import asyncio
import time
import uuid
from typing import TYPE_CHECKING, Any, Callable

import structlog

from api_pulse import db
from api_pulse.models import CheckResult, CheckStatus, ExecutionSummary, MonitorWithConnection
from api_pulse.probe import ProbeExecutor
from api_pulse.selector import select_due
from api_pulse.settings import Settings

if TYPE_CHECKING:
    from api_pulse.alerts import AlertEvaluator


logger = structlog.get_logger(__name__)


class SchedulingEngine:
    """
    One invocation of ``run_due_cycle`` reads the active population, probes
    what is due with bounded concurrency and persists every outcome.
    """

    def __init__(
        self,
        settings: Settings,
        executor: ProbeExecutor,
        *,
        evaluator: "AlertEvaluator | None" = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.executor = executor
        self.evaluator = evaluator
        self._clock = clock

    async def run_due_cycle(self, now: float | None = None) -> ExecutionSummary:
        now_ts = float(now if now is not None else self._clock())

        # StorageError propagates: without the population nothing can be judged.
        population = await asyncio.to_thread(db.list_active_monitors, self.settings)
        total_active = sum(1 for m in population if m.connection.is_active)
        due = select_due(population, now_ts=now_ts)

        if not due:
            logger.info("cycle_nothing_due", total_active=total_active)
            return ExecutionSummary(executed=0, successful=0, failed=0, total_active=total_active, timestamp_ts=now_ts)

        sem = asyncio.Semaphore(max(1, int(self.settings.max_concurrency)))

        async def _guarded(item: MonitorWithConnection) -> CheckResult | None:
            async with sem:
                return await self._run_one(item)

        outcomes = await asyncio.gather(*(_guarded(m) for m in due), return_exceptions=True)

        executed = 0
        successful = 0
        failed = 0
        touched: set[str] = set()
        for item, outcome in zip(due, outcomes):
            if outcome is None:
                # Deactivated between selection and execution.
                continue
            executed += 1
            touched.add(item.connection.id)
            if isinstance(outcome, BaseException):
                failed += 1
                logger.error(
                    "monitor_task_crashed",
                    monitor_id=item.id,
                    error=f"{type(outcome).__name__}: {outcome}",
                )
                continue
            if outcome.ok:
                successful += 1
            else:
                failed += 1

        summary = ExecutionSummary(
            executed=executed,
            successful=successful,
            failed=failed,
            total_active=total_active,
            timestamp_ts=now_ts,
        )
        logger.info("cycle_complete", **summary.to_dict())

        if self.evaluator is not None and self.settings.evaluate_alerts_after_cycle and touched:
            try:
                await self.evaluator.evaluate(now=self._clock(), connection_ids=sorted(touched))
            except Exception as e:
                logger.error("alert_evaluation_failed", error=f"{type(e).__name__}: {e}")

        return summary

    async def _run_one(self, item: MonitorWithConnection) -> CheckResult | None:
        started_ts = float(self._clock())
        log = logger.bind(monitor_id=item.id, connection_id=item.connection.id)

        if not await asyncio.to_thread(db.is_monitor_runnable, self.settings, item.id):
            log.info("monitor_skipped_inactive")
            return None

        try:
            result = await self.executor.execute(item.monitor, item.connection)
        except Exception as e:
            log.exception("probe_raised")
            result = CheckResult(
                id=str(uuid.uuid4()),
                monitor_id=item.id,
                status=CheckStatus.ERROR,
                latency_ms=1.0,
                timestamp_ts=started_ts,
                error_detail=f"{type(e).__name__}: {e}"[:2000],
                metadata={"error_type": type(e).__name__},
            )

        try:
            await asyncio.to_thread(db.insert_check_result, self.settings, result)
        except Exception:
            # The stamp still moves so a broken monitor is not retried every tick.
            await self._stamp_after_failed_insert(item.id, started_ts, log)
            raise
        await asyncio.to_thread(db.stamp_last_executed, self.settings, monitor_id=item.id, executed_at_ts=started_ts)

        log.info(
            "monitor_checked",
            status=result.status.value,
            http_status=result.http_status,
            latency_ms=result.latency_ms,
        )
        return result

    async def _stamp_after_failed_insert(self, monitor_id: str, started_ts: float, log: Any) -> None:
        try:
            await asyncio.to_thread(
                db.stamp_last_executed,
                self.settings,
                monitor_id=monitor_id,
                executed_at_ts=started_ts,
            )
        except Exception as e:
            log.error("stamp_after_failed_insert_error", error=f"{type(e).__name__}: {e}")
