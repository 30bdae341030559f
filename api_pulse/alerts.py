"""Alert evaluation.

Each alert cycles ARMED -> FIRED -> (cooldown) -> ARMED. The transition to
FIRED is a single conditional UPDATE in the store, so concurrent evaluators
observing the same window produce one history entry and one notification.
"""

from __future__ import annotations

import asyncio
import operator as op
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable

import structlog

from api_pulse import db
from api_pulse.history import (
    average_latency_ms,
    compute_error_rate_percent,
    compute_rate_limit_percent,
    compute_uptime_percent,
)
from api_pulse.models import Alert, CheckResult
from api_pulse.settings import Settings

if TYPE_CHECKING:
    from api_pulse.notify import Notifier


logger = structlog.get_logger(__name__)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": op.gt,
    ">=": op.ge,
    "<": op.lt,
    "<=": op.le,
    "==": op.eq,
    "!=": op.ne,
}

# metric_key -> fn(alert, window results) returning the signal or None when unavailable.
SignalProvider = Callable[[Alert, list[CheckResult]], "float | None"]


@dataclass(frozen=True)
class AlertOutcome:
    alert_id: str
    state: str  # fired|cooldown|armed|skipped|error
    value: float | None = None
    history_id: str | None = None
    detail: str | None = None


def compute_metric(
    alert: Alert,
    results: list[CheckResult],
    signals: dict[str, SignalProvider] | None = None,
) -> float | None:
    if not results:
        return None
    cond = alert.condition
    if cond == "error_rate":
        return compute_error_rate_percent(results)
    if cond == "response_time":
        return average_latency_ms(results)
    if cond == "uptime":
        return compute_uptime_percent(results)
    if cond == "rate_limit":
        provider = (signals or {}).get(alert.metric_key or "")
        if provider is not None:
            return provider(alert, results)
        return compute_rate_limit_percent(results)
    if cond == "custom_metric":
        provider = (signals or {}).get(alert.metric_key or "")
        if provider is None:
            return None
        return provider(alert, results)
    return None


def compare(value: float, operator: str, threshold: float) -> bool:
    fn = OPERATORS.get(str(operator))
    if fn is None:
        raise ValueError(f"unsupported operator: {operator}")
    return bool(fn(float(value), float(threshold)))


def build_history_message(alert: Alert, value: float) -> str:
    return (
        f"Alert '{alert.name}': {alert.condition} is {value:.2f}{alert.unit} "
        f"({alert.operator} {alert.threshold:g}{alert.unit}) over the last {alert.time_window_minutes}m"
    )


class AlertEvaluator:
    def __init__(
        self,
        settings: Settings,
        *,
        notifier: "Notifier | None" = None,
        signals: dict[str, SignalProvider] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.notifier = notifier
        self.signals = dict(signals or {})
        self._clock = clock

    async def evaluate(
        self,
        now: float | None = None,
        connection_ids: Iterable[str] | None = None,
    ) -> list[AlertOutcome]:
        now_ts = float(now if now is not None else self._clock())
        ids = list(connection_ids) if connection_ids is not None else None
        alerts = await asyncio.to_thread(db.list_active_alerts, self.settings, connection_ids=ids)

        outcomes: list[AlertOutcome] = []
        for alert in alerts:
            try:
                outcomes.append(await self._evaluate_one(alert, now_ts))
            except Exception as e:
                logger.error("alert_evaluation_error", alert_id=alert.id, error=f"{type(e).__name__}: {e}")
                outcomes.append(AlertOutcome(alert_id=alert.id, state="error", detail=f"{type(e).__name__}: {e}"))

        fired = sum(1 for o in outcomes if o.state == "fired")
        logger.info("alerts_evaluated", total=len(outcomes), fired=fired)
        return outcomes

    async def _window(self, alert: Alert, now_ts: float) -> list[CheckResult]:
        since = now_ts - alert.window_seconds
        if alert.connection_id:
            return await asyncio.to_thread(
                db.results_since, self.settings, since_ts=since, connection_id=alert.connection_id
            )
        return await asyncio.to_thread(db.results_since, self.settings, since_ts=since, user_id=alert.user_id)

    async def _evaluate_one(self, alert: Alert, now_ts: float) -> AlertOutcome:
        results = await self._window(alert, now_ts)
        if not results:
            return AlertOutcome(alert_id=alert.id, state="skipped", detail="no_data")

        value = compute_metric(alert, results, self.signals)
        if value is None:
            return AlertOutcome(alert_id=alert.id, state="skipped", detail="metric_unavailable")

        if not compare(value, alert.operator, alert.threshold):
            resolved = await asyncio.to_thread(
                db.resolve_open_history, self.settings, alert_id=alert.id, resolved_at_ts=now_ts
            )
            if resolved:
                logger.info("alert_resolved", alert_id=alert.id, entries=resolved, value=value)
            return AlertOutcome(alert_id=alert.id, state="armed", value=value)

        entry = await asyncio.to_thread(
            db.fire_alert,
            self.settings,
            alert_id=alert.id,
            now_ts=now_ts,
            cooldown_seconds=alert.cooldown_seconds,
            message=build_history_message(alert, value),
            severity=alert.severity.value,
            value=value,
        )
        if entry is None:
            return AlertOutcome(alert_id=alert.id, state="cooldown", value=value)

        logger.warning("alert_fired", alert_id=alert.id, condition=alert.condition, value=value, severity=alert.severity.value)

        if self.notifier is not None and alert.channels:
            try:
                await self.notifier.notify(alert, entry)
            except Exception as e:
                logger.error("alert_notify_error", alert_id=alert.id, error=f"{type(e).__name__}: {e}")

        return AlertOutcome(alert_id=alert.id, state="fired", value=value, history_id=entry.id)
