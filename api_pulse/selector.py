from __future__ import annotations

import math
from typing import Iterable

from api_pulse.models import MonitorWithConnection


def is_due(item: MonitorWithConnection, *, now_ts: float) -> bool:
    if not item.connection.is_active or not item.monitor.is_active:
        return False
    last = item.monitor.last_executed_at_ts
    if last is None:
        return True
    # Whole-second arithmetic so sub-second jitter between ticks cannot skip a run.
    elapsed = math.floor(float(now_ts)) - math.floor(float(last))
    return elapsed >= int(item.monitor.interval_seconds)


def select_due(monitors: Iterable[MonitorWithConnection], *, now_ts: float) -> list[MonitorWithConnection]:
    """
    Pure filter over the active population. Calling it more often than the
    smallest interval never produces duplicate work; the conditional stamp in
    the store guards the remaining races.
    """
    return [m for m in monitors if is_due(m, now_ts=now_ts)]
