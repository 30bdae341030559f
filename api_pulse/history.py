from __future__ import annotations

from bisect import bisect_left
from collections import Counter
from datetime import datetime, timezone
from typing import Iterable

from api_pulse.models import CheckResult, CheckStatus


RATE_LIMIT_STATUS = 429


def window_results(items: list[CheckResult], *, since_ts: float) -> list[CheckResult]:
    """
    Results at or after ``since_ts``. Accepts either ordering and returns the
    window most-recent-first.
    """
    if not items:
        return []
    ordered = sorted(items, key=lambda r: float(r.timestamp_ts))
    idx = bisect_left([float(r.timestamp_ts) for r in ordered], float(since_ts))
    return list(reversed(ordered[idx:]))


def compute_availability(items: list[CheckResult]) -> tuple[int, int, float | None]:
    """
    Returns (total, ok_count, ok_percent_or_None_if_total_0)
    """
    total = len(items)
    if total <= 0:
        return 0, 0, None
    ok_count = sum(1 for r in items if r.ok)
    return total, ok_count, (ok_count / float(total)) * 100.0


def compute_error_rate_percent(items: list[CheckResult]) -> float | None:
    total, ok_count, _ok_pct = compute_availability(items)
    if total <= 0:
        return None
    return ((total - ok_count) / float(total)) * 100.0


def compute_uptime_percent(items: list[CheckResult]) -> float | None:
    return compute_availability(items)[2]


def compute_rate_limit_percent(items: list[CheckResult]) -> float | None:
    total = len(items)
    if total <= 0:
        return None
    limited = sum(1 for r in items if r.http_status == RATE_LIMIT_STATUS)
    return (limited / float(total)) * 100.0


def average_latency_ms(items: Iterable[CheckResult]) -> float | None:
    values = [float(r.latency_ms) for r in items]
    if not values:
        return None
    return sum(values) / float(len(values))


def _percentile(sorted_values: list[float], p: float) -> float | None:
    if not sorted_values:
        return None
    p = float(p)
    if p <= 0:
        return float(sorted_values[0])
    if p >= 100:
        return float(sorted_values[-1])
    # Nearest-rank method.
    k = int(round((p / 100.0) * (len(sorted_values) - 1)))
    k = max(0, min(k, len(sorted_values) - 1))
    return float(sorted_values[k])


def latency_percentile_ms(items: Iterable[CheckResult], *, percentile: float) -> float | None:
    values = sorted(float(r.latency_ms) for r in items)
    return _percentile(values, percentile)


def status_counts(items: Iterable[CheckResult]) -> dict[str, int]:
    counts = Counter(r.status.value for r in items)
    return {s.value: int(counts.get(s.value, 0)) for s in CheckStatus}


def recent_failures(items: list[CheckResult], *, limit: int = 10) -> list[CheckResult]:
    newest_first = sorted(items, key=lambda r: float(r.timestamp_ts), reverse=True)
    return [r for r in newest_first if not r.ok][: max(0, int(limit))]


def daily_uptime(items: Iterable[CheckResult]) -> list[dict[str, object]]:
    """
    Uptime per UTC calendar day, oldest day first.
    """
    buckets: dict[str, list[int]] = {}
    for r in items:
        day = datetime.fromtimestamp(float(r.timestamp_ts), tz=timezone.utc).strftime("%Y-%m-%d")
        b = buckets.setdefault(day, [0, 0])
        b[0] += 1
        if r.ok:
            b[1] += 1
    out: list[dict[str, object]] = []
    for day in sorted(buckets):
        total, ok = buckets[day]
        out.append({"date": day, "total": total, "successful": ok, "uptime": (ok / float(total)) * 100.0})
    return out


def monitor_stats(items: list[CheckResult], *, now_ts: float, days: int = 7) -> dict[str, object]:
    """
    Snapshot for a single monitor over the trailing ``days``.
    """
    window = window_results(items, since_ts=float(now_ts) - days * 86400.0)
    total, ok_count, ok_pct = compute_availability(window)
    return {
        "total_checks": total,
        "successful_checks": ok_count,
        "success_rate": ok_pct if ok_pct is not None else 0.0,
        "average_latency_ms": average_latency_ms(window) or 0.0,
        "p95_latency_ms": latency_percentile_ms(window, percentile=95),
        "status_counts": status_counts(window),
        "recent_failures": [r.to_dict() for r in recent_failures(window, limit=10)],
        "daily_uptime": daily_uptime(window),
    }
