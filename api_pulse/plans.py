from __future__ import annotations

from dataclasses import dataclass

from api_pulse.errors import ValidationError


@dataclass(frozen=True)
class PlanLimits:
    name: str
    min_interval_seconds: int
    max_monitors: int
    max_connections: int


PLAN_LIMITS: dict[str, PlanLimits] = {
    "HOBBY": PlanLimits(name="Hobby", min_interval_seconds=300, max_monitors=5, max_connections=3),
    "STARTUP": PlanLimits(name="Startup", min_interval_seconds=60, max_monitors=25, max_connections=10),
    "BUSINESS": PlanLimits(name="Business", min_interval_seconds=30, max_monitors=100, max_connections=50),
}


DEFAULT_PLAN = "HOBBY"

INTERVAL_OPTIONS = (30, 60, 300, 900, 1800, 3600, 7200, 86400)


def get_plan_limits(plan: str | None) -> PlanLimits:
    key = str(plan or DEFAULT_PLAN).strip().upper()
    limits = PLAN_LIMITS.get(key)
    if limits is None:
        raise ValidationError(f"unknown_plan: {plan}")
    return limits


def interval_options(plan: str | None) -> list[dict[str, object]]:
    floor = get_plan_limits(plan).min_interval_seconds
    return [{"value": v, "disabled": v < floor} for v in INTERVAL_OPTIONS]


def validate_interval(plan: str | None, interval_seconds: int) -> int:
    floor = get_plan_limits(plan).min_interval_seconds
    if int(interval_seconds) < floor:
        raise ValidationError(f"interval_below_plan_minimum: {int(interval_seconds)} < {floor}")
    return int(interval_seconds)


def check_quota(plan: str | None, *, monitors: int | None = None, connections: int | None = None) -> None:
    limits = get_plan_limits(plan)
    if monitors is not None and monitors >= limits.max_monitors:
        raise ValidationError(f"monitor_limit_reached: {limits.max_monitors}")
    if connections is not None and connections >= limits.max_connections:
        raise ValidationError(f"connection_limit_reached: {limits.max_connections}")
