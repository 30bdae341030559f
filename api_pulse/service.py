"""Creation paths for users, connections, monitors and alerts.

Validates request payloads, enforces plan floors and quotas, and encrypts
credentials before anything reaches the store.
"""

from __future__ import annotations

from typing import Any

import structlog

from api_pulse import db, plans
from api_pulse.auth import SUPPORTED_PROVIDERS, auth_for_provider
from api_pulse.errors import NotFoundError, ValidationError
from api_pulse.models import Alert, Connection, Monitor
from api_pulse.schema import (
    CreateAlertRequest,
    CreateConnectionRequest,
    CreateMonitorRequest,
    CreateUserRequest,
    PatchMonitorRequest,
)
from api_pulse.settings import Settings
from api_pulse.vault import CredentialVault


logger = structlog.get_logger(__name__)


def create_user(settings: Settings, req: CreateUserRequest) -> dict[str, Any]:
    return db.create_user(settings, email=req.email, plan=req.plan)


def create_connection(
    settings: Settings,
    vault: CredentialVault,
    *,
    user_id: str,
    req: CreateConnectionRequest,
) -> Connection:
    if req.provider not in SUPPORTED_PROVIDERS:
        raise ValidationError(f"unsupported_provider: {req.provider}")

    plan = db.get_user_plan(settings, user_id)
    plans.check_quota(plan, connections=db.count_connections(settings, user_id=user_id))

    secrets = req.secrets()
    try:
        auth_for_provider(req.provider, secrets, header_name=req.auth_header_name)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    envelopes = {name: vault.encrypt(value) for name, value in secrets.items() if value}
    conn = db.insert_connection(
        settings,
        user_id=user_id,
        name=req.name,
        provider=req.provider,
        base_url=req.base_url,
        credentials=envelopes,
        auth_header_name=req.auth_header_name,
    )
    logger.info("connection_created", connection_id=conn.id, provider=conn.provider, fields=sorted(envelopes))
    return conn


def create_monitor(settings: Settings, *, connection_id: str, req: CreateMonitorRequest) -> Monitor:
    conn = db.get_connection(settings, connection_id)
    if conn is None:
        raise NotFoundError("Connection", connection_id)

    plan = db.get_user_plan(settings, conn.user_id)
    plans.validate_interval(plan, req.interval_seconds)
    plans.check_quota(plan, monitors=db.count_monitors(settings, user_id=conn.user_id))

    mon = db.insert_monitor(
        settings,
        connection_id=conn.id,
        name=req.name,
        endpoint=req.endpoint,
        method=req.method,
        interval_seconds=req.interval_seconds,
        timeout_ms=req.timeout_ms,
        expected_status=req.expected_status,
        max_latency_ms=req.max_latency_ms,
        headers=req.headers,
        query_params=req.query_params,
        body=req.body,
    )
    logger.info("monitor_created", monitor_id=mon.id, connection_id=conn.id, interval_seconds=mon.interval_seconds)
    return mon


def update_monitor(settings: Settings, *, monitor_id: str, req: PatchMonitorRequest) -> Monitor:
    mon = db.get_monitor(settings, monitor_id)
    if mon is None:
        raise NotFoundError("Monitor", monitor_id)
    if req.interval_seconds is not None:
        conn = db.get_connection(settings, mon.connection_id)
        if conn is None:
            raise NotFoundError("Connection", mon.connection_id)
        plans.validate_interval(db.get_user_plan(settings, conn.user_id), req.interval_seconds)

    db.patch_monitor(settings, monitor_id=monitor_id, patch=req.model_dump(exclude_none=True))
    updated = db.get_monitor(settings, monitor_id)
    if updated is None:
        raise NotFoundError("Monitor", monitor_id)
    return updated


def create_alert(settings: Settings, *, user_id: str, req: CreateAlertRequest) -> Alert:
    if db.get_user(settings, user_id) is None:
        raise NotFoundError("User", user_id)
    if req.connection_id is not None:
        conn = db.get_connection(settings, req.connection_id)
        if conn is None or conn.user_id != user_id:
            raise NotFoundError("Connection", req.connection_id)
    if req.condition == "custom_metric" and not req.metric_key:
        raise ValidationError("custom_metric alerts require metric_key")

    return db.insert_alert(
        settings,
        user_id=user_id,
        name=req.name,
        condition=req.condition,
        operator=req.operator,
        threshold=req.threshold,
        unit=req.unit,
        time_window_minutes=req.time_window_minutes,
        severity=req.severity,
        connection_id=req.connection_id,
        cooldown_minutes=req.cooldown_minutes,
        channels=req.channels,
        metric_key=req.metric_key,
    )
