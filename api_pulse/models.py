from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


class CheckStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# Credential fields a connection may carry, each stored as its own envelope.
CREDENTIAL_FIELDS = ("api_key", "secret_key", "account_sid", "auth_token", "token")


def ts_to_iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class Connection:
    id: str
    user_id: str
    name: str
    provider: str
    base_url: str
    # field name -> encrypted envelope; plaintext never lives on this object.
    credentials: dict[str, str] = field(default_factory=dict)
    auth_header_name: str | None = None
    is_active: bool = True
    created_at_ts: float = 0.0
    updated_at_ts: float = 0.0


@dataclass(frozen=True)
class Monitor:
    id: str
    connection_id: str
    name: str
    endpoint: str
    method: str = "GET"
    interval_seconds: int = 300
    timeout_ms: int = 30_000
    expected_status: int | None = None
    max_latency_ms: float | None = None
    headers: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, str] = field(default_factory=dict)
    body: Any = None
    is_active: bool = True
    last_executed_at_ts: float | None = None
    created_at_ts: float = 0.0
    updated_at_ts: float = 0.0


@dataclass(frozen=True)
class MonitorWithConnection:
    """A monitor joined with the activity flag and payload of its connection."""

    monitor: Monitor
    connection: Connection

    @property
    def id(self) -> str:
        return self.monitor.id


@dataclass(frozen=True)
class CheckResult:
    id: str
    monitor_id: str
    status: CheckStatus
    latency_ms: float
    timestamp_ts: float
    http_status: int | None = None
    response_size: int | None = None
    error_detail: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == CheckStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "monitorId": self.monitor_id,
            "status": self.status.value,
            "httpStatus": self.http_status,
            "latencyMs": self.latency_ms,
            "responseSize": self.response_size,
            "errorDetail": self.error_detail,
            "timestamp": ts_to_iso(self.timestamp_ts),
        }


@dataclass(frozen=True)
class Alert:
    id: str
    user_id: str
    name: str
    condition: str
    operator: str
    threshold: float
    unit: str
    time_window_minutes: int
    severity: Severity = Severity.MEDIUM
    connection_id: str | None = None
    cooldown_minutes: int | None = None
    channels: tuple[str, ...] = ()
    metric_key: str | None = None
    is_active: bool = True
    last_triggered_ts: float | None = None
    created_at_ts: float = 0.0

    @property
    def cooldown_seconds(self) -> float:
        minutes = self.cooldown_minutes if self.cooldown_minutes is not None else self.time_window_minutes
        return float(minutes) * 60.0

    @property
    def window_seconds(self) -> float:
        return float(self.time_window_minutes) * 60.0


@dataclass(frozen=True)
class AlertHistory:
    id: str
    alert_id: str
    message: str
    severity: Severity
    timestamp_ts: float
    value: float | None = None
    resolved: bool = False
    resolved_at_ts: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "alertId": self.alert_id,
            "message": self.message,
            "severity": self.severity.value,
            "value": self.value,
            "timestamp": ts_to_iso(self.timestamp_ts),
            "resolved": self.resolved,
            "resolvedAt": ts_to_iso(self.resolved_at_ts),
        }


@dataclass(frozen=True)
class CostMetric:
    id: str
    connection_id: str
    amount: Decimal
    currency: str
    period: str
    transaction_id: str
    source_ts: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionSummary:
    executed: int
    successful: int
    failed: int
    total_active: int
    timestamp_ts: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "executed": self.executed,
            "successful": self.successful,
            "failed": self.failed,
            "totalActive": self.total_active,
            "timestamp": ts_to_iso(self.timestamp_ts),
        }


@dataclass(frozen=True)
class CostSyncResult:
    success: bool
    cost_data: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.cost_data is not None:
            out["costData"] = self.cost_data
        if self.error is not None:
            out["error"] = self.error
        return out
