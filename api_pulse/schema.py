from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]
Condition = Literal["error_rate", "response_time", "uptime", "rate_limit", "custom_metric"]
Operator = Literal[">", ">=", "<", "<=", "==", "!="]
Unit = Literal["%", "ms", "requests/min", "count", "seconds", "minutes", "hours"]
SeverityName = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
Channel = Literal["webhook", "slack", "telegram", "email"]


class CreateUserRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    plan: Literal["HOBBY", "STARTUP", "BUSINESS"] = "HOBBY"


class CreateConnectionRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    provider: str = Field(..., min_length=1, max_length=40)
    base_url: str = Field(..., min_length=1, max_length=2000)
    api_key: str | None = None
    secret_key: str | None = None
    account_sid: str | None = None
    auth_token: str | None = None
    token: str | None = None
    auth_header_name: str | None = Field(None, max_length=120)

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("base_url")
    @classmethod
    def _http_base_url(cls, v: str) -> str:
        s = v.strip()
        if not s.lower().startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return s

    def secrets(self) -> dict[str, str | None]:
        return {
            "api_key": self.api_key,
            "secret_key": self.secret_key,
            "account_sid": self.account_sid,
            "auth_token": self.auth_token,
            "token": self.token,
        }


class CreateMonitorRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    endpoint: str = Field(..., min_length=1, max_length=2000)
    method: HttpMethod = "GET"
    # Plan floors are checked separately; this is the absolute range.
    interval_seconds: int = Field(300, ge=30, le=86400)
    timeout_ms: int = Field(30_000, ge=1000, le=120_000)
    expected_status: int | None = Field(None, ge=100, le=599)
    max_latency_ms: float | None = Field(None, gt=0)
    headers: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class PatchMonitorRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    endpoint: str | None = Field(None, min_length=1, max_length=2000)
    method: HttpMethod | None = None
    interval_seconds: int | None = Field(None, ge=30, le=86400)
    timeout_ms: int | None = Field(None, ge=1000, le=120_000)
    expected_status: int | None = Field(None, ge=100, le=599)
    max_latency_ms: float | None = Field(None, gt=0)
    is_active: bool | None = None


class CreateAlertRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    condition: Condition
    operator: Operator
    threshold: float = Field(..., ge=0)
    unit: Unit
    time_window_minutes: int = Field(..., ge=1, le=1440)
    cooldown_minutes: int | None = Field(None, ge=1, le=1440)
    severity: SeverityName = "MEDIUM"
    connection_id: str | None = None
    channels: list[Channel] = Field(default_factory=list)
    metric_key: str | None = Field(None, max_length=120)
    description: str | None = Field(None, max_length=500)
