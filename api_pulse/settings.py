from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


@dataclass(frozen=True)
class Settings:
    db_path: str = field(default_factory=lambda: _env_str("PULSE_DB_PATH", "/data/api-pulse.db"))

    # 32-byte key for the credential vault (AES-256-GCM).
    encryption_key: str = field(default_factory=lambda: os.getenv("PULSE_ENCRYPTION_KEY", ""))

    log_level: str = field(default_factory=lambda: _env_str("PULSE_LOG_LEVEL", "INFO"))
    log_json: bool = field(default_factory=lambda: _env_bool("PULSE_LOG_JSON", False))

    # Scheduling engine.
    tick_seconds: int = field(default_factory=lambda: _env_int("PULSE_TICK_SECONDS", 60))
    max_concurrency: int = field(default_factory=lambda: _env_int("PULSE_MAX_CONCURRENCY", 25))
    probe_timeout_ms: int = field(default_factory=lambda: _env_int("PULSE_PROBE_TIMEOUT_MS", 30_000))
    evaluate_alerts_after_cycle: bool = field(default_factory=lambda: _env_bool("PULSE_EVALUATE_ALERTS", True))

    # Retention of check results.
    retention_days: int = field(default_factory=lambda: _env_int("PULSE_RETENTION_DAYS", 30))

    # Cost reconciliation runs daily at this UTC hour.
    cost_sync_hour: int = field(default_factory=lambda: _env_int("PULSE_COST_SYNC_HOUR", 3))
    cost_timeout_seconds: int = field(default_factory=lambda: _env_int("PULSE_COST_TIMEOUT_SECONDS", 30))

    # Notification channels.
    webhook_url: str = field(default_factory=lambda: os.getenv("PULSE_WEBHOOK_URL", "").strip())
    slack_webhook_url: str = field(default_factory=lambda: os.getenv("PULSE_SLACK_WEBHOOK_URL", "").strip())
    telegram_bot_token: str = field(default_factory=lambda: os.getenv("TELEGRAM_BOT_TOKEN", "").strip())
    telegram_chat_id: str = field(default_factory=lambda: os.getenv("TELEGRAM_CHAT_ID", "").strip())
    smtp_host: str = field(default_factory=lambda: os.getenv("PULSE_SMTP_HOST", "").strip())
    smtp_port: int = field(default_factory=lambda: _env_int("PULSE_SMTP_PORT", 587))
    smtp_username: str = field(default_factory=lambda: os.getenv("PULSE_SMTP_USERNAME", "").strip())
    smtp_password: str = field(default_factory=lambda: os.getenv("PULSE_SMTP_PASSWORD", ""))
    smtp_sender: str = field(default_factory=lambda: _env_str("PULSE_SMTP_SENDER", "alerts@api-pulse.local"))
    alert_email_to: str = field(default_factory=lambda: os.getenv("PULSE_ALERT_EMAIL_TO", "").strip())


class SettingsFile(BaseModel):
    """Optional YAML overlay. Keys mirror the Settings fields."""

    db_path: str | None = None
    log_level: str | None = None
    log_json: bool | None = None
    tick_seconds: int | None = Field(None, ge=1, le=3600)
    max_concurrency: int | None = Field(None, ge=1, le=500)
    probe_timeout_ms: int | None = Field(None, ge=100, le=300_000)
    evaluate_alerts_after_cycle: bool | None = None
    retention_days: int | None = Field(None, ge=1, le=3650)
    cost_sync_hour: int | None = Field(None, ge=0, le=23)
    cost_timeout_seconds: int | None = Field(None, ge=1, le=300)
    webhook_url: str | None = None
    slack_webhook_url: str | None = None
    telegram_chat_id: str | None = None
    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_sender: str | None = None
    alert_email_to: str | None = None


def load_settings(config_path: str | None = None) -> Settings:
    """
    Resolve settings from the environment, then overlay values from a YAML file
    (PULSE_CONFIG or the explicit path) when it exists. Secrets stay env-only.
    """
    settings = Settings()
    path = config_path or os.getenv("PULSE_CONFIG")
    if not path or not Path(path).exists():
        return settings

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Config YAML must be a mapping")

    overlay = SettingsFile(**data).model_dump(exclude_none=True)
    known = {f.name for f in fields(Settings)}
    changes: dict[str, Any] = {k: v for k, v in overlay.items() if k in known}
    return replace(settings, **changes) if changes else settings
