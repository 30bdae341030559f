from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError as SchemaError

from api_pulse import db, service
from api_pulse.errors import NotFoundError, ValidationError
from api_pulse.plans import check_quota, interval_options, validate_interval
from api_pulse.schema import CreateAlertRequest, CreateConnectionRequest, CreateMonitorRequest, PatchMonitorRequest
from api_pulse.settings import Settings, load_settings
from api_pulse.vault import CredentialVault


def test_settings_from_env_and_yaml_overlay(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PULSE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("PULSE_MAX_CONCURRENCY", "7")
    monkeypatch.setenv("PULSE_RETENTION_DAYS", "not-a-number")
    monkeypatch.delenv("PULSE_CONFIG", raising=False)

    s = load_settings()
    assert s.db_path == str(tmp_path / "env.db")
    assert s.max_concurrency == 7
    assert s.retention_days == 30

    cfg = tmp_path / "pulse.yaml"
    cfg.write_text("tick_seconds: 15\nretention_days: 90\nunknown_key: ignored\n", encoding="utf-8")
    s2 = load_settings(str(cfg))
    assert s2.tick_seconds == 15
    assert s2.retention_days == 90
    assert s2.max_concurrency == 7

    bad = tmp_path / "bad.yaml"
    bad.write_text("max_concurrency: 0\n", encoding="utf-8")
    with pytest.raises(SchemaError):
        load_settings(str(bad))


def test_plan_floors_and_quotas() -> None:
    assert validate_interval("HOBBY", 300) == 300
    assert validate_interval("STARTUP", 60) == 60
    assert validate_interval("BUSINESS", 30) == 30
    with pytest.raises(ValidationError):
        validate_interval("HOBBY", 60)
    with pytest.raises(ValidationError):
        validate_interval("ENTERPRISE", 300)

    options = {o["value"]: o["disabled"] for o in interval_options("STARTUP")}
    assert options[30] is True and options[60] is False

    check_quota("HOBBY", monitors=4)
    with pytest.raises(ValidationError):
        check_quota("HOBBY", monitors=5)
    with pytest.raises(ValidationError):
        check_quota("HOBBY", connections=3)


def test_request_schemas_validate_input() -> None:
    req = CreateConnectionRequest(name="Stripe", provider=" Stripe ", base_url="https://api.stripe.com", api_key="sk")
    assert req.provider == "stripe"
    with pytest.raises(SchemaError):
        CreateConnectionRequest(name="x", provider="stripe", base_url="ftp://nope")
    with pytest.raises(SchemaError):
        CreateMonitorRequest(name="m", endpoint="/", interval_seconds=5)
    with pytest.raises(SchemaError):
        CreateAlertRequest(name="a", condition="latency", operator=">", threshold=1, unit="ms", time_window_minutes=5)


def test_service_enforces_plan_floor_and_encrypts(tmp_path: Path) -> None:
    key = "0123456789abcdef0123456789abcdef"
    settings = Settings(db_path=str(tmp_path / "svc.db"), encryption_key=key)
    vault = CredentialVault(key)
    user = db.create_user(settings, email="Hobby@Example.com", plan="HOBBY")
    assert user["email"] == "hobby@example.com"

    conn = service.create_connection(
        settings,
        vault,
        user_id=user["id"],
        req=CreateConnectionRequest(name="Stripe", provider="stripe", base_url="https://api.stripe.com", api_key="sk_1"),
    )
    assert vault.decrypt(conn.credentials["api_key"]) == "sk_1"

    with pytest.raises(ValidationError):
        service.create_monitor(settings, connection_id=conn.id, req=CreateMonitorRequest(name="m", endpoint="/v1/balance", interval_seconds=60))

    mon = service.create_monitor(settings, connection_id=conn.id, req=CreateMonitorRequest(name="m", endpoint="/v1/balance"))
    assert mon.interval_seconds == 300
    with pytest.raises(ValidationError):
        service.update_monitor(settings, monitor_id=mon.id, req=PatchMonitorRequest(interval_seconds=30))
    updated = service.update_monitor(settings, monitor_id=mon.id, req=PatchMonitorRequest(interval_seconds=900, name="slow"))
    assert (updated.interval_seconds, updated.name) == (900, "slow")

    with pytest.raises(ValidationError):
        service.create_connection(
            settings,
            vault,
            user_id=user["id"],
            req=CreateConnectionRequest(name="T", provider="twilio", base_url="https://api.twilio.com", account_sid="AC1"),
        )
    with pytest.raises(NotFoundError):
        service.create_monitor(settings, connection_id="missing", req=CreateMonitorRequest(name="m", endpoint="/"))
