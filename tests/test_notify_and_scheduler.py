from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import httpx
import pytest
import structlog

from api_pulse import main as cli
from api_pulse.engine import SchedulingEngine
from api_pulse.models import Alert, AlertHistory, Severity
from api_pulse.notify import Notifier, split_telegram_message
from api_pulse.scheduler import COST_JOB_ID, CYCLE_JOB_ID, RETENTION_JOB_ID, JobScheduler, register_engine_jobs
from api_pulse.settings import Settings


ALERT = Alert(
    id="a1",
    user_id="u1",
    name="High error rate",
    condition="error_rate",
    operator=">",
    threshold=10,
    unit="%",
    time_window_minutes=10,
    severity=Severity.HIGH,
    channels=("webhook", "slack", "telegram", "pager"),
)
ENTRY = AlertHistory(id="h1", alert_id="a1", message="error_rate is 50.00%", severity=Severity.HIGH, timestamp_ts=1_700_000_000.0, value=50.0)


def test_split_telegram_message_prefers_newlines() -> None:
    text = "\n".join(["x" * 40] * 10)
    parts = split_telegram_message(text, max_len=100)
    assert all(len(p) <= 100 for p in parts)
    assert "".join(p.replace("\n", "") for p in parts) == "x" * 400


@pytest.mark.asyncio
async def test_notifier_delivers_per_channel_and_redacts_token(settings: Settings) -> None:
    configured = replace(
        settings,
        webhook_url="https://hooks.example.com/pulse",
        slack_webhook_url="https://hooks.slack.com/services/T/B/X",
        telegram_bot_token="123:SECRET",
        telegram_chat_id="42",
    )
    bodies: dict[str, dict] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.telegram.org":
            raise httpx.ConnectError(f"cannot reach {request.url}", request=request)
        bodies[request.url.host] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = Notifier(configured, client)
        delivered = await notifier.notify(ALERT, ENTRY)
        ok, err = await notifier.send_telegram(ALERT, ENTRY)

    assert delivered == {"webhook": True, "slack": True, "telegram": False, "pager": False}
    assert bodies["hooks.example.com"]["alertId"] == "a1"
    assert bodies["hooks.example.com"]["history"]["value"] == 50.0
    assert "High error rate" in bodies["hooks.slack.com"]["text"]
    assert ok is False
    assert err is not None and "SECRET" not in err


@pytest.mark.asyncio
async def test_unconfigured_channels_report_failure(settings: Settings) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as client:
        delivered = await Notifier(settings, client).notify(ALERT, ENTRY, channels=["webhook", "email"])
    assert delivered == {"webhook": False, "email": False}


def test_register_engine_jobs(settings: Settings) -> None:
    jobs = JobScheduler(settings)
    components = cli.build_components(settings, client=httpx.AsyncClient())
    register_engine_jobs(jobs, engine=components.engine, costs=components.costs)

    listed = {j["job_id"]: j for j in jobs.list_jobs()}
    assert set(listed) == {CYCLE_JOB_ID, RETENTION_JOB_ID, COST_JOB_ID}
    assert listed[CYCLE_JOB_ID]["type"] == "interval"
    assert listed[COST_JOB_ID]["type"] == "cron"
    assert isinstance(components.engine, SchedulingEngine)

    assert jobs.remove_job(COST_JOB_ID) is True
    assert jobs.remove_job(COST_JOB_ID) is False
    with pytest.raises(ValueError):
        jobs.add_cron_job("bad", lambda: None, "* * *")


@pytest.fixture()
def quiet_logs(monkeypatch: pytest.MonkeyPatch):
    # Keep stdout clean for the JSON the CLI prints.
    monkeypatch.setattr(cli, "configure_logging", lambda *a, **k: None)
    structlog.configure(logger_factory=structlog.ReturnLoggerFactory())
    try:
        yield
    finally:
        structlog.reset_defaults()


def test_cli_init_db_and_status(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str], quiet_logs: None
) -> None:
    monkeypatch.setenv("PULSE_DB_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("PULSE_ENCRYPTION_KEY", "0123456789abcdef0123456789abcdef")
    monkeypatch.delenv("PULSE_CONFIG", raising=False)

    assert cli.main(["init-db"]) == 0
    assert json.loads(capsys.readouterr().out)["schema_version"] >= 1

    assert cli.main(["add-user", "--email", "a@example.com", "--plan", "startup"]) == 0
    user = json.loads(capsys.readouterr().out)
    assert user["plan"] == "STARTUP"

    payload = json.dumps({"name": "GH", "provider": "github", "base_url": "https://api.github.com", "token": "ghp_x"})
    assert cli.main(["add-connection", "--user-id", user["id"], "--data", payload]) == 0
    conn = json.loads(capsys.readouterr().out)
    assert "ghp_x" not in json.dumps(conn)

    assert cli.main(["add-monitor", "--connection-id", conn["id"], "--data", '{"name": "rate", "endpoint": "/rate_limit", "interval_seconds": 30}']) == 1
    capsys.readouterr()
    assert cli.main(["add-monitor", "--connection-id", conn["id"], "--data", '{"name": "rate", "endpoint": "/rate_limit", "interval_seconds": 60}']) == 0
    capsys.readouterr()

    assert cli.main(["status"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["total_monitors"] == 1
    assert status["monitors"][0]["state"] == "pending"
