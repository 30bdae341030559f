from __future__ import annotations

import asyncio
import uuid
from pathlib import Path

import pytest

from api_pulse import db
from api_pulse.engine import SchedulingEngine
from api_pulse.errors import StorageError
from api_pulse.models import CheckResult, CheckStatus, Connection, Monitor
from api_pulse.settings import Settings
from api_pulse.vault import CredentialVault

from conftest import make_connection


T0 = 1_700_000_000.0


class _FakeExecutor:
    """Returns canned outcomes keyed by endpoint; ``/crash`` raises."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute(self, monitor: Monitor, connection: Connection) -> CheckResult:
        self.calls.append(monitor.endpoint)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if monitor.endpoint == "/crash":
                raise RuntimeError("probe exploded")
            status = CheckStatus.SUCCESS if monitor.endpoint.startswith("/ok") else CheckStatus.FAILURE
            return CheckResult(
                id=str(uuid.uuid4()),
                monitor_id=monitor.id,
                status=status,
                latency_ms=5.0,
                timestamp_ts=T0,
                http_status=200 if status == CheckStatus.SUCCESS else 500,
            )
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
async def test_cycle_isolates_crashing_probe(settings: Settings, vault: CredentialVault, user_id: str) -> None:
    conn = make_connection(settings, vault, user_id)
    ok = db.insert_monitor(settings, connection_id=conn.id, name="ok", endpoint="/ok")
    bad = db.insert_monitor(settings, connection_id=conn.id, name="bad", endpoint="/bad")
    crash = db.insert_monitor(settings, connection_id=conn.id, name="crash", endpoint="/crash")

    engine = SchedulingEngine(settings, _FakeExecutor(), clock=lambda: T0)
    summary = await engine.run_due_cycle(now=T0)

    assert (summary.executed, summary.successful, summary.failed, summary.total_active) == (3, 1, 2, 3)
    assert db.list_results(settings, monitor_id=ok.id)[0].status == CheckStatus.SUCCESS
    assert db.list_results(settings, monitor_id=bad.id)[0].status == CheckStatus.FAILURE
    crashed = db.list_results(settings, monitor_id=crash.id)
    assert len(crashed) == 1
    assert crashed[0].status == CheckStatus.ERROR
    assert "RuntimeError" in (crashed[0].error_detail or "")
    for m in (ok, bad, crash):
        assert db.get_monitor(settings, m.id).last_executed_at_ts == T0


@pytest.mark.asyncio
async def test_cycle_stamps_execution_start_and_respects_interval(
    settings: Settings, vault: CredentialVault, user_id: str
) -> None:
    conn = make_connection(settings, vault, user_id)
    mon = db.insert_monitor(settings, connection_id=conn.id, name="ok", endpoint="/ok", interval_seconds=300)
    executor = _FakeExecutor()

    first = await SchedulingEngine(settings, executor, clock=lambda: T0 + 0.25).run_due_cycle(now=T0)
    assert first.executed == 1
    assert db.get_monitor(settings, mon.id).last_executed_at_ts == T0 + 0.25

    again = await SchedulingEngine(settings, executor, clock=lambda: T0 + 60).run_due_cycle(now=T0 + 60)
    assert again.executed == 0
    assert again.total_active == 1

    later = await SchedulingEngine(settings, executor, clock=lambda: T0 + 301).run_due_cycle(now=T0 + 301)
    assert later.executed == 1
    assert executor.calls == ["/ok", "/ok"]


@pytest.mark.asyncio
async def test_empty_population_returns_zero_summary(settings: Settings) -> None:
    summary = await SchedulingEngine(settings, _FakeExecutor()).run_due_cycle(now=T0)
    assert summary.to_dict()["executed"] == 0
    assert summary.to_dict()["totalActive"] == 0
    assert summary.to_dict()["timestamp"].startswith("2023-11-14T")


@pytest.mark.asyncio
async def test_inactive_connection_is_not_probed(settings: Settings, vault: CredentialVault, user_id: str) -> None:
    conn = make_connection(settings, vault, user_id)
    db.insert_monitor(settings, connection_id=conn.id, name="ok", endpoint="/ok")
    db.set_connection_active(settings, conn.id, False)
    executor = _FakeExecutor()

    summary = await SchedulingEngine(settings, executor).run_due_cycle(now=T0)
    assert summary.executed == 0
    assert summary.total_active == 0
    assert executor.calls == []


@pytest.mark.asyncio
async def test_concurrency_is_bounded(settings: Settings, vault: CredentialVault, user_id: str) -> None:
    conn = make_connection(settings, vault, user_id)
    for i in range(10):
        db.insert_monitor(settings, connection_id=conn.id, name=f"m{i}", endpoint=f"/ok/{i}")
    executor = _FakeExecutor(delay=0.05)

    summary = await SchedulingEngine(settings, executor).run_due_cycle(now=T0)
    assert summary.executed == 10
    assert summary.successful == 10
    assert 1 <= executor.max_in_flight <= settings.max_concurrency


@pytest.mark.asyncio
async def test_storage_failure_propagates(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    broken = Settings(db_path=str(blocker / "db.sqlite"), encryption_key="")
    with pytest.raises(StorageError):
        await SchedulingEngine(broken, _FakeExecutor()).run_due_cycle(now=T0)


@pytest.mark.asyncio
async def test_failed_insert_is_not_masked_by_failed_stamp(
    settings: Settings, vault: CredentialVault, user_id: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    conn = make_connection(settings, vault, user_id)
    db.insert_monitor(settings, connection_id=conn.id, name="ok", endpoint="/ok")
    item = db.list_active_monitors(settings)[0]
    stamps: list[float] = []

    def _insert(*args, **kwargs):
        raise StorageError("OperationalError: disk full")

    def _stamp(*args, executed_at_ts: float, **kwargs):
        stamps.append(executed_at_ts)
        raise StorageError("OperationalError: database is locked")

    monkeypatch.setattr(db, "insert_check_result", _insert)
    monkeypatch.setattr(db, "stamp_last_executed", _stamp)

    engine = SchedulingEngine(settings, _FakeExecutor(), clock=lambda: T0)
    with pytest.raises(StorageError, match="disk full"):
        await engine._run_one(item)
    assert stamps == [T0]

    summary = await engine.run_due_cycle(now=T0)
    assert (summary.executed, summary.failed) == (1, 1)
