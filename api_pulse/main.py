from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import structlog
import yaml
from pydantic import ValidationError as SchemaError

from api_pulse import db, history
from api_pulse.alerts import AlertEvaluator
from api_pulse.costs import CostAggregator
from api_pulse.engine import SchedulingEngine
from api_pulse.errors import PulseError
from api_pulse.logs import configure_logging
from api_pulse.notify import Notifier
from api_pulse.probe import ProbeExecutor
from api_pulse.scheduler import JobScheduler, register_engine_jobs
from api_pulse.schema import CreateAlertRequest, CreateConnectionRequest, CreateMonitorRequest, CreateUserRequest
from api_pulse import service
from api_pulse.settings import Settings, load_settings
from api_pulse.vault import CredentialVault


logger = structlog.get_logger(__name__)


@dataclass
class Components:
    settings: Settings
    vault: CredentialVault
    client: httpx.AsyncClient
    executor: ProbeExecutor
    notifier: Notifier
    evaluator: AlertEvaluator
    engine: SchedulingEngine
    costs: CostAggregator

    async def aclose(self) -> None:
        await self.client.aclose()


def build_vault(settings: Settings) -> CredentialVault:
    if not settings.encryption_key:
        raise PulseError("PULSE_ENCRYPTION_KEY is not set")
    return CredentialVault(settings.encryption_key)


def build_components(settings: Settings, *, client: httpx.AsyncClient | None = None) -> Components:
    """
    Wire the engine once per process. Every consumer receives its
    dependencies here; nothing looks them up later.
    """
    vault = build_vault(settings)
    http = client or httpx.AsyncClient(
        limits=httpx.Limits(max_connections=max(10, int(settings.max_concurrency) * 2)),
    )
    executor = ProbeExecutor(vault, http, default_timeout_ms=settings.probe_timeout_ms)
    notifier = Notifier(settings, http)
    evaluator = AlertEvaluator(settings, notifier=notifier)
    engine = SchedulingEngine(settings, executor, evaluator=evaluator)
    costs = CostAggregator(settings, vault, http)
    return Components(
        settings=settings,
        vault=vault,
        client=http,
        executor=executor,
        notifier=notifier,
        evaluator=evaluator,
        engine=engine,
        costs=costs,
    )


def _print(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True, default=str))


def _load_payload(raw: str) -> dict[str, Any]:
    """
    Inline JSON/YAML, or ``@path`` to read it from a file.
    """
    text = Path(raw[1:]).read_text(encoding="utf-8") if raw.startswith("@") else raw
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise PulseError("payload must be a mapping")
    return data


async def _tick(settings: Settings) -> int:
    comps = build_components(settings)
    try:
        summary = await comps.engine.run_due_cycle()
    finally:
        await comps.aclose()
    _print(summary.to_dict())
    return 0


async def _evaluate_alerts(settings: Settings) -> int:
    comps = build_components(settings)
    try:
        outcomes = await comps.evaluator.evaluate()
    finally:
        await comps.aclose()
    _print([o.__dict__ for o in outcomes])
    return 0


async def _sync_costs(settings: Settings, connection_id: str | None) -> int:
    comps = build_components(settings)
    try:
        if connection_id:
            conn = await asyncio.to_thread(db.get_connection, settings, connection_id)
            if conn is None:
                raise PulseError(f"Connection not found: {connection_id}")
            results = {conn.id: await comps.costs.sync_connection_costs(conn)}
        else:
            results = await comps.costs.sync_all()
    finally:
        await comps.aclose()
    _print({cid: r.to_dict() for cid, r in results.items()})
    return 0 if all(r.success for r in results.values()) else 1


async def _serve(settings: Settings) -> int:
    comps = build_components(settings)
    jobs = JobScheduler(settings)
    register_engine_jobs(jobs, engine=comps.engine, costs=comps.costs)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    jobs.start()
    logger.info("serve_started", tick_seconds=settings.tick_seconds, db_path=settings.db_path)
    try:
        # First cycle immediately rather than one tick later.
        await comps.engine.run_due_cycle()
        await stop.wait()
    finally:
        jobs.stop()
        await comps.aclose()
        logger.info("serve_stopped")
    return 0


def _run(args: argparse.Namespace, settings: Settings) -> int:
    cmd = args.command
    if cmd == "init-db":
        db.ensure_schema(settings)
        _print({"ok": True, "db_path": settings.db_path, "schema_version": db.SCHEMA_VERSION})
        return 0
    if cmd == "add-user":
        _print(service.create_user(settings, CreateUserRequest(email=args.email, plan=args.plan.upper())))
        return 0
    if cmd == "add-connection":
        req = CreateConnectionRequest(**_load_payload(args.data))
        conn = service.create_connection(settings, build_vault(settings), user_id=args.user_id, req=req)
        _print({"id": conn.id, "name": conn.name, "provider": conn.provider, "base_url": conn.base_url})
        return 0
    if cmd == "add-monitor":
        req = CreateMonitorRequest(**_load_payload(args.data))
        _print(service.create_monitor(settings, connection_id=args.connection_id, req=req).__dict__)
        return 0
    if cmd == "add-alert":
        req = CreateAlertRequest(**_load_payload(args.data))
        _print(service.create_alert(settings, user_id=args.user_id, req=req).__dict__)
        return 0
    if cmd == "tick":
        return asyncio.run(_tick(settings))
    if cmd == "evaluate-alerts":
        return asyncio.run(_evaluate_alerts(settings))
    if cmd == "sync-costs":
        return asyncio.run(_sync_costs(settings, args.connection_id))
    if cmd == "prune":
        days = int(args.days if args.days is not None else settings.retention_days)
        removed = db.prune_check_results(settings, before_ts=time.time() - days * 86400.0)
        _print({"removed": removed, "retention_days": days})
        return 0
    if cmd == "status":
        _print(db.status_summary(settings, user_id=args.user_id))
        return 0
    if cmd == "monitor-stats":
        results = db.list_results(settings, monitor_id=args.monitor_id, limit=1000)
        _print(history.monitor_stats(results, now_ts=time.time(), days=int(args.days)))
        return 0
    if cmd == "dashboard":
        _print(db.dashboard_stats(settings, user_id=args.user_id))
        return 0
    if cmd == "cost-stats":
        _print(db.cost_statistics(settings, user_id=args.user_id))
        return 0
    if cmd == "serve":
        return asyncio.run(_serve(settings))
    raise PulseError(f"unknown command: {cmd}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="api-pulse", description="API Pulse monitoring engine")
    parser.add_argument("--config", default=None, help="Path to YAML config (defaults to PULSE_CONFIG)")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create or upgrade the database schema")

    p = sub.add_parser("add-user", help="Create a user with a plan tier")
    p.add_argument("--email", required=True)
    p.add_argument("--plan", default="HOBBY")

    p = sub.add_parser("add-connection", help="Create a provider connection (credentials are encrypted)")
    p.add_argument("--user-id", required=True)
    p.add_argument("--data", required=True, help="JSON/YAML payload or @file")

    p = sub.add_parser("add-monitor", help="Create a monitor on a connection")
    p.add_argument("--connection-id", required=True)
    p.add_argument("--data", required=True, help="JSON/YAML payload or @file")

    p = sub.add_parser("add-alert", help="Create an alert rule")
    p.add_argument("--user-id", required=True)
    p.add_argument("--data", required=True, help="JSON/YAML payload or @file")

    sub.add_parser("tick", help="Run one due-check cycle and print the summary")
    sub.add_parser("evaluate-alerts", help="Evaluate every active alert once")

    p = sub.add_parser("sync-costs", help="Reconcile provider costs for the current month")
    p.add_argument("--connection-id", default=None)

    p = sub.add_parser("prune", help="Delete check results older than the retention horizon")
    p.add_argument("--days", type=int, default=None)

    p = sub.add_parser("status", help="Latest state per monitor")
    p.add_argument("--user-id", default=None)

    p = sub.add_parser("monitor-stats", help="Success rate, latency and daily uptime for one monitor")
    p.add_argument("--monitor-id", required=True)
    p.add_argument("--days", type=int, default=7)

    p = sub.add_parser("dashboard", help="Connection, monitor, check and alert counts for a user")
    p.add_argument("--user-id", required=True)

    p = sub.add_parser("cost-stats", help="Cost totals by provider and period")
    p.add_argument("--user-id", required=True)

    sub.add_parser("serve", help="Run the scheduler until interrupted")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    configure_logging(args.log_level or settings.log_level, json_output=settings.log_json)
    try:
        return _run(args, settings)
    except (PulseError, SchemaError, ValueError) as e:
        logger.error("command_failed", command=args.command, error=f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
