from __future__ import annotations

import json
import sqlite3
import time
import uuid
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Iterator

from api_pulse.errors import NotFoundError, StorageError
from api_pulse.models import (
    Alert,
    AlertHistory,
    CheckResult,
    CheckStatus,
    Connection,
    CostMetric,
    Monitor,
    MonitorWithConnection,
    Severity,
)
from api_pulse.settings import Settings


SCHEMA_VERSION = 1


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, default=str)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except Exception:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise StorageError("Missing db_path")
    try:
        if p != ":memory:":
            Path(p).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    except (OSError, sqlite3.Error) as e:
        raise StorageError(f"cannot open database: {type(e).__name__}: {e}") from e
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL lets readers proceed while probes are writing results.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error:
        pass
    return conn


@contextmanager
def _session(settings: Settings) -> Iterator[sqlite3.Connection]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        yield conn
    except sqlite3.Error as e:
        raise StorageError(f"{type(e).__name__}: {e}") from e
    finally:
        conn.close()


@contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[None]:
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield
    except Exception:
        conn.execute("ROLLBACK;")
        raise
    conn.execute("COMMIT;")


def ensure_schema(settings: Settings) -> None:
    with _session(settings):
        pass


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return
    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return
    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
          id TEXT PRIMARY KEY,
          email TEXT NOT NULL UNIQUE,
          plan TEXT NOT NULL DEFAULT 'HOBBY',
          created_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS connections (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
          name TEXT NOT NULL,
          provider TEXT NOT NULL,
          base_url TEXT NOT NULL,
          credentials_json TEXT NOT NULL DEFAULT '{}', -- field -> encrypted envelope
          auth_header_name TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitors (
          id TEXT PRIMARY KEY,
          connection_id TEXT NOT NULL REFERENCES connections(id) ON DELETE CASCADE,
          name TEXT NOT NULL,
          endpoint TEXT NOT NULL,
          method TEXT NOT NULL DEFAULT 'GET',
          interval_seconds INTEGER NOT NULL DEFAULT 300,
          timeout_ms INTEGER NOT NULL DEFAULT 30000,
          expected_status INTEGER,
          max_latency_ms REAL,
          headers_json TEXT NOT NULL DEFAULT '{}',
          query_json TEXT NOT NULL DEFAULT '{}',
          body_json TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          last_executed_at_ts REAL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS check_results (
          id TEXT PRIMARY KEY,
          monitor_id TEXT NOT NULL REFERENCES monitors(id) ON DELETE CASCADE,
          status TEXT NOT NULL, -- SUCCESS|FAILURE|ERROR|TIMEOUT
          http_status INTEGER,
          latency_ms REAL NOT NULL,
          response_size INTEGER,
          error_detail TEXT,
          metadata_json TEXT NOT NULL DEFAULT '{}',
          timestamp_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS alerts (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
          connection_id TEXT REFERENCES connections(id) ON DELETE CASCADE,
          name TEXT NOT NULL,
          condition TEXT NOT NULL,
          operator TEXT NOT NULL,
          threshold REAL NOT NULL,
          unit TEXT NOT NULL,
          time_window_minutes INTEGER NOT NULL,
          cooldown_minutes INTEGER,
          severity TEXT NOT NULL DEFAULT 'MEDIUM',
          channels_json TEXT NOT NULL DEFAULT '[]',
          metric_key TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          last_triggered_ts REAL,
          created_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS alert_history (
          id TEXT PRIMARY KEY,
          alert_id TEXT NOT NULL REFERENCES alerts(id) ON DELETE CASCADE,
          message TEXT NOT NULL,
          severity TEXT NOT NULL,
          value REAL,
          timestamp_ts REAL NOT NULL,
          resolved INTEGER NOT NULL DEFAULT 0,
          resolved_at_ts REAL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cost_metrics (
          id TEXT PRIMARY KEY,
          connection_id TEXT NOT NULL REFERENCES connections(id) ON DELETE CASCADE,
          amount TEXT NOT NULL, -- decimal string
          currency TEXT NOT NULL,
          period TEXT NOT NULL,
          transaction_id TEXT NOT NULL,
          source_ts REAL,
          metadata_json TEXT NOT NULL DEFAULT '{}',
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL,
          UNIQUE(connection_id, period, transaction_id)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_connections_user ON connections(user_id, is_active);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_monitors_connection ON monitors(connection_id, is_active);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_results_monitor_ts ON check_results(monitor_id, timestamp_ts DESC);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_results_ts ON check_results(timestamp_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_alerts_user_active ON alerts(user_id, is_active);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_alert_history_alert ON alert_history(alert_id, timestamp_ts DESC);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_cost_metrics_conn_period ON cost_metrics(connection_id, period);")


# --- row mapping -------------------------------------------------------------


def _row_to_connection(r: sqlite3.Row, prefix: str = "") -> Connection:
    creds = _json_loads(r[f"{prefix}credentials_json"]) or {}
    return Connection(
        id=str(r[f"{prefix}id"]),
        user_id=str(r[f"{prefix}user_id"]),
        name=str(r[f"{prefix}name"]),
        provider=str(r[f"{prefix}provider"]),
        base_url=str(r[f"{prefix}base_url"]),
        credentials={str(k): str(v) for k, v in creds.items() if v},
        auth_header_name=r[f"{prefix}auth_header_name"],
        is_active=bool(int(r[f"{prefix}is_active"] or 0)),
        created_at_ts=float(r[f"{prefix}created_at_ts"] or 0.0),
        updated_at_ts=float(r[f"{prefix}updated_at_ts"] or 0.0),
    )


def _row_to_monitor(r: sqlite3.Row) -> Monitor:
    return Monitor(
        id=str(r["id"]),
        connection_id=str(r["connection_id"]),
        name=str(r["name"]),
        endpoint=str(r["endpoint"]),
        method=str(r["method"] or "GET").upper(),
        interval_seconds=int(r["interval_seconds"] or 300),
        timeout_ms=int(r["timeout_ms"] or 30_000),
        expected_status=int(r["expected_status"]) if r["expected_status"] is not None else None,
        max_latency_ms=float(r["max_latency_ms"]) if r["max_latency_ms"] is not None else None,
        headers=_json_loads(r["headers_json"]) or {},
        query_params=_json_loads(r["query_json"]) or {},
        body=_json_loads(r["body_json"]),
        is_active=bool(int(r["is_active"] or 0)),
        last_executed_at_ts=float(r["last_executed_at_ts"]) if r["last_executed_at_ts"] is not None else None,
        created_at_ts=float(r["created_at_ts"] or 0.0),
        updated_at_ts=float(r["updated_at_ts"] or 0.0),
    )


def _row_to_result(r: sqlite3.Row) -> CheckResult:
    return CheckResult(
        id=str(r["id"]),
        monitor_id=str(r["monitor_id"]),
        status=CheckStatus(str(r["status"])),
        http_status=int(r["http_status"]) if r["http_status"] is not None else None,
        latency_ms=float(r["latency_ms"] or 0.0),
        response_size=int(r["response_size"]) if r["response_size"] is not None else None,
        error_detail=r["error_detail"],
        metadata=_json_loads(r["metadata_json"]) or {},
        timestamp_ts=float(r["timestamp_ts"]),
    )


def _row_to_alert(r: sqlite3.Row) -> Alert:
    return Alert(
        id=str(r["id"]),
        user_id=str(r["user_id"]),
        connection_id=str(r["connection_id"]) if r["connection_id"] else None,
        name=str(r["name"]),
        condition=str(r["condition"]),
        operator=str(r["operator"]),
        threshold=float(r["threshold"]),
        unit=str(r["unit"]),
        time_window_minutes=int(r["time_window_minutes"]),
        cooldown_minutes=int(r["cooldown_minutes"]) if r["cooldown_minutes"] is not None else None,
        severity=Severity(str(r["severity"] or "MEDIUM")),
        channels=tuple(str(c) for c in (_json_loads(r["channels_json"]) or [])),
        metric_key=r["metric_key"],
        is_active=bool(int(r["is_active"] or 0)),
        last_triggered_ts=float(r["last_triggered_ts"]) if r["last_triggered_ts"] is not None else None,
        created_at_ts=float(r["created_at_ts"] or 0.0),
    )


def _row_to_history(r: sqlite3.Row) -> AlertHistory:
    return AlertHistory(
        id=str(r["id"]),
        alert_id=str(r["alert_id"]),
        message=str(r["message"]),
        severity=Severity(str(r["severity"])),
        value=float(r["value"]) if r["value"] is not None else None,
        timestamp_ts=float(r["timestamp_ts"]),
        resolved=bool(int(r["resolved"] or 0)),
        resolved_at_ts=float(r["resolved_at_ts"]) if r["resolved_at_ts"] is not None else None,
    )


def _row_to_cost(r: sqlite3.Row) -> CostMetric:
    return CostMetric(
        id=str(r["id"]),
        connection_id=str(r["connection_id"]),
        amount=Decimal(str(r["amount"])),
        currency=str(r["currency"]),
        period=str(r["period"]),
        transaction_id=str(r["transaction_id"]),
        source_ts=float(r["source_ts"]) if r["source_ts"] is not None else None,
        metadata=_json_loads(r["metadata_json"]) or {},
    )


# --- users -------------------------------------------------------------------


def create_user(settings: Settings, *, email: str, plan: str = "HOBBY") -> dict[str, Any]:
    with _session(settings) as conn:
        uid = _uuid()
        now = _utc_ts()
        conn.execute(
            "INSERT INTO users (id, email, plan, created_at_ts) VALUES (?, ?, ?, ?)",
            (uid, email.strip().lower(), str(plan).strip().upper(), now),
        )
        return {"id": uid, "email": email.strip().lower(), "plan": str(plan).strip().upper(), "created_at_ts": now}


def get_user(settings: Settings, user_id: str) -> dict[str, Any] | None:
    with _session(settings) as conn:
        row = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
        return dict(row) if row else None


def get_user_plan(settings: Settings, user_id: str) -> str:
    user = get_user(settings, user_id)
    if not user:
        raise NotFoundError("User", user_id)
    return str(user["plan"])


# --- connections -------------------------------------------------------------


def insert_connection(
    settings: Settings,
    *,
    user_id: str,
    name: str,
    provider: str,
    base_url: str,
    credentials: dict[str, str],
    auth_header_name: str | None = None,
) -> Connection:
    """
    ``credentials`` must already be encrypted envelopes; this layer never sees plaintext.
    """
    with _session(settings) as conn:
        cid = _uuid()
        now = _utc_ts()
        conn.execute(
            """
            INSERT INTO connections (
              id, user_id, name, provider, base_url, credentials_json, auth_header_name,
              is_active, created_at_ts, updated_at_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (
                cid,
                user_id,
                name.strip(),
                provider.strip().lower(),
                base_url.strip(),
                _json_dumps({k: v for k, v in credentials.items() if v}),
                auth_header_name.strip() if auth_header_name else None,
                now,
                now,
            ),
        )
        row = conn.execute("SELECT * FROM connections WHERE id=?", (cid,)).fetchone()
        return _row_to_connection(row)


def get_connection(settings: Settings, connection_id: str) -> Connection | None:
    with _session(settings) as conn:
        row = conn.execute("SELECT * FROM connections WHERE id=?", (connection_id,)).fetchone()
        return _row_to_connection(row) if row else None


def list_connections(settings: Settings, *, user_id: str | None = None, active_only: bool = False) -> list[Connection]:
    where: list[str] = []
    params: list[Any] = []
    if user_id is not None:
        where.append("user_id=?")
        params.append(user_id)
    if active_only:
        where.append("is_active=1")
    sql = "SELECT * FROM connections"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY created_at_ts ASC"
    with _session(settings) as conn:
        return [_row_to_connection(r) for r in conn.execute(sql, tuple(params)).fetchall()]


def set_connection_active(settings: Settings, connection_id: str, active: bool) -> bool:
    with _session(settings) as conn:
        res = conn.execute(
            "UPDATE connections SET is_active=?, updated_at_ts=? WHERE id=?",
            (1 if active else 0, _utc_ts(), connection_id),
        )
        return int(res.rowcount or 0) > 0


def delete_connection(settings: Settings, connection_id: str) -> bool:
    with _session(settings) as conn:
        res = conn.execute("DELETE FROM connections WHERE id=?", (connection_id,))
        return int(res.rowcount or 0) > 0


def count_connections(settings: Settings, *, user_id: str) -> int:
    with _session(settings) as conn:
        row = conn.execute("SELECT COUNT(*) AS n FROM connections WHERE user_id=?", (user_id,)).fetchone()
        return int(row["n"] or 0)


# --- monitors ----------------------------------------------------------------


def insert_monitor(
    settings: Settings,
    *,
    connection_id: str,
    name: str,
    endpoint: str,
    method: str = "GET",
    interval_seconds: int = 300,
    timeout_ms: int = 30_000,
    expected_status: int | None = None,
    max_latency_ms: float | None = None,
    headers: dict[str, str] | None = None,
    query_params: dict[str, str] | None = None,
    body: Any = None,
) -> Monitor:
    with _session(settings) as conn:
        mid = _uuid()
        now = _utc_ts()
        conn.execute(
            """
            INSERT INTO monitors (
              id, connection_id, name, endpoint, method, interval_seconds, timeout_ms,
              expected_status, max_latency_ms, headers_json, query_json, body_json,
              is_active, last_executed_at_ts, created_at_ts, updated_at_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, NULL, ?, ?)
            """,
            (
                mid,
                connection_id,
                name.strip(),
                endpoint.strip(),
                str(method or "GET").strip().upper(),
                int(interval_seconds),
                int(timeout_ms),
                int(expected_status) if expected_status is not None else None,
                float(max_latency_ms) if max_latency_ms is not None else None,
                _json_dumps(headers or {}),
                _json_dumps(query_params or {}),
                _json_dumps(body) if body is not None else None,
                now,
                now,
            ),
        )
        row = conn.execute("SELECT * FROM monitors WHERE id=?", (mid,)).fetchone()
        return _row_to_monitor(row)


def get_monitor(settings: Settings, monitor_id: str) -> Monitor | None:
    with _session(settings) as conn:
        row = conn.execute("SELECT * FROM monitors WHERE id=?", (monitor_id,)).fetchone()
        return _row_to_monitor(row) if row else None


def patch_monitor(settings: Settings, *, monitor_id: str, patch: dict[str, Any]) -> bool:
    """
    Partial update for user-editable monitor fields. ``last_executed_at_ts`` is not
    editable here; only the scheduling engine moves it.
    """
    allowed = {"name", "endpoint", "method", "interval_seconds", "timeout_ms", "expected_status", "max_latency_ms", "is_active"}
    cleaned = {k: v for k, v in (patch or {}).items() if k in allowed and v is not None}
    if not cleaned:
        return False

    sets: list[str] = []
    params: list[Any] = []
    for k in ("name", "endpoint"):
        if k in cleaned:
            sets.append(f"{k}=?")
            params.append(str(cleaned[k]).strip())
    if "method" in cleaned:
        sets.append("method=?")
        params.append(str(cleaned["method"]).strip().upper())
    for k in ("interval_seconds", "timeout_ms", "expected_status"):
        if k in cleaned:
            sets.append(f"{k}=?")
            params.append(int(cleaned[k]))
    if "max_latency_ms" in cleaned:
        sets.append("max_latency_ms=?")
        params.append(float(cleaned["max_latency_ms"]))
    if "is_active" in cleaned:
        sets.append("is_active=?")
        params.append(1 if bool(cleaned["is_active"]) else 0)

    sets.append("updated_at_ts=?")
    params.append(_utc_ts())
    params.append(monitor_id)

    with _session(settings) as conn:
        res = conn.execute(f"UPDATE monitors SET {', '.join(sets)} WHERE id=?", tuple(params))
        return int(res.rowcount or 0) > 0


def count_monitors(settings: Settings, *, user_id: str) -> int:
    with _session(settings) as conn:
        row = conn.execute(
            """
            SELECT COUNT(*) AS n
            FROM monitors m
            JOIN connections c ON c.id=m.connection_id
            WHERE c.user_id=?
            """,
            (user_id,),
        ).fetchone()
        return int(row["n"] or 0)


def list_active_monitors(settings: Settings) -> list[MonitorWithConnection]:
    """
    Active monitors joined with their connection (active or not); due filtering
    decides what actually runs.
    """
    with _session(settings) as conn:
        rows = conn.execute(
            """
            SELECT
              m.*,
              c.id AS c_id, c.user_id AS c_user_id, c.name AS c_name, c.provider AS c_provider,
              c.base_url AS c_base_url, c.credentials_json AS c_credentials_json,
              c.auth_header_name AS c_auth_header_name, c.is_active AS c_is_active,
              c.created_at_ts AS c_created_at_ts, c.updated_at_ts AS c_updated_at_ts
            FROM monitors m
            JOIN connections c ON c.id=m.connection_id
            WHERE m.is_active=1
            ORDER BY COALESCE(m.last_executed_at_ts, 0) ASC, m.created_at_ts ASC
            """
        ).fetchall()
        return [MonitorWithConnection(monitor=_row_to_monitor(r), connection=_row_to_connection(r, "c_")) for r in rows]


def is_monitor_runnable(settings: Settings, monitor_id: str) -> bool:
    with _session(settings) as conn:
        row = conn.execute(
            """
            SELECT m.is_active AS m_active, c.is_active AS c_active
            FROM monitors m
            JOIN connections c ON c.id=m.connection_id
            WHERE m.id=?
            """,
            (monitor_id,),
        ).fetchone()
        if not row:
            return False
        return bool(int(row["m_active"] or 0)) and bool(int(row["c_active"] or 0))


def stamp_last_executed(settings: Settings, *, monitor_id: str, executed_at_ts: float) -> bool:
    """
    Move ``last_executed_at_ts`` forward only. A racing invocation holding an older
    start time can never revert a newer stamp.
    """
    with _session(settings) as conn:
        res = conn.execute(
            """
            UPDATE monitors
            SET last_executed_at_ts=?
            WHERE id=? AND (last_executed_at_ts IS NULL OR last_executed_at_ts < ?)
            """,
            (float(executed_at_ts), monitor_id, float(executed_at_ts)),
        )
        return int(res.rowcount or 0) > 0


# --- check results -----------------------------------------------------------


def insert_check_result(settings: Settings, result: CheckResult) -> None:
    with _session(settings) as conn:
        conn.execute(
            """
            INSERT INTO check_results (
              id, monitor_id, status, http_status, latency_ms, response_size, error_detail,
              metadata_json, timestamp_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.id,
                result.monitor_id,
                result.status.value,
                result.http_status,
                float(result.latency_ms),
                result.response_size,
                (str(result.error_detail)[:2000] if result.error_detail else None),
                _json_dumps(result.metadata or {}),
                float(result.timestamp_ts),
            ),
        )


def list_results(settings: Settings, *, monitor_id: str, limit: int = 10) -> list[CheckResult]:
    with _session(settings) as conn:
        rows = conn.execute(
            """
            SELECT * FROM check_results
            WHERE monitor_id=?
            ORDER BY timestamp_ts DESC, rowid DESC
            LIMIT ?
            """,
            (monitor_id, max(1, min(int(limit), 1000))),
        ).fetchall()
        return [_row_to_result(r) for r in rows]


def results_since(
    settings: Settings,
    *,
    since_ts: float,
    connection_id: str | None = None,
    user_id: str | None = None,
    monitor_ids: Iterable[str] | None = None,
) -> list[CheckResult]:
    """Results newer than ``since_ts`` for one scope, most recent first."""
    where = ["r.timestamp_ts >= ?"]
    params: list[Any] = [float(since_ts)]
    if connection_id is not None:
        where.append("m.connection_id=?")
        params.append(connection_id)
    if user_id is not None:
        where.append("c.user_id=?")
        params.append(user_id)
    if monitor_ids is not None:
        ids = list(monitor_ids)
        if not ids:
            return []
        where.append(f"r.monitor_id IN ({', '.join('?' for _ in ids)})")
        params.extend(ids)

    with _session(settings) as conn:
        rows = conn.execute(
            f"""
            SELECT r.*
            FROM check_results r
            JOIN monitors m ON m.id=r.monitor_id
            JOIN connections c ON c.id=m.connection_id
            WHERE {' AND '.join(where)}
            ORDER BY r.timestamp_ts DESC, r.rowid DESC
            """,
            tuple(params),
        ).fetchall()
        return [_row_to_result(r) for r in rows]


def prune_check_results(settings: Settings, *, before_ts: float) -> int:
    with _session(settings) as conn:
        res = conn.execute("DELETE FROM check_results WHERE timestamp_ts < ?", (float(before_ts),))
        return int(res.rowcount or 0)


def status_summary(settings: Settings, *, user_id: str | None = None) -> dict[str, Any]:
    """
    Per-monitor latest outcome. Monitors that never ran report ``pending``.
    """
    params: tuple[Any, ...] = ()
    where = ""
    if user_id is not None:
        where = "WHERE c.user_id=?"
        params = (user_id,)

    with _session(settings) as conn:
        rows = conn.execute(
            f"""
            SELECT
              m.id AS monitor_id,
              m.name AS monitor_name,
              m.endpoint AS endpoint,
              m.interval_seconds AS interval_seconds,
              m.is_active AS is_active,
              m.last_executed_at_ts AS last_executed_at_ts,
              c.id AS connection_id,
              c.name AS connection_name,
              c.provider AS provider,
              c.is_active AS connection_active,
              r.status AS last_status,
              r.http_status AS last_http_status,
              r.latency_ms AS last_latency_ms,
              r.timestamp_ts AS last_result_ts
            FROM monitors m
            JOIN connections c ON c.id=m.connection_id
            LEFT JOIN check_results r ON r.id = (
              SELECT r2.id FROM check_results r2 WHERE r2.monitor_id=m.id
              ORDER BY r2.timestamp_ts DESC, r2.rowid DESC LIMIT 1
            )
            {where}
            ORDER BY m.created_at_ts DESC
            """,
            params,
        ).fetchall()

    monitors = []
    failing = 0
    pending = 0
    for r in rows:
        d = dict(r)
        if d.get("last_status") is None:
            d["state"] = "pending"
            pending += 1
        elif d["last_status"] == CheckStatus.SUCCESS.value:
            d["state"] = "up"
        else:
            d["state"] = "down"
            failing += 1
        monitors.append(d)
    return {
        "ok": True,
        "total_monitors": len(monitors),
        "failing_monitors": failing,
        "pending_monitors": pending,
        "monitors": monitors[:500],
    }


# --- alerts ------------------------------------------------------------------


def insert_alert(
    settings: Settings,
    *,
    user_id: str,
    name: str,
    condition: str,
    operator: str,
    threshold: float,
    unit: str,
    time_window_minutes: int,
    severity: str = "MEDIUM",
    connection_id: str | None = None,
    cooldown_minutes: int | None = None,
    channels: Iterable[str] = (),
    metric_key: str | None = None,
) -> Alert:
    with _session(settings) as conn:
        aid = _uuid()
        now = _utc_ts()
        conn.execute(
            """
            INSERT INTO alerts (
              id, user_id, connection_id, name, condition, operator, threshold, unit,
              time_window_minutes, cooldown_minutes, severity, channels_json, metric_key,
              is_active, last_triggered_ts, created_at_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, NULL, ?)
            """,
            (
                aid,
                user_id,
                connection_id,
                name.strip(),
                condition,
                operator,
                float(threshold),
                unit,
                int(time_window_minutes),
                int(cooldown_minutes) if cooldown_minutes is not None else None,
                str(severity).upper(),
                _json_dumps(list(channels)),
                metric_key,
                now,
            ),
        )
        row = conn.execute("SELECT * FROM alerts WHERE id=?", (aid,)).fetchone()
        return _row_to_alert(row)


def get_alert(settings: Settings, alert_id: str) -> Alert | None:
    with _session(settings) as conn:
        row = conn.execute("SELECT * FROM alerts WHERE id=?", (alert_id,)).fetchone()
        return _row_to_alert(row) if row else None


def list_active_alerts(settings: Settings, *, connection_ids: Iterable[str] | None = None) -> list[Alert]:
    """
    Active alerts. When ``connection_ids`` is given, only alerts bound to one of
    them plus global (connection-less) alerts are returned.
    """
    sql = "SELECT * FROM alerts WHERE is_active=1"
    params: list[Any] = []
    if connection_ids is not None:
        ids = list(connection_ids)
        if ids:
            sql += f" AND (connection_id IS NULL OR connection_id IN ({', '.join('?' for _ in ids)}))"
            params.extend(ids)
        else:
            sql += " AND connection_id IS NULL"
    sql += " ORDER BY created_at_ts ASC"
    with _session(settings) as conn:
        return [_row_to_alert(r) for r in conn.execute(sql, tuple(params)).fetchall()]


def _claim_trigger_conn(conn: sqlite3.Connection, *, alert_id: str, now_ts: float, cooldown_seconds: float) -> bool:
    res = conn.execute(
        """
        UPDATE alerts
        SET last_triggered_ts=?
        WHERE id=? AND is_active=1
          AND (last_triggered_ts IS NULL OR ? - last_triggered_ts >= ?)
        """,
        (float(now_ts), alert_id, float(now_ts), float(cooldown_seconds)),
    )
    return int(res.rowcount or 0) > 0


def claim_alert_trigger(settings: Settings, *, alert_id: str, now_ts: float, cooldown_seconds: float) -> bool:
    """
    Atomic cooldown check-and-set. Exactly one of several concurrent evaluators
    observing the same window wins the right to fire.
    """
    with _session(settings) as conn:
        return _claim_trigger_conn(conn, alert_id=alert_id, now_ts=now_ts, cooldown_seconds=cooldown_seconds)


def fire_alert(
    settings: Settings,
    *,
    alert_id: str,
    now_ts: float,
    cooldown_seconds: float,
    message: str,
    severity: str,
    value: float | None,
) -> AlertHistory | None:
    """
    Claim the cooldown and record the history entry in one transaction.
    Returns None when the cooldown is held; a failed history write releases
    the claim.
    """
    with _session(settings) as conn:
        with _transaction(conn):
            if not _claim_trigger_conn(conn, alert_id=alert_id, now_ts=now_ts, cooldown_seconds=cooldown_seconds):
                return None
            hid = _uuid()
            conn.execute(
                """
                INSERT INTO alert_history (id, alert_id, message, severity, value, timestamp_ts, resolved, resolved_at_ts)
                VALUES (?, ?, ?, ?, ?, ?, 0, NULL)
                """,
                (hid, alert_id, str(message)[:5000], str(severity).upper(), value, float(now_ts)),
            )
            row = conn.execute("SELECT * FROM alert_history WHERE id=?", (hid,)).fetchone()
        return _row_to_history(row)


def list_alert_history(settings: Settings, *, alert_id: str, limit: int = 50) -> list[AlertHistory]:
    with _session(settings) as conn:
        rows = conn.execute(
            "SELECT * FROM alert_history WHERE alert_id=? ORDER BY timestamp_ts DESC LIMIT ?",
            (alert_id, max(1, min(int(limit), 500))),
        ).fetchall()
        return [_row_to_history(r) for r in rows]


def resolve_open_history(settings: Settings, *, alert_id: str, resolved_at_ts: float) -> int:
    with _session(settings) as conn:
        res = conn.execute(
            "UPDATE alert_history SET resolved=1, resolved_at_ts=? WHERE alert_id=? AND resolved=0",
            (float(resolved_at_ts), alert_id),
        )
        return int(res.rowcount or 0)


def alert_stats(settings: Settings, *, user_id: str) -> dict[str, int]:
    with _session(settings) as conn:
        row = conn.execute(
            """
            SELECT
              COUNT(*) AS total,
              COALESCE(SUM(CASE WHEN is_active=1 THEN 1 ELSE 0 END), 0) AS active,
              COALESCE(SUM(CASE WHEN last_triggered_ts IS NOT NULL THEN 1 ELSE 0 END), 0) AS triggered
            FROM alerts WHERE user_id=?
            """,
            (user_id,),
        ).fetchone()
        unresolved = conn.execute(
            """
            SELECT COUNT(*) AS n
            FROM alert_history h JOIN alerts a ON a.id=h.alert_id
            WHERE a.user_id=? AND h.resolved=0
            """,
            (user_id,),
        ).fetchone()
        return {
            "total": int(row["total"] or 0),
            "active": int(row["active"] or 0),
            "triggered": int(row["triggered"] or 0),
            "unresolved": int(unresolved["n"] or 0),
        }


# --- cost metrics ------------------------------------------------------------


def upsert_cost_metric(
    settings: Settings,
    *,
    connection_id: str,
    amount: Decimal,
    currency: str,
    period: str,
    transaction_id: str,
    source_ts: float | None = None,
    metadata: dict[str, Any] | None = None,
) -> str:
    """
    Idempotent write keyed by (connection_id, period, transaction_id).
    Returns ``inserted``, ``updated`` or ``unchanged``.
    """
    amount_s = str(Decimal(amount))
    currency_s = str(currency or "USD").strip().upper()
    meta_s = _json_dumps(metadata or {})
    with _session(settings) as conn:
        with _transaction(conn):
            row = conn.execute(
                """
                SELECT id, amount, currency, metadata_json FROM cost_metrics
                WHERE connection_id=? AND period=? AND transaction_id=?
                """,
                (connection_id, period, transaction_id),
            ).fetchone()
            now = _utc_ts()
            if row is None:
                conn.execute(
                    """
                    INSERT INTO cost_metrics (
                      id, connection_id, amount, currency, period, transaction_id, source_ts,
                      metadata_json, created_at_ts, updated_at_ts
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_uuid(), connection_id, amount_s, currency_s, period, transaction_id, source_ts, meta_s, now, now),
                )
                return "inserted"
            if (
                Decimal(str(row["amount"])) == Decimal(amount_s)
                and str(row["currency"]) == currency_s
                and str(row["metadata_json"]) == meta_s
            ):
                return "unchanged"
            conn.execute(
                """
                UPDATE cost_metrics
                SET amount=?, currency=?, source_ts=?, metadata_json=?, updated_at_ts=?
                WHERE id=?
                """,
                (amount_s, currency_s, source_ts, meta_s, now, str(row["id"])),
            )
            return "updated"


def list_cost_metrics(
    settings: Settings,
    *,
    connection_id: str | None = None,
    user_id: str | None = None,
    period: str | None = None,
) -> list[CostMetric]:
    where: list[str] = []
    params: list[Any] = []
    if connection_id is not None:
        where.append("m.connection_id=?")
        params.append(connection_id)
    if user_id is not None:
        where.append("c.user_id=?")
        params.append(user_id)
    if period is not None:
        where.append("m.period=?")
        params.append(period)
    sql = "SELECT m.* FROM cost_metrics m JOIN connections c ON c.id=m.connection_id"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY m.period DESC, m.source_ts DESC"
    with _session(settings) as conn:
        return [_row_to_cost(r) for r in conn.execute(sql, tuple(params)).fetchall()]


def cost_statistics(settings: Settings, *, user_id: str) -> dict[str, Any]:
    with _session(settings) as conn:
        rows = conn.execute(
            """
            SELECT m.amount AS amount, m.currency AS currency, m.period AS period, c.provider AS provider
            FROM cost_metrics m JOIN connections c ON c.id=m.connection_id
            WHERE c.user_id=?
            """,
            (user_id,),
        ).fetchall()

    total = Decimal("0")
    by_provider: dict[str, dict[str, Any]] = {}
    by_period: dict[str, dict[str, Any]] = {}
    for r in rows:
        amount = Decimal(str(r["amount"]))
        total += amount
        p = by_provider.setdefault(str(r["provider"]), {"provider": str(r["provider"]), "total_cost": Decimal("0"), "count": 0})
        p["total_cost"] += amount
        p["count"] += 1
        q = by_period.setdefault(str(r["period"]), {"period": str(r["period"]), "total_cost": Decimal("0"), "count": 0})
        q["total_cost"] += amount
        q["count"] += 1

    n = len(rows)
    return {
        "total_cost": total,
        "average_cost": (total / n) if n else Decimal("0"),
        "cost_by_provider": sorted(by_provider.values(), key=lambda d: d["provider"]),
        "cost_by_period": sorted(by_period.values(), key=lambda d: d["period"]),
    }


def dashboard_stats(settings: Settings, *, user_id: str, now_ts: float | None = None) -> dict[str, Any]:
    """
    Per-user overview over the trailing 24 hours.
    """
    since = float(now_ts if now_ts is not None else _utc_ts()) - 86400.0
    with _session(settings) as conn:
        counts = conn.execute(
            """
            SELECT
              (SELECT COUNT(*) FROM connections WHERE user_id=?) AS connections,
              (SELECT COUNT(*) FROM connections WHERE user_id=? AND is_active=1) AS active_connections,
              (SELECT COUNT(*) FROM monitors m JOIN connections c ON c.id=m.connection_id
                 WHERE c.user_id=? AND m.is_active=1) AS active_monitors
            """,
            (user_id, user_id, user_id),
        ).fetchone()
        checks = conn.execute(
            """
            SELECT
              COUNT(*) AS total,
              COALESCE(SUM(CASE WHEN r.status='SUCCESS' THEN 1 ELSE 0 END), 0) AS ok,
              AVG(r.latency_ms) AS avg_latency
            FROM check_results r
            JOIN monitors m ON m.id=r.monitor_id
            JOIN connections c ON c.id=m.connection_id
            WHERE c.user_id=? AND r.timestamp_ts >= ?
            """,
            (user_id, since),
        ).fetchone()

    total = int(checks["total"] or 0)
    ok = int(checks["ok"] or 0)
    return {
        "connections": int(counts["connections"] or 0),
        "active_connections": int(counts["active_connections"] or 0),
        "active_monitors": int(counts["active_monitors"] or 0),
        "checks_24h": total,
        "success_rate_24h": (ok / float(total)) * 100.0 if total else None,
        "average_latency_ms_24h": float(checks["avg_latency"]) if checks["avg_latency"] is not None else None,
        "alerts": alert_stats(settings, user_id=user_id),
    }
