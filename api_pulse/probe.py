from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Callable
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from api_pulse.auth import auth_for_provider
from api_pulse.errors import DecryptionError
from api_pulse.models import CheckResult, CheckStatus, Connection, Monitor
from api_pulse.vault import CredentialVault


logger = structlog.get_logger(__name__)

USER_AGENT = "API-Pulse-Monitor/1.0"
DEFAULT_TIMEOUT_MS = 30_000


def build_url(base_url: str, endpoint: str) -> str:
    return str(base_url or "").rstrip("/") + "/" + str(endpoint or "").lstrip("/")


def _safe_url(url: str) -> str:
    """
    Drop query strings before a URL lands in result metadata or logs.
    """
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except Exception:
        return s[:500]


def classify_status(monitor: Monitor, http_status: int) -> bool:
    """
    An explicit ``expected_status`` is an exact match and wins over the 2xx
    rule, so a monitor asserting 404 on a deleted resource succeeds on 404.
    Without one any 2xx counts as success.
    """
    if monitor.expected_status is not None:
        return int(http_status) == int(monitor.expected_status)
    return 200 <= int(http_status) < 300


class ProbeExecutor:
    """
    Runs one outbound request for a monitor and classifies the outcome.
    ``execute`` never raises; every failure is folded into the CheckResult.
    """

    def __init__(
        self,
        vault: CredentialVault,
        client: httpx.AsyncClient,
        *,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._vault = vault
        self._client = client
        self._default_timeout_ms = int(default_timeout_ms)
        self._clock = clock

    def _decrypt_credentials(self, connection: Connection) -> dict[str, str | None]:
        return {name: self._vault.decrypt_optional(envelope) for name, envelope in connection.credentials.items()}

    def _build_headers(self, monitor: Monitor, connection: Connection) -> dict[str, str]:
        creds = self._decrypt_credentials(connection)
        auth = auth_for_provider(connection.provider, creds, header_name=connection.auth_header_name)
        headers = {"User-Agent": USER_AGENT, "Content-Type": "application/json"}
        headers.update({str(k): str(v) for k, v in (monitor.headers or {}).items()})
        headers.update(auth.build_auth_headers())
        return headers

    def _result(
        self,
        monitor: Monitor,
        *,
        status: CheckStatus,
        started_ts: float,
        latency_ms: float,
        meta: dict[str, Any],
        http_status: int | None = None,
        response_size: int | None = None,
        error_detail: str | None = None,
    ) -> CheckResult:
        return CheckResult(
            id=str(uuid.uuid4()),
            monitor_id=monitor.id,
            status=status,
            latency_ms=max(1.0, round(float(latency_ms), 3)),
            timestamp_ts=started_ts,
            http_status=http_status,
            response_size=response_size,
            error_detail=error_detail,
            metadata=meta,
        )

    async def execute(self, monitor: Monitor, connection: Connection) -> CheckResult:
        started_ts = float(self._clock())
        url = build_url(connection.base_url, monitor.endpoint)
        method = str(monitor.method or "GET").upper()
        meta: dict[str, Any] = {"url": _safe_url(url), "method": method}

        try:
            headers = self._build_headers(monitor, connection)
        except DecryptionError as e:
            # Never echo the envelope or the underlying crypto message.
            meta["error_type"] = type(e).__name__
            logger.warning("probe_credentials_unusable", monitor_id=monitor.id, connection_id=connection.id)
            return self._result(
                monitor,
                status=CheckStatus.ERROR,
                started_ts=started_ts,
                latency_ms=0.0,
                meta=meta,
                error_detail=f"DecryptionError: {e}",
            )
        except ValueError as e:
            meta["error_type"] = type(e).__name__
            return self._result(
                monitor,
                status=CheckStatus.ERROR,
                started_ts=started_ts,
                latency_ms=0.0,
                meta=meta,
                error_detail=f"ConfigurationError: {e}",
            )

        timeout_s = max(0.001, float(monitor.timeout_ms or self._default_timeout_ms) / 1000.0)
        request_kwargs: dict[str, Any] = {
            "headers": headers,
            "params": dict(monitor.query_params or {}) or None,
            "timeout": timeout_s,
            "follow_redirects": True,
        }
        if monitor.body is not None and method not in {"GET", "HEAD"}:
            request_kwargs["json"] = monitor.body

        started = time.perf_counter()
        try:
            # httpx timeouts are per phase; wait_for caps the whole exchange including the body read.
            resp = await asyncio.wait_for(self._client.request(method, url, **request_kwargs), timeout=timeout_s)
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            meta["error_type"] = type(e).__name__
            return self._result(
                monitor,
                status=CheckStatus.TIMEOUT,
                started_ts=started_ts,
                latency_ms=elapsed_ms,
                meta=meta,
                error_detail=f"Request timed out after {int(timeout_s * 1000)}ms",
            )
        except httpx.RequestError as e:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            meta["error_type"] = type(e).__name__
            return self._result(
                monitor,
                status=CheckStatus.ERROR,
                started_ts=started_ts,
                latency_ms=elapsed_ms,
                meta=meta,
                error_detail=f"{type(e).__name__}: {e}"[:2000],
            )
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            meta["error_type"] = type(e).__name__
            logger.exception("probe_unexpected_error", monitor_id=monitor.id)
            return self._result(
                monitor,
                status=CheckStatus.ERROR,
                started_ts=started_ts,
                latency_ms=elapsed_ms,
                meta=meta,
                error_detail=f"{type(e).__name__}: {e}"[:2000],
            )

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        size = len(resp.content or b"")
        status_ok = classify_status(monitor, resp.status_code)
        too_slow = monitor.max_latency_ms is not None and elapsed_ms > float(monitor.max_latency_ms)

        error_detail = None
        if not status_ok:
            error_detail = f"HTTP {resp.status_code}: {resp.reason_phrase}".strip()
        elif too_slow:
            error_detail = f"slow_response: {elapsed_ms:.0f}ms > {float(monitor.max_latency_ms):.0f}ms"

        return self._result(
            monitor,
            status=CheckStatus.SUCCESS if status_ok and not too_slow else CheckStatus.FAILURE,
            started_ts=started_ts,
            latency_ms=elapsed_ms,
            meta=meta,
            http_status=resp.status_code,
            response_size=size,
            error_detail=error_detail,
        )
