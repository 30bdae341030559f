from __future__ import annotations

import asyncio
import calendar
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Protocol

import httpx
import structlog

from api_pulse import db
from api_pulse.models import Connection, CostSyncResult
from api_pulse.settings import Settings
from api_pulse.vault import CredentialVault


logger = structlog.get_logger(__name__)

STRIPE_API_BASE = "https://api.stripe.com"
TWILIO_API_BASE = "https://api.twilio.com"
NO_TRACKING_PROVIDERS = ("sendgrid", "github", "slack")

# Pagination guard; a month of balance transactions rarely needs more.
MAX_PAGES = 50
COST_SYNC_CONCURRENCY = 5


@dataclass(frozen=True)
class BillingPeriod:
    start: datetime
    end: datetime
    label: str  # YYYY-MM


@dataclass(frozen=True)
class CostLine:
    transaction_id: str
    amount: Decimal
    currency: str = "USD"
    source_ts: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def current_period(now_ts: float) -> BillingPeriod:
    now = datetime.fromtimestamp(float(now_ts), tz=timezone.utc)
    last_day = calendar.monthrange(now.year, now.month)[1]
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    end = datetime(now.year, now.month, last_day, 23, 59, 59, tzinfo=timezone.utc)
    return BillingPeriod(start=start, end=end, label=f"{now.year:04d}-{now.month:02d}")


def _decimal(raw: Any) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0")
    try:
        return Decimal(str(raw))
    except InvalidOperation as e:
        raise ValueError(f"invalid amount: {raw!r}") from e


class CostStrategy(Protocol):
    provider: str

    async def fetch(
        self, client: httpx.AsyncClient, credentials: dict[str, str | None], period: BillingPeriod
    ) -> list[CostLine]: ...


class StripeCostStrategy:
    """Balance transaction fees for the period; each transaction id is its own line."""

    provider = "stripe"

    def __init__(self, api_base: str = STRIPE_API_BASE, *, timeout_seconds: float = 30.0) -> None:
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    async def fetch(
        self, client: httpx.AsyncClient, credentials: dict[str, str | None], period: BillingPeriod
    ) -> list[CostLine]:
        secret = credentials.get("secret_key") or credentials.get("api_key")
        if not secret:
            raise ValueError("stripe requires secret_key")

        lines: list[CostLine] = []
        starting_after: str | None = None
        for _page in range(MAX_PAGES):
            params: dict[str, Any] = {
                "created[gte]": int(period.start.timestamp()),
                "created[lte]": int(period.end.timestamp()),
                "limit": 100,
            }
            if starting_after:
                params["starting_after"] = starting_after
            resp = await client.get(
                f"{self.api_base}/v1/balance_transactions",
                params=params,
                headers={"Authorization": f"Bearer {secret}"},
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
            data = resp.json()
            items = data.get("data") or []
            for tx in items:
                tx_id = str(tx.get("id") or "").strip()
                if not tx_id:
                    continue
                # Stripe reports fees in the smallest currency unit.
                fee = _decimal(tx.get("fee") or 0) / Decimal(100)
                lines.append(
                    CostLine(
                        transaction_id=tx_id,
                        amount=fee,
                        currency=str(tx.get("currency") or "usd").upper(),
                        source_ts=float(tx["created"]) if tx.get("created") is not None else None,
                        metadata={"type": tx.get("type"), "fee_cents": tx.get("fee")},
                    )
                )
            if not data.get("has_more") or not items:
                break
            starting_after = str(items[-1].get("id") or "")
            if not starting_after:
                break
        return lines


class TwilioCostStrategy:
    """Usage records for the period keyed by ``category:start_date``."""

    provider = "twilio"

    def __init__(self, api_base: str = TWILIO_API_BASE, *, timeout_seconds: float = 30.0) -> None:
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    async def fetch(
        self, client: httpx.AsyncClient, credentials: dict[str, str | None], period: BillingPeriod
    ) -> list[CostLine]:
        sid = credentials.get("account_sid")
        token = credentials.get("auth_token")
        if not sid or not token:
            raise ValueError("twilio requires account_sid and auth_token")

        lines: list[CostLine] = []
        url: str | None = f"{self.api_base}/2010-04-01/Accounts/{sid}/Usage/Records.json"
        params: dict[str, Any] | None = {
            "StartDate": period.start.strftime("%Y-%m-%d"),
            "EndDate": period.end.strftime("%Y-%m-%d"),
        }
        pages = 0
        while url and pages < MAX_PAGES:
            pages += 1
            resp = await client.get(url, params=params, auth=(sid, token), timeout=self.timeout_seconds)
            resp.raise_for_status()
            data = resp.json()
            for rec in data.get("usage_records") or []:
                category = str(rec.get("category") or "").strip()
                start_date = str(rec.get("start_date") or period.start.strftime("%Y-%m-%d"))
                if not category:
                    continue
                lines.append(
                    CostLine(
                        transaction_id=f"{category}:{start_date}",
                        amount=_decimal(rec.get("price")),
                        currency=str(rec.get("price_unit") or "usd").upper(),
                        metadata={"usage": rec.get("usage"), "usage_unit": rec.get("usage_unit")},
                    )
                )
            next_uri = data.get("next_page_uri")
            # next_page_uri already carries the query string.
            url = f"{self.api_base}{next_uri}" if next_uri else None
            params = None
        return lines


class NoCostTracking:
    def __init__(self, provider: str) -> None:
        self.provider = provider

    async def fetch(
        self, client: httpx.AsyncClient, credentials: dict[str, str | None], period: BillingPeriod
    ) -> list[CostLine]:
        return []


def strategy_for(provider: str, *, timeout_seconds: float = 30.0) -> CostStrategy | None:
    p = str(provider or "").strip().lower()
    if p == "stripe":
        return StripeCostStrategy(timeout_seconds=timeout_seconds)
    if p == "twilio":
        return TwilioCostStrategy(timeout_seconds=timeout_seconds)
    if p in NO_TRACKING_PROVIDERS:
        return NoCostTracking(p)
    return None


class CostAggregator:
    def __init__(
        self,
        settings: Settings,
        vault: CredentialVault,
        client: httpx.AsyncClient,
        *,
        strategies: dict[str, CostStrategy] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.vault = vault
        self._client = client
        self._strategies = dict(strategies or {})
        self._clock = clock

    def _strategy(self, provider: str) -> CostStrategy | None:
        p = str(provider or "").strip().lower()
        if p in self._strategies:
            return self._strategies[p]
        return strategy_for(p, timeout_seconds=self.settings.cost_timeout_seconds)

    async def sync_connection_costs(self, connection: Connection, now: float | None = None) -> CostSyncResult:
        now_ts = float(now if now is not None else self._clock())
        provider = connection.provider
        strategy = self._strategy(provider)
        if strategy is None:
            return CostSyncResult(success=False, error=f"Cost tracking not supported for provider: {provider}")

        period = current_period(now_ts)
        log = logger.bind(connection_id=connection.id, provider=provider, period=period.label)
        try:
            creds = {name: self.vault.decrypt_optional(env) for name, env in connection.credentials.items()}
            lines = await strategy.fetch(self._client, creds, period)
            counts = {"inserted": 0, "updated": 0, "unchanged": 0}
            for line in lines:
                outcome = await asyncio.to_thread(
                    db.upsert_cost_metric,
                    self.settings,
                    connection_id=connection.id,
                    amount=line.amount,
                    currency=line.currency,
                    period=period.label,
                    transaction_id=line.transaction_id,
                    source_ts=line.source_ts,
                    metadata=line.metadata,
                )
                counts[outcome] += 1
        except Exception as e:
            log.warning("cost_sync_failed", error=f"{type(e).__name__}: {e}")
            return CostSyncResult(success=False, error=f"{provider} cost tracking failed: {type(e).__name__}: {e}")

        total = sum((line.amount for line in lines), Decimal("0"))
        currencies = sorted({line.currency for line in lines}) or ["USD"]
        log.info("cost_sync_complete", lines=len(lines), total=str(total), **counts)
        metadata: dict[str, Any] = {"transactionCount": len(lines), **counts}
        if len(currencies) > 1:
            metadata["currencies"] = currencies
        if not lines and isinstance(strategy, NoCostTracking):
            metadata["note"] = f"{provider} cost tracking not implemented"
        return CostSyncResult(
            success=True,
            cost_data={
                "provider": provider,
                "amount": total,
                "currency": currencies[0],
                "period": period.label,
                "metadata": metadata,
            },
        )

    async def sync_all(self, now: float | None = None) -> dict[str, CostSyncResult]:
        """
        Reconcile every active connection whose provider has cost tracking.
        One connection's failure is reported in its result and never stops
        the rest.
        """
        connections = await asyncio.to_thread(db.list_connections, self.settings, active_only=True)
        trackable = [c for c in connections if self._strategy(c.provider) is not None]
        sem = asyncio.Semaphore(COST_SYNC_CONCURRENCY)

        async def _one(connection: Connection) -> CostSyncResult:
            async with sem:
                return await self.sync_connection_costs(connection, now=now)

        synced = await asyncio.gather(*(_one(c) for c in trackable))
        results = {c.id: r for c, r in zip(trackable, synced)}
        ok = sum(1 for r in results.values() if r.success)
        logger.info(
            "cost_sync_all_complete",
            connections=len(results),
            skipped=len(connections) - len(trackable),
            successful=ok,
        )
        return results
