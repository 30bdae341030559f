from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from api_pulse import db
from api_pulse.costs import COST_SYNC_CONCURRENCY, CostAggregator, current_period
from api_pulse.settings import Settings
from api_pulse.vault import CredentialVault

from conftest import make_connection


NOW = datetime(2024, 5, 17, 12, 0, tzinfo=timezone.utc).timestamp()


def _stripe_handler(seen: list[httpx.Request]):
    pages = {
        None: {"data": [{"id": "txn_1", "fee": 59, "currency": "usd", "created": 1715000000}, {"id": "txn_2", "fee": 30, "currency": "usd", "created": 1715000100}], "has_more": True},
        "txn_2": {"data": [{"id": "txn_3", "fee": 100, "currency": "usd", "created": 1715000200}], "has_more": False},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        assert request.url.path == "/v1/balance_transactions"
        assert request.headers["Authorization"] == "Bearer sk_test_secret"
        return httpx.Response(200, json=pages[request.url.params.get("starting_after")])

    return handler


def test_current_period_bounds() -> None:
    p = current_period(NOW)
    assert p.label == "2024-05"
    assert p.start == datetime(2024, 5, 1, tzinfo=timezone.utc)
    assert p.end.day == 31


@pytest.mark.asyncio
async def test_stripe_sync_is_idempotent(settings: Settings, vault: CredentialVault, user_id: str) -> None:
    conn = make_connection(settings, vault, user_id, secrets={"secret_key": "sk_test_secret"})
    seen: list[httpx.Request] = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_stripe_handler(seen))) as client:
        agg = CostAggregator(settings, vault, client)
        first = await agg.sync_connection_costs(conn, now=NOW)
        second = await agg.sync_connection_costs(conn, now=NOW)

    assert first.success is True
    assert first.cost_data["amount"] == Decimal("1.89")
    assert first.cost_data["period"] == "2024-05"
    assert first.cost_data["metadata"]["inserted"] == 3
    assert second.success is True
    assert second.cost_data["metadata"]["inserted"] == 0
    assert second.cost_data["metadata"]["unchanged"] == 3

    rows = db.list_cost_metrics(settings, connection_id=conn.id, period="2024-05")
    assert sorted(r.transaction_id for r in rows) == ["txn_1", "txn_2", "txn_3"]
    assert len(seen) == 4
    assert seen[0].url.params["created[gte]"] == str(int(current_period(NOW).start.timestamp()))


@pytest.mark.asyncio
async def test_twilio_sync_keys_by_category_and_date(settings: Settings, vault: CredentialVault, user_id: str) -> None:
    conn = make_connection(
        settings, vault, user_id, provider="twilio", secrets={"account_sid": "AC123", "auth_token": "tok"}
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/2010-04-01/Accounts/AC123/Usage/Records.json"
        assert request.headers["Authorization"].startswith("Basic ")
        return httpx.Response(
            200,
            json={
                "usage_records": [
                    {"category": "sms", "start_date": "2024-05-01", "price": "1.25", "price_unit": "usd"},
                    {"category": "calls", "start_date": "2024-05-01", "price": "0.75", "price_unit": "usd"},
                ],
                "next_page_uri": None,
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        agg = CostAggregator(settings, vault, client)
        await agg.sync_connection_costs(conn, now=NOW)
        result = await agg.sync_connection_costs(conn, now=NOW)

    assert result.success is True
    assert result.cost_data["amount"] == Decimal("2.00")
    rows = db.list_cost_metrics(settings, connection_id=conn.id)
    assert sorted(r.transaction_id for r in rows) == ["calls:2024-05-01", "sms:2024-05-01"]


@pytest.mark.asyncio
async def test_no_tracking_and_unsupported_providers(settings: Settings, vault: CredentialVault, user_id: str) -> None:
    gh = make_connection(settings, vault, user_id, provider="github", secrets={"token": "ghp"})
    custom = make_connection(settings, vault, user_id, provider="custom", secrets={"api_key": "k"})

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no outbound call expected")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        agg = CostAggregator(settings, vault, client)
        gh_result = await agg.sync_connection_costs(gh, now=NOW)
        custom_result = await agg.sync_connection_costs(custom, now=NOW)

    assert gh_result.success is True
    assert gh_result.cost_data["amount"] == Decimal("0")
    assert db.list_cost_metrics(settings, connection_id=gh.id) == []
    assert custom_result.to_dict() == {"success": False, "error": "Cost tracking not supported for provider: custom"}


@pytest.mark.asyncio
async def test_sync_all_isolates_failures(settings: Settings, vault: CredentialVault, user_id: str) -> None:
    stripe = make_connection(settings, vault, user_id, secrets={"secret_key": "sk_test_secret"})
    twilio = make_connection(settings, vault, user_id, provider="twilio", secrets={"account_sid": "AC9", "auth_token": "t"})
    seen: list[httpx.Request] = []
    stripe_handler = _stripe_handler(seen)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.twilio.com":
            return httpx.Response(401, json={"message": "Authenticate"})
        return stripe_handler(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        results = await CostAggregator(settings, vault, client).sync_all(now=NOW)

    assert results[stripe.id].success is True
    assert results[twilio.id].success is False
    assert results[twilio.id].error.startswith("twilio cost tracking failed")
    assert len(db.list_cost_metrics(settings, connection_id=stripe.id)) == 3


@pytest.mark.asyncio
async def test_sync_all_skips_providers_without_cost_tracking(
    settings: Settings, vault: CredentialVault, user_id: str
) -> None:
    custom = make_connection(settings, vault, user_id, provider="custom", secrets={"api_key": "k"})
    gh = make_connection(settings, vault, user_id, provider="github", secrets={"token": "ghp"})

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no outbound call expected")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        results = await CostAggregator(settings, vault, client).sync_all(now=NOW)

    assert custom.id not in results
    assert set(results) == {gh.id}
    assert all(r.success for r in results.values())


@pytest.mark.asyncio
async def test_sync_all_runs_connections_concurrently_within_bound(
    settings: Settings, vault: CredentialVault, user_id: str
) -> None:
    for _ in range(COST_SYNC_CONCURRENCY + 2):
        make_connection(settings, vault, user_id, secrets={"secret_key": "sk_test_secret"})
    in_flight = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1
        return httpx.Response(200, json={"data": [], "has_more": False})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        results = await CostAggregator(settings, vault, client).sync_all(now=NOW)

    assert len(results) == COST_SYNC_CONCURRENCY + 2
    assert all(r.success for r in results.values())
    assert 1 < peak <= COST_SYNC_CONCURRENCY
