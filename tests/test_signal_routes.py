from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from buying_signals.db.session import get_session
from buying_signals.main import app
from buying_signals.schemas.signals import DealSignal
from buying_signals.services import call_signals, orchestrator
from buying_signals.services.cache import signal_cache


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_opportunity_signals_served_from_cache(client) -> None:
    signal_cache.set(
        call_signals.CALL_SIGNALS_NAMESPACE,
        "006A",
        DealSignal(opportunity_id="006A", opportunity_name="Acme renewal", account_id="001A", account_name="Acme", summary="hot"),
    )

    response = await client.post("/api/signals/opportunities", json={"opportunities": [{"opportunity_id": "006A"}]})

    assert response.status_code == 200
    assert [signal["summary"] for signal in response.json()["signals"]] == ["hot"]


@pytest.mark.asyncio
async def test_opportunity_request_is_capped(client) -> None:
    payload = {"opportunities": [{"opportunity_id": f"006{index}"} for index in range(21)]}

    response = await client.post("/api/signals/opportunities", json=payload)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_account_news_for_unknown_account(client) -> None:
    response = await client.get("/api/signals/accounts/001Z/news")

    assert response.status_code == 200
    assert response.json()["result"]["summary"] == "Account name is unknown."


@pytest.mark.asyncio
async def test_manual_run_returns_summary(client, monkeypatch) -> None:
    run_at = datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc)
    result = orchestrator.BatchRunResult(run_at=run_at, call_signal_count=3, errors=["News batch error: no key"])
    monkeypatch.setattr(orchestrator, "run_nightly", AsyncMock(return_value=result))

    response = await client.post("/api/signals/run")

    body = response.json()
    assert response.status_code == 200
    assert body["call_signal_count"] == 3
    assert body["status"] == "partial"
    assert body["errors"] == ["News batch error: no key"]
