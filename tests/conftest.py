"""Shared fixtures: an in-memory SQLite signal store and a clean lookup cache."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from buying_signals.db.session import init_signal_tables
from buying_signals.services.cache import signal_cache
from buying_signals.services.gong import GongClient, PacingGate


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_signal_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def clear_signal_cache():
    signal_cache.clear()
    yield
    signal_cache.clear()


def _provider_transport(calls: list[tuple[str, str, str]]) -> httpx.MockTransport:
    """Serve (call id, opportunity id, account id) triples from every provider endpoint."""

    started = (datetime.now(timezone.utc) - timedelta(days=2)).isoformat()

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/calls") and request.method == "GET":
            return httpx.Response(
                200, json={"calls": [{"id": call_id, "title": "Kickoff", "started": started} for call_id, _, _ in calls]}
            )
        if path.endswith("/calls/extensive"):
            return httpx.Response(
                200,
                json={
                    "calls": [
                        {
                            "metaData": {"id": call_id, "title": "Kickoff", "started": started},
                            "context": [
                                {
                                    "objects": [
                                        {"objectType": "Opportunity", "objectId": opportunity_id},
                                        {"objectType": "Account", "objectId": account_id},
                                    ]
                                }
                            ],
                        }
                        for call_id, opportunity_id, account_id in calls
                    ]
                },
            )
        if path.endswith("/calls/transcript"):
            ids = json.loads(request.content)["filter"]["callIds"]
            return httpx.Response(
                200,
                json={
                    "callTranscripts": [
                        {
                            "callId": call_id,
                            "transcript": [
                                {"speakerId": "s1", "sentences": [{"start": 0, "end": 5, "text": "Budget is approved."}]}
                            ],
                        }
                        for call_id in ids
                    ]
                },
            )
        if path.endswith("/engage/emails"):
            return httpx.Response(200, json={"emails": []})
        return httpx.Response(404, text="unexpected path")

    return httpx.MockTransport(handler)


@pytest.fixture
def make_gong_client():
    """Build a provider client backed by canned calls and no pacing."""

    def factory(calls: list[tuple[str, str, str]]) -> GongClient:
        return GongClient(
            "access",
            "secret",
            base_url="https://gong.test/v2",
            transport=_provider_transport(calls),
            gate=PacingGate(interval=0),
        )

    return factory
