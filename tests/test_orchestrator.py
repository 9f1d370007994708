"""Nightly batch tests with a mocked provider and an in-memory store."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from buying_signals.models.signal import SignalSource
from buying_signals.repositories import account_names as account_names_repo
from buying_signals.repositories import admin_settings as admin_settings_repo
from buying_signals.repositories import signals as signals_repo
from buying_signals.schemas.signals import BuyingSignalConfig, NewsSearchResult, NewsSignal
from buying_signals.services import gong, llm, news_signals, orchestrator

ANALYSIS = json.dumps(
    {
        "signals": [
            {"type": "budget-confirmed", "confidence": "high", "evidence": "Budget approved", "callTitle": "Kickoff"}
        ],
        "momentum": "accelerating",
        "summary": "Deal is moving.",
    }
)


async def _seed(session_factory, config: BuyingSignalConfig, accounts=()) -> None:
    async with session_factory() as session:
        await admin_settings_repo.set_buying_signal_config(session, config, updated_by="test")
        if accounts:
            await account_names_repo.cache_account_names(session, list(accounts))
        await session.commit()


@pytest.mark.asyncio
async def test_missing_news_credential_still_persists_call_signals(session_factory, monkeypatch, make_gong_client) -> None:
    monkeypatch.setattr(news_signals.settings, "brave_api_key", "", raising=False)
    monkeypatch.setattr(llm, "analyze", AsyncMock(return_value=ANALYSIS))
    await _seed(
        session_factory,
        BuyingSignalConfig(news_search_enabled=True),
        [account_names_repo.AccountName("001A", "Acme")],
    )

    async with make_gong_client([("c1", "006A", "001A"), ("c2", "006A", "001A")]) as client:
        result = await orchestrator.run_nightly(session_factory, client=client, sleep=AsyncMock())

    assert result.call_signal_count == 1
    assert result.news_signal_count == 0
    assert result.status == "partial"
    assert len(result.errors) == 1
    assert result.errors[0].startswith("News batch error")

    async with session_factory() as session:
        stored = await signals_repo.get_by_opportunity_ids(session, ["006A"], source=SignalSource.CALL)
        config = await admin_settings_repo.get_buying_signal_config(session)

    assert len(stored) == 1
    assert stored[0].account_name == "Acme"
    assert stored[0].payload["call_count"] == 2
    assert stored[0].payload["signals"][0]["call_title"] == "Kickoff"
    assert config.last_run_status == "partial"
    assert config.last_run_at is not None


@pytest.mark.asyncio
async def test_failed_opportunity_does_not_stop_others(session_factory, monkeypatch, make_gong_client) -> None:
    async def fake_analyze(prompt: str, max_tokens: int) -> str:
        if '"006A"' in prompt:
            raise RuntimeError("model exploded")
        return ANALYSIS

    monkeypatch.setattr(llm, "analyze", fake_analyze)
    await _seed(session_factory, BuyingSignalConfig())

    async with make_gong_client([("c1", "006A", "001A"), ("c2", "006B", "001B")]) as client:
        result = await orchestrator.run_nightly(session_factory, client=client, sleep=AsyncMock())

    assert result.call_signal_count == 1
    assert result.errors == []
    assert result.status == "success"

    async with session_factory() as session:
        stored = await signals_repo.get_all_fresh(session, source=SignalSource.CALL)

    assert [row.opportunity_id for row in stored] == ["006B"]


@pytest.mark.asyncio
async def test_entity_cap_limits_opportunities(session_factory, monkeypatch, make_gong_client) -> None:
    analyze = AsyncMock(return_value=ANALYSIS)
    monkeypatch.setattr(llm, "analyze", analyze)
    await _seed(session_factory, BuyingSignalConfig(max_entities_per_run=2))

    calls = [(f"c{index}", f"006{index}", "001A") for index in range(4)]
    async with make_gong_client(calls) as client:
        result = await orchestrator.run_nightly(session_factory, client=client, sleep=AsyncMock())

    assert result.call_signal_count == 2
    assert analyze.await_count == 2


@pytest.mark.asyncio
async def test_missing_provider_credentials_are_a_call_phase_error(session_factory, monkeypatch) -> None:
    monkeypatch.setattr(gong.settings, "gong_access_key", "", raising=False)
    await _seed(session_factory, BuyingSignalConfig())

    result = await orchestrator.run_nightly(session_factory, sleep=AsyncMock())

    assert result.call_signal_count == 0
    assert [error.split(":")[0] for error in result.errors] == ["Call batch error"]
    assert result.status == "partial"


@pytest.mark.asyncio
async def test_stop_event_aborts_before_phases(session_factory) -> None:
    stop = asyncio.Event()
    stop.set()
    client = AsyncMock()

    result = await orchestrator.run_nightly(session_factory, client=client, stop_event=stop, sleep=AsyncMock())

    assert result.aborted is True
    assert result.call_signal_count == 0
    client.fetch_calls.assert_not_awaited()


@pytest.mark.asyncio
async def test_news_phase_pauses_between_accounts(session_factory, monkeypatch) -> None:
    search = AsyncMock(
        return_value=NewsSearchResult(
            signals=[NewsSignal(category="funding", headline="Raises Series B", relevance="high", score=100)],
            summary="Funding news.",
        )
    )
    monkeypatch.setattr(news_signals, "search_news_for_account", search)
    sleep = AsyncMock()
    config = BuyingSignalConfig(news_search_enabled=True, provider_api_key="brave-key")
    await _seed(
        session_factory,
        config,
        [
            account_names_repo.AccountName("001A", "Acme"),
            account_names_repo.AccountName("001B", "Globex"),
            account_names_repo.AccountName("001C", "Initech"),
        ],
    )

    async with session_factory() as session:
        stored = await news_signals.run_news_phase(session, config, sleep=sleep)
        rows = await signals_repo.get_all_fresh(session, source=SignalSource.NEWS)

    assert stored == 3
    assert len(rows) == 3
    assert search.await_count == 3
    assert [call.args for call in sleep.await_args_list] == [(1.0,), (1.0,)]
    assert rows[0].payload["signals"][0]["headline"] == "Raises Series B"


@pytest.mark.asyncio
async def test_news_phase_disabled_is_skipped(session_factory) -> None:
    async with session_factory() as session:
        assert await news_signals.run_news_phase(session, BuyingSignalConfig()) == 0


def test_group_by_opportunity_keeps_first_seen_order() -> None:
    first = gong.CallRecord(id="1", cross_references=gong.CrossReferences(("006B", "006A"), ("001A",)))
    second = gong.CallRecord(id="2", cross_references=gong.CrossReferences(("006A",), ()))
    unlinked = gong.CallRecord(id="3")

    groups = orchestrator.group_by_opportunity([first, second, unlinked])

    assert list(groups) == ["006B", "006A"]
    assert [call.id for call in groups["006A"].calls] == ["1", "2"]
    assert groups["006A"].account_id == "001A"


@pytest.mark.asyncio
async def test_scheduler_not_started_when_disabled(session_factory, engine) -> None:
    await _seed(session_factory, BuyingSignalConfig(enabled=False))

    assert await orchestrator.initialize_scheduler(session_factory, bind=engine) is None


@pytest.mark.asyncio
async def test_scheduler_falls_back_to_default_schedule(session_factory, engine) -> None:
    await _seed(session_factory, BuyingSignalConfig(schedule="whenever"))

    timer = await orchestrator.initialize_scheduler(session_factory, bind=engine)
    try:
        assert timer is not None
        assert timer.running
        assert timer.schedule == "0 2 * * *"
    finally:
        await timer.stop()
