"""Nightly signal batch and its scheduler.

A run has three strictly sequential phases: expiry sweep, call-derived
signals, news-derived signals. A failing phase is logged and recorded in the
run summary and the next phase still runs. A stop event is honoured between
phases and between items; requests already in flight are not cancelled.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..core.errors import ConfigurationError, PersistenceError
from ..db.session import SessionLocal, init_signal_tables
from ..repositories import account_names as account_names_repo
from ..repositories import admin_settings as admin_settings_repo
from ..repositories import signals as signals_repo
from ..schemas.signals import BuyingSignalConfig, StoredSignal
from . import call_signals, news_signals
from .cron import RecurringTimer, resolve_schedule
from .gong import CallFilter, CallRecord, GongClient, create_client

logger = logging.getLogger(__name__)

BATCH_WINDOW = timedelta(days=30)
BATCH_MAX_CALLS = 2000

SessionFactory = async_sessionmaker[AsyncSession]


@dataclass
class BatchRunResult:
    run_at: datetime
    call_signal_count: int = 0
    news_signal_count: int = 0
    errors: list[str] = field(default_factory=list)
    aborted: bool = False

    @property
    def status(self) -> str:
        return "success" if not self.errors else "partial"


@dataclass
class OpportunityCalls:
    opportunity_id: str
    account_id: str = ""
    calls: list[CallRecord] = field(default_factory=list)


def group_by_opportunity(calls: Sequence[CallRecord]) -> dict[str, OpportunityCalls]:
    """Group calls under every opportunity they reference, in first-seen order."""

    groups: dict[str, OpportunityCalls] = {}
    for call in calls:
        refs = call.cross_references
        if refs is None:
            continue
        account_id = refs.account_ids[0] if refs.account_ids else ""
        for opportunity_id in refs.opportunity_ids:
            group = groups.setdefault(opportunity_id, OpportunityCalls(opportunity_id, account_id))
            if not group.account_id:
                group.account_id = account_id
            group.calls.append(call)
    return groups


def _stopped(stop_event: asyncio.Event | None) -> bool:
    return stop_event is not None and stop_event.is_set()


async def run_call_phase(
    session: AsyncSession,
    config: BuyingSignalConfig,
    *,
    client: GongClient | None = None,
    stop_event: asyncio.Event | None = None,
) -> int:
    """Analyse recent calls per opportunity and store one signal for each.

    Raises :class:`ConfigurationError` when provider credentials are missing.
    """

    owns_client = client is None
    if client is None:
        client = create_client()
    try:
        now = datetime.now(timezone.utc)
        listed = await client.fetch_calls(
            CallFilter(from_datetime=now - BATCH_WINDOW, to_datetime=now),
            max_calls=BATCH_MAX_CALLS,
        )
        if not listed:
            logger.info("No calls in the last %s days", BATCH_WINDOW.days)
            return 0
        detailed = await client.fetch_extensive([call.id for call in listed])
        calls = [detailed.get(call.id, call) for call in listed]

        groups = list(group_by_opportunity(calls).values())[: config.max_entities_per_run]
        if not groups:
            logger.info("No opportunity-linked calls in %s recent calls", len(calls))
            return 0
        selections = {group.opportunity_id: call_signals.most_recent(group.calls) for group in groups}
        transcripts = await client.fetch_transcripts(
            [call.id for selected in selections.values() for call in selected]
        )
    finally:
        if owns_client:
            await client.aclose()

    names = {account.account_id: account.account_name for account in await account_names_repo.list_account_names(session)}
    to_store: list[StoredSignal] = []
    for group in groups:
        if _stopped(stop_event):
            logger.info("Call phase stopped after %s opportunities", len(to_store))
            break
        try:
            signal = await call_signals.analyze_deal_transcripts(
                group.opportunity_id,
                group.opportunity_id,
                group.account_id,
                names.get(group.account_id, "Unknown"),
                selections[group.opportunity_id],
                transcripts,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Deal analysis failed for %s", group.opportunity_id)
            continue
        if signal is not None:
            to_store.append(call_signals.to_stored_signal(signal))

    if to_store:
        await signals_repo.upsert_signals(session, to_store)
        await session.commit()
    return len(to_store)


async def _run_phase(label: str, result: BatchRunResult, run: Callable[[], Awaitable[int]]) -> int:
    try:
        count = await run()
    except ConfigurationError as exc:
        logger.warning("%s skipped: %s", label, exc)
        result.errors.append(f"{label} error: {exc}")
        return 0
    except Exception as exc:  # noqa: BLE001
        logger.exception("%s failed", label)
        result.errors.append(f"{label} error: {exc}")
        return 0
    logger.info("%s complete: %s signals stored", label, count)
    return count


async def _load_config(session_factory: SessionFactory) -> BuyingSignalConfig:
    try:
        async with session_factory() as session:
            return await admin_settings_repo.get_buying_signal_config(session)
    except PersistenceError as exc:
        logger.warning("Using default buying signal config: %s", exc)
        return BuyingSignalConfig()


async def run_nightly(
    session_factory: SessionFactory = SessionLocal,
    *,
    client: GongClient | None = None,
    stop_event: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> BatchRunResult:
    """Run sweep, call, and news phases once and record the outcome."""

    result = BatchRunResult(run_at=datetime.now(timezone.utc))
    logger.info("Nightly signal batch starting at %s", result.run_at.isoformat())

    async def sweep() -> int:
        async with session_factory() as session:
            removed = await signals_repo.sweep_expired(session)
            await session.commit()
            return removed

    try:
        await sweep()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Expired signal sweep failed")
        result.errors.append(f"Sweep error: {exc}")

    config = await _load_config(session_factory)

    async def calls_phase() -> int:
        async with session_factory() as session:
            return await run_call_phase(session, config, client=client, stop_event=stop_event)

    async def news_phase() -> int:
        async with session_factory() as session:
            return await news_signals.run_news_phase(session, config, sleep=sleep, stop_event=stop_event)

    if _stopped(stop_event):
        result.aborted = True
    else:
        result.call_signal_count = await _run_phase("Call batch", result, calls_phase)

    if _stopped(stop_event):
        result.aborted = True
    else:
        result.news_signal_count = await _run_phase("News batch", result, news_phase)

    try:
        async with session_factory() as session:
            current = await admin_settings_repo.get_buying_signal_config(session)
            await admin_settings_repo.set_buying_signal_config(
                session,
                current.model_copy(update={"last_run_at": result.run_at, "last_run_status": result.status}),
                updated_by="system",
            )
            await session.commit()
    except Exception:  # noqa: BLE001
        logger.exception("Could not record nightly run status")

    logger.info(
        "Nightly signal batch finished: calls=%s news=%s errors=%s%s",
        result.call_signal_count,
        result.news_signal_count,
        len(result.errors),
        " (aborted)" if result.aborted else "",
    )
    return result


async def initialize_scheduler(
    session_factory: SessionFactory = SessionLocal,
    *,
    bind: AsyncEngine | None = None,
) -> RecurringTimer | None:
    """Create tables and start the nightly timer unless the batch is disabled."""

    await init_signal_tables(bind)
    config = await _load_config(session_factory)
    if not config.enabled:
        logger.info("Buying signals disabled; scheduler not started")
        return None

    schedule = resolve_schedule(config.schedule)
    timer = RecurringTimer(schedule, lambda: run_nightly(session_factory))
    timer.start()
    logger.info("Scheduled nightly signal batch with cron %r", schedule)
    return timer
