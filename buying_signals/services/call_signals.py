"""Call-derived buying signals: transcript analysis and the on-demand lookup."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import ConfigurationError, ParseError, PersistenceError, TransportError
from ..models.signal import SignalSource
from ..repositories import account_names as account_names_repo
from ..repositories import signals as signals_repo
from ..schemas.signals import DealSignal, OpportunityRef, SignalIndicator, StoredSignal
from . import llm
from .cache import signal_cache
from .gong import CallFilter, CallRecord, GongClient, Transcript, create_client
from .ranking import UNDATED
from .scope import CallScope, resolver

logger = logging.getLogger(__name__)

CALL_SIGNALS_NAMESPACE = "call-signals"
LOOKUP_WINDOW = timedelta(days=90)
LOOKUP_MAX_CALLS = 1000
CALLS_PER_DEAL = 5
TRANSCRIPT_CHARS_PER_CALL = 1500
ANALYSIS_MAX_TOKENS = 1500

DEAL_SIGNAL_TYPES = (
    "budget-confirmed|timeline-pressure|champion-identified|multi-threading|"
    "competitive-threat|decision-process-revealed|positive-momentum|objection-surfaced"
)


def most_recent(calls: Sequence[CallRecord], limit: int = CALLS_PER_DEAL) -> list[CallRecord]:
    """Return the ``limit`` latest calls by start time."""

    return sorted(calls, key=lambda call: call.occurred_at or UNDATED, reverse=True)[:limit]


def build_deal_prompt(opportunity_name: str, account_name: str, transcript_text: str) -> str:
    return f"""Analyze these sales call transcripts for deal "{opportunity_name}" (Account: {account_name}) and identify buying signals and risk indicators.

{transcript_text}

Return ONLY a JSON object with no extra text:
{{
  "signals": [
    {{
      "type": "{DEAL_SIGNAL_TYPES}",
      "confidence": "high|medium|low",
      "evidence": "Brief quote or observation from the transcript",
      "callTitle": "Which call this was detected in"
    }}
  ],
  "momentum": "accelerating|steady|stalling|unknown",
  "summary": "One sentence overall assessment"
}}"""


def _indicator(raw: Mapping[str, Any]) -> SignalIndicator:
    return SignalIndicator(
        type=raw.get("type") or "unknown",
        confidence=raw.get("confidence"),
        evidence=raw.get("evidence") or "",
        call_title=raw.get("callTitle") or raw.get("call_title") or "",
    )


async def analyze_deal_transcripts(
    opportunity_id: str,
    opportunity_name: str,
    account_id: str,
    account_name: str,
    calls: Sequence[CallRecord],
    transcripts: Mapping[str, Transcript],
) -> DealSignal | None:
    """Ask the model for buying signals across one deal's transcripts.

    Returns ``None`` when no call has a transcript, analysis is not configured,
    or the output cannot be parsed.
    """

    sections: list[str] = []
    analyzed: list[CallRecord] = []
    for call in calls:
        transcript = transcripts.get(call.id)
        if transcript is None or not transcript.segments:
            continue
        analyzed.append(call)
        sections.append(f"\n--- Call: {call.title} ---\n{transcript.text(TRANSCRIPT_CHARS_PER_CALL)}\n")

    if not analyzed:
        return None

    prompt = build_deal_prompt(opportunity_name, account_name, "".join(sections))
    response = await llm.analyze(prompt, ANALYSIS_MAX_TOKENS)
    if llm.is_not_configured(response):
        return None

    try:
        parsed = llm.extract_json_object(response)
    except ParseError as exc:
        logger.warning("Unparsable deal analysis for %s: %s", opportunity_id, exc)
        return None

    raw_signals = parsed.get("signals")
    dates = [call.occurred_at for call in analyzed if call.occurred_at]
    return DealSignal(
        opportunity_id=opportunity_id,
        opportunity_name=opportunity_name,
        account_id=account_id,
        account_name=account_name,
        signals=[_indicator(item) for item in raw_signals if isinstance(item, Mapping)]
        if isinstance(raw_signals, list)
        else [],
        momentum=parsed.get("momentum"),
        summary=parsed.get("summary") or "",
        call_count=len(analyzed),
        last_call_date=max(dates) if dates else None,
    )


def to_stored_signal(signal: DealSignal, *, ttl: timedelta | None = None) -> StoredSignal:
    expires_in = ttl or timedelta(hours=settings.signal_ttl_hours)
    return StoredSignal(
        account_id=signal.account_id,
        account_name=signal.account_name,
        opportunity_id=signal.opportunity_id,
        opportunity_name=signal.opportunity_name,
        source=SignalSource.CALL,
        payload=signal.model_dump(mode="json"),
        expires_at=datetime.now(timezone.utc) + expires_in,
    )


async def get_opportunity_signals(
    session: AsyncSession,
    opportunities: Sequence[OpportunityRef],
    *,
    client: GongClient | None = None,
) -> list[DealSignal]:
    """Return deal signals for the given opportunities.

    Each opportunity is served from the in-memory cache, then from fresh store
    rows, and only then analysed live. Failures degrade to fewer results.
    """

    found: dict[str, DealSignal] = {}
    pending: list[OpportunityRef] = []
    for ref in opportunities:
        cached = signal_cache.get(CALL_SIGNALS_NAMESPACE, ref.opportunity_id)
        if cached is not None:
            found[ref.opportunity_id] = cached
        else:
            pending.append(ref)

    await _remember_accounts(session, opportunities)

    if pending:
        try:
            stored = await signals_repo.get_by_opportunity_ids(
                session, [ref.opportunity_id for ref in pending], source=SignalSource.CALL
            )
        except PersistenceError as exc:
            logger.warning("Signal store read failed; analysing live: %s", exc)
            stored = []
        for row in stored:
            if row.opportunity_id in found:
                continue
            signal = DealSignal.model_validate(row.payload)
            found[row.opportunity_id] = signal
            signal_cache.set(CALL_SIGNALS_NAMESPACE, row.opportunity_id, signal, settings.lookup_cache_ttl_seconds)
        pending = [ref for ref in pending if ref.opportunity_id not in found]

    if pending:
        for signal in await _analyze_live(session, pending, client):
            found[signal.opportunity_id] = signal

    return [found[ref.opportunity_id] for ref in opportunities if ref.opportunity_id in found]


async def _remember_accounts(session: AsyncSession, opportunities: Sequence[OpportunityRef]) -> None:
    accounts = [
        account_names_repo.AccountName(
            account_id=ref.account_id,
            account_name=ref.account_name,
            owner_id=ref.owner_id,
        )
        for ref in opportunities
        if ref.account_id and ref.account_name
    ]
    if not accounts:
        return
    try:
        await account_names_repo.cache_account_names(session, accounts)
        await session.commit()
    except (PersistenceError, SQLAlchemyError) as exc:
        await session.rollback()
        logger.warning("Account directory update failed: %s", exc)


async def _analyze_live(
    session: AsyncSession,
    pending: Sequence[OpportunityRef],
    client: GongClient | None,
) -> list[DealSignal]:
    owns_client = client is None
    if client is None:
        try:
            client = create_client()
        except ConfigurationError as exc:
            logger.warning("Live deal analysis skipped: %s", exc)
            return []

    try:
        return await _run_pipeline(session, pending, client)
    except TransportError as exc:
        logger.error("Live deal analysis failed: %s", exc)
        return []
    finally:
        if owns_client:
            await client.aclose()


async def _run_pipeline(
    session: AsyncSession,
    pending: Sequence[OpportunityRef],
    client: GongClient,
) -> list[DealSignal]:
    now = datetime.now(timezone.utc)
    listed = await client.fetch_calls(
        CallFilter(from_datetime=now - LOOKUP_WINDOW, to_datetime=now),
        max_calls=LOOKUP_MAX_CALLS,
    )
    if not listed:
        return []
    detailed = await client.fetch_extensive([call.id for call in listed])
    candidates = [detailed.get(call.id, call) for call in listed]

    selections: dict[str, list[CallRecord]] = {}
    for ref in pending:
        scope = CallScope(
            account_id=ref.account_id,
            opportunity_id=ref.opportunity_id,
            account_name=ref.account_name,
            opportunity_name=ref.opportunity_name,
        )
        tier, matched = resolver.resolve_with_tier(candidates, scope)
        if matched:
            logger.info("Resolved %s calls for %s via %s", len(matched), ref.opportunity_id, tier)
            selections[ref.opportunity_id] = most_recent(matched)

    if not selections:
        return []

    transcripts = await client.fetch_transcripts(
        [call.id for calls in selections.values() for call in calls]
    )

    results: list[DealSignal] = []
    for ref in pending:
        calls = selections.get(ref.opportunity_id)
        if not calls:
            continue
        try:
            signal = await analyze_deal_transcripts(
                ref.opportunity_id,
                ref.opportunity_name or ref.opportunity_id,
                ref.account_id or "",
                ref.account_name or "Unknown",
                calls,
                transcripts,
            )
        except llm.LLMUnavailableError as exc:
            logger.error("Deal analysis unavailable for %s: %s", ref.opportunity_id, exc)
            continue
        if signal is not None:
            results.append(signal)

    if results:
        try:
            await signals_repo.upsert_signals(
                session, [to_stored_signal(signal) for signal in results if signal.account_id]
            )
            await session.commit()
        except (PersistenceError, SQLAlchemyError) as exc:
            await session.rollback()
            logger.warning("Could not store live deal signals: %s", exc)
    for signal in results:
        signal_cache.set(CALL_SIGNALS_NAMESPACE, signal.opportunity_id, signal, settings.lookup_cache_ttl_seconds)
    return results
