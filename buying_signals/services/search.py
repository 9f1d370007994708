"""Answer free-text questions over a scope of recorded calls."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Mapping, Sequence

from ..core.errors import TransportError
from ..schemas.search import (
    CallSearchMetadata,
    CallSearchRequest,
    CallSearchResponse,
    CallSearchSource,
)
from . import llm
from .gong import CallFilter, CallRecord, EmailActivityRecord, GongClient, Transcript
from .ranking import select_top_calls
from .scope import CallScope, resolver

logger = logging.getLogger(__name__)

TIME_RANGE_DAYS = {"last30": 30, "last90": 90, "last180": 180, "last365": 365, "all": 3650}
GLOBAL_LOOKBACK_DAYS = 180
SCOPED_LOOKBACK_DAYS = 730
MAX_SELECTED_CALLS = 15
MAX_CALL_SUMMARIES = 50
MAX_EMAIL_SAMPLES = 10
TRANSCRIPT_CHARS = 1500
ANSWER_MAX_TOKENS = 2000


def lookback_days(scope: str, time_range: str | None = None) -> int:
    if time_range in TIME_RANGE_DAYS:
        return TIME_RANGE_DAYS[time_range]
    return GLOBAL_LOOKBACK_DAYS if scope == "global" else SCOPED_LOOKBACK_DAYS


def filter_participants(calls: Sequence[CallRecord], participant_type: str) -> list[CallRecord]:
    if participant_type == "external-only":
        return [call for call in calls if _has_external(call)]
    if participant_type == "internal-only":
        return [call for call in calls if not _has_external(call)]
    return list(calls)


def _has_external(call: CallRecord) -> bool:
    return any(participant.affiliation == "external" for participant in call.participants)


def _call_date(call: CallRecord) -> str:
    return call.occurred_at.date().isoformat() if call.occurred_at else "Unknown"


def build_search_prompt(
    request: CallSearchRequest,
    scoped: Sequence[CallRecord],
    selected: Sequence[CallRecord],
    transcripts: Mapping[str, Transcript],
    emails: Sequence[EmailActivityRecord],
) -> str:
    lines: list[str] = []
    if request.scope == "account":
        lines.append(
            f'You are a sales intelligence analyst. Analyze call data for the account "{request.account_name or "this account"}". '
            "Focus on relationship health, stakeholder patterns, sentiment trends, and key themes across conversations.\n"
        )
    elif request.scope == "opportunity":
        lines.append(
            f'You are a deal coach analyzing call data for the opportunity "{request.opportunity_name or "this deal"}". '
            "Focus on deal progression, objections raised, buying signals, competitive mentions, and recommended next steps.\n"
        )
    else:
        lines.append(
            "You are a sales analytics expert. Analyze call data across all deals. "
            "Focus on cross-deal trends, quantified themes, strategic patterns, and actionable recommendations.\n"
        )
    lines.append(f'User\'s question: "{request.query}"\n')

    if scoped:
        lines.append(f"--- All Calls Analyzed ({len(scoped)} total) ---")
        for index, call in enumerate(scoped[:MAX_CALL_SUMMARIES], start=1):
            duration = f"{round(call.duration / 60)}m" if call.duration else ""
            topics = f" [{', '.join(call.topics)}]" if call.topics else ""
            lines.append(f'{index}. "{call.title}" - {_call_date(call)} {duration}{topics}')
        if len(scoped) > MAX_CALL_SUMMARIES:
            lines.append(f"... and {len(scoped) - MAX_CALL_SUMMARIES} more calls")
        lines.append("")

    if selected:
        lines.append(f"--- Detailed Call Transcripts ({len(selected)} key calls) ---")
        for index, call in enumerate(selected, start=1):
            duration = f"{round(call.duration / 60)} min" if call.duration else ""
            lines.append(f'\n### Call {index}: "{call.title}" - {_call_date(call)} ({duration})')
            names = ", ".join(
                f"{participant.name} ({participant.affiliation})"
                for participant in call.participants
                if participant.name
            )
            if names:
                lines.append(f"Participants: {names}")
            if call.topics:
                lines.append(f"Topics: {', '.join(call.topics)}")
            transcript = transcripts.get(call.id)
            if transcript is not None and transcript.segments:
                lines.append(f"Transcript:\n{transcript.text(TRANSCRIPT_CHARS)}")
        lines.append("")

    if emails:
        opened = sum(1 for email in emails if email.opened)
        clicked = sum(1 for email in emails if email.clicked)
        replied = sum(1 for email in emails if email.replied)
        lines.append(f"--- Email Activity ({len(emails)} tracked emails) ---")
        lines.append(f"Stats: {opened} opened, {clicked} clicked, {replied} replied")
        for email in emails[:MAX_EMAIL_SAMPLES]:
            sent = email.sent_at.date().isoformat() if email.sent_at else "Unknown"
            status = "[replied]" if email.replied else "[opened]" if email.opened else ""
            lines.append(f'- "{email.subject}" ({sent}) {status}'.rstrip())
        lines.append("")

    lines.append(
        "---\nIMPORTANT: Answer based ONLY on the data provided above. Cite specific calls by name and date "
        "when referencing insights. Do NOT fabricate or guess information not present in the data. "
        "If the data is insufficient to answer the question, say so clearly. Provide a structured, actionable answer."
    )
    return "\n".join(lines)


async def search_calls(client: GongClient, request: CallSearchRequest) -> CallSearchResponse:
    """Fetch, scope, rank, and summarize calls to answer ``request.query``.

    Provider errors while listing or detailing calls propagate; email activity
    is best effort.
    """

    days = lookback_days(request.scope, request.filters.time_range)
    now = datetime.now(timezone.utc)
    window = CallFilter(from_datetime=now - timedelta(days=days), to_datetime=now)
    participant_type = request.filters.participant_type

    calls = await client.fetch_calls(window)
    logger.info("Call search scope=%s lookback=%sd fetched=%s", request.scope, days, len(calls))

    scoped = calls
    if calls and (request.scope != "global" or participant_type != "all"):
        detailed = await client.fetch_extensive([call.id for call in calls])
        scoped = [detailed.get(call.id, call) for call in calls]
        if request.scope != "global":
            scope = CallScope(
                account_id=request.account_id,
                opportunity_id=request.opportunity_id,
                account_name=request.account_name,
                opportunity_name=request.opportunity_name,
            )
            tier, scoped = resolver.resolve_with_tier(scoped, scope)
            logger.info("Scoped %s calls via %s", len(scoped), tier or "no match")

    scoped = filter_participants(scoped, participant_type)
    selected = select_top_calls(scoped, request.query, MAX_SELECTED_CALLS, now=now)
    transcripts = await client.fetch_transcripts([call.id for call in selected]) if selected else {}

    emails: list[EmailActivityRecord] = []
    try:
        emails = await client.fetch_email_activity(window)
    except TransportError as exc:
        logger.warning("Email activity fetch failed: %s", exc)

    prompt = build_search_prompt(request, scoped, selected, transcripts, emails)
    answer = await llm.analyze(prompt, ANSWER_MAX_TOKENS)

    return CallSearchResponse(
        answer=answer,
        sources=[
            CallSearchSource(id=call.id, title=call.title, date=call.occurred_at, url=call.url)
            for call in selected
        ],
        metadata=CallSearchMetadata(
            calls_analyzed=len(scoped),
            transcripts_fetched=len(transcripts),
            emails_analyzed=len(emails),
            lookback_days=days,
            generated_at=datetime.now(timezone.utc),
        ),
    )
