"""Rank calls against a query and pick a temporally representative subset."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from .gong import CallRecord

TOPIC_TERM_POINTS = 10
TITLE_TERM_POINTS = 5
MAX_RECENCY_POINTS = 20
RECENCY_DECAY_DAYS = 36.5  # 20 points spread over 730 days
MAX_DURATION_POINTS = 10
MINUTES_PER_DURATION_POINT = 6

UNDATED = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(slots=True)
class ScoredCall:
    call: CallRecord
    score: float
    quarter: str


def query_terms(query: str) -> list[str]:
    return [term for term in query.lower().split() if len(term) > 2]


def quarter_key(value: datetime) -> str:
    return f"{value.year}-Q{(value.month - 1) // 3 + 1}"


def score_call(call: CallRecord, terms: Sequence[str], now: datetime) -> float:
    score = 0.0

    if call.topics and terms:
        topics = " ".join(call.topics).lower()
        score += sum(TOPIC_TERM_POINTS for term in terms if term in topics)

    title = call.title.lower()
    score += sum(TITLE_TERM_POINTS for term in terms if term in title)

    age_days = (now - (call.occurred_at or UNDATED)).total_seconds() / 86400
    score += max(0.0, MAX_RECENCY_POINTS - age_days / RECENCY_DECAY_DAYS)

    minutes = (call.duration or 0) / 60
    score += min(MAX_DURATION_POINTS, minutes / MINUTES_PER_DURATION_POINT)
    return score


def rank_calls(calls: Sequence[CallRecord], query: str, *, now: datetime | None = None) -> list[ScoredCall]:
    """Score calls and sort descending; ties keep the input order."""

    current = now or datetime.now(timezone.utc)
    terms = query_terms(query)
    scored = [
        ScoredCall(call=call, score=score_call(call, terms, current), quarter=quarter_key(call.occurred_at or UNDATED))
        for call in calls
    ]
    scored.sort(key=lambda item: item.score, reverse=True)
    return scored


def select_top_calls(
    candidates: Sequence[CallRecord],
    query: str,
    k: int,
    *,
    now: datetime | None = None,
) -> list[CallRecord]:
    """Return at most ``k`` calls, covering every calendar quarter in the pool.

    The top ``k`` by score are taken first. Each quarter missing from that
    selection then gets its best unselected call, which replaces the lowest
    ranked selected call that can be given up: calls added by this repair step
    and calls that are the only selected one from their quarter are kept.
    Scores are not recomputed after a swap. Evicting blindly from the tail
    could drop a quarter that was already covered, so those slots are skipped.
    """

    if len(candidates) <= k:
        return list(candidates)
    if k <= 0:
        return []

    scored = rank_calls(candidates, query, now=now)
    selected = scored[:k]
    selected_ids = {id(item) for item in selected}
    covered: dict[str, int] = {}
    for item in selected:
        covered[item.quarter] = covered.get(item.quarter, 0) + 1

    all_quarters = list(dict.fromkeys(item.quarter for item in scored))
    repaired: set[int] = set()
    slot = k - 1
    for quarter in all_quarters:
        if covered.get(quarter):
            continue
        candidate = next(
            (item for item in scored if item.quarter == quarter and id(item) not in selected_ids),
            None,
        )
        if candidate is None:
            continue
        while slot >= 0 and (slot in repaired or covered[selected[slot].quarter] <= 1):
            slot -= 1
        if slot < 0:
            break
        evicted = selected[slot]
        covered[evicted.quarter] -= 1
        selected_ids.discard(id(evicted))
        selected[slot] = candidate
        selected_ids.add(id(candidate))
        covered[quarter] = 1
        repaired.add(slot)
        slot -= 1

    return [item.call for item in selected]
