from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from buying_signals.services.gong import CallRecord
from buying_signals.services.ranking import quarter_key, query_terms, rank_calls, score_call, select_top_calls

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _call(call_id: str, started: datetime | None, *, title: str = "Sync", topics=(), duration: int = 1800) -> CallRecord:
    return CallRecord(id=call_id, title=title, started=started, duration=duration, topics=tuple(topics))


def test_query_terms_drop_short_words() -> None:
    assert query_terms("Is the pricing OK for renewal") == ["the", "pricing", "for", "renewal"]


def test_quarter_key() -> None:
    assert quarter_key(datetime(2026, 3, 31, tzinfo=timezone.utc)) == "2026-Q1"
    assert quarter_key(datetime(2026, 10, 1, tzinfo=timezone.utc)) == "2026-Q4"


def test_score_components() -> None:
    call = _call("1", NOW - timedelta(days=73), title="Pricing call", topics=["Pricing", "Legal"], duration=3600)

    score = score_call(call, ["pricing", "renewal"], NOW)

    # topic 10 + title 5 + recency (20 - 2) + duration 10
    assert score == pytest.approx(43.0)


def test_old_and_undated_calls_get_no_recency_points() -> None:
    undated = _call("1", None, duration=0)
    ancient = _call("2", NOW - timedelta(days=2000), duration=0)

    assert score_call(undated, [], NOW) == 0
    assert score_call(ancient, [], NOW) == 0


def test_rank_is_stable_for_ties() -> None:
    started = NOW - timedelta(days=10)
    calls = [_call(str(index), started) for index in range(4)]

    assert [item.call.id for item in rank_calls(calls, "anything", now=NOW)] == ["0", "1", "2", "3"]


def test_small_candidate_sets_are_returned_unchanged() -> None:
    calls = [
        _call("old", NOW - timedelta(days=400)),
        _call("new", NOW - timedelta(days=1), title="pricing"),
        _call("mid", NOW - timedelta(days=100)),
    ]

    assert select_top_calls(calls, "pricing", 3, now=NOW) == calls
    assert select_top_calls(calls, "pricing", 5, now=NOW) == calls


def test_ties_keep_input_order_in_selection() -> None:
    calls = [_call(str(index), None) for index in range(3)]

    assert [call.id for call in select_top_calls(calls, "", 2, now=NOW)] == ["0", "1"]


def test_repair_keeps_sole_quarter_representative() -> None:
    calls = [
        _call("a", NOW - timedelta(days=2), title="pricing"),
        _call("b", NOW - timedelta(days=3)),
        _call("c", NOW - timedelta(days=100)),
        _call("d", NOW - timedelta(days=600)),
    ]

    selected = select_top_calls(calls, "pricing", 3, now=NOW)

    assert [call.id for call in selected] == ["a", "d", "c"]


def test_selection_size_is_capped_when_quarters_exceed_k() -> None:
    calls = [_call(str(index), NOW - timedelta(days=95 * index)) for index in range(6)]

    selected = select_top_calls(calls, "", 2, now=NOW)

    assert len(selected) == 2
    assert len({call.id for call in selected}) == 2


def test_150_calls_over_six_quarters() -> None:
    quarter_starts = [
        datetime(2025, 7, 15, tzinfo=timezone.utc),
        datetime(2025, 10, 15, tzinfo=timezone.utc),
        datetime(2026, 1, 15, tzinfo=timezone.utc),
        datetime(2026, 4, 15, tzinfo=timezone.utc),
        datetime(2026, 7, 15, tzinfo=timezone.utc),
        datetime(2026, 10, 1, tzinfo=timezone.utc),
    ]
    calls: list[CallRecord] = []
    for q_index, start in enumerate(quarter_starts):
        for offset in range(25):
            calls.append(_call(f"q{q_index}-{offset}", start + timedelta(hours=offset)))
    tagged = _call(
        "tagged",
        datetime(2025, 7, 20, tzinfo=timezone.utc),
        title="Pricing renewal negotiation",
        topics=["Pricing", "Renewal"],
    )
    calls[3] = tagged

    selected = select_top_calls(calls, "pricing renewal", 15, now=NOW)

    assert len(calls) == 150
    assert len(selected) == 15
    assert tagged in selected
    assert {quarter_key(call.started) for call in selected} == {quarter_key(start) for start in quarter_starts}
    assert len({call.id for call in selected}) == 15
