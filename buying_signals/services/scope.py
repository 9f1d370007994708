"""Resolve which calls belong to an account or opportunity.

Upstream cross-references are unreliable, so resolution is an ordered list of
matchers: exact cross-reference, parent account cross-reference, then fuzzy
name/participant matching. A matcher only runs when every earlier one found
nothing. Everything here is pure so each tier can be tested on its own.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence

from .gong import CallRecord


@dataclass(frozen=True, slots=True)
class CallScope:
    account_id: str | None = None
    opportunity_id: str | None = None
    account_name: str | None = None
    opportunity_name: str | None = None

    @property
    def has_ids(self) -> bool:
        return bool(self.account_id or self.opportunity_id)

    @property
    def display_name(self) -> str:
        return (self.account_name or self.opportunity_name or "").strip()


Matcher = Callable[[Sequence[CallRecord], CallScope], list[CallRecord]]


def match_exact_reference(calls: Sequence[CallRecord], scope: CallScope) -> list[CallRecord]:
    """Calls cross-referenced to the target opportunity, or account when no opportunity."""

    if scope.opportunity_id:
        return [
            call for call in calls
            if call.cross_references and scope.opportunity_id in call.cross_references.opportunity_ids
        ]
    if scope.account_id:
        return _match_account(calls, scope.account_id)
    return []


def match_parent_account(calls: Sequence[CallRecord], scope: CallScope) -> list[CallRecord]:
    """Opportunities are often unlinked upstream while their account is linked."""

    if not (scope.opportunity_id and scope.account_id):
        return []
    return _match_account(calls, scope.account_id)


def match_name_tokens(calls: Sequence[CallRecord], scope: CallScope) -> list[CallRecord]:
    """Match display-name tokens against call titles and participant names/emails."""

    tokens = name_tokens(scope.display_name)
    if not tokens:
        return []
    # Scoped lookups only get here after both id tiers failed, so ask for more evidence.
    required = min(2, len(tokens)) if scope.has_ids else 1

    matched: list[CallRecord] = []
    for call in calls:
        title = call.title.lower()
        if _count_hits(tokens, title) >= required:
            matched.append(call)
            continue
        participants = " ".join(
            f"{participant.name or ''} {participant.email or ''}" for participant in call.participants
        ).lower()
        if participants.strip() and _count_hits(tokens, participants) >= required:
            matched.append(call)
    return matched


DEFAULT_MATCHERS: tuple[tuple[str, Matcher], ...] = (
    ("exact-reference", match_exact_reference),
    ("parent-account", match_parent_account),
    ("name-tokens", match_name_tokens),
)


class ScopeResolver:
    """Apply matchers in order and keep the first non-empty result."""

    def __init__(self, matchers: Sequence[tuple[str, Matcher]] = DEFAULT_MATCHERS) -> None:
        self._matchers = tuple(matchers)

    @property
    def tiers(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self._matchers)

    def resolve_with_tier(
        self,
        candidates: Sequence[CallRecord],
        scope: CallScope,
    ) -> tuple[str | None, list[CallRecord]]:
        for name, matcher in self._matchers:
            matched = matcher(candidates, scope)
            if matched:
                return name, matched
        return None, []

    def resolve(self, candidates: Sequence[CallRecord], scope: CallScope) -> list[CallRecord]:
        return self.resolve_with_tier(candidates, scope)[1]


def name_tokens(name: str) -> list[str]:
    """Lowercase whitespace tokens longer than two characters, de-duplicated."""

    return list(dict.fromkeys(token for token in name.lower().split() if len(token) > 2))


def _match_account(calls: Sequence[CallRecord], account_id: str) -> list[CallRecord]:
    return [
        call for call in calls
        if call.cross_references and account_id in call.cross_references.account_ids
    ]


def _count_hits(tokens: Sequence[str], haystack: str) -> int:
    return sum(1 for token in tokens if token in haystack)


resolver = ScopeResolver()
