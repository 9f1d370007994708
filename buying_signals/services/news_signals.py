"""News-derived buying signals.

Articles come from Brave news search and are classified by the LLM. Each
signal is scored from its category weight, relevance, and how recent it is.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import BraveSearchError, ConfigurationError, ParseError, PersistenceError
from ..models.signal import SignalSource
from ..repositories import account_names as account_names_repo
from ..repositories import admin_settings as admin_settings_repo
from ..repositories import signals as signals_repo
from ..schemas.signals import (
    DEFAULT_NEWS_PROMPT,
    BuyingSignalConfig,
    Citation,
    NewsSearchResult,
    NewsSignal,
    StoredSignal,
)
from . import brave, llm
from .cache import signal_cache

logger = logging.getLogger(__name__)

NEWS_SIGNALS_NAMESPACE = "news-signals"
NEWS_ANALYSIS_MAX_TOKENS = 1024
NEWS_ITEM_DELAY_SECONDS = 1.0
PROMPT_HINT_CHARS = 500

RELEVANCE_FACTORS = {"high": 1.0, "medium": 0.6, "low": 0.3}
UNKNOWN_DATE_FACTOR = 0.4
# (max age in days, factor); anything older gets OLDEST_FACTOR
RECENCY_STEPS = ((1, 1.0), (7, 0.8), (14, 0.6), (30, 0.4))
OLDEST_FACTOR = 0.2


def _parse_published(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def recency_factor(published_date: str | None, *, now: datetime | None = None) -> float:
    published = _parse_published(published_date)
    if published is None:
        return UNKNOWN_DATE_FACTOR
    current = now or datetime.now(timezone.utc)
    days_ago = max(0.0, (current - published).total_seconds() / 86400)
    for max_days, factor in RECENCY_STEPS:
        if days_ago <= max_days:
            return factor
    return OLDEST_FACTOR


def compute_signal_score(
    category: str,
    relevance: str,
    published_date: str | None,
    category_weights: Mapping[str, float],
    *,
    now: datetime | None = None,
) -> int:
    """Score a news signal on a 0-100 scale (weights above 1.0 can exceed it)."""

    weight = category_weights.get(category, 1.0)
    relevance_factor = RELEVANCE_FACTORS.get(relevance, RELEVANCE_FACTORS["medium"])
    return round(weight * relevance_factor * recency_factor(published_date, now=now) * 100)


def build_news_prompt(config: BuyingSignalConfig) -> str:
    """Combine the admin prompt template with the active signal categories."""

    prompt = config.news_prompt_template or DEFAULT_NEWS_PROMPT
    active = [category for category in config.signal_categories if category.active]
    if active:
        prompt += "\n\nSpecifically look for these signal types:\n"
        for category in active:
            prompt += f"- {category.name}: {category.description}"
            if category.keywords:
                prompt += f" (keywords: {', '.join(category.keywords)})"
            prompt += "\n"
    return prompt


def _news_signal(raw: Mapping[str, Any], weights: Mapping[str, float]) -> NewsSignal:
    relevance = raw.get("relevance")
    if relevance not in RELEVANCE_FACTORS:
        relevance = "medium"
    category = raw.get("category") or "other"
    published_date = raw.get("publishedDate") or raw.get("published_date") or None
    return NewsSignal(
        category=category,
        headline=raw.get("headline") or "News detected",
        summary=raw.get("summary") or "",
        url=raw.get("url") or None,
        relevance=relevance,
        published_date=published_date,
        score=compute_signal_score(category, relevance, published_date, weights),
    )


async def search_news_for_account(
    account_name: str,
    config: BuyingSignalConfig,
    *,
    api_key: str,
    prompt_hint: str | None = None,
) -> NewsSearchResult:
    """Search recent news for one account and classify it into scored signals."""

    try:
        articles = await brave.search_news(account_name, api_key)
    except BraveSearchError as exc:
        logger.error("News search failed for %r: %s", account_name, exc)
        return NewsSearchResult(summary=f"News search failed: {exc}")

    if not articles:
        return NewsSearchResult(summary=f'No recent news found for "{account_name}".')

    citations = [Citation(url=article.url, title=article.title) for article in articles]
    hint = (prompt_hint if prompt_hint is not None else build_news_prompt(config))[:PROMPT_HINT_CHARS]
    prompt = f"""Analyze these news articles about "{account_name}" for buying signals.
Focus on: {hint}

ARTICLES:
{brave.format_articles(articles)}
Return JSON only: {{"signals":[{{"type":"news","category":"string","headline":"string","summary":"string","url":"string","relevance":"high|medium|low","publishedDate":"YYYY-MM-DD or null"}}],"summary":"one sentence"}}
If no relevant signals: {{"signals":[],"summary":"No signals found."}}"""

    try:
        text = await llm.analyze(prompt, NEWS_ANALYSIS_MAX_TOKENS)
    except llm.LLMUnavailableError as exc:
        logger.error("News analysis unavailable for %r: %s", account_name, exc)
        return NewsSearchResult(summary="News analysis is unavailable.", citations=citations)
    if llm.is_not_configured(text):
        return NewsSearchResult(summary=text)

    try:
        parsed = llm.extract_json_object(text)
    except ParseError as exc:
        logger.warning("Unparsable news analysis for %r: %s", account_name, exc)
        return NewsSearchResult(summary="Unable to parse news results.", citations=citations)

    weights = config.category_weights()
    raw_signals = parsed.get("signals")
    signals = [
        _news_signal(item, weights)
        for item in (raw_signals if isinstance(raw_signals, list) else [])
        if isinstance(item, Mapping)
    ]
    signals.sort(key=lambda signal: signal.score, reverse=True)
    return NewsSearchResult(signals=signals, summary=parsed.get("summary") or "", citations=citations)


def news_api_key(config: BuyingSignalConfig) -> str | None:
    return (config.provider_api_key or settings.brave_api_key or "").strip() or None


def to_stored_signal(account_id: str, account_name: str, result: NewsSearchResult) -> StoredSignal:
    now = datetime.now(timezone.utc)
    payload = result.model_dump(mode="json")
    payload["searched_at"] = now.isoformat()
    return StoredSignal(
        account_id=account_id,
        account_name=account_name,
        source=SignalSource.NEWS,
        payload=payload,
        expires_at=now + timedelta(hours=settings.signal_ttl_hours),
    )


async def run_news_phase(
    session: AsyncSession,
    config: BuyingSignalConfig,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    stop_event: asyncio.Event | None = None,
) -> int:
    """Search news for each directory account and store accounts with signals.

    Accounts are handled one at a time with a fixed pause between lookups.
    Raises :class:`ConfigurationError` when no news credential is available.
    """

    if not config.news_search_enabled:
        logger.info("News search disabled; skipping news phase")
        return 0

    api_key = news_api_key(config)
    if not api_key:
        raise ConfigurationError("News search API key is not configured")

    accounts = (await account_names_repo.list_account_names(session))[: config.max_entities_per_run]
    if not accounts:
        logger.info("Account directory is empty; skipping news phase")
        return 0

    prompt_hint = build_news_prompt(config)
    to_store: list[StoredSignal] = []
    for index, account in enumerate(accounts):
        if stop_event is not None and stop_event.is_set():
            logger.info("News phase stopped after %s accounts", index)
            break
        if index:
            await sleep(NEWS_ITEM_DELAY_SECONDS)
        try:
            result = await search_news_for_account(
                account.account_name, config, api_key=api_key, prompt_hint=prompt_hint
            )
        except Exception:  # noqa: BLE001
            logger.exception("News lookup failed for %r", account.account_name)
            continue
        if result.signals:
            to_store.append(to_stored_signal(account.account_id, account.account_name, result))

    if to_store:
        await signals_repo.upsert_signals(session, to_store)
        await session.commit()
    return len(to_store)


async def get_account_news(
    session: AsyncSession,
    account_id: str,
    account_name: str | None = None,
) -> NewsSearchResult:
    """Return news signals for one account: cache, then store, then live search."""

    cached = signal_cache.get(NEWS_SIGNALS_NAMESPACE, account_id)
    if cached is not None:
        return cached

    try:
        stored = await signals_repo.get_by_account_ids(session, [account_id], source=SignalSource.NEWS)
    except PersistenceError as exc:
        logger.warning("Signal store read failed; searching live: %s", exc)
        stored = []
    if stored:
        result = NewsSearchResult.model_validate(stored[0].payload)
        signal_cache.set(NEWS_SIGNALS_NAMESPACE, account_id, result, settings.lookup_cache_ttl_seconds)
        return result

    try:
        config = await admin_settings_repo.get_buying_signal_config(session)
        name = account_name or await account_names_repo.get_account_name(session, account_id)
    except (PersistenceError, SQLAlchemyError) as exc:
        logger.warning("Could not load news settings: %s", exc)
        config, name = BuyingSignalConfig(), account_name
    if not name:
        return NewsSearchResult(summary="Account name is unknown.")

    api_key = news_api_key(config)
    if not api_key:
        return NewsSearchResult(summary="News search is not configured.")

    result = await search_news_for_account(name, config, api_key=api_key)
    if result.signals:
        try:
            await signals_repo.upsert_signals(session, [to_stored_signal(account_id, name, result)])
            await session.commit()
        except (PersistenceError, SQLAlchemyError) as exc:
            await session.rollback()
            logger.warning("Could not store news signals for %s: %s", account_id, exc)
        signal_cache.set(NEWS_SIGNALS_NAMESPACE, account_id, result, settings.lookup_cache_ttl_seconds)
    return result
