"""News article search via the Brave Search API."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import httpx

from ..core.config import settings
from ..core.errors import BraveSearchError

BRAVE_NEWS_URL = "https://api.search.brave.com/res/v1/news/search"


@dataclass(frozen=True, slots=True)
class NewsArticle:
    title: str
    url: str
    description: str
    age: str
    page_age: str | None = None


async def search_news(
    account_name: str,
    api_key: str,
    *,
    count: int = 20,
    freshness: str = "pm",
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[NewsArticle]:
    """Return recent news articles mentioning the account.

    ``freshness`` follows Brave's codes: ``pd`` past day, ``pw`` past week,
    ``pm`` past month.
    """

    params = {"q": f'"{account_name}" news', "count": str(count), "freshness": freshness}
    headers = {
        "Accept": "application/json",
        "Accept-Encoding": "gzip",
        "X-Subscription-Token": api_key,
    }
    async with httpx.AsyncClient(timeout=settings.brave_timeout_seconds, transport=transport) as client:
        try:
            response = await client.get(BRAVE_NEWS_URL, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise BraveSearchError(None, str(exc) or exc.__class__.__name__) from exc

    if not response.is_success:
        raise BraveSearchError(response.status_code, response.text or response.reason_phrase)

    try:
        data = response.json()
    except ValueError as exc:
        raise BraveSearchError(response.status_code, f"invalid JSON body: {exc}") from exc

    results = (data.get("results") if isinstance(data, dict) else None) or []
    return [
        NewsArticle(
            title=item.get("title") or "",
            url=item.get("url") or "",
            description=item.get("description") or "",
            age=item.get("age") or "",
            page_age=item.get("page_age"),
        )
        for item in results
    ]


def format_articles(articles: Sequence[NewsArticle], max_chars: int = 6000) -> str:
    """Render articles as numbered prompt context, truncated at ``max_chars``."""

    parts: list[str] = []
    length = 0
    for index, article in enumerate(articles, start=1):
        entry = f"[{index}] {article.title}\n{article.description}\nAge: {article.age}\nURL: {article.url}\n\n"
        if length + len(entry) > max_chars:
            break
        parts.append(entry)
        length += len(entry)
    return "".join(parts) or "No articles found."
