"""Schemas for stored signals, analysis payloads, and admin configuration."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.signal import SignalSource

Confidence = Literal["high", "medium", "low"]
Momentum = Literal["accelerating", "steady", "stalling", "unknown"]
Relevance = Literal["high", "medium", "low"]

DEFAULT_SCHEDULE = "0 2 * * *"
DEFAULT_NEWS_PROMPT = """Look for recent news that could indicate buying signals such as:
- New store openings, office expansions, or new locations
- Executive hires (new VP, CTO, CRO appointments)
- Expansion announcements or market entry
- Funding rounds, acquisitions, or IPO activity
- Strategic partnerships or major contracts
- Product launches or major initiatives
- Organizational restructuring or digital transformation"""


class StoredSignal(BaseModel):
    """Persisted signal row as seen by callers of the signal store."""

    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    account_id: str
    account_name: str | None = None
    opportunity_id: str | None = None
    opportunity_name: str | None = None
    source: SignalSource
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    expires_at: datetime | None = None


class SignalIndicator(BaseModel):
    type: str = "unknown"
    confidence: Confidence = "low"
    evidence: str = ""
    call_title: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _default_confidence(cls, value: object) -> object:
        return value if value in ("high", "medium", "low") else "low"


class DealSignal(BaseModel):
    """Call-derived buying signal summary for one opportunity."""

    opportunity_id: str
    opportunity_name: str
    account_id: str
    account_name: str
    signals: list[SignalIndicator] = Field(default_factory=list)
    momentum: Momentum = "unknown"
    summary: str = ""
    call_count: int = 0
    last_call_date: datetime | None = None

    @field_validator("momentum", mode="before")
    @classmethod
    def _default_momentum(cls, value: object) -> object:
        return value if value in ("accelerating", "steady", "stalling", "unknown") else "unknown"


class NewsSignal(BaseModel):
    type: Literal["news"] = "news"
    category: str = "other"
    headline: str = "News detected"
    summary: str = ""
    url: str | None = None
    relevance: Relevance = "medium"
    published_date: str | None = None
    score: int = 0


class Citation(BaseModel):
    url: str
    title: str


class NewsSearchResult(BaseModel):
    signals: list[NewsSignal] = Field(default_factory=list)
    summary: str = ""
    citations: list[Citation] = Field(default_factory=list)


class SignalCategory(BaseModel):
    id: str
    name: str
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    weight: float = 1.0
    active: bool = True


class BuyingSignalConfig(BaseModel):
    """Admin-editable settings for the nightly signal batch."""

    enabled: bool = True
    schedule: str = DEFAULT_SCHEDULE
    max_entities_per_run: int = Field(default=50, ge=1)
    news_search_enabled: bool = False
    news_prompt_template: str = DEFAULT_NEWS_PROMPT
    signal_categories: list[SignalCategory] = Field(default_factory=list)
    provider_api_key: str | None = None
    last_run_at: datetime | None = None
    last_run_status: Literal["success", "partial"] | None = None

    def category_weights(self) -> dict[str, float]:
        """Return weights for active categories keyed by both name and id."""

        weights: dict[str, float] = {}
        for category in self.signal_categories:
            if category.active:
                weights[category.name] = category.weight
                weights[category.id] = category.weight
        return weights


class OpportunityRef(BaseModel):
    """Identifies an opportunity for an on-demand lookup."""

    opportunity_id: str
    opportunity_name: str | None = None
    account_id: str | None = None
    account_name: str | None = None
    owner_id: str | None = None


class OpportunitySignalsRequest(BaseModel):
    opportunities: list[OpportunityRef] = Field(default_factory=list, max_length=20)


class OpportunitySignalsResponse(BaseModel):
    signals: list[DealSignal]


class AccountNewsResponse(BaseModel):
    account_id: str
    result: NewsSearchResult


class BatchRunResponse(BaseModel):
    call_signal_count: int
    news_signal_count: int
    errors: list[str]
    status: Literal["success", "partial"]
    run_at: datetime
