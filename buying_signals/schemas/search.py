"""Schemas for scoped call search."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

TimeRange = Literal["last30", "last90", "last180", "last365", "all"]
ParticipantType = Literal["all", "external-only", "internal-only"]


class CallSearchFilters(BaseModel):
    time_range: TimeRange | None = None
    participant_type: ParticipantType = "all"


class CallSearchRequest(BaseModel):
    scope: Literal["account", "opportunity", "global"] = "global"
    query: str = Field(min_length=1)
    account_id: str | None = None
    opportunity_id: str | None = None
    account_name: str | None = None
    opportunity_name: str | None = None
    filters: CallSearchFilters = Field(default_factory=CallSearchFilters)


class CallSearchSource(BaseModel):
    type: Literal["call", "email"] = "call"
    id: str
    title: str
    date: datetime | None = None
    url: str | None = None


class CallSearchMetadata(BaseModel):
    calls_analyzed: int
    transcripts_fetched: int
    emails_analyzed: int
    lookback_days: int
    generated_at: datetime


class CallSearchResponse(BaseModel):
    answer: str
    sources: list[CallSearchSource]
    metadata: CallSearchMetadata
