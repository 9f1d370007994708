"""Buying signal model."""
from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

PayloadType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SignalSource(str, enum.Enum):
    CALL = "call-derived"
    NEWS = "news-derived"


class BuyingSignal(Base):
    """Derived signal for an account or opportunity with a freshness window."""

    __tablename__ = "buying_signals"
    __table_args__ = (
        UniqueConstraint("source", "entity_key", name="uq_bs_source_entity"),
        Index("idx_bs_opp", "opportunity_id"),
        Index("idx_bs_acct", "account_id"),
        Index("idx_bs_expires", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_name: Mapped[str | None] = mapped_column(Text)
    opportunity_id: Mapped[str | None] = mapped_column(String(64))
    opportunity_name: Mapped[str | None] = mapped_column(Text)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    # opportunity id for call-derived rows, account id for news-derived rows
    entity_key: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(PayloadType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
