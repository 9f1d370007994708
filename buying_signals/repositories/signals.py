"""Signal store persistence helpers.

Every read applies the freshness predicate ``expires_at IS NULL OR expires_at > now``
so stale rows disappear from results before :func:`sweep_expired` removes them.
Writes use a native upsert on ``(source, entity_key)`` which keeps exactly one
row per opportunity for call-derived signals and per account for news-derived
signals.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy import ColumnElement, delete, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import PersistenceError
from ..models.signal import BuyingSignal, SignalSource
from ..schemas.signals import StoredSignal

logger = logging.getLogger(__name__)

DEFAULT_SIGNAL_TTL = timedelta(hours=24)


def entity_key_for(signal: StoredSignal) -> str:
    """Return the logical key a signal is unique under for its source."""

    if signal.source is SignalSource.CALL and signal.opportunity_id:
        return signal.opportunity_id
    return signal.account_id


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise PersistenceError(f"Upsert is not supported on dialect {dialect!r}")


async def upsert_signals(
    session: AsyncSession,
    signals: Sequence[StoredSignal],
    *,
    now: datetime | None = None,
) -> int:
    """Insert or replace signals, returning the number written.

    One statement is issued per signal so a batch containing the same key twice
    resolves to the last one instead of failing the whole statement.
    """

    if not signals:
        return 0

    current = now or datetime.now(timezone.utc)
    insert = _insert_for(session)
    try:
        for signal in signals:
            values = {
                "account_id": signal.account_id,
                "account_name": signal.account_name,
                "opportunity_id": signal.opportunity_id,
                "opportunity_name": signal.opportunity_name,
                "source": signal.source.value,
                "entity_key": entity_key_for(signal),
                "payload": signal.payload,
                "created_at": current,
                "updated_at": current,
                "expires_at": signal.expires_at or current + DEFAULT_SIGNAL_TTL,
            }
            stmt = insert(BuyingSignal).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["source", "entity_key"],
                set_={
                    key: stmt.excluded[key]
                    for key in values
                    if key not in ("source", "entity_key", "created_at")
                },
            )
            await session.execute(stmt)
        await session.flush()
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to upsert {len(signals)} signals: {exc}") from exc
    return len(signals)


def _fresh(now: datetime) -> ColumnElement[bool]:
    return or_(BuyingSignal.expires_at.is_(None), BuyingSignal.expires_at > now)


async def _select_fresh(session: AsyncSession, *criteria: ColumnElement[bool], now: datetime | None) -> list[StoredSignal]:
    stmt = (
        select(BuyingSignal)
        .where(_fresh(now or datetime.now(timezone.utc)), *criteria)
        .order_by(BuyingSignal.updated_at.desc(), BuyingSignal.id.desc())
        .execution_options(populate_existing=True)
    )
    try:
        result = await session.execute(stmt)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to read signals: {exc}") from exc
    return [StoredSignal.model_validate(row) for row in result.scalars().all()]


async def get_by_opportunity_ids(
    session: AsyncSession,
    opportunity_ids: Sequence[str],
    *,
    source: SignalSource | None = None,
    now: datetime | None = None,
) -> list[StoredSignal]:
    """Return fresh signals linked to any of the opportunities."""

    if not opportunity_ids:
        return []
    criteria = [BuyingSignal.opportunity_id.in_(list(opportunity_ids))]
    if source is not None:
        criteria.append(BuyingSignal.source == source.value)
    return await _select_fresh(session, *criteria, now=now)


async def get_by_account_ids(
    session: AsyncSession,
    account_ids: Sequence[str],
    *,
    source: SignalSource | None = None,
    now: datetime | None = None,
) -> list[StoredSignal]:
    """Return fresh signals linked to any of the accounts."""

    if not account_ids:
        return []
    criteria = [BuyingSignal.account_id.in_(list(account_ids))]
    if source is not None:
        criteria.append(BuyingSignal.source == source.value)
    return await _select_fresh(session, *criteria, now=now)


async def get_all_fresh(
    session: AsyncSession,
    *,
    source: SignalSource | None = None,
    now: datetime | None = None,
) -> list[StoredSignal]:
    """Return every fresh signal, optionally restricted to one source."""

    criteria = [BuyingSignal.source == source.value] if source is not None else []
    return await _select_fresh(session, *criteria, now=now)


async def clear_signals(
    session: AsyncSession,
    source: SignalSource,
    *,
    opportunity_id: str | None = None,
) -> int:
    """Delete signals for a source, optionally only for one opportunity."""

    stmt = delete(BuyingSignal).where(BuyingSignal.source == source.value).execution_options(
        synchronize_session=False
    )
    if opportunity_id:
        stmt = stmt.where(BuyingSignal.opportunity_id == opportunity_id)
    try:
        result = await session.execute(stmt)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to clear {source.value} signals: {exc}") from exc
    return result.rowcount or 0


async def sweep_expired(session: AsyncSession, *, now: datetime | None = None) -> int:
    """Delete expired rows and return how many were removed."""

    current = now or datetime.now(timezone.utc)
    stmt = delete(BuyingSignal).where(
        BuyingSignal.expires_at.is_not(None),
        BuyingSignal.expires_at < current,
    ).execution_options(synchronize_session=False)
    try:
        result = await session.execute(stmt)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to sweep expired signals: {exc}") from exc
    removed = result.rowcount or 0
    if removed:
        logger.info("Swept %s expired signals", removed)
    return removed
