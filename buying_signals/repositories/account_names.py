"""Account name directory helpers."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import PersistenceError
from ..models.account_name import AccountNameCache


@dataclass(slots=True)
class AccountName:
    """Account observed by a request path."""

    account_id: str
    account_name: str
    owner_id: str | None = None
    updated_at: datetime | None = None


async def cache_account_names(session: AsyncSession, accounts: Iterable[AccountName]) -> int:
    """Upsert observed accounts; a known owner is never replaced with null."""

    rows = [account for account in accounts if account.account_id and account.account_name]
    if not rows:
        return 0

    dialect = session.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    now = datetime.now(timezone.utc)
    try:
        for account in rows:
            stmt = insert(AccountNameCache).values(
                account_id=account.account_id,
                account_name=account.account_name,
                owner_id=account.owner_id,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["account_id"],
                set_={
                    "account_name": stmt.excluded.account_name,
                    "owner_id": func.coalesce(stmt.excluded.owner_id, AccountNameCache.owner_id),
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await session.execute(stmt)
        await session.flush()
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to cache account names: {exc}") from exc
    return len(rows)


async def list_account_names(session: AsyncSession, *, owned_only: bool = False) -> list[AccountName]:
    """Return the directory, most recently observed first."""

    stmt = select(AccountNameCache)
    if owned_only:
        stmt = stmt.where(AccountNameCache.owner_id.is_not(None))
    stmt = stmt.order_by(AccountNameCache.updated_at.desc(), AccountNameCache.account_id.asc())
    try:
        result = await session.execute(stmt.execution_options(populate_existing=True))
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to read account names: {exc}") from exc
    return [
        AccountName(
            account_id=row.account_id,
            account_name=row.account_name,
            owner_id=row.owner_id,
            updated_at=row.updated_at,
        )
        for row in result.scalars().all()
    ]


async def get_account_name(session: AsyncSession, account_id: str) -> str | None:
    """Return the cached display name for an account if one was observed."""

    row = await session.get(AccountNameCache, account_id)
    return row.account_name if row else None
