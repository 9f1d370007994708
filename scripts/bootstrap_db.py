"""Create the signal schema and seed the account directory for development."""
from __future__ import annotations

import asyncio

from buying_signals.core.config import settings
from buying_signals.db.session import SessionLocal, init_signal_tables
from buying_signals.repositories.account_names import AccountName, cache_account_names
from buying_signals.repositories.admin_settings import get_buying_signal_config, set_buying_signal_config
from buying_signals.schemas.signals import SignalCategory

ACCOUNTS = [
	AccountName(account_id="001A000001", account_name="Northwind Traders", owner_id="005A0001"),
	AccountName(account_id="001A000002", account_name="Contoso Pharmaceuticals", owner_id="005A0001"),
	AccountName(account_id="001A000003", account_name="Fabrikam Logistics", owner_id="005A0002"),
	AccountName(account_id="001A000004", account_name="Tailspin Retail Group"),
]

CATEGORIES = [
	SignalCategory(
		id="expansion",
		name="Expansion",
		description="New locations, market entry, or headcount growth",
		keywords=["expansion", "new office", "opening"],
		weight=1.2,
	),
	SignalCategory(
		id="leadership",
		name="Leadership change",
		description="New executive appointments",
		keywords=["appointed", "hires", "CTO", "CRO"],
	),
	SignalCategory(
		id="funding",
		name="Funding",
		description="Funding rounds, acquisitions, or IPO activity",
		keywords=["raises", "series", "acquires"],
		weight=1.1,
	),
]


async def seed_accounts() -> None:
	"""Upsert demo accounts into the directory used by the news phase."""

	async with SessionLocal() as session:
		await cache_account_names(session, ACCOUNTS)
		await session.commit()


async def seed_config() -> None:
	"""Store default signal categories unless some are already configured."""

	async with SessionLocal() as session:
		config = await get_buying_signal_config(session)
		if config.signal_categories:
			return
		config = config.model_copy(update={"signal_categories": CATEGORIES})
		await set_buying_signal_config(session, config, updated_by="bootstrap")
		await session.commit()


async def main() -> None:
	await init_signal_tables()
	await seed_accounts()
	await seed_config()
	print(f"Signal schema ensured on {settings.database_async_url.split('@')[-1]} and demo accounts seeded.")


if __name__ == "__main__":
	asyncio.run(main())
