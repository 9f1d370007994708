"""Admin configuration stored as key/JSON blobs."""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import PersistenceError
from ..models.admin_setting import AdminSetting
from ..schemas.signals import BuyingSignalConfig

logger = logging.getLogger(__name__)

BUYING_SIGNAL_CONFIG_KEY = "buying_signal_config"


async def get_buying_signal_config(session: AsyncSession) -> BuyingSignalConfig:
    """Return the stored config merged over defaults."""

    try:
        row = await session.get(AdminSetting, BUYING_SIGNAL_CONFIG_KEY)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to load buying signal config: {exc}") from exc
    if row is None or not row.value:
        return BuyingSignalConfig()
    try:
        return BuyingSignalConfig.model_validate(row.value)
    except ValidationError:
        logger.warning("Stored buying signal config is invalid; using defaults")
        return BuyingSignalConfig()


async def set_buying_signal_config(
    session: AsyncSession,
    config: BuyingSignalConfig,
    *,
    updated_by: str,
) -> BuyingSignalConfig:
    """Persist the config blob, replacing any previous value."""

    value = config.model_dump(mode="json")
    try:
        row = await session.get(AdminSetting, BUYING_SIGNAL_CONFIG_KEY)
        if row is None:
            row = AdminSetting(key=BUYING_SIGNAL_CONFIG_KEY)
        row.value = value
        row.updated_by = updated_by
        row.updated_at = datetime.now(timezone.utc)
        session.add(row)
        await session.flush()
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to save buying signal config: {exc}") from exc
    return config
