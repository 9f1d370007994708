"""Expose ORM models."""
from .account_name import AccountNameCache
from .admin_setting import AdminSetting
from .signal import BuyingSignal, SignalSource

__all__ = [
    "AccountNameCache",
    "AdminSetting",
    "BuyingSignal",
    "SignalSource",
]
