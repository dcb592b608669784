"""Configuration module for the integration trust core."""

from ledger_connect.config.settings import (
    SUPPORTED_PROVIDERS,
    ProviderCredentials,
    Settings,
    get_settings,
    load_settings,
)

__all__ = [
    "SUPPORTED_PROVIDERS",
    "ProviderCredentials",
    "Settings",
    "get_settings",
    "load_settings",
]
