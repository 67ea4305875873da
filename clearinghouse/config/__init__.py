"""
Clearing House Configuration

Loads the protocol parameters of config.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    ClearingHouseConfig,
    FeesConfig,
    OracleGuardRailsConfig,
    OrderStateConfig,
    MarginConfig,
    LiquidationConfig,
    AdminConfig,
    load_config,
)

__all__ = [
    "ClearingHouseConfig",
    "FeesConfig",
    "OracleGuardRailsConfig",
    "OrderStateConfig",
    "MarginConfig",
    "LiquidationConfig",
    "AdminConfig",
    "load_config",
]
