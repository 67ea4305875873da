"""
Clearing House TOML Configuration Loader

Loads the protocol parameters a fresh clearing house starts with. Every
section is a dataclass with from_dict + apply_env; environment variables
override TOML values.

Environment variable mapping:
    [admin] admin               → CLEARINGHOUSE_ADMIN
    [admin] oracle              → CLEARINGHOUSE_ORACLE
    [admin] max_deposit         → CLEARINGHOUSE_MAX_DEPOSIT
    [admin] exchange_paused     → CLEARINGHOUSE_EXCHANGE_PAUSED
    [admin] funding_paused      → CLEARINGHOUSE_FUNDING_PAUSED
    [fees] fee                  → CLEARINGHOUSE_FEE
    [margin] initial            → CLEARINGHOUSE_MARGIN_RATIO_INITIAL
    ...

Fractional values are written as "num/den" strings, decimal strings or
[num, den] arrays; never as TOML floats.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import asdict, dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .. import constants
from ..exchange.checked import parse_fraction
from ..exchange.margin import validate_margin
from ..exchange.types import FeeStructure, OracleGuardRails, OrderState, State
from ..exceptions import InvalidMarginRatio

logger = logging.getLogger(__name__)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Section dataclasses (mirror every [section] of config.example.toml)
# ---------------------------------------------------------------------------

@dataclass
class FeesConfig:
    """[fees] section."""
    fee: Fraction = Fraction(1, 1000)
    first_tier_minimum_balance: int = 1_000_000_000
    first_tier_discount: Fraction = Fraction(20, 100)
    second_tier_minimum_balance: int = 100_000_000
    second_tier_discount: Fraction = Fraction(15, 100)
    third_tier_minimum_balance: int = 10_000_000
    third_tier_discount: Fraction = Fraction(10, 100)
    fourth_tier_minimum_balance: int = 1_000_000
    fourth_tier_discount: Fraction = Fraction(5, 100)
    referrer_reward: Fraction = Fraction(5, 100)
    referee_discount: Fraction = Fraction(5, 100)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeesConfig":
        defaults = cls()
        values = {}
        for name, default in asdict(defaults).items():
            raw = data.get(name, default)
            values[name] = parse_fraction(raw) if isinstance(default, Fraction) else int(raw)
        return cls(**values)

    def apply_env(self) -> None:
        if v := os.environ.get("CLEARINGHOUSE_FEE"):
            self.fee = parse_fraction(v)
        if v := os.environ.get("CLEARINGHOUSE_REFERRER_REWARD"):
            self.referrer_reward = parse_fraction(v)
        if v := os.environ.get("CLEARINGHOUSE_REFEREE_DISCOUNT"):
            self.referee_discount = parse_fraction(v)

    def validate(self) -> None:
        for name, value in asdict(self).items():
            if value < 0:
                raise ValueError(f"fees.{name} must be non-negative")
        if self.fee >= 1:
            raise ValueError("fees.fee must be below 1")
        if self.referrer_reward + self.referee_discount + self.first_tier_discount > 1:
            raise ValueError("fees discounts and referrer reward exceed the fee")
        minimums = [
            self.first_tier_minimum_balance,
            self.second_tier_minimum_balance,
            self.third_tier_minimum_balance,
            self.fourth_tier_minimum_balance,
        ]
        if minimums != sorted(minimums, reverse=True):
            raise ValueError("fees tier minimum balances must descend from first to fourth tier")

    def to_fee_structure(self) -> FeeStructure:
        return FeeStructure(**asdict(self))


@dataclass
class OracleGuardRailsConfig:
    """[oracle_guard_rails] section."""
    use_for_liquidations: bool = True
    mark_oracle_divergence: Fraction = Fraction(1, 10)
    slots_before_stale: int = 1000
    confidence_interval_max_size: int = 4
    too_volatile_ratio: int = 5

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OracleGuardRailsConfig":
        return cls(
            use_for_liquidations=data.get("use_for_liquidations", True),
            mark_oracle_divergence=parse_fraction(data.get("mark_oracle_divergence", Fraction(1, 10))),
            slots_before_stale=int(data.get("slots_before_stale", 1000)),
            confidence_interval_max_size=int(data.get("confidence_interval_max_size", 4)),
            too_volatile_ratio=int(data.get("too_volatile_ratio", 5)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("CLEARINGHOUSE_MARK_ORACLE_DIVERGENCE"):
            self.mark_oracle_divergence = parse_fraction(v)
        if v := os.environ.get("CLEARINGHOUSE_SLOTS_BEFORE_STALE"):
            self.slots_before_stale = int(v)

    def validate(self) -> None:
        if self.mark_oracle_divergence <= 0:
            raise ValueError("oracle_guard_rails.mark_oracle_divergence must be positive")
        if self.slots_before_stale < 0:
            raise ValueError("oracle_guard_rails.slots_before_stale must be non-negative")
        if self.too_volatile_ratio <= 1:
            raise ValueError("oracle_guard_rails.too_volatile_ratio must be greater than 1")

    def to_oracle_guard_rails(self) -> OracleGuardRails:
        return OracleGuardRails(**asdict(self))


@dataclass
class OrderStateConfig:
    """[order_state] section."""
    min_order_quote_asset_amount: int = 0
    reward: Fraction = Fraction(0)
    time_based_reward_lower_bound: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderStateConfig":
        return cls(
            min_order_quote_asset_amount=int(data.get("min_order_quote_asset_amount", 0)),
            reward=parse_fraction(data.get("reward", 0)),
            time_based_reward_lower_bound=int(data.get("time_based_reward_lower_bound", 0)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("CLEARINGHOUSE_MIN_ORDER_QUOTE_ASSET_AMOUNT"):
            self.min_order_quote_asset_amount = int(v)

    def validate(self) -> None:
        if self.min_order_quote_asset_amount < 0:
            raise ValueError("order_state.min_order_quote_asset_amount must be non-negative")
        if not 0 <= self.reward <= 1:
            raise ValueError("order_state.reward must lie in [0, 1]")

    def to_order_state(self) -> OrderState:
        return OrderState(**asdict(self))


@dataclass
class MarginConfig:
    """[margin] section: default ratios for new markets, in MARGIN_PRECISION."""
    initial: int = 2000
    partial: int = 625
    maintenance: int = 500

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarginConfig":
        return cls(
            initial=int(data.get("initial", 2000)),
            partial=int(data.get("partial", 625)),
            maintenance=int(data.get("maintenance", 500)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("CLEARINGHOUSE_MARGIN_RATIO_INITIAL"):
            self.initial = int(v)
        if v := os.environ.get("CLEARINGHOUSE_MARGIN_RATIO_PARTIAL"):
            self.partial = int(v)
        if v := os.environ.get("CLEARINGHOUSE_MARGIN_RATIO_MAINTENANCE"):
            self.maintenance = int(v)

    def validate(self) -> None:
        try:
            validate_margin(self.initial, self.partial, self.maintenance)
        except InvalidMarginRatio as e:
            raise ValueError(f"margin: {e}") from e


@dataclass
class LiquidationConfig:
    """[liquidation] section."""
    partial_close_percentage: Fraction = Fraction(25, 100)
    partial_penalty_percentage: Fraction = Fraction(25, 100)
    full_penalty_percentage: Fraction = Fraction(1)
    partial_liquidator_share_denominator: int = 1
    full_liquidator_share_denominator: int = 2000

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LiquidationConfig":
        return cls(
            partial_close_percentage=parse_fraction(data.get("partial_close_percentage", Fraction(25, 100))),
            partial_penalty_percentage=parse_fraction(data.get("partial_penalty_percentage", Fraction(25, 100))),
            full_penalty_percentage=parse_fraction(data.get("full_penalty_percentage", Fraction(1))),
            partial_liquidator_share_denominator=int(data.get("partial_liquidator_share_denominator", 1)),
            full_liquidator_share_denominator=int(data.get("full_liquidator_share_denominator", 2000)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("CLEARINGHOUSE_FULL_PENALTY_PERCENTAGE"):
            self.full_penalty_percentage = parse_fraction(v)
        if v := os.environ.get("CLEARINGHOUSE_PARTIAL_PENALTY_PERCENTAGE"):
            self.partial_penalty_percentage = parse_fraction(v)

    def validate(self) -> None:
        for name in ("partial_close_percentage", "partial_penalty_percentage", "full_penalty_percentage"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ValueError(f"liquidation.{name} must lie in (0, 1]")
        if self.partial_liquidator_share_denominator < 1 or self.full_liquidator_share_denominator < 1:
            raise ValueError("liquidation share denominators must be >= 1")


@dataclass
class AdminConfig:
    """[admin] section."""
    admin: str = "admin"
    oracle: str = "oracle"
    collateral_vault: str = "collateral_vault"
    insurance_vault: str = "insurance_vault"
    history_store: str = "history"
    max_deposit: int = 0
    exchange_paused: bool = False
    funding_paused: bool = False
    admin_controls_prices: bool = True
    collateral_vault_balance: int = 0
    insurance_vault_balance: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdminConfig":
        return cls(
            admin=data.get("admin", str(constants.CLEARINGHOUSE_ADMIN)),
            oracle=data.get("oracle", "oracle"),
            collateral_vault=data.get("collateral_vault", "collateral_vault"),
            insurance_vault=data.get("insurance_vault", "insurance_vault"),
            history_store=data.get("history_store", "history"),
            max_deposit=int(data.get("max_deposit", 0)),
            exchange_paused=data.get("exchange_paused", False),
            funding_paused=data.get("funding_paused", False),
            admin_controls_prices=data.get("admin_controls_prices", True),
            collateral_vault_balance=int(data.get("collateral_vault_balance", 0)),
            insurance_vault_balance=int(data.get("insurance_vault_balance", 0)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("CLEARINGHOUSE_ADMIN"):
            self.admin = v
        if v := os.environ.get("CLEARINGHOUSE_ORACLE"):
            self.oracle = v
        if v := os.environ.get("CLEARINGHOUSE_MAX_DEPOSIT"):
            self.max_deposit = int(v)
        if v := os.environ.get("CLEARINGHOUSE_EXCHANGE_PAUSED"):
            self.exchange_paused = _env_bool(v)
        if v := os.environ.get("CLEARINGHOUSE_FUNDING_PAUSED"):
            self.funding_paused = _env_bool(v)

    def validate(self) -> None:
        if not self.admin:
            raise ValueError("admin.admin must be set")
        if self.collateral_vault == self.insurance_vault:
            raise ValueError("admin.collateral_vault and admin.insurance_vault must differ")
        if self.max_deposit < 0:
            raise ValueError("admin.max_deposit must be non-negative")
        if self.collateral_vault_balance < 0 or self.insurance_vault_balance < 0:
            raise ValueError("admin vault balances must be non-negative")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

@dataclass
class ClearingHouseConfig:
    """Complete clearing house configuration."""
    fees: FeesConfig = field(default_factory=FeesConfig)
    oracle_guard_rails: OracleGuardRailsConfig = field(default_factory=OracleGuardRailsConfig)
    order_state: OrderStateConfig = field(default_factory=OrderStateConfig)
    margin: MarginConfig = field(default_factory=MarginConfig)
    liquidation: LiquidationConfig = field(default_factory=LiquidationConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClearingHouseConfig":
        return cls(
            fees=FeesConfig.from_dict(data.get("fees", {})),
            oracle_guard_rails=OracleGuardRailsConfig.from_dict(data.get("oracle_guard_rails", {})),
            order_state=OrderStateConfig.from_dict(data.get("order_state", {})),
            margin=MarginConfig.from_dict(data.get("margin", {})),
            liquidation=LiquidationConfig.from_dict(data.get("liquidation", {})),
            admin=AdminConfig.from_dict(data.get("admin", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "ClearingHouseConfig":
        """
        Load configuration from a TOML file.

        A missing file yields the defaults (with env overrides).
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            raw = tomllib.load(f)

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.fees.apply_env()
        self.oracle_guard_rails.apply_env()
        self.order_state.apply_env()
        self.margin.apply_env()
        self.liquidation.apply_env()
        self.admin.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ValueError: on invalid config
        """
        self.fees.validate()
        self.oracle_guard_rails.validate()
        self.order_state.validate()
        self.margin.validate()
        self.liquidation.validate()
        self.admin.validate()
        return True

    # --- protocol records -------------------------------------------------

    def to_state(self) -> State:
        return State(
            admin=self.admin.admin,
            collateral_vault=self.admin.collateral_vault,
            insurance_vault=self.admin.insurance_vault,
            history_store=self.admin.history_store,
            oracle=self.admin.oracle,
            exchange_paused=self.admin.exchange_paused,
            funding_paused=self.admin.funding_paused,
            admin_controls_prices=self.admin.admin_controls_prices,
            margin_ratio_initial=self.margin.initial,
            margin_ratio_partial=self.margin.partial,
            margin_ratio_maintenance=self.margin.maintenance,
            partial_liquidation_close_percentage=self.liquidation.partial_close_percentage,
            partial_liquidation_penalty_percentage=self.liquidation.partial_penalty_percentage,
            full_liquidation_penalty_percentage=self.liquidation.full_penalty_percentage,
            partial_liquidation_liquidator_share_denominator=self.liquidation.partial_liquidator_share_denominator,
            full_liquidation_liquidator_share_denominator=self.liquidation.full_liquidator_share_denominator,
            max_deposit=self.admin.max_deposit,
        )

    def to_fee_structure(self) -> FeeStructure:
        return self.fees.to_fee_structure()

    def to_oracle_guard_rails(self) -> OracleGuardRails:
        return self.oracle_guard_rails.to_oracle_guard_rails()

    def to_order_state(self) -> OrderState:
        return self.order_state.to_order_state()

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics; fractions rendered as "num/den")."""
        def render(section) -> Dict[str, Any]:
            return {
                k: (str(v) if isinstance(v, Fraction) else v)
                for k, v in asdict(section).items()
            }
        return {
            "fees": render(self.fees),
            "oracle_guard_rails": render(self.oracle_guard_rails),
            "order_state": render(self.order_state),
            "margin": render(self.margin),
            "liquidation": render(self.liquidation),
            "admin": render(self.admin),
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> ClearingHouseConfig:
    """
    Load and validate the clearing house configuration.

    Resolution order:
        1. Explicit *path* argument
        2. CLEARINGHOUSE_CONFIG_PATH env var
        3. CLEARINGHOUSE_CONFIG_PATH from .env (default ./config.toml)
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("CLEARINGHOUSE_CONFIG_PATH", str(constants.CLEARINGHOUSE_CONFIG_PATH))

    cfg = ClearingHouseConfig.from_file(path)
    cfg.validate()
    return cfg
