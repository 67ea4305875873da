"""
Clearing House Data Model

Persisted records (markets, AMMs, positions, users, orders and the protocol
configuration records) plus the transient values computed from them
(oracle price data, oracle status, liquidation status).

All amounts are integers at fixed precision:
  - prices, peg-adjusted:      MARK_PRICE_PRECISION   (1e10)
  - AMM reserves / base asset: AMM_RESERVE_PRECISION  (1e13)
  - quote asset / collateral:  QUOTE_PRECISION        (1e6)
  - peg multiplier:            PEG_PRECISION          (1e3)
  - margin ratios:             MARGIN_PRECISION       (1e4)
Fractional parameters (fees, penalties, discounts) are `Fraction`s.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import List, Optional

from ..constants import (
    DEFAULT_MINIMUM_BASE_ASSET_TRADE_SIZE,
    DEFAULT_MINIMUM_QUOTE_ASSET_TRADE_SIZE,
    QUOTE_PRECISION,
)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PositionDirection(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> PositionDirection:
        return PositionDirection.SHORT if self is PositionDirection.LONG else PositionDirection.LONG


class SwapDirection(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class DepositDirection(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


class OrderStatus(str, Enum):
    INIT = "init"
    OPEN = "open"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    TRIGGER_MARKET = "trigger_market"
    TRIGGER_LIMIT = "trigger_limit"


class OrderTriggerCondition(str, Enum):
    ABOVE = "above"
    BELOW = "below"


class OrderDiscountTier(str, Enum):
    NONE = "none"
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"
    FOURTH = "fourth"


class OrderAction(str, Enum):
    PLACE = "place"
    CANCEL = "cancel"
    FILL = "fill"
    EXPIRE = "expire"


class LiquidationType(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


# ---------------------------------------------------------------------------
# Protocol configuration records
# ---------------------------------------------------------------------------

@dataclass
class FeeStructure:
    """Taker fee, discount-token tiers and the referral split."""
    fee: Fraction = Fraction(10, 10_000)
    first_tier_minimum_balance: int = 1_000 * QUOTE_PRECISION
    first_tier_discount: Fraction = Fraction(20, 100)
    second_tier_minimum_balance: int = 100 * QUOTE_PRECISION
    second_tier_discount: Fraction = Fraction(15, 100)
    third_tier_minimum_balance: int = 10 * QUOTE_PRECISION
    third_tier_discount: Fraction = Fraction(10, 100)
    fourth_tier_minimum_balance: int = 1 * QUOTE_PRECISION
    fourth_tier_discount: Fraction = Fraction(5, 100)
    referrer_reward: Fraction = Fraction(5, 100)
    referee_discount: Fraction = Fraction(5, 100)


@dataclass
class OracleGuardRails:
    """Thresholds bounding how far the oracle is trusted."""
    use_for_liquidations: bool = True
    mark_oracle_divergence: Fraction = Fraction(1, 10)
    slots_before_stale: int = 1000
    confidence_interval_max_size: int = 4
    too_volatile_ratio: int = 5


@dataclass
class OrderState:
    min_order_quote_asset_amount: int = 0
    reward: Fraction = Fraction(0)
    time_based_reward_lower_bound: int = 0


@dataclass
class State:
    """Global protocol record. Mutated only by admin operations."""
    admin: str
    collateral_vault: str = "collateral_vault"
    insurance_vault: str = "insurance_vault"
    history_store: str = "history"
    oracle: str = "oracle"
    exchange_paused: bool = False
    funding_paused: bool = False
    admin_controls_prices: bool = True
    margin_ratio_initial: int = 2000
    margin_ratio_partial: int = 625
    margin_ratio_maintenance: int = 500
    partial_liquidation_close_percentage: Fraction = Fraction(25, 100)
    partial_liquidation_penalty_percentage: Fraction = Fraction(25, 100)
    full_liquidation_penalty_percentage: Fraction = Fraction(1)
    partial_liquidation_liquidator_share_denominator: int = 1
    full_liquidation_liquidator_share_denominator: int = 2000
    max_deposit: int = 0
    markets_length: int = 0


# ---------------------------------------------------------------------------
# Markets
# ---------------------------------------------------------------------------

@dataclass
class Amm:
    """Virtual AMM embedded in a market. Reserves satisfy base * quote == sqrt_k ** 2."""
    oracle: str
    base_asset_reserve: int
    quote_asset_reserve: int
    sqrt_k: int
    peg_multiplier: int
    funding_period: int
    cumulative_funding_rate_long: int = 0
    cumulative_funding_rate_short: int = 0
    last_funding_rate: int = 0
    last_funding_rate_ts: int = 0
    last_mark_price_twap: int = 0
    last_mark_price_twap_ts: int = 0
    last_oracle_price: int = 0
    last_oracle_price_twap: int = 0
    last_oracle_price_twap_ts: int = 0
    total_fee: int = 0
    total_fee_minus_distributions: int = 0
    total_fee_withdrawn: int = 0
    minimum_quote_asset_trade_size: int = DEFAULT_MINIMUM_QUOTE_ASSET_TRADE_SIZE
    minimum_base_asset_trade_size: int = DEFAULT_MINIMUM_BASE_ASSET_TRADE_SIZE

    def oracle_twap(self) -> Optional[int]:
        """Stored oracle TWAP, or None before the AMM has any mark history."""
        if self.last_mark_price_twap == 0:
            return None
        return self.last_oracle_price_twap


@dataclass
class Market:
    market_name: str
    amm: Amm
    initialized: bool = True
    base_asset_amount: int = 0
    base_asset_amount_long: int = 0
    base_asset_amount_short: int = 0
    open_interest: int = 0
    margin_ratio_initial: int = 2000
    margin_ratio_partial: int = 625
    margin_ratio_maintenance: int = 500


# ---------------------------------------------------------------------------
# Users and positions
# ---------------------------------------------------------------------------

@dataclass
class User:
    collateral: int = 0
    cumulative_deposits: int = 0
    total_fee_paid: int = 0
    total_token_discount: int = 0
    total_referral_reward: int = 0
    total_referee_discount: int = 0
    referrer: Optional[str] = None


@dataclass
class Position:
    market_index: int
    base_asset_amount: int = 0
    quote_asset_amount: int = 0
    last_cumulative_funding_rate: int = 0
    last_funding_rate_ts: int = 0
    order_length: int = 0

    @property
    def is_open_position(self) -> bool:
        return self.base_asset_amount != 0

    @property
    def has_open_order(self) -> bool:
        return self.order_length != 0

    @property
    def is_available(self) -> bool:
        return not self.is_open_position and not self.has_open_order


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@dataclass
class OrderParams:
    """Caller-supplied order description."""
    order_type: OrderType
    direction: PositionDirection
    market_index: int
    base_asset_amount: int = 0
    quote_asset_amount: int = 0
    price: int = 0
    user_order_id: int = 0
    reduce_only: bool = False
    post_only: bool = False
    immediate_or_cancel: bool = False
    trigger_price: int = 0
    trigger_condition: OrderTriggerCondition = OrderTriggerCondition.ABOVE
    oracle_price_offset: int = 0


@dataclass
class Order:
    order_id: int
    user_order_id: int
    ts: int
    market_index: int
    order_type: OrderType
    direction: PositionDirection
    status: OrderStatus = OrderStatus.INIT
    price: int = 0
    base_asset_amount: int = 0
    quote_asset_amount: int = 0
    base_asset_amount_filled: int = 0
    quote_asset_amount_filled: int = 0
    fee: int = 0
    reduce_only: bool = False
    post_only: bool = False
    immediate_or_cancel: bool = False
    discount_tier: OrderDiscountTier = OrderDiscountTier.NONE
    trigger_price: int = 0
    trigger_condition: OrderTriggerCondition = OrderTriggerCondition.ABOVE
    referrer: Optional[str] = None
    oracle_price_offset: int = 0

    @property
    def is_open(self) -> bool:
        return self.status == OrderStatus.OPEN

    @property
    def base_asset_amount_unfilled(self) -> int:
        return self.base_asset_amount - self.base_asset_amount_filled


# ---------------------------------------------------------------------------
# Derived (never persisted)
# ---------------------------------------------------------------------------

@dataclass
class OraclePriceData:
    price: int
    confidence: int
    delay: int
    has_sufficient_number_of_data_points: bool


@dataclass
class OracleStatus:
    price_data: OraclePriceData
    oracle_mark_spread_pct: int
    is_valid: bool
    mark_too_divergent: bool


@dataclass
class MarketStatus:
    market_index: int
    partial_margin_requirement: int
    maintenance_margin_requirement: int
    base_asset_value: int
    mark_price_before: int
    oracle_status: OracleStatus
    close_position_slippage: Optional[int] = None


@dataclass
class LiquidationStatus:
    liquidation_type: LiquidationType
    margin_requirement: int
    total_collateral: int
    unrealized_pnl: int
    adjusted_total_collateral: int
    base_asset_value: int
    margin_ratio: int
    market_statuses: List[MarketStatus] = field(default_factory=list)
