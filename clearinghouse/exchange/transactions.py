"""
Clearing House Transaction Types

Defines the envelope for every inbound clearing house directive. A
transaction names the operation, the sender and the operation's parameters;
the state manager validates it, executes it atomically and reports the
result.

Operation groups:
  - User:     deposit / withdraw collateral, open / close positions,
              settle funding
  - Orders:   place / cancel / fill / place-and-fill / expire
  - Keepers:  liquidate, update funding rate
  - Admin:    market setup, curve maintenance, fee withdrawals, setters
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Tuple


# ---------------------------------------------------------------------------
# Operation Types
# ---------------------------------------------------------------------------

class ClearingHouseOpType(IntEnum):
    """All clearing house operation types.  Values are part of the wire format."""
    # user
    DEPOSIT_COLLATERAL = 1
    WITHDRAW_COLLATERAL = 2
    OPEN_POSITION = 3
    CLOSE_POSITION = 4
    SETTLE_FUNDING_PAYMENT = 5
    # orders
    PLACE_ORDER = 10
    CANCEL_ORDER = 11
    FILL_ORDER = 12
    PLACE_AND_FILL_ORDER = 13
    EXPIRE_ORDERS = 14
    # keepers
    LIQUIDATE = 20
    UPDATE_FUNDING_RATE = 21
    # admin: markets and curve
    INITIALIZE_MARKET = 30
    MOVE_AMM_PRICE = 31
    REPEG_AMM_CURVE = 32
    UPDATE_K = 33
    UPDATE_AMM_ORACLE_TWAP = 34
    RESET_AMM_ORACLE_TWAP = 35
    FEED_PRICE = 36
    # admin: fees and vaults
    WITHDRAW_FEES = 40
    WITHDRAW_FROM_INSURANCE_VAULT_TO_MARKET = 41
    # admin: setters
    UPDATE_MARGIN_RATIO = 50
    UPDATE_PARTIAL_LIQUIDATION_CLOSE_PERCENTAGE = 51
    UPDATE_PARTIAL_LIQUIDATION_PENALTY_PERCENTAGE = 52
    UPDATE_FULL_LIQUIDATION_PENALTY_PERCENTAGE = 53
    UPDATE_PARTIAL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR = 54
    UPDATE_FULL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR = 55
    UPDATE_FEE = 56
    UPDATE_ORDER_STATE = 57
    UPDATE_MARKET_ORACLE = 58
    UPDATE_ORACLE_GUARD_RAILS = 59
    UPDATE_MAX_DEPOSIT = 60
    UPDATE_ADMIN = 61
    UPDATE_EXCHANGE_PAUSED = 62
    UPDATE_FUNDING_PAUSED = 63
    DISABLE_ADMIN_CONTROLS_PRICES = 64
    UPDATE_MARKET_MINIMUM_QUOTE_ASSET_TRADE_SIZE = 65
    UPDATE_MARKET_MINIMUM_BASE_ASSET_TRADE_SIZE = 66
    UPDATE_ORACLE_ADDRESS = 67
    UPDATE_HISTORY_STORE = 68


Op = ClearingHouseOpType

ADMIN_OPS = frozenset(op for op in ClearingHouseOpType if op >= Op.INITIALIZE_MARKET)

# blocked while State.exchange_paused
TRADING_OPS = frozenset({
    Op.WITHDRAW_COLLATERAL,
    Op.OPEN_POSITION,
    Op.CLOSE_POSITION,
    Op.PLACE_ORDER,
    Op.CANCEL_ORDER,
    Op.FILL_ORDER,
    Op.PLACE_AND_FILL_ORDER,
    Op.EXPIRE_ORDERS,
    Op.LIQUIDATE,
})

REQUIRED_PARAMS: Dict[ClearingHouseOpType, Tuple[str, ...]] = {
    Op.DEPOSIT_COLLATERAL: ("amount",),
    Op.WITHDRAW_COLLATERAL: ("amount",),
    Op.OPEN_POSITION: ("direction", "quote_asset_amount", "market_index"),
    Op.CLOSE_POSITION: ("market_index",),
    Op.SETTLE_FUNDING_PAYMENT: (),
    Op.PLACE_ORDER: ("order_type", "direction", "market_index"),
    Op.CANCEL_ORDER: ("market_index", "order_id"),
    Op.FILL_ORDER: ("user", "market_index", "order_id"),
    Op.PLACE_AND_FILL_ORDER: ("order_type", "direction", "market_index"),
    Op.EXPIRE_ORDERS: ("user",),
    Op.LIQUIDATE: ("user",),
    Op.UPDATE_FUNDING_RATE: ("market_index",),
    Op.INITIALIZE_MARKET: (
        "market_index", "market_name", "base_asset_reserve",
        "quote_asset_reserve", "funding_period", "peg_multiplier",
    ),
    Op.MOVE_AMM_PRICE: ("market_index", "base_asset_reserve", "quote_asset_reserve"),
    Op.REPEG_AMM_CURVE: ("market_index", "new_peg_candidate"),
    Op.UPDATE_K: ("market_index", "sqrt_k"),
    Op.UPDATE_AMM_ORACLE_TWAP: ("market_index",),
    Op.RESET_AMM_ORACLE_TWAP: ("market_index",),
    Op.FEED_PRICE: ("market_index", "price"),
    Op.WITHDRAW_FEES: ("market_index", "amount"),
    Op.WITHDRAW_FROM_INSURANCE_VAULT_TO_MARKET: ("market_index", "amount"),
    Op.UPDATE_MARGIN_RATIO: (
        "market_index", "margin_ratio_initial", "margin_ratio_partial", "margin_ratio_maintenance",
    ),
    Op.UPDATE_PARTIAL_LIQUIDATION_CLOSE_PERCENTAGE: ("value",),
    Op.UPDATE_PARTIAL_LIQUIDATION_PENALTY_PERCENTAGE: ("value",),
    Op.UPDATE_FULL_LIQUIDATION_PENALTY_PERCENTAGE: ("value",),
    Op.UPDATE_PARTIAL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR: ("denominator",),
    Op.UPDATE_FULL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR: ("denominator",),
    Op.UPDATE_FEE: ("fee",),
    Op.UPDATE_ORDER_STATE: ("min_order_quote_asset_amount", "reward", "time_based_reward_lower_bound"),
    Op.UPDATE_MARKET_ORACLE: ("market_index", "oracle"),
    Op.UPDATE_ORACLE_GUARD_RAILS: (
        "use_for_liquidations", "mark_oracle_divergence", "slots_before_stale",
        "confidence_interval_max_size", "too_volatile_ratio",
    ),
    Op.UPDATE_MAX_DEPOSIT: ("max_deposit",),
    Op.UPDATE_ADMIN: ("admin",),
    Op.UPDATE_EXCHANGE_PAUSED: ("exchange_paused",),
    Op.UPDATE_FUNDING_PAUSED: ("funding_paused",),
    Op.DISABLE_ADMIN_CONTROLS_PRICES: (),
    Op.UPDATE_MARKET_MINIMUM_QUOTE_ASSET_TRADE_SIZE: ("market_index", "minimum_trade_size"),
    Op.UPDATE_MARKET_MINIMUM_BASE_ASSET_TRADE_SIZE: ("market_index", "minimum_trade_size"),
    Op.UPDATE_ORACLE_ADDRESS: ("oracle",),
    Op.UPDATE_HISTORY_STORE: ("history_store",),
}


# ---------------------------------------------------------------------------
# Clearing House Transaction
# ---------------------------------------------------------------------------

@dataclass
class ClearingHouseTransaction:
    """Envelope for a single clearing house operation."""
    op_type: ClearingHouseOpType
    sender: str                         # caller address
    params: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0                  # execution time, unix seconds

    def __post_init__(self):
        if self.timestamp == 0:
            self.timestamp = int(time.time())
        if not isinstance(self.op_type, ClearingHouseOpType):
            try:
                self.op_type = ClearingHouseOpType(self.op_type)
            except ValueError:
                pass  # rejected by validate_basic

    # -- Serialization ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "op_type": int(self.op_type),
            "sender": self.sender,
            "params": self.params,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ClearingHouseTransaction:
        """Deserialize from a dictionary."""
        return cls(
            op_type=ClearingHouseOpType(data["op_type"]),
            sender=data["sender"],
            params=data.get("params", {}),
            timestamp=data.get("timestamp", 0),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    @classmethod
    def from_json(cls, raw: str) -> ClearingHouseTransaction:
        return cls.from_dict(json.loads(raw))

    # -- Validation ---------------------------------------------------------

    def validate_basic(self) -> bool:
        """
        Structural validation (no state access needed).

        Returns:
            True if structurally valid

        Raises:
            ValueError: with specific reason
        """
        if not self.sender:
            raise ValueError("Missing sender address")
        if self.timestamp < 0:
            raise ValueError("Timestamp must be non-negative")
        if not isinstance(self.op_type, ClearingHouseOpType):
            raise ValueError(f"Unknown operation type: {self.op_type}")

        self._validate_params()
        return True

    def _validate_params(self) -> None:
        """Validate operation-specific parameters."""
        p = self.params
        op = self.op_type

        for key in REQUIRED_PARAMS.get(op, ()):
            if key not in p:
                raise ValueError(f"{op.name} missing param: {key}")

        if op in (Op.DEPOSIT_COLLATERAL, Op.WITHDRAW_COLLATERAL, Op.WITHDRAW_FEES,
                  Op.WITHDRAW_FROM_INSURANCE_VAULT_TO_MARKET):
            if int(p["amount"]) < 0:
                raise ValueError(f"{op.name} amount must be non-negative")

        elif op == Op.FEED_PRICE:
            if int(p["price"]) <= 0:
                raise ValueError("FEED_PRICE price must be positive")

        elif op in (Op.PLACE_ORDER, Op.PLACE_AND_FILL_ORDER):
            if "base_asset_amount" not in p and "quote_asset_amount" not in p:
                raise ValueError(f"{op.name} needs base_asset_amount or quote_asset_amount")

        elif op in (Op.UPDATE_PARTIAL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR,
                    Op.UPDATE_FULL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR):
            if int(p["denominator"]) <= 0:
                raise ValueError(f"{op.name} denominator must be positive")

    # -- Identification -----------------------------------------------------

    @property
    def is_admin_op(self) -> bool:
        return self.op_type in ADMIN_OPS

    def __repr__(self) -> str:
        op = getattr(self.op_type, "name", self.op_type)
        return (f"ClearingHouseTransaction(op={op}, sender={self.sender[:16]}, "
                f"ts={self.timestamp})")
