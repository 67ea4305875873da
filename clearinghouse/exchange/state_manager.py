"""
Clearing House State Manager

Central owner of the clearing house state. Every mutation arrives as a
ClearingHouseTransaction and is applied atomically:

  1. structural validation of the transaction
  2. authorisation (admin ops) and the exchange-paused guard
  3. execution against a deep copy of the store
  4. vault preflight: every queued directive must be payable
  5. commit: swap in the staged store, append history records, apply
     vault directives

Any exception in steps 3-4 discards the staged copy and leaves the committed
state, history and vaults untouched.

Also provides the read-only query interface.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, fields
from fractions import Fraction
from typing import Any, Dict, List, Optional

from ..exceptions import ExchangePaused, InsufficientCollateral, Unauthorized
from ..logger import configure as configure_logging
from .admin import (
    feed_price,
    initialize_market,
    move_amm_price,
    replace_record,
    update_margin_ratio,
    update_market_amm,
    update_state,
    withdraw_fees,
    withdraw_from_insurance_vault_to_market,
)
from .checked import parse_fraction
from .context import ExecutionContext, Outbox
from .funding import settle_funding_payment, update_funding_rate
from .history import HistoryLog, HistoryRecord
from .liquidation import liquidate
from .margin import calculate_liquidation_status
from .oracle import DEFAULT_CONFIDENCE, PriceFeedRegistry
from .orders import cancel_order, expire_orders, fill_order, place_order
from .position import base_asset_value_and_pnl
from .repeg import repeg_amm_curve, reset_amm_oracle_twap, update_amm_oracle_twap, update_k
from .store import Store
from .trading import close_position, deposit_collateral, open_position, withdraw_collateral
from .transactions import ADMIN_OPS, TRADING_OPS, ClearingHouseOpType, ClearingHouseTransaction
from .types import (
    FeeStructure,
    LiquidationStatus,
    OracleGuardRails,
    OrderParams,
    OrderState,
    OrderTriggerCondition,
    OrderType,
    PositionDirection,
    State,
)
from .vault import Vault, VaultDirective

logger = logging.getLogger(__name__)

Op = ClearingHouseOpType


# ---------------------------------------------------------------------------
# Transaction execution result
# ---------------------------------------------------------------------------

class ExecResult:
    """Result of executing a single clearing house transaction."""

    __slots__ = ("success", "data", "error", "records")

    def __init__(
        self,
        success: bool = True,
        data: Optional[Dict[str, Any]] = None,
        error: str = "",
        records: Optional[List[HistoryRecord]] = None,
    ):
        self.success = success
        self.data = data or {}
        self.error = error
        self.records = records or []

    def __repr__(self) -> str:
        if self.success:
            return f"ExecResult(success=True, data={self.data})"
        return f"ExecResult(success=False, error={self.error!r})"


# ---------------------------------------------------------------------------
# Parameter parsing
# ---------------------------------------------------------------------------

def _bool(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return bool(raw)


def _direction(raw: Any) -> PositionDirection:
    try:
        return PositionDirection(raw)
    except ValueError:
        return PositionDirection[str(raw).upper()]


def _order_type(raw: Any) -> OrderType:
    try:
        return OrderType(raw)
    except ValueError:
        return OrderType[str(raw).upper()]


def _trigger_condition(raw: Any) -> OrderTriggerCondition:
    try:
        return OrderTriggerCondition(raw)
    except ValueError:
        return OrderTriggerCondition[str(raw).upper()]


def _build_record(cls, params: Dict[str, Any]):
    """Build a protocol record from params, defaulting absent fields."""
    defaults = cls()
    values = {}
    for f in fields(cls):
        default = getattr(defaults, f.name)
        if f.name not in params:
            values[f.name] = default
        elif isinstance(default, bool):
            values[f.name] = _bool(params[f.name])
        elif isinstance(default, Fraction):
            values[f.name] = parse_fraction(params[f.name])
        else:
            values[f.name] = int(params[f.name])
    return cls(**values)


def _order_params(p: Dict[str, Any]) -> OrderParams:
    return OrderParams(
        order_type=_order_type(p["order_type"]),
        direction=_direction(p["direction"]),
        market_index=int(p["market_index"]),
        base_asset_amount=int(p.get("base_asset_amount", 0)),
        quote_asset_amount=int(p.get("quote_asset_amount", 0)),
        price=int(p.get("price", 0)),
        user_order_id=int(p.get("user_order_id", 0)),
        reduce_only=_bool(p.get("reduce_only", False)),
        post_only=_bool(p.get("post_only", False)),
        immediate_or_cancel=_bool(p.get("immediate_or_cancel", False)),
        trigger_price=int(p.get("trigger_price", 0)),
        trigger_condition=_trigger_condition(p.get("trigger_condition", OrderTriggerCondition.ABOVE)),
        oracle_price_offset=int(p.get("oracle_price_offset", 0)),
    )


# ---------------------------------------------------------------------------
# Clearing House State Manager
# ---------------------------------------------------------------------------

class ClearingHouseStateManager:
    """
    Owner of the store, oracle feeds, history log and vaults.

    Usage:

        mgr = ClearingHouseStateManager.create(admin="admin")
        result = mgr.process_transaction(ClearingHouseTransaction(
            op_type=ClearingHouseOpType.DEPOSIT_COLLATERAL,
            sender="alice",
            params={"amount": 10_000_000},
        ))
    """

    instance: Optional[ClearingHouseStateManager] = None

    def __init__(
        self,
        store: Store,
        feeds: Optional[PriceFeedRegistry] = None,
        history: Optional[HistoryLog] = None,
        vaults: Optional[Dict[str, Vault]] = None,
    ) -> None:
        self.store = store
        self.feeds = feeds if feeds is not None else PriceFeedRegistry()
        self.history = history if history is not None else HistoryLog(store.state.history_store)
        self.vaults: Dict[str, Vault] = vaults if vaults is not None else {}
        for name in (store.state.collateral_vault, store.state.insurance_vault):
            self.vaults.setdefault(name, Vault(name))

        # --- Counters ---
        self._total_transactions: int = 0
        self._failed_transactions: int = 0

    @classmethod
    def create(
        cls,
        admin: str,
        collateral_vault_balance: int = 0,
        insurance_vault_balance: int = 0,
        **state_overrides,
    ) -> ClearingHouseStateManager:
        """Fresh clearing house with default protocol records."""
        configure_logging()
        state = State(admin=admin, **state_overrides)
        vaults = {
            state.collateral_vault: Vault(state.collateral_vault, collateral_vault_balance),
            state.insurance_vault: Vault(state.insurance_vault, insurance_vault_balance),
        }
        return cls(Store(state=state), vaults=vaults)

    @classmethod
    def from_config(cls, config) -> ClearingHouseStateManager:
        """Build from a loaded ClearingHouseConfig."""
        configure_logging()
        store = Store(
            state=config.to_state(),
            fee_structure=config.to_fee_structure(),
            oracle_guard_rails=config.to_oracle_guard_rails(),
            order_state=config.to_order_state(),
        )
        vaults = {
            store.state.collateral_vault: Vault(store.state.collateral_vault, config.admin.collateral_vault_balance),
            store.state.insurance_vault: Vault(store.state.insurance_vault, config.admin.insurance_vault_balance),
        }
        return cls(store, vaults=vaults)

    @classmethod
    def get_instance(cls, admin: str = "") -> ClearingHouseStateManager:
        """Get or create the singleton instance."""
        if cls.instance is None:
            if not admin:
                raise ValueError("An admin address is required to create the clearing house")
            cls.instance = cls.create(admin)
            logger.info("Clearing house state manager initialized (admin=%s)", admin)
        return cls.instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton (for testing)."""
        cls.instance = None

    # =====================================================================
    #  Transaction processing
    # =====================================================================

    def process_transaction(self, tx: ClearingHouseTransaction) -> ExecResult:
        """
        Execute a single transaction atomically.

        This is the only entry point for state mutations. A failed
        transaction leaves the store, history and vaults exactly as they were.
        """
        self._total_transactions += 1

        # 1. Basic structural validation
        try:
            tx.validate_basic()
        except ValueError as e:
            self._failed_transactions += 1
            return ExecResult(success=False, error=str(e))

        # 2. Stage
        staged = copy.deepcopy(self.store)
        outbox = Outbox(self.history)
        ctx = ExecutionContext(
            store=staged,
            feeds=self.feeds,
            outbox=outbox,
            now=tx.timestamp,
            sender=tx.sender,
            vault_balances={name: vault.balance for name, vault in self.vaults.items()},
        )

        # 3. Execute
        try:
            self._check_access(ctx, tx)
            result = self._execute_op(ctx, tx)
            if result.success:
                self._preflight_vaults(outbox.vault_directives)
        except Exception as e:
            logger.error("Failed op=%s user=%s: %s", tx.op_type.name, tx.sender, e)
            self._failed_transactions += 1
            return ExecResult(success=False, error=str(e))

        if not result.success:
            self._failed_transactions += 1
            return result

        # 4. Commit
        self._commit(staged, outbox)
        result.records = list(outbox.records)
        return result

    def _check_access(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> None:
        state = ctx.state
        if tx.op_type in ADMIN_OPS and tx.sender != state.admin:
            raise Unauthorized(f"{tx.sender} is not the admin")
        if tx.op_type in TRADING_OPS and state.exchange_paused:
            raise ExchangePaused()

    def _preflight_vaults(self, directives: List[VaultDirective]) -> None:
        """Replay directives against scratch balances; every step must stay payable."""
        balances = {name: vault.balance for name, vault in self.vaults.items()}
        for d in directives:
            if d.action == "deposit":
                balances[d.vault] = balances.get(d.vault, 0) + d.amount
                continue
            available = balances.get(d.vault, 0)
            if d.amount > available:
                raise InsufficientCollateral(f"{d.vault} balance {available} below {d.action} {d.amount}")
            balances[d.vault] = available - d.amount
            if d.action == "transfer":
                balances[d.counterparty] = balances.get(d.counterparty, 0) + d.amount

    def _vault(self, name: str) -> Vault:
        if name not in self.vaults:
            self.vaults[name] = Vault(name)
        return self.vaults[name]

    def _commit(self, staged: Store, outbox: Outbox) -> None:
        self.store = staged
        self.history.name = staged.state.history_store
        for record in outbox.records:
            self.history.append(record)
        for d in outbox.vault_directives:
            vault = self._vault(d.vault)
            if d.action == "deposit":
                vault.deposit(d.counterparty, d.amount)
            elif d.action == "withdraw":
                vault.withdraw(d.counterparty, d.amount)
            else:
                vault.transfer_to(self._vault(d.counterparty), d.amount)

    def _execute_op(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        """Dispatch to the appropriate handler."""
        handlers = {
            Op.DEPOSIT_COLLATERAL: self._op_deposit_collateral,
            Op.WITHDRAW_COLLATERAL: self._op_withdraw_collateral,
            Op.OPEN_POSITION: self._op_open_position,
            Op.CLOSE_POSITION: self._op_close_position,
            Op.SETTLE_FUNDING_PAYMENT: self._op_settle_funding_payment,
            Op.PLACE_ORDER: self._op_place_order,
            Op.CANCEL_ORDER: self._op_cancel_order,
            Op.FILL_ORDER: self._op_fill_order,
            Op.PLACE_AND_FILL_ORDER: self._op_place_and_fill_order,
            Op.EXPIRE_ORDERS: self._op_expire_orders,
            Op.LIQUIDATE: self._op_liquidate,
            Op.UPDATE_FUNDING_RATE: self._op_update_funding_rate,
            Op.INITIALIZE_MARKET: self._op_initialize_market,
            Op.MOVE_AMM_PRICE: self._op_move_amm_price,
            Op.REPEG_AMM_CURVE: self._op_repeg_amm_curve,
            Op.UPDATE_K: self._op_update_k,
            Op.UPDATE_AMM_ORACLE_TWAP: self._op_update_amm_oracle_twap,
            Op.RESET_AMM_ORACLE_TWAP: self._op_reset_amm_oracle_twap,
            Op.FEED_PRICE: self._op_feed_price,
            Op.WITHDRAW_FEES: self._op_withdraw_fees,
            Op.WITHDRAW_FROM_INSURANCE_VAULT_TO_MARKET: self._op_withdraw_from_insurance_vault_to_market,
            Op.UPDATE_MARGIN_RATIO: self._op_update_margin_ratio,
            Op.UPDATE_PARTIAL_LIQUIDATION_CLOSE_PERCENTAGE: self._op_update_state_fraction,
            Op.UPDATE_PARTIAL_LIQUIDATION_PENALTY_PERCENTAGE: self._op_update_state_fraction,
            Op.UPDATE_FULL_LIQUIDATION_PENALTY_PERCENTAGE: self._op_update_state_fraction,
            Op.UPDATE_PARTIAL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR: self._op_update_state_denominator,
            Op.UPDATE_FULL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR: self._op_update_state_denominator,
            Op.UPDATE_FEE: self._op_update_fee,
            Op.UPDATE_ORDER_STATE: self._op_update_order_state,
            Op.UPDATE_MARKET_ORACLE: self._op_update_market_oracle,
            Op.UPDATE_ORACLE_GUARD_RAILS: self._op_update_oracle_guard_rails,
            Op.UPDATE_MAX_DEPOSIT: self._op_update_max_deposit,
            Op.UPDATE_ADMIN: self._op_update_admin,
            Op.UPDATE_EXCHANGE_PAUSED: self._op_update_exchange_paused,
            Op.UPDATE_FUNDING_PAUSED: self._op_update_funding_paused,
            Op.DISABLE_ADMIN_CONTROLS_PRICES: self._op_disable_admin_controls_prices,
            Op.UPDATE_MARKET_MINIMUM_QUOTE_ASSET_TRADE_SIZE: self._op_update_market_minimum_trade_size,
            Op.UPDATE_MARKET_MINIMUM_BASE_ASSET_TRADE_SIZE: self._op_update_market_minimum_trade_size,
            Op.UPDATE_ORACLE_ADDRESS: self._op_update_oracle_address,
            Op.UPDATE_HISTORY_STORE: self._op_update_history_store,
        }
        handler = handlers.get(tx.op_type)
        if handler is None:
            return ExecResult(success=False, error=f"Unknown op type: {tx.op_type}")
        return handler(ctx, tx)

    # =====================================================================
    #  User handlers
    # =====================================================================

    def _op_deposit_collateral(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        record = deposit_collateral(ctx, tx.sender, int(p["amount"]), p.get("referrer"))
        user = ctx.store.users[tx.sender]
        return ExecResult(data={"deposit_record_id": record.record_id, "collateral": user.collateral})

    def _op_withdraw_collateral(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        record = withdraw_collateral(ctx, tx.sender, int(tx.params["amount"]))
        user = ctx.store.users[tx.sender]
        return ExecResult(data={
            "deposit_record_id": record.record_id,
            "amount": record.amount,
            "collateral": user.collateral,
        })

    def _op_open_position(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        limit_price = p.get("limit_price")
        record = open_position(
            ctx,
            tx.sender,
            _direction(p["direction"]),
            int(p["quote_asset_amount"]),
            int(p["market_index"]),
            int(limit_price) if limit_price is not None else None,
            int(p.get("discount_token_amount", 0)),
        )
        return ExecResult(data={
            "trade_record_id": record.record_id,
            "base_asset_amount": record.base_asset_amount,
            "quote_asset_amount": record.quote_asset_amount,
            "fee": record.fee,
            "mark_price_after": record.mark_price_after,
        })

    def _op_close_position(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        record = close_position(
            ctx, tx.sender, int(p["market_index"]), int(p.get("discount_token_amount", 0))
        )
        return ExecResult(data={
            "trade_record_id": record.record_id,
            "base_asset_amount": record.base_asset_amount,
            "quote_asset_amount": record.quote_asset_amount,
            "fee": record.fee,
        })

    def _op_settle_funding_payment(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        ctx.store.load_user(tx.sender)
        records = settle_funding_payment(ctx, tx.sender)
        return ExecResult(data={
            "settled_markets": [r.market_index for r in records],
            "funding_payment": sum(r.funding_payment for r in records),
        })

    # =====================================================================
    #  Order handlers
    # =====================================================================

    def _op_place_order(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        order = place_order(ctx, tx.sender, _order_params(p), int(p.get("discount_token_amount", 0)))
        return ExecResult(data={"order_id": order.order_id, "market_index": order.market_index})

    def _op_cancel_order(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        order = cancel_order(ctx, tx.sender, int(p["market_index"]), int(p["order_id"]))
        return ExecResult(data={"order_id": order.order_id})

    def _op_fill_order(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        filled = fill_order(ctx, str(p["user"]), tx.sender, int(p["market_index"]), int(p["order_id"]))
        return ExecResult(data={"order_id": int(p["order_id"]), "base_asset_amount_filled": filled})

    def _op_place_and_fill_order(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        order = place_order(ctx, tx.sender, _order_params(p), int(p.get("discount_token_amount", 0)))
        filled = fill_order(ctx, tx.sender, tx.sender, order.market_index, order.order_id)
        return ExecResult(data={"order_id": order.order_id, "base_asset_amount_filled": filled})

    def _op_expire_orders(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        records = expire_orders(ctx, str(tx.params["user"]), tx.sender)
        return ExecResult(data={
            "expired_order_ids": [r.order.order_id for r in records],
            "filler_reward": sum(r.filler_reward for r in records),
        })

    # =====================================================================
    #  Keeper handlers
    # =====================================================================

    def _op_liquidate(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        record = liquidate(ctx, tx.sender, str(tx.params["user"]))
        return ExecResult(data={
            "liquidation_record_id": record.record_id,
            "partial": record.partial,
            "base_asset_value_closed": record.base_asset_value_closed,
            "liquidation_fee": record.liquidation_fee,
            "fee_to_liquidator": record.fee_to_liquidator,
            "fee_to_insurance_fund": record.fee_to_insurance_fund,
        })

    def _op_update_funding_rate(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        record = update_funding_rate(ctx, int(tx.params["market_index"]))
        if record is None:
            return ExecResult(data={"updated": False})
        return ExecResult(data={"updated": True, "funding_rate": record.funding_rate})

    # =====================================================================
    #  Admin handlers
    # =====================================================================

    def _op_initialize_market(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        state = ctx.state
        market_index = int(p["market_index"])
        initialize_market(
            ctx,
            market_index,
            str(p["market_name"]),
            int(p["base_asset_reserve"]),
            int(p["quote_asset_reserve"]),
            int(p["funding_period"]),
            int(p["peg_multiplier"]),
            int(p.get("margin_ratio_initial", state.margin_ratio_initial)),
            int(p.get("margin_ratio_partial", state.margin_ratio_partial)),
            int(p.get("margin_ratio_maintenance", state.margin_ratio_maintenance)),
        )
        return ExecResult(data={"market_index": market_index, "markets_length": state.markets_length})

    def _op_move_amm_price(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        mark_price = move_amm_price(
            ctx, int(p["market_index"]), int(p["base_asset_reserve"]), int(p["quote_asset_reserve"])
        )
        return ExecResult(data={"mark_price": mark_price})

    def _op_repeg_amm_curve(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        record = repeg_amm_curve(ctx, int(p["market_index"]), int(p["new_peg_candidate"]))
        return ExecResult(data={"curve_record_id": record.record_id, "adjustment_cost": record.adjustment_cost})

    def _op_update_k(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        record = update_k(ctx, int(p["market_index"]), int(p["sqrt_k"]))
        return ExecResult(data={"curve_record_id": record.record_id, "adjustment_cost": record.adjustment_cost})

    def _op_update_amm_oracle_twap(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        twap = update_amm_oracle_twap(ctx, int(tx.params["market_index"]))
        return ExecResult(data={"last_oracle_price_twap": twap})

    def _op_reset_amm_oracle_twap(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        twap = reset_amm_oracle_twap(ctx, int(tx.params["market_index"]))
        return ExecResult(data={"last_oracle_price_twap": twap})

    def _op_feed_price(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        price = feed_price(
            ctx, int(p["market_index"]), int(p["price"]), int(p.get("confidence", DEFAULT_CONFIDENCE))
        )
        return ExecResult(data={"price": price})

    def _op_withdraw_fees(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        withdrawn = withdraw_fees(ctx, int(p["market_index"]), int(p["amount"]))
        return ExecResult(data={"total_fee_withdrawn": withdrawn})

    def _op_withdraw_from_insurance_vault_to_market(
        self, ctx: ExecutionContext, tx: ClearingHouseTransaction
    ) -> ExecResult:
        p = tx.params
        total = withdraw_from_insurance_vault_to_market(ctx, int(p["market_index"]), int(p["amount"]))
        return ExecResult(data={"total_fee_minus_distributions": total})

    def _op_update_margin_ratio(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        update_margin_ratio(
            ctx,
            int(p["market_index"]),
            int(p["margin_ratio_initial"]),
            int(p["margin_ratio_partial"]),
            int(p["margin_ratio_maintenance"]),
        )
        return ExecResult()

    def _op_update_state_fraction(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        field_name = {
            Op.UPDATE_PARTIAL_LIQUIDATION_CLOSE_PERCENTAGE: "partial_liquidation_close_percentage",
            Op.UPDATE_PARTIAL_LIQUIDATION_PENALTY_PERCENTAGE: "partial_liquidation_penalty_percentage",
            Op.UPDATE_FULL_LIQUIDATION_PENALTY_PERCENTAGE: "full_liquidation_penalty_percentage",
        }[tx.op_type]
        update_state(ctx, **{field_name: parse_fraction(tx.params["value"])})
        return ExecResult()

    def _op_update_state_denominator(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        if tx.op_type == Op.UPDATE_PARTIAL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR:
            field_name = "partial_liquidation_liquidator_share_denominator"
        else:
            field_name = "full_liquidation_liquidator_share_denominator"
        update_state(ctx, **{field_name: int(tx.params["denominator"])})
        return ExecResult()

    def _op_update_fee(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        replace_record(ctx, "fee_structure", _build_record(FeeStructure, tx.params))
        return ExecResult()

    def _op_update_order_state(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        replace_record(ctx, "order_state", _build_record(OrderState, tx.params))
        return ExecResult()

    def _op_update_oracle_guard_rails(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        replace_record(ctx, "oracle_guard_rails", _build_record(OracleGuardRails, tx.params))
        return ExecResult()

    def _op_update_market_oracle(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        p = tx.params
        update_market_amm(ctx, int(p["market_index"]), oracle=str(p["oracle"]))
        return ExecResult()

    def _op_update_market_minimum_trade_size(
        self, ctx: ExecutionContext, tx: ClearingHouseTransaction
    ) -> ExecResult:
        p = tx.params
        if tx.op_type == Op.UPDATE_MARKET_MINIMUM_QUOTE_ASSET_TRADE_SIZE:
            field_name = "minimum_quote_asset_trade_size"
        else:
            field_name = "minimum_base_asset_trade_size"
        update_market_amm(ctx, int(p["market_index"]), **{field_name: int(p["minimum_trade_size"])})
        return ExecResult()

    def _op_update_max_deposit(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        update_state(ctx, max_deposit=int(tx.params["max_deposit"]))
        return ExecResult()

    def _op_update_admin(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        admin = str(tx.params["admin"])
        if not admin:
            raise ValueError("Admin address must be non-empty")
        update_state(ctx, admin=admin)
        return ExecResult(data={"admin": admin})

    def _op_update_exchange_paused(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        update_state(ctx, exchange_paused=_bool(tx.params["exchange_paused"]))
        return ExecResult()

    def _op_update_funding_paused(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        update_state(ctx, funding_paused=_bool(tx.params["funding_paused"]))
        return ExecResult()

    def _op_disable_admin_controls_prices(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        update_state(ctx, admin_controls_prices=False)
        return ExecResult()

    def _op_update_oracle_address(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        update_state(ctx, oracle=str(tx.params["oracle"]))
        return ExecResult()

    def _op_update_history_store(self, ctx: ExecutionContext, tx: ClearingHouseTransaction) -> ExecResult:
        update_state(ctx, history_store=str(tx.params["history_store"]))
        return ExecResult()

    # =====================================================================
    #  Query interface (read-only)
    # =====================================================================

    def get_state(self) -> Dict[str, Any]:
        return asdict(self.store.state)

    def get_fee_structure(self) -> Dict[str, Any]:
        return asdict(self.store.fee_structure)

    def get_oracle_guard_rails(self) -> Dict[str, Any]:
        return asdict(self.store.oracle_guard_rails)

    def get_order_state(self) -> Dict[str, Any]:
        return asdict(self.store.order_state)

    def get_market_length(self) -> int:
        return self.store.state.markets_length

    def get_market_info(self, market_index: int) -> Optional[Dict[str, Any]]:
        market = self.store.markets.get(market_index)
        return asdict(market) if market is not None else None

    def get_user(self, user: str) -> Optional[Dict[str, Any]]:
        record = self.store.users.get(user)
        return asdict(record) if record is not None else None

    def get_user_position(self, user: str, market_index: int) -> Optional[Dict[str, Any]]:
        position = self.store.get_position(user, market_index)
        return asdict(position) if position is not None else None

    def get_user_orders(self, user: str, market_index: int) -> List[Dict[str, Any]]:
        return [asdict(order) for _, order in self.store.user_orders(user, market_index)]

    def get_active_positions(self, user: str) -> List[Dict[str, Any]]:
        """Open positions with their curve value and unrealised PnL."""
        positions = []
        for market, position in self.store.user_positions(user):
            if position.base_asset_amount == 0:
                continue
            base_asset_value, unrealized_pnl = base_asset_value_and_pnl(position, market)
            entry = asdict(position)
            entry["base_asset_value"] = base_asset_value
            entry["unrealized_pnl"] = unrealized_pnl
            positions.append(entry)
        return positions

    def get_liquidation_status(self, user: str, now: int) -> LiquidationStatus:
        """
        Liquidation classification at `now`.

        Evaluated on a scratch copy since reading the oracle records the
        price on each AMM.
        """
        ctx = ExecutionContext(
            store=copy.deepcopy(self.store),
            feeds=self.feeds,
            outbox=Outbox(self.history),
            now=now,
        )
        return calculate_liquidation_status(ctx, user)

    def vault_balance(self, name: str) -> int:
        vault = self.vaults.get(name)
        return vault.balance if vault is not None else 0

    def get_stats(self) -> Dict[str, Any]:
        """Clearing-house-wide statistics."""
        return {
            "markets": self.store.state.markets_length,
            "users": len(self.store.users),
            "open_orders": len(self.store.orders),
            "history_records": len(self.history),
            "collateral_vault": self.vault_balance(self.store.state.collateral_vault),
            "insurance_vault": self.vault_balance(self.store.state.insurance_vault),
            "total_transactions": self._total_transactions,
            "failed_transactions": self._failed_transactions,
        }
