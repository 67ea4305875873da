"""
Test suite for the clearing house state manager

Covers:
  - Admin access control and the exchange pause
  - Market initialization and setters
  - Fee withdrawals and insurance top-ups (vault preflight)
  - Atomicity: failed operations leave store, history and vaults untouched
  - Query interface and counters
  - Singleton lifecycle
"""

from fractions import Fraction

import pytest

from clearinghouse.exchange.state_manager import ClearingHouseStateManager
from clearinghouse.exchange.transactions import ClearingHouseOpType as Op
from clearinghouse.exchange.types import LiquidationType, PositionDirection

from conftest import (
    ADMIN,
    ALICE,
    BOB,
    RESERVE,
    T0,
    deposit,
    execute,
    initialize_market,
    open_long,
)


# ============================================================================
#  ACCESS CONTROL
# ============================================================================

class TestAccessControl:
    """Admin operations and the exchange pause."""

    def test_non_admin_rejected(self, mgr):
        result = execute(mgr, Op.UPDATE_MAX_DEPOSIT, ALICE, T0, max_deposit=1)
        assert not result.success
        assert result.error == "alice is not the admin"
        assert mgr.get_state()["max_deposit"] == 0

    def test_pause_blocks_trading(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        assert execute(mgr, Op.UPDATE_EXCHANGE_PAUSED, ADMIN, T0, exchange_paused=True).success

        result = open_long(mgr)
        assert not result.success
        assert result.error == "Exchange is paused"
        assert not execute(mgr, Op.WITHDRAW_COLLATERAL, ALICE, T0, amount=1).success

    def test_pause_allows_deposits(self, mgr):
        assert execute(mgr, Op.UPDATE_EXCHANGE_PAUSED, ADMIN, T0, exchange_paused="true").success
        assert mgr.get_state()["exchange_paused"] is True
        deposit(mgr, ALICE, 10_000_000)
        assert mgr.get_user(ALICE)["collateral"] == 10_000_000

    def test_unpause(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        execute(mgr, Op.UPDATE_EXCHANGE_PAUSED, ADMIN, T0, exchange_paused=True)
        execute(mgr, Op.UPDATE_EXCHANGE_PAUSED, ADMIN, T0, exchange_paused=False)
        assert open_long(mgr).success

    def test_update_admin(self, mgr):
        result = execute(mgr, Op.UPDATE_ADMIN, ADMIN, T0, admin=BOB)
        assert result.success, result.error
        assert not execute(mgr, Op.UPDATE_MAX_DEPOSIT, ADMIN, T0, max_deposit=1).success
        assert execute(mgr, Op.UPDATE_MAX_DEPOSIT, BOB, T0, max_deposit=1).success

    def test_update_admin_requires_address(self, mgr):
        result = execute(mgr, Op.UPDATE_ADMIN, ADMIN, T0, admin="")
        assert not result.success
        assert mgr.get_state()["admin"] == ADMIN

    def test_disable_admin_price_control(self, mgr):
        assert execute(mgr, Op.DISABLE_ADMIN_CONTROLS_PRICES, ADMIN, T0).success
        result = execute(
            mgr, Op.MOVE_AMM_PRICE, ADMIN, T0,
            market_index=0, base_asset_reserve=RESERVE, quote_asset_reserve=RESERVE * 2,
        )
        assert not result.success
        assert result.error == "Admin controls prices disabled"


# ============================================================================
#  MARKETS AND SETTERS
# ============================================================================

class TestMarketAdmin:
    """Market creation and per-market setters."""

    def test_initialize_second_market(self, mgr):
        initialize_market(mgr, market_index=1, peg=2_000, price=2 * 10**10)
        assert mgr.get_market_length() == 2
        market = mgr.get_market_info(1)
        assert market["market_name"] == "MKT-1"
        assert market["amm"]["peg_multiplier"] == 2_000
        assert market["amm"]["last_mark_price_twap"] == 2 * 10**10

    def test_duplicate_market(self, mgr):
        result = execute(
            mgr, Op.INITIALIZE_MARKET, ADMIN, T0,
            market_index=0, market_name="DUP", base_asset_reserve=RESERVE,
            quote_asset_reserve=RESERVE, funding_period=3_600, peg_multiplier=1_000,
        )
        assert not result.success
        assert "already initialized" in result.error
        assert mgr.get_market_length() == 1

    def test_unbalanced_reserves(self, bare_mgr):
        result = execute(
            bare_mgr, Op.INITIALIZE_MARKET, ADMIN, T0,
            market_index=0, market_name="BAD", base_asset_reserve=RESERVE,
            quote_asset_reserve=RESERVE + 1, funding_period=3_600, peg_multiplier=1_000,
        )
        assert not result.success
        assert bare_mgr.get_market_info(0) is None

    def test_update_margin_ratio(self, mgr):
        result = execute(
            mgr, Op.UPDATE_MARGIN_RATIO, ADMIN, T0,
            market_index=0, margin_ratio_initial=1_000, margin_ratio_partial=500, margin_ratio_maintenance=400,
        )
        assert result.success, result.error
        assert mgr.get_market_info(0)["margin_ratio_initial"] == 1_000

    @pytest.mark.parametrize("initial,partial,maintenance,message", [
        (100, 100, 100, "out of range"),
        (500, 625, 400, "Initial margin ratio below partial"),
        (2_000, 400, 500, "Partial margin ratio below maintenance"),
    ])
    def test_invalid_margin_ratio(self, mgr, initial, partial, maintenance, message):
        result = execute(
            mgr, Op.UPDATE_MARGIN_RATIO, ADMIN, T0,
            market_index=0, margin_ratio_initial=initial,
            margin_ratio_partial=partial, margin_ratio_maintenance=maintenance,
        )
        assert not result.success
        assert message in result.error

    def test_update_fee_replaces_record(self, mgr):
        assert execute(mgr, Op.UPDATE_FEE, ADMIN, T0, fee="1/1000", referrer_reward="1/10").success
        assert execute(mgr, Op.UPDATE_FEE, ADMIN, T0, fee="2/1000").success
        fees = mgr.get_fee_structure()
        assert fees["fee"] == Fraction(2, 1_000)
        assert fees["referrer_reward"] == Fraction(5, 100)

    def test_float_fraction_rejected(self, mgr):
        result = execute(mgr, Op.UPDATE_FEE, ADMIN, T0, fee=0.002)
        assert not result.success
        assert "ambiguous" in result.error

    def test_update_order_state(self, mgr):
        result = execute(
            mgr, Op.UPDATE_ORDER_STATE, ADMIN, T0,
            min_order_quote_asset_amount=500_000, reward="1/10", time_based_reward_lower_bound=10_000,
        )
        assert result.success, result.error
        assert mgr.get_order_state() == {
            "min_order_quote_asset_amount": 500_000,
            "reward": Fraction(1, 10),
            "time_based_reward_lower_bound": 10_000,
        }

    def test_liquidation_setters(self, mgr):
        assert execute(mgr, Op.UPDATE_PARTIAL_LIQUIDATION_CLOSE_PERCENTAGE, ADMIN, T0, value="1/2").success
        assert execute(mgr, Op.UPDATE_FULL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR, ADMIN, T0, denominator=100).success
        state = mgr.get_state()
        assert state["partial_liquidation_close_percentage"] == Fraction(1, 2)
        assert state["full_liquidation_liquidator_share_denominator"] == 100

    def test_zero_denominator_rejected(self, mgr):
        result = execute(mgr, Op.UPDATE_PARTIAL_LIQUIDATION_LIQUIDATOR_SHARE_DENOMINATOR, ADMIN, T0, denominator=0)
        assert not result.success
        assert "denominator must be positive" in result.error

    def test_update_history_store(self, mgr):
        assert execute(mgr, Op.UPDATE_HISTORY_STORE, ADMIN, T0, history_store="archive").success
        assert mgr.history.name == "archive"
        assert mgr.get_state()["history_store"] == "archive"

    def test_update_market_oracle(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        assert execute(mgr, Op.UPDATE_MARKET_ORACLE, ADMIN, T0, market_index=0, oracle="other").success
        result = open_long(mgr)
        assert not result.success
        assert "Oracle feed 'other' not found" in result.error


# ============================================================================
#  FEES AND VAULTS
# ============================================================================

class TestFeeWithdrawals:
    """Admin share of fees and insurance top-ups."""

    @pytest.fixture
    def traded(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        assert open_long(mgr).success
        return mgr

    def test_withdraw_fees(self, traded):
        result = execute(traded, Op.WITHDRAW_FEES, ADMIN, T0, market_index=0, amount=24_875)
        assert result.success, result.error
        assert result.data["total_fee_withdrawn"] == 24_875
        vault = traded.vaults["collateral_vault"]
        assert vault.balance == 10_000_000 - 24_875
        assert vault.payouts[ADMIN] == 24_875

    def test_withdraw_more_than_share(self, traded):
        execute(traded, Op.WITHDRAW_FEES, ADMIN, T0, market_index=0, amount=24_875)
        result = execute(traded, Op.WITHDRAW_FEES, ADMIN, T0, market_index=0, amount=1)
        assert not result.success
        assert result.error == "Requested 1, withdrawable 0"

    def test_insurance_to_market(self):
        mgr = ClearingHouseStateManager.create(admin=ADMIN, insurance_vault_balance=1_000_000)
        initialize_market(mgr)
        result = execute(mgr, Op.WITHDRAW_FROM_INSURANCE_VAULT_TO_MARKET, ADMIN, T0, market_index=0, amount=500_000)
        assert result.success, result.error
        assert result.data["total_fee_minus_distributions"] == 500_000
        assert mgr.vault_balance("insurance_vault") == 500_000
        assert mgr.vault_balance("collateral_vault") == 500_000

    def test_insurance_overdraw_is_atomic(self):
        mgr = ClearingHouseStateManager.create(admin=ADMIN, insurance_vault_balance=1_000_000)
        initialize_market(mgr)
        result = execute(mgr, Op.WITHDRAW_FROM_INSURANCE_VAULT_TO_MARKET, ADMIN, T0, market_index=0, amount=2_000_000)
        assert not result.success
        assert result.error == "insurance_vault balance 1000000 below transfer 2000000"
        assert mgr.get_market_info(0)["amm"]["total_fee_minus_distributions"] == 0
        assert mgr.vault_balance("insurance_vault") == 1_000_000


# ============================================================================
#  ATOMICITY
# ============================================================================

class TestAtomicity:
    """Failed operations commit nothing."""

    def test_failed_trade_leaves_no_trace(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        market_before = mgr.get_market_info(0)
        user_before = mgr.get_user(ALICE)
        history_before = len(mgr.history)

        result = open_long(mgr, quote=60_000_000)
        assert not result.success
        assert "below initial margin" in result.error
        assert mgr.get_market_info(0) == market_before
        assert mgr.get_user(ALICE) == user_before
        assert len(mgr.history) == history_before
        assert result.records == []

    def test_success_returns_records(self, mgr):
        result = deposit(mgr, ALICE, 10_000_000)
        assert len(result.records) == 1
        assert result.records[0].record_id == result.data["deposit_record_id"]

    def test_validation_failure(self, mgr):
        result = execute(mgr, Op.DEPOSIT_COLLATERAL, ALICE, T0)
        assert not result.success
        assert result.error == "DEPOSIT_COLLATERAL missing param: amount"


# ============================================================================
#  QUERIES
# ============================================================================

class TestQueries:
    """Read-only views."""

    def test_active_positions(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        open_long(mgr)
        (position,) = mgr.get_active_positions(ALICE)
        assert position["market_index"] == 0
        assert position["quote_asset_amount"] == 49_750_000
        assert position["base_asset_value"] == 49_750_000
        assert position["unrealized_pnl"] == 0

    def test_closed_positions_hidden(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        open_long(mgr)
        execute(mgr, Op.CLOSE_POSITION, ALICE, T0, market_index=0)
        assert mgr.get_active_positions(ALICE) == []

    def test_unknown_lookups(self, mgr):
        assert mgr.get_user("nobody") is None
        assert mgr.get_user_position("nobody", 0) is None
        assert mgr.get_user_orders("nobody", 0) == []
        assert mgr.get_market_info(9) is None
        assert mgr.vault_balance("missing") == 0

    def test_liquidation_status_of_flat_user(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        status = mgr.get_liquidation_status(ALICE, T0)
        assert status.liquidation_type == LiquidationType.NONE

    def test_stats(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        execute(mgr, Op.UPDATE_MAX_DEPOSIT, ALICE, T0, max_deposit=1)
        stats = mgr.get_stats()
        assert stats == {
            "markets": 1,
            "users": 1,
            "open_orders": 0,
            "history_records": 1,
            "collateral_vault": 10_000_000,
            "insurance_vault": 0,
            "total_transactions": 4,
            "failed_transactions": 1,
        }

    def test_trade_direction_recorded(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        open_long(mgr)
        assert mgr.history.trades[0].direction == PositionDirection.LONG


# ============================================================================
#  SINGLETON
# ============================================================================

class TestSingleton:
    """Process-wide instance."""

    def test_requires_admin(self):
        with pytest.raises(ValueError, match="admin address is required"):
            ClearingHouseStateManager.get_instance()

    def test_same_instance(self):
        first = ClearingHouseStateManager.get_instance(ADMIN)
        assert ClearingHouseStateManager.get_instance() is first
        assert first.get_state()["admin"] == ADMIN

    def test_reset(self):
        first = ClearingHouseStateManager.get_instance(ADMIN)
        ClearingHouseStateManager.reset_instance()
        assert ClearingHouseStateManager.get_instance(ADMIN) is not first
