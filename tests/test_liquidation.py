"""
Test suite for margin classification and liquidation

Covers:
  - Liquidation status (NONE / PARTIAL / FULL)
  - Full liquidation: position closed, penalty split with the insurance vault
  - Partial liquidation: a quarter of the position closed, penalty to the liquidator
  - Multi-market full liquidation in descending requirement order
  - Rejections: healthy users, paused exchange
"""

import pytest

from clearinghouse.exchange.history import LiquidationRecord
from clearinghouse.exchange.transactions import ClearingHouseOpType as Op
from clearinghouse.exchange.types import LiquidationType, PositionDirection

from conftest import ADMIN, ALICE, KEEPER, T0, deposit, execute, initialize_market, open_long

LATER = T0 + 60


def crash_price(mgr, base_asset_reserve, quote_asset_reserve, market_index=0):
    """Move the curve and the oracle to the same lower price."""
    result = execute(
        mgr, Op.MOVE_AMM_PRICE, ADMIN, LATER,
        market_index=market_index,
        base_asset_reserve=base_asset_reserve,
        quote_asset_reserve=quote_asset_reserve,
    )
    assert result.success, result.error
    result = execute(mgr, Op.FEED_PRICE, ADMIN, LATER, market_index=market_index, price=result.data["mark_price"])
    assert result.success, result.error


@pytest.fixture
def levered(mgr):
    """ALICE long ~5x at $1.00."""
    deposit(mgr, ALICE, 10_000_000)
    assert open_long(mgr).success
    return mgr


# ============================================================================
#  STATUS
# ============================================================================

class TestLiquidationStatus:
    """Margin classification."""

    def test_no_positions(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        status = mgr.get_liquidation_status(ALICE, T0)
        assert status.liquidation_type == LiquidationType.NONE
        assert status.base_asset_value == 0
        assert status.total_collateral == 10_000_000

    def test_healthy(self, levered):
        status = levered.get_liquidation_status(ALICE, T0)
        assert status.liquidation_type == LiquidationType.NONE
        assert status.base_asset_value == 49_750_000
        assert status.margin_ratio == 9_950_250 * 10_000 // 49_750_000

    def test_partial(self, levered):
        crash_price(levered, 10**19, 8_475 * 10**15)
        status = levered.get_liquidation_status(ALICE, LATER)
        assert status.liquidation_type == LiquidationType.PARTIAL
        assert status.unrealized_pnl < 0
        assert len(status.market_statuses) == 1

    def test_full(self, levered):
        crash_price(levered, 55 * 10**17, 45 * 10**17)
        status = levered.get_liquidation_status(ALICE, LATER)
        assert status.liquidation_type == LiquidationType.FULL
        assert status.adjusted_total_collateral < status.margin_requirement

    def test_status_does_not_mutate_store(self, levered):
        crash_price(levered, 55 * 10**17, 45 * 10**17)
        market_before = levered.get_market_info(0)
        levered.get_liquidation_status(ALICE, LATER + 5)
        assert levered.get_market_info(0) == market_before


# ============================================================================
#  FULL LIQUIDATION
# ============================================================================

class TestFullLiquidation:
    """Position closed, fee split 1/2000 to the liquidator."""

    @pytest.fixture
    def liquidated(self, levered):
        crash_price(levered, 55 * 10**17, 45 * 10**17)
        result = execute(levered, Op.LIQUIDATE, KEEPER, LATER, user=ALICE)
        assert result.success, result.error
        return levered, result

    def test_closes_position(self, liquidated):
        mgr, result = liquidated
        assert result.data["partial"] is False
        assert mgr.get_user_position(ALICE, 0)["base_asset_amount"] == 0
        market = mgr.get_market_info(0)
        assert market["open_interest"] == 0
        assert market["base_asset_amount"] == 0

    def test_collateral_taken_as_fee(self, liquidated):
        mgr, result = liquidated
        record = mgr.history.liquidations[0]
        assert isinstance(record, LiquidationRecord)
        assert record.liquidation_fee == record.total_collateral
        assert record.liquidator == KEEPER
        assert mgr.get_user(ALICE)["collateral"] == 0

    def test_fee_split(self, liquidated):
        mgr, result = liquidated
        fee = result.data["liquidation_fee"]
        assert result.data["fee_to_liquidator"] == fee // 2000
        assert result.data["fee_to_insurance_fund"] == fee - fee // 2000
        assert mgr.get_user(KEEPER)["collateral"] == fee // 2000
        assert mgr.vault_balance("insurance_vault") == result.data["fee_to_insurance_fund"]
        assert mgr.vault_balance("collateral_vault") == 10_000_000 - result.data["fee_to_insurance_fund"]

    def test_liquidation_trade_record(self, liquidated):
        mgr, _ = liquidated
        trade = mgr.history.trades[-1]
        assert trade.liquidation
        assert trade.direction == PositionDirection.SHORT
        assert trade.mark_price_before == 8_181_818_181


# ============================================================================
#  PARTIAL LIQUIDATION
# ============================================================================

class TestPartialLiquidation:
    """A quarter of the position closed, the whole fee to the liquidator."""

    @pytest.fixture
    def liquidated(self, levered):
        crash_price(levered, 10**19, 8_475 * 10**15)
        base_before = levered.get_user_position(ALICE, 0)["base_asset_amount"]
        result = execute(levered, Op.LIQUIDATE, KEEPER, LATER, user=ALICE)
        assert result.success, result.error
        return levered, result, base_before

    def test_reduces_position(self, liquidated):
        mgr, result, base_before = liquidated
        assert result.data["partial"] is True
        base_after = mgr.get_user_position(ALICE, 0)["base_asset_amount"]
        assert 0 < base_after < base_before
        assert mgr.get_market_info(0)["open_interest"] == 1

    def test_closes_a_quarter(self, liquidated):
        mgr, result, _ = liquidated
        record = mgr.history.liquidations[0]
        assert record.base_asset_value_closed == record.base_asset_value // 4
        assert record.liquidation_fee == record.total_collateral // 4

    def test_fee_to_liquidator(self, liquidated):
        mgr, result, _ = liquidated
        assert result.data["fee_to_insurance_fund"] == 0
        assert result.data["fee_to_liquidator"] == result.data["liquidation_fee"]
        assert mgr.get_user(KEEPER)["collateral"] == result.data["liquidation_fee"]
        assert mgr.vault_balance("insurance_vault") == 0


# ============================================================================
#  MULTI-MARKET LIQUIDATION
# ============================================================================

class TestLiquidationOrdering:
    """Markets are unwound largest maintenance requirement first."""

    @pytest.fixture
    def two_markets(self, mgr):
        initialize_market(mgr, market_index=1)
        deposit(mgr, ALICE, 10_000_000)
        assert open_long(mgr, quote=10_000_000, market_index=0).success
        assert open_long(mgr, quote=35_000_000, market_index=1).success
        for market_index in (0, 1):
            crash_price(mgr, 55 * 10**17, 45 * 10**17, market_index=market_index)
        return mgr

    def test_status_sorted_by_requirement(self, two_markets):
        status = two_markets.get_liquidation_status(ALICE, LATER)
        assert status.liquidation_type == LiquidationType.FULL
        assert [s.market_index for s in status.market_statuses] == [1, 0]
        requirements = [s.maintenance_margin_requirement for s in status.market_statuses]
        assert requirements == sorted(requirements, reverse=True)

    def test_trades_in_descending_order(self, two_markets):
        result = execute(two_markets, Op.LIQUIDATE, KEEPER, LATER, user=ALICE)
        assert result.success, result.error
        assert result.data["partial"] is False

        trades = [t for t in two_markets.history.trades if t.liquidation]
        assert [t.market_index for t in trades] == [1, 0]
        assert trades[0].quote_asset_amount > trades[1].quote_asset_amount
        assert all(t.direction == PositionDirection.SHORT for t in trades)
        assert result.data["base_asset_value_closed"] == sum(t.quote_asset_amount for t in trades)

    def test_both_positions_closed(self, two_markets):
        execute(two_markets, Op.LIQUIDATE, KEEPER, LATER, user=ALICE)
        for market_index in (0, 1):
            assert two_markets.get_user_position(ALICE, market_index)["base_asset_amount"] == 0
            assert two_markets.get_market_info(market_index)["open_interest"] == 0


# ============================================================================
#  REJECTIONS
# ============================================================================

class TestLiquidationRejected:
    """Liquidations that must not happen."""

    def test_sufficient_collateral(self, levered):
        result = execute(levered, Op.LIQUIDATE, KEEPER, T0, user=ALICE)
        assert not result.success
        assert "margin_requirement" in result.error
        assert levered.history.liquidations == []

    def test_unknown_user(self, mgr):
        result = execute(mgr, Op.LIQUIDATE, KEEPER, T0, user=ALICE)
        assert not result.success
        assert "does not exist" in result.error

    def test_paused_exchange(self, levered):
        crash_price(levered, 55 * 10**17, 45 * 10**17)
        assert execute(levered, Op.UPDATE_EXCHANGE_PAUSED, ADMIN, LATER, exchange_paused=True).success
        result = execute(levered, Op.LIQUIDATE, KEEPER, LATER, user=ALICE)
        assert not result.success
        assert "paused" in result.error
