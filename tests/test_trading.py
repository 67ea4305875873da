"""
Test suite for clearing house trading

Covers:
  - Collateral deposits and withdrawals
  - Opening, reducing, flipping and closing positions
  - Trade fees: referral and discount-token tiers
  - Funding rate updates, settlement and conservation
  - Position accounting and margin monotonicity properties
"""

import pytest

from clearinghouse.constants import AMM_TO_QUOTE_PRECISION_RATIO
from clearinghouse.exchange import position as ledger
from clearinghouse.exchange.history import FundingRateRecord, TradeRecord
from clearinghouse.exchange.margin import _meets_requirement
from clearinghouse.exchange.transactions import ClearingHouseOpType as Op
from clearinghouse.exchange.types import DepositDirection, Position, PositionDirection, User

from conftest import (
    ADMIN,
    ALICE,
    BOB,
    KEEPER,
    ONE_DOLLAR,
    RESERVE,
    T0,
    deposit,
    execute,
    open_long,
)

ONE_HOUR = 3_600


# ============================================================================
#  COLLATERAL
# ============================================================================

class TestDeposit:
    """Collateral moves into the collateral vault."""

    def test_first_deposit_creates_user(self, mgr):
        result = deposit(mgr, ALICE, 10_000_000)
        assert result.data["collateral"] == 10_000_000
        user = mgr.get_user(ALICE)
        assert user["collateral"] == 10_000_000
        assert user["cumulative_deposits"] == 10_000_000
        assert mgr.vault_balance("collateral_vault") == 10_000_000

    def test_deposit_record(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        deposit(mgr, ALICE, 5_000_000)
        records = mgr.history.deposits
        assert [r.record_id for r in records] == [1, 2]
        assert records[1].collateral_before == 10_000_000
        assert records[1].direction == DepositDirection.DEPOSIT

    def test_zero_deposit_rejected(self, mgr):
        result = execute(mgr, Op.DEPOSIT_COLLATERAL, ALICE, amount=0)
        assert not result.success
        assert "must be positive" in result.error
        assert mgr.get_user(ALICE) is None

    def test_referrer_recorded_on_first_deposit_only(self, mgr):
        deposit(mgr, ALICE, 1_000_000, referrer=BOB)
        deposit(mgr, ALICE, 1_000_000, referrer=KEEPER)
        assert mgr.get_user(ALICE)["referrer"] == BOB

    def test_max_deposit(self, mgr):
        assert execute(mgr, Op.UPDATE_MAX_DEPOSIT, ADMIN, max_deposit=15_000_000).success
        deposit(mgr, ALICE, 10_000_000)
        result = execute(mgr, Op.DEPOSIT_COLLATERAL, ALICE, amount=6_000_000)
        assert not result.success
        assert "max deposit" in result.error or "exceed" in result.error
        assert mgr.get_user(ALICE)["collateral"] == 10_000_000


class TestWithdraw:
    """Collateral paid back out, subject to initial margin."""

    def test_withdraw(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        result = execute(mgr, Op.WITHDRAW_COLLATERAL, ALICE, amount=4_000_000)
        assert result.success, result.error
        assert result.data["collateral"] == 6_000_000
        assert mgr.vault_balance("collateral_vault") == 6_000_000
        assert mgr.vaults["collateral_vault"].payouts[ALICE] == 4_000_000
        assert mgr.history.deposits[-1].direction == DepositDirection.WITHDRAW

    def test_withdraw_more_than_collateral(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        result = execute(mgr, Op.WITHDRAW_COLLATERAL, ALICE, amount=10_000_001)
        assert not result.success
        assert "exceeds collateral" in result.error

    def test_withdraw_unknown_user(self, mgr):
        result = execute(mgr, Op.WITHDRAW_COLLATERAL, ALICE, amount=1)
        assert not result.success
        assert "does not exist" in result.error

    def test_withdraw_respects_initial_margin(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        assert open_long(mgr).success
        # 9_950_250 collateral against a 9_950_000 requirement
        assert not execute(mgr, Op.WITHDRAW_COLLATERAL, ALICE, amount=1_000).success
        assert execute(mgr, Op.WITHDRAW_COLLATERAL, ALICE, amount=200).success

    def test_withdraw_realised_profit_past_deposits(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        deposit(mgr, BOB, 1_000_000_000)
        assert open_long(mgr).success
        assert open_long(mgr, BOB, quote=2_000_000_000).success
        assert execute(mgr, Op.CLOSE_POSITION, ALICE, market_index=0).success

        collateral = mgr.get_user(ALICE)["collateral"]
        assert collateral > 10_000_000
        result = execute(mgr, Op.WITHDRAW_COLLATERAL, ALICE, amount=collateral)
        assert result.success, result.error
        user = mgr.get_user(ALICE)
        assert user["collateral"] == 0
        assert user["cumulative_deposits"] == 0
        assert mgr.history.deposits[-1].cumulative_deposits_before == 10_000_000


# ============================================================================
#  POSITIONS
# ============================================================================

class TestOpenPosition:
    """Market trades against the curve."""

    def test_open_long(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        result = open_long(mgr)
        assert result.success, result.error
        assert result.data["fee"] == 49_750
        assert result.data["mark_price_after"] > ONE_DOLLAR

        position = mgr.get_user_position(ALICE, 0)
        assert position["base_asset_amount"] == result.data["base_asset_amount"] > 0
        assert position["quote_asset_amount"] == 49_750_000
        assert mgr.get_user(ALICE)["collateral"] == 9_950_250

        market = mgr.get_market_info(0)
        assert market["open_interest"] == 1
        assert market["base_asset_amount_long"] == position["base_asset_amount"]
        assert market["amm"]["total_fee"] == 49_750
        assert market["amm"]["total_fee_minus_distributions"] == 49_750

    def test_trade_record(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        open_long(mgr)
        trade = mgr.history.trades[0]
        assert isinstance(trade, TradeRecord)
        assert trade.record_id == 1
        assert trade.user == ALICE
        assert trade.direction == PositionDirection.LONG
        assert trade.mark_price_before == ONE_DOLLAR
        assert trade.oracle_price == ONE_DOLLAR
        assert not trade.liquidation

    def test_initial_margin(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        result = open_long(mgr, quote=50_500_000)
        assert not result.success
        assert "below initial margin" in result.error
        assert mgr.get_user_position(ALICE, 0) is None
        assert mgr.get_market_info(0)["amm"]["base_asset_reserve"] == RESERVE

    def test_zero_quote_rejected(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        assert not open_long(mgr, quote=0).success

    def test_below_minimum_trade_size(self, mgr):
        # 1e14 reserve units is $10 of quote at peg 1.000
        assert execute(
            mgr, Op.UPDATE_MARKET_MINIMUM_QUOTE_ASSET_TRADE_SIZE, ADMIN,
            market_index=0, minimum_trade_size=10**14,
        ).success
        deposit(mgr, ALICE, 10_000_000)
        result = open_long(mgr, quote=5_000_000)
        assert not result.success
        assert "too small" in result.error

    def test_unknown_market(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        result = open_long(mgr, market_index=7)
        assert not result.success
        assert "not initialized" in result.error

    def test_market_without_oracle_feed(self, bare_mgr):
        result = execute(
            bare_mgr, Op.INITIALIZE_MARKET, ADMIN,
            market_index=0, market_name="SOL-PERP",
            base_asset_reserve=RESERVE, quote_asset_reserve=RESERVE,
            funding_period=ONE_HOUR, peg_multiplier=1_000,
        )
        assert result.success, result.error
        deposit(bare_mgr, ALICE, 10_000_000)
        result = open_long(bare_mgr)
        assert not result.success
        assert "not found" in result.error

    def test_limit_price(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        assert open_long(mgr, quote=20_000_000, limit_price=101 * ONE_DOLLAR // 100).success

    def test_limit_price_breach_is_atomic(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        result = open_long(mgr, limit_price=99 * ONE_DOLLAR // 100)
        assert not result.success
        assert "limit" in result.error
        assert mgr.history.trades == []
        assert mgr.get_market_info(0)["amm"]["quote_asset_reserve"] == RESERVE
        assert mgr.get_user(ALICE)["collateral"] == 10_000_000


class TestReferralAndDiscounts:
    """Fee adjustments on trades."""

    def test_referral(self, mgr):
        deposit(mgr, BOB, 1_000_000)
        deposit(mgr, ALICE, 10_000_000, referrer=BOB)
        result = open_long(mgr)
        assert result.success, result.error
        assert result.data["fee"] == 47_263

        trade = mgr.history.trades[0]
        assert trade.referrer_reward == 2_487
        assert trade.referee_discount == 2_487

        alice = mgr.get_user(ALICE)
        assert alice["collateral"] == 10_000_000 - 47_263
        assert alice["total_referee_discount"] == 2_487
        assert mgr.get_user(BOB)["total_referral_reward"] == 2_487
        assert mgr.get_market_info(0)["amm"]["total_fee"] == 44_776

    def test_discount_token_tier(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        result = open_long(mgr, discount_token_amount=1_000_000_000)
        assert result.success, result.error
        assert result.data["fee"] == 39_800
        assert mgr.get_user(ALICE)["total_token_discount"] == 9_950


class TestReduceAndFlip:
    """Trades against an existing position."""

    def test_reduce(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        base_before = open_long(mgr).data["base_asset_amount"]
        result = execute(
            mgr, Op.OPEN_POSITION, ALICE,
            direction="short", quote_asset_amount=20_000_000, market_index=0,
        )
        assert result.success, result.error
        position = mgr.get_user_position(ALICE, 0)
        assert 0 < position["base_asset_amount"] < base_before
        assert mgr.get_market_info(0)["open_interest"] == 1

    def test_flip_to_short(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        open_long(mgr)
        result = execute(
            mgr, Op.OPEN_POSITION, ALICE,
            direction="short", quote_asset_amount=69_650_000, market_index=0,
        )
        assert result.success, result.error
        position = mgr.get_user_position(ALICE, 0)
        assert position["base_asset_amount"] < 0
        market = mgr.get_market_info(0)
        assert market["base_asset_amount"] == position["base_asset_amount"]
        assert market["open_interest"] == 1

    def test_equal_notional_closes(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        open_long(mgr)
        result = execute(
            mgr, Op.OPEN_POSITION, ALICE,
            direction="short", quote_asset_amount=49_750_000, market_index=0,
        )
        assert result.success, result.error
        assert mgr.get_user_position(ALICE, 0)["base_asset_amount"] == 0
        assert mgr.get_market_info(0)["open_interest"] == 0


class TestClosePosition:
    """Full unwind."""

    def test_close(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        open_long(mgr)
        result = execute(mgr, Op.CLOSE_POSITION, ALICE, market_index=0)
        assert result.success, result.error
        assert result.data["quote_asset_amount"] == 49_750_000

        # round trip on an untouched curve costs exactly two fees
        assert mgr.get_user(ALICE)["collateral"] == 9_900_500
        assert mgr.get_user_position(ALICE, 0)["base_asset_amount"] == 0

        market = mgr.get_market_info(0)
        assert market["open_interest"] == 0
        assert market["base_asset_amount"] == 0
        assert market["amm"]["base_asset_reserve"] == RESERVE
        assert mgr.history.trades[-1].direction == PositionDirection.SHORT

    def test_close_without_position(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        result = execute(mgr, Op.CLOSE_POSITION, ALICE, market_index=0)
        assert not result.success
        assert "No open position" in result.error


# ============================================================================
#  FUNDING
# ============================================================================

class TestFunding:
    """Hourly funding updates and lazy settlement."""

    @pytest.fixture
    def traders(self, mgr):
        deposit(mgr, ALICE, 10_000_000)
        deposit(mgr, BOB, 10_000_000)
        assert open_long(mgr, ALICE).success
        assert execute(
            mgr, Op.OPEN_POSITION, BOB,
            direction="short", quote_asset_amount=20_000_000, market_index=0,
        ).success
        # oracle drops below mark: longs pay
        assert execute(mgr, Op.FEED_PRICE, ADMIN, T0 + ONE_HOUR, market_index=0, price=9_900_000_000).success
        return mgr

    def test_not_due_before_period(self, traders):
        result = execute(traders, Op.UPDATE_FUNDING_RATE, KEEPER, T0 + ONE_HOUR // 2, market_index=0)
        assert result.success, result.error
        assert result.data == {"updated": False}

    def test_update(self, traders):
        result = execute(traders, Op.UPDATE_FUNDING_RATE, KEEPER, T0 + ONE_HOUR, market_index=0)
        assert result.success, result.error
        assert result.data["updated"]
        assert result.data["funding_rate"] > 0

        record = traders.history.funding_rates[0]
        assert isinstance(record, FundingRateRecord)
        assert record.mark_price_twap > record.oracle_price_twap
        amm = traders.get_market_info(0)["amm"]
        assert amm["last_funding_rate_ts"] == T0 + ONE_HOUR
        assert amm["cumulative_funding_rate_long"] == record.funding_rate

    def test_paused(self, traders):
        assert execute(traders, Op.UPDATE_FUNDING_PAUSED, ADMIN, T0 + ONE_HOUR, funding_paused=True).success
        result = execute(traders, Op.UPDATE_FUNDING_RATE, KEEPER, T0 + ONE_HOUR, market_index=0)
        assert result.data == {"updated": False}

    def test_settlement(self, traders):
        execute(traders, Op.UPDATE_FUNDING_RATE, KEEPER, T0 + ONE_HOUR, market_index=0)
        alice_before = traders.get_user(ALICE)["collateral"]
        bob_before = traders.get_user(BOB)["collateral"]

        alice = execute(traders, Op.SETTLE_FUNDING_PAYMENT, ALICE, T0 + ONE_HOUR)
        bob = execute(traders, Op.SETTLE_FUNDING_PAYMENT, BOB, T0 + ONE_HOUR)
        assert alice.success and bob.success

        assert alice.data["settled_markets"] == [0]
        assert alice.data["funding_payment"] < 0
        assert bob.data["funding_payment"] > 0
        assert traders.get_user(ALICE)["collateral"] < alice_before
        assert traders.get_user(BOB)["collateral"] > bob_before

    def test_settlement_is_idempotent(self, traders):
        execute(traders, Op.UPDATE_FUNDING_RATE, KEEPER, T0 + ONE_HOUR, market_index=0)
        execute(traders, Op.SETTLE_FUNDING_PAYMENT, ALICE, T0 + ONE_HOUR)
        collateral = traders.get_user(ALICE)["collateral"]
        again = execute(traders, Op.SETTLE_FUNDING_PAYMENT, ALICE, T0 + ONE_HOUR)
        assert again.data["settled_markets"] == []
        assert traders.get_user(ALICE)["collateral"] == collateral
        assert len(traders.history.funding_payments) == 1

    def test_trades_settle_first(self, traders):
        execute(traders, Op.UPDATE_FUNDING_RATE, KEEPER, T0 + ONE_HOUR, market_index=0)
        execute(traders, Op.CLOSE_POSITION, ALICE, T0 + ONE_HOUR, market_index=0)
        payment = traders.history.funding_payments[0]
        assert payment.user == ALICE
        assert payment.funding_payment < 0

    def test_funding_conserved(self, traders):
        """Whatever users pay or receive is the mirror of the fee pool's change."""
        pool_before = traders.get_market_info(0)["amm"]["total_fee_minus_distributions"]
        update = execute(traders, Op.UPDATE_FUNDING_RATE, KEEPER, T0 + ONE_HOUR, market_index=0)
        assert update.data["updated"]
        pool_delta = traders.get_market_info(0)["amm"]["total_fee_minus_distributions"] - pool_before

        payments = [
            execute(traders, Op.SETTLE_FUNDING_PAYMENT, user, T0 + ONE_HOUR).data["funding_payment"]
            for user in (ALICE, BOB)
        ]
        assert payments[0] < 0 < payments[1]
        # net long market: the protocol collects the imbalance
        assert pool_delta > 0
        assert abs(sum(payments) // AMM_TO_QUOTE_PRECISION_RATIO + pool_delta) <= 1


# ============================================================================
#  ACCOUNTING PROPERTIES
# ============================================================================

LONG = PositionDirection.LONG
SHORT = PositionDirection.SHORT
BIG_COLLATERAL = 10**12


class TestPositionAccounting:
    """Realised plus unrealised PnL equals the quote flow marked to market."""

    @pytest.mark.parametrize("side,steps", [
        (LONG, [("increase", 20_000_000), ("increase", 10_000_000), ("reduce", 12_000_000), ("close", 0)]),
        (SHORT, [("increase", 30_000_000), ("reduce", 5_000_000), ("increase", 5_000_000), ("close", 0)]),
        (LONG, [("increase", 25_000_000), ("other", 40_000_000), ("reduce", 10_000_000), ("close", 0)]),
        (SHORT, [("increase", 25_000_000), ("other", 40_000_000), ("reduce", 10_000_000), ("close", 0)]),
    ])
    def test_pnl_matches_net_flow(self, mgr, side, steps):
        market = mgr.store.markets[0]
        position = Position(market_index=0)
        user = User(collateral=BIG_COLLATERAL)
        other = Position(market_index=0)
        other_user = User(collateral=BIG_COLLATERAL)
        opposite = SHORT if side == LONG else LONG
        sign = 1 if side == LONG else -1

        paid = received = 0
        for action, quote in steps:
            if action == "increase":
                ledger.increase(market, position, side, quote, T0)
                paid += quote
            elif action == "reduce":
                ledger.reduce(market, position, user, opposite, quote, T0)
                received += quote
            elif action == "close":
                quote_closed, _, _ = ledger.close(market, position, user, T0)
                received += quote_closed
            else:
                # a second trader pushes the curve up
                ledger.increase(market, other, LONG, quote, T0)

            value, unrealized_pnl = ledger.base_asset_value_and_pnl(position, market)
            realized_pnl = user.collateral - BIG_COLLATERAL
            assert realized_pnl + unrealized_pnl == sign * (received + value - paid)

        assert position.base_asset_amount == 0
        assert position.quote_asset_amount == 0

    def test_round_trip_on_still_curve_is_flat(self, mgr):
        market = mgr.store.markets[0]
        position = Position(market_index=0)
        user = User(collateral=BIG_COLLATERAL)
        ledger.increase(market, position, LONG, 49_750_000, T0)
        quote_closed, _, _ = ledger.close(market, position, user, T0)
        assert quote_closed == 49_750_000
        assert user.collateral == BIG_COLLATERAL
        assert market.amm.base_asset_reserve == RESERVE


class TestMarginMonotonicity:
    """Raising a margin ratio never lowers the collateral required."""

    @pytest.fixture
    def exposed(self, mgr):
        # 9_950_250 collateral against 49_750_000 of value: passes at 2000, fails above
        deposit(mgr, ALICE, 10_000_000)
        assert open_long(mgr).success
        return mgr

    @staticmethod
    def _meets_at(mgr, ratio):
        mgr.store.markets[0].margin_ratio_initial = ratio
        return _meets_requirement(mgr.store, ALICE, "margin_ratio_initial")

    @pytest.mark.parametrize("ratio,meets", [
        (500, True),
        (1_000, True),
        (2_000, True),
        (2_001, False),
        (5_000, False),
        (10_000, False),
    ])
    def test_threshold(self, exposed, ratio, meets):
        assert self._meets_at(exposed, ratio) is meets

    def test_outcome_never_improves_with_ratio(self, exposed):
        outcomes = [self._meets_at(exposed, ratio) for ratio in range(200, 10_001, 200)]
        assert outcomes == sorted(outcomes, reverse=True)
        assert outcomes[0] and not outcomes[-1]

    def test_admin_raise_blocks_risk_increase(self, exposed):
        assert execute(
            exposed, Op.UPDATE_MARGIN_RATIO, ADMIN,
            market_index=0, margin_ratio_initial=2_500, margin_ratio_partial=625, margin_ratio_maintenance=500,
        ).success
        result = open_long(exposed, quote=1_000_000)
        assert not result.success
        assert "below initial margin" in result.error
