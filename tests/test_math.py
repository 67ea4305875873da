"""
Test suite for the clearing house math layer

Covers:
  - Checked arithmetic and fraction parsing
  - vAMM pricing, swaps and trade sizing
  - TWAP blending and oracle normalisation / validity
  - Time-weighted price feeds
  - Collateral and payout helpers
"""

from fractions import Fraction

import pytest

from clearinghouse.constants import MARK_PRICE_PRECISION
from clearinghouse.exceptions import InvalidUpdateK, MathError, TradeSizeTooLarge, TradeSizeTooSmall
from clearinghouse.exchange.amm import (
    adjust_k_cost,
    adjust_peg_cost,
    asset_to_reserve_amount,
    calculate_base_asset_value_and_pnl,
    calculate_max_base_asset_amount_to_trade,
    calculate_oracle_mark_spread_pct,
    calculate_price,
    calculate_quote_asset_amount_swapped,
    calculate_swap_output,
    calculate_twap,
    get_mark_price,
    is_oracle_mark_too_divergent,
    is_oracle_valid,
    move_price,
    normalise_oracle_price,
    reserve_to_asset_amount,
    swap_quote_asset,
    update_oracle_price_twap,
    use_oracle_price_for_margin_calculation,
)
from clearinghouse.exchange.checked import div, i128, mul_fraction, parse_fraction, sqrt, u128
from clearinghouse.exchange.oracle import PriceFeed, PriceFeedRegistry
from clearinghouse.exchange.position import calculate_updated_collateral, calculate_withdrawal_amounts
from clearinghouse.exchange.types import (
    Amm,
    Market,
    OracleGuardRails,
    OraclePriceData,
    PositionDirection,
    SwapDirection,
)

RESERVE = 5 * 10**18
T0 = 1_699_999_200


def make_market(reserve=RESERVE, peg=1_000, base_asset_amount=0) -> Market:
    amm = Amm(
        oracle="oracle-0",
        base_asset_reserve=reserve,
        quote_asset_reserve=reserve,
        sqrt_k=reserve,
        peg_multiplier=peg,
        funding_period=3_600,
        last_mark_price_twap=MARK_PRICE_PRECISION,
        last_mark_price_twap_ts=T0,
        last_oracle_price=MARK_PRICE_PRECISION,
        last_oracle_price_twap=MARK_PRICE_PRECISION,
        last_oracle_price_twap_ts=T0,
    )
    return Market(market_name="TEST", amm=amm, base_asset_amount=base_asset_amount)


def price_data(price=MARK_PRICE_PRECISION, confidence=100, delay=0, sufficient=True) -> OraclePriceData:
    return OraclePriceData(
        price=price,
        confidence=confidence,
        delay=delay,
        has_sufficient_number_of_data_points=sufficient,
    )


# ============================================================================
#  CHECKED ARITHMETIC
# ============================================================================

class TestChecked:
    """Bounded integer arithmetic."""

    def test_div_truncates_toward_zero(self):
        assert div(7, 2, "t") == 3
        assert div(-7, 2, "t") == -3
        assert div(7, -2, "t") == -3
        assert div(-7, -2, "t") == 3

    def test_div_by_zero(self):
        with pytest.raises(MathError, match="in ratio"):
            div(1, 0, "ratio")

    def test_u128_bounds(self):
        assert u128(0, "t") == 0
        assert u128(2**128 - 1, "t") == 2**128 - 1
        with pytest.raises(MathError):
            u128(-1, "t")
        with pytest.raises(MathError):
            u128(2**128, "t")

    def test_i128_bounds(self):
        assert i128(-(2**127), "t") == -(2**127)
        with pytest.raises(MathError):
            i128(2**127, "t")

    def test_error_carries_op(self):
        with pytest.raises(MathError) as exc:
            u128(-5, "calculate_price")
        assert exc.value.op == "calculate_price"

    def test_mul_fraction(self):
        assert mul_fraction(1_000, Fraction(25, 100)) == 250
        assert mul_fraction(-10, Fraction(1, 3)) == -3

    def test_sqrt(self):
        assert sqrt(25 * 10**36) == 5 * 10**18
        assert sqrt(24) == 4
        with pytest.raises(MathError):
            sqrt(-1)


class TestParseFraction:
    """Fraction inputs from config and admin params."""

    def test_string_ratio(self):
        assert parse_fraction("25/100") == Fraction(1, 4)

    def test_pair(self):
        assert parse_fraction([10, 10_000]) == Fraction(1, 1000)

    def test_decimal_string(self):
        assert parse_fraction("0.05") == Fraction(1, 20)

    def test_int(self):
        assert parse_fraction(1) == Fraction(1)

    def test_fraction_passthrough(self):
        f = Fraction(2, 3)
        assert parse_fraction(f) is f

    def test_float_rejected(self):
        with pytest.raises(ValueError, match="ambiguous"):
            parse_fraction(0.25)


# ============================================================================
#  vAMM PRICING
# ============================================================================

class TestPricing:
    """Mark price and reserve conversions."""

    def test_balanced_reserves_price_at_peg(self):
        assert calculate_price(RESERVE, RESERVE, 1_000) == MARK_PRICE_PRECISION

    def test_peg_scales_price(self):
        assert calculate_price(RESERVE, RESERVE, 2_500) == 25 * MARK_PRICE_PRECISION // 10

    def test_mark_price_of_market(self):
        market = make_market()
        assert get_mark_price(market.amm) == MARK_PRICE_PRECISION

    def test_reserve_asset_conversion(self):
        assert reserve_to_asset_amount(10**16, 1_000) == 10**9
        assert asset_to_reserve_amount(10**9, 1_000) == 10**16

    def test_quote_swapped_long_costs_one_extra(self):
        assert calculate_quote_asset_amount_swapped(2 * 10**10, 10**10, SwapDirection.ADD, 1_000) == 1_000
        assert calculate_quote_asset_amount_swapped(10**10, 2 * 10**10, SwapDirection.REMOVE, 1_000) == 1_001


class TestSwaps:
    """Constant-product swaps."""

    def test_swap_output_add(self):
        assert calculate_swap_output(10, 100, SwapDirection.ADD, 100) == (90, 110)

    def test_swap_output_remove(self):
        new_output, new_input = calculate_swap_output(50, 100, SwapDirection.REMOVE, 100)
        assert new_input == 50
        assert new_output == 200

    def test_remove_more_than_reserve(self):
        with pytest.raises(TradeSizeTooLarge):
            calculate_swap_output(150, 100, SwapDirection.REMOVE, 100)

    def test_swap_quote_long_moves_price_up(self):
        market = make_market()
        base = swap_quote_asset(market, 49_750_000, SwapDirection.ADD, T0 + 60)
        assert base > 0
        assert get_mark_price(market.amm) > MARK_PRICE_PRECISION
        # invariant never grows from floor rounding
        assert market.amm.base_asset_reserve * market.amm.quote_asset_reserve <= market.amm.sqrt_k ** 2
        assert market.amm.last_mark_price_twap_ts == T0 + 60

    def test_swap_quote_below_minimum(self):
        market = make_market()
        with pytest.raises(TradeSizeTooSmall):
            swap_quote_asset(market, 100, SwapDirection.ADD, T0)

    def test_base_asset_value_of_flat_position(self):
        market = make_market()
        assert calculate_base_asset_value_and_pnl(0, 0, market.amm) == (0, 0)

    def test_long_value_close_to_cost(self):
        market = make_market()
        base = swap_quote_asset(market, 49_750_000, SwapDirection.ADD, T0)
        value, pnl = calculate_base_asset_value_and_pnl(base, 49_750_000, market.amm)
        assert abs(value - 49_750_000) <= 2
        assert abs(pnl) <= 2


class TestTradeSizing:
    """Base amount needed to reach a limit price."""

    def test_limit_at_mark_trades_nothing(self):
        market = make_market()
        amount, direction = calculate_max_base_asset_amount_to_trade(market.amm, MARK_PRICE_PRECISION)
        assert amount == 0
        assert direction == PositionDirection.LONG

    def test_limit_above_mark_is_long(self):
        market = make_market()
        amount, direction = calculate_max_base_asset_amount_to_trade(market.amm, 121 * MARK_PRICE_PRECISION // 100)
        assert direction == PositionDirection.LONG
        assert amount > 0

    def test_limit_below_mark_is_short(self):
        market = make_market()
        amount, direction = calculate_max_base_asset_amount_to_trade(market.amm, 81 * MARK_PRICE_PRECISION // 100)
        assert direction == PositionDirection.SHORT
        assert amount > 0


class TestCurveAdjustments:
    """Admin reserve moves, k and peg changes."""

    def test_move_price(self):
        market = make_market()
        move_price(market, 55 * 10**17, 45 * 10**17)
        assert get_mark_price(market.amm) == 8_181_818_181
        assert market.amm.sqrt_k == sqrt(55 * 10**17 * 45 * 10**17)

    def test_move_price_rejects_zero(self):
        with pytest.raises(MathError):
            move_price(make_market(), 0, RESERVE)

    def test_adjust_k_on_empty_market_is_free(self):
        market = make_market()
        cost = adjust_k_cost(market, 505 * 10**16)
        assert cost == 0
        assert market.amm.sqrt_k == 505 * 10**16
        assert get_mark_price(market.amm) == MARK_PRICE_PRECISION

    def test_adjust_k_shrink_limit(self):
        market = make_market()
        with pytest.raises(InvalidUpdateK):
            adjust_k_cost(market, RESERVE * 97 // 100)

    def test_adjust_peg_on_empty_market_is_free(self):
        market = make_market()
        assert adjust_peg_cost(market, 1_100) == 0
        assert market.amm.peg_multiplier == 1_100


# ============================================================================
#  TWAPs AND ORACLE TRUST
# ============================================================================

class TestTwap:
    """Time-weighted blending."""

    def test_calculate_twap(self):
        assert calculate_twap(110, 100, 1, 3) == 102

    def test_oracle_sample_capped_to_a_third(self):
        market = make_market()
        twap = update_oracle_price_twap(market, T0 + 3_600, 2 * MARK_PRICE_PRECISION)
        assert market.amm.last_oracle_price == 16_666_666_666
        assert MARK_PRICE_PRECISION < twap <= 16_666_666_666
        assert market.amm.last_oracle_price_twap_ts == T0 + 3_600

    def test_nonpositive_sample_ignored(self):
        market = make_market()
        assert update_oracle_price_twap(market, T0 + 60, 0) == MARK_PRICE_PRECISION
        assert market.amm.last_oracle_price_twap_ts == T0


class TestOracleTrust:
    """Normalisation, divergence and validity."""

    def test_normalise_bounded_by_confidence(self):
        market = make_market()
        normalised = normalise_oracle_price(market.amm, price_data(price=9 * 10**9, confidence=100))
        assert normalised == 9 * 10**9 + 100

    def test_normalise_moves_at_most_one_bp(self):
        market = make_market()
        data = price_data(price=9 * 10**9, confidence=10**9)
        assert normalise_oracle_price(market.amm, data) == MARK_PRICE_PRECISION - MARK_PRICE_PRECISION // 10_000

    def test_spread_pct(self):
        market = make_market()
        assert calculate_oracle_mark_spread_pct(market.amm, price_data(price=9 * 10**9)) == 1_111

    def test_divergence_thresholds(self):
        rails = OracleGuardRails()
        assert is_oracle_mark_too_divergent(1_001, rails)
        assert not is_oracle_mark_too_divergent(1_000, rails)
        assert use_oracle_price_for_margin_calculation(334, rails)
        assert not use_oracle_price_for_margin_calculation(333, rails)

    def test_valid_oracle(self):
        assert is_oracle_valid(make_market().amm, price_data(), OracleGuardRails())

    def test_stale_oracle(self):
        assert not is_oracle_valid(make_market().amm, price_data(delay=1_001), OracleGuardRails())

    def test_wide_confidence(self):
        data = price_data(confidence=3 * 10**9)
        assert not is_oracle_valid(make_market().amm, data, OracleGuardRails())

    def test_too_volatile(self):
        data = price_data(price=6 * MARK_PRICE_PRECISION)
        assert not is_oracle_valid(make_market().amm, data, OracleGuardRails())

    def test_insufficient_data_points(self):
        assert not is_oracle_valid(make_market().amm, price_data(sufficient=False), OracleGuardRails())


# ============================================================================
#  PRICE FEEDS
# ============================================================================

class TestPriceFeed:
    """Accumulator-based feed TWAP."""

    def test_twap_windows(self):
        feed = PriceFeed("oracle-0")
        feed.set_price(100, 0)
        feed.set_price(200, 10)
        assert feed.twap(10, 10) == 100
        assert feed.twap(10, 20) == 200
        assert feed.twap(20, 20) == 150

    def test_empty_feed(self):
        feed = PriceFeed("oracle-0")
        assert feed.twap(3_600, T0) is None
        assert not feed.get_price_data(T0).has_sufficient_number_of_data_points

    def test_delay(self):
        feed = PriceFeed("oracle-0")
        feed.set_price(100, T0)
        data = feed.get_price_data(T0 + 30)
        assert data.price == 100
        assert data.delay == 30

    def test_same_timestamp_overwrites(self):
        feed = PriceFeed("oracle-0")
        feed.set_price(100, T0)
        feed.set_price(120, T0, confidence=5)
        assert feed.observation_count == 1
        assert feed.latest.price == 120
        assert feed.latest.confidence == 5

    def test_timestamp_must_increase(self):
        feed = PriceFeed("oracle-0")
        feed.set_price(100, T0)
        with pytest.raises(ValueError, match="monotonically"):
            feed.set_price(100, T0 - 1)

    def test_negative_confidence(self):
        with pytest.raises(ValueError):
            PriceFeed("oracle-0").set_price(100, T0, confidence=-1)

    def test_observation_cap(self):
        feed = PriceFeed("oracle-0", max_observations=3)
        for i in range(5):
            feed.set_price(100 + i, T0 + i)
        assert feed.observation_count == 3
        assert feed.latest.price == 104

    def test_registry(self):
        registry = PriceFeedRegistry()
        assert "oracle-0" not in registry
        feed = registry.feed("oracle-0")
        assert registry.feed("oracle-0") is feed
        assert registry.get("oracle-0") is feed
        assert registry.get("oracle-1") is None


# ============================================================================
#  COLLATERAL HELPERS
# ============================================================================

class TestCollateralHelpers:
    """Collateral updates and payout splits."""

    def test_updated_collateral_clamps_at_zero(self):
        assert calculate_updated_collateral(100, -150) == 0
        assert calculate_updated_collateral(100, 50) == 150
        assert calculate_updated_collateral(100, -40) == 60

    def test_withdrawal_from_collateral_vault(self):
        assert calculate_withdrawal_amounts(100, 150, 0) == (100, 0)

    def test_withdrawal_topped_up_by_insurance(self):
        assert calculate_withdrawal_amounts(100, 60, 50) == (60, 40)

    def test_withdrawal_limited_by_insurance(self):
        assert calculate_withdrawal_amounts(100, 60, 30) == (60, 30)
