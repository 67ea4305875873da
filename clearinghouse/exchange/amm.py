"""
Clearing House vAMM Pricing Engine

Constant-product virtual AMM used as the sole counterparty for every trade:
  - Mark price: quote_reserve * peg / base_reserve, in MARK_PRICE_PRECISION
  - Swaps preserve base_reserve * quote_reserve == sqrt_k ** 2 (floor rounding)
  - Mark and oracle TWAPs blended by elapsed time vs. remaining funding period
  - Oracle normalisation and validity checks against the guard rails
  - Net-market-value based cost of repeg / k adjustments

Pure helpers take an `Amm` and return values; the `update_*` / `swap_*` /
`move_price` / `adjust_*` functions mutate the market they are given.

Security features:
  - Oracle samples capped to 33 % of the oracle price around the prior TWAP
  - Removing more than the available reserve is rejected (TradeSizeTooLarge)
  - Quote swaps below the market minimum are rejected (TradeSizeTooSmall)
  - k cannot shrink more than 2.5 % in a single adjustment
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..constants import (
    AMM_RESERVE_PRECISION,
    AMM_TIMES_PEG_TO_QUOTE_PRECISION_RATIO,
    MARK_PRICE_PRECISION,
    PEG_PRECISION,
    PRICE_SPREAD_PRECISION,
    PRICE_TO_PEG_PRECISION_RATIO,
    PRICE_TO_QUOTE_PRECISION_RATIO,
)
from ..exceptions import InvalidUpdateK, MathError, TradeSizeTooLarge, TradeSizeTooSmall
from .checked import div, i128, sqrt, sub, u128
from .types import (
    Amm,
    Market,
    OracleGuardRails,
    OraclePriceData,
    PositionDirection,
    SwapDirection,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prices and swaps
# ---------------------------------------------------------------------------

def calculate_price(quote_asset_reserve: int, base_asset_reserve: int, peg_multiplier: int) -> int:
    peg_quote = u128(quote_asset_reserve * peg_multiplier, "calculate_price")
    return div(u128(peg_quote * PRICE_TO_PEG_PRECISION_RATIO, "calculate_price"),
               base_asset_reserve, "calculate_price")


def get_mark_price(amm: Amm) -> int:
    return calculate_price(amm.quote_asset_reserve, amm.base_asset_reserve, amm.peg_multiplier)


def calculate_swap_output(
    swap_amount: int,
    input_asset_amount: int,
    direction: SwapDirection,
    invariant_sqrt: int,
) -> Tuple[int, int]:
    """
    Swap `swap_amount` into (ADD) or out of (REMOVE) one side of the curve.

    Returns:
        (new_output_reserve, new_input_reserve)
    """
    invariant = u128(invariant_sqrt * invariant_sqrt, "calculate_swap_output")

    if direction == SwapDirection.REMOVE and swap_amount > input_asset_amount:
        raise TradeSizeTooLarge()

    if direction == SwapDirection.ADD:
        new_input_amount = u128(input_asset_amount + swap_amount, "calculate_swap_output")
    else:
        new_input_amount = sub(input_asset_amount, swap_amount, "calculate_swap_output")

    new_output_amount = div(invariant, new_input_amount, "calculate_swap_output")
    return new_output_amount, new_input_amount


def calculate_terminal_price(market: Market) -> int:
    """Mark price after the market's entire net position were closed."""
    swap_direction = SwapDirection.ADD if market.base_asset_amount > 0 else SwapDirection.REMOVE
    new_quote, new_base = calculate_swap_output(
        abs(market.base_asset_amount),
        market.amm.base_asset_reserve,
        swap_direction,
        market.amm.sqrt_k,
    )
    return calculate_price(new_quote, new_base, market.amm.peg_multiplier)


def reserve_to_asset_amount(quote_asset_reserve: int, peg_multiplier: int) -> int:
    return quote_asset_reserve * peg_multiplier // AMM_TIMES_PEG_TO_QUOTE_PRECISION_RATIO


def asset_to_reserve_amount(quote_asset_amount: int, peg_multiplier: int) -> int:
    return div(quote_asset_amount * AMM_TIMES_PEG_TO_QUOTE_PRECISION_RATIO,
               peg_multiplier, "asset_to_reserve_amount")


def calculate_quote_asset_amount_swapped(
    quote_asset_reserve_before: int,
    quote_asset_reserve_after: int,
    swap_direction: SwapDirection,
    peg_multiplier: int,
) -> int:
    if swap_direction == SwapDirection.ADD:
        change = sub(quote_asset_reserve_before, quote_asset_reserve_after, "quote_asset_amount_swapped")
    else:
        change = sub(quote_asset_reserve_after, quote_asset_reserve_before, "quote_asset_amount_swapped")

    quote_asset_amount = reserve_to_asset_amount(change, peg_multiplier)

    # going long base costs one extra unit of quote
    if swap_direction == SwapDirection.REMOVE:
        quote_asset_amount += 1

    return quote_asset_amount


# ---------------------------------------------------------------------------
# Position valuation on the curve
# ---------------------------------------------------------------------------

def swap_direction_to_close_position(base_asset_amount: int) -> SwapDirection:
    return SwapDirection.ADD if base_asset_amount >= 0 else SwapDirection.REMOVE


def direction_to_close_position(base_asset_amount: int) -> PositionDirection:
    return PositionDirection.SHORT if base_asset_amount > 0 else PositionDirection.LONG


def calculate_pnl(exit_value: int, entry_value: int, swap_direction_to_close: SwapDirection) -> int:
    if swap_direction_to_close == SwapDirection.ADD:
        return i128(exit_value - entry_value, "calculate_pnl")
    return i128(entry_value - exit_value, "calculate_pnl")


def calculate_base_asset_value_and_pnl(
    base_asset_amount: int,
    quote_asset_amount: int,
    amm: Amm,
) -> Tuple[int, int]:
    """Quote value of closing `base_asset_amount` on the curve, and the PnL vs. its cost basis."""
    if base_asset_amount == 0:
        return 0, 0

    swap_direction = swap_direction_to_close_position(base_asset_amount)
    new_quote_reserve, _ = calculate_swap_output(
        abs(base_asset_amount),
        amm.base_asset_reserve,
        swap_direction,
        amm.sqrt_k,
    )
    base_asset_value = calculate_quote_asset_amount_swapped(
        amm.quote_asset_reserve,
        new_quote_reserve,
        swap_direction,
        amm.peg_multiplier,
    )
    pnl = calculate_pnl(base_asset_value, quote_asset_amount, swap_direction)
    return base_asset_value, pnl


def calculate_base_asset_value_and_pnl_with_oracle_price(
    base_asset_amount: int,
    quote_asset_amount: int,
    oracle_price: int,
) -> Tuple[int, int]:
    if base_asset_amount == 0:
        return 0, 0

    swap_direction = swap_direction_to_close_position(base_asset_amount)
    price = max(oracle_price, 0)
    base_asset_value = abs(base_asset_amount) * price // (AMM_RESERVE_PRECISION * PRICE_TO_QUOTE_PRECISION_RATIO)
    pnl = calculate_pnl(base_asset_value, quote_asset_amount, swap_direction)
    return base_asset_value, pnl


# ---------------------------------------------------------------------------
# TWAPs
# ---------------------------------------------------------------------------

def calculate_twap(new_data: int, old_data: int, new_weight: int, old_weight: int) -> int:
    return div(old_data * old_weight + new_data * new_weight, new_weight + old_weight, "calculate_twap")


def calculate_new_mark_twap(amm: Amm, now: int, precomputed_mark_price: Optional[int] = None) -> int:
    since_last = max(1, now - amm.last_mark_price_twap_ts)
    from_start = max(1, amm.funding_period - since_last)
    current_price = precomputed_mark_price if precomputed_mark_price is not None else get_mark_price(amm)
    return abs(calculate_twap(current_price, amm.last_mark_price_twap, since_last, from_start))


def calculate_new_oracle_price_twap(amm: Amm, now: int, oracle_price: int) -> int:
    since_last = max(1, now - amm.last_oracle_price_twap_ts)
    from_start = max(1, amm.funding_period - since_last)
    return calculate_twap(oracle_price, amm.last_oracle_price_twap, since_last, from_start)


def update_mark_twap(market: Market, now: int, precomputed_mark_price: Optional[int] = None) -> int:
    mark_twap = calculate_new_mark_twap(market.amm, now, precomputed_mark_price)
    market.amm.last_mark_price_twap = mark_twap
    market.amm.last_mark_price_twap_ts = now
    return mark_twap


def update_oracle_price_twap(market: Market, now: int, oracle_price: int) -> int:
    """
    Blend `oracle_price` into the stored oracle TWAP.

    The sample is first capped to within a third of the oracle price around the
    prior TWAP. Non-positive samples leave the TWAP untouched.
    """
    amm = market.amm
    spread = oracle_price - amm.last_oracle_price_twap
    oracle_price_33pct = div(oracle_price, 3, "update_oracle_price_twap")

    if abs(spread) > abs(oracle_price_33pct):
        if oracle_price > amm.last_oracle_price_twap:
            capped = amm.last_oracle_price_twap + oracle_price_33pct
        else:
            capped = amm.last_oracle_price_twap - oracle_price_33pct
    else:
        capped = oracle_price

    if capped > 0 and oracle_price > 0:
        oracle_price_twap = calculate_new_oracle_price_twap(amm, now, capped)
        amm.last_oracle_price = capped
        amm.last_oracle_price_twap = oracle_price_twap
        amm.last_oracle_price_twap_ts = now
        return oracle_price_twap

    return amm.last_oracle_price_twap


# ---------------------------------------------------------------------------
# Oracle trust
# ---------------------------------------------------------------------------

def normalise_oracle_price(
    amm: Amm,
    oracle_price_data: OraclePriceData,
    precomputed_mark_price: Optional[int] = None,
) -> int:
    """
    Nudge the oracle price toward mark by at most 1bp of mark, bounded by the
    oracle's confidence interval.
    """
    oracle_price = oracle_price_data.price
    conf = oracle_price_data.confidence
    mark_price = precomputed_mark_price if precomputed_mark_price is not None else get_mark_price(amm)
    mark_price_1bp = mark_price // 10000

    if mark_price > oracle_price:
        return min(max(mark_price - mark_price_1bp, oracle_price), oracle_price + conf)
    return max(min(mark_price + mark_price_1bp, oracle_price), oracle_price - conf)


def calculate_oracle_mark_spread(
    amm: Amm,
    oracle_price_data: OraclePriceData,
    precomputed_mark_price: Optional[int] = None,
) -> Tuple[int, int]:
    mark_price = precomputed_mark_price if precomputed_mark_price is not None else get_mark_price(amm)
    oracle_price = oracle_price_data.price
    return oracle_price, mark_price - oracle_price


def calculate_oracle_mark_spread_pct(
    amm: Amm,
    oracle_price_data: OraclePriceData,
    precomputed_mark_price: Optional[int] = None,
) -> int:
    oracle_price, price_spread = calculate_oracle_mark_spread(amm, oracle_price_data, precomputed_mark_price)
    return div(price_spread * PRICE_SPREAD_PRECISION, oracle_price, "oracle_mark_spread_pct")


def is_oracle_mark_too_divergent(price_spread_pct: int, guard_rails: OracleGuardRails) -> bool:
    divergence = guard_rails.mark_oracle_divergence
    max_divergence = divergence.numerator * PRICE_SPREAD_PRECISION // divergence.denominator
    return abs(price_spread_pct) > max_divergence


def calculate_mark_twap_spread_pct(amm: Amm, mark_price: int) -> int:
    price_spread = mark_price - amm.last_mark_price_twap
    return div(price_spread * PRICE_SPREAD_PRECISION, amm.last_mark_price_twap, "mark_twap_spread_pct")


def use_oracle_price_for_margin_calculation(price_spread_pct: int, guard_rails: OracleGuardRails) -> bool:
    divergence = guard_rails.mark_oracle_divergence
    max_divergence = divergence.numerator * PRICE_SPREAD_PRECISION // 3 // divergence.denominator
    return abs(price_spread_pct) > max_divergence


def is_oracle_valid(amm: Amm, oracle_price_data: OraclePriceData, guard_rails: OracleGuardRails) -> bool:
    oracle_price = oracle_price_data.price
    twap = amm.last_oracle_price_twap

    is_nonpositive = oracle_price <= 0
    is_too_volatile = (
        div(oracle_price, max(1, twap), "is_oracle_valid") > guard_rails.too_volatile_ratio
        or div(twap, max(1, oracle_price), "is_oracle_valid") > guard_rails.too_volatile_ratio
    )
    conf_denom_of_price = abs(oracle_price) // max(1, oracle_price_data.confidence)
    is_conf_too_large = conf_denom_of_price < guard_rails.confidence_interval_max_size
    is_stale = oracle_price_data.delay > guard_rails.slots_before_stale

    return not (
        is_stale
        or not oracle_price_data.has_sufficient_number_of_data_points
        or is_nonpositive
        or is_too_volatile
        or is_conf_too_large
    )


# ---------------------------------------------------------------------------
# Trade sizing
# ---------------------------------------------------------------------------

def calculate_max_base_asset_amount_to_trade(amm: Amm, limit_price: int) -> Tuple[int, PositionDirection]:
    """Base amount that moves mark exactly to `limit_price`, and the direction that does it."""
    invariant = u128(amm.sqrt_k * amm.sqrt_k, "max_base_asset_amount_to_trade")
    new_base_squared = div(invariant * MARK_PRICE_PRECISION, limit_price, "max_base_asset_amount_to_trade")
    new_base_squared = new_base_squared * amm.peg_multiplier // PEG_PRECISION
    new_base_asset_reserve = sqrt(new_base_squared)

    if new_base_asset_reserve > amm.base_asset_reserve:
        return new_base_asset_reserve - amm.base_asset_reserve, PositionDirection.SHORT
    return amm.base_asset_reserve - new_base_asset_reserve, PositionDirection.LONG


def should_round_trade(amm: Amm, quote_asset_amount: int, base_asset_value: int) -> bool:
    difference = abs(quote_asset_amount - base_asset_value)
    return asset_to_reserve_amount(difference, amm.peg_multiplier) < amm.minimum_quote_asset_trade_size


# ---------------------------------------------------------------------------
# Reserve mutations
# ---------------------------------------------------------------------------

def swap_quote_asset(
    market: Market,
    quote_asset_amount: int,
    direction: SwapDirection,
    now: int,
    precomputed_mark_price: Optional[int] = None,
) -> int:
    """Swap quote into/out of the curve. Returns the signed base acquired."""
    update_mark_twap(market, now, precomputed_mark_price)
    amm = market.amm

    quote_asset_reserve_amount = asset_to_reserve_amount(quote_asset_amount, amm.peg_multiplier)
    if quote_asset_reserve_amount < amm.minimum_quote_asset_trade_size:
        raise TradeSizeTooSmall()

    initial_base_asset_reserve = amm.base_asset_reserve
    new_base, new_quote = calculate_swap_output(
        quote_asset_reserve_amount,
        amm.quote_asset_reserve,
        direction,
        amm.sqrt_k,
    )
    amm.base_asset_reserve = new_base
    amm.quote_asset_reserve = new_quote

    return initial_base_asset_reserve - new_base


def swap_base_asset(
    market: Market,
    base_asset_swap_amount: int,
    direction: SwapDirection,
    now: int,
    precomputed_mark_price: Optional[int] = None,
) -> int:
    """Swap base into/out of the curve. Returns the quote amount exchanged."""
    update_mark_twap(market, now, precomputed_mark_price)
    amm = market.amm

    initial_quote_asset_reserve = amm.quote_asset_reserve
    new_quote, new_base = calculate_swap_output(
        base_asset_swap_amount,
        amm.base_asset_reserve,
        direction,
        amm.sqrt_k,
    )
    amm.base_asset_reserve = new_base
    amm.quote_asset_reserve = new_quote

    return calculate_quote_asset_amount_swapped(
        initial_quote_asset_reserve,
        new_quote,
        direction,
        amm.peg_multiplier,
    )


def move_price(market: Market, base_asset_reserve: int, quote_asset_reserve: int) -> None:
    if base_asset_reserve <= 0 or quote_asset_reserve <= 0:
        raise MathError("move_price")
    k = u128(base_asset_reserve * quote_asset_reserve, "move_price")
    market.amm.base_asset_reserve = base_asset_reserve
    market.amm.quote_asset_reserve = quote_asset_reserve
    market.amm.sqrt_k = sqrt(k)


def adjust_k_cost(market: Market, new_sqrt_k: int) -> int:
    """
    Rescale both reserves to `new_sqrt_k` and return the protocol's cost.

    Increasing k improves exit prices for the net market position and
    decreasing it worsens them; either way the cost is the change in the
    net market position's value.
    """
    amm = market.amm
    current_net_market_value, _ = calculate_base_asset_value_and_pnl(market.base_asset_amount, 0, amm)

    sqrt_k_ratio = div(new_sqrt_k * MARK_PRICE_PRECISION, amm.sqrt_k, "adjust_k_cost")

    # at most a 2.5 % decrease per adjustment
    if sqrt_k_ratio < MARK_PRICE_PRECISION * 975 // 1000:
        raise InvalidUpdateK()

    amm.sqrt_k = new_sqrt_k
    amm.base_asset_reserve = u128(amm.base_asset_reserve * sqrt_k_ratio // MARK_PRICE_PRECISION, "adjust_k_cost")
    amm.quote_asset_reserve = u128(amm.quote_asset_reserve * sqrt_k_ratio // MARK_PRICE_PRECISION, "adjust_k_cost")

    _, cost = calculate_base_asset_value_and_pnl(market.base_asset_amount, current_net_market_value, amm)
    return cost


def adjust_peg_cost(market: Market, new_peg: int) -> int:
    """Set the peg and return the change in net market value it causes."""
    current_net_market_value, _ = calculate_base_asset_value_and_pnl(market.base_asset_amount, 0, market.amm)
    market.amm.peg_multiplier = new_peg
    _, cost = calculate_base_asset_value_and_pnl(market.base_asset_amount, current_net_market_value, market.amm)
    return cost
