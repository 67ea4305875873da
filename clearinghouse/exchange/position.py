"""
Clearing House Position Ledger

Tracks each user's per-market exposure against the vAMM:
  - increase / reduce / close by quote amount (market orders)
  - increase / reduce by base amount (resting order fills, optional maker limit)
  - composite updates that classify a request as increase, reduce or
    close-and-reverse

Every function mutates the market, position and user objects it is handed;
atomicity comes from the state manager staging a copy of the store.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..constants import MARK_PRICE_TIMES_AMM_TO_QUOTE_PRECISION_RATIO, PRICE_SPREAD_PRECISION
from . import amm
from .checked import div, i128, sub, u128
from .types import Market, Position, PositionDirection, SwapDirection, User

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def calculate_updated_collateral(collateral: int, pnl: int) -> int:
    """Apply `pnl` to `collateral`, clamping at zero."""
    if pnl < 0 and abs(pnl) > collateral:
        return 0
    return u128(collateral + pnl, "calculate_updated_collateral")


def calculate_withdrawal_amounts(amount: int, collateral_balance: int, insurance_balance: int) -> Tuple[int, int]:
    """
    Split a payout between the collateral vault and the insurance vault.

    Returns:
        (from_collateral_vault, from_insurance_vault)
    """
    if collateral_balance >= amount:
        return amount, 0
    if insurance_balance > amount - collateral_balance:
        return collateral_balance, amount - collateral_balance
    return collateral_balance, insurance_balance


def calculate_slippage(exit_value: int, base_asset_amount: int, mark_price_before: int) -> int:
    exit_price = div(exit_value * MARK_PRICE_TIMES_AMM_TO_QUOTE_PRECISION_RATIO, base_asset_amount, "calculate_slippage")
    return exit_price - mark_price_before


def calculate_slippage_pct(slippage: int, mark_price_before: int) -> int:
    return div(slippage * PRICE_SPREAD_PRECISION, mark_price_before, "calculate_slippage_pct")


def calculate_quote_asset_amount_for_maker_order(base_asset_amount: int, limit_price: int) -> int:
    return base_asset_amount * limit_price // MARK_PRICE_TIMES_AMM_TO_QUOTE_PRECISION_RATIO


def calculate_quote_asset_amount_surplus(
    swap_direction: SwapDirection,
    quote_asset_swapped: int,
    base_asset_amount: int,
    limit_price: int,
) -> Tuple[int, int]:
    """
    Quote amount a maker is credited at its limit price, and the surplus
    between that and what the curve actually paid.
    """
    quote_asset_amount = calculate_quote_asset_amount_for_maker_order(base_asset_amount, limit_price)
    if swap_direction == SwapDirection.REMOVE:
        surplus = sub(quote_asset_amount, quote_asset_swapped, "quote_asset_amount_surplus")
    else:
        surplus = sub(quote_asset_swapped, quote_asset_amount, "quote_asset_amount_surplus")
    return quote_asset_amount, surplus


def _add_market_exposure(market: Market, position_base_after: int, base_delta: int) -> None:
    market.base_asset_amount = i128(market.base_asset_amount + base_delta, "market.base_asset_amount")
    if position_base_after > 0:
        market.base_asset_amount_long = i128(market.base_asset_amount_long + base_delta, "market.base_asset_amount_long")
    else:
        market.base_asset_amount_short = i128(market.base_asset_amount_short + base_delta, "market.base_asset_amount_short")


def _open_position(market: Market, position: Position, direction: PositionDirection) -> None:
    """Checkpoint funding and count open interest for a position opening from flat."""
    if direction == PositionDirection.LONG:
        position.last_cumulative_funding_rate = market.amm.cumulative_funding_rate_long
    else:
        position.last_cumulative_funding_rate = market.amm.cumulative_funding_rate_short
    market.open_interest += 1


def _realise_reduction(user: User, position: Position, base_before: int, quote_asset_amount: int) -> None:
    """Pro-rate the cost basis to the closed fraction and realise PnL into collateral."""
    base_asset_amount_change = abs(base_before - position.base_asset_amount)
    initial_quote_asset_amount_closed = position.quote_asset_amount * base_asset_amount_change // abs(base_before)
    position.quote_asset_amount = sub(position.quote_asset_amount, initial_quote_asset_amount_closed, "reduce")

    if base_before > 0:
        pnl = quote_asset_amount - initial_quote_asset_amount_closed
    else:
        pnl = initial_quote_asset_amount_closed - quote_asset_amount

    user.collateral = calculate_updated_collateral(user.collateral, pnl)


# ---------------------------------------------------------------------------
# By quote amount
# ---------------------------------------------------------------------------

def increase(
    market: Market,
    position: Position,
    direction: PositionDirection,
    quote_asset_amount: int,
    now: int,
    precomputed_mark_price: Optional[int] = None,
) -> int:
    """Grow a position by `quote_asset_amount` of notional. Returns the signed base acquired."""
    if quote_asset_amount == 0:
        return 0

    if position.base_asset_amount == 0:
        _open_position(market, position, direction)

    position.quote_asset_amount = u128(position.quote_asset_amount + quote_asset_amount, "increase")

    swap_direction = SwapDirection.ADD if direction == PositionDirection.LONG else SwapDirection.REMOVE
    base_asset_acquired = amm.swap_quote_asset(
        market, quote_asset_amount, swap_direction, now, precomputed_mark_price
    )

    position.base_asset_amount = i128(position.base_asset_amount + base_asset_acquired, "increase")
    _add_market_exposure(market, position.base_asset_amount, base_asset_acquired)
    return base_asset_acquired


def reduce(
    market: Market,
    position: Position,
    user: User,
    direction: PositionDirection,
    quote_asset_swap_amount: int,
    now: int,
    precomputed_mark_price: Optional[int] = None,
) -> int:
    """Shrink a position by `quote_asset_swap_amount` of notional. Returns the signed base swapped."""
    swap_direction = SwapDirection.ADD if direction == PositionDirection.LONG else SwapDirection.REMOVE
    base_asset_swapped = amm.swap_quote_asset(
        market, quote_asset_swap_amount, swap_direction, now, precomputed_mark_price
    )

    base_before = position.base_asset_amount
    position.base_asset_amount = i128(base_before + base_asset_swapped, "reduce")
    if position.base_asset_amount == 0:
        market.open_interest = sub(market.open_interest, 1, "reduce")

    _add_market_exposure(market, base_before, base_asset_swapped)
    _realise_reduction(user, position, base_before, quote_asset_swap_amount)
    return base_asset_swapped


def close(
    market: Market,
    position: Position,
    user: User,
    now: int,
    maker_limit_price: Optional[int] = None,
    precomputed_mark_price: Optional[int] = None,
) -> Tuple[int, int, int]:
    """
    Fully unwind a position against the curve.

    Returns:
        (quote_asset_amount, base_asset_amount_closed, quote_asset_amount_surplus)
    """
    if position.base_asset_amount == 0:
        return 0, 0, 0

    base_asset_amount = position.base_asset_amount
    swap_direction = SwapDirection.ADD if base_asset_amount > 0 else SwapDirection.REMOVE

    quote_asset_swapped = amm.swap_base_asset(
        market, abs(base_asset_amount), swap_direction, now, precomputed_mark_price
    )

    if maker_limit_price is not None:
        quote_asset_amount, surplus = calculate_quote_asset_amount_surplus(
            swap_direction, quote_asset_swapped, abs(base_asset_amount), maker_limit_price
        )
    else:
        quote_asset_amount, surplus = quote_asset_swapped, 0

    pnl = amm.calculate_pnl(quote_asset_swapped, position.quote_asset_amount, swap_direction)
    user.collateral = calculate_updated_collateral(user.collateral, pnl)

    position.last_cumulative_funding_rate = 0
    position.last_funding_rate_ts = 0
    position.quote_asset_amount = 0
    market.open_interest = sub(market.open_interest, 1, "close")
    _add_market_exposure(market, base_asset_amount, -base_asset_amount)
    position.base_asset_amount = 0

    return quote_asset_amount, base_asset_amount, surplus


# ---------------------------------------------------------------------------
# By base amount
# ---------------------------------------------------------------------------

def increase_with_base_asset_amount(
    market: Market,
    position: Position,
    direction: PositionDirection,
    base_asset_amount: int,
    now: int,
    maker_limit_price: Optional[int] = None,
    precomputed_mark_price: Optional[int] = None,
) -> Tuple[int, int]:
    """Returns (quote_asset_amount, quote_asset_amount_surplus)."""
    if base_asset_amount == 0:
        return 0, 0

    if position.base_asset_amount == 0:
        _open_position(market, position, direction)

    swap_direction = SwapDirection.REMOVE if direction == PositionDirection.LONG else SwapDirection.ADD
    quote_asset_swapped = amm.swap_base_asset(
        market, base_asset_amount, swap_direction, now, precomputed_mark_price
    )

    if maker_limit_price is not None:
        quote_asset_amount, surplus = calculate_quote_asset_amount_surplus(
            swap_direction, quote_asset_swapped, base_asset_amount, maker_limit_price
        )
    else:
        quote_asset_amount, surplus = quote_asset_swapped, 0

    position.quote_asset_amount = u128(position.quote_asset_amount + quote_asset_amount, "increase_with_base")

    signed_base = base_asset_amount if direction == PositionDirection.LONG else -base_asset_amount
    position.base_asset_amount = i128(position.base_asset_amount + signed_base, "increase_with_base")
    _add_market_exposure(market, position.base_asset_amount, signed_base)

    return quote_asset_amount, surplus


def reduce_with_base_asset_amount(
    market: Market,
    position: Position,
    user: User,
    direction: PositionDirection,
    base_asset_amount: int,
    now: int,
    maker_limit_price: Optional[int] = None,
    precomputed_mark_price: Optional[int] = None,
) -> Tuple[int, int]:
    """Returns (quote_asset_amount, quote_asset_amount_surplus)."""
    swap_direction = SwapDirection.REMOVE if direction == PositionDirection.LONG else SwapDirection.ADD
    quote_asset_swapped = amm.swap_base_asset(
        market, base_asset_amount, swap_direction, now, precomputed_mark_price
    )

    if maker_limit_price is not None:
        quote_asset_amount, surplus = calculate_quote_asset_amount_surplus(
            swap_direction, quote_asset_swapped, base_asset_amount, maker_limit_price
        )
    else:
        quote_asset_amount, surplus = quote_asset_swapped, 0

    signed_base = base_asset_amount if direction == PositionDirection.LONG else -base_asset_amount
    base_before = position.base_asset_amount
    position.base_asset_amount = i128(base_before + signed_base, "reduce_with_base")
    if position.base_asset_amount == 0:
        market.open_interest = sub(market.open_interest, 1, "reduce_with_base")

    _add_market_exposure(market, base_before, signed_base)
    _realise_reduction(user, position, base_before, quote_asset_amount)

    return quote_asset_amount, surplus


# ---------------------------------------------------------------------------
# Composite updates
# ---------------------------------------------------------------------------

def _is_increase(position: Position, direction: PositionDirection) -> bool:
    return (
        position.base_asset_amount == 0
        or (position.base_asset_amount > 0 and direction == PositionDirection.LONG)
        or (position.base_asset_amount < 0 and direction == PositionDirection.SHORT)
    )


def update_position_with_base_asset_amount(
    market: Market,
    position: Position,
    user: User,
    base_asset_amount: int,
    direction: PositionDirection,
    mark_price_before: int,
    now: int,
    maker_limit_price: Optional[int] = None,
) -> Tuple[bool, bool, int, int, int]:
    """
    Trade `base_asset_amount` in `direction`, classifying the request.

    A trade is potentially risk increasing unless it only shrinks exposure.
    Close-and-reverse counts as risk decreasing when the new leg is smaller
    than the one closed.

    Returns:
        (potentially_risk_increasing, reduce_only, base_asset_amount,
         quote_asset_amount, quote_asset_amount_surplus)
    """
    potentially_risk_increasing = True
    reduce_only = False

    if _is_increase(position, direction):
        quote_asset_amount, surplus = increase_with_base_asset_amount(
            market, position, direction, base_asset_amount, now,
            maker_limit_price, mark_price_before,
        )
    elif abs(position.base_asset_amount) > base_asset_amount:
        quote_asset_amount, surplus = reduce_with_base_asset_amount(
            market, position, user, direction, base_asset_amount, now,
            maker_limit_price, mark_price_before,
        )
        reduce_only = True
        potentially_risk_increasing = False
    else:
        base_asset_amount_after_close = sub(base_asset_amount, abs(position.base_asset_amount), "update_position")
        if base_asset_amount_after_close < abs(position.base_asset_amount):
            potentially_risk_increasing = False

        quote_closed, _, surplus_closed = close(
            market, position, user, now, maker_limit_price, mark_price_before
        )
        quote_opened, surplus_opened = increase_with_base_asset_amount(
            market, position, direction, base_asset_amount_after_close, now,
            maker_limit_price, mark_price_before,
        )
        if quote_opened == 0:
            reduce_only = True

        quote_asset_amount = quote_closed + quote_opened
        surplus = surplus_closed + surplus_opened

    return potentially_risk_increasing, reduce_only, base_asset_amount, quote_asset_amount, surplus


def update_position_with_quote_asset_amount(
    market: Market,
    position: Position,
    user: User,
    quote_asset_amount: int,
    direction: PositionDirection,
    mark_price_before: int,
    now: int,
) -> Tuple[bool, bool, int, int, int]:
    """
    Trade `quote_asset_amount` of notional in `direction`.

    A reduce whose notional is within the market's minimum trade size of the
    position value is rounded to a full close.

    Returns:
        (potentially_risk_increasing, reduce_only, base_asset_amount,
         quote_asset_amount, 0)
    """
    potentially_risk_increasing = True
    reduce_only = False

    if _is_increase(position, direction):
        base_asset_amount = abs(increase(
            market, position, direction, quote_asset_amount, now, mark_price_before
        ))
    else:
        base_asset_value, _ = amm.calculate_base_asset_value_and_pnl(
            position.base_asset_amount, position.quote_asset_amount, market.amm
        )

        if amm.should_round_trade(market.amm, quote_asset_amount, base_asset_value):
            quote_asset_amount = base_asset_value

        if base_asset_value > quote_asset_amount:
            base_asset_amount = abs(reduce(
                market, position, user, direction, quote_asset_amount, now, mark_price_before
            ))
            potentially_risk_increasing = False
            reduce_only = True
        else:
            quote_asset_amount_after_close = sub(quote_asset_amount, base_asset_value, "update_position")
            if quote_asset_amount_after_close < base_asset_value:
                potentially_risk_increasing = False

            _, base_closed, _ = close(market, position, user, now, None, mark_price_before)
            base_opened = abs(increase(
                market, position, direction, quote_asset_amount_after_close, now, mark_price_before
            ))
            if base_opened == 0:
                reduce_only = True

            base_asset_amount = abs(base_closed) + base_opened

    return potentially_risk_increasing, reduce_only, base_asset_amount, quote_asset_amount, 0


def base_asset_value_and_pnl(position: Position, market: Market) -> Tuple[int, int]:
    """Curve value of `position` and its unrealised PnL."""
    return amm.calculate_base_asset_value_and_pnl(
        position.base_asset_amount, position.quote_asset_amount, market.amm
    )
