"""
Clearing House Funding Rate Engine

Funding reconciles the vAMM mark price with the oracle:
  - Once per funding period (aligned to the hour) the market's rate is set
    from the mark TWAP minus the oracle TWAP
  - Longs and shorts carry separate cumulative rates, since a vAMM can be
    imbalanced and the protocol pays the imbalance out of its fee pool
  - Users settle lazily: before any action their position checkpoint is
    compared with the market's cumulative rate

Security features:
  - The protocol's funding outflow is capped at 2/3 of the fee pool above
    half of lifetime fees
  - Updates are skipped while funding is paused, the oracle is invalid or
    mark has diverged too far from the oracle
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from ..constants import (
    AMM_TO_QUOTE_PRECISION_RATIO,
    FUNDING_PAYMENT_PRECISION,
    MARK_PRICE_PRECISION,
    ONE_DAY,
    ONE_HOUR,
    QUOTE_TO_BASE_AMT_FUNDING_PRECISION,
    SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_DENOMINATOR,
    SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_NUMERATOR,
)
from ..exceptions import MathError
from . import amm
from .checked import div, i128, sub, u128
from .context import ExecutionContext
from .history import FundingPaymentRecord, FundingRateRecord
from .oracle import block_operation
from .position import calculate_updated_collateral
from .types import Market, Position

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Payment math
# ---------------------------------------------------------------------------

def _calculate_funding_payment(funding_rate_delta: int, base_asset_amount: int) -> int:
    """Funding owed on `base_asset_amount` for a cumulative rate delta. Longs pay shorts."""
    delta_sign = 1 if funding_rate_delta > 0 else -1
    magnitude = abs(funding_rate_delta) * abs(base_asset_amount) // MARK_PRICE_PRECISION // FUNDING_PAYMENT_PRECISION
    payment_sign = -1 if base_asset_amount > 0 else 1
    return i128(magnitude * payment_sign * delta_sign, "calculate_funding_payment")


def calculate_funding_payment(amm_cumulative_funding_rate: int, position: Position) -> int:
    funding_rate_delta = amm_cumulative_funding_rate - position.last_cumulative_funding_rate
    return _calculate_funding_payment(funding_rate_delta, position.base_asset_amount)


def calculate_funding_payment_in_quote_precision(funding_rate_delta: int, base_asset_amount: int) -> int:
    payment = _calculate_funding_payment(funding_rate_delta, base_asset_amount)
    return div(payment, AMM_TO_QUOTE_PRECISION_RATIO, "funding_payment_in_quote_precision")


def calculate_funding_rate_from_pnl_limit(pnl_limit: int, base_asset_amount: int) -> int:
    if base_asset_amount == 0:
        return 0
    pnl_limit_biased = pnl_limit + 1 if pnl_limit < 0 else pnl_limit
    return div(pnl_limit_biased * QUOTE_TO_BASE_AMT_FUNDING_PRECISION, base_asset_amount, "funding_rate_from_pnl_limit")


def _fee_pool_lower_bound(market: Market) -> int:
    return (
        market.amm.total_fee
        * SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_NUMERATOR
        // SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_DENOMINATOR
    )


def calculate_capped_funding_rate(
    market: Market,
    uncapped_funding_pnl: int,
    funding_rate: int,
) -> Tuple[int, int]:
    """
    Cap the protocol's share of an imbalanced funding payment.

    Returns:
        (capped_funding_rate, capped_funding_pnl)
    """
    lower_bound = _fee_pool_lower_bound(market)

    # at most 2/3 of the pool above the lower bound per period
    if market.amm.total_fee_minus_distributions > lower_bound:
        funding_rate_pnl_limit = -((market.amm.total_fee_minus_distributions - lower_bound) * 2 // 3)
    else:
        funding_rate_pnl_limit = 0

    capped_funding_pnl = max(uncapped_funding_pnl, funding_rate_pnl_limit)

    if uncapped_funding_pnl < funding_rate_pnl_limit:
        # paying side's payment is already available to the receiving side
        if funding_rate > 0:
            from_users = calculate_funding_payment_in_quote_precision(funding_rate, market.base_asset_amount_long)
        else:
            from_users = calculate_funding_payment_in_quote_precision(funding_rate, market.base_asset_amount_short)

        funding_rate_pnl_limit -= abs(from_users)

        if funding_rate < 0:
            # longs receive
            capped_funding_rate = calculate_funding_rate_from_pnl_limit(
                funding_rate_pnl_limit, market.base_asset_amount_long
            )
        else:
            # shorts receive
            capped_funding_rate = calculate_funding_rate_from_pnl_limit(
                funding_rate_pnl_limit, market.base_asset_amount_short
            )
    else:
        capped_funding_rate = funding_rate

    return capped_funding_rate, capped_funding_pnl


def calculate_funding_rate_long_short(market: Market, funding_rate: int) -> Tuple[int, int, int]:
    """
    Split a funding rate into the long and short rates actually applied.

    Returns:
        (funding_rate_long, funding_rate_short, new_total_fee_minus_distributions)

    Raises:
        MathError: op "InvalidFundingProfitability" when the capped payout
            would still take the fee pool below half of lifetime fees
    """
    net_market_position_funding_payment = calculate_funding_payment_in_quote_precision(
        funding_rate, market.base_asset_amount
    )
    uncapped_funding_pnl = -net_market_position_funding_payment

    # the protocol receives funding from the net position
    if uncapped_funding_pnl >= 0:
        new_total = u128(market.amm.total_fee_minus_distributions + uncapped_funding_pnl, "funding_rate_long_short")
        return funding_rate, funding_rate, new_total

    capped_funding_rate, capped_funding_pnl = calculate_capped_funding_rate(
        market, uncapped_funding_pnl, funding_rate
    )
    new_total = sub(market.amm.total_fee_minus_distributions, abs(capped_funding_pnl), "funding_rate_long_short")

    if capped_funding_pnl != 0 and new_total < _fee_pool_lower_bound(market):
        raise MathError("InvalidFundingProfitability")

    funding_rate_long = capped_funding_rate if funding_rate < 0 else funding_rate
    funding_rate_short = capped_funding_rate if funding_rate > 0 else funding_rate
    return funding_rate_long, funding_rate_short, new_total


def next_funding_update_wait(last_funding_rate_ts: int, funding_period: int) -> int:
    """Seconds after the last update before the next one, snapped to the hour."""
    if funding_period <= 1:
        return funding_period
    last_update_delay = last_funding_rate_ts % funding_period
    if last_update_delay == 0:
        return funding_period
    if last_update_delay > funding_period // 3:
        # too late for the next boundary, wait for the following one
        return funding_period * 2 - last_update_delay
    return funding_period - last_update_delay


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------

def settle_funding_payment(ctx: ExecutionContext, user_id: str) -> List[FundingPaymentRecord]:
    """Settle every open position of `user_id` against its market's cumulative rate."""
    user = ctx.store.users.get(user_id)
    if user is None:
        return []

    records: List[FundingPaymentRecord] = []
    funding_payment = 0

    for market_index in ctx.store.market_indexes():
        position = ctx.store.get_position(user_id, market_index)
        if position is None or position.base_asset_amount == 0:
            continue

        market = ctx.store.markets[market_index]

        if position.base_asset_amount > 0:
            amm_cumulative_funding_rate = market.amm.cumulative_funding_rate_long
        else:
            amm_cumulative_funding_rate = market.amm.cumulative_funding_rate_short

        if amm_cumulative_funding_rate == position.last_cumulative_funding_rate:
            continue

        payment = calculate_funding_payment(amm_cumulative_funding_rate, position)
        record = FundingPaymentRecord(
            ts=ctx.now,
            user=user_id,
            market_index=market_index,
            funding_payment=payment,
            base_asset_amount=position.base_asset_amount,
            user_last_cumulative_funding=position.last_cumulative_funding_rate,
            user_last_funding_rate_ts=position.last_funding_rate_ts,
            amm_cumulative_funding_long=market.amm.cumulative_funding_rate_long,
            amm_cumulative_funding_short=market.amm.cumulative_funding_rate_short,
        )
        records.append(ctx.outbox.emit(record))
        funding_payment = i128(funding_payment + payment, "settle_funding_payment")

        position.last_cumulative_funding_rate = amm_cumulative_funding_rate
        position.last_funding_rate_ts = market.amm.last_funding_rate_ts

    funding_payment_collateral = div(funding_payment, AMM_TO_QUOTE_PRECISION_RATIO, "settle_funding_payment")
    user.collateral = calculate_updated_collateral(user.collateral, funding_payment_collateral)

    if records:
        logger.debug("Settled funding for user=%s payment=%d", user_id, funding_payment_collateral)
    return records


def update_funding_rate(
    ctx: ExecutionContext,
    market_index: int,
    precomputed_mark_price: Optional[int] = None,
) -> Optional[FundingRateRecord]:
    """
    Advance the market's cumulative funding rates if a period has elapsed.

    Returns the emitted FundingRateRecord, or None when the update was not due
    or was blocked.
    """
    market = ctx.store.load_market(market_index)
    now = ctx.now

    if now < market.amm.last_funding_rate_ts:
        raise MathError("update_funding_rate")
    time_since_last_update = now - market.amm.last_funding_rate_ts

    blocked, oracle_price_data = block_operation(
        market, ctx.feeds, ctx.guard_rails, now, precomputed_mark_price
    )
    normalised_oracle_price = amm.normalise_oracle_price(market.amm, oracle_price_data, precomputed_mark_price)

    next_update_wait = next_funding_update_wait(market.amm.last_funding_rate_ts, market.amm.funding_period)

    if ctx.state.funding_paused or blocked or time_since_last_update < next_update_wait:
        return None

    oracle_price_twap = amm.update_oracle_price_twap(market, now, normalised_oracle_price)
    mark_price_twap = amm.update_mark_twap(market, now)

    # one-hour period over a one-day window: frequent small payments
    period_adjustment = ONE_DAY // max(ONE_HOUR, market.amm.funding_period)
    price_spread = mark_price_twap - oracle_price_twap
    funding_rate = div(price_spread * FUNDING_PAYMENT_PRECISION, period_adjustment, "update_funding_rate")

    funding_rate_long, funding_rate_short, new_total = calculate_funding_rate_long_short(market, funding_rate)

    market.amm.total_fee_minus_distributions = new_total
    market.amm.cumulative_funding_rate_long = i128(
        market.amm.cumulative_funding_rate_long + funding_rate_long, "update_funding_rate"
    )
    market.amm.cumulative_funding_rate_short = i128(
        market.amm.cumulative_funding_rate_short + funding_rate_short, "update_funding_rate"
    )
    market.amm.last_funding_rate = funding_rate
    market.amm.last_funding_rate_ts = now

    record = FundingRateRecord(
        ts=now,
        market_index=market_index,
        funding_rate=funding_rate,
        cumulative_funding_rate_long=market.amm.cumulative_funding_rate_long,
        cumulative_funding_rate_short=market.amm.cumulative_funding_rate_short,
        oracle_price_twap=oracle_price_twap,
        mark_price_twap=mark_price_twap,
    )
    logger.info(
        "Funding rate updated market=%d rate=%d long=%d short=%d",
        market_index, funding_rate, funding_rate_long, funding_rate_short,
    )
    return ctx.outbox.emit(record)
