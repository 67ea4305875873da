"""
Clearing House Curve Maintenance

Admin-driven adjustments of a market's vAMM:
  - repeg:  change the peg multiplier, moving mark toward the oracle
  - update_k:  rescale the reserves (liquidity depth) at a near-constant price
  - oracle TWAP maintenance:  re-anchor the stored oracle TWAP

Both curve adjustments are paid for out of the market's fee pool. The cost is
the change in value of the market's net position, and a positive cost must
leave `total_fee_minus_distributions` at or above half of lifetime fees.
"""

from __future__ import annotations

import logging

from ..constants import (
    SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_DENOMINATOR,
    SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_NUMERATOR,
    UPDATE_K_ALLOWED_PRICE_CHANGE,
)
from ..exceptions import (
    InvalidOracle,
    InvalidRepegDirection,
    InvalidRepegProfitability,
    InvalidRepegRedundant,
    InvalidUpdateK,
    OracleMarkSpreadLimit,
)
from . import amm
from .checked import sub, u128
from .context import ExecutionContext
from .history import CurveRecord
from .oracle import fetch_oracle_price
from .types import Market

logger = logging.getLogger(__name__)


def _fee_pool_floor(market: Market) -> int:
    return (
        market.amm.total_fee
        * SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_NUMERATOR
        // SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_DENOMINATOR
    )


def _curve_snapshot(market: Market) -> dict:
    return {
        "peg_multiplier": market.amm.peg_multiplier,
        "base_asset_reserve": market.amm.base_asset_reserve,
        "quote_asset_reserve": market.amm.quote_asset_reserve,
        "sqrt_k": market.amm.sqrt_k,
    }


def _curve_record(
    ctx: ExecutionContext,
    market_index: int,
    market: Market,
    before: dict,
    adjustment_cost: int,
    oracle_price: int,
) -> CurveRecord:
    return CurveRecord(
        ts=ctx.now,
        market_index=market_index,
        peg_multiplier_before=before["peg_multiplier"],
        peg_multiplier_after=market.amm.peg_multiplier,
        base_asset_reserve_before=before["base_asset_reserve"],
        base_asset_reserve_after=market.amm.base_asset_reserve,
        quote_asset_reserve_before=before["quote_asset_reserve"],
        quote_asset_reserve_after=market.amm.quote_asset_reserve,
        sqrt_k_before=before["sqrt_k"],
        sqrt_k_after=market.amm.sqrt_k,
        base_asset_amount_long=abs(market.base_asset_amount_long),
        base_asset_amount_short=abs(market.base_asset_amount_short),
        base_asset_amount=market.base_asset_amount,
        open_interest=market.open_interest,
        total_fee=market.amm.total_fee,
        total_fee_minus_distributions=market.amm.total_fee_minus_distributions,
        adjustment_cost=adjustment_cost,
        oracle_price=oracle_price,
    )


# ---------------------------------------------------------------------------
# Repeg
# ---------------------------------------------------------------------------

def repeg(ctx: ExecutionContext, market_index: int, new_peg_candidate: int) -> int:
    """
    Move the peg to `new_peg_candidate` and charge the fee pool.

    With a valid oracle, the terminal price must move toward the oracle and
    neither terminal nor mark may overshoot the oracle's confidence band.

    Returns:
        The adjustment cost (negative when the protocol profits).
    """
    market = ctx.store.load_market(market_index)

    if new_peg_candidate == market.amm.peg_multiplier:
        raise InvalidRepegRedundant()
    if new_peg_candidate <= 0:
        raise InvalidRepegProfitability("Peg multiplier must be positive")

    terminal_price_before = amm.calculate_terminal_price(market)
    adjustment_cost = amm.adjust_peg_cost(market, new_peg_candidate)

    oracle_price_data = fetch_oracle_price(market, ctx.feeds, ctx.now)
    oracle_price = abs(oracle_price_data.price)
    oracle_conf = oracle_price_data.confidence

    if amm.is_oracle_valid(market.amm, oracle_price_data, ctx.guard_rails):
        terminal_price_after = amm.calculate_terminal_price(market)
        mark_price_after = amm.get_mark_price(market.amm)
        oracle_conf_band_top = oracle_price + oracle_conf
        oracle_conf_band_bottom = sub(oracle_price, oracle_conf, "repeg")

        if oracle_price > terminal_price_after:
            # terminal may only move up toward a higher oracle
            if terminal_price_after < terminal_price_before:
                raise InvalidRepegDirection()
            if oracle_conf_band_bottom < terminal_price_after:
                raise InvalidRepegProfitability("Terminal price above oracle confidence band")
            if mark_price_after > oracle_conf_band_top:
                raise InvalidRepegProfitability("Mark price above oracle confidence band")

        if oracle_price < terminal_price_after:
            # terminal may only move down toward a lower oracle
            if terminal_price_after > terminal_price_before:
                raise InvalidRepegDirection()
            if oracle_conf_band_top > terminal_price_after:
                raise InvalidRepegProfitability("Terminal price below oracle confidence band")
            if mark_price_after < oracle_conf_band_bottom:
                raise InvalidRepegProfitability("Mark price below oracle confidence band")

    if adjustment_cost > 0:
        market.amm.total_fee_minus_distributions = sub(
            market.amm.total_fee_minus_distributions, adjustment_cost, "repeg"
        )
        if market.amm.total_fee_minus_distributions < _fee_pool_floor(market):
            raise InvalidRepegProfitability("Repeg cost exceeds the fee pool allocation")
    else:
        market.amm.total_fee_minus_distributions = u128(
            market.amm.total_fee_minus_distributions - adjustment_cost, "repeg"
        )

    return adjustment_cost


def repeg_amm_curve(ctx: ExecutionContext, market_index: int, new_peg_candidate: int) -> CurveRecord:
    market = ctx.store.load_market(market_index)
    before = _curve_snapshot(market)

    adjustment_cost = repeg(ctx, market_index, new_peg_candidate)

    logger.info(
        "Repegged market=%d peg %d -> %d cost=%d",
        market_index, before["peg_multiplier"], new_peg_candidate, adjustment_cost,
    )
    record = _curve_record(ctx, market_index, market, before, adjustment_cost, market.amm.last_oracle_price)
    return ctx.outbox.emit(record)


# ---------------------------------------------------------------------------
# Invariant adjustment
# ---------------------------------------------------------------------------

def update_k(ctx: ExecutionContext, market_index: int, sqrt_k: int) -> CurveRecord:
    """
    Rescale the market's curve to `sqrt_k`.

    Raises:
        InvalidUpdateK: if k shrinks more than 2.5 %, the cost exceeds what
            the fee pool can pay, or mark moves more than
            UPDATE_K_ALLOWED_PRICE_CHANGE
    """
    market = ctx.store.load_market(market_index)
    before = _curve_snapshot(market)
    price_before = amm.get_mark_price(market.amm)

    adjustment_cost = amm.adjust_k_cost(market, sqrt_k)

    if adjustment_cost > 0:
        max_cost = sub(market.amm.total_fee_minus_distributions, market.amm.total_fee_withdrawn, "update_k")
        if adjustment_cost > max_cost:
            raise InvalidUpdateK(f"Adjustment cost {adjustment_cost} exceeds available fees {max_cost}")
        market.amm.total_fee_minus_distributions = sub(
            market.amm.total_fee_minus_distributions, adjustment_cost, "update_k"
        )
        if market.amm.total_fee_minus_distributions < _fee_pool_floor(market):
            raise InvalidUpdateK("Adjustment cost exceeds the fee pool allocation")
    else:
        market.amm.total_fee_minus_distributions = u128(
            market.amm.total_fee_minus_distributions - adjustment_cost, "update_k"
        )

    price_after = amm.get_mark_price(market.amm)
    if abs(price_before - price_after) > UPDATE_K_ALLOWED_PRICE_CHANGE:
        raise InvalidUpdateK(f"Mark price moved from {price_before} to {price_after}")

    oracle_price = fetch_oracle_price(market, ctx.feeds, ctx.now).price

    logger.info(
        "Updated k market=%d sqrt_k %d -> %d cost=%d",
        market_index, before["sqrt_k"], sqrt_k, adjustment_cost,
    )
    record = _curve_record(ctx, market_index, market, before, adjustment_cost, oracle_price)
    return ctx.outbox.emit(record)


# ---------------------------------------------------------------------------
# Oracle TWAP maintenance
# ---------------------------------------------------------------------------

def update_amm_oracle_twap(ctx: ExecutionContext, market_index: int) -> int:
    """
    Replace the stored oracle TWAP with the feed's live TWAP.

    Accepted only when it narrows the gap to the mark TWAP; if the gap
    flips sign the stored TWAP is pinned to the mark TWAP instead.
    """
    market = ctx.store.load_market(market_index)
    feed = ctx.feeds.get(market.amm.oracle)
    oracle_twap = feed.twap(market.amm.funding_period, ctx.now) if feed is not None else None
    if oracle_twap is None:
        raise InvalidOracle(f"No oracle TWAP for market {market_index}")

    gap_before = market.amm.last_mark_price_twap - market.amm.last_oracle_price_twap
    gap_after = market.amm.last_mark_price_twap - oracle_twap

    if (gap_after > 0 and gap_before < 0) or (gap_after < 0 and gap_before > 0):
        market.amm.last_oracle_price_twap = market.amm.last_mark_price_twap
    elif abs(gap_after) <= abs(gap_before):
        market.amm.last_oracle_price_twap = oracle_twap
    else:
        raise OracleMarkSpreadLimit(f"Oracle TWAP {oracle_twap} widens the mark gap")

    market.amm.last_oracle_price_twap_ts = ctx.now
    return market.amm.last_oracle_price_twap


def reset_amm_oracle_twap(ctx: ExecutionContext, market_index: int) -> int:
    """Pin the stored oracle TWAP to the mark TWAP while the oracle is invalid."""
    market = ctx.store.load_market(market_index)
    oracle_price_data = fetch_oracle_price(market, ctx.feeds, ctx.now)

    if not amm.is_oracle_valid(market.amm, oracle_price_data, ctx.guard_rails):
        market.amm.last_oracle_price_twap = market.amm.last_mark_price_twap
        market.amm.last_oracle_price_twap_ts = ctx.now
        logger.info("Reset oracle TWAP for market=%d to mark TWAP", market_index)

    return market.amm.last_oracle_price_twap
