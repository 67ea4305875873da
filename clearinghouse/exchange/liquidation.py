"""
Clearing House Liquidation Engine

Executes the liquidation state machine computed by the margin engine:

  FULL (or dust, adjusted collateral <= 1 quote unit)
      Markets in descending maintenance requirement. Each position is closed
      unless the exit slippage exceeds MAX_LIQUIDATION_SLIPPAGE, in which case
      only enough is reduced to stay within it. Stops once the remaining
      requirement is covered.

  PARTIAL
      Markets in descending partial requirement. Each position is reduced by
      partial_liquidation_close_percentage of its value, bounded by a quarter
      of the full-close slippage.

The liquidation fee is a percentage of total collateral, taken from the user
and split between the liquidator and the insurance vault.

Markets are skipped when their oracle is invalid and mark has run away from
its own TWAP, or when closing would push mark further past the oracle
divergence limit.
"""

from __future__ import annotations

import logging
from typing import Tuple

from ..constants import MAX_LIQUIDATION_SLIPPAGE, MAX_MARK_TWAP_DIVERGENCE, QUOTE_PRECISION
from ..exceptions import NoPositionsLiquidatable, OracleMarkSpreadLimit, SufficientCollateral
from . import amm
from .checked import div, mul_fraction, sub
from .context import ExecutionContext
from .funding import settle_funding_payment
from .history import LiquidationRecord, TradeRecord
from .margin import calculate_liquidation_status
from .position import (
    calculate_slippage,
    calculate_slippage_pct,
    calculate_withdrawal_amounts,
    close,
    reduce,
)
from .types import LiquidationType, MarketStatus, PositionDirection, User

logger = logging.getLogger(__name__)


def _mark_twap_too_divergent(ctx: ExecutionContext, status: MarketStatus) -> bool:
    if status.oracle_status.is_valid:
        return False
    market = ctx.store.markets[status.market_index]
    divergence = amm.calculate_mark_twap_spread_pct(market.amm, status.mark_price_before)
    return abs(divergence) >= MAX_MARK_TWAP_DIVERGENCE


def _divergence_after(status: MarketStatus, slippage_pct: int, slippage_too_large: bool) -> int:
    """Estimated oracle/mark spread once the liquidation trade has moved mark."""
    spread_pct = status.oracle_status.oracle_mark_spread_pct
    if not slippage_too_large:
        return spread_pct + slippage_pct
    # the trade is capped at the slippage bound; approximate its impact
    if slippage_pct > 0:
        return spread_pct + MAX_LIQUIDATION_SLIPPAGE * 2
    return spread_pct - MAX_LIQUIDATION_SLIPPAGE * 2


def _worsens_divergence(ctx: ExecutionContext, status: MarketStatus, divergence_after: int) -> bool:
    return (
        status.oracle_status.is_valid
        and amm.is_oracle_mark_too_divergent(divergence_after, ctx.guard_rails)
        and abs(status.oracle_status.oracle_mark_spread_pct) < abs(divergence_after)
    )


def _record_liquidation_trade(
    ctx: ExecutionContext,
    user_id: str,
    status: MarketStatus,
    direction: PositionDirection,
    base_asset_amount: int,
    quote_asset_amount: int,
) -> None:
    market = ctx.store.markets[status.market_index]
    ctx.outbox.emit(TradeRecord(
        ts=ctx.now,
        user=user_id,
        direction=direction,
        base_asset_amount=abs(base_asset_amount),
        quote_asset_amount=quote_asset_amount,
        mark_price_before=status.mark_price_before,
        mark_price_after=amm.get_mark_price(market.amm),
        liquidation=True,
        market_index=status.market_index,
        oracle_price=status.oracle_status.price_data.price,
    ))


def _close_position_slippage(status: MarketStatus, base_asset_amount: int) -> int:
    if status.close_position_slippage is not None:
        return status.close_position_slippage
    return calculate_slippage(status.base_asset_value, abs(base_asset_amount), status.mark_price_before)


def liquidate(ctx: ExecutionContext, liquidator: str, user_id: str) -> LiquidationRecord:
    """
    Liquidate `user_id` on behalf of `liquidator`.

    Raises:
        SufficientCollateral: if the user meets the partial requirement
        OracleMarkSpreadLimit: if a partial reduce would push mark past the
            oracle divergence limit
        NoPositionsLiquidatable: if nothing could be closed
    """
    state = ctx.state
    now = ctx.now

    settle_funding_payment(ctx, user_id)
    user = ctx.store.load_user(user_id)

    status = calculate_liquidation_status(ctx, user_id)
    if status.liquidation_type == LiquidationType.NONE:
        raise SufficientCollateral(
            f"total_collateral={status.total_collateral} "
            f"adjusted_total_collateral={status.adjusted_total_collateral} "
            f"margin_requirement={status.margin_requirement}"
        )

    collateral = user.collateral
    is_dust_position = status.adjusted_total_collateral <= QUOTE_PRECISION
    is_full_liquidation = status.liquidation_type == LiquidationType.FULL or is_dust_position
    margin_requirement = status.margin_requirement

    base_asset_value_closed = 0
    liquidation_fee = 0

    if is_full_liquidation:
        maximum_liquidation_fee = mul_fraction(status.total_collateral, state.full_liquidation_penalty_percentage)

        for market_status in status.market_statuses:
            if market_status.base_asset_value == 0 or _mark_twap_too_divergent(ctx, market_status):
                continue

            position = ctx.store.get_position(user_id, market_status.market_index)
            if position is None or position.base_asset_amount == 0:
                continue
            market = ctx.store.markets[market_status.market_index]
            mark_price_before = market_status.mark_price_before

            slippage = _close_position_slippage(market_status, position.base_asset_amount)
            slippage_pct = calculate_slippage_pct(slippage, mark_price_before)
            slippage_too_large = abs(slippage_pct) > MAX_LIQUIDATION_SLIPPAGE

            divergence_after = _divergence_after(market_status, slippage_pct, slippage_too_large)
            if _worsens_divergence(ctx, market_status, divergence_after):
                logger.info(
                    "Skipping market=%d for user=%s: divergence after close %d",
                    market_status.market_index, user_id, divergence_after,
                )
                continue

            direction = amm.direction_to_close_position(position.base_asset_amount)
            if slippage_too_large:
                quote_asset_amount = div(
                    market_status.base_asset_value * MAX_LIQUIDATION_SLIPPAGE, abs(slippage_pct), "liquidate"
                )
                base_asset_amount = reduce(
                    market, position, user, direction, quote_asset_amount, now, mark_price_before
                )
            else:
                quote_asset_amount, base_asset_amount, _ = close(
                    market, position, user, now, None, mark_price_before
                )

            base_asset_value_closed += quote_asset_amount
            _record_liquidation_trade(ctx, user_id, market_status, direction, base_asset_amount, quote_asset_amount)

            margin_requirement = sub(
                margin_requirement,
                market_status.maintenance_margin_requirement * quote_asset_amount // market_status.base_asset_value,
                "liquidate",
            )
            liquidation_fee += maximum_liquidation_fee * quote_asset_amount // status.base_asset_value

            adjusted_total_collateral_after_fee = sub(status.adjusted_total_collateral, liquidation_fee, "liquidate")
            if not is_dust_position and margin_requirement < adjusted_total_collateral_after_fee:
                break
    else:
        maximum_liquidation_fee = mul_fraction(status.total_collateral, state.partial_liquidation_penalty_percentage)
        maximum_base_asset_value_closed = mul_fraction(
            status.base_asset_value, state.partial_liquidation_close_percentage
        )

        for market_status in status.market_statuses:
            if market_status.base_asset_value == 0 or _mark_twap_too_divergent(ctx, market_status):
                continue

            position = ctx.store.get_position(user_id, market_status.market_index)
            if position is None or position.base_asset_amount == 0:
                continue
            market = ctx.store.markets[market_status.market_index]
            mark_price_before = market_status.mark_price_before

            quote_asset_amount = mul_fraction(
                market_status.base_asset_value, state.partial_liquidation_close_percentage
            )

            slippage = div(_close_position_slippage(market_status, position.base_asset_amount), 4, "liquidate")
            slippage_pct = calculate_slippage_pct(slippage, mark_price_before)
            slippage_too_large = abs(slippage_pct) > MAX_LIQUIDATION_SLIPPAGE

            divergence_after = _divergence_after(market_status, slippage_pct, slippage_too_large)
            if _worsens_divergence(ctx, market_status, divergence_after):
                raise OracleMarkSpreadLimit(
                    f"Oracle/mark spread after reduce {divergence_after} in market {market_status.market_index}"
                )

            if slippage_too_large:
                quote_asset_amount = div(quote_asset_amount * MAX_LIQUIDATION_SLIPPAGE, abs(slippage_pct), "liquidate")

            base_asset_value_closed += quote_asset_amount

            direction = amm.direction_to_close_position(position.base_asset_amount)
            base_asset_amount = reduce(
                market, position, user, direction, quote_asset_amount, now, mark_price_before
            )
            _record_liquidation_trade(ctx, user_id, market_status, direction, base_asset_amount, quote_asset_amount)

            margin_requirement = sub(
                margin_requirement,
                market_status.partial_margin_requirement * quote_asset_amount // market_status.base_asset_value,
                "liquidate",
            )
            liquidation_fee += div(
                maximum_liquidation_fee * quote_asset_amount, maximum_base_asset_value_closed, "liquidate"
            )

            adjusted_total_collateral_after_fee = sub(status.adjusted_total_collateral, liquidation_fee, "liquidate")
            if margin_requirement < adjusted_total_collateral_after_fee:
                break

    if base_asset_value_closed == 0:
        raise NoPositionsLiquidatable(f"No positions liquidatable for user={user_id}")

    fee_to_liquidator, fee_to_insurance_fund = _distribute_liquidation_fee(
        ctx, liquidator, user_id, liquidation_fee, is_full_liquidation
    )

    record = LiquidationRecord(
        ts=now,
        user=user_id,
        partial=not is_full_liquidation,
        base_asset_value=status.base_asset_value,
        base_asset_value_closed=base_asset_value_closed,
        liquidation_fee=liquidation_fee,
        fee_to_liquidator=fee_to_liquidator,
        fee_to_insurance_fund=fee_to_insurance_fund,
        liquidator=liquidator,
        total_collateral=status.total_collateral,
        collateral=collateral,
        unrealized_pnl=status.unrealized_pnl,
        margin_ratio=status.margin_ratio,
    )
    logger.warning(
        "Liquidated user=%s (%s) by %s: closed=%d fee=%d margin_ratio=%d",
        user_id, "partial" if record.partial else "full", liquidator,
        base_asset_value_closed, liquidation_fee, status.margin_ratio,
    )
    return ctx.outbox.emit(record)


def _distribute_liquidation_fee(
    ctx: ExecutionContext,
    liquidator: str,
    user_id: str,
    liquidation_fee: int,
    is_full_liquidation: bool,
) -> Tuple[int, int]:
    """
    Take the fee from the user and split what the vaults can cover.

    Returns:
        (fee_to_liquidator, fee_to_insurance_fund)
    """
    state = ctx.state
    withdrawal_amount, _ = calculate_withdrawal_amounts(
        liquidation_fee,
        ctx.vault_balance(state.collateral_vault),
        ctx.vault_balance(state.insurance_vault),
    )

    user = ctx.store.load_user(user_id)
    user.collateral = sub(user.collateral, liquidation_fee, "liquidation_fee")

    if is_full_liquidation:
        denominator = state.full_liquidation_liquidator_share_denominator
    else:
        denominator = state.partial_liquidation_liquidator_share_denominator
    fee_to_liquidator = div(withdrawal_amount, denominator, "liquidation_fee")
    fee_to_insurance_fund = withdrawal_amount - fee_to_liquidator

    if fee_to_liquidator > 0:
        liquidator_account = _liquidator_account(ctx, liquidator)
        liquidator_account.collateral += fee_to_liquidator

    ctx.outbox.transfer(state.collateral_vault, state.insurance_vault, fee_to_insurance_fund)
    return fee_to_liquidator, fee_to_insurance_fund


def _liquidator_account(ctx: ExecutionContext, liquidator: str) -> User:
    account = ctx.store.users.get(liquidator)
    if account is None:
        account = User()
        ctx.store.users[liquidator] = account
    return account
