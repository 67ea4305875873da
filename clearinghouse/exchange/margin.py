"""
Clearing House Margin Engine

Cross-market margin checks for a single user:
  - Initial requirement gates risk-increasing trades and withdrawals
  - Partial requirement gates post-only fills and triggers partial liquidation
  - Maintenance requirement triggers full liquidation

Requirements are sum(position_value * market_ratio) // MARGIN_PRECISION over
every open position, compared with collateral plus unrealised PnL (clamped
at zero).
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional, Tuple

from ..constants import MARGIN_PRECISION, MAXIMUM_MARGIN_RATIO, MINIMUM_MARGIN_RATIO
from ..exceptions import InvalidMarginRatio
from . import amm
from .checked import U128_MAX, u128
from .context import ExecutionContext
from .oracle import get_oracle_status
from .position import calculate_slippage, calculate_updated_collateral
from .store import Store
from .types import LiquidationStatus, LiquidationType, Market, MarketStatus, Position

logger = logging.getLogger(__name__)


def _open_positions(store: Store, user_id: str) -> Iterator[Tuple[int, Market, Position]]:
    for market_index in store.market_indexes():
        position = store.get_position(user_id, market_index)
        if position is None or position.base_asset_amount == 0:
            continue
        yield market_index, store.markets[market_index], position


def _meets_requirement(store: Store, user_id: str, ratio_attr: str) -> bool:
    user = store.load_user(user_id)
    requirement = 0
    unrealized_pnl = 0
    for _, market, position in _open_positions(store, user_id):
        value, pnl = amm.calculate_base_asset_value_and_pnl(
            position.base_asset_amount, position.quote_asset_amount, market.amm
        )
        requirement += value * getattr(market, ratio_attr)
        unrealized_pnl += pnl
    requirement = u128(requirement, "margin_requirement") // MARGIN_PRECISION
    total_collateral = calculate_updated_collateral(user.collateral, unrealized_pnl)
    return total_collateral >= requirement


def meets_initial_margin_requirement(store: Store, user_id: str) -> bool:
    return _meets_requirement(store, user_id, "margin_ratio_initial")


def meets_partial_margin_requirement(store: Store, user_id: str) -> bool:
    return _meets_requirement(store, user_id, "margin_ratio_partial")


def calculate_free_collateral(
    store: Store,
    user_id: str,
    market_to_close: Optional[int] = None,
) -> Tuple[int, int]:
    """
    Collateral not committed to initial margin.

    The position in `market_to_close` is left out of the requirement and its
    value reported separately, since the caller is about to close it.

    Returns:
        (free_collateral, closed_position_base_asset_value)
    """
    user = store.load_user(user_id)
    closed_position_base_asset_value = 0
    initial_margin_requirement = 0
    unrealized_pnl = 0

    for market_index, market, position in _open_positions(store, user_id):
        value, pnl = amm.calculate_base_asset_value_and_pnl(
            position.base_asset_amount, position.quote_asset_amount, market.amm
        )
        if market_to_close is not None and market_to_close == market_index:
            closed_position_base_asset_value = value
        else:
            initial_margin_requirement += value * market.margin_ratio_initial
        unrealized_pnl += pnl

    initial_margin_requirement = u128(initial_margin_requirement, "free_collateral") // MARGIN_PRECISION
    total_collateral = calculate_updated_collateral(user.collateral, unrealized_pnl)

    free_collateral = max(0, total_collateral - initial_margin_requirement)
    return free_collateral, closed_position_base_asset_value


def calculate_liquidation_status(ctx: ExecutionContext, user_id: str) -> LiquidationStatus:
    """
    Classify a user as NONE, PARTIAL or FULL liquidation.

    When the oracle is valid and mark has drifted beyond a third of the
    divergence guard rail, each position is also valued at the oracle price
    (plus the curve's exit slippage) and the more favourable PnL is used.
    Market statuses come back sorted by the requirement that applies.
    """
    store = ctx.store
    guard_rails = ctx.guard_rails
    user = store.load_user(user_id)

    partial_margin_requirement = 0
    maintenance_margin_requirement = 0
    base_asset_value = 0
    unrealized_pnl = 0
    adjusted_unrealized_pnl = 0
    market_statuses = []

    for market_index, market, position in _open_positions(store, user_id):
        amm_value, amm_pnl = amm.calculate_base_asset_value_and_pnl(
            position.base_asset_amount, position.quote_asset_amount, market.amm
        )
        base_asset_value += amm_value
        unrealized_pnl += amm_pnl

        mark_price_before = amm.get_mark_price(market.amm)
        oracle_status = get_oracle_status(market, ctx.feeds, guard_rails, ctx.now, mark_price_before)

        value, pnl = amm_value, amm_pnl
        close_position_slippage = None
        if oracle_status.is_valid and amm.use_oracle_price_for_margin_calculation(
            oracle_status.oracle_mark_spread_pct, guard_rails
        ):
            exit_slippage = calculate_slippage(amm_value, abs(position.base_asset_amount), mark_price_before)
            close_position_slippage = exit_slippage
            oracle_exit_price = oracle_status.price_data.price + exit_slippage

            oracle_value, oracle_pnl = amm.calculate_base_asset_value_and_pnl_with_oracle_price(
                position.base_asset_amount, position.quote_asset_amount, oracle_exit_price
            )
            if oracle_pnl > amm_pnl:
                value, pnl = oracle_value, oracle_pnl

        adjusted_unrealized_pnl += pnl
        market_partial = value * market.margin_ratio_partial
        market_maintenance = value * market.margin_ratio_maintenance
        partial_margin_requirement += market_partial
        maintenance_margin_requirement += market_maintenance

        market_statuses.append(MarketStatus(
            market_index=market_index,
            partial_margin_requirement=market_partial // MARGIN_PRECISION,
            maintenance_margin_requirement=market_maintenance // MARGIN_PRECISION,
            base_asset_value=amm_value,
            mark_price_before=mark_price_before,
            oracle_status=oracle_status,
            close_position_slippage=close_position_slippage,
        ))

    partial_margin_requirement = u128(partial_margin_requirement, "liquidation_status") // MARGIN_PRECISION
    maintenance_margin_requirement = u128(maintenance_margin_requirement, "liquidation_status") // MARGIN_PRECISION

    total_collateral = calculate_updated_collateral(user.collateral, unrealized_pnl)
    adjusted_total_collateral = calculate_updated_collateral(user.collateral, adjusted_unrealized_pnl)

    if adjusted_total_collateral < maintenance_margin_requirement:
        liquidation_type = LiquidationType.FULL
        margin_requirement = maintenance_margin_requirement
        market_statuses.sort(key=lambda s: s.maintenance_margin_requirement, reverse=True)
    elif adjusted_total_collateral < partial_margin_requirement:
        liquidation_type = LiquidationType.PARTIAL
        margin_requirement = partial_margin_requirement
        market_statuses.sort(key=lambda s: s.partial_margin_requirement, reverse=True)
    else:
        liquidation_type = LiquidationType.NONE
        margin_requirement = partial_margin_requirement

    if base_asset_value == 0:
        margin_ratio = U128_MAX
    else:
        margin_ratio = total_collateral * MARGIN_PRECISION // base_asset_value

    return LiquidationStatus(
        liquidation_type=liquidation_type,
        margin_requirement=margin_requirement,
        total_collateral=total_collateral,
        unrealized_pnl=unrealized_pnl,
        adjusted_total_collateral=adjusted_total_collateral,
        base_asset_value=base_asset_value,
        margin_ratio=margin_ratio,
        market_statuses=market_statuses,
    )


def validate_margin(margin_ratio_initial: int, margin_ratio_partial: int, margin_ratio_maintenance: int) -> None:
    """
    Raises:
        InvalidMarginRatio: unless every ratio lies within
            [MINIMUM_MARGIN_RATIO, MAXIMUM_MARGIN_RATIO] and
            initial >= partial >= maintenance
    """
    for ratio in (margin_ratio_initial, margin_ratio_partial, margin_ratio_maintenance):
        if not MINIMUM_MARGIN_RATIO <= ratio <= MAXIMUM_MARGIN_RATIO:
            raise InvalidMarginRatio(f"Margin ratio {ratio} out of range")
    if margin_ratio_initial < margin_ratio_partial:
        raise InvalidMarginRatio("Initial margin ratio below partial")
    if margin_ratio_partial < margin_ratio_maintenance:
        raise InvalidMarginRatio("Partial margin ratio below maintenance")
