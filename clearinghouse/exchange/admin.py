"""
Clearing House Admin Operations

Market setup, admin price control, fee withdrawals and the protocol setters.
Authorisation is enforced by the state manager before any of these run.
"""

from __future__ import annotations

import logging
from dataclasses import fields

from ..constants import (
    SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_DENOMINATOR,
    SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_NUMERATOR,
)
from ..exceptions import (
    AdminControlsPricesDisabled,
    AdminWithdrawTooLarge,
    InvalidInitialPeg,
    MarketIndexAlreadyInitialized,
)
from . import amm
from .checked import sub, u128
from .context import ExecutionContext
from .margin import validate_margin
from .oracle import DEFAULT_CONFIDENCE
from .types import Amm, Market

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Markets
# ---------------------------------------------------------------------------

def initialize_market(
    ctx: ExecutionContext,
    market_index: int,
    market_name: str,
    base_asset_reserve: int,
    quote_asset_reserve: int,
    funding_period: int,
    peg_multiplier: int,
    margin_ratio_initial: int,
    margin_ratio_partial: int,
    margin_ratio_maintenance: int,
) -> Market:
    """
    Create a market whose curve starts balanced (base == quote reserves), so
    the opening mark price is exactly the peg.

    Raises:
        MarketIndexAlreadyInitialized: if the index is taken
        InvalidInitialPeg: if the reserves differ or are not positive
        InvalidMarginRatio: see validate_margin
    """
    store = ctx.store
    now = ctx.now

    if market_index in store.markets:
        raise MarketIndexAlreadyInitialized(f"Market {market_index} already initialized")
    if base_asset_reserve != quote_asset_reserve:
        raise InvalidInitialPeg(f"Base reserve {base_asset_reserve} != quote reserve {quote_asset_reserve}")
    if base_asset_reserve <= 0 or peg_multiplier <= 0:
        raise InvalidInitialPeg("Reserves and peg multiplier must be positive")

    u128(base_asset_reserve * quote_asset_reserve, "initialize_market")
    validate_margin(margin_ratio_initial, margin_ratio_partial, margin_ratio_maintenance)

    init_mark_price = amm.calculate_price(quote_asset_reserve, base_asset_reserve, peg_multiplier)

    market = Market(
        market_name=market_name,
        amm=Amm(
            oracle=ctx.state.oracle,
            base_asset_reserve=base_asset_reserve,
            quote_asset_reserve=quote_asset_reserve,
            sqrt_k=base_asset_reserve,
            peg_multiplier=peg_multiplier,
            funding_period=funding_period,
            last_funding_rate_ts=now,
            last_mark_price_twap=init_mark_price,
            last_mark_price_twap_ts=now,
            last_oracle_price_twap_ts=now,
        ),
        margin_ratio_initial=margin_ratio_initial,
        margin_ratio_partial=margin_ratio_partial,
        margin_ratio_maintenance=margin_ratio_maintenance,
    )
    store.markets[market_index] = market
    ctx.state.markets_length += 1

    logger.info(
        "Initialized market=%d %s peg=%d reserves=%d oracle=%s",
        market_index, market_name, peg_multiplier, base_asset_reserve, market.amm.oracle,
    )
    return market


def move_amm_price(
    ctx: ExecutionContext,
    market_index: int,
    base_asset_reserve: int,
    quote_asset_reserve: int,
) -> int:
    """Set the reserves directly. Returns the new mark price."""
    if not ctx.state.admin_controls_prices:
        raise AdminControlsPricesDisabled()
    market = ctx.store.load_market(market_index)
    amm.move_price(market, base_asset_reserve, quote_asset_reserve)
    mark_price = amm.get_mark_price(market.amm)
    logger.info("Moved AMM price market=%d mark=%d", market_index, mark_price)
    return mark_price


def update_margin_ratio(
    ctx: ExecutionContext,
    market_index: int,
    margin_ratio_initial: int,
    margin_ratio_partial: int,
    margin_ratio_maintenance: int,
) -> Market:
    validate_margin(margin_ratio_initial, margin_ratio_partial, margin_ratio_maintenance)
    market = ctx.store.load_market(market_index)
    market.margin_ratio_initial = margin_ratio_initial
    market.margin_ratio_partial = margin_ratio_partial
    market.margin_ratio_maintenance = margin_ratio_maintenance
    logger.info(
        "Updated margin ratios market=%d initial=%d partial=%d maintenance=%d",
        market_index, margin_ratio_initial, margin_ratio_partial, margin_ratio_maintenance,
    )
    return market


def update_market_amm(ctx: ExecutionContext, market_index: int, **changes) -> Market:
    """Overwrite AMM fields (oracle, minimum trade sizes) on one market."""
    market = ctx.store.load_market(market_index)
    for name, value in changes.items():
        if not hasattr(market.amm, name):
            raise ValueError(f"Unknown AMM field: {name}")
        setattr(market.amm, name, value)
    logger.info("Updated market=%d %s", market_index, ", ".join(f"{k}={v}" for k, v in changes.items()))
    return market


def feed_price(ctx: ExecutionContext, market_index: int, price: int, confidence: int = DEFAULT_CONFIDENCE) -> int:
    """
    Push `price` to the market's oracle feed and pin the AMM's last oracle
    price and oracle TWAP to it.

    The feed registry lives outside the staged store, so the push is the
    last step.
    """
    if price <= 0:
        raise ValueError(f"Oracle price must be positive, got {price}")
    market = ctx.store.load_market(market_index)
    market.amm.last_oracle_price = price
    market.amm.last_oracle_price_twap = price
    market.amm.last_oracle_price_twap_ts = ctx.now

    ctx.feeds.feed(market.amm.oracle).set_price(price, ctx.now, confidence)
    logger.debug("Fed price market=%d oracle=%s price=%d", market_index, market.amm.oracle, price)
    return price


# ---------------------------------------------------------------------------
# Fees and vaults
# ---------------------------------------------------------------------------

def withdraw_fees(ctx: ExecutionContext, market_index: int, amount: int) -> int:
    """
    Pay `amount` of the market's fees to the admin.

    Raises:
        AdminWithdrawTooLarge: if the withdrawn total would exceed the
            clearing house's share of lifetime fees
    """
    market = ctx.store.load_market(market_index)
    max_withdraw = sub(
        market.amm.total_fee
        * SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_NUMERATOR
        // SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_DENOMINATOR,
        market.amm.total_fee_withdrawn,
        "withdraw_fees",
    )
    if amount > max_withdraw:
        raise AdminWithdrawTooLarge(f"Requested {amount}, withdrawable {max_withdraw}")

    market.amm.total_fee_withdrawn = u128(market.amm.total_fee_withdrawn + amount, "withdraw_fees")
    ctx.outbox.withdraw(ctx.state.collateral_vault, ctx.sender, amount)

    logger.info("Withdrew fees market=%d amount=%d to %s", market_index, amount, ctx.sender)
    return market.amm.total_fee_withdrawn


def withdraw_from_insurance_vault_to_market(ctx: ExecutionContext, market_index: int, amount: int) -> int:
    """Move insurance funds into the collateral vault and credit the market's fee pool."""
    market = ctx.store.load_market(market_index)
    market.amm.total_fee_minus_distributions = u128(
        market.amm.total_fee_minus_distributions + amount, "withdraw_from_insurance_vault_to_market"
    )
    ctx.outbox.transfer(ctx.state.insurance_vault, ctx.state.collateral_vault, amount)

    logger.info("Insurance top-up market=%d amount=%d", market_index, amount)
    return market.amm.total_fee_minus_distributions


# ---------------------------------------------------------------------------
# Protocol records
# ---------------------------------------------------------------------------

def update_state(ctx: ExecutionContext, **changes) -> None:
    """Overwrite fields of the global State record."""
    state = ctx.state
    known = {f.name for f in fields(state)}
    for name, value in changes.items():
        if name not in known:
            raise ValueError(f"Unknown state field: {name}")
        setattr(state, name, value)
    logger.info("Updated state %s", ", ".join(f"{k}={v}" for k, v in changes.items()))


def replace_record(ctx: ExecutionContext, attr: str, record) -> None:
    """Swap one of the store's protocol records (fee structure, guard rails, order state) wholesale."""
    if not hasattr(ctx.store, attr):
        raise ValueError(f"Unknown store record: {attr}")
    setattr(ctx.store, attr, record)
    logger.info("Replaced %s: %s", attr, record)
