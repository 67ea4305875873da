"""
Clearing House User Operations

Collateral movements and direct market trades against the vAMM:
  - deposit_collateral / withdraw_collateral
  - open_position:  trade a quote notional in either direction
  - close_position: unwind a whole position

Every trade settles funding first, charges the taker fee and emits a
TradeRecord, then gives the market a chance to update its funding rate.
A trade may not push mark newly past the oracle divergence limit while the
oracle is trusted.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..exceptions import (
    InsufficientCollateral,
    InsufficientDeposit,
    OracleMarkSpreadLimit,
    SlippageOutsideLimit,
    TradeSizeTooSmall,
    UserMaxDeposit,
)
from . import amm
from .checked import u128
from .context import ExecutionContext
from .fees import calculate_fee_for_trade
from .funding import settle_funding_payment, update_funding_rate
from .history import DepositRecord, TradeRecord
from .margin import meets_initial_margin_requirement
from .oracle import get_oracle_status
from .orders import limit_price_satisfied
from .position import (
    calculate_updated_collateral,
    calculate_withdrawal_amounts,
    close,
    update_position_with_quote_asset_amount,
)
from .types import DepositDirection, Market, OracleStatus, PositionDirection, User

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Collateral
# ---------------------------------------------------------------------------

def deposit_collateral(
    ctx: ExecutionContext,
    user_id: str,
    amount: int,
    referrer: Optional[str] = None,
) -> DepositRecord:
    """
    Move `amount` of quote from the user into the collateral vault.

    The first deposit creates the user; `referrer` is only recorded then.

    Raises:
        InsufficientDeposit: if amount is zero
        UserMaxDeposit: if cumulative deposits would exceed State.max_deposit
    """
    store = ctx.store
    user = store.users.get(user_id)
    if user is None:
        user = User(referrer=referrer)
        store.users[user_id] = user
        logger.debug("Created user=%s referrer=%s", user_id, referrer)

    if amount <= 0:
        raise InsufficientDeposit(f"Deposit amount must be positive, got {amount}")

    collateral_before = user.collateral
    cumulative_deposits_before = user.cumulative_deposits

    user.collateral = u128(user.collateral + amount, "deposit_collateral")
    user.cumulative_deposits = u128(user.cumulative_deposits + amount, "deposit_collateral")

    max_deposit = ctx.state.max_deposit
    if max_deposit > 0 and user.cumulative_deposits > max_deposit:
        raise UserMaxDeposit(f"Cumulative deposits {user.cumulative_deposits} exceed {max_deposit}")

    settle_funding_payment(ctx, user_id)

    ctx.outbox.deposit(ctx.state.collateral_vault, user_id, amount)
    record = ctx.outbox.emit(DepositRecord(
        ts=ctx.now,
        user=user_id,
        direction=DepositDirection.DEPOSIT,
        collateral_before=collateral_before,
        cumulative_deposits_before=cumulative_deposits_before,
        amount=amount,
    ))
    logger.info("Deposit user=%s amount=%d collateral=%d", user_id, amount, user.collateral)
    return record


def withdraw_collateral(ctx: ExecutionContext, user_id: str, amount: int) -> DepositRecord:
    """
    Pay `amount` of the user's collateral back out.

    Whatever the collateral vault cannot cover is drawn from the insurance
    vault. The user must still meet the initial margin requirement afterwards.

    Raises:
        InsufficientCollateral: if amount exceeds collateral or breaks margin
    """
    store = ctx.store
    state = ctx.state
    user = store.load_user(user_id)

    settle_funding_payment(ctx, user_id)

    if amount > user.collateral:
        raise InsufficientCollateral(f"Withdraw {amount} exceeds collateral {user.collateral}")

    collateral_before = user.collateral
    cumulative_deposits_before = user.cumulative_deposits

    from_collateral, from_insurance = calculate_withdrawal_amounts(
        amount,
        ctx.vault_balance(state.collateral_vault),
        ctx.vault_balance(state.insurance_vault),
    )
    withdrawn = from_collateral + from_insurance

    # realised profits can take withdrawals past what was deposited
    user.cumulative_deposits = max(0, user.cumulative_deposits - withdrawn)
    user.collateral -= withdrawn

    if not meets_initial_margin_requirement(store, user_id):
        raise InsufficientCollateral(f"Withdraw {amount} leaves user={user_id} below initial margin")

    ctx.outbox.withdraw(state.collateral_vault, user_id, from_collateral)
    ctx.outbox.withdraw(state.insurance_vault, user_id, from_insurance)

    record = ctx.outbox.emit(DepositRecord(
        ts=ctx.now,
        user=user_id,
        direction=DepositDirection.WITHDRAW,
        collateral_before=collateral_before,
        cumulative_deposits_before=cumulative_deposits_before,
        amount=withdrawn,
    ))
    logger.info(
        "Withdraw user=%s amount=%d (collateral=%d insurance=%d)",
        user_id, withdrawn, from_collateral, from_insurance,
    )
    return record


# ---------------------------------------------------------------------------
# Trading
# ---------------------------------------------------------------------------

def _charge_trade_fee(
    ctx: ExecutionContext,
    user_id: str,
    market: Market,
    quote_asset_amount: int,
    discount_token_amount: int,
) -> Tuple[int, int, int, int]:
    """
    Returns:
        (user_fee, token_discount, referrer_reward, referee_discount)
    """
    store = ctx.store
    user = store.load_user(user_id)
    user_fee, fee_to_market, token_discount, referrer_reward, referee_discount = calculate_fee_for_trade(
        quote_asset_amount, store.fee_structure, discount_token_amount, user.referrer
    )

    market.amm.total_fee = u128(market.amm.total_fee + fee_to_market, "trade_fee")
    market.amm.total_fee_minus_distributions = u128(
        market.amm.total_fee_minus_distributions + fee_to_market, "trade_fee"
    )

    user.collateral = calculate_updated_collateral(user.collateral, -user_fee)
    user.total_fee_paid += user_fee
    user.total_token_discount += token_discount
    user.total_referee_discount += referee_discount

    if user.referrer is not None and user.referrer in store.users:
        store.users[user.referrer].total_referral_reward += referrer_reward

    return user_fee, token_discount, referrer_reward, referee_discount


def _check_divergence(
    ctx: ExecutionContext,
    market_index: int,
    before: OracleStatus,
    after: OracleStatus,
) -> None:
    if after.mark_too_divergent and not before.mark_too_divergent and before.is_valid:
        raise OracleMarkSpreadLimit(
            f"Trade pushes oracle/mark spread to {after.oracle_mark_spread_pct} in market {market_index}"
        )


def open_position(
    ctx: ExecutionContext,
    user_id: str,
    direction: PositionDirection,
    quote_asset_amount: int,
    market_index: int,
    limit_price: Optional[int] = None,
    discount_token_amount: int = 0,
) -> TradeRecord:
    """
    Trade `quote_asset_amount` of notional against the market's curve.

    A trade against an existing position reduces it first and, if the
    notional exceeds the position value, flips it.

    Raises:
        TradeSizeTooSmall: if quote_asset_amount is zero
        InsufficientCollateral: if a risk-increasing trade fails initial margin
        OracleMarkSpreadLimit: if mark is pushed past the divergence limit
        SlippageOutsideLimit: if the average price is worse than limit_price
    """
    store = ctx.store
    now = ctx.now

    if quote_asset_amount == 0:
        raise TradeSizeTooSmall("Quote asset amount must be non-zero")

    user = store.load_user(user_id)
    market = store.load_market(market_index)
    settle_funding_payment(ctx, user_id)

    position = store.load_or_create_position(user_id, market_index)

    mark_price_before = amm.get_mark_price(market.amm)
    status_before = get_oracle_status(market, ctx.feeds, ctx.guard_rails, now, mark_price_before)
    if status_before.is_valid:
        normalised_oracle_price = amm.normalise_oracle_price(
            market.amm, status_before.price_data, mark_price_before
        )
        amm.update_oracle_price_twap(market, now, normalised_oracle_price)

    potentially_risk_increasing, _, base_asset_amount, quote_asset_amount, _ = (
        update_position_with_quote_asset_amount(
            market, position, user, quote_asset_amount, direction, mark_price_before, now
        )
    )

    mark_price_after = amm.get_mark_price(market.amm)
    status_after = get_oracle_status(market, ctx.feeds, ctx.guard_rails, now, mark_price_after)

    if potentially_risk_increasing and not meets_initial_margin_requirement(store, user_id):
        raise InsufficientCollateral(f"Trade leaves user={user_id} below initial margin")

    user_fee, token_discount, referrer_reward, referee_discount = _charge_trade_fee(
        ctx, user_id, market, quote_asset_amount, discount_token_amount
    )

    _check_divergence(ctx, market_index, status_before, status_after)

    record = ctx.outbox.emit(TradeRecord(
        ts=now,
        user=user_id,
        direction=direction,
        base_asset_amount=base_asset_amount,
        quote_asset_amount=quote_asset_amount,
        mark_price_before=mark_price_before,
        mark_price_after=mark_price_after,
        fee=user_fee,
        referrer_reward=referrer_reward,
        referee_discount=referee_discount,
        token_discount=token_discount,
        market_index=market_index,
        oracle_price=status_after.price_data.price,
    ))

    if limit_price is not None and not limit_price_satisfied(
        limit_price, quote_asset_amount, base_asset_amount, direction
    ):
        raise SlippageOutsideLimit(f"Average price outside limit {limit_price}")

    logger.info(
        "Opened %s user=%s market=%d base=%d quote=%d fee=%d",
        direction.value, user_id, market_index, base_asset_amount, quote_asset_amount, user_fee,
    )

    update_funding_rate(ctx, market_index, mark_price_before)
    return record


def close_position(
    ctx: ExecutionContext,
    user_id: str,
    market_index: int,
    discount_token_amount: int = 0,
) -> TradeRecord:
    """
    Unwind the user's whole position in `market_index`.

    Raises:
        TradeSizeTooSmall: if there is no open position
        OracleMarkSpreadLimit: if closing pushes mark past the divergence limit
    """
    store = ctx.store
    now = ctx.now

    user = store.load_user(user_id)
    market = store.load_market(market_index)
    settle_funding_payment(ctx, user_id)

    position = store.get_position(user_id, market_index)
    if position is None or position.base_asset_amount == 0:
        raise TradeSizeTooSmall(f"No open position for user={user_id} in market {market_index}")

    mark_price_before = amm.get_mark_price(market.amm)
    status_before = get_oracle_status(market, ctx.feeds, ctx.guard_rails, now, mark_price_before)

    direction = amm.direction_to_close_position(position.base_asset_amount)
    quote_asset_amount, base_asset_amount, _ = close(
        market, position, user, now, None, mark_price_before
    )

    user_fee, token_discount, referrer_reward, referee_discount = _charge_trade_fee(
        ctx, user_id, market, quote_asset_amount, discount_token_amount
    )

    mark_price_after = amm.get_mark_price(market.amm)
    status_after = get_oracle_status(market, ctx.feeds, ctx.guard_rails, now, mark_price_after)

    if status_before.is_valid:
        normalised_oracle_price = amm.normalise_oracle_price(
            market.amm, status_before.price_data, mark_price_before
        )
        amm.update_oracle_price_twap(market, now, normalised_oracle_price)

    _check_divergence(ctx, market_index, status_before, status_after)

    record = ctx.outbox.emit(TradeRecord(
        ts=now,
        user=user_id,
        direction=direction,
        base_asset_amount=abs(base_asset_amount),
        quote_asset_amount=quote_asset_amount,
        mark_price_before=mark_price_before,
        mark_price_after=mark_price_after,
        fee=user_fee,
        referrer_reward=referrer_reward,
        referee_discount=referee_discount,
        token_discount=token_discount,
        market_index=market_index,
        oracle_price=status_after.price_data.price,
    ))
    logger.info(
        "Closed position user=%s market=%d base=%d quote=%d fee=%d",
        user_id, market_index, base_asset_amount, quote_asset_amount, user_fee,
    )

    update_funding_rate(ctx, market_index, mark_price_before)
    return record
