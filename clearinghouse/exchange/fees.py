"""
Clearing House Fee & Discount Engine

Pure fee computation for market trades and resting-order fills:
  - Flat taker fee on notional (FeeStructure.fee)
  - Four discount-token tiers, matched from the highest minimum balance down
  - Referral: a reward for the referrer and a discount for the referee,
    both fractions of the undiscounted fee
  - Maker fills: the fee is the quote surplus vs. the limit price
  - Filler reward: lesser of a size share and a time-weighted floor
"""

from __future__ import annotations

from typing import Optional, Tuple

from .checked import mul_fraction, sqrt, sub
from .types import FeeStructure, OrderDiscountTier, OrderState


def _tiers(fee_structure: FeeStructure):
    return (
        (OrderDiscountTier.FIRST, fee_structure.first_tier_minimum_balance, fee_structure.first_tier_discount),
        (OrderDiscountTier.SECOND, fee_structure.second_tier_minimum_balance, fee_structure.second_tier_discount),
        (OrderDiscountTier.THIRD, fee_structure.third_tier_minimum_balance, fee_structure.third_tier_discount),
        (OrderDiscountTier.FOURTH, fee_structure.fourth_tier_minimum_balance, fee_structure.fourth_tier_discount),
    )


def calculate_order_fee_tier(fee_structure: FeeStructure, discount_token_amount: int) -> OrderDiscountTier:
    """Highest tier whose minimum balance `discount_token_amount` reaches."""
    if discount_token_amount == 0:
        return OrderDiscountTier.NONE
    for tier, minimum_balance, _ in _tiers(fee_structure):
        if discount_token_amount >= minimum_balance:
            return tier
    return OrderDiscountTier.NONE


def calculate_token_discount(fee: int, fee_structure: FeeStructure, discount_token_amount: int) -> int:
    tier = calculate_order_fee_tier(fee_structure, discount_token_amount)
    return calculate_token_discount_for_tier(fee, fee_structure, tier)


def calculate_token_discount_for_tier(fee: int, fee_structure: FeeStructure, tier: OrderDiscountTier) -> int:
    for candidate, _, discount in _tiers(fee_structure):
        if candidate == tier:
            return mul_fraction(fee, discount, "token_discount")
    return 0


def calculate_referral_reward_and_referee_discount(
    fee: int,
    fee_structure: FeeStructure,
    referrer: Optional[str],
) -> Tuple[int, int]:
    if referrer is None:
        return 0, 0
    return (
        mul_fraction(fee, fee_structure.referrer_reward, "referrer_reward"),
        mul_fraction(fee, fee_structure.referee_discount, "referee_discount"),
    )


def calculate_fee_for_trade(
    quote_asset_amount: int,
    fee_structure: FeeStructure,
    discount_token_amount: int,
    referrer: Optional[str],
) -> Tuple[int, int, int, int, int]:
    """
    Fee for a market trade.

    Returns:
        (user_fee, fee_to_market, token_discount, referrer_reward, referee_discount)
    """
    fee = mul_fraction(quote_asset_amount, fee_structure.fee, "calculate_fee_for_trade")
    token_discount = calculate_token_discount(fee, fee_structure, discount_token_amount)
    referrer_reward, referee_discount = calculate_referral_reward_and_referee_discount(
        fee, fee_structure, referrer
    )

    user_fee = sub(sub(fee, token_discount, "user_fee"), referee_discount, "user_fee")
    fee_to_market = sub(user_fee, referrer_reward, "fee_to_market")

    return user_fee, fee_to_market, token_discount, referrer_reward, referee_discount


def calculate_filler_reward(fee: int, order_ts: int, now: int, order_state: OrderState) -> int:
    """
    Reward paid to whoever fills an order.

    Older orders earn more: the time floor grows with the fourth root of the
    seconds since placement, so keepers prioritise stale orders over merely
    large ones.
    """
    size_filler_reward = mul_fraction(fee, order_state.reward, "filler_reward")

    time_since_order = max(1, now - order_ts)
    # isqrt(isqrt(1e8)) == 100
    time_filler_reward = sqrt(sqrt(time_since_order * 100_000_000)) * order_state.time_based_reward_lower_bound // 100

    return min(size_filler_reward, time_filler_reward)


def calculate_fee_for_order(
    quote_asset_amount: int,
    fee_structure: FeeStructure,
    order_state: OrderState,
    discount_tier: OrderDiscountTier,
    order_ts: int,
    now: int,
    referrer: Optional[str],
    filler_is_user: bool,
    quote_asset_amount_surplus: int,
) -> Tuple[int, int, int, int, int, int]:
    """
    Fee for an order fill.

    A non-zero `quote_asset_amount_surplus` marks a maker fill: the surplus
    is the whole fee and the user pays nothing on top.

    Returns:
        (user_fee, fee_to_market, token_discount, filler_reward,
         referrer_reward, referee_discount)
    """
    if quote_asset_amount_surplus != 0:
        fee = quote_asset_amount_surplus
        filler_reward = 0 if filler_is_user else calculate_filler_reward(fee, order_ts, now, order_state)
        fee_to_market = sub(fee, filler_reward, "fee_to_market")
        return 0, fee_to_market, 0, filler_reward, 0, 0

    fee = mul_fraction(quote_asset_amount, fee_structure.fee, "calculate_fee_for_order")
    token_discount = calculate_token_discount_for_tier(fee, fee_structure, discount_tier)
    referrer_reward, referee_discount = calculate_referral_reward_and_referee_discount(
        fee, fee_structure, referrer
    )

    user_fee = sub(sub(fee, referee_discount, "user_fee"), token_discount, "user_fee")
    filler_reward = 0 if filler_is_user else calculate_filler_reward(user_fee, order_ts, now, order_state)
    fee_to_market = sub(sub(user_fee, filler_reward, "fee_to_market"), referrer_reward, "fee_to_market")

    return user_fee, fee_to_market, token_discount, filler_reward, referrer_reward, referee_discount
