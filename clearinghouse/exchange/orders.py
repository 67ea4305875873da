"""
Clearing House Order Execution Engine

Resting orders filled against the vAMM by keepers ("fillers"):

  Market         filled in full (base or quote amount), optional worst price
  Limit          filled as far as the curve can go without crossing its price
  TriggerMarket  filled in full once mark (and oracle) cross the trigger
  TriggerLimit   a Limit order that only activates once triggered

Lifecycle:
  place  -> order stored Open at the end of the position's order list
  fill   -> partially filled orders stay Open; removed once fully filled
            (Market orders are always removed after their fill)
  cancel -> removed
  expire -> every open order of an under-collateralised user is removed

Removal compacts the list by moving the last order into the freed slot.

Security features:
  - Fills are sized to the user's free collateral at max leverage
  - Residual amounts below the market minimum are folded into the fill
  - Fills that push mark past the oracle divergence limit are rejected
  - Post-only orders cannot rest if they would fill immediately
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Optional, Tuple

from ..constants import (
    AMM_RESERVE_PRECISION,
    AMM_TO_QUOTE_PRECISION_RATIO,
    EXPIRE_ORDERS_COLLATERAL_FLOOR,
    MARGIN_PRECISION,
    MARK_PRICE_PRECISION,
    MAX_EXPIRE_ORDERS_REWARD,
    MAX_ORDERS_PER_MARKET,
    QUOTE_PRECISION,
)
from ..exceptions import (
    CantCancelPostOnlyOrder,
    CantExpireOrders,
    InsufficientCollateral,
    InvalidOracle,
    InvalidOracleOffset,
    InvalidOrder,
    MaxNumberOfOrders,
    OracleMarkSpreadLimit,
    OracleNotFoundToOffset,
    OrderAmountTooSmall,
    OrderNotOpen,
    ReduceOnlyOrderIncreasedRisk,
    SlippageOutsideLimit,
    TradeSizeTooSmall,
)
from . import amm
from .checked import div, i128, sub, u128
from .context import ExecutionContext
from .fees import calculate_fee_for_order, calculate_order_fee_tier
from .funding import settle_funding_payment, update_funding_rate
from .history import OrderRecord, TradeRecord
from .margin import (
    calculate_free_collateral,
    meets_initial_margin_requirement,
    meets_partial_margin_requirement,
)
from .oracle import fetch_oracle_price
from .position import (
    calculate_updated_collateral,
    update_position_with_base_asset_amount,
    update_position_with_quote_asset_amount,
)
from .types import (
    Market,
    Order,
    OrderAction,
    OrderParams,
    OrderStatus,
    OrderTriggerCondition,
    OrderType,
    Position,
    PositionDirection,
    SwapDirection,
    User,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

def has_oracle_price_offset(order: Order) -> bool:
    return order.oracle_price_offset != 0


def get_limit_price(order: Order, valid_oracle_price: Optional[int]) -> int:
    """
    The order's fixed price, or oracle price plus offset for oracle-pegged orders.

    Raises:
        OracleNotFoundToOffset: if the order is oracle-pegged and the oracle is invalid
        InvalidOracleOffset: if the offset drives the price to zero or below
    """
    if not has_oracle_price_offset(order):
        return order.price
    if valid_oracle_price is None:
        raise OracleNotFoundToOffset()
    limit_price = i128(valid_oracle_price + order.oracle_price_offset, "get_limit_price")
    if limit_price <= 0:
        raise InvalidOracleOffset(f"Limit price {limit_price} from offset {order.oracle_price_offset}")
    return limit_price


def limit_price_satisfied(
    limit_price: int,
    quote_asset_amount: int,
    base_asset_amount: int,
    direction: PositionDirection,
) -> bool:
    """Whether an executed average price respects `limit_price` for `direction`."""
    price = div(
        quote_asset_amount * MARK_PRICE_PRECISION * AMM_TO_QUOTE_PRECISION_RATIO,
        base_asset_amount,
        "limit_price_satisfied",
    )
    if direction == PositionDirection.LONG:
        return price <= limit_price
    return price >= limit_price


def get_valid_oracle_price(ctx: ExecutionContext, market: Market, order: Order) -> Optional[int]:
    """
    Oracle price if the market's oracle is usable, else None.

    Raises:
        OracleNotFoundToOffset: oracle-pegged order on a market without a feed
        InvalidOracle: oracle-pegged order while the oracle is invalid
    """
    if market.amm.oracle not in ctx.feeds:
        if has_oracle_price_offset(order):
            raise OracleNotFoundToOffset(f"Oracle feed {market.amm.oracle!r} not found")
        return None

    oracle_price_data = fetch_oracle_price(market, ctx.feeds, ctx.now)
    if amm.is_oracle_valid(market.amm, oracle_price_data, ctx.guard_rails):
        return oracle_price_data.price
    if has_oracle_price_offset(order):
        raise InvalidOracle("Invalid oracle for order with oracle price offset")
    return None


# ---------------------------------------------------------------------------
# Executable amounts
# ---------------------------------------------------------------------------

def calculate_base_asset_amount_to_trade_for_limit(
    order: Order,
    market: Market,
    valid_oracle_price: Optional[int],
) -> int:
    base_asset_amount_to_fill = sub(order.base_asset_amount, order.base_asset_amount_filled, "limit_amount")
    limit_price = get_limit_price(order, valid_oracle_price)

    max_trade_base_asset_amount, max_trade_direction = amm.calculate_max_base_asset_amount_to_trade(
        market.amm, limit_price
    )
    if max_trade_direction != order.direction or max_trade_base_asset_amount == 0:
        return 0

    return min(base_asset_amount_to_fill, max_trade_base_asset_amount)


def _trigger_condition_met(order: Order, mark_price: int, valid_oracle_price: Optional[int]) -> bool:
    if order.trigger_condition == OrderTriggerCondition.ABOVE:
        if mark_price <= order.trigger_price:
            return False
        # the oracle, with a 1 % buffer, must agree
        if valid_oracle_price is not None and valid_oracle_price * 101 // 100 <= order.trigger_price:
            return False
        return True

    if mark_price >= order.trigger_price:
        return False
    if valid_oracle_price is not None and abs(valid_oracle_price * 99 // 100) >= order.trigger_price:
        return False
    return True


def calculate_base_asset_amount_to_trade_for_trigger_market(
    order: Order,
    market: Market,
    precomputed_mark_price: Optional[int],
    valid_oracle_price: Optional[int],
) -> int:
    mark_price = precomputed_mark_price if precomputed_mark_price is not None else amm.get_mark_price(market.amm)
    if not _trigger_condition_met(order, mark_price, valid_oracle_price):
        return 0
    return sub(order.base_asset_amount, order.base_asset_amount_filled, "trigger_market_amount")


def calculate_base_asset_amount_to_trade_for_trigger_limit(
    order: Order,
    market: Market,
    precomputed_mark_price: Optional[int],
    valid_oracle_price: Optional[int],
) -> int:
    # once partially filled the trigger has already fired
    if order.base_asset_amount_filled == 0:
        triggered = calculate_base_asset_amount_to_trade_for_trigger_market(
            order, market, precomputed_mark_price, valid_oracle_price
        )
        if triggered == 0:
            return 0
    return calculate_base_asset_amount_to_trade_for_limit(order, market, None)


def calculate_base_asset_amount_market_can_execute(
    order: Order,
    market: Market,
    precomputed_mark_price: Optional[int],
    valid_oracle_price: Optional[int],
) -> int:
    if order.order_type == OrderType.LIMIT:
        return calculate_base_asset_amount_to_trade_for_limit(order, market, valid_oracle_price)
    if order.order_type == OrderType.TRIGGER_MARKET:
        return calculate_base_asset_amount_to_trade_for_trigger_market(
            order, market, precomputed_mark_price, valid_oracle_price
        )
    if order.order_type == OrderType.TRIGGER_LIMIT:
        return calculate_base_asset_amount_to_trade_for_trigger_limit(
            order, market, precomputed_mark_price, valid_oracle_price
        )
    raise InvalidOrder("Market orders have no resting executable amount")


def calculate_available_quote_asset_user_can_execute(
    ctx: ExecutionContext,
    user_id: str,
    order: Order,
    market: Market,
    position: Position,
) -> int:
    """Notional the user's free collateral supports at just under max leverage."""
    max_leverage = MARGIN_PRECISION // (market.margin_ratio_initial + 1)

    risk_increasing_in_same_direction = (
        position.base_asset_amount == 0
        or (position.base_asset_amount > 0 and order.direction == PositionDirection.LONG)
        or (position.base_asset_amount < 0 and order.direction == PositionDirection.SHORT)
    )

    if risk_increasing_in_same_direction:
        free_collateral, _ = calculate_free_collateral(ctx.store, user_id)
        return u128(free_collateral * max_leverage, "available_quote_asset")

    free_collateral, closed_position_base_asset_value = calculate_free_collateral(
        ctx.store, user_id, order.market_index
    )
    return u128(free_collateral * max_leverage + closed_position_base_asset_value, "available_quote_asset")


def calculate_base_asset_amount_user_can_execute(
    ctx: ExecutionContext,
    user_id: str,
    order: Order,
    market: Market,
    position: Position,
) -> int:
    quote_asset_amount = calculate_available_quote_asset_user_can_execute(ctx, user_id, order, market, position)
    swap_direction = SwapDirection.ADD if order.direction == PositionDirection.LONG else SwapDirection.REMOVE

    # cap at what the curve can give up
    quote_asset_reserve_amount = min(
        market.amm.quote_asset_reserve - 1,
        amm.asset_to_reserve_amount(quote_asset_amount, market.amm.peg_multiplier),
    )
    new_base_asset_reserve, _ = amm.calculate_swap_output(
        quote_asset_reserve_amount,
        market.amm.quote_asset_reserve,
        swap_direction,
        market.amm.sqrt_k,
    )
    return abs(market.amm.base_asset_reserve - new_base_asset_reserve)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _approximate_market_value(price: int, base_asset_amount: int) -> int:
    return price * base_asset_amount // AMM_RESERVE_PRECISION // (MARK_PRICE_PRECISION // QUOTE_PRECISION)


def _validate_base_asset_amount(order: Order, market: Market) -> None:
    if order.base_asset_amount == 0:
        raise InvalidOrder("Order base_asset_amount cannot be 0")
    if order.base_asset_amount < market.amm.minimum_base_asset_trade_size:
        raise InvalidOrder("Order base_asset_amount below the market minimum")


def _validate_quote_asset_amount(order: Order, market: Market) -> None:
    if order.quote_asset_amount == 0:
        raise InvalidOrder("Order quote_asset_amount cannot be 0")
    quote_asset_reserve_amount = amm.asset_to_reserve_amount(order.quote_asset_amount, market.amm.peg_multiplier)
    if quote_asset_reserve_amount < market.amm.minimum_quote_asset_trade_size:
        raise InvalidOrder("Order quote_asset_amount below the market minimum")


def _validate_notional(value: int, order_state) -> None:
    if value < order_state.min_order_quote_asset_amount:
        raise InvalidOrder(f"Order value {value} below minimum {order_state.min_order_quote_asset_amount}")


def _validate_market_order(order: Order, market: Market) -> None:
    if order.quote_asset_amount > 0 and order.base_asset_amount > 0:
        raise InvalidOrder("Market order cannot set both base and quote asset amounts")
    if order.base_asset_amount > 0:
        _validate_base_asset_amount(order, market)
    else:
        _validate_quote_asset_amount(order, market)
    if order.trigger_price > 0:
        raise InvalidOrder("Market order cannot have a trigger price")
    if order.post_only:
        raise InvalidOrder("Market order cannot be post only")
    if has_oracle_price_offset(order):
        raise InvalidOrder("Market order cannot have an oracle price offset")


def _validate_post_only_order(order: Order, market: Market, valid_oracle_price: Optional[int]) -> None:
    fillable = calculate_base_asset_amount_to_trade_for_limit(order, market, valid_oracle_price)
    if fillable != 0:
        raise InvalidOrder(f"Post only order can immediately fill {fillable} base asset amount")


def _validate_limit_order(order: Order, market: Market, order_state, valid_oracle_price: Optional[int]) -> None:
    _validate_base_asset_amount(order, market)
    if order.price == 0 and not has_oracle_price_offset(order):
        raise InvalidOrder("Limit order price cannot be 0")
    if order.price != 0 and has_oracle_price_offset(order):
        raise InvalidOrder("Limit order cannot set both price and oracle price offset")
    if order.trigger_price > 0:
        raise InvalidOrder("Limit order cannot have a trigger price")
    if order.quote_asset_amount != 0:
        raise InvalidOrder("Limit order cannot have a quote asset amount")
    if order.post_only:
        _validate_post_only_order(order, market, valid_oracle_price)

    limit_price = get_limit_price(order, valid_oracle_price)
    _validate_notional(_approximate_market_value(limit_price, order.base_asset_amount), order_state)


def _validate_trigger_limit_order(order: Order, market: Market, order_state) -> None:
    _validate_base_asset_amount(order, market)
    if order.price == 0:
        raise InvalidOrder("Trigger limit order price cannot be 0")
    if order.trigger_price == 0:
        raise InvalidOrder("Trigger limit order trigger price cannot be 0")
    if order.quote_asset_amount != 0:
        raise InvalidOrder("Trigger limit order cannot have a quote asset amount")
    if order.post_only:
        raise InvalidOrder("Trigger limit order cannot be post only")
    if has_oracle_price_offset(order):
        raise InvalidOrder("Trigger limit order cannot have an oracle price offset")

    if (
        order.trigger_condition == OrderTriggerCondition.ABOVE
        and order.direction == PositionDirection.LONG
        and order.price < order.trigger_price
    ):
        raise InvalidOrder("Long trigger-above limit price must be at or above the trigger price")
    if (
        order.trigger_condition == OrderTriggerCondition.BELOW
        and order.direction == PositionDirection.SHORT
        and order.price > order.trigger_price
    ):
        raise InvalidOrder("Short trigger-below limit price must be at or below the trigger price")

    _validate_notional(_approximate_market_value(order.price, order.base_asset_amount), order_state)


def _validate_trigger_market_order(order: Order, market: Market, order_state) -> None:
    _validate_base_asset_amount(order, market)
    if order.price > 0:
        raise InvalidOrder("Trigger market order cannot have a price")
    if order.trigger_price == 0:
        raise InvalidOrder("Trigger market order trigger price cannot be 0")
    if order.quote_asset_amount != 0:
        raise InvalidOrder("Trigger market order cannot have a quote asset amount")
    if order.post_only:
        raise InvalidOrder("Trigger market order cannot be post only")
    if has_oracle_price_offset(order):
        raise InvalidOrder("Trigger market order cannot have an oracle price offset")

    _validate_notional(_approximate_market_value(order.trigger_price, order.base_asset_amount), order_state)


def validate_order(order: Order, market: Market, order_state, valid_oracle_price: Optional[int]) -> None:
    """
    Raises:
        InvalidOrder: if the order's fields are inconsistent with its type,
            it is below the size minimums, or it asks for immediate-or-cancel
    """
    if order.order_type == OrderType.MARKET:
        _validate_market_order(order, market)
    elif order.order_type == OrderType.LIMIT:
        _validate_limit_order(order, market, order_state, valid_oracle_price)
    elif order.order_type == OrderType.TRIGGER_MARKET:
        _validate_trigger_market_order(order, market, order_state)
    else:
        _validate_trigger_limit_order(order, market, order_state)

    if order.immediate_or_cancel:
        raise InvalidOrder("Immediate-or-cancel orders are not supported")


def validate_order_can_be_canceled(order: Order, market: Market, valid_oracle_price: Optional[int]) -> None:
    if not order.post_only:
        return
    fillable = calculate_base_asset_amount_to_trade_for_limit(order, market, valid_oracle_price)
    if fillable > 0:
        raise CantCancelPostOnlyOrder(f"Post only order can be filled for {fillable} base asset amount")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def _order_record(
    ctx: ExecutionContext,
    user_id: str,
    order: Order,
    action: OrderAction,
    **fields,
) -> OrderRecord:
    # snapshot so later mutation of the stored order does not rewrite history
    record = OrderRecord(
        ts=ctx.now,
        user=user_id,
        order=replace(order),
        action=action,
        position_index=order.market_index,
        **fields,
    )
    return ctx.outbox.emit(record)


def _account(ctx: ExecutionContext, user_id: str) -> User:
    account = ctx.store.users.get(user_id)
    if account is None:
        account = User()
        ctx.store.users[user_id] = account
    return account


def place_order(
    ctx: ExecutionContext,
    user_id: str,
    params: OrderParams,
    discount_token_amount: int = 0,
) -> Order:
    """
    Validate and store a new Open order.

    Raises:
        MaxNumberOfOrders: if the position already has MAX_ORDERS_PER_MARKET orders
        InvalidOrder: see validate_order
    """
    store = ctx.store
    user = store.load_user(user_id)
    market = store.load_market(params.market_index)

    settle_funding_payment(ctx, user_id)

    position = store.load_or_create_position(user_id, params.market_index)
    if position.order_length >= MAX_ORDERS_PER_MARKET:
        raise MaxNumberOfOrders(f"Market {params.market_index} already has {position.order_length} orders")

    order = Order(
        order_id=store.next_order_id,
        user_order_id=params.user_order_id,
        ts=ctx.now,
        market_index=params.market_index,
        order_type=params.order_type,
        direction=params.direction,
        status=OrderStatus.OPEN,
        price=params.price,
        base_asset_amount=params.base_asset_amount,
        quote_asset_amount=params.quote_asset_amount,
        reduce_only=params.reduce_only,
        post_only=params.post_only,
        immediate_or_cancel=params.immediate_or_cancel,
        discount_tier=calculate_order_fee_tier(store.fee_structure, discount_token_amount),
        trigger_price=params.trigger_price,
        trigger_condition=params.trigger_condition,
        referrer=user.referrer,
        oracle_price_offset=params.oracle_price_offset,
    )

    valid_oracle_price = get_valid_oracle_price(ctx, market, order)
    validate_order(order, market, store.order_state, valid_oracle_price)

    store.append_order(user_id, position, order)
    store.next_order_id += 1

    _order_record(ctx, user_id, order, OrderAction.PLACE)
    logger.debug(
        "Placed order %d user=%s market=%d %s %s",
        order.order_id, user_id, order.market_index, order.order_type.value, order.direction.value,
    )
    return order


def cancel_order(ctx: ExecutionContext, user_id: str, market_index: int, order_id: int) -> Order:
    store = ctx.store
    market = store.load_market(market_index)
    order_index = store.find_order_index(user_id, market_index, order_id)
    order = store.load_order(user_id, market_index, order_index)

    settle_funding_payment(ctx, user_id)

    if not order.is_open:
        raise OrderNotOpen(f"Order {order_id} is not open")

    valid_oracle_price = get_valid_oracle_price(ctx, market, order)
    validate_order_can_be_canceled(order, market, valid_oracle_price)

    _order_record(ctx, user_id, order, OrderAction.CANCEL)

    position = store.load_or_create_position(user_id, market_index)
    store.remove_order(user_id, position, order_index)
    logger.debug("Cancelled order %d user=%s market=%d", order_id, user_id, market_index)
    return order


def expire_orders(ctx: ExecutionContext, user_id: str, filler_id: str) -> List[OrderRecord]:
    """
    Remove every open order of a user whose collateral fell below the floor.

    The filler earns min(collateral, MAX_EXPIRE_ORDERS_REWARD), recorded
    against the expired orders in equal shares.

    Raises:
        CantExpireOrders: if the user holds at least EXPIRE_ORDERS_COLLATERAL_FLOOR
            or has no open orders
    """
    store = ctx.store
    user = store.load_user(user_id)

    if user.collateral >= EXPIRE_ORDERS_COLLATERAL_FLOOR:
        raise CantExpireOrders(f"User {user_id} has {user.collateral} collateral")

    open_orders = [
        (market_index, order_index)
        for market_index in store.market_indexes()
        for order_index, order in store.user_orders(user_id, market_index)
        if order.is_open
    ]
    if not open_orders:
        raise CantExpireOrders(f"User {user_id} has no open orders")

    filler_reward = min(user.collateral, MAX_EXPIRE_ORDERS_REWARD)
    filler_reward_per_order = filler_reward // len(open_orders)

    user.collateral = calculate_updated_collateral(user.collateral, -filler_reward)
    filler = _account(ctx, filler_id)
    filler.collateral = u128(filler.collateral + filler_reward, "expire_orders")

    records = []
    # highest index first so compaction never moves an order still to be visited
    for market_index, order_index in reversed(open_orders):
        position = store.load_or_create_position(user_id, market_index)
        order = store.remove_order(user_id, position, order_index)
        order.fee += filler_reward_per_order
        records.append(_order_record(
            ctx, user_id, order, OrderAction.EXPIRE,
            filler=filler_id,
            filler_reward=filler_reward_per_order,
            fee=filler_reward_per_order,
        ))

    logger.info("Expired %d orders for user=%s filler=%s reward=%d", len(records), user_id, filler_id, filler_reward)
    return records


# ---------------------------------------------------------------------------
# Fill
# ---------------------------------------------------------------------------

def _execute_market_order(
    ctx: ExecutionContext,
    user_id: str,
    order: Order,
    market: Market,
    mark_price_before: int,
) -> Tuple[int, int, bool, int]:
    position = ctx.store.load_or_create_position(user_id, order.market_index)
    user = ctx.store.load_user(user_id)

    if order.base_asset_amount > 0:
        risk_increasing, reduce_only, base_asset_amount, quote_asset_amount, _ = (
            update_position_with_base_asset_amount(
                market, position, user, order.base_asset_amount, order.direction, mark_price_before, ctx.now,
            )
        )
    else:
        risk_increasing, reduce_only, base_asset_amount, quote_asset_amount, _ = (
            update_position_with_quote_asset_amount(
                market, position, user, order.quote_asset_amount, order.direction, mark_price_before, ctx.now,
            )
        )

    if base_asset_amount < market.amm.minimum_base_asset_trade_size:
        raise TradeSizeTooSmall(f"Base asset amount {base_asset_amount} below market minimum")
    if not reduce_only and order.reduce_only:
        raise ReduceOnlyOrderIncreasedRisk()
    if order.price > 0 and not limit_price_satisfied(
        order.price, quote_asset_amount, base_asset_amount, order.direction
    ):
        raise SlippageOutsideLimit(f"Fill worse than limit price {order.price}")

    return base_asset_amount, quote_asset_amount, risk_increasing, 0


def _execute_non_market_order(
    ctx: ExecutionContext,
    user_id: str,
    order: Order,
    market: Market,
    mark_price_before: int,
    valid_oracle_price: Optional[int],
) -> Tuple[int, int, bool, int]:
    nothing = (0, 0, False, 0)
    position = ctx.store.load_or_create_position(user_id, order.market_index)
    user = ctx.store.load_user(user_id)

    user_can_execute = calculate_base_asset_amount_user_can_execute(ctx, user_id, order, market, position)
    if user_can_execute == 0:
        return nothing

    market_can_execute = calculate_base_asset_amount_market_can_execute(
        order, market, mark_price_before, valid_oracle_price
    )
    if market_can_execute == 0:
        return nothing

    base_asset_amount = min(market_can_execute, user_can_execute)
    minimum_base_asset_trade_size = market.amm.minimum_base_asset_trade_size
    if base_asset_amount < minimum_base_asset_trade_size:
        return nothing

    left_to_fill = sub(order.base_asset_amount, order.base_asset_amount_filled + base_asset_amount, "fill_order")
    if 0 < left_to_fill < minimum_base_asset_trade_size:
        base_asset_amount += left_to_fill

    maker_limit_price = get_limit_price(order, valid_oracle_price) if order.post_only else None

    risk_increasing, reduce_only, _, quote_asset_amount, surplus = update_position_with_base_asset_amount(
        market, position, user, base_asset_amount, order.direction, mark_price_before, ctx.now,
        maker_limit_price,
    )
    if not reduce_only and order.reduce_only:
        raise ReduceOnlyOrderIncreasedRisk()

    return base_asset_amount, quote_asset_amount, risk_increasing, surplus


def _update_order_after_trade(
    order: Order,
    minimum_base_asset_trade_size: int,
    base_asset_amount: int,
    quote_asset_amount: int,
    fee: int,
) -> None:
    order.base_asset_amount_filled += base_asset_amount
    order.quote_asset_amount_filled += quote_asset_amount

    if order.order_type != OrderType.MARKET:
        remaining = sub(order.base_asset_amount, order.base_asset_amount_filled, "update_order_after_trade")
        if 0 < remaining < minimum_base_asset_trade_size:
            raise OrderAmountTooSmall(f"Remaining {remaining} below market minimum")

    order.fee += fee


def fill_order(
    ctx: ExecutionContext,
    user_id: str,
    filler_id: str,
    market_index: int,
    order_id: int,
) -> int:
    """
    Fill as much of an open order as the user and the curve allow.

    Returns:
        The base asset amount filled (0 when nothing could be filled).

    Raises:
        OrderNotOpen: if the order is not open
        OracleMarkSpreadLimit: if the fill pushes mark past the divergence
            limit, or widens an existing breach while risk increasing
        InsufficientCollateral: if a risk-increasing fill fails the margin check
    """
    store = ctx.store
    now = ctx.now
    guard_rails = ctx.guard_rails

    store.load_user(user_id)
    market = store.load_market(market_index)
    order_index = store.find_order_index(user_id, market_index, order_id)
    order = store.load_order(user_id, market_index, order_index)

    settle_funding_payment(ctx, user_id)

    if not order.is_open:
        raise OrderNotOpen(f"Order {order_id} is not open")

    mark_price_before = amm.get_mark_price(market.amm)
    oracle_price_data = fetch_oracle_price(market, ctx.feeds, now)
    oracle_mark_spread_pct_before = amm.calculate_oracle_mark_spread_pct(
        market.amm, oracle_price_data, mark_price_before
    )
    normalised_oracle_price = amm.normalise_oracle_price(market.amm, oracle_price_data, mark_price_before)
    is_oracle_valid = amm.is_oracle_valid(market.amm, oracle_price_data, guard_rails)
    if is_oracle_valid:
        amm.update_oracle_price_twap(market, now, normalised_oracle_price)
    valid_oracle_price = oracle_price_data.price if is_oracle_valid else None

    if order.order_type == OrderType.MARKET:
        base_asset_amount, quote_asset_amount, risk_increasing, surplus = _execute_market_order(
            ctx, user_id, order, market, mark_price_before
        )
    else:
        base_asset_amount, quote_asset_amount, risk_increasing, surplus = _execute_non_market_order(
            ctx, user_id, order, market, mark_price_before, valid_oracle_price
        )

    if base_asset_amount == 0:
        logger.debug("Order %d user=%s not fillable", order_id, user_id)
        return 0

    mark_price_after = amm.get_mark_price(market.amm)
    oracle_price_after = fetch_oracle_price(market, ctx.feeds, now)
    oracle_mark_spread_pct_after = amm.calculate_oracle_mark_spread_pct(
        market.amm, oracle_price_after, mark_price_after
    )

    too_divergent_before = amm.is_oracle_mark_too_divergent(oracle_mark_spread_pct_before, guard_rails)
    too_divergent_after = amm.is_oracle_mark_too_divergent(oracle_mark_spread_pct_after, guard_rails)

    if too_divergent_after and not too_divergent_before and is_oracle_valid:
        raise OracleMarkSpreadLimit(f"Fill pushes oracle/mark spread to {oracle_mark_spread_pct_after}")
    if (
        too_divergent_after
        and abs(oracle_mark_spread_pct_after) >= abs(oracle_mark_spread_pct_before)
        and is_oracle_valid
        and risk_increasing
    ):
        raise OracleMarkSpreadLimit(f"Risk increasing fill widens oracle/mark spread to {oracle_mark_spread_pct_after}")

    # post-only fills may go down to the partial requirement
    if order.post_only:
        meets_margin_requirement = meets_partial_margin_requirement(store, user_id)
    else:
        meets_margin_requirement = meets_initial_margin_requirement(store, user_id)
    if not meets_margin_requirement and risk_increasing:
        raise InsufficientCollateral(f"Fill leaves user={user_id} below margin requirement")

    user = store.load_user(user_id)
    user_fee, fee_to_market, token_discount, filler_reward, referrer_reward, referee_discount = (
        calculate_fee_for_order(
            quote_asset_amount,
            store.fee_structure,
            store.order_state,
            order.discount_tier,
            order.ts,
            now,
            user.referrer,
            filler_id == user_id,
            surplus,
        )
    )

    market.amm.total_fee = u128(market.amm.total_fee + fee_to_market, "fill_order")
    market.amm.total_fee_minus_distributions = u128(
        market.amm.total_fee_minus_distributions + fee_to_market, "fill_order"
    )

    user.collateral = calculate_updated_collateral(user.collateral, -user_fee)
    user.total_fee_paid += user_fee
    user.total_token_discount += token_discount
    user.total_referee_discount += referee_discount

    if filler_reward > 0:
        filler = _account(ctx, filler_id)
        filler.collateral += filler_reward

    if user.referrer is not None and user.referrer in store.users:
        store.users[user.referrer].total_referral_reward += referrer_reward

    _update_order_after_trade(
        order, market.amm.minimum_base_asset_trade_size, base_asset_amount, quote_asset_amount, user_fee
    )

    trade = ctx.outbox.emit(TradeRecord(
        ts=now,
        user=user_id,
        direction=order.direction,
        base_asset_amount=base_asset_amount,
        quote_asset_amount=quote_asset_amount,
        mark_price_before=mark_price_before,
        mark_price_after=mark_price_after,
        fee=user_fee,
        referrer_reward=referrer_reward,
        referee_discount=referee_discount,
        token_discount=token_discount,
        market_index=market_index,
        oracle_price=oracle_price_after.price,
    ))
    _order_record(
        ctx, user_id, order, OrderAction.FILL,
        filler=filler_id,
        trade_record_id=trade.record_id,
        base_asset_amount_filled=base_asset_amount,
        quote_asset_amount_filled=quote_asset_amount,
        fee=user_fee,
        filler_reward=filler_reward,
        quote_asset_amount_surplus=surplus,
    )

    if order.order_type == OrderType.MARKET or order.base_asset_amount_unfilled <= 0:
        position = store.load_or_create_position(user_id, market_index)
        store.remove_order(user_id, position, order_index)

    logger.info(
        "Filled order %d user=%s market=%d base=%d quote=%d fee=%d filler=%s",
        order_id, user_id, market_index, base_asset_amount, quote_asset_amount, user_fee, filler_id,
    )

    update_funding_rate(ctx, market_index, mark_price_before)
    return base_asset_amount
