"""
Clearing House Store

Keyed in-memory persistence for every record the clearing house owns:

    state                                   one State
    fee_structure                           one FeeStructure
    oracle_guard_rails                      one OracleGuardRails
    order_state                             one OrderState
    markets[market_index]                   Market
    users[user]                             User
    positions[(user, market_index)]         Position
    orders[(user, market_index, index)]     Order

The state manager deep-copies the store before each operation and swaps the
copy in only on success, so loaders here can raise freely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from ..exceptions import MarketIndexNotInitialized, OrderDoesNotExist, UserDoesNotExist
from .types import (
    FeeStructure,
    Market,
    OracleGuardRails,
    Order,
    OrderState,
    Position,
    State,
    User,
)


@dataclass
class Store:
    state: State
    fee_structure: FeeStructure = field(default_factory=FeeStructure)
    oracle_guard_rails: OracleGuardRails = field(default_factory=OracleGuardRails)
    order_state: OrderState = field(default_factory=OrderState)
    markets: Dict[int, Market] = field(default_factory=dict)
    users: Dict[str, User] = field(default_factory=dict)
    positions: Dict[Tuple[str, int], Position] = field(default_factory=dict)
    orders: Dict[Tuple[str, int, int], Order] = field(default_factory=dict)
    next_order_id: int = 1

    # -- Markets --------------------------------------------------------------

    def load_market(self, market_index: int) -> Market:
        market = self.markets.get(market_index)
        if market is None or not market.initialized:
            raise MarketIndexNotInitialized(f"Market {market_index} not initialized")
        return market

    def market_indexes(self) -> List[int]:
        return sorted(self.markets)

    # -- Users ----------------------------------------------------------------

    def load_user(self, user: str) -> User:
        record = self.users.get(user)
        if record is None:
            raise UserDoesNotExist(f"User {user} does not exist")
        return record

    # -- Positions ------------------------------------------------------------

    def get_position(self, user: str, market_index: int) -> Optional[Position]:
        return self.positions.get((user, market_index))

    def load_or_create_position(self, user: str, market_index: int) -> Position:
        key = (user, market_index)
        position = self.positions.get(key)
        if position is None:
            position = Position(market_index=market_index)
            self.positions[key] = position
        return position

    def user_positions(self, user: str) -> Iterator[Tuple[Market, Position]]:
        """(market, position) pairs for every market the user has a position record in."""
        for market_index in self.market_indexes():
            position = self.positions.get((user, market_index))
            if position is not None:
                yield self.markets[market_index], position

    # -- Orders ---------------------------------------------------------------

    def load_order(self, user: str, market_index: int, order_index: int) -> Order:
        order = self.orders.get((user, market_index, order_index))
        if order is None:
            raise OrderDoesNotExist(f"Order {order_index} for user={user} market={market_index} not found")
        return order

    def user_orders(self, user: str, market_index: int) -> List[Tuple[int, Order]]:
        position = self.get_position(user, market_index)
        if position is None:
            return []
        return [
            (index, self.orders[(user, market_index, index)])
            for index in range(position.order_length)
            if (user, market_index, index) in self.orders
        ]

    def find_order_index(self, user: str, market_index: int, order_id: int) -> int:
        for index, order in self.user_orders(user, market_index):
            if order.order_id == order_id:
                return index
        raise OrderDoesNotExist(f"Order id {order_id} for user={user} market={market_index} not found")

    def append_order(self, user: str, position: Position, order: Order) -> int:
        index = position.order_length
        self.orders[(user, position.market_index, index)] = order
        position.order_length += 1
        return index

    def remove_order(self, user: str, position: Position, order_index: int) -> Order:
        """Remove an order, moving the last order into its slot."""
        market_index = position.market_index
        removed = self.load_order(user, market_index, order_index)
        last_index = position.order_length - 1
        if order_index != last_index:
            self.orders[(user, market_index, order_index)] = self.orders.pop((user, market_index, last_index))
        else:
            del self.orders[(user, market_index, order_index)]
        position.order_length = last_index
        return removed
