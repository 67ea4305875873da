"""
Clearing House History Log

Append-only event records, one record type per event kind:
  - CurveRecord:           repeg / update-k adjustments
  - DepositRecord:         collateral deposits and withdrawals
  - FundingPaymentRecord:  per-user funding settlements
  - FundingRateRecord:     per-market funding rate updates
  - LiquidationRecord:     liquidations
  - OrderRecord:           order place / cancel / fill / expire
  - TradeRecord:           position changes against the AMM

Record ids are assigned per kind, starting at 1, in append order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type

from .types import DepositDirection, Order, OrderAction, PositionDirection

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class HistoryRecord:
    ts: int

    # assigned when the record is emitted
    record_id: int = field(default=0, init=False)


@dataclass
class CurveRecord(HistoryRecord):
    market_index: int = 0
    peg_multiplier_before: int = 0
    peg_multiplier_after: int = 0
    base_asset_reserve_before: int = 0
    base_asset_reserve_after: int = 0
    quote_asset_reserve_before: int = 0
    quote_asset_reserve_after: int = 0
    sqrt_k_before: int = 0
    sqrt_k_after: int = 0
    base_asset_amount_long: int = 0
    base_asset_amount_short: int = 0
    base_asset_amount: int = 0
    open_interest: int = 0
    total_fee: int = 0
    total_fee_minus_distributions: int = 0
    adjustment_cost: int = 0
    oracle_price: int = 0


@dataclass
class DepositRecord(HistoryRecord):
    user: str = ""
    direction: DepositDirection = DepositDirection.DEPOSIT
    collateral_before: int = 0
    cumulative_deposits_before: int = 0
    amount: int = 0


@dataclass
class FundingPaymentRecord(HistoryRecord):
    user: str = ""
    market_index: int = 0
    funding_payment: int = 0
    base_asset_amount: int = 0
    user_last_cumulative_funding: int = 0
    user_last_funding_rate_ts: int = 0
    amm_cumulative_funding_long: int = 0
    amm_cumulative_funding_short: int = 0


@dataclass
class FundingRateRecord(HistoryRecord):
    market_index: int = 0
    funding_rate: int = 0
    cumulative_funding_rate_long: int = 0
    cumulative_funding_rate_short: int = 0
    oracle_price_twap: int = 0
    mark_price_twap: int = 0


@dataclass
class LiquidationRecord(HistoryRecord):
    user: str = ""
    partial: bool = False
    base_asset_value: int = 0
    base_asset_value_closed: int = 0
    liquidation_fee: int = 0
    fee_to_liquidator: int = 0
    fee_to_insurance_fund: int = 0
    liquidator: str = ""
    total_collateral: int = 0
    collateral: int = 0
    unrealized_pnl: int = 0
    margin_ratio: int = 0


@dataclass
class OrderRecord(HistoryRecord):
    user: str = ""
    order: Optional[Order] = None
    action: OrderAction = OrderAction.PLACE
    filler: str = ""
    trade_record_id: int = 0
    base_asset_amount_filled: int = 0
    quote_asset_amount_filled: int = 0
    fee: int = 0
    filler_reward: int = 0
    quote_asset_amount_surplus: int = 0
    position_index: int = 0


@dataclass
class TradeRecord(HistoryRecord):
    user: str = ""
    direction: PositionDirection = PositionDirection.LONG
    base_asset_amount: int = 0
    quote_asset_amount: int = 0
    mark_price_before: int = 0
    mark_price_after: int = 0
    fee: int = 0
    referrer_reward: int = 0
    referee_discount: int = 0
    token_discount: int = 0
    liquidation: bool = False
    market_index: int = 0
    oracle_price: int = 0


# ---------------------------------------------------------------------------
# Append-only log
# ---------------------------------------------------------------------------

class HistoryLog:
    """In-memory append-only store of history records, grouped by kind."""

    def __init__(self, name: str = "history") -> None:
        self.name = name
        self._records: Dict[Type[HistoryRecord], List[HistoryRecord]] = {}

    def next_record_id(self, kind: Type[HistoryRecord]) -> int:
        return len(self._records.get(kind, [])) + 1

    def append(self, record: HistoryRecord) -> None:
        records = self._records.setdefault(type(record), [])
        if record.record_id != len(records) + 1:
            raise ValueError(
                f"{type(record).__name__} id {record.record_id} out of order "
                f"(expected {len(records) + 1})"
            )
        records.append(record)
        logger.debug("[%s] recorded %s #%d", self.name, type(record).__name__, record.record_id)

    def records(self, kind: Type[HistoryRecord]) -> List[HistoryRecord]:
        return list(self._records.get(kind, []))

    @property
    def trades(self) -> List[HistoryRecord]:
        return self.records(TradeRecord)

    @property
    def orders(self) -> List[HistoryRecord]:
        return self.records(OrderRecord)

    @property
    def liquidations(self) -> List[HistoryRecord]:
        return self.records(LiquidationRecord)

    @property
    def funding_payments(self) -> List[HistoryRecord]:
        return self.records(FundingPaymentRecord)

    @property
    def funding_rates(self) -> List[HistoryRecord]:
        return self.records(FundingRateRecord)

    @property
    def deposits(self) -> List[HistoryRecord]:
        return self.records(DepositRecord)

    @property
    def curves(self) -> List[HistoryRecord]:
        return self.records(CurveRecord)

    def __len__(self) -> int:
        return sum(len(v) for v in self._records.values())
