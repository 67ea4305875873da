"""
Clearing House Exchange Engine

Components:
  - vAMM pricing (constant-product curve with a peg multiplier)
  - Position ledger and fee engine
  - Funding rate engine (capped by the market fee pool)
  - Margin and liquidation engine
  - Order execution (market, limit, trigger orders filled by keepers)
  - Curve maintenance (repeg, update k)
  - Oracle price feeds, vaults and the history log
  - Transactions and the atomic state manager
"""

from .types import (
    Amm,
    DepositDirection,
    FeeStructure,
    LiquidationStatus,
    LiquidationType,
    Market,
    OracleGuardRails,
    OraclePriceData,
    Order,
    OrderAction,
    OrderDiscountTier,
    OrderParams,
    OrderState,
    OrderStatus,
    OrderTriggerCondition,
    OrderType,
    Position,
    PositionDirection,
    State,
    SwapDirection,
    User,
)
from .store import Store
from .oracle import (
    Observation,
    PriceFeed,
    PriceFeedRegistry,
)
from .vault import (
    Vault,
    VaultDirective,
)
from .history import (
    CurveRecord,
    DepositRecord,
    FundingPaymentRecord,
    FundingRateRecord,
    HistoryLog,
    HistoryRecord,
    LiquidationRecord,
    OrderRecord,
    TradeRecord,
)
from .context import (
    ExecutionContext,
    Outbox,
)
from .transactions import (
    ClearingHouseOpType,
    ClearingHouseTransaction,
)
from .state_manager import (
    ClearingHouseStateManager,
    ExecResult,
)

__all__ = [
    # Data model
    "Amm", "DepositDirection", "FeeStructure", "LiquidationStatus", "LiquidationType",
    "Market", "OracleGuardRails", "OraclePriceData", "Order", "OrderAction",
    "OrderDiscountTier", "OrderParams", "OrderState", "OrderStatus",
    "OrderTriggerCondition", "OrderType", "Position", "PositionDirection", "State",
    "SwapDirection", "User", "Store",
    # Oracle
    "Observation", "PriceFeed", "PriceFeedRegistry",
    # Vaults
    "Vault", "VaultDirective",
    # History
    "CurveRecord", "DepositRecord", "FundingPaymentRecord", "FundingRateRecord",
    "HistoryLog", "HistoryRecord", "LiquidationRecord", "OrderRecord", "TradeRecord",
    # Execution
    "ExecutionContext", "Outbox",
    # Transactions / state manager
    "ClearingHouseOpType", "ClearingHouseTransaction",
    "ClearingHouseStateManager", "ExecResult",
]
