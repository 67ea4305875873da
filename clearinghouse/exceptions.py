"""
Clearing House Exceptions

Custom exception classes for the clearing house. Every failure raised inside
an operation aborts it and discards its staged state.
"""


class ClearingHouseError(Exception):
    """Base exception for the clearing house."""
    message = "Clearing house error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.message)


class MathError(ClearingHouseError):
    """Checked arithmetic failed (overflow, underflow or divide by zero)."""
    message = "Math error"

    def __init__(self, op: str, message: str = ""):
        self.op = op
        super().__init__(message or f"{self.message} in {op}")


class ConfigurationError(ClearingHouseError):
    """Configuration error."""
    message = "Invalid configuration"


# -- Access / protocol state ------------------------------------------------

class Unauthorized(ClearingHouseError):
    """Caller is not the protocol admin."""
    message = "Unauthorized"


class ExchangePaused(ClearingHouseError):
    """Trading is paused."""
    message = "Exchange is paused"


class AdminControlsPricesDisabled(ClearingHouseError):
    """Admin price moves were disabled."""
    message = "Admin controls prices disabled"


class AdminWithdrawTooLarge(ClearingHouseError):
    """Admin tried to withdraw more than the withdrawable fee share."""
    message = "Admin tried to withdraw amount larger than fees collected"


# -- Markets -----------------------------------------------------------------

class MarketIndexNotInitialized(ClearingHouseError):
    message = "Market index not initialized"


class MarketIndexAlreadyInitialized(ClearingHouseError):
    message = "Market index already initialized"


class InvalidInitialPeg(ClearingHouseError):
    message = "Invalid initial peg"


class InvalidMarginRatio(ClearingHouseError):
    message = "Invalid margin ratio"


class InvalidRepegRedundant(ClearingHouseError):
    message = "AMM repeg already configured with amount given"


class InvalidRepegDirection(ClearingHouseError):
    message = "AMM repeg incorrect repeg direction"


class InvalidRepegProfitability(ClearingHouseError):
    message = "AMM repeg out of bounds pnl"


class InvalidUpdateK(ClearingHouseError):
    message = "Price change too large when updating K"


# -- Users / collateral ------------------------------------------------------

class UserDoesNotExist(ClearingHouseError):
    message = "The user does not exist"


class InsufficientDeposit(ClearingHouseError):
    message = "Insufficient deposit"


class UserMaxDeposit(ClearingHouseError):
    message = "Can not deposit more than max deposit"


class InsufficientCollateral(ClearingHouseError):
    message = "Insufficient collateral"


class SufficientCollateral(ClearingHouseError):
    message = "Sufficient collateral"


class NoPositionsLiquidatable(ClearingHouseError):
    message = "No positions liquidatable"


# -- Trades ------------------------------------------------------------------

class TradeSizeTooSmall(ClearingHouseError):
    message = "Trade size too small"


class TradeSizeTooLarge(ClearingHouseError):
    message = "Trade size too large"


class SlippageOutsideLimit(ClearingHouseError):
    message = "Slippage outside limit price"


# -- Oracle ------------------------------------------------------------------

class InvalidOracle(ClearingHouseError):
    message = "Invalid oracle"


class OracleMarkSpreadLimit(ClearingHouseError):
    message = "Oracle/mark spread too large"


class OracleNotFoundToOffset(ClearingHouseError):
    message = "Could not find oracle to calculate oracle offset limit price"


class InvalidOracleOffset(ClearingHouseError):
    message = "Oracle offset limit price below zero"


# -- Orders ------------------------------------------------------------------

class InvalidOrder(ClearingHouseError):
    message = "Invalid order"


class OrderDoesNotExist(ClearingHouseError):
    message = "Order does not exist"


class OrderNotOpen(ClearingHouseError):
    message = "Order not open"


class OrderAmountTooSmall(ClearingHouseError):
    message = "Order amount too small"


class MaxNumberOfOrders(ClearingHouseError):
    message = "Max number of orders taken"


class ReduceOnlyOrderIncreasedRisk(ClearingHouseError):
    message = "Reduce only order increased risk"


class CantCancelPostOnlyOrder(ClearingHouseError):
    message = "Cant cancel post only order"


class CantExpireOrders(ClearingHouseError):
    message = "Cant expire orders"
