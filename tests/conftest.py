"""
Shared fixtures for the clearing house test suite.

Every clearing house starts with market 0 (balanced 5e18 reserves, peg 1.000,
one hour funding period) and its oracle fed at $1.00 at T0.
"""

import pytest

from clearinghouse.constants import MARK_PRICE_PRECISION
from clearinghouse.exchange.context import ExecutionContext, Outbox
from clearinghouse.exchange.state_manager import ClearingHouseStateManager, ExecResult
from clearinghouse.exchange.transactions import ClearingHouseOpType, ClearingHouseTransaction


# ============================================================================
# Constants
# ============================================================================

ADMIN = "admin"
ALICE = "alice"
BOB = "bob"
KEEPER = "keeper"

# aligned to the hour so the first funding update is due exactly one period later
T0 = 1_699_999_200

RESERVE = 5 * 10**18
PEG = 1_000
ONE_DOLLAR = MARK_PRICE_PRECISION
FUNDING_PERIOD = 3_600


# ============================================================================
# Helpers
# ============================================================================

def make_tx(
    op_type: ClearingHouseOpType,
    sender: str = ALICE,
    params: dict = None,
    timestamp: int = T0,
) -> ClearingHouseTransaction:
    """Helper to create a ClearingHouseTransaction with sensible defaults."""
    return ClearingHouseTransaction(
        op_type=op_type,
        sender=sender,
        params=params or {},
        timestamp=timestamp,
    )


def execute(
    mgr: ClearingHouseStateManager,
    op_type: ClearingHouseOpType,
    sender: str = ALICE,
    timestamp: int = T0,
    **params,
) -> ExecResult:
    return mgr.process_transaction(make_tx(op_type, sender, params, timestamp))


def context(mgr: ClearingHouseStateManager, now: int = T0, sender: str = ALICE) -> ExecutionContext:
    """Execution context writing straight into the manager's committed store."""
    return ExecutionContext(
        store=mgr.store,
        feeds=mgr.feeds,
        outbox=Outbox(mgr.history),
        now=now,
        sender=sender,
        vault_balances={name: vault.balance for name, vault in mgr.vaults.items()},
    )


def initialize_market(mgr, market_index=0, reserve=RESERVE, peg=PEG, price=ONE_DOLLAR, timestamp=T0):
    result = execute(
        mgr, ClearingHouseOpType.INITIALIZE_MARKET, ADMIN, timestamp,
        market_index=market_index,
        market_name=f"MKT-{market_index}",
        base_asset_reserve=reserve,
        quote_asset_reserve=reserve,
        funding_period=FUNDING_PERIOD,
        peg_multiplier=peg,
    )
    assert result.success, result.error
    result = execute(
        mgr, ClearingHouseOpType.FEED_PRICE, ADMIN, timestamp,
        market_index=market_index, price=price,
    )
    assert result.success, result.error


def deposit(mgr, user=ALICE, amount=10_000_000, timestamp=T0, **params):
    result = execute(mgr, ClearingHouseOpType.DEPOSIT_COLLATERAL, user, timestamp, amount=amount, **params)
    assert result.success, result.error
    return result


def open_long(mgr, user=ALICE, quote=49_750_000, market_index=0, timestamp=T0, **params):
    return execute(
        mgr, ClearingHouseOpType.OPEN_POSITION, user, timestamp,
        direction="long", quote_asset_amount=quote, market_index=market_index, **params,
    )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_state_manager():
    """Reset the singleton before every test."""
    ClearingHouseStateManager.reset_instance()
    yield
    ClearingHouseStateManager.reset_instance()


@pytest.fixture
def bare_mgr() -> ClearingHouseStateManager:
    """Clearing house without markets."""
    return ClearingHouseStateManager.create(admin=ADMIN)


@pytest.fixture
def mgr(bare_mgr) -> ClearingHouseStateManager:
    initialize_market(bare_mgr)
    return bare_mgr
