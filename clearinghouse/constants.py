"""
Clearing House Constants

This module consolidates the fixed-point precision scales, protocol limits
and environment configuration used throughout the codebase. Constants are
organized by category for easy reference and maintenance.
"""
import ast
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

CLEARINGHOUSE_DEFAULTS = {
    'CLEARINGHOUSE_CONFIG_PATH':       'config.toml',
    'CLEARINGHOUSE_ADMIN':             'admin',
}

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
}


# WARNING: THE PRECISION VALUES BELOW ARE NOT MEANT TO BE CHANGED! EVERY STORED AMOUNT, PRICE AND
# FUNDING RATE IS SCALED BY THEM. CHANGING ONE INVALIDATES ALL HISTORICAL COMPUTATIONS.

# ==================================================================================
# PRECISION SCALES
# ==================================================================================
MARK_PRICE_PRECISION = 10_000_000_000          # 1e10
PEG_PRECISION = 1_000                          # 1e3
AMM_RESERVE_PRECISION = 10_000_000_000_000     # 1e13
QUOTE_PRECISION = 1_000_000                    # 1e6
FUNDING_PAYMENT_PRECISION = 10_000             # 1e4
MARGIN_PRECISION = 10_000                      # 1e4
PRICE_SPREAD_PRECISION = 10_000                # 1e4


# ==================================================================================
# PRECISION RATIOS
# ==================================================================================
PRICE_TO_PEG_PRECISION_RATIO = MARK_PRICE_PRECISION // PEG_PRECISION                       # 1e7
AMM_TO_QUOTE_PRECISION_RATIO = AMM_RESERVE_PRECISION // QUOTE_PRECISION                    # 1e7
AMM_TIMES_PEG_TO_QUOTE_PRECISION_RATIO = AMM_RESERVE_PRECISION * PEG_PRECISION // QUOTE_PRECISION  # 1e10
PRICE_TO_QUOTE_PRECISION_RATIO = MARK_PRICE_PRECISION // QUOTE_PRECISION                   # 1e4
MARK_PRICE_TIMES_AMM_TO_QUOTE_PRECISION_RATIO = MARK_PRICE_PRECISION * AMM_TO_QUOTE_PRECISION_RATIO  # 1e17
QUOTE_TO_BASE_AMT_FUNDING_PRECISION = AMM_RESERVE_PRECISION * MARK_PRICE_PRECISION * FUNDING_PAYMENT_PRECISION // QUOTE_PRECISION  # 1e21


# ==================================================================================
# PROTOCOL LIMITS
# ==================================================================================
ONE_HOUR = 3600
ONE_DAY = 24 * ONE_HOUR

# Share of lifetime fees that must stay in the market's fee pool
SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_NUMERATOR = 1
SHARE_OF_FEES_ALLOCATED_TO_CLEARING_HOUSE_DENOMINATOR = 2

MINIMUM_MARGIN_RATIO = MARGIN_PRECISION // 50   # 2 %, 50x leverage
MAXIMUM_MARGIN_RATIO = MARGIN_PRECISION         # 100 %, 1x leverage

MAX_LIQUIDATION_SLIPPAGE = 100                  # 1 % in PRICE_SPREAD_PRECISION
MAX_MARK_TWAP_DIVERGENCE = 5_000                # 50 % in PRICE_SPREAD_PRECISION

UPDATE_K_ALLOWED_PRICE_CHANGE = MARK_PRICE_PRECISION // 10_000

DEFAULT_MINIMUM_QUOTE_ASSET_TRADE_SIZE = 10_000_000
DEFAULT_MINIMUM_BASE_ASSET_TRADE_SIZE = 10_000_000

# Users with collateral at or above this floor cannot have their orders expired
EXPIRE_ORDERS_COLLATERAL_FLOOR = 10 * QUOTE_PRECISION
MAX_EXPIRE_ORDERS_REWARD = QUOTE_PRECISION // 100

MAX_ORDERS_PER_MARKET = 32


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    __hash__ = int.__hash__


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
DEFAULTS = CLEARINGHOUSE_DEFAULTS | LOGGER_DEFAULTS
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Avoids exceptions by only calling ast.literal_eval for known literals.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)
