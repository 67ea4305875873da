"""
Clearing House Package

vAMM perpetual-futures clearing house. Core imports are lazily loaded;
for direct module access, import from submodules:

    from clearinghouse.exchange import ClearingHouseStateManager
    from clearinghouse.config import load_config
    from clearinghouse.exceptions import InsufficientCollateral
"""

__version__ = "0.1.0"


# Lazy imports to avoid loading everything at package import
def __getattr__(name):
    """Lazy module loading."""
    if name == 'ClearingHouseStateManager':
        from .exchange.state_manager import ClearingHouseStateManager
        return ClearingHouseStateManager
    elif name == 'ClearingHouseTransaction':
        from .exchange.transactions import ClearingHouseTransaction
        return ClearingHouseTransaction
    elif name == 'ClearingHouseOpType':
        from .exchange.transactions import ClearingHouseOpType
        return ClearingHouseOpType
    elif name == 'load_config':
        from .config import load_config
        return load_config
    raise AttributeError(f"module 'clearinghouse' has no attribute {name!r}")

__all__ = ['ClearingHouseStateManager', 'ClearingHouseTransaction', 'ClearingHouseOpType', 'load_config']
