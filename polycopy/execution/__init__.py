"""
Execution module for Polymarket copy trading.

Provides order execution, copy trading, PnL tracking and the take-profit
exit engine using the Polymarket CLOB API.

Example usage:

    from polycopy.execution import TakeProfitManager, JsonStateStore

    manager = TakeProfitManager(
        trading_client=clob_client,
        position_source=data_api,
        wallet_address=funder_address,
        store=JsonStateStore("data/take_profit_state.json"),
    )
    await manager.recover()
    await manager.start()
"""

from .clob_client import ClobClient, OrderSide, OrderType, TradeErrorKind, TradeResult
from .copy_trader import CopyTrader, CopyTraderConfig
from .pnl_tracker import ClosedPosition, PnLInfo, PnLTracker
from .risk_manager import RiskLimits, RiskManager, RiskState
from .sizing import PositionSizer, SizingConfig, SizingMode, SizingResult
from .state_store import JsonStateStore, MemoryStateStore, StateStoreError
from .trade_stats import CopyOutcome, TradeStatsRecorder
from .take_profit import (
    EmergencyReason,
    ExitState,
    TakeProfitConfig,
    TakeProfitManager,
    TrackedPosition,
)
from .watcher import TradeEvent, WalletWatcher

__all__ = [
    # CLOB Client
    "ClobClient",
    "OrderSide",
    "OrderType",
    "TradeErrorKind",
    "TradeResult",
    # Copy Trading
    "CopyTrader",
    "CopyTraderConfig",
    "TradeEvent",
    "WalletWatcher",
    # PnL
    "ClosedPosition",
    "PnLInfo",
    "PnLTracker",
    # Risk Management
    "RiskLimits",
    "RiskManager",
    "RiskState",
    # Sizing
    "PositionSizer",
    "SizingConfig",
    "SizingMode",
    "SizingResult",
    # Exit engine
    "EmergencyReason",
    "ExitState",
    "JsonStateStore",
    "MemoryStateStore",
    "StateStoreError",
    "TakeProfitConfig",
    "TakeProfitManager",
    "TrackedPosition",
    # Trade statistics
    "CopyOutcome",
    "TradeStatsRecorder",
]
