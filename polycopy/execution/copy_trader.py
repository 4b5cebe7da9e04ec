"""
Copy trading engine for Polymarket.

Receives trade events from the wallet watcher and mirrors them, scaled to
our balance, subject to the session's risk gates.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from ..utils.helpers import short_label
from .clob_client import OrderSide, TradingClient
from .pnl_tracker import PnLTracker
from .risk_manager import RiskManager
from .sizing import PositionSizer
from .trade_stats import CopyOutcome, TradeStatsRecorder
from .watcher import TradeEvent

logger = logging.getLogger(__name__)

# Expected rejections that are logged at debug level only
SILENT_ERRORS = ("Low balance", "No position", "not enough balance", "Min $")


@dataclass
class CopyTraderConfig:
    """Configuration for copy trading."""
    enabled: bool = True
    paper_trading: bool = True


@dataclass
class CopiedPosition:
    """A position we opened by copying a tracked wallet."""

    token_id: str
    stake: Decimal  # USDC spent
    entry_price: Decimal
    shares: Decimal = Decimal("0")
    market_label: str = ""
    copied_from: Optional[str] = None
    opened_at: datetime = None

    def __post_init__(self):
        if self.opened_at is None:
            self.opened_at = datetime.now(timezone.utc)


class CopyTrader:
    """
    Automated copy trading engine.

    Usage:
        copy_trader = CopyTrader(
            trading_client=clob_client,
            sizer=PositionSizer(sizing_config),
            risk_manager=RiskManager(limits),
            pnl_tracker=pnl_tracker,
        )
        async for event in watcher.stream():
            await copy_trader.evaluate_trade(event)
    """

    def __init__(
        self,
        trading_client: TradingClient,
        sizer: PositionSizer,
        risk_manager: RiskManager,
        pnl_tracker: Optional[PnLTracker] = None,
        config: Optional[CopyTraderConfig] = None,
        trade_stats: Optional[TradeStatsRecorder] = None,
    ):
        """
        Initialize copy trader.

        Args:
            trading_client: Order execution client
            sizer: Converts observed trades into our stake
            risk_manager: Session limits shared with the PnL tracker
            pnl_tracker: Source of our current balance (optional)
            config: Copy trading configuration
            trade_stats: Persistent per-wallet trade counters (optional)
        """
        self.trading_client = trading_client
        self.sizer = sizer
        self.risk_manager = risk_manager
        self.pnl_tracker = pnl_tracker
        self.config = config or CopyTraderConfig()
        self.trade_stats = trade_stats

        self._positions: dict[str, CopiedPosition] = {}  # token_id -> CopiedPosition

        # Stats
        self._trades_evaluated = 0
        self._trades_copied = 0
        self._trades_rejected = 0
        self._trades_failed = 0
        self._copy_volume_usd = Decimal("0")

        logger.info(
            f"CopyTrader initialized: "
            f"enabled={self.config.enabled}, "
            f"paper={self.config.paper_trading}, "
            f"mode={self.sizer.config.mode.value}"
        )

    async def evaluate_trade(self, event: TradeEvent) -> bool:
        """
        Evaluate a trade event and copy it if the session allows.

        Returns:
            True if a copy order was placed
        """
        outcome = await self._evaluate(event)
        if self.trade_stats:
            self.trade_stats.record(event, outcome)
        return outcome == CopyOutcome.COPIED

    async def _evaluate(self, event: TradeEvent) -> CopyOutcome:
        if not self.config.enabled:
            return CopyOutcome.SKIPPED

        self._trades_evaluated += 1
        label = short_label(event.market_label)

        balance = self.pnl_tracker.balance if self.pnl_tracker else None
        if balance is not None:
            self.sizer.set_my_balance(balance)
            self.risk_manager.update_balance(balance)

        allowed, reason = self.risk_manager.check_trade(event.token_id, event.side, event.market_slug)
        if not allowed:
            self._trades_rejected += 1
            logger.debug(f"Skipped {event.side} {label}: {reason}")
            return CopyOutcome.SKIPPED

        worth, reason = self.sizer.is_worth_copying(event.usdc_amount)
        if not worth:
            self._trades_rejected += 1
            logger.debug(f"Skipped {event.side} {label}: {reason}")
            return CopyOutcome.SKIPPED

        if event.side == "SELL":
            return await self._copy_sell(event)
        return await self._copy_buy(event, balance)

    async def _copy_buy(self, event: TradeEvent, balance: Optional[Decimal]) -> CopyOutcome:
        label = short_label(event.market_label)
        sizing = self.sizer.calculate(event.usdc_amount, event.trader_balance)

        allowed, reason = self.risk_manager.check_stake(sizing.amount, balance or Decimal("0"))
        if not allowed:
            self._trades_rejected += 1
            logger.info(f"Rejected BUY {label}: {reason}")
            return CopyOutcome.SKIPPED

        logger.debug(f"Sizing for {label}: {sizing.reason}")

        result = await self.trading_client.execute_trade(
            event.token_id,
            OrderSide.BUY,
            sizing.amount,
            event.price if event.price > 0 else None,
        )
        if not result.success:
            self._record_failure(event, result.error)
            return CopyOutcome.FAILED

        fill_price = result.price or event.price
        shares = result.size or (sizing.amount / fill_price if fill_price > 0 else Decimal("0"))

        count = self.risk_manager.record_buy(event.token_id)
        existing = self._positions.get(event.token_id)
        if existing:
            existing.stake += sizing.amount
            existing.shares += shares
            existing.entry_price = event.price or existing.entry_price
        else:
            self._positions[event.token_id] = CopiedPosition(
                token_id=event.token_id,
                stake=sizing.amount,
                entry_price=event.price,
                shares=shares,
                market_label=event.market_slug,
                copied_from=event.wallet,
            )

        self._trades_copied += 1
        self._copy_volume_usd += sizing.amount
        logger.info(
            f"BUY ${sizing.amount:.2f} {label} "
            f"[{count}/{self.risk_manager.limits.max_buys_per_token}] "
            f"copied from {event.wallet[:10]}... (order={result.order_id})"
        )

        await self._refresh_balance()
        return CopyOutcome.COPIED

    async def _copy_sell(self, event: TradeEvent) -> CopyOutcome:
        label = short_label(event.market_label)
        position = self._positions.get(event.token_id)
        if position is None:
            self._trades_rejected += 1
            logger.debug(f"Skipped SELL {label}: No position")
            return CopyOutcome.SKIPPED

        # Sell the shares we bought, valued at the trader's price
        amount = position.stake
        if position.shares > 0 and event.price > 0:
            amount = position.shares * event.price

        result = await self.trading_client.execute_trade(
            event.token_id,
            OrderSide.SELL,
            amount,
            event.price if event.price > 0 else None,
        )
        if not result.success:
            self._record_failure(event, result.error)
            return CopyOutcome.FAILED

        del self._positions[event.token_id]
        self.risk_manager.record_sell(event.token_id)
        self._trades_copied += 1
        self._copy_volume_usd += amount

        if position.entry_price > 0 and event.price > 0:
            pnl_pct = (event.price - position.entry_price) / position.entry_price * 100
            pnl = amount - position.stake
            logger.info(f"SELL ${amount:.2f} {label}: P/L ${pnl:+.2f} ({pnl_pct:+.1f}%)")
        else:
            logger.info(f"SELL ${amount:.2f} {label}")

        await self._refresh_balance()
        return CopyOutcome.COPIED

    def _record_failure(self, event: TradeEvent, error: Optional[str]) -> None:
        self._trades_failed += 1
        message = f"{event.side} {short_label(event.market_label)} failed: {error}"
        if any(silent in (error or "") for silent in SILENT_ERRORS):
            logger.debug(message)
        else:
            logger.warning(message)

    async def _refresh_balance(self) -> None:
        """Refresh PnL after a trade and re-evaluate pause/resume."""
        if self.pnl_tracker is None:
            return
        await self.pnl_tracker.force_update()
        info = self.pnl_tracker.get_pnl_info()
        if info is None:
            return
        self.sizer.set_my_balance(info.balance)
        self.risk_manager.update_balance(info.balance)
        logger.info(
            f"Balance ${info.balance:.2f} | session PnL ${info.session_pnl:+.2f} "
            f"({info.wins}W/{info.losses}L)"
        )

    def on_position_closed(self, token_id: str, market_label: str) -> None:
        """Closure listener: forget the copied position and start its cooldown."""
        self._positions.pop(token_id, None)
        self.risk_manager.on_position_closed(token_id, market_label)

    def get_position(self, token_id: str) -> Optional[CopiedPosition]:
        return self._positions.get(token_id)

    def enable(self) -> None:
        """Enable copy trading."""
        self.config.enabled = True
        logger.info("Copy trading ENABLED")

    def disable(self) -> None:
        """Disable copy trading."""
        self.config.enabled = False
        logger.info("Copy trading DISABLED")

    @property
    def stats(self) -> dict:
        """Get copy trader statistics."""
        return {
            "enabled": self.config.enabled,
            "paper_trading": self.config.paper_trading,
            "trades_evaluated": self._trades_evaluated,
            "trades_copied": self._trades_copied,
            "trades_rejected": self._trades_rejected,
            "trades_failed": self._trades_failed,
            "copy_rate": (
                self._trades_copied / self._trades_evaluated
                if self._trades_evaluated > 0 else 0
            ),
            "copy_volume_usd": float(self._copy_volume_usd),
            "open_copies": len(self._positions),
            "risk": self.risk_manager.status,
        }
