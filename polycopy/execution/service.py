"""
Copy trading service.

Wires the wallet watcher, copy trader, PnL tracker and exit engine together
and runs them as concurrent asyncio tasks.

Usage:
    python -m polycopy.execution.service
"""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from ..config.settings import Settings, get_settings
from ..scrapers.data_api import PolymarketDataAPI
from ..utils.logging import setup_logging
from .clob_client import ClobClient
from .copy_trader import CopyTrader, CopyTraderConfig
from .pnl_tracker import PnLTracker
from .risk_manager import RiskLimits, RiskManager
from .sizing import PositionSizer, SizingConfig, SizingMode
from .state_store import JsonStateStore
from .take_profit import TakeProfitConfig, TakeProfitManager
from .trade_stats import TradeStatsRecorder
from .watcher import WalletWatcher

logger = logging.getLogger(__name__)


def sizing_config_from_settings(settings: Settings) -> SizingConfig:
    copy = settings.copy_trading
    return SizingConfig(
        mode=SizingMode(copy.mode),
        min_stake=copy.min_stake,
        max_stake=copy.max_stake,
        fixed_stake=copy.fixed_stake,
    )


def risk_limits_from_settings(settings: Settings) -> RiskLimits:
    copy = settings.copy_trading
    return RiskLimits(
        max_buys_per_token=copy.max_buys_per_token,
        cooldown_minutes=copy.cooldown_minutes,
        min_stake=copy.min_stake,
        max_position_percent=copy.max_position_percent,
        skip_sports=copy.skip_sports,
        sports_patterns=list(settings.take_profit.sports_patterns),
    )


def take_profit_config_from_settings(settings: Settings) -> TakeProfitConfig:
    tp = settings.take_profit
    return TakeProfitConfig(
        profit_trigger_percent=tp.profit_trigger_percent,
        trailing_stop_percent=tp.trailing_stop_percent,
        sports_trailing_stop_percent=tp.sports_trailing_stop_percent,
        sports_patterns=list(tp.sports_patterns),
        stop_loss_enabled=tp.stop_loss_enabled,
        update_threshold_percent=tp.update_threshold_percent,
        min_update_interval_seconds=tp.min_update_interval_seconds,
        max_update_attempts=tp.max_update_attempts,
        check_interval_seconds=tp.check_interval_seconds,
        persist_interval_seconds=tp.persist_interval_seconds,
    )


class CopyTradingService:
    """
    Service that combines wallet watching with copy trading and exits.

    Features:
    - Polls tracked wallets for new trades and copies them
    - Tracks session PnL and detects closed positions
    - Manages take-profit / trailing-stop exits with crash recovery
    - Risk management with kill switch
    """

    STATS_INTERVAL_SECONDS = 60
    # Upper bound on waiting for a loop to finish its current cycle
    SHUTDOWN_TIMEOUT_SECONDS = 120

    def __init__(self, settings: Settings):
        """
        Initialize copy trading service.

        Args:
            settings: Application settings
        """
        self.settings = settings
        copy = settings.copy_trading
        wallet_address = settings.polymarket.funder_address

        self.data_api = PolymarketDataAPI(settings)
        self.clob_client = ClobClient(
            private_key=settings.polymarket.private_key,
            api_key=settings.polymarket.api_key,
            api_secret=settings.polymarket.api_secret,
            api_passphrase=settings.polymarket.api_passphrase,
            funder_address=wallet_address,
            host=settings.api.polymarket.clob_url,
            paper_trading=copy.paper_trading,
        )

        self.pnl_tracker = PnLTracker(
            position_source=self.data_api,
            balance_provider=self.clob_client.get_balance,
            wallet_address=wallet_address,
            update_interval=settings.pnl.update_interval_seconds,
        )
        self.risk_manager = RiskManager(risk_limits_from_settings(settings))
        self.sizer = PositionSizer(sizing_config_from_settings(settings))
        self.trade_stats = TradeStatsRecorder(settings.state.stats_file)
        self.copy_trader = CopyTrader(
            trading_client=self.clob_client,
            sizer=self.sizer,
            risk_manager=self.risk_manager,
            pnl_tracker=self.pnl_tracker,
            config=CopyTraderConfig(paper_trading=copy.paper_trading),
            trade_stats=self.trade_stats,
        )
        self.watcher = WalletWatcher(
            self.data_api,
            copy.wallets_to_track,
            poll_interval=copy.poll_interval_seconds,
        )

        self.take_profit: Optional[TakeProfitManager] = None
        if settings.take_profit.enabled:
            self.take_profit = TakeProfitManager(
                trading_client=self.clob_client,
                position_source=self.data_api,
                wallet_address=wallet_address,
                config=take_profit_config_from_settings(settings),
                store=JsonStateStore(settings.state.state_file),
            )

        # Closure listeners fire in registration order
        self.pnl_tracker.add_listener(self.copy_trader.on_position_closed)
        if self.take_profit:
            self.pnl_tracker.add_listener(self.take_profit.handle_position_closed)

        self._start_time: Optional[datetime] = None
        self._running = False
        self._tasks: list[asyncio.Task] = []  # exit engine and PnL loops
        self._stats_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the copy trading service (blocks until stopped)."""
        self._start_time = datetime.now(timezone.utc)
        self._running = True

        mode = "PAPER" if self.copy_trader.config.paper_trading else "LIVE"

        logger.info("=" * 60)
        logger.info(f"POLYMARKET COPY TRADING SERVICE [{mode}]")
        logger.info("=" * 60)

        await self.pnl_tracker.initialize()
        balance = self.pnl_tracker.balance
        if balance is not None:
            self.sizer.set_my_balance(balance)
            self.risk_manager.update_balance(balance)

        if self.take_profit:
            await self.take_profit.recover()
        self._start_loops()

        copy = self.settings.copy_trading
        logger.info(f"Tracking wallets: {', '.join(w[:10] + '...' for w in copy.wallets_to_track)}")
        logger.info(f"Sizing: {copy.mode} (min ${copy.min_stake}, max ${copy.max_stake})")
        logger.info(
            f"Limits: {copy.max_buys_per_token} buys/token, "
            f"cooldown {copy.cooldown_minutes}min, skip_sports={copy.skip_sports}"
        )
        if self.take_profit:
            tp = self.take_profit.config
            logger.info(
                f"Take profit: +{tp.profit_trigger_percent}%, "
                f"trailing stop {tp.trailing_stop_percent}%"
            )
        logger.info("=" * 60)

        try:
            await self._watch()
        except asyncio.CancelledError:
            logger.info("Service received cancel signal")

    def _start_loops(self) -> None:
        if self.take_profit:
            self._tasks.append(asyncio.create_task(self.take_profit.start()))
        self._tasks.append(asyncio.create_task(self.pnl_tracker.start()))
        self._stats_task = asyncio.create_task(self._stats_reporter())

    async def _watch(self) -> None:
        async for event in self.watcher.stream():
            try:
                await self.copy_trader.evaluate_trade(event)
            except Exception as e:
                logger.error(f"Failed to process trade {event.transaction_hash[:16]}: {e}")

    async def stop(self) -> None:
        """Stop the service gracefully."""
        logger.info("Stopping copy trading service...")
        self._running = False

        self.watcher.stop()
        self.pnl_tracker.stop()
        if self.take_profit:
            self.take_profit.stop()

        if self._stats_task:
            self._stats_task.cancel()
            try:
                await self._stats_task
            except asyncio.CancelledError:
                pass
            self._stats_task = None

        # Loops exit at the top of their next cycle, so an exit cascade
        # in progress runs to completion
        for task in self._tasks:
            try:
                await asyncio.wait_for(task, timeout=self.SHUTDOWN_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.error(f"Loop did not stop within {self.SHUTDOWN_TIMEOUT_SECONDS}s, cancelled")
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Task ended with error: {e}")
        self._tasks = []

        # Cancel all open orders if live trading
        if not self.copy_trader.config.paper_trading:
            cancelled = await self.clob_client.cancel_all_orders()
            if cancelled > 0:
                logger.info(f"Cancelled {cancelled} open orders")

        await self.data_api.close()

        # Final stats
        self._log_stats()
        logger.info(self.trade_stats.summary())
        logger.info("Copy trading service stopped")

    async def _stats_reporter(self) -> None:
        """Periodically log statistics."""
        while self._running:
            try:
                await asyncio.sleep(self.STATS_INTERVAL_SECONDS)
                self._log_stats()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Stats reporter error: {e}")

    def _log_stats(self) -> None:
        """Log current statistics."""
        copy_stats = self.copy_trader.stats
        pnl_stats = self.pnl_tracker.stats
        exit_stats = self.take_profit.stats if self.take_profit else {}

        uptime = 0.0
        if self._start_time:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        uptime_str = f"{int(uptime // 3600)}h {int((uptime % 3600) // 60)}m"

        logger.info(
            f"[STATS] "
            f"Copied: {copy_stats['trades_copied']} "
            f"(${copy_stats['copy_volume_usd']:,.2f}) | "
            f"Rejected: {copy_stats['trades_rejected']} | "
            f"Balance: ${pnl_stats.get('balance', 0):,.2f} | "
            f"Session PnL: ${pnl_stats.get('session_pnl', 0):+,.2f} "
            f"({pnl_stats.get('wins', 0)}W/{pnl_stats.get('losses', 0)}L) | "
            f"Exits tracked: {exit_stats.get('tracked_count', 0)} | "
            f"Paused: {copy_stats['risk']['paused']} | "
            f"Uptime: {uptime_str}"
        )

    @property
    def stats(self) -> dict:
        """Get combined service statistics."""
        return {
            "watcher": self.watcher.stats,
            "copy_trader": self.copy_trader.stats,
            "pnl": self.pnl_tracker.stats,
            "take_profit": self.take_profit.stats if self.take_profit else None,
            "clob": self.clob_client.stats,
            "start_time": self._start_time.isoformat() if self._start_time else None,
            "running": self._running,
        }

    # Control methods

    def enable_copy_trading(self) -> None:
        """Enable copy trading."""
        self.copy_trader.enable()

    def disable_copy_trading(self) -> None:
        """Disable copy trading."""
        self.copy_trader.disable()

    def activate_kill_switch(self, reason: str = "Manual") -> None:
        """Activate kill switch to stop all trading."""
        self.risk_manager.activate_kill_switch(reason)

    def deactivate_kill_switch(self) -> None:
        """Deactivate kill switch."""
        self.risk_manager.deactivate_kill_switch()


async def run_service(settings: Settings) -> None:
    """Run the service until SIGINT/SIGTERM."""
    service = CopyTradingService(settings)

    # Setup signal handlers
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        pass  # Windows

    try:
        service_task = asyncio.create_task(service.start())

        done, pending = await asyncio.wait(
            [service_task, asyncio.create_task(shutdown_event.wait())],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")

    finally:
        await service.stop()


async def main() -> None:
    """Entry point for the copy trading service."""
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    settings = get_settings()

    if not settings.copy_trading.wallets_to_track:
        logger.error("WALLETS_TO_TRACK (or copy_trading.wallets_to_track) required")
        sys.exit(1)

    if not settings.polymarket.funder_address:
        logger.error("POLYMARKET_FUNDER_ADDRESS required")
        sys.exit(1)

    if not settings.copy_trading.paper_trading and not settings.polymarket.private_key:
        logger.error("POLYMARKET_PRIVATE_KEY required for live trading")
        sys.exit(1)

    await run_service(settings)


if __name__ == "__main__":
    asyncio.run(main())
