"""
Wallet watcher.

Polls the tracked wallets' recent trades and emits a TradeEvent for each
trade not seen before. Trades that already existed when the watcher started
are marked as seen and never copied.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Optional

from ..scrapers.data_api import PolymarketDataAPI, UserTrade

logger = logging.getLogger(__name__)

# Seen-trade ids kept in memory before pruning
MAX_SEEN_TRADES = 10000


@dataclass
class TradeEvent:
    """A new trade by a tracked wallet."""

    wallet: str
    token_id: str
    condition_id: str
    side: str  # BUY or SELL
    price: Decimal
    size: Decimal  # shares
    usdc_amount: Decimal
    timestamp: int
    transaction_hash: str = ""
    market_slug: str = ""
    outcome: str = ""
    trader_balance: Optional[Decimal] = None  # For proportional sizing

    @classmethod
    def from_trade(cls, trade: UserTrade, trader_balance: Optional[Decimal] = None) -> "TradeEvent":
        return cls(
            wallet=trade.wallet,
            token_id=trade.token_id,
            condition_id=trade.condition_id,
            side=trade.side,
            price=trade.price,
            size=trade.size,
            usdc_amount=trade.usdc_size,
            timestamp=trade.timestamp,
            transaction_hash=trade.transaction_hash,
            market_slug=trade.market_slug,
            outcome=trade.outcome,
            trader_balance=trader_balance,
        )

    @property
    def market_label(self) -> str:
        return self.market_slug or self.token_id[:16]


class WalletWatcher:
    """
    Detects new trades from a set of wallets by polling the Data API.

    Usage:
        watcher = WalletWatcher(data_api, ["0xabc..."])
        async for event in watcher.stream():
            await copy_trader.evaluate_trade(event)
    """

    def __init__(
        self,
        data_api: PolymarketDataAPI,
        wallets: list[str],
        poll_interval: float = 5,
        trade_limit: int = 20,
    ):
        self.data_api = data_api
        self.wallets = [w.lower() for w in wallets]
        self.poll_interval = poll_interval
        self.trade_limit = trade_limit

        self._seen: dict[str, int] = {}  # trade_id -> timestamp
        self._initialized = False
        self._running = False

        # Stats
        self._polls = 0
        self._events_emitted = 0
        self._errors = 0

    def add_wallet(self, wallet: str) -> None:
        """Add a wallet to track."""
        address = wallet.lower()
        if address not in self.wallets:
            self.wallets.append(address)
            logger.info(f"Added wallet to track: {address}")

    def remove_wallet(self, wallet: str) -> None:
        """Remove a wallet from tracking."""
        address = wallet.lower()
        if address in self.wallets:
            self.wallets.remove(address)
            logger.info(f"Removed wallet from tracking: {address}")

    async def initialize(self) -> None:
        """Mark every trade that already exists as seen."""
        for wallet in self.wallets:
            try:
                trades = await self.data_api.get_trades(wallet, limit=50)
            except Exception as e:
                logger.warning(f"Could not load trade history for {wallet[:10]}...: {e}")
                continue
            for trade in trades:
                self._mark_seen(trade)
            logger.debug(f"Marked {len(trades)} historic trades as seen for {wallet[:10]}...")

        self._initialized = True
        logger.info(f"Watching {len(self.wallets)} wallets for new trades")

    async def check_once(self) -> list[TradeEvent]:
        """Poll every wallet once and return new trade events."""
        if not self._initialized:
            await self.initialize()

        self._polls += 1
        events = []
        for wallet in self.wallets:
            events.extend(await self._check_wallet(wallet))
        self._prune_seen()
        return events

    async def stream(self) -> AsyncIterator[TradeEvent]:
        """Yield new trade events until stop() is called."""
        self._running = True
        if not self._initialized:
            await self.initialize()

        while self._running:
            for event in await self.check_once():
                yield event
            if not self._running:
                break
            await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        self._running = False

    async def _check_wallet(self, wallet: str) -> list[TradeEvent]:
        try:
            trades = await self.data_api.get_trades(wallet, limit=self.trade_limit)
        except Exception as e:
            self._errors += 1
            logger.warning(f"Error fetching trades for {wallet[:10]}...: {e}")
            return []

        new_trades = [t for t in trades if t.trade_id not in self._seen]
        if not new_trades:
            return []

        trader_balance = await self._trader_balance(wallet)

        events = []
        # API returns newest first; emit in chronological order
        for trade in sorted(new_trades, key=lambda t: t.timestamp):
            self._mark_seen(trade)
            events.append(TradeEvent.from_trade(trade, trader_balance))
            logger.info(
                f"New trade from {wallet[:10]}...: {trade.side} "
                f"${trade.usdc_size:.2f} {trade.market_slug[:25] or trade.token_id[:16]} @ {trade.price}"
            )

        self._events_emitted += len(events)
        return events

    async def _trader_balance(self, wallet: str) -> Optional[Decimal]:
        try:
            total, _, _ = await self.data_api.get_total_balance(wallet)
        except Exception as e:
            logger.debug(f"Balance lookup failed for {wallet[:10]}...: {e}")
            return None
        return total if total > 0 else None

    def _mark_seen(self, trade: UserTrade) -> None:
        self._seen[trade.trade_id] = trade.timestamp

    def _prune_seen(self) -> None:
        if len(self._seen) <= MAX_SEEN_TRADES:
            return
        newest = sorted(self._seen.items(), key=lambda item: item[1], reverse=True)
        self._seen = dict(newest[: MAX_SEEN_TRADES // 2])

    @property
    def stats(self) -> dict:
        """Get watcher statistics."""
        return {
            "wallets": len(self.wallets),
            "polls": self._polls,
            "events_emitted": self._events_emitted,
            "errors": self._errors,
            "seen_trades": len(self._seen),
        }
