"""
PnL tracker for copy trading.

Snapshots free balance and open positions on a timer, diffs consecutive
snapshots to detect closed positions, and accumulates realized PnL and
win/loss counts. Closure listeners (risk manager cooldown, exit engine
deregistration) are notified once per closed token.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Union

from ..scrapers.data_api import MIN_POSITION_SIZE, PositionSource, UserPosition
from ..utils.helpers import short_label, utcnow

logger = logging.getLogger(__name__)

# Realized PnL beyond +/- this many dollars counts as a win/loss
BREAKEVEN_BAND = Decimal("0.01")

ClosureListener = Callable[[str, str], Union[Awaitable[None], None]]
BalanceProvider = Callable[[], Awaitable[Decimal]]


@dataclass
class PositionSnapshot:
    """One open position at snapshot time."""

    token_id: str
    size: Decimal
    avg_price: Decimal
    current_price: Decimal
    market_label: str = ""

    @classmethod
    def from_position(cls, position: UserPosition) -> "PositionSnapshot":
        current = position.current_price if position.current_price > 0 else position.avg_price
        return cls(
            token_id=position.token_id,
            size=position.size,
            avg_price=position.avg_price,
            current_price=current,
            market_label=position.market_slug,
        )

    @property
    def cost_basis(self) -> Decimal:
        return self.size * self.avg_price

    @property
    def current_value(self) -> Decimal:
        return self.size * self.current_price

    @property
    def unrealized_pnl(self) -> Decimal:
        return self.current_value - self.cost_basis


@dataclass
class PortfolioSnapshot:
    """Free balance plus open positions at a point in time."""

    timestamp: datetime
    balance: Decimal
    positions: dict[str, PositionSnapshot] = field(default_factory=dict)

    @property
    def positions_value(self) -> Decimal:
        return sum((p.current_value for p in self.positions.values()), Decimal("0"))

    @property
    def total_equity(self) -> Decimal:
        return self.balance + self.positions_value

    @property
    def unrealized_pnl(self) -> Decimal:
        return sum((p.unrealized_pnl for p in self.positions.values()), Decimal("0"))


@dataclass
class ClosedPosition:
    """A position that disappeared between two snapshots."""

    token_id: str
    market_label: str
    realized_pnl: Decimal
    cost_basis: Decimal
    closed_at: datetime

    @property
    def outcome(self) -> str:
        if self.realized_pnl > BREAKEVEN_BAND:
            return "win"
        if self.realized_pnl < -BREAKEVEN_BAND:
            return "loss"
        return "breakeven"


@dataclass
class PnLInfo:
    """Session PnL summary."""

    start_equity: Decimal
    current_equity: Decimal
    balance: Decimal
    positions_value: Decimal
    realized_pnl: Decimal
    unrealized_pnl: Decimal
    open_positions: int
    closed_positions: int
    wins: int
    losses: int

    @property
    def session_pnl(self) -> Decimal:
        """Only closed positions count towards session PnL."""
        return self.realized_pnl

    @property
    def equity_change(self) -> Decimal:
        return self.current_equity - self.start_equity

    @property
    def win_rate(self) -> Optional[float]:
        decided = self.wins + self.losses
        if decided == 0:
            return None
        return self.wins / decided * 100

    def to_dict(self) -> dict:
        return {
            "start_equity": float(self.start_equity),
            "current_equity": float(self.current_equity),
            "balance": float(self.balance),
            "positions_value": float(self.positions_value),
            "session_pnl": float(self.session_pnl),
            "realized_pnl": float(self.realized_pnl),
            "unrealized_pnl": float(self.unrealized_pnl),
            "equity_change": float(self.equity_change),
            "open_positions": self.open_positions,
            "closed_positions": self.closed_positions,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.win_rate,
        }


class PnLTracker:
    """
    Tracks session PnL by diffing portfolio snapshots.

    Fetch failures are logged and the previous snapshot is kept, so a
    flaky API never produces phantom closures.
    """

    def __init__(
        self,
        position_source: PositionSource,
        balance_provider: BalanceProvider,
        wallet_address: str,
        update_interval: float = 30,
    ):
        """
        Initialize PnL tracker.

        Args:
            position_source: Provides open positions for wallet_address
            balance_provider: Async callable returning free USDC balance
            wallet_address: Wallet whose positions are tracked
            update_interval: Seconds between snapshots when running
        """
        self.position_source = position_source
        self.balance_provider = balance_provider
        self.wallet_address = wallet_address
        self.update_interval = update_interval

        self._listeners: list[ClosureListener] = []
        self._snapshot: Optional[PortfolioSnapshot] = None
        self._start_equity: Optional[Decimal] = None
        self._running = False
        self._stop_event = asyncio.Event()

        # Session accumulators
        self._realized_pnl = Decimal("0")
        self._wins = 0
        self._losses = 0
        self._closed: list[ClosedPosition] = []
        self._failed_updates = 0

        logger.info("PnLTracker initialized")

    def add_listener(self, listener: ClosureListener) -> None:
        """Register a (token_id, market_label) closure listener."""
        self._listeners.append(listener)

    async def initialize(self) -> bool:
        """Take the first snapshot and record start equity."""
        snapshot = await self._take_snapshot()
        if snapshot is None:
            logger.error("PnL tracker could not take its first snapshot")
            return False

        self._snapshot = snapshot
        self._start_equity = snapshot.total_equity
        logger.info(
            f"PnL tracking started: equity ${snapshot.total_equity:.2f} "
            f"(balance ${snapshot.balance:.2f}, {len(snapshot.positions)} positions)"
        )
        return True

    async def update(self) -> list[ClosedPosition]:
        """
        Take a snapshot and process any closures since the previous one.

        Returns:
            Positions closed since the previous snapshot
        """
        snapshot = await self._take_snapshot()
        if snapshot is None:
            return []

        previous = self._snapshot
        self._snapshot = snapshot
        if previous is None:
            self._start_equity = snapshot.total_equity
            return []

        closed = []
        for token_id, old in previous.positions.items():
            if token_id in snapshot.positions:
                continue
            closed_position = ClosedPosition(
                token_id=token_id,
                market_label=old.market_label,
                realized_pnl=old.unrealized_pnl,
                cost_basis=old.cost_basis,
                closed_at=snapshot.timestamp,
            )
            self._record_closure(closed_position)
            closed.append(closed_position)

        for closed_position in closed:
            await self._notify(closed_position)

        return closed

    async def force_update(self) -> list[ClosedPosition]:
        """Run an out-of-band update (e.g. right after a copy trade)."""
        return await self.update()

    async def start(self) -> None:
        """Run snapshot updates until stop() is called."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()

        if self._snapshot is None:
            await self.initialize()

        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.update_interval)
            except asyncio.TimeoutError:
                pass
            if not self._running:
                break
            await self.update()
        logger.info("PnL tracker stopped")

    def stop(self) -> None:
        """Request the loop to exit; an update in progress completes."""
        self._running = False
        self._stop_event.set()

    async def _take_snapshot(self) -> Optional[PortfolioSnapshot]:
        try:
            balance, positions = await asyncio.gather(
                self.balance_provider(),
                self.position_source.get_positions(self.wallet_address),
            )
        except Exception as e:
            self._failed_updates += 1
            logger.warning(f"PnL snapshot failed, keeping previous: {e}")
            return None

        return PortfolioSnapshot(
            timestamp=utcnow(),
            balance=Decimal(str(balance)),
            positions={
                p.token_id: PositionSnapshot.from_position(p)
                for p in positions
                if p.size > MIN_POSITION_SIZE
            },
        )

    def _record_closure(self, closed: ClosedPosition) -> None:
        self._realized_pnl += closed.realized_pnl
        outcome = closed.outcome
        if outcome == "win":
            self._wins += 1
        elif outcome == "loss":
            self._losses += 1

        self._closed.append(closed)
        # Keep only recent closures in memory
        if len(self._closed) > 1000:
            self._closed = self._closed[-500:]

        logger.info(
            f"Position closed: {short_label(closed.market_label) or closed.token_id[:16]} "
            f"{outcome.upper()} ${closed.realized_pnl:+.2f} "
            f"(session realized ${self._realized_pnl:+.2f}, {self._wins}W/{self._losses}L)"
        )

    async def _notify(self, closed: ClosedPosition) -> None:
        for listener in self._listeners:
            try:
                result = listener(closed.token_id, closed.market_label)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Closure listener failed for {closed.token_id[:16]}...: {e}")

    def get_pnl_info(self) -> Optional[PnLInfo]:
        """Current session summary, or None before the first snapshot."""
        if self._snapshot is None:
            return None
        snapshot = self._snapshot
        return PnLInfo(
            start_equity=self._start_equity if self._start_equity is not None else snapshot.total_equity,
            current_equity=snapshot.total_equity,
            balance=snapshot.balance,
            positions_value=snapshot.positions_value,
            realized_pnl=self._realized_pnl,
            unrealized_pnl=snapshot.unrealized_pnl,
            open_positions=len(snapshot.positions),
            closed_positions=len(self._closed),
            wins=self._wins,
            losses=self._losses,
        )

    def get_open_positions(self) -> list[PositionSnapshot]:
        """Positions from the latest snapshot."""
        if self._snapshot is None:
            return []
        return list(self._snapshot.positions.values())

    def get_closed_positions(self) -> list[ClosedPosition]:
        return list(self._closed)

    @property
    def balance(self) -> Optional[Decimal]:
        """Free balance from the latest snapshot."""
        return self._snapshot.balance if self._snapshot else None

    @property
    def stats(self) -> dict:
        """Get tracker statistics."""
        info = self.get_pnl_info()
        return {
            "initialized": self._snapshot is not None,
            "failed_updates": self._failed_updates,
            "listeners": len(self._listeners),
            **(info.to_dict() if info else {}),
        }
