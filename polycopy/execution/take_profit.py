"""
Take-profit and trailing-stop exit engine.

Every open position whose unrealized profit crosses the trigger is tracked
until it is closed. While tracked, a GTC limit sell sits a little below the
market and follows new highs; a drawdown from the peak beyond the trailing
stop (or an order that keeps sitting above the market) escalates to an
emergency liquidation that walks down a ladder of exit tiers.

Per-token life cycle::

    UNTRACKED -> TRACKING -> ORDER_LIVE <-> ORDER_STALE -> EMERGENCY_EXIT -> CLOSED

The tracking table is checkpointed through a StateStore and reconciled
against the live position list on startup.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from ..config.markets import MarketClassifier, DEFAULT_SPORTS_PATTERNS
from ..scrapers.data_api import MIN_POSITION_SIZE, PositionSource, UserPosition
from ..utils.helpers import parse_datetime, short_label, utcnow
from .clob_client import OrderSide, OrderType, TradeErrorKind, TradeResult, TradingClient
from .state_store import MemoryStateStore, StateStore, StateStoreError

logger = logging.getLogger(__name__)

# Take-profit orders sit this far below the current price
ORDER_DISCOUNT = Decimal("0.02")

# Take-profit orders never go below entry * 1.03
MIN_PROFIT_MULTIPLIER = Decimal("1.03")

# Worst realized return a trailing-stop exit may lock in, relative to entry
MAX_LOSS_TOLERANCE = Decimal("-0.01")

# An order priced this far above the market is not expected to fill
STALE_ORDER_MARGIN = Decimal("0.05")

# Prices outside this band mean the market is (about to be) resolved
MAX_PRICE = Decimal("0.99")
MIN_PRICE = Decimal("0.01")

# Wait between emergency attempts, indexed by prior consecutive failures
EMERGENCY_BACKOFF_MINUTES = (1, 5, 15, 30)

# Ignore a token in the position feed for this long after we sold it
RECENTLY_CLOSED_GRACE = timedelta(minutes=5)


class ExitState(str, Enum):
    """Life-cycle state of a tracked position."""
    TRACKING = "tracking"
    ORDER_LIVE = "order_live"
    ORDER_STALE = "order_stale"
    EMERGENCY_EXIT = "emergency_exit"
    CLOSED = "closed"


class EmergencyReason(str, Enum):
    TRAILING_STOP = "trailing_stop"
    STALE_ORDER = "stale_order"


@dataclass(frozen=True)
class ExitTier:
    """One rung of the emergency liquidation ladder."""
    order_type: OrderType
    discount: Decimal  # below the reference (best bid) price


EMERGENCY_TIERS = (
    ExitTier(OrderType.FOK, Decimal("0.02")),
    ExitTier(OrderType.FOK, Decimal("0.05")),
    ExitTier(OrderType.GTC, Decimal("0.10")),
)


@dataclass
class TakeProfitConfig:
    """Configuration for the exit engine."""

    # Start managing a position at +X% unrealized profit
    profit_trigger_percent: Decimal = Decimal("15")

    # Trailing stop, measured from the highest price seen
    trailing_stop_percent: Decimal = Decimal("15")
    sports_trailing_stop_percent: Decimal = Decimal("25")
    sports_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_SPORTS_PATTERNS))
    stop_loss_enabled: bool = True

    # Repositioning
    update_threshold_percent: Decimal = Decimal("5")
    min_update_interval_seconds: float = 30
    max_update_attempts: int = 5

    # Timing
    check_interval_seconds: float = 3
    persist_interval_seconds: float = 60


@dataclass
class TrackedPosition:
    """Exit-engine bookkeeping for one token."""

    token_id: str
    entry_price: Decimal
    size: Decimal
    highest_price_seen: Decimal
    market_label: str = ""
    started_at: datetime = None
    active_order_id: Optional[str] = None
    active_order_price: Optional[Decimal] = None
    state: ExitState = ExitState.TRACKING
    update_attempts: int = 0
    last_update_time: Optional[datetime] = None
    emergency_reason: Optional[EmergencyReason] = None
    emergency_failed_count: int = 0
    last_emergency_attempt_time: Optional[datetime] = None

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = utcnow()

    @property
    def min_profit_price(self) -> Decimal:
        return self.entry_price * MIN_PROFIT_MULTIPLIER

    @property
    def in_emergency(self) -> bool:
        return self.emergency_reason is not None

    def observe_price(self, price: Decimal) -> bool:
        """Record a price; returns True on a new peak."""
        if price > self.highest_price_seen:
            self.highest_price_seen = price
            self.update_attempts = 0
            return True
        return False

    def drop_from_peak(self, price: Decimal) -> Decimal:
        if self.highest_price_seen <= 0:
            return Decimal("0")
        return (self.highest_price_seen - price) / self.highest_price_seen

    def return_at(self, price: Decimal) -> Decimal:
        """Fractional return vs entry if sold at price."""
        if self.entry_price <= 0:
            return Decimal("0")
        return (price - self.entry_price) / self.entry_price

    def clear_order(self) -> None:
        self.active_order_id = None
        self.active_order_price = None

    def to_dict(self) -> dict:
        """Convert to dictionary for the state file."""
        return {
            "token_id": self.token_id,
            "entry_price": str(self.entry_price),
            "size": str(self.size),
            "highest_price_seen": str(self.highest_price_seen),
            "market_label": self.market_label,
            "started_at": self.started_at.isoformat(),
            "active_order_id": self.active_order_id,
            "active_order_price": (
                str(self.active_order_price) if self.active_order_price is not None else None
            ),
            "state": self.state.value,
            "update_attempts": self.update_attempts,
            "last_update_time": (
                self.last_update_time.isoformat() if self.last_update_time else None
            ),
            "emergency_reason": self.emergency_reason.value if self.emergency_reason else None,
            "emergency_failed_count": self.emergency_failed_count,
            "last_emergency_attempt_time": (
                self.last_emergency_attempt_time.isoformat()
                if self.last_emergency_attempt_time else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TrackedPosition":
        order_price = data.get("active_order_price")
        reason = data.get("emergency_reason")
        return cls(
            token_id=data["token_id"],
            entry_price=Decimal(str(data["entry_price"])),
            size=Decimal(str(data["size"])),
            highest_price_seen=Decimal(str(data["highest_price_seen"])),
            market_label=data.get("market_label") or "",
            started_at=parse_datetime(data.get("started_at")),
            active_order_id=data.get("active_order_id"),
            active_order_price=Decimal(str(order_price)) if order_price is not None else None,
            state=ExitState(data.get("state", ExitState.TRACKING.value)),
            update_attempts=int(data.get("update_attempts", 0)),
            last_update_time=parse_datetime(data.get("last_update_time")),
            emergency_reason=EmergencyReason(reason) if reason else None,
            emergency_failed_count=int(data.get("emergency_failed_count", 0)),
            last_emergency_attempt_time=parse_datetime(data.get("last_emergency_attempt_time")),
        )


class TakeProfitManager:
    """
    Owns the life cycle of every profitable position until it is closed.

    Usage:
        manager = TakeProfitManager(
            trading_client=clob_client,
            position_source=data_api,
            wallet_address=funder_address,
            store=JsonStateStore("data/take_profit_state.json"),
        )
        await manager.recover()
        await manager.start()  # runs until stop()

    Each loop iteration runs to completion before the next await on the
    timer, so the tracking table needs no lock under asyncio.
    """

    def __init__(
        self,
        trading_client: TradingClient,
        position_source: PositionSource,
        wallet_address: str,
        config: Optional[TakeProfitConfig] = None,
        store: Optional[StateStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the exit engine.

        Args:
            trading_client: Places and cancels orders, reports the best bid
            position_source: Live open positions for wallet_address
            wallet_address: Wallet (proxy) that holds the positions
            config: Exit engine configuration
            store: Checkpoint storage for the tracking table
            clock: Returns the current UTC time (overridable in tests)
        """
        self.trading_client = trading_client
        self.position_source = position_source
        self.wallet_address = wallet_address
        self.config = config or TakeProfitConfig()
        self.store = store or MemoryStateStore()
        self._now = clock or utcnow

        self._classifier = MarketClassifier(self.config.sports_patterns)
        self._positions: dict[str, TrackedPosition] = {}  # token_id -> TrackedPosition
        self._recently_closed: dict[str, datetime] = {}
        self._running = False
        self._last_persist: Optional[datetime] = None
        self._stop_event = asyncio.Event()

        # Stats
        self._orders_placed = 0
        self._repositions = 0
        self._emergency_exits = 0
        self._positions_closed = 0

        logger.info(
            f"TakeProfitManager initialized: "
            f"trigger=+{self.config.profit_trigger_percent}%, "
            f"trailing_stop={self.config.trailing_stop_percent}% "
            f"(sports {self.config.sports_trailing_stop_percent}%), "
            f"stop_loss={'on' if self.config.stop_loss_enabled else 'off'}"
        )

    # =========================================================================
    # Loop control
    # =========================================================================

    async def start(self) -> None:
        """Run the polling loop until stop() is called."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        logger.info(f"Exit engine started (interval={self.config.check_interval_seconds}s)")

        try:
            while self._running:
                await self.check_positions()
                if not self._running:
                    break
                await self._sleep(self.config.check_interval_seconds)
        finally:
            self._save()
            logger.info("Exit engine stopped")

    def stop(self) -> None:
        """Request the loop to exit after the current iteration."""
        self._running = False
        self._stop_event.set()

    async def _sleep(self, seconds: float) -> None:
        """Wait between cycles, waking early on stop()."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Recovery
    # =========================================================================

    async def recover(self) -> int:
        """
        Restore the tracking table after a restart.

        Tokens no longer held are dropped. For tokens still held the saved
        order is forgotten (it may have filled or been cancelled while we
        were down) and the peak is raised to the current price if higher.

        Returns:
            Number of positions being tracked after recovery
        """
        try:
            state = self.store.load()
        except StateStoreError as e:
            logger.error(f"Failed to load exit state, starting fresh: {e}")
            return 0

        if not state:
            logger.info("No saved exit state found - starting fresh")
            return 0

        loaded: dict[str, TrackedPosition] = {}
        for raw in state.get("positions", []):
            try:
                tracked = TrackedPosition.from_dict(raw)
            except (KeyError, TypeError, ValueError, ArithmeticError) as e:
                logger.warning(f"Skipping malformed saved position: {e}")
                continue
            loaded[tracked.token_id] = tracked

        live: Optional[dict[str, UserPosition]] = None
        try:
            positions = await self.position_source.get_positions(self.wallet_address)
            live = {p.token_id: p for p in positions if p.size > MIN_POSITION_SIZE}
        except Exception as e:
            logger.warning(f"Live positions unavailable during recovery, reconciling next cycle: {e}")

        dropped = 0
        for token_id, tracked in list(loaded.items()):
            if live is not None and token_id not in live:
                logger.info(f"Dropping {short_label(tracked.market_label)}: no longer held")
                del loaded[token_id]
                dropped += 1
                continue

            tracked.clear_order()
            tracked.state = ExitState.EMERGENCY_EXIT if tracked.in_emergency else ExitState.TRACKING

            if live is not None:
                pos = live[token_id]
                tracked.size = pos.size
                if pos.current_price > tracked.highest_price_seen:
                    logger.info(
                        f"Raising peak for {short_label(tracked.market_label)}: "
                        f"{tracked.highest_price_seen} -> {pos.current_price}"
                    )
                    tracked.highest_price_seen = pos.current_price

        self._positions = loaded
        self._save()

        logger.info(
            f"Recovered exit state from {state.get('saved_at', 'unknown')}: "
            f"{len(loaded)} tracked, {dropped} dropped"
        )
        return len(loaded)

    # =========================================================================
    # Poll cycle
    # =========================================================================

    async def check_positions(self) -> None:
        """Run one evaluation cycle over all live positions."""
        try:
            positions = await self.position_source.get_positions(self.wallet_address)
        except Exception as e:
            logger.warning(f"Position fetch failed, retrying next cycle: {e}")
            return

        live = {p.token_id: p for p in positions if p.size > MIN_POSITION_SIZE}
        self._cleanup_closed(live)
        self._expire_recently_closed()

        for token_id, pos in live.items():
            try:
                tracked = self._positions.get(token_id)
                if tracked is not None:
                    await self._update_tracked(tracked, pos)
                elif self._should_start_tracking(pos):
                    await self._start_tracking(pos)
            except Exception as e:
                logger.error(f"Exit engine error on {short_label(pos.market_slug) or token_id[:16]}: {e}")

        self._maybe_persist()

    async def handle_position_closed(self, token_id: str, market_label: str) -> None:
        """Closure listener: forget a token the PnL tracker saw disappear."""
        tracked = self._positions.pop(token_id, None)
        if tracked is None:
            return
        self._log_outcome(tracked, "position closed")
        self._positions_closed += 1
        self._save()

    def _cleanup_closed(self, live: dict[str, UserPosition]) -> None:
        """Remove tracked entries whose token is no longer held."""
        closed = [token_id for token_id in self._positions if token_id not in live]
        for token_id in closed:
            tracked = self._positions.pop(token_id)
            self._log_outcome(tracked, "no longer held")
            self._positions_closed += 1
        if closed:
            self._save()

    def _expire_recently_closed(self) -> None:
        now = self._now()
        self._recently_closed = {
            token_id: closed_at
            for token_id, closed_at in self._recently_closed.items()
            if now - closed_at < RECENTLY_CLOSED_GRACE
        }

    def _should_start_tracking(self, pos: UserPosition) -> bool:
        if pos.token_id in self._recently_closed:
            return False
        if pos.avg_price <= 0:
            return False
        # Skip resolved markets
        if pos.current_price >= MAX_PRICE or pos.current_price <= MIN_PRICE:
            return False
        return pos.profit_percent >= self.config.profit_trigger_percent

    async def _start_tracking(self, pos: UserPosition) -> None:
        tracked = TrackedPosition(
            token_id=pos.token_id,
            entry_price=pos.avg_price,
            size=pos.size,
            highest_price_seen=pos.current_price,
            market_label=pos.market_slug,
            started_at=self._now(),
        )
        self._positions[pos.token_id] = tracked

        logger.info(
            f"TAKE PROFIT tracking {short_label(pos.market_slug)}: "
            f"+{pos.profit_percent:.1f}% (entry {pos.avg_price}, now {pos.current_price})"
        )
        self._save()

        await self._place_order(tracked, pos.current_price)

    async def _update_tracked(self, tracked: TrackedPosition, pos: UserPosition) -> None:
        current = pos.current_price
        tracked.size = pos.size
        new_peak = tracked.observe_price(current)

        if tracked.in_emergency:
            await self._continue_emergency(tracked, current)
            return

        if new_peak:
            await self._on_new_peak(tracked, current)
            return

        drop_percent = tracked.drop_from_peak(current) * 100
        stop_percent = self._trailing_stop_for(tracked)

        if self.config.stop_loss_enabled and drop_percent >= stop_percent:
            realized = tracked.return_at(current)
            if realized < MAX_LOSS_TOLERANCE:
                logger.info(
                    f"Trailing stop hit on {short_label(tracked.market_label)} "
                    f"(-{drop_percent:.1f}% from peak) but exit would realize "
                    f"{realized * 100:.1f}%, holding"
                )
                return
            if not self._backoff_elapsed(tracked):
                return
            await self._emergency_exit(tracked, current, EmergencyReason.TRAILING_STOP)
            return

        if tracked.active_order_id is None:
            if self._attempts_exhausted(tracked):
                if self._backoff_elapsed(tracked):
                    await self._emergency_exit(tracked, current, EmergencyReason.STALE_ORDER)
            elif self._can_reposition(tracked):
                await self._place_order(tracked, current)
            return

        if self._order_is_stale(tracked, current):
            if not self._can_reposition(tracked):
                return
            tracked.update_attempts += 1
            tracked.last_update_time = self._now()
            tracked.state = ExitState.ORDER_STALE
            logger.info(
                f"Order for {short_label(tracked.market_label)} @ {tracked.active_order_price} "
                f"sits above market {current} "
                f"(attempt {tracked.update_attempts}/{self.config.max_update_attempts})"
            )
            if self._attempts_exhausted(tracked) and self._backoff_elapsed(tracked):
                await self._emergency_exit(tracked, current, EmergencyReason.STALE_ORDER)
            return

        tracked.state = ExitState.ORDER_LIVE

    async def _on_new_peak(self, tracked: TrackedPosition, current: Decimal) -> None:
        if tracked.active_order_price is None:
            if self._can_reposition(tracked):
                await self._place_order(tracked, current)
            return

        tracked.state = ExitState.ORDER_LIVE
        lag_percent = (
            (tracked.highest_price_seen - tracked.active_order_price)
            / tracked.highest_price_seen * 100
        )
        if lag_percent <= self.config.update_threshold_percent:
            return
        if not self._can_reposition(tracked):
            logger.debug(f"Reposition of {tracked.token_id[:16]}... rate limited")
            return

        await self._reposition(tracked, current)

    # =========================================================================
    # Orders
    # =========================================================================

    def _target_price(self, tracked: TrackedPosition, current: Decimal) -> Decimal:
        """Just below the market, never under the minimum-profit floor."""
        price = max(current * (1 - ORDER_DISCOUNT), tracked.min_profit_price)
        return min(price, MAX_PRICE)

    async def _place_order(self, tracked: TrackedPosition, current: Decimal) -> bool:
        price = self._target_price(tracked, current)
        result = await self.trading_client.execute_trade(
            tracked.token_id,
            OrderSide.SELL,
            tracked.size * price,
            price,
            OrderType.GTC,
        )
        tracked.last_update_time = self._now()

        if not result.success:
            self._handle_order_failure(tracked, result, "take-profit order")
            return False

        tracked.active_order_id = result.order_id
        tracked.active_order_price = price
        tracked.state = ExitState.ORDER_LIVE
        self._orders_placed += 1

        expected_pnl = (price - tracked.entry_price) * tracked.size
        logger.info(
            f"Sell order placed for {short_label(tracked.market_label)}: "
            f"{tracked.size} @ {price:.4f} (+${expected_pnl:.2f}), order={result.order_id}"
        )
        self._save()
        return True

    async def _reposition(self, tracked: TrackedPosition, current: Decimal) -> None:
        old_price = tracked.active_order_price

        if not await self.trading_client.cancel_order(tracked.active_order_id):
            # The order may have filled already; the position feed will tell
            tracked.update_attempts += 1
            tracked.last_update_time = self._now()
            logger.warning(
                f"Could not cancel order {tracked.active_order_id} for "
                f"{short_label(tracked.market_label)}, keeping it"
            )
            return

        tracked.clear_order()
        tracked.state = ExitState.TRACKING
        if await self._place_order(tracked, current):
            self._repositions += 1
            logger.info(
                f"Repositioned {short_label(tracked.market_label)}: "
                f"{old_price:.4f} -> {tracked.active_order_price:.4f} "
                f"(peak {tracked.highest_price_seen})"
            )

    def _handle_order_failure(
        self,
        tracked: TrackedPosition,
        result: TradeResult,
        context: str,
    ) -> None:
        kind = result.error_kind
        if kind == TradeErrorKind.MARKET_CLOSED:
            self._deregister(tracked, f"market closed ({result.error})")
            return
        if kind == TradeErrorKind.REJECTED:
            tracked.update_attempts += 1
        logger.warning(
            f"{context.capitalize()} failed for {short_label(tracked.market_label)}: "
            f"{result.error} ({kind.value})"
        )

    # =========================================================================
    # Emergency exit
    # =========================================================================

    async def _continue_emergency(self, tracked: TrackedPosition, current: Decimal) -> None:
        """Retry liquidation for an entry already in emergency, once backoff allows."""
        if not self._backoff_elapsed(tracked):
            return
        await self._emergency_exit(tracked, current, tracked.emergency_reason)

    async def _emergency_exit(
        self,
        tracked: TrackedPosition,
        current: Decimal,
        reason: EmergencyReason,
    ) -> None:
        """
        Liquidate through EMERGENCY_TIERS, stopping at the first success.

        A FOK fill closes the position. A standing GTC fallback keeps the
        entry alive in ORDER_LIVE and counts as a failed liquidation for
        backoff purposes.
        """
        label = short_label(tracked.market_label)
        tracked.emergency_reason = reason
        tracked.state = ExitState.EMERGENCY_EXIT
        tracked.last_emergency_attempt_time = self._now()

        logger.warning(
            f"EMERGENCY EXIT {label} ({reason.value}): peak {tracked.highest_price_seen}, "
            f"now {current}, entry {tracked.entry_price}, "
            f"prior failures {tracked.emergency_failed_count}"
        )

        if tracked.active_order_id:
            if not await self.trading_client.cancel_order(tracked.active_order_id):
                logger.warning(f"Cancel of {tracked.active_order_id} failed, continuing exit")
            tracked.clear_order()

        reference = await self._reference_price(tracked, current)
        floor = MIN_PRICE
        if reason == EmergencyReason.TRAILING_STOP:
            floor = max(floor, tracked.entry_price * (1 + MAX_LOSS_TOLERANCE))

        for index, tier in enumerate(EMERGENCY_TIERS, start=1):
            price = max(reference * (1 - tier.discount), floor)
            result = await self.trading_client.execute_trade(
                tracked.token_id,
                OrderSide.SELL,
                tracked.size * price,
                price,
                tier.order_type,
            )

            if result.success:
                tracked.active_order_id = result.order_id
                tracked.active_order_price = price
                if tier.order_type == OrderType.FOK:
                    self._emergency_exits += 1
                    self._deregister(tracked, f"emergency {tier.order_type.value} sell filled @ {price:.4f}")
                    return

                tracked.state = ExitState.ORDER_LIVE
                tracked.emergency_failed_count += 1
                logger.warning(
                    f"Fallback {tier.order_type.value} order standing for {label} @ {price:.4f} "
                    f"(failures {tracked.emergency_failed_count})"
                )
                self._save()
                return

            if result.error_kind == TradeErrorKind.MARKET_CLOSED:
                self._deregister(tracked, f"market closed ({result.error})")
                return

            logger.warning(
                f"Exit tier {index} ({tier.order_type.value} -{tier.discount * 100:.0f}%) "
                f"failed for {label}: {result.error}"
            )

        tracked.emergency_failed_count += 1
        logger.error(
            f"All exit tiers failed for {label} "
            f"(failures {tracked.emergency_failed_count}, next try in "
            f"{self._backoff_delay(tracked)})"
        )
        self._save()

    async def _reference_price(self, tracked: TrackedPosition, current: Decimal) -> Decimal:
        """Best bid, or the last observed price when the book has no bids."""
        try:
            best_bid = await self.trading_client.get_best_bid(tracked.token_id)
        except Exception as e:
            logger.warning(f"Best bid lookup failed for {tracked.token_id[:16]}...: {e}")
            best_bid = None

        if best_bid is None or best_bid <= 0:
            logger.warning(f"No bids for {short_label(tracked.market_label)}, using last price {current}")
            return current
        return best_bid

    def _backoff_delay(self, tracked: TrackedPosition) -> timedelta:
        if tracked.emergency_failed_count <= 0:
            return timedelta(0)
        index = min(tracked.emergency_failed_count, len(EMERGENCY_BACKOFF_MINUTES)) - 1
        return timedelta(minutes=EMERGENCY_BACKOFF_MINUTES[index])

    def _backoff_elapsed(self, tracked: TrackedPosition) -> bool:
        if tracked.emergency_failed_count == 0 or tracked.last_emergency_attempt_time is None:
            return True
        return self._now() - tracked.last_emergency_attempt_time >= self._backoff_delay(tracked)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _trailing_stop_for(self, tracked: TrackedPosition) -> Decimal:
        if self._classifier.is_sports_market(tracked.market_label):
            return self.config.sports_trailing_stop_percent
        return self.config.trailing_stop_percent

    def _order_is_stale(self, tracked: TrackedPosition, current: Decimal) -> bool:
        if tracked.active_order_price is None:
            return False
        return tracked.active_order_price > current * (1 + STALE_ORDER_MARGIN)

    def _can_reposition(self, tracked: TrackedPosition) -> bool:
        if tracked.last_update_time is None:
            return True
        elapsed = (self._now() - tracked.last_update_time).total_seconds()
        return elapsed >= self.config.min_update_interval_seconds

    def _attempts_exhausted(self, tracked: TrackedPosition) -> bool:
        return tracked.update_attempts > self.config.max_update_attempts

    def _deregister(self, tracked: TrackedPosition, reason: str) -> None:
        self._positions.pop(tracked.token_id, None)
        tracked.state = ExitState.CLOSED
        self._recently_closed[tracked.token_id] = self._now()
        self._positions_closed += 1
        self._log_outcome(tracked, reason)
        self._save()

    def _log_outcome(self, tracked: TrackedPosition, reason: str) -> None:
        label = short_label(tracked.market_label) or tracked.token_id[:16]
        if tracked.active_order_price is None:
            logger.info(f"Closed {label}: {reason} (exit price unknown)")
            return
        outcome = tracked.return_at(tracked.active_order_price) * 100
        pnl = (tracked.active_order_price - tracked.entry_price) * tracked.size
        logger.info(
            f"Closed {label}: {reason}, exit ~{tracked.active_order_price:.4f} vs entry "
            f"{tracked.entry_price:.4f} ({outcome:+.1f}%, ${pnl:+.2f})"
        )

    def _save(self) -> None:
        try:
            self.store.save([p.to_dict() for p in self._positions.values()])
            self._last_persist = self._now()
        except Exception as e:
            logger.error(f"Failed to save exit state: {e}")

    def _maybe_persist(self) -> None:
        if self._last_persist is None:
            self._save()
            return
        elapsed = (self._now() - self._last_persist).total_seconds()
        if elapsed >= self.config.persist_interval_seconds:
            self._save()

    def get_position(self, token_id: str) -> Optional[TrackedPosition]:
        """Get the tracked entry for a token."""
        return self._positions.get(token_id)

    def get_all_positions(self) -> list[TrackedPosition]:
        """Get all tracked entries."""
        return list(self._positions.values())

    @property
    def stats(self) -> dict:
        """Get exit engine statistics."""
        return {
            "running": self._running,
            "tracked_count": len(self._positions),
            "orders_placed": self._orders_placed,
            "repositions": self._repositions,
            "emergency_exits": self._emergency_exits,
            "positions_closed": self._positions_closed,
            "tracked": [
                {
                    "token_id": p.token_id[:16] + "...",
                    "market": p.market_label,
                    "state": p.state.value,
                    "entry_price": float(p.entry_price),
                    "highest_price_seen": float(p.highest_price_seen),
                    "order_price": (
                        float(p.active_order_price) if p.active_order_price is not None else None
                    ),
                    "update_attempts": p.update_attempts,
                    "emergency_failed_count": p.emergency_failed_count,
                }
                for p in self._positions.values()
            ],
        }
