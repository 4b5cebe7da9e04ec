"""
Risk management for copy trading.

Holds the copy session's mutable state (per-token buy counts, re-entry
cooldowns, pause flag) and provides the pre-trade checks and kill switch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from ..config.markets import MarketClassifier, DEFAULT_SPORTS_PATTERNS
from ..utils.helpers import short_label, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RiskLimits:
    """Risk limit configuration."""

    # Per-token limits
    max_buys_per_token: int = 3
    cooldown_minutes: int = 30  # After a close, before re-entering the token

    # Balance limits
    min_stake: Decimal = Decimal("5")  # Pause buying below this free balance
    max_position_percent: Decimal = Decimal("50")  # Max % of balance per trade

    # Market restrictions
    skip_sports: bool = False
    sports_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_SPORTS_PATTERNS))


@dataclass
class RiskState:
    """Current copy session state."""

    buy_counts: dict[str, int] = field(default_factory=dict)  # token_id -> buys
    cooldowns: dict[str, datetime] = field(default_factory=dict)  # token_id -> cooldown end
    paused: bool = False
    orders: int = 0


class RiskManager:
    """
    Manages copy session limits and kill switch.

    One instance is shared by the copy trader (pre-trade checks and
    bookkeeping) and the PnL tracker (closure events set cooldowns).
    """

    def __init__(
        self,
        limits: Optional[RiskLimits] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize risk manager.

        Args:
            limits: Risk limit configuration (uses defaults if not provided)
            clock: Returns the current UTC time (overridable in tests)
        """
        self.limits = limits or RiskLimits()
        self.state = RiskState()
        self._now = clock or utcnow
        self._classifier = MarketClassifier(self.limits.sports_patterns)
        self._kill_switch_active = False
        self._kill_switch_reason: Optional[str] = None

        logger.info(
            f"RiskManager initialized: "
            f"max_buys_per_token={self.limits.max_buys_per_token}, "
            f"cooldown={self.limits.cooldown_minutes}min, "
            f"skip_sports={self.limits.skip_sports}"
        )

    def activate_kill_switch(self, reason: str = "Manual activation") -> None:
        """
        Activate kill switch to stop all trading.

        Args:
            reason: Reason for activation
        """
        self._kill_switch_active = True
        self._kill_switch_reason = reason
        logger.warning(f"KILL SWITCH ACTIVATED: {reason}")

    def deactivate_kill_switch(self) -> None:
        """Deactivate kill switch to resume trading."""
        self._kill_switch_active = False
        self._kill_switch_reason = None
        logger.info("Kill switch deactivated")

    @property
    def is_trading_allowed(self) -> bool:
        """Check if trading is currently allowed."""
        return not self._kill_switch_active

    @property
    def is_paused(self) -> bool:
        return self.state.paused

    def check_trade(
        self,
        token_id: str,
        side: str,
        market_label: str = "",
    ) -> tuple[bool, Optional[str]]:
        """
        Check if a copy trade should be attempted.

        SELLs only honour the kill switch; every other gate limits
        entries.

        Returns:
            Tuple of (allowed: bool, rejection_reason: Optional[str])
        """
        if self._kill_switch_active:
            return False, f"Kill switch active: {self._kill_switch_reason}"

        if side != "BUY":
            return True, None

        if self.limits.skip_sports and self._classifier.is_sports_market(market_label):
            return False, "Sports market"

        if self.state.paused:
            return False, "Paused: balance below min stake"

        if self.is_in_cooldown(token_id):
            remaining = self.state.cooldowns[token_id] - self._now()
            return False, f"Cooldown ({int(remaining.total_seconds() // 60)}min left)"

        count = self.state.buy_counts.get(token_id, 0)
        if count >= self.limits.max_buys_per_token:
            return False, f"Buy limit reached ({count}/{self.limits.max_buys_per_token})"

        return True, None

    def check_stake(self, stake: Decimal, balance: Decimal) -> tuple[bool, Optional[str]]:
        """Reject non-positive stakes and stakes above max % of a known balance."""
        if stake <= 0:
            return False, "Invalid stake amount"

        if balance > 0:
            percent = stake / balance * 100
            if percent > self.limits.max_position_percent:
                return False, (
                    f"Trade is {percent:.1f}% of balance "
                    f"(max {self.limits.max_position_percent}%)"
                )

        return True, None

    def is_in_cooldown(self, token_id: str) -> bool:
        cooldown_end = self.state.cooldowns.get(token_id)
        if cooldown_end is None:
            return False
        if self._now() >= cooldown_end:
            del self.state.cooldowns[token_id]
            return False
        return True

    def record_buy(self, token_id: str) -> int:
        """Count a successful buy; returns the token's buy count."""
        count = self.state.buy_counts.get(token_id, 0) + 1
        self.state.buy_counts[token_id] = count
        self.state.orders += 1
        return count

    def record_sell(self, token_id: str) -> None:
        self.state.orders += 1

    def on_position_closed(self, token_id: str, market_label: str = "") -> None:
        """Closure listener: reset the buy count and start the re-entry cooldown."""
        self.state.buy_counts.pop(token_id, None)
        self.state.cooldowns[token_id] = self._now() + timedelta(minutes=self.limits.cooldown_minutes)
        logger.info(
            f"Cooldown started for {short_label(market_label) or token_id[:16]} "
            f"({self.limits.cooldown_minutes}min)"
        )

    def update_balance(self, balance: Optional[Decimal]) -> None:
        """Pause buying below min stake, resume once the balance recovers."""
        if balance is None:
            return
        if balance < self.limits.min_stake and not self.state.paused:
            self.state.paused = True
            logger.warning(f"PAUSED - ${balance:.2f} < min ${self.limits.min_stake}")
        elif balance >= self.limits.min_stake and self.state.paused:
            self.state.paused = False
            logger.info(f"RESUMED - ${balance:.2f}")

    def buy_count(self, token_id: str) -> int:
        return self.state.buy_counts.get(token_id, 0)

    @property
    def status(self) -> dict:
        """Get current risk status."""
        now = self._now()
        return {
            "kill_switch_active": self._kill_switch_active,
            "kill_switch_reason": self._kill_switch_reason,
            "trading_allowed": self.is_trading_allowed,
            "paused": self.state.paused,
            "orders": self.state.orders,
            "tokens_bought": len(self.state.buy_counts),
            "active_cooldowns": len([end for end in self.state.cooldowns.values() if end > now]),
            "limits": {
                "max_buys_per_token": self.limits.max_buys_per_token,
                "cooldown_minutes": self.limits.cooldown_minutes,
                "min_stake": float(self.limits.min_stake),
                "max_position_percent": float(self.limits.max_position_percent),
                "skip_sports": self.limits.skip_sports,
            },
        }
