"""
Position sizing for copy trades.

Every observed trade is copied. The stake is scaled to our balance and then
clamped to [min_stake, max_stake], e.g. a whale with $3.5M betting $1,700
scales to $0.005 for a $10 account, which is raised to the $5 minimum.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class SizingMode(str, Enum):
    PROPORTIONAL = "proportional"
    FIXED = "fixed"


@dataclass
class SizingConfig:
    """Stake sizing configuration."""
    mode: SizingMode = SizingMode.PROPORTIONAL
    min_stake: Decimal = Decimal("5")
    max_stake: Decimal = Decimal("300")
    fixed_stake: Optional[Decimal] = None  # Defaults to min_stake


@dataclass
class SizingResult:
    """Outcome of a sizing calculation."""
    original_amount: Decimal  # What the trader bet
    amount: Decimal  # What we bet
    scaling_factor: Decimal
    mode: SizingMode
    capped: bool = False
    reason: str = ""


class PositionSizer:
    """Converts an observed trade amount into our stake."""

    def __init__(self, config: Optional[SizingConfig] = None, my_balance: Decimal = Decimal("0")):
        self.config = config or SizingConfig()
        self.my_balance = Decimal(str(my_balance))

    def set_my_balance(self, balance: Decimal) -> None:
        """Update our current balance."""
        self.my_balance = Decimal(str(balance))

    @property
    def fixed_amount(self) -> Decimal:
        if self.config.fixed_stake is not None:
            return self.config.fixed_stake
        return self.config.min_stake

    def calculate(
        self,
        observed_amount: Decimal,
        trader_balance: Optional[Decimal] = None,
    ) -> SizingResult:
        """
        Calculate our stake for an observed trade.

        Args:
            observed_amount: USDC amount the tracked trader spent
            trader_balance: Tracked trader's total balance (positions + cash)

        Returns:
            SizingResult with the clamped stake
        """
        observed_amount = Decimal(str(observed_amount))
        trader_balance = Decimal(str(trader_balance)) if trader_balance is not None else Decimal("0")
        scaling_factor = Decimal("1")

        if self.config.mode == SizingMode.FIXED:
            raw = self.fixed_amount
            reason = f"Fixed stake: ${raw}"
        elif trader_balance > 0 and self.my_balance > 0:
            scaling_factor = self.my_balance / trader_balance
            raw = observed_amount * scaling_factor
            reason = (
                f"Proportional: ${observed_amount:.2f} x "
                f"({self.my_balance:.0f} / {trader_balance:.0f}) = ${raw:.4f}"
            )
        else:
            raw = self.config.min_stake
            reason = "Fallback to min_stake (missing balance info)"

        capped, amount = self.apply_limits(raw)
        if capped:
            reason = f"{reason} -> capped to ${amount:.2f}"

        return SizingResult(
            original_amount=observed_amount,
            amount=amount,
            scaling_factor=scaling_factor,
            mode=self.config.mode,
            capped=capped,
            reason=reason,
        )

    def apply_limits(self, stake: Decimal) -> tuple[bool, Decimal]:
        """Clamp a stake to [min_stake, max_stake], returning (capped, amount)."""
        if stake < self.config.min_stake:
            return True, self.config.min_stake
        if stake > self.config.max_stake:
            return True, self.config.max_stake
        return False, stake

    def is_worth_copying(self, observed_amount: Decimal) -> tuple[bool, str]:
        """All trades are copied; calculate() enforces the floor."""
        return True, "Copying trade"
