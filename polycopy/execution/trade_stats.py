"""
Persistent trade statistics.

Counts every trade seen from the tracked wallets and how our copy of it
went, and keeps a short list of the most recent ones. Saved as JSON after
each event so the numbers survive restarts.
"""

import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..utils.helpers import utcnow
from .state_store import write_json_atomic
from .watcher import TradeEvent

logger = logging.getLogger(__name__)

MAX_RECENT_TRADES = 50


class CopyOutcome(str, Enum):
    """What happened to an observed trade."""
    COPIED = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class TradeStatsRecorder:
    """
    Per-wallet buy/sell counters plus copy outcomes.

    Usage:
        recorder = TradeStatsRecorder("data/stats.json")
        recorder.record(event, CopyOutcome.COPIED)
        print(recorder.summary())
    """

    def __init__(
        self,
        path: Optional[Path | str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            path: JSON file to persist to (memory only when None)
            clock: Returns the current UTC time (overridable in tests)
        """
        self.path = Path(path) if path else None
        self._now = clock or utcnow
        self._stats = self._load()

    def _empty(self) -> dict:
        now = self._now().isoformat()
        return {
            "started_at": now,
            "last_updated": now,
            "total_events": 0,
            "buys": 0,
            "sells": 0,
            "by_wallet": {},
            "copied": {outcome.value: 0 for outcome in CopyOutcome},
            "recent_trades": [],
        }

    def _load(self) -> dict:
        if self.path is None or not self.path.exists():
            return self._empty()

        try:
            with open(self.path, "r") as f:
                stats = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable stats file {self.path}, starting fresh: {e}")
            return self._empty()

        if not isinstance(stats, dict):
            logger.warning(f"Malformed stats file {self.path}, starting fresh")
            return self._empty()

        # Fill in anything an older file lacks
        for key, value in self._empty().items():
            stats.setdefault(key, value)
        return stats

    def record(self, event: TradeEvent, outcome: CopyOutcome) -> None:
        """Count a trade from a tracked wallet and persist."""
        now = self._now().isoformat()
        side_key = "buys" if event.side == "BUY" else "sells"

        stats = self._stats
        stats["total_events"] += 1
        stats["last_updated"] = now
        stats[side_key] += 1

        wallet = stats["by_wallet"].setdefault(event.wallet, {"buys": 0, "sells": 0, "last_trade": now})
        wallet[side_key] += 1
        wallet["last_trade"] = now

        stats["copied"][outcome.value] = stats["copied"].get(outcome.value, 0) + 1

        stats["recent_trades"].insert(0, {
            "time": now,
            "wallet": event.wallet[:10] + "...",
            "side": event.side,
            "amount": float(event.usdc_amount),
            "market": event.market_label[:30],
            "copied": outcome == CopyOutcome.COPIED,
        })
        del stats["recent_trades"][MAX_RECENT_TRADES:]

        self._save()

    def reset(self) -> None:
        self._stats = self._empty()
        self._save()

    def summary(self) -> str:
        stats = self._stats
        return f"Stats: {stats['buys']} BUY / {stats['sells']} SELL (total: {stats['total_events']})"

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            write_json_atomic(self.path, self._stats)
        except OSError as e:
            logger.error(f"Failed to save trade stats: {e}")

    @property
    def stats(self) -> dict:
        """Get the raw statistics document."""
        return self._stats
