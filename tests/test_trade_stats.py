"""Tests for the persistent trade statistics file."""

import json
from decimal import Decimal as D

from polycopy.execution.trade_stats import MAX_RECENT_TRADES, CopyOutcome, TradeStatsRecorder
from polycopy.execution.watcher import TradeEvent


def _event(side="BUY", wallet="0xabc0000000000000000001", usdc="12.5"):
    return TradeEvent(
        wallet=wallet,
        token_id="tok-a",
        condition_id="cond-1",
        side=side,
        price=D("0.50"),
        size=D(usdc) * 2,
        usdc_amount=D(usdc),
        timestamp=1700000000,
        market_slug="will-it-rain-tomorrow-in-the-city-of-london",
    )


class TestTradeStatsRecorder:

    def test_counts_per_wallet(self, clock):
        recorder = TradeStatsRecorder(clock=clock)

        recorder.record(_event(), CopyOutcome.COPIED)
        clock.advance(minutes=5)
        recorder.record(_event(side="SELL"), CopyOutcome.SKIPPED)

        wallet = recorder.stats["by_wallet"]["0xabc0000000000000000001"]
        assert wallet == {"buys": 1, "sells": 1, "last_trade": clock.now.isoformat()}
        assert recorder.summary() == "Stats: 1 BUY / 1 SELL (total: 2)"

    def test_recent_trades_newest_first_and_bounded(self, clock):
        recorder = TradeStatsRecorder(clock=clock)

        for i in range(MAX_RECENT_TRADES + 5):
            recorder.record(_event(usdc=str(i + 1)), CopyOutcome.COPIED)

        recent = recorder.stats["recent_trades"]
        assert len(recent) == MAX_RECENT_TRADES
        assert recent[0]["amount"] == float(MAX_RECENT_TRADES + 5)
        assert recent[0]["wallet"] == "0xabc00000..."
        assert len(recent[0]["market"]) == 30
        assert recent[0]["copied"] is True

    def test_persists_across_restarts(self, tmp_path, clock):
        path = tmp_path / "data" / "stats.json"
        TradeStatsRecorder(path, clock=clock).record(_event(), CopyOutcome.FAILED)

        reloaded = TradeStatsRecorder(path, clock=clock)
        reloaded.record(_event(), CopyOutcome.COPIED)

        saved = json.loads(path.read_text())
        assert saved["total_events"] == 2
        assert saved["copied"] == {"success": 1, "failed": 1, "skipped": 0}
        assert not (tmp_path / "data" / "stats.json.tmp").exists()

    def test_corrupt_file_starts_fresh(self, tmp_path, clock):
        path = tmp_path / "stats.json"
        path.write_text("not json")

        recorder = TradeStatsRecorder(path, clock=clock)

        assert recorder.stats["total_events"] == 0

    def test_reset(self, tmp_path, clock):
        path = tmp_path / "stats.json"
        recorder = TradeStatsRecorder(path, clock=clock)
        recorder.record(_event(), CopyOutcome.COPIED)

        recorder.reset()

        assert json.loads(path.read_text())["total_events"] == 0
