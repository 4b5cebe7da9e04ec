"""Exit engine, PnL tracker and service wired together."""

import asyncio
from decimal import Decimal as D
from unittest.mock import AsyncMock, MagicMock

import pytest

from polycopy.config.settings import PolymarketConfig, Settings, StateConfig
from polycopy.execution.clob_client import OrderType
from polycopy.execution.pnl_tracker import PnLTracker
from polycopy.execution.service import CopyTradingService
from polycopy.execution.take_profit import TakeProfitConfig, TakeProfitManager

WALLET = "0xfunder"


@pytest.fixture
def tracker(position_source):
    return PnLTracker(position_source, AsyncMock(return_value=D("100")), WALLET, update_interval=60)


@pytest.fixture
def manager(trading_client, position_source, clock):
    return TakeProfitManager(
        trading_client,
        position_source,
        WALLET,
        config=TakeProfitConfig(check_interval_seconds=60),
        clock=clock,
    )


class TestTrailingStopWin:

    @pytest.mark.asyncio
    async def test_trailing_stop_exit_is_recorded_as_win(
        self, manager, tracker, trading_client, position_source, clock
    ):
        listener = MagicMock()
        tracker.add_listener(listener)
        tracker.add_listener(manager.handle_position_closed)

        async def tick(price):
            position_source.set("tok-a", price)
            await manager.check_positions()
            await tracker.update()

        position_source.set("tok-a", "0.50")
        await tracker.initialize()
        await manager.check_positions()
        assert manager.get_position("tok-a") is None

        # +15% starts tracking with an order just under the market
        await tick("0.575")
        assert manager.get_position("tok-a") is not None
        assert trading_client.last_order.price == D("0.5635")

        clock.advance(seconds=31)
        await tick("0.625")
        assert trading_client.last_order.price == D("0.6125")

        # 16% off the peak, still above entry
        trading_client.best_bid = D("0.52")
        await tick("0.525")

        exit_order = trading_client.last_order
        assert exit_order.order_type == OrderType.FOK
        assert exit_order.price == D("0.5096")
        assert manager.get_position("tok-a") is None
        assert manager.stats["emergency_exits"] == 1
        listener.assert_not_called()

        position_source.remove("tok-a")
        closed = await tracker.update()
        await tracker.update()

        assert [c.outcome for c in closed] == ["win"]
        assert closed[0].realized_pnl == D("2.5")
        listener.assert_called_once_with("tok-a", "will-it-rain-tomorrow")
        info = tracker.get_pnl_info()
        assert info.wins == 1
        assert info.session_pnl == D("2.5")


class TestLoopStop:

    @pytest.mark.asyncio
    async def test_exit_engine_stops_between_cycles(self, manager, position_source):
        task = asyncio.create_task(manager.start())
        await asyncio.sleep(0.01)
        assert manager.is_running is True

        manager.stop()
        await asyncio.wait_for(task, timeout=1)

        assert manager.is_running is False
        assert position_source.calls == 1

    @pytest.mark.asyncio
    async def test_pnl_tracker_stops_between_updates(self, tracker, position_source):
        task = asyncio.create_task(tracker.start())
        await asyncio.sleep(0.01)

        tracker.stop()
        await asyncio.wait_for(task, timeout=1)

        # Only the initial snapshot was taken
        assert position_source.calls == 1
        assert tracker.get_pnl_info() is not None


class TestServiceShutdown:

    @pytest.fixture
    def service(self, tmp_path, manager, tracker):
        settings = Settings(
            polymarket=PolymarketConfig(funder_address=WALLET),
            state=StateConfig(
                state_file=tmp_path / "take_profit_state.json",
                stats_file=tmp_path / "stats.json",
            ),
        )
        service = CopyTradingService(settings)
        service.take_profit = manager
        service.pnl_tracker = tracker
        return service

    @pytest.mark.asyncio
    async def test_stop_lets_emergency_exit_finish(self, service, manager, trading_client, position_source):
        position_source.set("tok-a", "0.625")
        await manager.check_positions()
        assert manager.get_position("tok-a").active_order_id == "order-1"

        # Trailing stop fires on the next cycle; the FOK takes a while
        position_source.set("tok-a", "0.525")
        trading_client.best_bid = D("0.52")
        trading_client.delay = 0.2

        service._start_loops()
        await asyncio.sleep(0.05)
        await service.stop()

        assert trading_client.cancelled == ["order-1"]
        assert trading_client.last_order.order_type == OrderType.FOK
        assert manager.get_position("tok-a") is None
        assert manager.is_running is False
