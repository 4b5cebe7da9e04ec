"""Tests for order error classification and paper trading."""

from decimal import Decimal as D
from unittest.mock import AsyncMock

import pytest

from polycopy.execution.clob_client import (
    ClobClient,
    OrderSide,
    OrderType,
    TradeErrorKind,
    TradeResult,
    classify_trade_error,
    round_to_tick,
)


class TestErrorClassification:

    @pytest.mark.parametrize("message", [
        "Market is closed",
        "the orderbook not found for token",
        "market resolved",
    ])
    def test_market_closed(self, message):
        assert classify_trade_error(message) == TradeErrorKind.MARKET_CLOSED

    @pytest.mark.parametrize("message", [
        "Request timed out",
        "HTTP 429 Too Many Requests",
        "Connection reset by peer",
    ])
    def test_transient(self, message):
        assert classify_trade_error(message) == TradeErrorKind.TRANSIENT

    def test_everything_else_is_rejected(self):
        assert classify_trade_error("FOK order couldn't be fully filled") == TradeErrorKind.REJECTED
        assert classify_trade_error(None) == TradeErrorKind.REJECTED

    def test_result_error_kind(self):
        assert TradeResult(success=True).error_kind is None
        assert TradeResult(success=False, error="market closed").error_kind == TradeErrorKind.MARKET_CLOSED


class TestRoundToTick:

    def test_rounds_half_up(self):
        assert round_to_tick(D("0.5635"), D("0.01")) == D("0.56")
        assert round_to_tick(D("0.565"), D("0.01")) == D("0.57")

    def test_clamped_inside_unit_interval(self):
        assert round_to_tick(D("0.999"), D("0.01")) == D("0.99")
        assert round_to_tick(D("0.001"), D("0.01")) == D("0.01")


@pytest.fixture
def paper_client():
    client = ClobClient(paper_trading=True, paper_balance=D("100"))
    client.get_price = AsyncMock(return_value=(D("0.50"), D("0.55")))
    client.get_tick_size = AsyncMock(return_value=D("0.01"))
    return client


class TestPaperTrading:

    def test_live_mode_requires_key(self):
        with pytest.raises(ValueError):
            ClobClient(paper_trading=False)

    @pytest.mark.asyncio
    async def test_below_min_shares(self, paper_client):
        result = await paper_client.execute_trade("tok", OrderSide.BUY, D("1"), D("0.50"))

        assert result.success is False
        assert result.error == "Min $2.50"

    @pytest.mark.asyncio
    async def test_fok_that_cannot_fill_fails(self, paper_client):
        result = await paper_client.execute_trade(
            "tok", OrderSide.SELL, D("10"), D("0.60"), OrderType.FOK
        )

        assert result.success is False
        assert result.error_kind == TradeErrorKind.REJECTED

    @pytest.mark.asyncio
    async def test_marketable_buy_fills_and_debits_balance(self, paper_client):
        result = await paper_client.execute_trade("tok", OrderSide.BUY, D("10"))

        assert result.success is True
        assert result.filled is True
        assert result.price == D("0.55")
        assert await paper_client.get_balance() < D("100")

    @pytest.mark.asyncio
    async def test_resting_order_can_be_cancelled_once(self, paper_client):
        result = await paper_client.execute_trade("tok", OrderSide.SELL, D("10"), D("0.60"))

        assert result.success is True
        assert result.filled is False
        assert await paper_client.cancel_order(result.order_id) is True
        assert await paper_client.cancel_order(result.order_id) is False

    @pytest.mark.asyncio
    async def test_sell_off_tick_price_keeps_share_count(self, paper_client):
        held = D("100")

        result = await paper_client.execute_trade("tok", OrderSide.SELL, held * D("0.6349"), D("0.6349"))

        assert result.success is True
        assert result.price == D("0.63")
        assert result.size == held

    @pytest.mark.asyncio
    async def test_share_count_rounds_down(self, paper_client):
        result = await paper_client.execute_trade("tok", OrderSide.SELL, D("10"), D("0.30"))

        assert result.size == D("33.33")

    @pytest.mark.asyncio
    async def test_insufficient_paper_balance(self, paper_client):
        result = await paper_client.execute_trade("tok", OrderSide.BUY, D("500"), D("0.55"))

        assert result.success is False
        assert result.error == "not enough balance"
