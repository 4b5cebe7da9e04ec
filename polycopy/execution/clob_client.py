"""
Polymarket CLOB API client wrapper.

Provides order execution capabilities using the official py-clob-client SDK.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Any, Protocol

from py_clob_client.client import ClobClient as PyClobClient
from py_clob_client.clob_types import (
    ApiCreds,
    AssetType,
    BalanceAllowanceParams,
    OrderArgs,
    OrderType as PyOrderType,
)
from py_clob_client.constants import POLYGON

from ..utils.helpers import to_decimal

logger = logging.getLogger(__name__)

# Minimum order size on Polymarket, in shares
MIN_ORDER_SHARES = Decimal("5")
DEFAULT_TICK_SIZE = Decimal("0.01")
SHARE_STEP = Decimal("0.01")
USDC_DECIMALS = 6


class OrderSide(str, Enum):
    """Order side enum."""
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    """Time-in-force for an order."""
    GTC = "GTC"  # Good till cancelled
    FOK = "FOK"  # Fill or kill


class OrderStatus(str, Enum):
    """Order status enum."""
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TradeErrorKind(str, Enum):
    """Why an order attempt failed."""
    TRANSIENT = "transient"  # network / 5xx / 429 / timeout
    MARKET_CLOSED = "market_closed"  # resolved, closed or delisted
    REJECTED = "rejected"  # liquidity, price or balance


# Substrings of venue error messages, checked lower-cased
MARKET_CLOSED_MARKERS = (
    "market is closed",
    "market closed",
    "market not found",
    "resolved",
    "does not exist",
    "orderbook not found",
    "no orderbook",
    "not accepting orders",
    "delisted",
)
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "429",
    "too many requests",
    "rate limit",
    "502",
    "503",
    "504",
    "internal server error",
    "service unavailable",
)


def classify_trade_error(message: Optional[str]) -> TradeErrorKind:
    """Map a venue/client error message to the error taxonomy."""
    text = (message or "").lower()
    if any(marker in text for marker in MARKET_CLOSED_MARKERS):
        return TradeErrorKind.MARKET_CLOSED
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return TradeErrorKind.TRANSIENT
    return TradeErrorKind.REJECTED


@dataclass
class TradeResult:
    """Outcome of an order placement."""
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None
    price: Optional[Decimal] = None
    size: Optional[Decimal] = None
    filled: bool = False

    @property
    def error_kind(self) -> Optional[TradeErrorKind]:
        if self.success:
            return None
        return classify_trade_error(self.error)


@dataclass
class Order:
    """Represents a paper order."""
    order_id: str
    token_id: str
    side: OrderSide
    size: Decimal
    price: Decimal
    order_type: OrderType
    status: OrderStatus
    created_at: datetime = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now(timezone.utc)


class TradingClient(Protocol):
    """Order execution capability consumed by the exit engine and copy trader."""

    async def execute_trade(
        self,
        token_id: str,
        side: OrderSide,
        usd_amount: Decimal,
        price: Optional[Decimal] = None,
        order_type: OrderType = OrderType.GTC,
    ) -> TradeResult: ...

    async def cancel_order(self, order_id: str) -> bool: ...

    async def get_best_bid(self, token_id: str) -> Optional[Decimal]: ...

    async def get_orderbook(self, token_id: str) -> dict: ...


def round_to_tick(price: Decimal, tick_size: Decimal) -> Decimal:
    """Round a price to the market's tick size, kept inside (0, 1)."""
    ticks = (price / tick_size).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    rounded = ticks * tick_size
    return min(max(rounded, tick_size), Decimal("1") - tick_size)


def _book_levels(book: Any, side: str) -> list[dict]:
    """Normalize an order book side from the SDK object or a raw dict."""
    levels = book.get(side) if isinstance(book, dict) else getattr(book, side, None)
    normalized = []
    for level in levels or []:
        if isinstance(level, dict):
            price, size = level.get("price"), level.get("size")
        else:
            price, size = getattr(level, "price", None), getattr(level, "size", None)
        normalized.append({"price": to_decimal(price), "size": to_decimal(size)})
    return normalized


class ClobClient:
    """
    Wrapper around py-clob-client for Polymarket CLOB operations.

    Provides async-compatible order management with paper trading support.
    """

    def __init__(
        self,
        private_key: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        api_passphrase: Optional[str] = None,
        funder_address: Optional[str] = None,
        chain_id: int = POLYGON,
        host: str = "https://clob.polymarket.com",
        paper_trading: bool = True,
        paper_balance: Decimal = Decimal("100"),
    ):
        """
        Initialize CLOB client.

        Args:
            private_key: Ethereum wallet private key (optional in paper mode)
            api_key: Polymarket API key
            api_secret: Polymarket API secret
            api_passphrase: Polymarket API passphrase
            funder_address: Proxy wallet that holds funds and positions
            chain_id: Chain ID (default: Polygon mainnet)
            host: CLOB endpoint
            paper_trading: If True, simulate orders without execution
            paper_balance: Starting USDC balance for paper trading
        """
        self.paper_trading = paper_trading

        if not paper_trading and not private_key:
            raise ValueError("private_key is required for live trading")

        creds = None
        if api_key and api_secret and api_passphrase:
            creds = ApiCreds(
                api_key=api_key,
                api_secret=api_secret,
                api_passphrase=api_passphrase,
            )

        self._client = PyClobClient(
            host=host,
            key=private_key,
            chain_id=chain_id,
            creds=creds,
            funder=funder_address,
        )
        if private_key and creds is None and not paper_trading:
            # Derive L2 credentials from the wallet key
            self._client.set_api_creds(self._client.create_or_derive_api_creds())

        # Paper trading state
        self._paper_orders: dict[str, Order] = {}
        self._paper_order_counter = 0
        self._paper_balance = Decimal(str(paper_balance))

        # Stats
        self._orders_placed = 0
        self._orders_failed = 0
        self._orders_cancelled = 0
        self._total_volume = Decimal("0")

        logger.info(
            f"ClobClient initialized (paper_trading={paper_trading}, "
            f"chain_id={chain_id})"
        )

    async def _run(self, func, *args):
        """py-clob-client is synchronous, run it in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args))

    async def get_orderbook(self, token_id: str) -> dict:
        """
        Get order book for a token.

        Returns:
            {"bids": [{"price", "size"}], "asks": [...]} with Decimal values
        """
        try:
            book = await self._run(self._client.get_order_book, token_id)
        except Exception as e:
            logger.error(f"Failed to get orderbook for {token_id[:16]}...: {e}")
            raise
        return {"bids": _book_levels(book, "bids"), "asks": _book_levels(book, "asks")}

    async def get_price(self, token_id: str) -> tuple[Optional[Decimal], Optional[Decimal]]:
        """
        Get current best bid/ask for a token.

        Returns:
            Tuple of (best_bid, best_ask) prices, None if no liquidity
        """
        try:
            book = await self.get_orderbook(token_id)
        except Exception:
            return None, None

        bids = [level["price"] for level in book["bids"] if level["size"] > 0]
        asks = [level["price"] for level in book["asks"] if level["size"] > 0]
        return (max(bids) if bids else None), (min(asks) if asks else None)

    async def get_best_bid(self, token_id: str) -> Optional[Decimal]:
        """Highest price a buyer currently pays, None when the book has no bids."""
        best_bid, _ = await self.get_price(token_id)
        return best_bid

    async def get_tick_size(self, token_id: str) -> Decimal:
        try:
            tick = await self._run(self._client.get_tick_size, token_id)
            return to_decimal(tick, DEFAULT_TICK_SIZE)
        except Exception as e:
            logger.debug(f"Tick size lookup failed for {token_id[:16]}...: {e}")
            return DEFAULT_TICK_SIZE

    async def get_balance(self) -> Decimal:
        """Free USDC collateral available for trading."""
        if self.paper_trading:
            return self._paper_balance

        try:
            result = await self._run(
                self._client.get_balance_allowance,
                BalanceAllowanceParams(asset_type=AssetType.COLLATERAL),
            )
            return to_decimal(result.get("balance")) / (10 ** USDC_DECIMALS)
        except Exception as e:
            logger.error(f"Failed to get balance: {e}")
            raise

    async def execute_trade(
        self,
        token_id: str,
        side: OrderSide,
        usd_amount: Decimal,
        price: Optional[Decimal] = None,
        order_type: OrderType = OrderType.GTC,
    ) -> TradeResult:
        """
        Place an order sized in USD.

        Args:
            token_id: The token/asset ID
            side: BUY or SELL
            usd_amount: Order notional in USDC
            price: Limit price (best ask/bid is used when omitted)
            order_type: GTC or FOK

        Returns:
            TradeResult, never raises
        """
        side = OrderSide(side)
        order_type = OrderType(order_type)
        usd_amount = Decimal(str(usd_amount))

        try:
            if price is None:
                best_bid, best_ask = await self.get_price(token_id)
                price = best_ask if side == OrderSide.BUY else best_bid
            if price is None or price <= 0:
                return self._failed("No price")

            requested_price = Decimal(str(price))
            tick_size = await self.get_tick_size(token_id)
            order_price = round_to_tick(requested_price, tick_size)
            # SELL size is the share count the caller priced, never more
            size_price = requested_price if side == OrderSide.SELL else order_price
            size = (usd_amount / size_price).quantize(SHARE_STEP, rounding=ROUND_DOWN)

            if size < MIN_ORDER_SHARES:
                min_amount = MIN_ORDER_SHARES * order_price
                return self._failed(f"Min ${min_amount:.2f}")

            logger.info(
                f"Placing {order_type.value} order: {side.value} {size} @ {order_price} "
                f"(token={token_id[:16]}..., paper={self.paper_trading})"
            )

            if self.paper_trading:
                return await self._place_paper_order(token_id, side, size, order_price, order_type)

            order_args = OrderArgs(
                token_id=token_id,
                price=float(order_price),
                size=float(size),
                side=side.value,
            )
            signed = await self._run(self._client.create_order, order_args)
            response = await self._run(
                self._client.post_order, signed, getattr(PyOrderType, order_type.value)
            )

            order_id = (response or {}).get("orderID")
            error = (response or {}).get("errorMsg")
            if not order_id or error:
                return self._failed(error or "Rejected")

            self._orders_placed += 1
            self._total_volume += size * order_price
            status = (response or {}).get("status", "")
            logger.info(f"Order placed: {order_id} ({status})")
            return TradeResult(
                success=True,
                order_id=order_id,
                price=order_price,
                size=size,
                filled=status == "matched",
            )

        except Exception as e:
            return self._failed(str(e))

    def _failed(self, error: str) -> TradeResult:
        self._orders_failed += 1
        logger.warning(f"Order failed: {error}")
        return TradeResult(success=False, error=error)

    async def _place_paper_order(
        self,
        token_id: str,
        side: OrderSide,
        size: Decimal,
        price: Decimal,
        order_type: OrderType,
    ) -> TradeResult:
        """Simulate order placement against the live book."""
        best_bid, best_ask = await self.get_price(token_id)

        can_fill = False
        if side == OrderSide.BUY and best_ask and price >= best_ask:
            can_fill = True
        elif side == OrderSide.SELL and best_bid and price <= best_bid:
            can_fill = True

        if side == OrderSide.BUY and size * price > self._paper_balance:
            return self._failed("not enough balance")
        if order_type == OrderType.FOK and not can_fill:
            return self._failed("FOK order couldn't be fully filled")

        self._paper_order_counter += 1
        order = Order(
            order_id=f"paper_{self._paper_order_counter}",
            token_id=token_id,
            side=side,
            size=size,
            price=price,
            order_type=order_type,
            status=OrderStatus.FILLED if can_fill else OrderStatus.OPEN,
        )

        if can_fill:
            notional = size * price
            self._paper_balance += notional if side == OrderSide.SELL else -notional
            logger.info(f"Paper order filled: {order.order_id}")
        else:
            logger.info(f"Paper order open: {order.order_id} (waiting for fill)")

        self._paper_orders[order.order_id] = order
        self._orders_placed += 1
        self._total_volume += size * price

        return TradeResult(
            success=True,
            order_id=order.order_id,
            price=price,
            size=size,
            filled=can_fill,
        )

    async def cancel_order(self, order_id: str) -> bool:
        """
        Cancel an order.

        Returns:
            True if cancelled successfully
        """
        logger.info(f"Cancelling order: {order_id}")

        if self.paper_trading:
            order = self._paper_orders.get(order_id)
            if order and order.status == OrderStatus.OPEN:
                order.status = OrderStatus.CANCELLED
                self._orders_cancelled += 1
                return True
            return False

        try:
            await self._run(self._client.cancel, order_id)
            self._orders_cancelled += 1
            return True
        except Exception as e:
            logger.error(f"Failed to cancel order {order_id}: {e}")
            return False

    async def cancel_all_orders(self) -> int:
        """
        Cancel all open orders.

        Returns:
            Number of orders cancelled
        """
        logger.info("Cancelling all orders")

        if self.paper_trading:
            open_ids = [
                o.order_id for o in self._paper_orders.values()
                if o.status == OrderStatus.OPEN
            ]
            for order_id in open_ids:
                await self.cancel_order(order_id)
            return len(open_ids)

        try:
            result = await self._run(self._client.cancel_all)
            cancelled = len((result or {}).get("canceled", []))
            self._orders_cancelled += cancelled
            logger.info(f"Cancelled {cancelled} orders")
            return cancelled
        except Exception as e:
            logger.error(f"Failed to cancel all orders: {e}")
            return 0

    @property
    def stats(self) -> dict:
        """Get client statistics."""
        return {
            "paper_trading": self.paper_trading,
            "orders_placed": self._orders_placed,
            "orders_failed": self._orders_failed,
            "orders_cancelled": self._orders_cancelled,
            "total_volume": float(self._total_volume),
            "open_orders": len([
                o for o in self._paper_orders.values()
                if o.status == OrderStatus.OPEN
            ]) if self.paper_trading else 0,
        }
