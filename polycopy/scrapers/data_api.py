"""Polymarket Data API client with per-endpoint rate limiting."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Protocol

import aiohttp
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import Settings, get_settings
from ..utils.helpers import to_decimal

logger = logging.getLogger(__name__)

# USDC.e contract on Polygon (used by Polymarket)
USDC_CONTRACT = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
USDC_DECIMALS = 6

# Polygon RPC endpoint (free public endpoint)
POLYGON_RPC_URL = "https://polygon-rpc.com"

# Positions below this many shares are dust
MIN_POSITION_SIZE = Decimal("0.01")

# Per-endpoint rate limits (requests per second)
# Official Polymarket limits: positions=15/s, trades=20/s, general=100/s
ENDPOINT_RATE_LIMITS = {
    "positions": 10,
    "value": 30,
    "trades": 15,
}


class DataAPIError(Exception):
    """Raised for non-retryable or exhausted Data API failures."""


class RateLimitedError(DataAPIError):
    """Raised on HTTP 429 so tenacity retries the request."""


@dataclass
class UserPosition:
    """An open position as reported by the Data API."""

    token_id: str
    size: Decimal
    avg_price: Decimal
    current_price: Decimal
    market_slug: str = ""
    outcome: str = ""
    condition_id: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "UserPosition":
        avg_price = to_decimal(data.get("avgPrice"))
        current_price = to_decimal(data.get("curPrice") or data.get("currentPrice"))
        return cls(
            token_id=str(data.get("asset") or data.get("tokenId") or ""),
            size=to_decimal(data.get("size")),
            avg_price=avg_price,
            # No mark price yet: value the position at cost
            current_price=current_price if current_price > 0 else avg_price,
            market_slug=data.get("slug") or "",
            outcome=data.get("outcome") or "",
            condition_id=data.get("conditionId") or "",
        )

    @property
    def profit_percent(self) -> Decimal:
        if self.avg_price <= 0:
            return Decimal("0")
        return (self.current_price - self.avg_price) / self.avg_price * 100


@dataclass
class UserTrade:
    """A single trade from the Data API /trades endpoint."""

    trade_id: str
    wallet: str
    token_id: str
    condition_id: str
    side: str  # BUY or SELL
    price: Decimal
    size: Decimal  # shares
    usdc_size: Decimal
    timestamp: int
    transaction_hash: str = ""
    market_slug: str = ""
    outcome: str = ""
    raw_data: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: dict, wallet: str) -> "UserTrade":
        price = to_decimal(data.get("price"))
        size = to_decimal(data.get("size"))
        tx_hash = data.get("transactionHash") or ""
        token_id = str(data.get("asset") or data.get("tokenId") or "")
        try:
            timestamp = int(data.get("timestamp") or 0)
        except (TypeError, ValueError):
            timestamp = 0
        return cls(
            trade_id=tx_hash or f"{wallet}-{timestamp}-{token_id}",
            wallet=wallet,
            token_id=token_id,
            condition_id=data.get("conditionId") or "",
            side=(data.get("side") or "BUY").upper(),
            price=price,
            size=size,
            usdc_size=to_decimal(data.get("usdcSize"), size * price),
            timestamp=timestamp,
            transaction_hash=tx_hash,
            market_slug=data.get("slug") or "",
            outcome=data.get("outcome") or "",
            raw_data=data,
        )


class PositionSource(Protocol):
    """What the exit engine and PnL tracker need from a position feed."""

    async def get_positions(self, address: str) -> list[UserPosition]: ...


class EndpointRateLimiter:
    """Per-endpoint rate limiter using token bucket algorithm."""

    def __init__(self, rate: float):
        """
        Args:
            rate: Maximum requests per second
        """
        self.rate = rate
        self.tokens = rate
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Wait until a request can be made."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.tokens = min(self.rate, self.tokens + elapsed * self.rate)
            self.last_update = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.rate
                await asyncio.sleep(wait_time)
                self.tokens = 0
            else:
                self.tokens -= 1


class PolymarketDataAPI:
    """Client for Polymarket Data API with per-endpoint rate limiting."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.api.polymarket.base_url
        self.timeout = aiohttp.ClientTimeout(total=self.settings.api.polymarket.timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

        # Per-endpoint rate limiters
        self._rate_limiters: dict[str, EndpointRateLimiter] = {}
        for endpoint, rate in ENDPOINT_RATE_LIMITS.items():
            self._rate_limiters[endpoint] = EndpointRateLimiter(rate)

        # Default rate limiter for unknown endpoints
        self._default_limiter = EndpointRateLimiter(30)

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self):
        """Ensure we have an active session."""
        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={
                    "Accept": "application/json",
                    "Origin": "https://polymarket.com",
                    "Referer": "https://polymarket.com/",
                },
            )

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _get_rate_limiter(self, endpoint: str) -> EndpointRateLimiter:
        """Get the rate limiter for an endpoint."""
        return self._rate_limiters.get(endpoint, self._default_limiter)

    @retry(
        retry=retry_if_exception_type((RateLimitedError, aiohttp.ClientError, asyncio.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    async def _get(self, endpoint: str, params: Optional[dict] = None) -> dict | list:
        """Make a GET request to the API with rate limiting."""
        await self._ensure_session()

        # Apply per-endpoint rate limiting
        limiter = self._get_rate_limiter(endpoint)
        await limiter.acquire()

        url = f"{self.base_url}/{endpoint}"

        async with self._session.get(url, params=params) as response:
            if response.status == 404:
                return []
            if response.status == 429:
                retry_after = int(response.headers.get("Retry-After", 10))
                logger.warning(f"Rate limited on {endpoint}, waiting {retry_after}s")
                await asyncio.sleep(retry_after)
                raise RateLimitedError(f"Rate limited: {response.status}")
            if response.status >= 500:
                raise aiohttp.ClientResponseError(
                    response.request_info,
                    response.history,
                    status=response.status,
                    message=f"Server error on {endpoint}",
                )
            if response.status != 200:
                logger.error(f"API error on {endpoint}: {response.status}")
                raise DataAPIError(f"API error: {response.status}")

            return await response.json()

    # =========================================================================
    # Wallet Data Endpoints
    # =========================================================================

    async def get_positions(self, address: str) -> list[UserPosition]:
        """
        Get a wallet's open positions.

        Raises on transport failure so callers can tell "no positions"
        apart from "could not fetch".
        """
        result = await self._get(
            "positions",
            {"user": address.lower(), "sizeThreshold": float(MIN_POSITION_SIZE)},
        )
        if not isinstance(result, list):
            return []
        return [UserPosition.from_api(p) for p in result]

    async def get_trades(self, address: str, limit: int = 20) -> list[UserTrade]:
        """Get a wallet's most recent trades."""
        result = await self._get("trades", {"user": address.lower(), "limit": limit})
        if not isinstance(result, list):
            return []
        return [UserTrade.from_api(t, address.lower()) for t in result]

    async def get_portfolio_value(self, address: str) -> Decimal:
        """Get a wallet's portfolio value (positions only, no USDC cash)."""
        try:
            result = await self._get("value", {"user": address.lower()})
            if isinstance(result, list) and len(result) > 0:
                return to_decimal(result[0].get("value"))
            return Decimal("0")
        except Exception as e:
            logger.error(f"Error getting portfolio value for {address}: {e}")
            return Decimal("0")

    async def get_usdc_balance(self, address: str) -> Decimal:
        """Get USDC.e balance for a wallet on Polygon via RPC."""
        await self._ensure_session()

        # balanceOf(address) = 0x70a08231
        address_padded = address.lower().replace("0x", "").zfill(64)
        payload = {
            "jsonrpc": "2.0",
            "method": "eth_call",
            "params": [
                {"to": USDC_CONTRACT, "data": f"0x70a08231{address_padded}"},
                "latest",
            ],
            "id": 1,
        }

        try:
            async with self._session.post(
                POLYGON_RPC_URL,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=10)
            ) as response:
                if response.status == 200:
                    result = await response.json()
                    if result.get("result"):
                        balance_raw = int(result["result"], 16)
                        return Decimal(balance_raw) / (10 ** USDC_DECIMALS)
                return Decimal("0")
        except Exception as e:
            logger.debug(f"Error getting USDC balance for {address}: {e}")
            return Decimal("0")

    async def get_total_balance(self, address: str) -> tuple[Decimal, Decimal, Decimal]:
        """
        Get total balance including positions and USDC cash.

        Returns:
            Tuple of (total_balance, position_value, usdc_cash)
        """
        position_value, usdc_cash = await asyncio.gather(
            self.get_portfolio_value(address),
            self.get_usdc_balance(address)
        )
        return position_value + usdc_cash, position_value, usdc_cash
