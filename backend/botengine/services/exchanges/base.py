"""Base classes for exchange clients.

Every venue is reached through the same capability interface
(`ExchangeClient`): balance, ticker, order book, order placement and
cancellation. Concrete clients own request signing and normalise venue
payloads into the dataclasses below.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from ...models.trade import TradeStatus

logger = logging.getLogger(__name__)

KNOWN_QUOTES = ("USDT", "USDC", "BUSD", "USD", "EUR", "BTC", "ETH", "BNB")

OPEN_STATUSES = {TradeStatus.OPEN.value, TradeStatus.PARTIALLY_FILLED.value}

_STATUS_MAP = {
    "new": TradeStatus.OPEN,
    "created": TradeStatus.OPEN,
    "open": TradeStatus.OPEN,
    "live": TradeStatus.OPEN,
    "untriggered": TradeStatus.OPEN,
    "partiallyfilled": TradeStatus.PARTIALLY_FILLED,
    "partial": TradeStatus.PARTIALLY_FILLED,
    "filled": TradeStatus.FILLED,
    "closed": TradeStatus.FILLED,
    "canceled": TradeStatus.CANCELLED,
    "cancelled": TradeStatus.CANCELLED,
    "rejected": TradeStatus.REJECTED,
    "expired": TradeStatus.REJECTED,
}


class ExchangeConnectionError(Exception):
    """Exchange unreachable or credentials rejected during connect."""


class ExchangeApiError(Exception):
    """An exchange call failed; carries the venue's message."""


@dataclass
class Ticker:
    """Market ticker data."""
    symbol: str
    price: float
    change: float  # 24h change in percent
    volume: float


@dataclass
class Orderbook:
    """Order book snapshot as (price, quantity) levels, best first."""
    bids: List[Tuple[float, float]] = field(default_factory=list)
    asks: List[Tuple[float, float]] = field(default_factory=list)

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None

    @property
    def mid(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2


@dataclass
class OrderRequest:
    """Order parameters built by the signal processor."""
    symbol: str
    side: str  # "buy" or "sell"
    type: str  # "market" or "limit"
    quantity: float
    price: Optional[float] = None
    leverage: Optional[int] = None
    futures: bool = False


@dataclass
class ExchangeOrder:
    """Exchange order result."""
    id: str
    symbol: str
    side: str
    type: str
    quantity: float
    price: float
    executed_price: float
    executed_quantity: float
    status: str
    fee: float = 0.0
    fee_currency: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


def normalize_order_status(raw: Optional[str]) -> str:
    """Map a venue-specific order state onto TradeStatus values."""
    if not raw:
        return TradeStatus.UNKNOWN.value
    key = str(raw).lower().replace("_", "").replace(" ", "")
    return _STATUS_MAP.get(key, TradeStatus.UNKNOWN).value


def split_pair(symbol: str) -> Tuple[str, str]:
    """Split 'BTC/USDT', 'BTC-USDT' or 'BTCUSDT' into (base, quote)."""
    for sep in ("/", "-", "_"):
        if sep in symbol:
            base, quote = symbol.split(sep, 1)
            return base.upper(), quote.upper()
    upper = symbol.upper()
    for quote in KNOWN_QUOTES:
        if upper.endswith(quote) and len(upper) > len(quote):
            return upper[: -len(quote)], quote
    return upper, ""


def format_decimal(value: float) -> str:
    """Render a number for a query string without scientific notation."""
    text = f"{value:.8f}".rstrip("0").rstrip(".")
    return text or "0"


def to_float(value: Any, default: float = 0.0) -> float:
    """Parse exchange numeric fields, which often arrive as strings."""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class ExchangeClient(ABC):
    """Uniform client interface over a single authenticated exchange session.

    Read calls (balance, ticker, order book) are safe to share between bots;
    order placement and cancellation must be serialised per bot by the caller.
    """

    name: str = ""

    async def initialize(self) -> None:
        """Verify connectivity and credentials. Raise ExchangeConnectionError on failure."""

    @abstractmethod
    async def get_balance(self) -> Dict[str, float]:
        """Return non-zero balances keyed by asset."""

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Ticker:
        """Return the current ticker for a symbol."""

    @abstractmethod
    async def get_orderbook(self, symbol: str, depth: int = 100) -> Orderbook:
        """Return the order book for a symbol."""

    @abstractmethod
    async def create_order(self, request: OrderRequest) -> ExchangeOrder:
        """Submit an order. Never retried here."""

    @abstractmethod
    async def cancel_order(self, order_id: str, symbol: str, futures: bool = False) -> None:
        """Cancel an open order. `futures` says which market it was placed on."""

    async def close(self) -> None:
        """Release network resources."""


class SignedRestClient(ExchangeClient):
    """Shared aiohttp transport for clients that sign REST requests by hand."""

    display_name: str = ""
    base_url: str = ""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        passphrase: Optional[str] = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.passphrase = passphrase
        self._timeout = timeout
        self._clock = clock
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
        return self._session

    def _extract_error(self, payload: Any) -> Optional[str]:
        """Pull the human-readable message out of an error payload."""
        if isinstance(payload, dict):
            return payload.get("msg") or payload.get("message")
        return None

    async def _send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[str] = None,
    ) -> Any:
        """Perform one HTTP request and decode the JSON response.

        Raises:
            ExchangeApiError: On transport failure or an HTTP error status.
        """
        session = self._get_session()
        try:
            async with session.request(method, url, headers=headers, params=params, data=body) as resp:
                try:
                    payload = await resp.json(content_type=None)
                except ValueError:
                    # HTML error pages from proxies in front of the API
                    raise ExchangeApiError(f"{self.display_name} API error: HTTP {resp.status} {resp.reason}")
                if resp.status >= 400:
                    message = self._extract_error(payload) or resp.reason
                    raise ExchangeApiError(f"{self.display_name} API error: {message}")
                return payload
        except aiohttp.ClientError as e:
            raise ExchangeApiError(f"{self.display_name} API error: {e}") from e
        except asyncio.TimeoutError as e:
            raise ExchangeApiError(f"{self.display_name} API error: request timed out") from e

    @abstractmethod
    async def get_account_info(self) -> Any:
        """Authenticated call used to verify credentials."""

    async def initialize(self) -> None:
        try:
            await self.get_account_info()
        except Exception as e:
            await self.close()
            raise ExchangeConnectionError(f"Failed to connect to {self.display_name}: {e}") from e
        logger.info(f"{self.display_name} connection established")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
