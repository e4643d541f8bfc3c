"""Generic client for any exchange supported by ccxt."""

import asyncio
import logging
from typing import Any, Dict, Optional

import ccxt.async_support as ccxt

from .base import (
    ExchangeClient,
    ExchangeConnectionError,
    ExchangeApiError,
    Ticker,
    Orderbook,
    OrderRequest,
    ExchangeOrder,
    normalize_order_status,
    to_float,
)

logger = logging.getLogger(__name__)


def ccxt_supports(exchange_id: str) -> bool:
    return exchange_id in getattr(ccxt, "exchanges", [])


class CcxtExchangeClient(ExchangeClient):
    """ccxt-backed client used for venues without a native client."""

    def __init__(
        self,
        exchange_id: str,
        api_key: str,
        api_secret: str,
        passphrase: Optional[str] = None,
        timeout: float = 10.0,
        retry_count: int = 3,
        retry_delay: float = 1.0,
    ):
        """Initialize the ccxt client.

        Args:
            exchange_id: The ccxt exchange identifier (e.g., 'kraken', 'mexc')
            api_key: API key
            api_secret: API secret
            passphrase: API passphrase for venues that require one
            timeout: Request timeout in seconds
            retry_count: Attempts for idempotent reads
            retry_delay: Base delay between read attempts
        """
        self.name = exchange_id
        self.exchange_id = exchange_id
        self._retry_count = retry_count
        self._retry_delay = retry_delay

        exchange_class = getattr(ccxt, exchange_id, None)
        if exchange_class is None:
            raise ExchangeConnectionError(f"Unsupported exchange: {exchange_id}")

        options = {
            "apiKey": api_key,
            "secret": api_secret,
            "enableRateLimit": True,
            "timeout": int(timeout * 1000),
            "options": {"defaultType": "spot"},
        }
        if passphrase:
            options["password"] = passphrase
        self.exchange = exchange_class(options)

    async def _read_with_retry(self, func, *args, **kwargs):
        """Execute an idempotent read with bounded retries.

        Raises:
            ExchangeApiError: If every attempt fails or the exchange rejects the call.
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self._retry_count):
            try:
                return await func(*args, **kwargs)
            except ccxt.RateLimitExceeded as e:
                logger.warning(f"{self.exchange_id}: rate limit exceeded, waiting... (attempt {attempt + 1})")
                await asyncio.sleep(self._retry_delay * (attempt + 1) * 2)
                last_exception = e
            except ccxt.NetworkError as e:
                logger.warning(f"{self.exchange_id}: network error, retrying... (attempt {attempt + 1}): {e}")
                await asyncio.sleep(self._retry_delay * (attempt + 1))
                last_exception = e
            except ccxt.BaseError as e:
                raise ExchangeApiError(f"{self.exchange_id} API error: {e}") from e

        raise ExchangeApiError(f"{self.exchange_id} API error: {last_exception}")

    async def initialize(self) -> None:
        try:
            await self._read_with_retry(self.exchange.load_markets)
            await self._read_with_retry(self.exchange.fetch_balance)
        except ExchangeApiError as e:
            await self.close()
            raise ExchangeConnectionError(f"Failed to connect to {self.exchange_id}: {e}") from e
        logger.info(f"Connected to {self.exchange_id} exchange")

    async def get_balance(self) -> Dict[str, float]:
        balance = await self._read_with_retry(self.exchange.fetch_balance)
        return {
            currency: float(amount)
            for currency, amount in (balance.get("total") or {}).items()
            if amount and amount > 0
        }

    async def get_ticker(self, symbol: str) -> Ticker:
        ticker = await self._read_with_retry(self.exchange.fetch_ticker, symbol)
        return Ticker(
            symbol=symbol,
            price=to_float(ticker.get("last")),
            change=to_float(ticker.get("percentage")),
            volume=to_float(ticker.get("baseVolume")),
        )

    async def get_orderbook(self, symbol: str, depth: int = 100) -> Orderbook:
        book = await self._read_with_retry(self.exchange.fetch_order_book, symbol, depth)
        return Orderbook(
            bids=[(to_float(level[0]), to_float(level[1])) for level in book.get("bids", [])],
            asks=[(to_float(level[0]), to_float(level[1])) for level in book.get("asks", [])],
        )

    async def create_order(self, request: OrderRequest) -> ExchangeOrder:
        params: Dict[str, Any] = {}
        if request.futures and request.leverage:
            params["leverage"] = request.leverage

        try:
            order = await self.exchange.create_order(
                request.symbol,
                request.type.lower(),
                request.side.lower(),
                request.quantity,
                request.price if request.type.lower() == "limit" else None,
                params,
            )
        except ccxt.BaseError as e:
            raise ExchangeApiError(f"{self.exchange_id} API error: {e}") from e

        return self._parse_order(order, request)

    def _parse_order(self, order: Dict[str, Any], request: OrderRequest) -> ExchangeOrder:
        """Parse ccxt order response to ExchangeOrder."""
        fee = order.get("fee") or {}
        return ExchangeOrder(
            id=str(order.get("id", "")),
            symbol=order.get("symbol") or request.symbol,
            side=order.get("side") or request.side,
            type=order.get("type") or request.type,
            quantity=to_float(order.get("amount"), request.quantity),
            price=to_float(order.get("price"), request.price or 0.0),
            executed_price=to_float(order.get("average")) or to_float(order.get("price")),
            executed_quantity=to_float(order.get("filled")),
            status=normalize_order_status(order.get("status")),
            fee=to_float(fee.get("cost")),
            fee_currency=fee.get("currency"),
        )

    async def cancel_order(self, order_id: str, symbol: str, futures: bool = False) -> None:
        try:
            await self.exchange.cancel_order(order_id, symbol)
        except ccxt.BaseError as e:
            raise ExchangeApiError(f"{self.exchange_id} API error: {e}") from e
        logger.info(f"{self.exchange_id}: cancelled order {order_id} for {symbol}")

    async def close(self) -> None:
        await self.exchange.close()
