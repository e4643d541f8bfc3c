"""Simulated exchange client for paper trading."""

import logging
from typing import Dict, Optional

from .base import (
    ExchangeClient,
    ExchangeApiError,
    Ticker,
    Orderbook,
    OrderRequest,
    ExchangeOrder,
    split_pair,
)
from ...models.trade import TradeStatus

logger = logging.getLogger(__name__)

MOCK_PRICES = {
    "BTC/USDT": 45000.0,
    "ETH/USDT": 2500.0,
    "SOL/USDT": 100.0,
    "XRP/USDT": 0.55,
    "ADA/USDT": 0.45,
    "DOGE/USDT": 0.08,
}

FEE_RATE = 0.001  # 0.1%
SPREAD_RATE = 0.001


class SimulatedExchangeClient(ExchangeClient):
    """In-memory venue: market orders fill at the touch, limit orders rest until crossed."""

    name = "simulated"

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        passphrase: Optional[str] = None,
        initial_balance: float = 10000.0,
        quote_currency: str = "USDT",
    ):
        self.api_key = api_key
        self._balances: Dict[str, float] = {quote_currency: initial_balance}
        self._prices: Dict[str, float] = {}
        self._orders: Dict[str, ExchangeOrder] = {}
        self._order_counter = 0

    def _key(self, symbol: str) -> str:
        base, quote = split_pair(symbol)
        return f"{base}/{quote}"

    def set_price(self, symbol: str, price: float) -> None:
        """Set the simulated last price for a symbol."""
        self._prices[self._key(symbol)] = price

    def set_balance(self, currency: str, amount: float) -> None:
        """Set simulated balance for testing."""
        self._balances[currency] = amount

    def _price(self, symbol: str) -> float:
        key = self._key(symbol)
        return self._prices.get(key, MOCK_PRICES.get(key, 100.0))

    async def initialize(self) -> None:
        logger.info("Connected to simulated exchange")

    async def get_balance(self) -> Dict[str, float]:
        return {asset: amount for asset, amount in self._balances.items() if amount > 0}

    async def get_ticker(self, symbol: str) -> Ticker:
        return Ticker(symbol=symbol, price=self._price(symbol), change=0.0, volume=1000000.0)

    async def get_orderbook(self, symbol: str, depth: int = 100) -> Orderbook:
        price = self._price(symbol)
        spread = price * SPREAD_RATE
        levels = min(depth, 5)
        return Orderbook(
            bids=[(price - spread * (i + 1), 1.0) for i in range(levels)],
            asks=[(price + spread * (i + 1), 1.0) for i in range(levels)],
        )

    def _settle(self, symbol: str, side: str, quantity: float, price: float) -> float:
        """Move balances for a fill and return the fee charged."""
        base, quote = split_pair(symbol)
        cost = quantity * price
        fee = cost * FEE_RATE

        if side == "buy":
            if self._balances.get(quote, 0) < cost + fee:
                raise ExchangeApiError("Simulated API error: Insufficient balance")
            self._balances[quote] = self._balances.get(quote, 0) - cost - fee
            self._balances[base] = self._balances.get(base, 0) + quantity
        else:
            if self._balances.get(base, 0) < quantity:
                raise ExchangeApiError("Simulated API error: Insufficient balance")
            self._balances[base] = self._balances.get(base, 0) - quantity
            self._balances[quote] = self._balances.get(quote, 0) + cost - fee
        return fee

    async def create_order(self, request: OrderRequest) -> ExchangeOrder:
        if request.quantity <= 0:
            raise ExchangeApiError("Simulated API error: Quantity must be positive")

        side = request.side.lower()
        last = self._price(request.symbol)
        touch = last * (1 + SPREAD_RATE) if side == "buy" else last * (1 - SPREAD_RATE)

        is_limit = request.type.lower() == "limit" and request.price
        marketable = not is_limit or (
            request.price >= touch if side == "buy" else request.price <= touch
        )

        self._order_counter += 1
        order = ExchangeOrder(
            id=f"sim_{self._order_counter}",
            symbol=request.symbol,
            side=side,
            type=request.type.lower(),
            quantity=request.quantity,
            price=request.price or 0.0,
            executed_price=0.0,
            executed_quantity=0.0,
            status=TradeStatus.OPEN.value,
        )

        if marketable:
            order.fee = self._settle(request.symbol, side, request.quantity, touch)
            order.fee_currency = split_pair(request.symbol)[1]
            order.executed_price = touch
            order.executed_quantity = request.quantity
            order.status = TradeStatus.FILLED.value

        self._orders[order.id] = order
        return order

    async def cancel_order(self, order_id: str, symbol: str, futures: bool = False) -> None:
        order = self._orders.get(order_id)
        if order is None:
            raise ExchangeApiError(f"Simulated API error: Order {order_id} not found")
        if not order.is_open:
            raise ExchangeApiError(f"Simulated API error: Order {order_id} is {order.status}")
        order.status = TradeStatus.CANCELLED.value
