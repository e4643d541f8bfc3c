"""Binance spot/futures REST client."""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from .base import (
    SignedRestClient,
    Ticker,
    Orderbook,
    OrderRequest,
    ExchangeOrder,
    normalize_order_status,
    format_decimal,
    split_pair,
    to_float,
)

logger = logging.getLogger(__name__)


def sign_query(secret: str, query_string: str) -> str:
    """HMAC-SHA256 hex digest of the exact query string sent."""
    return hmac.new(secret.encode(), query_string.encode(), hashlib.sha256).hexdigest()


def to_binance_symbol(symbol: str) -> str:
    base, quote = split_pair(symbol)
    return f"{base}{quote}"


class BinanceClient(SignedRestClient):
    """Binance client. Signed requests carry timestamp and signature in the query string."""

    name = "binance"
    display_name = "Binance"
    base_url = "https://api.binance.com"
    futures_url = "https://fapi.binance.com"

    async def _request(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
        signed: bool = True,
        futures: bool = False,
    ) -> Any:
        base_url = self.futures_url if futures else self.base_url
        query = dict(params or {})

        if signed:
            query["timestamp"] = int(self._clock() * 1000)
            query_string = urlencode(query)
            query_string = f"{query_string}&signature={sign_query(self.api_secret, query_string)}"
        else:
            query_string = urlencode(query)

        url = f"{base_url}{endpoint}"
        if query_string:
            url = f"{url}?{query_string}"

        return await self._send(method, url, headers={"X-MBX-APIKEY": self.api_key})

    async def get_account_info(self) -> Any:
        return await self._request("/api/v3/account")

    async def get_balance(self) -> Dict[str, float]:
        account = await self.get_account_info()
        balances = {}
        for balance in account.get("balances", []):
            free = to_float(balance.get("free"))
            locked = to_float(balance.get("locked"))
            if free > 0 or locked > 0:
                balances[balance["asset"]] = free + locked
        return balances

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self._request(
            "/api/v3/ticker/24hr", {"symbol": to_binance_symbol(symbol)}, signed=False
        )
        return Ticker(
            symbol=symbol,
            price=to_float(data.get("lastPrice")),
            change=to_float(data.get("priceChangePercent")),
            volume=to_float(data.get("volume")),
        )

    async def get_orderbook(self, symbol: str, depth: int = 100) -> Orderbook:
        data = await self._request(
            "/api/v3/depth", {"symbol": to_binance_symbol(symbol), "limit": depth}, signed=False
        )
        return Orderbook(
            bids=[(to_float(p), to_float(q)) for p, q in data.get("bids", [])],
            asks=[(to_float(p), to_float(q)) for p, q in data.get("asks", [])],
        )

    def _order_params(self, request: OrderRequest) -> Dict[str, Any]:
        params = {
            "symbol": to_binance_symbol(request.symbol),
            "side": request.side.upper(),
            "quantity": format_decimal(request.quantity),
        }
        if request.type.lower() == "limit":
            params["type"] = "LIMIT"
            params["timeInForce"] = "GTC"
            params["price"] = format_decimal(request.price)
        else:
            params["type"] = "MARKET"
        return params

    async def create_order(self, request: OrderRequest) -> ExchangeOrder:
        params = self._order_params(request)

        if request.futures:
            if request.leverage:
                await self._request(
                    "/fapi/v1/leverage",
                    {"symbol": params["symbol"], "leverage": request.leverage},
                    method="POST",
                    futures=True,
                )
            data = await self._request("/fapi/v1/order", params, method="POST", futures=True)
        else:
            data = await self._request("/api/v3/order", params, method="POST")

        return self._parse_order(data, request)

    def _parse_order(self, data: Dict[str, Any], request: OrderRequest) -> ExchangeOrder:
        executed_qty = to_float(data.get("executedQty"))

        # Spot reports quote spent; futures reports the average price directly
        executed_price = to_float(data.get("avgPrice"))
        if not executed_price:
            quote_qty = to_float(data.get("cummulativeQuoteQty"))
            if quote_qty and executed_qty:
                executed_price = quote_qty / executed_qty
            else:
                executed_price = to_float(data.get("price"))

        fee = 0.0
        fee_currency = None
        for fill in data.get("fills", []):
            fee += to_float(fill.get("commission"))
            fee_currency = fill.get("commissionAsset", fee_currency)

        return ExchangeOrder(
            id=str(data.get("orderId", "")),
            symbol=request.symbol,
            side=str(data.get("side", request.side)).lower(),
            type=str(data.get("type", request.type)).lower(),
            quantity=to_float(data.get("origQty"), request.quantity),
            price=to_float(data.get("price"), request.price or 0.0),
            executed_price=executed_price,
            executed_quantity=executed_qty,
            status=normalize_order_status(data.get("status")),
            fee=fee,
            fee_currency=fee_currency,
        )

    async def cancel_order(self, order_id: str, symbol: str, futures: bool = False) -> None:
        await self._request(
            "/fapi/v1/order" if futures else "/api/v3/order",
            {"symbol": to_binance_symbol(symbol), "orderId": order_id},
            method="DELETE",
            futures=futures,
        )
        logger.info(f"Binance: cancelled {'futures ' if futures else ''}order {order_id} for {symbol}")
