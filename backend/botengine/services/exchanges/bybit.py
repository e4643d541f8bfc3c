"""Bybit REST client (legacy v2 signing: sorted parameters)."""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from .base import (
    SignedRestClient,
    ExchangeApiError,
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


def sign_sorted_params(secret: str, params: Dict[str, Any]) -> str:
    """HMAC-SHA256 hex over key=value pairs joined by '&' in key order."""
    payload = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def to_bybit_symbol(symbol: str) -> str:
    base, quote = split_pair(symbol)
    return f"{base}{quote}"


class BybitClient(SignedRestClient):
    """Bybit client. api_key, timestamp and sign travel with the parameters."""

    name = "bybit"
    display_name = "Bybit"
    base_url = "https://api.bybit.com"

    def _extract_error(self, payload: Any) -> Optional[str]:
        if isinstance(payload, dict):
            return payload.get("ret_msg")
        return None

    async def _request(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
        signed: bool = True,
    ) -> Any:
        request_params = dict(params or {})
        if signed:
            request_params["api_key"] = self.api_key
            request_params["timestamp"] = int(self._clock() * 1000)
            request_params["sign"] = sign_sorted_params(self.api_secret, request_params)

        url = f"{self.base_url}{endpoint}"
        if method.upper() == "GET":
            payload = await self._send("GET", url, params=request_params)
        else:
            payload = await self._send(
                method.upper(),
                url,
                headers={"Content-Type": "application/json"},
                body=json.dumps(request_params),
            )

        if payload.get("ret_code", 0) != 0:
            raise ExchangeApiError(f"Bybit API error: {payload.get('ret_msg') or payload.get('ret_code')}")
        return payload

    async def get_account_info(self) -> Any:
        return await self._request("/v2/private/wallet/balance")

    async def get_balance(self) -> Dict[str, float]:
        data = await self.get_account_info()
        balances = {}
        for currency, balance in (data.get("result") or {}).items():
            available = to_float(balance.get("available_balance"))
            if available > 0:
                balances[currency] = available
        return balances

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self._request("/v2/public/tickers", {"symbol": to_bybit_symbol(symbol)}, signed=False)
        rows = data.get("result") or []
        if not rows:
            raise ExchangeApiError("Bybit API error: No ticker data received")

        ticker = rows[0]
        return Ticker(
            symbol=symbol,
            price=to_float(ticker.get("last_price")),
            # Bybit reports the 24h change as a fraction
            change=to_float(ticker.get("price_24h_pcnt")) * 100,
            volume=to_float(ticker.get("volume_24h")),
        )

    async def get_orderbook(self, symbol: str, depth: int = 100) -> Orderbook:
        data = await self._request("/v2/public/orderBook/L2", {"symbol": to_bybit_symbol(symbol)}, signed=False)
        bids, asks = [], []
        for level in data.get("result") or []:
            entry = (to_float(level.get("price")), to_float(level.get("size")))
            if level.get("side") == "Buy":
                bids.append(entry)
            else:
                asks.append(entry)
        bids.sort(key=lambda x: x[0], reverse=True)
        asks.sort(key=lambda x: x[0])
        return Orderbook(bids=bids[:depth], asks=asks[:depth])

    async def create_order(self, request: OrderRequest) -> ExchangeOrder:
        params = {
            "symbol": to_bybit_symbol(request.symbol),
            "side": request.side.capitalize(),
            "order_type": request.type.capitalize(),
            "qty": format_decimal(request.quantity),
            "time_in_force": "GoodTillCancel",
        }
        if request.type.lower() == "limit" and request.price:
            params["price"] = format_decimal(request.price)

        data = await self._request("/v2/private/order/create", params, method="POST")
        order = data.get("result")
        if not order:
            raise ExchangeApiError("Bybit API error: Failed to create order")

        executed_qty = to_float(order.get("cum_exec_qty"))
        exec_value = to_float(order.get("cum_exec_value"))
        executed_price = (exec_value / executed_qty) if executed_qty and exec_value else to_float(order.get("price"))

        return ExchangeOrder(
            id=str(order.get("order_id", "")),
            symbol=request.symbol,
            side=str(order.get("side", request.side)).lower(),
            type=str(order.get("order_type", request.type)).lower(),
            quantity=to_float(order.get("qty"), request.quantity),
            price=to_float(order.get("price"), request.price or 0.0),
            executed_price=executed_price,
            executed_quantity=executed_qty,
            status=normalize_order_status(order.get("order_status")),
            fee=to_float(order.get("cum_exec_fee")),
        )

    async def cancel_order(self, order_id: str, symbol: str, futures: bool = False) -> None:
        await self._request(
            "/v2/private/order/cancel",
            {"symbol": to_bybit_symbol(symbol), "order_id": order_id},
            method="POST",
        )
        logger.info(f"Bybit: cancelled order {order_id} for {symbol}")
