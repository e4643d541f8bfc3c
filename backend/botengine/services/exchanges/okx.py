"""OKX v5 REST client."""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

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


def sign_okx(secret: str, timestamp: str, method: str, request_path: str, body: str = "") -> str:
    """Base64 HMAC-SHA256 over timestamp + method + path (with query) + body."""
    message = f"{timestamp}{method.upper()}{request_path}{body}"
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def to_okx_symbol(symbol: str) -> str:
    base, quote = split_pair(symbol)
    return f"{base}-{quote}"


class OKXClient(SignedRestClient):
    """OKX client. Requires the API passphrase in addition to key and secret."""

    name = "okx"
    display_name = "OKX"
    base_url = "https://www.okx.com"

    def _timestamp(self) -> str:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def _extract_error(self, payload: Any) -> Optional[str]:
        if isinstance(payload, dict):
            data = payload.get("data") or []
            if data and isinstance(data[0], dict) and data[0].get("sMsg"):
                return data[0]["sMsg"]
            return payload.get("msg")
        return None

    async def _request(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
    ) -> Any:
        params = params or {}
        method = method.upper()

        if method == "GET":
            request_path = endpoint + (f"?{urlencode(params)}" if params else "")
            body = ""
        else:
            request_path = endpoint
            body = json.dumps(params)

        timestamp = self._timestamp()
        headers = {
            "OK-ACCESS-KEY": self.api_key,
            "OK-ACCESS-SIGN": sign_okx(self.api_secret, timestamp, method, request_path, body),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": self.passphrase or "",
            "Content-Type": "application/json",
        }

        payload = await self._send(method, f"{self.base_url}{request_path}", headers=headers, body=body or None)

        if str(payload.get("code", "0")) != "0":
            raise ExchangeApiError(f"OKX API error: {self._extract_error(payload) or payload.get('code')}")
        return payload

    async def get_account_info(self) -> Any:
        return await self._request("/api/v5/account/balance")

    async def get_balance(self) -> Dict[str, float]:
        data = await self.get_account_info()
        balances = {}
        accounts = data.get("data") or []
        if accounts:
            for detail in accounts[0].get("details", []):
                available = to_float(detail.get("availBal"))
                if available > 0:
                    balances[detail["ccy"]] = available
        return balances

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self._request("/api/v5/market/ticker", {"instId": to_okx_symbol(symbol)})
        rows = data.get("data") or []
        if not rows:
            raise ExchangeApiError("OKX API error: No ticker data received")

        ticker = rows[0]
        last = to_float(ticker.get("last"))
        open_24h = to_float(ticker.get("open24h"))
        change = ((last - open_24h) / open_24h * 100) if open_24h else 0.0
        return Ticker(
            symbol=symbol,
            price=last,
            change=change,
            volume=to_float(ticker.get("vol24h")),
        )

    async def get_orderbook(self, symbol: str, depth: int = 100) -> Orderbook:
        data = await self._request(
            "/api/v5/market/books", {"instId": to_okx_symbol(symbol), "sz": min(depth, 400)}
        )
        rows = data.get("data") or []
        if not rows:
            return Orderbook()
        book = rows[0]
        return Orderbook(
            bids=[(to_float(level[0]), to_float(level[1])) for level in book.get("bids", [])],
            asks=[(to_float(level[0]), to_float(level[1])) for level in book.get("asks", [])],
        )

    async def create_order(self, request: OrderRequest) -> ExchangeOrder:
        inst_id = to_okx_symbol(request.symbol)
        params = {
            "instId": inst_id,
            "tdMode": "cross" if request.futures else "cash",
            "side": request.side.lower(),
            "ordType": request.type.lower(),
            "sz": format_decimal(request.quantity),
        }
        if request.type.lower() == "limit" and request.price:
            params["px"] = format_decimal(request.price)
        if request.futures and request.leverage:
            params["lever"] = str(request.leverage)

        data = await self._request("/api/v5/trade/order", params, method="POST")
        rows = data.get("data") or []
        if not rows or not rows[0].get("ordId"):
            raise ExchangeApiError("OKX API error: Failed to create order")
        order_id = rows[0]["ordId"]

        # Placement only acknowledges; fetch the order for fill details.
        # The order exists from here on, so a failed lookup must not raise.
        try:
            details = await self._request("/api/v5/trade/order", {"instId": inst_id, "ordId": order_id})
            order = (details.get("data") or [{}])[0]
        except ExchangeApiError as e:
            logger.warning(f"OKX: order {order_id} placed but fill details unavailable: {e}")
            order = {}

        return ExchangeOrder(
            id=str(order_id),
            symbol=request.symbol,
            side=request.side.lower(),
            type=request.type.lower(),
            quantity=request.quantity,
            price=request.price or 0.0,
            executed_price=to_float(order.get("avgPx")),
            executed_quantity=to_float(order.get("accFillSz")),
            status=normalize_order_status(order.get("state", "live")),
            # OKX reports fees as negative numbers
            fee=abs(to_float(order.get("fee"))),
            fee_currency=order.get("feeCcy") or None,
        )

    async def cancel_order(self, order_id: str, symbol: str, futures: bool = False) -> None:
        await self._request(
            "/api/v5/trade/cancel-order",
            {"instId": to_okx_symbol(symbol), "ordId": order_id},
            method="POST",
        )
        logger.info(f"OKX: cancelled order {order_id} for {symbol}")
