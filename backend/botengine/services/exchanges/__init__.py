# Exchange adapters

from .base import (
    ExchangeClient,
    SignedRestClient,
    ExchangeConnectionError,
    ExchangeApiError,
    Ticker,
    Orderbook,
    OrderRequest,
    ExchangeOrder,
    normalize_order_status,
    split_pair,
)
from .binance import BinanceClient
from .okx import OKXClient
from .bybit import BybitClient
from .ccxt_client import CcxtExchangeClient
from .simulated import SimulatedExchangeClient
from .connector import ExchangeConnector

__all__ = [
    "ExchangeClient",
    "SignedRestClient",
    "ExchangeConnectionError",
    "ExchangeApiError",
    "Ticker",
    "Orderbook",
    "OrderRequest",
    "ExchangeOrder",
    "normalize_order_status",
    "split_pair",
    "BinanceClient",
    "OKXClient",
    "BybitClient",
    "CcxtExchangeClient",
    "SimulatedExchangeClient",
    "ExchangeConnector",
]
