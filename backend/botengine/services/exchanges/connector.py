"""Exchange client factory and connection cache."""

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple

from .base import ExchangeClient, ExchangeConnectionError
from .binance import BinanceClient
from .okx import OKXClient
from .bybit import BybitClient
from .ccxt_client import CcxtExchangeClient, ccxt_supports
from .simulated import SimulatedExchangeClient
from ..config import EngineSettings

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str, Optional[str], EngineSettings], ExchangeClient]


def _signed(client_class):
    def factory(api_key, api_secret, passphrase, settings):
        return client_class(api_key, api_secret, passphrase, timeout=settings.request_timeout_seconds)
    return factory


DEFAULT_FACTORIES: Dict[str, ClientFactory] = {
    "binance": _signed(BinanceClient),
    "okx": _signed(OKXClient),
    "bybit": _signed(BybitClient),
    "simulated": lambda api_key, api_secret, passphrase, settings: SimulatedExchangeClient(
        api_key, api_secret, passphrase
    ),
}


class ExchangeConnector:
    """Creates authenticated clients and shares them per (exchange, api key).

    Repeated bot initialisations with the same credentials reuse one session,
    so the venue sees a single authentication handshake.
    """

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()
        self._factories: Dict[str, ClientFactory] = dict(DEFAULT_FACTORIES)
        self._connections: Dict[Tuple[str, str], ExchangeClient] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def register(self, exchange_name: str, factory: ClientFactory) -> None:
        """Register (or replace) the client factory for an exchange name."""
        self._factories[exchange_name.lower()] = factory

    @staticmethod
    def connection_key(exchange_name: str, api_key: str) -> Tuple[str, str]:
        return exchange_name.lower(), api_key

    def _build_client(
        self,
        exchange_name: str,
        api_key: str,
        api_secret: str,
        passphrase: Optional[str],
    ) -> ExchangeClient:
        name = exchange_name.lower()
        factory = self._factories.get(name)
        if factory is not None:
            return factory(api_key, api_secret, passphrase, self.settings)

        if self.settings.allow_ccxt_fallback and ccxt_supports(name):
            return CcxtExchangeClient(
                name,
                api_key,
                api_secret,
                passphrase,
                timeout=self.settings.request_timeout_seconds,
                retry_count=self.settings.read_retry_count,
                retry_delay=self.settings.read_retry_delay,
            )

        raise ExchangeConnectionError(f"Unsupported exchange: {exchange_name}")

    async def connect(
        self,
        exchange_name: str,
        api_key: str,
        api_secret: str,
        passphrase: Optional[str] = None,
    ) -> ExchangeClient:
        """Return a cached or freshly authenticated client.

        Raises:
            ExchangeConnectionError: Unsupported exchange or failed authentication check.
        """
        key = self.connection_key(exchange_name, api_key)

        if key in self._connections:
            return self._connections[key]

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another caller may have connected while we waited
            if key in self._connections:
                return self._connections[key]

            client = self._build_client(exchange_name, api_key, api_secret, passphrase)
            await client.initialize()
            self._connections[key] = client
            logger.info(f"Exchange connection established: {exchange_name}")
            return client

    def is_connected(self, exchange_name: str, api_key: str) -> bool:
        return self.connection_key(exchange_name, api_key) in self._connections

    async def invalidate(self, exchange_name: str, api_key: str) -> bool:
        """Drop a cached connection after credential rotation."""
        client = self._connections.pop(self.connection_key(exchange_name, api_key), None)
        if client is None:
            return False
        try:
            await client.close()
        except Exception as e:
            logger.error(f"Error closing {exchange_name} connection: {e}")
        logger.info(f"Exchange connection invalidated: {exchange_name}")
        return True

    async def close_all(self) -> None:
        """Close every cached connection (process shutdown)."""
        for (exchange_name, _), client in list(self._connections.items()):
            try:
                await client.close()
            except Exception as e:
                logger.error(f"Error closing {exchange_name} connection: {e}")
        self._connections.clear()
        self._locks.clear()
