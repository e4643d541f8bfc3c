"""In-memory registry of active bots."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from ..models.bot import BotStatus, StrategyType
from .exchanges.base import ExchangeClient
from .logging_service import BotLoggingService
from .performance import PerformanceSnapshot
from .strategies import Strategy, StrategyConfig, CopyTradingStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpenOrder:
    """Where a resting order lives, so it can be cancelled on the same market."""
    symbol: str
    futures: bool = False


@dataclass
class BotHandle:
    """Runtime state for one loaded bot.

    `lock` serialises signal execution (position read through commit) and
    order cancellation for this bot;
    `open_orders` maps exchange order id to an OpenOrder for orders the exchange
    reported as still open.
    """
    bot_id: int
    user_id: str
    name: str
    exchange_id: int
    exchange_name: str
    api_key: str
    supports_futures: bool
    trading_pair: str
    strategy_type: StrategyType
    strategy: Strategy
    client: ExchangeClient
    status: BotStatus = BotStatus.RUNNING
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    total_trades: int = 0
    total_profit: float = 0.0
    win_rate: float = 0.0
    current_balance: float = 0.0
    open_orders: Dict[str, OpenOrder] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    activity_log: Optional[BotLoggingService] = None

    @property
    def config(self) -> StrategyConfig:
        return self.strategy.config

    @property
    def connection_key(self) -> Tuple[str, str]:
        return self.exchange_name.lower(), self.api_key

    @property
    def is_running(self) -> bool:
        return self.status == BotStatus.RUNNING

    def apply_performance(self, snapshot: PerformanceSnapshot) -> None:
        self.total_trades = snapshot.total_trades
        self.total_profit = snapshot.total_profit
        self.win_rate = snapshot.win_rate

    def log_activity(self, message: str, level: str = "INFO") -> None:
        if self.activity_log is not None:
            self.activity_log.log_activity(message, level)


class BotRegistry:
    """Owned collection of loaded bots, keyed by bot id."""

    def __init__(self):
        self._bots: Dict[int, BotHandle] = {}

    def __contains__(self, bot_id: int) -> bool:
        return bot_id in self._bots

    def __len__(self) -> int:
        return len(self._bots)

    def __iter__(self) -> Iterator[BotHandle]:
        return iter(list(self._bots.values()))

    def add(self, handle: BotHandle) -> None:
        self._bots[handle.bot_id] = handle
        logger.debug(f"Registered bot {handle.bot_id} ({handle.name})")

    def get(self, bot_id: int) -> Optional[BotHandle]:
        return self._bots.get(bot_id)

    def remove(self, bot_id: int) -> Optional[BotHandle]:
        handle = self._bots.pop(bot_id, None)
        if handle is not None:
            logger.debug(f"Unregistered bot {bot_id}")
        return handle

    def running(self) -> List[BotHandle]:
        return [h for h in self._bots.values() if h.is_running]

    def by_connection(self, handles: Optional[List[BotHandle]] = None) -> Dict[Tuple[str, str], List[BotHandle]]:
        """Group bots that share an exchange credential (and its rate limit)."""
        groups: Dict[Tuple[str, str], List[BotHandle]] = {}
        for handle in handles if handles is not None else list(self._bots.values()):
            groups.setdefault(handle.connection_key, []).append(handle)
        return groups

    def followers_of(self, leader_bot_id: int) -> List[BotHandle]:
        return [
            h for h in self._bots.values()
            if isinstance(h.strategy, CopyTradingStrategy) and h.strategy.leader_bot_id == leader_bot_id
        ]

    def clear(self) -> None:
        self._bots.clear()
