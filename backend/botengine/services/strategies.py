"""Strategy engine.

Strategies turn a market snapshot into zero or more proposed signals.
`analyze` never talks to an exchange; for the same snapshot and the same
internal counters it always proposes the same signals.

Strategy Layer (Alpha):
    - type: "buy", "sell", "close" (WHAT to do)
    - quantity: How much to trade
    - data: WHY this decision was made

Execution happens later in the signal processor, through the same
state machine as webhook signals.
"""

import logging
import typing
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Type, Union

from ..models.bot import StrategyType
from ..models.signal import SignalType
from .exchanges.base import Ticker, Orderbook

logger = logging.getLogger(__name__)


class UnsupportedStrategyError(Exception):
    """Raised for a strategy type the engine does not implement."""


class StrategyConfigError(ValueError):
    """Raised when a bot's strategy configuration is invalid."""


@dataclass
class ProposedSignal:
    """A signal produced by a strategy, before it is persisted."""
    type: str
    symbol: str
    price: Optional[float] = None
    quantity: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    leverage: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BotState:
    """What a strategy may know about its bot."""
    bot_id: int
    trading_pair: str
    position_quantity: float = 0.0  # Net position, negative when short
    average_entry_price: float = 0.0
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    total_trades: int = 0


@dataclass
class MarketSnapshot:
    """Input to Strategy.analyze."""
    ticker: Ticker
    orderbook: Orderbook
    bot_state: BotState
    now: datetime


# ============================================================================
# Typed configuration
# ============================================================================


def _coerce(annotation: Any, name: str, value: Any) -> Any:
    if value is None:
        return None

    target = annotation
    if typing.get_origin(annotation) is Union:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        target = args[0] if args else Any

    try:
        if target is bool:
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if target in (int, float, str):
            return target(value)
    except (TypeError, ValueError):
        raise StrategyConfigError(f"Invalid value for '{name}': {value!r}")
    return value


@dataclass
class StrategyConfig:
    """Settings shared by every strategy.

    Unknown keys are preserved in `extra` so exchange- or user-specific
    extensions survive a round trip through the bot record.
    """
    order_quantity: float = 0.0
    order_type: str = "market"
    base_currency: str = "USDT"
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StrategyConfig":
        data = dict(data or {})
        hints = typing.get_type_hints(cls)
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}

        for key, value in data.items():
            if key == "extra":
                continue
            if key in hints:
                kwargs[key] = _coerce(hints[key], key, value)
            else:
                extra[key] = value

        config = cls(**kwargs, extra=extra)
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        result = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "extra"}
        result.update(self.extra)
        return result

    def validate(self) -> None:
        if self.order_quantity < 0:
            raise StrategyConfigError("order_quantity must not be negative")
        if self.order_type not in ("market", "limit"):
            raise StrategyConfigError(f"order_type must be 'market' or 'limit', got '{self.order_type}'")


@dataclass
class GridConfig(StrategyConfig):
    lower_price: float = 0.0
    upper_price: float = 0.0
    grid_levels: int = 10

    def validate(self) -> None:
        super().validate()
        if self.lower_price <= 0 or self.upper_price <= self.lower_price:
            raise StrategyConfigError("Grid requires 0 < lower_price < upper_price")
        if self.grid_levels < 1:
            raise StrategyConfigError("grid_levels must be at least 1")


@dataclass
class DCAConfig(StrategyConfig):
    interval_seconds: float = 3600.0
    max_orders: int = 10
    take_profit_percent: float = 2.0
    dip_percent: float = 0.0  # 0 disables buying early on a dip

    def validate(self) -> None:
        super().validate()
        if self.interval_seconds <= 0:
            raise StrategyConfigError("interval_seconds must be positive")
        if not 0 <= self.dip_percent < 100:
            raise StrategyConfigError("dip_percent must be between 0 and 100")


@dataclass
class ScalpingConfig(StrategyConfig):
    depth_levels: int = 5
    imbalance_ratio: float = 1.5
    take_profit_percent: float = 0.3
    stop_loss_percent: float = 0.2


@dataclass
class SwingConfig(StrategyConfig):
    dip_percent: float = 5.0
    rally_percent: float = 5.0


@dataclass
class ArbitrageConfig(StrategyConfig):
    min_deviation_percent: float = 0.5


@dataclass
class SignalConfig(StrategyConfig):
    pass


@dataclass
class CopyTradingConfig(StrategyConfig):
    leader_bot_id: int = 0
    copy_ratio: float = 1.0

    def validate(self) -> None:
        super().validate()
        if self.leader_bot_id <= 0:
            raise StrategyConfigError("copy_trading requires leader_bot_id")
        if self.copy_ratio <= 0:
            raise StrategyConfigError("copy_ratio must be positive")


# ============================================================================
# Strategies
# ============================================================================


class Strategy(ABC):
    """Base strategy. Subclasses implement `_analyze`."""

    strategy_type: StrategyType
    config_class: Type[StrategyConfig] = StrategyConfig

    def __init__(self, config: StrategyConfig):
        self.config = config

    def analyze(self, snapshot: MarketSnapshot) -> List[ProposedSignal]:
        """Propose signals for this snapshot.

        A position that crossed its take-profit or stop-loss is closed before
        the strategy's own logic runs.
        """
        exit_signal = self._protective_exit(snapshot)
        if exit_signal is not None:
            return [exit_signal]
        return self._analyze(snapshot)

    @abstractmethod
    def _analyze(self, snapshot: MarketSnapshot) -> List[ProposedSignal]:
        ...

    def _protective_exit(self, snapshot: MarketSnapshot) -> Optional[ProposedSignal]:
        state = snapshot.bot_state
        position = state.position_quantity
        price = snapshot.ticker.price
        if position == 0 or price <= 0:
            return None

        is_long = position > 0
        reason = None
        if state.take_profit is not None and (
            (is_long and price >= state.take_profit) or (not is_long and price <= state.take_profit)
        ):
            reason = "take_profit"
        elif state.stop_loss is not None and (
            (is_long and price <= state.stop_loss) or (not is_long and price >= state.stop_loss)
        ):
            reason = "stop_loss"

        if reason is None:
            return None

        logger.info(f"Bot {state.bot_id}: {reason} hit at {price}, closing {abs(position)}")
        return ProposedSignal(
            type=SignalType.CLOSE.value,
            symbol=state.trading_pair,
            quantity=abs(position),
            data={"strategy": self.strategy_type.value, "reason": reason, "trigger_price": price},
        )

    def _signal(
        self,
        signal_type: SignalType,
        snapshot: MarketSnapshot,
        quantity: Optional[float] = None,
        **kwargs: Any,
    ) -> ProposedSignal:
        reason = kwargs.pop("reason", "")
        return ProposedSignal(
            type=signal_type.value,
            symbol=snapshot.bot_state.trading_pair,
            quantity=quantity if quantity is not None else self.config.order_quantity,
            data={
                "strategy": self.strategy_type.value,
                "reason": reason,
                "market_price": snapshot.ticker.price,
            },
            **kwargs,
        )


class GridStrategy(Strategy):
    """Buy each grid level crossed downward, sell each level crossed upward."""

    strategy_type = StrategyType.GRID
    config_class = GridConfig

    def __init__(self, config: GridConfig):
        super().__init__(config)
        self.last_level: Optional[int] = None

    def _level(self, price: float) -> int:
        cfg = self.config
        step = (cfg.upper_price - cfg.lower_price) / cfg.grid_levels
        return min(int((price - cfg.lower_price) // step), cfg.grid_levels - 1)

    def _analyze(self, snapshot: MarketSnapshot) -> List[ProposedSignal]:
        price = snapshot.ticker.price
        cfg = self.config
        if price < cfg.lower_price or price > cfg.upper_price:
            return []

        level = self._level(price)
        previous = self.last_level
        self.last_level = level

        if previous is None or level == previous:
            return []

        if level < previous:
            return [self._signal(SignalType.BUY, snapshot, reason=f"grid level {previous} -> {level}")]

        position = snapshot.bot_state.position_quantity
        if position <= 0:
            return []
        return [self._signal(
            SignalType.SELL,
            snapshot,
            quantity=min(cfg.order_quantity, position),
            reason=f"grid level {previous} -> {level}",
        )]


class DCAStrategy(Strategy):
    """Buy a fixed quantity every interval, or sooner when price drops `dip_percent`
    below the last buy; sell everything at the profit target."""

    strategy_type = StrategyType.DCA
    config_class = DCAConfig

    def __init__(self, config: DCAConfig):
        super().__init__(config)
        self.last_buy_at: Optional[datetime] = None
        self.last_buy_price: Optional[float] = None
        self.orders_placed = 0

    def _analyze(self, snapshot: MarketSnapshot) -> List[ProposedSignal]:
        cfg = self.config
        state = snapshot.bot_state
        price = snapshot.ticker.price

        if state.position_quantity > 0 and state.average_entry_price > 0 and cfg.take_profit_percent > 0:
            target = state.average_entry_price * (1 + cfg.take_profit_percent / 100)
            if price >= target:
                self.orders_placed = 0
                self.last_buy_at = None
                self.last_buy_price = None
                return [self._signal(
                    SignalType.SELL,
                    snapshot,
                    quantity=state.position_quantity,
                    reason=f"DCA profit target {target:.8f} reached",
                )]

        if self.orders_placed >= cfg.max_orders:
            return []

        reason = f"DCA order {self.orders_placed + 1}/{cfg.max_orders}"
        if self.last_buy_at is not None:
            elapsed = (snapshot.now - self.last_buy_at).total_seconds()
            if elapsed < cfg.interval_seconds:
                dip_price = None
                if cfg.dip_percent > 0 and self.last_buy_price:
                    dip_price = self.last_buy_price * (1 - cfg.dip_percent / 100)
                if dip_price is None or price > dip_price:
                    return []
                reason = f"{reason} on {cfg.dip_percent}% dip"

        self.last_buy_at = snapshot.now
        self.last_buy_price = price
        self.orders_placed += 1
        return [self._signal(SignalType.BUY, snapshot, reason=reason)]


class ScalpingStrategy(Strategy):
    """Enter on order book bid/ask imbalance with tight protective levels."""

    strategy_type = StrategyType.SCALPING
    config_class = ScalpingConfig

    def _analyze(self, snapshot: MarketSnapshot) -> List[ProposedSignal]:
        cfg = self.config
        book = snapshot.orderbook
        if snapshot.bot_state.position_quantity != 0 or book.best_ask is None or book.best_bid is None:
            return []

        bid_volume = sum(q for _, q in book.bids[: cfg.depth_levels])
        ask_volume = sum(q for _, q in book.asks[: cfg.depth_levels])
        if ask_volume <= 0 or bid_volume / ask_volume < cfg.imbalance_ratio:
            return []

        entry = book.best_ask
        return [self._signal(
            SignalType.BUY,
            snapshot,
            price=entry,
            take_profit=entry * (1 + cfg.take_profit_percent / 100),
            stop_loss=entry * (1 - cfg.stop_loss_percent / 100),
            reason=f"bid/ask imbalance {bid_volume / ask_volume:.2f}",
        )]


class SwingStrategy(Strategy):
    """Buy 24h dips, sell 24h rallies."""

    strategy_type = StrategyType.SWING
    config_class = SwingConfig

    def _analyze(self, snapshot: MarketSnapshot) -> List[ProposedSignal]:
        cfg = self.config
        change = snapshot.ticker.change
        position = snapshot.bot_state.position_quantity

        if position <= 0 and change <= -cfg.dip_percent:
            return [self._signal(SignalType.BUY, snapshot, reason=f"24h change {change:.2f}%")]
        if position > 0 and change >= cfg.rally_percent:
            return [self._signal(SignalType.SELL, snapshot, quantity=position, reason=f"24h change {change:.2f}%")]
        return []


class ArbitrageStrategy(Strategy):
    """Trade the gap between the last traded price and the order book mid."""

    strategy_type = StrategyType.ARBITRAGE
    config_class = ArbitrageConfig

    def _analyze(self, snapshot: MarketSnapshot) -> List[ProposedSignal]:
        mid = snapshot.orderbook.mid
        if not mid:
            return []

        cfg = self.config
        deviation = (snapshot.ticker.price - mid) / mid * 100
        position = snapshot.bot_state.position_quantity

        if deviation <= -cfg.min_deviation_percent and position <= 0:
            return [self._signal(SignalType.BUY, snapshot, reason=f"last {deviation:.3f}% below mid")]
        if deviation >= cfg.min_deviation_percent and position > 0:
            return [self._signal(
                SignalType.SELL,
                snapshot,
                quantity=min(cfg.order_quantity, position) if cfg.order_quantity else position,
                reason=f"last {deviation:.3f}% above mid",
            )]
        return []


class SignalStrategy(Strategy):
    """Webhook-driven bots: signals arrive from outside, never from analyze."""

    strategy_type = StrategyType.SIGNAL
    config_class = SignalConfig

    def _analyze(self, snapshot: MarketSnapshot) -> List[ProposedSignal]:
        return []


@dataclass
class LeaderFill:
    """A trade executed by the bot being copied."""
    trade_id: int
    side: str
    quantity: float
    price: float


class CopyTradingStrategy(Strategy):
    """Mirror the leader bot's fills, scaled by copy_ratio."""

    strategy_type = StrategyType.COPY_TRADING
    config_class = CopyTradingConfig

    def __init__(self, config: CopyTradingConfig):
        super().__init__(config)
        self.inbox: Deque[LeaderFill] = deque()

    @property
    def leader_bot_id(self) -> int:
        return self.config.leader_bot_id

    def mirror(self, fill: LeaderFill) -> None:
        self.inbox.append(fill)

    def _analyze(self, snapshot: MarketSnapshot) -> List[ProposedSignal]:
        signals = []
        while self.inbox:
            fill = self.inbox.popleft()
            signal = self._signal(
                SignalType(fill.side),
                snapshot,
                quantity=fill.quantity * self.config.copy_ratio,
                reason=f"copy of leader trade {fill.trade_id}",
            )
            signal.data["leader_bot_id"] = self.config.leader_bot_id
            signal.data["leader_trade_id"] = fill.trade_id
            signals.append(signal)
        return signals


STRATEGY_CLASSES: Dict[StrategyType, Type[Strategy]] = {
    StrategyType.GRID: GridStrategy,
    StrategyType.DCA: DCAStrategy,
    StrategyType.SCALPING: ScalpingStrategy,
    StrategyType.SWING: SwingStrategy,
    StrategyType.ARBITRAGE: ArbitrageStrategy,
    StrategyType.SIGNAL: SignalStrategy,
    StrategyType.COPY_TRADING: CopyTradingStrategy,
}


def create_strategy(strategy_type: Union[str, StrategyType], config: Optional[Dict[str, Any]] = None) -> Strategy:
    """Instantiate the strategy for a bot.

    Raises:
        UnsupportedStrategyError: Unknown strategy type.
        StrategyConfigError: Configuration does not validate.
    """
    try:
        stype = StrategyType(str(getattr(strategy_type, "value", strategy_type)).lower())
    except ValueError:
        raise UnsupportedStrategyError(f"Unsupported strategy type: {strategy_type}")

    strategy_class = STRATEGY_CLASSES[stype]
    return strategy_class(strategy_class.config_class.from_dict(config))
