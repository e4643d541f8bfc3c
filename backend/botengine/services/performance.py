"""Bot performance counters and average-cost position tracking.

Counters are always derived from the bot's trade history; nothing here
accumulates incrementally, so recomputing twice yields the same result.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import async_session_maker, Bot, Trade, TradeSide, TradeStatus

logger = logging.getLogger(__name__)

# Quantities below this are treated as a flat position
POSITION_EPSILON = 1e-9


@dataclass
class PerformanceSnapshot:
    """Derived counters for one bot."""
    total_trades: int = 0
    total_profit: float = 0.0
    win_rate: float = 0.0  # Percent of filled trades with positive P&L


def compute_performance(trades: Iterable[Trade]) -> PerformanceSnapshot:
    """Aggregate counters over filled trades only.

    A bot with no filled trades has a win rate of 0.
    """
    filled = [t for t in trades if t.status == TradeStatus.FILLED]
    if not filled:
        return PerformanceSnapshot()

    total_profit = sum(t.profit_loss or 0.0 for t in filled)
    wins = sum(1 for t in filled if (t.profit_loss or 0.0) > 0)

    return PerformanceSnapshot(
        total_trades=len(filled),
        total_profit=total_profit,
        win_rate=wins / len(filled) * 100,
    )


@dataclass
class Position:
    """Net position with an average entry price. Negative quantity is short."""
    quantity: float = 0.0
    average_entry_price: float = 0.0

    @property
    def is_flat(self) -> bool:
        return abs(self.quantity) < POSITION_EPSILON

    def realized_pnl(self, side: str, quantity: float, price: float) -> Optional[float]:
        """Gross P&L a fill would realize, or None if it only adds exposure."""
        direction = 1 if side == TradeSide.BUY.value else -1
        if self.is_flat or (self.quantity > 0) == (direction > 0):
            return None

        closing = min(quantity, abs(self.quantity))
        if self.quantity > 0:
            return (price - self.average_entry_price) * closing
        return (self.average_entry_price - price) * closing

    def apply(self, side: str, quantity: float, price: float) -> None:
        """Update the position for a fill."""
        if quantity <= 0:
            return

        signed = quantity if side == TradeSide.BUY.value else -quantity

        if self.is_flat or (self.quantity > 0) == (signed > 0):
            total = abs(self.quantity) + quantity
            self.average_entry_price = (
                abs(self.quantity) * self.average_entry_price + quantity * price
            ) / total
            self.quantity += signed
            return

        remaining = self.quantity + signed
        if abs(remaining) < POSITION_EPSILON:
            self.quantity = 0.0
            self.average_entry_price = 0.0
        elif (remaining > 0) != (self.quantity > 0):
            # Flipped through zero: the excess opens a new position at this price
            self.quantity = remaining
            self.average_entry_price = price
        else:
            self.quantity = remaining


def position_from_trades(trades: Iterable[Trade]) -> Position:
    """Replay filled executions in order to get the current position."""
    position = Position()
    for trade in trades:
        if trade.status != TradeStatus.FILLED or not trade.executed_quantity:
            continue
        side = trade.side.value if isinstance(trade.side, TradeSide) else str(trade.side)
        position.apply(side, trade.executed_quantity, trade.executed_price or 0.0)
    return position


class PerformanceService:
    """Recomputes and persists bot counters."""

    def __init__(self, session_factory=async_session_maker):
        self._session_factory = session_factory

    async def _trades(self, session: AsyncSession, bot_id: int):
        result = await session.execute(
            select(Trade)
            .where(Trade.bot_id == bot_id)
            .order_by(Trade.executed_at.asc(), Trade.id.asc())
        )
        return result.scalars().all()

    async def position(self, session: AsyncSession, bot_id: int) -> Position:
        return position_from_trades(await self._trades(session, bot_id))

    async def apply(self, session: AsyncSession, bot_id: int) -> PerformanceSnapshot:
        """Recompute counters inside an open session without committing."""
        trades = await self._trades(session, bot_id)
        snapshot = compute_performance(trades)

        result = await session.execute(select(Bot).where(Bot.id == bot_id))
        bot = result.scalar_one_or_none()
        if bot is None:
            return snapshot

        bot.total_trades = snapshot.total_trades
        bot.total_profit = snapshot.total_profit
        bot.win_rate = snapshot.win_rate
        executed = [t.executed_at for t in trades if t.executed_at]
        if executed:
            bot.last_trade_at = max(executed)
        bot.updated_at = datetime.utcnow()
        return snapshot

    async def recompute(self, bot_id: int) -> PerformanceSnapshot:
        """Recompute and persist counters for a bot.

        Args:
            bot_id: Bot ID

        Returns:
            The persisted snapshot
        """
        async with self._session_factory() as session:
            snapshot = await self.apply(session, bot_id)
            await session.commit()

        logger.debug(
            f"Bot {bot_id}: performance updated - trades={snapshot.total_trades} "
            f"profit={snapshot.total_profit:.2f} win_rate={snapshot.win_rate:.1f}%"
        )
        return snapshot
