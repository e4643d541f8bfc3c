"""Signal queue and processor.

State machine per signal:
    pending (processed=False) -> processing (in-memory claim) -> done (processed=True)

`done` is terminal. A signal ends done with either a trade or an error
message; nothing is retried automatically.
"""

import logging
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    async_session_maker,
    Bot,
    Signal,
    SignalType,
    Trade,
    TradeSide,
    TradeStatus,
)
from .bot_registry import BotHandle, BotRegistry, OpenOrder
from .exchanges.base import OrderRequest, ExchangeOrder
from .logging_service import TradeLogEntry
from .performance import PerformanceService
from .strategies import ProposedSignal

logger = logging.getLogger(__name__)

BOT_NOT_RUNNING = "Bot not running"

TradeHook = Callable[[BotHandle, Trade], Awaitable[None]]


class UnknownSignalTypeError(Exception):
    """Signal type outside buy/sell/close/update_tp/update_sl."""


class BotNotRunningError(Exception):
    """Signal arrived for a bot that is not loaded and running."""


class SignalRejectedError(Exception):
    """Signal fields are insufficient to build an order."""


@dataclass
class ProcessResult:
    """Outcome of processing one signal."""
    signal_id: int
    trade_id: Optional[int] = None
    error: Optional[str] = None
    skipped: bool = False

    @property
    def success(self) -> bool:
        return not self.skipped and self.error is None


class SignalProcessor:
    """Claims pending signals and executes them through the owning bot's client."""

    def __init__(
        self,
        registry: BotRegistry,
        session_factory=async_session_maker,
        performance: Optional[PerformanceService] = None,
        on_trade: Optional[TradeHook] = None,
    ):
        self.registry = registry
        self._session_factory = session_factory
        self.performance = performance or PerformanceService(session_factory)
        self.on_trade = on_trade
        self._claimed: Set[int] = set()
        self._handlers = {
            SignalType.BUY: self._handle_buy,
            SignalType.SELL: self._handle_sell,
            SignalType.CLOSE: self._handle_close,
            SignalType.UPDATE_TP: self._handle_update_tp,
            SignalType.UPDATE_SL: self._handle_update_sl,
        }

    # =========================================================================
    # Queue
    # =========================================================================

    async def enqueue(
        self,
        bot_id: int,
        proposed: ProposedSignal,
        source_ip: Optional[str] = None,
    ) -> int:
        """Persist a pending signal and return its id."""
        async with self._session_factory() as session:
            signal = Signal(
                bot_id=bot_id,
                signal_type=proposed.type,
                symbol=proposed.symbol,
                price=proposed.price,
                quantity=proposed.quantity,
                take_profit=proposed.take_profit,
                stop_loss=proposed.stop_loss,
                leverage=proposed.leverage,
                signal_data=proposed.data,
                source_ip=source_ip,
                processed=False,
            )
            session.add(signal)
            await session.commit()
            logger.info(f"Bot {bot_id}: queued {proposed.type} signal {signal.id} for {proposed.symbol}")
            return signal.id

    async def submit(self, bot_id: int, proposed: ProposedSignal) -> ProcessResult:
        """Persist a strategy-generated signal and process it immediately."""
        signal_id = await self.enqueue(bot_id, proposed)
        return await self.process_one(signal_id)

    async def pending_ids(self) -> List[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Signal.id)
                .where(Signal.processed == False)  # noqa: E712
                .order_by(Signal.created_at.asc(), Signal.id.asc())
            )
            return list(result.scalars().all())

    async def process_pending(self) -> List[ProcessResult]:
        """Process every pending signal, oldest first.

        Returns:
            Results for the signals this pass actually processed
        """
        signal_ids = await self.pending_ids()
        if not signal_ids:
            return []

        logger.info(f"Processing {len(signal_ids)} pending signal(s)")
        results = []
        for signal_id in signal_ids:
            try:
                result = await self.process_one(signal_id)
            except Exception as e:
                # Store failure; the signal stays pending for the next pass
                logger.error(f"Signal {signal_id}: processing aborted: {e}")
                results.append(ProcessResult(signal_id=signal_id, error=str(e) or e.__class__.__name__))
                continue
            if not result.skipped:
                results.append(result)
        return results

    async def process_one(self, signal_id: int) -> ProcessResult:
        """Process a single signal. A signal already claimed or done is a no-op."""
        if signal_id in self._claimed:
            logger.debug(f"Signal {signal_id} is already being processed")
            return ProcessResult(signal_id=signal_id, skipped=True)

        self._claimed.add(signal_id)
        try:
            return await self._process_claimed(signal_id)
        finally:
            self._claimed.discard(signal_id)

    # =========================================================================
    # Processing
    # =========================================================================

    async def _process_claimed(self, signal_id: int) -> ProcessResult:
        handle: Optional[BotHandle] = None

        async with self._session_factory() as session:
            result = await session.execute(select(Signal).where(Signal.id == signal_id))
            signal = result.scalar_one_or_none()
            if signal is None or signal.processed:
                return ProcessResult(signal_id=signal_id, skipped=True)

            trade: Optional[Trade] = None
            error: Optional[str] = None
            try:
                handle = self._resolve_bot(signal)
            except BotNotRunningError as e:
                error = str(e)

            # One signal at a time per bot, from reading the position to the commit
            guard = handle.lock if handle is not None else nullcontext()
            async with guard:
                if handle is not None:
                    try:
                        # The bot may have been paused or stopped while we waited
                        if not handle.is_running:
                            raise BotNotRunningError(BOT_NOT_RUNNING)
                        handler = self._handlers[self._resolve_type(signal)]
                        trade = await handler(session, handle, signal)
                    except Exception as e:
                        error = str(e) or e.__class__.__name__

                if error is not None:
                    logger.warning(f"Signal {signal_id} (bot {signal.bot_id}) failed: {error}")

                if trade is not None:
                    session.add(trade)
                    snapshot = await self.performance.apply(session, handle.bot_id)
                    handle.apply_performance(snapshot)

                marked = await session.execute(
                    update(Signal)
                    .where(Signal.id == signal_id, Signal.processed == False)  # noqa: E712
                    .values(processed=True, processed_at=datetime.utcnow(), error_message=error)
                )
                if marked.rowcount == 0:
                    logger.warning(f"Signal {signal_id} was marked done by another worker")

                await session.commit()

        if trade is not None:
            await self._after_trade(handle, trade)
        elif error is None:
            logger.info(f"Signal {signal_id} applied to bot {signal.bot_id}")

        return ProcessResult(
            signal_id=signal_id,
            trade_id=trade.id if trade is not None else None,
            error=error,
        )

    def _resolve_bot(self, signal: Signal) -> BotHandle:
        handle = self.registry.get(signal.bot_id)
        if handle is None or not handle.is_running:
            raise BotNotRunningError(BOT_NOT_RUNNING)
        return handle

    @staticmethod
    def _resolve_type(signal: Signal) -> SignalType:
        try:
            return SignalType(str(signal.signal_type).lower())
        except ValueError:
            raise UnknownSignalTypeError(f"Unknown signal type: {signal.signal_type}")

    async def _after_trade(self, handle: BotHandle, trade: Trade) -> None:
        logger.info(
            f"Bot {handle.bot_id}: {trade.side.value} {trade.executed_quantity} {trade.symbol} "
            f"@ {trade.executed_price} ({trade.status.value})"
        )
        if handle.activity_log is not None:
            handle.activity_log.log_trade(TradeLogEntry(
                timestamp=trade.executed_at,
                bot_id=handle.bot_id,
                bot_name=handle.name,
                signal_id=trade.signal_id,
                exchange_order_id=trade.exchange_order_id or "",
                symbol=trade.symbol,
                side=trade.side.value,
                order_type=trade.type,
                quantity=trade.quantity,
                executed_price=trade.executed_price or 0.0,
                executed_quantity=trade.executed_quantity or 0.0,
                fee=trade.fee or 0.0,
                status=trade.status.value,
                profit_loss=trade.profit_loss,
            ))

        if self.on_trade is not None:
            try:
                await self.on_trade(handle, trade)
            except Exception as e:
                logger.error(f"Bot {handle.bot_id}: trade hook failed: {e}")

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _handle_buy(self, session: AsyncSession, handle: BotHandle, signal: Signal) -> Trade:
        return await self._handle_entry(session, handle, signal, TradeSide.BUY)

    async def _handle_sell(self, session: AsyncSession, handle: BotHandle, signal: Signal) -> Trade:
        return await self._handle_entry(session, handle, signal, TradeSide.SELL)

    async def _handle_entry(
        self,
        session: AsyncSession,
        handle: BotHandle,
        signal: Signal,
        side: TradeSide,
    ) -> Trade:
        quantity = signal.quantity or handle.config.order_quantity
        if not quantity or quantity <= 0:
            raise SignalRejectedError("Order quantity is required")

        order_type = "limit" if signal.price and handle.config.order_type == "limit" else "market"
        leverage = signal.leverage or 1

        request = OrderRequest(
            symbol=signal.symbol or handle.trading_pair,
            side=side.value,
            type=order_type,
            quantity=quantity,
            price=signal.price if order_type == "limit" else None,
            leverage=leverage,
            futures=handle.supports_futures and leverage > 1,
        )
        trade = await self._submit_order(session, handle, signal, request)

        if signal.take_profit is not None or signal.stop_loss is not None:
            levels = {}
            if signal.take_profit is not None:
                levels["take_profit"] = signal.take_profit
            if signal.stop_loss is not None:
                levels["stop_loss"] = signal.stop_loss
            await self._set_levels(session, handle, **levels)

        return trade

    async def _handle_close(self, session: AsyncSession, handle: BotHandle, signal: Signal) -> Trade:
        position = await self.performance.position(session, handle.bot_id)
        if position.is_flat and not signal.quantity:
            raise SignalRejectedError("No open position to close")

        side = TradeSide.BUY if position.quantity < 0 else TradeSide.SELL
        quantity = signal.quantity or abs(position.quantity)

        request = OrderRequest(
            symbol=signal.symbol or handle.trading_pair,
            side=side.value,
            type="market",
            quantity=quantity,
        )
        trade = await self._submit_order(session, handle, signal, request)

        if trade.status == TradeStatus.FILLED and trade.executed_quantity >= abs(position.quantity):
            await self._set_levels(session, handle, take_profit=None, stop_loss=None)
        return trade

    async def _handle_update_tp(self, session: AsyncSession, handle: BotHandle, signal: Signal) -> None:
        level = signal.take_profit if signal.take_profit is not None else signal.price
        if level is None:
            raise SignalRejectedError("take_profit is required")
        await self._set_levels(session, handle, take_profit=level)

    async def _handle_update_sl(self, session: AsyncSession, handle: BotHandle, signal: Signal) -> None:
        level = signal.stop_loss if signal.stop_loss is not None else signal.price
        if level is None:
            raise SignalRejectedError("stop_loss is required")
        await self._set_levels(session, handle, stop_loss=level)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _submit_order(
        self,
        session: AsyncSession,
        handle: BotHandle,
        signal: Signal,
        request: OrderRequest,
    ) -> Trade:
        """Place an order and build its trade record. Caller holds the bot's lock."""
        position = await self.performance.position(session, handle.bot_id)

        order = await handle.client.create_order(request)
        if order.is_open:
            handle.open_orders[order.id] = OpenOrder(order.symbol, request.futures)

        gross_pnl = None
        if order.executed_quantity:
            gross_pnl = position.realized_pnl(request.side, order.executed_quantity, order.executed_price)
        return self._build_trade(handle, signal, request, order, gross_pnl)

    def _build_trade(
        self,
        handle: BotHandle,
        signal: Signal,
        request: OrderRequest,
        order: ExchangeOrder,
        gross_pnl: Optional[float],
    ) -> Trade:
        fee = order.fee or 0.0
        return Trade(
            user_id=handle.user_id,
            bot_id=handle.bot_id,
            signal_id=signal.id,
            exchange_id=handle.exchange_id,
            exchange_order_id=order.id,
            symbol=request.symbol,
            side=TradeSide(request.side),
            type=request.type,
            quantity=request.quantity,
            price=request.price,
            executed_price=order.executed_price,
            executed_quantity=order.executed_quantity,
            fee=fee,
            fee_currency=order.fee_currency,
            status=TradeStatus(order.status),
            profit_loss=gross_pnl - fee if gross_pnl is not None else None,
            is_futures=request.futures,
            leverage=request.leverage or 1,
            executed_at=datetime.utcnow(),
        )

    async def _set_levels(self, session: AsyncSession, handle: BotHandle, **levels: Optional[float]) -> None:
        """Update protective levels on the handle and persist them into bot.config."""
        result = await session.execute(select(Bot).where(Bot.id == handle.bot_id))
        bot = result.scalar_one_or_none()

        config: Dict = dict(bot.config or {}) if bot is not None else {}
        for name, value in levels.items():
            setattr(handle, name, value)
            setattr(handle.config, name, value)
            if value is None:
                config.pop(name, None)
            else:
                config[name] = value

        if bot is not None:
            # Reassign so the JSON column is flagged dirty
            bot.config = config
            bot.updated_at = datetime.utcnow()

        logger.info(
            f"Bot {handle.bot_id}: protective levels tp={handle.take_profit} sl={handle.stop_loss}"
        )
