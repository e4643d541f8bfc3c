"""Bot supervisor - lifecycle control and the monitoring loop.

The supervisor owns the registry of active bots. Every status change is
persisted and applied to the registry before the control call returns.
A failure while ticking one bot moves that bot to `error` and evicts it;
other bots in the same tick are unaffected.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select

from ..models import async_session_maker, Bot, BotStatus, Trade, TradeSide, TradeStatus
from .audit import add_audit
from .bot_registry import BotHandle, BotRegistry
from .config import EngineSettings
from .exchanges import ExchangeConnector
from .logging_service import BotLoggingService
from .performance import PerformanceService
from .scheduler import PeriodicJob
from .signal_processor import SignalProcessor
from .strategies import BotState, LeaderFill, MarketSnapshot, CopyTradingStrategy, create_strategy

logger = logging.getLogger(__name__)


@dataclass
class ControlResult:
    """Outcome of a start/stop/pause call."""
    success: bool
    error: Optional[str] = None
    status: Optional[BotStatus] = None


class BotSupervisor:
    """Owns active bots, their exchange clients and the monitoring loop."""

    def __init__(
        self,
        connector: Optional[ExchangeConnector] = None,
        settings: Optional[EngineSettings] = None,
        session_factory=async_session_maker,
        registry: Optional[BotRegistry] = None,
    ):
        self.settings = settings or EngineSettings()
        self.connector = connector or ExchangeConnector(self.settings)
        self.registry = registry or BotRegistry()
        self._session_factory = session_factory
        self.performance = PerformanceService(session_factory)
        self.processor = SignalProcessor(
            self.registry,
            session_factory,
            self.performance,
            on_trade=self._mirror_to_followers,
        )
        self._monitor_job = PeriodicJob(
            "monitor", self.monitor_tick, self.settings.monitor_interval_seconds
        )

    # =========================================================================
    # Startup / shutdown
    # =========================================================================

    async def start(self) -> int:
        """Load running bots and start the monitoring loop."""
        loaded = await self.load_active_bots()
        self._monitor_job.start()
        return loaded

    async def shutdown(self) -> None:
        """Stop the loop and release connections.

        Bots keep their `running` status in the store so the next process
        resumes them.
        """
        await self._monitor_job.stop()
        self.registry.clear()
        await self.connector.close_all()
        logger.info("Bot supervisor shut down")

    async def load_active_bots(self) -> int:
        """Initialise every bot persisted as running.

        A bot that fails to initialise is marked `error` and skipped.

        Returns:
            Number of bots loaded
        """
        async with self._session_factory() as session:
            result = await session.execute(select(Bot).where(Bot.status == BotStatus.RUNNING))
            bots = result.scalars().all()

        if not bots:
            logger.info("No running bots to load")
            return 0

        loaded = 0
        for bot in bots:
            if bot.id in self.registry:
                continue
            try:
                handle = await self._build_handle(bot)
            except Exception as e:
                logger.error(f"Failed to load bot {bot.id} ({bot.name}): {e}")
                await self._persist_status(bot.id, BotStatus.ERROR, error_message=str(e))
                continue

            self.registry.add(handle)
            handle.log_activity("Bot resumed after restart")
            loaded += 1

        logger.info(f"Loaded {loaded} of {len(bots)} running bot(s)")
        return loaded

    # =========================================================================
    # Control operations
    # =========================================================================

    async def start_bot(self, bot_id: int) -> ControlResult:
        """Start a stopped/errored bot or resume a paused one."""
        handle = self.registry.get(bot_id)
        if handle is not None:
            if handle.is_running:
                return ControlResult(False, "Bot is already running", handle.status)
            await self._persist_status(bot_id, BotStatus.RUNNING, audit="bot_resumed")
            handle.status = BotStatus.RUNNING
            handle.log_activity("Bot resumed")
            logger.info(f"Resumed bot {bot_id}")
            return ControlResult(True, status=BotStatus.RUNNING)

        bot = await self._get_bot(bot_id)
        if bot is None:
            return ControlResult(False, "Bot not found")

        try:
            handle = await self._build_handle(bot)
        except Exception as e:
            logger.error(f"Failed to start bot {bot_id}: {e}")
            await self._persist_status(bot_id, BotStatus.ERROR, error_message=str(e))
            return ControlResult(False, str(e), BotStatus.ERROR)

        await self._persist_status(bot_id, BotStatus.RUNNING, audit="bot_started")
        self.registry.add(handle)
        handle.log_activity(f"Bot started with strategy '{bot.strategy_type}' on {bot.trading_pair}")
        logger.info(f"Started bot {bot_id} ({bot.name})")
        return ControlResult(True, status=BotStatus.RUNNING)

    async def pause_bot(self, bot_id: int) -> ControlResult:
        """Pause a running bot. It stays loaded but ignores signals and ticks."""
        handle = self.registry.get(bot_id)
        if handle is None or not handle.is_running:
            return ControlResult(False, "Bot is not running")

        await self._persist_status(bot_id, BotStatus.PAUSED, audit="bot_paused")
        handle.status = BotStatus.PAUSED
        handle.log_activity("Bot paused")
        logger.info(f"Paused bot {bot_id}")
        return ControlResult(True, status=BotStatus.PAUSED)

    async def stop_bot(self, bot_id: int) -> ControlResult:
        """Cancel the bot's open orders (best effort) and stop it."""
        handle = self.registry.get(bot_id)
        cancelled = 0
        failed = 0

        if handle is not None:
            async with handle.lock:
                for order_id, placed in list(handle.open_orders.items()):
                    try:
                        await handle.client.cancel_order(order_id, placed.symbol, futures=placed.futures)
                        cancelled += 1
                    except Exception as e:
                        failed += 1
                        logger.warning(f"Bot {bot_id}: failed to cancel order {order_id}: {e}")
                    finally:
                        handle.open_orders.pop(order_id, None)
        elif await self._get_bot(bot_id) is None:
            return ControlResult(False, "Bot not found")

        await self._persist_status(
            bot_id,
            BotStatus.STOPPED,
            audit="bot_stopped",
            details={"orders_cancelled": cancelled, "cancel_failures": failed},
        )
        if handle is not None:
            handle.status = BotStatus.STOPPED
            handle.log_activity(f"Bot stopped ({cancelled} order(s) cancelled, {failed} failed)")
            self.registry.remove(bot_id)

        logger.info(f"Stopped bot {bot_id}")
        return ControlResult(True, status=BotStatus.STOPPED)

    async def stop_all(self) -> Dict[int, ControlResult]:
        """Kill switch - stop every loaded bot."""
        logger.warning("Stopping all bots")
        results = {}
        for handle in self.registry:
            results[handle.bot_id] = await self.stop_bot(handle.bot_id)
        return results

    # =========================================================================
    # Monitoring loop
    # =========================================================================

    async def monitor_tick(self) -> None:
        """Run one monitoring pass over every running bot."""
        handles = self.registry.running()
        if not handles:
            return

        if self.settings.parallel_exchange_groups:
            groups = self.registry.by_connection(handles)
            await asyncio.gather(*(self._tick_group(group) for group in groups.values()))
        else:
            await self._tick_group(handles)

    async def _tick_group(self, handles: List[BotHandle]) -> None:
        for handle in handles:
            try:
                await self.tick_bot(handle)
            except Exception as e:
                logger.error(f"Bot {handle.bot_id}: monitoring tick failed: {e}", exc_info=True)
                await self._fail_bot(handle, str(e) or e.__class__.__name__)

    async def tick_bot(self, handle: BotHandle) -> None:
        """Analyze the market for one bot and process what its strategy proposes."""
        if handle.bot_id not in self.registry or not handle.is_running:
            return

        ticker = await handle.client.get_ticker(handle.trading_pair)
        orderbook = await handle.client.get_orderbook(handle.trading_pair, self.settings.orderbook_depth)

        async with self._session_factory() as session:
            position = await self.performance.position(session, handle.bot_id)

        snapshot = MarketSnapshot(
            ticker=ticker,
            orderbook=orderbook,
            bot_state=BotState(
                bot_id=handle.bot_id,
                trading_pair=handle.trading_pair,
                position_quantity=position.quantity,
                average_entry_price=position.average_entry_price,
                take_profit=handle.take_profit,
                stop_loss=handle.stop_loss,
                total_trades=handle.total_trades,
            ),
            now=datetime.utcnow(),
        )

        for proposed in handle.strategy.analyze(snapshot):
            result = await self.processor.submit(handle.bot_id, proposed)
            if result.error:
                handle.log_activity(f"{proposed.type} signal {result.signal_id} failed: {result.error}", "WARNING")

        handle.apply_performance(await self.performance.recompute(handle.bot_id))

    async def _fail_bot(self, handle: BotHandle, message: str) -> None:
        handle.status = BotStatus.ERROR
        self.registry.remove(handle.bot_id)
        handle.log_activity(f"Bot moved to error: {message}", "ERROR")
        try:
            await self._persist_status(handle.bot_id, BotStatus.ERROR, error_message=message, audit="bot_error")
        except Exception as e:
            logger.error(f"Bot {handle.bot_id}: failed to persist error status: {e}")

    # =========================================================================
    # Copy trading
    # =========================================================================

    async def _mirror_to_followers(self, leader: BotHandle, trade: Trade) -> None:
        if trade.status != TradeStatus.FILLED or not trade.executed_quantity:
            return

        side = trade.side.value if isinstance(trade.side, TradeSide) else str(trade.side)
        for follower in self.registry.followers_of(leader.bot_id):
            if isinstance(follower.strategy, CopyTradingStrategy):
                follower.strategy.mirror(LeaderFill(
                    trade_id=trade.id,
                    side=side,
                    quantity=trade.executed_quantity,
                    price=trade.executed_price,
                ))
                logger.debug(f"Bot {follower.bot_id}: mirrored leader trade {trade.id}")

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _get_bot(self, bot_id: int) -> Optional[Bot]:
        async with self._session_factory() as session:
            result = await session.execute(select(Bot).where(Bot.id == bot_id))
            return result.scalar_one_or_none()

    async def _build_handle(self, bot: Bot) -> BotHandle:
        """Create the strategy and connect the exchange client for a bot.

        Raises:
            UnsupportedStrategyError / StrategyConfigError: Bad strategy setup.
            ExchangeConnectionError: Exchange unreachable or credentials rejected.
        """
        strategy = create_strategy(bot.strategy_type, bot.config)
        credential = bot.api_key
        client = await self.connector.connect(
            bot.exchange.name,
            credential.api_key,
            credential.api_secret,
            credential.passphrase,
        )

        return BotHandle(
            bot_id=bot.id,
            user_id=bot.user_id,
            name=bot.name,
            exchange_id=bot.exchange_id,
            exchange_name=bot.exchange.name,
            api_key=credential.api_key,
            supports_futures=bool(bot.exchange.supports_futures),
            trading_pair=bot.trading_pair,
            strategy_type=strategy.strategy_type,
            strategy=strategy,
            client=client,
            take_profit=strategy.config.take_profit,
            stop_loss=strategy.config.stop_loss,
            total_trades=bot.total_trades or 0,
            total_profit=bot.total_profit or 0.0,
            win_rate=bot.win_rate or 0.0,
            current_balance=bot.current_balance or 0.0,
            activity_log=BotLoggingService(bot.id, bot.name, self.settings.bot_log_dir),
        )

    async def _persist_status(
        self,
        bot_id: int,
        status: BotStatus,
        error_message: Optional[str] = None,
        audit: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        async with self._session_factory() as session:
            result = await session.execute(select(Bot).where(Bot.id == bot_id))
            bot = result.scalar_one_or_none()
            if bot is None:
                return

            now = datetime.utcnow()
            bot.status = status
            bot.error_message = error_message
            bot.updated_at = now
            if status == BotStatus.RUNNING:
                bot.started_at = now
            elif status == BotStatus.STOPPED:
                bot.stopped_at = now

            if audit or status == BotStatus.ERROR:
                add_audit(
                    session,
                    audit or "bot_error",
                    user_id=bot.user_id,
                    bot_id=bot_id,
                    details={"status": status.value, "error": error_message, **(details or {})},
                )
            await session.commit()
