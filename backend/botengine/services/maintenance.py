"""Scheduled maintenance: balances, metrics and retention cleanup."""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from sqlalchemy import delete, select

from ..models import async_session_maker, AuditLog, Bot, Signal, User
from .bot_supervisor import BotSupervisor
from .config import EngineSettings
from .scheduler import JobScheduler

logger = logging.getLogger(__name__)


class MaintenanceService:
    """Jobs that run on their own schedule beside the monitoring loop."""

    def __init__(
        self,
        supervisor: BotSupervisor,
        settings: Optional[EngineSettings] = None,
        session_factory=async_session_maker,
    ):
        self.supervisor = supervisor
        self.settings = settings or supervisor.settings
        self._session_factory = session_factory

    async def sync_balances(self) -> Dict[str, float]:
        """Write each user's exchange balance total to `users.total_balance`.

        Amounts are summed across assets without conversion to a common
        currency, so the total is a raw unit count, not a dollar value.
        Bots sharing one credential are counted once.

        Returns:
            Total per user id
        """
        totals: Dict[str, float] = {}
        seen: Dict[Tuple[str, str], str] = {}

        for handle in self.supervisor.registry:
            if handle.connection_key in seen:
                continue
            try:
                balance = await handle.client.get_balance()
            except Exception as e:
                logger.error(f"Error syncing balance for bot {handle.bot_id}: {e}")
                continue
            seen[handle.connection_key] = handle.user_id
            totals[handle.user_id] = totals.get(handle.user_id, 0.0) + sum(balance.values())

        if not totals:
            return totals

        async with self._session_factory() as session:
            for user_id, total in totals.items():
                result = await session.execute(select(User).where(User.id == user_id))
                user = result.scalar_one_or_none()
                if user is None:
                    logger.warning(f"Balance sync: user {user_id} not found")
                    continue
                user.total_balance = total
                user.updated_at = datetime.utcnow()
            await session.commit()

        logger.info(f"Synced balances for {len(totals)} user(s)")
        return totals

    async def update_bot_metrics(self) -> int:
        """Recompute performance and refresh `current_balance` for loaded bots.

        Returns:
            Number of bots updated
        """
        updated = 0
        for handle in self.supervisor.registry:
            try:
                snapshot = await self.supervisor.performance.recompute(handle.bot_id)
                handle.apply_performance(snapshot)

                balance = await handle.client.get_balance()
                handle.current_balance = balance.get(handle.config.base_currency, 0.0)

                async with self._session_factory() as session:
                    result = await session.execute(select(Bot).where(Bot.id == handle.bot_id))
                    bot = result.scalar_one_or_none()
                    if bot is not None:
                        bot.current_balance = handle.current_balance
                        bot.updated_at = datetime.utcnow()
                        await session.commit()
                updated += 1
            except Exception as e:
                logger.error(f"Error updating metrics for bot {handle.bot_id}: {e}")

        return updated

    async def daily_maintenance(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete processed signals and audit records past their retention window.

        Returns:
            Deleted row counts keyed by table
        """
        now = now or datetime.utcnow()
        signal_cutoff = now - timedelta(days=self.settings.signal_retention_days)
        audit_cutoff = now - timedelta(days=self.settings.audit_retention_days)

        async with self._session_factory() as session:
            signals = await session.execute(
                delete(Signal).where(Signal.processed == True, Signal.created_at < signal_cutoff)  # noqa: E712
            )
            audits = await session.execute(delete(AuditLog).where(AuditLog.created_at < audit_cutoff))
            await session.commit()

        counts = {"bot_signals": signals.rowcount or 0, "audit_logs": audits.rowcount or 0}
        logger.info(
            f"Daily maintenance completed: removed {counts['bot_signals']} signal(s), "
            f"{counts['audit_logs']} audit record(s)"
        )
        return counts

    def register_jobs(self, scheduler: JobScheduler) -> None:
        """Add signal processing and maintenance jobs to a scheduler."""
        settings = self.settings
        scheduler.add("process_signals", self.supervisor.processor.process_pending, settings.signal_interval_seconds)
        scheduler.add("update_bot_metrics", self.update_bot_metrics, settings.metrics_interval_seconds)
        scheduler.add("sync_balances", self.sync_balances, settings.balance_sync_interval_seconds)
        scheduler.add("daily_maintenance", self.daily_maintenance, settings.maintenance_interval_seconds)
