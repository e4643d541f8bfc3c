"""Tests for scheduled jobs: balance sync, metrics, retention and the scheduler."""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from botengine.models import AuditLog, Bot, Signal, User
from botengine.services.maintenance import MaintenanceService
from botengine.services.scheduler import JobScheduler, PeriodicJob
from botengine.services.strategies import ProposedSignal


@pytest.fixture
def maintenance(supervisor, session_factory) -> MaintenanceService:
    return MaintenanceService(supervisor, session_factory=session_factory)


class TestSyncBalances:
    """Test per-user balance totals."""

    @pytest.mark.asyncio
    async def test_shared_credential_counted_once(self, make_bot, supervisor, maintenance, session_factory, fake_clients):
        first = await make_bot(name="First")
        second = await make_bot(name="Second")
        third = await make_bot(name="Third", api_key="key-2")
        for bot in (first, second, third):
            await supervisor.start_bot(bot.id)
        fake_clients["key-2"].balances = {"USDT": 500.0}

        totals = await maintenance.sync_balances()

        # key-1: 10000 USDT + 0.5 BTC summed as raw units, key-2: 500 USDT
        assert totals == {"user-1": pytest.approx(10500.5)}

        async with session_factory() as session:
            user = await session.get(User, "user-1")
        assert user.total_balance == pytest.approx(10500.5)

    @pytest.mark.asyncio
    async def test_users_are_kept_apart(self, make_bot, supervisor, maintenance, fake_clients):
        alice = await make_bot(name="Alice", user_id="alice", api_key="key-a")
        bob = await make_bot(name="Bob", user_id="bob", api_key="key-b")
        await supervisor.start_bot(alice.id)
        await supervisor.start_bot(bob.id)
        fake_clients["key-a"].balances = {"USDT": 100.0}
        fake_clients["key-b"].balances = {"USDT": 200.0}

        totals = await maintenance.sync_balances()

        assert totals == {"alice": 100.0, "bob": 200.0}

    @pytest.mark.asyncio
    async def test_no_loaded_bots(self, maintenance):
        assert await maintenance.sync_balances() == {}


class TestUpdateBotMetrics:
    """Test the periodic metrics refresh."""

    @pytest.mark.asyncio
    async def test_refreshes_balance_and_counters(self, running_bot, supervisor, maintenance, session_factory):
        await supervisor.processor.submit(running_bot.id, ProposedSignal(type="buy", symbol="BTC/USDT", quantity=0.1))

        updated = await maintenance.update_bot_metrics()

        assert updated == 1
        handle = supervisor.registry.get(running_bot.id)
        assert handle.current_balance == 10000.0
        assert handle.total_trades == 1

        async with session_factory() as session:
            result = await session.execute(select(Bot).where(Bot.id == running_bot.id))
            bot = result.scalar_one()
        assert bot.current_balance == 10000.0

    @pytest.mark.asyncio
    async def test_uses_configured_base_currency(self, make_bot, supervisor, maintenance):
        bot = await make_bot(config={"order_quantity": 0.1, "base_currency": "BTC"})
        await supervisor.start_bot(bot.id)

        await maintenance.update_bot_metrics()

        assert supervisor.registry.get(bot.id).current_balance == 0.5


class TestDailyMaintenance:
    """Test retention cleanup."""

    @pytest.mark.asyncio
    async def test_removes_only_expired_rows(self, make_bot, maintenance, session_factory):
        bot = await make_bot()
        now = datetime(2025, 6, 1)
        old = now - timedelta(days=31)
        recent = now - timedelta(days=1)

        async with session_factory() as session:
            for processed, created_at in ((True, old), (False, old), (True, recent)):
                session.add(Signal(
                    bot_id=bot.id,
                    signal_type="buy",
                    symbol="BTC/USDT",
                    processed=processed,
                    created_at=created_at,
                ))
            session.add(AuditLog(action="bot_started", bot_id=bot.id, created_at=now - timedelta(days=91)))
            session.add(AuditLog(action="bot_stopped", bot_id=bot.id, created_at=recent))
            await session.commit()

        counts = await maintenance.daily_maintenance(now=now)

        assert counts == {"bot_signals": 1, "audit_logs": 1}

        async with session_factory() as session:
            signals = (await session.execute(select(Signal))).scalars().all()
            audits = (await session.execute(select(AuditLog))).scalars().all()

        # Pending signals are never removed, whatever their age
        assert sorted((s.processed, s.created_at) for s in signals) == [(False, old), (True, recent)]
        assert [a.action for a in audits] == ["bot_stopped"]

    def test_register_jobs(self, maintenance):
        scheduler = JobScheduler()

        maintenance.register_jobs(scheduler)

        assert [job.name for job in scheduler.jobs] == [
            "process_signals",
            "update_bot_metrics",
            "sync_balances",
            "daily_maintenance",
        ]
        assert scheduler.get("daily_maintenance").interval == 86400.0


class TestPeriodicJob:
    """Test non-overlapping execution."""

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self):
        release = asyncio.Event()
        calls = []

        async def slow_job():
            calls.append(1)
            await release.wait()

        job = PeriodicJob("slow", slow_job, interval=60)

        assert job.trigger() is True
        await asyncio.sleep(0)
        assert job.in_progress

        assert job.trigger() is False
        assert job.skipped == 1

        release.set()
        await job.stop()

        assert calls == [1]
        assert job.runs == 1
        assert not job.in_progress

    @pytest.mark.asyncio
    async def test_failure_does_not_raise(self):
        async def broken():
            raise RuntimeError("boom")

        job = PeriodicJob("broken", broken, interval=60)

        await job.run_once()

        assert job.runs == 1
        assert job.trigger() is True
        await job.stop()

    @pytest.mark.asyncio
    async def test_runs_on_schedule(self):
        ran = asyncio.Event()

        async def tick():
            ran.set()

        job = PeriodicJob("fast", tick, interval=0.01)
        job.start()
        try:
            await asyncio.wait_for(ran.wait(), timeout=1)
        finally:
            await job.stop()

        assert job.runs >= 1
        assert not job.is_started
