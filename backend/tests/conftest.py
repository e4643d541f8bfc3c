"""Pytest configuration and fixtures."""

import asyncio
from typing import Dict, List, Optional, Set

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from botengine.main import app
from botengine.models import (
    Base,
    get_session,
    ApiCredential,
    Bot,
    BotStatus,
    Exchange,
    User,
)
from botengine.services.config import EngineSettings
from botengine.services.exchanges import (
    ExchangeClient,
    ExchangeApiError,
    ExchangeConnector,
    ExchangeOrder,
    Orderbook,
    OrderRequest,
    Ticker,
)
from botengine.services.bot_supervisor import BotSupervisor
from botengine.services.webhooks import WebhookService


# Test database URL (in-memory SQLite shared across sessions)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ============================================================================
# Fake exchange
# ============================================================================


class FakeExchangeClient(ExchangeClient):
    """Exchange client double with call tracking."""

    name = "fake"

    def __init__(self, price: float = 50000.0, balances: Optional[Dict[str, float]] = None):
        self.price = price
        self.change = 0.0
        self.balances = balances if balances is not None else {"USDT": 10000.0, "BTC": 0.5}
        self.fee = 0.0
        self.order_status = "filled"
        self.fail_orders = False
        self.fail_cancel_ids: Set[str] = set()
        self.ticker_error: Optional[Exception] = None
        self.orders: List[OrderRequest] = []
        self.cancel_attempts: List[str] = []
        self.futures_cancels: List[str] = []
        self.order_delay = 0.0
        self.initialized = 0

    async def initialize(self) -> None:
        self.initialized += 1

    async def get_balance(self) -> Dict[str, float]:
        return dict(self.balances)

    async def get_ticker(self, symbol: str) -> Ticker:
        if self.ticker_error is not None:
            raise self.ticker_error
        return Ticker(symbol=symbol, price=self.price, change=self.change, volume=100.0)

    async def get_orderbook(self, symbol: str, depth: int = 100) -> Orderbook:
        return Orderbook(bids=[(self.price - 1, 1.0)], asks=[(self.price + 1, 1.0)])

    async def create_order(self, request: OrderRequest) -> ExchangeOrder:
        if self.fail_orders:
            raise ExchangeApiError("Fake API error: order rejected")
        if self.order_delay:
            await asyncio.sleep(self.order_delay)

        self.orders.append(request)
        filled = self.order_status == "filled"
        return ExchangeOrder(
            id=f"fake_{len(self.orders)}",
            symbol=request.symbol,
            side=request.side,
            type=request.type,
            quantity=request.quantity,
            price=request.price or 0.0,
            executed_price=(request.price or self.price) if filled else 0.0,
            executed_quantity=request.quantity if filled else 0.0,
            status=self.order_status,
            fee=self.fee,
        )

    async def cancel_order(self, order_id: str, symbol: str, futures: bool = False) -> None:
        self.cancel_attempts.append(order_id)
        if futures:
            self.futures_cancels.append(order_id)
        if order_id in self.fail_cancel_ids:
            raise ExchangeApiError(f"Fake API error: cannot cancel {order_id}")


# ============================================================================
# Database
# ============================================================================


@pytest.fixture(scope="function")
async def session_factory():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


# ============================================================================
# Engine
# ============================================================================


@pytest.fixture
def fake_clients() -> Dict[str, FakeExchangeClient]:
    """Fake clients keyed by API key; created on first connect."""
    return {}


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return EngineSettings(bot_log_dir=str(tmp_path / "logs"), allow_ccxt_fallback=False)


@pytest.fixture
def connector(settings, fake_clients) -> ExchangeConnector:
    connector = ExchangeConnector(settings)

    def factory(api_key, api_secret, passphrase, _settings):
        return fake_clients.setdefault(api_key, FakeExchangeClient())

    connector.register("fake", factory)
    return connector


@pytest.fixture
def supervisor(connector, settings, session_factory) -> BotSupervisor:
    return BotSupervisor(connector=connector, settings=settings, session_factory=session_factory)


@pytest.fixture
def make_bot(session_factory):
    """Factory creating a bot (plus its user, exchange and credential)."""

    async def _make_bot(
        name: str = "Test Bot",
        strategy_type: str = "signal",
        config: Optional[dict] = None,
        status: BotStatus = BotStatus.STOPPED,
        exchange_name: str = "fake",
        api_key: str = "key-1",
        user_id: str = "user-1",
        trading_pair: str = "BTC/USDT",
        webhook_secret: Optional[str] = None,
        supports_futures: bool = False,
    ) -> Bot:
        async with session_factory() as session:
            if await session.get(User, user_id) is None:
                session.add(User(id=user_id, email=f"{user_id}@example.com"))

            result = await session.execute(select(Exchange).where(Exchange.name == exchange_name))
            exchange = result.scalar_one_or_none()
            if exchange is None:
                exchange = Exchange(name=exchange_name, supports_futures=supports_futures)
                session.add(exchange)
                await session.flush()

            credential = ApiCredential(
                user_id=user_id,
                exchange_id=exchange.id,
                api_key=api_key,
                api_secret=f"{api_key}-secret",
            )
            session.add(credential)
            await session.flush()

            bot = Bot(
                user_id=user_id,
                name=name,
                exchange_id=exchange.id,
                api_key_id=credential.id,
                strategy_type=strategy_type,
                trading_pair=trading_pair,
                config=config if config is not None else {"order_quantity": 0.1},
                webhook_secret=webhook_secret,
                status=status,
            )
            session.add(bot)
            await session.commit()
            return bot

    return _make_bot


@pytest.fixture
async def running_bot(make_bot, supervisor):
    """A signal bot started through the supervisor."""
    bot = await make_bot()
    result = await supervisor.start_bot(bot.id)
    assert result.success, result.error
    return bot


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture(scope="function")
async def client(session_factory, supervisor):
    """Create test client wired to the test database and supervisor."""

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.state.supervisor = supervisor
    app.state.webhook_service = WebhookService(supervisor.processor, session_factory)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
