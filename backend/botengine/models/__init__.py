# Database Models

from .database import Base, engine, async_session_maker, get_session, init_db
from .bot import Bot, BotStatus, StrategyType
from .exchange import User, Exchange, ApiCredential
from .signal import Signal, SignalType
from .trade import Trade, TradeSide, TradeStatus
from .audit_log import AuditLog

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_session",
    "init_db",
    "Bot",
    "BotStatus",
    "StrategyType",
    "User",
    "Exchange",
    "ApiCredential",
    "Signal",
    "SignalType",
    "Trade",
    "TradeSide",
    "TradeStatus",
    "AuditLog",
]
