"""Bot model for trading bot instances."""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Text, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


class BotStatus(str, Enum):
    """Bot status enumeration."""
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    ERROR = "error"


class StrategyType(str, Enum):
    """Strategy variants a bot can run."""
    GRID = "grid"
    DCA = "dca"
    SCALPING = "scalping"
    SWING = "swing"
    ARBITRAGE = "arbitrage"
    SIGNAL = "signal"
    COPY_TRADING = "copy_trading"


class Bot(Base):
    """Trading bot model."""
    __tablename__ = "trading_bots"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # Exchange binding
    exchange_id = Column(Integer, ForeignKey("exchanges.id"), nullable=False)
    api_key_id = Column(Integer, ForeignKey("api_keys.id"), nullable=False)

    # Strategy
    strategy_type = Column(String(30), nullable=False)
    trading_pair = Column(String(50), nullable=False)
    config = Column(JSON, default=dict)

    # Signal bots may require HMAC-signed webhooks
    webhook_secret = Column(String(255), nullable=True)

    # Status
    status = Column(SQLEnum(BotStatus), default=BotStatus.STOPPED, nullable=False, index=True)
    error_message = Column(Text, nullable=True)

    # Performance counters
    total_trades = Column(Integer, default=0)
    total_profit = Column(Float, default=0.0)
    win_rate = Column(Float, default=0.0)
    current_balance = Column(Float, default=0.0)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    stopped_at = Column(DateTime, nullable=True)
    last_trade_at = Column(DateTime, nullable=True)

    # Relationships
    exchange = relationship("Exchange", lazy="joined")
    api_key = relationship("ApiCredential", lazy="joined")
    signals = relationship("Signal", back_populates="bot", cascade="all, delete-orphan")
    trades = relationship("Trade", back_populates="bot", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Bot(id={self.id}, name='{self.name}', status={self.status.value})>"
