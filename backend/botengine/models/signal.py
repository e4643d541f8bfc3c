"""Signal model - queued trading instructions for a bot.

A signal is created by webhook ingestion or by a bot's strategy and is
mutated only by the signal processor. `processed` flips from False to True
exactly once; afterwards the row carries either a trade or an error message.
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import relationship

from .database import Base


class SignalType(str, Enum):
    """Signal type enumeration."""
    BUY = "buy"
    SELL = "sell"
    CLOSE = "close"
    UPDATE_TP = "update_tp"
    UPDATE_SL = "update_sl"


class Signal(Base):
    """Pending or processed trading signal."""
    __tablename__ = "bot_signals"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("trading_bots.id"), nullable=False, index=True)

    # Stored as text so malformed rows still reach the processor and fail there
    signal_type = Column(String(20), nullable=False)
    symbol = Column(String(50), nullable=False)
    price = Column(Float, nullable=True)
    quantity = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    stop_loss = Column(Float, nullable=True)
    leverage = Column(Integer, nullable=True)

    # Origin payload (webhook body or strategy context)
    signal_data = Column(JSON, default=dict)

    # Processing outcome
    processed = Column(Boolean, default=False, nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # Audit
    source_ip = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    bot = relationship("Bot", back_populates="signals")

    def __repr__(self):
        return (
            f"<Signal(id={self.id}, bot_id={self.bot_id}, "
            f"type={self.signal_type}, processed={self.processed})>"
        )
