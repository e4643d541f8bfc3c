"""Trade model - execution records for submitted orders.

CRITICAL: Trades are write-once.
- One trade per successfully submitted order
- The exchange stays authoritative for later status changes
- Performance counters are derived from trades, never the reverse
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base


class TradeSide(str, Enum):
    """Trade side enumeration."""
    BUY = "buy"
    SELL = "sell"


class TradeStatus(str, Enum):
    """Order state as reported by the exchange at submission time."""
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


class Trade(Base):
    """Trade execution record.

    Example:
        Signal: "BUY BTCUSDT qty 0.1"
        Trade:  buy 0.1 requested, 0.1 executed @ $43,250, status filled
    """
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)

    # Foreign keys
    user_id = Column(String(100), nullable=False, index=True)
    bot_id = Column(Integer, ForeignKey("trading_bots.id"), nullable=False, index=True)
    signal_id = Column(Integer, ForeignKey("bot_signals.id"), nullable=True)
    exchange_id = Column(Integer, ForeignKey("exchanges.id"), nullable=False)

    # Order details
    exchange_order_id = Column(String(100), nullable=True)
    symbol = Column(String(50), nullable=False, index=True)
    side = Column(SQLEnum(TradeSide), nullable=False)
    type = Column(String(20), nullable=False)  # "market" or "limit"
    quantity = Column(Float, nullable=False)   # Requested
    price = Column(Float, nullable=True)       # Requested (limit price)

    # Execution
    executed_price = Column(Float, default=0.0)
    executed_quantity = Column(Float, default=0.0)
    fee = Column(Float, default=0.0)
    fee_currency = Column(String(10), nullable=True)
    status = Column(SQLEnum(TradeStatus), nullable=False, index=True)

    # Realized P&L for position-reducing trades
    profit_loss = Column(Float, nullable=True)

    # Futures
    is_futures = Column(Boolean, default=False)
    leverage = Column(Integer, default=1)

    executed_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    bot = relationship("Bot", back_populates="trades")

    def __repr__(self):
        return (
            f"<Trade(id={self.id}, "
            f"{self.side.value} {self.executed_quantity:.8f} {self.symbol} "
            f"@ {self.executed_price:.2f})>"
        )

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "bot_id": self.bot_id,
            "signal_id": self.signal_id,
            "exchange_id": self.exchange_id,
            "exchange_order_id": self.exchange_order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.type,
            "quantity": self.quantity,
            "price": self.price,
            "executed_price": self.executed_price,
            "executed_quantity": self.executed_quantity,
            "fee": self.fee,
            "fee_currency": self.fee_currency,
            "status": self.status.value,
            "profit_loss": self.profit_loss,
            "is_futures": self.is_futures,
            "leverage": self.leverage,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }
