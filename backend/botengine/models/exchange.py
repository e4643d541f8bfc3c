"""Exchange accounts: supported venues, API credentials and their owners."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey

from .database import Base


class User(Base):
    """Account owner. Only the fields the engine writes are modelled here."""
    __tablename__ = "users"

    id = Column(String(100), primary_key=True)
    email = Column(String(255), nullable=True)
    total_balance = Column(Float, default=0.0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<User(id='{self.id}')>"


class Exchange(Base):
    """A trading venue the engine can connect to."""
    __tablename__ = "exchanges"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False, unique=True)  # e.g., "binance", "okx"
    supports_futures = Column(Boolean, default=False)

    def __repr__(self):
        return f"<Exchange(id={self.id}, name='{self.name}')>"


class ApiCredential(Base):
    """User-supplied API key pair for one exchange."""
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), ForeignKey("users.id"), nullable=False, index=True)
    exchange_id = Column(Integer, ForeignKey("exchanges.id"), nullable=False)
    api_key = Column(String(255), nullable=False)
    api_secret = Column(String(255), nullable=False)
    passphrase = Column(String(255), nullable=True)  # OKX only
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<ApiCredential(id={self.id}, exchange_id={self.exchange_id})>"
