"""Audit log model for control operations and webhook ingestion."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON

from .database import Base


class AuditLog(Base):
    """Audit record."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=True, index=True)
    bot_id = Column(Integer, nullable=True)  # null for engine-wide events

    action = Column(String(50), nullable=False)
    details = Column(JSON, default=dict)

    # Timestamp
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action={self.action})>"
