"""Audit trail helpers."""

from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AuditLog


def add_audit(
    session: AsyncSession,
    action: str,
    user_id: Optional[str] = None,
    bot_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit record in the caller's session; the caller commits."""
    entry = AuditLog(user_id=user_id, bot_id=bot_id, action=action, details=details or {})
    session.add(entry)
    return entry
