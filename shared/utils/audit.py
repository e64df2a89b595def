"""
shared/utils/audit.py
Append-only audit trail helper used by every service that mutates important state.
"""

from typing import Any, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AuditLog, User


def _client_meta(request: Optional[Request]) -> tuple[Optional[str], Optional[str]]:
    if request is None:
        return None, None
    ip = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return ip, user_agent[:500] if user_agent else None


async def record_audit(
    db: AsyncSession,
    user: Optional[User],
    action: str,
    resource: str,
    resource_id: Any = None,
    old_data: Optional[dict] = None,
    new_data: Optional[dict] = None,
    request: Optional[Request] = None,
) -> AuditLog:
    """Add an AuditLog row to the current transaction. The caller commits."""
    ip, user_agent = _client_meta(request)
    log = AuditLog(
        user_id=user.id if user else None,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        old_data=old_data,
        new_data=new_data,
        ip_address=ip,
        user_agent=user_agent,
    )
    db.add(log)
    return log
