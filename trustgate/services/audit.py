"""
Audit sink — write-only.

Every mutation in the engine records who did what to which resource.
Entries are appended in the caller's session so the audit row commits (or
rolls back) together with the change it describes.
"""

from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate.db.models import AuditLog

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"


class AuditLogger:
    """Append audit entries."""

    async def log(
        self,
        session: AsyncSession,
        *,
        action: str,
        resource: str,
        resource_id: Optional[Any] = None,
        actor_id: Optional[str] = None,
        actor_type: str = "system",
        description: Optional[str] = None,
        severity: str = "INFO",
        metadata: Optional[dict] = None,
    ) -> AuditLog:
        entry = AuditLog(
            actor_id=str(actor_id) if actor_id is not None else SYSTEM_ACTOR,
            actor_type=actor_type,
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            description=description,
            severity=severity,
            metadata_=metadata or {},
        )
        session.add(entry)
        await session.flush()
        logger.debug("audit_logged", action=action, resource=resource, resource_id=entry.resource_id)
        return entry


audit_logger = AuditLogger()
