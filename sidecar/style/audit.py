"""Best-effort audit trail for style-learning mutations."""

from __future__ import annotations

import logging
from typing import Any

from storage import call_db

logger = logging.getLogger(__name__)


async def record_audit(
    db: Any,
    user_id: str | None,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Write an audit entry. Failures are logged and never raised."""
    try:
        await call_db(
            db, "insert_audit_log",
            user_id, action, resource_type,
            resource_id=resource_id, metadata=metadata or {},
        )
    except Exception:
        logger.exception("Failed to write audit log entry %s for %s", action, resource_type)
