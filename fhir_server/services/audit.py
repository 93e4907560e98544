"""Audit logging service for compliance tracking."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from fhir_server.models.resource import AuditLog

logger = logging.getLogger(__name__)


def log_action(
    db: Session,
    *,
    actor: str,
    action: str,
    resource_type: str,
    resource_id: str,
    version_id: int | None = None,
    timestamp: datetime | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Write an immutable audit log entry in the caller's transaction."""
    entry = AuditLog(
        actor=actor,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        version_id=version_id,
        detail=detail,
    )
    if timestamp is not None:
        entry.timestamp = timestamp
    db.add(entry)
    db.flush()
    logger.info("AUDIT: %s %s %s/%s", actor, action, resource_type, resource_id)
