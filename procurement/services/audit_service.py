"""
Audit sink for state-mutating operations.

Runs after the primary commit in its own small transaction.  A failure
here is logged and swallowed: the caller's state transition has already
been committed and must not appear failed.
"""

from __future__ import annotations

import logging

from procurement.core.context import RequestContext
from procurement.models import db
from procurement.models.audit import AuditLog, write_audit

logger = logging.getLogger(__name__)


def record_audit_event(
    action: str,
    target_type: str,
    target_id,
    ctx: RequestContext | None,
    metadata: dict | None = None,
) -> AuditLog | None:
    """Append one audit row and commit it. Returns None when the write failed."""
    try:
        log = write_audit(
            target_type=target_type,
            target_id=target_id,
            action=action,
            tenant_id=ctx.tenant_id if ctx else None,
            actor_user_id=ctx.user_id if ctx else None,
            metadata=metadata,
        )
        db.session.commit()
        return log
    except Exception:
        db.session.rollback()
        logger.warning(
            "Audit write failed: %s on %s/%s", action, target_type, target_id,
            exc_info=True,
            extra={"tenant_id": ctx.tenant_id if ctx else None, "event_type": action},
        )
        return None
