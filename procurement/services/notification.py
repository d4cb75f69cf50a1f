"""
Procurement Platform
Notification Service.

Central service for creating and querying in-app notifications, plus the
default subscribers that turn approval events into Notification rows.
Stage activations are addressed to the approver role; final outcomes to
the user who requested the process.
"""

import logging

from procurement.models import db
from procurement.models.notification import Notification
from procurement.services.events import subscribe

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", category="system", severity="info",
               recipient="all", tenant_id=None, entity_type="", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            tenant_id=tenant_id,
            recipient=recipient,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def has_unread(*, tenant_id, entity_type, entity_id, category):
        return db.session.query(
            Notification.query.filter_by(
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                category=category,
                is_read=False,
            ).exists()
        ).scalar()


# ═══════════════════════════════════════════════════════════════════════════
#  Default event subscribers
# ═══════════════════════════════════════════════════════════════════════════

@subscribe("approval.stage_activated")
def _notify_stage_activated(event):
    message = f"RFP #{event['rfp_id']} is waiting for {event['stage_name']}."
    if event.get("due_at"):
        message += f" Due {event['due_at']}."
    actions = [c.get("action") for c in event.get("triggered_conditions") or []]
    if actions:
        message += f" Triggered: {', '.join(actions)}."
    NotificationService.create(
        title=f"Approval required: {event['stage_name']}",
        message=message,
        category="approval",
        severity="info",
        recipient=event["approver_role"],
        tenant_id=event["tenant_id"],
        entity_type="approval_request",
        entity_id=event["request_id"],
    )


@subscribe("approval.process_completed")
def _notify_process_completed(event):
    NotificationService.create(
        title=f"RFP #{event['rfp_id']} approved",
        message="All approval stages were approved.",
        category="approval",
        severity="success",
        recipient=str(event["requested_by"]) if event.get("requested_by") else "all",
        tenant_id=event["tenant_id"],
        entity_type="approval_process",
        entity_id=event["process_id"],
    )


@subscribe("approval.process_rejected")
def _notify_process_rejected(event):
    NotificationService.create(
        title=f"RFP #{event['rfp_id']} rejected",
        message=f"Rejected at stage {event['stage_name']}. {event.get('comments') or ''}".strip(),
        category="approval",
        severity="warning",
        recipient=str(event["requested_by"]) if event.get("requested_by") else "all",
        tenant_id=event["tenant_id"],
        entity_type="approval_process",
        entity_id=event["process_id"],
    )


@subscribe("approval.sla_breached")
def _notify_sla_breached(event):
    # One open reminder per request; the sweep runs every few minutes.
    if NotificationService.has_unread(
        tenant_id=event["tenant_id"],
        entity_type="approval_request",
        entity_id=event["request_id"],
        category="deadline",
    ):
        return
    NotificationService.create(
        title=f"SLA breached: {event['stage_name']}",
        message=(f"RFP #{event['rfp_id']} has been waiting on {event['approver_role']} "
                 f"for {event['hours_overdue']:.1f}h past its deadline."),
        category="deadline",
        severity="error",
        recipient=event["approver_role"],
        tenant_id=event["tenant_id"],
        entity_type="approval_request",
        entity_id=event["request_id"],
    )
    logger.info("SLA breach notification created for request %s", event["request_id"],
                extra={"tenant_id": event["tenant_id"], "event_type": event["name"]})
