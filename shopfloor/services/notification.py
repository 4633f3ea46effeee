"""
Shopfloor Planner
Notification Service.

Central service for creating and querying in-app notifications, plus the
notifier seam the approval workflow talks to:

    notifier.notify(recipient, event_kind, payload)

The default notifier (``DatabaseNotifier``) stores a Notification row in
its own transaction.  The app factory installs it in
``app.extensions["notifier"]``; tests swap it for a recording or failing
double.  Workflow code always goes through ``dispatch()``, which logs and
swallows notifier failures so a delivery problem never changes the
outcome of the operation that triggered it.
"""

import logging
from datetime import datetime, timezone

from flask import current_app

from shopfloor.models import db
from shopfloor.models.notification import Notification

logger = logging.getLogger(__name__)


_TITLES = {
    "approval_requested": "Operation plan {form_number} awaits your {role} approval",
    "plan_approved": "Operation plan {form_number} approved",
    "plan_rejected": "Operation plan {form_number} rejected by {role}",
}


def _render_title(event_kind, payload):
    template = _TITLES.get(event_kind)
    if template is None:
        return payload.get("title") or event_kind.replace("_", " ").capitalize()
    return template.format(
        form_number=payload.get("form_number", ""),
        role=payload.get("role", ""),
    )


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient, title, event_kind="system", message="", severity="info",
               entity_type="", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient=str(recipient),
            event_kind=event_kind,
            title=title,
            message=message,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient, unread_only=False, event_kind=None, limit=50):
        """Notifications for a recipient, newest first. Returns (items, total)."""
        q = Notification.query.filter_by(recipient=str(recipient))
        if unread_only:
            q = q.filter_by(is_read=False)
        if event_kind:
            q = q.filter_by(event_kind=event_kind)
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(recipient):
        """Return count of unread notifications."""
        return Notification.query.filter_by(recipient=str(recipient), is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient=None):
        """Mark a single notification as read. Returns None if not found."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or (recipient is not None and notif.recipient != str(recipient)):
            return None
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient):
        """Mark all notifications for a recipient as read."""
        now = datetime.now(timezone.utc)
        count = (
            Notification.query.filter_by(recipient=str(recipient), is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.commit()
        return count


class DatabaseNotifier:
    """Default notifier: one in-app Notification row per event."""

    def notify(self, recipient, event_kind, payload):
        severity = {
            "plan_approved": "success",
            "plan_rejected": "warning",
        }.get(event_kind, "info")
        try:
            return NotificationService.create(
                recipient=recipient,
                event_kind=event_kind,
                title=_render_title(event_kind, payload),
                message=payload.get("message", ""),
                severity=severity,
                entity_type=payload.get("entity_type", ""),
                entity_id=payload.get("entity_id"),
            )
        except Exception:
            db.session.rollback()
            raise


def get_notifier():
    """Return the notifier installed on the current app."""
    notifier = current_app.extensions.get("notifier")
    if notifier is None:
        notifier = DatabaseNotifier()
        current_app.extensions["notifier"] = notifier
    return notifier


def dispatch(recipient, event_kind, payload, notifier=None):
    """Fire-and-forget delivery: failures are logged, never raised.

    Returns True when the notifier accepted the event.
    """
    notifier = notifier or get_notifier()
    try:
        notifier.notify(recipient, event_kind, payload)
        return True
    except Exception:
        logger.exception(
            "Notification delivery failed event=%s recipient=%s", event_kind, recipient,
            extra={"event_kind": event_kind, "user_id": recipient},
        )
        return False
