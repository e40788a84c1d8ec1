"""
Practice Automation Engine
Notification Service.

Central service for creating and querying in-app notifications. This is
the always-available outbound channel: send_notification and
request_documents write here, and send_email falls back to it when the
email sender fails.
"""

from datetime import datetime, timezone

from practice_automation.models import db
from practice_automation.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, organization_id, title, message="", notification_type="info",
               user_id=None, metadata=None, entity_type="", entity_id=None,
               commit=True):
        """
        Create a single notification record.

        Action handlers pass ``commit=False`` so the row joins the
        surrounding trigger transaction.

        Returns:
            The created Notification instance.
        """
        notif = Notification(
            organization_id=organization_id,
            user_id=user_id,
            title=title,
            message=message,
            notification_type=notification_type,
            meta=dict(metadata or {}),
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(organization_id, user_id=None, unread_only=False,
                      limit=50, offset=0):
        """
        Retrieve notifications for a user (plus organization broadcasts), newest first.
        """
        q = Notification.query_for_org(organization_id).filter(
            (Notification.user_id == user_id) | (Notification.user_id.is_(None))
        )
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def mark_read(organization_id, notification_id):
        """Mark a single notification as read."""
        notif = Notification.get_scoped(organization_id, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(organization_id, user_id=None):
        q = Notification.query_for_org(organization_id).filter_by(user_id=user_id, is_read=False)
        count = 0
        now = datetime.now(timezone.utc)
        for n in q.all():
            n.is_read = True
            n.read_at = now
            count += 1
        db.session.commit()
        return count
