"""
Practice Automation Engine
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
"""

from datetime import datetime, timezone

from practice_automation.models import db
from practice_automation.models.base import OrganizationModel


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {"info", "warning", "error", "success", "action_required"}


class Notification(OrganizationModel):
    """
    In-app notification entity.

    One record per recipient per event. user_id NULL means the whole
    organization (broadcast to the practice inbox).
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    notification_type = db.Column(
        db.String(20), default="info",
        comment="info | warning | error | success | action_required",
    )
    meta = db.Column("metadata", db.JSON, default=dict)

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="task/step/stage/assignment/client/...")
    entity_id = db.Column(db.Integer, nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.notification_type,
            "metadata": self.meta or {},
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
