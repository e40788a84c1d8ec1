"""
Practice Automation Engine
Client domain models.

Models:
    - Client: a customer of the practice; carries free-form tags used by
      trigger conditions (``client.tags``) and the apply/remove tag actions
    - ClientContact: a person at the client; adding one fires
      ``client_contact_added``
"""

from datetime import datetime, timezone

from practice_automation.models import db
from practice_automation.models.base import OrganizationModel


# ── Constants ────────────────────────────────────────────────────────────────

CLIENT_TYPES = {"individual", "business", "trust", "non_profit"}
CONTACT_ROLES = {"primary", "billing", "tax", "bookkeeping", "other"}


class Client(OrganizationModel):
    """Client of the practice. Tags are a JSON list of unique strings."""

    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    client_type = db.Column(
        db.String(20), default="individual",
        comment="individual | business | trust | non_profit",
    )
    tags = db.Column(db.JSON, default=list)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, comment="Staff member responsible for the client",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    contacts = db.relationship(
        "ClientContact", backref="client", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "email": self.email,
            "client_type": self.client_type,
            "tags": list(self.tags or []),
            "owner_id": self.owner_id,
            "contact_count": self.contacts.count(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Client {self.id}: {self.name}>"


class ClientContact(OrganizationModel):
    __tablename__ = "client_contacts"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(20), default="primary",
                     comment="primary | billing | tax | bookkeeping | other")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "client_id": self.client_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ClientContact {self.id}: {self.name} [{self.role}]>"
