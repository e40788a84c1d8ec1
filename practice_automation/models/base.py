"""
OrganizationModel — Abstract base class for organization-scoped models.

All models that need tenant isolation inherit from OrganizationModel
instead of db.Model directly. This adds:
  - organization_id FK column with index
  - query_for_org(organization_id) classmethod
  - Composite index macro helper
"""

from sqlalchemy import select

from practice_automation.models import db


class OrganizationModel(db.Model):
    """Abstract base for organization-scoped tables."""
    __abstract__ = True

    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_org(cls, organization_id):
        """Return a query filtered by organization_id."""
        return cls.query.filter_by(organization_id=organization_id)

    @classmethod
    def get_scoped(cls, organization_id, pk):
        """Fetch one row by PK inside an organization, or None."""
        return db.session.execute(
            select(cls).where(cls.id == pk, cls.organization_id == organization_id)
        ).scalar_one_or_none()

    @classmethod
    def org_composite_index(cls, tablename, *extra_cols):
        """Helper to build an (organization_id, ...) composite index."""
        name = f"ix_{tablename}_org_{'_'.join(extra_cols)}"
        cols = ("organization_id",) + extra_cols
        return db.Index(name, *cols)
