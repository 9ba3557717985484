"""
TenantModel — Abstract base class for tenant-scoped models.

Adds a ``tenant_id`` FK column with index and a ``query_for_tenant``
helper. Every analytics and planning table inherits from it.
"""

from capacity_insights.models import db


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        """Return a query filtered by tenant_id."""
        return cls.query.filter_by(tenant_id=tenant_id)
