"""
TenantModel: Abstract base class for tenant-scoped models.

All models that need tenant isolation inherit from TenantModel
instead of db.Model directly. This adds:
  - tenant_id FK column with index
  - query_for_tenant(tenant_id) classmethod
  - Composite index helper
"""

from feedback_actions.models import db


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


def tenant_index(table_name, *extra_cols):
    """Build a (tenant_id, ...) composite index for ``__table_args__``."""
    return db.Index(f"ix_{table_name}_tenant_{'_'.join(extra_cols)}", "tenant_id", *extra_cols)
