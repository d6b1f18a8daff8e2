"""
TenantModel — abstract base for tenant-scoped tables.

Stages, questions, transition rules, jobs, responses and audit rows carry a
``tenant_id``. Every service lookup filters on it, so one tenant's stage
graph can never route another tenant's jobs.
"""

from app.models import db


class TenantModel(db.Model):
    """Abstract base adding ``tenant_id`` and tenant-scoped query helpers."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        return cls.query.filter_by(tenant_id=tenant_id)

    @classmethod
    def tenant_composite_index(cls, table_name, *extra_cols, unique=False):
        """``(tenant_id, *extra_cols)`` index for ``__table_args__``.

        ``unique=True`` is how per-tenant orderings such as
        ``job_stages.sequence_order`` are enforced at the database level.
        """
        name = f"ix_{table_name}_tenant_{'_'.join(extra_cols)}"
        return db.Index(name, "tenant_id", *extra_cols, unique=unique)
