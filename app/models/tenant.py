"""
Tenant model.

A tenant owns its own stage graph (stages, questions, transition rules) and
its jobs. ``stage_config_version`` is bumped by every configuration change so
that a loaded :class:`~app.services.stage_config_service.StageGraph` can tell
which revision of the configuration it was built from.
"""

from datetime import datetime, timezone

from app.models import db


class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    stage_config_version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def bump_config_version(self) -> int:
        self.stage_config_version = (self.stage_config_version or 0) + 1
        return self.stage_config_version

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "stage_config_version": self.stage_config_version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Tenant {self.id}: {self.slug}>"
