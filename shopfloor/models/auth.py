"""
Shopfloor Planner
Identity model.

Models:
    - User: shop-floor account referenced by plans (creator, approvers)
            and schedules (creator).  Authentication itself lives outside
            this service; callers identify themselves with ``X-User-Id``.
"""

from datetime import datetime, timezone

from shopfloor.models import db


USER_ROLES = {"admin", "ppic", "pem", "toolpather", "qc", "operator", "viewer"}


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), nullable=False, unique=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(30), default="operator")
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.username}>"


def find_user(user_id) -> User | None:
    """Identity lookup used by approver assignment."""
    if user_id is None:
        return None
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None
