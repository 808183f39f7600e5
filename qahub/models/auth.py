"""
QA Lifecycle Hub
Identity model.

Models:
    - User: acting identity for every transition; role and department decide
            which real-time rooms a connection auto-joins.

Credential storage and token issuance belong to the auth collaborator; this
table only holds what the lifecycle core reads.
"""

from datetime import datetime, timezone

from qahub.models import db


# ── Constants ────────────────────────────────────────────────────────────

ROLE_TEST_MANAGER = "Test Manager"
ROLE_TESTER = "Tester"
ROLE_TROUBLESHOOTER = "Troubleshooter"
ROLE_VIEWER = "Viewer"

USER_ROLES = {ROLE_TEST_MANAGER, ROLE_TESTER, ROLE_TROUBLESHOOTER, ROLE_VIEWER}


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), nullable=False, unique=True)
    email = db.Column(db.String(100), nullable=False, unique=True)
    first_name = db.Column(db.String(50), default="")
    last_name = db.Column(db.String(50), default="")
    role = db.Column(db.String(30), nullable=False, default=ROLE_VIEWER, index=True)
    department = db.Column(db.String(100), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_login = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def full_name(self):
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or self.username

    @property
    def is_test_manager(self):
        return self.role == ROLE_TEST_MANAGER

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "department": self.department,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.username} ({self.role})>"
